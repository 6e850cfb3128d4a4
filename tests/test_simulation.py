# ===--------------------------------------------------------------------------------------===#
#
# Part of the CircleSim Project, under the Apache License v2.0.
# See https://www.apache.org/licenses/LICENSE-2.0 for license information.
# SPDX-License-Identifier: Apache-2.0
#
# ===--------------------------------------------------------------------------------------===#

"""End-to-end tests of the lock-stepped simulation."""

import numpy as np
import pytest
import yaml

import circlesim.simulation as simulation_mod
from circlesim.circles import CircleSet
from circlesim.config import ConfigError, SimConfig
from circlesim.simulation import SimulationError, simulate
from circlesim.utils.io_utils import load_circles


def _config(**kwargs):
    defaults = dict(
        num_circles=100,
        iterations=5,
        num_workers=1,
        backend="thread",
        seed=1234,
        report_progress=False,
        log_level="WARNING",
        sync_timeout_s=30.0,
    )
    defaults.update(kwargs)
    return SimConfig(**defaults)


class TestScenarios:
    """Tests small hand-placed populations."""

    @pytest.mark.parametrize("num_workers", [1, 2])
    def test_two_circles_move_apart_symmetrically(self, num_workers):
        circles = CircleSet([0.0, 5.0], [0.0, 0.0], [10.0, 10.0])
        result = simulate(_config(iterations=1, num_workers=num_workers), circles=circles)

        assert result.overlaps == [1]
        x0, x1 = result.circles.x.tolist()
        assert x0 < 0.0
        assert x1 > 5.0
        assert x0 - 0.0 == -(x1 - 5.0)
        assert result.circles.y.tolist() == [0.0, 0.0]
        # the caller's circles are left untouched
        assert circles.x.tolist() == [0.0, 5.0]

    def test_single_circle_never_moves(self):
        circles = CircleSet([3.0], [4.0], [50.0])
        result = simulate(_config(iterations=4, num_workers=2), circles=circles)

        assert result.overlaps == [0, 0, 0, 0]
        assert result.circles.x.tolist() == [3.0]
        assert result.circles.y.tolist() == [4.0]

    def test_provided_circles_override_num_circles(self):
        circles = CircleSet([0.0, 500.0, 900.0], [0.0, 0.0, 0.0], [10.0, 10.0, 10.0])
        result = simulate(_config(num_circles=50, iterations=1), circles=circles)
        assert len(result.circles) == 3
        assert result.seed is None

    def test_zero_iterations(self):
        result = simulate(_config(iterations=0))
        assert result.overlaps == []
        assert len(result.circles) == 100


class TestDeterminism:
    """Tests that results only depend on the seed and the problem size."""

    def test_same_seed_same_run(self):
        a = simulate(_config(num_circles=200, num_workers=2))
        b = simulate(_config(num_circles=200, num_workers=2))

        assert a.seed == b.seed == 1234
        assert a.overlaps == b.overlaps
        assert a.circles.digest() == b.circles.digest()

    def test_unseeded_run_reports_its_seed(self):
        first = simulate(_config(num_circles=50, iterations=2, seed=None))
        replay = simulate(_config(num_circles=50, iterations=2, seed=first.seed))

        assert first.seed is not None
        assert replay.overlaps == first.overlaps
        assert replay.circles.digest() == first.circles.digest()

    def test_worker_count_does_not_change_the_result(self):
        single = simulate(_config(num_circles=1000, iterations=100, num_workers=1, backend="process"))
        parallel = simulate(
            _config(num_circles=1000, iterations=100, num_workers=4, backend="process")
        )

        assert parallel.num_workers == 4
        assert single.overlaps == parallel.overlaps
        np.testing.assert_array_equal(single.circles.x, parallel.circles.x)
        np.testing.assert_array_equal(single.circles.y, parallel.circles.y)

    def test_backends_and_kernels_agree(self):
        reference = simulate(_config(num_circles=150, iterations=4, num_workers=1))
        threads = simulate(_config(num_circles=150, iterations=4, num_workers=3, kernel="scalar"))
        processes = simulate(_config(num_circles=150, iterations=4, num_workers=3, backend="process"))

        assert reference.overlaps == threads.overlaps == processes.overlaps
        assert reference.circles.digest() == threads.circles.digest()
        assert reference.circles.digest() == processes.circles.digest()

    def test_overlaps_decrease_as_circles_spread(self):
        result = simulate(_config(num_circles=300, iterations=30, num_workers=2))
        assert result.overlaps[-1] < result.overlaps[0]


class TestFailures:
    """Tests that failures are fatal for the whole run."""

    def test_failing_worker_fails_the_run(self, monkeypatch):
        real_compute_forces = simulation_mod.compute_forces

        def flaky_compute_forces(circles, start, end, delta, **kwargs):
            if start > 0:
                raise RuntimeError("boom")
            return real_compute_forces(circles, start, end, delta, **kwargs)

        monkeypatch.setattr(simulation_mod, "compute_forces", flaky_compute_forces)

        with pytest.raises(SimulationError, match="boom"):
            simulate(_config(num_circles=10, num_workers=2, sync_timeout_s=5.0))

    @pytest.mark.parametrize("backend", ["thread", "process"])
    def test_failing_coordinator_releases_large_sends(self, backend, tmp_path):
        # frames cannot be written: the coordinator fails before its first gather,
        # while its peer pushes a delta larger than a pipe buffer
        tmp_path.joinpath("frames").write_text("")
        config = _config(
            backend=backend, num_circles=6000, iterations=1, num_workers=2, dump_frames=True
        )

        with pytest.raises(SimulationError, match="worker 0") as excinfo:
            simulate(config, out_dir=tmp_path)
        assert "worker 1" in str(excinfo.value)

    def test_diverging_replica_is_detected_each_iteration(self, monkeypatch):
        def drifting_replace_positions(self, x, y):
            self.replace({"x": x + 1.0, "y": y})

        monkeypatch.setattr(CircleSet, "replace_positions", drifting_replace_positions)

        with pytest.raises(SimulationError, match="ReplicaMismatchError"):
            simulate(_config(num_circles=20, num_workers=2, check_consistency=True))

    def test_diverging_replica_is_detected_at_the_end(self, monkeypatch):
        def drifting_replace_positions(self, x, y):
            self.replace({"x": x + 1.0, "y": y})

        monkeypatch.setattr(CircleSet, "replace_positions", drifting_replace_positions)

        with pytest.raises(SimulationError, match="differ"):
            simulate(_config(num_circles=20, num_workers=2))

    def test_invalid_config_is_rejected_before_starting(self):
        with pytest.raises(ConfigError):
            simulate(_config(backend="mpi"))


class TestOutputs:
    """Tests the progress report and the files written by a run."""

    def test_progress_lines(self, capsys):
        simulate(_config(num_circles=30, iterations=2, report_progress=True))
        out = capsys.readouterr().out.splitlines()

        assert out[0].startswith("Iteration 1 of 2, ")
        assert out[1].startswith("Iteration 2 of 2, ")
        assert " overlaps (" in out[0]
        assert out[2].startswith("Elapsed time: ")

    def test_out_dir_contents(self, tmp_path):
        result = simulate(_config(num_circles=40, iterations=3, dump_frames=True), out_dir=tmp_path)

        saved = load_circles(tmp_path / "final_circles.npz")
        assert saved.digest() == result.circles.digest()

        with open(tmp_path / "trajectory.yaml") as f:
            trajectory = yaml.safe_load(f)
        assert trajectory["seed"] == 1234
        assert [it["overlaps"] for it in trajectory["iterations"]] == result.overlaps

        assert (tmp_path / "results.log").exists()
        frames = sorted(p.name for p in (tmp_path / "frames").iterdir())
        assert frames == [f"circles-{i:05d}.gp" for i in range(4)]

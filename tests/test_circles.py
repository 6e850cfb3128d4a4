# ===--------------------------------------------------------------------------------------===#
#
# Part of the CircleSim Project, under the Apache License v2.0.
# See https://www.apache.org/licenses/LICENSE-2.0 for license information.
# SPDX-License-Identifier: Apache-2.0
#
# ===--------------------------------------------------------------------------------------===#

"""Unit tests for the circle store and the position integrator."""

from types import SimpleNamespace

import numpy as np
import pytest

import circlesim.circles as circles_mod
from circlesim.circles import (
    FIXED_POINT_SCALE,
    AllocationError,
    CircleSet,
    DisplacementDelta,
    init_circles,
)
from circlesim.config import Bounds


def test_init_circles_respects_bounds():
    bounds = Bounds(xmin=-5.0, xmax=5.0, ymin=10.0, ymax=20.0, rmin=1.0, rmax=2.0)
    circles = init_circles(500, bounds, np.random.default_rng(0))

    assert len(circles) == 500
    assert np.all((circles.x >= -5.0) & (circles.x <= 5.0))
    assert np.all((circles.y >= 10.0) & (circles.y <= 20.0))
    assert np.all((circles.r >= 1.0) & (circles.r <= 2.0))
    assert not circles.dx.any() and not circles.dy.any()


def test_init_circles_is_deterministic_with_seed():
    a = init_circles(100, random_state=np.random.default_rng(42))
    b = init_circles(100, random_state=np.random.default_rng(42))
    c = init_circles(100, random_state=np.random.default_rng(43))

    assert a.digest() == b.digest()
    assert a.digest() != c.digest()


def test_constructor_rejects_inconsistent_arrays():
    with pytest.raises(ValueError):
        CircleSet([0.0, 1.0], [0.0], [1.0, 1.0])
    with pytest.raises(ValueError):
        CircleSet([0.0], [0.0], [-1.0])


def test_allocate_rejects_negative_size():
    with pytest.raises(AllocationError):
        CircleSet.allocate(-1)


def test_allocate_fails_when_memory_is_short(monkeypatch):
    monkeypatch.setattr(
        circles_mod.psutil, "virtual_memory", lambda: SimpleNamespace(available=1024)
    )
    with pytest.raises(AllocationError):
        CircleSet.allocate(1000)


def test_replace_overwrites_in_place():
    circles = CircleSet.allocate(3)
    x_ref = circles.x
    source = CircleSet([1.0, 2.0, 3.0], [4.0, 5.0, 6.0], [7.0, 8.0, 9.0])

    circles.replace(source.state())

    assert circles.x is x_ref
    assert circles.digest() == source.digest()


def test_replace_rejects_wrong_length():
    circles = CircleSet.allocate(3)
    with pytest.raises(ValueError):
        circles.replace({"x": np.zeros(2)})


def test_state_returns_copies():
    circles = CircleSet([1.0], [2.0], [3.0])
    state = circles.state()
    state["x"][0] = 100.0
    assert circles.x[0] == 1.0


def test_apply_displacements_and_move_all():
    circles = CircleSet([0.0, 10.0], [0.0, 10.0], [1.0, 1.0])
    delta = DisplacementDelta.zeros(2)
    delta.x[:] = [-int(FIXED_POINT_SCALE), int(FIXED_POINT_SCALE) // 2]
    delta.y[:] = [0, 3 * int(FIXED_POINT_SCALE)]

    circles.apply_displacements(delta)
    circles.move_all()

    np.testing.assert_array_equal(circles.dx, [-1.0, 0.5])
    np.testing.assert_array_equal(circles.x, [-1.0, 10.5])
    np.testing.assert_array_equal(circles.y, [0.0, 13.0])


def test_reset_displacements():
    circles = CircleSet([0.0], [0.0], [1.0])
    circles.dx[:] = 3.0
    circles.dy[:] = -2.0
    circles.reset_displacements()
    assert circles.dx[0] == 0.0 and circles.dy[0] == 0.0


def test_delta_merge_is_exact_and_order_free():
    rng = np.random.default_rng(1)
    parts = []
    for _ in range(4):
        delta = DisplacementDelta.zeros(50)
        delta.x[:] = rng.integers(-(2**40), 2**40, size=50)
        delta.y[:] = rng.integers(-(2**40), 2**40, size=50)
        parts.append(delta)

    forward = parts[0] + parts[1] + parts[2] + parts[3]
    backward = parts[3] + parts[2] + parts[1] + parts[0]

    np.testing.assert_array_equal(forward.x, backward.x)
    np.testing.assert_array_equal(forward.y, backward.y)


def test_delta_merge_rejects_size_mismatch():
    with pytest.raises(ValueError):
        DisplacementDelta.zeros(2) + DisplacementDelta.zeros(3)

# ===--------------------------------------------------------------------------------------===#
#
# Part of the CircleSim Project, under the Apache License v2.0.
# See https://www.apache.org/licenses/LICENSE-2.0 for license information.
# SPDX-License-Identifier: Apache-2.0
#
# ===--------------------------------------------------------------------------------------===#
#
# This file implements the strong and weak scaling benchmarks of CircleSim.
#
# ===--------------------------------------------------------------------------------------===#

from typing import Any, Dict, List, Optional

import argparse
import dataclasses
import math
import sys
from dataclasses import dataclass

import psutil

from circlesim.config import BACKENDS, KERNELS, SimConfig
from circlesim.simulation import simulate


@dataclass
class ScalingRow:
    """Timings of the repetitions of one benchmark configuration."""

    num_workers: int
    num_circles: int
    times_s: List[float]

    def format(self, with_size: bool = False) -> str:
        cells: List[str] = [str(self.num_circles)] if with_size else []
        cells.append(str(self.num_workers))
        cells.extend(f"{t:f}" for t in self.times_s)
        return "\t".join(cells)


def _time_runs(config: SimConfig, repetitions: int) -> List[float]:
    return [simulate(config).elapsed_s for _ in range(repetitions)]


def strong_scaling(
    base_config: SimConfig,
    max_workers: Optional[int] = None,
    repetitions: int = 5,
) -> List[ScalingRow]:
    """Times the same problem size on 1 to ``max_workers`` workers.

    The measured times give the speedup and the strong scaling efficiency.

    Args:
        base_config: Config of every run; ``num_workers`` is overridden.
        max_workers: Largest worker count. Defaults to the number of logical cpus.
        repetitions: Number of runs per worker count.

    Returns:
        One row per worker count.
    """
    max_workers = max_workers or psutil.cpu_count(logical=True) or 1
    rows: List[ScalingRow] = []
    for p in range(1, max_workers + 1):
        config: SimConfig = dataclasses.replace(base_config, num_workers=p)
        rows.append(ScalingRow(p, config.num_circles, _time_runs(config, repetitions)))
    return rows


def weak_scaling(
    base_config: SimConfig,
    max_workers: Optional[int] = None,
    repetitions: int = 5,
) -> List[ScalingRow]:
    """Times problem sizes growing with the worker count.

    The force computation costs O(n²), so ``p`` workers get ``n0 * sqrt(p)`` circles,
    ``n0`` being ``base_config.num_circles``; the work per worker stays constant.

    Args:
        base_config: Config of every run; ``num_workers`` and ``num_circles`` are
            overridden.
        max_workers: Largest worker count. Defaults to the number of logical cpus.
        repetitions: Number of runs per worker count.

    Returns:
        One row per worker count.
    """
    max_workers = max_workers or psutil.cpu_count(logical=True) or 1
    rows: List[ScalingRow] = []
    for p in range(1, max_workers + 1):
        n: int = int(round(base_config.num_circles * math.sqrt(p)))
        config: SimConfig = dataclasses.replace(base_config, num_workers=p, num_circles=n)
        rows.append(ScalingRow(p, n, _time_runs(config, repetitions)))
    return rows


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Strong and weak scaling benchmarks.")
    parser.add_argument("mode", choices=("strong", "weak"), help="kind of scaling to measure.")
    parser.add_argument(
        "--ncircles",
        type=int,
        default=None,
        help="problem size (strong) or base problem size (weak).",
    )
    parser.add_argument("--iterations", type=int, default=100, help="iterations per run.")
    parser.add_argument("--max_workers", type=int, default=None, help="largest worker count.")
    parser.add_argument("--repetitions", type=int, default=5, help="runs per worker count.")
    parser.add_argument("--backend", type=str, choices=BACKENDS, default="process")
    parser.add_argument("--kernel", type=str, choices=KERNELS, default="numpy")
    parser.add_argument("--seed", type=int, default=0, help="seed of the initial placement.")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args: Dict[str, Any] = vars(parse_args(argv))
    weak: bool = args["mode"] == "weak"
    num_circles: int = args["ncircles"] or (1000 if weak else 5000)

    config: SimConfig = SimConfig(
        num_circles=num_circles,
        iterations=args["iterations"],
        backend=args["backend"],
        kernel=args["kernel"],
        seed=args["seed"],
        report_progress=False,
        log_level="WARNING",
    )
    config.validate()

    scaling = weak_scaling if weak else strong_scaling
    header: List[str] = (["n"] if weak else []) + ["p"]
    header += [f"t{rep + 1}" for rep in range(args["repetitions"])]
    print("\t".join(header))
    for row in scaling(config, args["max_workers"], args["repetitions"]):
        print(row.format(with_size=weak), flush=True)
    return 0


if __name__ == "__main__":
    sys.exit(main())

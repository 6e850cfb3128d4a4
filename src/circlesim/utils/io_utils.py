# ===--------------------------------------------------------------------------------------===#
#
# Part of the CircleSim Project, under the Apache License v2.0.
# See https://www.apache.org/licenses/LICENSE-2.0 for license information.
# SPDX-License-Identifier: Apache-2.0
#
# ===--------------------------------------------------------------------------------------===#
#
# This file implements saving and loading of circle sets and run trajectories.
#
# ===--------------------------------------------------------------------------------------===#

import logging
import pathlib
from typing import Any, Dict, List, Optional

import numpy as np
import yaml

from circlesim.circles import CircleSet


def save_circles(circles: CircleSet, path: str | pathlib.Path) -> None:
    """Saves every field of a circle set to an ``.npz`` archive."""
    np.savez(path, **circles.state())


def load_circles(path: str | pathlib.Path) -> CircleSet:
    """Loads a circle set saved by `save_circles`.

    Only ``x``, ``y`` and ``r`` are required, so hand-made archives can be used to
    seed a run.

    Raises:
        ValueError: If a required array is missing or the arrays are inconsistent.
    """
    with np.load(path) as data:
        missing: List[str] = [name for name in ("x", "y", "r") if name not in data.files]
        if missing:
            raise ValueError(f"Circle archive '{path}' lacks fields {missing}.")
        state: Dict[str, np.ndarray] = {name: data[name] for name in data.files}
    return CircleSet.from_state(state)


def save_trajectory(
    overlaps: List[int],
    iteration_times: List[float],
    elapsed_s: float,
    seed: Optional[int],
    path: str | pathlib.Path,
) -> None:
    """Saves the per-iteration overlap counts and timings of a run as YAML."""
    data: Dict[str, Any] = {
        "seed": seed,
        "elapsed_s": float(elapsed_s),
        "iterations": [
            {"iteration": it + 1, "overlaps": int(count), "time_s": float(t)}
            for it, (count, t) in enumerate(zip(overlaps, iteration_times))
        ],
    }
    with open(path, "w") as f:
        yaml.safe_dump(data, f, sort_keys=False)


def save_results(
    circles: CircleSet,
    overlaps: List[int],
    iteration_times: List[float],
    elapsed_s: float,
    seed: Optional[int],
    out_dir: str | pathlib.Path,
    logger: Optional[logging.Logger] = None,
) -> None:
    """Saves the final circles and the trajectory of a run inside ``out_dir``."""
    logger = logger if logger is not None else logging.getLogger(__name__)
    out_dir = pathlib.Path(out_dir)

    circles_path: pathlib.Path = out_dir.joinpath("final_circles.npz")
    trajectory_path: pathlib.Path = out_dir.joinpath("trajectory.yaml")
    save_circles(circles, circles_path)
    save_trajectory(overlaps, iteration_times, elapsed_s, seed, trajectory_path)

    logger.info(f"Saved final circles at '{circles_path}'.")
    logger.info(f"Saved trajectory at '{trajectory_path}'.")

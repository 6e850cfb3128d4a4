# ===--------------------------------------------------------------------------------------===#
#
# Part of the CircleSim Project, under the Apache License v2.0.
# See https://www.apache.org/licenses/LICENSE-2.0 for license information.
# SPDX-License-Identifier: Apache-2.0
#
# ===--------------------------------------------------------------------------------------===#
#
# This file implements the circle store, its displacement deltas and the position integrator.
#
# ===--------------------------------------------------------------------------------------===#

from typing import Dict, Optional

from dataclasses import dataclass
import hashlib

import numpy as np
import psutil

from circlesim.config import Bounds

FIXED_POINT_BITS: int = 32
FIXED_POINT_SCALE: float = float(2**FIXED_POINT_BITS)

# x, y, r, dx, dy as float64 plus the two int64 accumulators of a delta
BYTES_PER_CIRCLE: int = 5 * 8 + 2 * 8

STATE_FIELDS = ("x", "y", "r", "dx", "dy")


class AllocationError(MemoryError):
    """Raised when a circle set cannot be allocated."""


@dataclass
class DisplacementDelta:
    """Local displacement contributions of one worker for the whole circle set.

    Contributions are stored as int64 fixed-point ticks of ``1 / FIXED_POINT_SCALE``
    length units. Integer addition is associative and commutative, so deltas computed
    by any number of workers can be merged in any order with a bit-exact result.

    Attributes:
        x: Accumulated ticks along the x axis, one entry per circle.
        y: Accumulated ticks along the y axis, one entry per circle.
    """

    x: np.ndarray
    y: np.ndarray

    @classmethod
    def zeros(cls, n: int) -> "DisplacementDelta":
        return cls(x=np.zeros(n, dtype=np.int64), y=np.zeros(n, dtype=np.int64))

    def __len__(self) -> int:
        return self.x.shape[0]

    def __add__(self, other: "DisplacementDelta") -> "DisplacementDelta":
        if len(self) != len(other):
            raise ValueError(f"Cannot merge deltas of sizes {len(self)} and {len(other)}.")
        return DisplacementDelta(x=self.x + other.x, y=self.y + other.y)

    def clear(self) -> None:
        self.x.fill(0)
        self.y.fill(0)


class CircleSet:
    """Fixed-size, struct-of-arrays store of circles.

    Every worker owns one replica. Index identity is stable for the whole run and
    is what partitions and replica comparisons are based on.

    Attributes:
        x: Center x coordinates.
        y: Center y coordinates.
        r: Radii.
        dx: Pending displacement along x for the current iteration.
        dy: Pending displacement along y for the current iteration.
    """

    def __init__(self, x: np.ndarray, y: np.ndarray, r: np.ndarray):
        """Builds a circle set from coordinate and radius arrays.

        Args:
            x: Center x coordinates.
            y: Center y coordinates.
            r: Non-negative radii.

        Raises:
            ValueError: If the arrays differ in length or a radius is negative.
        """
        x = np.array(x, dtype=np.float64)
        y = np.array(y, dtype=np.float64)
        r = np.array(r, dtype=np.float64)
        if not (x.ndim == y.ndim == r.ndim == 1) or not (x.shape == y.shape == r.shape):
            raise ValueError(
                f"x, y and r must be 1-D arrays of equal length, got {x.shape}, {y.shape}, {r.shape}."
            )
        if np.any(r < 0):
            raise ValueError("Radii must be non-negative.")

        self.x: np.ndarray = x
        self.y: np.ndarray = y
        self.r: np.ndarray = r
        self.dx: np.ndarray = np.zeros_like(x)
        self.dy: np.ndarray = np.zeros_like(x)

    def __repr__(self):
        return f"{self.__class__.__name__}(n={len(self)})"

    def __len__(self) -> int:
        return self.x.shape[0]

    @classmethod
    def allocate(cls, n: int) -> "CircleSet":
        """Allocates a zeroed set of ``n`` circles.

        Args:
            n: Number of circles.

        Returns:
            A circle set with all fields set to zero.

        Raises:
            AllocationError: If ``n`` is negative or the set does not fit in the
                memory currently available.
        """
        if n < 0:
            raise AllocationError(f"Cannot allocate {n} circles.")
        required_b: int = n * BYTES_PER_CIRCLE
        available_b: int = psutil.virtual_memory().available
        if required_b > available_b:
            raise AllocationError(
                f"{n} circles need {required_b} bytes but only {available_b} are available."
            )
        try:
            zeros: np.ndarray = np.zeros(n, dtype=np.float64)
            return cls(zeros, zeros, zeros)
        except MemoryError as err:
            raise AllocationError(f"Unable to allocate {n} circles.") from err

    @classmethod
    def from_state(cls, state: Dict[str, np.ndarray]) -> "CircleSet":
        """Rebuilds a circle set from the output of `state`."""
        circles = cls(state["x"], state["y"], state["r"])
        if "dx" in state:
            circles.dx[:] = state["dx"]
            circles.dy[:] = state["dy"]
        return circles

    def state(self) -> Dict[str, np.ndarray]:
        """Returns copies of every field, keyed by field name."""
        return {name: getattr(self, name).copy() for name in STATE_FIELDS}

    def replace(self, state: Dict[str, np.ndarray]) -> None:
        """Overwrites the whole replica in place with an authoritative copy.

        Args:
            state: Mapping with at least ``x``, ``y`` and ``r`` arrays of this set's
                length. ``dx`` and ``dy`` are copied when present.

        Raises:
            ValueError: If an array has the wrong length.
        """
        for name in STATE_FIELDS:
            if name not in state:
                continue
            values = np.asarray(state[name], dtype=np.float64)
            if values.shape != (len(self),):
                raise ValueError(
                    f"Field '{name}' has shape {values.shape}, expected ({len(self)},)."
                )
            np.copyto(getattr(self, name), values)

    def replace_positions(self, x: np.ndarray, y: np.ndarray) -> None:
        self.replace({"x": x, "y": y})

    def reset_displacements(self) -> None:
        """Sets all pending displacements to zero."""
        self.dx.fill(0.0)
        self.dy.fill(0.0)

    def apply_displacements(self, delta: DisplacementDelta) -> None:
        """Converts merged fixed-point contributions into the pending displacements."""
        if len(delta) != len(self):
            raise ValueError(f"Delta of size {len(delta)} does not match {len(self)} circles.")
        # dividing by a power of two is exact
        np.divide(delta.x, FIXED_POINT_SCALE, out=self.dx)
        np.divide(delta.y, FIXED_POINT_SCALE, out=self.dy)

    def move_all(self) -> None:
        """Moves every circle by its pending displacement.

        Must only run once the displacements of all workers have been merged,
        otherwise replicas would integrate different values.
        """
        self.x += self.dx
        self.y += self.dy

    def digest(self) -> str:
        """Returns a sha256 hex digest of every field, used to compare replicas."""
        h = hashlib.sha256()
        for name in STATE_FIELDS:
            h.update(np.ascontiguousarray(getattr(self, name)).tobytes())
        return h.hexdigest()


def init_circles(
    n: int, bounds: Optional[Bounds] = None, random_state: Optional[np.random.Generator] = None
) -> CircleSet:
    """Creates ``n`` randomly placed circles.

    Each circle draws its center uniformly in ``[xmin, xmax] x [ymin, ymax]`` and its
    radius uniformly in ``[rmin, rmax]``. The draws are made in circle order, so the
    same generator seed always yields the same set.

    Args:
        n: Number of circles.
        bounds: Sampling bounds. Defaults to `Bounds()`.
        random_state: Random generator. A fresh unseeded one is used if None.

    Returns:
        The new circle set, with zero displacements.
    """
    bounds = bounds if bounds is not None else Bounds()
    random_state = random_state if random_state is not None else np.random.default_rng()

    circles: CircleSet = CircleSet.allocate(n)
    draws: np.ndarray = random_state.uniform(0.0, 1.0, size=(n, 3))
    circles.x[:] = bounds.xmin + draws[:, 0] * (bounds.xmax - bounds.xmin)
    circles.y[:] = bounds.ymin + draws[:, 1] * (bounds.ymax - bounds.ymin)
    circles.r[:] = bounds.rmin + draws[:, 2] * (bounds.rmax - bounds.rmin)
    return circles

# ===--------------------------------------------------------------------------------------===#
#
# Part of the CircleSim Project, under the Apache License v2.0.
# See https://www.apache.org/licenses/LICENSE-2.0 for license information.
# SPDX-License-Identifier: Apache-2.0
#
# ===--------------------------------------------------------------------------------------===#
#
# This file implements the all-pairs overlap and repulsion kernel.
#
# ===--------------------------------------------------------------------------------------===#

from typing import Callable, Dict, List

import math

import numpy as np

from circlesim.circles import FIXED_POINT_SCALE, CircleSet, DisplacementDelta

EPSILON: float = 1e-5
K: float = 1.5
SQRT2: float = math.sqrt(2.0)
# largest single contribution, in ticks; leaves room to sum 2**10 of them in int64
MAX_TICKS: float = float(2**52)


class OverlapInvariantError(AssertionError):
    """Raised when a detected overlap has a non-positive depth."""


def _to_ticks(value: float, i: int, j: int) -> int:
    if not abs(value) < MAX_TICKS:
        raise OverflowError(f"Displacement between circles {i} and {j} is out of range: {value}.")
    return round(value)


def _scalar_kernel(
    circles: CircleSet, start: int, end: int, delta: DisplacementDelta, epsilon: float, k: float
) -> int:
    """Reference kernel: one pair at a time, in plain Python floats."""
    n: int = len(circles)
    xs: List[float] = circles.x.tolist()
    ys: List[float] = circles.y.tolist()
    rs: List[float] = circles.r.tolist()
    acc_x: List[int] = [0] * n
    acc_y: List[int] = [0] * n

    n_intersections: int = 0
    for i in range(start, end):
        for j in range(n):
            if j == i:
                continue
            deltax: float = xs[j] - xs[i]
            deltay: float = ys[j] - ys[i]
            dist: float = math.sqrt(deltax * deltax + deltay * deltay)
            rsum: float = rs[i] + rs[j]
            if dist < rsum - epsilon:
                if j > i:
                    n_intersections += 1
                overlap: float = rsum - dist
                if not overlap > 0.0:
                    raise OverlapInvariantError(
                        f"Circles {i} and {j} overlap with depth {overlap}."
                    )
                if dist < epsilon:
                    overlap_x = overlap / SQRT2
                    overlap_y = overlap / SQRT2
                else:
                    overlap_x = overlap / dist * deltax
                    overlap_y = overlap / dist * deltay
                ticks_x: int = _to_ticks(overlap_x / k * FIXED_POINT_SCALE, i, j)
                ticks_y: int = _to_ticks(overlap_y / k * FIXED_POINT_SCALE, i, j)
                acc_x[i] -= ticks_x
                acc_y[i] -= ticks_y
                acc_x[j] += ticks_x
                acc_y[j] += ticks_y

    delta.x += np.array(acc_x, dtype=np.int64)
    delta.y += np.array(acc_y, dtype=np.int64)
    return n_intersections


def _numpy_kernel(
    circles: CircleSet, start: int, end: int, delta: DisplacementDelta, epsilon: float, k: float
) -> int:
    """Row-vectorized kernel, performing the same float operations as `_scalar_kernel`."""
    x, y, r = circles.x, circles.y, circles.r

    n_intersections: int = 0
    for i in range(start, end):
        deltax: np.ndarray = x - x[i]
        deltay: np.ndarray = y - y[i]
        dist: np.ndarray = np.sqrt(deltax * deltax + deltay * deltay)
        rsum: np.ndarray = r[i] + r
        hits: np.ndarray = np.flatnonzero(dist < rsum - epsilon)
        hits = hits[hits != i]
        if hits.size == 0:
            continue

        n_intersections += int(np.count_nonzero(hits > i))
        dist = dist[hits]
        overlap: np.ndarray = rsum[hits] - dist
        if not np.all(overlap > 0.0):
            bad: int = int(hits[np.argmin(overlap > 0.0)])
            raise OverlapInvariantError(f"Circles {i} and {bad} overlap with a non-positive depth.")

        coincide: np.ndarray = dist < epsilon
        safe_dist: np.ndarray = np.where(coincide, 1.0, dist)
        overlap_x: np.ndarray = np.where(coincide, overlap / SQRT2, overlap / safe_dist * deltax[hits])
        overlap_y: np.ndarray = np.where(coincide, overlap / SQRT2, overlap / safe_dist * deltay[hits])
        scaled_x: np.ndarray = overlap_x / k * FIXED_POINT_SCALE
        scaled_y: np.ndarray = overlap_y / k * FIXED_POINT_SCALE
        in_range: np.ndarray = (np.abs(scaled_x) < MAX_TICKS) & (np.abs(scaled_y) < MAX_TICKS)
        if not np.all(in_range):
            bad = int(hits[np.argmin(in_range)])
            raise OverflowError(f"Displacement between circles {i} and {bad} is out of range.")
        ticks_x: np.ndarray = np.rint(scaled_x).astype(np.int64)
        ticks_y: np.ndarray = np.rint(scaled_y).astype(np.int64)

        delta.x[i] -= ticks_x.sum()
        delta.y[i] -= ticks_y.sum()
        # hits are unique within a row
        delta.x[hits] += ticks_x
        delta.y[hits] += ticks_y

    return n_intersections


KERNELS: Dict[str, Callable[..., int]] = {
    "numpy": _numpy_kernel,
    "scalar": _scalar_kernel,
}


def compute_forces(
    circles: CircleSet,
    start: int,
    end: int,
    delta: DisplacementDelta,
    epsilon: float = EPSILON,
    k: float = K,
    kernel: str = "numpy",
) -> int:
    """Accumulates the repulsion between overlapping circles for a range of rows.

    Row ``i`` scans every ``j != i`` of the whole set. On overlap, the depth is
    split along the unit vector from ``i`` to ``j`` (or along the diagonal when the
    centers coincide), damped by ``k``, subtracted from ``i`` and added to ``j``. A
    pair is therefore visited once from each of its rows, and coincident centers get
    a zero net displacement. Writes to ``j`` outside ``[start, end)`` are expected:
    they are reconciled when the deltas of all workers are summed.

    Args:
        circles: Full replica of the circle set. Only read.
        start: First row to evaluate.
        end: One past the last row to evaluate.
        delta: Accumulator receiving the displacement contributions.
        epsilon: Overlap tolerance and coincidence threshold.
        k: Damping constant.
        kernel: ``"numpy"`` or ``"scalar"``. Both give bit-identical results.

    Returns:
        The number of overlapping pairs ``{i, j}`` with ``i`` in the range and
        ``j > i``. Summed over a partition of ``[0, n)``, every overlapping pair is
        counted once.

    Raises:
        OverlapInvariantError: If a detected overlap has a non-positive depth.
        OverflowError: If a displacement does not fit the fixed-point accumulator.
        ValueError: If the range or the delta does not match the circle set, or the
            kernel is unknown.
    """
    n: int = len(circles)
    if not 0 <= start <= end <= n:
        raise ValueError(f"Invalid range [{start}, {end}) for {n} circles.")
    if len(delta) != n:
        raise ValueError(f"Delta of size {len(delta)} does not match {n} circles.")
    try:
        kernel_fn: Callable[..., int] = KERNELS[kernel]
    except KeyError as err:
        raise ValueError(f"Unknown kernel '{kernel}'.") from err

    return kernel_fn(circles, start, end, delta, epsilon, k)

# ===--------------------------------------------------------------------------------------===#
#
# Part of the CircleSim Project, under the Apache License v2.0.
# See https://www.apache.org/licenses/LICENSE-2.0 for license information.
# SPDX-License-Identifier: Apache-2.0
#
# ===--------------------------------------------------------------------------------------===#
#
# This file implements the static block partitioning of circle indices among workers.
#
# ===--------------------------------------------------------------------------------------===#

from typing import List, Tuple


def partition(n: int, worker_count: int, worker_index: int) -> Tuple[int, int]:
    """Returns the contiguous index range assigned to a worker.

    The range is computed as ``[index * n // count, (index + 1) * n // count)``,
    so every worker can derive its own share, and every other worker's share,
    without any communication. Ranges of consecutive workers are adjacent and
    their sizes differ by at most one.

    Args:
        n: Number of circles.
        worker_count: Total number of workers.
        worker_index: Index (rank) of the worker, in ``[0, worker_count)``.

    Returns:
        A ``(start, end)`` tuple describing the half-open range ``[start, end)``.

    Raises:
        ValueError: If ``n`` is negative, ``worker_count`` is smaller than one or
            ``worker_index`` is out of range.
    """
    if n < 0:
        raise ValueError(f"Number of circles must be non-negative, got {n}.")
    if worker_count < 1:
        raise ValueError(f"Worker count must be at least 1, got {worker_count}.")
    if not 0 <= worker_index < worker_count:
        raise ValueError(f"Worker index {worker_index} out of range [0, {worker_count}).")

    start: int = (worker_index * n) // worker_count
    end: int = ((worker_index + 1) * n) // worker_count
    return (start, end)


def partitions(n: int, worker_count: int) -> List[Tuple[int, int]]:
    """Returns the ranges of all workers, ordered by worker index."""
    return [partition(n, worker_count, idx) for idx in range(worker_count)]

# ===--------------------------------------------------------------------------------------===#
#
# Part of the CircleSim Project, under the Apache License v2.0.
# See https://www.apache.org/licenses/LICENSE-2.0 for license information.
# SPDX-License-Identifier: Apache-2.0
#
# ===--------------------------------------------------------------------------------------===#

"""Unit tests for the static partitioning of circle indices."""

import pytest

from circlesim.partition import partition, partitions


@pytest.mark.parametrize("n", [0, 1, 2, 7, 10, 100, 1001])
@pytest.mark.parametrize("workers", [1, 2, 3, 4, 7, 16])
def test_partitions_tile_the_index_range(n, workers):
    ranges = partitions(n, workers)

    covered = [idx for start, end in ranges for idx in range(start, end)]
    assert covered == list(range(n))

    sizes = [end - start for start, end in ranges]
    assert max(sizes) - min(sizes) <= 1


def test_partition_matches_integer_division_rule():
    assert partition(10, 4, 0) == (0, 2)
    assert partition(10, 4, 1) == (2, 5)
    assert partition(10, 4, 2) == (5, 7)
    assert partition(10, 4, 3) == (7, 10)


def test_more_workers_than_circles_gives_empty_ranges():
    ranges = partitions(2, 4)
    assert ranges == [(0, 0), (0, 1), (1, 1), (1, 2)]


def test_partition_is_deterministic():
    assert partitions(12345, 6) == partitions(12345, 6)


@pytest.mark.parametrize(
    "n, workers, index",
    [(-1, 2, 0), (10, 0, 0), (10, 2, 2), (10, 2, -1)],
)
def test_invalid_partition_arguments(n, workers, index):
    with pytest.raises(ValueError):
        partition(n, workers, index)

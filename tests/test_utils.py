# ===--------------------------------------------------------------------------------------===#
#
# Part of the CircleSim Project, under the Apache License v2.0.
# See https://www.apache.org/licenses/LICENSE-2.0 for license information.
# SPDX-License-Identifier: Apache-2.0
#
# ===--------------------------------------------------------------------------------------===#

"""Unit tests for logging, frame dumps and circle archives."""

import logging
import queue

import numpy as np
import pytest

from circlesim.circles import CircleSet
from circlesim.config import Bounds
from circlesim.utils.frame_utils import dump_circles
from circlesim.utils.io_utils import load_circles, save_circles
from circlesim.utils.logging_utils import SizeLimitedFormatter, close_logger, get_logger


class TestLogging:
    """Tests the worker loggers."""

    def test_long_messages_are_truncated(self):
        formatter = SizeLimitedFormatter("%(message)s", max_msg_sz=20)
        record = logging.LogRecord("x", logging.INFO, __file__, 1, "%s", ("a" * 50,), None)

        formatted = formatter.format(record)

        assert formatted == "a" * 5 + "... [TRUNCATED]"
        assert record.getMessage() == "a" * 50

    def test_formatter_rejects_tiny_limit(self):
        with pytest.raises(ValueError):
            SizeLimitedFormatter(max_msg_sz=10)

    def test_queue_logger_prefixes_rank(self):
        log_queue = queue.Queue()
        logger = get_logger(rank=3, log_queue=log_queue)
        try:
            logger.info("hello")
            message = log_queue.get_nowait()
        finally:
            close_logger(logger)

        assert message.startswith("[worker 3] ")
        assert message.endswith("| hello")
        assert not logger.handlers

    def test_file_logger(self, tmp_path):
        logger = get_logger(rank=1, results_dir=tmp_path, level="DEBUG")
        try:
            logger.debug("written")
        finally:
            close_logger(logger)
        assert "written" in (tmp_path / "results.log").read_text()


def test_frame_dump(tmp_path):
    circles = CircleSet([1.0, 2.5], [3.0, 4.0], [5.0, 6.0])
    path = dump_circles(circles, 7, tmp_path / "frames", Bounds())

    lines = path.read_text().splitlines()
    assert path.name == "circles-00007.gp"
    assert lines[0] == "set term png notransparent large"
    assert lines[1] == 'set output "circles-00007.png"'
    assert lines[2] == "set xrange [-200.000000:1200.000000]"
    assert lines[-3:] == ["1.000000 3.000000 5.000000", "2.500000 4.000000 6.000000", "e"]


def test_circle_archive(tmp_path):
    circles = CircleSet([1.0, 2.0], [3.0, 4.0], [5.0, 6.0])
    circles.dx[:] = [0.5, -0.5]
    save_circles(circles, tmp_path / "c.npz")

    loaded = load_circles(tmp_path / "c.npz")
    assert loaded.digest() == circles.digest()


def test_circle_archive_requires_radii(tmp_path):
    np.savez(tmp_path / "bad.npz", x=np.zeros(2), y=np.zeros(2))
    with pytest.raises(ValueError):
        load_circles(tmp_path / "bad.npz")

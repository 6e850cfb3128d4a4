# ===--------------------------------------------------------------------------------------===#
#
# Part of the CircleSim Project, under the Apache License v2.0.
# See https://www.apache.org/licenses/LICENSE-2.0 for license information.
# SPDX-License-Identifier: Apache-2.0
#
# ===--------------------------------------------------------------------------------------===#
#
# This file implements distributed logging for CircleSim.
#
# ===--------------------------------------------------------------------------------------===#

from typing import Dict, Optional

import logging
import multiprocessing as mp
import os
import pathlib
import queue
import re
import time
from collections import deque


class SizeLimitedFormatter(logging.Formatter):
    """Logging formatter that enforces a maximum message size.

    Messages longer than the limit are cut and marked with a truncation indicator.
    The limit applies to the message content only, not to the timestamp, level and
    other fields added by the format string.

    Attributes:
        max_msg_sz: Maximum allowed length for log message content in characters.
    """

    def __init__(
        self, fmt: Optional[str] = None, datefmt: Optional[str] = None, max_msg_sz: int = 256
    ) -> None:
        """Initialize the size-limited formatter.

        Args:
            fmt: Format string for log messages. If None, uses the default format.
            datefmt: Format string for the date/time portion of log messages.
            max_msg_sz: Maximum allowed length for the message content. Longer
                messages are truncated with a "... [TRUNCATED]" suffix.

        Raises:
            ValueError: If max_msg_sz is less than 15 characters.
        """
        if max_msg_sz < 15:
            raise ValueError(
                "max_msg_sz must be at least 15 characters to accommodate truncation indicator"
            )

        super().__init__(fmt, datefmt)
        self.max_msg_sz: int = max_msg_sz

    def format(self, record: logging.LogRecord) -> str:
        """Format the record, truncating its message if it exceeds the size limit.

        The record is restored after formatting so other handlers see the original.
        """
        message_content: str = record.getMessage()

        if len(message_content) > self.max_msg_sz:
            original_msg = record.msg
            original_args = record.args

            truncate_length: int = self.max_msg_sz - 15
            record.msg = message_content[:truncate_length] + "... [TRUNCATED]"
            record.args = None

            formatted: str = super().format(record)

            record.msg = original_msg
            record.args = original_args
            return formatted

        return super().format(record)


class QueueHandler(logging.Handler):
    """Logging handler that sends formatted records to a multiprocessing queue.

    Lets every worker, whether a thread or a process, feed a single dashboard.
    """

    def __init__(self, queue: mp.Queue):
        super().__init__()
        self.queue = queue

    def emit(self, record: logging.LogRecord) -> None:
        try:
            msg = self.format(record)
            self.queue.put(msg)
        except Exception:
            self.handleError(record)


def get_logger(
    rank: int = 0,
    results_dir: Optional[pathlib.Path] = None,
    append_mode: bool = False,
    log_queue: Optional[mp.Queue] = None,
    max_msg_sz: int = 256,
    level: str = "INFO",
) -> logging.Logger:
    """Creates the logger of one worker.

    Every message is prefixed with the worker rank. Records go to the log queue when
    one is given, to stderr otherwise, and additionally to ``results.log`` inside
    ``results_dir`` when it is set.

    Args:
        rank: Rank of the worker creating the logger.
        results_dir: Directory of the log file. If None, no file is written.
        append_mode: If True, append to an existing log file; if False, overwrite.
        log_queue: Optional multiprocessing queue for centralized logging.
        max_msg_sz: Maximum size for log messages in characters.
        level: Name of the logging level.

    Returns:
        Configured Logger instance for the worker.
    """
    if results_dir:
        sanitized_dir: str = str(results_dir).replace("/", "_").replace("\\", "_")
        logger_name: str = f"circlesim_{sanitized_dir}_{rank}"
    else:
        logger_name: str = f"circlesim_stdout_{rank}"

    logger: logging.Logger = logging.getLogger(logger_name)
    if not logger.handlers:
        logger.setLevel(level.upper())
        log_formatter = SizeLimitedFormatter(
            f"[worker {rank}] %(asctime)s | %(levelname)s | %(process)d | %(message)s",
            max_msg_sz=max_msg_sz,
        )
        logger.propagate = False

        if log_queue:
            queue_handler: QueueHandler = QueueHandler(log_queue)
            queue_handler.setFormatter(log_formatter)
            logger.addHandler(queue_handler)
        else:
            stream_handler: logging.StreamHandler = logging.StreamHandler()
            stream_handler.setFormatter(log_formatter)
            logger.addHandler(stream_handler)

        if results_dir:
            fh: logging.FileHandler = logging.FileHandler(
                pathlib.Path(results_dir).joinpath("results.log"),
                mode="a" if append_mode else "w",
            )
            fh.setFormatter(log_formatter)
            logger.addHandler(fh)

    return logger


def close_logger(logger: logging.Logger) -> None:
    """Detaches and closes every handler, so a later run can reconfigure the logger."""
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()


def cli_logger(
    log_queue: mp.Queue,
    num_workers: int,
    refresh_rate: float = 0.5,
    worker_hist_len: int = 10,
) -> None:
    """Displays the latest log messages of every worker as a console dashboard.

    Runs as a separate process until a None sentinel is read from the queue.

    Args:
        log_queue: Queue containing formatted log messages from all workers.
        num_workers: Total number of workers.
        refresh_rate: Time in seconds between dashboard refreshes.
        worker_hist_len: Maximum number of log messages kept per worker.
    """
    worker_logs: Dict[int, deque] = {i: deque(maxlen=worker_hist_len) for i in range(num_workers)}
    worker_id_pattern = re.compile(r"\[worker (\d+)\]")

    worker_iters: Dict[int, str] = {i: "Initializing..." for i in range(num_workers)}
    iter_pattern = re.compile(r"========= ITERATION (\d+) =========")

    try:
        while True:
            while True:
                try:
                    message = log_queue.get_nowait()
                except queue.Empty:
                    break
                if message is None:
                    os.system("cls" if os.name == "nt" else "clear")
                    print("Simulation finished.")
                    return

                match = worker_id_pattern.search(message)
                if match:
                    rank = int(match.group(1))

                    iter_match = iter_pattern.search(message)
                    if iter_match:
                        worker_iters[rank] = iter_match.group(1)

                    if rank in worker_logs:
                        clean_message = worker_id_pattern.sub("", message).strip()
                        worker_logs[rank].append(clean_message)

            os.system("cls" if os.name == "nt" else "clear")

            print("=" * 15 + " CIRCLESIM STATUS " + "=" * 15)
            for i in sorted(worker_logs.keys()):
                current_iter = worker_iters.get(i, "N/A")
                print(f"=== WORKER {i} | ITERATION {current_iter} ===")
                if not worker_logs[i]:
                    print("(Waiting for messages...)")
                else:
                    for msg in worker_logs[i]:
                        print(f"  > {msg}")
                print("-" * 48)

            time.sleep(refresh_rate)

    except (KeyboardInterrupt, ValueError):
        os.system("cls" if os.name == "nt" else "clear")
        print("\nSimulation interrupted.")

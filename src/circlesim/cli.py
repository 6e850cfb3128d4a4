# ===--------------------------------------------------------------------------------------===#
#
# Part of the CircleSim Project, under the Apache License v2.0.
# See https://www.apache.org/licenses/LICENSE-2.0 for license information.
# SPDX-License-Identifier: Apache-2.0
#
# ===--------------------------------------------------------------------------------------===#
#
# This file implements the command-line interface of CircleSim.
#
# ===--------------------------------------------------------------------------------------===#

from typing import Any, Dict, List, Optional

import argparse
import dataclasses
import multiprocessing as mp
import os
from pathlib import Path
import sys

from circlesim.circles import CircleSet
from circlesim.config import BACKENDS, KERNELS, ConfigError, SimConfig, load_config, save_config
from circlesim.simulation import SimulationError, simulate
from circlesim.utils.io_utils import load_circles
from circlesim.utils.logging_utils import cli_logger


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parses command-line arguments for a CircleSim run.

    Returns:
        Parsed arguments. Options left unset are None so that they do not override
        the config file.
    """
    parser = argparse.ArgumentParser(
        description="Relax a population of overlapping circles on parallel workers."
    )
    parser.add_argument("ncircles", type=int, nargs="?", help="number of circles (default 10000).")
    parser.add_argument("iterations", type=int, nargs="?", help="number of iterations (default 20).")
    parser.add_argument("--cfg_path", type=str, help="path to .yaml config file.")
    parser.add_argument(
        "--num_workers", type=int, help="number of workers, 0 for one per logical cpu."
    )
    parser.add_argument("--backend", type=str, choices=BACKENDS, help="worker type.")
    parser.add_argument("--kernel", type=str, choices=KERNELS, help="force kernel.")
    parser.add_argument("--seed", type=int, help="seed of the initial placement.")
    parser.add_argument(
        "--out_dir",
        type=str,
        help="directory receiving the log, frames, final circles and trajectory.",
    )
    parser.add_argument(
        "--init_path", type=str, help="path to a .npz archive with initial circles."
    )
    parser.add_argument(
        "--dump_frames",
        action="store_true",
        default=None,
        help="if true, writes a gnuplot script per iteration.",
    )
    parser.add_argument(
        "--check_consistency",
        action="store_true",
        default=None,
        help="if true, compares replica digests after every iteration.",
    )
    parser.add_argument(
        "--terminal_logging",
        action="store_true",
        help="if true, dynamically displays logs from all workers in terminal.",
    )

    return parser.parse_args(argv)


def build_config(args: Dict[str, Any]) -> SimConfig:
    """Loads the config file, if any, and applies the command-line overrides.

    Raises:
        ConfigError: If the resulting config is invalid.
    """
    config: SimConfig = load_config(args["cfg_path"]) if args.get("cfg_path") else SimConfig()

    overrides: Dict[str, Any] = {
        "num_circles": args.get("ncircles"),
        "iterations": args.get("iterations"),
        "num_workers": args.get("num_workers"),
        "backend": args.get("backend"),
        "kernel": args.get("kernel"),
        "seed": args.get("seed"),
        "dump_frames": args.get("dump_frames"),
        "check_consistency": args.get("check_consistency"),
    }
    config = dataclasses.replace(
        config, **{name: value for name, value in overrides.items() if value is not None}
    )
    config.validate()
    return config


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point of a CircleSim run.

    This function:
    1. Builds the configuration from the config file and the arguments
    2. Loads the initial circles, if an archive is given
    3. Starts the optional terminal logging daemon
    4. Runs the simulation and saves its outputs

    Returns:
        The process exit status.
    """
    args: Dict[str, Any] = vars(parse_args(argv))

    try:
        config: SimConfig = build_config(args)
    except ConfigError as err:
        print(str(err), file=sys.stderr)
        return 1

    out_dir: Optional[Path] = Path(args["out_dir"]) if args.get("out_dir") else None
    if out_dir is not None:
        os.makedirs(out_dir, exist_ok=True)
        save_config(config, out_dir.joinpath("config.yaml"))

    circles: Optional[CircleSet] = None
    if args.get("init_path"):
        try:
            circles = load_circles(args["init_path"])
        except (OSError, ValueError) as err:
            print(str(err), file=sys.stderr)
            return 1

    log_queue: Optional[mp.Queue] = None
    if args.get("terminal_logging", False):
        log_queue = mp.Queue()
        log_formatter_daemon = mp.Process(
            target=cli_logger,
            args=(log_queue, config.resolved_num_workers()),
            daemon=True,
        )
        log_formatter_daemon.start()

    try:
        simulate(config, circles=circles, out_dir=out_dir, log_queue=log_queue)
    except (SimulationError, ConfigError) as err:
        print(str(err), file=sys.stderr)
        return 1
    finally:
        if log_queue is not None:
            # kill log daemon
            log_queue.put(None)
            log_formatter_daemon.join()

    return 0


if __name__ == "__main__":
    sys.exit(main())

# ===--------------------------------------------------------------------------------------===#
#
# Part of the CircleSim Project, under the Apache License v2.0.
# See https://www.apache.org/licenses/LICENSE-2.0 for license information.
# SPDX-License-Identifier: Apache-2.0
#
# ===--------------------------------------------------------------------------------------===#
#
# This file implements the lock-stepped simulation loop of every worker and its launcher.
#
# ===--------------------------------------------------------------------------------------===#

import dataclasses
import logging
import multiprocessing as mp
import pathlib
import queue
import threading
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import numpy as np

from circlesim.circles import CircleSet, DisplacementDelta, init_circles
from circlesim.comm import (
    COORDINATOR,
    POLL_INTERVAL_S,
    Communicator,
    GlobalData,
    SynchronizationError,
    WorkerData,
    get_worker_data,
)
from circlesim.config import SimConfig
from circlesim.forces import compute_forces
from circlesim.partition import partition
from circlesim.utils.frame_utils import dump_circles
from circlesim.utils.io_utils import save_results
from circlesim.utils.logging_utils import close_logger, get_logger

REPORT_TIMEOUT_S: float = 10 * POLL_INTERVAL_S
STALLED_ERROR: str = "Worker did not stop after the run was aborted."


class SimulationError(RuntimeError):
    """Raised by the launcher when any worker of a run failed."""


class ReplicaMismatchError(SynchronizationError):
    """Raised when worker replicas differ after a synchronization point."""


@dataclass
class WorkerReport:
    """Final message of a worker to the launcher.

    Only the coordinator fills the trajectory fields and the final state.
    """

    rank: int
    digest: Optional[str] = None
    error: Optional[str] = None
    overlaps: List[int] = field(default_factory=list)
    iteration_times: List[float] = field(default_factory=list)
    elapsed_s: float = 0.0
    seed: Optional[int] = None
    state: Optional[Dict[str, np.ndarray]] = None


@dataclass
class SimulationResult:
    """Outcome of a run, as seen by the coordinator.

    Attributes:
        overlaps: Number of overlapping pairs found in each iteration.
        iteration_times: Wall time of each iteration in seconds.
        elapsed_s: Wall time of the whole iteration loop in seconds.
        circles: Final circle set.
        num_workers: Number of workers the run used.
        seed: Seed of the initial placement, None when circles were provided.
    """

    overlaps: List[int]
    iteration_times: List[float]
    elapsed_s: float
    circles: CircleSet
    num_workers: int
    seed: Optional[int]


def setup_circles(
    config: SimConfig,
    comm: Communicator,
    init: Optional[CircleSet],
    logger: logging.Logger,
) -> Tuple[CircleSet, Optional[int]]:
    """Creates the initial replica of every worker.

    The coordinator uses the provided circles or seeds random ones, then broadcasts
    the set size and the full state. The other workers allocate their replica and
    overwrite it with the coordinator's copy.

    Returns:
        The local replica and the seed used for the placement (coordinator only).
    """
    seed: Optional[int] = None
    if comm.is_coordinator:
        if init is not None:
            circles: CircleSet = CircleSet.from_state(init.state())
            logger.info(f"Using {len(circles)} provided circles.")
        else:
            seed = config.seed if config.seed is not None else int(np.random.SeedSequence().entropy)
            logger.info(f"Placing {config.num_circles} circles with seed {seed}.")
            circles = init_circles(config.num_circles, config.bounds, np.random.default_rng(seed))
        circles.reset_displacements()

    n: int = comm.bcast(len(circles) if comm.is_coordinator else None)
    if not comm.is_coordinator:
        circles = CircleSet.allocate(n)
    state: Dict[str, np.ndarray] = comm.bcast(circles.state() if comm.is_coordinator else None)
    if not comm.is_coordinator:
        circles.replace(state)

    logger.info(f"Replica of {n} circles ready.")
    return circles, seed


def check_replicas(comm: Communicator, circles: CircleSet, iteration: int) -> None:
    """Compares the digests of every replica at the coordinator.

    Raises:
        ReplicaMismatchError: On the coordinator, if any two replicas differ.
    """
    digests: Optional[List[str]] = comm.gather(circles.digest())
    if digests is not None and len(set(digests)) != 1:
        diverging: List[int] = [rank for rank, d in enumerate(digests) if d != digests[0]]
        raise ReplicaMismatchError(
            f"Replicas of workers {diverging} differ from the coordinator after iteration {iteration}."
        )


def simulation_loop(
    config: SimConfig,
    comm: Communicator,
    circles: CircleSet,
    logger: logging.Logger,
    frames_dir: Optional[pathlib.Path] = None,
) -> Tuple[List[int], List[float], float]:
    """Runs the fixed number of iterations on one worker.

    Every iteration:
    1. Resets the displacements and the local delta
    2. Computes the forces of the worker's partition against the whole replica
    3. Sums the overlap counts at the coordinator
    4. Sums the deltas of all workers and hands the result to every worker
    5. Moves every circle of the replica
    6. Broadcasts the coordinator's positions to every worker
    7. Optionally compares the replica digests, then waits on the barrier

    Args:
        config: Run parameters.
        comm: Communicator of this worker.
        circles: Local replica, updated in place.
        logger: Logger instance for this worker.
        frames_dir: Directory of the gnuplot frames; only used by the coordinator
            when ``config.dump_frames`` is set.

    Returns:
        A tuple with the overlap counts and times of each iteration and the total
        elapsed time. Lists are only filled on the coordinator.
    """
    n: int = len(circles)
    start, end = partition(n, comm.size, comm.rank)
    delta: DisplacementDelta = DisplacementDelta.zeros(n)
    dump: bool = config.dump_frames and comm.is_coordinator and frames_dir is not None

    logger.info("============ STARTING SIMULATION LOOP ============")
    logger.info(f"Partition [{start}, {end}) of {n} circles, kernel '{config.kernel}'.")

    overlaps: List[int] = []
    iteration_times: List[float] = []

    tstart_prog: float = time.perf_counter()
    if dump:
        dump_circles(circles, 0, frames_dir, config.bounds)

    for it in range(config.iterations):
        logger.info(f"========= ITERATION {it + 1} =========")
        tstart_iter: float = time.perf_counter()

        circles.reset_displacements()
        delta.clear()

        local_overlaps: int = compute_forces(
            circles, start, end, delta, epsilon=config.epsilon, k=config.k, kernel=config.kernel
        )
        logger.debug(f"Local overlaps: {local_overlaps}.")

        total_overlaps: Optional[int] = comm.reduce(local_overlaps)
        merged: DisplacementDelta = comm.allreduce(delta)
        logger.debug("Displacements merged.")

        circles.apply_displacements(merged)
        circles.move_all()

        positions = comm.bcast((circles.x, circles.y) if comm.is_coordinator else None)
        if not comm.is_coordinator:
            circles.replace_positions(*positions)

        if config.check_consistency:
            check_replicas(comm, circles, it + 1)

        logger.debug("Waiting for other workers to finish the iteration...")
        comm.barrier()

        elapsed_iter: float = time.perf_counter() - tstart_iter
        if comm.is_coordinator:
            overlaps.append(total_overlaps)
            iteration_times.append(elapsed_iter)
            logger.info(f"{total_overlaps} overlaps in {elapsed_iter:.6f} s.")
            if config.report_progress:
                print(
                    f"Iteration {it + 1} of {config.iterations}, {total_overlaps} overlaps "
                    f"({elapsed_iter:f} s)",
                    flush=True,
                )
            if dump:
                dump_circles(circles, it + 1, frames_dir, config.bounds)

    elapsed_prog: float = time.perf_counter() - tstart_prog
    if comm.is_coordinator and config.report_progress:
        print(f"Elapsed time: {elapsed_prog:f}", flush=True)

    return overlaps, iteration_times, elapsed_prog


def run_worker(
    worker_data: WorkerData,
    config: SimConfig,
    global_data: GlobalData,
    init: Optional[CircleSet] = None,
    out_dir: Optional[pathlib.Path] = None,
) -> None:
    """Entry point of a worker thread or process.

    Any failure aborts the shared barrier, so that every peer stops at its next
    collective, and is reported to the launcher.
    """
    logger: logging.Logger = get_logger(
        rank=worker_data.rank,
        results_dir=out_dir,
        append_mode=True,
        log_queue=global_data.log_queue,
        level=config.log_level,
    )
    comm: Communicator = Communicator(worker_data, global_data.barrier, config.sync_timeout_s, logger)
    frames_dir: pathlib.Path = (
        out_dir.joinpath("frames") if out_dir is not None else pathlib.Path.cwd()
    )

    try:
        circles, seed = setup_circles(config, comm, init, logger)
        overlaps, iteration_times, elapsed_s = simulation_loop(
            config, comm, circles, logger, frames_dir
        )
        report: WorkerReport = WorkerReport(rank=comm.rank, digest=circles.digest())
        if comm.is_coordinator:
            report.overlaps = overlaps
            report.iteration_times = iteration_times
            report.elapsed_s = elapsed_s
            report.seed = seed
            report.state = circles.state()
        logger.info("Simulation finished.")
    except Exception as err:
        logger.exception(f"Worker failed: {err}")
        comm.abort()
        report = WorkerReport(rank=comm.rank, error=f"{type(err).__name__}: {err}")
    finally:
        close_logger(logger)

    global_data.result_queue.put(report)


def collect_reports(
    workers: List[mp.Process | threading.Thread],
    global_data: GlobalData,
    grace_s: float,
) -> Dict[int, WorkerReport]:
    """Waits for one report per worker.

    Workers that exit without reporting are recorded as failed, and the barrier is
    aborted so that their peers do not wait for them. Once the barrier is broken,
    workers that still have not reported after ``grace_s`` are recorded as stalled.
    """
    reports: Dict[int, WorkerReport] = {}
    aborted_at: Optional[float] = None
    while len(reports) < len(workers):
        try:
            report: WorkerReport = global_data.result_queue.get(timeout=REPORT_TIMEOUT_S)
            reports[report.rank] = report
            continue
        except queue.Empty:
            pass

        if global_data.barrier.broken:
            if aborted_at is None:
                aborted_at = time.monotonic()
            elif time.monotonic() - aborted_at > grace_s:
                for rank in range(len(workers)):
                    if rank not in reports:
                        reports[rank] = WorkerReport(rank=rank, error=STALLED_ERROR)
                break

        dead: List[int] = [
            rank
            for rank, worker in enumerate(workers)
            if rank not in reports and not worker.is_alive()
        ]
        if not dead:
            continue

        # a finished worker may still have its report in flight
        try:
            report = global_data.result_queue.get(timeout=REPORT_TIMEOUT_S)
            reports[report.rank] = report
            continue
        except queue.Empty:
            pass

        global_data.barrier.abort()
        for rank in dead:
            reports[rank] = WorkerReport(rank=rank, error="Worker exited without reporting.")

    return reports


def simulate(
    config: SimConfig,
    circles: Optional[CircleSet] = None,
    out_dir: Optional[str | pathlib.Path] = None,
    log_queue: Optional[mp.Queue] = None,
) -> SimulationResult:
    """Runs a simulation on ``config.num_workers`` lock-stepped workers.

    Args:
        config: Run parameters. Validated before any worker starts.
        circles: Optional initial circles, handed to the coordinator only. When
            given, their count overrides ``config.num_circles``.
        out_dir: Optional directory receiving the log file, the frames, the final
            circles and the trajectory.
        log_queue: Optional queue collecting the log records of every worker.

    Returns:
        The coordinator's view of the run.

    Raises:
        ConfigError: If the config is invalid.
        SimulationError: If any worker failed or the replicas ended up different.
    """
    config.validate()
    if circles is not None and len(circles) != config.num_circles:
        config = dataclasses.replace(config, num_circles=len(circles))
    num_workers: int = config.resolved_num_workers()

    if out_dir is not None:
        out_dir = pathlib.Path(out_dir)
        out_dir.mkdir(parents=True, exist_ok=True)
        out_dir.joinpath("results.log").write_text("")

    if config.backend == "process":
        barrier = mp.Barrier(parties=num_workers)
        result_queue = mp.Queue()
    else:
        barrier = threading.Barrier(parties=num_workers)
        result_queue = queue.Queue()
    global_data: GlobalData = GlobalData(
        barrier=barrier, result_queue=result_queue, log_queue=log_queue
    )

    workers: List[mp.Process | threading.Thread] = []
    for worker_data in get_worker_data(num_workers):
        args = (
            worker_data,
            config,
            global_data,
            circles if worker_data.rank == COORDINATOR else None,
            out_dir,
        )
        if config.backend == "process":
            worker = mp.Process(target=run_worker, args=args)
        else:
            worker = threading.Thread(target=run_worker, args=args, daemon=True)
        workers.append(worker)
        worker.start()

    # drain before joining, large reports would otherwise block the workers
    reports: Dict[int, WorkerReport] = collect_reports(workers, global_data, config.sync_timeout_s)
    for rank, worker in enumerate(workers):
        if reports[rank].error == STALLED_ERROR:
            # stalled threads are daemons and are left behind
            if isinstance(worker, mp.Process):
                worker.terminate()
                worker.join()
            continue
        worker.join()

    errors: List[str] = [
        f"worker {rank}: {reports[rank].error}" for rank in sorted(reports) if reports[rank].error
    ]
    if errors:
        raise SimulationError("Simulation failed; " + "; ".join(errors))

    digests = {report.digest for report in reports.values()}
    if len(digests) != 1:
        raise SimulationError("Worker replicas differ at the end of the run.")

    coordinator: WorkerReport = reports[COORDINATOR]
    result: SimulationResult = SimulationResult(
        overlaps=coordinator.overlaps,
        iteration_times=coordinator.iteration_times,
        elapsed_s=coordinator.elapsed_s,
        circles=CircleSet.from_state(coordinator.state),
        num_workers=num_workers,
        seed=coordinator.seed,
    )

    if out_dir is not None:
        save_results(
            result.circles,
            result.overlaps,
            result.iteration_times,
            result.elapsed_s,
            result.seed,
            out_dir,
        )

    return result

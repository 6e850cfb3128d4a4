# ===--------------------------------------------------------------------------------------===#
#
# Part of the CircleSim Project, under the Apache License v2.0.
# See https://www.apache.org/licenses/LICENSE-2.0 for license information.
# SPDX-License-Identifier: Apache-2.0
#
# ===--------------------------------------------------------------------------------------===#
#
# This file implements the collective operations used to keep worker replicas consistent.
#
# ===--------------------------------------------------------------------------------------===#

from typing import Any, Callable, Dict, List, Optional, Tuple

from dataclasses import dataclass
import multiprocessing as mp
import multiprocessing.connection as mpc
import multiprocessing.synchronize as mps
import operator
import threading
import logging
import time

COORDINATOR: int = 0
POLL_INTERVAL_S: float = 0.05


class SynchronizationError(RuntimeError):
    """Raised when a worker cannot complete a collective operation."""


@dataclass
class PipeEdge:
    """Represents a directed communication edge between two workers.

    Attributes:
        u: Source worker rank (sender).
        v: Destination worker rank (receiver).
        u_conn: Connection object for sending data from worker u.
        v_conn: Connection object for receiving data at worker v.
    """

    u: int
    v: int
    u_conn: mpc.Connection  # send only
    v_conn: mpc.Connection  # recv only


@dataclass
class WorkerData:
    """Contains the communication channels of one worker.

    Attributes:
        rank: Rank of the worker, ``0`` being the coordinator.
        size: Total number of workers.
        in_neigh: Incoming pipe edges, keyed by sender rank.
        out_neigh: Outgoing pipe edges, keyed by receiver rank.
    """

    rank: int
    size: int
    in_neigh: Dict[int, PipeEdge]
    out_neigh: Dict[int, PipeEdge]


@dataclass
class GlobalData:
    """Contains the objects shared by every worker of a run.

    Attributes:
        barrier: Barrier closing every iteration. Aborting it makes every blocked or
            future collective fail.
        result_queue: Queue receiving one report per worker at the end of the run.
        log_queue: Optional queue collecting formatted log records for the terminal
            dashboard.
    """

    barrier: mps.Barrier | threading.Barrier
    result_queue: mp.Queue
    log_queue: Optional[mp.Queue] = None


def get_edge_list(num_workers: int) -> List[Tuple[int, int]]:
    """Returns the directed edges of a star centered on the coordinator.

    Args:
        num_workers: Number of workers.

    Returns:
        Edges ``(0, i)`` and ``(i, 0)`` for every non-coordinator rank ``i``.
    """
    edge_list: List[Tuple[int, int]] = []
    for i in range(1, num_workers):
        edge_list.append((COORDINATOR, i))
        edge_list.append((i, COORDINATOR))
    return edge_list


def get_pipe_graph(
    num_nodes: int, edge_list: List[Tuple[int, int]]
) -> Tuple[Dict[int, Dict[int, PipeEdge]], Dict[int, Dict[int, PipeEdge]]]:
    """Creates one unidirectional pipe per edge.

    Args:
        num_nodes: Number of workers.
        edge_list: Directed edges as (source, destination) tuples.

    Returns:
        A tuple containing:
            - Mapping from rank to its incoming edges, keyed by sender rank
            - Mapping from rank to its outgoing edges, keyed by receiver rank
    """
    out_adj: Dict[int, Dict[int, PipeEdge]] = {u: {} for u in range(num_nodes)}
    in_adj: Dict[int, Dict[int, PipeEdge]] = {u: {} for u in range(num_nodes)}

    for u, v in edge_list:
        v_conn, u_conn = mp.Pipe(duplex=False)
        pedge = PipeEdge(u, v, u_conn, v_conn)

        out_adj[u][v] = pedge
        in_adj[v][u] = pedge

    return (in_adj, out_adj)


def get_worker_data(num_workers: int) -> List[WorkerData]:
    """Builds the communication data of every worker of a star topology."""
    in_adj, out_adj = get_pipe_graph(num_workers, get_edge_list(num_workers))
    return [
        WorkerData(rank=rank, size=num_workers, in_neigh=in_adj[rank], out_neigh=out_adj[rank])
        for rank in range(num_workers)
    ]


class Communicator:
    """Blocking collective operations over a star of pipes.

    Every collective must be called by all workers in the same order. Reductions are
    combined by the coordinator in rank order, so they are deterministic for any
    operator.
    """

    def __init__(
        self,
        worker_data: WorkerData,
        barrier: mps.Barrier | threading.Barrier,
        timeout_s: float,
        logger: Optional[logging.Logger] = None,
    ):
        """Initializes the communicator of one worker.

        Args:
            worker_data: Pipe endpoints of this worker.
            barrier: Barrier shared by every worker of the run.
            timeout_s: Longest time to wait for a peer before giving up.
            logger: Logger instance for this worker.
        """
        self.rank: int = worker_data.rank
        self.size: int = worker_data.size
        self.worker_data: WorkerData = worker_data
        self.barrier_obj: mps.Barrier | threading.Barrier = barrier
        self.timeout_s: float = timeout_s
        self.logger: logging.Logger = logger if logger is not None else logging.getLogger(__name__)

    def __repr__(self):
        return f"{self.__class__.__name__}(rank={self.rank}, size={self.size})"

    @property
    def is_coordinator(self) -> bool:
        return self.rank == COORDINATOR

    def _send(self, dest: int, obj: Any) -> None:
        conn: mpc.Connection = self.worker_data.out_neigh[dest].u_conn
        errors: List[Exception] = []

        def write() -> None:
            try:
                conn.send(obj)
            except Exception as err:
                errors.append(err)

        # a write larger than the pipe buffer blocks until the peer reads it
        writer: threading.Thread = threading.Thread(
            target=write, name=f"send-{self.rank}-{dest}", daemon=True
        )
        writer.start()
        deadline: float = time.monotonic() + self.timeout_s
        while True:
            writer.join(POLL_INTERVAL_S)
            if not writer.is_alive():
                break
            if self.barrier_obj.broken:
                raise SynchronizationError(f"Worker {self.rank} gave up sending to {dest}: run aborted.")
            if time.monotonic() > deadline:
                raise SynchronizationError(
                    f"Worker {self.rank} timed out after {self.timeout_s}s sending to {dest}."
                )
        if errors:
            raise SynchronizationError(f"Worker {self.rank} failed to send to {dest}.") from errors[0]

    def _recv(self, source: int) -> Any:
        conn: mpc.Connection = self.worker_data.in_neigh[source].v_conn
        deadline: float = time.monotonic() + self.timeout_s
        try:
            while not conn.poll(POLL_INTERVAL_S):
                if self.barrier_obj.broken:
                    raise SynchronizationError(
                        f"Worker {self.rank} gave up waiting for {source}: run aborted."
                    )
                if time.monotonic() > deadline:
                    raise SynchronizationError(
                        f"Worker {self.rank} timed out after {self.timeout_s}s waiting for {source}."
                    )
            return conn.recv()
        except (EOFError, OSError) as err:
            raise SynchronizationError(f"Worker {self.rank} lost its link to {source}.") from err

    def barrier(self) -> None:
        """Blocks until every worker reaches the barrier.

        Raises:
            SynchronizationError: If the barrier is aborted or times out.
        """
        try:
            self.barrier_obj.wait(self.timeout_s)
        except threading.BrokenBarrierError as err:
            raise SynchronizationError(f"Worker {self.rank} hit a broken barrier.") from err

    def abort(self) -> None:
        """Breaks the shared barrier so that every peer stops waiting."""
        self.barrier_obj.abort()

    def bcast(self, obj: Any = None) -> Any:
        """Sends the coordinator's ``obj`` to every worker and returns it."""
        if self.is_coordinator:
            for dest in range(1, self.size):
                self._send(dest, obj)
            return obj
        return self._recv(COORDINATOR)

    def gather(self, obj: Any) -> Optional[List[Any]]:
        """Collects one object per worker at the coordinator, ordered by rank.

        Returns:
            The list of objects on the coordinator, None on every other worker.
        """
        if self.is_coordinator:
            return [obj] + [self._recv(source) for source in range(1, self.size)]
        self._send(COORDINATOR, obj)
        return None

    def reduce(self, obj: Any, op: Callable[[Any, Any], Any] = operator.add) -> Any:
        """Combines one object per worker at the coordinator.

        Returns:
            The combined value on the coordinator, None on every other worker.
        """
        values: Optional[List[Any]] = self.gather(obj)
        if values is None:
            return None
        result: Any = values[0]
        for value in values[1:]:
            result = op(result, value)
        return result

    def allreduce(self, obj: Any, op: Callable[[Any, Any], Any] = operator.add) -> Any:
        """Combines one object per worker and returns the result on every worker."""
        return self.bcast(self.reduce(obj, op))

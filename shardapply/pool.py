# Coordinator / worker transport.
#
# The coordinator (rank 0) puts chunk descriptors on one shared task queue
# in increasing order, followed by one stop marker per worker. Each worker
# (ranks 1..W) builds its own worker object once, pulls chunks until it sees
# the stop marker, finishes, and puts its report on the result queue. The
# coordinator returns only after every worker has been joined.
#
# The same worker body runs over threads (queue.Queue) or processes
# (multiprocessing queues); nothing here knows about archives.
#
# Example:
#   pool = WorkPool(workers=4, backend="process")
#   reports = pool.run(total_units=1000, chunk_size=25, worker_factory=task)


import logging
import multiprocessing
import queue
import threading
import traceback
from typing import Any, Callable, Dict, List, Optional, Tuple

from .config import BACKENDS, DEFAULT_BACKEND
from .pipe_runner import ignore_sigpipe
from .planner import Chunk, plan_chunks

POLL_INTERVAL = 0.5
GRACE_PERIOD = 2.0


class TransportError(RuntimeError):
    """A worker died or raised before reporting back; the run cannot be trusted."""


# Body of one worker, identical for threads and processes. Any exception
# is sent back to the coordinator instead of a report.
#
# Parameters:
#   rank (int): This worker's rank (1..size).
#   size (int): Number of workers in the pool.
#   tasks: Queue of Chunk descriptors terminated by None.
#   results: Queue receiving (rank, report, error_text).
#   worker_factory: Callable (rank, size) -> object with process_chunk / finish.
#
def _worker_main(rank: int, size: int, tasks, results, worker_factory: Callable[[int, int], Any]) -> None:
    try:
        with ignore_sigpipe():
            worker = worker_factory(rank, size)
            while (chunk := tasks.get()) is not None:
                worker.process_chunk(chunk)
            report = worker.finish()
    except Exception:
        results.put((rank, None, traceback.format_exc()))
    else:
        results.put((rank, report, None))


class WorkPool:
    def __init__(self, workers: int, backend: str = DEFAULT_BACKEND, start_method: Optional[str] = None):
        if workers < 1:
            raise ValueError(f"workers must be positive, got {workers}")
        if backend not in BACKENDS:
            raise ValueError(f"backend must be one of {BACKENDS}, got {backend!r}")
        self.workers = int(workers)
        self.backend = backend
        self.start_method = start_method

    def __repr__(self):
        return f"WorkPool(workers={self.workers}, backend={self.backend!r})"

    def _channels(self) -> Tuple[Any, Any, Callable[..., Any]]:
        if self.backend == "thread":
            return queue.Queue(), queue.Queue(), threading.Thread
        context = multiprocessing.get_context(self.start_method)
        return context.Queue(), context.Queue(), context.Process

    # Description:
    #   Hand out chunks of `chunk_size` units covering [0, total_units) to the
    #   pool and wait for every worker to finish (the join point).
    #
    # Parameters:
    #   total_units (int): Number of work units (archive entries).
    #   chunk_size (int): Units per chunk (the last chunk may be shorter).
    #   worker_factory (Callable[[int, int], Any]): Builds a worker for (rank, size).
    #     Must be picklable for the process backend.
    #
    # Returns:
    #   List[Any]: The workers' reports, ordered by rank.
    #
    # Raises:
    #   TransportError: If any worker fails to report.
    #
    def run(self, total_units: int, chunk_size: int, worker_factory: Callable[[int, int], Any]) -> List[Any]:
        chunks: List[Chunk] = plan_chunks(total_units, chunk_size)
        tasks, results, spawn = self._channels()
        for chunk in chunks:
            tasks.put(chunk)
        for _ in range(self.workers):
            tasks.put(None)
        handles = {
            rank: spawn(
                target=_worker_main,
                args=(rank, self.workers, tasks, results, worker_factory),
                name=f"shardapply-worker-{rank}",
                daemon=True,
            )
            for rank in range(1, self.workers + 1)
        }
        logging.info(f"pool.WorkPool dispatching {len(chunks)} chunks of {chunk_size} to {self.workers} {self.backend} workers")
        for handle in handles.values():
            handle.start()
        try:
            reports, errors = self._collect(handles, results)
        except BaseException:
            # Interrupted: stop worker processes, threads are daemons.
            for handle in handles.values():
                if hasattr(handle, "terminate") and handle.is_alive():
                    handle.terminate()
            raise
        finally:
            # Chunks left behind by a failed worker must not block our exit.
            if hasattr(tasks, "cancel_join_thread"):
                tasks.cancel_join_thread()
        for handle in handles.values():
            handle.join()
        if errors:
            details = "\n".join(f"worker {rank}: {text}" for rank, text in sorted(errors.items()))
            raise TransportError(f"{len(errors)} of {self.workers} workers failed.\n{details}")
        return [reports[rank] for rank in sorted(reports)]

    # Wait for one result per worker. A worker that is no longer alive and
    # has not reported within the grace period counts as failed.
    def _collect(self, handles: Dict[int, Any], results) -> Tuple[Dict[int, Any], Dict[int, str]]:
        reports: Dict[int, Any] = {}
        errors: Dict[int, str] = {}
        dead_since: Dict[int, float] = {}
        waited = 0.0
        while len(reports) + len(errors) < len(handles):
            try:
                rank, report, error = results.get(timeout=POLL_INTERVAL)
            except queue.Empty:
                waited += POLL_INTERVAL
                for rank, handle in handles.items():
                    if (rank in reports) or (rank in errors) or handle.is_alive():
                        continue
                    dead_since.setdefault(rank, waited)
                    if waited - dead_since[rank] >= GRACE_PERIOD:
                        code = getattr(handle, "exitcode", None)
                        errors[rank] = f"exited without a report (exit code {code})"
                continue
            if error is None:
                reports[rank] = report
            else:
                errors[rank] = error
        return reports, errors

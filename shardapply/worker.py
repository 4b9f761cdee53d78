# Worker side of an apply run.
#
# A WorkerLoop is created once per worker (rank 1..W). It is handed chunks
# one at a time, runs every entry of a chunk through the pipe runner, writes
# captured output into one shard per chunk, and keeps a completion record
# per chunk. When no chunks remain, `finish` merges the chunk shards (in
# chunk start order) into the worker shard and returns a WorkerReport.
#
# States:
#   IDLE -> DISPATCHED -> PROCESSING -> CHUNK_DONE -> IDLE ...
#   IDLE -> DRAINING -> LOCAL_MERGE -> FINISHED
#
# Example:
#   task = ApplyTask("in.ffdata", "in.ffindex", "cat", ["cat"], "out.ffdata", "out.ffindex")
#   loop = task(rank=1, size=1)
#   loop.process_chunk(Chunk(0, 10))
#   report = loop.finish()


import errno
import logging
import sys
from dataclasses import dataclass, field
from typing import List, Optional, TextIO, Tuple

from .archive import Archive, ArchiveFormatError
from .merge import MergeReport, merge_shards
from .pipe_runner import EntryExecutionError, format_progress, run_entry
from .planner import Chunk
from .shard import ShardPaths, ShardWriter, chunk_shard_paths, worker_shard_paths


# A child that exited with a non-zero status (reported, never fatal).
@dataclass(frozen=True)
class EntryFailure:
    rank: int
    index: int
    name: str
    exit_status: int


# Completion record for one chunk.
#
# Attributes:
#   start, end (int): The chunk's entry range.
#   status (int): 0 when every entry was run, otherwise an errno-style code
#     explaining why the chunk was aborted.
#   entries_processed (int): Entries run before completion or abort.
#   error (str | None): Description of the abort.
#   shard (ShardPaths | None): The chunk shard, None when nothing was captured.
#
@dataclass
class ChunkCompletion:
    start: int
    end: int
    status: int = 0
    entries_processed: int = 0
    error: Optional[str] = None
    shard: Optional[ShardPaths] = None

    @property
    def ok(self) -> bool:
        return self.status == 0


# What a worker hands back to the coordinator.
@dataclass
class WorkerReport:
    rank: int
    chunks: List[ChunkCompletion] = field(default_factory=list)
    entry_failures: List[EntryFailure] = field(default_factory=list)
    merge_failures: List[Tuple[str, str]] = field(default_factory=list)
    worker_shard: Optional[ShardPaths] = None

    @property
    def entries_processed(self) -> int:
        return sum(c.entries_processed for c in self.chunks)

    @property
    def failed_chunks(self) -> List[ChunkCompletion]:
        return [c for c in self.chunks if not c.ok]


@dataclass
class ApplyTask:
    """Picklable description of the per-worker work.

    Calling it with ``(rank, size)`` opens the source archive in the current
    process and returns a fresh WorkerLoop, which is what the pool needs.
    """

    data_path: str
    index_path: str
    program: str
    argv: List[str]
    out_data: Optional[str] = None
    out_index: Optional[str] = None
    keep_intermediate: bool = False
    quiet: bool = False

    @property
    def capture(self) -> bool:
        return (self.out_data is not None) and (self.out_index is not None)

    def __call__(self, rank: int, size: int) -> "WorkerLoop":
        return WorkerLoop(rank, size, Archive(self.data_path, self.index_path), self)


class WorkerLoop:
    def __init__(self, rank: int, size: int, archive: Archive, task: ApplyTask,
                 stream: Optional[TextIO] = None):
        self.rank = rank
        self.size = size
        self.archive = archive
        self.task = task
        self.state = "IDLE"
        self._stream = stream
        # Owned by this worker only, consumed by the local merge.
        self._completions: List[ChunkCompletion] = []
        self._entry_failures: List[EntryFailure] = []

    def __repr__(self):
        return f"WorkerLoop(rank={self.rank}, size={self.size}, state={self.state})"

    @property
    def completions(self) -> List[ChunkCompletion]:
        return list(self._completions)

    def _emit(self, line: str) -> None:
        if not self.task.quiet:
            print(line, file=self._stream or sys.stdout, flush=True)

    # Description:
    #   Run every entry of `chunk` in index order, appending captured output
    #   to this chunk's shard. A missing/corrupt entry or a child that cannot
    #   be started aborts the chunk (recorded in the returned status); other
    #   chunks and workers are unaffected.
    #
    # Parameters:
    #   chunk (Chunk): Range of entry indices to run.
    #
    # Returns:
    #   ChunkCompletion: The record also kept for the local merge.
    #
    def process_chunk(self, chunk: Chunk) -> ChunkCompletion:
        if self.state not in ("IDLE", "CHUNK_DONE"):
            raise RuntimeError(f"{self!r} cannot take a chunk now.")
        self.state = "DISPATCHED"
        completion = ChunkCompletion(chunk.start, chunk.end)
        writer: Optional[ShardWriter] = None
        if self.task.capture:
            paths = chunk_shard_paths(self.task.out_data, self.task.out_index, self.rank, chunk.start, chunk.end)
            try:
                writer = ShardWriter(paths)
                completion.shard = paths
            except OSError as exc:
                completion.status = exc.errno or errno.EIO
                completion.error = f"cannot open shard {paths.data!r}: {exc}"
        self.state = "PROCESSING"
        try:
            if completion.ok:
                self._run_entries(chunk, writer, completion)
        finally:
            if writer is not None:
                writer.close()
        if not completion.ok:
            logging.error(f"worker.WorkerLoop rank {self.rank} aborted chunk [{chunk.start}, {chunk.end}): {completion.error}")
        self.state = "CHUNK_DONE"
        self._completions.append(completion)
        return completion

    def _run_entries(self, chunk: Chunk, writer: Optional[ShardWriter], completion: ChunkCompletion) -> None:
        program, argv = self.task.program, self.task.argv
        for i in chunk:
            try:
                entry, payload = self.archive.payload(i)
            except (IndexError, ArchiveFormatError) as exc:
                completion.status = errno.EINVAL
                completion.error = f"entry {i}: {exc}"
                return
            try:
                result = run_entry(payload, program, argv, capture=writer is not None, name=entry.name)
            except EntryExecutionError as exc:
                completion.status = exc.errno or errno.EIO
                completion.error = f"entry {entry.name!r}: {exc}"
                return
            if writer is not None:
                try:
                    writer.append(result.output, entry.name)
                except OSError as exc:
                    completion.status = exc.errno or errno.EIO
                    completion.error = f"writing {entry.name!r} to {writer.paths.data!r}: {exc}"
                    return
            if result.exit_status != 0:
                self._entry_failures.append(EntryFailure(self.rank, i, entry.name, result.exit_status))
            self._emit(format_progress(entry, result.exit_status))
            completion.entries_processed += 1

    # Description:
    #   Called once no more chunks will come. Merges this worker's chunk
    #   shards, ordered by chunk start, into the worker shard and deletes the
    #   absorbed chunk shards (unless they are to be kept). A chunk shard that
    #   fails to merge stays on disk. The worker shard is only created when
    #   some chunk captured at least one entry.
    #
    # Returns:
    #   WorkerReport: Chunk records, child failures and merge failures.
    #
    def finish(self) -> WorkerReport:
        self.state = "DRAINING"
        completions = sorted(self._completions, key=lambda c: (c.start, c.end))
        report = WorkerReport(rank=self.rank, chunks=completions, entry_failures=list(self._entry_failures))
        if self.task.capture:
            self.state = "LOCAL_MERGE"
            shards = [c.shard for c in completions if c.shard is not None]
            merged = self._local_merge(shards)
            report.merge_failures = [(paths.data, message) for paths, message in merged.failed]
            if merged.merged or merged.failed:
                report.worker_shard = worker_shard_paths(self.task.out_data, self.task.out_index, self.rank)
        self._completions = []
        self._entry_failures = []
        self.archive.close()
        self.state = "FINISHED"
        logging.info(
            f"worker.WorkerLoop rank {self.rank} finished {len(report.chunks)} chunks, "
            f"{report.entries_processed} entries, {len(report.entry_failures)} child failures"
        )
        return report

    def _local_merge(self, shards: List[ShardPaths]) -> MergeReport:
        destination = worker_shard_paths(self.task.out_data, self.task.out_index, self.rank)
        if all(paths.is_empty() for paths in shards):
            # Nothing captured: no worker shard, the empty chunk shards carry no data.
            if not self.task.keep_intermediate:
                for paths in shards:
                    paths.remove(missing_ok=True)
            return MergeReport(skipped=list(shards))
        destination.truncate()
        return merge_shards(destination, shards, remove_source=not self.task.keep_intermediate)

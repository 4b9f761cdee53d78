# Apply one program to every entry of an archive, in parallel.
#
# The run has three phases:
#   1. Setup (coordinator only): validate the configuration, parse the
#      source index, resolve the program. Nothing is distributed if this fails.
#   2. Work distribution: the pool's workers pull chunks of entries, pipe
#      each entry through its own child process and collect the output in
#      per-chunk shards, merged per worker once the queue is empty.
#   3. After every worker has been joined, the coordinator merges the worker
#      shards in rank order into the final output archive.
#
# Example usage:
#   shardapply -d out.ffdata -i out.ffindex in.ffdata in.ffindex -- wc -c
#   python -m shardapply in.ffdata in.ffindex -- md5sum


import argparse
import logging
import os
import shutil
import sys
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from .archive import ArchiveFormatError, parse_index
from .config import BACKENDS, ENV_LOG_LEVEL, ApplyConfig
from .merge import merge_worker_shards
from .pipe_runner import ignore_sigpipe
from .planner import chunk_size, plan_chunks
from .pool import TransportError, WorkPool
from .shard import ShardPaths, final_paths
from .worker import ApplyTask, ChunkCompletion, EntryFailure, WorkerReport


class SetupError(RuntimeError):
    """The run could not start: bad configuration, unreadable input or unknown program."""


# Aggregate outcome of one run.
#
# Attributes:
#   entries (int): Number of entries in the source index.
#   chunk_size (int): Entries per chunk.
#   chunks (int): Number of chunks handed out.
#   reports (List[WorkerReport]): One per worker, by rank.
#   entry_failures (List[EntryFailure]): Children that exited non-zero.
#   chunk_failures (List[ChunkCompletion]): Chunks aborted part way.
#   merge_failures (List[Tuple[str, str]]): (shard data file, reason) left on disk.
#   output (ShardPaths | None): Final archive, None when output was not captured.
#
@dataclass
class ApplyResult:
    entries: int
    chunk_size: int
    chunks: int
    reports: List[WorkerReport] = field(default_factory=list)
    entry_failures: List[EntryFailure] = field(default_factory=list)
    chunk_failures: List[ChunkCompletion] = field(default_factory=list)
    merge_failures: List[Tuple[str, str]] = field(default_factory=list)
    output: Optional[ShardPaths] = None

    @property
    def ok(self) -> bool:
        return not (self.entry_failures or self.chunk_failures or self.merge_failures)

    @property
    def failed_entry_count(self) -> int:
        return len(self.entry_failures)

    @property
    def entries_processed(self) -> int:
        return sum(r.entries_processed for r in self.reports)


# Check everything that can be checked before any work is handed out.
# Returns the number of entries and the resolved program path.
def _setup(config: ApplyConfig) -> Tuple[int, str]:
    try:
        config.validate()
    except ValueError as exc:
        raise SetupError(str(exc)) from exc
    for path in (config.data_path, config.index_path):
        if not os.path.isfile(path) or not os.access(path, os.R_OK):
            raise SetupError(f"Cannot read input file {path!r}.")
    try:
        n_entries = len(parse_index(config.index_path))
    except (ArchiveFormatError, OSError) as exc:
        raise SetupError(f"Cannot parse index {config.index_path!r}: {exc}") from exc
    program = shutil.which(config.program)
    if program is None:
        raise SetupError(f"Program {config.program!r} not found or not executable.")
    if config.capture:
        for path in (config.out_data, config.out_index):
            directory = os.path.dirname(os.path.abspath(path))
            if not os.path.isdir(directory):
                raise SetupError(f"Output directory {directory!r} does not exist.")
    return n_entries, program


# Description:
#   Run `config.program` once per entry of the source archive, spreading
#   chunks of entries over a pool of workers, and (when output is captured)
#   assemble the final archive from the worker shards.
#
# Parameters:
#   config (ApplyConfig): The run configuration.
#
# Returns:
#   ApplyResult: Counts plus every child failure, aborted chunk and failed merge.
#
# Raises:
#   SetupError: If the run cannot start.
#   TransportError: If a worker is lost during the run.
#
def apply_archive(config: ApplyConfig) -> ApplyResult:
    n_entries, program = _setup(config)
    size = chunk_size(n_entries, config.workers, config.parts)
    n_chunks = len(plan_chunks(n_entries, size))
    logging.info(
        f"apply.apply_archive {n_entries} entries, {n_chunks} chunks of {size}, "
        f"{config.workers} {config.backend} workers, program {program!r}"
    )
    task = ApplyTask(
        data_path=config.data_path,
        index_path=config.index_path,
        program=program,
        argv=list(config.argv),
        out_data=config.out_data,
        out_index=config.out_index,
        keep_intermediate=config.keep_intermediate,
        quiet=config.quiet,
    )
    pool = WorkPool(config.workers, backend=config.backend)
    with ignore_sigpipe():
        reports = pool.run(n_entries, size, task)

    result = ApplyResult(entries=n_entries, chunk_size=size, chunks=n_chunks, reports=reports)
    for report in reports:
        result.entry_failures += report.entry_failures
        result.chunk_failures += report.failed_chunks
        result.merge_failures += report.merge_failures
    if config.capture:
        merged = merge_worker_shards(
            config.out_data,
            config.out_index,
            [r.rank for r in reports if r.worker_shard is not None],
            keep_intermediate=config.keep_intermediate,
            sort=config.sort_index,
        )
        result.merge_failures += [(paths.data, message) for paths, message in merged.failed]
        result.output = final_paths(config.out_data, config.out_index)

    if result.entry_failures:
        logging.warning(f"apply.apply_archive {result.failed_entry_count} entries exited with a non-zero status")
    for completion in result.chunk_failures:
        logging.warning(
            f"apply.apply_archive chunk [{completion.start}, {completion.end}) aborted "
            f"after {completion.entries_processed} entries: {completion.error}"
        )
    for path, message in result.merge_failures:
        logging.warning(f"apply.apply_archive shard {path!r} was not merged: {message}")
    return result


# With `with_command` the words after INDEX_FILE are the program, otherwise
# the program comes after "--" and options may follow the input files.
def _build_parser(with_command: bool) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="shardapply",
        description="Apply a program to every entry of an indexed archive, in parallel.",
        epilog="Everything after '--' is the program and its arguments.",
    )
    parser.add_argument("-d", "--data", dest="out_data", help="Output data file (captures program output).")
    parser.add_argument("-i", "--index", dest="out_index", help="Output index file (captures program output).")
    parser.add_argument("-p", "--parts", type=int, default=None,
                        help="Target number of chunks per worker (default: 10).")
    parser.add_argument("-j", "--workers", type=int, default=None,
                        help="Number of workers (default: number of CPUs).")
    parser.add_argument("--backend", choices=BACKENDS, default=None, help="Worker pool backend.")
    parser.add_argument("-k", "--keep-intermediate", action="store_true",
                        help="Keep the chunk and worker shards after merging.")
    parser.add_argument("-s", "--sort-index", action="store_true", help="Sort the output index by entry name.")
    parser.add_argument("-q", "--quiet", action="store_true", help="Do not print per-entry progress lines.")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging.")
    parser.add_argument("--strict", action="store_true",
                        help="Exit with status 1 if any entry, chunk or merge failed.")
    parser.add_argument("data", metavar="DATA_FILE", help="Input data file.")
    parser.add_argument("index", metavar="INDEX_FILE", help="Input index file.")
    if with_command:
        parser.add_argument("command", nargs=argparse.REMAINDER, help="PROGRAM [ARGS...]")
    return parser


def _parse_args(argv: List[str]) -> Tuple[argparse.ArgumentParser, argparse.Namespace, List[str]]:
    if "--" in argv:
        split = argv.index("--")
        parser = _build_parser(with_command=False)
        args = parser.parse_intermixed_args(argv[:split])
        command = argv[split + 1:]
    else:
        parser = _build_parser(with_command=True)
        args = parser.parse_args(argv)
        command = args.command
    if not command:
        parser.error("no program given (use: DATA_FILE INDEX_FILE -- PROGRAM [ARGS...])")
    if (args.out_data is None) != (args.out_index is None):
        parser.error("-d/--data and -i/--index must be given together")
    for name in ("parts", "workers"):
        value = getattr(args, name)
        if value is not None and value < 1:
            parser.error(f"--{name} must be a positive integer")
    return parser, args, command


def _log_level(args: argparse.Namespace) -> int:
    if args.verbose:
        return logging.DEBUG
    if args.quiet:
        return logging.WARNING
    level = os.environ.get(ENV_LOG_LEVEL, "INFO").upper()
    return getattr(logging, level, logging.INFO)


# Entry point for the `shardapply` command.
#
# Returns:
#   int: 0 on success, 1 on setup/transport errors (or any failure with
#   --strict). Usage errors exit with status 2 through argparse.
#
def main(argv: Optional[List[str]] = None) -> int:
    argv = list(sys.argv[1:] if argv is None else argv)
    parser, args, command = _parse_args(argv)
    logging.basicConfig(level=_log_level(args), format="%(levelname)s %(message)s", stream=sys.stderr)
    try:
        config = ApplyConfig.from_env(
            data_path=args.data,
            index_path=args.index,
            program=command[0],
            argv=command,
            out_data=args.out_data,
            out_index=args.out_index,
            parts=args.parts,
            workers=args.workers,
            backend=args.backend,
            keep_intermediate=args.keep_intermediate,
            sort_index=args.sort_index,
            quiet=args.quiet,
            strict=args.strict,
        )
    except ValueError as exc:
        parser.error(f"bad environment setting: {exc}")
    try:
        result = apply_archive(config)
    except (SetupError, TransportError) as exc:
        logging.error(f"apply.main {exc}")
        return 1
    logging.info(
        f"apply.main processed {result.entries_processed} of {result.entries} entries, "
        f"{result.failed_entry_count} failed"
    )
    if config.strict and not result.ok:
        return 1
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())

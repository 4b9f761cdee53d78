# Get the version number from the packaged about file.
import os

DIRECTORY = os.path.dirname(os.path.abspath(__file__))
ABOUT_DIR = os.path.join(DIRECTORY, "about")
VERSION_FILE = os.path.join(ABOUT_DIR, "version.txt")
if (os.path.exists(VERSION_FILE)):
    with open(VERSION_FILE) as f:
        __version__ = f.read().strip()
else:
    __version__ = "unknown"

# Public names, imported on first use so that `python -m shardapply`
# and the worker processes stay light.
_EXPORTS = {
    "ApplyConfig": "config",
    "ApplyResult": "apply",
    "SetupError": "apply",
    "apply_archive": "apply",
    "Archive": "archive",
    "ArchiveWriter": "archive",
    "ArchiveFormatError": "archive",
    "read_archive": "archive",
    "Chunk": "planner",
    "chunk_size": "planner",
    "plan_chunks": "planner",
    "run_entry": "pipe_runner",
    "EntryExecutionError": "pipe_runner",
    "WorkPool": "pool",
    "TransportError": "pool",
    "merge_shard": "merge",
    "merge_worker_shards": "merge",
    "MergeError": "merge",
}

__all__ = sorted(_EXPORTS)


def __getattr__(name):
    if name in _EXPORTS:
        from importlib import import_module
        return getattr(import_module(f".{_EXPORTS[name]}", __name__), name)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")

# Output shards and their names.
#
# A shard is a (data, index) archive pair written by exactly one worker.
# Chunk shards hold the output of one chunk, worker shards the merge of
# all chunk shards of one worker. Names are derived from the requested
# output base names so a crashed run's leftovers can be identified and
# merged by hand:
#
#   chunk shard:   <base>.<rank>.<start>.<end>
#   worker shard:  <base>.<rank>
#   final archive: <base>


import os
from dataclasses import dataclass
from typing import Optional

from .archive import ArchiveWriter, Entry


@dataclass(frozen=True)
class ShardPaths:
    data: str
    index: str

    def exists(self) -> bool:
        return os.path.exists(self.data) or os.path.exists(self.index)

    # True when the index holds no entries (or is missing).
    def is_empty(self) -> bool:
        return (not os.path.exists(self.index)) or (os.path.getsize(self.index) == 0)

    # Delete both files, index first.
    def remove(self, missing_ok: bool = False) -> None:
        for path in (self.index, self.data):
            if missing_ok and not os.path.exists(path):
                continue
            os.remove(path)

    # Create both files empty, or cut existing ones back to zero bytes.
    def truncate(self) -> None:
        for path in (self.data, self.index):
            with open(path, "ab") as f:
                f.truncate(0)


def final_paths(out_data: str, out_index: str) -> ShardPaths:
    return ShardPaths(out_data, out_index)


def worker_shard_paths(out_data: str, out_index: str, rank: int) -> ShardPaths:
    return ShardPaths(f"{out_data}.{rank}", f"{out_index}.{rank}")


def chunk_shard_paths(out_data: str, out_index: str, rank: int, start: int, end: int) -> ShardPaths:
    return ShardPaths(f"{out_data}.{rank}.{start}.{end}", f"{out_index}.{rank}.{start}.{end}")


class ShardWriter:
    """Accumulate captured output for one chunk into one shard.

    Offsets start at 0 for every shard and grow by ``len(bytes) + 1`` per
    append. Not shared between chunks or workers.
    """

    def __init__(self, paths: ShardPaths):
        self.paths = paths
        self._writer: Optional[ArchiveWriter] = ArchiveWriter(paths.data, paths.index, append=False)
        self._offset = 0
        self._entry_count = 0

    @property
    def offset(self) -> int:
        return self._offset

    @property
    def entry_count(self) -> int:
        return self._entry_count

    def append(self, data: bytes, name: str) -> Entry:
        if self._writer is None:
            raise ValueError(f"Shard {self.paths.data!r} is closed.")
        entry = self._writer.append(data, name)
        self._offset = self._writer.offset
        self._entry_count = self._writer.entry_count
        return entry

    def close(self) -> None:
        if self._writer is not None:
            self._writer.close()
            self._writer = None

    def __enter__(self) -> "ShardWriter":
        return self

    def __exit__(self, *_) -> None:
        self.close()

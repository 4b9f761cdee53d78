"""Archive I/O for shardapply.

This module isolates the minimal read/write surface for archives. An
archive is a pair of files:

- data file: record payloads concatenated, each followed by one ``\\0``
  sentinel byte.
- index file: one UTF-8 line per record, ``name<TAB>offset<TAB>length``,
  where ``length`` counts the sentinel (payload size is ``length - 1``).

The index is parsed once into numpy arrays and the data file is memory
mapped read-only, so both can be shared by every chunk a process handles.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Iterable, Iterator, List, Tuple

import numpy as np

from .config import INDEX_SEPARATOR, SENTINEL

ENCODING = "utf-8"
ENCODING_ERRORS = "surrogateescape"  # names are arbitrary bytes on disk


class ArchiveFormatError(ValueError):
    """Malformed index line or an entry that points outside the data file."""


@dataclass(frozen=True)
class Entry:
    """One named record: a byte range of the data file."""

    name: str
    offset: int
    length: int

    @property
    def payload_size(self) -> int:
        return self.length - 1

    def to_line(self) -> str:
        return f"{self.name}{INDEX_SEPARATOR}{self.offset}{INDEX_SEPARATOR}{self.length}\n"


class Index:
    """Ordered, read-only sequence of entries backed by numpy arrays."""

    def __init__(self, names: List[str], offsets: np.ndarray, lengths: np.ndarray):
        if not (len(names) == offsets.shape[0] == lengths.shape[0]):
            raise ValueError("Index columns have different lengths.")
        self._names = names
        self._offsets = offsets
        self._lengths = lengths

    @property
    def n_entries(self) -> int:
        return len(self._names)

    def __len__(self) -> int:
        return len(self._names)

    @property
    def names(self) -> List[str]:
        return list(self._names)

    @property
    def offsets(self) -> np.ndarray:
        return self._offsets

    @property
    def lengths(self) -> np.ndarray:
        return self._lengths

    def entry(self, i: int) -> Entry:
        if not (0 <= i < len(self._names)):
            raise IndexError(f"Entry index {i} out of range [0, {len(self._names)})")
        return Entry(self._names[i], int(self._offsets[i]), int(self._lengths[i]))

    __getitem__ = entry

    def __iter__(self) -> Iterator[Entry]:
        for i in range(len(self._names)):
            yield self.entry(i)


# Parse index lines into an Index. `source` only appears in error messages.
def parse_index_lines(lines: Iterable[str], source: str = "<index>") -> Index:
    names: List[str] = []
    offsets: List[int] = []
    lengths: List[int] = []
    for line_number, line in enumerate(lines, start=1):
        line = line.rstrip("\n")
        if not line.strip():
            continue
        fields = line.split(INDEX_SEPARATOR)
        if len(fields) != 3:
            raise ArchiveFormatError(f"{source}:{line_number}: expected 3 tab-separated fields, found {len(fields)}")
        name, offset, length = fields
        try:
            offset, length = int(offset), int(length)
        except ValueError:
            raise ArchiveFormatError(f"{source}:{line_number}: offset and length must be integers") from None
        if (offset < 0) or (length < 1):
            raise ArchiveFormatError(f"{source}:{line_number}: invalid range offset={offset} length={length}")
        names.append(name)
        offsets.append(offset)
        lengths.append(length)
    return Index(names, np.asarray(offsets, dtype=np.uint64), np.asarray(lengths, dtype=np.uint64))


def parse_index(path: str) -> Index:
    """Read an index file once into memory."""
    with open(path, "r", encoding=ENCODING, errors=ENCODING_ERRORS, newline="\n") as f:
        return parse_index_lines(f, source=path)


def mmap_blob(path: str) -> np.ndarray:
    """Memory-map a data file read-only as ``uint8``.

    numpy cannot map an empty file, so an empty data file becomes an empty
    (regular) array; it can still be indexed by zero-length fetches.
    """
    if os.path.getsize(path) == 0:
        return np.zeros(0, dtype=np.uint8)
    return np.memmap(path, mode="r", dtype=np.uint8)


def fetch(blob: np.ndarray, entry: Entry) -> bytes:
    """Return the payload of `entry` (its bytes without the sentinel)."""
    end = entry.offset + entry.payload_size
    if (entry.payload_size < 0) or (end > blob.shape[0]):
        raise ArchiveFormatError(
            f"Entry {entry.name!r} range [{entry.offset}, {end}) is outside the data file ({blob.shape[0]} bytes)"
        )
    return blob[entry.offset:end].tobytes()


class Archive:
    """A source archive opened for reading, loaded once per process."""

    def __init__(self, data_path: str, index_path: str):
        self.data_path = data_path
        self.index_path = index_path
        self.index = parse_index(index_path)
        self.blob = mmap_blob(data_path)

    def __len__(self) -> int:
        return len(self.index)

    def entry(self, i: int) -> Entry:
        return self.index.entry(i)

    # Fetch the entry at position `i` and its payload.
    def payload(self, i: int) -> Tuple[Entry, bytes]:
        entry = self.index.entry(i)
        return entry, fetch(self.blob, entry)

    # The mapping is released once the last view of it is garbage collected.
    def close(self) -> None:
        self.blob = np.zeros(0, dtype=np.uint8)

    def __enter__(self) -> "Archive":
        return self

    def __exit__(self, *_) -> None:
        self.close()


class ArchiveWriter:
    """Append (payload, name) records to a data/index file pair.

    The running offset starts at the current size of the data file, so
    opening an existing archive with ``append=True`` never invalidates
    offsets that were already written. Both files are flushed after every
    record so a concurrent reader always sees complete records.
    """

    def __init__(self, data_path: str, index_path: str, append: bool = False):
        self.data_path = data_path
        self.index_path = index_path
        self._data = open(data_path, "ab" if append else "wb")
        try:
            self._index = open(index_path, "a" if append else "w",
                               encoding=ENCODING, errors=ENCODING_ERRORS, newline="\n")
        except OSError:
            self._data.close()
            raise
        self.offset = os.path.getsize(data_path) if append else 0
        self.entry_count = 0

    @property
    def closed(self) -> bool:
        return self._data.closed

    def append(self, payload: bytes, name: str) -> Entry:
        if (INDEX_SEPARATOR in name) or ("\n" in name):
            raise ArchiveFormatError(f"Entry name {name!r} contains a tab or newline.")
        entry = Entry(name, self.offset, len(payload) + 1)
        self._data.write(payload)
        self._data.write(SENTINEL)
        self._index.write(entry.to_line())
        self._data.flush()
        self._index.flush()
        self.offset += entry.length
        self.entry_count += 1
        return entry

    def close(self) -> None:
        for f in (self._data, self._index):
            if not f.closed:
                f.close()

    def __enter__(self) -> "ArchiveWriter":
        return self

    def __exit__(self, *_) -> None:
        self.close()


# Read every entry of an archive pair back as (entry, payload) tuples.
def read_archive(data_path: str, index_path: str) -> List[Tuple[Entry, bytes]]:
    with Archive(data_path, index_path) as archive:
        return [archive.payload(i) for i in range(len(archive))]

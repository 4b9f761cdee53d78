"""Carve the entry indices of an archive into fixed-size chunks."""

from __future__ import annotations

from dataclasses import dataclass
from typing import List

import numpy as np

from .config import DEFAULT_PARTS


@dataclass(frozen=True, order=True)
class Chunk:
    """Half-open range ``[start, end)`` of entry indices."""

    start: int
    end: int

    def __len__(self) -> int:
        return self.end - self.start

    def __iter__(self):
        return iter(range(self.start, self.end))


# Number of entries per chunk so that each of `workers` workers sees
# roughly `parts` chunks. Smaller chunks balance uneven per-entry cost
# better but cost more merge steps.
#
# Parameters:
#   n_entries (int): Total number of entries.
#   workers (int): Worker pool size (the coordinator is not counted).
#   parts (int): Target number of chunks per worker.
#
# Returns:
#   int: max(1, ceil(n_entries / (workers * parts)))
#
# Raises:
#   ValueError: If workers or parts is not positive, or n_entries is negative.
#
def chunk_size(n_entries: int, workers: int, parts: int = DEFAULT_PARTS) -> int:
    if workers < 1:
        raise ValueError(f"workers must be positive, got {workers}")
    if parts < 1:
        raise ValueError(f"parts must be positive, got {parts}")
    if n_entries < 0:
        raise ValueError(f"n_entries must be non-negative, got {n_entries}")
    return max(1, -(-n_entries // (workers * parts)))


# Split [0, n_entries) into consecutive chunks of `size` entries. The last
# chunk may be shorter; empty chunks are never produced.
def plan_chunks(n_entries: int, size: int) -> List[Chunk]:
    if size < 1:
        raise ValueError(f"chunk size must be positive, got {size}")
    starts = np.arange(0, n_entries, size, dtype=np.int64)
    ends = np.minimum(starts + size, n_entries)
    return [Chunk(int(s), int(e)) for s, e in zip(starts, ends)]


def plan(n_entries: int, workers: int, parts: int = DEFAULT_PARTS) -> List[Chunk]:
    """Chunks for `n_entries` entries spread over `workers` workers."""
    return plan_chunks(n_entries, chunk_size(n_entries, workers, parts))

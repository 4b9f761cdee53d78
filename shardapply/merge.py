"""
Merges output shards (data + index pairs) into a destination archive.

Overview:
- `merge_shard` appends one shard to a destination: the shard's data bytes
  are concatenated to the destination data file and its index lines are
  appended with offsets shifted by the destination's size before the merge.
  Nothing is de-duplicated or re-ordered.
- A successful merge deletes exactly its two source files (unless asked to
  keep them) and never the destination. A failed merge restores the
  destination to its previous size and deletes nothing.
- `merge_shards` applies this to a list of shards in the order given,
  recording failures instead of stopping.
- `merge_worker_shards` is the coordinator-side step: worker shards in
  ascending rank order into the final archive.

Example usage:
    python -m shardapply merge -d out.ffdata -i out.ffindex \\
        out.ffdata.1 out.ffindex.1 out.ffdata.2 out.ffindex.2
"""

import argparse
import logging
import os
import shutil
import sys
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Tuple

from .archive import ArchiveFormatError, ENCODING, ENCODING_ERRORS, Entry, parse_index
from .shard import ShardPaths, final_paths, worker_shard_paths

COPY_BUFFER = 1 * 2**20  # 1 MB


class MergeError(RuntimeError):
    """A shard could not be merged; its files were left in place."""


@dataclass
class MergeReport:
    merged: List[ShardPaths] = field(default_factory=list)
    skipped: List[ShardPaths] = field(default_factory=list)
    failed: List[Tuple[ShardPaths, str]] = field(default_factory=list)
    entries: int = 0

    @property
    def ok(self) -> bool:
        return not self.failed


# Put a file back to `size` bytes, or remove it if it did not exist before.
def _restore(path: str, size: Optional[int]) -> None:
    if not os.path.exists(path):
        return
    if size is None:
        os.remove(path)
    else:
        os.truncate(path, size)


# Description:
#   Append the shard `source` to the archive `destination`.
#
# Parameters:
#   destination (ShardPaths): Archive to grow (created when missing).
#   source (ShardPaths): Shard to absorb.
#   remove_source (bool): Delete the two source files after a successful merge.
#
# Returns:
#   int: Number of entries appended.
#
# Raises:
#   MergeError: If the source is missing or malformed, or writing fails.
#     The destination is restored and the source is left untouched.
#
def merge_shard(destination: ShardPaths, source: ShardPaths, remove_source: bool = True) -> int:
    if not (os.path.exists(source.data) and os.path.exists(source.index)):
        raise MergeError(f"Shard {source.data!r} / {source.index!r} is incomplete or missing.")
    if os.path.abspath(source.data) == os.path.abspath(destination.data):
        raise MergeError(f"Cannot merge {source.data!r} into itself.")
    try:
        index = parse_index(source.index)
    except (ArchiveFormatError, OSError) as exc:
        raise MergeError(f"Cannot read shard index {source.index!r}: {exc}") from exc
    source_size = os.path.getsize(source.data)
    if len(index) and int((index.offsets + index.lengths).max()) > source_size:
        raise MergeError(f"Shard index {source.index!r} points past the end of {source.data!r}.")

    data_size = os.path.getsize(destination.data) if os.path.exists(destination.data) else None
    index_size = os.path.getsize(destination.index) if os.path.exists(destination.index) else None
    base = data_size or 0
    try:
        with open(destination.data, "ab") as dst, open(source.data, "rb") as src:
            shutil.copyfileobj(src, dst, COPY_BUFFER)
        with open(destination.index, "a", encoding=ENCODING, errors=ENCODING_ERRORS, newline="\n") as dst:
            for entry in index:
                dst.write(Entry(entry.name, base + entry.offset, entry.length).to_line())
    except OSError as exc:
        _restore(destination.data, data_size)
        _restore(destination.index, index_size)
        raise MergeError(f"Merging {source.data!r} into {destination.data!r} failed: {exc}") from exc

    if remove_source:
        source.remove()
    logging.debug(f"merge.merge_shard {len(index)} entries {source.data!r} -> {destination.data!r}")
    return len(index)


# Merge `sources` into `destination` in the given order. Missing shards are
# skipped, failed ones are recorded and left on disk.
def merge_shards(destination: ShardPaths, sources: Iterable[ShardPaths],
                 remove_source: bool = True) -> MergeReport:
    report = MergeReport()
    for source in sources:
        if not source.exists():
            report.skipped.append(source)
            continue
        try:
            report.entries += merge_shard(destination, source, remove_source=remove_source)
            report.merged.append(source)
        except MergeError as exc:
            logging.error(f"merge.merge_shards {exc} Leaving shard in place for recovery.")
            report.failed.append((source, str(exc)))
    return report


# Rewrite an index file in name order (byte-wise, like the classic index
# tools). The new file replaces the old one atomically.
def sort_index(index_path: str) -> None:
    index = parse_index(index_path)
    entries = sorted(index, key=lambda e: e.name.encode(ENCODING, ENCODING_ERRORS))
    tmp_path = index_path + ".sorting"
    with open(tmp_path, "w", encoding=ENCODING, errors=ENCODING_ERRORS, newline="\n") as f:
        for entry in entries:
            f.write(entry.to_line())
    os.replace(tmp_path, index_path)


# Description:
#   Coordinator-side merge: start a fresh final archive and absorb the
#   worker shards of `ranks` in ascending rank order. Workers that produced
#   no shard are skipped.
#
# Parameters:
#   out_data (str): Final data file name (also the worker shard base name).
#   out_index (str): Final index file name.
#   ranks (Iterable[int]): Worker ranks to collect.
#   keep_intermediate (bool): Keep worker shards after absorbing them.
#   sort (bool): Sort the final index by entry name afterwards.
#
def merge_worker_shards(out_data: str, out_index: str, ranks: Iterable[int],
                        keep_intermediate: bool = False, sort: bool = False) -> MergeReport:
    final = final_paths(out_data, out_index)
    final.truncate()
    report = merge_shards(
        final,
        (worker_shard_paths(out_data, out_index, rank) for rank in sorted(ranks)),
        remove_source=not keep_intermediate,
    )
    if sort:
        sort_index(final.index)
    logging.info(
        f"merge.merge_worker_shards {report.entries} entries from {len(report.merged)} worker shards "
        f"into {final.data!r} ({len(report.failed)} failed)"
    )
    return report


# Manual recovery: append leftover shards to an archive.
def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="shardapply-merge",
        description="Append shard (data, index) pairs to an archive, in the order given.",
    )
    parser.add_argument("-d", "--data", dest="out_data", required=True, help="Destination data file.")
    parser.add_argument("-i", "--index", dest="out_index", required=True, help="Destination index file.")
    parser.add_argument("-k", "--keep", action="store_true", help="Keep the merged shards.")
    parser.add_argument("-s", "--sort-index", action="store_true", help="Sort the destination index by name.")
    parser.add_argument("shards", nargs="+", metavar="SHARD", help="Shard files as DATA INDEX pairs.")
    args = parser.parse_args(argv)
    if len(args.shards) % 2:
        parser.error("shards must be given as DATA INDEX pairs")

    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(message)s")
    pairs = [ShardPaths(d, i) for d, i in zip(args.shards[0::2], args.shards[1::2])]
    report = merge_shards(final_paths(args.out_data, args.out_index), pairs, remove_source=not args.keep)
    for paths in report.skipped:
        logging.warning(f"merge.main skipped missing shard {paths.data!r}")
    if args.sort_index and os.path.exists(args.out_index):
        sort_index(args.out_index)
    return 0 if report.ok else 1


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())

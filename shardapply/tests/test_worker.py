import errno
import io
import os
import shutil

import pytest

from shardapply.archive import Archive
from shardapply.planner import Chunk
from shardapply.shard import chunk_shard_paths, worker_shard_paths
from shardapply.tests.archive_helper import archive_dict, archive_names, sample_records, write_archive
from shardapply.worker import ApplyTask, WorkerLoop


def _loop(task: ApplyTask, rank: int = 1, size: int = 1):
    stream = io.StringIO()
    return WorkerLoop(rank, size, Archive(task.data_path, task.index_path), task, stream=stream), stream


def _task(tmp_path, records, argv=("cat",), capture=True, **kwargs) -> ApplyTask:
    data_path, index_path = write_archive(tmp_path, records)
    out = dict(out_data=str(tmp_path / "out.ffdata"), out_index=str(tmp_path / "out.ffindex")) if capture else {}
    return ApplyTask(data_path, index_path, shutil.which(argv[0]), list(argv), **out, **kwargs)


def test_worker_with_capture(tmp_path):
    records = sample_records(10)
    task = _task(tmp_path, records)
    loop, stream = _loop(task, rank=2, size=3)
    # Chunks arrive out of order; the local merge orders them by start.
    assert loop.process_chunk(Chunk(5, 10)).ok
    assert loop.process_chunk(Chunk(0, 5)).ok
    assert loop.state == "CHUNK_DONE"
    chunk_shard = chunk_shard_paths(task.out_data, task.out_index, 2, 0, 5)
    assert chunk_shard.exists()

    report = loop.finish()
    assert loop.state == "FINISHED"
    assert report.rank == 2
    assert report.entries_processed == 10
    assert [(c.start, c.end) for c in report.chunks] == [(0, 5), (5, 10)]
    assert report.worker_shard == worker_shard_paths(task.out_data, task.out_index, 2)
    assert archive_names(report.worker_shard.data, report.worker_shard.index) == [n for n, _ in records]
    assert archive_dict(report.worker_shard.data, report.worker_shard.index) == dict(records)
    # Chunk shards were absorbed.
    assert not chunk_shard.exists()
    assert loop.completions == []
    lines = stream.getvalue().splitlines()
    assert len(lines) == 10
    first = Archive(task.data_path, task.index_path).entry(5)
    assert lines[0] == f"entry005\t{first.offset}\t{first.length}\t0"


def test_worker_keeps_intermediate_shards(tmp_path):
    task = _task(tmp_path, sample_records(4), keep_intermediate=True)
    loop, _ = _loop(task)
    loop.process_chunk(Chunk(0, 2))
    loop.process_chunk(Chunk(2, 4))
    report = loop.finish()
    assert chunk_shard_paths(task.out_data, task.out_index, 1, 0, 2).exists()
    assert chunk_shard_paths(task.out_data, task.out_index, 1, 2, 4).exists()
    assert report.worker_shard.exists()


def test_worker_without_capture_creates_no_files(tmp_path):
    task = _task(tmp_path, sample_records(6), argv=("true",), capture=False)
    before = sorted(os.listdir(tmp_path))
    loop, stream = _loop(task)
    loop.process_chunk(Chunk(0, 6))
    report = loop.finish()
    assert report.worker_shard is None
    assert report.entries_processed == 6
    assert sorted(os.listdir(tmp_path)) == before
    assert len(stream.getvalue().splitlines()) == 6


def test_quiet_worker(tmp_path):
    task = _task(tmp_path, sample_records(3), quiet=True)
    loop, stream = _loop(task)
    loop.process_chunk(Chunk(0, 3))
    loop.finish()
    assert stream.getvalue() == ""


def test_child_failures_do_not_abort(tmp_path):
    task = _task(tmp_path, sample_records(4), argv=("sh", "-c", "cat; exit 1"))
    loop, stream = _loop(task)
    completion = loop.process_chunk(Chunk(0, 4))
    assert completion.ok
    report = loop.finish()
    assert [f.index for f in report.entry_failures] == [0, 1, 2, 3]
    assert all(f.exit_status == 1 for f in report.entry_failures)
    # Output is still captured.
    assert len(archive_names(report.worker_shard.data, report.worker_shard.index)) == 4
    assert all(line.endswith("\t1") for line in stream.getvalue().splitlines())


def test_fetch_failure_aborts_chunk_only(tmp_path):
    records = sample_records(6)
    task = _task(tmp_path, records)
    # Point entry 1 past the end of the data file.
    with open(task.index_path) as f:
        lines = f.readlines()
    name, offset, length = lines[1].rstrip("\n").split("\t")
    lines[1] = f"{name}\t{offset}\t{10**6}\n"
    with open(task.index_path, "w") as f:
        f.writelines(lines)

    loop, _ = _loop(task)
    bad = loop.process_chunk(Chunk(0, 3))
    good = loop.process_chunk(Chunk(3, 6))
    assert bad.status == errno.EINVAL
    assert bad.entries_processed == 1
    assert "entry001" in bad.error
    assert good.ok and good.entries_processed == 3
    report = loop.finish()
    assert report.failed_chunks == [bad]
    # Whatever the aborted chunk captured is still merged.
    assert archive_names(report.worker_shard.data, report.worker_shard.index) == [
        "entry000", "entry003", "entry004", "entry005"
    ]


def test_missing_program_aborts_chunk(tmp_path):
    records = sample_records(2)
    data_path, index_path = write_archive(tmp_path, records)
    task = ApplyTask(data_path, index_path, "/nonexistent/program", ["program"])
    loop, _ = _loop(task)
    completion = loop.process_chunk(Chunk(0, 2))
    assert completion.status == errno.ENOENT
    assert completion.entries_processed == 0
    assert loop.finish().worker_shard is None


def test_unmergeable_chunk_shard_stays_on_disk(tmp_path):
    task = _task(tmp_path, sample_records(4))
    loop, _ = _loop(task)
    loop.process_chunk(Chunk(0, 2))
    loop.process_chunk(Chunk(2, 4))
    broken = chunk_shard_paths(task.out_data, task.out_index, 1, 0, 2)
    with open(broken.index, "a") as f:
        f.write("not an index line\n")
    report = loop.finish()
    assert [path for path, _ in report.merge_failures] == [broken.data]
    assert os.path.exists(broken.data) and os.path.exists(broken.index)
    assert not chunk_shard_paths(task.out_data, task.out_index, 1, 2, 4).exists()
    assert report.worker_shard is not None
    assert archive_names(report.worker_shard.data, report.worker_shard.index) == ["entry002", "entry003"]


def test_no_chunks_after_finish(tmp_path):
    task = _task(tmp_path, sample_records(2))
    loop, _ = _loop(task)
    report = loop.finish()
    assert report.chunks == []
    assert report.worker_shard is None
    with pytest.raises(RuntimeError):
        loop.process_chunk(Chunk(0, 1))


if __name__ == "__main__":
    import tempfile, pathlib
    with tempfile.TemporaryDirectory() as tmpdir:
        test_worker_with_capture(pathlib.Path(tmpdir))

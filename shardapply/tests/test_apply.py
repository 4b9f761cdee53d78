import os

import pytest

from shardapply.apply import SetupError, apply_archive, main
from shardapply.config import ApplyConfig
from shardapply.tests.archive_helper import archive_dict, archive_names, sample_records, write_archive


def _config(tmp_path, records, argv=("cat",), capture=True, **kwargs) -> ApplyConfig:
    data_path, index_path = write_archive(tmp_path, records)
    out = dict(out_data=str(tmp_path / "out.ffdata"), out_index=str(tmp_path / "out.ffindex")) if capture else {}
    kwargs.setdefault("workers", 2)
    kwargs.setdefault("parts", 5)
    kwargs.setdefault("backend", "thread")
    kwargs.setdefault("quiet", True)
    return ApplyConfig(data_path, index_path, argv[0], list(argv), **out, **kwargs)


@pytest.mark.parametrize("backend", ["thread", "process"])
def test_end_to_end(tmp_path, backend):
    records = sample_records(25)
    config = _config(tmp_path, records, backend=backend)
    result = apply_archive(config)
    assert (result.entries, result.chunk_size, result.chunks) == (25, 3, 9)
    assert result.ok
    assert result.entries_processed == 25
    assert [r.rank for r in result.reports] == [1, 2]
    assert archive_dict(config.out_data, config.out_index) == dict(records)
    assert len(archive_names(config.out_data, config.out_index)) == 25
    # Only the inputs and the final archive remain.
    assert sorted(os.listdir(tmp_path)) == ["input.ffdata", "input.ffindex", "out.ffdata", "out.ffindex"]


def test_output_order_follows_ranks_then_chunks(tmp_path):
    records = sample_records(25)
    config = _config(tmp_path, records, workers=1)
    apply_archive(config)
    # A single worker handles chunks in order, so the output keeps the input order.
    assert archive_names(config.out_data, config.out_index) == [n for n, _ in records]


def test_sorted_output_and_kept_shards(tmp_path):
    records = sample_records(25)
    config = _config(tmp_path, records, sort_index=True, keep_intermediate=True)
    result = apply_archive(config)
    assert archive_names(config.out_data, config.out_index) == sorted(n for n, _ in records)
    assert archive_dict(config.out_data, config.out_index) == dict(records)
    for report in result.reports:
        if report.worker_shard is not None:
            assert report.worker_shard.exists()


def test_capture_disabled_creates_no_files(tmp_path, capsys):
    config = _config(tmp_path, sample_records(25), argv=("true",), capture=False, quiet=False)
    before = sorted(os.listdir(tmp_path))
    result = apply_archive(config)
    assert result.output is None
    assert sorted(os.listdir(tmp_path)) == before
    # One progress line per entry.
    lines = capsys.readouterr().out.splitlines()
    assert sorted(line.split("\t")[0] for line in lines) == [f"entry{i:03d}" for i in range(25)]


def test_empty_archive(tmp_path):
    config = _config(tmp_path, [])
    result = apply_archive(config)
    assert result.entries == 0 and result.chunks == 0
    assert os.path.getsize(config.out_data) == 0
    assert os.path.getsize(config.out_index) == 0


def test_child_failures_are_reported(tmp_path):
    config = _config(tmp_path, sample_records(6), argv=("sh", "-c", "cat >/dev/null; exit 2"))
    result = apply_archive(config)
    assert result.failed_entry_count == 6
    assert not result.ok
    assert not result.chunk_failures
    # Empty outputs are still recorded, one per entry.
    assert len(archive_names(config.out_data, config.out_index)) == 6


def test_setup_errors(tmp_path):
    config = _config(tmp_path, sample_records(2), argv=("no-such-program-here",))
    with pytest.raises(SetupError):
        apply_archive(config)
    with open(config.index_path, "w") as f:
        f.write("broken line\n")
    config = ApplyConfig(config.data_path, config.index_path, "cat")
    with pytest.raises(SetupError):
        apply_archive(config)
    with pytest.raises(SetupError):
        apply_archive(ApplyConfig(str(tmp_path / "missing"), config.index_path, "cat"))
    with pytest.raises(SetupError):
        apply_archive(ApplyConfig(config.data_path, config.index_path, "cat", workers=0))


def test_command_line(tmp_path):
    data_path, index_path = write_archive(tmp_path, sample_records(8))
    out_data, out_index = str(tmp_path / "o.ffdata"), str(tmp_path / "o.ffindex")
    common = ["-q", "-j", "2", "-p", "2", "--backend", "thread"]
    assert main(common + ["-d", out_data, "-i", out_index, data_path, index_path, "--", "cat"]) == 0
    assert archive_dict(out_data, out_index) == dict(sample_records(8))
    # Without '--' the remaining words are the program.
    assert main(common + [data_path, index_path, "wc", "-c"]) == 0
    # Child failures only change the exit status with --strict.
    failing = [data_path, index_path, "--", "sh", "-c", "exit 1"]
    assert main(common + failing) == 0
    assert main(common + ["--strict"] + failing) == 1
    # Setup errors.
    assert main(common + [data_path, index_path, "--", "no-such-program-here"]) == 1
    assert main(common + [str(tmp_path / "missing"), index_path, "--", "cat"]) == 1


def test_command_line_options_after_inputs(tmp_path):
    records = sample_records(5)
    data_path, index_path = write_archive(tmp_path, records)
    out_data, out_index = str(tmp_path / "late.ffdata"), str(tmp_path / "late.ffindex")
    argv = ["-q", "--backend", "thread", "-j", "1", data_path, index_path,
            "-d", out_data, "-i", out_index, "-s", "--", "cat"]
    assert main(argv) == 0
    assert archive_names(out_data, out_index) == sorted(n for n, _ in records)
    assert archive_dict(out_data, out_index) == dict(records)


def test_command_line_usage_errors(tmp_path):
    data_path, index_path = write_archive(tmp_path, sample_records(2))
    for argv in (
        ["-d", str(tmp_path / "o.ffdata"), data_path, index_path, "--", "cat"],
        [data_path, index_path],
        [data_path, index_path, "--"],
        ["-j", "0", data_path, index_path, "--", "cat"],
        [data_path],
    ):
        with pytest.raises(SystemExit) as info:
            main(argv)
        assert info.value.code == 2


def test_module_dispatch(tmp_path, capsys):
    from shardapply.__main__ import main as module_main
    assert module_main([]) == 0
    assert "shardapply" in capsys.readouterr().out
    data_path, index_path = write_archive(tmp_path, sample_records(3))
    out_data, out_index = str(tmp_path / "m.ffdata"), str(tmp_path / "m.ffindex")
    assert module_main(["merge", "-k", "-d", out_data, "-i", out_index, data_path, index_path]) == 0
    assert archive_dict(out_data, out_index) == dict(sample_records(3))
    assert module_main(["-q", "--backend", "thread", data_path, index_path, "--", "true"]) == 0


if __name__ == "__main__":
    import tempfile, pathlib
    with tempfile.TemporaryDirectory() as tmpdir:
        test_end_to_end(pathlib.Path(tmpdir), "thread")

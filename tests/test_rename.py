"""
Rename/merge phase: canonical <sample>_R1/_R2.fastq.gz files.
"""

import gzip
import os
import threading

import pytest

from bioproject_dl.exceptions import JobCancelled, MergeRequiredError
from bioproject_dl.fetch import run_fetch_phase
from bioproject_dl.manifest import parse_manifest
from bioproject_dl.rename import (
    check_merge_allowed,
    classify_read_files,
    consolidate,
    rename_and_merge,
    run_rename_phase,
)

from conftest import FakeToolkit, fastq_record


def _write(path, content: bytes):
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "wb") as fh:
        fh.write(content)


def _gunzip(path) -> bytes:
    with gzip.open(path, "rb") as fh:
        return fh.read()


# =============================================================================
# CLASSIFICATION
# =============================================================================

def test_classify_read_files():
    listing = [
        "SRR1_1.fastq", "SRR1_2.fastq", "SRR2.fastq", "SRR1_3.fastq",
        "SRR10_1.fastq", "notes.txt", "A_R1.fastq.gz",
    ]
    read1, read2, unpaired = classify_read_files(listing, ["SRR1", "SRR2"])

    assert read1 == ["SRR1_1.fastq"]
    assert read2 == ["SRR1_2.fastq"]
    assert unpaired == ["SRR2.fastq"]


def test_consolidate_concatenates_in_order(tmp_path):
    a, b = tmp_path / "a.fastq", tmp_path / "b.fastq"
    a.write_bytes(b"AAA\n")
    b.write_bytes(b"BBB\n")
    target = tmp_path / "out.fastq"

    consolidate([str(a), str(b)], str(target))

    assert target.read_bytes() == b"AAA\nBBB\n"
    assert sorted(os.listdir(tmp_path)) == ["out.fastq"]


def test_consolidate_cancelled_leaves_sources(tmp_path):
    a, b = tmp_path / "a.fastq", tmp_path / "b.fastq"
    a.write_bytes(b"AAA\n")
    b.write_bytes(b"BBB\n")
    cancel = threading.Event()
    cancel.set()

    with pytest.raises(JobCancelled):
        consolidate([str(a), str(b)], str(tmp_path / "out.fastq"), cancel=cancel)

    assert sorted(os.listdir(tmp_path)) == ["a.fastq", "b.fastq"]


# =============================================================================
# PER-SAMPLE JOB
# =============================================================================

def test_single_paired_run_is_renamed(tmp_path, runlog, toolkit):
    _write(str(tmp_path / "SampleA" / "SRR1_1.fastq"), fastq_record("r1/1"))
    _write(str(tmp_path / "SampleA" / "SRR1_2.fastq"), fastq_record("r1/2"))

    result = rename_and_merge(str(tmp_path), "SampleA", ["SRR1"], toolkit, runlog)

    assert result.status == "success"
    assert sorted(os.listdir(tmp_path / "SampleA")) == ["SampleA_R1.fastq.gz", "SampleA_R2.fastq.gz"]
    assert _gunzip(tmp_path / "SampleA" / "SampleA_R1.fastq.gz") == fastq_record("r1/1")
    assert _gunzip(tmp_path / "SampleA" / "SampleA_R2.fastq.gz") == fastq_record("r1/2")


def test_single_end_run_becomes_r1_only(tmp_path, runlog, toolkit):
    _write(str(tmp_path / "SampleA" / "SRR1.fastq"), fastq_record("r1"))

    result = rename_and_merge(str(tmp_path), "SampleA", ["SRR1"], toolkit, runlog)

    assert result.status == "success"
    assert os.listdir(tmp_path / "SampleA") == ["SampleA_R1.fastq.gz"]


def test_unpaired_reads_fold_into_r1_after_read1(tmp_path, runlog, toolkit):
    sample_dir = tmp_path / "SampleA"
    _write(str(sample_dir / "SRR1_1.fastq"), fastq_record("p/1"))
    _write(str(sample_dir / "SRR1_2.fastq"), fastq_record("p/2"))
    _write(str(sample_dir / "SRR1.fastq"), fastq_record("orphan"))

    rename_and_merge(str(tmp_path), "SampleA", ["SRR1"], toolkit, runlog)

    assert _gunzip(sample_dir / "SampleA_R1.fastq.gz") == fastq_record("p/1") + fastq_record("orphan")
    assert _gunzip(sample_dir / "SampleA_R2.fastq.gz") == fastq_record("p/2")


def test_existing_canonical_files_are_skipped(tmp_path, runlog, toolkit):
    _write(str(tmp_path / "SampleA" / "SampleA_R1.fastq.gz"), b"gz")

    result = rename_and_merge(str(tmp_path), "SampleA", ["SRR1"], toolkit, runlog)

    assert result.status == "skipped"
    assert toolkit.compress_calls == []
    assert not runlog.has_failure_markers()


def test_uncompressed_canonical_files_are_compressed(tmp_path, runlog, toolkit):
    sample_dir = tmp_path / "SampleA"
    _write(str(sample_dir / "SampleA_R1.fastq"), fastq_record("m/1"))
    _write(str(sample_dir / "SampleA_R2.fastq"), fastq_record("m/2"))

    result = rename_and_merge(str(tmp_path), "SampleA", ["SRR1", "SRR2"], toolkit, runlog)

    assert result.status == "success"
    assert sorted(os.listdir(sample_dir)) == ["SampleA_R1.fastq.gz", "SampleA_R2.fastq.gz"]
    assert _gunzip(sample_dir / "SampleA_R1.fastq.gz") == fastq_record("m/1")
    assert not runlog.has_failure_markers()


def test_interrupted_between_ends_is_completed(tmp_path, runlog, toolkit):
    # R1 already consolidated, R2 still split by run
    sample_dir = tmp_path / "SampleA"
    _write(str(sample_dir / "SampleA_R1.fastq"), fastq_record("SRR1/1") + fastq_record("SRR2/1"))
    _write(str(sample_dir / "SRR1_2.fastq"), fastq_record("SRR1/2"))
    _write(str(sample_dir / "SRR2_2.fastq"), fastq_record("SRR2/2"))

    result = rename_and_merge(str(tmp_path), "SampleA", ["SRR1", "SRR2"], toolkit, runlog)

    assert result.status == "success"
    assert sorted(os.listdir(sample_dir)) == ["SampleA_R1.fastq.gz", "SampleA_R2.fastq.gz"]
    assert _gunzip(sample_dir / "SampleA_R2.fastq.gz") == fastq_record("SRR1/2") + fastq_record("SRR2/2")


def test_rerun_with_skip_after_interrupted_compression(tmp_path, runlog, toolkit, make_runinfo):
    manifest = parse_manifest(make_runinfo([("SRR1", "SampleA", "PRJNA1")]))
    sample_dir = tmp_path / "SampleA"
    _write(str(sample_dir / "SampleA_R1.fastq"), fastq_record("old/1"))
    _write(str(sample_dir / "SampleA_R2.fastq"), fastq_record("old/2"))

    fetched = run_fetch_phase(manifest, str(tmp_path), toolkit, runlog, skip_existing=True)
    renamed = run_rename_phase(manifest, str(tmp_path), toolkit, runlog)

    assert [r.status for r in fetched] == ["success"]
    assert [r.status for r in renamed] == ["success"]
    assert sorted(os.listdir(sample_dir)) == ["SampleA_R1.fastq.gz", "SampleA_R2.fastq.gz"]
    # freshly converted reads replace the leftover file
    assert _gunzip(sample_dir / "SampleA_R1.fastq.gz") == fastq_record("SRR1.1/1")


def test_no_read_files_is_failure(tmp_path, runlog, toolkit):
    os.makedirs(tmp_path / "SampleA")

    result = rename_and_merge(str(tmp_path), "SampleA", ["SRR1"], toolkit, runlog)

    assert result.status == "failed"
    assert runlog.failure_lines() == ["Error: SampleA: no read files found to rename"]


def test_compression_failure_is_reported(tmp_path, runlog):
    class BrokenCompressor(FakeToolkit):
        def compress(self, paths, tag="", runlog=None, cancel=None):
            return 1

    _write(str(tmp_path / "SampleA" / "SRR1_1.fastq"), fastq_record("r"))

    result = rename_and_merge(str(tmp_path), "SampleA", ["SRR1"], BrokenCompressor(), runlog)

    assert result.status == "failed"
    assert any("compression failed" in ln for ln in runlog.failure_lines())


# =============================================================================
# PHASE
# =============================================================================

def test_merge_required_for_multi_run_samples(tmp_path, runlog, toolkit, make_runinfo):
    manifest = parse_manifest(make_runinfo([
        ("SRR1", "SampleA", "PRJNA1"),
        ("SRR2", "SampleA", "PRJNA1"),
        ("SRR3", "SampleB", "PRJNA1"),
    ]))

    with pytest.raises(MergeRequiredError) as excinfo:
        run_rename_phase(manifest, str(tmp_path), toolkit, runlog, merge=False)

    assert excinfo.value.samples == ["SampleA"]
    assert "--merge" in str(excinfo.value)
    assert toolkit.compress_calls == []


def test_check_merge_allowed_single_run_samples(make_runinfo):
    manifest = parse_manifest(make_runinfo([
        ("SRR1", "SampleA", "PRJNA1"),
        ("SRR2", "SampleB", "PRJNA1"),
    ]))
    check_merge_allowed(manifest, merge=False)


def test_merge_concatenates_runs_per_sample(tmp_path, runlog, toolkit, make_runinfo):
    manifest = parse_manifest(make_runinfo([
        ("SRR1", "SampleA", "PRJNA1"),
        ("SRR2", "SampleA", "PRJNA1"),
        ("SRR3", "SampleB", "PRJNA1"),
    ]))
    for run, sample in [("SRR1", "SampleA"), ("SRR2", "SampleA"), ("SRR3", "SampleB")]:
        for end in ("1", "2"):
            _write(str(tmp_path / sample / f"{run}_{end}.fastq"), fastq_record(f"{run}/{end}"))

    results = run_rename_phase(manifest, str(tmp_path), toolkit, runlog, parallelism=2, merge=True)

    assert [r.key for r in results] == ["SampleA", "SampleB"]
    assert all(r.status == "success" for r in results)
    assert sorted(os.listdir(tmp_path / "SampleA")) == ["SampleA_R1.fastq.gz", "SampleA_R2.fastq.gz"]
    assert _gunzip(tmp_path / "SampleA" / "SampleA_R1.fastq.gz") == (
        fastq_record("SRR1/1") + fastq_record("SRR2/1")
    )
    assert _gunzip(tmp_path / "SampleA" / "SampleA_R2.fastq.gz") == (
        fastq_record("SRR1/2") + fastq_record("SRR2/2")
    )
    assert sorted(os.listdir(tmp_path / "SampleB")) == ["SampleB_R1.fastq.gz", "SampleB_R2.fastq.gz"]

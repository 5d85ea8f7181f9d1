#!/usr/bin/env python3
"""
Tests for FastQC and MultiQC wrappers.
"""

import sys
import zipfile
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from rnaseq_pipeline.core.quality_control import (
    build_fastqc_command,
    build_multiqc_command,
    fastqc_report_path,
    fastqc_report_stem,
    parse_fastqc_data,
    parse_fastqc_zip,
    run_fastqc,
    run_multiqc,
)


FASTQC_DATA = """##FastQC\t0.12.1
>>Basic Statistics\tpass
#Measure\tValue
Filename\tS1_R1.fastq.gz
File type\tConventional base calls
Encoding\tSanger / Illumina 1.9
Total Sequences\t250000
Sequences flagged as poor quality\t0
Sequence length\t35-151
%GC\t48
>>END_MODULE
>>Per base sequence quality\tpass
#Base\tMean
1\t32.0
>>END_MODULE
>>Sequence Duplication Levels\twarn
#Total Deduplicated Percentage\t62.5
#Duplication Level\tPercentage of deduplicated\tPercentage of total
1\t80.0\t50.0
>>END_MODULE
>>Adapter Content\tfail
>>END_MODULE
"""

FASTQC_SUMMARY = """PASS\tBasic Statistics\tS1_R1.fastq.gz
PASS\tPer base sequence quality\tS1_R1.fastq.gz
WARN\tSequence Duplication Levels\tS1_R1.fastq.gz
FAIL\tAdapter Content\tS1_R1.fastq.gz
"""


def write_fastqc_zip(path: Path):
    with zipfile.ZipFile(path, "w") as zf:
        zf.writestr("S1_R1_fastqc/fastqc_data.txt", FASTQC_DATA)
        zf.writestr("S1_R1_fastqc/summary.txt", FASTQC_SUMMARY)


@pytest.mark.parametrize("name, stem", [
    ("S1_R1.fastq.gz", "S1_R1"),
    ("S1_R1.fq", "S1_R1"),
    ("S1_R1.paired.fastq.gz", "S1_R1.paired"),
    ("reads.bam", "reads"),
    ("x.fastq.fq", "x.fastq"),
    ("x.fq.gz.gz", "x.fq.gz"),
    ("x.fq.fastq", "x"),
    ("reads.txt.gz", "reads"),
])
def test_fastqc_report_stem(name, stem):
    assert fastqc_report_stem(Path(name)) == stem


def test_fastqc_report_path():
    assert fastqc_report_path(Path("/reads/S1_R1.fastq.gz"), Path("/qc")) == \
        Path("/qc/S1_R1_fastqc.zip")


def test_build_fastqc_command():
    cmd = build_fastqc_command([Path("a_R1.fq.gz"), Path("a_R2.fq.gz")], Path("/qc"), threads=2)

    assert cmd == [
        "fastqc", "--outdir", "/qc", "--threads", "2", "--quiet",
        "a_R1.fq.gz", "a_R2.fq.gz",
    ]


def test_build_multiqc_command():
    cmd = build_multiqc_command([Path("/out/qc"), Path("/out/alignment")], Path("/out/multiqc"), "Run 1")

    assert cmd == [
        "multiqc", "--outdir", "/out/multiqc", "--title", "Run 1",
        "--filename", "multiqc_report.html", "--force",
        "/out/qc", "/out/alignment",
    ]


def test_parse_fastqc_data():
    summary = parse_fastqc_data(FASTQC_DATA)

    assert summary.fastq_file == "S1_R1.fastq.gz"
    assert summary.total_sequences == 250000
    assert summary.sequence_length == "35-151"
    assert summary.gc_content == 48.0
    assert summary.deduplicated_percentage == 62.5
    assert summary.duplication_rate == pytest.approx(37.5)
    assert summary.module_status["Sequence Duplication Levels"] == "WARN"
    assert summary.failed_modules == ["Adapter Content"]


def test_parse_fastqc_zip(tmp_path):
    report = tmp_path / "S1_R1_fastqc.zip"
    write_fastqc_zip(report)

    summary = parse_fastqc_zip(report)

    assert summary.total_sequences == 250000
    assert summary.module_status["Adapter Content"] == "FAIL"


def test_parse_fastqc_zip_without_data(tmp_path):
    report = tmp_path / "broken_fastqc.zip"
    with zipfile.ZipFile(report, "w") as zf:
        zf.writestr("broken_fastqc/summary.txt", FASTQC_SUMMARY)

    with pytest.raises(ValueError, match="fastqc_data.txt not found"):
        parse_fastqc_zip(report)


def test_run_fastqc_missing_input(tmp_path):
    with pytest.raises(FileNotFoundError, match="FASTQ files not found"):
        run_fastqc([tmp_path / "absent.fq.gz"], tmp_path / "qc", 1, MagicMock())


def test_run_fastqc_parses_reports(tmp_path):
    fastq = tmp_path / "S1_R1.fastq.gz"
    fastq.write_bytes(b"")
    qc_dir = tmp_path / "qc"

    def fake_fastqc(cmd, logger, **kwargs):
        write_fastqc_zip(qc_dir / "S1_R1_fastqc.zip")

    with patch("rnaseq_pipeline.core.quality_control.run_command", side_effect=fake_fastqc) as mock_run:
        summaries = run_fastqc([fastq], qc_dir, 2, MagicMock())

    cmd = mock_run.call_args[0][0]
    assert cmd[0] == "fastqc"
    assert str(fastq) in cmd
    assert len(summaries) == 1
    assert summaries[0].failed_modules == ["Adapter Content"]


def test_run_multiqc(tmp_path):
    qc_dir = tmp_path / "qc"
    qc_dir.mkdir()
    out = tmp_path / "multiqc"

    def fake_multiqc(cmd, logger, **kwargs):
        (out / "multiqc_report.html").write_text("<html></html>")

    with patch("rnaseq_pipeline.core.quality_control.run_command", side_effect=fake_multiqc) as mock_run:
        report = run_multiqc([qc_dir, tmp_path / "absent"], out, MagicMock())

    assert report == out / "multiqc_report.html"
    cmd = mock_run.call_args[0][0]
    assert str(qc_dir) in cmd
    assert str(tmp_path / "absent") not in cmd

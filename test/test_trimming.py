#!/usr/bin/env python3
"""
Tests for the Trimmomatic wrapper.
"""

import subprocess
import sys
import unittest
from pathlib import Path
from unittest.mock import MagicMock, patch

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from rnaseq_pipeline.config.settings import PipelineConfig
from rnaseq_pipeline.core.trimming import (
    build_trimmomatic_command,
    build_trimming_steps,
    parse_trimmomatic_log,
    retained_fastqs,
    trim_sample,
    trimmed_outputs,
)
from rnaseq_pipeline.models.samples import Sample


PAIRED_LOG = """TrimmomaticPE: Started with arguments:
 -threads 4 -phred33 S1_R1.fastq.gz S1_R2.fastq.gz ...
Quality encoding detected as phred33
Input Read Pairs: 100000 Both Surviving: 91000 (91.00%) Forward Only Surviving: 5000 (5.00%) Reverse Only Surviving: 1000 (1.00%) Dropped: 3000 (3.00%)
TrimmomaticPE: Completed successfully
"""

SINGLE_LOG = """TrimmomaticSE: Started with arguments:
Input Reads: 50000 Surviving: 48000 (96.00%) Dropped: 2000 (4.00%)
TrimmomaticSE: Completed successfully
"""


class TestTrimmomaticCommand(unittest.TestCase):
    """
    Unit tests for the Trimmomatic command builder.
    """

    def setUp(self):
        self.paired = Sample(
            sample_id="S1",
            condition="control",
            fastq_1=Path("/reads/S1_R1.fastq.gz"),
            fastq_2=Path("/reads/S1_R2.fastq.gz"),
        )
        self.single = Sample(
            sample_id="S2",
            condition="control",
            fastq_1=Path("/reads/S2.fastq.gz"),
        )
        self.out = Path("/out/trimmed")

    def test_paired_end(self):
        config = PipelineConfig(threads=4)
        cmd = build_trimmomatic_command(self.paired, self.out, config)

        self.assertEqual(cmd, [
            "trimmomatic", "PE", "-threads", "4", "-phred33",
            "/reads/S1_R1.fastq.gz", "/reads/S1_R2.fastq.gz",
            "/out/trimmed/S1_R1.paired.fastq.gz", "/out/trimmed/S1_R1.unpaired.fastq.gz",
            "/out/trimmed/S1_R2.paired.fastq.gz", "/out/trimmed/S1_R2.unpaired.fastq.gz",
            "LEADING:3", "TRAILING:3", "SLIDINGWINDOW:4:15", "MINLEN:36",
        ])

    def test_single_end_with_adapters(self):
        config = PipelineConfig(adapters_fasta=Path("/ref/TruSeq3-SE.fa"), phred=64, min_length=50)
        cmd = build_trimmomatic_command(self.single, self.out, config)

        self.assertEqual(cmd[:5], ["trimmomatic", "SE", "-threads", "1", "-phred64"])
        self.assertEqual(cmd[5:7], ["/reads/S2.fastq.gz", "/out/trimmed/S2.trimmed.fastq.gz"])
        self.assertEqual(cmd[7], "ILLUMINACLIP:/ref/TruSeq3-SE.fa:2:30:10")
        self.assertEqual(cmd[-1], "MINLEN:50")

    def test_jar_invocation(self):
        config = PipelineConfig(trimmomatic_jar=Path("/opt/trimmomatic-0.39.jar"), max_memory_gb=4)
        cmd = build_trimmomatic_command(self.single, self.out, config)

        self.assertEqual(cmd[:5], ["java", "-Xmx4g", "-jar", "/opt/trimmomatic-0.39.jar", "SE"])

    def test_steps_order(self):
        steps = build_trimming_steps(PipelineConfig(adapters_fasta=Path("a.fa")))

        self.assertEqual([s.split(":")[0] for s in steps],
                         ["ILLUMINACLIP", "LEADING", "TRAILING", "SLIDINGWINDOW", "MINLEN"])

    def test_outputs(self):
        self.assertEqual(len(trimmed_outputs(self.paired, self.out)), 4)
        self.assertEqual(retained_fastqs(self.paired, self.out), [
            self.out / "S1_R1.paired.fastq.gz",
            self.out / "S1_R2.paired.fastq.gz",
        ])
        self.assertEqual(retained_fastqs(self.single, self.out), [self.out / "S2.trimmed.fastq.gz"])


def test_parse_paired_log():
    stats = parse_trimmomatic_log(PAIRED_LOG)

    assert stats.paired
    assert stats.input_reads == 100000
    assert stats.surviving == 91000
    assert stats.forward_only == 5000
    assert stats.reverse_only == 1000
    assert stats.dropped == 3000
    assert stats.survival_rate == 91.0


def test_parse_single_log():
    stats = parse_trimmomatic_log(SINGLE_LOG)

    assert not stats.paired
    assert stats.surviving == 48000
    assert stats.dropped == 2000


def test_parse_log_without_summary():
    assert parse_trimmomatic_log("Exception in thread main") is None


def test_trim_sample_writes_log(tmp_path):
    sample = Sample(sample_id="S2", condition="wt", fastq_1=tmp_path / "S2.fastq.gz")
    config = PipelineConfig(output_dir=tmp_path)

    with patch("rnaseq_pipeline.core.trimming.run_command") as mock_run:
        mock_run.return_value = subprocess.CompletedProcess(args=[], returncode=0, stdout="", stderr=SINGLE_LOG)
        fastqs, stats = trim_sample(sample, tmp_path / "trimmed", config, MagicMock())

    assert fastqs == [tmp_path / "trimmed" / "S2.trimmed.fastq.gz"]
    assert stats.input_reads == 50000
    assert (tmp_path / "trimmed" / "S2.trimmomatic.log").read_text() == SINGLE_LOG

#!/usr/bin/env python3
"""
Tests for featureCounts and Salmon quantification.
"""

import json
import sys
from pathlib import Path
from unittest.mock import MagicMock, patch

import pandas as pd
import pytest

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from rnaseq_pipeline.config.settings import PipelineConfig
from rnaseq_pipeline.core import quantification
from rnaseq_pipeline.core.quantification import (
    aggregate_salmon,
    build_featurecounts_command,
    build_salmon_index_command,
    build_salmon_quant_command,
    parse_featurecounts_summary,
    parse_salmon_meta,
    read_count_matrix,
    read_featurecounts,
    write_count_matrix,
)


FEATURECOUNTS_TABLE = (
    "# Program:featureCounts v2.0.6; Command:\"featureCounts\" \"-T\" \"2\"\n"
    "Geneid\tChr\tStart\tEnd\tStrand\tLength\t/out/ctrl1.bam\t/out/trt1.bam\n"
    "G1\tchr1\t100\t500\t+\t400\t10\t30\n"
    "G2\tchr1;chr1\t900;1500\t1200;1800\t-;-\t600\t0\t5\n"
)

FEATURECOUNTS_SUMMARY = (
    "Status\t/out/ctrl1.bam\t/out/trt1.bam\n"
    "Assigned\t80\t30\n"
    "Unassigned_NoFeatures\t20\t70\n"
    "Unassigned_Ambiguity\t0\t0\n"
)


def write_quant(path: Path, rows):
    path.mkdir(parents=True, exist_ok=True)
    frame = pd.DataFrame(rows, columns=["Name", "Length", "EffectiveLength", "TPM", "NumReads"])
    frame.to_csv(path / "quant.sf", sep="\t", index=False)


def test_featurecounts_command_paired():
    cmd = build_featurecounts_command(
        [Path("a.bam"), Path("b.bam")], Path("/c/featurecounts.txt"), Path("genes.gtf"),
        threads=4, strandedness=2, paired=True,
    )

    assert cmd == [
        "featureCounts", "-T", "4", "-s", "2", "-t", "exon", "-g", "gene_id",
        "-a", "genes.gtf", "-o", "/c/featurecounts.txt",
        "-p", "--countReadPairs", "a.bam", "b.bam",
    ]


def test_featurecounts_command_single():
    cmd = build_featurecounts_command([Path("a.bam")], Path("o.txt"), Path("g.gtf"), 1)

    assert "-p" not in cmd
    assert cmd[-1] == "a.bam"


def test_read_featurecounts(tmp_path):
    table = tmp_path / "featurecounts.txt"
    table.write_text(FEATURECOUNTS_TABLE)

    counts = read_featurecounts(table, ["ctrl1", "trt1"])

    assert list(counts.columns) == ["ctrl1", "trt1"]
    assert counts.index.name == "gene_id"
    assert counts.loc["G1", "trt1"] == 30
    assert counts.loc["G2", "ctrl1"] == 0


def test_read_featurecounts_wrong_sample_count(tmp_path):
    table = tmp_path / "featurecounts.txt"
    table.write_text(FEATURECOUNTS_TABLE)

    with pytest.raises(ValueError, match="Expected 3 count columns"):
        read_featurecounts(table, ["a", "b", "c"])


def test_read_featurecounts_rejects_other_tables(tmp_path):
    table = tmp_path / "other.txt"
    table.write_text("gene\tcount\nG1\t3\n")

    with pytest.raises(ValueError, match="not a featureCounts table"):
        read_featurecounts(table)


def test_featurecounts_summary(tmp_path):
    summary = tmp_path / "featurecounts.txt.summary"
    summary.write_text(FEATURECOUNTS_SUMMARY)

    assert parse_featurecounts_summary(summary, ["ctrl1", "trt1"]) == {"ctrl1": 80.0, "trt1": 30.0}


def test_run_featurecounts(tmp_path):
    config = PipelineConfig(annotation_gtf=tmp_path / "genes.gtf", threads=2)
    out = tmp_path / "counts"
    logger = MagicMock()

    def fake_featurecounts(cmd, logger, **kwargs):
        (out / "featurecounts.txt").write_text(FEATURECOUNTS_TABLE)
        (out / "featurecounts.txt.summary").write_text(FEATURECOUNTS_SUMMARY)

    with patch.object(quantification, "run_command", side_effect=fake_featurecounts) as mock_run:
        counts, summary = quantification.run_featurecounts(
            {"ctrl1": Path("/out/ctrl1.bam"), "trt1": Path("/out/trt1.bam")},
            config, out, paired=True, logger=logger,
        )

    cmd = mock_run.call_args.args[0]
    assert cmd[-2:] == ["/out/ctrl1.bam", "/out/trt1.bam"]
    assert "--countReadPairs" in cmd
    assert summary.n_genes == 2
    assert summary.counts_path == str(out / "gene_counts.csv")
    assert (out / "gene_counts.csv").exists()
    # trt1 assigns only 30%
    logger.warning.assert_called_once()


def test_salmon_commands():
    assert build_salmon_index_command(Path("tx.fa"), Path("/idx/salmon"), 8) == [
        "salmon", "index", "-t", "tx.fa", "-i", "/idx/salmon", "-k", "31", "-p", "8",
    ]

    paired = build_salmon_quant_command([Path("r1.fq.gz"), Path("r2.fq.gz")], Path("idx"), Path("/q/S1"), 4)
    assert paired == [
        "salmon", "quant", "-i", "idx", "-l", "A",
        "-1", "r1.fq.gz", "-2", "r2.fq.gz",
        "-p", "4", "--validateMappings", "-o", "/q/S1",
    ]

    single = build_salmon_quant_command([Path("r.fq.gz")], Path("idx"), Path("out"), 1, library_type="SR")
    assert single[4:8] == ["-l", "SR", "-r", "r.fq.gz"]


def test_parse_salmon_meta(tmp_path):
    meta = tmp_path / "meta_info.json"
    meta.write_text(json.dumps({"num_processed": 2000, "num_mapped": 1700, "percent_mapped": 85.0}))

    stats = parse_salmon_meta(meta)

    assert stats.aligner == "salmon"
    assert stats.input_reads == 2000
    assert stats.unmapped == 300
    assert stats.mapping_rate == 85.0


def test_aggregate_salmon_handles_versions(tmp_path):
    tx2gene = pd.DataFrame({
        "transcript_id": ["ENST1.1", "ENST2.1", "ENST3.2"],
        "gene_id": ["G1", "G1", "G2"],
    })
    write_quant(tmp_path / "S1", [
        ["ENST1.1", 1000, 800, 10.0, 5.4],
        ["ENST2", 900, 700, 20.0, 4.4],
        ["ENST3.2", 500, 300, 70.0, 12.0],
    ])
    write_quant(tmp_path / "S2", [
        ["ENST1.1", 1000, 800, 100.0, 3.0],
    ])

    counts, tpm = aggregate_salmon({"S1": tmp_path / "S1", "S2": tmp_path / "S2"}, tx2gene)

    assert counts.loc["G1", "S1"] == 10
    assert counts.loc["G2", "S1"] == 12
    assert counts.loc["G2", "S2"] == 0
    assert tpm.loc["G1", "S1"] == pytest.approx(30.0)
    assert (counts.dtypes == "int64").all()


def test_aggregate_salmon_no_matches(tmp_path):
    tx2gene = pd.DataFrame({"transcript_id": ["ENST9"], "gene_id": ["G9"]})
    write_quant(tmp_path / "S1", [["ENST1", 100, 80, 1.0, 1.0]])

    with pytest.raises(ValueError, match="No transcripts of sample S1"):
        aggregate_salmon({"S1": tmp_path / "S1"}, tx2gene)


def test_count_matrix_roundtrip_rejects_negative(tmp_path):
    path = write_count_matrix(
        pd.DataFrame({"S1": [1, -2]}, index=["G1", "G2"]), tmp_path / "counts.csv"
    )

    with pytest.raises(ValueError, match="negative"):
        read_count_matrix(path)


def test_build_salmon_index_with_relative_paths(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    config = PipelineConfig(quantifier="salmon", transcriptome_fasta="ref/tx.fa", threads=2)

    with patch("rnaseq_pipeline.utils.process.subprocess.run") as mock_run:
        index_dir = quantification.build_salmon_index(config, MagicMock())

    assert index_dir == Path("index") / "salmon"
    # salmon creates the index directory itself
    assert (tmp_path / "index").is_dir()
    assert mock_run.call_args.args[0] == [
        "salmon", "index", "-t", "ref/tx.fa", "-i", "index/salmon", "-k", "31", "-p", "2",
    ]
    assert mock_run.call_args.kwargs["cwd"] is None

#!/usr/bin/env python3
"""
Tests for the result models.
"""

import json
import sys
from pathlib import Path

import pytest
from pydantic import ValidationError

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from rnaseq_pipeline.models.results import (
    AlignmentStats,
    DifferentialExpressionSummary,
    EnrichmentSummary,
    FastQCSummary,
    NetworkSummary,
    QuantificationSummary,
    RunReport,
    SampleReport,
    TrimmingStats,
)


def sample(sample_id, rate):
    return SampleReport(
        sample_id=sample_id,
        condition="control",
        alignment=AlignmentStats(aligner="star", input_reads=1000, mapping_rate=rate),
    )


@pytest.fixture
def report():
    return RunReport(
        samples=[sample("s1", 90.0), sample("s2", 65.0), sample("s3", 85.0)],
        quantification=QuantificationSummary(
            tool="featurecounts", n_genes=20000, n_samples=3, counts_path="gene_counts.csv"
        ),
        differential_expression=[
            DifferentialExpressionSummary(
                method="deseq2", factor="condition", test_level="treated",
                reference_level="control", tested_genes=15000, upregulated=120,
                downregulated=80, padj_threshold=0.05, lfc_threshold=1.0,
                results_path="treated_vs_control_results.csv",
            )
        ],
        enrichment=[
            EnrichmentSummary(analysis="ora_up", contrast="treated_vs_control",
                              gene_sets="KEGG_2021_Human", query_size=120, n_terms=40, n_significant=6),
            EnrichmentSummary(analysis="gsea", contrast="treated_vs_control",
                              gene_sets="KEGG_2021_Human", query_size=15000, n_terms=300, n_significant=4),
        ],
        network=NetworkSummary(n_genes=5000, soft_power=6, modules={"blue": 300, "turquoise": 900},
                               modules_path="modules.csv"),
        processing_time=123.45,
        pipeline_version="1.0.0",
    )


def test_summary_stats(report):
    stats = report.get_summary_stats()

    assert stats["samples"] == 3
    assert stats["mean_mapping_rate"] == pytest.approx(80.0)
    assert stats["min_mapping_rate"] == 65.0
    assert stats["genes_quantified"] == 20000
    assert stats["significant_genes"] == 200
    assert stats["enriched_terms"] == 10
    assert stats["coexpression_modules"] == 2
    assert stats["processing_time_seconds"] == 123.5


def test_summary_stats_empty_run():
    stats = RunReport(pipeline_version="1.0.0").get_summary_stats()

    assert stats["mean_mapping_rate"] == 0.0
    assert stats["genes_quantified"] == 0
    assert "coexpression_modules" not in stats


def test_failing_samples(report):
    assert report.failing_samples() == ["s2"]
    assert report.failing_samples(min_mapping_rate=60.0) == []
    assert not report.passes_quality()
    assert report.passes_quality(min_mapping_rate=50.0)


def test_write(report, tmp_path):
    report_file = report.write(tmp_path / "out")

    data = json.loads(report_file.read_text())
    assert data["samples"][1]["alignment"]["mapping_rate"] == 65.0
    assert data["network"]["modules"] == {"blue": 300, "turquoise": 900}

    summary = (tmp_path / "out" / "summary.txt").read_text()
    assert summary.startswith("RNA-seq Pipeline Summary\n")
    assert "samples: 3" in summary
    assert "treated_vs_control (deseq2): 120 up, 80 down of 15000 tested" in summary


def test_negative_processing_time():
    with pytest.raises(ValidationError, match="Processing time must be non-negative"):
        RunReport(processing_time=-1.0, pipeline_version="1.0.0")


@pytest.mark.parametrize("rate", [-0.1, 100.5])
def test_mapping_rate_bounds(rate):
    with pytest.raises(ValidationError):
        AlignmentStats(aligner="hisat2", input_reads=10, mapping_rate=rate)


def test_trimming_stats():
    stats = TrimmingStats(input_reads=200, surviving=150, forward_only=20,
                          reverse_only=10, dropped=20, paired=True)

    assert stats.survival_rate == 75.0
    assert TrimmingStats(input_reads=0, surviving=0, dropped=0, paired=False).survival_rate == 0.0
    with pytest.raises(ValidationError):
        TrimmingStats(input_reads=10, surviving=-1, dropped=0, paired=False)


def test_fastqc_summary_properties():
    summary = FastQCSummary(
        fastq_file="s1_R1.fastq.gz",
        total_sequences=1000,
        deduplicated_percentage=62.5,
        module_status={"Basic Statistics": "PASS", "Per base sequence content": "FAIL",
                       "Sequence Duplication Levels": "WARN", "Adapter Content": "FAIL"},
    )

    assert summary.failed_modules == ["Per base sequence content", "Adapter Content"]
    assert summary.duplication_rate == 37.5
    assert FastQCSummary(fastq_file="x.fq").duplication_rate is None


def test_contrast_name():
    de = DifferentialExpressionSummary(
        method="edger", factor="genotype", test_level="ko", reference_level="wt",
        tested_genes=1, upregulated=2, downregulated=3, padj_threshold=0.1,
        lfc_threshold=0.5, results_path="r.csv",
    )

    assert de.contrast_name == "ko_vs_wt"
    assert de.significant == 5

#!/usr/bin/env python3
"""
Tests for the command-line interface.
"""

import sys
from pathlib import Path
from unittest.mock import patch

import pandas as pd
import pytest
from click.testing import CliRunner

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from rnaseq_pipeline import __version__
from rnaseq_pipeline.cli.main import cli
from rnaseq_pipeline.models.results import DifferentialExpressionSummary


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def project(tmp_path):
    """INI configuration and a paired-end sample sheet."""
    ref = tmp_path / "ref"
    ref.mkdir()
    (ref / "genome.fa").write_text(">chr1\nACGT\n")
    (ref / "genes.gtf").write_text("")

    config = tmp_path / "pipeline.ini"
    config.write_text(
        "[Paths]\n"
        f"base_dir = {tmp_path}\n"
        f"output_dir = {tmp_path / 'out'}\n"
        f"genome_fasta = {ref / 'genome.fa'}\n"
        f"annotation_gtf = {ref / 'genes.gtf'}\n"
        "\n"
        "[Parameters]\n"
        "threads = 2\n"
        "read_length = 150\n"
        "\n"
        "[Analysis]\n"
        "design_factor = condition\n"
    )
    samples = tmp_path / "samples.csv"
    samples.write_text(
        "sample,condition,fastq_1,fastq_2\n"
        "c1,control,reads/c1_R1.fastq.gz,reads/c1_R2.fastq.gz\n"
        "c2,control,reads/c2_R1.fastq.gz,reads/c2_R2.fastq.gz\n"
        "t1,treated,reads/t1_R1.fastq.gz,reads/t1_R2.fastq.gz\n"
        "t2,treated,reads/t2_R1.fastq.gz,reads/t2_R2.fastq.gz\n"
    )
    return {"config": config, "samples": samples, "root": tmp_path}


def test_version(runner):
    result = runner.invoke(cli, ["--version"])

    assert result.exit_code == 0
    assert __version__ in result.output


def test_help_lists_commands(runner):
    result = runner.invoke(cli, ["--help"])

    assert result.exit_code == 0
    for command in ("run", "plan", "build-index", "download-reference", "de",
                    "enrich", "network", "splicing", "validate", "show-config"):
        assert command in result.output


def test_show_config(runner, project):
    result = runner.invoke(cli, ["show-config", "--config", str(project["config"])])

    assert result.exit_code == 0
    assert "Configuration Summary" in result.output
    assert "featurecounts" in result.output


def test_unknown_setting_is_reported(runner, tmp_path):
    config = tmp_path / "bad.ini"
    config.write_text("[Parameters]\nthreds = 4\n")

    result = runner.invoke(cli, ["show-config", "--config", str(config)])

    assert result.exit_code == 1
    assert "Unknown setting" in result.output


def test_plan_table(runner, project):
    result = runner.invoke(cli, [
        "plan", "--samples", str(project["samples"]), "--config", str(project["config"]),
    ])

    assert result.exit_code == 0, result.output
    assert "Pipeline Plan" in result.output
    assert "File hand-off is consistent" in result.output


def test_plan_script(runner, project):
    script = project["root"] / "run.sh"
    result = runner.invoke(cli, [
        "plan", "--samples", str(project["samples"]), "--config", str(project["config"]),
        "--script", str(script),
    ])

    assert result.exit_code == 0, result.output
    text = script.read_text()
    assert text.startswith("#!/usr/bin/env bash\nset -euo pipefail\n")
    assert "--sjdbOverhang 149" in text
    assert "featureCounts -T 2 -s 0" in text


def test_plan_with_bad_sample_sheet(runner, project):
    samples = project["root"] / "bad.csv"
    samples.write_text("sample,fastq_1\nc1,c1.fq.gz\n")

    result = runner.invoke(cli, [
        "plan", "--samples", str(samples), "--config", str(project["config"]),
    ])

    assert result.exit_code == 1
    assert "Error reading sample sheet" in result.output


def test_validate_reports_missing_tools(runner, project):
    with patch("rnaseq_pipeline.config.settings.shutil.which", return_value=None):
        result = runner.invoke(cli, ["validate", "--config", str(project["config"])])

    assert result.exit_code == 1
    assert "Configuration validation failed" in result.output
    assert "Required tool not found: STAR" in result.output


def test_validate_passes(runner, project):
    with patch("rnaseq_pipeline.config.settings.shutil.which", return_value="/usr/bin/tool"):
        result = runner.invoke(cli, ["validate", "--config", str(project["config"])])

    assert result.exit_code == 0, result.output
    assert "Configuration validation passed" in result.output


def test_de_command(runner, project):
    counts = project["root"] / "counts.csv"
    pd.DataFrame(
        {"c1": [10, 0], "c2": [12, 1], "t1": [40, 2], "t2": [38, 0]},
        index=pd.Index(["G1", "G2"], name="gene_id"),
    ).to_csv(counts)
    summary = DifferentialExpressionSummary(
        method="deseq2", factor="condition", test_level="treated", reference_level="control",
        tested_genes=2, upregulated=1, downregulated=0, padj_threshold=0.05, lfc_threshold=1.0,
        results_path="de.csv",
    )

    with patch("rnaseq_pipeline.core.pipeline.run_differential_expression",
               return_value=({}, [summary])) as mock_de:
        result = runner.invoke(cli, [
            "de", "--counts", str(counts), "--samples", str(project["samples"]),
            "--config", str(project["config"]), "--method", "edger",
        ])

    assert result.exit_code == 0, result.output
    assert "treated_vs_control" in result.output
    count_matrix, sheet, config = mock_de.call_args.args[:3]
    assert list(count_matrix.columns) == ["c1", "c2", "t1", "t2"]
    assert config.de_method == "edger"
    assert len(sheet) == 4


def test_run_dry_run(runner, project):
    with patch("rnaseq_pipeline.config.settings.shutil.which", return_value="/usr/bin/tool"):
        result = runner.invoke(cli, [
            "run", "--samples", str(project["samples"]), "--config", str(project["config"]),
            "--dry-run",
        ])

    assert result.exit_code == 0, result.output
    assert "Dry run mode" in result.output


@pytest.mark.parametrize("cli_level, expected", [(None, "DEBUG"), ("WARNING", "WARNING")])
def test_log_level_from_config_file(runner, project, cli_level, expected):
    config = project["config"]
    config.write_text(config.read_text().replace("threads = 2\n", "threads = 2\nlog_level = DEBUG\n"))
    args = ["build-index", "--config", str(config)]
    if cli_level:
        args += ["--log-level", cli_level]

    with patch("rnaseq_pipeline.cli.main.setup_logging") as mock_logging, \
            patch("rnaseq_pipeline.core.pipeline.Pipeline.build_index", return_value=Path("/idx/star")):
        result = runner.invoke(cli, args)

    assert result.exit_code == 0, result.output
    assert mock_logging.call_args.kwargs["log_level"] == expected

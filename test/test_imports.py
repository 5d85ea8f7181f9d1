#!/usr/bin/env python3
"""
Tests for import functionality.
"""

import pytest
import sys
from pathlib import Path

# Add src to path for testing
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))


def test_core_imports():
    """Test that the core stage modules can be imported correctly."""
    try:
        from rnaseq_pipeline.core import (
            reference,
            quality_control,
            trimming,
            alignment,
            quantification,
            workflow,
        )
        assert reference is not None
        assert quality_control is not None
        assert trimming is not None
        assert alignment is not None
        assert quantification is not None
        assert workflow is not None
    except ImportError as e:
        pytest.fail(f"Failed to import core modules: {e}")


def test_analysis_imports():
    """Test that the analysis modules can be imported correctly."""
    try:
        from rnaseq_pipeline.analysis import differential, enrichment, network, splicing, rscript
        assert differential.run_deseq2 is not None
        assert enrichment.run_gsea is not None
        assert network.run_wgcna is not None
        assert splicing.run_rmats is not None
        assert rscript.run_rscript is not None
    except ImportError as e:
        pytest.fail(f"Failed to import analysis modules: {e}")


def test_models_imports():
    """Test that models can be imported correctly."""
    try:
        from rnaseq_pipeline.models import (
            SampleSheet,
            FastQCSummary,
            TrimmingStats,
            AlignmentStats,
            RunReport,
        )
        assert SampleSheet is not None
        assert FastQCSummary is not None
        assert TrimmingStats is not None
        assert AlignmentStats is not None
        assert RunReport is not None
    except ImportError as e:
        pytest.fail(f"Failed to import models: {e}")


def test_utils_imports():
    """Test that utilities can be imported correctly."""
    try:
        from rnaseq_pipeline.utils import setup_logging, PipelineLogger, run_command, CommandError
        assert setup_logging is not None
        assert PipelineLogger is not None
        assert run_command is not None
        assert issubclass(CommandError, RuntimeError)
    except ImportError as e:
        pytest.fail(f"Failed to import utils: {e}")


def test_lazy_getters():
    """Test the package-level lazy getters."""
    import rnaseq_pipeline

    assert rnaseq_pipeline.get_pipeline().__name__ == "Pipeline"
    assert rnaseq_pipeline.get_pipeline_config().__name__ == "PipelineConfig"
    assert rnaseq_pipeline.get_sample_sheet().__name__ == "SampleSheet"


def test_packaged_r_scripts():
    """The R scripts ship inside the package."""
    from rnaseq_pipeline.analysis.rscript import r_script_path

    assert r_script_path("edger.R").name == "edger.R"
    assert r_script_path("wgcna.R").exists()
    with pytest.raises(FileNotFoundError):
        r_script_path("missing.R")


def test_cli_imports():
    """Test that the CLI can be imported correctly."""
    try:
        from rnaseq_pipeline.cli.main import cli, main
        assert cli is not None
        assert main is not None
    except ImportError as e:
        pytest.fail(f"Failed to import CLI: {e}")

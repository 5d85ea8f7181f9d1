"""
RNA-seq Pipeline

Drives FastQC, Trimmomatic, STAR/HISAT2, featureCounts/Salmon and the
downstream statistical tools for bulk RNA-seq experiments.
"""

__version__ = "1.0.0"
__author__ = "Bioinformatics Team"
__email__ = "team@example.com"

# Lazy imports to avoid dependency issues
def get_pipeline():
    """Get the Pipeline class."""
    from .core.pipeline import Pipeline
    return Pipeline

def get_pipeline_config():
    """Get the PipelineConfig class."""
    from .config.settings import PipelineConfig
    return PipelineConfig

def get_sample_sheet():
    """Get the SampleSheet class."""
    from .models.samples import SampleSheet
    return SampleSheet

__all__ = ["get_pipeline", "get_pipeline_config", "get_sample_sheet"]

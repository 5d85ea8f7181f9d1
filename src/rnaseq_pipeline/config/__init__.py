"""
Configuration management for the RNA-seq Pipeline.
"""

# Lazy import to avoid dependency issues
def get_pipeline_config():
    """Get the PipelineConfig class."""
    from .settings import PipelineConfig
    return PipelineConfig

def get_config_loader():
    """Get the INI configuration loader."""
    from .settings import load_pipeline_config
    return load_pipeline_config

__all__ = ["get_pipeline_config", "get_config_loader"]

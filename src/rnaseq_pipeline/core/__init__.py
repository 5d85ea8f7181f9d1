"""
Core pipeline modules for the RNA-seq Pipeline.
"""

from .pipeline import Pipeline

# Import submodules
from . import reference
from . import quality_control
from . import trimming
from . import alignment
from . import quantification
from . import workflow

__all__ = [
    "Pipeline",
    "reference",
    "quality_control",
    "trimming",
    "alignment",
    "quantification",
    "workflow",
]

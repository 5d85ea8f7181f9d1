"""
Data models for the RNA-seq Pipeline.
"""

from .samples import (
    Sample,
    SampleSheet,
    SampleSheetError,
)
from .results import (
    FastQCSummary,
    TrimmingStats,
    AlignmentStats,
    QuantificationSummary,
    DifferentialExpressionSummary,
    EnrichmentSummary,
    NetworkSummary,
    SplicingSummary,
    SampleReport,
    RunReport,
)

__all__ = [
    "Sample",
    "SampleSheet",
    "SampleSheetError",
    "FastQCSummary",
    "TrimmingStats",
    "AlignmentStats",
    "QuantificationSummary",
    "DifferentialExpressionSummary",
    "EnrichmentSummary",
    "NetworkSummary",
    "SplicingSummary",
    "SampleReport",
    "RunReport",
]

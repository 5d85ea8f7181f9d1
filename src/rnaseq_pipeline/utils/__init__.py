"""
Utility modules for the RNA-seq Pipeline.
"""

from .logging import (
    setup_logging,
    PipelineLogger,
    PerformanceMonitor,
    log_command,
    log_file_operation,
    log_error,
)
from .process import (
    CommandError,
    ToolNotFoundError,
    format_command,
    run_command,
    run_pipe,
)

__all__ = [
    "setup_logging",
    "PipelineLogger",
    "PerformanceMonitor",
    "log_command",
    "log_file_operation",
    "log_error",
    "CommandError",
    "ToolNotFoundError",
    "format_command",
    "run_command",
    "run_pipe",
]

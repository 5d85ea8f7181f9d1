"""
Running the packaged R scripts.
"""

from importlib import resources
from pathlib import Path
from typing import Sequence

import structlog

from ..utils import run_command


def r_script_path(name: str) -> Path:
    """Filesystem path of a script shipped in rnaseq_pipeline/r_scripts."""
    script = resources.files("rnaseq_pipeline").joinpath("r_scripts").joinpath(name)
    if not script.is_file():
        raise FileNotFoundError(f"Packaged R script not found: {name}")
    return Path(str(script))


def run_rscript(
    name: str,
    args: Sequence[str],
    logger: structlog.BoundLogger,
    rscript: str = "Rscript",
    timeout: int = 43200
):
    """
    Run a packaged R script with positional arguments.

    Raises:
        ToolNotFoundError: If Rscript is not installed
        CommandError: If the script fails (missing R packages included)
    """
    cmd = [rscript, "--vanilla", str(r_script_path(name)), *[str(a) for a in args]]
    return run_command(cmd, logger, tool=f"Rscript {name}", timeout=timeout)

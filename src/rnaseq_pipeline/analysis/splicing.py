"""
Differential alternative splicing with rMATS.
"""

from pathlib import Path
from typing import Dict, List, Sequence

import pandas as pd
import structlog

from ..config.settings import PipelineConfig
from ..models.results import SplicingSummary
from ..utils import run_command


EVENT_TYPES = ("SE", "A5SS", "A3SS", "MXE", "RI")


def write_bam_list(bam_files: Sequence[Path], path: Path) -> Path:
    """rMATS reads each group's BAMs from a comma-separated text file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        f.write(",".join(str(b) for b in bam_files) + "\n")
    return path


def build_rmats_command(
    b1_file: Path,
    b2_file: Path,
    annotation_gtf: Path,
    output_dir: Path,
    tmp_dir: Path,
    read_length: int,
    paired: bool,
    threads: int
) -> List[str]:
    return [
        "rmats.py",
        "--b1", str(b1_file),
        "--b2", str(b2_file),
        "--gtf", str(annotation_gtf),
        "-t", "paired" if paired else "single",
        "--readLength", str(read_length),
        "--variable-read-length",
        "--nthread", str(threads),
        "--od", str(output_dir),
        "--tmp", str(tmp_dir),
    ]


def parse_rmats_summary(summary_file: Path) -> Dict[str, int]:
    """
    Significant events per type from rMATS summary.txt.

    Uses the junction + exon count (JCEC) column when present, JC otherwise.
    """
    table = pd.read_csv(summary_file, sep="\t")
    column = next(
        (c for c in ("SignificantEventsJCEC", "SignificantEventsJC") if c in table.columns),
        None,
    )
    if column is None or "EventType" not in table.columns:
        raise ValueError(f"Unrecognised rMATS summary: {summary_file}")
    return {
        str(row["EventType"]): int(row[column])
        for _, row in table.iterrows()
        if str(row["EventType"]) in EVENT_TYPES
    }


def run_rmats(
    group1_bams: Sequence[Path],
    group2_bams: Sequence[Path],
    contrast: str,
    config: PipelineConfig,
    output_dir: Path,
    paired: bool,
    logger: structlog.BoundLogger
) -> SplicingSummary:
    """
    Compare splicing between two groups of BAM files.

    group1 is the test condition and group2 the reference, so rMATS
    IncLevelDifference is test minus reference.
    """
    if config.annotation_gtf is None:
        raise ValueError("rMATS needs annotation_gtf")
    if not group1_bams or not group2_bams:
        raise ValueError("rMATS needs BAM files for both groups")

    output_dir.mkdir(parents=True, exist_ok=True)
    b1_file = write_bam_list(group1_bams, output_dir / "b1.txt")
    b2_file = write_bam_list(group2_bams, output_dir / "b2.txt")
    cmd = build_rmats_command(
        b1_file, b2_file,
        config.annotation_gtf,
        output_dir,
        config.get_tmp_dir() / "rmats",
        config.read_length,
        paired,
        config.threads,
    )
    run_command(cmd, logger, tool="rmats", timeout=config.timeout_seconds)

    events = parse_rmats_summary(output_dir / "summary.txt")
    logger.info("rMATS completed", contrast=contrast, events=events)
    return SplicingSummary(contrast=contrast, events=events, output_dir=str(output_dir))

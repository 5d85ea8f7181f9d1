"""
Adapter and quality trimming with Trimmomatic.
"""

import re
from pathlib import Path
from typing import List, Optional, Tuple

import structlog

from ..config.settings import PipelineConfig
from ..models.results import TrimmingStats
from ..models.samples import Sample
from ..utils import run_command


PAIRED_SUMMARY = re.compile(
    r"Input Read Pairs:\s*(\d+)\s+Both Surviving:\s*(\d+).*?"
    r"Forward Only Surviving:\s*(\d+).*?Reverse Only Surviving:\s*(\d+).*?Dropped:\s*(\d+)"
)
SINGLE_SUMMARY = re.compile(
    r"Input Reads:\s*(\d+)\s+Surviving:\s*(\d+).*?Dropped:\s*(\d+)"
)


def trimmed_outputs(sample: Sample, output_dir: Path) -> dict:
    """
    Output file names for a sample.

    Paired-end samples get paired and unpaired files for both mates; the
    paired files are the ones passed on to alignment.
    """
    sid = sample.sample_id
    if sample.is_paired:
        return {
            "r1_paired": output_dir / f"{sid}_R1.paired.fastq.gz",
            "r1_unpaired": output_dir / f"{sid}_R1.unpaired.fastq.gz",
            "r2_paired": output_dir / f"{sid}_R2.paired.fastq.gz",
            "r2_unpaired": output_dir / f"{sid}_R2.unpaired.fastq.gz",
        }
    return {"r1": output_dir / f"{sid}.trimmed.fastq.gz"}


def retained_fastqs(sample: Sample, output_dir: Path) -> List[Path]:
    outputs = trimmed_outputs(sample, output_dir)
    if sample.is_paired:
        return [outputs["r1_paired"], outputs["r2_paired"]]
    return [outputs["r1"]]


def build_trimming_steps(config: PipelineConfig) -> List[str]:
    """Trimmomatic step arguments in execution order."""
    steps = []
    if config.adapters_fasta is not None:
        steps.append(f"ILLUMINACLIP:{config.adapters_fasta}:{config.illuminaclip}")
    steps.extend([
        f"LEADING:{config.leading}",
        f"TRAILING:{config.trailing}",
        f"SLIDINGWINDOW:{config.sliding_window}",
        f"MINLEN:{config.min_length}",
    ])
    return steps


def build_trimmomatic_command(
    sample: Sample,
    output_dir: Path,
    config: PipelineConfig
) -> List[str]:
    """
    trimmomatic PE|SE -threads N -phred33 INPUTS OUTPUTS STEPS...

    The `trimmomatic` wrapper script is used unless a jar is configured, in
    which case the command starts with `java -jar`.
    """
    if config.trimmomatic_jar is not None:
        cmd = ["java", f"-Xmx{min(config.max_memory_gb, 8)}g", "-jar", str(config.trimmomatic_jar)]
    else:
        cmd = ["trimmomatic"]

    outputs = trimmed_outputs(sample, output_dir)
    cmd.extend([
        "PE" if sample.is_paired else "SE",
        "-threads", str(config.threads),
        f"-phred{config.phred}",
    ])
    if sample.is_paired:
        cmd.extend([
            str(sample.fastq_1), str(sample.fastq_2),
            str(outputs["r1_paired"]), str(outputs["r1_unpaired"]),
            str(outputs["r2_paired"]), str(outputs["r2_unpaired"]),
        ])
    else:
        cmd.extend([str(sample.fastq_1), str(outputs["r1"])])
    cmd.extend(build_trimming_steps(config))
    return cmd


def parse_trimmomatic_log(text: str) -> Optional[TrimmingStats]:
    """Read the survival summary Trimmomatic prints on stderr."""
    match = PAIRED_SUMMARY.search(text)
    if match:
        total, both, fwd, rev, dropped = (int(g) for g in match.groups())
        return TrimmingStats(
            input_reads=total,
            surviving=both,
            forward_only=fwd,
            reverse_only=rev,
            dropped=dropped,
            paired=True,
        )
    match = SINGLE_SUMMARY.search(text)
    if match:
        total, surviving, dropped = (int(g) for g in match.groups())
        return TrimmingStats(
            input_reads=total,
            surviving=surviving,
            dropped=dropped,
            paired=False,
        )
    return None


def trim_sample(
    sample: Sample,
    output_dir: Path,
    config: PipelineConfig,
    logger: structlog.BoundLogger
) -> Tuple[List[Path], TrimmingStats]:
    """
    Trim one sample.

    Args:
        sample: Sample to trim
        output_dir: Directory for trimmed reads and the Trimmomatic log
        config: Pipeline configuration
        logger: Logger instance

    Returns:
        Trimmed FASTQ files to use downstream and the trimming statistics

    Raises:
        CommandError: If Trimmomatic fails
        RuntimeError: If no survival summary is found in its output
    """
    output_dir.mkdir(parents=True, exist_ok=True)
    logger.info("Starting Trimmomatic",
                sample_id=sample.sample_id,
                layout="paired" if sample.is_paired else "single")

    cmd = build_trimmomatic_command(sample, output_dir, config)
    result = run_command(
        cmd, logger,
        tool="trimmomatic",
        timeout=config.timeout_seconds,
        sample_id=sample.sample_id,
    )

    # MultiQC recognises Trimmomatic logs by their content
    log_file = output_dir / f"{sample.sample_id}.trimmomatic.log"
    with open(log_file, "w") as f:
        f.write(result.stderr or "")

    stats = parse_trimmomatic_log(result.stderr or "")
    if stats is None:
        raise RuntimeError(
            f"Trimmomatic summary not found for sample {sample.sample_id}; see {log_file}"
        )

    logger.info("Trimmomatic completed",
                sample_id=sample.sample_id,
                input_reads=stats.input_reads,
                survival_rate=round(stats.survival_rate, 2))
    return retained_fastqs(sample, output_dir), stats

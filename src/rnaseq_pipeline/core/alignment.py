"""
Spliced read alignment using STAR or HISAT2.
"""

import re
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

import structlog

from ..config.settings import PipelineConfig
from ..models.results import AlignmentStats
from ..utils import run_command, run_pipe


STAR_BAM_SUFFIX = "Aligned.sortedByCoord.out.bam"
STAR_LOG_SUFFIX = "Log.final.out"


def _is_gzipped(fastq_files: Sequence[Path]) -> bool:
    return all(str(f).endswith(".gz") for f in fastq_files)


# STAR

def build_star_index_command(
    genome_fasta: Path,
    annotation_gtf: Path,
    index_dir: Path,
    sjdb_overhang: int,
    threads: int,
    ram_limit_bytes: Optional[int] = None
) -> List[str]:
    cmd = [
        "STAR",
        "--runThreadN", str(threads),
        "--runMode", "genomeGenerate",
        "--genomeDir", str(index_dir),
        "--genomeFastaFiles", str(genome_fasta),
        "--sjdbGTFfile", str(annotation_gtf),
        "--sjdbOverhang", str(sjdb_overhang),
    ]
    if ram_limit_bytes is not None:
        cmd.extend(["--limitGenomeGenerateRAM", str(ram_limit_bytes)])
    return cmd


def star_prefix(sample_id: str, output_dir: Path) -> Path:
    """STAR output prefix; STAR appends file names directly to it."""
    return output_dir / f"{sample_id}."


def star_bam_path(sample_id: str, output_dir: Path) -> Path:
    return Path(f"{star_prefix(sample_id, output_dir)}{STAR_BAM_SUFFIX}")


def build_star_align_command(
    sample_id: str,
    fastq_files: Sequence[Path],
    index_dir: Path,
    output_dir: Path,
    threads: int,
    sort_ram_bytes: Optional[int] = None
) -> List[str]:
    cmd = [
        "STAR",
        "--runThreadN", str(threads),
        "--genomeDir", str(index_dir),
        "--readFilesIn", *[str(f) for f in fastq_files],
    ]
    if _is_gzipped(fastq_files):
        cmd.extend(["--readFilesCommand", "zcat"])
    cmd.extend([
        "--outFileNamePrefix", str(star_prefix(sample_id, output_dir)),
        "--outSAMtype", "BAM", "SortedByCoordinate",
        "--outSAMattrRGline", f"ID:{sample_id}", f"SM:{sample_id}",
        "--quantMode", "GeneCounts",
    ])
    if sort_ram_bytes is not None:
        cmd.extend(["--limitBAMsortRAM", str(sort_ram_bytes)])
    return cmd


def parse_star_log(log_text: str) -> AlignmentStats:
    """
    Parse STAR's Log.final.out.

    Raises:
        ValueError: If the input read count is missing
    """
    values: Dict[str, str] = {}
    for line in log_text.splitlines():
        if "|" not in line:
            continue
        key, _, value = line.partition("|")
        values[key.strip()] = value.strip()

    if "Number of input reads" not in values:
        raise ValueError("Not a STAR Log.final.out: 'Number of input reads' missing")

    def count(key: str) -> int:
        return int(values.get(key, "0") or 0)

    total = count("Number of input reads")
    unique = count("Uniquely mapped reads number")
    multi = count("Number of reads mapped to multiple loci")
    too_many = count("Number of reads mapped to too many loci")
    unmapped = max(total - unique - multi - too_many, 0)
    rate = 100.0 * (unique + multi) / total if total else 0.0

    return AlignmentStats(
        aligner="star",
        input_reads=total,
        uniquely_mapped=unique,
        multi_mapped=multi + too_many,
        unmapped=unmapped,
        mapping_rate=round(rate, 2),
    )


def build_star_index(
    config: PipelineConfig,
    logger: structlog.BoundLogger,
    index_dir: Optional[Path] = None
) -> Path:
    """Generate the STAR genome index with splice junctions from the GTF."""
    if config.genome_fasta is None or config.annotation_gtf is None:
        raise ValueError("STAR index needs genome_fasta and annotation_gtf")
    # STAR runs inside the index directory so Log.out and _STARtmp stay there;
    # every path it receives must therefore be absolute
    index_dir = (index_dir or config.resolved_star_index()).resolve()
    index_dir.mkdir(parents=True, exist_ok=True)

    cmd = build_star_index_command(
        config.genome_fasta.resolve(),
        config.annotation_gtf.resolve(),
        index_dir,
        config.sjdb_overhang,
        config.threads,
        ram_limit_bytes=config.max_memory_gb * 1024**3,
    )
    run_command(cmd, logger, tool="STAR", timeout=config.timeout_seconds, cwd=index_dir)
    logger.info("STAR index built", index_dir=str(index_dir))
    return index_dir


def run_star(
    sample_id: str,
    fastq_files: Sequence[Path],
    config: PipelineConfig,
    output_dir: Path,
    logger: structlog.BoundLogger
) -> Tuple[Path, AlignmentStats]:
    """Align with STAR into a coordinate-sorted BAM."""
    cmd = build_star_align_command(
        sample_id,
        fastq_files,
        config.resolved_star_index(),
        output_dir,
        config.threads,
        sort_ram_bytes=config.max_memory_gb * 1024**3,
    )
    run_command(cmd, logger, tool="STAR", timeout=config.timeout_seconds, sample_id=sample_id)

    bam_file = star_bam_path(sample_id, output_dir)
    log_file = Path(f"{star_prefix(sample_id, output_dir)}{STAR_LOG_SUFFIX}")
    if not bam_file.exists():
        raise RuntimeError(f"STAR finished but BAM not found: {bam_file}")
    stats = parse_star_log(log_file.read_text())
    return bam_file, stats


# HISAT2

def build_hisat2_index_command(
    genome_fasta: Path,
    index_prefix: Path,
    threads: int
) -> List[str]:
    return ["hisat2-build", "-p", str(threads), str(genome_fasta), str(index_prefix)]


def hisat2_bam_path(sample_id: str, output_dir: Path) -> Path:
    return output_dir / f"{sample_id}.sorted.bam"


def hisat2_summary_path(sample_id: str, output_dir: Path) -> Path:
    return output_dir / f"{sample_id}.hisat2.summary.txt"


def build_hisat2_align_command(
    sample_id: str,
    fastq_files: Sequence[Path],
    index_prefix: Path,
    output_dir: Path,
    threads: int
) -> List[str]:
    """hisat2 writes SAM to stdout; see build_samtools_sort_command."""
    cmd = ["hisat2", "-p", str(threads), "-x", str(index_prefix)]
    if len(fastq_files) == 2:
        cmd.extend(["-1", str(fastq_files[0]), "-2", str(fastq_files[1])])
    elif len(fastq_files) == 1:
        cmd.extend(["-U", str(fastq_files[0])])
    else:
        raise ValueError("HISAT2 takes one (single-end) or two (paired-end) FASTQ files")
    cmd.extend([
        "--rg-id", sample_id,
        "--rg", f"SM:{sample_id}",
        "--summary-file", str(hisat2_summary_path(sample_id, output_dir)),
    ])
    return cmd


def build_samtools_sort_command(bam_file: Path, threads: int) -> List[str]:
    """samtools sort reading SAM from stdin."""
    return ["samtools", "sort", "-@", str(threads), "-o", str(bam_file), "-"]


def parse_hisat2_summary(summary_text: str) -> AlignmentStats:
    """
    Parse the alignment summary HISAT2 writes with --summary-file.

    Raises:
        ValueError: If the read count line is missing
    """
    total_match = re.search(r"^\s*(\d+) reads; of these:", summary_text, re.MULTILINE)
    if not total_match:
        raise ValueError("Not a HISAT2 summary: read count line missing")
    total = int(total_match.group(1))

    unique_match = re.search(r"(\d+) \([\d.]+%\) aligned (?:concordantly )?exactly 1 time", summary_text)
    multi_match = re.search(r"(\d+) \([\d.]+%\) aligned (?:concordantly )?>1 times", summary_text)
    rate_match = re.search(r"([\d.]+)% overall alignment rate", summary_text)

    unique = int(unique_match.group(1)) if unique_match else 0
    multi = int(multi_match.group(1)) if multi_match else 0
    rate = float(rate_match.group(1)) if rate_match else (
        100.0 * (unique + multi) / total if total else 0.0
    )

    return AlignmentStats(
        aligner="hisat2",
        input_reads=total,
        uniquely_mapped=unique,
        multi_mapped=multi,
        unmapped=max(total - unique - multi, 0),
        mapping_rate=round(rate, 2),
    )


def build_hisat2_index(
    config: PipelineConfig,
    logger: structlog.BoundLogger,
    index_prefix: Optional[Path] = None
) -> Path:
    if config.genome_fasta is None:
        raise ValueError("HISAT2 index needs genome_fasta")
    index_prefix = index_prefix or config.resolved_hisat2_index()
    index_prefix.parent.mkdir(parents=True, exist_ok=True)

    cmd = build_hisat2_index_command(config.genome_fasta, index_prefix, config.threads)
    run_command(cmd, logger, tool="hisat2-build", timeout=config.timeout_seconds)
    logger.info("HISAT2 index built", index_prefix=str(index_prefix))
    return index_prefix


def run_hisat2(
    sample_id: str,
    fastq_files: Sequence[Path],
    config: PipelineConfig,
    output_dir: Path,
    logger: structlog.BoundLogger
) -> Tuple[Path, AlignmentStats]:
    """Align with HISAT2 and sort the output with samtools in one pipe."""
    bam_file = hisat2_bam_path(sample_id, output_dir)
    producer = build_hisat2_align_command(
        sample_id, fastq_files, config.resolved_hisat2_index(), output_dir, config.threads
    )
    consumer = build_samtools_sort_command(bam_file, config.threads)
    run_pipe(producer, consumer, logger, timeout=config.timeout_seconds, sample_id=sample_id)

    stats = parse_hisat2_summary(hisat2_summary_path(sample_id, output_dir).read_text())
    return bam_file, stats


# samtools

def build_samtools_index_command(bam_file: Path, threads: int = 1) -> List[str]:
    return ["samtools", "index", "-@", str(threads), str(bam_file)]


def index_bam(bam_file: Path, logger: structlog.BoundLogger, threads: int = 1) -> Path:
    """Index a coordinate-sorted BAM; returns the .bai path."""
    cmd = build_samtools_index_command(bam_file, threads)
    run_command(cmd, logger, tool="samtools", timeout=3600)
    return Path(f"{bam_file}.bai")


def parse_flagstat(text: str) -> Dict[str, int]:
    """QC-passed counts from `samtools flagstat` output."""
    stats: Dict[str, int] = {}
    for line in text.splitlines():
        match = re.match(r"(\d+) \+ \d+ (.+?)(?: \(|$)", line.strip())
        if not match:
            continue
        label = match.group(2).strip()
        if label.startswith("in total"):
            stats["total"] = int(match.group(1))
        elif label == "mapped":
            stats["mapped"] = int(match.group(1))
        elif label == "properly paired":
            stats["properly_paired"] = int(match.group(1))
        elif label == "duplicates":
            stats["duplicates"] = int(match.group(1))
    return stats


def flagstat_path(bam_file: Path) -> Path:
    return Path(f"{bam_file}.flagstat")


def build_samtools_flagstat_command(bam_file: Path, threads: int = 1) -> List[str]:
    return ["samtools", "flagstat", "-@", str(threads), str(bam_file)]


def bam_flagstat(bam_file: Path, logger: structlog.BoundLogger, threads: int = 1) -> Dict[str, int]:
    """Run samtools flagstat, keeping its report next to the BAM for MultiQC."""
    report = flagstat_path(bam_file)
    run_command(
        build_samtools_flagstat_command(bam_file, threads), logger,
        tool="samtools", timeout=3600, stdout_path=report,
    )
    return parse_flagstat(report.read_text())


def align_sample(
    sample_id: str,
    fastq_files: Sequence[Path],
    config: PipelineConfig,
    output_dir: Path,
    logger: structlog.BoundLogger
) -> Tuple[Path, AlignmentStats]:
    """
    Align one sample with the configured aligner and index the BAM.

    Args:
        sample_id: Sample identifier
        fastq_files: One or two (trimmed) FASTQ files
        config: Pipeline configuration
        output_dir: Output directory for BAM files and aligner logs
        logger: Logger instance

    Returns:
        Path to the sorted and indexed BAM file and the mapping statistics

    Raises:
        CommandError: If the aligner or samtools fails
    """
    logger.info("Starting alignment",
                sample_id=sample_id,
                aligner=config.aligner,
                fastq_files=[str(f) for f in fastq_files],
                threads=config.threads)

    output_dir.mkdir(parents=True, exist_ok=True)

    if config.aligner == "star":
        bam_file, stats = run_star(sample_id, fastq_files, config, output_dir, logger)
    else:
        bam_file, stats = run_hisat2(sample_id, fastq_files, config, output_dir, logger)

    index_bam(bam_file, logger, threads=config.threads)
    flagstat = bam_flagstat(bam_file, logger, threads=config.threads)

    logger.info("Alignment completed",
                sample_id=sample_id,
                output_bam=str(bam_file),
                mapping_rate=stats.mapping_rate,
                flagstat=flagstat)
    if stats.mapping_rate < config.min_mapping_rate:
        logger.warning("Low mapping rate",
                       sample_id=sample_id,
                       mapping_rate=stats.mapping_rate,
                       threshold=config.min_mapping_rate)

    return bam_file, stats

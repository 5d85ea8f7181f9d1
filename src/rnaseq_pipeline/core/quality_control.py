"""
Read quality control with FastQC and MultiQC.
"""

import re
import zipfile
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import structlog

from ..models.results import FastQCSummary
from ..utils import run_command


# Extensions FastQC strips when naming its reports, each at most once and in this order
FASTQC_STRIPPED_SUFFIXES = (".gz", ".bz2", ".txt", ".fastq", ".fq", ".csfastq", ".sam", ".bam")

MULTIQC_REPORT = "multiqc_report.html"


def fastqc_report_stem(fastq_file: Path) -> str:
    """
    Base name FastQC uses for a read file.

    >>> fastqc_report_stem(Path("S1_R1.fastq.gz"))
    'S1_R1'
    """
    name = fastq_file.name
    for suffix in FASTQC_STRIPPED_SUFFIXES:
        if name.endswith(suffix):
            name = name[: -len(suffix)]
    return name


def fastqc_report_path(fastq_file: Path, output_dir: Path) -> Path:
    return output_dir / f"{fastqc_report_stem(fastq_file)}_fastqc.zip"


def build_fastqc_command(
    fastq_files: Sequence[Path],
    output_dir: Path,
    threads: int = 1
) -> List[str]:
    """fastqc --outdir OUT --threads N --quiet FASTQ..."""
    cmd = [
        "fastqc",
        "--outdir", str(output_dir),
        "--threads", str(threads),
        "--quiet",
    ]
    cmd.extend(str(f) for f in fastq_files)
    return cmd


def build_multiqc_command(
    input_dirs: Sequence[Path],
    output_dir: Path,
    title: str = "RNA-seq QC"
) -> List[str]:
    """multiqc --outdir OUT --title T --filename multiqc_report.html --force DIR..."""
    cmd = [
        "multiqc",
        "--outdir", str(output_dir),
        "--title", title,
        "--filename", MULTIQC_REPORT,
        "--force",
    ]
    cmd.extend(str(d) for d in input_dirs)
    return cmd


def run_fastqc(
    fastq_files: Sequence[Path],
    output_dir: Path,
    threads: int,
    logger: structlog.BoundLogger,
    timeout: Optional[int] = None
) -> List[FastQCSummary]:
    """
    Run FastQC on FASTQ files and parse the reports.

    Args:
        fastq_files: FASTQ file paths
        output_dir: Output directory for the reports
        threads: Number of files processed in parallel
        logger: Logger instance
        timeout: Timeout in seconds

    Returns:
        One FastQCSummary per FASTQ file

    Raises:
        FileNotFoundError: If a FASTQ file or an expected report is missing
        CommandError: If FastQC fails
    """
    missing = [str(f) for f in fastq_files if not Path(f).exists()]
    if missing:
        raise FileNotFoundError(f"FASTQ files not found: {', '.join(missing)}")

    output_dir.mkdir(parents=True, exist_ok=True)
    logger.info("Running FastQC analysis",
                fastq_files=[str(f) for f in fastq_files],
                output_dir=str(output_dir))

    cmd = build_fastqc_command(fastq_files, output_dir, threads)
    run_command(cmd, logger, tool="fastqc", timeout=timeout)

    summaries = []
    for fastq_file in fastq_files:
        report_path = fastqc_report_path(Path(fastq_file), output_dir)
        if not report_path.exists():
            raise FileNotFoundError(f"FastQC report not found: {report_path}")
        summary = parse_fastqc_zip(report_path)
        summaries.append(summary)
        if summary.failed_modules:
            logger.warning("FastQC modules failed",
                           fastq_file=summary.fastq_file,
                           failed_modules=summary.failed_modules)

    logger.info("FastQC completed", reports=len(summaries))
    return summaries


def parse_fastqc_zip(report_path: Path) -> FastQCSummary:
    """
    Extract headline metrics from a FastQC zip archive.

    Raises:
        ValueError: If the archive holds no fastqc_data.txt
    """
    with zipfile.ZipFile(report_path, "r") as zf:
        data_name = None
        summary_name = None
        for name in zf.namelist():
            if name.endswith("fastqc_data.txt"):
                data_name = name
            elif name.endswith("summary.txt"):
                summary_name = name
        if data_name is None:
            raise ValueError(f"fastqc_data.txt not found in {report_path}")

        data_text = zf.read(data_name).decode("utf-8")
        summary_text = zf.read(summary_name).decode("utf-8") if summary_name else ""

    return parse_fastqc_data(data_text, summary_text)


def parse_fastqc_data(data_text: str, summary_text: str = "") -> FastQCSummary:
    """Parse fastqc_data.txt (and optionally summary.txt) contents."""
    basic: Dict[str, str] = {}
    module_status: Dict[str, str] = {}
    dedup: Optional[float] = None
    current_module = None

    for line in data_text.splitlines():
        if line.startswith(">>END_MODULE"):
            current_module = None
            continue
        if line.startswith(">>"):
            match = re.match(r">>([^\t]+)\t?(\w*)", line)
            if match:
                current_module = match.group(1).strip()
                if match.group(2):
                    module_status[current_module] = match.group(2).upper()
            continue
        if current_module == "Basic Statistics" and not line.startswith("#"):
            key, _, value = line.partition("\t")
            basic[key.strip()] = value.strip()
        elif current_module == "Sequence Duplication Levels" and \
                line.startswith("#Total Deduplicated Percentage"):
            dedup = float(line.split("\t")[1])

    # summary.txt is authoritative for module status when present
    for line in summary_text.splitlines():
        parts = line.split("\t")
        if len(parts) >= 2:
            module_status[parts[1].strip()] = parts[0].strip().upper()

    return FastQCSummary(
        fastq_file=basic.get("Filename", ""),
        total_sequences=int(basic.get("Total Sequences", 0) or 0),
        sequence_length=basic.get("Sequence length", ""),
        gc_content=float(basic.get("%GC", 0) or 0),
        deduplicated_percentage=dedup,
        module_status=module_status,
    )


def run_multiqc(
    input_dirs: Sequence[Path],
    output_dir: Path,
    logger: structlog.BoundLogger,
    title: str = "RNA-seq QC",
    timeout: Optional[int] = None
) -> Path:
    """
    Aggregate tool reports with MultiQC.

    Returns:
        Path of the MultiQC HTML report
    """
    output_dir.mkdir(parents=True, exist_ok=True)
    existing = [d for d in input_dirs if Path(d).exists()]
    if not existing:
        raise FileNotFoundError("No report directories exist for MultiQC")

    cmd = build_multiqc_command(existing, output_dir, title)
    run_command(cmd, logger, tool="multiqc", timeout=timeout)

    report = output_dir / MULTIQC_REPORT
    if not report.exists():
        raise FileNotFoundError(f"MultiQC report not found in {output_dir}")

    logger.info("MultiQC completed", report=str(report))
    return report

"""
Gene-level quantification with featureCounts or Salmon.
"""

import json
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
import structlog

from ..config.settings import PipelineConfig
from ..models.results import AlignmentStats, QuantificationSummary
from ..utils import run_command


FEATURECOUNTS_ANNOTATION_COLUMNS = ["Geneid", "Chr", "Start", "End", "Strand", "Length"]


# featureCounts

def build_featurecounts_command(
    bam_files: Sequence[Path],
    output_file: Path,
    annotation_gtf: Path,
    threads: int,
    strandedness: int = 0,
    paired: bool = False,
    feature_type: str = "exon",
    attribute_type: str = "gene_id"
) -> List[str]:
    cmd = [
        "featureCounts",
        "-T", str(threads),
        "-s", str(strandedness),
        "-t", feature_type,
        "-g", attribute_type,
        "-a", str(annotation_gtf),
        "-o", str(output_file),
    ]
    if paired:
        # Count fragments rather than reads (required since Subread 2.0.2)
        cmd.extend(["-p", "--countReadPairs"])
    cmd.extend(str(b) for b in bam_files)
    return cmd


def read_featurecounts(
    counts_file: Path,
    sample_ids: Optional[Sequence[str]] = None
) -> pd.DataFrame:
    """
    Read a featureCounts table as a genes x samples integer matrix.

    BAM path columns are renamed to sample ids, given in the same order as
    the BAM files were passed to featureCounts.
    """
    table = pd.read_csv(counts_file, sep="\t", comment="#")
    missing = [c for c in FEATURECOUNTS_ANNOTATION_COLUMNS if c not in table.columns]
    if missing:
        raise ValueError(f"{counts_file} is not a featureCounts table (missing {', '.join(missing)})")

    counts = table.drop(columns=FEATURECOUNTS_ANNOTATION_COLUMNS[1:]).set_index("Geneid")
    counts.index.name = "gene_id"
    if sample_ids is not None:
        if len(sample_ids) != counts.shape[1]:
            raise ValueError(
                f"Expected {len(sample_ids)} count columns in {counts_file}, found {counts.shape[1]}"
            )
        counts.columns = list(sample_ids)
    return counts.astype("int64")


def parse_featurecounts_summary(
    summary_file: Path,
    sample_ids: Optional[Sequence[str]] = None
) -> Dict[str, float]:
    """Percent of reads assigned to a feature, per sample."""
    summary = pd.read_csv(summary_file, sep="\t", index_col=0)
    if sample_ids is not None:
        summary.columns = list(sample_ids)
    totals = summary.sum(axis=0)
    assigned = summary.loc["Assigned"]
    rates = (100.0 * assigned / totals.replace(0, np.nan)).fillna(0.0)
    return {sample: round(float(rate), 2) for sample, rate in rates.items()}


def run_featurecounts(
    bam_files: Dict[str, Path],
    config: PipelineConfig,
    output_dir: Path,
    paired: bool,
    logger: structlog.BoundLogger
) -> Tuple[pd.DataFrame, QuantificationSummary]:
    """
    Count reads per gene for all samples in one featureCounts call.

    Args:
        bam_files: Sample id to coordinate-sorted BAM
        config: Pipeline configuration
        output_dir: Directory for the featureCounts table and count matrix
        paired: Paired-end data
        logger: Logger instance

    Returns:
        Genes x samples count matrix and its summary
    """
    if config.annotation_gtf is None:
        raise ValueError("featureCounts needs annotation_gtf")
    output_dir.mkdir(parents=True, exist_ok=True)

    sample_ids = list(bam_files.keys())
    raw_output = output_dir / "featurecounts.txt"
    cmd = build_featurecounts_command(
        [bam_files[s] for s in sample_ids],
        raw_output,
        config.annotation_gtf,
        config.threads,
        strandedness=config.strandedness,
        paired=paired,
        feature_type=config.feature_type,
        attribute_type=config.attribute_type,
    )
    run_command(cmd, logger, tool="featureCounts", timeout=config.timeout_seconds)

    counts = read_featurecounts(raw_output, sample_ids)
    assigned = parse_featurecounts_summary(Path(f"{raw_output}.summary"), sample_ids)
    counts_path = write_count_matrix(counts, output_dir / "gene_counts.csv")

    for sample, rate in assigned.items():
        if rate < 50.0:
            logger.warning("Low featureCounts assignment rate; check strandedness",
                           sample_id=sample, assigned_percent=rate,
                           strandedness=config.strandedness)

    summary = QuantificationSummary(
        tool="featurecounts",
        n_genes=counts.shape[0],
        n_samples=counts.shape[1],
        assigned_rate=assigned,
        counts_path=str(counts_path),
    )
    logger.info("featureCounts completed", genes=summary.n_genes, samples=summary.n_samples)
    return counts, summary


# Salmon

def build_salmon_index_command(
    transcriptome_fasta: Path,
    index_dir: Path,
    threads: int,
    kmer: int = 31
) -> List[str]:
    return [
        "salmon", "index",
        "-t", str(transcriptome_fasta),
        "-i", str(index_dir),
        "-k", str(kmer),
        "-p", str(threads),
    ]


def build_salmon_quant_command(
    fastq_files: Sequence[Path],
    index_dir: Path,
    output_dir: Path,
    threads: int,
    library_type: str = "A"
) -> List[str]:
    cmd = ["salmon", "quant", "-i", str(index_dir), "-l", library_type]
    if len(fastq_files) == 2:
        cmd.extend(["-1", str(fastq_files[0]), "-2", str(fastq_files[1])])
    elif len(fastq_files) == 1:
        cmd.extend(["-r", str(fastq_files[0])])
    else:
        raise ValueError("Salmon takes one (single-end) or two (paired-end) FASTQ files")
    cmd.extend([
        "-p", str(threads),
        "--validateMappings",
        "-o", str(output_dir),
    ])
    return cmd


def build_salmon_index(
    config: PipelineConfig,
    logger: structlog.BoundLogger,
    index_dir: Optional[Path] = None
) -> Path:
    if config.transcriptome_fasta is None:
        raise ValueError("Salmon index needs transcriptome_fasta")
    index_dir = index_dir or config.resolved_salmon_index()
    index_dir.parent.mkdir(parents=True, exist_ok=True)
    cmd = build_salmon_index_command(config.transcriptome_fasta, index_dir, config.threads)
    run_command(cmd, logger, tool="salmon", timeout=config.timeout_seconds)
    logger.info("Salmon index built", index_dir=str(index_dir))
    return index_dir


def parse_salmon_meta(meta_info_file: Path) -> AlignmentStats:
    """Mapping statistics from aux_info/meta_info.json."""
    with open(meta_info_file) as f:
        meta = json.load(f)
    processed = int(meta.get("num_processed", 0))
    mapped = int(meta.get("num_mapped", 0))
    rate = float(meta.get("percent_mapped", 100.0 * mapped / processed if processed else 0.0))
    return AlignmentStats(
        aligner="salmon",
        input_reads=processed,
        uniquely_mapped=mapped,
        unmapped=max(processed - mapped, 0),
        mapping_rate=round(rate, 2),
    )


def quantify_sample_salmon(
    sample_id: str,
    fastq_files: Sequence[Path],
    config: PipelineConfig,
    output_dir: Path,
    logger: structlog.BoundLogger
) -> Tuple[Path, AlignmentStats]:
    """Quantify one sample; returns its Salmon directory and mapping stats."""
    sample_dir = output_dir / sample_id
    cmd = build_salmon_quant_command(
        fastq_files,
        config.resolved_salmon_index(),
        sample_dir,
        config.threads,
        library_type=config.library_type,
    )
    run_command(cmd, logger, tool="salmon", timeout=config.timeout_seconds, sample_id=sample_id)

    quant_file = sample_dir / "quant.sf"
    if not quant_file.exists():
        raise RuntimeError(f"Salmon finished but quant.sf not found: {quant_file}")
    stats = parse_salmon_meta(sample_dir / "aux_info" / "meta_info.json")
    logger.info("Salmon quantification completed",
                sample_id=sample_id, mapping_rate=stats.mapping_rate)
    return sample_dir, stats


def aggregate_salmon(
    quant_dirs: Dict[str, Path],
    tx2gene: pd.DataFrame
) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """
    Sum transcript estimates to gene level.

    Transcript ids are matched with and without version suffixes. Estimated
    counts are rounded to integers for count-based models.

    Returns:
        Gene-level counts and TPM matrices (genes x samples)
    """
    mapping = tx2gene.set_index("transcript_id")["gene_id"]
    unversioned = mapping.copy()
    unversioned.index = unversioned.index.str.replace(r"\.\d+$", "", regex=True)

    counts_list = []
    tpm_list = []
    for sample_id, sample_dir in quant_dirs.items():
        quant = pd.read_csv(Path(sample_dir) / "quant.sf", sep="\t")
        genes = quant["Name"].map(mapping)
        unmatched = genes.isna()
        if unmatched.any():
            stripped = quant.loc[unmatched, "Name"].str.replace(r"\.\d+$", "", regex=True)
            genes.loc[unmatched] = stripped.map(unversioned[~unversioned.index.duplicated()])
        quant = quant.assign(gene_id=genes).dropna(subset=["gene_id"])
        if quant.empty:
            raise ValueError(f"No transcripts of sample {sample_id} match the tx2gene table")

        gene_counts = quant.groupby("gene_id")["NumReads"].sum()
        gene_tpm = quant.groupby("gene_id")["TPM"].sum()
        gene_counts.name = sample_id
        gene_tpm.name = sample_id
        counts_list.append(gene_counts)
        tpm_list.append(gene_tpm)

    counts = pd.concat(counts_list, axis=1).fillna(0).round().astype("int64")
    tpm = pd.concat(tpm_list, axis=1).fillna(0.0)
    counts.index.name = "gene_id"
    tpm.index.name = "gene_id"
    return counts, tpm


def write_count_matrix(matrix: pd.DataFrame, path: Path) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    matrix.index.name = "gene_id"
    matrix.to_csv(path)
    return path


def read_count_matrix(path: Path) -> pd.DataFrame:
    """Read a genes x samples count CSV written by write_count_matrix."""
    counts = pd.read_csv(path, index_col=0)
    if counts.empty:
        raise ValueError(f"Count matrix {path} is empty")
    if (counts.values < 0).any():
        raise ValueError(f"Count matrix {path} contains negative values")
    return counts.round().astype("int64")

"""
Differential expression with DESeq2 (pydeseq2) or edgeR (Rscript).
"""

from pathlib import Path
from typing import Optional, Tuple

import numpy as np
import pandas as pd
import structlog
from pydeseq2.dds import DeseqDataSet
from pydeseq2.default_inference import DefaultInference
from pydeseq2.ds import DeseqStats

from ..config.settings import PipelineConfig
from ..models.results import DifferentialExpressionSummary
from .rscript import run_rscript


RESULT_COLUMNS = ["baseMean", "log2FoldChange", "lfcSE", "stat", "pvalue", "padj"]


def filter_low_counts(
    counts: pd.DataFrame,
    min_count: int = 10,
    min_samples: int = 2
) -> pd.DataFrame:
    """Keep genes with at least min_count reads in total, detected in min_samples samples."""
    total = counts.sum(axis=1)
    detected = (counts > 0).sum(axis=1)
    return counts[(total >= min_count) & (detected >= min_samples)]


def validate_design(
    counts: pd.DataFrame,
    metadata: pd.DataFrame,
    factor: str,
    test_level: str,
    reference_level: str
) -> pd.DataFrame:
    """
    Check the contrast against the metadata and align metadata to the counts.

    Raises:
        ValueError: If the factor or a level is missing, samples don't match,
            or a level has fewer than two replicates
    """
    if factor not in metadata.columns:
        raise ValueError(f"Contrast variable '{factor}' not in metadata")

    missing = [s for s in counts.columns if s not in metadata.index]
    if missing:
        raise ValueError(f"Samples missing from metadata: {', '.join(missing)}")
    metadata = metadata.loc[list(counts.columns)]

    levels = metadata[factor].astype(str)
    for level in (test_level, reference_level):
        n = int((levels == level).sum())
        if n == 0:
            raise ValueError(f"Level '{level}' not found in '{factor}'")
        if n < 2:
            raise ValueError(f"Level '{level}' of '{factor}' needs at least two replicates")
    return metadata


def _design_formula(metadata: pd.DataFrame, factor: str) -> str:
    terms = []
    if "batch" in metadata.columns and factor != "batch" and metadata["batch"].nunique() > 1:
        terms.append("batch")
    terms.append(factor)
    return "~" + " + ".join(terms)


def run_deseq2(
    counts: pd.DataFrame,
    metadata: pd.DataFrame,
    factor: str,
    test_level: str,
    reference_level: str,
    threads: int = 1
) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """
    Wald test with pydeseq2.

    Args:
        counts: Raw counts (genes x samples)
        metadata: Sample metadata indexed by sample id
        factor: Metadata column tested
        test_level: Numerator level
        reference_level: Denominator level
        threads: CPUs for pydeseq2

    Returns:
        Results table (RESULT_COLUMNS, indexed by gene) and normalized
        counts (genes x samples)
    """
    metadata = metadata.copy()
    for column in metadata.columns:
        metadata[column] = metadata[column].astype(str)

    inference = DefaultInference(n_cpus=threads)
    dds = DeseqDataSet(
        counts=counts.T,  # pydeseq2 expects samples x genes
        metadata=metadata,
        design=_design_formula(metadata, factor),
        refit_cooks=True,
        inference=inference,
        quiet=True,
    )
    dds.deseq2()

    stats = DeseqStats(
        dds,
        contrast=[factor, test_level, reference_level],
        inference=inference,
        quiet=True,
    )
    stats.summary()

    results = stats.results_df[RESULT_COLUMNS].copy()
    results.index.name = "gene_id"
    normalized = pd.DataFrame(
        dds.layers["normed_counts"],
        index=dds.obs_names,
        columns=dds.var_names,
    ).T
    normalized.index.name = "gene_id"
    return results, normalized


def run_edger(
    counts: pd.DataFrame,
    metadata: pd.DataFrame,
    factor: str,
    test_level: str,
    reference_level: str,
    work_dir: Path,
    logger: structlog.BoundLogger,
    rscript: str = "Rscript",
    timeout: int = 43200
) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """
    Quasi-likelihood F-test with edgeR through the packaged edger.R.

    edgeR columns are renamed to the DESeq2 vocabulary: logFC becomes
    log2FoldChange, PValue pvalue, FDR padj, F stat, and baseMean is the
    mean normalized CPM. Genes removed by filterByExpr get NaN statistics.

    Returns:
        Results table and normalized (CPM) expression
    """
    work_dir.mkdir(parents=True, exist_ok=True)
    stem = f"{test_level}_vs_{reference_level}"
    counts_file = work_dir / f"{stem}_edger_counts.csv"
    metadata_file = work_dir / f"{stem}_edger_metadata.csv"
    output_file = work_dir / f"{stem}_edger_raw.csv"

    counts.to_csv(counts_file)
    metadata.loc[list(counts.columns)].to_csv(metadata_file)

    run_rscript(
        "edger.R",
        [counts_file, metadata_file, factor, test_level, reference_level, output_file],
        logger,
        rscript=rscript,
        timeout=timeout,
    )

    raw = pd.read_csv(output_file, index_col="gene_id")
    cpm = pd.read_csv(output_file.with_name(f"{output_file.stem}_cpm.csv"), index_col="gene_id")

    results = pd.DataFrame(index=counts.index)
    results.index.name = "gene_id"
    results["baseMean"] = cpm.mean(axis=1)
    results["log2FoldChange"] = raw["logFC"]
    results["lfcSE"] = np.nan
    results["stat"] = raw["F"]
    results["pvalue"] = raw["PValue"]
    results["padj"] = raw["FDR"]
    return results[RESULT_COLUMNS], cpm


def classify_results(
    results: pd.DataFrame,
    padj_threshold: float = 0.05,
    lfc_threshold: float = 1.0
) -> pd.DataFrame:
    """Add a regulation column: up, down or ns. Missing padj is never significant."""
    results = results.copy()
    significant = results["padj"].notna() & (results["padj"] < padj_threshold) & \
        (results["log2FoldChange"].abs() >= lfc_threshold)
    results["regulation"] = np.where(
        significant & (results["log2FoldChange"] > 0), "up",
        np.where(significant & (results["log2FoldChange"] < 0), "down", "ns")
    )
    return results


def differential_expression(
    counts: pd.DataFrame,
    metadata: pd.DataFrame,
    factor: str,
    test_level: str,
    reference_level: str,
    config: PipelineConfig,
    output_dir: Path,
    logger: structlog.BoundLogger,
    gene_names: Optional[pd.Series] = None
) -> Tuple[pd.DataFrame, DifferentialExpressionSummary]:
    """
    Run one contrast with the configured method and write the results.

    Writes `<test>_vs_<reference>_results.csv` (sorted by padj) and
    `<test>_vs_<reference>_normalized_counts.csv` into output_dir.

    Returns:
        Classified results table and the contrast summary
    """
    metadata = validate_design(counts, metadata, factor, test_level, reference_level)
    filtered = filter_low_counts(counts, config.min_count, config.min_samples)
    if filtered.empty:
        raise ValueError("No genes left after low-count filtering")
    logger.info("Filtered low-count genes",
                removed=int(counts.shape[0] - filtered.shape[0]),
                remaining=int(filtered.shape[0]))

    logger.info("Starting differential expression",
                method=config.de_method, factor=factor,
                test_level=test_level, reference_level=reference_level)

    if config.de_method == "deseq2":
        results, normalized = run_deseq2(
            filtered, metadata, factor, test_level, reference_level, threads=config.threads
        )
    else:
        results, normalized = run_edger(
            filtered, metadata, factor, test_level, reference_level,
            output_dir / "edger", logger,
            rscript=config.rscript, timeout=config.timeout_seconds,
        )

    results = classify_results(results, config.padj_threshold, config.lfc_threshold)
    if gene_names is not None:
        results.insert(0, "gene_name", results.index.map(gene_names).fillna(""))
    results = results.sort_values("padj", na_position="last")

    output_dir.mkdir(parents=True, exist_ok=True)
    contrast = f"{test_level}_vs_{reference_level}"
    results_path = output_dir / f"{contrast}_results.csv"
    results.to_csv(results_path)
    normalized.to_csv(output_dir / f"{contrast}_normalized_counts.csv")

    summary = DifferentialExpressionSummary(
        method=config.de_method,
        factor=factor,
        test_level=test_level,
        reference_level=reference_level,
        tested_genes=int(results["padj"].notna().sum()),
        upregulated=int((results["regulation"] == "up").sum()),
        downregulated=int((results["regulation"] == "down").sum()),
        padj_threshold=config.padj_threshold,
        lfc_threshold=config.lfc_threshold,
        results_path=str(results_path),
    )
    logger.info("Differential expression completed",
                contrast=contrast,
                tested_genes=summary.tested_genes,
                upregulated=summary.upregulated,
                downregulated=summary.downregulated)
    return results, summary

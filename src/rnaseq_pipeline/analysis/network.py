"""
Co-expression network analysis with WGCNA.
"""

from pathlib import Path

import numpy as np
import pandas as pd
import structlog

from ..config.settings import PipelineConfig
from ..models.results import NetworkSummary
from .rscript import run_rscript


MIN_MODULE_SIZE = 30


def select_variable_genes(normalized: pd.DataFrame, top_n: int = 5000) -> pd.DataFrame:
    """
    log2(x + 1) expression of the top_n most variable genes.

    Args:
        normalized: Normalized expression (genes x samples)
        top_n: Number of genes kept

    Returns:
        Log expression (genes x samples), most variable first
    """
    log_expr = np.log2(normalized.clip(lower=0) + 1)
    variance = log_expr.var(axis=1)
    keep = variance[variance > 0].sort_values(ascending=False).index[:top_n]
    return log_expr.loc[keep]


def encode_traits(metadata: pd.DataFrame) -> pd.DataFrame:
    """
    Numeric trait table for module-trait correlation.

    Each categorical column becomes one 0/1 indicator per level; numeric
    columns are kept as they are.
    """
    traits = {}
    for column in metadata.columns:
        values = pd.to_numeric(metadata[column], errors="coerce")
        if values.notna().all():
            traits[column] = values
            continue
        for level in pd.unique(metadata[column].astype(str)):
            traits[f"{column}_{level}"] = (metadata[column].astype(str) == level).astype(int)
    return pd.DataFrame(traits, index=metadata.index)


def run_wgcna(
    normalized: pd.DataFrame,
    metadata: pd.DataFrame,
    config: PipelineConfig,
    output_dir: Path,
    logger: structlog.BoundLogger
) -> NetworkSummary:
    """
    Build a signed co-expression network and relate its modules to traits.

    Raises:
        ValueError: With fewer than MIN_MODULE_SIZE variable genes or fewer
            than four samples
        CommandError: If the R script fails
    """
    expression = select_variable_genes(normalized, config.network_top_genes)
    if expression.shape[0] < MIN_MODULE_SIZE:
        raise ValueError(
            f"WGCNA needs at least {MIN_MODULE_SIZE} variable genes, got {expression.shape[0]}"
        )
    if expression.shape[1] < 4:
        raise ValueError("WGCNA needs at least four samples")

    output_dir.mkdir(parents=True, exist_ok=True)
    expression_file = output_dir / "expression.csv"
    traits_file = output_dir / "traits.csv"
    expression.T.to_csv(expression_file)
    encode_traits(metadata.loc[list(expression.columns)]).to_csv(traits_file)

    logger.info("Starting WGCNA", genes=expression.shape[0], samples=expression.shape[1])
    run_rscript(
        "wgcna.R",
        [expression_file, traits_file, output_dir, MIN_MODULE_SIZE, config.threads],
        logger,
        rscript=config.rscript,
        timeout=config.timeout_seconds,
    )

    modules = pd.read_csv(output_dir / "modules.csv")
    power = int(float((output_dir / "power.txt").read_text().strip()))
    module_sizes = modules["module"].value_counts()

    summary = NetworkSummary(
        n_genes=int(len(modules)),
        soft_power=power,
        modules={str(k): int(v) for k, v in module_sizes.items()},
        modules_path=str(output_dir / "modules.csv"),
        module_trait_path=str(output_dir / "module_trait.csv"),
    )
    logger.info("WGCNA completed",
                soft_power=power,
                modules=len(summary.modules))
    return summary

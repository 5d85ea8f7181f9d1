"""
Functional enrichment of differential expression results with gseapy.

Over-representation analysis (ORA) tests the significant genes against GO,
KEGG or any GMT collection; GSEA prerank uses the whole ranked gene list.
"""

from pathlib import Path
from typing import Dict, List, Optional, Sequence, Union

import gseapy as gp
import numpy as np
import pandas as pd
import structlog

from ..config.settings import PipelineConfig
from ..models.results import EnrichmentSummary


GeneSets = Union[str, Dict[str, List[str]]]

ORA_COLUMNS = {
    "Gene_set": "gene_set",
    "Term": "term",
    "Overlap": "overlap",
    "P-value": "pvalue",
    "Adjusted P-value": "padj",
    "Odds Ratio": "odds_ratio",
    "Combined Score": "combined_score",
    "Genes": "genes",
}

GSEA_COLUMNS = {
    "Term": "term",
    "ES": "es",
    "NES": "nes",
    "NOM p-val": "pvalue",
    "FDR q-val": "fdr",
    "FWER p-val": "fwer",
    "Tag %": "tag_percent",
    "Gene %": "gene_percent",
    "Lead_genes": "lead_genes",
}


def read_gmt(gmt_file: Path) -> Dict[str, List[str]]:
    """Gene set name to member genes."""
    return gp.read_gmt(str(gmt_file))


def gene_symbols(results: pd.DataFrame) -> pd.Series:
    """Gene symbol per result row, falling back to the gene id."""
    if "gene_name" in results.columns:
        names = results["gene_name"].astype(str).replace({"": np.nan, "nan": np.nan})
        return names.fillna(pd.Series(results.index.astype(str), index=results.index))
    return pd.Series(results.index.astype(str), index=results.index)


def significant_genes(results: pd.DataFrame, direction: str = "both") -> List[str]:
    """Symbols of genes classified up, down or either."""
    if direction not in ("up", "down", "both"):
        raise ValueError("direction must be 'up', 'down' or 'both'")
    wanted = ("up", "down") if direction == "both" else (direction,)
    mask = results["regulation"].isin(wanted)
    return list(dict.fromkeys(gene_symbols(results)[mask]))


def ranking_metric(results: pd.DataFrame) -> pd.Series:
    """
    -log10(pvalue) * sign(log2FoldChange), highest first.

    Genes without a p-value are dropped; duplicated symbols keep their
    strongest score.
    """
    usable = results.dropna(subset=["pvalue", "log2FoldChange"])
    pval = usable["pvalue"].clip(lower=1e-300)
    score = -np.log10(pval) * np.sign(usable["log2FoldChange"])

    frame = pd.DataFrame({"gene": gene_symbols(usable).values, "score": score.values})
    frame["strength"] = frame["score"].abs()
    frame = frame.sort_values("strength", ascending=False, kind="mergesort")
    frame = frame.drop_duplicates("gene")
    ranking = frame.set_index("gene")["score"].sort_values(ascending=False, kind="mergesort")
    ranking.index.name = None
    return ranking


def run_ora(
    genes: Sequence[str],
    gene_sets: GeneSets,
    logger: structlog.BoundLogger,
    background: Optional[Sequence[str]] = None,
    organism: str = "human",
    cutoff: float = 0.05
) -> pd.DataFrame:
    """
    Over-representation analysis.

    Local gene sets (a GMT path or a dict) are tested offline with
    gseapy.enrich against the background; a name such as
    'KEGG_2021_Human' is sent to the Enrichr service.

    Returns:
        Standardized results sorted by adjusted p-value (possibly empty)
    """
    genes = list(genes)
    if not genes:
        logger.info("No genes for over-representation analysis")
        return pd.DataFrame(columns=list(ORA_COLUMNS.values()))

    local = isinstance(gene_sets, dict) or Path(str(gene_sets)).suffix == ".gmt"
    if local:
        enr = gp.enrich(
            gene_list=genes,
            gene_sets=gene_sets if isinstance(gene_sets, dict) else str(gene_sets),
            background=list(background) if background is not None else None,
            outdir=None,
            cutoff=1.0,
            verbose=False,
        )
    else:
        enr = gp.enrichr(
            gene_list=genes,
            gene_sets=gene_sets,
            organism=organism,
            outdir=None,
            cutoff=1.0,
        )

    results = enr.results
    if results is None or len(results) == 0:
        return pd.DataFrame(columns=list(ORA_COLUMNS.values()))
    results = results.rename(columns=ORA_COLUMNS)
    results = results[[c for c in ORA_COLUMNS.values() if c in results.columns]]
    results = results.sort_values("padj").reset_index(drop=True)
    logger.info("Over-representation analysis completed",
                genes=len(genes), terms=len(results),
                significant=int((results["padj"] < cutoff).sum()))
    return results


def run_gsea(
    ranking: pd.Series,
    gene_sets: GeneSets,
    logger: structlog.BoundLogger,
    permutations: int = 1000,
    min_size: int = 15,
    max_size: int = 500,
    threads: int = 1,
    seed: int = 42
) -> pd.DataFrame:
    """
    Preranked GSEA.

    Returns:
        Standardized results sorted by FDR (possibly empty)
    """
    if ranking.empty:
        logger.info("Empty ranking, skipping GSEA")
        return pd.DataFrame(columns=list(GSEA_COLUMNS.values()))

    pre_res = gp.prerank(
        rnk=ranking,
        gene_sets=gene_sets if isinstance(gene_sets, dict) else str(gene_sets),
        min_size=min_size,
        max_size=max_size,
        permutation_num=permutations,
        threads=threads,
        seed=seed,
        outdir=None,
        verbose=False,
    )
    results = pre_res.res2d
    if results is None or len(results) == 0:
        return pd.DataFrame(columns=list(GSEA_COLUMNS.values()))
    results = results.rename(columns=GSEA_COLUMNS)
    results = results[[c for c in GSEA_COLUMNS.values() if c in results.columns]].copy()
    for column in ("es", "nes", "pvalue", "fdr", "fwer"):
        if column in results.columns:
            results[column] = pd.to_numeric(results[column], errors="coerce")
    results = results.sort_values("fdr").reset_index(drop=True)
    logger.info("GSEA completed", ranked_genes=len(ranking), terms=len(results))
    return results


def _gene_set_sources(config: PipelineConfig) -> List[GeneSets]:
    if config.gene_sets_gmt is not None:
        return [str(config.gene_sets_gmt)]
    return list(config.enrichment_libraries)


def _source_label(source: GeneSets) -> str:
    return Path(source).stem if isinstance(source, str) else "custom"


def run_enrichment(
    results: pd.DataFrame,
    contrast: str,
    config: PipelineConfig,
    output_dir: Path,
    logger: structlog.BoundLogger
) -> List[EnrichmentSummary]:
    """
    ORA on the up- and down-regulated genes plus GSEA on the full ranking,
    for every configured gene set source.

    Returns:
        One summary per (analysis, gene list, source) written to output_dir
    """
    output_dir.mkdir(parents=True, exist_ok=True)
    summaries: List[EnrichmentSummary] = []
    background = list(dict.fromkeys(gene_symbols(results.dropna(subset=["padj"]))))
    ranking = ranking_metric(results)

    for source in _gene_set_sources(config):
        label = _source_label(source)

        for direction in ("up", "down"):
            genes = significant_genes(results, direction)
            ora = run_ora(
                genes, source, logger,
                background=background if config.gene_sets_gmt is not None else None,
                organism=config.organism,
                cutoff=config.padj_threshold,
            )
            path = output_dir / f"{contrast}_ora_{direction}_{label}.csv"
            ora.to_csv(path, index=False)
            summaries.append(EnrichmentSummary(
                analysis=f"ora_{direction}",
                contrast=contrast,
                gene_sets=label,
                query_size=len(genes),
                n_terms=len(ora),
                n_significant=int((ora["padj"] < config.padj_threshold).sum()) if len(ora) else 0,
                results_path=str(path),
            ))

        gsea = run_gsea(
            ranking, source, logger,
            permutations=config.gsea_permutations,
            min_size=config.gsea_min_size,
            max_size=config.gsea_max_size,
            threads=config.threads,
            seed=config.seed,
        )
        path = output_dir / f"{contrast}_gsea_{label}.csv"
        gsea.to_csv(path, index=False)
        summaries.append(EnrichmentSummary(
            analysis="gsea",
            contrast=contrast,
            gene_sets=label,
            query_size=len(ranking),
            n_terms=len(gsea),
            n_significant=int((gsea["fdr"] < config.padj_threshold).sum()) if len(gsea) else 0,
            results_path=str(path),
        ))

    return summaries

"""
Result models for the steps of the RNA-seq Pipeline.
"""

from pathlib import Path
from typing import Dict, List, Optional, Union

import numpy as np
from pydantic import BaseModel, Field, field_validator


class FastQCSummary(BaseModel):
    """Headline metrics of one FastQC report."""

    fastq_file: str = Field(description="FASTQ file name as reported by FastQC")
    total_sequences: int = Field(default=0, description="Total sequences")
    sequence_length: str = Field(default="", description="Sequence length or range")
    gc_content: float = Field(default=0.0, description="Percent GC")
    deduplicated_percentage: Optional[float] = Field(
        default=None, description="Percent of sequences remaining after deduplication"
    )
    module_status: Dict[str, str] = Field(
        default_factory=dict, description="Module name to PASS/WARN/FAIL"
    )

    @field_validator('total_sequences')
    @classmethod
    def validate_total(cls, v):
        if v < 0:
            raise ValueError("Total sequences must be non-negative")
        return v

    @property
    def failed_modules(self) -> List[str]:
        return [name for name, status in self.module_status.items() if status == "FAIL"]

    @property
    def duplication_rate(self) -> Optional[float]:
        if self.deduplicated_percentage is None:
            return None
        return 100.0 - self.deduplicated_percentage


class TrimmingStats(BaseModel):
    """Read survival reported by Trimmomatic."""

    input_reads: int = Field(description="Input reads (pairs for paired-end)")
    surviving: int = Field(description="Reads (pairs) kept in full")
    forward_only: int = Field(default=0, description="Pairs where only read 1 survived")
    reverse_only: int = Field(default=0, description="Pairs where only read 2 survived")
    dropped: int = Field(description="Reads (pairs) discarded")
    paired: bool = Field(description="Paired-end mode")

    @field_validator('input_reads', 'surviving', 'forward_only', 'reverse_only', 'dropped')
    @classmethod
    def validate_counts(cls, v):
        if v < 0:
            raise ValueError("Read counts must be non-negative")
        return v

    @property
    def survival_rate(self) -> float:
        if self.input_reads == 0:
            return 0.0
        return 100.0 * self.surviving / self.input_reads


class AlignmentStats(BaseModel):
    """Mapping statistics of one sample."""

    aligner: str = Field(description="Aligner or quantifier that produced the numbers")
    input_reads: int = Field(description="Input reads (pairs for paired-end)")
    uniquely_mapped: int = Field(default=0, description="Uniquely mapped reads")
    multi_mapped: int = Field(default=0, description="Reads mapped to multiple loci")
    unmapped: int = Field(default=0, description="Unmapped reads")
    mapping_rate: float = Field(description="Overall mapping rate in percent")

    @field_validator('mapping_rate')
    @classmethod
    def validate_rate(cls, v):
        if v < 0 or v > 100:
            raise ValueError("Mapping rate must be between 0 and 100")
        return v


class QuantificationSummary(BaseModel):
    """Gene-level count matrix produced for the cohort."""

    tool: str = Field(description="featureCounts or salmon")
    n_genes: int = Field(description="Genes in the count matrix")
    n_samples: int = Field(description="Samples in the count matrix")
    assigned_rate: Dict[str, float] = Field(
        default_factory=dict, description="Percent of reads assigned to genes per sample"
    )
    counts_path: str = Field(description="Count matrix CSV")
    tpm_path: Optional[str] = Field(default=None, description="TPM matrix CSV (Salmon only)")


class DifferentialExpressionSummary(BaseModel):
    """Outcome of one contrast."""

    method: str = Field(description="deseq2 or edger")
    factor: str = Field(description="Tested metadata column")
    test_level: str = Field(description="Numerator level")
    reference_level: str = Field(description="Denominator level")
    tested_genes: int = Field(description="Genes tested after filtering")
    upregulated: int = Field(description="Significant genes with positive fold change")
    downregulated: int = Field(description="Significant genes with negative fold change")
    padj_threshold: float = Field(description="Adjusted p-value cutoff")
    lfc_threshold: float = Field(description="Absolute log2 fold change cutoff")
    results_path: str = Field(description="Full results table CSV")

    @property
    def contrast_name(self) -> str:
        return f"{self.test_level}_vs_{self.reference_level}"

    @property
    def significant(self) -> int:
        return self.upregulated + self.downregulated


class EnrichmentSummary(BaseModel):
    """Outcome of one enrichment analysis."""

    analysis: str = Field(description="ora or gsea")
    contrast: str = Field(description="Contrast the gene list came from")
    gene_sets: str = Field(description="Gene set library or GMT file")
    query_size: int = Field(description="Genes submitted (ORA) or ranked (GSEA)")
    n_terms: int = Field(description="Terms reported")
    n_significant: int = Field(description="Terms below the FDR cutoff")
    results_path: Optional[str] = Field(default=None, description="Results CSV")


class NetworkSummary(BaseModel):
    """Co-expression modules found by WGCNA."""

    n_genes: int = Field(description="Genes in the network")
    soft_power: int = Field(description="Soft-thresholding power")
    modules: Dict[str, int] = Field(default_factory=dict, description="Module colour to gene count")
    modules_path: str = Field(description="Gene to module CSV")
    module_trait_path: Optional[str] = Field(default=None, description="Module-trait correlation CSV")


class SplicingSummary(BaseModel):
    """Differential splicing events reported by rMATS."""

    contrast: str = Field(description="Compared groups")
    events: Dict[str, int] = Field(default_factory=dict, description="Event type to significant event count")
    output_dir: str = Field(description="rMATS output directory")


class SampleReport(BaseModel):
    """Per-sample results of the pre-processing steps."""

    sample_id: str = Field(description="Sample identifier")
    condition: str = Field(description="Experimental group")
    raw_qc: List[FastQCSummary] = Field(default_factory=list, description="FastQC on raw reads")
    trimmed_qc: List[FastQCSummary] = Field(default_factory=list, description="FastQC on trimmed reads")
    trimming: Optional[TrimmingStats] = Field(default=None, description="Trimmomatic statistics")
    alignment: Optional[AlignmentStats] = Field(default=None, description="Alignment statistics")
    bam_file: Optional[str] = Field(default=None, description="Coordinate-sorted BAM")
    quant_dir: Optional[str] = Field(default=None, description="Salmon quantification directory")


class RunReport(BaseModel):
    """Complete record of one pipeline run."""

    samples: List[SampleReport] = Field(default_factory=list, description="Per-sample reports")
    quantification: Optional[QuantificationSummary] = Field(default=None, description="Count matrix")
    differential_expression: List[DifferentialExpressionSummary] = Field(
        default_factory=list, description="One entry per contrast"
    )
    enrichment: List[EnrichmentSummary] = Field(default_factory=list, description="ORA and GSEA results")
    network: Optional[NetworkSummary] = Field(default=None, description="WGCNA modules")
    splicing: Optional[SplicingSummary] = Field(default=None, description="rMATS results")
    multiqc_report: Optional[str] = Field(default=None, description="MultiQC HTML report")
    processing_time: float = Field(default=0.0, description="Total processing time in seconds")
    stage_durations: Dict[str, float] = Field(
        default_factory=dict, description="Seconds spent in each pipeline stage"
    )
    pipeline_version: str = Field(description="Pipeline version used")

    @field_validator('processing_time')
    @classmethod
    def validate_processing_time(cls, v):
        """Validate that processing time is positive."""
        if v < 0:
            raise ValueError("Processing time must be non-negative")
        return v

    def to_dict(self) -> Dict:
        return self.model_dump(mode="json")

    def to_json(self) -> str:
        return self.model_dump_json(indent=2)

    def get_summary_stats(self) -> Dict[str, Union[int, float, str]]:
        """Get summary statistics for the run."""
        rates = [s.alignment.mapping_rate for s in self.samples if s.alignment is not None]
        stats: Dict[str, Union[int, float, str]] = {
            "samples": len(self.samples),
            "mean_mapping_rate": float(np.mean(rates)) if rates else 0.0,
            "min_mapping_rate": float(np.min(rates)) if rates else 0.0,
            "genes_quantified": self.quantification.n_genes if self.quantification else 0,
            "contrasts": len(self.differential_expression),
            "significant_genes": sum(de.significant for de in self.differential_expression),
            "enriched_terms": sum(e.n_significant for e in self.enrichment),
            "processing_time_seconds": round(self.processing_time, 1),
        }
        if self.network is not None:
            stats["coexpression_modules"] = len(self.network.modules)
        return stats

    def failing_samples(self, min_mapping_rate: float = 70.0) -> List[str]:
        """Samples whose mapping rate is below the threshold."""
        return [
            s.sample_id for s in self.samples
            if s.alignment is not None and s.alignment.mapping_rate < min_mapping_rate
        ]

    def passes_quality(self, min_mapping_rate: float = 70.0) -> bool:
        return not self.failing_samples(min_mapping_rate)

    def write(self, output_dir: Path) -> Path:
        """Write report.json and summary.txt; return the JSON path."""
        output_dir.mkdir(parents=True, exist_ok=True)
        report_file = output_dir / "report.json"
        with open(report_file, "w") as f:
            f.write(self.to_json())

        summary_file = output_dir / "summary.txt"
        with open(summary_file, "w") as f:
            f.write("RNA-seq Pipeline Summary\n")
            f.write("=" * 40 + "\n\n")
            for key, value in self.get_summary_stats().items():
                f.write(f"{key}: {value}\n")
            for de in self.differential_expression:
                f.write(
                    f"\n{de.contrast_name} ({de.method}): "
                    f"{de.upregulated} up, {de.downregulated} down "
                    f"of {de.tested_genes} tested\n"
                )
        return report_file

"""
Main pipeline class for the RNA-seq Pipeline.
"""

import asyncio
import time
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import pandas as pd
import structlog

from .. import __version__
from ..analysis import differential, enrichment, network, splicing
from ..config.settings import PipelineConfig
from ..models.results import (
    DifferentialExpressionSummary,
    EnrichmentSummary,
    NetworkSummary,
    QuantificationSummary,
    RunReport,
    SampleReport,
    SplicingSummary,
)
from ..models.samples import Sample, SampleSheet
from ..utils import PipelineLogger, PerformanceMonitor, log_error
from . import alignment, quality_control, quantification, reference, trimming, workflow


def index_exists(config: PipelineConfig) -> bool:
    """Whether the index for the selected route has already been built."""
    if config.quantifier == "salmon":
        return (config.resolved_salmon_index() / "versionInfo.json").exists()
    if config.aligner == "star":
        return (config.resolved_star_index() / "SA").exists()
    return Path(f"{config.resolved_hisat2_index()}.1.ht2").exists()


class Pipeline:
    """Main pipeline class taking a sample sheet from FASTQ to enrichment."""

    def __init__(
        self,
        config: PipelineConfig,
        logger: structlog.BoundLogger,
        validate: bool = True
    ):
        """
        Initialize the pipeline.

        Args:
            config: Pipeline configuration
            logger: Structured logger instance
            validate: Check reference files and tools before running

        Raises:
            RuntimeError: If setup validation fails
        """
        self.config = config
        self.logger = logger
        self.monitor: PerformanceMonitor = PerformanceMonitor(logger)

        self.config.ensure_directories()

        if validate:
            errors = self.config.validate_setup()
            if errors:
                error_msg = "Pipeline setup validation failed:\n" + \
                    "\n".join(f"  - {e}" for e in errors)
                raise RuntimeError(error_msg)

        self.logger.info("Pipeline initialized successfully",
                         config_summary=self._get_config_summary())

    def plan(self, sample_sheet: SampleSheet) -> List[workflow.WorkflowStep]:
        """
        Build the run plan and check its file hand-off.

        Raises:
            HandoffError: If a step would read a file nothing produces
        """
        steps = workflow.build_plan(self.config, sample_sheet)
        workflow.validate_handoff(steps, workflow.provided_inputs(self.config, sample_sheet))
        return steps

    def build_index(self) -> Path:
        """Build the index for the configured aligner or Salmon."""
        with PipelineLogger(self.logger, "build_index") as plog:
            plog.add_context(aligner=self.config.aligner, quantifier=self.config.quantifier)
            try:
                if self.config.quantifier == "salmon":
                    index = quantification.build_salmon_index(self.config, self.logger)
                elif self.config.aligner == "star":
                    index = alignment.build_star_index(self.config, self.logger)
                else:
                    index = alignment.build_hisat2_index(self.config, self.logger)
                plog.log_progress(f"Index ready: {index}")
                return index
            except Exception as e:
                log_error(self.logger, e, context={"operation": "build_index"})
                raise

    def run(self, sample_sheet: SampleSheet) -> RunReport:
        """
        Run every stage on a sample sheet.

        Args:
            sample_sheet: Samples with their FASTQ files and conditions

        Returns:
            RunReport, also written to the output directory
        """
        with PipelineLogger(self.logger, f"pipeline_{len(sample_sheet)}_samples") as plog:
            plog.add_context(samples=sample_sheet.sample_ids, layout=sample_sheet.layout)

            missing = sample_sheet.missing_files()
            if missing:
                raise FileNotFoundError(
                    "FASTQ files not found: " + ", ".join(str(p) for p in missing)
                )
            self.plan(sample_sheet)

            return asyncio.run(self._run(sample_sheet))

    async def _run(self, sample_sheet: SampleSheet) -> RunReport:
        """Run the stages with asynchronous resource monitoring."""
        start_time = time.time()
        self.monitor.csv_path = self.config.get_log_dir() / "performance.csv"
        self.monitor.init_csv()
        self.monitor.log_system_info(self.config.output_dir)
        self.monitor.start_monitoring(section="global")

        try:
            if not index_exists(self.config):
                await self.monitor.section("build_index", self.build_index)

            sample_reports = []
            for i, sample in enumerate(sample_sheet.samples):
                self.logger.info(f"Processing sample {i+1}/{len(sample_sheet)}",
                                 sample_id=sample.sample_id)
                report = await self.monitor.section(
                    f"sample_{sample.sample_id}", self._process_sample, sample
                )
                sample_reports.append(report)

            multiqc_report = await self.monitor.section("multiqc", self._run_multiqc)

            counts, quant_summary = await self.monitor.section(
                "quantification", self._quantify, sample_reports, sample_sheet.is_paired
            )

            de_results, de_summaries = await self.monitor.section(
                "differential_expression", self._run_differential, counts, sample_sheet
            )

            enrichment_summaries: List[EnrichmentSummary] = []
            if self.config.run_enrichment:
                enrichment_summaries = await self.monitor.section(
                    "enrichment", self._run_enrichment, de_results
                )

            network_summary = None
            if self.config.run_network and de_summaries:
                network_summary = await self.monitor.section(
                    "network", self._run_network, de_summaries[0], sample_sheet
                )

            splicing_summary = None
            if self.config.run_splicing and de_summaries:
                splicing_summary = await self.monitor.section(
                    "splicing", self._run_splicing, de_summaries[0], sample_reports, sample_sheet
                )

            report = RunReport(
                samples=sample_reports,
                quantification=quant_summary,
                differential_expression=de_summaries,
                enrichment=enrichment_summaries,
                network=network_summary,
                splicing=splicing_summary,
                multiqc_report=str(multiqc_report) if multiqc_report else None,
                processing_time=time.time() - start_time,
                stage_durations=self.monitor.get_summary(),
                pipeline_version=__version__,
            )
            await self.monitor.section("save_results", report.write, self.config.output_dir)

            failing = report.failing_samples(self.config.min_mapping_rate)
            if failing:
                self.logger.warning("Samples below mapping rate threshold",
                                    samples=failing,
                                    threshold=self.config.min_mapping_rate)
            return report

        except Exception as e:
            log_error(self.logger, e, context={"operation": "pipeline"})
            raise
        finally:
            await self.monitor.stop_monitoring()
            self.monitor.report_peaks()

    def _process_sample(self, sample: Sample) -> SampleReport:
        """FastQC, trimming, FastQC again, then alignment or Salmon."""
        with PipelineLogger(self.logger, f"sample_{sample.sample_id}") as plog:
            plog.add_context(sample_id=sample.sample_id, condition=sample.condition)

            try:
                raw_qc = quality_control.run_fastqc(
                    sample.fastq_files,
                    self.config.get_qc_dir() / "raw",
                    self.config.threads,
                    self.logger,
                    timeout=self.config.timeout_seconds,
                )
                plog.log_progress("Raw read QC completed")

                trimmed_fastqs, trim_stats = trimming.trim_sample(
                    sample, self.config.get_trim_dir(), self.config, self.logger
                )
                plog.log_progress("Trimming completed")

                trimmed_qc = quality_control.run_fastqc(
                    trimmed_fastqs,
                    self.config.get_qc_dir() / "trimmed",
                    self.config.threads,
                    self.logger,
                    timeout=self.config.timeout_seconds,
                )

                report = SampleReport(
                    sample_id=sample.sample_id,
                    condition=sample.condition,
                    raw_qc=raw_qc,
                    trimmed_qc=trimmed_qc,
                    trimming=trim_stats,
                )

                if self.config.quantifier == "salmon":
                    quant_dir, stats = quantification.quantify_sample_salmon(
                        sample.sample_id,
                        trimmed_fastqs,
                        self.config,
                        self.config.get_counts_dir() / "salmon",
                        self.logger,
                    )
                    report.quant_dir = str(quant_dir)
                else:
                    bam_file, stats = alignment.align_sample(
                        sample.sample_id,
                        trimmed_fastqs,
                        self.config,
                        self.config.get_align_dir(),
                        self.logger,
                    )
                    report.bam_file = str(bam_file)
                report.alignment = stats

                plog.log_progress(f"Mapping rate {stats.mapping_rate}%")
                return report

            except Exception as e:
                log_error(self.logger, e, context={"sample_id": sample.sample_id, "operation": "process_sample"})
                raise

    def _run_multiqc(self) -> Optional[Path]:
        """Aggregate reports; a MultiQC failure does not stop the run."""
        try:
            return quality_control.run_multiqc(
                [
                    self.config.get_qc_dir(),
                    self.config.get_trim_dir(),
                    self.config.get_align_dir(),
                    self.config.get_counts_dir(),
                ],
                self.config.get_qc_dir() / "multiqc",
                self.logger,
                timeout=self.config.timeout_seconds,
            )
        except Exception as e:
            log_error(self.logger, e, context={"operation": "multiqc"})
            return None

    def _quantify(
        self,
        sample_reports: List[SampleReport],
        paired: bool
    ) -> Tuple[pd.DataFrame, QuantificationSummary]:
        """Build the genes x samples count matrix."""
        with PipelineLogger(self.logger, "quantification") as plog:
            try:
                counts_dir = self.config.get_counts_dir()
                if self.config.quantifier == "salmon":
                    tx2gene = reference.build_tx2gene(self.config.annotation_gtf)
                    quant_dirs = {r.sample_id: Path(r.quant_dir) for r in sample_reports}
                    counts, tpm = quantification.aggregate_salmon(quant_dirs, tx2gene)
                    counts_path = quantification.write_count_matrix(counts, counts_dir / "gene_counts.csv")
                    tpm_path = quantification.write_count_matrix(tpm, counts_dir / "gene_tpm.csv")
                    summary = QuantificationSummary(
                        tool="salmon",
                        n_genes=counts.shape[0],
                        n_samples=counts.shape[1],
                        assigned_rate={
                            r.sample_id: r.alignment.mapping_rate
                            for r in sample_reports if r.alignment is not None
                        },
                        counts_path=str(counts_path),
                        tpm_path=str(tpm_path),
                    )
                else:
                    bam_files = {r.sample_id: Path(r.bam_file) for r in sample_reports}
                    counts, summary = quantification.run_featurecounts(
                        bam_files, self.config, counts_dir, paired, self.logger
                    )

                plog.log_progress(f"Count matrix: {counts.shape[0]} genes x {counts.shape[1]} samples")
                return counts, summary

            except Exception as e:
                log_error(self.logger, e, context={"operation": "quantification"})
                raise

    def _run_differential(
        self,
        counts: pd.DataFrame,
        sample_sheet: SampleSheet
    ) -> Tuple[Dict[str, pd.DataFrame], List[DifferentialExpressionSummary]]:
        """One differential expression test per contrast against the reference level."""
        return run_differential_expression(counts, sample_sheet, self.config, self.logger)

    def _run_enrichment(self, de_results: Dict[str, pd.DataFrame]) -> List[EnrichmentSummary]:
        with PipelineLogger(self.logger, "enrichment") as plog:
            summaries: List[EnrichmentSummary] = []
            for contrast, results in de_results.items():
                try:
                    summaries.extend(enrichment.run_enrichment(
                        results, contrast, self.config,
                        self.config.get_enrichment_dir(), self.logger,
                    ))
                    plog.log_progress(f"Enrichment completed for {contrast}")
                except Exception as e:
                    log_error(self.logger, e, context={"contrast": contrast, "operation": "enrichment"})
                    raise
            return summaries

    def _run_network(
        self,
        de_summary: DifferentialExpressionSummary,
        sample_sheet: SampleSheet
    ) -> NetworkSummary:
        """WGCNA on the normalized counts written by the first contrast."""
        with PipelineLogger(self.logger, "network") as plog:
            try:
                normalized_file = self.config.get_de_dir() / f"{de_summary.contrast_name}_normalized_counts.csv"
                normalized = pd.read_csv(normalized_file, index_col=0)
                summary = network.run_wgcna(
                    normalized, sample_sheet.to_metadata(), self.config,
                    self.config.get_network_dir(), self.logger,
                )
                plog.log_progress(f"{len(summary.modules)} co-expression modules")
                return summary
            except Exception as e:
                log_error(self.logger, e, context={"operation": "network"})
                raise

    def _run_splicing(
        self,
        de_summary: DifferentialExpressionSummary,
        sample_reports: List[SampleReport],
        sample_sheet: SampleSheet
    ) -> Optional[SplicingSummary]:
        """rMATS between the two groups of the first contrast."""
        if self.config.quantifier == "salmon":
            self.logger.warning("rMATS needs BAM files; skipping splicing with Salmon")
            return None

        with PipelineLogger(self.logger, "splicing") as plog:
            try:
                bams = {r.sample_id: Path(r.bam_file) for r in sample_reports if r.bam_file}
                groups = sample_sheet.by_condition(de_summary.factor)
                summary = splicing.run_rmats(
                    [bams[s.sample_id] for s in groups[de_summary.test_level]],
                    [bams[s.sample_id] for s in groups[de_summary.reference_level]],
                    de_summary.contrast_name,
                    self.config,
                    self.config.get_splicing_dir() / de_summary.contrast_name,
                    sample_sheet.is_paired,
                    self.logger,
                )
                plog.log_progress(f"rMATS events: {summary.events}")
                return summary
            except Exception as e:
                log_error(self.logger, e, context={"operation": "splicing"})
                raise

    def _get_config_summary(self) -> dict:
        return self.config.summary()


def run_differential_expression(
    counts: pd.DataFrame,
    sample_sheet: SampleSheet,
    config: PipelineConfig,
    logger: structlog.BoundLogger
) -> Tuple[Dict[str, pd.DataFrame], List[DifferentialExpressionSummary]]:
    """
    Test every non-reference level of the design factor against the reference.

    Returns:
        Results per contrast name and the contrast summaries
    """
    with PipelineLogger(logger, "differential_expression") as plog:
        metadata = sample_sheet.to_metadata()
        names = None
        if config.annotation_gtf is not None and config.annotation_gtf.exists():
            names = reference.gene_names(config.annotation_gtf)

        results_by_contrast: Dict[str, pd.DataFrame] = {}
        summaries: List[DifferentialExpressionSummary] = []
        for test_level, reference_level in sample_sheet.contrasts(
            config.design_factor, config.reference_level
        ):
            try:
                results, summary = differential.differential_expression(
                    counts, metadata, config.design_factor,
                    test_level, reference_level,
                    config, config.get_de_dir(), logger,
                    gene_names=names,
                )
            except Exception as e:
                log_error(logger, e, context={
                    "contrast": f"{test_level}_vs_{reference_level}",
                    "operation": "differential_expression",
                })
                raise
            results_by_contrast[summary.contrast_name] = results
            summaries.append(summary)
            plog.log_progress(
                f"{summary.contrast_name}: {summary.upregulated} up, {summary.downregulated} down"
            )
        return results_by_contrast, summaries

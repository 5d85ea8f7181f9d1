"""
Ordered plan of every tool invocation and its file hand-off.

The plan is built from the same command builders the pipeline executes, so
the commands shown by `rnaseq-pipeline plan` are exactly the ones run.
Each step declares the files it reads and writes together with their
format; validate_handoff checks that every input was either supplied by the
user or written by an earlier step in the same format.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, NamedTuple, Optional

from ..config.settings import PipelineConfig
from ..models.samples import SampleSheet
from ..utils import format_command
from . import alignment, quality_control, quantification, trimming


# File formats exchanged between steps
FASTQ = "FASTQ"
FASTA = "FASTA"
GTF = "GTF"
INDEX = "INDEX"
BAM = "BAM"
BAI = "BAI"
ZIP = "ZIP"
HTML = "HTML"
TXT = "TXT"
COUNTS = "COUNTS"
QUANT = "QUANT"
CSV = "CSV"


class HandoffError(ValueError):
    """A step reads a file no earlier step produced in the expected format."""


class Artifact(NamedTuple):
    path: Path
    format: str


@dataclass
class WorkflowStep:
    """One invocation in the plan."""

    name: str
    tool: str
    inputs: List[Artifact] = field(default_factory=list)
    outputs: List[Artifact] = field(default_factory=list)
    command: Optional[List[str]] = None
    pipe_to: Optional[List[str]] = None
    stdout: Optional[Path] = None
    description: str = ""
    sample_id: Optional[str] = None

    @property
    def external(self) -> bool:
        return self.command is not None

    def command_line(self) -> str:
        if self.command is None:
            return ""
        line = format_command(self.command)
        if self.pipe_to:
            line += " | " + format_command(self.pipe_to)
        if self.stdout is not None:
            line += " > " + format_command([self.stdout])
        return line


def provided_inputs(config: PipelineConfig, sample_sheet: SampleSheet) -> Dict[Path, str]:
    """Files the user supplies, with their formats."""
    provided: Dict[Path, str] = {}
    for sample in sample_sheet.samples:
        for fastq in sample.fastq_files:
            provided[fastq] = FASTQ
    for path, fmt in (
        (config.genome_fasta, FASTA),
        (config.transcriptome_fasta, FASTA),
        (config.annotation_gtf, GTF),
        (config.adapters_fasta, FASTA),
        (config.gene_sets_gmt, TXT),
        (config.star_index, INDEX),
        (config.hisat2_index, INDEX),
        (config.salmon_index, INDEX),
    ):
        if path is not None:
            provided[path] = fmt
    return provided


def _index_steps(config: PipelineConfig) -> List[WorkflowStep]:
    steps = []
    if config.quantifier == "salmon":
        if config.salmon_index is None:
            index = config.resolved_salmon_index()
            steps.append(WorkflowStep(
                name="salmon_index",
                tool="salmon",
                inputs=[Artifact(config.transcriptome_fasta, FASTA)],
                outputs=[Artifact(index, INDEX)],
                command=quantification.build_salmon_index_command(
                    config.transcriptome_fasta, index, config.threads
                ),
                description="Build the Salmon transcriptome index",
            ))
    elif config.aligner == "star":
        if config.star_index is None:
            index = config.resolved_star_index()
            steps.append(WorkflowStep(
                name="star_index",
                tool="STAR",
                inputs=[Artifact(config.genome_fasta, FASTA), Artifact(config.annotation_gtf, GTF)],
                outputs=[Artifact(index, INDEX)],
                command=alignment.build_star_index_command(
                    config.genome_fasta, config.annotation_gtf, index,
                    config.sjdb_overhang, config.threads,
                    ram_limit_bytes=config.max_memory_gb * 1024**3,
                ),
                description="Generate the STAR genome index",
            ))
    elif config.hisat2_index is None:
        index = config.resolved_hisat2_index()
        steps.append(WorkflowStep(
            name="hisat2_index",
            tool="hisat2-build",
            inputs=[Artifact(config.genome_fasta, FASTA)],
            outputs=[Artifact(index, INDEX)],
            command=alignment.build_hisat2_index_command(config.genome_fasta, index, config.threads),
            description="Build the HISAT2 index",
        ))
    return steps


def _sample_steps(config: PipelineConfig, sample) -> List[WorkflowStep]:
    sid = sample.sample_id
    raw_qc_dir = config.get_qc_dir() / "raw"
    trimmed_qc_dir = config.get_qc_dir() / "trimmed"
    trim_dir = config.get_trim_dir()
    steps = [WorkflowStep(
        name="fastqc_raw",
        tool="fastqc",
        sample_id=sid,
        inputs=[Artifact(f, FASTQ) for f in sample.fastq_files],
        outputs=[Artifact(quality_control.fastqc_report_path(f, raw_qc_dir), ZIP) for f in sample.fastq_files],
        command=quality_control.build_fastqc_command(sample.fastq_files, raw_qc_dir, config.threads),
        description="FastQC on raw reads",
    )]

    trim_inputs = [Artifact(f, FASTQ) for f in sample.fastq_files]
    if config.adapters_fasta is not None:
        trim_inputs.append(Artifact(config.adapters_fasta, FASTA))
    trimmed = trimming.retained_fastqs(sample, trim_dir)
    steps.append(WorkflowStep(
        name="trimmomatic",
        tool="trimmomatic",
        sample_id=sid,
        inputs=trim_inputs,
        outputs=[Artifact(p, FASTQ) for p in trimming.trimmed_outputs(sample, trim_dir).values()],
        command=trimming.build_trimmomatic_command(sample, trim_dir, config),
        description="Adapter and quality trimming",
    ))

    steps.append(WorkflowStep(
        name="fastqc_trimmed",
        tool="fastqc",
        sample_id=sid,
        inputs=[Artifact(f, FASTQ) for f in trimmed],
        outputs=[Artifact(quality_control.fastqc_report_path(f, trimmed_qc_dir), ZIP) for f in trimmed],
        command=quality_control.build_fastqc_command(trimmed, trimmed_qc_dir, config.threads),
        description="FastQC on trimmed reads",
    ))

    if config.quantifier == "salmon":
        quant_dir = config.get_counts_dir() / "salmon" / sid
        steps.append(WorkflowStep(
            name="salmon_quant",
            tool="salmon",
            sample_id=sid,
            inputs=[Artifact(f, FASTQ) for f in trimmed] + [Artifact(config.resolved_salmon_index(), INDEX)],
            outputs=[Artifact(quant_dir / "quant.sf", QUANT)],
            command=quantification.build_salmon_quant_command(
                trimmed, config.resolved_salmon_index(), quant_dir,
                config.threads, library_type=config.library_type,
            ),
            description="Transcript quantification",
        ))
        return steps

    align_dir = config.get_align_dir()
    if config.aligner == "star":
        bam = alignment.star_bam_path(sid, align_dir)
        steps.append(WorkflowStep(
            name="star_align",
            tool="STAR",
            sample_id=sid,
            inputs=[Artifact(f, FASTQ) for f in trimmed] + [Artifact(config.resolved_star_index(), INDEX)],
            outputs=[
                Artifact(bam, BAM),
                Artifact(Path(f"{alignment.star_prefix(sid, align_dir)}{alignment.STAR_LOG_SUFFIX}"), TXT),
            ],
            command=alignment.build_star_align_command(
                sid, trimmed, config.resolved_star_index(), align_dir, config.threads,
                sort_ram_bytes=config.max_memory_gb * 1024**3,
            ),
            description="Spliced alignment to a coordinate-sorted BAM",
        ))
    else:
        bam = alignment.hisat2_bam_path(sid, align_dir)
        steps.append(WorkflowStep(
            name="hisat2_align",
            tool="hisat2",
            sample_id=sid,
            inputs=[Artifact(f, FASTQ) for f in trimmed] + [Artifact(config.resolved_hisat2_index(), INDEX)],
            outputs=[Artifact(bam, BAM), Artifact(alignment.hisat2_summary_path(sid, align_dir), TXT)],
            command=alignment.build_hisat2_align_command(
                sid, trimmed, config.resolved_hisat2_index(), align_dir, config.threads
            ),
            pipe_to=alignment.build_samtools_sort_command(bam, config.threads),
            description="Spliced alignment piped into samtools sort",
        ))

    steps.append(WorkflowStep(
        name="samtools_index",
        tool="samtools",
        sample_id=sid,
        inputs=[Artifact(bam, BAM)],
        outputs=[Artifact(Path(f"{bam}.bai"), BAI)],
        command=alignment.build_samtools_index_command(bam, config.threads),
        description="Index the BAM",
    ))
    steps.append(WorkflowStep(
        name="samtools_flagstat",
        tool="samtools",
        sample_id=sid,
        inputs=[Artifact(bam, BAM)],
        outputs=[Artifact(alignment.flagstat_path(bam), TXT)],
        command=alignment.build_samtools_flagstat_command(bam, config.threads),
        stdout=alignment.flagstat_path(bam),
        description="Mapped read counts, picked up by MultiQC",
    ))
    return steps


def _gene_set_labels(config: PipelineConfig) -> List[str]:
    if config.gene_sets_gmt is not None:
        return [config.gene_sets_gmt.stem]
    return list(config.enrichment_libraries)


def sample_bam(config: PipelineConfig, sample_id: str) -> Path:
    if config.aligner == "star":
        return alignment.star_bam_path(sample_id, config.get_align_dir())
    return alignment.hisat2_bam_path(sample_id, config.get_align_dir())


def build_plan(config: PipelineConfig, sample_sheet: SampleSheet) -> List[WorkflowStep]:
    """
    Every step of a run, in execution order.

    Raises:
        ValueError: If a required reference is not configured
    """
    if config.annotation_gtf is None:
        raise ValueError("annotation_gtf must be configured")
    if config.quantifier == "salmon" and config.salmon_index is None and config.transcriptome_fasta is None:
        raise ValueError("Salmon needs salmon_index or transcriptome_fasta")
    if config.quantifier == "featurecounts" and config.genome_fasta is None and (
        (config.aligner == "star" and config.star_index is None)
        or (config.aligner == "hisat2" and config.hisat2_index is None)
    ):
        raise ValueError("Alignment needs an existing index or genome_fasta")

    paired = sample_sheet.is_paired
    steps = _index_steps(config)
    for sample in sample_sheet.samples:
        steps.extend(_sample_steps(config, sample))

    qc_reports = [a for s in steps if s.tool == "fastqc" for a in s.outputs]
    steps.append(WorkflowStep(
        name="multiqc",
        tool="multiqc",
        inputs=qc_reports,
        outputs=[Artifact(config.get_qc_dir() / "multiqc" / quality_control.MULTIQC_REPORT, HTML)],
        command=quality_control.build_multiqc_command(
            [config.get_qc_dir(), config.get_trim_dir(), config.get_align_dir(), config.get_counts_dir()],
            config.get_qc_dir() / "multiqc",
        ),
        description="Aggregate QC reports",
    ))

    counts_csv = config.get_counts_dir() / "gene_counts.csv"
    if config.quantifier == "salmon":
        quant_files = [a for s in steps if s.name == "salmon_quant" for a in s.outputs]
        steps.append(WorkflowStep(
            name="salmon_aggregate",
            tool="rnaseq-pipeline",
            inputs=quant_files + [Artifact(config.annotation_gtf, GTF)],
            outputs=[Artifact(counts_csv, CSV), Artifact(config.get_counts_dir() / "gene_tpm.csv", CSV)],
            description="Sum transcript estimates to genes using the GTF transcript-to-gene map",
        ))
    else:
        bams = [sample_bam(config, s.sample_id) for s in sample_sheet.samples]
        raw_counts = config.get_counts_dir() / "featurecounts.txt"
        steps.append(WorkflowStep(
            name="featurecounts",
            tool="featureCounts",
            inputs=[Artifact(b, BAM) for b in bams] + [Artifact(config.annotation_gtf, GTF)],
            outputs=[Artifact(raw_counts, COUNTS), Artifact(Path(f"{raw_counts}.summary"), TXT)],
            command=quantification.build_featurecounts_command(
                bams, raw_counts, config.annotation_gtf, config.threads,
                strandedness=config.strandedness, paired=paired,
                feature_type=config.feature_type, attribute_type=config.attribute_type,
            ),
            description="Count reads per gene",
        ))
        steps.append(WorkflowStep(
            name="count_matrix",
            tool="rnaseq-pipeline",
            inputs=[Artifact(raw_counts, COUNTS)],
            outputs=[Artifact(counts_csv, CSV)],
            description="Rename BAM columns to sample ids and write the gene count matrix",
        ))

    contrasts = sample_sheet.contrasts(config.design_factor, config.reference_level)
    de_tool = "pydeseq2" if config.de_method == "deseq2" else "Rscript edger.R"
    for test_level, reference_level in contrasts:
        name = f"{test_level}_vs_{reference_level}"
        results_csv = config.get_de_dir() / f"{name}_results.csv"
        normalized_csv = config.get_de_dir() / f"{name}_normalized_counts.csv"
        steps.append(WorkflowStep(
            name=f"de_{name}",
            tool=de_tool,
            inputs=[Artifact(counts_csv, CSV)],
            outputs=[Artifact(results_csv, CSV), Artifact(normalized_csv, CSV)],
            description=f"Differential expression {name} ({config.de_method})",
        ))
        if config.run_enrichment:
            steps.append(WorkflowStep(
                name=f"enrichment_{name}",
                tool="gseapy",
                inputs=[Artifact(results_csv, CSV)] + (
                    [Artifact(config.gene_sets_gmt, TXT)] if config.gene_sets_gmt is not None else []
                ),
                outputs=[
                    Artifact(config.get_enrichment_dir() / f"{name}_{analysis}_{label}.csv", CSV)
                    for label in _gene_set_labels(config)
                    for analysis in ("ora_up", "ora_down", "gsea")
                ],
                description="ORA of up/down genes and preranked GSEA",
            ))

    if config.run_network and contrasts:
        first = f"{contrasts[0][0]}_vs_{contrasts[0][1]}"
        steps.append(WorkflowStep(
            name="wgcna",
            tool="Rscript wgcna.R",
            inputs=[Artifact(config.get_de_dir() / f"{first}_normalized_counts.csv", CSV)],
            outputs=[Artifact(config.get_network_dir() / "modules.csv", CSV)],
            description="Co-expression modules and module-trait correlation",
        ))

    if config.run_splicing and contrasts and config.quantifier == "featurecounts":
        from ..analysis import splicing
        test_level, reference_level = contrasts[0]
        groups = sample_sheet.by_condition(config.design_factor)
        b1 = [sample_bam(config, s.sample_id) for s in groups[test_level]]
        b2 = [sample_bam(config, s.sample_id) for s in groups[reference_level]]
        out = config.get_splicing_dir() / f"{test_level}_vs_{reference_level}"
        for list_name, bams in (("b1.txt", b1), ("b2.txt", b2)):
            steps.append(WorkflowStep(
                name=f"rmats_{list_name[:2]}",
                tool="echo",
                inputs=[Artifact(b, BAM) for b in bams],
                outputs=[Artifact(out / list_name, TXT)],
                command=["echo", ",".join(str(b) for b in bams)],
                stdout=out / list_name,
                description="Comma-separated BAM list for rMATS",
            ))
        steps.append(WorkflowStep(
            name="rmats",
            tool="rmats.py",
            inputs=[Artifact(out / "b1.txt", TXT), Artifact(out / "b2.txt", TXT),
                    Artifact(config.annotation_gtf, GTF)],
            outputs=[Artifact(out / "summary.txt", TXT)],
            command=splicing.build_rmats_command(
                out / "b1.txt", out / "b2.txt", config.annotation_gtf, out,
                config.get_tmp_dir() / "rmats", config.read_length, paired, config.threads,
            ),
            description="Differential splicing between the first contrast's groups",
        ))

    return steps


def validate_handoff(steps: List[WorkflowStep], provided: Dict[Path, str]) -> None:
    """
    Check the file hand-off between steps.

    Raises:
        HandoffError: If a step reads a path that is neither provided nor
            produced by an earlier step, or reads it as a different format
    """
    available: Dict[Path, tuple] = {
        Path(p): (fmt, "input") for p, fmt in provided.items()
    }
    for step in steps:
        for artifact in step.inputs:
            path = Path(artifact.path)
            if path not in available:
                raise HandoffError(
                    f"Step '{step.name}' reads {path} ({artifact.format}) "
                    f"but no earlier step writes it"
                )
            fmt, producer = available[path]
            if fmt != artifact.format:
                raise HandoffError(
                    f"Step '{step.name}' reads {path} as {artifact.format} "
                    f"but {producer} wrote {fmt}"
                )
        for artifact in step.outputs:
            available[Path(artifact.path)] = (artifact.format, f"step '{step.name}'")


def render_shell_script(steps: List[WorkflowStep]) -> str:
    """Bash script with one command per external step; in-process steps are comments."""
    lines = ["#!/usr/bin/env bash", "set -euo pipefail", ""]
    current_sample = None
    for step in steps:
        if step.sample_id != current_sample:
            current_sample = step.sample_id
            header = f"sample {current_sample}" if current_sample else "cohort"
            lines.extend(["", f"# ---- {header} ----"])
        lines.append(f"# {step.name}: {step.description}")
        if step.external:
            for artifact in step.outputs:
                parent = artifact.path if artifact.format == INDEX and step.tool == "STAR" else artifact.path.parent
                lines.append(f"mkdir -p {format_command([str(parent)])}")
                break
            lines.append(step.command_line())
        else:
            lines.append(f"# (runs inside rnaseq-pipeline: {step.tool})")
    return "\n".join(lines) + "\n"

"""
Main command-line interface for the RNA-seq Pipeline.
"""

import sys
from pathlib import Path
from typing import List, Optional

import click
import configparser
import pandas as pd
from rich.console import Console
from rich.markup import escape
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from ..config.settings import ALIGNERS, DE_METHODS, QUANTIFIERS, PipelineConfig, load_pipeline_config
from ..models.results import RunReport
from ..models.samples import SampleSheet
from ..utils import setup_logging
from .. import __version__


console = Console()

LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR"]


def config_option(f):
    return click.option(
        "--config",
        help="Configuration file path (INI)",
        type=click.Path(exists=True, dir_okay=False, path_type=Path),
    )(f)


def log_level_option(f):
    return click.option(
        "--log-level",
        default=None,
        type=click.Choice(LOG_LEVELS),
        help="Logging level (default: from configuration, else INFO)",
    )(f)


def _load_config(config: Optional[Path], **overrides) -> PipelineConfig:
    """Configuration from the INI file (if any) with CLI overrides on top; exits on error."""
    overrides = {k: v for k, v in overrides.items() if v is not None}
    try:
        if config:
            return load_pipeline_config(config, **overrides)
        return PipelineConfig(**overrides)
    except configparser.Error as e:
        console.print(f"[red]Error reading configuration file {config}: {escape(str(e))}[/red]")
        sys.exit(1)
    except Exception as e:
        console.print(f"[red]Error loading configuration: {escape(str(e))}[/red]")
        sys.exit(1)


def _load_sample_sheet(path: Path) -> SampleSheet:
    try:
        return SampleSheet.from_csv(path)
    except Exception as e:
        console.print(f"[red]Error reading sample sheet: {escape(str(e))}[/red]")
        sys.exit(1)


@click.group()
@click.version_option(version=__version__, prog_name="RNA-seq Pipeline")
def cli():
    """RNA-seq Pipeline - from FASTQ files to differential expression and enrichment."""
    pass


@cli.command()
@click.option(
    "--samples",
    required=True,
    help="Sample sheet CSV (sample, condition, fastq_1[, fastq_2, batch])",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
)
@config_option
@click.option(
    "--output-dir",
    help="Output directory for results",
    type=click.Path(path_type=Path),
)
@click.option("--threads", type=int, help="Number of threads to use")
@click.option("--aligner", type=click.Choice(list(ALIGNERS)), help="Read aligner")
@click.option("--quantifier", type=click.Choice(list(QUANTIFIERS)), help="Gene quantification route")
@click.option("--de-method", type=click.Choice(list(DE_METHODS)), help="Differential expression method")
@log_level_option
@click.option("--log-file", help="Log file path", type=click.Path(path_type=Path))
@click.option(
    "--dry-run",
    is_flag=True,
    help="Check configuration and hand-off without executing the pipeline",
)
def run(
    samples: Path,
    config: Optional[Path],
    output_dir: Optional[Path],
    threads: Optional[int],
    aligner: Optional[str],
    quantifier: Optional[str],
    de_method: Optional[str],
    log_level: Optional[str],
    log_file: Optional[Path],
    dry_run: bool
):
    """Run the full pipeline on a sample sheet."""
    pipeline_config = _load_config(
        config,
        output_dir=output_dir,
        threads=threads,
        aligner=aligner,
        quantifier=quantifier,
        de_method=de_method,
        log_level=log_level,
        log_file=log_file,
    )
    sample_sheet = _load_sample_sheet(samples)

    logger = setup_logging(
        log_level=pipeline_config.log_level,
        log_file=pipeline_config.log_file,
        log_format="console"
    )

    with console.status("[bold green]Initializing pipeline..."):
        console.print(f"[bold blue]RNA-seq Pipeline v{__version__}[/bold blue]")
        console.print(f"Output directory: {pipeline_config.output_dir}")
        console.print(f"Threads: {pipeline_config.threads}")
        console.print(f"Samples: {len(sample_sheet)} ({sample_sheet.layout})")
        console.print(f"Route: {pipeline_config.aligner if pipeline_config.quantifier == 'featurecounts' else 'salmon'}"
                      f" -> {pipeline_config.quantifier} -> {pipeline_config.de_method}")

    from ..core.pipeline import Pipeline

    try:
        pipeline = Pipeline(pipeline_config, logger)
    except Exception as e:
        console.print(f"[red]Error initializing pipeline: {escape(str(e))}[/red]")
        logger.error("Pipeline initialization failed", error=str(e))
        sys.exit(1)

    if dry_run:
        try:
            steps = pipeline.plan(sample_sheet)
        except Exception as e:
            console.print(f"[red]Plan check failed: {escape(str(e))}[/red]")
            sys.exit(1)
        console.print(f"[yellow]Dry run mode - {len(steps)} steps planned, nothing executed[/yellow]")
        return

    try:
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            console=console,
        ) as progress:
            task = progress.add_task("Running pipeline...", total=None)
            report = pipeline.run(sample_sheet)
            progress.update(task, description="Pipeline completed successfully!")

        display_results(report, pipeline_config.min_mapping_rate)

    except Exception as e:
        console.print(f"[red]Pipeline failed: {escape(str(e))}[/red]")
        logger.error("Pipeline execution failed", error=str(e))
        sys.exit(1)


@cli.command()
@click.option(
    "--samples",
    required=True,
    help="Sample sheet CSV",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
)
@config_option
@click.option("--output-dir", help="Output directory the plan refers to", type=click.Path(path_type=Path))
@click.option(
    "--script",
    help="Write the plan as a bash script instead of printing a table",
    type=click.Path(dir_okay=False, path_type=Path),
)
def plan(samples: Path, config: Optional[Path], output_dir: Optional[Path], script: Optional[Path]):
    """Show every tool invocation and check the file hand-off between them."""
    from ..core import workflow

    pipeline_config = _load_config(config, output_dir=output_dir)
    sample_sheet = _load_sample_sheet(samples)

    try:
        steps = workflow.build_plan(pipeline_config, sample_sheet)
        workflow.validate_handoff(steps, workflow.provided_inputs(pipeline_config, sample_sheet))
    except Exception as e:
        console.print(f"[red]Invalid plan: {escape(str(e))}[/red]")
        sys.exit(1)

    if script:
        script.parent.mkdir(parents=True, exist_ok=True)
        script.write_text(workflow.render_shell_script(steps))
        console.print(f"[green]✓ Shell script written to {script}[/green]")
        return

    table = Table(title="Pipeline Plan")
    table.add_column("#", style="dim")
    table.add_column("Step", style="cyan")
    table.add_column("Sample")
    table.add_column("Tool", style="magenta")
    table.add_column("Outputs")
    for i, step in enumerate(steps, start=1):
        table.add_row(
            str(i),
            step.name,
            step.sample_id or "-",
            step.tool,
            ", ".join(f"{a.path.name} ({a.format})" for a in step.outputs),
        )
    console.print(table)
    console.print("[green]✓ File hand-off is consistent[/green]")


@cli.command("build-index")
@config_option
@click.option("--threads", type=int, help="Number of threads to use")
@log_level_option
def build_index(config: Optional[Path], threads: Optional[int], log_level: Optional[str]):
    """Build the STAR, HISAT2 or Salmon index for the configured route."""
    from ..core.pipeline import Pipeline

    pipeline_config = _load_config(config, threads=threads, log_level=log_level)
    logger = setup_logging(log_level=pipeline_config.log_level, log_file=pipeline_config.log_file)

    try:
        pipeline = Pipeline(pipeline_config, logger, validate=False)
        with console.status("[bold green]Building index..."):
            index = pipeline.build_index()
        console.print(f"[green]✓ Index built: {index}[/green]")
    except Exception as e:
        console.print(f"[red]Index build failed: {escape(str(e))}[/red]")
        sys.exit(1)


@cli.command("download-reference")
@config_option
@click.option(
    "--output-dir",
    help="Directory for the reference files (default: BASE_DIR/reference)",
    type=click.Path(file_okay=False, path_type=Path),
)
@click.option(
    "--what",
    "targets",
    multiple=True,
    default=["genome", "annotation"],
    type=click.Choice(["genome", "annotation", "transcriptome"]),
    help="Files to download (repeatable)",
)
@log_level_option
def download_reference(config: Optional[Path], output_dir: Optional[Path], targets: List[str], log_level: Optional[str]):
    """Download and decompress the Ensembl reference files."""
    from ..core.reference import download_reference as fetch

    pipeline_config = _load_config(config, log_level=log_level)
    logger = setup_logging(log_level=pipeline_config.log_level, log_file=pipeline_config.log_file)
    output_dir = output_dir or pipeline_config.base_dir / "reference"

    urls = {
        "genome": pipeline_config.fasta_url,
        "annotation": pipeline_config.gtf_url,
        "transcriptome": pipeline_config.transcriptome_url,
    }
    for target in dict.fromkeys(targets):
        try:
            with console.status(f"[bold green]Downloading {target}..."):
                path = fetch(urls[target], output_dir, logger)
            console.print(f"[green]✓ {target}: {path}[/green]")
        except Exception as e:
            console.print(f"[red]Download of {target} failed: {escape(str(e))}[/red]")
            sys.exit(1)


@cli.command()
@click.option(
    "--counts",
    required=True,
    help="Gene count matrix CSV (genes x samples, gene_id first)",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
)
@click.option(
    "--samples",
    required=True,
    help="Sample sheet CSV",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
)
@config_option
@click.option("--output-dir", help="Output directory for results", type=click.Path(path_type=Path))
@click.option("--factor", "design_factor", help="Sample sheet column to test")
@click.option("--reference", "reference_level", help="Reference level of the factor")
@click.option("--method", "de_method", type=click.Choice(list(DE_METHODS)), help="Differential expression method")
@log_level_option
def de(
    counts: Path,
    samples: Path,
    config: Optional[Path],
    output_dir: Optional[Path],
    design_factor: Optional[str],
    reference_level: Optional[str],
    de_method: Optional[str],
    log_level: Optional[str]
):
    """Differential expression on an existing count matrix."""
    from ..core.pipeline import run_differential_expression
    from ..core.quantification import read_count_matrix

    pipeline_config = _load_config(
        config,
        output_dir=output_dir,
        design_factor=design_factor,
        reference_level=reference_level,
        de_method=de_method,
        log_level=log_level,
    )
    sample_sheet = _load_sample_sheet(samples)
    logger = setup_logging(log_level=pipeline_config.log_level, log_file=pipeline_config.log_file)

    try:
        count_matrix = read_count_matrix(counts)
        _, summaries = run_differential_expression(count_matrix, sample_sheet, pipeline_config, logger)
    except Exception as e:
        console.print(f"[red]Differential expression failed: {escape(str(e))}[/red]")
        sys.exit(1)

    table = Table(title="Differential Expression")
    table.add_column("Contrast", style="cyan")
    table.add_column("Tested", style="magenta")
    table.add_column("Up", style="green")
    table.add_column("Down", style="red")
    table.add_column("Results")
    for summary in summaries:
        table.add_row(
            summary.contrast_name,
            str(summary.tested_genes),
            str(summary.upregulated),
            str(summary.downregulated),
            summary.results_path,
        )
    console.print(table)


@cli.command()
@click.option(
    "--results",
    required=True,
    help="Differential expression results CSV",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
)
@click.option("--contrast", help="Contrast name used in output file names (default: from file name)")
@click.option(
    "--gmt",
    "gene_sets_gmt",
    help="Local GMT gene set file (default: configured Enrichr libraries)",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
)
@config_option
@click.option("--output-dir", help="Output directory for results", type=click.Path(path_type=Path))
@log_level_option
def enrich(
    results: Path,
    contrast: Optional[str],
    gene_sets_gmt: Optional[Path],
    config: Optional[Path],
    output_dir: Optional[Path],
    log_level: Optional[str]
):
    """ORA and GSEA on a differential expression results table."""
    from ..analysis.differential import classify_results
    from ..analysis.enrichment import run_enrichment

    pipeline_config = _load_config(
        config, output_dir=output_dir, gene_sets_gmt=gene_sets_gmt, log_level=log_level
    )
    logger = setup_logging(log_level=pipeline_config.log_level, log_file=pipeline_config.log_file)
    contrast = contrast or results.stem.replace("_results", "")

    try:
        table_in = pd.read_csv(results, index_col=0)
        if "regulation" not in table_in.columns:
            table_in = classify_results(
                table_in, pipeline_config.padj_threshold, pipeline_config.lfc_threshold
            )
        summaries = run_enrichment(
            table_in, contrast, pipeline_config, pipeline_config.get_enrichment_dir(), logger
        )
    except Exception as e:
        console.print(f"[red]Enrichment failed: {escape(str(e))}[/red]")
        sys.exit(1)

    table = Table(title=f"Enrichment ({contrast})")
    table.add_column("Analysis", style="cyan")
    table.add_column("Gene sets")
    table.add_column("Query", style="magenta")
    table.add_column("Significant", style="green")
    for summary in summaries:
        table.add_row(summary.analysis, summary.gene_sets, str(summary.query_size), str(summary.n_significant))
    console.print(table)


@cli.command()
@click.option(
    "--normalized",
    required=True,
    help="Normalized counts CSV (genes x samples)",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
)
@click.option(
    "--samples",
    required=True,
    help="Sample sheet CSV providing the traits",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
)
@config_option
@click.option("--output-dir", help="Output directory for results", type=click.Path(path_type=Path))
@click.option("--top-genes", "network_top_genes", type=int, help="Most variable genes kept")
@log_level_option
def network(
    normalized: Path,
    samples: Path,
    config: Optional[Path],
    output_dir: Optional[Path],
    network_top_genes: Optional[int],
    log_level: Optional[str]
):
    """WGCNA co-expression modules and module-trait correlation."""
    from ..analysis.network import run_wgcna

    pipeline_config = _load_config(
        config, output_dir=output_dir, network_top_genes=network_top_genes, log_level=log_level
    )
    sample_sheet = _load_sample_sheet(samples)
    logger = setup_logging(log_level=pipeline_config.log_level, log_file=pipeline_config.log_file)

    try:
        expression = pd.read_csv(normalized, index_col=0)
        with console.status("[bold green]Running WGCNA..."):
            summary = run_wgcna(
                expression, sample_sheet.to_metadata(), pipeline_config,
                pipeline_config.get_network_dir(), logger,
            )
    except Exception as e:
        console.print(f"[red]Network analysis failed: {escape(str(e))}[/red]")
        sys.exit(1)

    table = Table(title=f"WGCNA modules (soft power {summary.soft_power})")
    table.add_column("Module", style="cyan")
    table.add_column("Genes", style="magenta")
    for module, size in sorted(summary.modules.items(), key=lambda kv: -kv[1]):
        table.add_row(module, str(size))
    console.print(table)


@cli.command()
@click.option(
    "--samples",
    required=True,
    help="Sample sheet CSV",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
)
@click.option("--test", "test_level", required=True, help="Test level of the design factor")
@click.option("--reference", "reference_level", required=True, help="Reference level of the design factor")
@config_option
@click.option("--output-dir", help="Output directory of an earlier run", type=click.Path(path_type=Path))
@log_level_option
def splicing(
    samples: Path,
    test_level: str,
    reference_level: str,
    config: Optional[Path],
    output_dir: Optional[Path],
    log_level: Optional[str]
):
    """rMATS between two groups using the BAM files of an earlier run."""
    from ..analysis.splicing import run_rmats
    from ..core.workflow import sample_bam

    pipeline_config = _load_config(config, output_dir=output_dir, log_level=log_level)
    sample_sheet = _load_sample_sheet(samples)
    logger = setup_logging(log_level=pipeline_config.log_level, log_file=pipeline_config.log_file)

    try:
        groups = sample_sheet.by_condition(pipeline_config.design_factor)
        for level in (test_level, reference_level):
            if level not in groups:
                raise ValueError(f"Level '{level}' not found in column '{pipeline_config.design_factor}'")
        group1 = [sample_bam(pipeline_config, s.sample_id) for s in groups[test_level]]
        group2 = [sample_bam(pipeline_config, s.sample_id) for s in groups[reference_level]]
        missing = [str(b) for b in group1 + group2 if not b.exists()]
        if missing:
            raise FileNotFoundError(f"BAM files not found: {', '.join(missing)}")

        contrast = f"{test_level}_vs_{reference_level}"
        with console.status("[bold green]Running rMATS..."):
            summary = run_rmats(
                group1, group2, contrast, pipeline_config,
                pipeline_config.get_splicing_dir() / contrast,
                sample_sheet.is_paired, logger,
            )
    except Exception as e:
        console.print(f"[red]Splicing analysis failed: {escape(str(e))}[/red]")
        sys.exit(1)

    table = Table(title=f"Significant splicing events ({summary.contrast})")
    table.add_column("Event type", style="cyan")
    table.add_column("Events", style="magenta")
    for event, count in summary.events.items():
        table.add_row(event, str(count))
    console.print(table)


@cli.command()
@config_option
def validate(config: Optional[Path]):
    """Validate pipeline configuration and dependencies."""
    pipeline_config = _load_config(config)

    console.print("[bold blue]Validating pipeline configuration...[/bold blue]")
    errors = pipeline_config.validate_setup()

    if errors:
        console.print("[red]Configuration validation failed:[/red]")
        for error in errors:
            console.print(f"  [red]• {error}[/red]")
        sys.exit(1)

    console.print("[green]✓ Configuration validation passed[/green]")
    display_config_summary(pipeline_config)


@cli.command("show-config")
@config_option
def show_config(config: Optional[Path]):
    """Show the effective configuration."""
    pipeline_config = _load_config(config)
    display_config_summary(pipeline_config)


def display_results(report: RunReport, min_mapping_rate: float = 70.0):
    """Display pipeline results in a formatted table."""

    console.print("\n[bold green]Pipeline Results[/bold green]")

    summary = report.get_summary_stats()

    table = Table(title="Run Summary")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="magenta")

    table.add_row("Samples", str(summary["samples"]))
    table.add_row("Mean Mapping Rate", f"{summary['mean_mapping_rate']:.1f}%")
    table.add_row("Genes Quantified", str(summary["genes_quantified"]))
    table.add_row("Contrasts", str(summary["contrasts"]))
    table.add_row("Significant Genes", str(summary["significant_genes"]))
    table.add_row("Enriched Terms", str(summary["enriched_terms"]))
    if "coexpression_modules" in summary:
        table.add_row("Co-expression Modules", str(summary["coexpression_modules"]))
    if report.multiqc_report:
        table.add_row("MultiQC Report", report.multiqc_report)

    console.print(table)

    if report.passes_quality(min_mapping_rate):
        console.print("[green]✓ All samples pass the mapping rate threshold[/green]")
    else:
        failing = ", ".join(report.failing_samples(min_mapping_rate))
        console.print(f"[yellow]⚠ Below mapping rate threshold: {failing}[/yellow]")


def display_config_summary(config: PipelineConfig):
    """Display configuration summary."""

    def show(value) -> str:
        return str(value) if value is not None else "Not set"

    table = Table(title="Configuration Summary")
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="magenta")

    table.add_row("Base Directory", str(config.base_dir))
    table.add_row("Output Directory", str(config.output_dir))
    table.add_row("Genome FASTA", show(config.genome_fasta))
    table.add_row("Annotation GTF", show(config.annotation_gtf))
    table.add_row("Transcriptome FASTA", show(config.transcriptome_fasta))
    table.add_row("Aligner", config.aligner)
    table.add_row("Quantifier", config.quantifier)
    table.add_row("DE Method", config.de_method)
    table.add_row("Design Factor", config.design_factor)
    table.add_row("Reference Level", show(config.reference_level))
    table.add_row("Threads", str(config.threads))
    table.add_row("Max Memory (GB)", str(config.max_memory_gb))
    table.add_row("Strandedness", str(config.strandedness))
    table.add_row("Enrichment", ", ".join(config.enrichment_libraries)
                  if config.gene_sets_gmt is None else str(config.gene_sets_gmt))

    console.print(table)


def main():
    """Main entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()

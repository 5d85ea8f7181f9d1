"""
Configuration settings for the RNA-seq Pipeline.
"""

import configparser
import shutil
from pathlib import Path
from typing import Annotated, Optional, List, Dict, Any
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode


ALIGNERS = ("star", "hisat2")
QUANTIFIERS = ("featurecounts", "salmon")
DE_METHODS = ("deseq2", "edger")

# INI sections understood by load_pipeline_config
CONFIG_SECTIONS = ("Paths", "Tools", "Parameters", "Analysis")


class PipelineConfig(BaseSettings):
    """Configuration for the RNA-seq Pipeline."""

    # Base paths
    base_dir: Path = Field(default=Path("."), description="Base directory for pipeline")
    output_dir: Path = Field(default=Path("./output"), description="Output directory")

    # Reference files
    genome_fasta: Optional[Path] = Field(default=None, description="Reference genome FASTA file")
    annotation_gtf: Optional[Path] = Field(default=None, description="Gene annotation GTF file")
    transcriptome_fasta: Optional[Path] = Field(default=None, description="Transcript sequences for Salmon")
    star_index: Optional[Path] = Field(default=None, description="STAR genome index directory")
    hisat2_index: Optional[Path] = Field(default=None, description="HISAT2 index basename")
    salmon_index: Optional[Path] = Field(default=None, description="Salmon index directory")
    adapters_fasta: Optional[Path] = Field(default=None, description="Adapter FASTA for ILLUMINACLIP")
    trimmomatic_jar: Optional[Path] = Field(default=None, description="Trimmomatic jar (uses the wrapper script if unset)")
    gene_sets_gmt: Optional[Path] = Field(default=None, description="Local GMT file for enrichment")

    # Tool selection
    aligner: str = Field(default="star", description="Aligner: star or hisat2")
    quantifier: str = Field(default="featurecounts", description="Quantifier: featurecounts or salmon")
    de_method: str = Field(default="deseq2", description="Differential expression: deseq2 or edger")
    rscript: str = Field(default="Rscript", description="Rscript executable")

    # URLs for downloads
    fasta_url: str = Field(
        default="https://ftp.ensembl.org/pub/release-110/fasta/homo_sapiens/dna/Homo_sapiens.GRCh38.dna.primary_assembly.fa.gz",
        description="URL for reference FASTA"
    )
    gtf_url: str = Field(
        default="https://ftp.ensembl.org/pub/release-110/gtf/homo_sapiens/Homo_sapiens.GRCh38.110.gtf.gz",
        description="URL for reference GTF"
    )
    transcriptome_url: str = Field(
        default="https://ftp.ensembl.org/pub/release-110/fasta/homo_sapiens/cdna/Homo_sapiens.GRCh38.cdna.all.fa.gz",
        description="URL for transcript FASTA"
    )

    # Parameters
    threads: int = Field(default=1, description="Number of threads to use")
    read_length: int = Field(default=100, description="Read length (sjdbOverhang is read_length - 1)")
    phred: int = Field(default=33, description="Quality encoding offset")
    leading: int = Field(default=3, description="Trimmomatic LEADING quality")
    trailing: int = Field(default=3, description="Trimmomatic TRAILING quality")
    sliding_window: str = Field(default="4:15", description="Trimmomatic SLIDINGWINDOW size:quality")
    min_length: int = Field(default=36, description="Trimmomatic MINLEN")
    illuminaclip: str = Field(default="2:30:10", description="ILLUMINACLIP mismatches:palindrome:simple")
    strandedness: int = Field(default=0, description="featureCounts -s (0 unstranded, 1 stranded, 2 reverse)")
    feature_type: str = Field(default="exon", description="featureCounts -t")
    attribute_type: str = Field(default="gene_id", description="featureCounts -g")
    library_type: str = Field(default="A", description="Salmon library type")

    # Analysis
    design_factor: str = Field(default="condition", description="Sample sheet column tested for DE")
    reference_level: Optional[str] = Field(default=None, description="Reference condition (first in sheet if unset)")
    padj_threshold: float = Field(default=0.05, description="Adjusted p-value cutoff")
    lfc_threshold: float = Field(default=1.0, description="Absolute log2 fold change cutoff")
    min_count: int = Field(default=10, description="Minimum total count to keep a gene")
    min_samples: int = Field(default=2, description="Minimum samples with non-zero counts")
    organism: str = Field(default="human", description="Organism for Enrichr libraries")
    enrichment_libraries: Annotated[List[str], NoDecode] = Field(
        default_factory=lambda: ["GO_Biological_Process_2023", "KEGG_2021_Human"],
        description="Enrichr libraries used when no GMT file is configured"
    )
    gsea_permutations: int = Field(default=1000, description="GSEA permutations")
    gsea_min_size: int = Field(default=15, description="Minimum gene set size")
    gsea_max_size: int = Field(default=500, description="Maximum gene set size")
    seed: int = Field(default=42, description="Random seed for permutation tests")
    run_enrichment: bool = Field(default=True, description="Run ORA and GSEA after DE")
    run_network: bool = Field(default=False, description="Run WGCNA co-expression analysis")
    network_top_genes: int = Field(default=5000, description="Most variable genes passed to WGCNA")
    run_splicing: bool = Field(default=False, description="Run rMATS on the first contrast")

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")
    log_file: Optional[Path] = Field(default=None, description="Log file path")

    # Performance
    max_memory_gb: int = Field(default=32, description="Maximum memory usage in GB")
    timeout_seconds: int = Field(default=43200, description="Timeout for external tools in seconds")

    # Quality control
    min_mapping_rate: float = Field(default=70.0, description="Minimum mapping rate (%) for a passing sample")

    @field_validator('base_dir', 'output_dir', 'genome_fasta', 'annotation_gtf',
                     'transcriptome_fasta', 'star_index', 'hisat2_index', 'salmon_index',
                     'adapters_fasta', 'trimmomatic_jar', 'gene_sets_gmt', 'log_file',
                     mode='before')
    @classmethod
    def validate_paths(cls, v):
        """Coerce strings to paths and treat empty strings as unset."""
        if isinstance(v, str):
            if not v.strip():
                return None
            v = Path(v)
        return v

    @field_validator('threads')
    @classmethod
    def validate_threads(cls, v):
        """Validate thread count is positive."""
        if v <= 0:
            raise ValueError("Threads must be positive")
        return v

    @field_validator('max_memory_gb')
    @classmethod
    def validate_memory(cls, v):
        """Validate memory usage is reasonable."""
        if v <= 0 or v > 512:
            raise ValueError("Memory usage must be between 1 and 512 GB")
        return v

    @field_validator('aligner')
    @classmethod
    def validate_aligner(cls, v):
        v = v.lower()
        if v not in ALIGNERS:
            raise ValueError(f"Aligner must be one of {', '.join(ALIGNERS)}")
        return v

    @field_validator('quantifier')
    @classmethod
    def validate_quantifier(cls, v):
        v = v.lower()
        if v not in QUANTIFIERS:
            raise ValueError(f"Quantifier must be one of {', '.join(QUANTIFIERS)}")
        return v

    @field_validator('de_method')
    @classmethod
    def validate_de_method(cls, v):
        v = v.lower()
        if v not in DE_METHODS:
            raise ValueError(f"DE method must be one of {', '.join(DE_METHODS)}")
        return v

    @field_validator('strandedness')
    @classmethod
    def validate_strandedness(cls, v):
        if v not in (0, 1, 2):
            raise ValueError("Strandedness must be 0, 1 or 2")
        return v

    @field_validator('phred')
    @classmethod
    def validate_phred(cls, v):
        if v not in (33, 64):
            raise ValueError("Phred offset must be 33 or 64")
        return v

    @field_validator('read_length')
    @classmethod
    def validate_read_length(cls, v):
        if v < 2:
            raise ValueError("Read length must be at least 2")
        return v

    @field_validator('padj_threshold')
    @classmethod
    def validate_padj(cls, v):
        if v <= 0 or v > 1:
            raise ValueError("Adjusted p-value threshold must be in (0, 1]")
        return v

    @field_validator('lfc_threshold')
    @classmethod
    def validate_lfc(cls, v):
        if v < 0:
            raise ValueError("Log2 fold change threshold must be non-negative")
        return v

    @field_validator('enrichment_libraries', mode='before')
    @classmethod
    def validate_libraries(cls, v):
        """Accept comma-separated strings as well as lists."""
        if isinstance(v, str):
            v = [item.strip() for item in v.split(",") if item.strip()]
        return v

    model_config = {
        "env_prefix": "RNASEQ_PIPELINE_",
        "case_sensitive": False,
        "env_file": ".env",
        "validate_assignment": True,
    }

    @property
    def sjdb_overhang(self) -> int:
        """STAR splice junction overhang."""
        return self.read_length - 1

    def get_index_dir(self) -> Path:
        """Get the directory where indexes are built."""
        return self.base_dir / "index"

    def get_qc_dir(self) -> Path:
        return self.output_dir / "qc"

    def get_trim_dir(self) -> Path:
        return self.output_dir / "trimmed"

    def get_align_dir(self) -> Path:
        return self.output_dir / "alignment"

    def get_counts_dir(self) -> Path:
        return self.output_dir / "counts"

    def get_de_dir(self) -> Path:
        return self.output_dir / "differential_expression"

    def get_enrichment_dir(self) -> Path:
        return self.output_dir / "enrichment"

    def get_network_dir(self) -> Path:
        return self.output_dir / "network"

    def get_splicing_dir(self) -> Path:
        return self.output_dir / "splicing"

    def get_log_dir(self) -> Path:
        """Get the log directory path."""
        return self.output_dir / "logs"

    def get_tmp_dir(self) -> Path:
        """Get the temporary directory path."""
        return self.output_dir / "tmp"

    def resolved_star_index(self) -> Path:
        return self.star_index or self.get_index_dir() / "star"

    def resolved_hisat2_index(self) -> Path:
        return self.hisat2_index or self.get_index_dir() / "hisat2" / "genome"

    def resolved_salmon_index(self) -> Path:
        return self.salmon_index or self.get_index_dir() / "salmon"

    def ensure_directories(self) -> None:
        """Ensure all required directories exist."""
        directories = [
            self.output_dir,
            self.get_qc_dir(),
            self.get_trim_dir(),
            self.get_align_dir(),
            self.get_counts_dir(),
            self.get_de_dir(),
            self.get_enrichment_dir(),
            self.get_log_dir(),
            self.get_tmp_dir(),
        ]
        if self.run_network:
            directories.append(self.get_network_dir())
        if self.run_splicing:
            directories.append(self.get_splicing_dir())

        for directory in directories:
            directory.mkdir(parents=True, exist_ok=True)

    def required_tools(self) -> List[str]:
        """External executables needed by the selected configuration."""
        tools = ["fastqc", "multiqc", "samtools"]
        tools.append("java" if self.trimmomatic_jar else "trimmomatic")
        if self.quantifier == "salmon":
            tools.append("salmon")
        else:
            tools.append("featureCounts")
            tools.extend(["STAR"] if self.aligner == "star" else ["hisat2", "hisat2-build"])
        if self.de_method == "edger" or self.run_network:
            tools.append(self.rscript)
        if self.run_splicing:
            tools.append("rmats.py")
        return tools

    def validate_setup(self) -> List[str]:
        """Validate that the pipeline is properly set up."""
        errors = []

        required_files = {"annotation_gtf": self.annotation_gtf}
        if self.quantifier == "salmon":
            if self.salmon_index is None:
                required_files["transcriptome_fasta"] = self.transcriptome_fasta
        elif self.aligner == "star" and self.star_index is None:
            required_files["genome_fasta"] = self.genome_fasta
        elif self.aligner == "hisat2" and self.hisat2_index is None:
            required_files["genome_fasta"] = self.genome_fasta
        if self.trimmomatic_jar is not None:
            required_files["trimmomatic_jar"] = self.trimmomatic_jar
        if self.adapters_fasta is not None:
            required_files["adapters_fasta"] = self.adapters_fasta

        for name, file_path in required_files.items():
            if file_path is None:
                errors.append(f"Required setting not configured: {name}")
            elif not file_path.exists():
                errors.append(f"Required file not found: {file_path}")

        for tool in self.required_tools():
            if not self._check_tool_available(tool):
                errors.append(f"Required tool not found: {tool}")

        return errors

    def summary(self) -> Dict[str, Any]:
        """Short configuration summary for logging."""
        return {
            "output_dir": str(self.output_dir),
            "aligner": self.aligner,
            "quantifier": self.quantifier,
            "de_method": self.de_method,
            "threads": self.threads,
            "design_factor": self.design_factor,
        }

    def _check_tool_available(self, tool: str) -> bool:
        """Check if a tool is available in PATH."""
        return shutil.which(tool) is not None


def load_pipeline_config(config_file_path: Path, **overrides: Any) -> PipelineConfig:
    """
    Handles loading of pipeline variables from an INI configuration file.

    Keys are matched case-insensitively against PipelineConfig field names,
    in any of the Paths, Tools, Parameters and Analysis sections. Keyword
    overrides win over values from the file.
    """
    config_elem = configparser.ConfigParser()
    config_read = config_elem.read(config_file_path)
    # Raise an error if the file was specified but not found/readable
    if not config_read:
        raise FileNotFoundError(
            f"Configuration file not found or empty: {config_file_path}"
        )

    fields = PipelineConfig.model_fields
    values: Dict[str, Any] = {}
    for section in CONFIG_SECTIONS:
        if not config_elem.has_section(section):
            continue
        for key, raw_value in config_elem[section].items():
            name = key.lower()
            if name not in fields:
                raise ValueError(
                    f"Unknown setting '{key}' in section [{section}] of {config_file_path}"
                )
            values[name] = raw_value

    values.update({k: v for k, v in overrides.items() if v is not None})
    return PipelineConfig(**values)

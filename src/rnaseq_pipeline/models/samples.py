"""
Sample sheet models for the RNA-seq Pipeline.
"""

import re
from collections import OrderedDict
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import pandas as pd
from pydantic import BaseModel, Field, field_validator


SAMPLE_ID_PATTERN = re.compile(r"^[A-Za-z0-9_.\-]+$")

REQUIRED_COLUMNS = ("sample", "condition", "fastq_1")
OPTIONAL_COLUMNS = ("fastq_2", "batch")


class SampleSheetError(ValueError):
    """The sample sheet is malformed or inconsistent."""


class Sample(BaseModel):
    """One sequenced library."""

    sample_id: str = Field(description="Unique sample identifier")
    condition: str = Field(description="Experimental group")
    fastq_1: Path = Field(description="Read 1 (or single-end) FASTQ")
    fastq_2: Optional[Path] = Field(default=None, description="Read 2 FASTQ for paired-end data")
    batch: Optional[str] = Field(default=None, description="Sequencing batch")
    attributes: Dict[str, str] = Field(default_factory=dict, description="Extra sample sheet columns")

    @field_validator('sample_id')
    @classmethod
    def validate_sample_id(cls, v):
        """Sample ids become file names, so keep them shell-safe."""
        if not SAMPLE_ID_PATTERN.match(v):
            raise ValueError(
                f"Sample id '{v}' may only contain letters, digits, '.', '_' and '-'"
            )
        return v

    @field_validator('condition')
    @classmethod
    def validate_condition(cls, v):
        if not v or not v.strip():
            raise ValueError("Condition must not be empty")
        return v.strip()

    @property
    def is_paired(self) -> bool:
        return self.fastq_2 is not None

    @property
    def fastq_files(self) -> List[Path]:
        files = [self.fastq_1]
        if self.fastq_2 is not None:
            files.append(self.fastq_2)
        return files

    def value(self, column: str) -> Optional[str]:
        """Metadata value for a sample sheet column."""
        if column == "condition":
            return self.condition
        if column == "batch":
            return self.batch
        return self.attributes.get(column)


class SampleSheet(BaseModel):
    """Ordered collection of samples sharing one library layout."""

    samples: List[Sample] = Field(description="Samples in sheet order")

    @field_validator('samples')
    @classmethod
    def validate_samples(cls, v):
        if not v:
            raise SampleSheetError("Sample sheet contains no samples")
        seen = set()
        for sample in v:
            if sample.sample_id in seen:
                raise SampleSheetError(f"Duplicate sample id: {sample.sample_id}")
            seen.add(sample.sample_id)
        layouts = {sample.is_paired for sample in v}
        if len(layouts) > 1:
            raise SampleSheetError(
                "Sample sheet mixes single-end and paired-end samples"
            )
        return v

    @classmethod
    def from_csv(cls, path: Path) -> "SampleSheet":
        """
        Read a sample sheet CSV.

        Expected columns: sample, condition, fastq_1 and optionally fastq_2
        and batch. Relative FASTQ paths are resolved against the directory
        holding the sheet.
        """
        path = Path(path)
        if not path.exists():
            raise SampleSheetError(f"Sample sheet not found: {path}")

        table = pd.read_csv(path, dtype=str, keep_default_na=False)
        table.columns = [c.strip().lower() for c in table.columns]
        missing = [c for c in REQUIRED_COLUMNS if c not in table.columns]
        if missing:
            raise SampleSheetError(
                f"Sample sheet {path} is missing columns: {', '.join(missing)}"
            )

        base = path.parent
        samples = []
        for row_number, row in enumerate(table.to_dict(orient="records"), start=2):
            fastq_2 = row.get("fastq_2", "").strip()
            batch = row.get("batch", "").strip()
            try:
                samples.append(Sample(
                    sample_id=row["sample"].strip(),
                    condition=row["condition"],
                    fastq_1=_resolve(base, row["fastq_1"].strip()),
                    fastq_2=_resolve(base, fastq_2) if fastq_2 else None,
                    batch=batch or None,
                    attributes={
                        k: str(v).strip() for k, v in row.items()
                        if k not in REQUIRED_COLUMNS + OPTIONAL_COLUMNS
                    },
                ))
            except ValueError as e:
                raise SampleSheetError(f"Invalid sample on line {row_number} of {path}: {e}")

        try:
            return cls(samples=samples)
        except ValueError as e:
            raise SampleSheetError(f"Invalid sample sheet {path}: {e}")

    @property
    def layout(self) -> str:
        return "paired" if self.samples[0].is_paired else "single"

    @property
    def is_paired(self) -> bool:
        return self.samples[0].is_paired

    @property
    def sample_ids(self) -> List[str]:
        return [s.sample_id for s in self.samples]

    def __len__(self) -> int:
        return len(self.samples)

    def get(self, sample_id: str) -> Sample:
        for sample in self.samples:
            if sample.sample_id == sample_id:
                return sample
        raise KeyError(sample_id)

    def conditions(self, factor: str = "condition") -> List[str]:
        """Distinct levels of a metadata column in order of first appearance."""
        levels = []
        for sample in self.samples:
            value = sample.value(factor)
            if value is None or value == "":
                raise SampleSheetError(
                    f"Sample {sample.sample_id} has no value for '{factor}'"
                )
            levels.append(value)
        return list(OrderedDict.fromkeys(levels))

    def by_condition(self, factor: str = "condition") -> Dict[str, List[Sample]]:
        groups: Dict[str, List[Sample]] = OrderedDict()
        for sample in self.samples:
            groups.setdefault(sample.value(factor), []).append(sample)
        return groups

    def has_batches(self) -> bool:
        return any(s.batch for s in self.samples)

    def to_metadata(self) -> pd.DataFrame:
        """Sample metadata indexed by sample id."""
        records = []
        for sample in self.samples:
            record = {"sample": sample.sample_id, "condition": sample.condition}
            if self.has_batches():
                record["batch"] = sample.batch or "NA"
            record.update(sample.attributes)
            records.append(record)
        return pd.DataFrame.from_records(records).set_index("sample")

    def missing_files(self) -> List[Path]:
        return [f for s in self.samples for f in s.fastq_files if not f.exists()]

    def contrasts(
        self,
        factor: str = "condition",
        reference: Optional[str] = None
    ) -> List[Tuple[str, str]]:
        """
        (test, reference) level pairs for a metadata column.

        Every level other than the reference is compared to it. The
        reference defaults to the first level in sheet order.
        """
        levels = self.conditions(factor)
        if len(levels) < 2:
            raise SampleSheetError(
                f"Column '{factor}' needs at least two levels for a comparison"
            )
        if reference is None:
            reference = levels[0]
        if reference not in levels:
            raise SampleSheetError(
                f"Reference level '{reference}' is not a level of '{factor}'"
            )
        return [(level, reference) for level in levels if level != reference]


def _resolve(base: Path, value: str) -> Path:
    candidate = Path(value).expanduser()
    if not candidate.is_absolute():
        candidate = base / candidate
    return candidate

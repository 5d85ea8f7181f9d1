"""
Reference genome and annotation handling.
"""

import gzip
import random
import shutil
import time
from pathlib import Path
from typing import Dict, Optional

import pandas as pd
import requests
import structlog

from ..utils import log_file_operation


GTF_COLUMNS = [
    "seqname", "source", "feature", "start", "end",
    "score", "strand", "frame", "attributes",
]

CHUNK_SIZE = 1024 * 1024


def download_reference(
    url: str,
    output_dir: Path,
    logger: structlog.BoundLogger,
    max_retries: int = 5,
    decompress: bool = True,
    timeout: int = 60
) -> Path:
    """
    Download a reference file (FASTA or GTF), optionally gunzipping it.

    Args:
        url: HTTP(S) URL of the file
        output_dir: Directory to write into
        logger: Logger instance
        max_retries: Maximum number of attempts
        decompress: Decompress '.gz' downloads
        timeout: Connection/read timeout in seconds

    Returns:
        Path of the downloaded (and decompressed) file

    Raises:
        RuntimeError: If the download fails after all retries
    """
    output_dir.mkdir(parents=True, exist_ok=True)
    file_name = url.rstrip("/").split("/")[-1].split("?")[0]
    download_path = output_dir / file_name
    final_path = download_path.with_suffix("") if (decompress and file_name.endswith(".gz")) else download_path

    if final_path.exists() and final_path.stat().st_size > 0:
        logger.info("Reference already present, skipping download", file=str(final_path))
        return final_path

    logger.info("Starting reference download", url=url, output=str(download_path))

    for attempt in range(max_retries):
        try:
            _stream_to_file(url, download_path, timeout)
            break
        except requests.exceptions.RequestException as e:
            logger.warning(f"Download attempt {attempt+1} failed",
                           url=url, error=str(e))
            if download_path.exists():
                download_path.unlink()
            if attempt < max_retries - 1:
                # Wait before retry with exponential backoff
                wait_time = (2 ** attempt) + random.uniform(0, 1)
                logger.info(f"Waiting {wait_time:.1f} seconds before retry")
                time.sleep(wait_time)
            else:
                raise RuntimeError(f"Failed to download {url} after {max_retries} attempts")

    if final_path != download_path:
        logger.info("Decompressing reference", file=str(download_path))
        with gzip.open(download_path, "rb") as src, open(final_path, "wb") as dst:
            shutil.copyfileobj(src, dst, CHUNK_SIZE)
        download_path.unlink()

    log_file_operation(logger, "downloaded", final_path)
    return final_path


def _stream_to_file(url: str, path: Path, timeout: int) -> None:
    tmp_path = path.with_name(path.name + ".part")
    with requests.get(url, stream=True, timeout=timeout) as response:
        response.raise_for_status()
        with open(tmp_path, "wb") as handle:
            for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                if chunk:
                    handle.write(chunk)
    tmp_path.replace(path)


def parse_gtf_attributes(field: str) -> Dict[str, str]:
    """
    Parse the 9th GTF column.

    >>> parse_gtf_attributes('gene_id "G1"; transcript_id "T1";')
    {'gene_id': 'G1', 'transcript_id': 'T1'}
    """
    attributes = {}
    for item in field.strip().split(";"):
        item = item.strip()
        if not item:
            continue
        key, _, value = item.partition(" ")
        # Repeated keys (e.g. tag) keep their first value
        attributes.setdefault(key, value.strip().strip('"'))
    return attributes


def read_gtf(gtf_file: Path, features: Optional[tuple] = None) -> pd.DataFrame:
    """
    Read a GTF file (plain or gzipped) into a DataFrame.

    Args:
        gtf_file: GTF path
        features: Keep only these feature types (e.g. ("gene", "transcript"))

    Returns:
        One row per record with the eight fixed columns plus one column per
        attribute key
    """
    table = pd.read_csv(
        gtf_file,
        sep="\t",
        comment="#",
        header=None,
        names=GTF_COLUMNS,
        dtype={"seqname": str, "start": "int64", "end": "int64"},
        compression="infer",
    )
    if features is not None:
        table = table[table["feature"].isin(features)]
    if table.empty:
        return table.drop(columns=["attributes"])
    attributes = pd.DataFrame.from_records(
        [parse_gtf_attributes(a) for a in table["attributes"]],
        index=table.index,
    )
    return pd.concat([table.drop(columns=["attributes"]), attributes], axis=1)


def build_tx2gene(gtf_file: Path, strip_version: bool = False) -> pd.DataFrame:
    """
    Transcript to gene table with columns transcript_id, gene_id, gene_name.

    Transcript records are used when present, exon records otherwise.
    """
    gtf = read_gtf(gtf_file, features=("transcript", "exon"))
    if "transcript_id" not in gtf.columns:
        raise ValueError(f"No transcript_id attributes found in {gtf_file}")

    records = gtf[gtf["feature"] == "transcript"]
    if records.empty:
        records = gtf[gtf["feature"] == "exon"]

    columns = ["transcript_id", "gene_id"]
    if "gene_name" in records.columns:
        columns.append("gene_name")
    tx2gene = records[columns].dropna(subset=["transcript_id", "gene_id"]).drop_duplicates("transcript_id").copy()
    if "gene_name" not in tx2gene.columns:
        tx2gene = tx2gene.assign(gene_name=tx2gene["gene_id"])
    tx2gene["gene_name"] = tx2gene["gene_name"].fillna(tx2gene["gene_id"])

    if strip_version:
        tx2gene["transcript_id"] = tx2gene["transcript_id"].str.replace(r"\.\d+$", "", regex=True)
        tx2gene["gene_id"] = tx2gene["gene_id"].str.replace(r"\.\d+$", "", regex=True)
    return tx2gene.reset_index(drop=True)


def gene_names(gtf_file: Path) -> pd.Series:
    """gene_id to gene_name mapping (gene_id where no name is annotated)."""
    gtf = read_gtf(gtf_file, features=("gene",))
    if gtf.empty:
        gtf = read_gtf(gtf_file, features=("exon",))
    if "gene_name" not in gtf.columns:
        gtf["gene_name"] = gtf["gene_id"]
    names = gtf.drop_duplicates("gene_id").set_index("gene_id")["gene_name"]
    return names.fillna(pd.Series(names.index, index=names.index))

"""
Data ingestion.

Loads per-sample count files, sample tables and gene annotation, and
fetches public count archives.
"""

from rnaseq_pipeline.ingest.base import CountMatrix, SampleDesign
from rnaseq_pipeline.ingest.annotation import GeneAnnotation
from rnaseq_pipeline.ingest.counts import (
    CountFileLoader,
    load_counts,
    read_count_file,
    sample_id_from_path,
)
from rnaseq_pipeline.ingest.download import (
    DEFAULT_ACCESSION,
    download_archive,
    extract_archive,
    fetch_geo_counts,
    geo_archive_url,
)

__all__ = [
    "CountMatrix",
    "SampleDesign",
    "GeneAnnotation",
    "CountFileLoader",
    "load_counts",
    "read_count_file",
    "sample_id_from_path",
    "DEFAULT_ACCESSION",
    "download_archive",
    "extract_archive",
    "fetch_geo_counts",
    "geo_archive_url",
]

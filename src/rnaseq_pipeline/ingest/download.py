"""
Download and unpack public count archives (GEO supplementary files).
"""

from __future__ import annotations

import logging
import tarfile
from pathlib import Path
from typing import Optional, Union

from rnaseq_pipeline.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

GEO_SUPPLEMENT_URL = (
    "https://ftp.ncbi.nlm.nih.gov/geo/series/{prefix}nnn/{accession}/suppl/{accession}_RAW.tar"
)

DEFAULT_ACCESSION = "GSE63310"


def geo_archive_url(accession: str = DEFAULT_ACCESSION) -> str:
    """URL of the raw supplementary archive of a GEO series."""
    accession = accession.upper()
    if not accession.startswith("GSE") or not accession[3:].isdigit():
        raise ConfigurationError(f"Not a GEO series accession: {accession}")
    prefix = accession[:-3] if len(accession) > 6 else "GSE"
    return GEO_SUPPLEMENT_URL.format(prefix=prefix, accession=accession)


def download_archive(
    url: str,
    dest_dir: Union[str, Path],
    filename: Optional[str] = None,
    overwrite: bool = False,
) -> Path:
    """
    Download a file unless it already exists.

    Args:
        url: Source URL.
        dest_dir: Target directory (created if needed).
        filename: Target file name (last URL component when None).
        overwrite: Download even if the file exists.

    Returns:
        Path to the downloaded file.
    """
    import urllib.request

    dest_dir = Path(dest_dir)
    dest_dir.mkdir(parents=True, exist_ok=True)
    path = dest_dir / (filename or url.rstrip("/").split("/")[-1])

    if path.exists() and not overwrite:
        logger.info("Using existing archive %s", path)
        return path

    logger.info("Downloading %s -> %s", url, path)
    tmp_path = path.with_suffix(path.suffix + ".part")
    urllib.request.urlretrieve(url, tmp_path)
    tmp_path.replace(path)
    return path


def extract_archive(archive: Union[str, Path], dest_dir: Union[str, Path]) -> list[Path]:
    """
    Extract a tar archive, refusing members that would land outside dest_dir.

    Returns:
        Paths of the extracted regular files.
    """
    dest_dir = Path(dest_dir).resolve()
    extracted = []
    with tarfile.open(archive) as tar:
        for member in tar.getmembers():
            if not member.isfile():
                continue
            target = (dest_dir / member.name).resolve()
            if dest_dir not in target.parents:
                logger.warning("Skipping archive member outside target directory: %s", member.name)
                continue
            target.parent.mkdir(parents=True, exist_ok=True)
            source = tar.extractfile(member)
            if source is None:
                continue
            with source, open(target, "wb") as out:
                out.write(source.read())
            extracted.append(target)
    logger.info("Extracted %d files from %s", len(extracted), Path(archive).name)
    return extracted


def fetch_geo_counts(
    dest_dir: Union[str, Path],
    accession: str = DEFAULT_ACCESSION,
    overwrite: bool = False,
) -> list[Path]:
    """Download and extract the raw count archive of a GEO series."""
    url = geo_archive_url(accession)
    archive = download_archive(url, dest_dir, overwrite=overwrite)
    return extract_archive(archive, dest_dir)

"""
Gene set collection files.
"""

from __future__ import annotations

import gzip
import logging
from pathlib import Path
from typing import Union

from rnaseq_pipeline.exceptions import DataShapeError

logger = logging.getLogger(__name__)


def read_gmt(path: Union[str, Path]) -> dict[str, list[str]]:
    """
    Read a GMT file.

    Each line holds a set name, a description and the member identifiers,
    separated by tabs. Gzipped files are read transparently.

    Args:
        path: GMT file path.

    Returns:
        Set name -> member identifiers (duplicates removed, order kept).

    Raises:
        DataShapeError: On malformed lines or repeated set names.
    """
    path = Path(path)
    opener = gzip.open if path.suffix == ".gz" else open

    gene_sets: dict[str, list[str]] = {}
    with opener(path, "rt") as f:
        for line_no, line in enumerate(f, start=1):
            line = line.rstrip("\r\n")
            if not line.strip():
                continue
            fields = line.split("\t")
            if len(fields) < 2:
                raise DataShapeError(f"{path}:{line_no}: expected name, description and genes")
            name = fields[0].strip()
            if name in gene_sets:
                raise DataShapeError(f"{path}:{line_no}: gene set '{name}' defined twice")
            members = [g.strip() for g in fields[2:] if g.strip()]
            gene_sets[name] = list(dict.fromkeys(members))

    logger.info("Loaded %d gene sets from %s", len(gene_sets), path)
    return gene_sets


def write_gmt(gene_sets: dict[str, list[str]], path: Union[str, Path]) -> Path:
    """Write gene sets as GMT with an empty description column."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        for name, members in gene_sets.items():
            f.write("\t".join([name, ""] + [str(g) for g in members]) + "\n")
    return path

"""
Loader for per-sample count files.

Each file is a delimited table with a header row holding (at least) a gene
identifier column and a count column, e.g. the GEO supplementary files::

    EntrezID    GeneLength    Count
    497097      3634          1
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Iterable, Optional, Union

import pandas as pd

from rnaseq_pipeline.core.config import IngestConfig
from rnaseq_pipeline.exceptions import ConfigurationError, DataShapeError
from rnaseq_pipeline.ingest.base import CountMatrix

logger = logging.getLogger(__name__)

_SUFFIXES = (".gz", ".bz2", ".zip", ".xz", ".txt", ".tsv", ".csv", ".counts")


def sample_id_from_path(path: Union[str, Path], pattern: Optional[str] = None) -> str:
    """
    Derive a sample identifier from a count file name.

    Known suffixes are stripped; with ``pattern`` the first capture group
    (or the whole match) is used instead.
    """
    name = Path(path).name
    if pattern:
        match = re.search(pattern, name)
        if match is None:
            raise ConfigurationError(f"Sample name pattern {pattern!r} does not match '{name}'")
        return match.group(1) if match.groups() else match.group(0)

    stem = name
    stripped = True
    while stripped:
        stripped = False
        for suffix in _SUFFIXES:
            if stem.lower().endswith(suffix) and len(stem) > len(suffix):
                stem = stem[: -len(suffix)]
                stripped = True
    return stem


def _resolve_column(
    table: pd.DataFrame,
    column: Optional[Union[int, str]],
    label: str,
    path: Path,
) -> int:
    """Position of a column given as a position, a header name, or None (count default)."""
    n_cols = table.shape[1]
    headers = [str(c).strip() for c in table.columns]

    if column is None:
        lowered = [h.lower() for h in headers]
        column = lowered.index("count") if "count" in lowered else 1

    if isinstance(column, str):
        if column in headers:
            return headers.index(column)
        lowered = [h.lower() for h in headers]
        if column.lower() in lowered:
            return lowered.index(column.lower())
        raise DataShapeError(f"{path.name}: no '{column}' column for {label} (header: {headers})")

    if not -n_cols <= column < n_cols:
        raise DataShapeError(
            f"{path.name}: {label}={column} out of range for {n_cols} columns"
        )
    return column


def read_count_file(
    path: Union[str, Path],
    gene_column: Union[int, str] = 0,
    count_column: Optional[Union[int, str]] = None,
    sep: str = "\t",
) -> pd.Series:
    """
    Read one count file into a Series indexed by gene identifier.

    Args:
        path: Count file (compressed files are accepted).
        gene_column: Gene id column (zero-based position or header name).
        count_column: Count column (zero-based position or header name); None
            picks a 'Count' header when present, otherwise the second column.
        sep: Field delimiter.

    Returns:
        Integer counts indexed by gene id (as strings).
    """
    path = Path(path)
    table = pd.read_csv(path, sep=sep, header=0, dtype=str, comment=None)

    gene_column = _resolve_column(table, gene_column, "gene_column", path)
    count_column = _resolve_column(table, count_column, "count_column", path)

    genes = table.iloc[:, gene_column].str.strip()
    if genes.isna().any():
        raise DataShapeError(f"{path.name}: missing gene identifiers")
    if genes.duplicated().any():
        dupes = genes[genes.duplicated()].unique()[:5].tolist()
        raise DataShapeError(f"{path.name}: duplicate gene identifiers {dupes}")

    try:
        counts = pd.to_numeric(table.iloc[:, count_column], errors="raise")
    except (TypeError, ValueError) as e:
        raise DataShapeError(f"{path.name}: non-numeric counts ({e})") from e
    if counts.isna().any():
        raise DataShapeError(f"{path.name}: missing counts")

    return pd.Series(counts.to_numpy(), index=pd.Index(genes.to_numpy(), name="gene_id"))


class CountFileLoader:
    """
    Builds a CountMatrix from a set of per-sample count files.

    Example:
        >>> loader = CountFileLoader(IngestConfig(count_column=2))
        >>> counts = loader.load_directory("data/")
        >>> counts.n_samples
        9
    """

    def __init__(self, config: Optional[IngestConfig] = None):
        """
        Initialize loader.

        Args:
            config: Parsing configuration.
        """
        self.config = config or IngestConfig()

    def find_files(self, directory: Union[str, Path]) -> list[Path]:
        """Count files in a directory matching the configured pattern, sorted by name."""
        directory = Path(directory)
        if not directory.is_dir():
            raise ConfigurationError(f"Count directory not found: {directory}")
        files = sorted(p for p in directory.glob(self.config.pattern) if p.is_file())
        if not files:
            raise ConfigurationError(
                f"No count files matching '{self.config.pattern}' in {directory}"
            )
        return files

    def load_directory(self, directory: Union[str, Path]) -> CountMatrix:
        """Load every matching count file in a directory."""
        return self.load_files(self.find_files(directory))

    def load_files(
        self,
        paths: Iterable[Union[str, Path]],
        sample_ids: Optional[list[str]] = None,
    ) -> CountMatrix:
        """
        Load count files into a single matrix.

        Args:
            paths: Count files, one per sample.
            sample_ids: Sample identifiers (derived from file names when None).

        Returns:
            CountMatrix with samples in file order.

        Raises:
            DataShapeError: If files disagree on their gene sets.
        """
        paths = [Path(p) for p in paths]
        if not paths:
            raise ConfigurationError("No count files given")
        if sample_ids is None:
            sample_ids = [
                sample_id_from_path(p, self.config.sample_name_pattern) for p in paths
            ]
        if len(sample_ids) != len(paths):
            raise DataShapeError(
                f"{len(sample_ids)} sample ids given for {len(paths)} count files"
            )
        if len(set(sample_ids)) != len(sample_ids):
            raise DataShapeError(f"Duplicate sample identifiers: {sample_ids}")

        columns = {}
        reference_genes: Optional[pd.Index] = None
        for sample_id, path in zip(sample_ids, paths):
            series = read_count_file(
                path,
                gene_column=self.config.gene_column,
                count_column=self.config.count_column,
                sep=self.config.sep,
            )
            if reference_genes is None:
                reference_genes = series.index
            elif not series.index.equals(reference_genes):
                if len(series.index) != len(reference_genes) or not series.index.isin(reference_genes).all():
                    raise DataShapeError(
                        f"{path.name}: gene set differs from {paths[0].name} "
                        f"({len(series)} vs {len(reference_genes)} genes)"
                    )
                series = series.reindex(reference_genes)
            columns[sample_id] = series
            logger.debug("Read %d genes from %s", len(series), path.name)

        matrix = pd.DataFrame(columns, index=reference_genes)
        counts = CountMatrix(matrix)
        logger.info(
            "Loaded count matrix: %d genes x %d samples", counts.n_genes, counts.n_samples
        )
        return counts


def load_counts(
    directory: Union[str, Path],
    config: Optional[IngestConfig] = None,
) -> CountMatrix:
    """
    Load a directory of count files.

    Convenience function for CountFileLoader.
    """
    return CountFileLoader(config).load_directory(directory)

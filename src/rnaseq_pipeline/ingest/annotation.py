"""
Gene annotation tables (gene id -> symbol, chromosome).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

import pandas as pd

from rnaseq_pipeline.exceptions import ConfigurationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GeneAnnotation:
    """
    Annotation keyed by gene identifier.

    Duplicate identifiers keep their first occurrence.

    Example:
        >>> annotation = GeneAnnotation.from_table("genes.tsv", id_col="ENTREZID")
        >>> counts = counts.with_annotation(annotation)
    """

    table: pd.DataFrame
    """Annotation columns indexed by gene id."""

    def __post_init__(self):
        table = self.table
        if table.index.has_duplicates:
            n_dup = int(table.index.duplicated().sum())
            logger.info("Dropping %d duplicated annotation entries (keeping first)", n_dup)
            table = table[~table.index.duplicated(keep="first")]
        object.__setattr__(self, "table", table)

    @classmethod
    def from_frame(
        cls,
        df: pd.DataFrame,
        id_col: str = "gene_id",
        columns: Optional[list[str]] = None,
    ) -> "GeneAnnotation":
        """Create from a DataFrame with an identifier column."""
        if id_col not in df.columns:
            raise ConfigurationError(
                f"Annotation id column '{id_col}' not found (columns: {list(df.columns)})"
            )
        table = df.set_index(id_col)
        table.index = table.index.astype(str)
        table.index.name = "gene_id"
        if columns is not None:
            missing = [c for c in columns if c not in table.columns]
            if missing:
                raise ConfigurationError(f"Annotation columns not found: {missing}")
            table = table[columns]
        return cls(table)

    @classmethod
    def from_table(
        cls,
        path: Union[str, Path],
        id_col: str = "gene_id",
        columns: Optional[list[str]] = None,
        sep: Optional[str] = None,
    ) -> "GeneAnnotation":
        """Load a CSV/TSV annotation table."""
        df = pd.read_csv(path, sep=sep, engine="python", dtype=str)
        return cls.from_frame(df, id_col=id_col, columns=columns)

    def lookup(self, gene_ids: list, column: str) -> pd.Series:
        """Values of one annotation column for the given genes (NaN when unknown)."""
        if column not in self.table.columns:
            raise ConfigurationError(f"Annotation column '{column}' not found")
        return self.table[column].reindex([str(g) for g in gene_ids])

    def annotate(self, gene_ids: list) -> pd.DataFrame:
        """All annotation columns for the given genes, in order (NaN when unknown)."""
        return self.table.reindex([str(g) for g in gene_ids])

    def __len__(self) -> int:
        return len(self.table)

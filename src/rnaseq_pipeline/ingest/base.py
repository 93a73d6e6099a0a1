"""
Core data containers for count data and sample designs.

Every container validates its invariants on construction and is never
mutated afterwards; operations return new instances.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional, Union
import logging

import numpy as np
import pandas as pd

from rnaseq_pipeline.exceptions import ConfigurationError, DataShapeError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CountMatrix:
    """
    Dense gene x sample matrix of raw read counts.

    Example:
        >>> counts = CountMatrix(df)  # genes x samples
        >>> counts.lib_size
        >>> kept = counts.subset_genes(mask, keep_lib_sizes=False)
    """

    counts: pd.DataFrame
    """Raw counts (genes x samples), non-negative integers."""

    lib_size: Optional[pd.Series] = None
    """Library size per sample (column sums when not given)."""

    genes: Optional[pd.DataFrame] = None
    """Optional gene annotation aligned to the count rows."""

    def __post_init__(self):
        counts = self.counts
        if not isinstance(counts, pd.DataFrame):
            counts = pd.DataFrame(counts)

        if counts.shape[0] == 0 or counts.shape[1] == 0:
            raise DataShapeError(
                f"Count matrix must have at least one gene and one sample, got shape {counts.shape}"
            )
        if not counts.index.is_unique:
            dupes = counts.index[counts.index.duplicated()].unique()[:5].tolist()
            raise DataShapeError(f"Duplicate gene identifiers: {dupes}")
        if not counts.columns.is_unique:
            raise DataShapeError("Duplicate sample identifiers in count matrix")

        try:
            values = counts.to_numpy(dtype=np.float64)
        except (TypeError, ValueError) as e:
            raise DataShapeError(f"Count matrix contains non-numeric values: {e}") from e
        if not np.all(np.isfinite(values)):
            raise DataShapeError("Count matrix contains missing or non-finite values")
        if np.any(values < 0):
            raise DataShapeError("Count matrix contains negative counts")
        if np.any(values != np.round(values)):
            raise DataShapeError("Count matrix contains non-integer counts")

        counts = pd.DataFrame(
            values.astype(np.int64),
            index=counts.index.copy(),
            columns=counts.columns.copy(),
        )
        object.__setattr__(self, "counts", counts)

        if self.lib_size is None:
            lib_size = counts.sum(axis=0).astype(np.float64)
        else:
            lib_size = pd.Series(self.lib_size, dtype=np.float64)
            if len(lib_size) != counts.shape[1]:
                raise DataShapeError(
                    f"lib_size has {len(lib_size)} entries for {counts.shape[1]} samples"
                )
            if not lib_size.index.equals(counts.columns):
                if set(lib_size.index) == set(counts.columns):
                    lib_size = lib_size.reindex(counts.columns)
                else:
                    lib_size = pd.Series(lib_size.to_numpy(), index=counts.columns)
            if np.any(~np.isfinite(lib_size.to_numpy())) or np.any(lib_size.to_numpy() < 0):
                raise DataShapeError("Library sizes must be finite and non-negative")
        lib_size.name = "lib_size"
        object.__setattr__(self, "lib_size", lib_size)

        if self.genes is not None:
            object.__setattr__(self, "genes", self.genes.reindex(counts.index))

    @property
    def n_genes(self) -> int:
        return self.counts.shape[0]

    @property
    def n_samples(self) -> int:
        return self.counts.shape[1]

    @property
    def gene_ids(self) -> list:
        return list(self.counts.index)

    @property
    def sample_ids(self) -> list:
        return list(self.counts.columns)

    @property
    def values(self) -> np.ndarray:
        """Counts as a float array (genes x samples)."""
        return self.counts.to_numpy(dtype=np.float64)

    def subset_genes(
        self,
        keep: Union[np.ndarray, pd.Series, list],
        keep_lib_sizes: bool = False,
    ) -> "CountMatrix":
        """
        Return a new matrix restricted to a subset of genes.

        Args:
            keep: Boolean mask over genes or a list of gene identifiers.
            keep_lib_sizes: Retain the current library sizes instead of
                recomputing them from the retained genes.

        Returns:
            New CountMatrix with the same samples.
        """
        if isinstance(keep, pd.Series) and keep.dtype == bool:
            mask = keep.reindex(self.counts.index).fillna(False).to_numpy(dtype=bool)
        else:
            keep_arr = np.asarray(keep)
            if keep_arr.dtype == bool:
                if keep_arr.shape != (self.n_genes,):
                    raise DataShapeError(
                        f"Gene mask has length {keep_arr.shape[0]}, expected {self.n_genes}"
                    )
                mask = keep_arr
            else:
                mask = self.counts.index.isin(list(keep))

        subset = self.counts.loc[mask]
        genes = self.genes.loc[mask] if self.genes is not None else None
        lib_size = self.lib_size.copy() if keep_lib_sizes else None
        return CountMatrix(subset, lib_size=lib_size, genes=genes)

    def with_annotation(self, annotation: Any) -> "CountMatrix":
        """Return a copy with gene annotation joined by gene identifier (compared as strings)."""
        table = annotation.table if hasattr(annotation, "table") else annotation
        table = table.copy()
        table.index = table.index.astype(str)
        genes = table.reindex([str(g) for g in self.counts.index])
        genes.index = self.counts.index
        n_matched = int(self.counts.index.astype(str).isin(table.index).sum())
        if n_matched == 0:
            logger.warning("Annotation matches none of the %d genes", self.n_genes)
        else:
            logger.info("Annotated %d of %d genes", n_matched, self.n_genes)
        return CountMatrix(self.counts, lib_size=self.lib_size, genes=genes)

    def zero_count_genes(self) -> pd.Index:
        """Genes with a zero count in every sample."""
        return self.counts.index[(self.counts == 0).all(axis=1)]

    def summary(self) -> dict[str, Any]:
        """Summary statistics of the matrix."""
        lib = self.lib_size
        return {
            "n_genes": self.n_genes,
            "n_samples": self.n_samples,
            "n_zero_genes": int(len(self.zero_count_genes())),
            "lib_size_min": float(lib.min()),
            "lib_size_median": float(lib.median()),
            "lib_size_max": float(lib.max()),
        }

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(n_genes={self.n_genes}, n_samples={self.n_samples})"


@dataclass(frozen=True)
class SampleDesign:
    """
    Per-sample categorical attributes (group and batch factors).

    Example:
        >>> design = SampleDesign.from_table("samples.tsv")
        >>> design = design.align(counts)
        >>> design.levels("group")
        ['Basal', 'LP', 'ML']
    """

    samples: pd.DataFrame
    """Sample table indexed by sample identifier."""

    group_col: str = "group"
    """Column holding the group factor."""

    def __post_init__(self):
        samples = self.samples
        if self.group_col not in samples.columns:
            raise ConfigurationError(
                f"Group column '{self.group_col}' not in sample table "
                f"(columns: {list(samples.columns)})"
            )
        if not samples.index.is_unique:
            raise DataShapeError("Duplicate sample identifiers in sample table")
        if samples[self.group_col].isna().any():
            missing = samples.index[samples[self.group_col].isna()].tolist()
            raise DataShapeError(f"Samples without a group label: {missing}")

        samples = samples.copy()
        samples[self.group_col] = samples[self.group_col].astype(str)
        object.__setattr__(self, "samples", samples)

        n_levels = samples[self.group_col].nunique()
        if n_levels < 2:
            raise ConfigurationError(
                f"At least two groups are required for contrasts, found {n_levels}"
            )

    @classmethod
    def from_frame(
        cls,
        df: pd.DataFrame,
        sample_col: Optional[str] = None,
        group_col: str = "group",
    ) -> "SampleDesign":
        """Create from a DataFrame, optionally taking sample ids from a column."""
        if sample_col is not None:
            if sample_col not in df.columns:
                raise ConfigurationError(f"Sample column '{sample_col}' not in sample table")
            df = df.set_index(sample_col)
        df.index = df.index.astype(str)
        return cls(df, group_col=group_col)

    @classmethod
    def from_table(
        cls,
        path: Union[str, Path],
        sample_col: Optional[str] = "sample",
        group_col: str = "group",
        sep: Optional[str] = None,
    ) -> "SampleDesign":
        """
        Load a CSV/TSV sample table.

        Args:
            path: Table path.
            sample_col: Column with sample identifiers (None uses the first column).
            group_col: Column with group labels.
            sep: Delimiter (sniffed when None).
        """
        df = pd.read_csv(path, sep=sep, engine="python", dtype=str)
        if sample_col is None or sample_col not in df.columns:
            sample_col = df.columns[0]
        return cls.from_frame(df, sample_col=sample_col, group_col=group_col)

    @property
    def sample_ids(self) -> list:
        return list(self.samples.index)

    @property
    def groups(self) -> pd.Series:
        return self.samples[self.group_col]

    def levels(self, column: Optional[str] = None) -> list[str]:
        """Sorted distinct labels of a factor column (the group column by default)."""
        column = column or self.group_col
        if column not in self.samples.columns:
            raise ConfigurationError(f"Column '{column}' not in sample table")
        return sorted(self.samples[column].dropna().astype(str).unique())

    def group_sizes(self) -> pd.Series:
        return self.groups.value_counts()

    def align(self, counts: CountMatrix) -> "SampleDesign":
        """
        Reorder the table to the count matrix's sample order.

        Raises:
            DataShapeError: If the sample sets differ.
        """
        count_samples = [str(s) for s in counts.sample_ids]
        missing = [s for s in count_samples if s not in self.samples.index]
        extra = [s for s in self.samples.index if s not in set(count_samples)]
        if missing or extra:
            raise DataShapeError(
                f"Sample mismatch between counts ({len(count_samples)}) and design "
                f"({len(self.samples)}): missing from design {missing[:5]}, "
                f"not in counts {extra[:5]}"
            )
        aligned = self.samples.loc[count_samples]
        aligned.index = counts.counts.columns
        return SampleDesign(aligned, group_col=self.group_col)

    def __len__(self) -> int:
        return len(self.samples)

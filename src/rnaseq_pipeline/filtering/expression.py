"""
Removal of lowly expressed genes.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

import pandas as pd

from rnaseq_pipeline.core.config import FilterConfig
from rnaseq_pipeline.exceptions import ConfigurationError, DataShapeError
from rnaseq_pipeline.ingest.base import CountMatrix
from rnaseq_pipeline.normalization.cpm import compute_cpm

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FilterResult:
    """Result of expression filtering."""

    counts: CountMatrix
    """Counts restricted to the kept genes."""

    keep: pd.Series
    """Boolean mask over the input genes."""

    n_input: int
    """Genes before filtering."""

    @property
    def n_kept(self) -> int:
        return int(self.keep.sum())

    @property
    def n_removed(self) -> int:
        return self.n_input - self.n_kept


class LowExpressionFilter:
    """
    Keeps genes with CPM above a threshold in a minimum number of samples.

    Library sizes of the filtered matrix are recomputed from the kept genes
    unless ``keep_lib_sizes`` is set.

    Example:
        >>> filt = LowExpressionFilter(FilterConfig(cpm_threshold=1, min_samples=3))
        >>> result = filt.filter(counts)
        >>> result.counts.n_genes
    """

    def __init__(self, config: Optional[FilterConfig] = None):
        """
        Initialize filter.

        Args:
            config: Filter configuration.
        """
        self.config = config or FilterConfig()
        if self.config.min_samples < 1:
            raise ConfigurationError("min_samples must be at least 1")

    def expressed_mask(
        self,
        counts: CountMatrix,
        cpm: Optional[pd.DataFrame] = None,
    ) -> pd.Series:
        """
        Boolean mask of genes passing the threshold.

        Args:
            counts: Raw counts.
            cpm: CPM matrix for the same genes and samples (computed from
                the counts' library sizes when None).
        """
        if cpm is None:
            cpm = compute_cpm(counts.counts, counts.lib_size)
        elif not (cpm.index.equals(counts.counts.index) and cpm.columns.equals(counts.counts.columns)):
            raise DataShapeError(
                f"CPM matrix {cpm.shape} is not aligned with the count matrix "
                f"({counts.n_genes}, {counts.n_samples})"
            )

        n_expressed = (cpm.to_numpy() > self.config.cpm_threshold).sum(axis=1)
        return pd.Series(n_expressed >= self.config.min_samples, index=counts.counts.index, name="keep")

    def filter(
        self,
        counts: CountMatrix,
        cpm: Optional[pd.DataFrame] = None,
    ) -> FilterResult:
        """
        Filter a count matrix.

        Raises:
            ConfigurationError: If no gene passes the thresholds.
        """
        if self.config.min_samples > counts.n_samples:
            raise ConfigurationError(
                f"min_samples={self.config.min_samples} exceeds the number of samples "
                f"({counts.n_samples})"
            )

        keep = self.expressed_mask(counts, cpm)
        n_kept = int(keep.sum())
        if n_kept == 0:
            raise ConfigurationError(
                f"No genes have CPM > {self.config.cpm_threshold} in at least "
                f"{self.config.min_samples} samples; thresholds are too strict for this data"
            )

        filtered = counts.subset_genes(keep.to_numpy(), keep_lib_sizes=self.config.keep_lib_sizes)
        logger.info(
            "Filtered low-expression genes: kept %d of %d (CPM > %g in >= %d samples)",
            n_kept, counts.n_genes, self.config.cpm_threshold, self.config.min_samples,
        )
        return FilterResult(counts=filtered, keep=keep, n_input=counts.n_genes)


def filter_by_expression(
    counts: CountMatrix,
    cpm_threshold: float = 1.0,
    min_samples: int = 3,
    keep_lib_sizes: bool = False,
) -> CountMatrix:
    """
    Filter lowly expressed genes.

    Convenience function for LowExpressionFilter.
    """
    config = FilterConfig(
        cpm_threshold=cpm_threshold,
        min_samples=min_samples,
        keep_lib_sizes=keep_lib_sizes,
    )
    return LowExpressionFilter(config).filter(counts).counts

"""
Counts-per-million transforms and the normalized expression view.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Union

import numpy as np
import pandas as pd

from rnaseq_pipeline.core.config import NormalizationConfig
from rnaseq_pipeline.exceptions import DataShapeError
from rnaseq_pipeline.ingest.base import CountMatrix
from rnaseq_pipeline.normalization.tmm import calc_norm_factors

logger = logging.getLogger(__name__)


def compute_cpm(
    counts: Union[np.ndarray, pd.DataFrame],
    lib_size: Union[np.ndarray, pd.Series, None] = None,
) -> Union[np.ndarray, pd.DataFrame]:
    """
    Counts per million.

    Args:
        counts: Counts (genes x samples).
        lib_size: Library size per sample (column sums when None).

    Returns:
        CPM values with the same shape and labels as the input.
    """
    if isinstance(counts, pd.DataFrame):
        values = counts.to_numpy(dtype=np.float64)
    else:
        values = np.asarray(counts, dtype=np.float64)

    if lib_size is None:
        lib = values.sum(axis=0)
    else:
        lib = np.asarray(lib_size, dtype=np.float64)
    if lib.shape != (values.shape[1],):
        raise DataShapeError(
            f"lib_size has shape {lib.shape}, expected ({values.shape[1]},)"
        )
    if np.any(lib <= 0):
        raise DataShapeError("Library sizes must be positive to compute CPM")

    cpm = values / lib[None, :] * 1e6

    if isinstance(counts, pd.DataFrame):
        return pd.DataFrame(cpm, index=counts.index, columns=counts.columns)
    return cpm


def compute_log_cpm(
    cpm: Union[np.ndarray, pd.DataFrame],
    prior_count: float = 0.25,
) -> Union[np.ndarray, pd.DataFrame]:
    """log2(CPM + prior_count)."""
    return np.log2(cpm + prior_count)


@dataclass(frozen=True)
class NormalizedMatrix:
    """
    CPM and log-CPM view over a CountMatrix.

    Tied to the gene set it was computed from; recompute after filtering.
    """

    cpm: pd.DataFrame
    """Counts per million on effective library sizes."""

    log_cpm: pd.DataFrame
    """log2(CPM + prior_count)."""

    lib_size: pd.Series
    """Raw library sizes."""

    norm_factors: pd.Series
    """Per-sample scaling factors (> 0)."""

    prior_count: float = 0.25
    """Prior used for log_cpm."""

    @property
    def effective_lib_size(self) -> pd.Series:
        """Library size times normalization factor."""
        return (self.lib_size * self.norm_factors).rename("effective_lib_size")

    @property
    def gene_ids(self) -> list:
        return list(self.cpm.index)

    def matches(self, counts: CountMatrix) -> bool:
        """Whether this view was computed on exactly the genes and samples of counts."""
        return (
            self.cpm.index.equals(counts.counts.index)
            and self.cpm.columns.equals(counts.counts.columns)
        )

    def check_matches(self, counts: CountMatrix) -> None:
        """Raise DataShapeError if this view is stale for counts."""
        if not self.matches(counts):
            raise DataShapeError(
                f"Normalized matrix ({self.cpm.shape[0]} genes) does not match the count "
                f"matrix ({counts.n_genes} genes); recompute it after filtering"
            )


class Normalizer:
    """
    Computes library sizes, CPM, log-CPM and normalization factors.

    Example:
        >>> normalizer = Normalizer(NormalizationConfig(prior_count=0.25))
        >>> norm = normalizer.normalize(counts)
        >>> norm.log_cpm.head()
    """

    def __init__(self, config: Optional[NormalizationConfig] = None):
        """
        Initialize normalizer.

        Args:
            config: Normalization configuration.
        """
        self.config = config or NormalizationConfig()

    def normalize(
        self,
        counts: CountMatrix,
        norm_factors: Optional[pd.Series] = None,
    ) -> NormalizedMatrix:
        """
        Normalize a count matrix.

        Args:
            counts: Raw counts.
            norm_factors: Precomputed factors (computed with the configured method when None).

        Returns:
            NormalizedMatrix for exactly the genes of counts.
        """
        if norm_factors is None:
            norm_factors = calc_norm_factors(counts, method=self.config.method, config=self.config)
        else:
            norm_factors = pd.Series(norm_factors, dtype=np.float64).reindex(counts.counts.columns)
            if norm_factors.isna().any() or (norm_factors <= 0).any():
                raise DataShapeError("Normalization factors must be positive for every sample")

        effective = counts.lib_size * norm_factors
        cpm = compute_cpm(counts.counts, effective)
        log_cpm = compute_log_cpm(cpm, self.config.prior_count)

        logger.info(
            "Normalized %d genes x %d samples (method=%s)",
            counts.n_genes, counts.n_samples, self.config.method,
        )
        return NormalizedMatrix(
            cpm=cpm,
            log_cpm=log_cpm,
            lib_size=counts.lib_size.copy(),
            norm_factors=norm_factors.rename("norm_factors"),
            prior_count=self.config.prior_count,
        )

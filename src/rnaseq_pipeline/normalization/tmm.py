"""
Trimmed mean of M-values (TMM) scaling factors.

For each sample, log expression ratios (M) and average log abundances (A)
are computed against a reference sample over genes observed in both; the
most extreme M and A values are trimmed and the remaining M values are
averaged with inverse-variance weights.
"""

from __future__ import annotations

import logging
from typing import Optional, Union

import numpy as np
import pandas as pd
from scipy import stats

from rnaseq_pipeline.core.config import NormalizationConfig
from rnaseq_pipeline.exceptions import ConfigurationError, DataShapeError
from rnaseq_pipeline.ingest.base import CountMatrix

logger = logging.getLogger(__name__)


def tmm_factor(
    obs: np.ndarray,
    ref: np.ndarray,
    lib_obs: Optional[float] = None,
    lib_ref: Optional[float] = None,
    logratio_trim: float = 0.3,
    sum_trim: float = 0.05,
    do_weighting: bool = True,
    a_cutoff: float = -1e10,
) -> float:
    """
    TMM scaling factor of one sample relative to a reference.

    Args:
        obs: Counts of the sample.
        ref: Counts of the reference sample.
        lib_obs: Library size of the sample (sum of obs when None).
        lib_ref: Library size of the reference (sum of ref when None).
        logratio_trim: Fraction of M-values trimmed from each tail.
        sum_trim: Fraction of A-values trimmed from each tail.
        do_weighting: Use delta-method precision weights.
        a_cutoff: Ignore genes with A below this value.

    Returns:
        Linear-scale factor (1.0 when the sample matches the reference).
    """
    obs = np.asarray(obs, dtype=np.float64)
    ref = np.asarray(ref, dtype=np.float64)
    n_obs = float(obs.sum()) if lib_obs is None else float(lib_obs)
    n_ref = float(ref.sum()) if lib_ref is None else float(lib_ref)

    with np.errstate(divide="ignore", invalid="ignore"):
        log_obs = np.log2(obs / n_obs)
        log_ref = np.log2(ref / n_ref)
        log_r = log_obs - log_ref
        abs_e = (log_obs + log_ref) / 2
        v = (n_obs - obs) / n_obs / obs + (n_ref - ref) / n_ref / ref

    # Genes with a zero count in either sample give infinite ratios
    fin = np.isfinite(log_r) & np.isfinite(abs_e) & (abs_e > a_cutoff)
    log_r = log_r[fin]
    abs_e = abs_e[fin]
    v = v[fin]

    if log_r.size == 0 or np.max(np.abs(log_r)) < 1e-6:
        return 1.0

    n = log_r.size
    lo_l = np.floor(n * logratio_trim) + 1
    hi_l = n + 1 - lo_l
    lo_s = np.floor(n * sum_trim) + 1
    hi_s = n + 1 - lo_s

    rank_r = stats.rankdata(log_r)
    rank_e = stats.rankdata(abs_e)
    keep = (rank_r >= lo_l) & (rank_r <= hi_l) & (rank_e >= lo_s) & (rank_e <= hi_s)

    if do_weighting:
        w = 1.0 / v[keep]
        ok = np.isfinite(w)
        denom = np.sum(w[ok])
        f = np.sum(log_r[keep][ok] * w[ok]) / denom if denom > 0 else np.nan
    else:
        f = np.mean(log_r[keep]) if np.any(keep) else np.nan

    if not np.isfinite(f):
        f = 0.0
    return float(2.0 ** f)


def choose_reference(lib_size: Union[np.ndarray, pd.Series]) -> int:
    """Index of the sample whose library size is closest to the geometric mean."""
    lib = np.asarray(lib_size, dtype=np.float64)
    geo_mean = np.exp(np.mean(np.log(lib)))
    return int(np.argmin(np.abs(lib - geo_mean)))


class TMMNormalizer:
    """
    Computes TMM normalization factors for a count matrix.

    Example:
        >>> tmm = TMMNormalizer()
        >>> factors = tmm.calc_factors(counts)
        >>> factors.prod()  # geometric mean rescaled to one
        1.0
    """

    def __init__(self, config: Optional[NormalizationConfig] = None):
        """
        Initialize TMM normalizer.

        Args:
            config: Normalization configuration (trim fractions, weighting).
        """
        self.config = config or NormalizationConfig()

    def calc_factors(
        self,
        counts: Union[CountMatrix, pd.DataFrame],
        lib_size: Optional[pd.Series] = None,
        ref_column: Optional[int] = None,
    ) -> pd.Series:
        """
        Compute per-sample normalization factors.

        Args:
            counts: Count matrix (genes x samples).
            lib_size: Library sizes (taken from the CountMatrix or column sums).
            ref_column: Index of the reference sample (chosen automatically when None).

        Returns:
            Factors indexed by sample.
        """
        if isinstance(counts, CountMatrix):
            lib = counts.lib_size if lib_size is None else lib_size
            x = counts.values
            samples = counts.counts.columns
        else:
            x = counts.to_numpy(dtype=np.float64)
            lib = counts.sum(axis=0) if lib_size is None else lib_size
            samples = counts.columns

        lib = np.asarray(lib, dtype=np.float64)
        if np.any(lib <= 0):
            empty = [str(s) for s, n in zip(samples, lib) if n <= 0]
            raise DataShapeError(f"Samples with zero library size: {empty}")

        n_samples = x.shape[1]
        if ref_column is None:
            ref_column = choose_reference(lib)
        elif not 0 <= ref_column < n_samples:
            raise ConfigurationError(f"ref_column {ref_column} out of range for {n_samples} samples")

        cfg = self.config
        factors = np.array([
            tmm_factor(
                x[:, j],
                x[:, ref_column],
                lib_obs=lib[j],
                lib_ref=lib[ref_column],
                logratio_trim=cfg.logratio_trim,
                sum_trim=cfg.sum_trim,
                do_weighting=cfg.do_weighting,
                a_cutoff=cfg.a_cutoff,
            )
            for j in range(n_samples)
        ])

        if cfg.rescale:
            factors = factors / np.exp(np.mean(np.log(factors)))

        logger.debug(
            "TMM reference sample %s; factors range %.3f-%.3f",
            samples[ref_column], factors.min(), factors.max(),
        )
        return pd.Series(factors, index=samples, name="norm_factors")


def calc_norm_factors(
    counts: Union[CountMatrix, pd.DataFrame],
    method: str = "TMM",
    config: Optional[NormalizationConfig] = None,
) -> pd.Series:
    """
    Compute normalization factors.

    Args:
        counts: Count matrix.
        method: "TMM" or "none".
        config: Normalization configuration.

    Returns:
        Factors indexed by sample.
    """
    if method.upper() == "TMM":
        return TMMNormalizer(config).calc_factors(counts)
    if method.lower() == "none":
        columns = counts.counts.columns if isinstance(counts, CountMatrix) else counts.columns
        return pd.Series(1.0, index=columns, name="norm_factors")
    raise ConfigurationError(f"Unknown normalization method: {method}. Available: ['TMM', 'none']")

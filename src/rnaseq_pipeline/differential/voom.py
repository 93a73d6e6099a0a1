"""
Mean-variance modelling of log-counts (voom).

Counts are transformed to log2-CPM, an unweighted linear model gives each
gene a residual standard deviation, and a lowess trend of sqrt(sd) against
average log-count is turned into a precision weight for every observation.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

import numpy as np
import pandas as pd
from statsmodels.nonparametric.smoothers_lowess import lowess

from rnaseq_pipeline.core.config import VoomConfig
from rnaseq_pipeline.design.matrix import DesignMatrix
from rnaseq_pipeline.differential.lmfit import weighted_least_squares
from rnaseq_pipeline.exceptions import DataShapeError, NumericDegeneracyError
from rnaseq_pipeline.ingest.base import CountMatrix

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VoomResult:
    """Log-expression with matching precision weights."""

    expression: pd.DataFrame
    """log2-CPM (genes x samples)."""

    weights: pd.DataFrame
    """Precision weights (genes x samples), strictly positive."""

    design: DesignMatrix
    """Design used to model the mean-variance trend."""

    lib_size: pd.Series
    """Effective library sizes."""

    trend_x: np.ndarray
    """Sorted average log-counts of the lowess trend."""

    trend_y: np.ndarray
    """Trend of sqrt(residual sd) at trend_x."""

    sx: pd.Series
    """Average log-count per gene (NaN for genes left out of the trend)."""

    sy: pd.Series
    """sqrt(residual sd) per gene (NaN for genes left out of the trend)."""

    def predict(self, log_count: np.ndarray) -> np.ndarray:
        """Trend value at the given log-counts (constant beyond the data range)."""
        return interpolate_trend(log_count, self.trend_x, self.trend_y)


def interpolate_trend(x: np.ndarray, xp: np.ndarray, fp: np.ndarray) -> np.ndarray:
    """Linear interpolation with constant extrapolation at both ends."""
    x = np.asarray(x, dtype=np.float64)
    y = np.interp(x, xp, fp)
    y = np.where(x < xp[0], fp[0], y)
    y = np.where(x > xp[-1], fp[-1], y)
    return y


def log_cpm_voom(counts: np.ndarray, lib_size: np.ndarray) -> np.ndarray:
    """log2((count + 0.5) / (lib_size + 1) * 1e6)."""
    return np.log2((counts + 0.5) / (lib_size[None, :] + 1.0) * 1e6)


class VarianceModeler:
    """
    Estimates observation-level precision weights from the mean-variance trend.

    Example:
        >>> modeler = VarianceModeler(VoomConfig(span=0.5))
        >>> v = modeler.fit(filtered_counts, design, norm_factors)
        >>> v.weights.min().min() > 0
        True
    """

    def __init__(self, config: Optional[VoomConfig] = None, chunk_size: int = 5000):
        """
        Initialize variance modeler.

        Args:
            config: Trend configuration.
            chunk_size: Genes per vectorized block in the initial fit.
        """
        self.config = config or VoomConfig()
        self.chunk_size = chunk_size

    def _trend(self, sx: np.ndarray, sy: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        span = self.config.span
        delta = 0.01 * (sx.max() - sx.min())
        smoothed = lowess(sy, sx, frac=span, it=self.config.iterations, delta=delta, return_sorted=True)
        x_sorted, y_sorted = smoothed[:, 0], smoothed[:, 1]

        # np.interp needs strictly increasing x
        trend_x, idx = np.unique(x_sorted, return_index=True)
        trend_y = y_sorted[idx]
        if trend_x.size < 2:
            raise NumericDegeneracyError(
                "Mean-variance trend needs at least two distinct average log-counts"
            )
        if not np.all(np.isfinite(trend_y)):
            raise NumericDegeneracyError("Mean-variance trend fit produced non-finite values")
        return trend_x, trend_y

    def fit(
        self,
        counts: CountMatrix,
        design: DesignMatrix,
        norm_factors: Optional[pd.Series] = None,
    ) -> VoomResult:
        """
        Compute log-expression and precision weights.

        Args:
            counts: Filtered counts.
            design: Design over the same samples, in the same order.
            norm_factors: Normalization factors (ones when None).

        Returns:
            VoomResult.

        Raises:
            DataShapeError: If the design does not match the count samples.
            NumericDegeneracyError: If the trend cannot be fitted or predicts a
                non-positive standard deviation.
        """
        samples = counts.sample_ids
        if design.sample_ids != samples:
            raise DataShapeError(
                f"Design samples {design.sample_ids} do not match count samples {samples}"
            )

        lib = counts.lib_size.to_numpy(dtype=np.float64)
        if norm_factors is not None:
            factors = pd.Series(norm_factors).reindex(counts.counts.columns)
            if factors.isna().any():
                raise DataShapeError("Normalization factors are missing for some samples")
            lib = lib * factors.to_numpy(dtype=np.float64)

        x = counts.values.astype(np.float64)
        y = log_cpm_voom(x, lib)
        wls = weighted_least_squares(y, design.values, chunk_size=self.chunk_size)

        usable = (x.sum(axis=1) > 0) & np.isfinite(wls.sigma)
        n_usable = int(usable.sum())
        if n_usable < 2:
            raise NumericDegeneracyError(
                f"Only {n_usable} genes with non-zero counts; cannot fit a mean-variance trend"
            )

        amean = y.mean(axis=1)
        sx = amean + np.mean(np.log2(lib + 1.0)) - np.log2(1e6)
        sy = np.sqrt(wls.sigma)
        trend_x, trend_y = self._trend(sx[usable], sy[usable])

        fitted_logcount = wls.fitted + np.log2(lib + 1.0)[None, :] - np.log2(1e6)
        predicted = interpolate_trend(fitted_logcount, trend_x, trend_y)
        if np.any(predicted <= 0):
            raise NumericDegeneracyError(
                "Mean-variance trend predicts a non-positive standard deviation; "
                "too few genes or too little variation to model the variance"
            )
        weights = 1.0 / predicted ** 4

        genes = counts.counts.index
        logger.info(
            "Modelled mean-variance trend on %d genes (span %.2f); weights %.3g-%.3g",
            n_usable, self.config.span, weights.min(), weights.max(),
        )
        return VoomResult(
            expression=pd.DataFrame(y, index=genes, columns=samples),
            weights=pd.DataFrame(weights, index=genes, columns=samples),
            design=design,
            lib_size=pd.Series(lib, index=samples, name="lib_size"),
            trend_x=trend_x,
            trend_y=trend_y,
            sx=pd.Series(np.where(usable, sx, np.nan), index=genes, name="sx"),
            sy=pd.Series(np.where(usable, sy, np.nan), index=genes, name="sy"),
        )


def voom(
    counts: CountMatrix,
    design: DesignMatrix,
    norm_factors: Optional[pd.Series] = None,
    span: float = 0.5,
) -> VoomResult:
    """
    Compute voom expression and weights.

    Convenience function for VarianceModeler.
    """
    return VarianceModeler(VoomConfig(span=span)).fit(counts, design, norm_factors)

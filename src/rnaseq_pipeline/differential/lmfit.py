"""
Gene-wise weighted least squares.

Every gene is fitted against the same design with its own observation
weights. Genes are processed in vectorized blocks; no state is shared
between genes.
"""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass
from typing import Optional

import numpy as np
import pandas as pd

from rnaseq_pipeline.core.config import FitConfig
from rnaseq_pipeline.design.contrasts import ContrastMatrix
from rnaseq_pipeline.design.matrix import DesignMatrix
from rnaseq_pipeline.exceptions import ConfigurationError, DataShapeError, NumericDegeneracyError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WLSResult:
    """Raw arrays from a gene-wise weighted least squares fit."""

    coefficients: np.ndarray
    """Estimates (genes x coefficients)."""

    cov_unscaled: np.ndarray
    """(X'WX)^-1 per gene (genes x coefficients x coefficients)."""

    sigma: np.ndarray
    """Residual standard deviation per gene."""

    fitted: np.ndarray
    """Fitted values (genes x samples)."""

    residuals: np.ndarray
    """Weighted residuals sqrt(w) * (y - fitted) (genes x samples)."""

    df_residual: int
    """Residual degrees of freedom (same for every gene)."""


def weighted_least_squares(
    y: np.ndarray,
    x: np.ndarray,
    weights: Optional[np.ndarray] = None,
    chunk_size: int = 5000,
) -> WLSResult:
    """
    Fit y[g] ~ x with weights w[g] for every gene g.

    Args:
        y: Responses (genes x samples).
        x: Design (samples x coefficients), full column rank.
        weights: Positive observation weights (genes x samples); ones when None.
        chunk_size: Genes per vectorized block.

    Returns:
        WLSResult with per-gene estimates.

    Raises:
        NumericDegeneracyError: If a gene's weighted normal equations are singular.
    """
    y = np.asarray(y, dtype=np.float64)
    x = np.asarray(x, dtype=np.float64)
    n_genes, n_samples = y.shape
    p = x.shape[1]
    df = n_samples - p
    if df <= 0:
        raise NumericDegeneracyError(f"No residual degrees of freedom ({n_samples} samples, {p} coefficients)")

    coef = np.empty((n_genes, p))
    cov = np.empty((n_genes, p, p))
    sigma = np.empty(n_genes)
    fitted = np.empty((n_genes, n_samples))
    resid = np.empty((n_genes, n_samples))

    for start in range(0, n_genes, chunk_size):
        sl = slice(start, min(start + chunk_size, n_genes))
        yc = y[sl]
        w = np.ones_like(yc) if weights is None else np.asarray(weights[sl], dtype=np.float64)

        xtwx = np.einsum("gs,si,sj->gij", w, x, x)
        xtwy = np.einsum("gs,si,gs->gi", w, x, yc)
        try:
            inv = np.linalg.inv(xtwx)
        except np.linalg.LinAlgError as e:
            raise NumericDegeneracyError(
                f"Singular weighted normal equations in genes {sl.start}-{sl.stop - 1}"
            ) from e

        beta = np.einsum("gij,gj->gi", inv, xtwy)
        fit = beta @ x.T
        r = yc - fit

        coef[sl] = beta
        cov[sl] = inv
        sigma[sl] = np.sqrt(np.sum(w * r * r, axis=1) / df)
        fitted[sl] = fit
        resid[sl] = np.sqrt(w) * r

    return WLSResult(
        coefficients=coef,
        cov_unscaled=cov,
        sigma=sigma,
        fitted=fitted,
        residuals=resid,
        df_residual=df,
    )


@dataclass(frozen=True)
class LinearModelFit:
    """
    Per-gene linear model fit, optionally transformed to contrasts.

    Coefficient columns are design columns until contrasts_fit is applied,
    then contrast names.
    """

    coefficients: pd.DataFrame
    """Estimates (genes x coefficients or contrasts)."""

    stdev_unscaled: pd.DataFrame
    """Standard errors before scaling by sigma."""

    cov_unscaled: np.ndarray
    """Unscaled covariance per gene (genes x k x k)."""

    sigma: pd.Series
    """Residual standard deviation per gene."""

    df_residual: pd.Series
    """Residual degrees of freedom per gene."""

    amean: pd.Series
    """Average log-expression per gene."""

    design: DesignMatrix
    """Design used for the fit."""

    contrasts: Optional[ContrastMatrix] = None
    """Contrasts applied to the coefficients, if any."""

    residuals: Optional[pd.DataFrame] = None
    """Weighted residuals (genes x samples)."""

    @property
    def gene_ids(self) -> list:
        return list(self.coefficients.index)

    @property
    def coefficient_names(self) -> list[str]:
        return list(self.coefficients.columns)

    @property
    def n_genes(self) -> int:
        return self.coefficients.shape[0]


class LinearModelFitter:
    """
    Fits the design to every gene of a log-expression matrix.

    Example:
        >>> fitter = LinearModelFitter(FitConfig(chunk_size=2000))
        >>> fit = fitter.fit(v.expression, design, weights=v.weights)
        >>> fit = contrasts_fit(fit, contrasts)
    """

    def __init__(self, config: Optional[FitConfig] = None):
        """
        Initialize fitter.

        Args:
            config: Fit configuration.
        """
        self.config = config or FitConfig()

    def fit(
        self,
        expression: pd.DataFrame,
        design: DesignMatrix,
        weights: Optional[pd.DataFrame] = None,
    ) -> LinearModelFit:
        """
        Fit gene-wise weighted least squares.

        Args:
            expression: Log-expression (genes x samples).
            design: Design matrix over the same samples.
            weights: Observation weights aligned with expression.

        Returns:
            LinearModelFit on the design coefficients.

        Raises:
            DataShapeError: If samples or weights are misaligned or values non-finite.
            NumericDegeneracyError: If weights are not strictly positive.
        """
        if list(expression.columns) != design.sample_ids:
            raise DataShapeError(
                f"Expression samples {list(expression.columns)} do not match "
                f"design samples {design.sample_ids}"
            )
        y = expression.to_numpy(dtype=np.float64)
        if not np.all(np.isfinite(y)):
            raise DataShapeError("Expression matrix contains non-finite values")

        w = None
        if weights is not None:
            if not (weights.index.equals(expression.index) and weights.columns.equals(expression.columns)):
                raise DataShapeError("Weight matrix is not aligned with the expression matrix")
            w = weights.to_numpy(dtype=np.float64)
            if not np.all(np.isfinite(w)) or np.any(w <= 0):
                raise NumericDegeneracyError("Observation weights must be finite and strictly positive")

        wls = weighted_least_squares(y, design.values, w, chunk_size=self.config.chunk_size)

        genes = expression.index
        columns = design.columns
        stdev = np.sqrt(np.einsum("gii->gi", wls.cov_unscaled))
        residuals = None
        if self.config.keep_residuals:
            residuals = pd.DataFrame(wls.residuals, index=genes, columns=expression.columns)

        logger.info(
            "Fitted linear models: %d genes x %d coefficients (residual df %d)",
            len(genes), len(columns), wls.df_residual,
        )
        return LinearModelFit(
            coefficients=pd.DataFrame(wls.coefficients, index=genes, columns=columns),
            stdev_unscaled=pd.DataFrame(stdev, index=genes, columns=columns),
            cov_unscaled=wls.cov_unscaled,
            sigma=pd.Series(wls.sigma, index=genes, name="sigma"),
            df_residual=pd.Series(float(wls.df_residual), index=genes, name="df_residual"),
            amean=expression.mean(axis=1).rename("AveExpr"),
            design=design,
            residuals=residuals,
        )


def lm_fit(
    expression: pd.DataFrame,
    design: DesignMatrix,
    weights: Optional[pd.DataFrame] = None,
    config: Optional[FitConfig] = None,
) -> LinearModelFit:
    """
    Fit gene-wise linear models.

    Convenience function for LinearModelFitter.
    """
    return LinearModelFitter(config).fit(expression, design, weights)


def contrasts_fit(fit: LinearModelFit, contrasts: ContrastMatrix) -> LinearModelFit:
    """
    Re-express a fit in terms of contrasts.

    Coefficients become b C and the unscaled covariance C' V_g C, computed
    exactly for every gene.

    Args:
        fit: Fit on design coefficients.
        contrasts: Contrast matrix indexed by the design columns.

    Returns:
        New LinearModelFit whose columns are the contrasts.
    """
    if fit.contrasts is not None:
        raise ConfigurationError("Fit already has contrasts applied")
    if list(contrasts.matrix.index) != fit.coefficient_names:
        raise ConfigurationError(
            f"Contrast rows {list(contrasts.matrix.index)} do not match design "
            f"columns {fit.coefficient_names}"
        )

    c = contrasts.values
    coef = fit.coefficients.to_numpy() @ c
    cov = np.einsum("ic,gij,jd->gcd", c, fit.cov_unscaled, c)
    stdev = np.sqrt(np.einsum("gii->gi", cov))

    genes = fit.coefficients.index
    names = contrasts.names
    return dataclasses.replace(
        fit,
        coefficients=pd.DataFrame(coef, index=genes, columns=names),
        stdev_unscaled=pd.DataFrame(stdev, index=genes, columns=names),
        cov_unscaled=cov,
        contrasts=contrasts,
    )

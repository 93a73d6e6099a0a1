"""
Empirical Bayes moderation of gene-wise variances.

A scaled inverse chi-square prior is fitted to the residual variances of all
genes by moment matching on the log scale. Each gene's variance is shrunk
towards the prior, giving moderated t-statistics with augmented degrees of
freedom. The fold-change-thresholded test (treat) is computed from the same
moderated variances under a shifted null.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Union

import numpy as np
import pandas as pd
from scipy import special, stats

from rnaseq_pipeline.core.config import FitConfig
from rnaseq_pipeline.design.contrasts import ContrastMatrix
from rnaseq_pipeline.design.matrix import DesignMatrix
from rnaseq_pipeline.differential.fdr import FDRCorrector
from rnaseq_pipeline.differential.lmfit import LinearModelFit
from rnaseq_pipeline.exceptions import ConfigurationError, NumericDegeneracyError

logger = logging.getLogger(__name__)

# Prior df beyond this is treated as infinite
LARGE_DF = 1e6


def trigamma_inverse(x: Union[float, np.ndarray]) -> np.ndarray:
    """
    Solve trigamma(y) = x for y by Newton iteration.

    Args:
        x: Positive values.

    Returns:
        y with the same shape as x.
    """
    x = np.atleast_1d(np.asarray(x, dtype=np.float64))
    y = np.full_like(x, np.nan)

    big = x > 1e7
    small = x < 1e-6
    mid = ~big & ~small & (x > 0)
    y[big] = 1.0 / np.sqrt(x[big])
    y[small] = 1.0 / x[small]

    if np.any(mid):
        xm = x[mid]
        ym = 0.5 + 1.0 / xm
        for _ in range(50):
            tri = special.polygamma(1, ym)
            dif = tri * (1.0 - tri / xm) / special.polygamma(2, ym)
            ym = ym + dif
            if np.max(-dif / ym) < 1e-8:
                break
        else:
            logger.warning("trigamma_inverse: iteration limit exceeded")
        y[mid] = ym
    return y


def fit_f_dist(
    variances: np.ndarray,
    df1: Union[float, np.ndarray],
) -> tuple[float, float]:
    """
    Moment estimation of a scaled F distribution for sample variances.

    Args:
        variances: Residual variances.
        df1: Residual degrees of freedom (scalar or per gene).

    Returns:
        (s2_prior, df_prior); df_prior is inf when the variances show no
        more spread than sampling error alone.

    Raises:
        NumericDegeneracyError: If no variance is usable.
    """
    x = np.asarray(variances, dtype=np.float64)
    df1 = np.broadcast_to(np.asarray(df1, dtype=np.float64), x.shape)

    ok = np.isfinite(x) & np.isfinite(df1) & (df1 > 1e-15) & (x > -1e-15)
    n = int(ok.sum())
    if n == 0:
        raise NumericDegeneracyError("No finite residual variances to estimate the prior from")

    x = np.maximum(x[ok], 0.0)
    df1 = df1[ok]
    if n == 1:
        return float(x[0]), 0.0

    median = np.median(x)
    if median == 0:
        logger.warning("More than half of residual variances are exactly zero")
        median = 1.0
    x = np.maximum(x, 1e-5 * median)

    e = np.log(x) - special.digamma(df1 / 2) + np.log(df1 / 2)
    emean = float(np.mean(e))
    evar = float(np.sum((e - emean) ** 2) / (n - 1))
    evar -= float(np.mean(special.polygamma(1, df1 / 2)))

    if evar > 0:
        df2 = float(2 * trigamma_inverse(evar)[0])
        s20 = float(np.exp(emean + special.digamma(df2 / 2) - np.log(df2 / 2)))
    else:
        df2 = np.inf
        s20 = float(np.exp(emean))
    return s20, df2


def squeeze_var(
    variances: np.ndarray,
    df: np.ndarray,
    s2_prior: float,
    df_prior: float,
) -> np.ndarray:
    """Posterior variances (df s2 + df0 s0^2) / (df + df0)."""
    variances = np.asarray(variances, dtype=np.float64)
    if not np.isfinite(df_prior) or df_prior > LARGE_DF:
        return np.full_like(variances, s2_prior)
    if df_prior == 0:
        return variances.copy()
    df = np.asarray(df, dtype=np.float64)
    return (df * variances + df_prior * s2_prior) / (df + df_prior)


def _t_sf(t: np.ndarray, df: np.ndarray) -> np.ndarray:
    """Upper tail of t, normal where df is infinite."""
    t, df = np.broadcast_arrays(np.asarray(t, dtype=np.float64), np.asarray(df, dtype=np.float64))
    out = np.empty(t.shape)
    inf = ~np.isfinite(df)
    out[inf] = stats.norm.sf(t[inf])
    out[~inf] = stats.t.sf(t[~inf], df[~inf])
    return out


def _t_isf(q: np.ndarray, df: float) -> np.ndarray:
    if not np.isfinite(df):
        return stats.norm.isf(q)
    return stats.t.isf(q, df)


def tmixture(
    tstat: np.ndarray,
    stdev_unscaled: np.ndarray,
    df: np.ndarray,
    proportion: float,
    v0_lim: Optional[tuple[float, float]] = None,
) -> float:
    """
    Prior variance of non-zero log fold changes for one coefficient.

    Matches the largest |t| statistics to the quantiles expected under a
    two-component mixture with the given proportion of true effects.
    """
    ok = np.isfinite(tstat)
    tstat = np.abs(np.asarray(tstat, dtype=np.float64)[ok])
    v1_all = np.asarray(stdev_unscaled, dtype=np.float64)[ok] ** 2
    df = np.broadcast_to(np.asarray(df, dtype=np.float64), ok.shape)[ok].copy()

    n_genes = tstat.size
    n_target = int(np.ceil(proportion / 2 * n_genes))
    if n_target < 1:
        return np.nan
    p = max(n_target / n_genes, proportion)

    max_df = float(np.max(df))
    lower = df < max_df
    if np.any(lower):
        tail = _t_sf(tstat[lower], df[lower])
        tstat[lower] = _t_isf(tail, max_df)
        df[lower] = max_df

    order = np.argsort(-tstat, kind="stable")[:n_target]
    tstat = tstat[order]
    v1 = v1_all[order]
    r = np.arange(1, n_target + 1)
    p0 = 2 * _t_sf(tstat, np.full(n_target, max_df))
    p_target = ((r - 0.5) / n_genes - (1 - p) * p0) / p

    v0 = np.zeros(n_target)
    pos = p_target > p0
    if np.any(pos):
        q_target = _t_isf(p_target[pos] / 2, max_df)
        v0[pos] = v1[pos] * ((tstat[pos] / q_target) ** 2 - 1)
    if v0_lim is not None:
        v0 = np.clip(v0, v0_lim[0], v0_lim[1])
    return float(np.mean(v0))


def moderated_f(
    t: np.ndarray,
    cov_unscaled: np.ndarray,
    df_total: np.ndarray,
) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Moderated F-statistic across all contrasts of each gene.

    Linearly dependent contrasts are handled by dropping null directions of
    the per-gene correlation matrix.

    Returns:
        (F, p-value, numerator df) per gene.
    """
    sd = np.sqrt(np.einsum("gii->gi", cov_unscaled))
    cor = cov_unscaled / (sd[:, :, None] * sd[:, None, :])
    evals, evecs = np.linalg.eigh(cor)

    keep = evals > 1e-8 * evals.max(axis=1, keepdims=True)
    rank = keep.sum(axis=1)
    proj = np.einsum("gij,gi->gj", evecs, t)
    with np.errstate(divide="ignore", invalid="ignore"):
        terms = np.where(keep, proj ** 2 / evals, 0.0)
    f_stat = terms.sum(axis=1) / rank

    df_total = np.broadcast_to(np.asarray(df_total, dtype=np.float64), f_stat.shape)
    p_value = np.empty_like(f_stat)
    inf = ~np.isfinite(df_total) | (df_total > LARGE_DF)
    p_value[inf] = stats.chi2.sf(rank[inf] * f_stat[inf], rank[inf])
    p_value[~inf] = stats.f.sf(f_stat[~inf], rank[~inf], df_total[~inf])
    return f_stat, p_value, rank


@dataclass(frozen=True)
class FitResult:
    """
    Moderated per-gene statistics for every contrast.

    All matrices are genes x contrasts. ``lods``, ``f_stat`` and
    ``f_p_value`` are None for a treat fit.
    """

    coefficients: pd.DataFrame
    """Log fold changes."""

    stdev_unscaled: pd.DataFrame
    """Unscaled standard errors."""

    t: pd.DataFrame
    """Moderated t-statistics."""

    p_value: pd.DataFrame
    """Two-sided p-values."""

    adj_p_value: pd.DataFrame
    """P-values adjusted within each contrast."""

    sigma: pd.Series
    """Residual standard deviation."""

    s2_post: pd.Series
    """Posterior (moderated) variance."""

    df_residual: pd.Series
    """Residual degrees of freedom."""

    df_total: pd.Series
    """Residual plus prior degrees of freedom (capped at the pooled df)."""

    amean: pd.Series
    """Average log-expression."""

    s2_prior: float
    """Prior variance."""

    df_prior: float
    """Prior degrees of freedom."""

    design: DesignMatrix
    """Design of the fit."""

    contrasts: Optional[ContrastMatrix] = None
    """Contrasts the coefficients refer to."""

    lods: Optional[pd.DataFrame] = None
    """Log posterior odds of differential expression (B-statistic)."""

    f_stat: Optional[pd.Series] = None
    """Moderated F across contrasts."""

    f_p_value: Optional[pd.Series] = None
    """P-value of the moderated F."""

    treat_lfc: float = 0.0
    """Log fold-change threshold of the null hypothesis."""

    adjust_method: str = "fdr_bh"
    """Adjustment applied to adj_p_value."""

    residuals: Optional[pd.DataFrame] = None
    """Weighted residuals (genes x samples)."""

    @property
    def gene_ids(self) -> list:
        return list(self.coefficients.index)

    @property
    def contrast_names(self) -> list[str]:
        return list(self.coefficients.columns)

    @property
    def n_genes(self) -> int:
        return self.coefficients.shape[0]

    def _check_contrast(self, contrast: Optional[str]) -> str:
        if contrast is None:
            if len(self.contrast_names) != 1:
                raise ConfigurationError(
                    f"Fit has several contrasts {self.contrast_names}; name one"
                )
            return self.contrast_names[0]
        if contrast not in self.coefficients.columns:
            raise ConfigurationError(
                f"Unknown contrast '{contrast}' (available: {self.contrast_names})"
            )
        return contrast

    def top_table(
        self,
        contrast: Optional[str] = None,
        n: Optional[int] = None,
        p_value: float = 1.0,
        lfc: float = 0.0,
    ) -> pd.DataFrame:
        """
        Ranked table for one contrast.

        Args:
            contrast: Contrast name (optional when the fit has one contrast).
            n: Number of rows (all when None).
            p_value: Keep rows with adjusted p-value at most this.
            lfc: Keep rows with |logFC| at least this.

        Returns:
            DataFrame with logFC, AveExpr, t, P.Value, adj.P.Val and B
            (B omitted for treat fits), ordered by significance.
        """
        from rnaseq_pipeline.differential.decide import rank_genes

        contrast = self._check_contrast(contrast)
        table = pd.DataFrame({
            "logFC": self.coefficients[contrast],
            "AveExpr": self.amean,
            "t": self.t[contrast],
            "P.Value": self.p_value[contrast],
            "adj.P.Val": self.adj_p_value[contrast],
        })
        if self.lods is not None:
            table["B"] = self.lods[contrast]

        table = table.loc[rank_genes(self, contrast)]
        mask = (table["adj.P.Val"] <= p_value) & (table["logFC"].abs() >= lfc)
        table = table[mask]
        if n is not None:
            table = table.head(n)
        table.index.name = "gene_id"
        return table

    def to_dataframe(self) -> pd.DataFrame:
        """
        Flat per-gene table with columns per contrast.

        Layout: AveExpr, then Coef.<c>, t.<c>, P.value.<c>, P.value.adj.<c>
        for every contrast, then F and F.p.value when available. Decision
        columns (Res.<c>) are appended by the table writer.
        """
        parts = {"AveExpr": self.amean}
        blocks = [
            ("Coef", self.coefficients),
            ("t", self.t),
            ("P.value", self.p_value),
            ("P.value.adj", self.adj_p_value),
        ]
        for prefix, frame in blocks:
            for name in self.contrast_names:
                parts[f"{prefix}.{name}"] = frame[name]
        if self.f_stat is not None:
            parts["F"] = self.f_stat
            parts["F.p.value"] = self.f_p_value
        out = pd.DataFrame(parts)
        out.index.name = "gene_id"
        return out


def _moderate(fit: LinearModelFit) -> tuple[np.ndarray, np.ndarray, float, float]:
    """Squeeze the residual variances; returns (s2_post, df_total, s2_prior, df_prior)."""
    sigma2 = fit.sigma.to_numpy() ** 2
    df = fit.df_residual.to_numpy()
    s2_prior, df_prior = fit_f_dist(sigma2, df)
    s2_post = squeeze_var(sigma2, df, s2_prior, df_prior)

    df_pooled = float(np.sum(df[np.isfinite(sigma2)]))
    df_total = np.minimum(df + df_prior, df_pooled)

    if np.isfinite(df_prior):
        logger.info("Empirical Bayes prior: s2 %.4g, df %.3g", s2_prior, df_prior)
    else:
        logger.info("Empirical Bayes prior: s2 %.4g, df inf (no excess variance spread)", s2_prior)
    return s2_post, df_total, s2_prior, df_prior


def _lods(
    t: np.ndarray,
    stdev_unscaled: np.ndarray,
    df_total: np.ndarray,
    s2_prior: float,
    df_prior: float,
    proportion: float,
    stdev_coef_lim: tuple[float, float],
) -> np.ndarray:
    """B-statistic (log posterior odds) per gene and coefficient."""
    var_prior_lim = (stdev_coef_lim[0] ** 2 / s2_prior, stdev_coef_lim[1] ** 2 / s2_prior)
    n_coef = t.shape[1]
    var_prior = np.array([
        tmixture(t[:, j], stdev_unscaled[:, j], df_total, proportion, var_prior_lim)
        for j in range(n_coef)
    ])
    if np.any(np.isnan(var_prior)):
        var_prior = np.where(np.isnan(var_prior), 1.0 / s2_prior, var_prior)
        logger.warning("Estimation of the prior fold-change variance failed; using default")

    su2 = stdev_unscaled ** 2
    r = (su2 + var_prior[None, :]) / su2
    t2 = t ** 2
    df_total = np.broadcast_to(df_total[:, None], t.shape)
    with np.errstate(divide="ignore", invalid="ignore"):
        if not np.isfinite(df_prior) or df_prior > LARGE_DF:
            kernel = t2 * (1 - 1 / r) / 2
        else:
            kernel = (1 + df_total) / 2 * np.log((t2 + df_total) / (t2 / r + df_total))
    return np.log(proportion / (1 - proportion)) - np.log(r) / 2 + kernel


class EmpiricalBayes:
    """
    Moderated statistics from a linear model fit.

    Example:
        >>> eb = EmpiricalBayes(FitConfig(proportion=0.01))
        >>> result = eb.moderate(contrasts_fit(fit, contrasts))
        >>> result.top_table("BasalvsLP", n=10)
    """

    def __init__(self, config: Optional[FitConfig] = None):
        """
        Initialize empirical Bayes moderation.

        Args:
            config: Fit configuration (proportion, coefficient sd limits, adjustment).
        """
        self.config = config or FitConfig()
        self.corrector = FDRCorrector(method=self.config.adjust_method)

    def _frame(self, values: np.ndarray, fit: LinearModelFit) -> pd.DataFrame:
        return pd.DataFrame(values, index=fit.coefficients.index, columns=fit.coefficients.columns)

    def moderate(self, fit: LinearModelFit) -> FitResult:
        """
        Compute moderated t, p-values, B-statistics and moderated F.

        Args:
            fit: Linear model fit (usually after contrasts_fit).

        Returns:
            FitResult with treat_lfc 0.
        """
        s2_post, df_total, s2_prior, df_prior = _moderate(fit)
        coef = fit.coefficients.to_numpy()
        su = fit.stdev_unscaled.to_numpy()

        t = coef / su / np.sqrt(s2_post)[:, None]
        p = 2 * _t_sf(np.abs(t), df_total[:, None])
        p_value = self._frame(p, fit)

        cfg = self.config
        lods = _lods(t, su, df_total, s2_prior, df_prior, cfg.proportion, tuple(cfg.stdev_coef_lim))
        f_stat, f_p, _ = moderated_f(t, fit.cov_unscaled, df_total)

        genes = fit.coefficients.index
        return FitResult(
            coefficients=fit.coefficients,
            stdev_unscaled=fit.stdev_unscaled,
            t=self._frame(t, fit),
            p_value=p_value,
            adj_p_value=self.corrector.correct(p_value),
            sigma=fit.sigma,
            s2_post=pd.Series(s2_post, index=genes, name="s2_post"),
            df_residual=fit.df_residual,
            df_total=pd.Series(df_total, index=genes, name="df_total"),
            amean=fit.amean,
            s2_prior=s2_prior,
            df_prior=df_prior,
            design=fit.design,
            contrasts=fit.contrasts,
            lods=self._frame(lods, fit),
            f_stat=pd.Series(f_stat, index=genes, name="F"),
            f_p_value=pd.Series(f_p, index=genes, name="F.p.value"),
            treat_lfc=0.0,
            adjust_method=cfg.adjust_method,
            residuals=fit.residuals,
        )

    def treat(self, fit: LinearModelFit, lfc: float) -> FitResult:
        """
        Test H0: |effect| <= lfc against the moderated variances.

        Args:
            fit: Linear model fit (usually after contrasts_fit).
            lfc: Non-negative log2 fold-change threshold.

        Returns:
            FitResult with treat_lfc set and no B or F statistics.
        """
        if lfc < 0:
            raise ConfigurationError(f"treat lfc must be non-negative, got {lfc}")

        s2_post, df_total, s2_prior, df_prior = _moderate(fit)
        coef = fit.coefficients.to_numpy()
        se = fit.stdev_unscaled.to_numpy() * np.sqrt(s2_post)[:, None]

        acoef = np.abs(coef)
        t_right = (acoef - lfc) / se
        t_left = (acoef + lfc) / se
        df = df_total[:, None]
        p = _t_sf(t_right, df) + _t_sf(t_left, df)
        p = np.minimum(p, 1.0)
        t = np.sign(coef) * np.maximum(t_right, 0.0)

        p_value = self._frame(p, fit)
        genes = fit.coefficients.index
        logger.info("treat: testing |logFC| > %g", lfc)
        return FitResult(
            coefficients=fit.coefficients,
            stdev_unscaled=fit.stdev_unscaled,
            t=self._frame(t, fit),
            p_value=p_value,
            adj_p_value=self.corrector.correct(p_value),
            sigma=fit.sigma,
            s2_post=pd.Series(s2_post, index=genes, name="s2_post"),
            df_residual=fit.df_residual,
            df_total=pd.Series(df_total, index=genes, name="df_total"),
            amean=fit.amean,
            s2_prior=s2_prior,
            df_prior=df_prior,
            design=fit.design,
            contrasts=fit.contrasts,
            treat_lfc=float(lfc),
            adjust_method=self.config.adjust_method,
            residuals=fit.residuals,
        )


def ebayes(fit: LinearModelFit, config: Optional[FitConfig] = None) -> FitResult:
    """
    Empirical Bayes moderated statistics.

    Convenience function for EmpiricalBayes.
    """
    return EmpiricalBayes(config).moderate(fit)


def treat(
    fit: LinearModelFit,
    lfc: float = 1.0,
    config: Optional[FitConfig] = None,
) -> FitResult:
    """
    Moderated t-test relative to a fold-change threshold.

    Convenience function for EmpiricalBayes.treat.
    """
    return EmpiricalBayes(config).treat(fit, lfc)

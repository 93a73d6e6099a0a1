"""
Competitive gene set testing adjusted for inter-gene correlation (camera).

Each set's moderated t-statistics are compared with those of all other
genes. The variance of the comparison is inflated by the variance
inflation factor 1 + (m - 1) * rho, where rho is the average correlation
between genes of the set, either fixed or estimated from the residuals.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Mapping, Optional

import numpy as np
import pandas as pd
from scipy import stats

from rnaseq_pipeline.core.config import GeneSetConfig
from rnaseq_pipeline.differential.ebayes import FitResult
from rnaseq_pipeline.differential.fdr import FDRCorrector
from rnaseq_pipeline.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

RESULT_COLUMNS = ["NGenes", "Correlation", "Direction", "Statistic", "PValue", "FDR", "Status"]


def _t_cdf(x: float, df: float) -> float:
    if not np.isfinite(df):
        return float(stats.norm.cdf(x))
    return float(stats.t.cdf(x, df))


def rank_sum_test_with_correlation(
    index: np.ndarray,
    statistics: np.ndarray,
    correlation: float = 0.0,
    df: float = np.inf,
) -> tuple[float, float, float]:
    """
    Wilcoxon rank-sum test allowing for correlation between set members.

    Args:
        index: Positions of the set members in statistics.
        statistics: Statistic for every gene.
        correlation: Average inter-gene correlation within the set.
        df: Degrees of freedom for the reference t distribution.

    Returns:
        (p_less, p_greater, z) where z > 0 means the set ranks high.
    """
    statistics = np.asarray(statistics, dtype=np.float64)
    n = statistics.size
    ranks = stats.rankdata(statistics)
    r1 = ranks[index]
    n1 = r1.size
    n2 = n - n1

    u = n1 * n2 + n1 * (n1 + 1) / 2 - np.sum(r1)
    mu = n1 * n2 / 2

    if correlation == 0 or n1 == 1:
        sigma2 = n1 * n2 * (n + 1) / 12
    else:
        sigma2 = (
            np.arcsin(1.0) * n1 * n2
            + np.arcsin(0.5) * n1 * n2 * (n2 - 1)
            + np.arcsin(correlation / 2) * n1 * (n1 - 1) * n2 * (n2 - 1)
            + np.arcsin((correlation + 1) / 2) * n1 * (n1 - 1) * n2
        )
        sigma2 = sigma2 / 2 / np.pi

    _, tie_counts = np.unique(ranks, return_counts=True)
    if tie_counts.size < n:
        adjustment = np.sum(tie_counts * (tie_counts + 1) * (tie_counts - 1)) / (n * (n + 1) * (n - 1))
        sigma2 = sigma2 * (1 - adjustment)

    sd = np.sqrt(sigma2)
    z_lower = (u + 0.5 - mu) / sd
    z_upper = (u - 0.5 - mu) / sd
    p_less = 1.0 - _t_cdf(z_upper, df)
    p_greater = _t_cdf(z_lower, df)
    return p_less, p_greater, float(-(u - mu) / sd)


@dataclass(frozen=True)
class GeneSetResult:
    """
    Gene set test results for one contrast.

    One row per set, sorted by p-value. Sets without matched genes are kept
    with status ``empty`` and NaN statistics.
    """

    table: pd.DataFrame
    """NGenes, Correlation, Direction, Statistic, PValue, FDR, Status per set."""

    contrast: str
    """Contrast whose statistics were tested."""

    use_ranks: bool = True
    """Rank-sum version (False: parametric)."""

    @property
    def empty_sets(self) -> list[str]:
        return list(self.table.index[self.table["Status"] == "empty"])

    @property
    def tested(self) -> pd.DataFrame:
        return self.table[self.table["Status"] == "ok"]

    def __len__(self) -> int:
        return len(self.table)


class GeneSetTester:
    """
    Camera-style competitive gene set test.

    Example:
        >>> tester = GeneSetTester(GeneSetConfig(inter_gene_cor=0.01))
        >>> result = tester.test(fit, gene_sets, contrast="BasalvsLP")
        >>> result.table.head()
    """

    def __init__(self, config: Optional[GeneSetConfig] = None):
        """
        Initialize gene set tester.

        Args:
            config: Gene set configuration.
        """
        self.config = config or GeneSetConfig()

    def _standardized_residuals(self, fit: FitResult) -> np.ndarray:
        if fit.residuals is None:
            raise ConfigurationError(
                "Estimating inter-gene correlation needs residuals; fit with keep_residuals=True "
                "or set a fixed inter_gene_cor"
            )
        resid = fit.residuals.to_numpy(dtype=np.float64)
        df = float(fit.df_residual.iloc[0])
        sigma2 = np.sum(resid ** 2, axis=1) / df
        return resid / np.sqrt(np.maximum(sigma2, 1e-8))[:, None]

    def test(
        self,
        fit: FitResult,
        gene_sets: Mapping[str, Iterable],
        contrast: Optional[str] = None,
    ) -> GeneSetResult:
        """
        Test every gene set for one contrast.

        Args:
            fit: Moderated fit.
            gene_sets: Set name -> member gene identifiers.
            contrast: Contrast name (optional when the fit has one contrast).

        Returns:
            GeneSetResult sorted by p-value.
        """
        if contrast is None:
            if len(fit.contrast_names) != 1:
                raise ConfigurationError(f"Fit has several contrasts {fit.contrast_names}; name one")
            contrast = fit.contrast_names[0]
        elif contrast not in fit.contrast_names:
            raise ConfigurationError(f"Unknown contrast '{contrast}' (available: {fit.contrast_names})")

        cfg = self.config
        stat = fit.t[contrast].to_numpy(dtype=np.float64)
        n_genes = stat.size
        position = {str(g): i for i, g in enumerate(fit.coefficients.index)}

        fixed_cor = cfg.inter_gene_cor is not None
        df_residual = float(fit.df_residual.iloc[0])
        if fixed_cor:
            df_camera = np.inf if cfg.use_ranks else float(n_genes - 2)
            resid = None
        else:
            df_camera = min(df_residual, float(n_genes - 2))
            resid = self._standardized_residuals(fit)

        mean_stat = float(np.mean(stat))
        var_stat = float(np.var(stat, ddof=1))

        rows = {}
        for name, members in gene_sets.items():
            index = np.array(sorted({position[str(g)] for g in members if str(g) in position}), dtype=int)
            m = index.size
            row = dict.fromkeys(RESULT_COLUMNS, np.nan)
            row["NGenes"] = m
            row["Direction"] = ""

            if m < max(cfg.min_size, 1):
                row["Status"] = "empty"
                rows[name] = row
                continue
            if m >= n_genes:
                row["Status"] = "all_genes"
                rows[name] = row
                continue

            if fixed_cor:
                correlation = float(cfg.inter_gene_cor)
            elif m > 1:
                vif_est = m * np.sum(resid[index].mean(axis=0) ** 2) / df_residual
                correlation = float((vif_est - 1) / (m - 1))
            else:
                correlation = np.nan
            cor_used = 0.0 if np.isnan(correlation) else correlation

            if cfg.use_ranks:
                p_down, p_up, z = rank_sum_test_with_correlation(index, stat, cor_used, df_camera)
            else:
                m2 = n_genes - m
                vif = 1 + (m - 1) * cor_used
                delta = n_genes / m2 * (float(np.mean(stat[index])) - mean_stat)
                var_pooled = ((n_genes - 1) * var_stat - delta ** 2 * m * m2 / n_genes) / (n_genes - 2)
                z = delta / np.sqrt(var_pooled * (vif / m + 1 / m2))
                p_down = _t_cdf(z, df_camera)
                p_up = 1.0 - p_down

            row["Correlation"] = correlation
            row["Direction"] = "Up" if p_up < p_down else "Down"
            row["Statistic"] = z
            row["PValue"] = min(2 * min(p_down, p_up), 1.0)
            row["Status"] = "ok"
            rows[name] = row

        table = pd.DataFrame.from_dict(rows, orient="index", columns=RESULT_COLUMNS)
        table.index.name = "set"
        if len(table):
            table["NGenes"] = table["NGenes"].astype(int)
            table["FDR"] = FDRCorrector(method="fdr_bh").correct(table["PValue"].astype(float))
            table = table.sort_values("PValue", na_position="last", kind="mergesort")

        n_empty = int((table["Status"] == "empty").sum()) if len(table) else 0
        if n_empty:
            logger.warning("%d of %d gene sets have no genes in the fit", n_empty, len(table))
        logger.info(
            "Gene set test (%s, %s): %d sets tested",
            contrast, "ranks" if cfg.use_ranks else "parametric", len(table) - n_empty,
        )
        return GeneSetResult(table=table, contrast=contrast, use_ranks=cfg.use_ranks)

    def test_all(
        self,
        fit: FitResult,
        gene_sets: Mapping[str, Iterable],
    ) -> dict[str, GeneSetResult]:
        """Test the gene sets for every contrast of the fit."""
        return {name: self.test(fit, gene_sets, name) for name in fit.contrast_names}


def camera(
    fit: FitResult,
    gene_sets: Mapping[str, Iterable],
    contrast: Optional[str] = None,
    inter_gene_cor: Optional[float] = 0.01,
    use_ranks: bool = True,
) -> GeneSetResult:
    """
    Competitive gene set test.

    Convenience function for GeneSetTester.
    """
    config = GeneSetConfig(inter_gene_cor=inter_gene_cor, use_ranks=use_ranks)
    return GeneSetTester(config).test(fit, gene_sets, contrast)

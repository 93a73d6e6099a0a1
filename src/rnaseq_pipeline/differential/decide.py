"""
Up/down/not-significant calls and gene rankings.
"""

from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass
from typing import Literal, Optional, Sequence

import numpy as np
import pandas as pd

from rnaseq_pipeline.core.config import DecisionConfig
from rnaseq_pipeline.differential.ebayes import FitResult
from rnaseq_pipeline.differential.fdr import FDRCorrector
from rnaseq_pipeline.exceptions import ConfigurationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DecisionTable:
    """
    Gene x contrast classification in {-1, 0, +1}.

    Records the thresholds it was produced with.
    """

    decisions: pd.DataFrame
    """-1 (down), 0 (not significant), +1 (up)."""

    p_value: float
    """Adjusted p-value cutoff."""

    lfc: float
    """Minimum absolute log fold change."""

    adjust_method: str = "fdr_bh"
    """Adjustment used before thresholding."""

    treat_lfc: float = 0.0
    """Fold-change threshold of the underlying test."""

    @property
    def contrast_names(self) -> list[str]:
        return list(self.decisions.columns)

    @property
    def gene_ids(self) -> list:
        return list(self.decisions.index)

    def summary(self) -> pd.DataFrame:
        """Down/NotSig/Up counts per contrast."""
        counts = {
            "Down": (self.decisions == -1).sum(axis=0),
            "NotSig": (self.decisions == 0).sum(axis=0),
            "Up": (self.decisions == 1).sum(axis=0),
        }
        return pd.DataFrame(counts).T.astype(int)

    def significant(self, contrast: str) -> pd.Index:
        """Genes called up or down in a contrast."""
        if contrast not in self.decisions.columns:
            raise ConfigurationError(
                f"Unknown contrast '{contrast}' (available: {self.contrast_names})"
            )
        column = self.decisions[contrast]
        return column.index[column != 0]


class DecisionEngine:
    """
    Classifies every (gene, contrast) cell of a fit.

    A cell is sign(t) when its adjusted p-value is below the cutoff and its
    absolute log fold change is at least lfc, and 0 otherwise.

    Example:
        >>> engine = DecisionEngine(DecisionConfig(p_value=0.05, lfc=1))
        >>> table = engine.decide(fit)
        >>> table.summary()
    """

    def __init__(self, config: Optional[DecisionConfig] = None):
        """
        Initialize decision engine.

        Args:
            config: Decision thresholds.
        """
        self.config = config or DecisionConfig()
        if not 0 < self.config.p_value <= 1:
            raise ConfigurationError(f"p_value must be in (0, 1], got {self.config.p_value}")
        if self.config.lfc < 0:
            raise ConfigurationError(f"lfc must be non-negative, got {self.config.lfc}")

    def adjusted_p(self, fit: FitResult) -> pd.DataFrame:
        """Adjusted p-values under the configured method."""
        if self.config.adjust_method == fit.adjust_method:
            return fit.adj_p_value
        return FDRCorrector(method=self.config.adjust_method).correct(fit.p_value)

    def decide(self, fit: FitResult) -> DecisionTable:
        cfg = self.config
        adj = self.adjusted_p(fit).to_numpy()
        coef = fit.coefficients.to_numpy()

        significant = (adj < cfg.p_value) & (np.abs(coef) >= cfg.lfc)
        calls = np.where(significant, np.sign(fit.t.to_numpy()), 0).astype(np.int8)

        decisions = pd.DataFrame(calls, index=fit.coefficients.index, columns=fit.coefficients.columns)
        table = DecisionTable(
            decisions=decisions,
            p_value=cfg.p_value,
            lfc=cfg.lfc,
            adjust_method=cfg.adjust_method,
            treat_lfc=fit.treat_lfc,
        )
        for contrast, row in table.summary().T.iterrows():
            logger.info(
                "%s: %d up, %d down, %d not significant",
                contrast, row["Up"], row["Down"], row["NotSig"],
            )
        return table


def decide_tests(
    fit: FitResult,
    p_value: float = 0.05,
    lfc: float = 0.0,
    adjust_method: str = "fdr_bh",
) -> DecisionTable:
    """
    Classify genes as up, down or not significant.

    Convenience function for DecisionEngine.
    """
    config = DecisionConfig(p_value=p_value, lfc=lfc, adjust_method=adjust_method)
    return DecisionEngine(config).decide(fit)


def rank_genes(fit: FitResult, contrast: str) -> list:
    """
    Deterministic gene order for one contrast.

    Ascending adjusted p-value, then descending absolute log fold change,
    then gene identifier.
    """
    if contrast not in fit.coefficients.columns:
        raise ConfigurationError(
            f"Unknown contrast '{contrast}' (available: {fit.contrast_names})"
        )
    keys = pd.DataFrame({
        "adj": fit.adj_p_value[contrast].to_numpy(),
        "abs_lfc": fit.coefficients[contrast].abs().to_numpy(),
        "gene": [str(g) for g in fit.coefficients.index],
    })
    order = keys.sort_values(
        ["adj", "abs_lfc", "gene"],
        ascending=[True, False, True],
        na_position="last",
        kind="mergesort",
    ).index
    return [fit.coefficients.index[i] for i in order]


def common_genes(
    decisions: DecisionTable,
    contrasts: Optional[Sequence[str]] = None,
    same_sign: bool = False,
) -> pd.Index:
    """
    Genes significant in every requested contrast.

    Args:
        decisions: Decision table.
        contrasts: Contrasts to intersect (all when None).
        same_sign: Also require the same direction in every contrast.

    Returns:
        Gene identifiers in table order.
    """
    contrasts = list(contrasts) if contrasts is not None else decisions.contrast_names
    unknown = [c for c in contrasts if c not in decisions.decisions.columns]
    if unknown:
        raise ConfigurationError(f"Unknown contrasts {unknown} (available: {decisions.contrast_names})")
    if not contrasts:
        raise ConfigurationError("No contrasts to intersect")

    sub = decisions.decisions[contrasts]
    mask = (sub != 0).all(axis=1)
    if same_sign:
        mask &= (sub == 1).all(axis=1) | (sub == -1).all(axis=1)
    return sub.index[mask]


def venn_counts(
    decisions: DecisionTable,
    contrasts: Optional[Sequence[str]] = None,
    include: Literal["both", "up", "down"] = "both",
) -> pd.DataFrame:
    """
    Number of genes for every membership pattern across contrasts.

    Returns:
        One row per pattern (0/1 per contrast) with a ``Counts`` column.
    """
    contrasts = list(contrasts) if contrasts is not None else decisions.contrast_names
    sub = decisions.decisions[contrasts]
    if include == "both":
        member = sub != 0
    elif include == "up":
        member = sub == 1
    elif include == "down":
        member = sub == -1
    else:
        raise ConfigurationError(f"include must be 'both', 'up' or 'down', got {include}")

    member = member.astype(int)
    rows = []
    for pattern in itertools.product([0, 1], repeat=len(contrasts)):
        hits = (member.to_numpy() == np.array(pattern)[None, :]).all(axis=1)
        rows.append(list(pattern) + [int(hits.sum())])
    return pd.DataFrame(rows, columns=contrasts + ["Counts"])

"""
Multiple testing adjustment.
"""

from __future__ import annotations

from typing import Union

import numpy as np
import pandas as pd
from statsmodels.stats.multitest import multipletests

from rnaseq_pipeline.exceptions import ConfigurationError


class FDRCorrector:
    """
    Adjusts p-values within each contrast.

    DataFrame columns are adjusted independently (one family per contrast);
    NaN p-values are left as NaN and excluded from the family size.

    Example:
        >>> corrector = FDRCorrector(method="fdr_bh")
        >>> adj = corrector.correct(fit.p_value)
    """

    METHODS = [
        "none",
        "bonferroni",
        "sidak",
        "holm-sidak",
        "holm",
        "simes-hochberg",
        "hommel",
        "fdr_bh",  # Benjamini-Hochberg
        "fdr_by",  # Benjamini-Yekutieli
    ]

    def __init__(
        self,
        method: str = "fdr_bh",
        alpha: float = 0.05,
    ):
        """
        Initialize FDR corrector.

        Args:
            method: Correction method ("none" returns the raw p-values).
            alpha: Significance threshold.
        """
        if method not in self.METHODS:
            raise ConfigurationError(
                f"Unknown method: {method}. Available: {self.METHODS}"
            )
        self.method = method
        self.alpha = alpha

    def _correct_vector(self, pvalues: np.ndarray) -> np.ndarray:
        pvalues = np.asarray(pvalues, dtype=np.float64)
        if self.method == "none":
            return pvalues.copy()

        valid = ~np.isnan(pvalues)
        adjusted = np.full_like(pvalues, np.nan)
        if not np.any(valid):
            return adjusted

        _, adjusted[valid], _, _ = multipletests(
            pvalues[valid], alpha=self.alpha, method=self.method
        )
        return adjusted

    def correct(
        self,
        pvalues: Union[np.ndarray, pd.DataFrame, pd.Series],
    ) -> Union[np.ndarray, pd.DataFrame, pd.Series]:
        """
        Apply the correction.

        Args:
            pvalues: 1-D p-values, or a genes x contrasts matrix adjusted per column.

        Returns:
            Adjusted p-values (same shape and labels as input).
        """
        if isinstance(pvalues, pd.DataFrame):
            return pvalues.apply(lambda col: pd.Series(self._correct_vector(col.to_numpy()), index=col.index))

        elif isinstance(pvalues, pd.Series):
            return pd.Series(self._correct_vector(pvalues.to_numpy()), index=pvalues.index, name=pvalues.name)

        else:
            pvalues = np.asarray(pvalues, dtype=np.float64)
            if pvalues.ndim == 1:
                return self._correct_vector(pvalues)
            return np.column_stack([self._correct_vector(pvalues[:, j]) for j in range(pvalues.shape[1])])


def apply_fdr(
    pvalues: Union[np.ndarray, pd.DataFrame, pd.Series],
    method: str = "fdr_bh",
    alpha: float = 0.05,
) -> Union[np.ndarray, pd.DataFrame, pd.Series]:
    """
    Adjust p-values for multiple testing.

    Convenience function for FDRCorrector.
    """
    return FDRCorrector(method=method, alpha=alpha).correct(pvalues)

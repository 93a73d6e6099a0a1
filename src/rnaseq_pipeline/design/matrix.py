"""
Zero-intercept design matrices from sample factors.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Optional

import numpy as np
import pandas as pd

from rnaseq_pipeline.core.config import DesignConfig
from rnaseq_pipeline.exceptions import ConfigurationError
from rnaseq_pipeline.ingest.base import SampleDesign

logger = logging.getLogger(__name__)


def make_name(label: str) -> str:
    """Turn a factor level label into an identifier usable in contrast expressions."""
    name = re.sub(r"\W", "_", str(label).strip())
    if not name or not (name[0].isalpha() or name[0] == "_"):
        name = "X" + name
    return name


@dataclass(frozen=True)
class DesignMatrix:
    """
    Dummy-coded design matrix (samples x coefficients) without intercept.

    Group columns come first, followed by non-reference batch levels.
    """

    matrix: pd.DataFrame
    """0/1 design (samples x columns)."""

    group_columns: list[str]
    """Columns holding group effects."""

    batch_columns: list[str] = field(default_factory=list)
    """Columns holding batch effects."""

    group_labels: dict[str, str] = field(default_factory=dict)
    """Column name -> original group label."""

    @property
    def values(self) -> np.ndarray:
        return self.matrix.to_numpy(dtype=np.float64)

    @property
    def columns(self) -> list[str]:
        return list(self.matrix.columns)

    @property
    def sample_ids(self) -> list:
        return list(self.matrix.index)

    @property
    def n_samples(self) -> int:
        return self.matrix.shape[0]

    @property
    def n_coefficients(self) -> int:
        return self.matrix.shape[1]

    @property
    def rank(self) -> int:
        return int(np.linalg.matrix_rank(self.values))

    @property
    def df_residual(self) -> int:
        return self.n_samples - self.rank

    def group_sizes(self) -> pd.Series:
        """Number of samples per group column."""
        return self.matrix[self.group_columns].sum(axis=0).astype(int)

    def column_for(self, label: str) -> str:
        """Design column of a group given its label or column name."""
        if label in self.group_columns:
            return label
        for column, original in self.group_labels.items():
            if original == label:
                return column
        raise ConfigurationError(
            f"Unknown group '{label}' (design groups: {self.group_columns})"
        )

    def check_estimable(self) -> None:
        """
        Verify full column rank and positive residual degrees of freedom.

        Raises:
            ConfigurationError: If the design is rank deficient or saturated.
        """
        x = self.values
        rank = int(np.linalg.matrix_rank(x))
        if rank < x.shape[1]:
            empty = [c for c in self.columns if not np.any(self.matrix[c].to_numpy())]
            detail = f"; columns without samples: {empty}" if empty else (
                "; a batch factor is probably confounded with the groups"
            )
            raise ConfigurationError(
                f"Design matrix is rank deficient (rank {rank} < {x.shape[1]} columns){detail}"
            )
        if x.shape[0] <= rank:
            raise ConfigurationError(
                f"Design has no residual degrees of freedom ({x.shape[0]} samples, "
                f"{rank} coefficients)"
            )


class DesignBuilder:
    """
    Builds a zero-intercept design from group and batch factors.

    Example:
        >>> builder = DesignBuilder(DesignConfig(group_col="group", batch_cols=["lane"]))
        >>> design = builder.build(samples)
        >>> design.columns
        ['Basal', 'LP', 'ML', 'laneL006', 'laneL008']
    """

    def __init__(self, config: Optional[DesignConfig] = None):
        """
        Initialize design builder.

        Args:
            config: Design configuration.
        """
        self.config = config or DesignConfig()

    def build(self, samples: SampleDesign) -> DesignMatrix:
        """
        Build the design matrix.

        Args:
            samples: Sample factors.

        Returns:
            Validated DesignMatrix.

        Raises:
            ConfigurationError: For unknown columns or levels, name clashes,
                rank deficiency or a saturated design.
        """
        cfg = self.config
        table = samples.samples
        if cfg.group_col not in table.columns:
            raise ConfigurationError(f"Group column '{cfg.group_col}' not in sample table")

        groups = table[cfg.group_col].astype(str)
        observed = sorted(groups.unique())
        if cfg.group_levels is not None:
            levels = [str(level) for level in cfg.group_levels]
            unknown = [g for g in observed if g not in levels]
            if unknown:
                raise ConfigurationError(
                    f"Groups {unknown} are not listed in group_levels {levels}"
                )
        else:
            levels = observed

        columns: dict[str, np.ndarray] = {}
        group_labels: dict[str, str] = {}
        for level in levels:
            name = make_name(level)
            if name in columns:
                raise ConfigurationError(f"Group labels map to the same column name '{name}'")
            columns[name] = (groups == level).to_numpy(dtype=np.float64)
            group_labels[name] = level
        group_columns = list(columns)

        batch_columns = []
        for batch_col in cfg.batch_cols:
            if batch_col == cfg.group_col:
                raise ConfigurationError(f"'{batch_col}' cannot be both the group and a batch factor")
            if batch_col not in table.columns:
                raise ConfigurationError(
                    f"Batch column '{batch_col}' not in sample table "
                    f"(columns: {list(table.columns)})"
                )
            batch = table[batch_col]
            if batch.isna().any():
                raise ConfigurationError(f"Batch column '{batch_col}' has missing values")
            batch = batch.astype(str)
            batch_levels = sorted(batch.unique())
            if len(batch_levels) < 2:
                logger.info("Batch factor '%s' has a single level; no columns added", batch_col)
            # First level is the reference
            for level in batch_levels[1:]:
                name = make_name(f"{batch_col}{level}")
                if name in columns:
                    raise ConfigurationError(f"Batch level maps to existing column name '{name}'")
                columns[name] = (batch == level).to_numpy(dtype=np.float64)
                batch_columns.append(name)

        matrix = pd.DataFrame(columns, index=table.index)
        design = DesignMatrix(
            matrix=matrix,
            group_columns=group_columns,
            batch_columns=batch_columns,
            group_labels=group_labels,
        )
        design.check_estimable()

        logger.info(
            "Design matrix: %d samples x %d columns (%d groups, %d batch), residual df %d",
            design.n_samples, design.n_coefficients, len(group_columns),
            len(batch_columns), design.df_residual,
        )
        return design


def build_design(
    samples: SampleDesign,
    group_col: str = "group",
    batch_cols: Optional[list[str]] = None,
    group_levels: Optional[list[str]] = None,
) -> DesignMatrix:
    """
    Build a zero-intercept design matrix.

    Convenience function for DesignBuilder. Unlike DesignConfig, whose
    batch_cols default to ["lane"], no batch factor is added unless
    batch_cols is given.
    """
    config = DesignConfig(
        group_col=group_col,
        batch_cols=list(batch_cols) if batch_cols is not None else [],
        group_levels=group_levels,
    )
    return DesignBuilder(config).build(samples)

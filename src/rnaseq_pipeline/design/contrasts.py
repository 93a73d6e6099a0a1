"""
Contrast matrices from symbolic linear expressions.

Expressions such as ``"Basal - LP"`` or ``"(LP + ML)/2 - Basal"`` are parsed
with :mod:`ast` and restricted to linear combinations of group columns.
"""

from __future__ import annotations

import ast
import itertools
import logging
from dataclasses import dataclass, field
from typing import Mapping, Optional

import numpy as np
import pandas as pd

from rnaseq_pipeline.design.matrix import DesignMatrix
from rnaseq_pipeline.exceptions import ConfigurationError, NumericDegeneracyError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ContrastMatrix:
    """Contrast weights (design columns x contrasts)."""

    matrix: pd.DataFrame
    """Weights indexed by design column."""

    expressions: dict[str, str] = field(default_factory=dict)
    """Contrast name -> source expression."""

    @property
    def names(self) -> list[str]:
        return list(self.matrix.columns)

    @property
    def values(self) -> np.ndarray:
        return self.matrix.to_numpy(dtype=np.float64)

    @property
    def n_contrasts(self) -> int:
        return self.matrix.shape[1]

    def column(self, name: str) -> pd.Series:
        if name not in self.matrix.columns:
            raise ConfigurationError(f"Unknown contrast '{name}' (available: {self.names})")
        return self.matrix[name]


def _is_number(node: ast.AST) -> bool:
    return (
        isinstance(node, ast.Constant)
        and isinstance(node.value, (int, float))
        and not isinstance(node.value, bool)
    )


def _linear_terms(node: ast.AST, expression: str) -> tuple[dict[str, float], float]:
    """Reduce an expression tree to (coefficients, constant)."""
    if isinstance(node, ast.Name):
        return {node.id: 1.0}, 0.0
    if _is_number(node):
        return {}, float(node.value)
    if isinstance(node, ast.UnaryOp) and isinstance(node.op, (ast.UAdd, ast.USub)):
        terms, const = _linear_terms(node.operand, expression)
        if isinstance(node.op, ast.USub):
            return {k: -v for k, v in terms.items()}, -const
        return terms, const
    if isinstance(node, ast.BinOp):
        left, lconst = _linear_terms(node.left, expression)
        right, rconst = _linear_terms(node.right, expression)
        if isinstance(node.op, (ast.Add, ast.Sub)):
            sign = 1.0 if isinstance(node.op, ast.Add) else -1.0
            terms = dict(left)
            for k, v in right.items():
                terms[k] = terms.get(k, 0.0) + sign * v
            return terms, lconst + sign * rconst
        if isinstance(node.op, ast.Mult):
            if not left:
                return {k: lconst * v for k, v in right.items()}, lconst * rconst
            if not right:
                return {k: rconst * v for k, v in left.items()}, lconst * rconst
            raise ConfigurationError(f"Contrast '{expression}' is not linear in the groups")
        if isinstance(node.op, ast.Div):
            if right:
                raise ConfigurationError(f"Contrast '{expression}' divides by a group term")
            if rconst == 0:
                raise ConfigurationError(f"Contrast '{expression}' divides by zero")
            return {k: v / rconst for k, v in left.items()}, lconst / rconst
    raise ConfigurationError(
        f"Contrast '{expression}' must be a linear combination of group names"
    )


def parse_contrast(expression: str) -> dict[str, float]:
    """
    Parse a contrast expression into per-name weights.

    Args:
        expression: Linear expression, e.g. ``"Basal - LP"``.

    Returns:
        Mapping of name to weight (zero weights dropped).

    Raises:
        ConfigurationError: On syntax errors, non-linear terms or a constant offset.

    Example:
        >>> parse_contrast("(LP + ML)/2 - Basal")
        {'LP': 0.5, 'ML': 0.5, 'Basal': -1.0}
    """
    try:
        tree = ast.parse(expression.strip(), mode="eval")
    except SyntaxError as e:
        raise ConfigurationError(f"Cannot parse contrast '{expression}': {e.msg}") from e

    terms, const = _linear_terms(tree.body, expression)
    if const != 0:
        raise ConfigurationError(f"Contrast '{expression}' has a constant term")
    return {k: v for k, v in terms.items() if v != 0}


def _contrast_name(expression: str) -> str:
    return "".join(expression.split())


class ContrastBuilder:
    """
    Builds a contrast matrix against a design.

    Contrasts may only reference group columns; batch columns are nuisance
    parameters.

    Example:
        >>> builder = ContrastBuilder(design)
        >>> contrasts = builder.build({"BasalvsLP": "Basal - LP"})
        >>> contrasts.names
        ['BasalvsLP']
    """

    def __init__(self, design: DesignMatrix, min_group_size: int = 1):
        """
        Initialize contrast builder.

        Args:
            design: Design the contrasts refer to.
            min_group_size: Minimum samples in every referenced group.
        """
        self.design = design
        self.min_group_size = min_group_size

    def _normalize_specs(self, contrasts) -> dict[str, str]:
        """Turn the accepted input forms into name -> expression."""
        if isinstance(contrasts, Mapping):
            specs = {}
            for name, spec in contrasts.items():
                if isinstance(spec, tuple):
                    spec = self._pair_expression(spec)
                specs[str(name)] = str(spec)
            return specs

        if isinstance(contrasts, (str, tuple)):
            contrasts = [contrasts]

        specs = {}
        for spec in contrasts:
            if isinstance(spec, tuple):
                spec = self._pair_expression(spec)
            name = _contrast_name(str(spec))
            if name in specs:
                raise ConfigurationError(f"Duplicate contrast '{name}'")
            specs[name] = str(spec)
        return specs

    def _pair_expression(self, pair: tuple) -> str:
        if len(pair) != 2:
            raise ConfigurationError(f"Contrast tuple must be (group_a, group_b), got {pair}")
        a, b = (self.design.column_for(str(label)) for label in pair)
        return f"{a} - {b}"

    def build(self, contrasts) -> ContrastMatrix:
        """
        Build the contrast matrix.

        Args:
            contrasts: Mapping of name to expression or (a, b) pair, a list of
                expressions or pairs, or a single expression.

        Returns:
            ContrastMatrix indexed by design column.

        Raises:
            ConfigurationError: For unknown or batch names and empty contrasts.
            NumericDegeneracyError: If a referenced group is below min_group_size.
        """
        specs = self._normalize_specs(contrasts)
        if not specs:
            raise ConfigurationError("No contrasts given")

        design = self.design
        sizes = design.group_sizes()
        columns = {}
        for name, expression in specs.items():
            weights = parse_contrast(expression)
            if not weights:
                raise ConfigurationError(f"Contrast '{name}' ({expression}) has all-zero weights")

            for term in weights:
                if term in design.batch_columns:
                    raise ConfigurationError(
                        f"Contrast '{name}' references batch column '{term}'; "
                        "contrasts may only compare groups"
                    )
                if term not in design.group_columns:
                    raise ConfigurationError(
                        f"Contrast '{name}' references unknown group '{term}' "
                        f"(groups: {design.group_columns})"
                    )
                if sizes[term] < self.min_group_size:
                    raise NumericDegeneracyError(
                        f"Group '{term}' in contrast '{name}' has {sizes[term]} samples "
                        f"(minimum {self.min_group_size})"
                    )

            vector = pd.Series(0.0, index=design.columns)
            for term, weight in weights.items():
                vector[term] = weight
            columns[name] = vector

        matrix = pd.DataFrame(columns, index=design.columns)
        logger.info("Contrasts: %s", ", ".join(f"{n} = {e}" for n, e in specs.items()))
        return ContrastMatrix(matrix=matrix, expressions=specs)


def make_contrasts(
    design: DesignMatrix,
    contrasts,
    min_group_size: int = 1,
) -> ContrastMatrix:
    """
    Build a contrast matrix.

    Convenience function for ContrastBuilder.
    """
    return ContrastBuilder(design, min_group_size=min_group_size).build(contrasts)


def pairwise_contrasts(
    design: DesignMatrix,
    groups: Optional[list[str]] = None,
) -> dict[str, str]:
    """
    All pairwise group comparisons in design column order.

    Returns:
        Mapping like ``{"BasalvsLP": "Basal - LP", ...}``.
    """
    groups = groups or design.group_columns
    return {f"{a}vs{b}": f"{a} - {b}" for a, b in itertools.combinations(groups, 2)}

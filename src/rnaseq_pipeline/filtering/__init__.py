"""
Gene filtering.
"""

from rnaseq_pipeline.filtering.expression import (
    FilterResult,
    LowExpressionFilter,
    filter_by_expression,
)

__all__ = [
    "FilterResult",
    "LowExpressionFilter",
    "filter_by_expression",
]

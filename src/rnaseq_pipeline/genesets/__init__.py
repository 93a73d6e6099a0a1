"""
Gene set testing.
"""

from rnaseq_pipeline.genesets.camera import (
    GeneSetResult,
    GeneSetTester,
    camera,
    rank_sum_test_with_correlation,
)
from rnaseq_pipeline.genesets.io import (
    read_gmt,
    write_gmt,
)

__all__ = [
    "GeneSetResult",
    "GeneSetTester",
    "camera",
    "rank_sum_test_with_correlation",
    "read_gmt",
    "write_gmt",
]

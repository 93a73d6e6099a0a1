"""
Design and contrast matrices.
"""

from rnaseq_pipeline.design.matrix import (
    DesignMatrix,
    DesignBuilder,
    build_design,
    make_name,
)
from rnaseq_pipeline.design.contrasts import (
    ContrastMatrix,
    ContrastBuilder,
    make_contrasts,
    pairwise_contrasts,
    parse_contrast,
)

__all__ = [
    "DesignMatrix",
    "DesignBuilder",
    "build_design",
    "make_name",
    "ContrastMatrix",
    "ContrastBuilder",
    "make_contrasts",
    "pairwise_contrasts",
    "parse_contrast",
]

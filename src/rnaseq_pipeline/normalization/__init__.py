"""
Library-size normalization.

CPM / log-CPM transforms and TMM scaling factors.
"""

from rnaseq_pipeline.normalization.cpm import (
    NormalizedMatrix,
    Normalizer,
    compute_cpm,
    compute_log_cpm,
)
from rnaseq_pipeline.normalization.tmm import (
    TMMNormalizer,
    calc_norm_factors,
    choose_reference,
    tmm_factor,
)

__all__ = [
    "NormalizedMatrix",
    "Normalizer",
    "compute_cpm",
    "compute_log_cpm",
    "TMMNormalizer",
    "calc_norm_factors",
    "choose_reference",
    "tmm_factor",
]

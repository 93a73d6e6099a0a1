"""
Core infrastructure for rnaseq-pipeline.

Provides:
- Configuration management
"""

from rnaseq_pipeline.core.config import (
    Config,
    PipelineConfig,
    IngestConfig,
    NormalizationConfig,
    FilterConfig,
    DesignConfig,
    VoomConfig,
    FitConfig,
    DecisionConfig,
    GeneSetConfig,
)

__all__ = [
    "Config",
    "PipelineConfig",
    "IngestConfig",
    "NormalizationConfig",
    "FilterConfig",
    "DesignConfig",
    "VoomConfig",
    "FitConfig",
    "DecisionConfig",
    "GeneSetConfig",
]

"""
rnaseq-pipeline - Differential expression analysis of bulk RNA-seq counts.

This package provides:
- Count file ingestion and GEO archive download
- CPM / log-CPM transforms and TMM normalization
- Low-expression filtering
- Design and contrast matrices from sample factors
- voom precision weights, gene-wise linear models and empirical Bayes moderation
- Fold-change-thresholded testing (treat)
- Up/down decisions, rankings and intersections across contrasts
- Competitive gene set testing (camera)
- Delimited text and JSON export

Example:
    >>> from rnaseq_pipeline import Pipeline, Config
    >>> from rnaseq_pipeline.ingest import load_counts, SampleDesign
    >>>
    >>> counts = load_counts("data/")
    >>> samples = SampleDesign.from_table("samples.tsv")
    >>> config = Config(contrasts={"BasalvsLP": "Basal - LP"})
    >>> result = Pipeline(config, output_dir="results").run(counts, samples)
"""

__version__ = "0.1.0"

# Core infrastructure
from rnaseq_pipeline.core.config import Config, PipelineConfig
from rnaseq_pipeline.exceptions import (
    ConfigurationError,
    DataShapeError,
    NumericDegeneracyError,
    RNASeqPipelineError,
)

# Subpackages are imported as needed:
#   from rnaseq_pipeline.ingest import CountFileLoader
#   from rnaseq_pipeline.differential import voom, lm_fit, ebayes
#   from rnaseq_pipeline.genesets import camera

# Main Pipeline class
from rnaseq_pipeline.pipeline import Pipeline, PipelineResult, run_pipeline

__all__ = [
    # Version
    "__version__",
    # Pipeline
    "Pipeline",
    "PipelineResult",
    "run_pipeline",
    # Config
    "Config",
    "PipelineConfig",
    # Errors
    "RNASeqPipelineError",
    "ConfigurationError",
    "DataShapeError",
    "NumericDegeneracyError",
]

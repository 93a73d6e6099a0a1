"""
Exception hierarchy for the differential expression pipeline.
"""


class RNASeqPipelineError(Exception):
    """Base exception for pipeline failures."""

    pass


class ConfigurationError(RNASeqPipelineError, ValueError):
    """Invalid analysis settings: bad contrast, singular design, over-strict filter."""

    pass


class DataShapeError(RNASeqPipelineError, ValueError):
    """Input matrices or tables that do not line up."""

    pass


class NumericDegeneracyError(RNASeqPipelineError, ArithmeticError):
    """A numeric step cannot produce a meaningful result for this data."""

    pass

"""
Pipeline configuration management.

Provides dataclass-based configuration with validation and serialization.
"""

from __future__ import annotations

from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Optional, Literal, Any, Union
import json
import os

from rnaseq_pipeline.exceptions import ConfigurationError


@dataclass
class IngestConfig:
    """Count file parsing configuration."""

    pattern: str = "*.txt*"
    """Glob pattern selecting count files inside the input directory."""

    gene_column: Union[int, str] = 0
    """Gene identifier column: zero-based position or header name."""

    count_column: Optional[Union[int, str]] = None
    """Count column: zero-based position or header name. None uses a 'Count' header
    when the file has one, otherwise the second column."""

    sep: str = "\t"
    """Field delimiter of the count files."""

    sample_name_pattern: Optional[str] = None
    """Regex applied to the file name; group 1 (or the whole match) becomes the sample id."""


@dataclass
class NormalizationConfig:
    """Library-size normalization configuration."""

    method: Literal["TMM", "none"] = "TMM"
    """Scaling factor method."""

    prior_count: float = 0.25
    """Additive prior on the CPM scale before taking log2."""

    logratio_trim: float = 0.3
    """Fraction of M-values trimmed from each tail."""

    sum_trim: float = 0.05
    """Fraction of A-values trimmed from each tail."""

    do_weighting: bool = True
    """Use precision weights in the trimmed mean."""

    a_cutoff: float = -1e10
    """Genes with average log expression below this are ignored by TMM."""

    rescale: bool = True
    """Rescale factors to a geometric mean of one."""


@dataclass
class FilterConfig:
    """Low-expression filter configuration."""

    cpm_threshold: float = 1.0
    """Minimum CPM (strictly greater than) for a sample to count as expressing."""

    min_samples: int = 3
    """Minimum number of expressing samples needed to keep a gene."""

    keep_lib_sizes: bool = False
    """Retain the unfiltered library sizes instead of recomputing them."""


@dataclass
class DesignConfig:
    """Design matrix configuration."""

    group_col: str = "group"
    """Sample table column holding the group factor."""

    batch_cols: list[str] = field(default_factory=lambda: ["lane"])
    """Sample table columns holding batch factors (the sequencing lane by default; [] for none)."""

    group_levels: Optional[list[str]] = None
    """Explicit group level order (sorted labels when None)."""

    min_group_size: int = 1
    """Minimum samples in every group referenced by a contrast."""


@dataclass
class VoomConfig:
    """Mean-variance trend configuration."""

    span: float = 0.5
    """Lowess span (fraction of genes per local fit)."""

    iterations: int = 3
    """Robustifying lowess iterations."""


@dataclass
class FitConfig:
    """Linear model and empirical Bayes configuration."""

    chunk_size: int = 5000
    """Number of genes fitted per vectorized block."""

    proportion: float = 0.01
    """Assumed proportion of differentially expressed genes (B statistic)."""

    stdev_coef_lim: tuple[float, float] = (0.1, 4.0)
    """Limits on the prior standard deviation of true log fold changes."""

    adjust_method: str = "fdr_bh"
    """Multiple testing method for adjusted p-values (statsmodels name)."""

    keep_residuals: bool = True
    """Keep weighted residuals in the fit (needed to estimate inter-gene correlation)."""

    treat_lfc: Optional[float] = None
    """Also run the fold-change-thresholded test at this log2 threshold."""


@dataclass
class DecisionConfig:
    """Decision rule configuration."""

    p_value: float = 0.05
    """Adjusted p-value cutoff."""

    lfc: float = 0.0
    """Minimum absolute log2 fold change."""

    adjust_method: str = "fdr_bh"
    """Adjustment applied before thresholding ("none" uses raw p-values)."""


@dataclass
class GeneSetConfig:
    """Gene set test configuration."""

    inter_gene_cor: Optional[float] = 0.01
    """Fixed inter-gene correlation (None estimates it per set from residuals)."""

    use_ranks: bool = True
    """Rank-sum version instead of the parametric two-sample t version."""

    min_size: int = 1
    """Sets with fewer matched genes are reported as empty."""


@dataclass
class Config:
    """
    Main pipeline configuration.

    Example:
        >>> config = Config(
        ...     contrasts={"BasalvsLP": "Basal - LP"},
        ...     p_value=0.05,
        ...     treat_lfc=1.0,
        ... )
        >>> pipeline = Pipeline(config)
    """

    # Convenience shortcuts (override sub-config values when set; None defers to the section)
    contrasts: dict[str, str] = field(default_factory=dict)
    """Named contrast expressions over group columns (all pairs when empty)."""

    p_value: Optional[float] = None
    """Adjusted p-value cutoff for decisions."""

    lfc: Optional[float] = None
    """Minimum absolute log2 fold change for decisions."""

    treat_lfc: Optional[float] = None
    """Log2 fold-change threshold for the treat test (disabled when None)."""

    # Sub-configurations
    ingest: IngestConfig = field(default_factory=IngestConfig)
    normalization: NormalizationConfig = field(default_factory=NormalizationConfig)
    filter: FilterConfig = field(default_factory=FilterConfig)
    design: DesignConfig = field(default_factory=DesignConfig)
    voom: VoomConfig = field(default_factory=VoomConfig)
    fit: FitConfig = field(default_factory=FitConfig)
    decision: DecisionConfig = field(default_factory=DecisionConfig)
    genesets: GeneSetConfig = field(default_factory=GeneSetConfig)

    # Output settings
    output_dir: Optional[Path] = None
    """Base output directory."""

    sep: str = "\t"
    """Delimiter of written tables."""

    # Logging
    verbose: bool = False
    """Enable verbose logging."""

    log_file: Optional[Path] = None
    """Log file path."""

    def __post_init__(self):
        """Synchronize shortcut values with sub-configs."""
        if self.p_value is None:
            self.p_value = self.decision.p_value
        else:
            self.decision.p_value = self.p_value
        if self.lfc is None:
            self.lfc = self.decision.lfc
        else:
            self.decision.lfc = self.lfc
        if self.treat_lfc is None:
            self.treat_lfc = self.fit.treat_lfc
        else:
            self.fit.treat_lfc = self.treat_lfc

        if self.output_dir is not None:
            self.output_dir = Path(self.output_dir)
        if self.log_file is not None:
            self.log_file = Path(self.log_file)

        self.validate()

    def validate(self) -> None:
        """Reject settings that can never produce a valid analysis."""
        if not 0 < self.p_value <= 1:
            raise ConfigurationError(f"p_value must be in (0, 1], got {self.p_value}")
        if self.lfc < 0:
            raise ConfigurationError(f"lfc must be non-negative, got {self.lfc}")
        if self.treat_lfc is not None and self.treat_lfc < 0:
            raise ConfigurationError(f"treat_lfc must be non-negative, got {self.treat_lfc}")
        if self.filter.min_samples < 1:
            raise ConfigurationError("filter.min_samples must be at least 1")
        if not 0 < self.voom.span <= 1:
            raise ConfigurationError(f"voom.span must be in (0, 1], got {self.voom.span}")
        if self.fit.chunk_size < 1:
            raise ConfigurationError("fit.chunk_size must be at least 1")
        for name in ("logratio_trim", "sum_trim"):
            value = getattr(self.normalization, name)
            if not 0 <= value < 0.5:
                raise ConfigurationError(f"normalization.{name} must be in [0, 0.5), got {value}")

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        d = asdict(self)
        # Convert Path objects and tuples to plain values
        for key, value in d.items():
            if isinstance(value, Path):
                d[key] = str(value)
            elif isinstance(value, dict):
                for k, v in value.items():
                    if isinstance(v, Path):
                        d[key][k] = str(v)
                    elif isinstance(v, tuple):
                        d[key][k] = list(v)
        return d

    def to_json(self, path: Path | str) -> None:
        """Save configuration to JSON file."""
        path = Path(path)
        with open(path, "w") as f:
            json.dump(self.to_dict(), f, indent=2)

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "Config":
        """Create from dictionary."""
        d = dict(d)
        sections = {
            "ingest": IngestConfig,
            "normalization": NormalizationConfig,
            "filter": FilterConfig,
            "design": DesignConfig,
            "voom": VoomConfig,
            "fit": FitConfig,
            "decision": DecisionConfig,
            "genesets": GeneSetConfig,
        }
        for key, section_cls in sections.items():
            if key in d and isinstance(d[key], dict):
                try:
                    d[key] = section_cls(**d[key])
                except TypeError as e:
                    raise ConfigurationError(f"Invalid '{key}' section: {e}") from e
        if isinstance(d.get("fit"), FitConfig):
            d["fit"].stdev_coef_lim = tuple(d["fit"].stdev_coef_lim)
        try:
            return cls(**d)
        except TypeError as e:
            raise ConfigurationError(f"Invalid configuration: {e}") from e

    @classmethod
    def from_json(cls, path: Path | str) -> "Config":
        """Load configuration from JSON file."""
        path = Path(path)
        with open(path) as f:
            d = json.load(f)
        return cls.from_dict(d)

    @classmethod
    def from_yaml(cls, path: Path | str) -> "Config":
        """Load configuration from a YAML file (the ``config`` key if present)."""
        import yaml

        path = Path(path)
        with open(path) as f:
            d = yaml.safe_load(f) or {}
        if "config" in d and isinstance(d["config"], dict):
            d = d["config"]
        return cls.from_dict(d)

    @classmethod
    def from_env(cls) -> "Config":
        """Create configuration from environment variables."""
        treat = os.getenv("RNASEQ_TREAT_LFC")
        config = cls(
            p_value=float(os.getenv("RNASEQ_P_VALUE", "0.05")),
            lfc=float(os.getenv("RNASEQ_LFC", "0")),
            treat_lfc=float(treat) if treat else None,
            output_dir=os.getenv("RNASEQ_OUTPUT_DIR") or None,
            verbose=os.getenv("RNASEQ_VERBOSE", "").lower() in ("1", "true", "yes"),
        )
        config.filter.cpm_threshold = float(os.getenv("RNASEQ_CPM_THRESHOLD", "1"))
        config.filter.min_samples = int(os.getenv("RNASEQ_MIN_SAMPLES", "3"))
        config.validate()
        return config


# Alias kept for callers that name the top-level config explicitly
PipelineConfig = Config

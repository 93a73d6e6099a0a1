"""
Differential expression analysis.

voom weights, gene-wise linear models, empirical Bayes moderation and
decision rules.
"""

from rnaseq_pipeline.differential.fdr import (
    apply_fdr,
    FDRCorrector,
)
from rnaseq_pipeline.differential.lmfit import (
    LinearModelFit,
    LinearModelFitter,
    WLSResult,
    contrasts_fit,
    lm_fit,
    weighted_least_squares,
)
from rnaseq_pipeline.differential.voom import (
    VarianceModeler,
    VoomResult,
    interpolate_trend,
    voom,
)
from rnaseq_pipeline.differential.ebayes import (
    EmpiricalBayes,
    FitResult,
    ebayes,
    fit_f_dist,
    moderated_f,
    squeeze_var,
    tmixture,
    treat,
    trigamma_inverse,
)
from rnaseq_pipeline.differential.decide import (
    DecisionEngine,
    DecisionTable,
    common_genes,
    decide_tests,
    rank_genes,
    venn_counts,
)

__all__ = [
    # FDR
    "apply_fdr",
    "FDRCorrector",
    # Linear models
    "LinearModelFit",
    "LinearModelFitter",
    "WLSResult",
    "contrasts_fit",
    "lm_fit",
    "weighted_least_squares",
    # voom
    "VarianceModeler",
    "VoomResult",
    "interpolate_trend",
    "voom",
    # Empirical Bayes
    "EmpiricalBayes",
    "FitResult",
    "ebayes",
    "fit_f_dist",
    "moderated_f",
    "squeeze_var",
    "tmixture",
    "treat",
    "trigamma_inverse",
    # Decisions
    "DecisionEngine",
    "DecisionTable",
    "common_genes",
    "decide_tests",
    "rank_genes",
    "venn_counts",
]

"""
Main Pipeline class that runs every stage of the differential expression analysis.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Mapping, Optional, Union
import logging

from rnaseq_pipeline.core.config import Config
from rnaseq_pipeline.design import (
    ContrastMatrix,
    DesignBuilder,
    DesignMatrix,
    make_contrasts,
    pairwise_contrasts,
)
from rnaseq_pipeline.differential import (
    DecisionEngine,
    DecisionTable,
    EmpiricalBayes,
    FitResult,
    LinearModelFitter,
    VarianceModeler,
    VoomResult,
    contrasts_fit,
)
from rnaseq_pipeline.filtering import LowExpressionFilter
from rnaseq_pipeline.genesets import GeneSetResult, GeneSetTester
from rnaseq_pipeline.ingest import CountFileLoader, CountMatrix, GeneAnnotation, SampleDesign
from rnaseq_pipeline.normalization import NormalizedMatrix, Normalizer

logger = logging.getLogger(__name__)

TOTAL_STEPS = 8


@dataclass
class PipelineResult:
    """Entities produced by one pipeline run."""

    counts: Optional[CountMatrix] = None
    normalized: Optional[NormalizedMatrix] = None
    design: Optional[DesignMatrix] = None
    contrasts: Optional[ContrastMatrix] = None
    voom: Optional[VoomResult] = None
    fit: Optional[FitResult] = None
    decisions: Optional[DecisionTable] = None
    treat_fit: Optional[FitResult] = None
    treat_decisions: Optional[DecisionTable] = None
    gene_sets: dict[str, GeneSetResult] = field(default_factory=dict)
    output_paths: dict[str, Any] = field(default_factory=dict)
    metrics: dict[str, Any] = field(default_factory=dict)


class Pipeline:
    """Runs normalization, filtering, voom, linear models and decisions.

    Every stage returns a new entity; the input counts are never modified.

    The default design adds the sample table's "lane" column as a batch
    factor (config.design.batch_cols); set it to [] for sample tables
    without one.

    Example:
        >>> from rnaseq_pipeline import Pipeline, Config
        >>>
        >>> config = Config(contrasts={"BasalvsLP": "Basal - LP"}, treat_lfc=1.0)
        >>> pipeline = Pipeline(config, output_dir="results")
        >>> result = pipeline.run(counts, samples)
        >>> result.decisions.summary()
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        output_dir: Optional[Union[str, Path]] = None,
    ):
        """Initialize pipeline.

        Parameters
        ----------
        config : Config, optional
            Pipeline configuration
        output_dir : Path, optional
            Base output directory (overrides config.output_dir); nothing is
            written when neither is set
        """
        self.config = config or Config()
        out = output_dir if output_dir is not None else self.config.output_dir
        self.output_dir = Path(out) if out is not None else None

    def run(
        self,
        counts: CountMatrix,
        samples: SampleDesign,
        contrasts: Optional[Union[Mapping[str, Any], Iterable]] = None,
        gene_sets: Optional[Mapping[str, Iterable]] = None,
        annotation: Optional[GeneAnnotation] = None,
    ) -> PipelineResult:
        """Run the full analysis.

        Parameters
        ----------
        counts : CountMatrix
            Raw counts
        samples : SampleDesign
            Group and batch factors for every count sample
        contrasts : mapping or list, optional
            Contrasts (config.contrasts, then all pairwise groups, when None)
        gene_sets : mapping, optional
            Gene set name -> member gene ids
        annotation : GeneAnnotation, optional
            Gene annotation joined to the output tables

        Returns
        -------
        PipelineResult
            Results of every stage
        """
        cfg = self.config
        result = PipelineResult()
        step = 0

        try:
            step += 1
            self._update_progress(step, "Aligning samples...")
            samples = samples.align(counts)
            if annotation is not None:
                counts = counts.with_annotation(annotation)
            result.metrics["n_input_genes"] = counts.n_genes
            result.metrics["n_samples"] = counts.n_samples
            result.metrics["n_zero_count_genes"] = len(counts.zero_count_genes())

            step += 1
            self._update_progress(step, "Filtering lowly expressed genes...")
            filtered = LowExpressionFilter(cfg.filter).filter(counts)
            result.counts = filtered.counts
            result.metrics["n_kept_genes"] = filtered.n_kept

            step += 1
            self._update_progress(step, f"Normalizing ({cfg.normalization.method})...")
            result.normalized = Normalizer(cfg.normalization).normalize(result.counts)

            step += 1
            self._update_progress(step, "Building design and contrasts...")
            result.design = DesignBuilder(cfg.design).build(samples)
            requested = contrasts if contrasts is not None else (cfg.contrasts or None)
            if requested is None:
                requested = pairwise_contrasts(result.design)
            result.contrasts = make_contrasts(
                result.design, requested, min_group_size=cfg.design.min_group_size
            )

            step += 1
            self._update_progress(step, "Modelling mean-variance trend...")
            modeler = VarianceModeler(cfg.voom, chunk_size=cfg.fit.chunk_size)
            result.voom = modeler.fit(result.counts, result.design, result.normalized.norm_factors)

            step += 1
            self._update_progress(step, "Fitting linear models...")
            fit = LinearModelFitter(cfg.fit).fit(
                result.voom.expression, result.design, weights=result.voom.weights
            )
            fit = contrasts_fit(fit, result.contrasts)
            eb = EmpiricalBayes(cfg.fit)
            result.fit = eb.moderate(fit)
            engine = DecisionEngine(cfg.decision)
            result.decisions = engine.decide(result.fit)
            if cfg.fit.treat_lfc is not None:
                result.treat_fit = eb.treat(fit, cfg.fit.treat_lfc)
                result.treat_decisions = engine.decide(result.treat_fit)

            step += 1
            if gene_sets:
                self._update_progress(step, f"Testing {len(gene_sets)} gene sets...")
                result.gene_sets = GeneSetTester(cfg.genesets).test_all(result.fit, gene_sets)
            else:
                self._update_progress(step, "No gene sets given; skipping gene set tests")

            result.metrics.update(self._compute_metrics(result))

            step += 1
            if self.output_dir is not None:
                self._update_progress(step, f"Writing results to {self.output_dir}...")
                result.output_paths = self._write_outputs(result, annotation)
            else:
                self._update_progress(step, "No output directory; results kept in memory")

            return result

        except Exception as e:
            logger.error(f"Pipeline failed at step {step}/{TOTAL_STEPS}: {e}")
            raise

    def process_directory(
        self,
        directory: Union[str, Path],
        samples_path: Union[str, Path],
        contrasts: Optional[Union[Mapping[str, Any], Iterable]] = None,
        gene_sets: Optional[Mapping[str, Iterable]] = None,
        annotation: Optional[GeneAnnotation] = None,
    ) -> PipelineResult:
        """Load count files and a sample table, then run the analysis."""
        counts = CountFileLoader(self.config.ingest).load_directory(directory)
        samples = SampleDesign.from_table(samples_path, group_col=self.config.design.group_col)
        return self.run(counts, samples, contrasts=contrasts, gene_sets=gene_sets, annotation=annotation)

    def _compute_metrics(self, result: PipelineResult) -> dict:
        """Compute summary metrics from results."""
        metrics: dict[str, Any] = {}

        if result.normalized is not None:
            metrics["norm_factors"] = result.normalized.norm_factors.round(6).to_dict()
            metrics["lib_size"] = result.normalized.lib_size.to_dict()

        if result.design is not None:
            metrics["design_columns"] = result.design.columns
            metrics["df_residual"] = result.design.df_residual

        if result.contrasts is not None:
            metrics["contrasts"] = result.contrasts.expressions

        if result.fit is not None:
            metrics["s2_prior"] = result.fit.s2_prior
            metrics["df_prior"] = result.fit.df_prior

        if result.decisions is not None:
            metrics["decisions"] = result.decisions.summary().to_dict()

        if result.treat_decisions is not None:
            metrics["treat_lfc"] = result.treat_fit.treat_lfc
            metrics["treat_decisions"] = result.treat_decisions.summary().to_dict()

        if result.gene_sets:
            first = next(iter(result.gene_sets.values()))
            metrics["n_gene_sets"] = len(first)
            metrics["empty_gene_sets"] = first.empty_sets

        return metrics

    def _write_outputs(
        self,
        result: PipelineResult,
        annotation: Optional[GeneAnnotation],
    ) -> dict[str, Any]:
        """Write every result table and the run summary."""
        from rnaseq_pipeline.export import JSONWriter, TableWriter

        tables = TableWriter(self.output_dir, sep=self.config.sep)
        paths: dict[str, Any] = {}

        paths["results"] = tables.write_fit(result.fit, result.decisions, annotation)
        paths["decisions"] = tables.write_decisions(result.decisions)
        paths["top_tables"] = tables.write_top_tables(result.fit, annotation)
        if result.treat_fit is not None:
            paths["treat_results"] = tables.write_fit(
                result.treat_fit, result.treat_decisions, annotation, filename="results_treat.txt"
            )
            paths["treat_decisions"] = tables.write_decisions(
                result.treat_decisions, filename="decisions_treat.txt"
            )
            paths["treat_top_tables"] = tables.write_top_tables(
                result.treat_fit, annotation, prefix="treat_"
            )
        if result.gene_sets:
            paths["gene_sets"] = tables.write_gene_sets(result.gene_sets)
        paths["log_cpm"] = tables.write_log_cpm(result.normalized)
        paths["samples"] = tables.write_sample_info(result.normalized)

        json_writer = JSONWriter(self.output_dir)
        paths["voom_trend"] = json_writer.write_trend(result.voom)
        paths["summary"] = json_writer.write_summary(result.metrics)

        config_path = self.output_dir / "config.json"
        self.config.to_json(config_path)
        paths["config"] = config_path
        return paths

    def _update_progress(self, step: int, message: str) -> None:
        logger.info(f"[{step}/{TOTAL_STEPS}] {message}")


def run_pipeline(
    counts: CountMatrix,
    samples: SampleDesign,
    contrasts: Optional[Union[Mapping[str, Any], Iterable]] = None,
    config: Optional[Config] = None,
    output_dir: Optional[Union[str, Path]] = None,
    gene_sets: Optional[Mapping[str, Iterable]] = None,
) -> PipelineResult:
    """
    Run the full analysis.

    Convenience function for Pipeline.
    """
    return Pipeline(config, output_dir=output_dir).run(counts, samples, contrasts, gene_sets)

"""End-to-end tests for the pipeline."""

import json

import pytest
import numpy as np
import pandas as pd


class TestPipeline:
    """Test the full analysis."""

    def test_in_memory_run(self, pipeline_result, count_matrix):
        result = pipeline_result

        assert result.counts.n_genes < count_matrix.n_genes
        assert result.normalized.matches(result.counts)
        assert result.design.columns == ["Basal", "LP", "ML", "laneL006", "laneL008"]
        assert result.contrasts.names == ["BasalvsLP", "BasalvsML", "LPvsML"]
        assert result.voom.weights.shape == (result.counts.n_genes, 9)
        assert result.fit.n_genes == result.counts.n_genes
        assert result.output_paths == {}

    def test_metrics(self, pipeline_result, count_matrix):
        metrics = pipeline_result.metrics

        assert metrics["n_input_genes"] == count_matrix.n_genes
        assert metrics["n_samples"] == 9
        assert metrics["n_kept_genes"] == pipeline_result.counts.n_genes
        assert metrics["n_zero_count_genes"] >= 150
        assert metrics["df_residual"] == 4
        assert set(metrics["decisions"]) == {"BasalvsLP", "BasalvsML", "LPvsML"}
        assert metrics["treat_lfc"] == 1.0

    def test_input_not_modified(self, count_matrix, sample_design):
        from rnaseq_pipeline import run_pipeline

        before = count_matrix.counts.copy()
        run_pipeline(count_matrix, sample_design, contrasts={"BasalvsLP": "Basal - LP"})

        pd.testing.assert_frame_equal(count_matrix.counts, before)

    def test_pairwise_default(self, count_matrix, sample_design):
        from rnaseq_pipeline import run_pipeline

        result = run_pipeline(count_matrix, sample_design)

        assert result.contrasts.names == ["BasalvsLP", "BasalvsML", "LPvsML"]
        assert result.treat_fit is None

    def test_writes_outputs(self, temp_dir, count_matrix, sample_design, gene_sets):
        from rnaseq_pipeline import Config, Pipeline

        config = Config(contrasts={"BasalvsLP": "Basal - LP"}, treat_lfc=1.0)
        result = Pipeline(config, output_dir=temp_dir / "out").run(
            count_matrix, sample_design, gene_sets=gene_sets
        )

        out = temp_dir / "out"
        for name in ("results.txt", "decisions.txt", "top_BasalvsLP.txt", "results_treat.txt",
                     "decisions_treat.txt", "treat_BasalvsLP.txt", "genesets_BasalvsLP.txt",
                     "log_cpm.txt", "samples.txt", "voom_trend.json", "summary.json", "config.json"):
            assert (out / name).exists(), name

        results = pd.read_csv(out / "results.txt", sep="\t", index_col=0)
        assert len(results) == result.counts.n_genes
        assert "Res.BasalvsLP" in results.columns

        with open(out / "summary.json") as f:
            summary = json.load(f)
        assert summary["n_kept_genes"] == result.counts.n_genes
        assert summary["empty_gene_sets"] == ["NOT_MEASURED"]

        genesets = pd.read_csv(out / "genesets_BasalvsLP.txt", sep="\t", index_col=0)
        assert genesets.loc["NOT_MEASURED", "Status"] == "empty"

    def test_process_directory(self, temp_dir, counts_dir, samples_file):
        from rnaseq_pipeline import Config, Pipeline

        pipeline = Pipeline(Config(contrasts={"BasalvsML": "Basal - ML"}))
        result = pipeline.process_directory(counts_dir, samples_file)

        assert result.fit.contrast_names == ["BasalvsML"]
        assert result.design.sample_ids == [f"S{i}" for i in range(1, 10)]

    def test_sample_mismatch(self, count_matrix, sample_table):
        from rnaseq_pipeline import run_pipeline
        from rnaseq_pipeline.ingest import SampleDesign
        from rnaseq_pipeline.exceptions import DataShapeError

        with pytest.raises(DataShapeError):
            run_pipeline(count_matrix, SampleDesign(sample_table.iloc[:7]))

    def test_bad_contrast_fails_before_fitting(self, count_matrix, sample_design):
        from rnaseq_pipeline import run_pipeline
        from rnaseq_pipeline.exceptions import ConfigurationError

        with pytest.raises(ConfigurationError, match="Stem"):
            run_pipeline(count_matrix, sample_design, contrasts={"x": "Stem - LP"})

    def test_over_strict_filter(self, count_matrix, sample_design):
        from rnaseq_pipeline import Config, run_pipeline
        from rnaseq_pipeline.exceptions import ConfigurationError

        config = Config()
        config.filter.cpm_threshold = 1e7
        with pytest.raises(ConfigurationError, match="No genes"):
            run_pipeline(count_matrix, sample_design, config=config)

    def test_no_lane_factor(self, count_matrix, sample_design):
        from rnaseq_pipeline import Config, run_pipeline

        config = Config(contrasts={"BasalvsLP": "Basal - LP"})
        config.design.batch_cols = []
        result = run_pipeline(count_matrix, sample_design, config=config)

        assert result.design.df_residual == 6
        assert np.all(result.fit.df_total >= 6)

    def test_default_design_needs_lane_column(self, count_matrix, sample_table):
        from rnaseq_pipeline import Config, run_pipeline
        from rnaseq_pipeline.ingest import SampleDesign
        from rnaseq_pipeline.exceptions import ConfigurationError

        samples = SampleDesign(sample_table.drop(columns=["lane"]))
        with pytest.raises(ConfigurationError, match="lane"):
            run_pipeline(count_matrix, samples, contrasts={"BasalvsLP": "Basal - LP"})

        config = Config(contrasts={"BasalvsLP": "Basal - LP"})
        config.design.batch_cols = []
        result = run_pipeline(count_matrix, samples, config=config)
        assert result.design.batch_columns == []

"""Tests for the voom mean-variance trend and precision weights."""

import pytest
import numpy as np
import pandas as pd


@pytest.fixture
def filtered_counts(count_matrix):
    from rnaseq_pipeline.filtering import filter_by_expression

    return filter_by_expression(count_matrix)


@pytest.fixture
def design(sample_design):
    from rnaseq_pipeline.design import build_design

    return build_design(sample_design, batch_cols=["lane"])


class TestInterpolateTrend:
    """Test trend interpolation."""

    def test_linear_inside_constant_outside(self):
        from rnaseq_pipeline.differential import interpolate_trend

        xp = np.array([0.0, 1.0, 2.0])
        fp = np.array([1.0, 0.8, 0.4])

        y = interpolate_trend(np.array([-5.0, 0.5, 1.5, 9.0]), xp, fp)

        np.testing.assert_allclose(y, [1.0, 0.9, 0.6, 0.4])


class TestVarianceModeler:
    """Test voom weights."""

    def test_weights_positive_and_aligned(self, filtered_counts, design):
        from rnaseq_pipeline.differential import voom
        from rnaseq_pipeline.normalization import calc_norm_factors

        factors = calc_norm_factors(filtered_counts)
        v = voom(filtered_counts, design, factors)

        assert v.weights.shape == (filtered_counts.n_genes, 9)
        assert v.weights.index.equals(v.expression.index)
        assert v.weights.columns.equals(v.expression.columns)
        assert np.all(v.weights.to_numpy() > 0)
        assert np.all(np.isfinite(v.weights.to_numpy()))
        np.testing.assert_allclose(
            v.lib_size.to_numpy(), filtered_counts.lib_size.to_numpy() * factors.to_numpy()
        )

    def test_expression_is_log_cpm(self, filtered_counts, design):
        from rnaseq_pipeline.differential import voom

        v = voom(filtered_counts, design)

        lib = filtered_counts.lib_size.to_numpy()
        expected = np.log2((filtered_counts.values + 0.5) / (lib + 1.0) * 1e6)
        np.testing.assert_allclose(v.expression.to_numpy(), expected)

    def test_trend_is_sorted_and_covers_genes(self, filtered_counts, design):
        from rnaseq_pipeline.differential import voom

        v = voom(filtered_counts, design)

        assert np.all(np.diff(v.trend_x) > 0)
        assert v.sx.notna().sum() == filtered_counts.n_genes
        assert v.predict(np.array([v.trend_x[0] - 10]))[0] == pytest.approx(v.trend_y[0])

    def test_high_counts_get_higher_weights(self, filtered_counts, design):
        from rnaseq_pipeline.differential import voom

        v = voom(filtered_counts, design)

        mean_weight = v.weights.mean(axis=1)
        order = v.expression.mean(axis=1).sort_values().index
        decile = len(order) // 10
        assert mean_weight[order[-decile:]].mean() > mean_weight[order[:decile]].mean()

    def test_zero_genes_left_out_of_trend(self, count_matrix, design):
        from rnaseq_pipeline.differential import voom

        v = voom(count_matrix, design)
        zero = count_matrix.zero_count_genes()

        assert v.sx[zero].isna().all()
        assert np.all(v.weights.loc[zero].to_numpy() > 0)

    def test_design_mismatch(self, filtered_counts, sample_table):
        from rnaseq_pipeline.design import build_design
        from rnaseq_pipeline.differential import voom
        from rnaseq_pipeline.ingest import SampleDesign
        from rnaseq_pipeline.exceptions import DataShapeError

        reversed_design = build_design(SampleDesign(sample_table.iloc[::-1]))
        with pytest.raises(DataShapeError, match="do not match"):
            voom(filtered_counts, reversed_design)

    def test_too_few_expressed_genes(self, design):
        from rnaseq_pipeline.differential import voom
        from rnaseq_pipeline.ingest import CountMatrix
        from rnaseq_pipeline.exceptions import NumericDegeneracyError

        df = pd.DataFrame(0, index=["g1", "g2", "g3"], columns=design.sample_ids)
        df.loc["g1"] = np.arange(10, 19)
        with pytest.raises(NumericDegeneracyError, match="mean-variance trend"):
            voom(CountMatrix(df), design)

    def test_missing_factors(self, filtered_counts, design):
        from rnaseq_pipeline.differential import voom
        from rnaseq_pipeline.exceptions import DataShapeError

        factors = pd.Series(1.0, index=filtered_counts.sample_ids[:8])
        with pytest.raises(DataShapeError, match="missing"):
            voom(filtered_counts, design, factors)

"""Tests for linear model fitting, empirical Bayes moderation and treat."""

import pytest
import numpy as np
import pandas as pd
from scipy import special


@pytest.fixture
def design(sample_design):
    from rnaseq_pipeline.design import build_design

    return build_design(sample_design, batch_cols=["lane"])


@pytest.fixture
def contrasts(design):
    from rnaseq_pipeline.design import make_contrasts

    return make_contrasts(design, {"BasalvsLP": "Basal - LP", "LPvsML": "LP - ML"})


@pytest.fixture
def expression(design):
    """Log-expression: 500 noisy genes, the first 50 shifted up by 2 in Basal."""
    np.random.seed(42)
    n_genes = 500
    basal = design.matrix["Basal"].to_numpy()
    values = 5 + np.random.randn(n_genes, design.n_samples) * 0.3
    values[:50] += 2 * basal
    return pd.DataFrame(
        values,
        index=[f"g{i:03d}" for i in range(n_genes)],
        columns=design.sample_ids,
    )


class TestWeightedLeastSquares:
    """Test gene-wise weighted least squares."""

    def test_exact_fit(self):
        from rnaseq_pipeline.differential import weighted_least_squares

        x = np.column_stack([np.ones(6), np.arange(6.0)])
        beta = np.array([[1.0, 2.0], [-3.0, 0.5]])
        y = beta @ x.T

        result = weighted_least_squares(y, x)

        np.testing.assert_allclose(result.coefficients, beta, atol=1e-10)
        np.testing.assert_allclose(result.sigma, 0.0, atol=1e-10)
        assert result.df_residual == 4

    def test_matches_scaled_least_squares(self):
        from rnaseq_pipeline.differential import weighted_least_squares

        np.random.seed(42)
        x = np.column_stack([np.ones(8), np.random.randn(8)])
        y = np.random.randn(3, 8)
        w = np.random.uniform(0.5, 2.0, size=(3, 8))

        result = weighted_least_squares(y, x, w, chunk_size=2)

        for g in range(3):
            sw = np.sqrt(w[g])
            expected, *_ = np.linalg.lstsq(x * sw[:, None], y[g] * sw, rcond=None)
            np.testing.assert_allclose(result.coefficients[g], expected)
            np.testing.assert_allclose(
                result.cov_unscaled[g], np.linalg.inv((x * w[g][:, None]).T @ x)
            )

    def test_no_residual_df(self):
        from rnaseq_pipeline.differential import weighted_least_squares
        from rnaseq_pipeline.exceptions import NumericDegeneracyError

        with pytest.raises(NumericDegeneracyError):
            weighted_least_squares(np.ones((2, 2)), np.eye(2))


class TestLinearModelFitter:
    """Test fitting and contrast transformation."""

    def test_noiseless_effect_recovered(self, design, contrasts):
        from rnaseq_pipeline.differential import contrasts_fit, lm_fit

        groups = design.matrix[["Basal", "LP", "ML"]].to_numpy()
        lanes = design.matrix[["laneL006", "laneL008"]].to_numpy()
        y = groups @ np.array([6.0, 5.0, 4.5]) + lanes @ np.array([0.3, -0.2])
        expression = pd.DataFrame([y], index=["gene"], columns=design.sample_ids)

        fit = contrasts_fit(lm_fit(expression, design), contrasts)

        assert fit.coefficients.loc["gene", "BasalvsLP"] == pytest.approx(1.0)
        assert fit.coefficients.loc["gene", "LPvsML"] == pytest.approx(0.5)
        assert fit.sigma["gene"] == pytest.approx(0.0, abs=1e-10)

    def test_contrast_standard_errors(self, design, contrasts, expression):
        from rnaseq_pipeline.differential import contrasts_fit, lm_fit

        weights = pd.DataFrame(
            np.random.RandomState(1).uniform(0.5, 2, expression.shape),
            index=expression.index,
            columns=expression.columns,
        )
        fit = lm_fit(expression, design, weights=weights)
        cfit = contrasts_fit(fit, contrasts)

        c = contrasts.values
        for g in (0, 123):
            cov = c.T @ fit.cov_unscaled[g] @ c
            np.testing.assert_allclose(cfit.stdev_unscaled.iloc[g].to_numpy(), np.sqrt(np.diag(cov)))

    def test_amean_and_residuals(self, design, expression):
        from rnaseq_pipeline.differential import lm_fit

        fit = lm_fit(expression, design)

        pd.testing.assert_series_equal(fit.amean, expression.mean(axis=1).rename("AveExpr"))
        assert fit.residuals.shape == expression.shape
        assert (fit.df_residual == 4).all()

    def test_sample_order_mismatch(self, design, expression):
        from rnaseq_pipeline.differential import lm_fit
        from rnaseq_pipeline.exceptions import DataShapeError

        with pytest.raises(DataShapeError):
            lm_fit(expression[expression.columns[::-1]], design)

    def test_non_positive_weights(self, design, expression):
        from rnaseq_pipeline.differential import lm_fit
        from rnaseq_pipeline.exceptions import NumericDegeneracyError

        weights = pd.DataFrame(1.0, index=expression.index, columns=expression.columns)
        weights.iloc[3, 2] = 0.0
        with pytest.raises(NumericDegeneracyError):
            lm_fit(expression, design, weights=weights)

    def test_contrasts_applied_twice(self, design, contrasts, expression):
        from rnaseq_pipeline.differential import contrasts_fit, lm_fit
        from rnaseq_pipeline.exceptions import ConfigurationError

        fit = contrasts_fit(lm_fit(expression, design), contrasts)
        with pytest.raises(ConfigurationError, match="already"):
            contrasts_fit(fit, contrasts)


class TestPriorEstimation:
    """Test the variance prior."""

    @pytest.mark.parametrize("y", [0.1, 1.0, 10.0, 1000.0])
    def test_trigamma_inverse(self, y):
        from rnaseq_pipeline.differential import trigamma_inverse

        x = special.polygamma(1, y)
        assert trigamma_inverse(x)[0] == pytest.approx(y, rel=1e-6)

    def test_fit_f_dist_recovers_prior(self):
        from rnaseq_pipeline.differential import fit_f_dist

        np.random.seed(42)
        n_genes, d, d0, s0 = 20000, 4, 10, 0.5
        sigma2 = s0 * d0 / np.random.chisquare(d0, n_genes)
        s2 = sigma2 * np.random.chisquare(d, n_genes) / d

        s2_prior, df_prior = fit_f_dist(s2, d)

        assert s2_prior == pytest.approx(s0, rel=0.1)
        assert 6 < df_prior < 16

    def test_fit_f_dist_no_extra_spread(self):
        from rnaseq_pipeline.differential import fit_f_dist

        np.random.seed(42)
        s2 = 0.5 * np.random.chisquare(4, 20000) / 4

        s2_prior, df_prior = fit_f_dist(s2, 4)

        assert df_prior > 50
        assert s2_prior == pytest.approx(0.5, rel=0.05)

    def test_fit_f_dist_no_usable_variances(self):
        from rnaseq_pipeline.differential import fit_f_dist
        from rnaseq_pipeline.exceptions import NumericDegeneracyError

        with pytest.raises(NumericDegeneracyError):
            fit_f_dist(np.array([np.nan, np.inf]), 4)

    def test_squeeze_var(self):
        from rnaseq_pipeline.differential import squeeze_var

        post = squeeze_var(np.array([0.1, 1.0, 4.0]), np.array([4.0, 4.0, 4.0]), 1.0, 4.0)

        np.testing.assert_allclose(post, [0.55, 1.0, 2.5])
        np.testing.assert_allclose(squeeze_var(np.array([0.1, 4.0]), 4.0, 1.0, np.inf), 1.0)


class TestEmpiricalBayes:
    """Test moderated statistics."""

    @pytest.fixture
    def fit(self, design, contrasts, expression):
        from rnaseq_pipeline.differential import contrasts_fit, lm_fit

        return contrasts_fit(lm_fit(expression, design), contrasts)

    def test_moderated_statistics(self, fit):
        from rnaseq_pipeline.differential import ebayes

        result = ebayes(fit)

        p = result.p_value.to_numpy()
        assert np.all((p >= 0) & (p <= 1))
        assert np.all(result.adj_p_value.to_numpy() >= p - 1e-12)
        assert (result.df_total <= 4 * fit.n_genes).all()
        assert (result.df_total >= result.df_residual).all()
        assert result.s2_prior > 0
        assert result.lods.shape == result.t.shape
        assert result.f_stat.notna().all()

    def test_shifted_genes_detected(self, fit):
        from rnaseq_pipeline.differential import ebayes

        result = ebayes(fit)
        top = result.top_table("BasalvsLP", n=50)

        assert len(set(top.index) & {f"g{i:03d}" for i in range(50)}) >= 45
        assert list(top.columns) == ["logFC", "AveExpr", "t", "P.Value", "adj.P.Val", "B"]
        assert top["adj.P.Val"].is_monotonic_increasing

    def test_top_table_filters(self, fit):
        from rnaseq_pipeline.differential import ebayes

        result = ebayes(fit)
        table = result.top_table("BasalvsLP", p_value=0.05, lfc=1.0)

        assert (table["adj.P.Val"] <= 0.05).all()
        assert (table["logFC"].abs() >= 1.0).all()

    def test_top_table_needs_contrast(self, fit):
        from rnaseq_pipeline.differential import ebayes
        from rnaseq_pipeline.exceptions import ConfigurationError

        result = ebayes(fit)
        with pytest.raises(ConfigurationError, match="several"):
            result.top_table()
        with pytest.raises(ConfigurationError, match="Unknown"):
            result.top_table("MLvsLP")

    def test_flat_table_layout(self, fit):
        from rnaseq_pipeline.differential import ebayes

        table = ebayes(fit).to_dataframe()

        assert list(table.columns) == [
            "AveExpr",
            "Coef.BasalvsLP", "Coef.LPvsML",
            "t.BasalvsLP", "t.LPvsML",
            "P.value.BasalvsLP", "P.value.LPvsML",
            "P.value.adj.BasalvsLP", "P.value.adj.LPvsML",
            "F", "F.p.value",
        ]
        assert len(table) == fit.n_genes

    def test_dependent_contrasts_f_equals_t_squared(self, design, expression):
        from rnaseq_pipeline.design import make_contrasts
        from rnaseq_pipeline.differential import contrasts_fit, ebayes, lm_fit

        contrasts = make_contrasts(design, {"BasalvsLP": "Basal - LP", "LPvsBasal": "LP - Basal"})
        result = ebayes(contrasts_fit(lm_fit(expression, design), contrasts))

        np.testing.assert_allclose(result.f_stat.to_numpy(), result.t["BasalvsLP"].to_numpy() ** 2)


class TestTreat:
    """Test fold-change-thresholded testing."""

    @pytest.fixture
    def fit(self, design, contrasts, expression):
        from rnaseq_pipeline.differential import contrasts_fit, lm_fit

        return contrasts_fit(lm_fit(expression, design), contrasts)

    def test_treat_p_values_never_smaller(self, fit):
        from rnaseq_pipeline.differential import ebayes, treat

        ordinary = ebayes(fit)
        thresholded = treat(fit, lfc=1.0)

        assert np.all(thresholded.p_value.to_numpy() >= ordinary.p_value.to_numpy() - 1e-12)
        assert np.all(thresholded.adj_p_value.to_numpy() >= ordinary.adj_p_value.to_numpy() - 1e-12)
        assert thresholded.treat_lfc == 1.0
        assert thresholded.lods is None
        assert thresholded.f_stat is None

    def test_zero_threshold_matches_ordinary(self, fit):
        from rnaseq_pipeline.differential import ebayes, treat

        np.testing.assert_allclose(
            treat(fit, lfc=0.0).p_value.to_numpy(), ebayes(fit).p_value.to_numpy()
        )

    def test_negative_threshold(self, fit):
        from rnaseq_pipeline.differential import treat
        from rnaseq_pipeline.exceptions import ConfigurationError

        with pytest.raises(ConfigurationError):
            treat(fit, lfc=-1.0)

    def test_treat_table_has_no_b(self, fit):
        from rnaseq_pipeline.differential import treat

        table = treat(fit, lfc=1.0).top_table("BasalvsLP")

        assert "B" not in table.columns


class TestFDRCorrector:
    """Test multiple testing correction."""

    def test_benjamini_hochberg(self):
        from rnaseq_pipeline.differential import apply_fdr

        adjusted = apply_fdr(np.array([0.01, 0.04, 0.03, 0.5]))

        np.testing.assert_allclose(adjusted, [0.04, 0.04 * 4 / 3, 0.04 * 4 / 3, 0.5], rtol=1e-12)

    def test_nan_preserved(self):
        from rnaseq_pipeline.differential import FDRCorrector

        adjusted = FDRCorrector().correct(pd.Series([0.01, np.nan, 0.02]))

        assert np.isnan(adjusted.iloc[1])
        np.testing.assert_allclose(adjusted.iloc[[0, 2]].to_numpy(), [0.02, 0.02])

    def test_columns_adjusted_independently(self):
        from rnaseq_pipeline.differential import FDRCorrector

        p = pd.DataFrame({"a": [0.01, 0.02], "b": [0.5, 0.01]})
        adjusted = FDRCorrector().correct(p)

        pd.testing.assert_series_equal(
            adjusted["a"], FDRCorrector().correct(p["a"]), check_names=False
        )
        assert adjusted.loc[1, "b"] == pytest.approx(0.02)

    def test_none_method(self):
        from rnaseq_pipeline.differential import apply_fdr

        p = np.array([0.01, 0.2])
        np.testing.assert_array_equal(apply_fdr(p, method="none"), p)

    def test_unknown_method(self):
        from rnaseq_pipeline.differential import FDRCorrector
        from rnaseq_pipeline.exceptions import ConfigurationError

        with pytest.raises(ConfigurationError):
            FDRCorrector(method="qvalue")

"""
Tests for model summaries and diagnostics.
"""

import numpy as np
import pytest

from pydsm import DSMConfig, SmoothTermSpec, compare_models, dsm, obs_exp, summarize_dsm
from pydsm.analysis import print_dsm_summary


class TestSummarizeDSM:
    """Test the summary report of a fitted model."""

    def test_report_contents(self, fitted_model):
        """The report carries fit statistics and tables."""
        report = summarize_dsm(fitted_model)
        assert report['family'] == 'QuasiPoisson()'
        assert report['response'] == 'count'
        assert report['n_segments'] == 100
        assert report['n_coefficients'] == 15
        assert report['deviance_explained'] == fitted_model.deviance_explained
        assert list(report['parametric'].index) == ['Intercept']
        assert list(report['terms']['term']) == ['s(x,y)']
        assert 0 < report['average_p'] < 1
        assert 'tweedie_power' not in report

    def test_tweedie_report(self, segments, observations, detection):
        """Tweedie fits report the estimated power."""
        config = DSMConfig(terms=[SmoothTermSpec(('x', 'y'), k=10)], family='tweedie')
        model = dsm(config, segments, observations, detection)
        report = summarize_dsm(model)
        assert report['tweedie_power'] == model.fitted_family.power
        assert np.isfinite(report['aic'])

    def test_print(self, fitted_model, capsys):
        """The printed summary lists coefficients and smooth terms."""
        print_dsm_summary(summarize_dsm(fitted_model))
        out = capsys.readouterr().out
        assert "DENSITY SURFACE MODEL" in out
        assert "PARAMETRIC COEFFICIENTS" in out
        assert "s(x,y)" in out
        assert "AIC" not in out


class TestObsExp:
    """Test observed versus expected tables."""

    def test_totals(self, fitted_model):
        """Observed and expected columns add up to the model totals."""
        table = obs_exp(fitted_model, 'beaufort')
        assert table.index.name == 'beaufort'
        assert np.isclose(table['observed'].sum(), fitted_model.y.sum())
        assert np.isclose(table['expected'].sum(), fitted_model.fitted_values.sum())

    def test_continuous_bins(self, fitted_model):
        """Continuous covariates are cut into bins."""
        table = obs_exp(fitted_model, 'depth', bins=4)
        assert len(table) == 4
        edges = obs_exp(fitted_model, 'x', bins=[0.0, 5.0, 10.0])
        assert len(edges) == 2

    def test_unknown_column(self, fitted_model):
        """Binning on an unknown column is an error."""
        with pytest.raises(ValueError, match="no column"):
            obs_exp(fitted_model, 'sst')


class TestCompareModels:
    """Test side-by-side comparison of fitted models."""

    def test_table(self, fitted_model, fitted_model_beaufort):
        """Models are tabulated by name."""
        table = compare_models({'pooled': fitted_model, 'beaufort': fitted_model_beaufort})
        assert list(table.index) == ['pooled', 'beaufort']
        assert set(table.columns) >= {'response', 'family', 'edf', 'reml', 'deviance_explained'}

    def test_list_input(self, fitted_model):
        """Unnamed models are numbered."""
        table = compare_models([fitted_model])
        assert list(table.index) == ['model_1']

    def test_mixed_responses_warn(self, fitted_model, segments, observations, detection):
        """Deviance explained is not comparable across response definitions."""
        config = DSMConfig(terms=[SmoothTermSpec(('x', 'y'), k=15)], response='abundance')
        abundance_model = dsm(config, segments, observations, detection)
        with pytest.warns(UserWarning, match="different responses"):
            table = compare_models([fitted_model, abundance_model])
        assert list(table['response']) == ['count', 'abundance']

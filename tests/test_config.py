"""
Tests for configuration, families and logging setup.
"""

import io
import logging

import numpy as np
import pytest
import statsmodels.api as sm

from pydsm import (
    DEFAULTS,
    DSMConfig,
    FamilyChoice,
    SmoothTermSpec,
    configure_logging,
    get_logger,
    resolve_family,
)
from pydsm.core.families import CountFamily, tweedie_loglike_obs
from pydsm.core.gam import fit_gam


class TestDSMConfig:
    """Test model specification validation."""

    def test_defaults(self):
        """An empty configuration is an intercept-only quasi-Poisson count model."""
        config = DSMConfig()
        assert config.terms == ()
        assert config.family == 'quasipoisson'
        assert config.response == 'count'
        assert config.method == 'REML'

    def test_variables(self):
        """Variables are collected from all terms without repeats."""
        config = DSMConfig(terms=[
            SmoothTermSpec(('x', 'y')),
            SmoothTermSpec('depth', basis='cr'),
            SmoothTermSpec(('x', 'depth'), basis='te'),
        ])
        assert list(config.variables) == ['x', 'y', 'depth']

    def test_terms_become_tuple(self):
        """Term lists are frozen into tuples."""
        config = DSMConfig(terms=[SmoothTermSpec('x')])
        assert isinstance(config.terms, tuple)

    def test_invalid(self):
        """Unsupported methods, responses and duplicate terms are rejected."""
        with pytest.raises(ValueError, match="REML"):
            DSMConfig(method='GCV')
        with pytest.raises(ValueError, match="response"):
            DSMConfig(response='density')
        with pytest.raises(ValueError, match="Duplicate"):
            DSMConfig(terms=[SmoothTermSpec('x'), SmoothTermSpec('x', k=5)])

    def test_engine_defaults(self):
        """Engine defaults are grouped by component."""
        assert DEFAULTS.fit.reml_maxiter > 0
        assert DEFAULTS.detection.n_quadrature >= 16
        assert DEFAULTS.soap.grid_size >= 4
        assert DEFAULTS.columns.segment_id == 'segment_id'


class TestFamilies:
    """Test family selection."""

    def test_family_choice_validation(self):
        """Family names and extra parameters are checked."""
        with pytest.raises(ValueError, match="Unknown family"):
            FamilyChoice('poisson')
        with pytest.raises(ValueError, match="Tweedie power"):
            FamilyChoice('tweedie', power=2.5)
        with pytest.raises(ValueError, match="only defined for the tweedie"):
            FamilyChoice('quasipoisson', power=1.5)
        with pytest.raises(ValueError, match="positive"):
            FamilyChoice('nb', theta=0.0)

    def test_resolve(self):
        """Unspecified extra parameters are flagged for estimation."""
        tweedie = resolve_family('tweedie')
        assert tweedie.power == 1.5
        assert tweedie.estimate_extra
        nb = resolve_family('nb')
        assert nb.theta == 1.0
        assert not nb.scale_estimated
        fixed = resolve_family(FamilyChoice('tweedie', power=1.2))
        assert not fixed.estimate_extra
        assert resolve_family('quasipoisson').is_quasi

    def test_resolve_invalid(self):
        """Objects that are not families are rejected."""
        with pytest.raises(ValueError, match="Cannot interpret"):
            resolve_family(3)

    def test_extra_parameter_transform(self):
        """Working-scale transforms keep the Tweedie power in bounds."""
        family = resolve_family('tweedie')
        assert np.isclose(family.with_extra(family.extra_start()).power, 1.5)
        assert 1.01 <= family.with_extra(np.array([50.0])).power <= 1.99
        assert 1.01 <= family.with_extra(np.array([-50.0])).power <= 1.99

    def test_poisson_deviance(self):
        """Quasi-Poisson deviance is zero at a perfect fit."""
        family = CountFamily('quasipoisson')
        y = np.array([0.0, 1.0, 3.0])
        assert np.isclose(family.deviance(y, np.array([1e-12, 1.0, 3.0])), 0.0, atol=1e-9)
        assert np.allclose(family.working_weights(np.array([2.0, 5.0])), [2.0, 5.0])


class TestTweedieLikelihood:
    """Test the log-scale Tweedie density and estimation of its power."""

    def test_matches_statsmodels(self):
        """The log-scale series agrees with statsmodels where that is finite."""
        y = np.array([0.0, 0.3, 1.0, 2.5, 6.0])
        mu = np.array([0.5, 1.0, 1.5, 2.0, 4.0])
        expected = sm.families.Tweedie(var_power=1.5).loglike_obs(y, mu, scale=1.0)
        assert np.allclose(tweedie_loglike_obs(y, mu, 1.5, 1.0), expected, rtol=1e-6)

    def test_zero_counts(self):
        """A zero observation has probability exp(-lambda)."""
        mu, p, phi = 2.0, 1.4, 0.7
        lam = mu ** (2 - p) / (phi * (2 - p))
        assert np.isclose(tweedie_loglike_obs(np.array([0.0]), np.array([mu]), p, phi)[0], -lam)

    def test_finite_near_power_bounds(self):
        """The density stays finite at small scales and powers close to one."""
        y = np.array([0.0, 1.0, 5.0, 20.0, 80.0])
        mu = np.full(5, 10.0)
        for power in (1.011, 1.5, 1.98):
            for scale in (0.05, 0.5, 5.0):
                ll = tweedie_loglike_obs(y, mu, power, scale)
                assert np.all(np.isfinite(ll))
        family = CountFamily('tweedie', power=1.011)
        assert np.isfinite(family.loglik(y, mu, 0.5))

    def test_recovers_interior_power(self):
        """Compound Poisson-gamma data give back a power away from the bounds."""
        rng = np.random.default_rng(11)
        n, mu, phi, power = 400, 2.0, 1.0, 1.5
        lam = mu ** (2 - power) / (phi * (2 - power))
        alpha = (2 - power) / (power - 1)
        gamma_scale = phi * (power - 1) * mu ** (power - 1)
        counts = rng.poisson(lam, size=n)
        y = np.where(counts > 0, rng.gamma(np.maximum(alpha * counts, 1e-12), gamma_scale), 0.0)

        fit = fit_gam(np.ones((n, 1)), y, np.zeros(n), [], resolve_family('tweedie'))
        assert 1.3 < fit.family.power < 1.7
        assert 0.7 < fit.scale < 1.4
        assert np.isclose(fit.fitted[0], y.mean(), rtol=1e-4)


class TestLogging:
    """Test logging setup."""

    def test_configure_replaces_handler(self):
        """Configuring twice keeps a single console handler."""
        package_logger = get_logger()
        try:
            first = configure_logging(logging.DEBUG, stream=io.StringIO())
            second = configure_logging(logging.INFO, stream=io.StringIO())
            console = [h for h in package_logger.handlers if getattr(h, '_pydsm_console', False)]
            assert console == [second]
            assert first not in package_logger.handlers
        finally:
            for handler in list(package_logger.handlers):
                if getattr(handler, '_pydsm_console', False):
                    package_logger.removeHandler(handler)
            package_logger.setLevel(logging.NOTSET)

    def test_messages_reach_stream(self):
        """Module loggers propagate to the configured handler."""
        stream = io.StringIO()
        package_logger = get_logger()
        try:
            configure_logging(logging.INFO, stream=stream)
            get_logger('pydsm.core.dsm').info("fitted model")
            assert "fitted model" in stream.getvalue()
        finally:
            for handler in list(package_logger.handlers):
                if getattr(handler, '_pydsm_console', False):
                    package_logger.removeHandler(handler)
            package_logger.setLevel(logging.NOTSET)

    def test_logger_names(self):
        """Loggers live in the pydsm hierarchy."""
        assert get_logger('pydsm.spatial').name == 'pydsm.spatial'
        assert get_logger('scripts').name == 'pydsm.scripts'
        assert get_logger().name == 'pydsm'

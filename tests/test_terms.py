"""
Tests for smooth term construction.
"""

import numpy as np
import pytest

from pydsm import SchemaMismatch, SmoothTermSpec, build_term
from pydsm.spatial.terms import (
    CubicRegressionTerm,
    TensorTerm,
    ThinPlateTerm,
    cyclic_spline_penalty,
    natural_spline_penalty,
    penalty_rank,
)


class TestSmoothTermSpec:
    """Test term specification validation."""

    def test_default_labels(self):
        """Labels are derived from the basis and variables."""
        assert SmoothTermSpec(('x', 'y')).label == 's(x,y)'
        assert SmoothTermSpec(('x', 'y'), basis='te').label == 'te(x,y)'
        assert SmoothTermSpec('depth', basis='cr').variables == ('depth',)

    def test_default_k(self):
        """Default basis dimensions follow the term type."""
        assert SmoothTermSpec('x').default_k() == 10
        assert SmoothTermSpec(('x', 'y')).default_k() == 30
        assert SmoothTermSpec(('x', 'y'), basis='te').default_k() == 5

    def test_invalid_specs(self):
        """Inconsistent specifications are rejected at construction."""
        with pytest.raises(ValueError, match="Unknown basis"):
            SmoothTermSpec('x', basis='ps')
        with pytest.raises(ValueError, match="exactly one variable"):
            SmoothTermSpec(('x', 'y'), basis='cr')
        with pytest.raises(ValueError, match="at least two"):
            SmoothTermSpec('x', basis='te')
        with pytest.raises(ValueError, match="Repeated"):
            SmoothTermSpec(('x', 'x'))
        with pytest.raises(ValueError, match="positive integer"):
            SmoothTermSpec('x', k=0)
        with pytest.raises(ValueError, match="boundary"):
            SmoothTermSpec(('x', 'y'), basis='so')


class TestCubicRegression:
    """Test cubic regression spline terms."""

    def test_dimensions(self, segments):
        """A centred cr basis has k - 1 coefficients and a linear null space."""
        term = build_term(SmoothTermSpec('y', basis='cr', k=8), segments)
        assert isinstance(term, CubicRegressionTerm)
        assert term.n_coef == 7
        assert term.null_space_dim == 1
        assert len(term.penalties) == 1

        X = term.basis(segments)
        assert X.shape == (len(segments), 7)
        assert np.allclose(X.mean(axis=0), 0.0, atol=1e-10)

    def test_k_reduced_to_unique_values(self, segments):
        """k larger than the number of unique values is reduced with a warning."""
        with pytest.warns(UserWarning, match="adjusted from k=20 to k=10"):
            term = build_term(SmoothTermSpec('y', basis='cr', k=20), segments)
        assert term.n_coef == 9

    def test_k_raised_to_minimum(self, segments):
        """k below the minimum is raised with a warning."""
        with pytest.warns(UserWarning, match="adjusted"):
            term = build_term(SmoothTermSpec('y', basis='cr', k=2), segments)
        assert term.n_coef == 2

    def test_missing_covariate(self, segments):
        """A missing covariate raises SchemaMismatch naming the term."""
        with pytest.raises(SchemaMismatch) as excinfo:
            build_term(SmoothTermSpec('sst', basis='cr'), segments)
        assert excinfo.value.term == 's(sst)'
        assert excinfo.value.covariate == 'sst'

    def test_prediction_outside_range(self, segments):
        """Bases evaluate beyond the range of the fitting data."""
        term = build_term(SmoothTermSpec('y', basis='cr', k=6), segments)
        new = segments.head(2).assign(y=[-1.0, 11.0])
        assert np.all(np.isfinite(term.basis(new)))


class TestTensorProduct:
    """Test tensor product terms."""

    def test_dimensions(self, segments):
        """te with margin dimension 5 has 24 centred coefficients and two penalties."""
        term = build_term(SmoothTermSpec(('x', 'y'), basis='te', k=5), segments)
        assert isinstance(term, TensorTerm)
        assert term.n_coef == 24
        assert len(term.penalties) == 2
        for S in term.penalties:
            assert S.shape == (24, 24)
            assert np.allclose(S, S.T)
        assert term.basis(segments).shape == (len(segments), 24)


class TestThinPlate:
    """Test thin plate regression spline terms."""

    def test_dimensions(self, segments):
        """2-d tp with k=10 has 9 centred coefficients and a 2-d null space."""
        term = build_term(SmoothTermSpec(('x', 'y'), k=10), segments)
        assert isinstance(term, ThinPlateTerm)
        assert term.n_coef == 9
        assert term.null_space_dim == 2
        eigenvalues = np.linalg.eigvalsh(term.penalties[0])
        assert eigenvalues.min() > -1e-8 * eigenvalues.max()

    def test_one_dimensional(self, segments):
        """1-d tp has a constant-plus-linear null space, one dimension after centring."""
        term = build_term(SmoothTermSpec('y', k=6), segments)
        assert term.n_coef == 5
        assert term.null_space_dim == 1

    def test_basis_reproduces_fitting_rows(self, segments):
        """Evaluating the basis twice at the same data gives the same matrix."""
        term = build_term(SmoothTermSpec(('x', 'y'), k=12), segments)
        assert np.allclose(term.basis(segments), term.basis(segments.copy()))

    def test_non_finite_covariate(self, segments):
        """Missing covariate values are rejected."""
        segments.loc[3, 'x'] = np.nan
        with pytest.raises(ValueError, match="non-finite"):
            build_term(SmoothTermSpec(('x', 'y'), k=10), segments)


class TestPenalties:
    """Test spline penalty matrices."""

    def test_natural_penalty_null_space(self):
        """The natural spline penalty does not penalize straight lines."""
        knots = np.array([0.0, 0.5, 1.5, 2.0, 3.5, 5.0])
        S = natural_spline_penalty(knots)
        assert np.allclose(S @ np.ones(knots.size), 0.0, atol=1e-10)
        assert np.allclose(S @ (2.0 + 3.0 * knots), 0.0, atol=1e-10)
        assert penalty_rank(S) == knots.size - 2

    def test_cyclic_penalty_null_space(self):
        """The cyclic spline penalty only leaves constants unpenalized."""
        knots = np.linspace(0.0, 1.0, 7)
        S = cyclic_spline_penalty(knots)
        assert S.shape == (6, 6)
        assert np.allclose(S @ np.ones(6), 0.0, atol=1e-10)
        assert penalty_rank(S) == 5

    def test_penalty_rank_of_zero(self):
        """An all-zero matrix has rank zero."""
        assert penalty_rank(np.zeros((3, 3))) == 0

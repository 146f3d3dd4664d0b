"""
Tests for the REML score and smoothing parameter uncertainty helpers.
"""

import numpy as np
import pytest
from numpy.testing import assert_allclose

from pydsm.families import Family, get_family
from pydsm.exceptions import ValidationError
from pydsm.smoothing import (
    invert_curvature,
    log_pseudo_determinant,
    penalty_rank,
    reml_score,
)
from pydsm.utils import lognormal_interval


class TestMatrixHelpers:
    """Tests for rank, pseudo-determinant and curvature inversion."""

    def test_penalty_rank(self):
        """Zero eigenvalues do not count towards the rank."""
        assert penalty_rank(np.diag([0.0, 1.0, 2.0])) == 2
        assert penalty_rank(np.zeros((3, 3))) == 0

    def test_log_pseudo_determinant(self):
        """Only the largest eigenvalues enter the pseudo-determinant."""
        P = np.diag([0.0, 2.0, 3.0])
        assert log_pseudo_determinant(P, 2) == pytest.approx(np.log(6.0))
        assert log_pseudo_determinant(P, 0) == 0.0

    def test_invert_curvature(self):
        """Negative curvature directions are dropped."""
        H = np.diag([4.0, -1.0])
        assert_allclose(invert_curvature(H), np.diag([0.25, 0.0]))

        A = np.array([[2.0, 0.5], [0.5, 1.0]])
        assert_allclose(invert_curvature(A), np.linalg.inv(A))


class TestREML:
    """Tests for the Laplace REML score."""

    def test_score_finite(self, observer_model):
        """REML score of a fitted model is finite."""
        assert np.isfinite(reml_score(observer_model.fit_))

    def test_score_depends_on_lam(self, observer_model):
        """Scores at very different smoothing parameters differ."""
        fit = observer_model.fit_
        rank = penalty_rank(fit.penalty())
        rough = observer_model.refit_at([[1e-3, 1e-3]])
        smooth = observer_model.refit_at([[1e3, 1e3]])
        assert reml_score(rough, rank) != pytest.approx(reml_score(smooth, rank))


class TestFamilies:
    """Tests for response families and the log-normal interval."""

    def test_poisson(self):
        """Poisson has known scale and a log link."""
        family = get_family("poisson")
        assert family.scale_known
        assert_allclose(family.linkinv(family.linkfun(np.array([0.5, 2.0]))), [0.5, 2.0])
        assert family.pearson_scale(np.array([1.0, 3.0]), np.array([2.0, 2.0]), np.ones(2), 1.0) == 1.0

    def test_quasipoisson_scale(self):
        """Quasi-Poisson estimates dispersion from Pearson residuals."""
        family = get_family("quasipoisson")
        y = np.array([0.0, 4.0, 1.0, 5.0])
        mu = np.full(4, 2.5)
        expected = np.sum((y - mu) ** 2 / mu) / (4 - 1.0)
        assert family.pearson_scale(y, mu, np.ones(4), 1.0) == pytest.approx(expected)

    def test_deviance_zero_at_saturation(self):
        """Deviance vanishes when the means equal the data."""
        family = get_family("poisson")
        y = np.array([0.0, 1.0, 4.0])
        assert family.deviance(y, np.where(y > 0, y, 1e-12), np.ones(3)) == pytest.approx(0.0, abs=1e-9)

    def test_unsupported_link(self):
        """Only the log link is available."""
        with pytest.raises(ValidationError):
            Family(name="poisson", link="identity").linkinv(np.zeros(2))
        with pytest.raises(ValidationError):
            get_family("binomial")

    def test_lognormal_interval(self):
        """Log-normal interval is multiplicative around the estimate."""
        lower, upper = lognormal_interval(np.array([100.0]), np.array([20.0]))
        assert lower[0] < 100.0 < upper[0]
        assert_allclose(lower * upper, [100.0 ** 2])
        c = np.exp(1.959964 * np.sqrt(np.log(1 + 0.2 ** 2)))
        assert_allclose(upper, [100.0 * c], rtol=1e-6)

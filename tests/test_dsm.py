"""
Tests for density surface models and GAM services.
"""

from types import SimpleNamespace

import numpy as np
import pandas as pd
import pytest
from numpy.testing import assert_allclose

from pydsm import DSM, obs_exp
from pydsm.exceptions import ValidationError
from pydsm.models.gam import (
    TermSpec,
    _pirls_converged,
    flatten_lam,
    parse_term,
    parse_terms,
    unflatten_lam,
)


class TestTerms:
    """Tests for model term parsing."""

    def test_parse_smooth(self):
        """One-variable smooths keep the default basis size."""
        spec = parse_term("s(depth)", n_splines=8)
        assert spec == TermSpec(kind="s", columns=("depth",), n_splines=8)
        assert spec.n_lam == 1

    def test_bivariate_smooth_is_tensor(self):
        """s(x, y) becomes a tensor product smooth with one lambda per margin."""
        spec = parse_term("s(x, y, k=5)")
        assert spec.kind == "te"
        assert spec.columns == ("x", "y")
        assert spec.n_splines == 5
        assert spec.n_lam == 2
        assert str(spec) == "te(x, y)"

    def test_linear_and_factor(self):
        """Linear and factor terms take one covariate and no basis size."""
        assert parse_term("l(depth)").n_splines is None
        assert parse_term("f(observer)").kind == "f"
        with pytest.raises(ValidationError):
            parse_term("f(a, b)")

    @pytest.mark.parametrize("term", ["x + y", "s()", "s(a, b, c)", "g(x)"])
    def test_invalid_terms(self, term):
        """Unparseable terms are rejected."""
        with pytest.raises(ValidationError):
            parse_term(term)

    def test_no_terms(self):
        """A model needs at least one term."""
        with pytest.raises(ValidationError):
            parse_terms([])

    def test_lam_flattening(self):
        """Per-term smoothing parameters flatten and restore."""
        lam = [[0.1, 2.0], [5.0]]
        flat = flatten_lam(lam)
        assert_allclose(flat, [0.1, 2.0, 5.0])
        assert unflatten_lam(flat * 2, lam) == [[0.2, 4.0], [10.0]]


class TestDSM:
    """Tests for the DSM class."""

    def test_initialization(self):
        """Test model initialization."""
        model = DSM(terms=["s(x, y)", "s(depth)"], n_splines=8)

        assert model.terms == ["s(x, y)", "s(depth)"]
        assert model.n_splines == 8
        assert model.response == "count"
        assert model.supports_varprop
        assert not model.is_fitted_

    def test_invalid_options(self):
        """Unknown responses, engines and families are rejected."""
        with pytest.raises(ValidationError):
            DSM(response="N")
        with pytest.raises(ValidationError):
            DSM(engine="glm")
        with pytest.raises(ValidationError):
            DSM(family="tweedie")
        with pytest.raises(ValidationError):
            DSM(random=["observer"])

    def test_gamm_capability(self):
        """Mixed models cannot be used for variance propagation."""
        model = DSM(engine="gamm", random=["observer"])
        assert not model.supports_varprop

    def test_unfitted_raises(self, grid):
        """Predicting before fitting raises."""
        with pytest.raises(RuntimeError, match="not fitted"):
            DSM().predict(grid)

    def test_fit(self, survey, observer_model):
        """Fitting aggregates counts per segment and converges."""
        assert observer_model.is_fitted_
        assert observer_model.fit_.converged
        assert observer_model.covariates_ == ["x", "y"]
        counts = observer_model.segment_data_["count"]
        assert counts.sum() == survey.observations["size"].sum()
        assert len(observer_model.lam_) == 1
        assert len(observer_model.lam_[0]) == 2

    def test_offset_is_effective_area(self, survey, observer_model, observer_detection):
        """Offset is the log of covered area times detection probability."""
        segments = survey.segments
        expected = observer_detection.effective_area(segments, segments["effort"])
        assert_allclose(observer_model.offset_, np.log(expected))

    def test_predict(self, survey, observer_model, grid):
        """Predicted abundance is positive and near the simulated total."""
        pred = observer_model.predict(grid)
        assert pred.shape == (len(grid),)
        assert np.all(pred > 0)
        assert 0.6 * survey.true_abundance < pred.sum() < 1.5 * survey.true_abundance

    def test_predict_offset_argument(self, observer_model, grid):
        """An explicit offset overrides the off_set column."""
        base = observer_model.predict(grid)
        assert_allclose(observer_model.predict(grid, off_set=2.0), 2.0 * base)
        link = observer_model.predict(grid, type="link")
        assert_allclose(np.exp(link), base)

    def test_predict_needs_offset(self, observer_model, grid):
        """Grids without an area need an explicit offset."""
        with pytest.raises(ValidationError, match="off_set"):
            observer_model.predict(grid.drop(columns="off_set"))
        with pytest.raises(ValidationError):
            observer_model.predict(grid, off_set=np.ones(3))

    def test_fitted_values(self, observer_model):
        """Fitted values sum to roughly the observed counts."""
        fitted = observer_model.predict()
        observed = observer_model.segment_data_["count"].sum()
        assert fitted.sum() == pytest.approx(observed, rel=0.05)

    def test_refit_at_same_lam(self, observer_model):
        """Refitting at the fitted smoothing parameters reproduces the fit."""
        refit = observer_model.refit_at(observer_model.lam_)
        assert_allclose(refit.coef, observer_model.coef_, rtol=1e-6, atol=1e-8)

    def test_vcov(self, observer_model):
        """Bayesian covariance is symmetric positive semi-definite."""
        vp = observer_model.vcov("Vp")
        n_coef = len(observer_model.coef_)
        assert vp.shape == (n_coef, n_coef)
        assert_allclose(vp, vp.T, atol=1e-10)
        assert np.linalg.eigvalsh(vp).min() > -1e-10
        with pytest.raises(ValidationError):
            observer_model.vcov("Vu")

    def test_vcov_is_bayesian(self, observer_model):
        """Vp inverts the penalised Hessian and exceeds the frequentist covariance."""
        fit = observer_model.fit_
        vp = fit.vp()
        H = fit.penalised_hessian()
        assert_allclose(H @ vp @ H / fit.scale, H, atol=1e-6 * np.abs(H).max())
        frequentist = np.asarray(fit.gam.statistics_["cov"], dtype=float)
        gap = np.linalg.eigvalsh(vp - frequentist)
        assert gap.min() > -1e-6 * np.abs(vp).max()
        assert gap.max() > 0

    @pytest.mark.slow
    def test_unconditional_vcov(self, survey, observer_detection):
        """Vc adds non-negative variance to Vp."""
        model = DSM(terms=["s(x, y)"], n_splines=6).fit(
            survey.segments, survey.observations, observer_detection
        )
        vp = model.vcov("Vp")
        vc = model.vcov("Vc")
        assert vc.shape == vp.shape
        assert np.linalg.eigvalsh(vc - vp).min() > -1e-8 * np.abs(vp).max()
        assert model.vcov("Vc") is vc

    def test_fixed_lam(self, survey, hn_detection):
        """A fixed smoothing parameter is applied to every margin."""
        model = DSM(terms=["s(x, y)"], n_splines=6, lam=10.0).fit(
            survey.segments, survey.observations, hn_detection
        )
        assert model.lam_ == [[10.0, 10.0]]

    def test_abundance_response(self, survey, hn_detection):
        """Horvitz-Thompson responses use the covered area as offset."""
        model = DSM(terms=["s(x, y)"], n_splines=6, response="abundance_est").fit(
            survey.segments, survey.observations, hn_detection
        )
        nhat = model.segment_data_["abundance_est"]
        p = hn_detection.detection_probability(survey.observations)
        assert nhat.sum() == pytest.approx(np.sum(survey.observations["size"] / p))
        assert_allclose(model.offset_, 0.0, atol=1e-12)

    def test_density_response(self, survey, hn_detection):
        """Density responses are weighted by covered area."""
        model = DSM(terms=["s(x, y)"], n_splines=6, response="density_est").fit(
            survey.segments, survey.observations, hn_detection
        )
        assert_allclose(model.fit_.weights, 1.0)
        assert_allclose(model.fit_.exposure, 1.0)

    def test_gamm_fit(self, survey, hn_detection):
        """Random intercepts enter as factor terms."""
        model = DSM(terms=["s(x, y)"], n_splines=6, engine="gamm", random=["observer"]).fit(
            survey.segments, survey.observations, hn_detection
        )
        assert model.factor_levels_ == {"observer": ["A", "B"]}
        assert model.covariates_ == ["x", "y", "observer"]
        pred = model.predict(survey.segments.assign(off_set=1.0))
        assert np.all(np.isfinite(pred))

    def test_missing_columns(self, survey, hn_detection):
        """Segment data must carry the id and effort columns."""
        with pytest.raises(ValidationError, match="effort"):
            DSM().fit(survey.segments.drop(columns="effort"), survey.observations, hn_detection)
        with pytest.raises(ValidationError):
            DSM().fit(survey.segments, survey.observations, None)

    def test_unknown_segments(self, survey, hn_detection):
        """Observations must refer to existing segments."""
        obs = survey.observations.copy()
        obs.loc[0, "sample_label"] = 9999
        with pytest.raises(ValidationError, match="unknown segments"):
            DSM().fit(survey.segments, obs, hn_detection)

    def test_summary(self, observer_model):
        """Summary reports fit statistics."""
        summary = observer_model.summary()
        assert summary.response == "count"
        assert summary.family == "poisson"
        assert summary.terms == ["te(x, y)"]
        assert summary.n_segments == 100
        assert 0 < summary.deviance_explained < 1
        assert summary.edof > 1
        assert "Density Surface Model" in repr(summary)

    def test_get_params(self, observer_model):
        """Constructor parameters are exposed."""
        params = observer_model.get_params()
        assert params["n_splines"] == 6
        assert params["seglen_varname"] == "effort"
        assert "fit_" not in params

    def test_set_params(self):
        """Known parameters can be changed, unknown ones are rejected."""
        model = DSM().set_params(n_splines=12, lam=5.0)
        assert model.n_splines == 12
        assert model.lam == 5.0
        with pytest.raises(ValidationError):
            model.set_params(degree=3)

    def test_save_load(self, tmp_path, observer_model, grid):
        """Saved models predict identically after loading."""
        path = tmp_path / "dsm.pkl"
        observer_model.save(path)
        loaded = DSM.load(path)
        assert loaded.is_fitted_
        assert_allclose(loaded.predict(grid), observer_model.predict(grid))
        assert loaded.detection_.n_params == 2


class TestObsExp:
    """Tests for observed versus expected tables."""

    def test_by_factor(self, observer_model):
        """Totals per observer add up to the overall totals."""
        table = obs_exp(observer_model, "observer")
        assert list(table.columns) == ["observed", "expected"]
        assert list(table.index) == ["A", "B"]
        assert table["observed"].sum() == observer_model.segment_data_["count"].sum()
        assert table["expected"].sum() == pytest.approx(observer_model.predict().sum())

    def test_with_cut(self, observer_model):
        """Cut points bin a continuous covariate."""
        table = obs_exp(observer_model, "depth", cut=[-np.inf, 100, 200, np.inf])
        assert len(table) == 3
        assert isinstance(table.index, pd.CategoricalIndex)

    def test_unknown_covariate(self, observer_model):
        """Covariates must be in the segment data."""
        with pytest.raises(ValidationError):
            obs_exp(observer_model, "beaufort")


class TestPirlsConvergence:
    """Tests for reading PIRLS convergence from the pygam logs."""

    def test_converged_on_last_iteration(self):
        """Meeting the tolerance on the final allowed iteration counts."""
        gam = SimpleNamespace(logs_={"diffs": [0.5, 1e-3, 1e-8]}, tol=1e-6, max_iter=3)
        assert _pirls_converged(gam)

    def test_not_converged(self):
        """A final coefficient change above the tolerance does not count."""
        gam = SimpleNamespace(logs_={"diffs": [0.5, 1e-3, 1e-4]}, tol=1e-6, max_iter=3)
        assert not _pirls_converged(gam)

    def test_no_iterations_logged(self):
        """Without a log there is no evidence of convergence."""
        assert not _pirls_converged(SimpleNamespace(logs_={}, tol=1e-6, max_iter=3))

    def test_fitted_model(self, observer_model):
        """The fitted model met its tolerance."""
        assert observer_model.fit_.gam.logs_["diffs"][-1] < observer_model.tol
        assert observer_model.fit_.converged

"""
Refit of a density surface model with a detection random effect.

Uncertainty in the detection parameters ``theta`` enters the count model
through the log offset. To first order a shift ``delta`` in the parameters
changes the linear predictor of segment ``j`` by ``d_j @ delta``, where
``d_j`` is the derivative of the log offset. Treating ``delta`` as a
zero-mean random effect with covariance ``Sigma`` (the inverse of the
detection Hessian) and refitting the spatial model jointly with it gives a
coefficient covariance that carries the detection uncertainty.

``Sigma`` is factorised as ``L L^T`` and the effect is written
``delta = L u`` with ``u ~ N(0, I)``. Each column of ``D L`` becomes a
ridge-penalised linear term in the pygam model. The spatial smoothing
parameters stay at their original estimates; the shared smoothing parameter
of the random effect is re-estimated by REML starting from the value that
makes the prior exactly ``N(0, Sigma)``.

References
----------
.. [1] Bravington, M. V., Miller, D. L., & Hedley, S. L. (2021). Variance
       propagation for density surface models. Journal of Agricultural,
       Biological and Environmental Statistics, 26, 306-323.
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

import numpy as np
from numpy.typing import NDArray
import pandas as pd
from scipy import optimize

from pydsm.config import VAR_TYPES, VarPropOptions
from pydsm.exceptions import (
    ConvergenceWarning,
    UnsupportedModelError,
    ValidationError,
)
from pydsm.models.dsm import DSM
from pydsm.models.gam import GAMFit, fit_gam
from pydsm.smoothing import penalty_rank, reml_score, unconditional_vcov
from pydsm.utils import symmetrize
from pydsm.varprop.hessian import detection_hessian, offset_derivatives

logger = logging.getLogger(__name__)

_LOG_LAM_BOUNDS = (np.log(1e-6), np.log(1e6))
# REML improvements below this are PIRLS noise
_FLAT_REML = 1e-3


def check_varprop_model(model: DSM) -> None:
    """Raise if variance propagation is not possible for ``model``.

    Raises
    ------
    UnsupportedModelError
        Mixed models and models without a genuine detection function
    ValidationError
        Models whose response is not the raw count
    """
    if not model.supports_varprop:
        raise UnsupportedModelError("GAMMs are not supported.")
    if model.response != "count":
        raise ValidationError(
            "Variance propagation can only be used with count as the response."
        )
    detection = model.detection_
    if detection is None or detection.kind == "null" or detection.is_placeholder:
        raise UnsupportedModelError(
            "No detection function in this analysis, use dsm_var_gam"
        )


def covariance_factor(hessian: NDArray, tol: float = 1e-10) -> NDArray:
    """Factor ``L`` with ``L @ L.T == pinv(hessian)``.

    Only directions with positive curvature are kept, so ``L`` has one
    column per positive eigenvalue and none for a zero Hessian.
    """
    hessian = symmetrize(np.asarray(hessian, dtype=float))
    eigenvalues, eigenvectors = np.linalg.eigh(hessian)
    if eigenvalues.size == 0 or eigenvalues.max() <= 0:
        return np.zeros((hessian.shape[0], 0))
    keep = eigenvalues > tol * eigenvalues.max()
    return eigenvectors[:, keep] / np.sqrt(eigenvalues[keep])


@dataclass
class AugmentedModel:
    """A density surface model refitted with the detection random effect.

    Attributes
    ----------
    fit : GAMFit
        The refitted pygam model
    original : DSM
        Model the refit was built from
    loadings : NDArray
        Factor ``L`` mapping random effects to detection parameter shifts
    re_lam : float
        Smoothing parameter of the random effect terms
    converged : bool
        Whether the final PIRLS fit converged
    re_lam_converged : bool
        Whether the random effect smoothing parameter search converged
    deriv : NDArray
        Derivatives of the segment log offsets with respect to the
        detection parameters
    """
    fit: GAMFit
    original: DSM
    loadings: NDArray
    re_lam: float = 1.0
    converged: bool = True
    re_lam_converged: bool = True
    deriv: Optional[NDArray] = field(default=None, repr=False)
    _vc: Optional[NDArray] = field(default=None, repr=False)

    @property
    def n_random(self) -> int:
        return self.loadings.shape[1]

    @property
    def reliable(self) -> bool:
        return self.converged and self.re_lam_converged

    @property
    def coef(self) -> NDArray:
        return self.fit.coef

    @property
    def scale(self) -> float:
        return self.fit.scale

    @property
    def family(self):
        return self.fit.family

    @property
    def random_effects(self) -> NDArray:
        """Estimated random effects ``u``."""
        idx = self.fit.re_indices(len(self.original.term_specs_), self.n_random)
        return self.coef[idx]

    @property
    def prediction_coef(self) -> NDArray:
        """Original model coefficients in the refit's layout, random effects zero.

        Point predictions use these, so they equal the original model's
        exactly. When the counts carry information about detection the refit
        moves its own coefficients; :func:`varprop_check` reports that shift.
        """
        coef = np.zeros_like(self.coef)
        random = self.fit.re_indices(len(self.original.term_specs_), self.n_random)
        shared = np.setdiff1d(np.arange(coef.size), random)
        coef[shared] = self.original.coef_
        return coef

    @property
    def detection_shift(self) -> NDArray:
        """Detection parameter shift ``L @ u`` implied by the refit."""
        if self.n_random == 0:
            return np.zeros(self.loadings.shape[0])
        return self.loadings @ self.random_effects

    def fitted_values(self) -> NDArray:
        return self.fit.fitted_values()

    def lpmatrix(self, newdata: pd.DataFrame) -> NDArray:
        """Linear predictor matrix with the random effect columns at zero."""
        X = self.original._covariate_matrix(newdata)
        X = np.column_stack([X, np.zeros((len(newdata), self.n_random))])
        return self.fit.lpmatrix(X)

    def refit_at(self, lam: List[List[float]]) -> GAMFit:
        """Refit at other smoothing parameters; the last entry is the
        random effect's."""
        if self.n_random:
            spatial, re_lam = lam[:-1], lam[-1][0]
        else:
            spatial, re_lam = lam, self.re_lam
        return _fit_augmented(self.original, self.fit.X, self.n_random, spatial, re_lam, self.scale)

    def vcov(self, var_type: str = "Vp") -> NDArray:
        """Coefficient covariance of the refit (``'Vp'`` or ``'Vc'``)."""
        if var_type not in VAR_TYPES:
            raise ValidationError(f"var_type must be one of {VAR_TYPES}, got {var_type!r}")
        if var_type == "Vp":
            return self.fit.vp()
        if self._vc is None:
            lam = self.original.lam_ + ([[self.re_lam]] if self.n_random else [])
            self._vc = unconditional_vcov(self.fit, self.refit_at, lam=lam)
        return self._vc


def _fit_augmented(
    model: DSM,
    X: NDArray,
    n_random: int,
    lam: List[List[float]],
    re_lam: float,
    scale: Optional[float],
) -> GAMFit:
    base = model.fit_
    return fit_gam(
        model._make_terms(lam, n_random=n_random, random_lam=re_lam),
        X, base.y, base.exposure, base.weights, model.family_,
        max_iter=model.max_iter, tol=model.tol, scale=scale,
    )


def _search_re_lam(
    model: DSM,
    X: NDArray,
    n_random: int,
    scale: float,
) -> Tuple[float, bool]:
    """REML estimate of the random effect smoothing parameter."""
    lam = model.lam_
    start = _fit_augmented(model, X, n_random, lam, 1.0, scale)
    rank = penalty_rank(start.penalty())

    def score(log_lam: float) -> float:
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", ConvergenceWarning)
            fit = _fit_augmented(model, X, n_random, lam, float(np.exp(log_lam)), scale)
        return reml_score(fit, rank)

    at_start = reml_score(start, rank)
    result = optimize.minimize_scalar(
        score, bounds=_LOG_LAM_BOUNDS, method="bounded", options={"xatol": 1e-3},
    )
    if at_start - result.fun < _FLAT_REML:
        # random effect columns the spatial terms already span leave REML flat
        logger.debug(
            f"REML profile flat in the random effect smoothing parameter "
            f"(gain {at_start - result.fun:.2e}), keeping 1"
        )
        return 1.0, True
    re_lam = float(np.exp(result.x))
    logger.debug(
        f"Random effect smoothing parameter {re_lam:.4g} "
        f"(REML {result.fun:.6f}, {result.nfev} evaluations)"
    )
    return re_lam, bool(result.success)


def refit_augmented(
    model: DSM,
    hessian: Optional[NDArray] = None,
    options: Optional[VarPropOptions] = None,
) -> AugmentedModel:
    """Refit ``model`` with the detection random effect.

    Parameters
    ----------
    model : DSM
        Fitted count model with a detection function
    hessian : NDArray, optional
        Hessian of the detection negative log-likelihood; computed
        numerically when omitted
    options : VarPropOptions, optional
        Step size and random effect smoothing settings

    Returns
    -------
    AugmentedModel

    Raises
    ------
    UnsupportedModelError
        Mixed model, or no genuine detection function
    ValidationError
        Response other than count, or a Hessian of the wrong shape
    """
    model._check_fitted()
    check_varprop_model(model)
    options = options or VarPropOptions()
    detection = model.detection_

    if hessian is None:
        hessian = detection_hessian(detection, options.hessian_step)
    else:
        hessian = np.asarray(hessian, dtype=float)
        n_params = detection.n_params
        if hessian.shape != (n_params, n_params):
            raise ValidationError(
                f"hessian must be {n_params}x{n_params} to match the detection "
                f"parameters, got shape {hessian.shape}"
            )

    loadings = covariance_factor(hessian)
    n_random = loadings.shape[1]
    deriv = offset_derivatives(detection, model.segment_data_, options.hessian_step / 10)
    X = np.column_stack([model.fit_.X, deriv @ loadings])
    scale = model.fit_.scale
    logger.info(
        f"Refitting DSM with {n_random} detection random effect columns "
        f"({detection.n_params} detection parameters)"
    )

    re_lam, lam_ok = 1.0, True
    if n_random and options.re_smoothing == "estimate":
        re_lam, lam_ok = _search_re_lam(model, X, n_random, scale)
        if not lam_ok:
            msg = "Search for the random effect smoothing parameter did not converge"
            logger.warning(msg)
            warnings.warn(msg, ConvergenceWarning, stacklevel=2)

    if model.family_.scale_known:
        fit = _fit_augmented(model, X, n_random, model.lam_, re_lam, scale)
    else:
        logger.debug("Re-estimating the scale parameter of the refit")
        fit = _fit_augmented(model, X, n_random, model.lam_, re_lam, None)

    augmented = AugmentedModel(
        fit=fit,
        original=model,
        loadings=loadings,
        re_lam=re_lam,
        converged=fit.converged,
        re_lam_converged=lam_ok,
        deriv=deriv,
    )
    logger.info(
        f"Refit done. EDF={fit.edof:.2f}, random effect lambda={re_lam:.4g}, "
        f"detection shift={np.round(augmented.detection_shift, 6).tolist()}"
    )
    return augmented

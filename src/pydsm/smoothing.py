"""
Smoothing parameter uncertainty.

The coefficient covariance reported by pygam is conditional on the smoothing
parameters. The unconditional covariance adds a first order correction for
their estimation (Wood, Pya & Saefken 2016, section 3.1):

    Vc = Vp + J V_rho J^T

where ``rho = log(lambda)``, ``J = d beta / d rho`` and ``V_rho`` is the
inverse Hessian of the Laplace approximate REML score with respect to
``rho``. Both derivatives are taken by finite differences of refits.

References
----------
.. [1] Wood, S. N., Pya, N., & Saefken, B. (2016). Smoothing parameter and
       model selection for general smooth models. Journal of the American
       Statistical Association, 111(516), 1548-1563.
"""

from __future__ import annotations

import logging
from typing import Callable, List, Optional

import numpy as np
from numpy.typing import NDArray

from pydsm.models.gam import GAMFit, flatten_lam, unflatten_lam
from pydsm.numderiv import numerical_hessian, numerical_jacobian
from pydsm.utils import symmetrize

logger = logging.getLogger(__name__)


def penalty_rank(penalty: NDArray, tol: float = 1e-10) -> int:
    """Numerical rank of a (positive semi-definite) penalty matrix."""
    eigenvalues = np.linalg.eigvalsh(symmetrize(penalty))
    if eigenvalues.size == 0 or eigenvalues.max() <= 0:
        return 0
    return int(np.sum(eigenvalues > tol * eigenvalues.max()))


def log_pseudo_determinant(matrix: NDArray, rank: int) -> float:
    """Sum of the logs of the ``rank`` largest eigenvalues."""
    if rank == 0:
        return 0.0
    eigenvalues = np.sort(np.linalg.eigvalsh(symmetrize(matrix)))[::-1]
    return float(np.sum(np.log(np.maximum(eigenvalues[:rank], np.finfo(float).tiny))))


def reml_score(fit: GAMFit, rank: Optional[int] = None) -> float:
    """Laplace approximate negative restricted log-likelihood.

    Parameters
    ----------
    fit : GAMFit
        Fitted model
    rank : int, optional
        Rank of the total penalty. Holding it fixed across smoothing
        parameters keeps scores comparable; computed from ``fit`` if omitted.

    Returns
    -------
    float
        REML score, up to a constant that does not depend on the smoothing
        parameters
    """
    P = fit.penalty()
    beta = fit.coef
    if rank is None:
        rank = penalty_rank(P)

    penalised = fit.deviance() + float(beta @ P @ beta)
    _, logdet_h = np.linalg.slogdet(fit.penalised_hessian())
    return penalised / (2.0 * fit.scale) + 0.5 * logdet_h - 0.5 * log_pseudo_determinant(P, rank)


def invert_curvature(hessian: NDArray, tol: float = 1e-8) -> NDArray:
    """Pseudo-inverse keeping only directions of positive curvature."""
    eigenvalues, eigenvectors = np.linalg.eigh(symmetrize(hessian))
    if eigenvalues.size == 0:
        return hessian.copy()
    keep = eigenvalues > tol * max(eigenvalues.max(), 0.0)
    keep &= eigenvalues > 0
    inv = np.zeros_like(eigenvalues)
    inv[keep] = 1.0 / eigenvalues[keep]
    return (eigenvectors * inv) @ eigenvectors.T


def unconditional_vcov(
    fit: GAMFit,
    refit: Callable[[List[List[float]]], GAMFit],
    lam: Optional[List[List[float]]] = None,
    step: float = 1e-2,
) -> NDArray:
    """Covariance of the coefficients corrected for smoothing uncertainty.

    Parameters
    ----------
    fit : GAMFit
        Model at the estimated smoothing parameters
    refit : callable
        Refits the same model at other smoothing parameters (per-term lists)
    lam : list of list of float, optional
        Smoothing parameters at which to differentiate, in the layout
        ``refit`` expects. Defaults to ``fit.lam``.
    step : float
        Relative finite difference step on the log smoothing parameters

    Returns
    -------
    NDArray
        Unconditional covariance matrix ``Vc``
    """
    lam = fit.lam if lam is None else lam
    rho = np.log(flatten_lam(lam))
    vp = fit.vp()
    if rho.size == 0:
        return vp
    rank = penalty_rank(fit.penalty())

    def fit_at(r: NDArray) -> GAMFit:
        return refit(unflatten_lam(np.exp(r), lam))

    logger.debug(f"Computing unconditional covariance over {rho.size} smoothing parameters")
    hess = numerical_hessian(lambda r: reml_score(fit_at(r), rank), rho, step)
    v_rho = invert_curvature(hess)
    jac = numerical_jacobian(lambda r: fit_at(r).coef, rho, step)
    logger.debug(f"REML Hessian eigenvalues: {np.linalg.eigvalsh(hess)}")
    return symmetrize(vp + jac @ v_rho @ jac.T)

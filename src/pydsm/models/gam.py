"""
GAM services on top of pygam.

Density surface models and their variance-propagation refits share the
machinery in this module:

- parsing mgcv-style term strings (``"s(x, y)"``, ``"s(depth)"``,
  ``"l(depth)"``, ``"f(beaufort)"``) into :class:`TermSpec` objects,
- building pygam terms with explicit smoothing parameters so that a model
  can be refitted at exactly the smoothing parameters of another,
- fitting a :class:`pygam.PoissonGAM` with an exposure (the response-scale
  offset) and collecting what the variance code needs in a :class:`GAMFit`.

pygam has no isotropic thin plate spline, so a smooth of two variables
``s(x, y)`` is built as the tensor product ``te(x, y)``.

References
----------
.. [1] Wood, S. N. (2017). Generalized Additive Models: An Introduction with R.
       Chapman and Hall/CRC.
.. [2] Servén, D., & Brummitt, C. (2018). pyGAM: Generalized Additive Models
       in Python. Zenodo. https://doi.org/10.5281/zenodo.1208723
"""

from __future__ import annotations

import logging
import re
import warnings
from dataclasses import dataclass, field
from functools import reduce
from operator import add
from typing import List, Optional, Sequence, Tuple

import numpy as np
from numpy.typing import NDArray
from scipy import sparse

from pygam import PoissonGAM, f, l, s, te

from pydsm.exceptions import ConvergenceWarning, ValidationError
from pydsm.families import Family
from pydsm.utils import symmetrize

logger = logging.getLogger(__name__)

# diagonal pygam adds to the penalty to condition PIRLS
_PIRLS_RIDGE = np.sqrt(np.finfo(float).eps)

_TERM_PATTERN = re.compile(r"^\s*(s|te|l|f)\s*\(\s*([^)]*?)\s*\)\s*$")


@dataclass(frozen=True)
class TermSpec:
    """One model term.

    Attributes
    ----------
    kind : {'s', 'te', 'l', 'f'}
        Smooth, tensor-product smooth, linear or factor term
    columns : tuple of str
        Covariates the term uses
    n_splines : int, optional
        Basis size per margin (smooth terms only)
    """
    kind: str
    columns: Tuple[str, ...]
    n_splines: Optional[int] = None

    @property
    def n_lam(self) -> int:
        """Number of smoothing parameters the term carries."""
        return len(self.columns) if self.kind in ("s", "te") else 1

    def __str__(self) -> str:
        return f"{self.kind}({', '.join(self.columns)})"


def parse_term(term: str | TermSpec, n_splines: int = 10) -> TermSpec:
    """Parse a term string such as ``"s(x, y, k=8)"``."""
    if isinstance(term, TermSpec):
        return term
    match = _TERM_PATTERN.match(term)
    if match is None:
        raise ValidationError(f"Cannot parse model term {term!r}")
    kind, body = match.groups()
    columns = []
    k = n_splines
    for token in (t.strip() for t in body.split(",") if t.strip()):
        if token.startswith("k="):
            k = int(token[2:])
        else:
            columns.append(token)
    if not columns:
        raise ValidationError(f"Model term {term!r} names no covariates")
    if kind in ("l", "f") and len(columns) != 1:
        raise ValidationError(f"{kind}() terms take exactly one covariate: {term!r}")
    if kind == "s" and len(columns) > 2:
        raise ValidationError(f"s() terms take one or two covariates: {term!r}")
    if kind == "s" and len(columns) == 2:
        kind = "te"
    return TermSpec(kind=kind, columns=tuple(columns), n_splines=k if kind in ("s", "te") else None)


def parse_terms(terms: Sequence[str | TermSpec], n_splines: int = 10) -> List[TermSpec]:
    """Parse a sequence of term strings."""
    specs = [parse_term(t, n_splines) for t in terms]
    if not specs:
        raise ValidationError("At least one model term is required")
    return specs


def flatten_lam(lam: Sequence[Sequence[float]]) -> NDArray:
    """Flatten per-term smoothing parameters into one vector."""
    return np.array([v for term_lam in lam for v in term_lam], dtype=float)


def unflatten_lam(values: NDArray, like: Sequence[Sequence[float]]) -> List[List[float]]:
    """Inverse of :func:`flatten_lam` for the structure of ``like``."""
    out = []
    i = 0
    for term_lam in like:
        out.append([float(v) for v in values[i:i + len(term_lam)]])
        i += len(term_lam)
    return out


def build_terms(
    specs: Sequence[TermSpec],
    feature_index: dict,
    lam: Optional[Sequence[Sequence[float]]] = None,
    n_random: int = 0,
    random_lam: float = 1.0,
):
    """Build a pygam term list.

    Parameters
    ----------
    specs : sequence of TermSpec
        Model terms
    feature_index : dict
        Covariate name to column position in the model matrix
    lam : list of list of float, optional
        Smoothing parameters per term; pygam defaults when omitted
    n_random : int
        Number of extra random-effect columns appended after the covariates.
        Each becomes an ``l()`` term with an l2 penalty.
    random_lam : float
        Smoothing parameter shared by the random-effect terms

    Returns
    -------
    pygam term or TermList
    """
    terms = []
    for i, spec in enumerate(specs):
        idx = [feature_index[c] for c in spec.columns]
        kwargs = {}
        if lam is not None:
            kwargs["lam"] = lam[i] if spec.kind == "te" else lam[i][0]
        if spec.kind == "s":
            terms.append(s(idx[0], n_splines=spec.n_splines, **kwargs))
        elif spec.kind == "te":
            terms.append(te(*idx, n_splines=spec.n_splines, **kwargs))
        elif spec.kind == "l":
            terms.append(l(idx[0], **kwargs))
        else:
            terms.append(f(idx[0], **kwargs))
    first_random = len(feature_index)
    for j in range(n_random):
        terms.append(l(first_random + j, lam=random_lam, penalties="l2"))
    return reduce(add, terms)


@dataclass
class GAMFit:
    """A fitted pygam model together with the data it was fitted to.

    Attributes
    ----------
    gam : PoissonGAM
        Fitted pygam model
    X : NDArray
        Model covariate matrix used in fitting
    y : NDArray
        Response
    exposure : NDArray
        Response-scale offset (``exp`` of the link-scale offset)
    weights : NDArray
        Prior weights
    family : Family
        Response family
    lam : list of list of float
        Smoothing parameters per term (excluding the intercept)
    scale : float
        Scale parameter (1 for known-scale families)
    converged : bool
        Whether PIRLS met its tolerance
    """
    gam: PoissonGAM
    X: NDArray
    y: NDArray
    exposure: NDArray
    weights: NDArray
    family: Family
    lam: List[List[float]]
    scale: float = 1.0
    converged: bool = True
    _lp: Optional[NDArray] = field(default=None, repr=False)

    @property
    def coef(self) -> NDArray:
        return np.asarray(self.gam.coef_, dtype=float)

    @property
    def edof(self) -> float:
        return float(self.gam.statistics_['edof'])

    def lpmatrix(self, X: Optional[NDArray] = None) -> NDArray:
        """Linear predictor matrix (link scale, without offset)."""
        if X is None:
            if self._lp is None:
                self._lp = _dense(self.gam._modelmat(self.X))
            return self._lp
        return _dense(self.gam._modelmat(X))

    def linear_predictor(self) -> NDArray:
        return self.lpmatrix() @ self.coef

    def fitted_values(self) -> NDArray:
        """Fitted means on the response scale including the exposure."""
        return self.exposure * self.family.linkinv(self.linear_predictor())

    def working_weights(self) -> NDArray:
        """IRLS weights for a log link: prior weight times mean."""
        return self.weights * self.fitted_values()

    def deviance(self) -> float:
        return self.family.deviance(self.y, self.fitted_values(), self.weights)

    def penalty(self) -> NDArray:
        """Total penalty matrix, smoothing parameters included."""
        return _dense(self.gam._P())

    def penalised_hessian(self) -> NDArray:
        """``X^T W X + P`` at the fitted coefficients, with the PIRLS ridge."""
        X = self.lpmatrix()
        H = X.T @ (self.working_weights()[:, None] * X) + self.penalty()
        return symmetrize(H) + _PIRLS_RIDGE * np.eye(H.shape[0])

    def vp(self) -> NDArray:
        """Bayesian posterior covariance of the coefficients.

        ``(X^T W X + P)^-1`` times the scale. pygam's ``statistics_['cov']``
        drops the penalty from the sandwich, so it is the frequentist
        covariance and cannot carry the prior of a penalised random effect.
        """
        eigenvalues, eigenvectors = np.linalg.eigh(self.penalised_hessian())
        return symmetrize((eigenvectors / eigenvalues) @ eigenvectors.T) * self.scale

    def re_indices(self, n_terms: int, n_random: int) -> List[int]:
        """Coefficient positions of the random-effect terms."""
        return [
            self.gam.terms.get_coef_indices(n_terms + j)[0]
            for j in range(n_random)
        ]


def _dense(matrix) -> NDArray:
    if sparse.issparse(matrix):
        return matrix.toarray()
    return np.asarray(matrix, dtype=float)


def read_lam(gam: PoissonGAM) -> List[List[float]]:
    """Smoothing parameters of a fitted pygam model, one list per term."""
    return [
        np.ravel(np.asarray(term.lam, dtype=float)).tolist()
        for term in gam.terms
        if not term.isintercept
    ]


def _pirls_converged(gam: PoissonGAM) -> bool:
    # the diffs callback logs the relative coefficient change of each iteration
    diffs = getattr(gam, 'logs_', {}).get('diffs', [])
    return bool(diffs) and float(diffs[-1]) < gam.tol


def fit_gam(
    terms,
    X: NDArray,
    y: NDArray,
    exposure: NDArray,
    weights: NDArray,
    family: Family,
    max_iter: int = 100,
    tol: float = 1e-6,
    lam_grid: Optional[NDArray] = None,
    scale: Optional[float] = None,
) -> GAMFit:
    """Fit a Poisson GAM with exposure.

    Parameters
    ----------
    terms : pygam terms
        Output of :func:`build_terms`
    X, y, exposure, weights : NDArray
        Model matrix of covariates, response, response-scale offset and
        prior weights
    family : Family
        Response family
    max_iter, tol : int, float
        PIRLS controls
    lam_grid : NDArray, optional
        When given, smoothing parameters are chosen by pygam grid search
        over these values (shared across terms); otherwise the smoothing
        parameters set on ``terms`` are used
    scale : float, optional
        Fixed scale for unknown-scale families. When omitted it is
        estimated from the Pearson statistic of this fit.

    Returns
    -------
    GAMFit
    """
    gam = PoissonGAM(terms, max_iter=max_iter, tol=tol)
    if lam_grid is not None:
        gam.gridsearch(X, y, exposure=exposure, weights=weights, lam=lam_grid, progress=False)
    else:
        gam.fit(X, y, exposure=exposure, weights=weights)
    converged = _pirls_converged(gam)

    fit = GAMFit(
        gam=gam, X=X, y=np.asarray(y, dtype=float), exposure=exposure,
        weights=weights, family=family, lam=read_lam(gam), converged=converged,
    )
    if scale is None:
        scale = family.pearson_scale(fit.y, fit.fitted_values(), weights, fit.edof)
    fit.scale = float(scale)

    if not converged:
        msg = f"PIRLS did not converge in {max_iter} iterations"
        logger.warning(msg)
        warnings.warn(msg, ConvergenceWarning, stacklevel=2)
    return fit

"""
Detection functions for distance sampling.

A detection function models the probability of detecting an animal as a
function of its distance from the transect. This module fits conventional and
multiple-covariate detection functions by maximum likelihood and exposes the
pieces a density surface model needs: the fitted parameter vector, the
log-likelihood surface and the detection probability of a segment.

Three variants share one interface and are told apart by ``kind``:

- :class:`DetectionFunction` (``"single"``): one half-normal or hazard-rate
  model.
- :class:`StratifiedDetection` (``"stratified"``): several detection
  functions, each applying to the segments whose id column selects it.
- :class:`NullDetection` (``"null"``): placeholder for strip transects where
  every animal in the strip is seen. It has no parameters.

Detection covariates must not vary within a segment (e.g. sex or group size
cannot be used) when the function feeds a count model: the segment's
detection probability is computed from the segment's covariate values.

References
----------
.. [1] Buckland, S. T., et al. (2001). Introduction to Distance Sampling.
       Oxford University Press.
.. [2] Marques, F. F. C., & Buckland, S. T. (2003). Incorporating covariates
       into standard line transect analyses. Biometrics, 59(4), 924-935.
"""

from __future__ import annotations

import logging
import warnings
from abc import abstractmethod
from typing import Any, Dict, List, Literal, Optional, Sequence

import numpy as np
from numpy.typing import NDArray
import pandas as pd
from scipy import optimize, stats

from pydsm.base import BaseEstimator
from pydsm.exceptions import ConvergenceWarning, ValidationError

logger = logging.getLogger(__name__)

_GL_NODES, _GL_WEIGHTS = np.polynomial.legendre.leggauss(64)


class DetectionModel(BaseEstimator):
    """Common interface of the detection function variants."""

    kind: str = "single"
    transect: str = "line"

    @property
    def is_placeholder(self) -> bool:
        """True for detection models with nothing to estimate."""
        return self.n_params == 0

    @property
    @abstractmethod
    def n_params(self) -> int:
        """Number of estimated parameters."""

    @property
    @abstractmethod
    def par_(self) -> NDArray:
        """Parameter estimates."""

    @abstractmethod
    def log_likelihood(self, par: Optional[NDArray] = None) -> float:
        """Log-likelihood at ``par`` (default: the estimates)."""

    @abstractmethod
    def detection_probability(
        self,
        data: pd.DataFrame,
        par: Optional[NDArray] = None,
    ) -> NDArray:
        """Probability of detection within truncation for each row."""

    @abstractmethod
    def truncation_for(self, data: pd.DataFrame) -> NDArray:
        """Truncation distance for each row."""

    def covered_area(self, data: pd.DataFrame, effort: NDArray) -> NDArray:
        """Area searched in each segment (before detection correction).

        Line transects cover ``2 * w * length``; point transects cover
        ``pi * w^2`` per visit, with ``effort`` holding the number of visits.
        """
        w = self.truncation_for(data)
        effort = np.asarray(effort, dtype=float)
        if self.transect == "point":
            return np.pi * w ** 2 * effort
        return 2.0 * w * effort

    def effective_area(
        self,
        data: pd.DataFrame,
        effort: NDArray,
        par: Optional[NDArray] = None,
    ) -> NDArray:
        """Covered area multiplied by the detection probability."""
        return self.covered_area(data, effort) * self.detection_probability(data, par)


class DetectionFunction(DetectionModel):
    """Half-normal or hazard-rate detection function.

    The scale parameter depends on covariates through a log link,
    ``sigma = exp(Z @ beta)``, where ``Z`` holds an intercept, continuous
    covariates and treatment-coded factor levels. The hazard-rate shape is
    estimated on the log scale and comes last in the parameter vector.

    Parameters
    ----------
    key : {'hn', 'hr'}
        Key function: half-normal or hazard-rate
    covariates : list of str, optional
        Detection covariates acting on the scale parameter
    factors : list of str, optional
        Covariates to treat as factors even if numeric
    truncation : float, optional
        Right truncation distance. Defaults to the largest distance.
    transect : {'line', 'point'}
        Survey type

    Attributes
    ----------
    par_ : NDArray
        Maximum likelihood estimates
    loglik_ : float
        Maximised log-likelihood (up to an additive constant)
    converged_ : bool
        Whether the optimiser reported success
    data_ : pd.DataFrame
        Observations used in fitting (within truncation)

    Examples
    --------
    >>> hn = DetectionFunction(key="hn", truncation=1.0).fit(distance_data)
    >>> hn.detection_probability(segment_data)
    """

    kind = "single"

    def __init__(
        self,
        key: Literal["hn", "hr"] = "hn",
        covariates: Optional[List[str]] = None,
        factors: Optional[List[str]] = None,
        truncation: Optional[float] = None,
        transect: Literal["line", "point"] = "line",
    ):
        super().__init__()
        if key not in ("hn", "hr"):
            raise ValidationError(f"key must be 'hn' or 'hr', got {key!r}")
        if transect not in ("line", "point"):
            raise ValidationError(f"transect must be 'line' or 'point', got {transect!r}")
        self.key = key
        self.covariates = list(covariates or [])
        self.factors = list(factors or [])
        self.truncation = truncation
        self.transect = transect

        self.coef_: Optional[NDArray] = None
        self.loglik_: Optional[float] = None
        self.converged_: bool = False
        self.data_: Optional[pd.DataFrame] = None
        self.levels_: Dict[str, List[Any]] = {}
        self.param_names_: List[str] = []
        self._Z: Optional[NDArray] = None
        self._x: Optional[NDArray] = None

    @property
    def n_params(self) -> int:
        self._check_fitted()
        return len(self.coef_)

    @property
    def par_(self) -> NDArray:
        self._check_fitted()
        return self.coef_.copy()

    def truncation_for(self, data: pd.DataFrame) -> NDArray:
        return np.full(len(data), float(self.truncation))

    # ------------------------------------------------------------------ #
    # Design
    # ------------------------------------------------------------------ #

    def _is_factor(self, column: pd.Series, name: str) -> bool:
        return name in self.factors or not pd.api.types.is_numeric_dtype(column)

    def _learn_levels(self, data: pd.DataFrame) -> None:
        self.levels_ = {}
        names = ["(Intercept)"]
        for cov in self.covariates:
            if cov not in data.columns:
                raise ValidationError(f"Detection covariate {cov!r} not found in data")
            if self._is_factor(data[cov], cov):
                levels = sorted(pd.unique(data[cov]).tolist())
                self.levels_[cov] = levels
                names.extend(f"{cov}{level}" for level in levels[1:])
            else:
                names.append(cov)
        if self.key == "hr":
            names.append("log(shape)")
        self.param_names_ = names

    def _design(self, data: pd.DataFrame) -> NDArray:
        """Scale-parameter design matrix for rows of ``data``."""
        columns = [np.ones(len(data))]
        for cov in self.covariates:
            if cov not in data.columns:
                raise ValidationError(f"Detection covariate {cov!r} not found in data")
            if cov in self.levels_:
                levels = self.levels_[cov]
                unknown = ~data[cov].isin(levels)
                if unknown.any():
                    raise ValidationError(
                        f"Unknown levels of {cov!r}: {sorted(pd.unique(data.loc[unknown, cov]))}"
                    )
                for level in levels[1:]:
                    columns.append((data[cov] == level).to_numpy(dtype=float))
            else:
                columns.append(data[cov].to_numpy(dtype=float))
        return np.column_stack(columns)

    # ------------------------------------------------------------------ #
    # Key functions
    # ------------------------------------------------------------------ #

    def _split(self, par: NDArray):
        if self.key == "hr":
            return par[:-1], float(np.exp(par[-1]))
        return par, None

    def _log_g(self, x: NDArray, sigma: NDArray, shape: Optional[float]) -> NDArray:
        if self.key == "hn":
            return -x ** 2 / (2.0 * sigma ** 2)
        with np.errstate(divide="ignore", over="ignore"):
            t = (x / sigma) ** (-shape)
        return np.log(-np.expm1(-t))

    def _integral(self, sigma: NDArray, shape: Optional[float]) -> NDArray:
        """Integral of ``g`` (line) or ``2 r g(r)`` (point) over ``[0, w]``."""
        w = float(self.truncation)
        if self.key == "hn":
            if self.transect == "line":
                return sigma * np.sqrt(2 * np.pi) * (stats.norm.cdf(w / sigma) - 0.5)
            return 2.0 * sigma ** 2 * (-np.expm1(-w ** 2 / (2.0 * sigma ** 2)))
        nodes = 0.5 * w * (_GL_NODES + 1.0)
        weights = 0.5 * w * _GL_WEIGHTS
        g = np.exp(self._log_g(nodes[None, :], sigma[:, None], shape))
        if self.transect == "point":
            g = 2.0 * nodes[None, :] * g
        return g @ weights

    def _probability(self, Z: NDArray, par: NDArray) -> NDArray:
        beta, shape = self._split(par)
        sigma = np.exp(Z @ beta)
        area = float(self.truncation) if self.transect == "line" else float(self.truncation) ** 2
        return self._integral(sigma, shape) / area

    def _negloglik(self, par: NDArray) -> float:
        beta, shape = self._split(par)
        sigma = np.exp(self._Z @ beta)
        ll = self._log_g(self._x, sigma, shape) - np.log(self._integral(sigma, shape))
        value = -float(np.sum(ll))
        return value if np.isfinite(value) else np.inf

    # ------------------------------------------------------------------ #
    # Fitting and prediction
    # ------------------------------------------------------------------ #

    def fit(self, distance_data: pd.DataFrame) -> "DetectionFunction":
        """Fit the detection function to observed distances.

        Parameters
        ----------
        distance_data : pd.DataFrame
            One row per detection with a ``distance`` column and any
            detection covariates

        Returns
        -------
        self : DetectionFunction
            Fitted detection function
        """
        if "distance" not in distance_data.columns:
            raise ValidationError("distance_data must have a 'distance' column")
        if self.truncation is None:
            self.truncation = float(distance_data["distance"].max())
        data = distance_data.loc[distance_data["distance"] <= self.truncation].copy()
        if len(data) == 0:
            raise ValidationError("No detections within the truncation distance")

        self._learn_levels(data)
        self._Z = self._design(data)
        self._x = data["distance"].to_numpy(dtype=float)
        self.data_ = data.reset_index(drop=True)

        scale0 = np.log(max(np.sqrt(np.mean(self._x ** 2)), 1e-3 * self.truncation))
        x0 = np.zeros(self._Z.shape[1])
        x0[0] = scale0
        if self.key == "hr":
            x0 = np.append(x0, np.log(2.5))

        logger.info(
            f"Fitting {self.key} detection function to {len(data)} detections "
            f"with {len(x0)} parameters"
        )
        result = optimize.minimize(self._negloglik, x0, method="BFGS")
        if not result.success:
            fallback = optimize.minimize(
                self._negloglik, result.x, method="Nelder-Mead",
                options={"maxiter": 5000, "xatol": 1e-8, "fatol": 1e-10},
            )
            if fallback.fun <= result.fun:
                result = fallback

        self.coef_ = np.asarray(result.x, dtype=float)
        self.loglik_ = -float(result.fun)
        self.converged_ = bool(result.success)
        if not self.converged_:
            msg = f"Detection function optimisation did not converge: {result.message}"
            logger.warning(msg)
            warnings.warn(msg, ConvergenceWarning, stacklevel=2)

        self.is_fitted_ = True
        logger.info(f"Detection function fitted. logL={self.loglik_:.4f}")
        return self

    def log_likelihood(self, par: Optional[NDArray] = None) -> float:
        """Log-likelihood of the fitted data at ``par`` (default: MLE)."""
        self._check_fitted()
        par = self.coef_ if par is None else np.asarray(par, dtype=float)
        return -self._negloglik(par)

    def detection_probability(
        self,
        data: pd.DataFrame,
        par: Optional[NDArray] = None,
    ) -> NDArray:
        """Probability of detection within the truncation distance.

        Parameters
        ----------
        data : pd.DataFrame
            Rows holding the detection covariates (segments or observations)
        par : NDArray, optional
            Parameter vector; the fitted estimates by default

        Returns
        -------
        NDArray
            Detection probability per row
        """
        self._check_fitted()
        par = self.coef_ if par is None else np.asarray(par, dtype=float)
        return self._probability(self._design(data), par)

    @property
    def aic_(self) -> float:
        return 2 * self.n_params - 2 * self.loglik_

    def __repr__(self) -> str:
        if not self.is_fitted_:
            return f"DetectionFunction(key={self.key!r}, covariates={self.covariates})"
        pars = ", ".join(f"{n}={v:.4f}" for n, v in zip(self.param_names_, self.coef_))
        return f"DetectionFunction(key={self.key!r}, {pars}, logL={self.loglik_:.3f})"

    def _get_state_dict(self) -> Dict[str, Any]:
        return {
            'params': {
                'key': self.key,
                'covariates': self.covariates,
                'factors': self.factors,
                'truncation': self.truncation,
                'transect': self.transect,
            },
            'coef': self.coef_,
            'loglik': self.loglik_,
            'converged': self.converged_,
            'data': self.data_,
        }

    def _set_state_dict(self, state: Dict[str, Any]) -> None:
        self.__init__(**state['params'])
        self.coef_ = state['coef']
        self.loglik_ = state['loglik']
        self.converged_ = state['converged']
        self.data_ = state['data']
        self._learn_levels(self.data_)
        self._Z = self._design(self.data_)
        self._x = self.data_["distance"].to_numpy(dtype=float)


class StratifiedDetection(DetectionModel):
    """Stratum-specific detection functions.

    Segment and observation rows select their detection function through
    ``id_column``, holding the position of the function in ``functions``.

    Parameters
    ----------
    functions : sequence of DetectionFunction
        One detection function per stratum
    id_column : str
        Column holding the stratum index
    """

    kind = "stratified"

    def __init__(
        self,
        functions: Sequence[DetectionFunction],
        id_column: str = "ddf_id",
    ):
        super().__init__()
        if len(functions) == 0:
            raise ValidationError("StratifiedDetection needs at least one detection function")
        transects = {fn.transect for fn in functions}
        if len(transects) > 1:
            raise ValidationError("All detection functions must share one transect type")
        self.functions = list(functions)
        self.id_column = id_column
        self.transect = transects.pop()
        self.is_fitted_ = all(fn.is_fitted_ for fn in self.functions)

    def fit(self, distance_data: pd.DataFrame) -> "StratifiedDetection":
        """Fit each detection function to the rows of its stratum."""
        ids = self._ids(distance_data)
        for k, fn in enumerate(self.functions):
            fn.fit(distance_data.loc[ids == k])
        self.is_fitted_ = True
        return self

    def _ids(self, data: pd.DataFrame) -> NDArray:
        if self.id_column not in data.columns:
            raise ValidationError(f"Column {self.id_column!r} selecting the detection function is missing")
        ids = data[self.id_column].to_numpy()
        bad = (ids < 0) | (ids >= len(self.functions))
        if np.any(bad):
            raise ValidationError(f"{self.id_column!r} values must be in 0..{len(self.functions) - 1}")
        return ids

    @property
    def sizes(self) -> List[int]:
        return [fn.n_params for fn in self.functions]

    @property
    def n_params(self) -> int:
        return int(sum(self.sizes))

    @property
    def par_(self) -> NDArray:
        return np.concatenate([fn.par_ for fn in self.functions])

    def split(self, par: NDArray) -> List[NDArray]:
        """Split a stacked parameter vector into per-function pieces."""
        return np.split(np.asarray(par, dtype=float), np.cumsum(self.sizes)[:-1])

    def log_likelihood(self, par: Optional[NDArray] = None) -> float:
        pieces = self.split(self.par_ if par is None else par)
        return float(sum(fn.log_likelihood(p) for fn, p in zip(self.functions, pieces)))

    def detection_probability(
        self,
        data: pd.DataFrame,
        par: Optional[NDArray] = None,
    ) -> NDArray:
        pieces = self.split(self.par_ if par is None else par)
        ids = self._ids(data)
        p = np.empty(len(data))
        for k, (fn, piece) in enumerate(zip(self.functions, pieces)):
            rows = ids == k
            if rows.any():
                p[rows] = fn.detection_probability(data.loc[rows], piece)
        return p

    def truncation_for(self, data: pd.DataFrame) -> NDArray:
        widths = np.array([fn.truncation for fn in self.functions], dtype=float)
        return widths[self._ids(data)]

    def _get_state_dict(self) -> Dict[str, Any]:
        return {'functions': self.functions, 'id_column': self.id_column}

    def _set_state_dict(self, state: Dict[str, Any]) -> None:
        self.__init__(state['functions'], state['id_column'])


class NullDetection(DetectionModel):
    """Placeholder detection model for strip transects.

    Every animal within ``width`` of the line (or point) is assumed seen, so
    the offset is the covered area alone and there is no detection
    uncertainty to propagate.
    """

    kind = "null"

    def __init__(self, width: float, transect: Literal["line", "point"] = "line"):
        super().__init__()
        self.width = float(width)
        self.transect = transect
        self.is_fitted_ = True

    def fit(self, distance_data: Optional[pd.DataFrame] = None) -> "NullDetection":
        return self

    @property
    def n_params(self) -> int:
        return 0

    @property
    def par_(self) -> NDArray:
        return np.zeros(0)

    def log_likelihood(self, par: Optional[NDArray] = None) -> float:
        return 0.0

    def detection_probability(
        self,
        data: pd.DataFrame,
        par: Optional[NDArray] = None,
    ) -> NDArray:
        return np.ones(len(data))

    def truncation_for(self, data: pd.DataFrame) -> NDArray:
        return np.full(len(data), self.width)

    def _get_state_dict(self) -> Dict[str, Any]:
        return {'width': self.width, 'transect': self.transect}

    def _set_state_dict(self, state: Dict[str, Any]) -> None:
        self.__init__(**state)

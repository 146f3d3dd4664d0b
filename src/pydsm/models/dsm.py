"""
Density Surface Model (DSM).

A DSM is a spatial GAM for the number of animals seen on each segment of
survey effort. Detectability enters through the offset: for segment ``j``
the expected count is

    E[n_j] = A_j * p_j * exp(eta_j)

where ``A_j`` is the covered area, ``p_j`` the detection probability from
the detection function and ``eta_j`` the linear predictor of the spatial
smooths. Predictions over a grid then give animal density times cell area.

Two alternative responses are supported: ``abundance_est`` (Horvitz-Thompson
corrected counts per segment, offset = covered area) and ``density_est``
(the same divided by covered area, weighted by covered area). Variance
propagation needs the raw ``count`` response.

References
----------
.. [1] Hedley, S. L., & Buckland, S. T. (2004). Spatial models for line
       transect sampling. Journal of Agricultural, Biological, and
       Environmental Statistics, 9(2), 181-199.
.. [2] Miller, D. L., Burt, M. L., Rexstad, E. A., & Thomas, L. (2013).
       Spatial models for distance sampling data: recent developments and
       future directions. Methods in Ecology and Evolution, 4(11), 1001-1010.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Literal, Optional, Sequence, Union

import numpy as np
from numpy.typing import NDArray
import pandas as pd

from pydsm.base import BaseEstimator
from pydsm.config import VAR_TYPES
from pydsm.detection import DetectionModel
from pydsm.exceptions import ValidationError
from pydsm.families import Family, get_family
from pydsm.models.gam import (
    GAMFit,
    TermSpec,
    build_terms,
    fit_gam,
    parse_terms,
)
from pydsm.smoothing import unconditional_vcov
from pydsm.utils import ensure_array

logger = logging.getLogger(__name__)

RESPONSES = ("count", "abundance_est", "density_est")
ENGINES = ("gam", "gamm")


@dataclass
class DSMSummary:
    """Summary statistics for a fitted DSM.

    Attributes
    ----------
    response : str
        Response type
    family : str
        Response family
    terms : List[str]
        Model terms
    n_segments : int
        Number of segments
    n_detections : int
        Number of detections within truncation
    deviance_explained : float
        Proportion of null deviance explained
    edof : float
        Effective degrees of freedom
    scale : float
        Scale parameter
    lam : List[List[float]]
        Smoothing parameters per term
    converged : bool
        Whether PIRLS converged
    """
    response: str
    family: str
    terms: List[str]
    n_segments: int
    n_detections: int
    deviance_explained: float
    edof: float
    scale: float
    lam: List[List[float]]
    converged: bool

    def __repr__(self) -> str:
        lines = ["Density Surface Model", "=" * 40]
        lines.append(f"Response:  {self.response} ({self.family})")
        lines.append(f"Terms:     {' + '.join(self.terms)}")
        lines.append(f"Segments:  {self.n_segments}")
        lines.append(f"Detected:  {self.n_detections}")
        lines.append(f"Dev. expl: {self.deviance_explained:.2%}")
        lines.append(f"EDF:       {self.edof:.2f}")
        lines.append(f"Scale:     {self.scale:.4f}")
        if not self.converged:
            lines.append("WARNING: fitting did not converge")
        return "\n".join(lines)


class DSM(BaseEstimator):
    """Density surface model fitted with pygam.

    Parameters
    ----------
    terms : sequence of str
        Model terms, e.g. ``["s(x, y)", "s(depth)"]``
    family : {'poisson', 'quasipoisson'}
        Response family (log link)
    response : {'count', 'abundance_est', 'density_est'}
        Response variable built from the observations
    engine : {'gam', 'gamm'}
        ``'gamm'`` adds ``random`` columns as i.i.d. Gaussian random
        intercepts. Such mixed models cannot be used for variance
        propagation.
    random : list of str, optional
        Grouping columns for random intercepts (``engine='gamm'`` only)
    n_splines : int
        Default basis size per smooth margin
    lam : float or 'auto'
        Smoothing parameter. 'auto' uses grid search.
    seglen_varname : str
        Column of segment data holding effort (length, or visits for points)
    segment_id : str
        Column linking observations to segments
    max_iter : int
        Maximum PIRLS iterations
    tol : float
        PIRLS convergence tolerance

    Attributes
    ----------
    fit_ : GAMFit
        Fitted pygam model and its data
    detection_ : DetectionModel
        Detection model used to build the offset
    segment_data_ : pd.DataFrame
        Segment data with the response attached
    is_fitted_ : bool
        Whether the model has been fitted

    Examples
    --------
    >>> hn = DetectionFunction(key="hn", truncation=1.0).fit(distdata)
    >>> model = DSM(terms=["s(x, y)"]).fit(segdata, obsdata, hn)
    >>> model.predict(preddata, off_set=preddata["area"]).sum()
    """

    def __init__(
        self,
        terms: Sequence[Union[str, TermSpec]] = ("s(x, y)",),
        family: Union[str, Family] = "poisson",
        response: Literal["count", "abundance_est", "density_est"] = "count",
        engine: Literal["gam", "gamm"] = "gam",
        random: Optional[List[str]] = None,
        n_splines: int = 10,
        lam: Union[float, Literal["auto"]] = "auto",
        seglen_varname: str = "effort",
        segment_id: str = "sample_label",
        max_iter: int = 100,
        tol: float = 1e-6,
    ):
        super().__init__()
        if response not in RESPONSES:
            raise ValidationError(f"response must be one of {RESPONSES}, got {response!r}")
        if engine not in ENGINES:
            raise ValidationError(f"engine must be one of {ENGINES}, got {engine!r}")
        if random and engine != "gamm":
            raise ValidationError("random effects require engine='gamm'")

        self.terms = list(terms)
        self.family = family
        self.response = response
        self.engine = engine
        self.random = list(random or [])
        self.n_splines = n_splines
        self.lam = lam
        self.seglen_varname = seglen_varname
        self.segment_id = segment_id
        self.max_iter = max_iter
        self.tol = tol

        self.fit_: Optional[GAMFit] = None
        self.family_: Family = get_family(family)
        self.term_specs_: List[TermSpec] = []
        self.covariates_: List[str] = []
        self.factor_levels_: Dict[str, List[Any]] = {}
        self.detection_: Optional[DetectionModel] = None
        self.segment_data_: Optional[pd.DataFrame] = None
        self.observation_data_: Optional[pd.DataFrame] = None
        self._vc: Optional[NDArray] = None

    @property
    def supports_varprop(self) -> bool:
        """Whether the model can be refitted with an extra random effect."""
        return self.engine == "gam"

    @property
    def gam_(self):
        return self.fit_.gam

    @property
    def coef_(self) -> NDArray:
        self._check_fitted()
        return self.fit_.coef

    @property
    def lam_(self) -> List[List[float]]:
        self._check_fitted()
        return self.fit_.lam

    @property
    def offset_(self) -> NDArray:
        """Link-scale offset of each segment."""
        self._check_fitted()
        return self.family_.linkfun(self.fit_.exposure)

    # ------------------------------------------------------------------ #
    # Data preparation
    # ------------------------------------------------------------------ #

    def _resolve_terms(self) -> None:
        specs = parse_terms(self.terms, self.n_splines)
        specs += [TermSpec(kind="f", columns=(col,)) for col in self.random]
        self.term_specs_ = specs
        covariates = []
        for spec in specs:
            for col in spec.columns:
                if col not in covariates:
                    covariates.append(col)
        self.covariates_ = covariates

    @property
    def feature_index_(self) -> Dict[str, int]:
        return {col: i for i, col in enumerate(self.covariates_)}

    def _factor_columns(self) -> List[str]:
        return [spec.columns[0] for spec in self.term_specs_ if spec.kind == "f"]

    def _covariate_matrix(self, data: pd.DataFrame) -> NDArray:
        """Model covariate matrix for rows of ``data``."""
        missing = [c for c in self.covariates_ if c not in data.columns]
        if missing:
            raise ValidationError(f"Covariates missing from data: {missing}")
        columns = []
        for col in self.covariates_:
            if col in self.factor_levels_:
                codes = pd.Categorical(data[col], categories=self.factor_levels_[col]).codes
                if np.any(codes < 0):
                    raise ValidationError(f"Unknown levels of factor {col!r} in data")
                columns.append(codes.astype(float))
            else:
                columns.append(data[col].to_numpy(dtype=float))
        return np.column_stack(columns)

    def _aggregate(
        self,
        segments: pd.DataFrame,
        observations: pd.DataFrame,
        detection: DetectionModel,
    ):
        """Build response, exposure and weights per segment."""
        effort = segments[self.seglen_varname].to_numpy(dtype=float)
        obs = observations.copy()
        if "size" not in obs.columns:
            obs["size"] = 1.0

        if detection.kind == "stratified" and detection.id_column not in obs.columns:
            ids = segments.set_index(self.segment_id)[detection.id_column]
            obs[detection.id_column] = obs[self.segment_id].map(ids)

        unknown = ~obs[self.segment_id].isin(segments[self.segment_id])
        if unknown.any():
            raise ValidationError(
                f"{int(unknown.sum())} observations refer to unknown segments"
            )
        if "distance" in obs.columns:
            obs = obs.loc[obs["distance"] <= detection.truncation_for(obs)]

        if self.response == "count":
            per_obs = obs["size"].to_numpy(dtype=float)
        else:
            per_obs = obs["size"].to_numpy(dtype=float) / detection.detection_probability(obs)
        totals = pd.Series(per_obs, index=obs[self.segment_id].to_numpy()).groupby(level=0).sum()
        y = segments[self.segment_id].map(totals).fillna(0.0).to_numpy(dtype=float)

        weights = np.ones(len(segments))
        if self.response == "count":
            exposure = detection.effective_area(segments, effort)
        elif self.response == "abundance_est":
            exposure = detection.covered_area(segments, effort)
        else:
            area = detection.covered_area(segments, effort)
            y = y / area
            weights = area
            exposure = np.ones(len(segments))
        return y, exposure, weights, obs

    def _make_terms(self, lam=None, n_random: int = 0, random_lam: float = 1.0):
        return build_terms(
            self.term_specs_, self.feature_index_, lam=lam,
            n_random=n_random, random_lam=random_lam,
        )

    # ------------------------------------------------------------------ #
    # Fitting
    # ------------------------------------------------------------------ #

    def fit(
        self,
        segment_data: pd.DataFrame,
        observation_data: pd.DataFrame,
        detection: DetectionModel,
    ) -> "DSM":
        """Fit the density surface model.

        Parameters
        ----------
        segment_data : pd.DataFrame
            One row per segment: ``segment_id``, ``seglen_varname``, model
            covariates and (segment-level) detection covariates
        observation_data : pd.DataFrame
            One row per detection: ``segment_id``, ``size`` (optional),
            ``distance`` (optional) and detection covariates
        detection : DetectionModel
            Fitted detection function, stratified detection functions or a
            :class:`~pydsm.detection.NullDetection` for strip transects

        Returns
        -------
        self : DSM
            Fitted model
        """
        if detection is None:
            raise ValidationError("A detection model is required; use NullDetection for strip transects")
        detection._check_fitted()
        for col in (self.segment_id, self.seglen_varname):
            if col not in segment_data.columns:
                raise ValidationError(f"Segment data has no {col!r} column")
        if self.segment_id not in observation_data.columns:
            raise ValidationError(f"Observation data has no {self.segment_id!r} column")

        self._resolve_terms()
        segments = segment_data.reset_index(drop=True).copy()
        y, exposure, weights, obs = self._aggregate(segments, observation_data, detection)
        segments[self.response] = y

        self.factor_levels_ = {
            col: sorted(pd.unique(segments[col]).tolist()) for col in self._factor_columns()
        }
        X = self._covariate_matrix(segments)

        self.detection_ = detection
        self.segment_data_ = segments
        self.observation_data_ = obs.reset_index(drop=True)

        n_samples, n_features = X.shape
        logger.info(
            f"Fitting DSM with {n_samples} segments, {len(obs)} detections "
            f"and {len(self.term_specs_)} terms"
        )

        if self.lam == "auto":
            logger.info("Performing grid search for smoothing parameters")
            lam_grid = np.logspace(-3, 3, 11)
            search = fit_gam(
                self._make_terms(), X, y, exposure, weights, self.family_,
                max_iter=self.max_iter, tol=self.tol, lam_grid=lam_grid,
            )
            lam = search.lam
        else:
            lam = [[float(self.lam)] * spec.n_lam for spec in self.term_specs_]

        # refit from scratch at the chosen smoothing parameters so later
        # refits at the same values reproduce the same coefficients
        self.fit_ = fit_gam(
            self._make_terms(lam), X, y, exposure, weights, self.family_,
            max_iter=self.max_iter, tol=self.tol,
        )
        self._vc = None
        self.is_fitted_ = True
        logger.info(
            f"DSM fitted. EDF={self.fit_.edof:.2f}, "
            f"deviance explained={self._deviance_explained():.4f}"
        )
        return self

    def refit_at(self, lam: List[List[float]]) -> GAMFit:
        """Refit the same model at other smoothing parameters.

        The scale parameter is held at its fitted value.
        """
        self._check_fitted()
        return fit_gam(
            self._make_terms(lam), self.fit_.X, self.fit_.y, self.fit_.exposure,
            self.fit_.weights, self.family_, max_iter=self.max_iter, tol=self.tol,
            scale=self.fit_.scale,
        )

    # ------------------------------------------------------------------ #
    # Prediction
    # ------------------------------------------------------------------ #

    def lpmatrix(self, newdata: pd.DataFrame) -> NDArray:
        """Linear predictor matrix for ``newdata`` (link scale, no offset)."""
        self._check_fitted()
        return self.fit_.lpmatrix(self._covariate_matrix(newdata))

    def predict(
        self,
        newdata: Optional[pd.DataFrame] = None,
        off_set: Optional[Union[float, NDArray, pd.Series]] = None,
        type: Literal["response", "link"] = "response",
    ) -> NDArray:
        """Predict abundance for new data.

        Parameters
        ----------
        newdata : pd.DataFrame, optional
            Prediction grid. Fitted values for the segments when omitted.
        off_set : float or array-like, optional
            Area of each prediction cell. Taken from an ``off_set`` column
            of ``newdata`` when not given.
        type : {'response', 'link'}
            Scale of the predictions

        Returns
        -------
        NDArray
            Predicted abundance per row (or the link-scale predictor)
        """
        self._check_fitted()
        if newdata is None:
            mu = self.fit_.fitted_values()
            return mu if type == "response" else self.family_.linkfun(mu)

        offset = resolve_offset(newdata, off_set)
        eta = self.lpmatrix(newdata) @ self.coef_
        if type == "link":
            return eta + self.family_.linkfun(offset)
        return offset * self.family_.linkinv(eta)

    def vcov(self, var_type: Literal["Vp", "Vc"] = "Vp") -> NDArray:
        """Coefficient covariance matrix.

        Parameters
        ----------
        var_type : {'Vp', 'Vc'}
            ``'Vp'`` is the Bayesian covariance conditional on the smoothing
            parameters; ``'Vc'`` adds a first-order correction for
            smoothing parameter uncertainty (computed once, then cached).
        """
        self._check_fitted()
        if var_type not in VAR_TYPES:
            raise ValidationError(f"var_type must be one of {VAR_TYPES}, got {var_type!r}")
        if var_type == "Vp":
            return self.fit_.vp()
        if self._vc is None:
            self._vc = unconditional_vcov(self.fit_, self.refit_at)
        return self._vc

    # ------------------------------------------------------------------ #
    # Summaries
    # ------------------------------------------------------------------ #

    def _deviance_explained(self) -> float:
        fit = self.fit_
        rate = np.sum(fit.weights * fit.y) / np.sum(fit.weights * fit.exposure)
        null_dev = self.family_.deviance(fit.y, fit.exposure * rate, fit.weights)
        if null_dev == 0:
            return np.nan
        return 1.0 - fit.deviance() / null_dev

    def summary(self) -> DSMSummary:
        """Get model summary statistics."""
        self._check_fitted()
        return DSMSummary(
            response=self.response,
            family=self.family_.name,
            terms=[str(spec) for spec in self.term_specs_],
            n_segments=len(self.segment_data_),
            n_detections=len(self.observation_data_),
            deviance_explained=self._deviance_explained(),
            edof=self.fit_.edof,
            scale=self.fit_.scale,
            lam=self.fit_.lam,
            converged=self.fit_.converged,
        )

    def _get_state_dict(self) -> Dict[str, Any]:
        return {
            'params': self.get_params(),
            'fit': self.fit_,
            'term_specs': self.term_specs_,
            'covariates': self.covariates_,
            'factor_levels': self.factor_levels_,
            'detection': self.detection_,
            'segment_data': self.segment_data_,
            'observation_data': self.observation_data_,
        }

    def _set_state_dict(self, state: Dict[str, Any]) -> None:
        self.__init__(**state['params'])
        self.fit_ = state['fit']
        self.term_specs_ = state['term_specs']
        self.covariates_ = state['covariates']
        self.factor_levels_ = state['factor_levels']
        self.detection_ = state['detection']
        self.segment_data_ = state['segment_data']
        self.observation_data_ = state['observation_data']


def resolve_offset(
    newdata: pd.DataFrame,
    off_set: Optional[Union[float, NDArray, pd.Series]] = None,
) -> NDArray:
    """Response-scale offset (cell area) for each row of ``newdata``."""
    if off_set is None:
        if "off_set" not in newdata.columns:
            raise ValidationError(
                "Prediction data need an 'off_set' column or an off_set argument"
            )
        off_set = newdata["off_set"]
    offset = np.asarray(ensure_array(off_set), dtype=float)
    if offset.ndim == 0:
        offset = np.full(len(newdata), float(offset))
    if offset.shape != (len(newdata),):
        raise ValidationError(
            f"off_set has {offset.size} values for {len(newdata)} prediction rows"
        )
    return offset

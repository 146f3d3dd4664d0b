"""
Variance propagation for density surface models.

Entry points:

- :func:`dsm_varprop` refits a model with the detection random effect and
  optionally predicts one grid, whose rows carry their area in an
  ``off_set`` column.
- :func:`dsm_var_prop` does the same for one or many grids with the offsets
  given separately. All grids share one refit and one stacked prediction
  matrix.
- :func:`dsm_var_gam` applies the same sandwich formula to the original
  model, ignoring detection uncertainty.

The variance is only valid if detection covariates do not vary within a
segment, which is not checked.

Examples
--------
>>> result = dsm_var_prop(model, [north, south], off_set=[north.area, south.area])
>>> print(result.summary())
"""

from __future__ import annotations

import logging
import warnings
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, List, Optional, Sequence, Tuple, Union

import numpy as np
from numpy.typing import NDArray
import pandas as pd

from pydsm.config import TYPE_PRED, VarPropOptions, reject_legacy_arguments, resolve_options
from pydsm.exceptions import ConvergenceWarning, NumericalWarning, ValidationError
from pydsm.models.dsm import DSM, resolve_offset
from pydsm.utils import lognormal_interval
from pydsm.varprop.diagnostics import varprop_check
from pydsm.varprop.hessian import detection_hessian
from pydsm.varprop.refit import AugmentedModel, check_varprop_model, refit_augmented
from pydsm.varprop.sandwich import sandwich_variance

logger = logging.getLogger(__name__)

Grids = Union[pd.DataFrame, Sequence[pd.DataFrame]]


@dataclass(frozen=True)
class VarPropSummary:
    """Abundance estimates with variance propagation diagnostics.

    Attributes
    ----------
    table : pd.DataFrame
        Per grid: ``estimate``, ``se``, ``cv`` and log-normal ``lower`` /
        ``upper`` confidence limits
    model_check : pd.DataFrame or None
        Detection probability comparison from :func:`varprop_check`
    alpha : float
        One minus the confidence level
    var_type : str
        Covariance variant used
    var_prop : bool
        Whether detection uncertainty was propagated
    reliable : bool
        False if a refit or a numerical derivative raised concerns
    warnings : tuple of str
        Warnings issued during the computation
    """
    table: pd.DataFrame
    model_check: Optional[pd.DataFrame]
    alpha: float
    var_type: str
    var_prop: bool
    reliable: bool
    warnings: Tuple[str, ...] = ()

    def __str__(self) -> str:
        lines = ["Summary of uncertainty in a density surface model"]
        if self.var_prop:
            lines.append("calculated by variance propagation.")
        else:
            lines.append("calculated analytically for the GAM, detection function uncertainty ignored.")
        lines.append(f"Covariance: {self.var_type}")
        lines.append("")
        if self.model_check is not None:
            lines.append("Probability of detection in fitted and refitted models:")
            lines.append(self.model_check.to_string(index=False))
            lines.append("")
        level = 100 * (1 - self.alpha)
        lines.append(f"Estimates with {level:g}% log-normal confidence intervals:")
        lines.append(self.table.to_string(index=False))
        if not self.reliable:
            lines.append("")
            lines.append("WARNING: variance estimates may be unreliable:")
            lines.extend(f"  {msg}" for msg in self.warnings)
        return "\n".join(lines)


@dataclass(frozen=True)
class VarPropResult:
    """Predicted abundance and variance for each prediction grid.

    Attributes
    ----------
    pred : tuple of float
        Total predicted abundance per grid. Without a grid this is a single
        NaN placeholder while ``pred_data`` and ``off_set`` stay empty.
    pred_var : tuple of float
        Variance of each total, shaped like ``pred``
    pred_data : tuple of pd.DataFrame
        Prediction grids
    off_set : tuple of NDArray
        Cell areas of each grid
    model : AugmentedModel or DSM
        Refitted model, or the original model for :func:`dsm_var_gam`
    dsm_object : DSM
        Original model
    var_type : str
        Covariance variant used
    var_prop : bool
        Whether detection uncertainty was propagated
    model_check : pd.DataFrame, optional
        Output of :func:`varprop_check`
    hessian : NDArray, optional
        Detection Hessian used for the refit
    deriv : NDArray, optional
        Segment log offset derivatives with respect to detection parameters
    warnings : tuple of str
        Convergence and numerical warnings issued during the call
    reliable : bool
        False when any of those warnings were issued
    """
    pred: Tuple[float, ...]
    pred_var: Tuple[float, ...]
    pred_data: Tuple[pd.DataFrame, ...]
    off_set: Tuple[NDArray, ...]
    model: Any
    dsm_object: DSM
    var_type: str = "Vp"
    var_prop: bool = True
    model_check: Optional[pd.DataFrame] = None
    hessian: Optional[NDArray] = None
    deriv: Optional[NDArray] = None
    warnings: Tuple[str, ...] = ()
    reliable: bool = True
    seglen_varname: str = "effort"
    type_pred: str = "response"

    @property
    def n_grids(self) -> int:
        return len(self.pred_data)

    @property
    def pred_se(self) -> Tuple[float, ...]:
        return tuple(float(np.sqrt(v)) for v in self.pred_var)

    @property
    def refit(self) -> Optional[AugmentedModel]:
        return self.model if self.var_prop else None

    def summary(self, alpha: float = 0.05) -> VarPropSummary:
        """Summarise estimates with log-normal confidence intervals."""
        if not 0 < alpha < 1:
            raise ValidationError(f"alpha must be in (0, 1), got {alpha}")
        estimate = np.asarray(self.pred, dtype=float)
        se = np.asarray(self.pred_se, dtype=float)
        with np.errstate(divide="ignore", invalid="ignore"):
            lower, upper = lognormal_interval(estimate, se, alpha)
            cv = se / estimate
        table = pd.DataFrame({
            "grid": np.arange(len(estimate)),
            "estimate": estimate,
            "se": se,
            "cv": cv,
            "lower": lower,
            "upper": upper,
        })
        return VarPropSummary(
            table=table,
            model_check=self.model_check,
            alpha=alpha,
            var_type=self.var_type,
            var_prop=self.var_prop,
            reliable=self.reliable,
            warnings=self.warnings,
        )


@contextmanager
def _trace(enabled: bool):
    """Temporarily log variance propagation detail at DEBUG level."""
    package_logger = logging.getLogger("pydsm.varprop")
    previous = package_logger.level
    if enabled:
        package_logger.setLevel(logging.DEBUG)
    try:
        yield
    finally:
        package_logger.setLevel(previous)


def _prepare_grids(pred_data: Grids, off_set) -> Tuple[List[pd.DataFrame], List[NDArray]]:
    """Normalise prediction grids and offsets to parallel lists."""
    if isinstance(pred_data, pd.DataFrame):
        grids = [pred_data]
        if np.ndim(off_set) != 0 and not isinstance(off_set, (list, tuple)):
            off_set = [off_set]
        elif isinstance(off_set, (list, tuple)) and len(off_set) == len(pred_data) != 1:
            off_set = [np.asarray(off_set, dtype=float)]
    else:
        grids = list(pred_data)
    if not grids:
        raise ValidationError("No prediction grids supplied")
    for grid in grids:
        if not isinstance(grid, pd.DataFrame):
            raise ValidationError(f"Prediction grids must be DataFrames, got {type(grid).__name__}")

    if off_set is None:
        offsets = [resolve_offset(grid) for grid in grids]
    elif np.ndim(off_set) == 0:
        offsets = [resolve_offset(grid, off_set) for grid in grids]
    else:
        if len(off_set) != len(grids):
            raise ValidationError(
                f"pred_data and off_set don't have the same number of elements "
                f"({len(grids)} grids, {len(off_set)} offsets)"
            )
        offsets = [resolve_offset(grid, off) for grid, off in zip(grids, off_set)]
    return grids, offsets


def _propagate(
    model: DSM,
    grids: List[pd.DataFrame],
    offsets: List[NDArray],
    options: VarPropOptions,
    hessian: Optional[NDArray],
    **extra,
) -> VarPropResult:
    with _trace(options.trace), warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always")
        if hessian is None:
            hessian = detection_hessian(model.detection_, options.hessian_step)
        refit = refit_augmented(model, hessian, options)
        check = varprop_check(refit, hessian)
        if grids:
            per_grid = sandwich_variance(
                refit.lpmatrix, refit.prediction_coef, refit.vcov(options.var_type),
                refit.family, grids, offsets,
            )
            pred = tuple(g.pred for g in per_grid)
            pred_var = tuple(g.variance for g in per_grid)
        else:
            pred, pred_var = (np.nan,), (np.nan,)

    for w in caught:
        warnings.warn(w.message, w.category, stacklevel=3)
    issues = [w for w in caught if issubclass(w.category, (ConvergenceWarning, NumericalWarning))]
    reliable = refit.reliable and not issues

    for i, (p, v) in enumerate(zip(pred, pred_var)):
        logger.info(f"Grid {i}: N={p:.4g}, se={np.sqrt(v):.4g}")
    return VarPropResult(
        pred=pred,
        pred_var=pred_var,
        pred_data=tuple(grids),
        off_set=tuple(offsets),
        model=refit,
        dsm_object=model,
        var_type=options.var_type,
        var_prop=True,
        model_check=check,
        hessian=hessian,
        deriv=refit.deriv,
        warnings=tuple(str(w.message) for w in issues),
        reliable=reliable,
        **extra,
    )


def dsm_varprop(
    model: DSM,
    newdata: Optional[pd.DataFrame] = None,
    trace: bool = False,
    var_type: str = "Vp",
    hessian: Optional[NDArray] = None,
    re_smoothing: str = "estimate",
    **kwargs,
) -> VarPropResult:
    """Propagate detection function uncertainty into a density surface model.

    Parameters
    ----------
    model : DSM
        Fitted count model with a detection function
    newdata : pd.DataFrame, optional
        Prediction grid with an ``off_set`` column of cell areas. When
        omitted only the refit is done and predictions are NaN.
    trace : bool
        Log numerical detail at DEBUG level
    var_type : {'Vp', 'Vc'}
        Coefficient covariance used in the sandwich
    hessian : NDArray, optional
        Detection Hessian to use instead of the numerical one
    re_smoothing : {'estimate', 'fixed'}
        Whether the random effect smoothing parameter is re-estimated

    Returns
    -------
    VarPropResult

    Raises
    ------
    UnsupportedModelError
        Mixed models or models without a detection function
    ValidationError
        Non-count response, bad options or a grid without ``off_set``
    """
    options = resolve_options(var_type=var_type, re_smoothing=re_smoothing, trace=trace, **kwargs)
    model._check_fitted()
    check_varprop_model(model)
    if newdata is None:
        grids, offsets = [], []
    else:
        grids, offsets = [newdata], [resolve_offset(newdata)]
    return _propagate(model, grids, offsets, options, hessian)


def dsm_var_prop(
    dsm_obj: DSM,
    pred_data: Grids,
    off_set,
    seglen_varname: str = "effort",
    type_pred: str = "response",
    var_type: str = "Vp",
    **kwargs,
) -> VarPropResult:
    """Variance propagation over one or many prediction grids.

    Parameters
    ----------
    dsm_obj : DSM
        Fitted count model with a detection function
    pred_data : pd.DataFrame or list of pd.DataFrame
        Prediction grids
    off_set : float, array-like or list
        Cell areas. A scalar applies to every row of every grid; otherwise
        one entry per grid (an array for a single grid).
    seglen_varname : str
        Name of the effort column, kept on the result
    type_pred : {'response', 'link'}
        Prediction scale, kept on the result
    var_type : {'Vp', 'Vc'}
        Coefficient covariance used in the sandwich

    Returns
    -------
    VarPropResult
        One prediction and variance per grid, all from a single refit

    Raises
    ------
    ValidationError
        If the grids and offsets do not match, plus the conditions of
        :func:`dsm_varprop`
    """
    reject_legacy_arguments(kwargs)
    if type_pred not in TYPE_PRED:
        raise ValidationError(f"type_pred must be one of {TYPE_PRED}, got {type_pred!r}")
    options = VarPropOptions(var_type=var_type)
    dsm_obj._check_fitted()
    check_varprop_model(dsm_obj)
    grids, offsets = _prepare_grids(pred_data, off_set)
    return _propagate(
        dsm_obj, grids, offsets, options, None,
        seglen_varname=seglen_varname, type_pred=type_pred,
    )


def dsm_var_gam(
    model: DSM,
    pred_data: Grids,
    off_set,
    var_type: str = "Vp",
) -> VarPropResult:
    """Prediction variance from the GAM alone.

    Uses the same sandwich as :func:`dsm_var_prop` on the original model's
    covariance, so detection function uncertainty is not included. This is
    the variance to use for strip transects or when the detection function
    is known.
    """
    options = VarPropOptions(var_type=var_type)
    model._check_fitted()
    grids, offsets = _prepare_grids(pred_data, off_set)
    per_grid = sandwich_variance(
        model.lpmatrix, model.coef_, model.vcov(options.var_type),
        model.family_, grids, offsets,
    )
    return VarPropResult(
        pred=tuple(g.pred for g in per_grid),
        pred_var=tuple(g.variance for g in per_grid),
        pred_data=tuple(grids),
        off_set=tuple(offsets),
        model=model,
        dsm_object=model,
        var_type=options.var_type,
        var_prop=False,
        reliable=model.fit_.converged,
        seglen_varname=model.seglen_varname,
    )

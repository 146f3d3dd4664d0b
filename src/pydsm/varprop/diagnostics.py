"""
Agreement check between the original and refitted detection parameters.

The refit absorbs some of the count data into the detection random effect,
which amounts to shifting the detection parameters. If the implied detection
probabilities move by more than their own uncertainty, the linearisation
behind variance propagation is suspect.
"""

from __future__ import annotations

import logging
from typing import List

import numpy as np
from numpy.typing import NDArray
import pandas as pd

from pydsm.detection import DetectionFunction
from pydsm.numderiv import numerical_gradient
from pydsm.smoothing import invert_curvature

logger = logging.getLogger(__name__)

CHECK_COLUMNS = [
    "detection_function", "covariate", "value",
    "fitted", "fitted_se", "refitted", "discrepant",
]
QUANTILES = (0.05, 0.5, 0.95)


def _scenarios(fn: DetectionFunction) -> List[tuple]:
    """(covariate, value, data) triples at which to compare probabilities."""
    data = fn.data_
    if not fn.covariates:
        return [("(intercept only)", np.nan, data)]
    rows = []
    for cov in fn.covariates:
        if cov in fn.levels_:
            values = fn.levels_[cov]
        else:
            values = np.quantile(data[cov].to_numpy(dtype=float), QUANTILES).tolist()
        for value in values:
            rows.append((cov, value, data.assign(**{cov: value})))
    return rows


def _check_function(
    index: int,
    fn: DetectionFunction,
    covariance: NDArray,
    shift: NDArray,
    step: float,
) -> List[dict]:
    par = fn.par_
    records = []
    for cov, value, data in _scenarios(fn):
        def mean_p(p):
            return float(np.mean(fn.detection_probability(data, p)))

        grad = numerical_gradient(mean_p, par, step)
        fitted = mean_p(par)
        refitted = mean_p(par + shift)
        se = float(np.sqrt(max(grad @ covariance @ grad, 0.0)))
        records.append({
            "detection_function": index,
            "covariate": cov,
            "value": value,
            "fitted": fitted,
            "fitted_se": se,
            "refitted": refitted,
            "discrepant": bool(abs(fitted - refitted) > 2.0 * se),
        })
    return records


def varprop_check(refit, hessian: NDArray, step: float = 1e-5) -> pd.DataFrame:
    """Compare detection probabilities before and after the refit.

    Parameters
    ----------
    refit : AugmentedModel
        Output of :func:`~pydsm.varprop.refit.refit_augmented`
    hessian : NDArray
        Detection Hessian the refit was built from
    step : float
        Relative step for the delta-method gradient

    Returns
    -------
    pd.DataFrame
        One row per factor level, or per 5/50/95% quantile of a continuous
        covariate, of each detection function (a single
        ``"(intercept only)"`` row for functions without covariates).
        ``fitted`` and ``refitted`` are mean detection probabilities over
        the detection data at the original and shifted parameters;
        ``discrepant`` marks differences larger than twice ``fitted_se``.
    """
    detection = refit.original.detection_
    covariance = invert_curvature(np.asarray(hessian, dtype=float))
    shift = refit.detection_shift

    if detection.kind == "stratified":
        functions = detection.functions
        bounds = np.cumsum([0] + detection.sizes)
    else:
        functions = [detection]
        bounds = np.array([0, detection.n_params])

    records = []
    for k, fn in enumerate(functions):
        block = slice(bounds[k], bounds[k + 1])
        records.extend(_check_function(k, fn, covariance[block, block], shift[block], step))

    table = pd.DataFrame.from_records(records, columns=CHECK_COLUMNS)
    if table["discrepant"].any():
        bad = table.loc[table["discrepant"], ["detection_function", "covariate", "value"]]
        logger.warning(
            "Detection probabilities of the refitted model differ from the "
            f"original by more than 2 standard errors at:\n{bad.to_string(index=False)}"
        )
    return table

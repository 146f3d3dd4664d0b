"""
Curvature of the detection function likelihood.

The Hessian of the detection function negative log-likelihood at the
maximum likelihood estimate is the observed information, whose inverse is
the approximate covariance of the detection parameters. Variance propagation
also needs the sensitivity of each segment's log offset to those parameters.
Both are computed by central finite differences.
"""

from __future__ import annotations

import logging
import warnings
from typing import Optional

import numpy as np
from numpy.typing import NDArray
import pandas as pd
from scipy.linalg import block_diag

from pydsm.detection import DetectionModel
from pydsm.exceptions import NumericalWarning, UnsupportedModelError
from pydsm.numderiv import numerical_hessian, numerical_jacobian

logger = logging.getLogger(__name__)


def _require_detection(detection: Optional[DetectionModel]) -> None:
    if detection is None or detection.kind == "null" or detection.is_placeholder:
        raise UnsupportedModelError(
            "No detection function in this analysis, use dsm_var_gam"
        )


def _single_hessian(detection: DetectionModel, step: float) -> NDArray:
    return numerical_hessian(lambda par: -detection.log_likelihood(par), detection.par_, step)


def _check_hessian(hessian: NDArray) -> None:
    if not np.all(np.isfinite(hessian)):
        msg = "Detection function Hessian has non-finite entries"
        logger.warning(msg)
        warnings.warn(msg, NumericalWarning, stacklevel=3)
        return
    eigenvalues = np.linalg.eigvalsh(hessian)
    if eigenvalues.min() <= 0:
        msg = (
            "Detection function Hessian is not positive definite "
            f"(smallest eigenvalue {eigenvalues.min():.3g})"
        )
        logger.warning(msg)
        warnings.warn(msg, NumericalWarning, stacklevel=3)


def detection_hessian(detection: Optional[DetectionModel], step: float = 1e-4) -> NDArray:
    """Hessian of the detection function negative log-likelihood.

    Parameters
    ----------
    detection : DetectionModel
        Fitted detection function or stratified detection functions
    step : float
        Relative finite difference step

    Returns
    -------
    NDArray
        Symmetric matrix, one row per detection parameter. Stratified
        detection functions give a block diagonal matrix in stratum order.

    Raises
    ------
    UnsupportedModelError
        If there is no detection function or only a placeholder

    Warns
    -----
    NumericalWarning
        If the matrix has non-finite entries or is not positive definite.
        The matrix is returned unchanged.
    """
    _require_detection(detection)
    if detection.kind == "stratified":
        hessian = block_diag(*[_single_hessian(fn, step) for fn in detection.functions])
    else:
        hessian = _single_hessian(detection, step)
    logger.debug(f"Detection function Hessian:\n{hessian}")
    _check_hessian(hessian)
    return hessian


def offset_derivatives(
    detection: DetectionModel,
    segment_data: pd.DataFrame,
    step: float = 1e-5,
) -> NDArray:
    """Derivative of each segment's log offset with respect to the detection
    parameters.

    Only the detection probability in the offset depends on the parameters,
    so this is the Jacobian of ``log p_j``. For stratified detection the
    columns of other strata are exactly zero.

    Returns
    -------
    NDArray
        Matrix of shape ``(n_segments, n_params)``
    """
    _require_detection(detection)
    return numerical_jacobian(
        lambda par: np.log(detection.detection_probability(segment_data, par)),
        detection.par_,
        step,
    )

"""Utility functions for pydsm."""

from __future__ import annotations

from typing import List, Tuple, Union

import numpy as np
import pandas as pd
from numpy.typing import NDArray
from scipy import stats


def ensure_array(data: Union[NDArray, pd.DataFrame, pd.Series]) -> NDArray:
    """Convert pandas DataFrame/Series or array-like to numpy array.

    Parameters
    ----------
    data : array-like, DataFrame, or Series
        Input data

    Returns
    -------
    NDArray
        Numpy array
    """
    if isinstance(data, (pd.DataFrame, pd.Series)):
        return data.values
    return np.asarray(data)


def lognormal_interval(
    estimate: NDArray,
    se: NDArray,
    alpha: float = 0.05,
) -> Tuple[NDArray, NDArray]:
    """Log-normal confidence interval for a positive quantity.

    Uses the usual distance sampling interval ``(N / C, N * C)`` with
    ``C = exp(z * sqrt(log(1 + cv^2)))``.

    Parameters
    ----------
    estimate : NDArray
        Point estimates (positive)
    se : NDArray
        Standard errors
    alpha : float, default=0.05
        One minus the confidence level

    Returns
    -------
    lower : NDArray
        Lower bounds
    upper : NDArray
        Upper bounds
    """
    estimate = np.asarray(estimate, dtype=float)
    cv = np.asarray(se, dtype=float) / estimate
    z = stats.norm.ppf(1 - alpha / 2)
    c = np.exp(z * np.sqrt(np.log1p(cv ** 2)))
    return estimate / c, estimate * c


def symmetrize(matrix: NDArray) -> NDArray:
    """Return ``(A + A.T) / 2``."""
    return 0.5 * (matrix + matrix.T)


def row_slices(frames: List[pd.DataFrame]) -> List[slice]:
    """Row ranges of each frame inside their concatenation."""
    slices = []
    start = 0
    for frame in frames:
        end = start + len(frame)
        slices.append(slice(start, end))
        start = end
    return slices

"""
Sandwich variance of predicted abundance.

For a prediction grid with cell areas ``a`` and linear predictor matrix
``X_p`` the predicted total is ``N = sum(a * exp(X_p beta))``. With a log
link its gradient is ``dN/dbeta = (a * exp(X_p beta)) @ X_p``, so

    Var(N) = dN/dbeta  V  dN/dbeta^T

for a coefficient covariance ``V``. Other links would need the derivative
of the inverse link in the gradient and are not supported.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, List, Sequence

import numpy as np
from numpy.typing import NDArray
import pandas as pd

from pydsm.exceptions import ValidationError
from pydsm.families import Family
from pydsm.utils import row_slices

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GridVariance:
    """Predicted total and its variance for one grid."""
    pred: float
    variance: float
    cell_pred: NDArray

    @property
    def se(self) -> float:
        return float(np.sqrt(self.variance))


def sandwich_variance(
    lpmatrix: Callable[[pd.DataFrame], NDArray],
    coef: NDArray,
    vcov: NDArray,
    family: Family,
    grids: Sequence[pd.DataFrame],
    offsets: Sequence[NDArray],
) -> List[GridVariance]:
    """Total abundance and its variance for each prediction grid.

    Parameters
    ----------
    lpmatrix : callable
        Builds the linear predictor matrix for a data frame
    coef : NDArray
        Model coefficients
    vcov : NDArray
        Coefficient covariance matrix
    family : Family
        Response family; must use the log link
    grids : sequence of pd.DataFrame
        Prediction grids
    offsets : sequence of NDArray
        Response-scale offset (cell area) per row of each grid

    Returns
    -------
    list of GridVariance
        One entry per grid, in order. Grids are treated as independent.
    """
    if family.link != "log":
        raise ValidationError(
            f"Sandwich variance needs a log link, the model uses {family.link!r}"
        )
    if len(grids) != len(offsets):
        raise ValidationError(
            f"Got {len(grids)} prediction grids but {len(offsets)} offsets"
        )

    # one matrix for all grids, then slice out each grid's rows
    stacked = pd.concat(list(grids), ignore_index=True)
    lp = lpmatrix(stacked)
    logger.debug(f"Stacked prediction matrix {lp.shape} for {len(grids)} grids")

    results = []
    for rows, offset in zip(row_slices(grids), offsets):
        lp_grid = lp[rows]
        cell_pred = np.asarray(offset, dtype=float) * family.linkinv(lp_grid @ coef)
        dn_dbeta = cell_pred @ lp_grid
        variance = float(dn_dbeta @ vcov @ dn_dbeta)
        results.append(GridVariance(
            pred=float(np.sum(cell_pred)),
            variance=max(variance, 0.0),
            cell_pred=cell_pred,
        ))
    return results

"""
Goodness of fit checks for density surface models.

Observed and expected counts summed within levels of a covariate should
agree when the model fits well. Checking several aggregations (by
observer, sea state, depth bands...) shows where a model over- or
under-predicts.
"""

from __future__ import annotations

import logging
from typing import Optional, Sequence

import pandas as pd

from pydsm.exceptions import ValidationError
from pydsm.models.dsm import DSM

logger = logging.getLogger(__name__)


def obs_exp(
    model: DSM,
    covar: str,
    cut: Optional[Sequence[float]] = None,
) -> pd.DataFrame:
    """Observed and expected counts per level of a segment covariate.

    Parameters
    ----------
    model : DSM
        Fitted density surface model
    covar : str
        Segment covariate to aggregate by
    cut : sequence of float, optional
        Break points for binning a continuous covariate. The unique values
        of ``covar`` are used when omitted.

    Returns
    -------
    pd.DataFrame
        Indexed by covariate level (or interval), with ``observed`` and
        ``expected`` columns

    Examples
    --------
    >>> obs_exp(model, "beaufort")
    >>> obs_exp(model, "depth", cut=[0, 100, 500, 2000])
    """
    model._check_fitted()
    data = model.segment_data_
    if covar not in data.columns:
        raise ValidationError(f"Covariate {covar!r} not found in the segment data")

    groups = data[covar]
    if cut is not None:
        groups = pd.cut(groups, bins=list(cut))
        outside = groups.isna() & data[covar].notna()
        if outside.any():
            logger.warning(f"{int(outside.sum())} segments fall outside the cut points for {covar!r}")

    frame = pd.DataFrame({
        covar: groups,
        "observed": data[model.response].to_numpy(),
        "expected": model.predict(),
    })
    return frame.groupby(covar, observed=True)[["observed", "expected"]].sum()

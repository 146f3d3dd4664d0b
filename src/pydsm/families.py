"""
Response families for density surface models.

Counts of detected animals per segment are modelled with a log link. The
``poisson`` family has known scale (1); ``quasipoisson`` keeps the Poisson
mean-variance relationship and estimates a dispersion parameter from the
Pearson statistic after each fit.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict

import numpy as np
from numpy.typing import NDArray

from pydsm.exceptions import ValidationError


@dataclass(frozen=True)
class Family:
    """Response distribution and link function.

    Attributes
    ----------
    name : str
        Family name
    link : str
        Link function name
    scale_known : bool
        Whether the scale parameter is fixed (no estimation round)
    """
    name: str
    link: str = "log"
    scale_known: bool = True

    def linkfun(self, mu: NDArray) -> NDArray:
        """Map the mean to the linear predictor scale."""
        if self.link != "log":
            raise ValidationError(f"Unsupported link function: {self.link}")
        return np.log(mu)

    def linkinv(self, eta: NDArray) -> NDArray:
        """Map the linear predictor to the mean."""
        if self.link != "log":
            raise ValidationError(f"Unsupported link function: {self.link}")
        return np.exp(eta)

    def deviance(self, y: NDArray, mu: NDArray, weights: NDArray) -> float:
        """Poisson deviance, also used by the quasi family."""
        y = np.asarray(y, dtype=float)
        with np.errstate(divide="ignore", invalid="ignore"):
            ylogy = np.where(y > 0, y * np.log(y / mu), 0.0)
        return float(2.0 * np.sum(weights * (ylogy - (y - mu))))

    def pearson_scale(self, y: NDArray, mu: NDArray, weights: NDArray, edof: float) -> float:
        """Pearson estimate of the dispersion, or 1 for known scale."""
        if self.scale_known:
            return 1.0
        resid_df = max(len(y) - edof, 1.0)
        return float(np.sum(weights * (y - mu) ** 2 / mu) / resid_df)


_FAMILIES: Dict[str, Family] = {
    "poisson": Family(name="poisson", scale_known=True),
    "quasipoisson": Family(name="quasipoisson", scale_known=False),
}


def get_family(family) -> Family:
    """Resolve a family name (or pass through a :class:`Family`)."""
    if isinstance(family, Family):
        return family
    try:
        return _FAMILIES[family]
    except KeyError:
        raise ValidationError(
            f"Unknown family {family!r}; choose one of {sorted(_FAMILIES)}"
        ) from None

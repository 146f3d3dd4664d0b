"""
Variance propagation for density surface models.

- dsm_varprop / dsm_var_prop: propagate detection function uncertainty
- dsm_var_gam: GAM-only prediction variance
- varprop_check: detection probability agreement diagnostic
"""

from pydsm.varprop.core import (
    VarPropResult,
    VarPropSummary,
    dsm_var_gam,
    dsm_var_prop,
    dsm_varprop,
)
from pydsm.varprop.diagnostics import varprop_check
from pydsm.varprop.hessian import detection_hessian, offset_derivatives
from pydsm.varprop.refit import AugmentedModel, refit_augmented
from pydsm.varprop.sandwich import GridVariance, sandwich_variance

__all__ = [
    "dsm_varprop",
    "dsm_var_prop",
    "dsm_var_gam",
    "VarPropResult",
    "VarPropSummary",
    "varprop_check",
    "detection_hessian",
    "offset_derivatives",
    "AugmentedModel",
    "refit_augmented",
    "GridVariance",
    "sandwich_variance",
]

"""
Options for variance propagation.

The recognised values are fixed enumerations. Argument names from older
releases (``var.type``, ``vartype``, ...) are rejected with a message naming
the replacement rather than being accepted alongside the new names.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Literal

from pydsm.exceptions import ValidationError

VAR_TYPES = ("Vp", "Vc")
"""Coefficient covariance variants: conditional on the smoothing
parameters (``"Vp"``) or corrected for their uncertainty (``"Vc"``)."""

RE_SMOOTHING = ("estimate", "fixed")
"""How the smoothing parameter of the detection random effect is set."""

TYPE_PRED = ("response", "link")

LEGACY_ARGUMENTS: Dict[str, str] = {
    "var.type": "var_type",
    "vartype": "var_type",
    "seglen.varname": "seglen_varname",
    "type.pred": "type_pred",
    "off.set": "off_set",
    "pred.data": "pred_data",
    "dsm.obj": "dsm_obj",
}


def reject_legacy_arguments(kwargs: Dict[str, Any]) -> None:
    """Raise for deprecated or unknown keyword arguments.

    Parameters
    ----------
    kwargs : dict
        Keyword arguments left over after the regular ones were bound.

    Raises
    ------
    ValidationError
        If any argument is present. Known legacy names get a migration hint.
    """
    for name in kwargs:
        if name in LEGACY_ARGUMENTS:
            raise ValidationError(
                f"Argument '{name}' is deprecated, use '{LEGACY_ARGUMENTS[name]}' instead."
            )
        raise ValidationError(f"Unknown argument '{name}'.")


@dataclass(frozen=True)
class VarPropOptions:
    """Validated settings for a variance propagation run.

    Parameters
    ----------
    var_type : {'Vp', 'Vc'}
        Covariance matrix used in the sandwich
    re_smoothing : {'estimate', 'fixed'}
        ``'estimate'`` re-estimates the random effect smoothing parameter
        by REML starting from 1; ``'fixed'`` holds it at 1 so the random
        effect prior is exactly the detection parameter covariance
    hessian_step : float
        Relative step for the finite difference derivatives
    trace : bool
        Log numerical detail at DEBUG level
    """
    var_type: Literal["Vp", "Vc"] = "Vp"
    re_smoothing: Literal["estimate", "fixed"] = "estimate"
    hessian_step: float = 1e-4
    trace: bool = False

    def __post_init__(self):
        if self.var_type not in VAR_TYPES:
            raise ValidationError(
                f"var_type must be one of {VAR_TYPES}, got {self.var_type!r}"
            )
        if self.re_smoothing not in RE_SMOOTHING:
            raise ValidationError(
                f"re_smoothing must be one of {RE_SMOOTHING}, got {self.re_smoothing!r}"
            )
        if not self.hessian_step > 0:
            raise ValidationError("hessian_step must be positive")


def resolve_options(**kwargs) -> VarPropOptions:
    """Build :class:`VarPropOptions` from keyword arguments.

    Recognised keywords are the fields of :class:`VarPropOptions`; anything
    else is rejected through :func:`reject_legacy_arguments`.
    """
    fields = set(VarPropOptions.__dataclass_fields__)
    known = {k: v for k, v in kwargs.items() if k in fields}
    reject_legacy_arguments({k: v for k, v in kwargs.items() if k not in fields})
    return VarPropOptions(**known)

"""
pydsm: density surface models for distance sampling data.

Fits spatial GAMs to segment counts with a detection-function offset, and
propagates detection function uncertainty into the variance of predicted
abundance.

Example
-------
>>> from pydsm import DSM, DetectionFunction, dsm_var_prop
>>> hn = DetectionFunction(key="hn", covariates=["observer"], truncation=0.5).fit(obs)
>>> model = DSM(terms=["s(x, y)"]).fit(segments, obs, hn)
>>> result = dsm_var_prop(model, grid, off_set=grid["area"])
>>> print(result.summary())
"""

__version__ = "0.1.0"

# Models (before anything importing pydsm.smoothing)
from pydsm.models import DSM, DSMSummary, GAMFit

# Detection functions
from pydsm.detection import DetectionFunction, NullDetection, StratifiedDetection

# Variance propagation
from pydsm.varprop import (
    AugmentedModel,
    VarPropResult,
    VarPropSummary,
    dsm_var_gam,
    dsm_var_prop,
    dsm_varprop,
    varprop_check,
)

# Utilities
from pydsm.config import VarPropOptions
from pydsm.evaluation import obs_exp
from pydsm.exceptions import (
    ConvergenceWarning,
    DSMError,
    NumericalWarning,
    UnsupportedModelError,
    ValidationError,
)
from pydsm.families import Family, get_family
from pydsm.synthetic import simulate_survey
from pydsm.base import BaseEstimator
from pydsm import utils

__all__ = [
    # Models
    "DSM",
    "DSMSummary",
    "GAMFit",
    "DetectionFunction",
    "StratifiedDetection",
    "NullDetection",
    # Variance
    "dsm_varprop",
    "dsm_var_prop",
    "dsm_var_gam",
    "varprop_check",
    "VarPropResult",
    "VarPropSummary",
    "AugmentedModel",
    "VarPropOptions",
    # Errors
    "DSMError",
    "ValidationError",
    "UnsupportedModelError",
    "ConvergenceWarning",
    "NumericalWarning",
    # Utilities
    "Family",
    "get_family",
    "obs_exp",
    "simulate_survey",
    "BaseEstimator",
    "utils",
    "__version__",
]

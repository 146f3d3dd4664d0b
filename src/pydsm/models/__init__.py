"""
Model classes for pydsm.

- DSM: density surface model (spatial GAM with a detection offset)
- GAMFit: fitted pygam model with the data it was fitted to
- TermSpec: parsed model term
"""

from pydsm.models.gam import GAMFit, TermSpec, parse_terms
from pydsm.models.dsm import DSM, DSMSummary

__all__ = [
    "DSM",
    "DSMSummary",
    "GAMFit",
    "TermSpec",
    "parse_terms",
]

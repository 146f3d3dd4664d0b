"""Base class shared by detection functions and density surface models."""

from __future__ import annotations

import pickle
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict

from pydsm.exceptions import ValidationError

_FORMAT_VERSION = 1


class BaseEstimator(ABC):
    """Fitted-state tracking and pickle persistence.

    Subclasses store constructor arguments as plain attributes and fitted
    results with a trailing underscore, so :meth:`get_params` can tell the
    two apart.
    """

    def __init__(self):
        self.is_fitted_ = False

    def _check_fitted(self) -> None:
        """Raise ``RuntimeError`` unless :meth:`fit` has been called."""
        if not self.is_fitted_:
            raise RuntimeError(f"{type(self).__name__} not fitted. Call fit() first.")

    @abstractmethod
    def fit(self, *args, **kwargs) -> BaseEstimator:
        """Fit the model."""

    @abstractmethod
    def _get_state_dict(self) -> Dict[str, Any]:
        """Everything needed to rebuild the fitted estimator."""

    @abstractmethod
    def _set_state_dict(self, state: Dict[str, Any]) -> None:
        """Rebuild from :meth:`_get_state_dict` output."""

    def get_params(self) -> Dict[str, Any]:
        """Constructor arguments of this estimator."""
        return {
            key: value for key, value in vars(self).items()
            if not key.endswith('_') and not key.startswith('_')
        }

    def set_params(self, **params) -> BaseEstimator:
        """Change constructor arguments. Takes effect at the next :meth:`fit`."""
        known = self.get_params()
        for key, value in params.items():
            if key not in known:
                raise ValidationError(f"Invalid parameter {key!r} for {type(self).__name__}")
            setattr(self, key, value)
        return self

    def save(self, filepath: str | Path) -> None:
        """Pickle a fitted estimator to ``filepath``.

        The payload records the class name so :meth:`load` can refuse a
        file written by a different estimator.
        """
        self._check_fitted()
        filepath = Path(filepath)
        filepath.parent.mkdir(parents=True, exist_ok=True)
        payload = {
            'format': _FORMAT_VERSION,
            'class': type(self).__name__,
            'state': self._get_state_dict(),
        }
        with open(filepath, 'wb') as f:
            pickle.dump(payload, f)

    @classmethod
    def load(cls, filepath: str | Path) -> BaseEstimator:
        """Load an estimator written by :meth:`save`.

        Parameters
        ----------
        filepath : str or Path
            File written by :meth:`save`

        Returns
        -------
        BaseEstimator
            Fitted instance of ``cls``

        Raises
        ------
        FileNotFoundError
            If the file does not exist
        ValidationError
            If the file was written by another class or another format
        """
        filepath = Path(filepath)
        if not filepath.exists():
            raise FileNotFoundError(f"Model file not found: {filepath}")

        with open(filepath, 'rb') as f:
            payload = pickle.load(f)

        if not isinstance(payload, dict) or payload.get('format') != _FORMAT_VERSION:
            raise ValidationError(f"{filepath} is not a pydsm model file")
        if payload['class'] != cls.__name__:
            raise ValidationError(
                f"{filepath} holds a {payload['class']}, not a {cls.__name__}"
            )

        model = cls.__new__(cls)
        model._set_state_dict(payload['state'])
        model.is_fitted_ = True
        return model

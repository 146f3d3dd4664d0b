"""
Test configuration and fixtures for pydsm.

Fitting detection functions and DSMs takes a moment, so fitted models are
shared across a test session. Tests must not modify them.
"""

import pytest

from pydsm import DSM, DetectionFunction, NullDetection, StratifiedDetection
from pydsm.synthetic import simulate_survey

TRUNCATION = 0.5


def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers", "slow: mark test as slow running"
    )


@pytest.fixture(scope="session")
def survey():
    """Survey with an observer effect on detectability."""
    return simulate_survey(observer_effect=0.4, seed=42)


@pytest.fixture(scope="session")
def stratified_survey():
    """Survey whose eastern half has a wider detection function."""
    return simulate_survey(sigma=0.2, strata_sigma=0.3, seed=0)


@pytest.fixture(scope="session")
def hn_detection(survey):
    """Half-normal detection function without covariates (1 parameter)."""
    return DetectionFunction(key="hn", truncation=TRUNCATION).fit(survey.observations)


@pytest.fixture(scope="session")
def hr_detection(survey):
    """Hazard-rate detection function without covariates (2 parameters)."""
    return DetectionFunction(key="hr", truncation=TRUNCATION).fit(survey.observations)


@pytest.fixture(scope="session")
def observer_detection(survey):
    """Half-normal detection function with an observer factor (2 parameters)."""
    return DetectionFunction(
        key="hn", covariates=["observer"], truncation=TRUNCATION
    ).fit(survey.observations)


def _fit_dsm(survey, detection, **kwargs):
    params = dict(terms=["s(x, y)"], n_splines=6)
    params.update(kwargs)
    return DSM(**params).fit(survey.segments, survey.observations, detection)


@pytest.fixture(scope="session")
def hn_model(survey, hn_detection):
    """Count DSM with the covariate-free half-normal detection function."""
    return _fit_dsm(survey, hn_detection)


@pytest.fixture(scope="session")
def observer_model(survey, observer_detection):
    """Count DSM whose offset varies with observer."""
    return _fit_dsm(survey, observer_detection)


@pytest.fixture(scope="session")
def strip_model(survey):
    """Count DSM for a strip transect (no detection function)."""
    return _fit_dsm(survey, NullDetection(width=TRUNCATION))


@pytest.fixture(scope="session")
def stratified_model(stratified_survey):
    """Count DSM with one detection function per stratum."""
    detection = StratifiedDetection([
        DetectionFunction(key="hn", truncation=TRUNCATION),
        DetectionFunction(key="hn", truncation=TRUNCATION),
    ]).fit(stratified_survey.observations)
    return _fit_dsm(stratified_survey, detection)


@pytest.fixture
def grid(survey):
    """Prediction grid with an off_set column."""
    return survey.prediction_grid.copy()

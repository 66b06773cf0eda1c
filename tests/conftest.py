"""
Shared fixtures: a simulated line transect survey over a 10 x 10 region.

Ten north-south transects, each cut into ten unit-length segments, cross
a density surface with a single peak. Detection is half-normal with a
scale that shrinks with sea state (``beaufort``), which is recorded per
segment and copied to each observation.
"""

import numpy as np
import pandas as pd
import pytest
from shapely.geometry import box

from pydsm import (
    CountModel,
    DSMConfig,
    SmoothTermSpec,
    build_response,
    create_prediction_grid,
    fit_detection_function,
)

TRUNCATION = 0.5


def true_density(x, y):
    return 2.0 + 20.0 * np.exp(-((x - 3.0) ** 2 + (y - 6.0) ** 2) / 8.0)


def simulate_survey(seed=2024, n_transects=10, n_segments=10, sigma0=0.25, beaufort_effect=-0.2):
    """Simulate segment and observation tables."""
    rng = np.random.default_rng(seed)

    rows = []
    for t in range(n_transects):
        for s in range(n_segments):
            x = t + 0.5
            y = s + 0.5
            rows.append({
                'segment_id': t * n_segments + s,
                'transect_id': t,
                'x': x,
                'y': y,
                'length': 1.0,
                'beaufort': int(rng.integers(0, 4)),
                'depth': 10.0 + 2.0 * x + rng.normal(0.0, 1.0),
            })
    segments = pd.DataFrame(rows)

    obs_rows = []
    for seg in segments.itertuples():
        n_animals = rng.poisson(true_density(seg.x, seg.y) * 2 * TRUNCATION * seg.length)
        sigma = sigma0 * np.exp(beaufort_effect * seg.beaufort)
        distances = rng.uniform(0.0, TRUNCATION, n_animals)
        detected = rng.uniform(size=n_animals) < np.exp(-distances ** 2 / (2 * sigma ** 2))
        for d in distances[detected]:
            obs_rows.append({
                'object_id': len(obs_rows),
                'segment_id': seg.segment_id,
                'distance': d,
                'size': 1 + rng.poisson(0.3),
                'beaufort': seg.beaufort,
            })
    observations = pd.DataFrame(obs_rows)
    return segments, observations


@pytest.fixture(scope="session")
def survey():
    return simulate_survey()


@pytest.fixture
def segments(survey):
    return survey[0].copy()


@pytest.fixture
def observations(survey):
    return survey[1].copy()


@pytest.fixture(scope="session")
def detection(survey):
    """Pooled half-normal detection function."""
    return fit_detection_function(survey[1], key='hn', truncation=TRUNCATION)


@pytest.fixture(scope="session")
def detection_beaufort(survey):
    """Half-normal detection function with a sea-state covariate."""
    return fit_detection_function(
        survey[1], key='hn', covariates=['beaufort'], truncation=TRUNCATION
    )


@pytest.fixture(scope="session")
def square_boundary():
    return box(0.0, 0.0, 10.0, 10.0)


@pytest.fixture(scope="session")
def prediction_grid(square_boundary):
    return create_prediction_grid(square_boundary, cell_size=1.0)


@pytest.fixture(scope="session")
def xy_config():
    return DSMConfig(terms=[SmoothTermSpec(('x', 'y'), basis='tp', k=15)], family='quasipoisson')


@pytest.fixture(scope="session")
def fitted_model(survey, detection, xy_config):
    """Count model with a pooled detection function."""
    response = build_response(survey[0], survey[1], detection)
    return CountModel(xy_config).fit(response)


@pytest.fixture(scope="session")
def fitted_model_beaufort(survey, detection_beaufort, xy_config):
    """Count model whose offset uses segment-level detection probabilities."""
    response = build_response(survey[0], survey[1], detection_beaufort)
    return CountModel(xy_config).fit(response)

from __future__ import annotations

import numpy as np
import pytest

from sdrcausal.sim.dgp import planted_direction_data


@pytest.fixture
def rng():
    return np.random.default_rng(42)


@pytest.fixture
def small_data(rng):
    """Balanced two-arm sample with three covariates."""
    n, p = 90, 3
    x = rng.standard_normal((n, p))
    treated = np.zeros(n, dtype=int)
    treated[::2] = 1
    y = x[:, 0] + 0.5 * x[:, 1] ** 2 + treated + 0.1 * rng.standard_normal(n)
    return x, y, treated


@pytest.fixture
def planted():
    return planted_direction_data(n=200, p=3, seed=11)

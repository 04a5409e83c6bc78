"""Synthetic data with a known reduction direction.

Covariates are standard normal, treatment assignment and both response
surfaces depend on ``x`` only through ``z = x @ beta_true``.
"""

from __future__ import annotations

import numpy as np

from sdrcausal.core.params import default_beta


def planted_direction_data(
    n: int = 200,
    p: int = 3,
    seed: int | None = 42,
    *,
    d: int = 1,
    effect: float = 1.0,
    noise: float = 0.1,
):
    """Simulate ``(x, y, treated, beta_true)`` with ``beta_true`` of shape ``(p, d)``.

    ``beta_true`` has the identity upper block and ``0.5`` in the first free
    row, so the true direction is already in normalised form. Responses are
    ``sum(z) + 0.5 * sum(z**2) + effect * treated + noise * e`` and the
    propensity is logistic in the first index coordinate, so the ATE equals
    ``effect``.
    """
    if d > p:
        raise ValueError(f"d must not exceed p; got d={d}, p={p}.")
    rng = np.random.default_rng(seed)
    beta_true = default_beta(p, d)
    if p > d:
        beta_true[d] = 0.5
    x = rng.standard_normal((n, p))
    z = x @ beta_true
    prop = 1.0 / (1.0 + np.exp(-z[:, 0]))
    treated = (rng.random(n) < prop).astype(np.int8)
    y = z.sum(axis=1) + 0.5 * (z**2).sum(axis=1) + effect * treated
    y = y + noise * rng.standard_normal(n)
    return x, y, treated, beta_true

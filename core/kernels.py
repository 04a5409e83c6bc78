"""Smoothing kernels for index-based Nadaraya-Watson estimates.

Three families are supported, selected by :class:`KernelSpec`:

- ``EPAN`` (1): Epanechnikov, ``0.75 (1 - u^2)`` on ``|u| < 1``.
- ``QUAR`` (2): quartic / biweight, ``15/16 (1 - u^2)^2`` on ``|u| < 1``.
- ``GAUSS`` (3): Gaussian ``exp(-u^2 / 2)`` truncated to exactly zero beyond
  ``gauss_cutoff`` standardised units.

Multivariate weights use the product kernel over the reduced coordinates. All
functions are pure and safe to call from several worker threads at once.
"""
from __future__ import annotations

from enum import IntEnum
from math import log, sqrt
from typing import TYPE_CHECKING

import numpy as np

from .errors import InvalidArgument

if TYPE_CHECKING:
    from numpy.typing import NDArray

__all__ = [
    "DEFAULT_GAUSS_CUTOFF",
    "KernelSpec",
    "cutoff_from_weight",
    "kernel",
    "kernel_derivative",
    "kernel_max",
    "product_kernel",
]


class KernelSpec(IntEnum):
    """Integer kernel codes shared with the procedural entry point."""

    EPAN = 1
    QUAR = 2
    GAUSS = 3

    @classmethod
    def parse(cls, spec: KernelSpec | int | str) -> KernelSpec:
        """Resolve a kernel code, enum member or (case-insensitive) name."""
        if isinstance(spec, KernelSpec):
            return spec
        if isinstance(spec, str):
            key = spec.strip().lower()
            if key in _ALIASES:
                return _ALIASES[key]
            msg = f"unknown kernel: {spec!r}; allowed: {sorted(_ALIASES)}"
            raise InvalidArgument(msg)
        if isinstance(spec, (bool, np.bool_)):
            raise InvalidArgument(f"unknown kernel code: {spec!r}")
        try:
            return cls(int(spec))
        except (TypeError, ValueError) as exc:
            msg = f"unknown kernel code: {spec!r}; allowed: {[int(k) for k in cls]}"
            raise InvalidArgument(msg) from exc


_ALIASES: dict[str, KernelSpec] = {
    "epan": KernelSpec.EPAN,
    "epanechnikov": KernelSpec.EPAN,
    "quar": KernelSpec.QUAR,
    "quartic": KernelSpec.QUAR,
    "biweight": KernelSpec.QUAR,
    "gauss": KernelSpec.GAUSS,
    "gaussian": KernelSpec.GAUSS,
}

_KERNEL_MAX = {
    KernelSpec.EPAN: 0.75,
    KernelSpec.QUAR: 15.0 / 16.0,
    KernelSpec.GAUSS: 1.0,
}


def cutoff_from_weight(weight: float) -> float:
    """Return the Gaussian radius at which ``exp(-u^2/2)`` falls to ``weight``."""
    w = float(weight)
    if not (0.0 < w < 1.0):
        raise InvalidArgument("weight must lie in (0, 1)")
    return sqrt(-2.0 * log(w))


# Weights below 1e-3 are dropped, i.e. |u| > 3.717 standardised units.
DEFAULT_GAUSS_CUTOFF: float = cutoff_from_weight(1e-3)


def kernel_max(spec: KernelSpec | int | str) -> float:
    """Kernel value at distance zero."""
    return _KERNEL_MAX[KernelSpec.parse(spec)]


def _check_bandwidth(h: float, gauss_cutoff: float) -> float:
    hf = float(h)
    if not np.isfinite(hf) or hf <= 0.0:
        raise InvalidArgument(f"bandwidth must be positive and finite; got {h!r}")
    cf = float(gauss_cutoff)
    if not np.isfinite(cf) or cf <= 0.0:
        raise InvalidArgument(f"gauss_cutoff must be positive and finite; got {gauss_cutoff!r}")
    return hf


def _standard_kernel(u: NDArray[np.float64], spec: KernelSpec, cutoff: float) -> NDArray[np.float64]:
    au = np.abs(u)
    if spec is KernelSpec.EPAN:
        return np.where(au < 1.0, 0.75 * (1.0 - u * u), 0.0)
    if spec is KernelSpec.QUAR:
        one_m = 1.0 - u * u
        return np.where(au < 1.0, (15.0 / 16.0) * one_m * one_m, 0.0)
    return np.where(au <= cutoff, np.exp(-0.5 * u * u), 0.0)


def _standard_derivative(u: NDArray[np.float64], spec: KernelSpec, cutoff: float) -> NDArray[np.float64]:
    au = np.abs(u)
    if spec is KernelSpec.EPAN:
        return np.where(au < 1.0, -1.5 * u, 0.0)
    if spec is KernelSpec.QUAR:
        return np.where(au < 1.0, -3.75 * u * (1.0 - u * u), 0.0)
    return np.where(au <= cutoff, -u * np.exp(-0.5 * u * u), 0.0)


def kernel(
    u: NDArray[np.float64] | float,
    h: float,
    spec: KernelSpec | int | str = KernelSpec.EPAN,
    gauss_cutoff: float = DEFAULT_GAUSS_CUTOFF,
) -> NDArray[np.float64]:
    """Evaluate ``K(u / h)`` elementwise."""
    hf = _check_bandwidth(h, gauss_cutoff)
    z = np.asarray(u, dtype=np.float64) / hf
    return _standard_kernel(z, KernelSpec.parse(spec), float(gauss_cutoff))


def kernel_derivative(
    u: NDArray[np.float64] | float,
    h: float,
    spec: KernelSpec | int | str = KernelSpec.EPAN,
    gauss_cutoff: float = DEFAULT_GAUSS_CUTOFF,
) -> NDArray[np.float64]:
    """Evaluate ``K'(u / h)``, the derivative in the standardised argument."""
    hf = _check_bandwidth(h, gauss_cutoff)
    z = np.asarray(u, dtype=np.float64) / hf
    return _standard_derivative(z, KernelSpec.parse(spec), float(gauss_cutoff))


def product_kernel(
    diff: NDArray[np.float64],
    h: float,
    spec: KernelSpec | int | str = KernelSpec.EPAN,
    gauss_cutoff: float = DEFAULT_GAUSS_CUTOFF,
    *,
    with_gradient: bool = False,
) -> NDArray[np.float64] | tuple[NDArray[np.float64], NDArray[np.float64]]:
    """Product kernel over the last axis of ``diff``.

    Parameters
    ----------
    diff : ndarray, shape (..., d)
        Raw (unscaled) coordinate differences ``z_i - z_j``.
    h : float
        Bandwidth shared by all coordinates.
    with_gradient : bool
        Also return the gradient of the weight with respect to ``diff``
        (shape ``(..., d)``), i.e. ``grad_u K(u) / h``.

    """
    hf = _check_bandwidth(h, gauss_cutoff)
    kspec = KernelSpec.parse(spec)
    cutoff = float(gauss_cutoff)
    u = np.asarray(diff, dtype=np.float64) / hf
    k = _standard_kernel(u, kspec, cutoff)
    weights = np.prod(k, axis=-1)
    if not with_gradient:
        return weights
    dk = _standard_derivative(u, kspec, cutoff)
    d = u.shape[-1]
    if d == 1:
        grad = dk / hf
    else:
        grad = np.empty_like(k)
        for j in range(d):
            others = np.prod(np.delete(k, j, axis=-1), axis=-1)
            grad[..., j] = dk[..., j] * others
        grad /= hf
    return weights, grad

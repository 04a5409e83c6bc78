"""sdrcausal: sufficient dimension reduction for causal imputation.

Estimates a low-dimensional linear index of the covariates along which
treated and control response surfaces are smoothed, and imputes potential
outcomes (and the ATE) on that index.
"""
from __future__ import annotations

from importlib import import_module
from typing import Any

__version__ = "0.1.0"

__all__ = [
    "DimRedResult",
    "ImpDimRed",
    "Imputation",
    "InvalidArgument",
    "KernelSpec",
    "MaxIterationsExceeded",
    "NumericalBreakdown",
    "OptimizerConfig",
    "OptimizerStatus",
    "imp_ate",
    "imp_dim_red",
    "impute_outcomes",
]

_LAZY_IMPORTS: dict[str, tuple[str, str]] = {
    "DimRedResult": ("sdrcausal.estimators.base", "DimRedResult"),
    "ImpDimRed": ("sdrcausal.estimators.imp", "ImpDimRed"),
    "Imputation": ("sdrcausal.estimators.imp", "Imputation"),
    "imp_ate": ("sdrcausal.estimators.imp", "imp_ate"),
    "imp_dim_red": ("sdrcausal.estimators.imp", "imp_dim_red"),
    "impute_outcomes": ("sdrcausal.estimators.imp", "impute_outcomes"),
    "InvalidArgument": ("sdrcausal.core.errors", "InvalidArgument"),
    "MaxIterationsExceeded": ("sdrcausal.core.errors", "MaxIterationsExceeded"),
    "NumericalBreakdown": ("sdrcausal.core.errors", "NumericalBreakdown"),
    "KernelSpec": ("sdrcausal.core.kernels", "KernelSpec"),
    "OptimizerConfig": ("sdrcausal.core.optimize", "OptimizerConfig"),
    "OptimizerStatus": ("sdrcausal.core.optimize", "OptimizerStatus"),
}


def __getattr__(name: str) -> Any:
    """Lazily import public estimators and utilities on first access."""
    if name in _LAZY_IMPORTS:
        module_name, attr_name = _LAZY_IMPORTS[name]
        module = import_module(module_name)
        attr = getattr(module, attr_name)
        globals()[name] = attr
        return attr
    raise AttributeError(f"module 'sdrcausal' has no attribute '{name}'")


def __dir__() -> list[str]:
    """Ensure dir() exposes lazily imported names."""
    return sorted(set(globals()) | set(__all__))

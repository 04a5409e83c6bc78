# sdrcausal/core/__init__.py
"""Core computational modules for sdrcausal."""
from . import errors, kernels, objective, optimize, parallel, params

__all__ = ["errors", "kernels", "objective", "optimize", "parallel", "params"]

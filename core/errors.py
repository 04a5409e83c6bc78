"""Exception and warning types raised by the estimation core.

Invalid input is rejected eagerly with :class:`InvalidArgument` (a
``ValueError``), numerical failure during optimisation surfaces as
:class:`NumericalBreakdown`, and an iteration cap that stops the optimiser
short of convergence is reported through :class:`MaxIterationsExceeded`,
which is a warning rather than an error.
"""
from __future__ import annotations

from typing import Any

__all__ = ["InvalidArgument", "MaxIterationsExceeded", "NumericalBreakdown"]


class InvalidArgument(ValueError):
    """Raised when estimation inputs violate the parameter-block contract."""


class NumericalBreakdown(RuntimeError):
    """Raised when the loss or gradient cannot be evaluated to finite values.

    The partially completed optimisation result, when available, is attached
    as ``result`` so callers can inspect the best iterate reached.
    """

    def __init__(self, message: str, *, result: Any | None = None) -> None:
        super().__init__(message)
        self.result = result


class MaxIterationsExceeded(RuntimeWarning):
    """Issued when the optimiser stops at its iteration cap."""

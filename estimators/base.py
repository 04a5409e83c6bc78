"""Result container and shared helpers for estimators.

This module defines the standardized dimension-reduction result container
returned by :mod:`sdrcausal.estimators.imp`.
"""

# sdrcausal/estimators/base.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import numpy as np
import pandas as pd

from sdrcausal.core.errors import InvalidArgument
from sdrcausal.core.optimize import OptimizerStatus

if TYPE_CHECKING:  # import-only typing
    from collections.abc import Sequence

    from numpy.typing import NDArray

__all__ = [
    "DimRedResult",
    "beta_frame",
    "covariate_names",
]


def covariate_names(x: Any, p: int, names: Sequence[str] | None = None) -> list[str]:
    """Resolve covariate labels from explicit names, DataFrame columns, or ``x{j}``."""
    if names is not None:
        out = [str(nm) for nm in names]
        if len(out) != p:
            raise InvalidArgument(f"var_names length {len(out)} != p={p}.")
        return out
    cols = getattr(x, "columns", None)
    if cols is not None and len(cols) == p:
        return [str(c) for c in cols]
    return [f"x{j}" for j in range(p)]


def beta_frame(beta: NDArray[np.float64], names: Sequence[str]) -> pd.DataFrame:
    """Label a ``(p, d)`` direction matrix: rows are covariates, columns ``dir1..dird``."""
    B = np.asarray(beta, dtype=np.float64)
    return pd.DataFrame(
        B, index=pd.Index(list(names), name="covariate"),
        columns=[f"dir{k + 1}" for k in range(B.shape[1])],
    )


# ---------------------------------------------------------------------
# Results container
# ---------------------------------------------------------------------
@dataclass
class DimRedResult:
    """Container for dimension-reduction results.

    Stores the estimated direction and optimiser diagnostics. Does not
    compute standard errors or p-values.
    """

    beta: pd.DataFrame
    status: OptimizerStatus
    loss: float
    n_iter: int
    n_eval: int = 0
    grad_norm: float = float("nan")
    message: str = ""
    n_obs: int | None = None
    model_info: dict[str, Any] = field(default_factory=dict)
    extra: dict[str, Any] = field(default_factory=dict)
    """Dictionary for estimator-specific diagnostics and intermediate results."""

    def __repr__(self) -> str:  # pragma: no cover - convenience only
        head = ", ".join(f"{k}={v}" for k, v in self.model_info.items())
        return (
            f"DimRedResult(p={self.beta.shape[0]}, d={self.beta.shape[1]}, "
            f"n={self.n_obs}, status={self.status.value}, {head})"
        )

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        """Validate the result contract.

        - ``beta`` must be a ``DataFrame`` with at least one column.
        - ``status`` must be an :class:`OptimizerStatus` that ended the run.
        - A ``CONVERGED`` or ``MAX_ITER_REACHED`` result must carry a finite
          direction and loss.
        """
        if not isinstance(self.beta, pd.DataFrame) or self.beta.shape[1] == 0:
            raise ValueError("beta must be a non-empty pandas DataFrame (p x d).")
        if not isinstance(self.status, OptimizerStatus):
            raise ValueError("status must be an OptimizerStatus.")
        if self.status in {OptimizerStatus.INITIALIZED, OptimizerStatus.ITERATING}:
            raise ValueError(f"status {self.status.value!r} is not a terminal state.")
        if self.status is not OptimizerStatus.FAILED:
            if not np.all(np.isfinite(self.beta.to_numpy())):
                raise ValueError("beta contains non-finite values.")
            if not np.isfinite(self.loss):
                raise ValueError("loss must be finite for a completed run.")

    @property
    def converged(self) -> bool:
        return self.status is OptimizerStatus.CONVERGED

    def to_numpy(self) -> NDArray[np.float64]:
        """Direction as a plain ``(p, d)`` float array."""
        return self.beta.to_numpy(dtype=np.float64, copy=True)

    def flat(self) -> NDArray[np.float64]:
        """Direction as a row-major buffer of ``p * d`` entries."""
        return self.to_numpy().reshape(-1)

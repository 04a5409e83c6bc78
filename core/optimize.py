"""Derivative-based minimisation with an explicit run state.

The driver owns the candidate parameters during a run and delegates the
actual update rule to an injected :class:`Minimizer` strategy, so it can be
exercised on any ``fun_and_grad`` callable (the kernel objective or a
synthetic one). Status transitions::

    INITIALIZED -> ITERATING -> {CONVERGED, MAX_ITER_REACHED, FAILED}
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Callable, Protocol

import numpy as np
from scipy.optimize import minimize

from .errors import InvalidArgument, NumericalBreakdown

if TYPE_CHECKING:
    from numpy.typing import NDArray

__all__ = [
    "FunAndGrad",
    "Minimizer",
    "MinimizerOutcome",
    "OptimizationResult",
    "OptimizerConfig",
    "OptimizerDriver",
    "OptimizerStatus",
    "ScipyMinimizer",
]

LOGGER = logging.getLogger(__name__)

FunAndGrad = Callable[["NDArray[np.float64]"], "tuple[float, NDArray[np.float64]]"]

_METHODS = frozenset({"L-BFGS-B", "BFGS", "CG"})


class OptimizerStatus(str, Enum):
    INITIALIZED = "initialized"
    ITERATING = "iterating"
    CONVERGED = "converged"
    MAX_ITER_REACHED = "max_iter_reached"
    FAILED = "failed"


@dataclass(frozen=True)
class OptimizerConfig:
    """Stopping rules for the optimiser.

    Notes
    -----
    - ``gtol`` bounds the max-norm of the gradient at convergence.
    - ``ftol`` bounds the relative loss improvement per iteration
      (``L-BFGS-B`` only).
    - ``max_iter`` caps optimiser iterations; hitting it is reported as
      ``MAX_ITER_REACHED`` with the best iterate, not as an error.

    """

    max_iter: int = 200
    gtol: float = 1e-6
    ftol: float = 1e-10
    method: str = "L-BFGS-B"

    def __post_init__(self) -> None:
        if isinstance(self.max_iter, bool) or int(self.max_iter) != self.max_iter or self.max_iter <= 0:
            raise InvalidArgument(f"max_iter must be a positive integer; got {self.max_iter!r}")
        for name in ("gtol", "ftol"):
            val = float(getattr(self, name))
            if not np.isfinite(val) or val <= 0.0:
                raise InvalidArgument(f"{name} must be positive and finite; got {val!r}")
        method = str(self.method).upper()
        if method not in _METHODS:
            raise InvalidArgument(f"method must be one of {sorted(_METHODS)}; got {self.method!r}")
        object.__setattr__(self, "method", method)


@dataclass(frozen=True)
class MinimizerOutcome:
    """What a minimiser strategy reports back to the driver.

    ``outcome`` is ``"converged"``, ``"max_iter"`` or ``"failed"``.
    """

    x: NDArray[np.float64]
    fun: float
    n_iter: int
    n_eval: int
    outcome: str
    message: str = ""


class Minimizer(Protocol):
    def minimize(
        self,
        fun_and_grad: FunAndGrad,
        x0: NDArray[np.float64],
        config: OptimizerConfig,
        callback: Callable[[NDArray[np.float64]], None] | None = None,
    ) -> MinimizerOutcome: ...


class ScipyMinimizer:
    """Quasi-Newton / conjugate-gradient strategy backed by ``scipy.optimize.minimize``."""

    def __init__(self, method: str | None = None) -> None:
        if method is not None and str(method).upper() not in _METHODS:
            raise InvalidArgument(f"method must be one of {sorted(_METHODS)}; got {method!r}")
        self.method = None if method is None else str(method).upper()

    def minimize(
        self,
        fun_and_grad: FunAndGrad,
        x0: NDArray[np.float64],
        config: OptimizerConfig,
        callback: Callable[[NDArray[np.float64]], None] | None = None,
    ) -> MinimizerOutcome:
        method = self.method or config.method
        options: dict[str, float | int] = {"maxiter": int(config.max_iter), "gtol": float(config.gtol)}
        if method == "L-BFGS-B":
            options["ftol"] = float(config.ftol)
        res = minimize(
            fun_and_grad, np.asarray(x0, dtype=np.float64), jac=True,
            method=method, options=options, callback=callback,
        )
        # 0: success, 1: iteration/evaluation limit, otherwise line search
        # failure, precision loss or NaN.
        if res.status == 0:
            outcome = "converged"
        elif res.status == 1:
            outcome = "max_iter"
        else:
            outcome = "failed"
        return MinimizerOutcome(
            x=np.asarray(res.x, dtype=np.float64),
            fun=float(res.fun),
            n_iter=int(getattr(res, "nit", 0)),
            n_eval=int(getattr(res, "nfev", 0)),
            outcome=outcome,
            message=str(res.message),
        )


@dataclass
class OptimizationResult:
    """Final state of one driver run; ``x`` is the best finite iterate."""

    x: NDArray[np.float64]
    fun: float
    grad_norm: float
    status: OptimizerStatus
    n_iter: int
    n_eval: int
    message: str = ""
    history: list[float] = field(default_factory=list)

    @property
    def converged(self) -> bool:
        return self.status is OptimizerStatus.CONVERGED


class OptimizerDriver:
    """Run a minimiser from a starting point and classify the outcome.

    Parameters
    ----------
    fun_and_grad : callable
        ``theta -> (loss, gradient)``.
    config : OptimizerConfig, optional
    minimizer : Minimizer, optional
        Update-rule strategy; defaults to :class:`ScipyMinimizer`.

    """

    def __init__(
        self,
        fun_and_grad: FunAndGrad,
        config: OptimizerConfig | None = None,
        minimizer: Minimizer | None = None,
    ) -> None:
        self.fun_and_grad = fun_and_grad
        self.config = OptimizerConfig() if config is None else config
        self.minimizer = ScipyMinimizer() if minimizer is None else minimizer
        self._status = OptimizerStatus.INITIALIZED
        self._reset()

    @property
    def status(self) -> OptimizerStatus:
        return self._status

    def _reset(self) -> None:
        self._best_fun = np.inf
        self._best_x: NDArray[np.float64] | None = None
        self._best_grad: NDArray[np.float64] | None = None
        self._last_fun = np.nan
        self._n_eval = 0
        self._n_iter = 0
        self._history: list[float] = []

    def _transition(self, status: OptimizerStatus) -> None:
        LOGGER.debug("Optimizer status %s -> %s", self._status.value, status.value)
        self._status = status

    def _evaluate(self, theta: NDArray[np.float64]) -> tuple[float, NDArray[np.float64]]:
        fun, grad = self.fun_and_grad(theta)
        fun = float(fun)
        grad = np.asarray(grad, dtype=np.float64).reshape(-1)
        self._n_eval += 1
        if not (np.isfinite(fun) and np.all(np.isfinite(grad))):
            raise NumericalBreakdown(f"non-finite objective at evaluation {self._n_eval}")
        self._last_fun = fun
        if fun < self._best_fun:
            self._best_fun = fun
            self._best_x = np.array(theta, dtype=np.float64, copy=True)
            self._best_grad = grad.copy()
        return fun, grad

    def _on_iteration(self, xk: NDArray[np.float64]) -> None:
        self._n_iter += 1
        self._history.append(float(self._best_fun))
        LOGGER.debug("iteration %d: best loss %.10g", self._n_iter, self._best_fun)

    def _result(self, status: OptimizerStatus, message: str, theta0: NDArray[np.float64]) -> OptimizationResult:
        self._transition(status)
        if self._best_x is None:
            x = theta0
            fun = np.nan
            grad_norm = np.nan
        else:
            x = self._best_x
            fun = float(self._best_fun)
            grad_norm = float(np.max(np.abs(self._best_grad))) if self._best_grad.size else 0.0
        return OptimizationResult(
            x=np.array(x, dtype=np.float64, copy=True),
            fun=fun,
            grad_norm=grad_norm,
            status=status,
            n_iter=self._n_iter,
            n_eval=self._n_eval,
            message=message,
            history=list(self._history),
        )

    def run(self, theta0: NDArray[np.float64]) -> OptimizationResult:
        """Minimise from ``theta0``.

        Numerical breakdown ends the run in ``FAILED``; the returned result
        then carries the best iterate seen (``x = theta0`` and ``fun = nan``
        if not even the start point could be evaluated).
        """
        self._status = OptimizerStatus.INITIALIZED
        self._reset()
        theta0 = np.array(theta0, dtype=np.float64, copy=True).reshape(-1)

        try:
            _, grad0 = self._evaluate(theta0)
        except NumericalBreakdown as exc:
            LOGGER.debug("Objective failed at the starting point: %s", exc)
            return self._result(OptimizerStatus.FAILED, str(exc), theta0)

        if theta0.size == 0:
            return self._result(OptimizerStatus.CONVERGED, "no free parameters", theta0)
        if float(np.max(np.abs(grad0))) <= self.config.gtol:
            return self._result(OptimizerStatus.CONVERGED, "gradient below gtol at start", theta0)

        self._transition(OptimizerStatus.ITERATING)
        try:
            outcome = self.minimizer.minimize(
                self._evaluate, theta0, self.config, callback=self._on_iteration,
            )
        except NumericalBreakdown as exc:
            LOGGER.debug("Numerical breakdown after %d evaluations: %s", self._n_eval, exc)
            return self._result(OptimizerStatus.FAILED, str(exc), theta0)

        # strategies that do not report through the callback
        self._n_iter = max(self._n_iter, int(outcome.n_iter))
        if outcome.outcome == "converged":
            status = OptimizerStatus.CONVERGED
        elif outcome.outcome == "max_iter":
            status = OptimizerStatus.MAX_ITER_REACHED
        elif self._best_grad is not None and float(np.max(np.abs(self._best_grad))) <= self.config.gtol:
            # line search stalled at a point that already meets the gradient test
            status = OptimizerStatus.CONVERGED
        else:
            status = OptimizerStatus.FAILED
        LOGGER.debug(
            "Minimizer finished (%s) after %d iterations, %d evaluations: %s",
            outcome.outcome, self._n_iter, self._n_eval, outcome.message,
        )
        return self._result(status, outcome.message, theta0)

"""Kernel-smoothed least-squares objective and its analytic gradient.

For a direction ``beta`` (``p x d``) the covariates are projected to
``z_i = beta' x_i``. Each unit's response is compared with the leave-one-out
Nadaraya-Watson average of its own treatment arm at ``z_i``:

    K_ij = prod_k K((z_ik - z_jk) / h_g),   j in arm g = treated_i, j != i
    m_i  = sum_j K_ij y_j / (sum_j K_ij + EPS)
    L    = sum_i omega_i (y_i - m_i)^2 / sum_i omega_i

with ``h_g = h11`` for treated and ``h12`` for control units. ``EPS`` keeps
``m_i`` finite when a neighbourhood is empty (the prediction is then 0 and
the unit contributes the constant ``y_i^2``).
Restricting the sums over ``i`` to one arm gives that arm's own loss, used
when each arm gets its own direction.

The gradient follows from the chain rule through the kernel weights and the
projection. With ``c_ij = dL/dK_ij`` and ``G_ij = dK_ij/dz_i``,

    dL/dbeta = sum_i x_i (sum_j c_ij G_ij)' - sum_j x_j (sum_i c_ij G_ij)'.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np

from .errors import InvalidArgument, NumericalBreakdown
from .kernels import product_kernel
from .parallel import ParallelAggregator
from .params import beta_from_free

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from .params import EstimationParameters

__all__ = ["EPS", "ObjectiveBuilder", "ReductionResult", "TilePartial"]

EPS: float = 1e-10


@dataclass(frozen=True)
class TilePartial:
    """Loss/gradient contribution of one tile of observations."""

    loss: float
    grad: NDArray[np.float64]
    n_supported: int


@dataclass(frozen=True)
class ReductionResult:
    """Reduced objective value at one direction.

    ``n_supported`` counts contributing units whose kernel neighbourhood is
    non-empty.
    """

    loss: float
    gradient: NDArray[np.float64]
    n_supported: int


class ObjectiveBuilder:
    """Evaluate the loss and gradient for candidate directions.

    Parameters
    ----------
    params : EstimationParameters
        Read-only data and tuning constants.
    aggregator : ParallelAggregator, optional
        Worker pool used to split observations. When omitted a private
        aggregator sized by ``params.n_threads`` is created; call
        :meth:`close` (or use the builder as a context manager) to release it.
    arm : {0, 1}, optional
        Restrict the loss to the control (0) or treated (1) units, normalised
        by that arm's trimming weights. ``None`` pools both arms.

    """

    def __init__(
        self,
        params: EstimationParameters,
        aggregator: ParallelAggregator | None = None,
        arm: int | None = None,
    ) -> None:
        self.params = params
        self._groups = params.groups(arm)
        self.arm = arm
        self._owns_aggregator = aggregator is None
        self.aggregator = (
            ParallelAggregator(params.n_threads, params.n) if aggregator is None else aggregator
        )
        self._norm = float(sum(np.sum(params.omega[members]) for _, members, _ in self._groups))
        if self._norm <= 0.0:
            self.close()
            raise InvalidArgument(f"arm {arm} has no contributing observations.")
        self.n_evaluations = 0

    def __enter__(self) -> ObjectiveBuilder:
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        self.close()
        return False

    def close(self) -> None:
        if self._owns_aggregator:
            self.aggregator.close()

    # -- single tile ------------------------------------------------------
    def evaluate_tile(
        self,
        z: NDArray[np.float64],
        start: int,
        stop: int,
    ) -> TilePartial:
        """Contribution of observations ``start <= i < stop`` given projections ``z``.

        Pure in its arguments; the returned partial is owned by the caller.
        """
        prm = self.params
        x, y, omega = prm.x, prm.y, prm.omega
        rows = np.arange(start, stop)
        loss = 0.0
        grad = np.zeros((prm.p, prm.d), dtype=np.float64)
        n_supported = 0
        for label, members, h in self._groups:
            idx = rows[(prm.treated[rows] == label) & (omega[rows] > 0.0)]
            if idx.size == 0:
                continue
            diff = z[idx, None, :] - z[None, members, :]
            K, G = product_kernel(diff, h, prm.kernel_spec, prm.gauss_cutoff, with_gradient=True)
            own = idx[:, None] == members[None, :]
            K[own] = 0.0
            G[own] = 0.0

            y_j = y[members]
            s0 = K.sum(axis=1)
            denom = s0 + EPS
            m = (K @ y_j) / denom
            r = y[idx] - m
            w = omega[idx]
            loss += float(np.sum(w * r * r)) / self._norm
            n_supported += int(np.count_nonzero(s0 > EPS))

            c = (-2.0 * w * r / (self._norm * denom))[:, None] * (y_j[None, :] - m[:, None])
            A = c[:, :, None] * G
            grad += x[idx].T @ A.sum(axis=1) - x[members].T @ A.sum(axis=0)

        if not (np.isfinite(loss) and np.all(np.isfinite(grad))):
            msg = f"non-finite loss/gradient contribution in rows [{start}, {stop})"
            raise NumericalBreakdown(msg)
        return TilePartial(loss=loss, grad=grad, n_supported=n_supported)

    # -- full evaluation ----------------------------------------------------
    def evaluate(self, beta: NDArray[np.float64]) -> ReductionResult:
        """Loss and gradient (``p x d``) at ``beta``."""
        prm = self.params
        B = prm.as_beta(beta)
        if not np.all(np.isfinite(B)):
            raise NumericalBreakdown("beta contains non-finite entries")
        z = prm.x @ B
        if not np.all(np.isfinite(z)):
            raise NumericalBreakdown("projection x @ beta overflowed")

        partials = self.aggregator.map_reduce(
            lambda start, stop: self.evaluate_tile(z, start, stop),
        )
        self.n_evaluations += 1

        loss = 0.0
        grad = np.zeros((prm.p, prm.d), dtype=np.float64)
        n_supported = 0
        for part in partials:
            loss += part.loss
            grad += part.grad
            n_supported += part.n_supported

        if n_supported == 0:
            raise NumericalBreakdown(
                "all kernel weights collapsed to zero; every neighbourhood is empty "
                "(bandwidths too small for the projected data?)",
            )
        if not (np.isfinite(loss) and np.all(np.isfinite(grad))):
            raise NumericalBreakdown("non-finite loss or gradient")
        return ReductionResult(loss=loss, gradient=grad, n_supported=n_supported)

    def loss(self, beta: NDArray[np.float64]) -> float:
        return self.evaluate(beta).loss

    def fun_and_grad(self, theta: NDArray[np.float64]) -> tuple[float, NDArray[np.float64]]:
        """Loss and gradient over the free lower block of ``beta``."""
        prm = self.params
        res = self.evaluate(beta_from_free(theta, prm.p, prm.d))
        return res.loss, res.gradient[prm.d:].reshape(-1).copy()

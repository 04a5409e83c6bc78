"""Semiparametric imputation: dimension reduction and outcome imputation.

``imp_dim_red`` is the procedural entry point (plain buffers in, direction
out). :class:`ImpDimRed` wraps the same estimation in an estimator-style
``fit`` that also imputes both potential-outcome surfaces along the
estimated index and reports the imputation ATE point estimate.
"""

from __future__ import annotations

import logging
import warnings
from collections.abc import Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Union

import numpy as np
import pandas as pd

from sdrcausal.core.errors import InvalidArgument, MaxIterationsExceeded, NumericalBreakdown
from sdrcausal.core.kernels import DEFAULT_GAUSS_CUTOFF, KernelSpec, product_kernel
from sdrcausal.core.objective import EPS, ObjectiveBuilder
from sdrcausal.core.optimize import (
    Minimizer,
    OptimizationResult,
    OptimizerConfig,
    OptimizerDriver,
    OptimizerStatus,
)
from sdrcausal.core.parallel import ParallelAggregator, resolve_n_threads
from sdrcausal.core.params import (
    EstimationParameters,
    beta_from_free,
    default_beta,
    free_from_beta,
    normalize_beta,
)
from sdrcausal.estimators.base import DimRedResult, beta_frame, covariate_names

if TYPE_CHECKING:
    from numpy.typing import NDArray

ArrayLike = Union[np.ndarray, Sequence[float], Sequence[int]]
MatrixLike = Union[np.ndarray, Sequence[Sequence[float]]]

LOGGER = logging.getLogger(__name__)

__all__ = ["ImpDimRed", "Imputation", "imp_ate", "imp_dim_red", "impute_outcomes"]


# --------- imputation ---------


@dataclass(frozen=True)
class Imputation:
    """Response surfaces along the index at every unit.

    ``m1``/``m0`` have shape ``(n,)``; ``dm1``/``dm0`` hold derivatives with
    respect to the ``d`` index coordinates, shape ``(n, d)``.
    """

    m1: NDArray[np.float64]
    dm1: NDArray[np.float64]
    m0: NDArray[np.float64]
    dm0: NDArray[np.float64]

    def to_frame(self) -> pd.DataFrame:
        d = self.dm1.shape[1]
        cols: dict[str, NDArray[np.float64]] = {"m1": self.m1, "m0": self.m0}
        for k in range(d):
            cols[f"dm1_{k + 1}"] = self.dm1[:, k]
        for k in range(d):
            cols[f"dm0_{k + 1}"] = self.dm0[:, k]
        return pd.DataFrame(cols)


def _surface_tile(
    z: NDArray[np.float64],
    y: NDArray[np.float64],
    members: NDArray[np.intp],
    h: float,
    params: EstimationParameters,
    start: int,
    stop: int,
) -> tuple[NDArray[np.float64], NDArray[np.float64]]:
    b = stop - start
    if members.size == 0:
        return np.zeros(b), np.zeros((b, params.d))
    diff = z[start:stop, None, :] - z[None, members, :]
    K, G = product_kernel(diff, h, params.kernel_spec, params.gauss_cutoff, with_gradient=True)
    y_j = y[members]
    denom = K.sum(axis=1) + EPS
    m = (K @ y_j) / denom
    grad_s1 = np.einsum("bmd,m->bd", G, y_j)
    grad_s0 = G.sum(axis=1)
    dm = (grad_s1 - m[:, None] * grad_s0) / denom[:, None]
    return m, dm


def impute_outcomes(
    params: EstimationParameters,
    beta: ArrayLike,
    aggregator: ParallelAggregator | None = None,
    *,
    beta0: ArrayLike | None = None,
) -> Imputation:
    """Nadaraya-Watson treated (``h13``) and control (``h14``) surfaces.

    The treated surface is fitted on treated units along ``x @ beta``, the
    control surface on control units along ``x @ beta0`` (``beta`` when
    ``beta0`` is omitted); both are evaluated at every unit.
    """
    B1 = params.as_beta(beta)
    B0 = B1 if beta0 is None else params.as_beta(beta0)
    z1 = params.x @ B1
    z0 = z1 if beta0 is None else params.x @ B0
    y = params.y

    def _tile(start: int, stop: int):
        m1, dm1 = _surface_tile(z1, y, params.treated_index, params.h13, params, start, stop)
        m0, dm0 = _surface_tile(z0, y, params.control_index, params.h14, params, start, stop)
        return m1, dm1, m0, dm0

    agg = ParallelAggregator(params.n_threads, params.n) if aggregator is None else aggregator
    try:
        parts = agg.map_reduce(_tile)
    finally:
        if aggregator is None:
            agg.close()
    return Imputation(
        m1=np.concatenate([p[0] for p in parts]),
        dm1=np.vstack([p[1] for p in parts]),
        m0=np.concatenate([p[2] for p in parts]),
        dm0=np.vstack([p[3] for p in parts]),
    )


def imp_ate(params: EstimationParameters, imputation: Imputation) -> dict[str, float]:
    """Imputation estimate of the average treatment effect.

    Observed responses replace the imputed value for the observed arm:
    ``y1 = m1`` with ``y`` on treated units, ``y0 = m0`` with ``y`` on
    control units; returns ``{"ate": E[y1] - E[y0], "e1": E[y1], "e0": E[y0]}``.
    """
    if params.treated_index.size == 0 or params.control_index.size == 0:
        raise InvalidArgument("ATE imputation requires both treated and control units.")
    tbl = params.treated == 1
    y1 = np.where(tbl, params.y, imputation.m1)
    y0 = np.where(tbl, imputation.m0, params.y)
    e1 = float(np.mean(y1))
    e0 = float(np.mean(y0))
    return {"ate": e1 - e0, "e1": e1, "e0": e0}


# --------- estimation ---------

_ARM_LABELS = {1: "treated", 0: "control"}


def _check_out_buffer(buf: Any, p: int, d: int) -> np.ndarray:
    if not isinstance(buf, np.ndarray):
        raise InvalidArgument("beta_final must be a numpy array.")
    if buf.size != p * d:
        raise InvalidArgument(f"beta_final has {buf.size} entries; expected p*d = {p * d}.")
    if buf.dtype.kind != "f":
        raise InvalidArgument("beta_final must have a floating dtype.")
    if not buf.flags.writeable:
        raise InvalidArgument("beta_final must be writeable.")
    return buf


def _start(params: EstimationParameters, beta_guess: ArrayLike | None) -> NDArray[np.float64]:
    if beta_guess is None:
        return default_beta(params.p, params.d)
    return normalize_beta(beta_guess, params.p, params.d)


def _minimize(  # noqa: PLR0913
    params: EstimationParameters,
    B0: NDArray[np.float64],
    agg: ParallelAggregator,
    cfg: OptimizerConfig,
    minimizer: Minimizer | None,
    arm: int | None = None,
) -> tuple[OptimizationResult, NDArray[np.float64]]:
    objective = ObjectiveBuilder(params, agg, arm=arm)
    driver = OptimizerDriver(objective.fun_and_grad, cfg, minimizer)
    LOGGER.debug(
        "imp_dim_red: n=%d p=%d d=%d arm=%s kernel=%s workers=%d free=%d",
        params.n, params.p, params.d, _ARM_LABELS.get(arm, "pooled"),
        params.kernel_spec.name, agg.n_workers, params.n_free,
    )
    opt = driver.run(free_from_beta(B0, params.d))
    return opt, beta_from_free(opt.x, params.p, params.d)


def _combined_status(statuses: Sequence[OptimizerStatus]) -> OptimizerStatus:
    if OptimizerStatus.FAILED in statuses:
        return OptimizerStatus.FAILED
    if OptimizerStatus.MAX_ITER_REACHED in statuses:
        return OptimizerStatus.MAX_ITER_REACHED
    return OptimizerStatus.CONVERGED


def _model_info(params: EstimationParameters, agg: ParallelAggregator, cfg: OptimizerConfig, directions: str):
    return {
        "Estimator": "IMP dimension reduction",
        "Kernel": params.kernel_spec.name,
        "d": params.d,
        "Directions": directions,
        "Workers": agg.n_workers,
        "Method": cfg.method,
    }


def _finish(result: DimRedResult) -> DimRedResult:
    if result.status is OptimizerStatus.FAILED:
        raise NumericalBreakdown(f"dimension reduction failed: {result.message}", result=result)
    if result.status is OptimizerStatus.MAX_ITER_REACHED:
        warnings.warn(
            f"optimizer stopped after {result.n_iter} iterations without converging; "
            "returning the best iterate found.",
            MaxIterationsExceeded,
            stacklevel=4,
        )
    return result


def _estimate(  # noqa: PLR0913
    params: EstimationParameters,
    beta_guess: ArrayLike | None,
    *,
    config: OptimizerConfig | None,
    minimizer: Minimizer | None,
    names: Sequence[str],
    impute: bool,
) -> tuple[DimRedResult, NDArray[np.float64]]:
    """One direction shared by both arms."""
    B0 = _start(params, beta_guess)
    cfg = OptimizerConfig() if config is None else config

    with ParallelAggregator(params.n_threads, params.n) as agg:
        opt, B = _minimize(params, B0, agg, cfg, minimizer)
        extra: dict[str, Any] = {
            "history": opt.history,
            "n_trimmed": int(params.n - params.n_contributing),
            "beta_guess": B0,
        }
        if impute and opt.status is not OptimizerStatus.FAILED:
            imputation = impute_outcomes(params, B, agg)
            extra["imputation"] = imputation.to_frame()
            if params.treated_index.size and params.control_index.size:
                extra.update(imp_ate(params, imputation))

    result = DimRedResult(
        beta=beta_frame(B, names),
        status=opt.status,
        loss=opt.fun,
        n_iter=opt.n_iter,
        n_eval=opt.n_eval,
        grad_norm=opt.grad_norm,
        message=opt.message,
        n_obs=params.n,
        model_info=_model_info(params, agg, cfg, "shared"),
        extra=extra,
    )
    return _finish(result), B


def _estimate_by_arm(  # noqa: PLR0913
    params: EstimationParameters,
    beta1_guess: ArrayLike | None,
    beta0_guess: ArrayLike | None,
    *,
    config: OptimizerConfig | None,
    minimizer: Minimizer | None,
    names: Sequence[str],
) -> DimRedResult:
    """Separate directions: each arm minimises the loss over its own units.

    ``beta`` of the result stacks the treated (``treated_dir*``) and control
    (``control_dir*``) directions side by side; ``extra["beta1"]`` and
    ``extra["beta0"]`` hold them separately and ``extra["arms"]`` the
    per-arm optimiser diagnostics. The reported loss is the trimming-weighted
    mean of the two arm losses, comparable with the shared-direction loss.
    """
    if params.treated_index.size == 0 or params.control_index.size == 0:
        raise InvalidArgument("separate directions require both treated and control units.")
    starts = {1: _start(params, beta1_guess), 0: _start(params, beta0_guess)}
    cfg = OptimizerConfig() if config is None else config

    with ParallelAggregator(params.n_threads, params.n) as agg:
        runs = {arm: _minimize(params, starts[arm], agg, cfg, minimizer, arm=arm) for arm in (1, 0)}
        status = _combined_status([opt.status for opt, _ in runs.values()])
        B1, B0 = runs[1][1], runs[0][1]
        frames = {arm: beta_frame(B, names) for arm, (_, B) in runs.items()}
        extra: dict[str, Any] = {
            "beta1": frames[1],
            "beta0": frames[0],
            "arms": {
                _ARM_LABELS[arm]: {
                    "status": opt.status,
                    "loss": opt.fun,
                    "n_iter": opt.n_iter,
                    "n_eval": opt.n_eval,
                    "grad_norm": opt.grad_norm,
                    "message": opt.message,
                    "history": opt.history,
                    "beta_guess": starts[arm],
                }
                for arm, (opt, _) in runs.items()
            },
            "n_trimmed": int(params.n - params.n_contributing),
        }
        if status is not OptimizerStatus.FAILED:
            imputation = impute_outcomes(params, B1, agg, beta0=B0)
            extra["imputation"] = imputation.to_frame()
            extra.update(imp_ate(params, imputation))

    weights = {arm: float(np.sum(params.omega[params.arm_index(arm)])) for arm in (1, 0)}
    loss = sum(weights[arm] * runs[arm][0].fun for arm in (1, 0)) / sum(weights.values())
    messages = [f"{_ARM_LABELS[arm]}: {opt.message}" for arm, (opt, _) in runs.items()]
    beta = pd.concat(
        [frames[1].add_prefix("treated_"), frames[0].add_prefix("control_")], axis=1,
    )
    result = DimRedResult(
        beta=beta,
        status=status,
        loss=float(loss),
        n_iter=sum(opt.n_iter for opt, _ in runs.values()),
        n_eval=sum(opt.n_eval for opt, _ in runs.values()),
        grad_norm=max(opt.grad_norm for opt, _ in runs.values()),
        message="; ".join(messages),
        n_obs=params.n,
        model_info=_model_info(params, agg, cfg, "per arm"),
        extra=extra,
    )
    return _finish(result)


def imp_dim_red(  # noqa: PLR0913
    n: int,
    p: int,
    d: int,
    x: ArrayLike,
    beta_guess: ArrayLike,
    y: ArrayLike,
    treated: ArrayLike,
    kernel_spec: KernelSpec | int | str,
    h0: float,
    h11: float,
    h12: float,
    h13: float,
    h14: float,
    gauss_cutoff: float,
    n_threads: int,
    beta_final: np.ndarray | None = None,
    *,
    trim: float = 0.0,
    config: OptimizerConfig | None = None,
    minimizer: Minimizer | None = None,
) -> DimRedResult:
    """Estimate the reduction direction from plain buffers.

    Parameters
    ----------
    n, p, d : int
        Observations, covariates and structural dimension (``0 < d <= p``).
    x : array-like
        ``n * p`` covariates, row-major, or an ``(n, p)`` array.
    beta_guess : array-like
        ``p * d`` starting direction (row-major ``p x d``). Its upper
        ``d x d`` block is normalised to the identity.
    y : array-like
        Responses, length ``n``.
    treated : array-like
        Treatment indicators in ``{0, 1}``, length ``n``.
    kernel_spec : int or str
        1/``"EPAN"``, 2/``"QUAR"`` or 3/``"GAUSS"``.
    h0 : float
        Trimming bandwidth. Validated but unused unless ``trim > 0``, which is
        not the default.
    h11, h12 : float
        Within-treated and within-control smoothing bandwidths for the loss.
    h13, h14 : float
        Treated and control imputation bandwidths. Validated here; used only
        by :func:`impute_outcomes` and :class:`ImpDimRed`.
    gauss_cutoff : float
        Standardised radius beyond which Gaussian weights are exactly zero.
    n_threads : int
        Worker threads (clamped to ``[1, n]``).
    beta_final : ndarray, optional
        Writable float buffer of ``p * d`` entries; receives the estimate
        (row-major) on success or at the iteration cap.

    Returns
    -------
    DimRedResult
        ``status`` is ``CONVERGED`` or ``MAX_ITER_REACHED`` (the latter also
        issues :class:`MaxIterationsExceeded`).

    Raises
    ------
    InvalidArgument
        Before any iteration, for inputs violating the parameter contract.
    NumericalBreakdown
        If the optimiser ends in ``FAILED``; the result is attached as
        ``exc.result``.

    """
    params = EstimationParameters.from_arrays(
        n, p, d, x, y, treated, kernel_spec, h0, h11, h12, h13, h14,
        gauss_cutoff=gauss_cutoff, n_threads=n_threads, trim=trim,
    )
    buf = None if beta_final is None else _check_out_buffer(beta_final, params.p, params.d)
    if beta_guess is None:
        raise InvalidArgument("beta_guess is required.")
    result, B = _estimate(
        params, beta_guess, config=config, minimizer=minimizer,
        names=covariate_names(None, params.p), impute=False,
    )
    if buf is not None:
        buf.flat[:] = B.reshape(-1)
    return result


class ImpDimRed:
    """Dimension reduction for semiparametric imputation of potential outcomes.

    Parameters
    ----------
    d : int, default 1
        Structural dimension.
    h11, h12 : float
        Within-treated and within-control smoothing bandwidths for the loss.
    h13, h14 : float, optional
        Imputation bandwidths for the treated and control surfaces; default
        to ``h11`` and ``h12``.
    h0 : float, default 1.0
        Trimming bandwidth (only used when ``trim > 0``).
    kernel : int or str, default "EPAN"
    gauss_cutoff : float, optional
        Standardised Gaussian truncation radius.
    n_threads : int, optional
        Worker count; ``None`` reads ``SDRCAUSAL_NUM_THREADS``.
    trim : float, default 0.0
        Fraction of lowest-density units excluded from the loss.
    config : OptimizerConfig, optional
    minimizer : Minimizer, optional
        Replacement update rule for the optimiser.
    separate : bool, default False
        Estimate one direction per arm (treated along ``beta1``, control
        along ``beta0``) instead of a shared one. Also switched on by passing
        ``beta1_guess`` or ``beta0_guess`` to :meth:`fit`.

    """

    def __init__(  # noqa: PLR0913
        self,
        d: int = 1,
        *,
        h11: float,
        h12: float,
        h13: float | None = None,
        h14: float | None = None,
        h0: float = 1.0,
        kernel: KernelSpec | int | str = "EPAN",
        gauss_cutoff: float = DEFAULT_GAUSS_CUTOFF,
        n_threads: int | None = None,
        trim: float = 0.0,
        config: OptimizerConfig | None = None,
        minimizer: Minimizer | None = None,
        separate: bool = False,
    ) -> None:
        self.d = d
        self.separate = bool(separate)
        self.h11 = h11
        self.h12 = h12
        self.h13 = h11 if h13 is None else h13
        self.h14 = h12 if h14 is None else h14
        self.h0 = h0
        self.kernel = KernelSpec.parse(kernel)
        self.gauss_cutoff = gauss_cutoff
        self.n_threads = resolve_n_threads(n_threads)
        self.trim = trim
        self.config = OptimizerConfig() if config is None else config
        self.minimizer = minimizer
        self._results: DimRedResult | None = None
        self._params: EstimationParameters | None = None

    @property
    def results(self) -> DimRedResult | None:
        return self._results

    @property
    def params(self) -> EstimationParameters | None:
        """Parameter block of the last ``fit``."""
        return self._params

    def fit(
        self,
        x: MatrixLike,
        y: ArrayLike,
        treated: ArrayLike,
        *,
        beta_guess: ArrayLike | None = None,
        beta1_guess: ArrayLike | None = None,
        beta0_guess: ArrayLike | None = None,
        var_names: Sequence[str] | None = None,
    ) -> DimRedResult:
        """Estimate the direction(s) and impute both response surfaces.

        With separate directions a missing ``beta1_guess``/``beta0_guess``
        falls back to ``beta_guess``.
        """
        x_arr = np.asarray(x, dtype=np.float64)
        if x_arr.ndim != 2:
            raise InvalidArgument("x must be 2D (n x p).")
        n, p = x_arr.shape
        names = covariate_names(x, p, var_names)
        params = EstimationParameters(
            n=n, p=p, d=self.d,
            x=x_arr, y=np.asarray(y, dtype=np.float64).reshape(-1), treated=np.asarray(treated),
            kernel_spec=self.kernel,
            h0=self.h0, h11=self.h11, h12=self.h12, h13=self.h13, h14=self.h14,
            gauss_cutoff=self.gauss_cutoff, n_threads=self.n_threads, trim=self.trim,
        )
        self._params = params
        if self.separate or beta1_guess is not None or beta0_guess is not None:
            result = _estimate_by_arm(
                params,
                beta_guess if beta1_guess is None else beta1_guess,
                beta_guess if beta0_guess is None else beta0_guess,
                config=self.config, minimizer=self.minimizer, names=names,
            )
        else:
            result, _ = _estimate(
                params, beta_guess, config=self.config, minimizer=self.minimizer,
                names=names, impute=True,
            )
        self._results = result
        return result

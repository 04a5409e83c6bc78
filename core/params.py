"""Immutable parameter block for one dimension-reduction run.

The covariate matrix is stored row-major: a flat buffer of ``n * p`` entries
holds observation ``i`` in entries ``i * p`` to ``i * p + p - 1``. The
direction ``beta`` is a ``p x d`` matrix whose upper ``d x d`` block is fixed
to the identity; only the lower ``(p - d) x d`` block is estimated.
"""
from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Union

import numpy as np
import scipy.linalg as sla

from .errors import InvalidArgument
from .kernels import DEFAULT_GAUSS_CUTOFF, KernelSpec, product_kernel

if TYPE_CHECKING:
    from numpy.typing import NDArray

ArrayLike = Union[np.ndarray, Sequence[float], Sequence[int]]

__all__ = [
    "EstimationParameters",
    "beta_from_free",
    "default_beta",
    "free_from_beta",
    "normalize_beta",
]

_BANDWIDTHS = ("h0", "h11", "h12", "h13", "h14")


# --------- utilities: shape & validation ---------


def _as_positive_int(value: Any, name: str) -> int:
    if isinstance(value, (bool, np.bool_)):
        raise InvalidArgument(f"{name} must be a positive integer; got {value!r}")
    try:
        iv = int(value)
    except (TypeError, ValueError) as exc:
        raise InvalidArgument(f"{name} must be a positive integer; got {value!r}") from exc
    if iv != value or iv <= 0:
        raise InvalidArgument(f"{name} must be a positive integer; got {value!r}")
    return iv


def _as_positive_float(value: Any, name: str) -> float:
    try:
        fv = float(value)
    except (TypeError, ValueError) as exc:
        raise InvalidArgument(f"{name} must be a positive real; got {value!r}") from exc
    if not np.isfinite(fv) or fv <= 0.0:
        raise InvalidArgument(f"{name} must be positive and finite; got {value!r}")
    return fv


def _as_1d(x: ArrayLike, n: int, name: str) -> np.ndarray:
    a = np.asarray(x, dtype=np.float64)
    if a.ndim != 1:
        a = a.reshape(-1) if a.ndim == 2 and 1 in a.shape else a
    if a.ndim != 1:
        raise InvalidArgument(f"{name} must be 1D.")
    if a.shape[0] != n:
        raise InvalidArgument(f"{name} has {a.shape[0]} entries; expected {n}.")
    if not np.all(np.isfinite(a)):
        raise InvalidArgument(f"{name} must be finite.")
    return a


def _as_treatment(x: ArrayLike, n: int) -> np.ndarray:
    a = np.asarray(x)
    if a.ndim != 1:
        raise InvalidArgument("treated must be 1D.")
    if a.shape[0] != n:
        raise InvalidArgument(f"treated has {a.shape[0]} entries; expected {n}.")
    if a.dtype.kind not in {"b", "i", "u", "f"}:
        raise InvalidArgument("treated must be numeric with values in {0, 1}.")
    af = a.astype(np.float64)
    if not np.all(np.isin(af, (0.0, 1.0))):
        bad = np.unique(af[~np.isin(af, (0.0, 1.0))])
        raise InvalidArgument(f"treated must only contain 0/1; found {bad[:5].tolist()}.")
    return af.astype(np.int8)


def _as_covariates(x: ArrayLike, n: int, p: int) -> np.ndarray:
    a = np.asarray(x, dtype=np.float64)
    if a.ndim == 1:
        if a.size != n * p:
            raise InvalidArgument(f"x has {a.size} entries; expected n*p = {n * p}.")
        a = a.reshape(n, p)
    elif a.ndim != 2 or a.shape != (n, p):
        raise InvalidArgument(f"x must have shape ({n}, {p}); got {a.shape}.")
    if not np.all(np.isfinite(a)):
        raise InvalidArgument("x must be finite.")
    return np.ascontiguousarray(a)


def _frozen(a: np.ndarray) -> np.ndarray:
    out = np.array(a, copy=True)
    out.flags.writeable = False
    return out


# --------- beta parameterisation ---------


def default_beta(p: int, d: int) -> NDArray[np.float64]:
    """Identity upper block with a zero lower block."""
    B = np.zeros((p, d), dtype=np.float64)
    B[:d] = np.eye(d)
    return B


def normalize_beta(beta: ArrayLike, p: int, d: int) -> NDArray[np.float64]:
    """Return ``beta`` reshaped to ``(p, d)`` with an identity upper block.

    The column space is preserved: ``beta`` is right-multiplied by the
    inverse of its upper ``d x d`` block (solved, not inverted).
    """
    B = np.asarray(beta, dtype=np.float64)
    if B.size != p * d:
        raise InvalidArgument(f"beta has {B.size} entries; expected p*d = {p * d}.")
    B = B.reshape(p, d)
    if not np.all(np.isfinite(B)):
        raise InvalidArgument("beta must be finite.")
    upper = B[:d]
    svals = np.linalg.svd(upper, compute_uv=False)
    if svals[-1] <= 1e-12 * max(1.0, float(svals[0])):
        raise InvalidArgument("upper d x d block of beta is singular; cannot normalise.")
    # B @ inv(U) == solve(U^T, B^T)^T
    out = sla.solve(upper.T, B.T).T
    out[:d] = np.eye(d)
    return np.ascontiguousarray(out)


def beta_from_free(theta: NDArray[np.float64], p: int, d: int) -> NDArray[np.float64]:
    """Assemble ``beta`` from the ``(p - d) * d`` free parameters."""
    B = default_beta(p, d)
    if p > d:
        B[d:] = np.asarray(theta, dtype=np.float64).reshape(p - d, d)
    return B


def free_from_beta(beta: NDArray[np.float64], d: int) -> NDArray[np.float64]:
    """Flatten the lower block of an already normalised ``beta``."""
    return np.array(beta[d:], dtype=np.float64).reshape(-1)


# --------- parameter block ---------


@dataclass(frozen=True, eq=False)
class EstimationParameters:
    """Validated, read-only inputs for one estimation run.

    Construct through :meth:`from_arrays` (or directly; validation runs in
    ``__post_init__`` either way). All arrays are private copies flagged
    read-only, so worker threads may share the block without locking.

    Bandwidth roles
    ---------------
    ``h11``
        within-treated response smoothing in the loss.
    ``h12``
        within-control response smoothing in the loss.
    ``h13`` / ``h14``
        imputation of the treated / control response surface at every unit.
    ``h0``
        boundary trimming: units whose covariate density (product kernel on
        standardised covariates) is among the lowest ``trim`` fraction get
        zero weight in the loss.
    """

    n: int
    p: int
    d: int
    x: NDArray[np.float64]
    y: NDArray[np.float64]
    treated: NDArray[np.int8]
    kernel_spec: KernelSpec = KernelSpec.EPAN
    h0: float = 1.0
    h11: float = 1.0
    h12: float = 1.0
    h13: float = 1.0
    h14: float = 1.0
    gauss_cutoff: float = DEFAULT_GAUSS_CUTOFF
    n_threads: int = 1
    trim: float = 0.0
    omega: NDArray[np.float64] = field(init=False, repr=False)
    treated_index: NDArray[np.intp] = field(init=False, repr=False)
    control_index: NDArray[np.intp] = field(init=False, repr=False)

    def __post_init__(self) -> None:
        set_ = object.__setattr__
        n = _as_positive_int(self.n, "n")
        p = _as_positive_int(self.p, "p")
        d = _as_positive_int(self.d, "d")
        if d > p:
            raise InvalidArgument(f"d must satisfy 0 < d <= p; got d={d}, p={p}.")
        set_(self, "n", n)
        set_(self, "p", p)
        set_(self, "d", d)
        set_(self, "n_threads", _as_positive_int(self.n_threads, "n_threads"))
        set_(self, "kernel_spec", KernelSpec.parse(self.kernel_spec))
        for name in _BANDWIDTHS:
            set_(self, name, _as_positive_float(getattr(self, name), name))
        set_(self, "gauss_cutoff", _as_positive_float(self.gauss_cutoff, "gauss_cutoff"))
        trim = float(self.trim)
        if not (0.0 <= trim < 1.0):
            raise InvalidArgument(f"trim must lie in [0, 1); got {self.trim!r}")
        set_(self, "trim", trim)

        set_(self, "x", _frozen(_as_covariates(self.x, n, p)))
        set_(self, "y", _frozen(_as_1d(self.y, n, "y")))
        treated = _as_treatment(self.treated, n)
        set_(self, "treated", _frozen(treated))

        t_idx = np.flatnonzero(treated == 1)
        c_idx = np.flatnonzero(treated == 0)
        for label, idx in (("treated", t_idx), ("control", c_idx)):
            if idx.size == 1:
                msg = (
                    f"the {label} group has a single observation; leave-one-out "
                    "smoothing needs at least two."
                )
                raise InvalidArgument(msg)
        set_(self, "treated_index", _frozen(t_idx))
        set_(self, "control_index", _frozen(c_idx))
        set_(self, "omega", _frozen(self._trimming_weights()))
        if not np.any(self.omega > 0.0):
            raise InvalidArgument("trimming removed every observation; lower `trim`.")

    @classmethod
    def from_arrays(  # noqa: PLR0913
        cls,
        n: int,
        p: int,
        d: int,
        x: ArrayLike,
        y: ArrayLike,
        treated: ArrayLike,
        kernel_spec: KernelSpec | int | str,
        h0: float,
        h11: float,
        h12: float,
        h13: float,
        h14: float,
        gauss_cutoff: float = DEFAULT_GAUSS_CUTOFF,
        n_threads: int = 1,
        *,
        trim: float = 0.0,
    ) -> EstimationParameters:
        """Build a parameter block from plain buffers (argument order of the binding)."""
        return cls(
            n=n, p=p, d=d, x=x, y=y, treated=treated, kernel_spec=kernel_spec,
            h0=h0, h11=h11, h12=h12, h13=h13, h14=h14,
            gauss_cutoff=gauss_cutoff, n_threads=n_threads, trim=trim,
        )

    @property
    def n_free(self) -> int:
        """Number of free parameters searched by the optimiser."""
        return (self.p - self.d) * self.d

    @property
    def n_contributing(self) -> int:
        return int(np.count_nonzero(self.omega > 0.0))

    def groups(self, arm: int | None = None) -> tuple[tuple[int, NDArray[np.intp], float], ...]:
        """``(label, member indices, bandwidth)`` for the loss smoothers.

        ``arm`` restricts the result to the treated (1) or control (0) group.
        """
        out = ((1, self.treated_index, self.h11), (0, self.control_index, self.h12))
        if arm is None:
            return out
        if isinstance(arm, (bool, np.bool_)) or arm not in (0, 1):
            raise InvalidArgument(f"arm must be 0, 1 or None; got {arm!r}")
        return tuple(g for g in out if g[0] == arm)

    def arm_index(self, arm: int) -> NDArray[np.intp]:
        """Member indices of the treated (1) or control (0) group."""
        return self.groups(arm)[0][1]

    def as_beta(self, beta: ArrayLike) -> NDArray[np.float64]:
        """Reshape ``beta`` to ``(p, d)`` without renormalising or checking finiteness."""
        B = np.asarray(beta, dtype=np.float64)
        if B.size != self.p * self.d:
            raise InvalidArgument(f"beta has {B.size} entries; expected p*d = {self.p * self.d}.")
        return B.reshape(self.p, self.d)

    def _trimming_weights(self, block: int = 256) -> NDArray[np.float64]:
        omega = np.ones(self.n, dtype=np.float64)
        n_trim = int(np.floor(self.trim * self.n))
        if n_trim == 0:
            return omega
        sd = self.x.std(axis=0)
        xs = self.x / np.where(sd > 0.0, sd, 1.0)
        dens = np.empty(self.n, dtype=np.float64)
        for s in range(0, self.n, block):
            e = min(s + block, self.n)
            diff = xs[s:e, None, :] - xs[None, :, :]
            dens[s:e] = product_kernel(diff, self.h0, self.kernel_spec, self.gauss_cutoff).sum(axis=1)
        # stable sort: ties are trimmed in observation order
        omega[np.argsort(dens, kind="stable")[:n_trim]] = 0.0
        return omega

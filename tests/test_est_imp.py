import warnings

import numpy as np
import pandas as pd
import pytest

from sdrcausal.core.errors import InvalidArgument, MaxIterationsExceeded, NumericalBreakdown
from sdrcausal.core.kernels import product_kernel
from sdrcausal.core.objective import EPS
from sdrcausal.core.optimize import OptimizerConfig, OptimizerStatus
from sdrcausal.core.params import EstimationParameters
from sdrcausal.estimators.base import DimRedResult
from sdrcausal.estimators.imp import ImpDimRed, Imputation, imp_ate, imp_dim_red, impute_outcomes

# ---------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------

CFG = OptimizerConfig(gtol=1e-5)


@pytest.fixture
def threshold_data():
    """Treatment by thresholding x1; response a deterministic function of x1."""
    rng = np.random.default_rng(2024)
    n = 200
    x = rng.standard_normal((n, 2))
    treated = (x[:, 0] > 0).astype(int)
    y = 2.0 * x[:, 0] + x[:, 0] ** 2
    return x, y, treated


def run(x, y, treated, beta_guess, n_threads=2, out=None, **kw):
    n, p = x.shape
    kw.setdefault("config", CFG)
    return imp_dim_red(
        n, p, 1, x.reshape(-1), beta_guess, y, treated,
        "QUAR", 1.0, 0.3, 0.3, 0.3, 0.3, 3.0, n_threads, out, **kw,
    )


def cosine(a, b):
    a = np.asarray(a, dtype=float).reshape(-1)
    b = np.asarray(b, dtype=float).reshape(-1)
    return abs(a @ b) / (np.linalg.norm(a) * np.linalg.norm(b))


# ---------------------------------------------------------------------
# Direction estimation
# ---------------------------------------------------------------------

def test_recovers_planted_direction(threshold_data):
    x, y, treated = threshold_data
    res = run(x, y, treated, [1.0, 0.8])
    assert isinstance(res, DimRedResult)
    assert res.status is OptimizerStatus.CONVERGED
    assert cosine(res.to_numpy(), [1.0, 0.0]) > 0.95


def test_rerun_from_estimate_is_idempotent(threshold_data):
    x, y, treated = threshold_data
    first = run(x, y, treated, [1.0, 0.8])
    second = run(x, y, treated, first.flat())
    assert second.status is OptimizerStatus.CONVERGED
    assert second.n_iter <= 1
    assert second.loss <= first.loss + 1e-12
    assert first.loss - second.loss <= 1e-8
    np.testing.assert_allclose(second.to_numpy(), first.to_numpy(), atol=1e-3)


def test_beta_final_buffer_written_in_place(threshold_data):
    x, y, treated = threshold_data
    out = np.full(2, np.nan)
    res = run(x, y, treated, [1.0, 0.5], out=out)
    np.testing.assert_array_equal(out, res.flat())
    assert out[0] == 1.0


def test_beta_guess_is_normalised(threshold_data):
    x, y, treated = threshold_data
    scaled = run(x, y, treated, [2.0, 1.0])
    unit = run(x, y, treated, [1.0, 0.5])
    np.testing.assert_array_equal(scaled.to_numpy(), unit.to_numpy())
    np.testing.assert_array_equal(scaled.extra["beta_guess"], [[1.0], [0.5]])


def test_thread_count_above_n_matches_n(threshold_data):
    x, y, treated = threshold_data
    a = run(x, y, treated, [1.0, 0.5], n_threads=x.shape[0])
    b = run(x, y, treated, [1.0, 0.5], n_threads=10 * x.shape[0])
    np.testing.assert_array_equal(a.to_numpy(), b.to_numpy())
    assert a.loss == b.loss


def test_thread_count_does_not_change_estimate(threshold_data):
    x, y, treated = threshold_data
    ref = run(x, y, treated, [1.0, 0.5], n_threads=1)
    for k in (2, 8):
        res = run(x, y, treated, [1.0, 0.5], n_threads=k)
        np.testing.assert_allclose(res.to_numpy(), ref.to_numpy(), rtol=1e-9)


def test_iteration_cap_warns_and_returns_best(threshold_data):
    x, y, treated = threshold_data
    out = np.zeros(2)
    with pytest.warns(MaxIterationsExceeded):
        res = run(x, y, treated, [1.0, 0.8], out=out, config=OptimizerConfig(max_iter=1))
    assert res.status is OptimizerStatus.MAX_ITER_REACHED
    assert np.all(np.isfinite(out))
    assert res.n_iter == 1


def test_collapsed_kernel_raises_numerical_breakdown(threshold_data):
    x, y, treated = threshold_data
    n, p = x.shape
    out = np.full(2, -7.0)
    with pytest.raises(NumericalBreakdown, match="collapsed") as info:
        imp_dim_red(
            n, p, 1, x, [1.0, 0.3], y, treated,
            "EPAN", 1.0, 1e-9, 1e-9, 1e-9, 1e-9, 3.0, 1, out,
        )
    assert info.value.result.status is OptimizerStatus.FAILED
    # a failed run never fills the output buffer
    np.testing.assert_array_equal(out, [-7.0, -7.0])


def test_zero_free_parameters(threshold_data):
    x, y, treated = threshold_data
    n = x.shape[0]
    res = imp_dim_red(
        n, 2, 2, x, np.eye(2), y, treated,
        "GAUSS", 1.0, 0.5, 0.5, 0.5, 0.5, 3.0, 1,
    )
    assert res.status is OptimizerStatus.CONVERGED
    assert res.n_iter == 0
    np.testing.assert_array_equal(res.to_numpy(), np.eye(2))


# ---------------------------------------------------------------------
# Imputation and ATE
# ---------------------------------------------------------------------

def test_impute_outcomes_matches_direct_smoother(small_data):
    x, y, treated = small_data
    n, p = x.shape
    prm = EstimationParameters(n=n, p=p, d=1, x=x, y=y, treated=treated, kernel_spec="GAUSS", h13=0.6, h14=0.8)
    beta = np.array([1.0, 0.4, -0.1])
    imp = impute_outcomes(prm, beta)
    z = x @ beta
    t_idx = np.flatnonzero(treated == 1)
    c_idx = np.flatnonzero(treated == 0)

    def nw(z0, idx, h):
        k = product_kernel((z0 - z[idx])[:, None], h, "GAUSS")
        return float(k @ y[idx] / (k.sum() + EPS))

    for i in (0, 7, 33):
        assert imp.m1[i] == pytest.approx(nw(z[i], t_idx, 0.6), rel=1e-10)
        assert imp.m0[i] == pytest.approx(nw(z[i], c_idx, 0.8), rel=1e-10)
        step = 1e-6
        num = (nw(z[i] + step, t_idx, 0.6) - nw(z[i] - step, t_idx, 0.6)) / (2 * step)
        assert imp.dm1[i, 0] == pytest.approx(num, rel=1e-5, abs=1e-8)
    assert imp.dm0.shape == (n, 1)


def test_imp_ate_substitutes_observed_outcomes():
    n = 6
    x = np.arange(n, dtype=float).reshape(n, 1)
    y = np.array([1.0, 2.0, 3.0, 4.0, 5.0, 6.0])
    treated = np.array([1, 1, 1, 0, 0, 0])
    prm = EstimationParameters(n=n, p=1, d=1, x=x, y=y, treated=treated)
    imp = Imputation(
        m1=np.full(n, 10.0), dm1=np.zeros((n, 1)),
        m0=np.full(n, -1.0), dm0=np.zeros((n, 1)),
    )
    out = imp_ate(prm, imp)
    assert out["e1"] == pytest.approx((1 + 2 + 3 + 30) / 6)
    assert out["e0"] == pytest.approx((-3 + 4 + 5 + 6) / 6)
    assert out["ate"] == pytest.approx(out["e1"] - out["e0"])


def test_imp_ate_requires_both_groups():
    n = 5
    prm = EstimationParameters(
        n=n, p=1, d=1, x=np.arange(n, dtype=float), y=np.ones(n), treated=np.ones(n, dtype=int),
    )
    imp = Imputation(np.zeros(n), np.zeros((n, 1)), np.zeros(n), np.zeros((n, 1)))
    with pytest.raises(InvalidArgument, match="both treated and control"):
        imp_ate(prm, imp)


# ---------------------------------------------------------------------
# Estimator interface
# ---------------------------------------------------------------------

def test_estimator_fit_reports_direction_and_ate(planted):
    x, y, treated, beta_true = planted
    df = pd.DataFrame(x, columns=["age", "income", "score"])
    model = ImpDimRed(d=1, h11=0.5, h12=0.5, kernel="QUAR", n_threads=2, config=CFG)
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", MaxIterationsExceeded)
        res = model.fit(df, y, treated, beta_guess=[1.0, 0.0, 0.0])
    assert model.results is res
    assert list(res.beta.index) == ["age", "income", "score"]
    assert list(res.beta.columns) == ["dir1"]
    assert res.beta.loc["age", "dir1"] == 1.0
    assert cosine(res.to_numpy(), beta_true) > 0.9

    imp = res.extra["imputation"]
    assert list(imp.columns) == ["m1", "m0", "dm1_1", "dm0_1"]
    assert len(imp) == len(y)
    assert np.isfinite(res.extra["ate"])
    assert res.extra["ate"] == pytest.approx(res.extra["e1"] - res.extra["e0"])
    assert res.model_info["Kernel"] == "QUAR"


def test_estimator_defaults_imputation_bandwidths():
    model = ImpDimRed(h11=0.4, h12=0.7, n_threads=1)
    assert (model.h13, model.h14) == (0.4, 0.7)
    assert model.kernel.name == "EPAN"


def test_estimator_rejects_1d_covariates():
    model = ImpDimRed(h11=0.4, h12=0.4, n_threads=1)
    with pytest.raises(InvalidArgument, match="2D"):
        model.fit(np.zeros(10), np.zeros(10), np.zeros(10))


def test_var_names_length_mismatch_rejected(planted):
    x, y, treated, _ = planted
    model = ImpDimRed(h11=0.5, h12=0.5, n_threads=1)
    with pytest.raises(InvalidArgument, match="var_names length"):
        model.fit(x, y, treated, var_names=["a", "b"])


# ---------------------------------------------------------------------
# Separate directions per arm
# ---------------------------------------------------------------------

@pytest.fixture
def two_direction_data():
    """Treated outcomes follow x1, control outcomes follow x1 + x2."""
    rng = np.random.default_rng(7)
    n = 300
    x = rng.standard_normal((n, 2))
    treated = (rng.random(n) < 0.5).astype(int)
    z1 = x[:, 0]
    z0 = x[:, 0] + x[:, 1]
    y = np.where(treated == 1, z1 + 0.5 * z1**2, z0 + 0.5 * z0**2)
    return x, y, treated


def test_separate_directions_recovered(two_direction_data):
    x, y, treated = two_direction_data
    model = ImpDimRed(d=1, h11=0.3, h12=0.4, kernel="QUAR", n_threads=2, config=CFG)
    res = model.fit(x, y, treated, beta1_guess=[1.0, 0.5], beta0_guess=[1.0, 0.5])

    assert res.status is OptimizerStatus.CONVERGED
    assert res.model_info["Directions"] == "per arm"
    assert list(res.beta.columns) == ["treated_dir1", "control_dir1"]
    beta1 = res.extra["beta1"].to_numpy()
    beta0 = res.extra["beta0"].to_numpy()
    assert cosine(beta1, [1.0, 0.0]) > 0.95
    assert cosine(beta0, [1.0, 1.0]) > 0.95
    np.testing.assert_array_equal(res.beta["treated_dir1"].to_numpy(), beta1[:, 0])

    arms = res.extra["arms"]
    assert set(arms) == {"treated", "control"}
    assert res.n_iter == arms["treated"]["n_iter"] + arms["control"]["n_iter"]
    w1 = float(np.sum(treated))
    w0 = float(len(treated) - w1)
    expected = (w1 * arms["treated"]["loss"] + w0 * arms["control"]["loss"]) / (w1 + w0)
    assert res.loss == pytest.approx(expected)


def test_separate_imputation_uses_each_arm_direction(two_direction_data):
    x, y, treated = two_direction_data
    model = ImpDimRed(d=1, h11=0.3, h12=0.4, kernel="QUAR", n_threads=1, config=CFG)
    res = model.fit(x, y, treated, beta1_guess=[1.0, 0.5], beta0_guess=[1.0, 0.5])
    beta1 = res.extra["beta1"].to_numpy()
    beta0 = res.extra["beta0"].to_numpy()

    expected = impute_outcomes(model.params, beta1, beta0=beta0)
    imp = res.extra["imputation"]
    np.testing.assert_allclose(imp["m1"].to_numpy(), expected.m1, rtol=1e-12)
    np.testing.assert_allclose(imp["m0"].to_numpy(), expected.m0, rtol=1e-12)
    np.testing.assert_allclose(imp["dm0_1"].to_numpy(), expected.dm0[:, 0], rtol=1e-12)
    shared = impute_outcomes(model.params, beta1)
    assert not np.allclose(shared.m0, expected.m0)
    assert res.extra["ate"] == pytest.approx(imp_ate(model.params, expected)["ate"])


def test_separate_flag_without_arm_guesses(planted):
    x, y, treated, beta_true = planted
    model = ImpDimRed(d=1, h11=0.5, h12=0.5, kernel="QUAR", n_threads=2, config=CFG, separate=True)
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", MaxIterationsExceeded)
        res = model.fit(x, y, treated, beta_guess=[1.0, 0.0, 0.0])
    assert cosine(res.extra["beta1"].to_numpy(), beta_true) > 0.9
    assert cosine(res.extra["beta0"].to_numpy(), beta_true) > 0.9
    for arm in ("treated", "control"):
        np.testing.assert_array_equal(res.extra["arms"][arm]["beta_guess"], [[1.0], [0.0], [0.0]])


def test_separate_directions_need_both_arms():
    rng = np.random.default_rng(3)
    x = rng.standard_normal((30, 2))
    model = ImpDimRed(h11=0.5, h12=0.5, n_threads=1, separate=True)
    with pytest.raises(InvalidArgument, match="both treated and control"):
        model.fit(x, x[:, 0], np.ones(30, dtype=int))

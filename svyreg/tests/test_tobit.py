import numpy as np
import pytest
from scipy import integrate, stats

from svyreg.errors import OptimizationError
from svyreg.estimators.base import SolverConfig
from svyreg.estimators.tobit import Tobit, censored_mean, fit_tobit, tobit_expectation


@pytest.fixture
def tobit_data(rng):
    n = 8000
    x = rng.standard_normal(n)
    X = np.column_stack([np.ones(n), x])
    latent = 0.3 + 0.4 * x + 0.3 * rng.standard_normal(n)
    return np.clip(latent, 0.0, 1.0), X


def test_tobit_round_trip(tobit_data):
    y, X = tobit_data
    res = fit_tobit(y, X, var_names=["const", "x"])
    assert res.converged
    assert res.params["const"] == pytest.approx(0.3, abs=0.03)
    assert res.params["x"] == pytest.approx(0.4, abs=0.03)
    assert res.model_info["sigma"] == pytest.approx(0.3, abs=0.03)
    assert res.model_info["sigma"] > 0.0
    assert list(res.aux.index) == ["lnsigma"]
    assert res.vcov_full.shape == (3, 3)


def test_branch_attribution(tobit_data):
    y, X = tobit_data
    res = fit_tobit(y, X)
    branch = res.extra["branch"]
    assert np.array_equal(branch == -1, y == 0.0)
    assert np.array_equal(branch == 1, y == 1.0)
    assert np.array_equal(branch == 0, (y > 0.0) & (y < 1.0))
    assert res.model_info["censored_lower_frac"] == pytest.approx(np.mean(y == 0.0))
    assert res.model_info["censored_upper_frac"] == pytest.approx(np.mean(y == 1.0))


def test_outcome_outside_bounds():
    X = np.ones((3, 1))
    with pytest.raises(ValueError, match="outside"):
        Tobit(np.array([0.2, 1.5, 0.0]), X)
    with pytest.raises(ValueError, match="below"):
        Tobit(np.array([0.2, 0.5, 0.0]), X, lower=1.0, upper=0.0)


def test_all_records_at_one_bound(rng):
    X = np.column_stack([np.ones(50), rng.standard_normal(50)])
    with pytest.raises(OptimizationError):
        fit_tobit(np.zeros(50), X)


def test_iteration_cap_raises(tobit_data):
    y, X = tobit_data
    with pytest.raises(OptimizationError, match="did not converge"):
        fit_tobit(y, X, config=SolverConfig(max_iter=1))


def test_flat_surface_raises(tobit_data, monkeypatch):
    y, X = tobit_data
    model = Tobit(y[:300], X[:300])

    def flat(theta, y_, X_, w, branch):
        k = theta.shape[0]
        return 0.0, np.zeros((y_.shape[0], k)), np.eye(k), np.zeros(k)

    monkeypatch.setattr(model, "_derivatives", flat)
    with pytest.raises(OptimizationError, match="flat"):
        model.fit()


def test_expectation_without_censoring_is_linear():
    b = np.array([0.2, 0.5])
    x = np.array([1.0, 0.8])
    val = tobit_expectation(b, 0.7, x, lower=-np.inf, upper=np.inf)
    assert val == pytest.approx(0.6)


def test_expectation_matches_quadrature():
    b = np.array([0.1, 0.6])
    x = np.array([1.0, 0.5])
    xb, s = 0.4, 0.5
    dist = stats.norm(loc=xb, scale=s)
    inner, _ = integrate.quad(lambda t: t * dist.pdf(t), 0.0, 1.0)
    expected = inner + 1.0 * dist.sf(1.0)
    assert tobit_expectation(b, s, x) == pytest.approx(expected, rel=1e-8)


def test_expectation_rows():
    b = np.array([0.0, 1.0])
    rows = np.array([[1.0, -5.0], [1.0, 0.5], [1.0, 6.0]])
    out = tobit_expectation(b, 0.1, rows)
    assert out.shape == (3,)
    assert out[0] == pytest.approx(0.0, abs=1e-10)
    assert out[1] == pytest.approx(0.5, abs=1e-6)
    assert out[2] == pytest.approx(1.0, abs=1e-10)


def test_censored_mean_derivatives():
    eta = np.array([-0.3, 0.2, 0.9, 1.4])
    sigma, h = 0.4, 1e-6
    _, d_eta, d_lns = censored_mean(eta, sigma, 0.0, 1.0)
    up = censored_mean(eta + h, sigma, 0.0, 1.0)[0]
    dn = censored_mean(eta - h, sigma, 0.0, 1.0)[0]
    assert np.allclose(d_eta, (up - dn) / (2 * h), atol=1e-6)
    up = censored_mean(eta, sigma * np.exp(h), 0.0, 1.0)[0]
    dn = censored_mean(eta, sigma * np.exp(-h), 0.0, 1.0)[0]
    assert np.allclose(d_lns, (up - dn) / (2 * h), atol=1e-6)


def test_tobit_from_formula_structural_zeros(survey_frame, design):
    res = Tobit.from_formula("tele_share ~ poverty", survey_frame, design).fit()
    assert res.family == "tobit"
    assert res.n_obs == survey_frame.shape[0]
    assert res.model_info["censored_lower_frac"] > 0.0
    assert res.model_info["lower"] == 0.0
    assert res.model_info["upper"] == 1.0

import warnings

import numpy as np
import pandas as pd
import pytest
from scipy import special

from svyreg.core.design import DesignArrays
from svyreg.errors import NonConvergenceWarning, OptimizationError, SeparationError
from svyreg.estimators.base import SolverConfig, newton_update
from svyreg.estimators.glm import Logit, NegativeBinomial, fit_glm

# ---------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------


@pytest.fixture
def logit_data(rng):
    n = 20000
    x = rng.standard_normal(n)
    X = np.column_stack([np.ones(n), x])
    y = (rng.uniform(size=n) < special.expit(-0.5 + 1.0 * x)).astype(float)
    return y, X


@pytest.fixture
def nb_data(rng):
    n = 6000
    x = rng.standard_normal(n)
    X = np.column_stack([np.ones(n), x])
    mu = np.exp(0.5 + 0.3 * x)
    alpha = 0.5
    lam = mu * rng.gamma(shape=1.0 / alpha, scale=alpha, size=n)
    return rng.poisson(lam).astype(float), X


# ---------------------------------------------------------------------
# Logit
# ---------------------------------------------------------------------


def test_logit_recovers_coefficients(logit_data):
    y, X = logit_data
    res = fit_glm("binomial", y, X, var_names=["const", "x"])
    assert res.converged
    assert res.family == "binomial"
    assert list(res.params.index) == ["const", "x"]
    assert res.params["const"] == pytest.approx(-0.5, abs=0.1)
    assert res.params["x"] == pytest.approx(1.0, abs=0.1)
    assert np.all(res.se > 0)
    assert res.vcov_full is not None and res.vcov_full.shape == (2, 2)


def test_unit_weights_match_unweighted(logit_data):
    y, X = logit_data
    a = fit_glm("binomial", y[:2000], X[:2000])
    b = fit_glm("binomial", y[:2000], X[:2000], weights=np.ones(2000))
    assert np.allclose(a.params, b.params)
    assert np.allclose(a.vcov, b.vcov)


def test_weight_scale_invariance(logit_data, rng):
    y, X = logit_data
    y, X = y[:3000], X[:3000]
    w = rng.uniform(0.5, 3.0, size=3000)
    a = fit_glm("binomial", y, X, weights=w)
    b = fit_glm("binomial", y, X, weights=10.0 * w)
    assert np.allclose(a.params, b.params, atol=1e-8)
    assert np.allclose(a.vcov, b.vcov, rtol=1e-6)


def test_logit_sandwich_matches_manual(logit_data):
    y, X = logit_data
    y, X = y[:1500], X[:1500]
    n = y.shape[0]
    res = fit_glm("binomial", y, X)
    mu = special.expit(X @ res.params.to_numpy())
    S = X * (y - mu)[:, None]
    Sc = S - S.mean(axis=0)
    M = n / (n - 1.0) * Sc.T @ Sc
    Hinv = np.linalg.inv(X.T @ (X * (mu * (1 - mu))[:, None]))
    assert np.allclose(res.vcov.to_numpy(), Hinv @ M @ Hinv, rtol=1e-6)


def test_logit_cluster_design(logit_data, rng):
    y, X = logit_data
    y, X = y[:4000], X[:4000]
    strata = np.repeat(np.arange(10), 400)
    clusters = np.tile(np.repeat(np.arange(8), 50), 10)
    design = DesignArrays.from_arrays(np.ones(4000), strata=strata, clusters=clusters)
    res = Logit(y, X, design=design).fit()
    assert res.df == 80 - 10
    assert res.model_info["n_clusters"] == 80
    assert res.model_info["n_strata"] == 10


def test_logit_perfect_separation():
    x = np.linspace(-2.0, 2.0, 200)
    X = np.column_stack([np.ones(200), x])
    y = (x > 0).astype(float)
    with pytest.raises(SeparationError) as exc:
        fit_glm("binomial", y, X, var_names=["const", "x"])
    assert exc.value.columns


def test_logit_quasi_separation(rng):
    n = 400
    x = rng.standard_normal(n)
    g = (np.arange(n) % 4 == 0).astype(float)
    y = (rng.uniform(size=n) < special.expit(0.2 + 0.8 * x)).astype(float)
    y[g == 1.0] = 1.0
    X = np.column_stack([np.ones(n), x, g])
    with pytest.raises(SeparationError, match="perfectly predicted") as exc:
        fit_glm("binomial", y, X, var_names=["const", "x", "g"])
    assert exc.value.columns == ["g"]


def test_logit_iteration_cap_warns(logit_data):
    y, X = logit_data
    with pytest.warns(NonConvergenceWarning):
        res = fit_glm("binomial", y[:1000], X[:1000], config=SolverConfig(max_iter=1))
    assert res.converged is False
    assert res.n_iter == 1


def test_logit_rejects_out_of_range_outcome():
    with pytest.raises(ValueError, match=r"\[0, 1\]"):
        Logit(np.array([0.0, 2.0, 1.0]), np.ones((3, 1)))


def test_unknown_family():
    with pytest.raises(ValueError, match="family"):
        fit_glm("poisson", np.zeros(3), np.ones((3, 1)))


def test_collinear_column_dropped(logit_data):
    y, X = logit_data
    y, X = y[:2000], X[:2000]
    X3 = np.column_stack([X, 2.0 * X[:, 1]])
    with warnings.catch_warnings():
        warnings.simplefilter("error", NonConvergenceWarning)
        res = fit_glm("binomial", y, X3, var_names=["const", "x", "x2"])
    assert list(res.params.index) == ["const", "x"]
    assert res.extra["diagnostics"]["dropped_collinear"] == ["x2"]
    assert res.extra["keep_cols"].tolist() == [True, True, False]


def test_incomplete_rows_keep_clusters(logit_data):
    y, X = logit_data
    y = y[:1000].copy()
    X = X[:1000]
    y[:10] = np.nan
    res = fit_glm("binomial", y, X)
    assert res.n_obs == 990
    assert res.model_info["n_design"] == 1000
    assert res.df == 999


def test_to_dict_is_plain(logit_data):
    y, X = logit_data
    out = fit_glm("binomial", y[:1000], X[:1000]).to_dict()
    assert set(out["params"]) == {"x0", "x1"}
    assert isinstance(out["vcov"], list)
    assert out["model_info"]["Family"] == "binomial"


def test_from_formula_on_survey_frame(survey_frame, design):
    model = Logit.from_formula(
        "any_visit ~ poverty + age", survey_frame, design, levels={"poverty": ["NotPoor", "Near", "Poor"]},
    )
    res = model.fit()
    assert list(res.params.index) == ["Intercept", "poverty[T.Near]", "poverty[T.Poor]", "age"]
    assert res.column_map["poverty[T.Poor]"] == ("poverty",)
    assert res.df == 24 - 6
    assert res.model_info["formula"] == "any_visit ~ poverty + age"
    assert model.params is res.params


# ---------------------------------------------------------------------
# Negative binomial
# ---------------------------------------------------------------------


def test_negbin_recovers_dispersion(nb_data):
    y, X = nb_data
    res = fit_glm("negbin", y, X, var_names=["const", "x"])
    assert res.converged
    assert res.params["const"] == pytest.approx(0.5, abs=0.1)
    assert res.params["x"] == pytest.approx(0.3, abs=0.1)
    assert res.model_info["alpha"] == pytest.approx(0.5, abs=0.15)
    assert list(res.aux.index) == ["lnalpha"]
    assert res.vcov_full.shape == (3, 3)
    assert list(res.theta.index) == ["const", "x", "lnalpha"]
    assert res.aux_se["lnalpha"] > 0


def test_negbin_rejects_negative_counts():
    with pytest.raises(ValueError, match="non-negative"):
        NegativeBinomial(np.array([1.0, -1.0, 2.0]), np.ones((3, 1)))


def test_negbin_from_formula(survey_frame, design):
    res = NegativeBinomial.from_formula("office_visits ~ poverty", survey_frame, design).fit()
    assert res.family == "negbin"
    assert np.isfinite(res.loglik)
    assert res.vcov.shape == (3, 3)
    assert isinstance(res.params, pd.Series)


# ---------------------------------------------------------------------
# Newton step helper
# ---------------------------------------------------------------------


def _bounded_objective(b):
    # finite only inside the unit box
    return -float(np.sum(b**2)) if np.all(np.abs(b) < 1.0) else np.nan


def test_newton_update_damps_non_finite_step():
    theta = np.zeros(2)
    out, f_new, improved = newton_update(
        theta, np.array([1.5, 0.0]), _bounded_objective, 0.0, SolverConfig(damping=0.5), line_search=False,
    )
    assert np.allclose(out, [0.75, 0.0])
    assert f_new == pytest.approx(-0.5625)
    assert improved


def test_newton_update_raises_after_second_failure():
    theta = np.zeros(2)
    with pytest.raises(OptimizationError, match="damping"):
        newton_update(theta, np.array([4.0, 0.0]), _bounded_objective, 0.0, SolverConfig(damping=0.5))
    with pytest.raises(OptimizationError):
        newton_update(theta, np.array([np.inf, 0.0]), _bounded_objective, 0.0, SolverConfig())

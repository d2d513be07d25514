import json
from dataclasses import replace

import numpy as np
import pytest

from svyreg.estimators.glm import Logit
from svyreg.pipeline import ModelSpec, fit_spec, run_models

LEVELS = {"poverty": ["NotPoor", "Near", "Poor"], "year": [2019, 2020, 2021]}


@pytest.fixture
def specs():
    return [
        ModelSpec(
            name="any_visit",
            formula="any_visit ~ poverty * year + age",
            family="binomial",
            levels=LEVELS,
            margins=("poverty", "year"),
        ),
        ModelSpec(
            name="tele_count",
            formula="tele_visits ~ poverty + year",
            family="negbin",
            levels=LEVELS,
            margins=("year",),
        ),
        ModelSpec(
            name="tele_share",
            formula="tele_share ~ poverty + year",
            family="tobit",
            levels=LEVELS,
            at={"year": 2021},
        ),
    ]


def test_run_models_in_spec_order(survey_frame, design, specs):
    runs = run_models(survey_frame, design, specs)
    assert list(runs) == ["any_visit", "tele_count", "tele_share"]
    assert len(runs["any_visit"].margins) == 9
    assert len(runs["tele_count"].margins) == 3
    assert list(runs["tele_share"].margins.table.index) == ["year=2021"]


def test_concurrent_runs_match_sequential(survey_frame, design, specs):
    seq = run_models(survey_frame, design, specs)
    par = run_models(survey_frame, design, specs, max_workers=2)
    for name in seq:
        assert np.array_equal(seq[name].model.params.to_numpy(), par[name].model.params.to_numpy())
        assert np.array_equal(seq[name].model.vcov.to_numpy(), par[name].model.vcov.to_numpy())
        assert np.array_equal(
            seq[name].margins.table.to_numpy(), par[name].margins.table.to_numpy(),
        )


def test_nonzero_sensitivity_sample(survey_frame, design):
    spec = ModelSpec(
        name="share_nonzero", formula="tele_share ~ poverty", family="tobit", sensitivity="nonzero",
    )
    run = fit_spec(survey_frame, design, spec)
    assert run.model.n_obs == int(survey_frame["keep_nonzero"].sum())
    assert run.margins is None


def test_spec_validation(survey_frame, design, specs):
    with pytest.raises(ValueError, match="family"):
        ModelSpec(name="bad", formula="y ~ x", family="poisson")
    with pytest.raises(ValueError, match="unique"):
        run_models(survey_frame, design, [specs[0], specs[0]])
    with pytest.raises(ValueError, match="max_workers"):
        run_models(survey_frame, design, specs, max_workers=0)


def test_run_to_dict_is_json_serializable(survey_frame, design, specs):
    runs = run_models(survey_frame, design, specs[:1])
    payload = json.dumps(runs["any_visit"].to_dict())
    assert "poverty=Poor, year=2020" in payload


def test_excluded_cluster_stays_in_design(survey_frame, design):
    df = survey_frame.copy()
    whole = (df["stratum"] == 0) & (df["cluster"] == 0)
    df.loc[whole, "keep_child"] = False
    spec = ModelSpec(name="any_visit", formula="any_visit ~ poverty + age", family="binomial")
    run = fit_spec(df, design, spec)

    dom = replace(design, subpop="in_domain")
    ref = Logit.from_formula("any_visit ~ poverty + age", df.assign(in_domain=~whole), dom).fit()
    assert run.model.df == 18
    assert run.model.df == ref.df
    assert run.model.n_obs == int((~whole).sum())
    assert run.model.model_info["n_clusters"] == 24
    assert np.allclose(run.model.params.to_numpy(), ref.params.to_numpy())
    assert np.allclose(run.model.vcov.to_numpy(), ref.vcov.to_numpy())

import numpy as np
import pytest

from svyreg.estimators.glm import Logit, NegativeBinomial
from svyreg.estimators.margins import predict_margins
from svyreg.output.summary import coef_table, margins_table, modelsummary
from svyreg.utils.helpers import (
    escape_latex,
    filter_and_order_params,
    format_value,
    pretty_term,
)


@pytest.fixture
def models(survey_frame, design):
    levels = {"poverty": ["NotPoor", "Near", "Poor"], "year": [2019, 2020, 2021]}
    logit = Logit.from_formula("any_visit ~ poverty * year", survey_frame, design, levels=levels).fit()
    nb = NegativeBinomial.from_formula("office_visits ~ poverty + age", survey_frame, design, levels=levels).fit()
    return logit, nb


def test_coef_table_columns(models):
    logit, _ = models
    tab = coef_table(logit)
    assert list(tab.columns) == ["estimate", "se", "t", "p_value", "ci_low", "ci_high"]
    assert list(tab.index) == list(logit.params.index)
    assert np.all((tab["p_value"] >= 0) & (tab["p_value"] <= 1))
    assert np.all(tab["ci_low"] < tab["ci_high"])


def test_coef_table_exponentiate(models):
    logit, _ = models
    raw = coef_table(logit)
    odds = coef_table(logit, exponentiate=True)
    assert np.allclose(odds["estimate"], np.exp(raw["estimate"]))
    assert np.allclose(odds["se"], np.exp(raw["estimate"]) * raw["se"])
    assert np.allclose(odds["t"], raw["t"])


def test_coef_table_appends_aux(models):
    _, nb = models
    tab = coef_table(nb)
    assert tab.index[-1] == "lnalpha"
    assert "lnalpha" not in coef_table(nb, include_aux=False).index


def test_modelsummary_text(models):
    text = modelsummary(list(models), ["Any visit", "Office"])
    assert "Any visit" in text
    assert "poverty=Poor x year=2020" in text
    assert "Design df" in text
    assert "Log pseudo-likelihood" in text


def test_modelsummary_selection(models):
    text = modelsummary(list(models), include=[r"^poverty"], pretty=False)
    assert "poverty[T.Poor]" in text
    assert "Intercept" not in text
    shared = modelsummary(list(models), skip_missing=True, pretty=False)
    labels = [ln.split()[0] for ln in shared.splitlines() if ln.strip()]
    assert "poverty[T.Poor]" in labels
    assert "age" not in labels
    assert "year[T.2020]" not in labels


def test_modelsummary_latex(models):
    tex = modelsummary(list(models), output="latex", footer_keys=["alpha"], pretty=False)
    assert "\\toprule" in tex
    assert "\\bottomrule" in tex
    assert tex.count("\\midrule") == 2
    assert "MSMIDRULE" not in tex
    assert "alpha" in tex
    assert "poverty[T.Poor]" in tex
    assert "\\textbackslash" not in tex
    plain = modelsummary(list(models), output="latex", latex_booktabs=False)
    assert "\\toprule" not in plain
    assert "\\hline" in plain


def test_modelsummary_argument_checks(models):
    with pytest.raises(ValueError):
        modelsummary([])
    with pytest.raises(ValueError):
        modelsummary(list(models), ["only one"])
    with pytest.raises(ValueError):
        modelsummary(list(models), output="html")


def test_margins_table(models):
    logit, _ = models
    m = predict_margins(logit, [{"poverty": "Poor"}, {"poverty": "Near"}])
    text = margins_table(m)
    assert "poverty=Poor" in text
    assert "95% CI low" in text
    assert "design df" in text


# ---------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------


def test_pretty_term():
    assert pretty_term("poverty[T.Poor]:year[T.2020]") == "poverty=Poor x year=2020"
    assert pretty_term("age") == "age"


def test_escape_latex_single_pass():
    assert escape_latex("a_b") == r"a\_b"
    assert escape_latex("\\") == r"\textbackslash{}"
    assert escape_latex("50%") == r"50\%"


def test_filter_and_order_params():
    pool = ["Intercept", "b", "a"]
    assert filter_and_order_params(pool, sort="alpha") == ["a", "b", "Intercept"]
    assert filter_and_order_params(pool, exclude=["Intercept"]) == ["b", "a"]
    with pytest.raises(ValueError, match="not found"):
        filter_and_order_params(pool, params=["c"])
    with pytest.raises(ValueError, match="sort"):
        filter_and_order_params(pool, sort="size")


def test_format_value():
    assert format_value(None) == ""
    assert format_value(True) == "True"
    assert format_value(float("nan")) == ""
    assert format_value(0.5) == "0.5"

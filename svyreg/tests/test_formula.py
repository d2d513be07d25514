import numpy as np
import pandas as pd
import pytest

from svyreg.utils.formula import (
    FormulaParser,
    build_design,
    canonical_levels,
    interaction_formula,
)


def _toy_df() -> pd.DataFrame:
    return pd.DataFrame(
        {
            "y": [0.0, 1.0, 0.0, 1.0, 1.0, 0.0],
            "x": [1.0, 2.0, 3.0, 4.0, 5.0, np.nan],
            "grp": ["b", "a", "c", "a", "b", "c"],
            "year": [2020, 2019, 2021, 2019, 2020, 2021],
        },
        index=pd.RangeIndex(6),
    )


def test_canonical_levels_sorted_by_default() -> None:
    assert canonical_levels(pd.Series(["b", "a", "c", "a"])) == ["a", "b", "c"]
    assert canonical_levels(pd.Series([True, False])) == [False, True]


def test_canonical_levels_keep_categorical_order() -> None:
    s = pd.Series(pd.Categorical(["x", "y"], categories=["y", "x"]))
    assert canonical_levels(s) == ["y", "x"]


def test_canonical_levels_reject_duplicates() -> None:
    with pytest.raises(ValueError, match="Duplicate"):
        canonical_levels(pd.Series(["a"], name="g"), ["a", "a"])


def test_interaction_formula_text() -> None:
    f = interaction_formula("any_visit", "poverty", "year", ["age", "insurance"])
    assert f == "any_visit ~ poverty * year + age + insurance"


def test_reference_is_first_level() -> None:
    out = FormulaParser(_toy_df()).parse("y ~ grp")
    assert out["var_names"] == ["Intercept", "grp[T.b]", "grp[T.c]"]
    assert out["factor_levels"]["grp"] == ["a", "b", "c"]


def test_explicit_levels_change_reference() -> None:
    p = FormulaParser(_toy_df(), levels={"grp": ["c", "a", "b"], "year": [2021, 2019, 2020]})
    out = p.parse("y ~ grp + year")
    assert "grp[T.a]" in out["var_names"]
    assert "grp[T.c]" not in out["var_names"]
    assert "year[T.2019]" in out["var_names"]
    assert out["factor_levels"]["year"] == [2021, 2019, 2020]


def test_values_outside_levels_raise() -> None:
    p = FormulaParser(_toy_df(), levels={"grp": ["a", "b"]})
    with pytest.raises(ValueError, match="outside its levels"):
        p.parse("y ~ grp")


def test_unknown_levels_column() -> None:
    with pytest.raises(KeyError):
        FormulaParser(_toy_df(), levels={"nope": [1, 2]})


def test_missing_values_are_dropped_and_counted() -> None:
    out = FormulaParser(_toy_df()).parse("y ~ x + grp")
    assert out["n_dropped_na"] == 1
    assert list(out["row_index_used"]) == [0, 1, 2, 3, 4]
    assert out["X"].shape == (5, 4)
    assert np.allclose(out["y"], [0.0, 1.0, 0.0, 1.0, 1.0])


def test_column_map_names_covariates() -> None:
    p = FormulaParser(_toy_df(), levels={"year": [2019, 2020, 2021]})
    out = p.parse("y ~ grp * year + x")
    cmap = out["column_map"]
    assert cmap["Intercept"] == ()
    assert cmap["grp[T.b]"] == ("grp",)
    assert cmap["x"] == ("x",)
    assert set(cmap["grp[T.b]:year[T.2020]"]) == {"grp", "year"}
    assert "y" not in out["frame"].columns


def test_build_design_reproduces_rows() -> None:
    out = FormulaParser(_toy_df()).parse("y ~ x + grp")
    X2 = build_design(out["design_info"], out["frame"])
    assert np.allclose(X2.to_numpy(), out["X"].to_numpy())
    assert list(X2.columns) == out["var_names"]


def test_build_design_counterfactual_level() -> None:
    out = FormulaParser(_toy_df()).parse("y ~ grp")
    frame = out["frame"].copy()
    frame["grp"] = pd.Categorical(["c"] * frame.shape[0], categories=["a", "b", "c"])
    X2 = build_design(out["design_info"], frame)
    assert np.all(X2["grp[T.c]"].to_numpy() == 1.0)
    assert np.all(X2["grp[T.b]"].to_numpy() == 0.0)


def test_formula_errors() -> None:
    p = FormulaParser(_toy_df())
    with pytest.raises(ValueError, match="~"):
        p.parse("y + x")
    with pytest.raises(KeyError):
        p.parse("z ~ x")


def test_duplicate_index_rejected() -> None:
    df = _toy_df()
    df.index = [0, 0, 1, 2, 3, 4]
    with pytest.raises(ValueError, match="unique"):
        FormulaParser(df)

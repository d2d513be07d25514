from dataclasses import replace

import numpy as np
import pandas as pd
import pytest

from svyreg.errors import DesignError
from svyreg.utils.records import (
    ANALYTIC_DOMAIN,
    AnalyticRecord,
    RecordSchema,
    analytic_sample,
    derive_share,
    records_to_frame,
    validate_analytic_table,
)


def test_derive_share_zero_denominator():
    assert derive_share(0, 0) == 0.0
    assert derive_share(1, 3) == pytest.approx(0.25)
    out = derive_share(np.array([0, 2, 1]), np.array([0, 0, 1]))
    assert out.tolist() == [0.0, 1.0, 0.5]


def test_derive_share_keeps_series_index():
    a = pd.Series([1, 0], index=[10, 20])
    out = derive_share(a, pd.Series([1, 0], index=[10, 20]))
    assert isinstance(out, pd.Series)
    assert list(out.index) == [10, 20]


def _record(pid, tele, office, keep=True):
    return AnalyticRecord(
        person_id=pid,
        year=2020,
        weight=1.5,
        stratum=1,
        cluster=2,
        any_visit=int(tele + office > 0),
        tele_visits=tele,
        office_visits=office,
        covariates={"poverty": "Poor"},
        keep_child=keep,
    )


def test_records_to_frame_derives_outcomes():
    df = records_to_frame([_record(1, 0, 0), _record(2, 1, 1, keep=False)])
    assert df["tele_share"].tolist() == [0.0, 0.5]
    assert df["keep_nonzero"].tolist() == [False, True]
    assert df["poverty"].tolist() == ["Poor", "Poor"]
    validate_analytic_table(df)


def test_records_to_frame_requires_records():
    with pytest.raises(ValueError):
        records_to_frame([])


def test_validate_rejects_inconsistent_share(survey_frame):
    df = survey_frame.copy()
    validate_analytic_table(df)
    df.loc[df.index[0], "tele_share"] = 0.123
    with pytest.raises(ValueError, match="tele_share"):
        validate_analytic_table(df)


def test_validate_rejects_bad_counts_and_binary(survey_frame):
    df = survey_frame.copy()
    df.loc[df.index[3], "office_visits"] = -1
    with pytest.raises(ValueError, match="counts"):
        validate_analytic_table(df)
    df = survey_frame.copy()
    df.loc[df.index[3], "any_visit"] = 2
    with pytest.raises(ValueError, match="0/1"):
        validate_analytic_table(df)


def test_analytic_sample_flags(survey_frame, design):
    df = survey_frame.copy()
    df.loc[df.index[:5], "keep_child"] = False
    df.loc[df.index[5], "weight"] = 0.0
    out, dom = analytic_sample(df, design)
    assert out.shape[0] == df.shape[0] - 1
    assert dom.subpop == ANALYTIC_DOMAIN
    assert int(out[ANALYTIC_DOMAIN].sum()) == df.shape[0] - 6
    assert not out.loc[df.index[:5], ANALYTIC_DOMAIN].any()

    nz, nz_dom = analytic_sample(df, design, sensitivity="nonzero")
    kept = nz.loc[nz[nz_dom.subpop]]
    assert kept["keep_nonzero"].all()
    assert kept.shape[0] < int(out[ANALYTIC_DOMAIN].sum())
    assert nz.shape[0] == out.shape[0]


def test_analytic_sample_keeps_excluded_clusters(survey_frame, design):
    df = survey_frame.copy()
    whole = (df["stratum"] == 0) & (df["cluster"] == 0)
    df.loc[whole, "keep_child"] = False
    out, dom = analytic_sample(df, design)
    arrays = dom.resolve(out)
    assert arrays.n_clusters == 24
    assert arrays.df == 18
    assert int(arrays.domain.sum()) == int((~whole).sum())


def test_analytic_sample_intersects_subpop(survey_frame, design):
    df = survey_frame.assign(young=survey_frame["age"] < 9.0)
    df.loc[df.index[:10], "keep_child"] = False
    out, dom = analytic_sample(df, replace(design, subpop="young"))
    expected = df["young"] & df["keep_child"]
    assert int(out[dom.subpop].sum()) == int(expected.sum())
    df["young"] = df["young"].astype(object)
    df.loc[df.index[20], "young"] = None
    with pytest.raises(DesignError, match="missing"):
        analytic_sample(df, replace(design, subpop="young"))


def test_analytic_sample_custom_schema(survey_frame, design):
    schema = RecordSchema(keep_flag="not_a_column")
    out, dom = analytic_sample(survey_frame, design, schema=schema)
    assert out.shape[0] == survey_frame.shape[0]
    assert out[dom.subpop].all()
    with pytest.raises(ValueError, match="sensitivity"):
        analytic_sample(survey_frame, design, sensitivity="all")

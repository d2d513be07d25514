from __future__ import annotations

import sys
from pathlib import Path

import numpy as np
import pandas as pd
import pytest


def pytest_configure() -> None:
    """Ensure the repository root is on sys.path.

    pytest may pick ``svyreg/`` as its rootdir when run from inside the
    package; importing the top-level package then needs the parent directory.
    """
    repo_root = Path(__file__).resolve().parents[2]
    repo_root_str = str(repo_root)
    if repo_root_str not in sys.path:
        sys.path.insert(0, repo_root_str)


# ---------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------

POVERTY_LEVELS = ["NotPoor", "Near", "Poor"]
YEARS = [2019, 2020, 2021]


@pytest.fixture
def rng():
    return np.random.default_rng(42)


@pytest.fixture
def survey_frame(rng) -> pd.DataFrame:
    """Person-year table: 6 strata x 4 clusters x 40 records."""
    n_strata, n_clusters, per = 6, 4, 40
    n = n_strata * n_clusters * per
    stratum = np.repeat(np.arange(n_strata), n_clusters * per)
    cluster = np.tile(np.repeat(np.arange(n_clusters), per), n_strata)
    cl_effect = rng.normal(0.0, 0.2, size=n_strata * n_clusters)[stratum * n_clusters + cluster]
    poverty = rng.choice(POVERTY_LEVELS, size=n)
    year = rng.choice(YEARS, size=n)
    insurance = rng.choice(["private", "public", "none"], size=n)
    age = rng.uniform(0.0, 17.0, size=n)
    weight = rng.uniform(0.5, 3.0, size=n)

    eta = -0.3 + 0.6 * (poverty == "Poor") + 0.3 * (year == 2021) - 0.02 * age + cl_effect
    any_visit = (rng.uniform(size=n) < 1.0 / (1.0 + np.exp(-eta))).astype(int)
    tele = rng.poisson(np.exp(-1.0 + 0.5 * (year >= 2020)), size=n) * any_visit
    office = rng.poisson(np.exp(0.3 + 0.2 * (poverty == "Poor")), size=n) * any_visit
    total = tele + office
    share = np.where(total > 0, tele / np.where(total > 0, total, 1), 0.0)
    return pd.DataFrame(
        {
            "person_id": np.arange(n) + 1000,
            "year": year,
            "weight": weight,
            "stratum": stratum,
            "cluster": cluster,
            "poverty": poverty,
            "insurance": insurance,
            "age": age,
            "any_visit": any_visit,
            "tele_visits": tele,
            "office_visits": office,
            "tele_share": share,
            "keep_child": True,
            "keep_nonzero": total > 0,
        },
    )


@pytest.fixture
def design():
    from svyreg.core.design import SurveyDesign

    return SurveyDesign(stratum="stratum", cluster="cluster", weight="weight", id_column="person_id")

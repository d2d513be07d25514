"""Analytic record contract.

The ETL stage (outside this package) produces one row per person-year. This
module states the columns that row carries, derives the proportion outcome
with its exact zero-denominator rule, validates a table against the contract
and marks the analytic domain that enters design-based estimation.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, fields, replace
from typing import TYPE_CHECKING, Any

import numpy as np
import pandas as pd

from svyreg.errors import DesignError

if TYPE_CHECKING:
    from collections.abc import Iterable

    from svyreg.core.design import SurveyDesign

__all__ = [
    "ANALYTIC_DOMAIN",
    "AnalyticRecord",
    "RecordSchema",
    "analytic_sample",
    "derive_share",
    "records_to_frame",
    "validate_analytic_table",
]

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class RecordSchema:
    """Column names of the analytic table."""

    person_id: str = "person_id"
    year: str = "year"
    weight: str = "weight"
    stratum: str = "stratum"
    cluster: str = "cluster"
    binary_outcome: str = "any_visit"
    count_a: str = "tele_visits"
    count_b: str = "office_visits"
    proportion: str = "tele_share"
    keep_flag: str = "keep_child"
    nonzero_flag: str = "keep_nonzero"
    covariates: tuple[str, ...] = (
        "poverty",
        "insurance",
        "age_group",
        "sex",
        "race_eth",
        "region",
        "chronic_need",
    )


@dataclass(frozen=True)
class AnalyticRecord:
    """One person-year, as delivered by the ETL stage."""

    person_id: Any
    year: Any
    weight: float
    stratum: Any
    cluster: Any
    any_visit: int
    tele_visits: int
    office_visits: int
    covariates: dict[str, Any]
    keep_child: bool = True

    @property
    def tele_share(self) -> float:
        return derive_share(self.tele_visits, self.office_visits)

    @property
    def keep_nonzero(self) -> bool:
        return (self.tele_visits + self.office_visits) > 0

    def as_row(self) -> dict[str, Any]:
        row = {f.name: getattr(self, f.name) for f in fields(self) if f.name != "covariates"}
        row.update(self.covariates)
        row["tele_share"] = self.tele_share
        row["keep_nonzero"] = self.keep_nonzero
        return row


def derive_share(count_a: Any, count_b: Any) -> Any:
    """``count_a / (count_a + count_b)`` when the sum is positive, else ``0.0``.

    Accepts scalars or array-likes. Zero-denominator records (no visits of
    either kind) get a structural share of exactly 0.0.
    """
    a = np.asarray(count_a, dtype=np.float64)
    b = np.asarray(count_b, dtype=np.float64)
    total = a + b
    safe = np.where(total > 0, total, 1.0)
    share = np.where(total > 0, a / safe, 0.0)
    if share.ndim == 0:
        return float(share)
    if isinstance(count_a, pd.Series):
        return pd.Series(share, index=count_a.index, name=None)
    return share


def records_to_frame(records: Iterable[AnalyticRecord]) -> pd.DataFrame:
    """Build an analytic DataFrame from records (index = 0..n-1)."""
    rows = [r.as_row() for r in records]
    if not rows:
        msg = "records_to_frame requires at least one record."
        raise ValueError(msg)
    return pd.DataFrame(rows)


def validate_analytic_table(
    data: pd.DataFrame,
    schema: RecordSchema | None = None,
) -> pd.DataFrame:
    """Check the outcome contracts of an analytic table.

    Returns ``data`` unchanged when valid; raises ``ValueError`` describing the
    first violated rule otherwise. Checked rules: counts are non-negative
    integers, the binary outcome is 0/1, the proportion equals the derived
    share exactly, and the proportion lies in [0, 1].
    """
    sc = schema or RecordSchema()
    required = [sc.count_a, sc.count_b, sc.proportion, sc.binary_outcome]
    missing = [c for c in required if c not in data.columns]
    if missing:
        msg = f"Analytic table lacks outcome column(s): {missing}"
        raise ValueError(msg)

    for col in (sc.count_a, sc.count_b):
        v = data[col].to_numpy(dtype=np.float64)
        if np.any(~np.isfinite(v)) or np.any(v < 0) or np.any(v != np.floor(v)):
            msg = f"{col!r} must hold non-negative integer counts."
            raise ValueError(msg)

    yb = data[sc.binary_outcome].to_numpy(dtype=np.float64)
    if not np.all(np.isin(yb, (0.0, 1.0))):
        msg = f"{sc.binary_outcome!r} must be coded 0/1."
        raise ValueError(msg)

    share = np.asarray(derive_share(data[sc.count_a].to_numpy(), data[sc.count_b].to_numpy()))
    prop = data[sc.proportion].to_numpy(dtype=np.float64)
    bad = prop != share
    if bad.any():
        first = data.index[np.flatnonzero(bad)[0]]
        msg = (
            f"{sc.proportion!r} of record {first!r} is {prop[bad][0]!r}; "
            f"expected {share[bad][0]!r} from the visit counts."
        )
        raise ValueError(msg)
    if np.any((prop < 0.0) | (prop > 1.0)):
        msg = f"{sc.proportion!r} must lie in [0, 1]."
        raise ValueError(msg)
    return data


ANALYTIC_DOMAIN = "_analytic"


def analytic_sample(
    data: pd.DataFrame,
    design: SurveyDesign,
    *,
    schema: RecordSchema | None = None,
    sensitivity: str | None = None,
) -> tuple[pd.DataFrame, SurveyDesign]:
    """Records and design for design-based estimation.

    Returns ``(sample, domain_design)``. ``sample`` holds every record with a
    positive weight plus a boolean ``_analytic`` column; ``domain_design`` is
    ``design`` with that column as its ``subpop``. Records flagged out by
    ``keep_flag`` (or without visits under ``sensitivity="nonzero"``) stay in
    the table, so their strata and clusters still count in the variance and
    the design degrees of freedom. An existing ``design.subpop`` is
    intersected with the analytic domain.

    ``keep_nonzero`` is diagnostic only and is applied solely when
    ``sensitivity="nonzero"`` is requested explicitly.
    """
    sc = schema or RecordSchema()
    if sensitivity is not None and sensitivity != "nonzero":
        msg = "sensitivity must be None or 'nonzero'."
        raise ValueError(msg)
    sample = data.loc[design.weight_mask(data)].copy()
    domain = np.ones(sample.shape[0], dtype=bool)
    if design.subpop is not None:
        if design.subpop not in sample.columns:
            msg = f"Design column(s) not found in data: {[design.subpop]}"
            raise DesignError(msg)
        sub = sample[design.subpop]
        if sub.isna().any():
            msg = f"subpop column {design.subpop!r} contains missing values."
            raise DesignError(msg)
        domain &= sub.astype(bool).to_numpy()
    if sc.keep_flag in sample.columns:
        domain &= sample[sc.keep_flag].fillna(False).astype(bool).to_numpy()
    if sensitivity == "nonzero":
        if sc.nonzero_flag in sample.columns:
            flag = sample[sc.nonzero_flag].fillna(False).astype(bool).to_numpy()
        else:
            flag = (sample[sc.count_a] + sample[sc.count_b]).to_numpy() > 0
        domain &= flag
    n_out = int((~domain).sum())
    if n_out:
        LOGGER.debug("%d record(s) outside the analytic domain keep their clusters", n_out)
    sample[ANALYTIC_DOMAIN] = domain
    return sample, replace(design, subpop=ANALYTIC_DOMAIN)

"""Survey design descriptor.

A :class:`SurveyDesign` names the stratum, cluster (primary sampling unit),
weight and optional domain columns of an analytic table. Resolving it against
a DataFrame yields :class:`DesignArrays`, the aligned numeric view used by the
variance estimator and the solvers.
"""

# svyreg/core/design.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import numpy as np
import pandas as pd

from svyreg.core.variance import design_degrees_of_freedom
from svyreg.errors import DesignError

if TYPE_CHECKING:
    from numpy.typing import NDArray

__all__ = ["DesignArrays", "SurveyDesign"]

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class DesignArrays:
    """Numeric design view aligned with the rows that enter estimation.

    Attributes
    ----------
    index : pd.Index
        Row labels of the records with a positive, finite weight.
    weights : ndarray (n,)
    strata : ndarray (n,)
        Integer stratum codes (sorted order of the original labels).
    psu : ndarray (n,)
        Integer cluster codes, unique across strata (clusters are nested).
    domain : ndarray (n,) of bool
        Domain membership; out-of-domain rows keep their cluster in the design
        but contribute zero to every estimating equation.
    n_excluded : int
        Records dropped because their weight was missing or non-positive.

    """

    index: pd.Index
    weights: NDArray[np.float64]
    strata: NDArray[np.int64]
    psu: NDArray[np.int64]
    domain: NDArray[np.bool_]
    n_excluded: int = 0

    @property
    def n_obs(self) -> int:
        return int(self.weights.shape[0])

    @property
    def n_strata(self) -> int:
        return int(np.unique(self.strata).size)

    @property
    def n_clusters(self) -> int:
        return int(np.unique(self.psu).size)

    @property
    def df(self) -> int:
        """Design degrees of freedom: clusters minus strata."""
        return design_degrees_of_freedom(self.strata, self.psu)

    @classmethod
    def from_arrays(
        cls,
        weights: Any,
        strata: Any | None = None,
        clusters: Any | None = None,
        domain: Any | None = None,
    ) -> DesignArrays:
        """Build a design view from aligned arrays (no DataFrame).

        Missing ``strata`` means a single stratum; missing ``clusters`` makes
        every record its own cluster.
        """
        w = np.asarray(weights, dtype=np.float64).reshape(-1)
        n = w.shape[0]
        if n == 0:
            msg = "Cannot build a survey design from zero records."
            raise DesignError(msg)
        if not np.all(np.isfinite(w)) or np.any(w <= 0.0):
            msg = "weights must be finite and strictly positive."
            raise DesignError(msg)
        if strata is None:
            s = np.zeros(n, dtype=np.int64)
        else:
            s_raw = np.asarray(strata).reshape(-1)
            if s_raw.shape[0] != n or pd.isna(s_raw).any():
                msg = "strata must be complete and aligned with weights."
                raise DesignError(msg)
            s = pd.factorize(s_raw, sort=True)[0].astype(np.int64)
        if clusters is None:
            c = np.arange(n, dtype=np.int64)
        else:
            c_raw = np.asarray(clusters).reshape(-1)
            if c_raw.shape[0] != n or pd.isna(c_raw).any():
                msg = "clusters must be complete and aligned with weights."
                raise DesignError(msg)
            c = pd.MultiIndex.from_arrays([s, c_raw]).factorize(sort=True)[0].astype(np.int64)
        d = np.ones(n, dtype=bool) if domain is None else np.asarray(domain, dtype=bool).reshape(-1)
        return cls(index=pd.RangeIndex(n), weights=w, strata=s, psu=c, domain=d)


@dataclass(frozen=True)
class SurveyDesign:
    """Stratum, cluster and weight column names bound to an analytic table.

    Any of ``stratum``, ``cluster`` and ``weight`` may be ``None``: no stratum
    means a single stratum, no cluster means every record is its own cluster,
    and no weight means unit weights. ``subpop`` names a boolean column that
    defines an estimation domain. ``id_column`` is used to name offending
    records in error messages.
    """

    stratum: str | None = None
    cluster: str | None = None
    weight: str | None = None
    subpop: str | None = None
    id_column: str | None = None

    def columns(self) -> list[str]:
        """Return the data columns the design refers to."""
        cols = [self.stratum, self.cluster, self.weight, self.subpop, self.id_column]
        return [c for c in cols if c is not None]

    def _check_columns(self, data: pd.DataFrame) -> None:
        missing = [c for c in self.columns() if c not in data.columns]
        if missing:
            msg = f"Design column(s) not found in data: {missing}"
            raise DesignError(msg)

    def _record_id(self, data: pd.DataFrame, label: Any) -> Any:
        if self.id_column is not None:
            return data.at[label, self.id_column]
        return label

    def weight_mask(self, data: pd.DataFrame) -> NDArray[np.bool_]:
        """Rows with a finite, strictly positive weight."""
        if self.weight is None:
            return np.ones(data.shape[0], dtype=bool)
        w = pd.to_numeric(data[self.weight], errors="coerce").to_numpy(dtype=np.float64)
        return np.isfinite(w) & (w > 0.0)

    def resolve(self, data: pd.DataFrame) -> DesignArrays:
        """Validate the design against ``data`` and return aligned arrays.

        Records whose weight is missing or non-positive are excluded. Among the
        remaining records a missing stratum or cluster id raises
        :class:`~svyreg.errors.DesignError` naming the first offending record.
        """
        if not isinstance(data, pd.DataFrame):
            raise TypeError("data must be a pandas DataFrame")
        self._check_columns(data)
        if data.shape[0] == 0:
            msg = "Cannot resolve a survey design on an empty record collection."
            raise DesignError(msg)
        if data.index.has_duplicates:
            msg = "data index must be unique to align design arrays."
            raise ValueError(msg)

        keep = self.weight_mask(data)
        n_excluded = int((~keep).sum())
        if n_excluded:
            LOGGER.debug("Excluding %d record(s) with missing or non-positive weight", n_excluded)
        if not keep.any():
            msg = "No record has a positive weight; nothing to estimate."
            raise DesignError(msg)
        df_use = data.loc[keep]
        n = df_use.shape[0]

        if self.weight is None:
            weights = np.ones(n, dtype=np.float64)
        else:
            weights = df_use[self.weight].to_numpy(dtype=np.float64)

        for col, label in ((self.stratum, "stratum"), (self.cluster, "cluster")):
            if col is None:
                continue
            na = df_use[col].isna().to_numpy()
            if na.any():
                first = df_use.index[np.flatnonzero(na)[0]]
                rid = self._record_id(data, first)
                msg = f"Record {rid!r} has a missing {label} id (column {col!r})."
                raise DesignError(msg, record_id=rid)

        if self.stratum is None:
            strata = np.zeros(n, dtype=np.int64)
        else:
            strata = pd.factorize(df_use[self.stratum], sort=True)[0].astype(np.int64)

        if self.cluster is None:
            psu = np.arange(n, dtype=np.int64)
        else:
            # clusters are nested within strata: the (stratum, cluster) pair is the PSU
            keys = pd.MultiIndex.from_arrays(
                [strata, df_use[self.cluster].to_numpy()],
            )
            psu = keys.factorize(sort=True)[0].astype(np.int64)

        if self.subpop is None:
            domain = np.ones(n, dtype=bool)
        else:
            sub = df_use[self.subpop]
            if sub.isna().any():
                msg = f"subpop column {self.subpop!r} contains missing values."
                raise DesignError(msg)
            domain = sub.astype(bool).to_numpy()
            if not domain.any():
                msg = f"subpop column {self.subpop!r} selects no records."
                raise DesignError(msg)

        return DesignArrays(
            index=df_use.index,
            weights=weights,
            strata=strata,
            psu=psu,
            domain=domain,
            n_excluded=n_excluded,
        )

"""Summary tables for fitted models and predictive margins.

Coefficients are reported with design-based standard errors, t statistics on
the design degrees of freedom and confidence intervals. Odds ratios and
incidence-rate ratios are a presentation transform (``exponentiate=True``);
fitted results always stay on the link scale.
"""

from __future__ import annotations

import re
from typing import TYPE_CHECKING, Any, cast

import numpy as np
import pandas as pd
from tabulate import tabulate

from svyreg.core.inference import confidence_interval, normalize_ci_level, two_sided_pvalue
from svyreg.utils.helpers import (
    collect_info as _collect_info,
)
from svyreg.utils.helpers import (
    collect_param_index as _collect_param_index,
)
from svyreg.utils.helpers import (
    escape_latex as _escape_latex,
)
from svyreg.utils.helpers import (
    filter_and_order_params as _filter_and_order_params,
)
from svyreg.utils.helpers import (
    format_value as _format_value,
)
from svyreg.utils.helpers import (
    hline_placeholder as _hline_placeholder,
)
from svyreg.utils.helpers import (
    pretty_term as _pretty_term,
)

if TYPE_CHECKING:
    from collections.abc import Sequence

    from svyreg.estimators.base import FittedModel
    from svyreg.estimators.margins import MarginResult

__all__ = ["coef_table", "margins_table", "modelsummary"]

_FOOTER = (
    ("n_obs", "N"),
    ("weighted_n", "Weighted N"),
    ("n_strata", "Strata"),
    ("n_clusters", "Clusters"),
    ("df", "Design df"),
    ("loglik", "Log pseudo-likelihood"),
    ("Family", "Family"),
    ("converged", "Converged"),
)


def coef_table(
    model: FittedModel,
    exponentiate: bool = False,
    *,
    ci_level: float | None = None,
    include_aux: bool = True,
) -> pd.DataFrame:
    """Coefficient table with estimate, se, t, p-value and confidence interval.

    With ``exponentiate=True`` estimates and interval bounds are
    exponentiated (odds ratios for ``binomial``, IRRs for ``negbin``) and the
    standard error follows the delta method, ``exp(b) * se``. Ancillary
    parameters are appended on their own scale when ``include_aux``.
    """
    level = normalize_ci_level(
        ci_level if ci_level is not None else model.model_info.get("ci_level"),
    )
    est = model.params.to_numpy(dtype=np.float64)
    se = model.se.to_numpy(dtype=np.float64)
    names = list(model.params.index)
    if include_aux and not model.aux.empty:
        est = np.append(est, model.aux.to_numpy(dtype=np.float64))
        se = np.append(se, model.aux_se.to_numpy(dtype=np.float64))
        names += list(model.aux.index)
    with np.errstate(divide="ignore", invalid="ignore"):
        tstat = est / se
    pval = two_sided_pvalue(tstat, model.df)
    lo, hi = confidence_interval(est, se, ci_level=level, df=model.df)
    if exponentiate:
        k = len(model.params)
        est = est.copy()
        se = se.copy()
        lo = lo.copy()
        hi = hi.copy()
        est[:k], se[:k] = np.exp(est[:k]), np.exp(est[:k]) * se[:k]
        lo[:k], hi[:k] = np.exp(lo[:k]), np.exp(hi[:k])
    return pd.DataFrame(
        {"estimate": est, "se": se, "t": tstat, "p_value": pval, "ci_low": lo, "ci_high": hi},
        index=pd.Index(names, name="term"),
    )


def _footer_value(model: FittedModel, key: str) -> Any:
    if key in {"n_obs", "df", "loglik", "converged"}:
        return getattr(model, key)
    return model.model_info.get(key)


def modelsummary(  # noqa: PLR0913
    models: Sequence[FittedModel],
    model_names: Sequence[str] | None = None,
    *,
    params: Sequence[str] | None = None,
    include: Sequence[str] | None = None,
    exclude: Sequence[str] | None = None,
    sort: str = "none",
    exponentiate: bool = False,
    skip_missing: bool = False,
    coef_format: str = ".4f",
    se_format: str = ".4f",
    footer_keys: Sequence[str] | None = None,
    pretty: bool = True,
    output: str = "text",
    latex_booktabs: bool = True,
) -> str:
    """Side-by-side table of several fitted models.

    Each coefficient takes two rows: the estimate and its standard error in
    parentheses. The footer reports sample sizes and design counts; extra
    ``model_info`` keys may be appended through ``footer_keys``.
    """
    models = list(models)
    if not models:
        msg = "modelsummary needs at least one model."
        raise ValueError(msg)
    if model_names is None:
        model_names = [f"({i + 1})" for i in range(len(models))]
    if len(model_names) != len(models):
        msg = "model_names must have one entry per model."
        raise ValueError(msg)
    if output not in {"text", "latex"}:
        msg = "output must be one of {'text','latex'}."
        raise ValueError(msg)

    pool = _collect_param_index(models, skip_missing=skip_missing)
    terms = _filter_and_order_params(pool, params=params, include=include, exclude=exclude, sort=sort)
    tables = [coef_table(m, exponentiate=exponentiate, include_aux=False) for m in models]

    body: list[list[str]] = []
    for term in terms:
        label = _pretty_term(term) if pretty else str(term)
        est_row = [label]
        se_row = [""]
        for tab in tables:
            if term in tab.index:
                est_row.append(format(float(tab.at[term, "estimate"]), coef_format))
                se_row.append("(" + format(float(tab.at[term, "se"]), se_format) + ")")
            else:
                est_row.append("")
                se_row.append("")
        body.extend([est_row, se_row])

    footer: list[list[str]] = []
    for key, label in _FOOTER:
        footer.append([label, *[_format_value(_footer_value(m, key)) for m in models]])
    for key in footer_keys or ():
        footer.append(_collect_info(models, key))

    if output == "latex":
        n_cols = len(models) + 1
        rows = [
            [_escape_latex(c) for c in r] for r in body
        ] + [_hline_placeholder(n_cols)] + [[_escape_latex(c) for c in r] for r in footer]
        headers = ["", *[_escape_latex(n) for n in model_names]]
        # cells are escaped above; the raw format keeps tabulate from escaping twice
        table = cast("str", tabulate(rows, headers=headers, stralign="center", tablefmt="latex_raw"))
        table = re.sub(r"^\s*MSMIDRULE.*$", "MSMIDRULE", table, flags=re.MULTILINE)
        if latex_booktabs:
            rules = iter(("\\toprule", "\\midrule", "\\bottomrule"))
            table = "\n".join(
                next(rules, ln) if ln.strip() == "\\hline" else ln for ln in table.splitlines()
            )
        return table.replace("MSMIDRULE", "\\midrule" if latex_booktabs else "\\hline")
    sep = ["" for _ in range(len(models) + 1)]
    return cast(
        "str",
        tabulate([*body, sep, *footer], headers=["", *model_names], stralign="center"),
    )


def margins_table(result: MarginResult, *, fmt: str = ".4f", tablefmt: str = "simple") -> str:
    """Render predictive margins with their standard errors and intervals."""
    pct = round(100.0 * result.ci_level, 6)
    headers = ["cell", "margin", "se", f"{pct:g}% CI low", f"{pct:g}% CI high"]
    rows = [
        [
            str(label),
            format(float(r["estimate"]), fmt),
            format(float(r["se"]), fmt),
            format(float(r["ci_low"]), fmt),
            format(float(r["ci_high"]), fmt),
        ]
        for label, r in result.table.iterrows()
    ]
    table = cast("str", tabulate(rows, headers=headers, tablefmt=tablefmt, stralign="left"))
    note = f"{result.family} margins ({result.predict}); t with {result.df} design df"
    return f"{table}\n{note}"

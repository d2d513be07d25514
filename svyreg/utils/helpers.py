"""Shared helper utilities for summary tables.

Parameter collection and selection across fitted models, value formatting and
LaTeX escaping used by :mod:`svyreg.output.summary`.
"""
from __future__ import annotations

import re
from typing import TYPE_CHECKING, Any

import numpy as np

if TYPE_CHECKING:  # pragma: no cover - import only for type checking
    from collections.abc import Sequence

    from svyreg.estimators.base import FittedModel

__all__ = [
    "collect_info",
    "collect_param_index",
    "escape_latex",
    "filter_and_order_params",
    "format_value",
    "hline_placeholder",
    "pretty_term",
]


_LATEX_REPLACEMENTS = {
    "\\": r"\textbackslash{}",
    "&": r"\&",
    "%": r"\%",
    "$": r"\$",
    "#": r"\#",
    "_": r"\_",
    "{": r"\{",
    "}": r"\}",
    "~": r"\textasciitilde{}",
    "^": r"\textasciicircum{}",
}
# single pass, so replacement text is never escaped again
_LATEX_SPECIAL = re.compile("|".join(re.escape(c) for c in _LATEX_REPLACEMENTS))


def collect_param_index(models: Sequence[FittedModel], *, skip_missing: bool = False) -> list[Any]:
    """Return parameter names in order of first appearance across models.

    When ``skip_missing`` is True only names present in every model are kept.
    """
    total = len(models)
    counts: dict[Any, int] = {}
    ordered: list[Any] = []
    for res in models:
        for name in list(res.params.index):
            counts[name] = counts.get(name, 0) + 1
            if name not in ordered:
                ordered.append(name)
    if skip_missing and total:
        ordered = [name for name in ordered if counts.get(name, 0) == total]
    return ordered


def _pattern_matches(label: Any, pattern: str) -> bool:
    text = str(label)
    try:
        return bool(re.search(pattern, text))
    except re.error:
        return text == pattern


def filter_and_order_params(
    raw_pool: Sequence[Any],
    *,
    params: Sequence[Any] | None = None,
    include: Sequence[str] | None = None,
    exclude: Sequence[str] | None = None,
    sort: str = "none",
) -> list[Any]:
    """Select and order parameter names for a summary table.

    ``params`` fixes an explicit order (missing names raise ``ValueError``);
    ``include``/``exclude`` take regular expressions, falling back to literal
    comparison for patterns that do not compile. ``sort`` is ``"none"`` (model
    order, intercept first) or ``"alpha"``.
    """
    available = list(dict.fromkeys(raw_pool))
    if params is not None:
        missing = [p for p in params if p not in available]
        if missing:
            joined = ", ".join(str(m) for m in missing)
            msg = f"Requested parameter(s) not found: {joined}"
            raise ValueError(msg)
        selected = list(dict.fromkeys(params))
    else:
        selected = available
    if include:
        selected = [n for n in selected if any(_pattern_matches(n, p) for p in include)]
        if not selected:
            msg = "include patterns filtered out all parameters."
            raise ValueError(msg)
    if exclude:
        selected = [n for n in selected if not any(_pattern_matches(n, p) for p in exclude)]
    if sort == "alpha":
        selected = sorted(selected, key=lambda x: str(x).lower())
    elif sort != "none":
        msg = "sort must be one of {'alpha','none'}"
        raise ValueError(msg)
    return selected


def escape_latex(obj: Any) -> str:
    """Minimal LaTeX escaping (consistent with tabulate's expectations)."""
    return _LATEX_SPECIAL.sub(lambda m: _LATEX_REPLACEMENTS[m.group(0)], str(obj))


def pretty_term(name: Any) -> str:
    """Readable label for a treatment-coded column.

    ``poverty[T.Poor]:year[T.2020]`` becomes ``poverty=Poor x year=2020``.
    """
    text = str(name)
    text = re.sub(r"\[T\.([^\]]*)\]", r"=\1", text)
    return text.replace(":", " x ")


def format_value(val: Any, fmt: str = ".6g") -> str:
    if val is None:
        return ""
    if isinstance(val, (bool, np.bool_)):
        return str(bool(val))
    if isinstance(val, (float, np.floating)):
        return "" if not np.isfinite(val) else format(float(val), fmt)
    return str(val)


def collect_info(models: Sequence[FittedModel], key: str, label: str | None = None) -> list[str]:
    """Collect ``model_info[key]`` across models as a table row."""
    row: list[str] = [label or key]
    for res in models:
        info = res.model_info or {}
        row.append(format_value(info.get(key)))
    return row


def hline_placeholder(n_cols: int) -> list[str]:
    """Placeholder row that LaTeX post-processing replaces with ``\\midrule``."""
    return ["MSMIDRULE"] * n_cols

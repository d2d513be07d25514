"""Linear algebra routines for survey-weighted estimation.

Dense solvers (pivoted QR, Cholesky with pseudo-inverse fallback), weighted
cross products and sorted group sums. Explicit matrix inversion is confined
to :func:`inv_sym`, which the sandwich estimator needs for the bread.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import numpy as np
import scipy.linalg as sla

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray

__all__ = [
    "drop_collinear_columns",
    "gram",
    "group_sum",
    "inv_sym",
    "is_nsd",
    "pinv",
    "qr",
    "rank_from_diag",
    "solve",
    "solve_sym",
    "symmetrize",
    "to_dense",
    "xty",
]

Matrix = Any

# Stata (Mata qrsolve) cutoff: eta = 1e-13 * trace(|R|) / rows(R)
_STATA_ETA_SCALE = 1e-13
# R lm.fit cutoff: tol = 1e-7 * max|diag(R)|
_R_TOL_SCALE = 1e-7


def _check_array_finiteness(arr: NDArray[np.float64]) -> None:
    """Helper to validate array finiteness with clear error message."""
    if not np.all(np.isfinite(arr)):
        raise ValueError(
            "Input contains NA/NaN/Inf; please drop/clean rows before estimation.",
        )


def _assert_all_finite(*arrays: Matrix) -> None:
    """Raise ValueError if any input contains NaN or Inf."""
    for a in arrays:
        if a is None:
            continue
        _check_array_finiteness(np.asarray(a, dtype=np.float64))


def to_dense(A: Matrix) -> NDArray[np.float64]:
    """Convert a matrix-like object (ndarray, DataFrame, Series) to float64."""
    if hasattr(A, "to_numpy"):
        return np.asarray(A.to_numpy(), dtype=np.float64)
    return np.asarray(A, dtype=np.float64)


def symmetrize(A: Matrix) -> NDArray[np.float64]:
    Ad = to_dense(A)
    return 0.5 * (Ad + Ad.T)


def qr(A: Matrix, *, pivoting: bool = False, mode: str = "economic"):
    """Economic QR decomposition via SciPy (optionally column-pivoted)."""
    Ad = to_dense(A)
    rcols = min(Ad.shape[0], Ad.shape[1])
    if pivoting:
        Q, R, P = sla.qr(Ad, mode=mode, pivoting=True)
        return Q[:, :rcols], R[:rcols, :], P
    Q, R = sla.qr(Ad, mode=mode, pivoting=False)
    return Q[:, :rcols], R[:rcols, :]


def rank_from_diag(
    diagR: NDArray[np.float64], ncols: int, *, mode: str = "stata",
) -> int:
    """Numerical rank from |diag(R)| of a pivoted QR under Stata or R tolerance."""
    d = np.abs(np.asarray(diagR, dtype=float).reshape(-1))
    if d.size == 0:
        return 0
    mode_lower = str(mode).lower()
    if mode_lower == "stata":
        tol = _STATA_ETA_SCALE * float(np.sum(d)) / float(d.size)
    elif mode_lower == "r":
        tol = _R_TOL_SCALE * float(np.max(d))
    else:
        tol = np.finfo(float).eps * max(1, int(ncols)) * float(np.max(d))
    return int(np.sum(d > tol))


def drop_collinear_columns(
    X: Matrix, *, rank_policy: str = "stata",
) -> NDArray[np.bool_]:
    """Return a keep mask over the columns of ``X`` after a pivoted-QR screen.

    When ``X`` is rank deficient, columns are admitted left to right while
    they raise the rank, so of two collinear columns the later one is
    dropped. All-zero columns (empty cells of a treatment-coded design) never
    raise the rank.
    """
    Xd = to_dense(X)
    p = Xd.shape[1]
    keep = np.zeros(p, dtype=bool)
    if p == 0:
        return keep
    _Q, R, _piv = qr(Xd, pivoting=True)
    r = rank_from_diag(np.diag(R), p, mode=rank_policy)
    if r == p:
        keep[:] = True
        return keep
    for j in range(p):
        cand = keep.copy()
        cand[j] = True
        k = int(cand.sum())
        _Qc, Rc, _pc = qr(Xd[:, cand], pivoting=True)
        if rank_from_diag(np.diag(Rc), k, mode=rank_policy) == k:
            keep = cand
        if int(keep.sum()) == r:
            break
    return keep


def solve(A: Matrix, B: Matrix, *, rank_policy: str = "stata") -> NDArray[np.float64]:
    """Least-squares solve of ``A x = B`` via pivoted QR.

    Columns outside the numerical rank receive 0 (Stata) or NaN (R).
    """
    Ad = to_dense(A)
    Bd = to_dense(B)
    Bd = Bd.reshape(-1, 1) if Bd.ndim == 1 else Bd
    _assert_all_finite(Ad, Bd)
    Q, R, P = sla.qr(Ad, mode="economic", pivoting=True)
    r = rank_from_diag(np.diag(R), Ad.shape[1], mode=rank_policy)
    fill = np.nan if str(rank_policy).lower() == "r" else 0.0
    out = np.full((Ad.shape[1], Bd.shape[1]), fill, dtype=np.float64)
    if r > 0:
        QtB = Q.T @ Bd
        out[P[:r], :] = sla.solve_triangular(R[:r, :r], QtB[:r, :])
    return out


def solve_sym(A: Matrix, b: Matrix) -> NDArray[np.float64]:
    """Solve a symmetric positive-definite system, falling back to pinv."""
    Ad = symmetrize(A)
    bd = to_dense(b)
    try:
        c, low = sla.cho_factor(Ad, lower=True, check_finite=True)
        return np.asarray(sla.cho_solve((c, low), bd), dtype=np.float64)
    except (np.linalg.LinAlgError, ValueError):
        return pinv(Ad) @ bd


def pinv(A: Matrix, *, rcond: float | None = None) -> NDArray[np.float64]:
    """Moore-Penrose pseudo-inverse with an explicit SVD cutoff."""
    Ad = to_dense(A)
    U, s, Vt = np.linalg.svd(Ad, full_matrices=False)
    if rcond is None:
        rcond = np.sqrt(np.finfo(float).eps)
    tol = float(rcond) * (s.max() if s.size else 0.0)
    s_inv = np.where(s > tol, 1.0 / np.where(s > tol, s, 1.0), 0.0)
    return (Vt.T * s_inv) @ U.T


def inv_sym(A: Matrix) -> NDArray[np.float64]:
    """Inverse of a symmetric matrix (Cholesky when PD, pinv otherwise)."""
    Ad = symmetrize(A)
    n = Ad.shape[0]
    return symmetrize(solve_sym(Ad, np.eye(n, dtype=np.float64)))


def is_nsd(A: Matrix, *, tol: float | None = None) -> bool:
    """True when a symmetric matrix is strictly negative definite."""
    Ad = symmetrize(A)
    if Ad.size == 0:
        return False
    vals = np.linalg.eigvalsh(Ad)
    if tol is None:
        tol = np.finfo(float).eps * max(Ad.shape) * float(np.max(np.abs(vals)))
    return bool(np.max(vals) < -tol)


def _validate_weights(
    weights: Sequence[float],
    n: int,
    *,
    allow_zero: bool = True,
) -> NDArray[np.float64]:
    """Validate nonnegative weights and return a dense float64 array of shape (n,)."""
    w = np.asarray(weights, dtype=np.float64).reshape(-1)
    if w.shape[0] != n:
        msg = "weights length must match n."
        raise ValueError(msg)
    if np.any(~np.isfinite(w)):
        msg = "weights must be finite."
        raise ValueError(msg)
    if np.any(w < 0):
        msg = "weights must be nonnegative."
        raise ValueError(msg)
    if not allow_zero and np.any(w == 0):
        msg = "Zero weights not allowed (allow_zero=False)."
        raise ValueError(msg)
    wsum = float(np.sum(w))
    if not np.isfinite(wsum) or wsum <= 0.0:
        raise ValueError("weights must sum to a positive finite value")
    return w


def gram(X: Matrix, weights: Sequence[float] | None) -> NDArray[np.float64]:
    """Compute X' W X with W = diag(w); W = I when ``weights`` is None."""
    Xd = to_dense(X)
    _assert_all_finite(Xd)
    if weights is None:
        return Xd.T @ Xd
    w = np.asarray(weights, dtype=np.float64).reshape(-1, 1)
    _assert_all_finite(w)
    return symmetrize(Xd.T @ (Xd * w))


def xty(X: Matrix, y: Matrix, weights: Sequence[float] | None) -> NDArray[np.float64]:
    """Compute X' W y with W = diag(w); W = I when ``weights`` is None."""
    Xd = to_dense(X)
    yd = to_dense(y).reshape(-1)
    _assert_all_finite(Xd, yd)
    if weights is None:
        return Xd.T @ yd
    w = np.asarray(weights, dtype=np.float64).reshape(-1)
    return Xd.T @ (yd * w)


def group_sum(
    X: Matrix, codes: Matrix,
) -> tuple[NDArray[np.float64], NDArray[Any]]:
    """Sum rows of X within groups, ordered by the sorted unique labels.

    ``codes`` may be 1-D (one label per row) or 2-D (a label tuple per row).
    Returns ``(sums, labels)``; rows are accumulated in input order within each
    group, so results are reproducible bit for bit.
    """
    Xd = to_dense(X)
    if Xd.ndim == 1:
        Xd = Xd.reshape(-1, 1)
    C = np.asarray(codes)
    if C.shape[0] != Xd.shape[0]:
        msg = "codes length must match number of rows in X"
        raise ValueError(msg)
    if C.ndim == 1:
        uniq, inv = np.unique(C, return_inverse=True)
    else:
        uniq, inv = np.unique(C, axis=0, return_inverse=True)
    inv = np.asarray(inv).reshape(-1)
    out = np.zeros((uniq.shape[0], Xd.shape[1]), dtype=np.float64)
    np.add.at(out, inv, Xd)
    return out, uniq

"""
Orthogonal scores and their solutions.

Partially linear model (PLR)
    Y = theta * D + g(X) + U,   D = m(X) + V
    theta_hat = sum(ry * rd) / sum(rd^2),  ry = Y - l_hat(X), rd = D - m_hat(X)
    i.e. the no-intercept OLS slope of the outcome residual on the treatment
    residual, with a heteroskedasticity-robust sandwich standard error.

Interactive model (IRM, ATE)
    psi_i = mu1(X_i) - mu0(X_i) + D_i (Y_i - mu1(X_i)) / p(X_i)
            - (1 - D_i) (Y_i - mu0(X_i)) / (1 - p(X_i))
    theta_hat = mean(psi),  se = sd(psi) / sqrt(n_eff)
    Records whose propensity falls outside the trimming band are excluded.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np

from dmlkit.exceptions import DegenerateMomentError
from dmlkit.inference.nuisance import NuisancePredictions

_TINY = 1e-12


@dataclass(frozen=True)
class MomentEstimate:
    """Point estimate and standard error of one method on one split."""
    estimate: float
    se: float
    n_used: int
    n_trimmed: int = 0


def plinear_moment(
    y: np.ndarray,
    d: np.ndarray,
    y_hat: np.ndarray,
    d_hat: np.ndarray,
    hc_type: str = "HC3",
) -> MomentEstimate:
    """
    Solve the partialling-out score.

    Parameters
    ----------
    y, d : np.ndarray
        Outcome and treatment.
    y_hat, d_hat : np.ndarray
        Out-of-fold predictions of E[Y|X] and E[D|X].
    hc_type : {"HC0", "HC3"}, default "HC3"
        HC3 rescales each squared residual by ``(1 - h_i)^-2`` with leverage
        ``h_i = rd_i^2 / sum(rd^2)``.

    Raises
    ------
    DegenerateMomentError
        If the treatment residual has (numerically) zero variance.
    """
    ry = np.asarray(y, dtype=float) - np.asarray(y_hat, dtype=float)
    rd = np.asarray(d, dtype=float) - np.asarray(d_hat, dtype=float)
    sum_rd_sq = float(np.sum(rd ** 2))
    if sum_rd_sq < _TINY:
        raise DegenerateMomentError("treatment residual has zero variance")

    theta = float(np.sum(ry * rd) / sum_rd_sq)
    eps = ry - theta * rd
    meat = rd ** 2 * eps ** 2
    if hc_type == "HC3":
        leverage = rd ** 2 / sum_rd_sq
        if np.any(leverage > 1.0 - _TINY):
            raise DegenerateMomentError("a single record carries all treatment variation")
        meat = meat / (1.0 - leverage) ** 2
    elif hc_type != "HC0":
        raise ValueError(f"hc_type must be 'HC0' or 'HC3', got '{hc_type}'.")
    se = float(np.sqrt(np.sum(meat)) / sum_rd_sq)
    return MomentEstimate(estimate=theta, se=se, n_used=int(ry.shape[0]))


def trim_mask(p: np.ndarray, trim: Optional[Tuple[float, float]]) -> np.ndarray:
    """Boolean mask of records whose propensity lies inside ``[lo, hi]``."""
    p = np.asarray(p, dtype=float)
    if trim is None:
        return np.ones(p.shape[0], dtype=bool)
    lo, hi = trim
    return (p >= lo) & (p <= hi)


def aipw_score(y: np.ndarray, d: np.ndarray, mu0: np.ndarray, mu1: np.ndarray, p: np.ndarray) -> np.ndarray:
    """Augmented inverse-propensity-weighted influence values."""
    return mu1 - mu0 + d * (y - mu1) / p - (1.0 - d) * (y - mu0) / (1.0 - p)


def interactive_moment(
    y: np.ndarray,
    d: np.ndarray,
    mu0: np.ndarray,
    mu1: np.ndarray,
    p: np.ndarray,
    trim: Optional[Tuple[float, float]] = None,
) -> MomentEstimate:
    """
    Solve the AIPW score for the average treatment effect.

    Records with ``p`` outside `trim` are dropped, not clipped; the number
    dropped is returned in ``n_trimmed``.

    Raises
    ------
    DegenerateMomentError
        If fewer than two records survive trimming, or a surviving
        propensity is exactly 0 or 1.
    """
    y, d, mu0, mu1, p = (np.asarray(a, dtype=float) for a in (y, d, mu0, mu1, p))
    keep = trim_mask(p, trim)
    n_trimmed = int(np.sum(~keep))
    n_eff = int(np.sum(keep))
    if n_eff < 2:
        raise DegenerateMomentError(f"only {n_eff} records left after trimming ({n_trimmed} excluded)")
    pk = p[keep]
    if np.any(pk <= 0.0) or np.any(pk >= 1.0):
        raise DegenerateMomentError("propensity of 0 or 1 among retained records; set a trimming band")

    psi = aipw_score(y[keep], d[keep], mu0[keep], mu1[keep], pk)
    return MomentEstimate(
        estimate=float(np.mean(psi)),
        se=float(np.std(psi, ddof=1) / np.sqrt(n_eff)),
        n_used=n_eff,
        n_trimmed=n_trimmed,
    )


def compute_moment(
    table: NuisancePredictions,
    y: np.ndarray,
    d: np.ndarray,
    trim: Optional[Tuple[float, float]] = None,
    hc_type: str = "HC3",
) -> MomentEstimate:
    """
    Estimate the target parameter from one method's nuisance table.

    The Ensemble table is handled like any other method.
    """
    if not table.ok:
        raise DegenerateMomentError("nuisance predictions are incomplete", method=table.method)
    try:
        if table.model == "plinear":
            return plinear_moment(y, d, table["y_hat"], table["d_hat"], hc_type=hc_type)
        return interactive_moment(y, d, table["mu0"], table["mu1"], table["p"], trim=trim)
    except DegenerateMomentError as exc:
        raise DegenerateMomentError(exc.reason, method=table.method) from exc

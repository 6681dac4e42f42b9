"""
Aggregation of repeated-split estimates.

Each split gives one (estimate, se) pair per method. Across the splits

    mean rule:    theta = mean(theta_i)
                  se    = sqrt( mean(se_i^2 + (theta_i - theta)^2) )
    median rule:  theta = median(theta_i)
                  se    = median( sqrt(se_i^2 + (theta_i - theta)^2) )

so the reported uncertainty covers both sampling error and the variation
induced by the random splits. Missing cells (failed method/split pairs) are
skipped per method. All reductions are symmetric in the order of the splits.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Dict, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

ROW_LABELS = ["Mean ATE", "se", "Median ATE", "se"]
BEST = "best"


@dataclass
class Aggregate:
    """
    Attributes
    ----------
    table : pd.DataFrame
        Rows ``Mean ATE, se, Median ATE, se``; columns methods + ``best``.
    best : dict
        ``{"mean": method, "median": method}`` selected for the best column.
    n_splits : pd.Series
        Number of splits with a usable estimate, per method.
    """
    table: pd.DataFrame
    best: Dict[str, Optional[str]]
    n_splits: pd.Series


def mean_rule(estimates: np.ndarray, std_errors: np.ndarray) -> Tuple[float, float]:
    """Mean estimate and its split-adjusted standard error."""
    est = np.asarray(estimates, dtype=float)
    se = np.asarray(std_errors, dtype=float)
    if est.size == 0:
        return np.nan, np.nan
    # fsum is exactly rounded, hence independent of the summation order
    center = math.fsum(est) / est.size
    spread = math.fsum(se ** 2 + (est - center) ** 2) / est.size
    return center, math.sqrt(spread)


def median_rule(estimates: np.ndarray, std_errors: np.ndarray) -> Tuple[float, float]:
    """Median estimate and the median of the split-adjusted standard errors."""
    est = np.asarray(estimates, dtype=float)
    se = np.asarray(std_errors, dtype=float)
    if est.size == 0:
        return np.nan, np.nan
    center = float(np.median(est))
    return center, float(np.median(np.sqrt(se ** 2 + (est - center) ** 2)))


def _pick_best(values: pd.Series) -> Optional[str]:
    finite = values[np.isfinite(values.to_numpy(dtype=float))]
    if finite.empty:
        return None
    return str(finite.idxmin())


def aggregate(estimates: pd.DataFrame, std_errors: pd.DataFrame, methods: Sequence[str]) -> Aggregate:
    """
    Reduce per-split estimates to the output table.

    Parameters
    ----------
    estimates, std_errors : pd.DataFrame
        One row per split, one column per method; NaN marks a missing cell.
    methods : sequence of str
        Output columns, in order.

    Returns
    -------
    Aggregate
    """
    methods = list(methods)
    table = pd.DataFrame(np.nan, index=ROW_LABELS, columns=methods + [BEST])
    n_splits = pd.Series(0, index=methods, dtype=int)
    for method in methods:
        est = estimates[method].to_numpy(dtype=float)
        se = std_errors[method].to_numpy(dtype=float)
        usable = np.isfinite(est) & np.isfinite(se)
        n_splits[method] = int(usable.sum())
        table.iloc[0:2, table.columns.get_loc(method)] = list(mean_rule(est[usable], se[usable]))
        table.iloc[2:4, table.columns.get_loc(method)] = list(median_rule(est[usable], se[usable]))

    best: Dict[str, Optional[str]] = {}
    best_col = table.columns.get_loc(BEST)
    for rule, (est_row, se_row) in {"mean": (0, 1), "median": (2, 3)}.items():
        chosen = _pick_best(table.iloc[se_row][methods])
        best[rule] = chosen
        if chosen is not None:
            col = table.columns.get_loc(chosen)
            table.iloc[est_row, best_col] = table.iloc[est_row, col]
            table.iloc[se_row, best_col] = table.iloc[se_row, col]
    return Aggregate(table=table, best=best, n_splits=n_splits)

"""
Cross-fitted nuisance estimation.

For every fold the nuisance models are trained on the complement folds and
predict the held-out fold only, so no record's prediction comes from a model
that saw that record.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import numpy as np
import pandas as pd
from joblib import Parallel, delayed
from sklearn.metrics import log_loss

from dmlkit.exceptions import LearnerFitError, LeakageError
from dmlkit.inference.folds import FoldAssignment
from dmlkit.inference.learners import NuisanceLearner

NUISANCES: Dict[str, Tuple[str, ...]] = {
    "plinear": ("y_hat", "d_hat"),
    "interactive": ("mu0", "mu1", "p"),
}


@dataclass
class NuisancePredictions:
    """
    Out-of-fold nuisance predictions of one method for one split.

    Attributes
    ----------
    method : str
    model : {"plinear", "interactive"}
    predictions : dict of str -> np.ndarray
        ``y_hat``/``d_hat`` for plinear, ``mu0``/``mu1``/``p`` for
        interactive, aligned to record order. NaN where a fold failed.
    risks : dict of str -> float
        Out-of-fold risk per nuisance: MSE for regressions, log-loss for ``p``.
    errors : list of LearnerFitError
        Failures attributed to (method, fold).
    """
    method: str
    model: str
    predictions: Dict[str, np.ndarray]
    risks: Dict[str, float] = field(default_factory=dict)
    errors: List[LearnerFitError] = field(default_factory=list)

    @property
    def failed_folds(self) -> List[int]:
        return sorted({e.fold for e in self.errors if e.fold is not None})

    @property
    def ok(self) -> bool:
        return not self.errors and all(np.all(np.isfinite(v)) for v in self.predictions.values())

    def __getitem__(self, key: str) -> np.ndarray:
        return self.predictions[key]


def oof_risks(model: str, y: np.ndarray, d: np.ndarray, predictions: Dict[str, np.ndarray]) -> Dict[str, float]:
    """Held-out risk of each nuisance stream."""
    if model == "plinear":
        return {
            "y_hat": float(np.mean((y - predictions["y_hat"]) ** 2)),
            "d_hat": float(np.mean((d - predictions["d_hat"]) ** 2)),
        }
    treated = d == 1
    return {
        "mu0": float(np.mean((y[~treated] - predictions["mu0"][~treated]) ** 2)),
        "mu1": float(np.mean((y[treated] - predictions["mu1"][treated]) ** 2)),
        "p": float(log_loss(d, np.clip(predictions["p"], 1e-12, 1 - 1e-12), labels=[0, 1])),
    }


def _check_partition(folds: FoldAssignment, n: int) -> None:
    if folds.n_records != n:
        raise LeakageError(f"fold assignment covers {folds.n_records} records, data has {n}")
    covered = np.concatenate([folds.test_index(f) for f in range(1, folds.n_folds + 1)])
    if covered.size != n or np.unique(covered).size != n:
        raise LeakageError("held-out folds do not partition the records")


def _fit_fold(
    learner: NuisanceLearner,
    model: str,
    X: pd.DataFrame,
    y: np.ndarray,
    d: np.ndarray,
    fold: int,
    train_idx: np.ndarray,
    test_idx: np.ndarray,
) -> Dict[str, np.ndarray]:
    if np.intersect1d(train_idx, test_idx).size:
        raise LeakageError(f"{learner.name}: training rows of fold {fold} include held-out rows")
    X_te = X.iloc[test_idx]

    def fit_predict(rows: np.ndarray, target: np.ndarray, task: str) -> np.ndarray:
        fitted = learner.fit(X.iloc[rows], target[rows], task, fold=fold)
        return learner.predict(fitted, X_te, task, fold=fold)

    if model == "plinear":
        return {
            "y_hat": fit_predict(train_idx, y, "regression"),
            "d_hat": fit_predict(train_idx, d, "regression"),
        }
    # outcome models are trained on the respective treatment arm of the training folds
    return {
        "mu0": fit_predict(train_idx[d[train_idx] == 0], y, "regression"),
        "mu1": fit_predict(train_idx[d[train_idx] == 1], y, "regression"),
        "p": fit_predict(train_idx, d, "classification"),
    }


def _fit_fold_or_error(*args) -> Dict[str, np.ndarray] | LearnerFitError:
    try:
        return _fit_fold(*args)
    except LearnerFitError as exc:
        return exc


def estimate_nuisances(
    X: pd.DataFrame,
    y: np.ndarray,
    d: np.ndarray,
    folds: FoldAssignment,
    learner: NuisanceLearner,
    model: str = "plinear",
    fold_jobs: int = 1,
    strict: bool = False,
) -> NuisancePredictions:
    """
    Cross-fit one learner's nuisance models over a fold assignment.

    Parameters
    ----------
    X : pd.DataFrame
        Design matrix for the learner's formula, one row per record.
    y, d : np.ndarray
        Outcome and treatment.
    folds : FoldAssignment
    learner : NuisanceLearner
    model : {"plinear", "interactive"}
    fold_jobs : int, default 1
        Threads used to fit folds concurrently.
    strict : bool, default False
        Re-raise the first LearnerFitError instead of recording it.

    Returns
    -------
    NuisancePredictions

    Raises
    ------
    LeakageError
        If a fold's training rows intersect its held-out rows.
    """
    if model not in NUISANCES:
        raise ValueError(f"model must be one of {tuple(NUISANCES)}, got '{model}'.")
    y = np.asarray(y, dtype=float)
    d = np.asarray(d, dtype=float)
    n = y.shape[0]
    _check_partition(folds, n)

    outputs = Parallel(n_jobs=fold_jobs, backend="threading")(
        delayed(_fit_fold_or_error)(learner, model, X, y, d, fold, train_idx, test_idx)
        for fold, train_idx, test_idx in folds
    )

    predictions = {key: np.full(n, np.nan) for key in NUISANCES[model]}
    errors: List[LearnerFitError] = []
    for fold, out in zip(range(1, folds.n_folds + 1), outputs):
        if isinstance(out, LearnerFitError):
            if strict:
                raise out
            errors.append(out)
            continue
        test_idx = folds.test_index(fold)
        for key, values in out.items():
            predictions[key][test_idx] = values

    table = NuisancePredictions(method=learner.name, model=model, predictions=predictions, errors=errors)
    if table.ok:
        table.risks = oof_risks(model, y, d, predictions)
    return table

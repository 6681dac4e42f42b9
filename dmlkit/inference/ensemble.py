"""
Ensemble of nuisance predictions.

The Ensemble combines the out-of-fold nuisance predictions of several
learners record by record, before any moment is solved, so the moment model
treats it as one more method.
"""

from __future__ import annotations

from typing import Dict, Mapping, Sequence

import numpy as np

from dmlkit.exceptions import DegenerateMomentError
from dmlkit.inference.nuisance import NUISANCES, NuisancePredictions, oof_risks

ENSEMBLE = "Ensemble"


def _inverse_risk(risks: Sequence[float]) -> np.ndarray:
    r = np.asarray(risks, dtype=float)
    if not np.all(np.isfinite(r)):
        raise ValueError("inverse-risk weights need finite out-of-fold risks")
    perfect = r <= 0.0
    if np.any(perfect):
        # zero-risk members share all the weight
        return perfect / perfect.sum()
    w = 1.0 / r
    return w / w.sum()


def ensemble_weights(
    tables: Mapping[str, NuisancePredictions],
    methods: Sequence[str],
    rule: str = "mean",
) -> Dict[str, Dict[str, float]]:
    """
    Weight of each method, per nuisance stream.

    Parameters
    ----------
    tables : mapping of method -> NuisancePredictions
    methods : sequence of str
        Members of the Ensemble.
    rule : {"mean", "inverse_risk"}

    Returns
    -------
    dict
        ``{nuisance: {method: weight}}``; weights are non-negative and sum to one.
    """
    if not methods:
        raise ValueError("ensemble needs at least one method")
    model = tables[methods[0]].model
    weights: Dict[str, Dict[str, float]] = {}
    for key in NUISANCES[model]:
        if rule == "mean":
            w = np.full(len(methods), 1.0 / len(methods))
        elif rule == "inverse_risk":
            w = _inverse_risk([tables[m].risks.get(key, np.nan) for m in methods])
        else:
            raise ValueError(f"Unknown ensemble rule: '{rule}'")
        weights[key] = {m: float(wm) for m, wm in zip(methods, w)}
    return weights


def combine(
    tables: Mapping[str, NuisancePredictions],
    methods: Sequence[str],
    y: np.ndarray,
    d: np.ndarray,
    rule: str = "mean",
) -> NuisancePredictions:
    """
    Combine the members' predictions into the Ensemble's nuisance table.

    Only members with complete predictions may be passed; with a single
    member the result equals that member's predictions exactly.

    Raises
    ------
    DegenerateMomentError
        If no member is given.
    """
    methods = list(methods)
    if not methods:
        raise DegenerateMomentError("no ensemble member has complete predictions", method=ENSEMBLE)
    incomplete = [m for m in methods if not tables[m].ok]
    if incomplete:
        raise ValueError(f"ensemble members with incomplete predictions: {incomplete}")
    model = tables[methods[0]].model
    if len(methods) == 1:
        only = tables[methods[0]]
        predictions = {key: values.copy() for key, values in only.predictions.items()}
    else:
        weights = ensemble_weights(tables, methods, rule)
        predictions = {
            key: np.sum([weights[key][m] * tables[m][key] for m in methods], axis=0)
            for key in NUISANCES[model]
        }
    table = NuisancePredictions(method=ENSEMBLE, model=model, predictions=predictions)
    table.risks = oof_risks(model, np.asarray(y, dtype=float), np.asarray(d, dtype=float), predictions)
    return table

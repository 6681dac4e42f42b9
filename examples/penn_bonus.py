"""
Reemployment bonus experiment: effect of the bonus (group 4 vs control) on
the log duration of unemployment, as in Chernozhukov et al. (2017).

Usage::

    python examples/penn_bonus.py path/to/penn_jae.dat [ite]
"""

import sys

import pandas as pd

from dmlkit import DMLConfig, double_ml
from dmlkit.data import load_penn_bonus
from dmlkit.data.penn import LINEAR_FORMULA, TREE_FORMULA

METHODS = ("RLasso", "Trees", "Forest", "Boosting", "Nnet", "Ensemble")


def run_panels(path: str, ite: int = 100) -> dict:
    data = load_penn_bonus(path)
    base = dict(methods=METHODS, ite=ite, x=TREE_FORMULA, xl=LINEAR_FORMULA, n_jobs=-1, random_state=1, verbose=True)
    panels = {}
    for model, trim in [("plinear", None), ("interactive", (0.01, 0.99))]:
        for n_folds in (2, 5):
            config = DMLConfig(model=model, n_folds=n_folds, trim=trim, **base)
            panels[(model, n_folds)] = double_ml(data, config).summary()
    return panels


if __name__ == "__main__":
    if len(sys.argv) < 2:
        sys.exit(__doc__)
    ite = int(sys.argv[2]) if len(sys.argv) > 2 else 100
    with pd.option_context("display.precision", 4, "display.width", 160):
        for (model, n_folds), table in run_panels(sys.argv[1], ite).items():
            print(f"\n{model}, {n_folds} folds")
            print(table)

"""
Sample construction for the Pennsylvania reemployment bonus experiment
(Bilias, 2000), the canonical DML illustration of Chernozhukov et al. (2017).

The raw file ``penn_jae.dat`` is whitespace separated with a header row.
Treatment group 4 is compared against the control group 0; the outcome is
the log of the first unemployment spell duration.
"""

from typing import Union
from pathlib import Path

import numpy as np
import pandas as pd

from dmlkit.data.causaldata import CausalData

OUTCOME = "inuidur1"
TREATMENT = "tg"

COVARIATES = [
    "female", "black", "othrace", "dep", "q2", "q3", "q4", "q5", "q6",
    "agelt35", "agegt54", "durable", "lusd", "husd",
]

# flat list for tree-based learners, pairwise interactions for lasso-type learners
TREE_FORMULA = " + ".join(COVARIATES)
LINEAR_FORMULA = f"({TREE_FORMULA})^2"


def prepare_penn_sample(raw: pd.DataFrame) -> pd.DataFrame:
    """
    Keep treatment groups 0 and 4, recode group 4 as treated, log the
    duration outcome and type the number of dependents as categorical.
    """
    missing = [c for c in [OUTCOME, TREATMENT] + COVARIATES if c not in raw.columns]
    if missing:
        raise ValueError(f"Penn data is missing columns: {missing}")
    sample = raw.loc[raw[TREATMENT].isin([0, 4])].copy()
    sample[TREATMENT] = (sample[TREATMENT] == 4).astype(int)
    sample[OUTCOME] = np.log(sample[OUTCOME])
    sample["dep"] = sample["dep"].astype("category")
    return sample.reset_index(drop=True)


def load_penn_bonus(path: Union[str, Path]) -> CausalData:
    """Read ``penn_jae.dat`` and return the estimation sample as CausalData."""
    raw = pd.read_csv(path, sep=r"\s+")
    sample = prepare_penn_sample(raw)
    return CausalData(
        df=sample,
        treatment=TREATMENT,
        outcome=OUTCOME,
        confounders=COVARIATES,
        categorical=["dep"],
    )

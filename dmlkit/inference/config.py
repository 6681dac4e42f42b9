"""
Run configuration for repeated cross-fitted DML estimation.

A configuration is an explicit, immutable value handed to the estimator, so
several runs with different settings can coexist in one process.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Literal, Mapping, Optional, Tuple

from dmlkit.exceptions import InvalidFoldCount
from dmlkit.inference.ensemble import ENSEMBLE
from dmlkit.inference.learners import LEARNERS

MODELS = ("plinear", "interactive")
ENSEMBLE_RULES = ("mean", "inverse_risk")

# Defaults of the reference application (Chernozhukov et al. 2017, bonus experiment)
DEFAULT_ARGUMENTS: Dict[str, Dict[str, Any]] = {
    "Boosting": {
        "tree_count": 1000,
        "shrinkage": 0.01,
        "interaction_depth": 2,
        "subsample_fraction": 0.5,
        "cv_folds": 5,
        "n_cores": 1,
    },
    "Forest": {"ntree": 1000, "reg_nodesize": 5, "clas_nodesize": 1, "replace": True},
    "Trees": {"min_samples_split": 20, "min_samples_leaf": 7, "cv_folds": 10},
    "Nnet": {"size": 2, "decay": 0.02, "maxit": 1000},
    "RLasso": {"c": 1.1, "homoscedastic": False, "intercept": True},
    "PostRLasso": {"c": 1.1, "homoscedastic": False, "intercept": True},
    "Ridge": {"cv_folds": 5},
    "Lasso": {"cv_folds": 5},
    "Elnet": {"cv_folds": 5, "l1_ratio": 0.5},
}


@dataclass(frozen=True)
class EnsembleConfig:
    """
    Which learners enter the Ensemble and how their predictions are combined.

    Parameters
    ----------
    methods : sequence of str
        Learner families combined into the Ensemble.
    rule : {"mean", "inverse_risk"}, default "mean"
        ``"mean"`` averages predictions with equal weights; ``"inverse_risk"``
        weights each method by the inverse of its out-of-fold risk.
    """
    methods: Tuple[str, ...] = ("RLasso", "Boosting", "Forest", "Nnet")
    rule: str = "mean"

    def __post_init__(self):
        object.__setattr__(self, "methods", tuple(self.methods))
        if not self.methods:
            raise ValueError("EnsembleConfig.methods must not be empty.")
        unknown = [m for m in self.methods if m not in LEARNERS]
        if unknown:
            raise ValueError(f"Unknown ensemble methods: {unknown}. Choose from: {list(LEARNERS)}")
        if len(set(self.methods)) != len(self.methods):
            raise ValueError("EnsembleConfig.methods contains duplicates.")
        if self.rule not in ENSEMBLE_RULES:
            raise ValueError(f"Ensemble rule must be one of {ENSEMBLE_RULES}, got '{self.rule}'.")


@dataclass(frozen=True)
class DMLConfig:
    """
    Configuration of a DML run.

    Parameters
    ----------
    methods : sequence of str
        Methods to report, learner families and optionally ``"Ensemble"``.
    model : {"plinear", "interactive"}, default "plinear"
        Structural model: partially linear or interactive (ATE).
    n_folds : int, default 2
        Number of cross-fitting folds, at least 2.
    ite : int, default 2
        Number of independent sample splits.
    x : str, optional
        Covariate formula for tree-style learners (flat additive list).
        Defaults to all confounders.
    xl : str, optional
        Covariate formula for linear-style learners, may contain
        interactions such as ``"(a + b + c)^2"``. Defaults to `x`.
    arguments : mapping, optional
        Per-family hyperparameters, merged over ``DEFAULT_ARGUMENTS``.
    ensemble : EnsembleConfig, optional
    trim : (float, float), optional
        Propensity band ``[lo, hi]`` for the interactive model; records
        outside are excluded from the moment computation.
    outcome, treatment : str, optional
        Column roles, needed only when estimating from a plain DataFrame.
    confounders, categorical : sequence of str, optional
        Covariate columns and the subset to type as categorical (DataFrame input).
    hc_type : {"HC0", "HC3"}, default "HC3"
        Sandwich variant for the partially linear standard error.
    n_jobs : int, default 1
        Workers for the repeated splits (joblib).
    fold_jobs : int, default 1
        Threads for the per-fold fits inside one split.
    backend : str, default "loky"
        joblib backend for the repeated splits.
    strict : bool, default False
        Re-raise learner and moment failures instead of recording missing cells.
    min_successful_splits : int, default 1
        Abort aggregation if fewer splits succeed.
    random_state : int, optional
        Seed for fold assignment and randomised learners.
    verbose : bool, default False
        Show a progress bar over splits.
    """
    methods: Tuple[str, ...] = ("RLasso", "Trees", "Forest", "Boosting", "Nnet", ENSEMBLE)
    model: Literal["plinear", "interactive"] = "plinear"
    n_folds: int = 2
    ite: int = 2
    x: Optional[str] = None
    xl: Optional[str] = None
    arguments: Mapping[str, Mapping[str, Any]] = field(default_factory=dict)
    ensemble: EnsembleConfig = field(default_factory=EnsembleConfig)
    trim: Optional[Tuple[float, float]] = None
    outcome: Optional[str] = None
    treatment: Optional[str] = None
    confounders: Optional[Tuple[str, ...]] = None
    categorical: Optional[Tuple[str, ...]] = None
    hc_type: str = "HC3"
    n_jobs: int = 1
    fold_jobs: int = 1
    backend: str = "loky"
    strict: bool = False
    min_successful_splits: int = 1
    random_state: Optional[int] = None
    verbose: bool = False

    def __post_init__(self):
        object.__setattr__(self, "methods", tuple(self.methods))
        if self.confounders is not None:
            object.__setattr__(self, "confounders", tuple(self.confounders))
        if self.categorical is not None:
            object.__setattr__(self, "categorical", tuple(self.categorical))
        if self.trim is not None:
            object.__setattr__(self, "trim", tuple(float(b) for b in self.trim))
        self._validate()

    def _validate(self):
        if not self.methods:
            raise ValueError("At least one method must be configured.")
        unknown = [m for m in self.methods if m not in LEARNERS and m != ENSEMBLE]
        if unknown:
            raise ValueError(f"Unknown methods: {unknown}. Choose from: {list(LEARNERS) + [ENSEMBLE]}")
        if len(set(self.methods)) != len(self.methods):
            raise ValueError("methods contains duplicates.")
        if "best" in self.methods:
            raise ValueError("'best' is reserved for the selected column.")
        if self.model not in MODELS:
            raise ValueError(f"model must be one of {MODELS}, got '{self.model}'.")
        if int(self.n_folds) < 2:
            raise InvalidFoldCount(int(self.n_folds))
        if int(self.ite) < 1:
            raise ValueError("ite must be at least 1.")
        if not 1 <= int(self.min_successful_splits) <= int(self.ite):
            raise ValueError("min_successful_splits must lie between 1 and ite.")
        unknown_args = [m for m in self.arguments if m not in LEARNERS]
        if unknown_args:
            raise ValueError(f"arguments given for unknown methods: {unknown_args}")
        if self.trim is not None:
            if self.model != "interactive":
                raise ValueError("trim only applies to the interactive model.")
            if len(self.trim) != 2 or not 0.0 <= self.trim[0] < self.trim[1] <= 1.0:
                raise ValueError(f"trim must be (lo, hi) with 0 <= lo < hi <= 1, got {self.trim}.")
        if self.hc_type not in ("HC0", "HC3"):
            raise ValueError(f"hc_type must be 'HC0' or 'HC3', got '{self.hc_type}'.")

    @property
    def learners_to_fit(self) -> List[str]:
        """Learner families fitted in every split: reported ones plus the Ensemble's inputs."""
        names = [m for m in self.methods if m != ENSEMBLE]
        if ENSEMBLE in self.methods:
            names += [m for m in self.ensemble.methods if m not in names]
        return names

    def learner_arguments(self, name: str) -> Dict[str, Any]:
        merged = dict(DEFAULT_ARGUMENTS.get(name, {}))
        merged.update(self.arguments.get(name, {}))
        return merged

    def with_arguments(self, **arguments: Mapping[str, Any]) -> "DMLConfig":
        """Copy with per-family hyperparameters updated."""
        merged = {k: dict(v) for k, v in self.arguments.items()}
        for name, params in arguments.items():
            merged.setdefault(name, {}).update(params)
        return replace(self, arguments=merged)

    def check_n_records(self, n_records: int) -> None:
        if int(self.n_folds) > n_records:
            raise InvalidFoldCount(int(self.n_folds), n_records)

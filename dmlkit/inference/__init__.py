"""
Estimation engine: folds, nuisance learners, moments, ensemble and aggregation.
"""

from dmlkit.inference.aggregate import aggregate, mean_rule, median_rule
from dmlkit.inference.config import DEFAULT_ARGUMENTS, DMLConfig, EnsembleConfig
from dmlkit.inference.ensemble import ENSEMBLE, combine, ensemble_weights
from dmlkit.inference.estimators import DMLResults, DoubleML, double_ml
from dmlkit.inference.folds import FoldAssignment, split
from dmlkit.inference.learners import AVAILABLE_LEARNERS, NuisanceLearner, make_learner
from dmlkit.inference.moments import interactive_moment, plinear_moment
from dmlkit.inference.nuisance import NuisancePredictions, estimate_nuisances

__all__ = [
    "DMLConfig",
    "EnsembleConfig",
    "DEFAULT_ARGUMENTS",
    "DoubleML",
    "DMLResults",
    "double_ml",
    "FoldAssignment",
    "split",
    "NuisanceLearner",
    "AVAILABLE_LEARNERS",
    "make_learner",
    "NuisancePredictions",
    "estimate_nuisances",
    "plinear_moment",
    "interactive_moment",
    "ENSEMBLE",
    "combine",
    "ensemble_weights",
    "aggregate",
    "mean_rule",
    "median_rule",
]

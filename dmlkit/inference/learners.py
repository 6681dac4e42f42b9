"""
Nuisance learners behind a single fit/predict interface.

Every learner family turns a hyperparameter record into a scikit-learn
compatible estimator for either a regression task (outcome or treatment
regression) or a classification task (propensity). The cross-fitting code
only talks to :class:`NuisanceLearner`, never to a concrete family.

Families
--------
Boosting      CatBoost gradient boosting, number of trees picked by CatBoost CV
Forest        random forest
Trees         CART tree pruned by cross-validated cost complexity
Nnet          single hidden layer network on standardised inputs
RLasso        rigorous lasso / L1-logit
PostRLasso    OLS / logit refitted on the rigorous lasso support
Ridge, Lasso, Elnet   cross-validated penalised linear / logistic models
"""

from __future__ import annotations

import warnings
from abc import ABC, abstractmethod
from types import MappingProxyType
from typing import Any, Dict, Literal, Mapping, Optional, Type

import numpy as np
import pandas as pd
from catboost import CatBoostClassifier, CatBoostError, CatBoostRegressor, Pool
from catboost import cv as catboost_cv
from sklearn.base import BaseEstimator
from sklearn.ensemble import RandomForestClassifier, RandomForestRegressor
from sklearn.exceptions import ConvergenceWarning
from sklearn.linear_model import ElasticNetCV, LassoCV, LogisticRegressionCV, RidgeCV
from sklearn.model_selection import KFold, StratifiedKFold, cross_val_score
from sklearn.neural_network import MLPClassifier, MLPRegressor
from sklearn.pipeline import make_pipeline
from sklearn.preprocessing import StandardScaler
from sklearn.tree import DecisionTreeClassifier, DecisionTreeRegressor

from dmlkit.exceptions import LearnerFitError
from dmlkit.inference.rlasso import RLassoLogitClassifier, RLassoRegressor

Task = Literal["regression", "classification"]
TASKS = ("regression", "classification")


class NuisanceLearner(ABC):
    """
    Uniform fit/predict wrapper around one nuisance-estimation method.

    Parameters
    ----------
    params : mapping, optional
        Family-specific hyperparameters. Stored read-only.
    random_state : int, optional
        Seed forwarded to randomised estimators.

    Attributes
    ----------
    name : str
        Method name used in configuration and output columns.
    formula : {"tree", "linear"}
        Which covariate design the learner consumes: the flat additive one
        (tree-style) or the expanded one with interactions (linear-style).
    """

    name: str = ""
    formula: Literal["tree", "linear"] = "tree"

    def __init__(self, params: Optional[Mapping[str, Any]] = None, random_state: Optional[int] = None) -> None:
        self._params = dict(params or {})
        self.random_state = random_state

    @property
    def params(self) -> Mapping[str, Any]:
        return MappingProxyType(self._params)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(params={dict(self.params)}, random_state={self.random_state})"

    @abstractmethod
    def make_estimator(self, task: Task) -> BaseEstimator:
        """Return an unfitted estimator for the task."""

    def _fit_estimator(self, estimator: BaseEstimator, X: np.ndarray, y: np.ndarray, task: Task) -> BaseEstimator:
        return estimator.fit(X, y)

    def fit(self, X: pd.DataFrame, y: np.ndarray, task: Task, fold: Optional[int] = None) -> BaseEstimator:
        """
        Fit the learner on training rows.

        Parameters
        ----------
        X : pd.DataFrame
            Training design; its index holds the record ids.
        y : array-like
            Target aligned with `X`.
        task : {"regression", "classification"}
        fold : int, optional
            Held-out fold the model will predict, used for error attribution.

        Raises
        ------
        LearnerFitError
            On degenerate input or when the underlying library fails.
        """
        if task not in TASKS:
            raise ValueError(f"task must be one of {TASKS}, got '{task}'.")
        y = np.asarray(y, dtype=float).ravel()
        if len(X) < 2 or len(X) != y.shape[0]:
            raise LearnerFitError(self.name, fold, f"needs at least 2 aligned training rows, got {len(X)}")
        if task == "classification":
            if np.unique(y).size < 2:
                raise LearnerFitError(self.name, fold, "classification target has a single class")
            y = y.astype(int)

        estimator = self.make_estimator(task)
        with warnings.catch_warnings():
            if self.params.get("fail_on_convergence_warning", False):
                warnings.simplefilter("error", ConvergenceWarning)
            else:
                warnings.simplefilter("ignore", ConvergenceWarning)
            try:
                return self._fit_estimator(estimator, X.to_numpy(dtype=float), y, task)
            except (ValueError, ArithmeticError, RuntimeError, np.linalg.LinAlgError, CatBoostError, ConvergenceWarning) as exc:
                raise LearnerFitError(self.name, fold, str(exc)) from exc

    def predict(self, fitted: BaseEstimator, X: pd.DataFrame, task: Task, fold: Optional[int] = None) -> np.ndarray:
        """
        Predictions aligned to the rows of `X`.

        For classification the probability of class 1 is returned.
        """
        Xa = X.to_numpy(dtype=float)
        try:
            if task == "classification":
                proba = np.asarray(fitted.predict_proba(Xa))
                pos = [float(c) for c in fitted.classes_].index(1.0)
                preds = proba[:, pos]
            else:
                preds = np.asarray(fitted.predict(Xa), dtype=float).ravel()
        except (ValueError, ArithmeticError, RuntimeError, CatBoostError) as exc:
            raise LearnerFitError(self.name, fold, str(exc)) from exc
        if preds.shape[0] != len(X) or not np.all(np.isfinite(preds)):
            raise LearnerFitError(self.name, fold, "prediction returned non-finite values")
        return preds


class Boosting(NuisanceLearner):
    """
    Gradient boosted trees (CatBoost).

    Recognized options: ``tree_count``, ``shrinkage``, ``interaction_depth``,
    ``subsample_fraction``, ``cv_folds``, ``n_cores``. With ``cv_folds > 1``
    the number of trees is chosen by CatBoost's own cross-validation on the
    training rows before the final refit.
    """

    name = "Boosting"

    def make_estimator(self, task: Task) -> BaseEstimator:
        kwargs = dict(
            iterations=int(self.params.get("tree_count", 1000)),
            learning_rate=float(self.params.get("shrinkage", 0.01)),
            depth=int(self.params.get("interaction_depth", 2)),
            bootstrap_type="Bernoulli",
            subsample=float(self.params.get("subsample_fraction", 0.5)),
            thread_count=int(self.params.get("n_cores", 1)),
            random_seed=self.random_state if self.random_state is not None else 0,
            verbose=False,
            allow_writing_files=False,
        )
        if task == "classification":
            return CatBoostClassifier(loss_function="Logloss", **kwargs)
        return CatBoostRegressor(loss_function="RMSE", **kwargs)

    def _fit_estimator(self, estimator, X, y, task):
        cv_folds = int(self.params.get("cv_folds", 0) or 0)
        if cv_folds > 1:
            params = {k: v for k, v in estimator.get_params().items() if k != "verbose"}
            params["logging_level"] = "Silent"
            scores = catboost_cv(
                Pool(X, y),
                params,
                fold_count=cv_folds,
                stratified=(task == "classification"),
                seed=params.get("random_seed", 0),
                as_pandas=True,
            )
            metric = [c for c in scores.columns if c.startswith("test-") and c.endswith("-mean")][0]
            best = int(scores.loc[scores[metric].idxmin(), "iterations"]) + 1
            estimator.set_params(iterations=best)
        return estimator.fit(X, y)


class Forest(NuisanceLearner):
    """
    Random forest. Options: ``ntree``, ``reg_nodesize``, ``clas_nodesize``,
    ``replace`` (bootstrap), ``max_features``, ``n_jobs``.
    """

    name = "Forest"

    def make_estimator(self, task: Task) -> BaseEstimator:
        common = dict(
            n_estimators=int(self.params.get("ntree", 1000)),
            bootstrap=bool(self.params.get("replace", True)),
            n_jobs=self.params.get("n_jobs", 1),
            random_state=self.random_state,
        )
        if task == "classification":
            return RandomForestClassifier(
                min_samples_leaf=int(self.params.get("clas_nodesize", 1)),
                max_features=self.params.get("max_features", "sqrt"),
                **common,
            )
        return RandomForestRegressor(
            min_samples_leaf=int(self.params.get("reg_nodesize", 5)),
            max_features=self.params.get("max_features", 1.0 / 3.0),
            **common,
        )


class Trees(NuisanceLearner):
    """
    Single CART tree, pruned at the cost-complexity level with the best
    cross-validated score. Options: ``min_samples_split``,
    ``min_samples_leaf``, ``cv_folds``, ``max_alphas``.
    """

    name = "Trees"

    def make_estimator(self, task: Task) -> BaseEstimator:
        kwargs = dict(
            min_samples_split=int(self.params.get("min_samples_split", 20)),
            min_samples_leaf=int(self.params.get("min_samples_leaf", 7)),
            random_state=self.random_state,
        )
        if task == "classification":
            return DecisionTreeClassifier(**kwargs)
        return DecisionTreeRegressor(**kwargs)

    def _fit_estimator(self, estimator, X, y, task):
        cv_folds = int(self.params.get("cv_folds", 10))
        if task == "classification":
            cv_folds = min(cv_folds, int(np.bincount(y.astype(int)).min()))
            splitter = StratifiedKFold(n_splits=cv_folds, shuffle=True, random_state=self.random_state) if cv_folds > 1 else None
            scoring = "accuracy"
        else:
            cv_folds = min(cv_folds, X.shape[0])
            splitter = KFold(n_splits=cv_folds, shuffle=True, random_state=self.random_state) if cv_folds > 1 else None
            scoring = "neg_mean_squared_error"
        if splitter is not None:
            alphas = np.unique(estimator.cost_complexity_pruning_path(X, y).ccp_alphas)
            max_alphas = int(self.params.get("max_alphas", 20))
            if alphas.size > max_alphas:
                alphas = alphas[np.linspace(0, alphas.size - 1, max_alphas).astype(int)]
            scores = [
                cross_val_score(estimator.set_params(ccp_alpha=float(a)), X, y, cv=splitter, scoring=scoring).mean()
                for a in alphas
            ]
            # ties go to the larger (simpler) alpha
            best = alphas[len(scores) - 1 - int(np.argmax(scores[::-1]))]
            estimator.set_params(ccp_alpha=float(best))
        return estimator.fit(X, y)


class Nnet(NuisanceLearner):
    """
    Single hidden layer network with logistic units on standardised inputs.
    Options: ``size`` (hidden units), ``decay`` (L2 penalty), ``maxit``.
    """

    name = "Nnet"

    def make_estimator(self, task: Task) -> BaseEstimator:
        kwargs = dict(
            hidden_layer_sizes=(int(self.params.get("size", 2)),),
            alpha=float(self.params.get("decay", 0.02)),
            max_iter=int(self.params.get("maxit", 1000)),
            activation="logistic",
            solver="lbfgs",
            random_state=self.random_state,
        )
        if task == "classification":
            return make_pipeline(StandardScaler(), MLPClassifier(**kwargs))
        return make_pipeline(StandardScaler(), MLPRegressor(**kwargs))


class RLasso(NuisanceLearner):
    """Rigorous lasso. Options: ``c``, ``gamma``, ``homoscedastic``, ``max_iter``, ``intercept``."""

    name = "RLasso"
    formula = "linear"
    post = False

    def make_estimator(self, task: Task) -> BaseEstimator:
        c = float(self.params.get("c", 1.1))
        gamma = self.params.get("gamma")
        if task == "classification":
            return RLassoLogitClassifier(c=c, gamma=gamma, post=self.post)
        return RLassoRegressor(
            c=c,
            gamma=gamma,
            homoscedastic=bool(self.params.get("homoscedastic", False)),
            post=self.post,
            max_iter=int(self.params.get("max_iter", 15)),
            intercept=bool(self.params.get("intercept", True)),
        )


class PostRLasso(RLasso):
    """Unpenalised refit on the rigorous lasso support."""

    name = "PostRLasso"
    post = True


class _PenalizedLinear(NuisanceLearner):
    formula = "linear"
    # share of the L1 term in the logistic penalty: 0 ridge, 1 lasso
    l1_ratio = 0.0

    def make_estimator(self, task: Task) -> BaseEstimator:
        cv_folds = int(self.params.get("cv_folds", 5))
        if task == "classification":
            ratio = self._mixing()
            solver = "lbfgs" if ratio == 0.0 else "saga"
            model = LogisticRegressionCV(
                Cs=10, cv=cv_folds, l1_ratios=(ratio,), solver=solver, max_iter=5000,
                scoring="neg_log_loss", use_legacy_attributes=False, random_state=self.random_state,
            )
        else:
            model = self._regressor(cv_folds)
        return make_pipeline(StandardScaler(), model)

    def _mixing(self) -> float:
        return float(self.l1_ratio)

    @abstractmethod
    def _regressor(self, cv_folds: int) -> BaseEstimator:
        ...


class Ridge(_PenalizedLinear):
    """Cross-validated ridge. Options: ``cv_folds``."""

    name = "Ridge"
    l1_ratio = 0.0

    def _regressor(self, cv_folds):
        return RidgeCV(alphas=np.logspace(-4, 4, 50), cv=cv_folds)


class Lasso(_PenalizedLinear):
    """Cross-validated lasso. Options: ``cv_folds``."""

    name = "Lasso"
    l1_ratio = 1.0

    def _regressor(self, cv_folds):
        return LassoCV(cv=cv_folds, max_iter=10000, random_state=self.random_state)


class Elnet(_PenalizedLinear):
    """Cross-validated elastic net. Options: ``cv_folds``, ``l1_ratio``."""

    name = "Elnet"
    l1_ratio = 0.5

    def _mixing(self):
        return float(self.params.get("l1_ratio", self.l1_ratio))

    def _regressor(self, cv_folds):
        return ElasticNetCV(
            l1_ratio=self._mixing(), cv=cv_folds, max_iter=10000,
            random_state=self.random_state,
        )


LEARNERS: Dict[str, Type[NuisanceLearner]] = {
    cls.name: cls for cls in (Boosting, Forest, Trees, Nnet, RLasso, PostRLasso, Ridge, Lasso, Elnet)
}

AVAILABLE_LEARNERS = list(LEARNERS)


def make_learner(
    name: str,
    params: Optional[Mapping[str, Any]] = None,
    random_state: Optional[int] = None,
) -> NuisanceLearner:
    """
    Build a learner from its method name.

    Raises
    ------
    ValueError
        If `name` is not a known learner family.
    """
    try:
        cls = LEARNERS[name]
    except KeyError:
        raise ValueError(f"Unknown learner: '{name}'. Choose from: {', '.join(AVAILABLE_LEARNERS)}") from None
    return cls(params=params, random_state=random_state)


__all__ = [
    "NuisanceLearner",
    "Boosting",
    "Forest",
    "Trees",
    "Nnet",
    "RLasso",
    "PostRLasso",
    "Ridge",
    "Lasso",
    "Elnet",
    "LEARNERS",
    "AVAILABLE_LEARNERS",
    "make_learner",
]

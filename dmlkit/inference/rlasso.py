"""
Rigorous lasso with a theory-driven penalty level.

Implements the square-loss lasso of Belloni, Chen, Chernozhukov & Hansen (2012)
with heteroskedasticity-robust penalty loadings, and the L1-penalised logit of
Belloni, Chernozhukov & Wei (2016). Both come with a post-selection variant
that refits the unpenalised model on the selected support.

The penalty level is

    lambda = 2 c sqrt(n) Phi^{-1}(1 - gamma / (2p))          (linear)
    lambda = c / 2 sqrt(n) Phi^{-1}(1 - gamma / (2p))        (logit)

with ``c = 1.1`` and ``gamma = 0.1 / log(n)``. No cross-validation is involved,
so fitting is fast and deterministic.
"""

from __future__ import annotations

from typing import Optional

import numpy as np
from numpy.typing import NDArray
from scipy.stats import norm
from sklearn.base import BaseEstimator, ClassifierMixin, RegressorMixin
from sklearn.linear_model import Lasso, LogisticRegression
from sklearn.preprocessing import StandardScaler


def _penalty_quantile(n: int, p: int, gamma: Optional[float]) -> float:
    gamma = 0.1 / np.log(n) if gamma is None else float(gamma)
    return float(norm.ppf(1.0 - gamma / (2.0 * max(p, 1))))


class RLassoRegressor(BaseEstimator, RegressorMixin):
    """
    Lasso with data-driven penalty and iterated penalty loadings.

    Parameters
    ----------
    c : float, default 1.1
        Slack constant of the penalty level.
    gamma : float or None, default None
        Significance level; ``0.1 / log(n)`` when None.
    homoscedastic : bool, default False
        Use homoscedastic loadings ``sd(e) * sqrt(mean(x_j^2))`` instead of
        ``sqrt(mean(x_j^2 e^2))``.
    post : bool, default False
        Refit OLS on the selected support (post-lasso).
    max_iter : int, default 15
        Maximum number of loading updates.
    tol : float, default 1e-5
        Convergence tolerance on the loadings.
    intercept : bool, default True
        Fit an unpenalised intercept (by centering).
    """

    def __init__(
        self,
        c: float = 1.1,
        gamma: Optional[float] = None,
        homoscedastic: bool = False,
        post: bool = False,
        max_iter: int = 15,
        tol: float = 1e-5,
        intercept: bool = True,
    ) -> None:
        self.c = c
        self.gamma = gamma
        self.homoscedastic = homoscedastic
        self.post = post
        self.max_iter = max_iter
        self.tol = tol
        self.intercept = intercept

    def _loadings(self, X: NDArray, e: NDArray) -> NDArray:
        if self.homoscedastic:
            psi = np.sqrt(np.mean(X ** 2, axis=0)) * np.sqrt(np.mean(e ** 2))
        else:
            psi = np.sqrt(np.mean((X ** 2) * (e ** 2)[:, None], axis=0))
        # all-zero columns never enter the model
        psi[psi <= 0] = 1.0
        return psi

    def _solve(self, X: NDArray, y: NDArray, psi: NDArray, alpha: float) -> NDArray:
        lasso = Lasso(alpha=alpha, fit_intercept=False, max_iter=10000)
        lasso.fit(X / psi, y)
        coef = lasso.coef_ / psi
        if self.post:
            support = np.flatnonzero(coef != 0)
            coef = np.zeros(X.shape[1])
            if support.size:
                coef[support] = np.linalg.lstsq(X[:, support], y, rcond=None)[0]
        return coef

    def fit(self, X: NDArray, y: NDArray) -> "RLassoRegressor":
        X = np.asarray(X, dtype=float)
        y = np.asarray(y, dtype=float).ravel()
        n, p = X.shape
        if self.intercept:
            x_mean, y_mean = X.mean(axis=0), y.mean()
        else:
            x_mean, y_mean = np.zeros(p), 0.0
        Xc, yc = X - x_mean, y - y_mean

        self.lambda_ = 2.0 * self.c * np.sqrt(n) * _penalty_quantile(n, p, self.gamma)
        # sklearn's Lasso minimises ||y - Xb||^2 / (2n) + alpha ||b||_1
        alpha = self.lambda_ / (2.0 * n)

        psi = self._loadings(Xc, yc)
        coef = self._solve(Xc, yc, psi, alpha)
        self.n_iter_ = 1
        for _ in range(self.max_iter):
            psi_new = self._loadings(Xc, yc - Xc @ coef)
            converged = np.max(np.abs(psi_new - psi)) < self.tol
            psi = psi_new
            coef = self._solve(Xc, yc, psi, alpha)
            self.n_iter_ += 1
            if converged:
                break

        self.loadings_ = psi
        self.coef_ = coef
        self.intercept_ = float(y_mean - x_mean @ coef)
        self.support_ = np.flatnonzero(coef != 0)
        return self

    def predict(self, X: NDArray) -> NDArray:
        return np.asarray(X, dtype=float) @ self.coef_ + self.intercept_


class RLassoLogitClassifier(BaseEstimator, ClassifierMixin):
    """
    L1-penalised logistic regression with the rigorous penalty level.

    Columns are standardised before penalisation. With ``post=True`` an
    unpenalised logit is refitted on the selected columns.
    """

    def __init__(
        self,
        c: float = 1.1,
        gamma: Optional[float] = None,
        post: bool = False,
        max_iter: int = 5000,
    ) -> None:
        self.c = c
        self.gamma = gamma
        self.post = post
        self.max_iter = max_iter

    def fit(self, X: NDArray, y: NDArray) -> "RLassoLogitClassifier":
        X = np.asarray(X, dtype=float)
        y = np.asarray(y).ravel()
        n, p = X.shape
        self.classes_ = np.unique(y)
        if self.classes_.size != 2:
            raise ValueError(f"RLassoLogitClassifier needs two classes, got {self.classes_.size}.")

        self.scaler_ = StandardScaler().fit(X)
        Xs = self.scaler_.transform(X)
        self.lambda_ = self.c / 2.0 * np.sqrt(n) * _penalty_quantile(n, p, self.gamma)
        # sum-of-losses scale: loss + (lambda / 2) ||b||_1  <=>  C = 2 / lambda
        penalised = LogisticRegression(
            l1_ratio=1.0, C=2.0 / self.lambda_, solver="saga", max_iter=self.max_iter
        )
        penalised.fit(Xs, y)
        self.support_ = np.flatnonzero(penalised.coef_.ravel() != 0)

        if self.post:
            self.model_ = LogisticRegression(C=np.inf, max_iter=self.max_iter)
            if self.support_.size:
                self.model_.fit(Xs[:, self.support_], y)
            else:
                self.model_ = None
                self.base_rate_ = float(np.mean(y == self.classes_[1]))
        else:
            self.model_ = penalised
        return self

    def predict_proba(self, X: NDArray) -> NDArray:
        Xs = self.scaler_.transform(np.asarray(X, dtype=float))
        if not self.post:
            return self.model_.predict_proba(Xs)
        if self.model_ is None:
            p1 = np.full(Xs.shape[0], self.base_rate_)
        else:
            p1 = self.model_.predict_proba(Xs[:, self.support_])[:, 1]
        return np.column_stack([1.0 - p1, p1])

    def predict(self, X: NDArray) -> NDArray:
        proba = self.predict_proba(X)
        return self.classes_[(proba[:, 1] >= 0.5).astype(int)]

import warnings

import numpy as np
import pytest

from dmlkit.inference.rlasso import RLassoLogitClassifier, RLassoRegressor, _penalty_quantile


def _sparse_regression(n=400, p=30, seed=0):
    rng = np.random.default_rng(seed)
    X = rng.normal(size=(n, p))
    beta = np.zeros(p)
    beta[:3] = [2.0, -1.5, 1.0]
    y = 0.5 + X @ beta + rng.normal(scale=0.5, size=n)
    return X, y, beta


def test_penalty_quantile_matches_default_gamma():
    n, p = 500, 20
    gamma = 0.1 / np.log(n)
    from scipy.stats import norm
    assert _penalty_quantile(n, p, None) == pytest.approx(norm.ppf(1 - gamma / (2 * p)))


def test_rlasso_selects_true_support():
    X, y, _ = _sparse_regression()
    model = RLassoRegressor().fit(X, y)
    assert set(model.support_) == {0, 1, 2}
    assert model.lambda_ > 0
    assert model.loadings_.shape == (X.shape[1],)
    assert 1 <= model.n_iter_ <= 16


def test_post_rlasso_removes_shrinkage():
    X, y, beta = _sparse_regression()
    lasso = RLassoRegressor().fit(X, y)
    post = RLassoRegressor(post=True).fit(X, y)
    # the penalised fit shrinks towards zero, the refit does not
    assert np.abs(lasso.coef_[0]) < np.abs(post.coef_[0])
    np.testing.assert_allclose(post.coef_[:3], beta[:3], atol=0.15)
    assert post.intercept_ == pytest.approx(0.5, abs=0.15)


def test_rlasso_predict_shape():
    X, y, _ = _sparse_regression(n=200, p=10)
    preds = RLassoRegressor(homoscedastic=True).fit(X, y).predict(X)
    assert preds.shape == (200,)
    assert np.all(np.isfinite(preds))


def test_rlasso_logit_probabilities():
    rng = np.random.default_rng(1)
    X = rng.normal(size=(600, 10))
    p = 1 / (1 + np.exp(-(1.5 * X[:, 0] - X[:, 1])))
    y = rng.binomial(1, p)
    clf = RLassoLogitClassifier().fit(X, y)
    proba = clf.predict_proba(X)
    assert proba.shape == (600, 2)
    np.testing.assert_allclose(proba.sum(axis=1), 1.0)
    assert {0, 1} <= set(clf.support_)
    assert set(clf.predict(X)) <= {0, 1}


def test_post_rlasso_logit_without_support_predicts_base_rate():
    rng = np.random.default_rng(2)
    X = rng.normal(size=(300, 5))
    y = rng.binomial(1, 0.3, size=300)
    clf = RLassoLogitClassifier(post=True, c=50.0).fit(X, y)
    assert clf.support_.size == 0
    np.testing.assert_allclose(clf.predict_proba(X)[:, 1], y.mean())


def test_rlasso_logit_needs_two_classes():
    X = np.random.default_rng(0).normal(size=(20, 2))
    with pytest.raises(ValueError, match="two classes"):
        RLassoLogitClassifier().fit(X, np.ones(20))


@pytest.mark.parametrize("post", [False, True])
def test_rlasso_logit_uses_current_logistic_api(post):
    rng = np.random.default_rng(3)
    X = rng.normal(size=(300, 6))
    y = rng.binomial(1, 1 / (1 + np.exp(-2.0 * X[:, 0])))
    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always")
        clf = RLassoLogitClassifier(post=post).fit(X, y)
    assert not [w for w in caught if "penalty" in str(w.message)]
    assert 0 in clf.support_

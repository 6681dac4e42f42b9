"""
Cross-fitting and moment tests using learners with known behaviour.
"""

import numpy as np
import pandas as pd
import pytest
from sklearn.base import BaseEstimator
from sklearn.dummy import DummyClassifier
from sklearn.linear_model import LinearRegression

from dmlkit.exceptions import DegenerateMomentError, LearnerFitError, LeakageError
from dmlkit.inference.folds import FoldAssignment, split
from dmlkit.inference.learners import NuisanceLearner
from dmlkit.inference.moments import compute_moment, interactive_moment, plinear_moment, trim_mask
from dmlkit.inference.nuisance import NuisancePredictions, estimate_nuisances


class TrackingLearner(NuisanceLearner):
    """OLS / constant-probability learner that records the rows it trains on."""

    name = "Tracking"

    def __init__(self, params=None, random_state=None):
        super().__init__(params, random_state)
        self.seen = []

    def make_estimator(self, task):
        if task == "classification":
            return DummyClassifier(strategy="prior")
        return LinearRegression()

    def fit(self, X, y, task, fold=None):
        self.seen.append((fold, set(X.index)))
        return super().fit(X, y, task, fold=fold)


class FailingLearner(NuisanceLearner):
    """Fails whenever it has to predict fold 2."""

    name = "Failing"

    def make_estimator(self, task):
        return LinearRegression()

    def fit(self, X, y, task, fold=None):
        if fold == 2:
            raise LearnerFitError(self.name, fold, "boom")
        return super().fit(X, y, task, fold=fold)


def _plr_inputs(n=200, seed=0, theta=0.5):
    rng = np.random.default_rng(seed)
    X = pd.DataFrame(rng.normal(size=(n, 3)), columns=["a", "b", "c"])
    d = X["a"].to_numpy() + rng.normal(size=n)
    y = theta * d + X["b"].to_numpy() - X["c"].to_numpy()
    return X, y, d


def _irm_inputs(n=400, seed=0):
    rng = np.random.default_rng(seed)
    X = pd.DataFrame(rng.normal(size=(n, 3)), columns=["a", "b", "c"])
    d = rng.binomial(1, 0.5, size=n).astype(float)
    y = 1.0 * d + X["a"].to_numpy() + rng.normal(scale=0.5, size=n)
    return X, y, d


def test_no_record_is_predicted_by_a_model_that_saw_it():
    X, y, d = _plr_inputs()
    folds = split(len(y), 4, seed=1)
    learner = TrackingLearner()
    table = estimate_nuisances(X, y, d, folds, learner, model="plinear")
    assert table.ok
    assert len(learner.seen) == 8  # two nuisances x four folds
    for fold, rows in learner.seen:
        held_out = set(folds.test_index(fold))
        assert rows.isdisjoint(held_out)
        assert rows | held_out == set(range(len(y)))


def test_interactive_outcome_models_train_on_their_arm():
    X, y, d = _irm_inputs()
    folds = split(len(y), 2, seed=3)
    learner = TrackingLearner()
    table = estimate_nuisances(X, y, d, folds, learner, model="interactive")
    assert table.ok
    assert set(table.predictions) == {"mu0", "mu1", "p"}
    # first fit per fold is mu0 (control rows), second is mu1 (treated rows)
    per_fold = {}
    for fold, rows in learner.seen:
        per_fold.setdefault(fold, []).append(rows)
    for fold, (rows0, rows1, rows_p) in per_fold.items():
        assert all(d[i] == 0 for i in rows0)
        assert all(d[i] == 1 for i in rows1)
        assert rows_p == set(folds.train_index(fold))


def test_overlapping_folds_raise_leakage_error():
    X, y, d = _plr_inputs(n=20)
    bad = FoldAssignment(fold_ids=np.array([1] * 10 + [2] * 9 + [3]), n_folds=2)
    with pytest.raises(LeakageError):
        estimate_nuisances(X, y, d, bad, TrackingLearner(), model="plinear")


def test_fold_assignment_of_wrong_length_raises_leakage_error():
    X, y, d = _plr_inputs(n=20)
    with pytest.raises(LeakageError):
        estimate_nuisances(X, y, d, split(15, 2, seed=0), TrackingLearner(), model="plinear")


def test_failed_fold_is_recorded_and_left_missing():
    X, y, d = _plr_inputs()
    folds = split(len(y), 3, seed=0)
    table = estimate_nuisances(X, y, d, folds, FailingLearner(), model="plinear")
    assert not table.ok
    assert table.failed_folds == [2]
    assert np.all(np.isnan(table["y_hat"][folds.test_index(2)]))
    assert np.all(np.isfinite(table["y_hat"][folds.test_index(1)]))
    assert table.risks == {}


def test_failed_fold_reraises_in_strict_mode():
    X, y, d = _plr_inputs()
    with pytest.raises(LearnerFitError):
        estimate_nuisances(X, y, d, split(len(y), 3, seed=0), FailingLearner(), model="plinear", strict=True)


def test_threaded_folds_match_sequential():
    X, y, d = _plr_inputs()
    folds = split(len(y), 4, seed=5)
    seq = estimate_nuisances(X, y, d, folds, TrackingLearner(), fold_jobs=1)
    par = estimate_nuisances(X, y, d, folds, TrackingLearner(), fold_jobs=2)
    np.testing.assert_allclose(seq["y_hat"], par["y_hat"])
    np.testing.assert_allclose(seq["d_hat"], par["d_hat"])


def test_plinear_recovers_theta_with_noiseless_outcome():
    # linear nuisances are learned exactly, so the residual regression is exact
    X, y, d = _plr_inputs(theta=0.5)
    table = estimate_nuisances(X, y, d, split(len(y), 2, seed=0), TrackingLearner(), model="plinear")
    est = compute_moment(table, y, d)
    assert est.estimate == pytest.approx(0.5, abs=1e-8)
    assert est.se == pytest.approx(0.0, abs=1e-6)
    assert est.n_used == len(y)


def test_plinear_moment_formula_and_hc_types():
    rng = np.random.default_rng(0)
    rd = rng.normal(size=100)
    ry = 2.0 * rd + rng.normal(size=100)
    y, d = ry + 1.0, rd + 3.0
    hc0 = plinear_moment(y, d, np.full(100, 1.0), np.full(100, 3.0), hc_type="HC0")
    hc3 = plinear_moment(y, d, np.full(100, 1.0), np.full(100, 3.0), hc_type="HC3")
    theta = np.sum(ry * rd) / np.sum(rd ** 2)
    eps = ry - theta * rd
    assert hc0.estimate == pytest.approx(theta)
    assert hc0.se == pytest.approx(np.sqrt(np.sum(rd ** 2 * eps ** 2)) / np.sum(rd ** 2))
    assert hc3.estimate == pytest.approx(theta)
    assert hc3.se > hc0.se


def test_plinear_zero_treatment_residual_is_degenerate():
    d = np.linspace(0, 1, 50)
    with pytest.raises(DegenerateMomentError):
        plinear_moment(np.arange(50.0), d, np.zeros(50), d)


def test_plinear_rejects_unknown_hc_type():
    d = np.linspace(0, 1, 50)
    with pytest.raises(ValueError):
        plinear_moment(d, d, np.zeros(50), np.zeros(50), hc_type="HC1")


def test_interactive_moment_matches_aipw_formula():
    rng = np.random.default_rng(1)
    n = 300
    d = rng.binomial(1, 0.4, size=n).astype(float)
    mu0, mu1 = rng.normal(size=n), rng.normal(size=n) + 1.0
    p = rng.uniform(0.2, 0.8, size=n)
    y = np.where(d == 1, mu1, mu0) + rng.normal(size=n)
    psi = mu1 - mu0 + d * (y - mu1) / p - (1 - d) * (y - mu0) / (1 - p)
    est = interactive_moment(y, d, mu0, mu1, p)
    assert est.estimate == pytest.approx(psi.mean())
    assert est.se == pytest.approx(psi.std(ddof=1) / np.sqrt(n))
    assert est.n_trimmed == 0


def test_trimming_excludes_rather_than_clips():
    p = np.array([0.005, 0.2, 0.5, 0.8, 0.995, 0.5])
    assert trim_mask(p, (0.01, 0.99)).tolist() == [False, True, True, True, False, True]
    d = np.array([1.0, 0.0, 1.0, 0.0, 1.0, 1.0])
    y = np.array([10.0, 1.0, 2.0, 1.0, 10.0, 3.0])
    mu0, mu1 = np.ones(6), np.full(6, 2.0)
    est = interactive_moment(y, d, mu0, mu1, p, trim=(0.01, 0.99))
    keep = slice(1, 4)
    expected = np.concatenate([
        (mu1 - mu0 + d * (y - mu1) / p - (1 - d) * (y - mu0) / (1 - p))[keep],
        [1.0 + (3.0 - 2.0) / 0.5],
    ])
    assert est.n_trimmed == 2
    assert est.n_used == 4
    assert est.estimate == pytest.approx(expected.mean())


def test_everything_trimmed_is_degenerate():
    p = np.full(10, 0.999)
    with pytest.raises(DegenerateMomentError, match="after trimming"):
        interactive_moment(np.ones(10), np.ones(10), np.zeros(10), np.ones(10), p, trim=(0.01, 0.99))


def test_extreme_propensity_without_trim_is_degenerate():
    p = np.array([0.5, 1.0, 0.5])
    with pytest.raises(DegenerateMomentError):
        interactive_moment(np.ones(3), np.array([1.0, 1.0, 0.0]), np.zeros(3), np.ones(3), p)


def test_interactive_consistent_under_randomisation():
    X, y, d = _irm_inputs(n=2000, seed=4)
    table = estimate_nuisances(X, y, d, split(len(y), 2, seed=0), TrackingLearner(), model="interactive")
    est = compute_moment(table, y, d)
    assert abs(est.estimate - 1.0) < 4 * est.se
    assert est.se < 0.1


def test_compute_moment_rejects_incomplete_tables():
    table = NuisancePredictions(
        method="Forest", model="plinear",
        predictions={"y_hat": np.array([np.nan, 1.0]), "d_hat": np.array([0.0, 1.0])},
    )
    with pytest.raises(DegenerateMomentError) as excinfo:
        compute_moment(table, np.zeros(2), np.zeros(2))
    assert excinfo.value.method == "Forest"

"""
End-to-end tests of the repeated cross-fitting estimator.
"""

import warnings

import numpy as np
import pandas as pd
import pytest

from dmlkit import DMLConfig, DoubleML, double_ml
from dmlkit.data import CausalData, CausalDatasetGenerator, generate_irm_data, generate_plr_data
from dmlkit.exceptions import InvalidFoldCount, LearnerFitError
from dmlkit.inference.aggregate import ROW_LABELS
from dmlkit.inference.config import EnsembleConfig
from dmlkit.inference.learners import LEARNERS, Ridge

CONFOUNDERS = ["x1", "x2", "x3", "x4"]


class AlwaysFailingRidge(Ridge):
    def fit(self, X, y, task, fold=None):
        raise LearnerFitError(self.name, fold, "singular design")


def make_randomized_data(n=200, seed=0):
    gen = CausalDatasetGenerator(theta=1.0, beta_y=np.array([1.0, -0.5, 0.3, 0.0]), k=4, seed=seed)
    return gen.to_causal_data(n)


def make_irm_causal_data(n=600, sharpness=1.0, seed=3):
    df = generate_irm_data(n=n, propensity_sharpness=sharpness, random_state=seed)
    return CausalData(df=df, treatment="t", outcome="y", confounders=CONFOUNDERS)


def test_rlasso_plinear_scenario_table_layout():
    data = make_randomized_data()
    config = DMLConfig(methods=("RLasso",), model="plinear", n_folds=2, ite=2, random_state=0)
    dml = DoubleML(data, config)
    assert dml.state == "INIT"
    dml.fit()
    assert dml.state == "DONE"

    table = dml.table
    assert table.shape == (4, 2)
    assert list(table.index) == ROW_LABELS
    assert list(table.columns) == ["RLasso", "best"]
    np.testing.assert_array_equal(table["best"].to_numpy(), table["RLasso"].to_numpy())
    assert np.all(np.isfinite(table.to_numpy()))
    assert dml.results.best == {"mean": "RLasso", "median": "RLasso"}
    assert dml.results.n_successful_splits == 2
    assert dml.results.incomplete == []
    assert dml.results.failures == []


def test_same_seed_same_table():
    data = make_randomized_data(seed=1)
    config = DMLConfig(methods=("RLasso", "Ridge"), ite=3, random_state=42)
    a = double_ml(data, config)
    b = double_ml(data, config)
    pd.testing.assert_frame_equal(a.table, b.table)


def test_parallel_splits_match_sequential():
    data = make_randomized_data(seed=2)
    seq = double_ml(data, DMLConfig(methods=("RLasso",), ite=3, random_state=7, n_jobs=1))
    par = double_ml(data, DMLConfig(methods=("RLasso",), ite=3, random_state=7, n_jobs=2))
    pd.testing.assert_frame_equal(seq.table, par.table)
    pd.testing.assert_frame_equal(seq.splits, par.splits)


def test_plinear_estimate_is_close_to_truth():
    df = generate_plr_data(n=1000, theta=0.5, k=4, random_state=5)
    data = CausalData(df=df, treatment="t", outcome="y", confounders=CONFOUNDERS)
    res = double_ml(data, methods=("RLasso",), ite=3, random_state=0)
    est, se = res.table.loc["Mean ATE", "RLasso"], res.table.iloc[1]["RLasso"]
    assert abs(est - 0.5) < 4 * se


def test_interactive_with_trimming_reports_exclusions():
    data = make_irm_causal_data(sharpness=4.0)
    config = DMLConfig(
        methods=("Ridge",), model="interactive", trim=(0.1, 0.9), n_folds=2, ite=2, random_state=0,
    )
    res = double_ml(data, config)
    assert list(res.trimmed.columns) == ["Ridge"]
    assert res.trimmed["Ridge"].sum() > 0
    assert np.isfinite(res.table.loc["Mean ATE", "Ridge"])


def test_interactive_requires_binary_treatment():
    df = generate_plr_data(n=100)
    data = CausalData(df=df, treatment="t", outcome="y", confounders=CONFOUNDERS)
    with pytest.raises(ValueError, match="binary"):
        DoubleML(data, DMLConfig(methods=("RLasso",), model="interactive")).fit()


def test_failed_learner_is_isolated(monkeypatch):
    monkeypatch.setitem(LEARNERS, "Ridge", AlwaysFailingRidge)
    data = make_randomized_data(seed=4)
    config = DMLConfig(
        methods=("RLasso", "Ridge", "Ensemble"),
        ensemble=EnsembleConfig(methods=("RLasso", "Ridge")),
        ite=2,
        random_state=0,
    )
    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always")
        res = double_ml(data, config)

    categories = {w.category for w in caught}
    assert RuntimeWarning in categories
    assert UserWarning in categories
    assert any("Ridge" in str(w.message) for w in caught if w.category is RuntimeWarning)

    assert res.table["Ridge"].isna().all()
    assert res.n_splits["Ridge"] == 0
    assert res.incomplete == ["Ridge"]
    assert {f.method for f in res.failures} == {"Ridge"}
    assert {f.split for f in res.failures} == {1, 2}
    # the Ensemble falls back to its only complete member
    np.testing.assert_allclose(res.table["Ensemble"].to_numpy(), res.table["RLasso"].to_numpy())
    assert res.best["mean"] in {"RLasso", "Ensemble"}


def test_failed_learner_is_fatal_in_strict_mode(monkeypatch):
    monkeypatch.setitem(LEARNERS, "Ridge", AlwaysFailingRidge)
    data = make_randomized_data(seed=4)
    config = DMLConfig(methods=("RLasso", "Ridge"), ite=2, strict=True, random_state=0)
    with pytest.raises(LearnerFitError):
        double_ml(data, config)


def test_too_few_successful_splits_raise(monkeypatch):
    monkeypatch.setitem(LEARNERS, "Ridge", AlwaysFailingRidge)
    data = make_randomized_data(seed=4)
    with pytest.warns(RuntimeWarning):
        with pytest.raises(RuntimeError, match="splits succeeded"):
            double_ml(data, DMLConfig(methods=("Ridge",), ite=2, random_state=0))


def test_summary_adds_split_counts_and_marks_incomplete(monkeypatch):
    monkeypatch.setitem(LEARNERS, "Ridge", AlwaysFailingRidge)
    data = make_randomized_data(seed=4)
    with warnings.catch_warnings():
        warnings.simplefilter("ignore")
        res = double_ml(data, DMLConfig(methods=("RLasso", "Ridge"), ite=2, random_state=0))
    summary = res.summary()
    assert list(summary.index) == ROW_LABELS + ["splits"]
    assert list(summary.columns) == ["RLasso", "Ridge*", "best"]
    assert summary.loc["splits", "RLasso"] == 2
    assert summary.loc["splits", "Ridge*"] == 0
    # the table itself keeps plain names
    assert "Ridge" in res.table.columns


def test_dataframe_input_with_column_roles():
    df = make_randomized_data(seed=6).get_df()
    config = DMLConfig(
        methods=("RLasso",), outcome="y", treatment="t", confounders=CONFOUNDERS, random_state=0,
    )
    res = double_ml(df, config)
    assert res.table.shape == (4, 2)


def test_dataframe_input_without_roles_raises():
    df = make_randomized_data(seed=6).get_df()
    with pytest.raises(ValueError, match="outcome, treatment and confounders"):
        DoubleML(df, DMLConfig(methods=("RLasso",)))


def test_formulas_select_design_per_learner():
    data = make_randomized_data(seed=7)
    config = DMLConfig(
        methods=("RLasso", "Trees"), x="x1 + x2", xl="(x1 + x2 + x3)^2", ite=1, random_state=0,
    )
    dml = DoubleML(data, config)
    inputs = dml._prepare()
    assert inputs.designs["tree"].shape[1] == 2
    assert inputs.designs["linear"].shape[1] == 6
    dml.fit()
    assert np.isfinite(dml.table.loc["Mean ATE", "Trees"])


def test_more_folds_than_records_raise_before_fitting():
    data = make_randomized_data(n=20)
    with pytest.raises(InvalidFoldCount):
        double_ml(data, methods=("RLasso",), n_folds=25)


def test_results_before_fit_raise():
    dml = DoubleML(make_randomized_data(), DMLConfig(methods=("RLasso",)))
    with pytest.raises(RuntimeError, match="not fitted"):
        dml.table


def test_config_and_keywords_are_exclusive():
    with pytest.raises(TypeError):
        double_ml(make_randomized_data(), DMLConfig(methods=("RLasso",)), ite=3)

"""
Repeated cross-fitted DML over a set of nuisance learners.

Each of the ``ite`` splits draws its own fold assignment, cross-fits every
configured learner (plus the Ensemble), and solves the moment condition per
method. Splits share only read-only inputs and run as independent joblib
tasks; their result rows are aggregated with the mean and median rules once
all of them are back.
"""
from __future__ import annotations

import warnings
from dataclasses import dataclass, field
from typing import Any, Dict, List, NamedTuple, Optional, Union

import numpy as np
import pandas as pd
from joblib import Parallel, delayed
from tqdm.auto import tqdm

from dmlkit.data.causaldata import CausalData
from dmlkit.exceptions import DegenerateMomentError, LearnerFitError, LeakageError
from dmlkit.inference.aggregate import Aggregate, aggregate
from dmlkit.inference.config import DMLConfig
from dmlkit.inference.ensemble import ENSEMBLE, combine
from dmlkit.inference.folds import split
from dmlkit.inference.learners import make_learner
from dmlkit.inference.moments import compute_moment
from dmlkit.inference.nuisance import NuisancePredictions, estimate_nuisances

# run states
INIT, SPLIT, ESTIMATE, AGGREGATE, DONE = "INIT", "SPLIT", "ESTIMATE", "AGGREGATE", "DONE"


class Failure(NamedTuple):
    """A (split, fold, method) cell that could not be estimated."""
    split: int
    fold: Optional[int]
    method: Optional[str]
    reason: str


@dataclass
class SplitInputs:
    """Read-only arrays shared by all splits."""
    y: np.ndarray
    d: np.ndarray
    designs: Dict[str, pd.DataFrame]

    @property
    def n_obs(self) -> int:
        return int(self.y.shape[0])


@dataclass
class SplitResult:
    """
    Outcome of one sample split: per-method estimates and standard errors
    (NaN where missing), records excluded by trimming, and failures.
    """
    split: int
    estimates: Dict[str, float] = field(default_factory=dict)
    std_errors: Dict[str, float] = field(default_factory=dict)
    trimmed: Dict[str, int] = field(default_factory=dict)
    failures: List[Failure] = field(default_factory=list)
    fold_sizes: Optional[np.ndarray] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        """True when the split ran through and produced at least one estimate."""
        return self.error is None and bool(self.estimates)

    def as_row(self, methods: List[str]) -> pd.Series:
        """Estimates of all methods followed by their standard errors."""
        index = pd.MultiIndex.from_product([["estimate", "se"], methods])
        values = [self.estimates.get(m, np.nan) for m in methods] + [self.std_errors.get(m, np.nan) for m in methods]
        return pd.Series(values, index=index, name=self.split, dtype=float)


def run_split(split_id: int, seed: np.random.SeedSequence, inputs: SplitInputs, config: DMLConfig) -> SplitResult:
    """
    One SPLIT/ESTIMATE cycle: fold assignment, cross-fitting, moments.

    Learner and moment failures are recorded as missing cells unless
    ``config.strict`` is set.
    """
    folds = split(inputs.n_obs, config.n_folds, seed)
    learner_seed = int(seed.generate_state(1)[0])
    result = SplitResult(split=split_id, fold_sizes=folds.sizes)

    tables: Dict[str, NuisancePredictions] = {}
    for name in config.learners_to_fit:
        learner = make_learner(name, config.learner_arguments(name), random_state=learner_seed)
        table = estimate_nuisances(
            inputs.designs[learner.formula], inputs.y, inputs.d, folds, learner,
            model=config.model, fold_jobs=config.fold_jobs, strict=config.strict,
        )
        for err in table.errors:
            err.split = split_id
            result.failures.append(Failure(split_id, err.fold, name, err.reason))
        tables[name] = table

    if ENSEMBLE in config.methods:
        members = [m for m in config.ensemble.methods if tables[m].ok]
        try:
            tables[ENSEMBLE] = combine(tables, members, inputs.y, inputs.d, rule=config.ensemble.rule)
        except DegenerateMomentError as exc:
            if config.strict:
                raise
            result.failures.append(Failure(split_id, None, ENSEMBLE, exc.reason))

    for method in config.methods:
        table = tables.get(method)
        if table is None or not table.ok:
            continue
        try:
            moment = compute_moment(table, inputs.y, inputs.d, trim=config.trim, hc_type=config.hc_type)
        except DegenerateMomentError as exc:
            if config.strict:
                raise
            result.failures.append(Failure(split_id, None, method, exc.reason))
            continue
        result.estimates[method] = moment.estimate
        result.std_errors[method] = moment.se
        result.trimmed[method] = moment.n_trimmed
    return result


def _run_split_isolated(split_id, seed, inputs, config) -> SplitResult:
    try:
        return run_split(split_id, seed, inputs, config)
    except LeakageError:
        raise
    except (LearnerFitError, DegenerateMomentError, ValueError, ArithmeticError, RuntimeError) as exc:
        if config.strict:
            raise
        return SplitResult(split=split_id, error=f"{type(exc).__name__}: {exc}")


@dataclass
class DMLResults:
    """
    Aggregated output of a DML run.

    Attributes
    ----------
    table : pd.DataFrame
        Rows ``Mean ATE, se, Median ATE, se``; columns configured methods + ``best``.
    best : dict
        Method behind the ``best`` column for the ``"mean"`` and ``"median"`` rules.
    n_splits : pd.Series
        Successful splits per method.
    splits : pd.DataFrame
        One row per successful split: estimates then standard errors.
    trimmed : pd.DataFrame
        Records excluded by propensity trimming, split x method.
    failures : list of Failure
    incomplete : list of str
        Methods estimated on fewer than ``ite`` splits.
    """
    table: pd.DataFrame
    best: Dict[str, Optional[str]]
    n_splits: pd.Series
    splits: pd.DataFrame
    trimmed: pd.DataFrame
    failures: List[Failure]
    incomplete: List[str]
    ite: int

    @property
    def n_successful_splits(self) -> int:
        return int(len(self.splits))

    def summary(self) -> pd.DataFrame:
        """The output table with a ``splits`` row; incomplete methods are starred."""
        counts = self.n_splits.reindex(self.table.columns).astype(float)
        out = pd.concat([self.table, pd.DataFrame([counts.to_numpy()], index=["splits"], columns=self.table.columns)])
        return out.rename(columns={m: f"{m}*" for m in self.incomplete})


class DoubleML:
    """
    Double/debiased machine learning with repeated cross-fitting.

    Parameters
    ----------
    data : CausalData or pd.DataFrame
        Estimation sample. A DataFrame needs ``outcome``, ``treatment`` and
        ``confounders`` in the configuration.
    config : DMLConfig
        Explicit run configuration.

    Attributes
    ----------
    state : str
        ``INIT`` -> ``SPLIT`` -> ``ESTIMATE`` -> ``AGGREGATE`` -> ``DONE``.
    results_ : DMLResults or None

    Examples
    --------
    >>> from dmlkit.data import CausalDatasetGenerator
    >>> from dmlkit.inference import DMLConfig, DoubleML
    >>> cd = CausalDatasetGenerator(k=4, seed=1).to_causal_data(400)
    >>> dml = DoubleML(cd, DMLConfig(methods=("RLasso", "Forest"), ite=3, random_state=1)).fit()
    >>> dml.table  # doctest: +SKIP
    """

    def __init__(self, data: Union[CausalData, pd.DataFrame], config: DMLConfig) -> None:
        self.config = config
        self.data = self._as_causal_data(data, config)
        self.state = INIT
        self.split_results_: Optional[List[SplitResult]] = None
        self.results_: Optional[DMLResults] = None

    @staticmethod
    def _as_causal_data(data: Union[CausalData, pd.DataFrame], config: DMLConfig) -> CausalData:
        if isinstance(data, CausalData):
            return data
        if not isinstance(data, pd.DataFrame):
            raise TypeError("data must be a CausalData or a pandas DataFrame")
        if config.outcome is None or config.treatment is None or not config.confounders:
            raise ValueError("DataFrame input needs outcome, treatment and confounders in the configuration.")
        return CausalData(
            df=data,
            treatment=config.treatment,
            outcome=config.outcome,
            confounders=list(config.confounders),
            categorical=list(config.categorical) if config.categorical else None,
        )

    def _prepare(self) -> SplitInputs:
        config = self.config
        config.check_n_records(self.data.n_obs)
        if config.model == "interactive" and not self.data.is_binary_treatment():
            raise ValueError("The interactive model needs a binary 0/1 treatment.")

        y = self.data.target.to_numpy(dtype=float)
        d = self.data.treatment.to_numpy(dtype=float)
        kinds = {make_learner(name).formula for name in config.learners_to_fit}
        designs: Dict[str, pd.DataFrame] = {}
        if "tree" in kinds:
            designs["tree"] = self.data.design_matrix(config.x)
        if "linear" in kinds:
            designs["linear"] = self.data.design_matrix(config.xl or config.x)
        return SplitInputs(y=y, d=d, designs=designs)

    def fit(self) -> "DoubleML":
        """Run all splits and aggregate them."""
        config = self.config
        inputs = self._prepare()

        self.state = SPLIT
        seeds = np.random.SeedSequence(config.random_state).spawn(config.ite)

        self.state = ESTIMATE
        tasks = Parallel(n_jobs=config.n_jobs, backend=config.backend, return_as="generator")(
            delayed(_run_split_isolated)(i, seed, inputs, config) for i, seed in enumerate(seeds, start=1)
        )
        results = list(tqdm(tasks, total=config.ite, desc="splits", disable=not config.verbose))
        self.split_results_ = results

        self.state = AGGREGATE
        self.results_ = self._aggregate(results)
        self.state = DONE
        return self

    def _aggregate(self, results: List[SplitResult]) -> DMLResults:
        config = self.config
        methods = list(config.methods)
        failures: List[Failure] = []
        for res in results:
            if res.error is not None:
                failures.append(Failure(res.split, None, None, res.error))
            failures.extend(res.failures)
        for f in failures:
            warnings.warn(
                f"split {f.split}, fold {f.fold}, method {f.method}: {f.reason}",
                RuntimeWarning,
                stacklevel=3,
            )

        succeeded = sorted((r for r in results if r.ok), key=lambda r: r.split)
        if len(succeeded) < config.min_successful_splits:
            raise RuntimeError(
                f"Only {len(succeeded)} of {config.ite} splits succeeded "
                f"(min_successful_splits={config.min_successful_splits})."
            )
        rows = pd.DataFrame([r.as_row(methods) for r in succeeded])
        agg: Aggregate = aggregate(rows["estimate"], rows["se"], methods)

        incomplete = [m for m in methods if agg.n_splits[m] < config.ite]
        if incomplete:
            warnings.warn(
                f"Methods estimated on fewer than {config.ite} splits: "
                + ", ".join(f"{m} ({agg.n_splits[m]})" for m in incomplete),
                UserWarning,
                stacklevel=3,
            )
        trimmed = pd.DataFrame(
            [{m: r.trimmed.get(m, np.nan) for m in methods} for r in succeeded],
            index=pd.Index([r.split for r in succeeded], name="split"),
            columns=methods,
        )
        return DMLResults(
            table=agg.table,
            best=agg.best,
            n_splits=agg.n_splits,
            splits=rows,
            trimmed=trimmed,
            failures=failures,
            incomplete=incomplete,
            ite=config.ite,
        )

    def _check_fitted(self) -> DMLResults:
        if self.results_ is None:
            raise RuntimeError("DoubleML is not fitted yet; call fit() first.")
        return self.results_

    @property
    def results(self) -> DMLResults:
        return self._check_fitted()

    @property
    def table(self) -> pd.DataFrame:
        return self._check_fitted().table

    @property
    def summary(self) -> pd.DataFrame:
        return self._check_fitted().summary()


def double_ml(
    data: Union[CausalData, pd.DataFrame],
    config: Optional[DMLConfig] = None,
    **kwargs: Any,
) -> DMLResults:
    """
    Run repeated cross-fitted DML and return the aggregated results.

    Parameters
    ----------
    data : CausalData or pd.DataFrame
    config : DMLConfig, optional
        When omitted, a configuration is built from `kwargs`.
    **kwargs
        ``DMLConfig`` fields, used only when `config` is None.

    Returns
    -------
    DMLResults

    Examples
    --------
    >>> res = double_ml(cd, methods=("RLasso",), n_folds=2, ite=2)
    >>> res.table.shape
    (4, 2)
    """
    if config is None:
        config = DMLConfig(**kwargs)
    elif kwargs:
        raise TypeError("Pass either a DMLConfig or keyword options, not both.")
    return DoubleML(data, config).fit().results

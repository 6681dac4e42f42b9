"""
CausalData: an estimation sample with named outcome, treatment and covariate roles.
"""

import warnings
from typing import Dict, List, Optional, Union

import numpy as np
import pandas as pd
import pandas.api.types as pdtypes
from formulaic import model_matrix

Columns = Union[str, List[str]]


def _as_names(value: Optional[Columns]) -> List[str]:
    if value is None:
        return []
    names = [value] if isinstance(value, str) else list(value)
    # order-preserving de-duplication
    return list(dict.fromkeys(names))


class CausalData:
    """
    Estimation sample for DML: a pandas DataFrame restricted to the outcome,
    treatment and covariate columns, validated once on construction.

    Parameters
    ----------
    df : pd.DataFrame
        Source data. Used columns may not contain missing values.
    treatment : str
        Treatment column (binary 0/1 for the interactive model).
    outcome : str
        Outcome column.
    confounders : str or list of str, optional
        Covariates the nuisance functions condition on.
    categorical : str or list of str, optional
        Covariates to store as pandas ``category`` so formulas dummy-code them
        (e.g. a count of dependents). Non-numeric covariates are always
        categorical.

    Examples
    --------
    >>> from dmlkit.data import CausalDatasetGenerator
    >>> df = CausalDatasetGenerator(k=3, seed=0).generate(500)
    >>> cd = CausalData(df=df, treatment='t', outcome='y', confounders=['x1', 'x2', 'x3'])
    >>> cd.design_matrix('x1 + x2 + x3').shape
    (500, 3)
    """

    def __init__(
            self,
            df: pd.DataFrame,
            treatment: str,
            outcome: str,
            confounders: Optional[Columns] = None,
            categorical: Optional[Columns] = None,
    ):
        self._outcome = outcome
        self._treatment = treatment
        self._confounders = _as_names(confounders)
        declared = _as_names(categorical)

        stray = [c for c in declared if c not in self._confounders]
        if stray:
            raise ValueError(f"Columns {stray} declared categorical are not among the confounders.")

        self._check(df)

        self.df = df[self._used_columns].copy()
        for col in self._confounders:
            if col in declared or not pdtypes.is_numeric_dtype(self.df[col]):
                self.df[col] = self.df[col].astype("category")

    @property
    def _used_columns(self) -> List[str]:
        return [self._outcome, self._treatment] + self._confounders

    @property
    def _roles(self) -> Dict[str, str]:
        roles = {c: "confounder" for c in self._confounders}
        roles[self._treatment] = "treatment"
        roles[self._outcome] = "outcome"
        return roles

    def _check(self, df: pd.DataFrame) -> None:
        roles = self._roles
        missing = [c for c in self._used_columns if c not in df.columns]
        if missing:
            col = missing[0]
            raise ValueError(f"Column '{col}' specified as {roles[col]} does not exist in the DataFrame.")

        for col in self._used_columns:
            values = df[col]
            if values.isna().any():
                raise ValueError(f"Column '{col}' specified as {roles[col]} contains missing values.")
            if roles[col] != "confounder" and not pdtypes.is_numeric_dtype(values):
                raise ValueError(f"Column '{col}' specified as {roles[col]} must contain only int or float values.")
            if values.nunique(dropna=True) <= 1:
                raise ValueError(
                    f"Column '{col}' specified as {roles[col]} is constant (has zero variance), "
                    f"which leaves nothing to estimate."
                )

        # two roles filled by the same data usually means a copy-paste mistake
        used = self._used_columns
        for i, left in enumerate(used):
            for right in used[i + 1:]:
                # object arrays: category columns with different levels stay comparable
                if np.array_equal(df[left].to_numpy(dtype=object), df[right].to_numpy(dtype=object)):
                    raise ValueError(
                        f"Columns '{left}' ({roles[left]}) and '{right}' ({roles[right]}) "
                        f"have identical values."
                    )

        n_dup = int(df[used].duplicated().sum())
        if n_dup:
            warnings.warn(
                f"Found {n_dup} duplicate rows out of {len(df)} total rows in the DataFrame. "
                f"Cross-fitting treats them as independent records.",
                UserWarning,
                stacklevel=3,
            )

    @property
    def target(self) -> pd.Series:
        """The outcome column."""
        return self.df[self._outcome]

    @property
    def outcome(self) -> pd.Series:
        return self.target

    @property
    def treatment(self) -> pd.Series:
        return self.df[self._treatment]

    @property
    def confounders(self) -> List[str]:
        """Covariate column names."""
        return list(self._confounders)

    @property
    def categorical(self) -> List[str]:
        """Covariates stored with ``category`` dtype."""
        return [c for c in self._confounders if isinstance(self.df[c].dtype, pd.CategoricalDtype)]

    @property
    def n_obs(self) -> int:
        return len(self.df)

    @property
    def default_formula(self) -> str:
        """Additive formula over all confounders."""
        return " + ".join(self._confounders)

    def is_binary_treatment(self) -> bool:
        values = np.unique(self.treatment.to_numpy(dtype=float))
        return values.size == 2 and set(values.tolist()) == {0.0, 1.0}

    def design_matrix(self, formula: Optional[str] = None) -> pd.DataFrame:
        """
        Build the covariate design matrix for a formula over the confounders.

        Parameters
        ----------
        formula : str, optional
            Right-hand side formula in formulaic syntax, e.g. ``"a + b + c"`` or
            ``"(a + b + c)^2"`` for all pairwise interactions. Categorical
            columns are dummy coded against their first level. Defaults to the
            additive formula over all confounders.

        Returns
        -------
        pd.DataFrame
            One row per record (positional ``RangeIndex``), intercept dropped.
        """
        formula = formula or self.default_formula
        if not formula:
            raise ValueError("CausalData must include non-empty confounders to build a design matrix.")
        # R-style power operator
        formula = formula.replace("^", "**")
        frame = self.df[self._confounders].reset_index(drop=True)
        mm = model_matrix(formula, frame, na_action="raise")
        X = pd.DataFrame(np.asarray(mm, dtype=float), columns=list(mm.columns))
        return X.drop(columns=[c for c in X.columns if c == "Intercept"])

    def get_df(
            self,
            columns: Optional[List[str]] = None,
            include_treatment: bool = True,
            include_target: bool = True,
            include_confounders: bool = True,
    ) -> pd.DataFrame:
        """
        Copy of the stored frame restricted to the requested columns.

        Role flags add the outcome, covariates and treatment (in that order)
        after any explicitly listed `columns`. With no columns and every flag
        off, the whole frame is returned.
        """
        flags = [
            (include_target, [self._outcome]),
            (include_confounders, self._confounders),
            (include_treatment, [self._treatment]),
        ]
        if columns is None and not any(on for on, _ in flags):
            return self.df.copy()
        wanted = list(columns or [])
        for on, names in flags:
            if on:
                wanted.extend(names)
        wanted = list(dict.fromkeys(wanted))
        unknown = [c for c in wanted if c not in self.df.columns]
        if unknown:
            raise ValueError(f"Column '{unknown[0]}' does not exist in the DataFrame.")
        return self.df[wanted].copy()

    def __repr__(self) -> str:
        return (
            f"CausalData(n_obs={self.n_obs}, treatment='{self._treatment}', "
            f"outcome='{self._outcome}', confounders={self._confounders}, "
            f"categorical={self.categorical})"
        )

"""
Synthetic data-generating processes with known nuisance functions.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

import numpy as np
import pandas as pd
from scipy.optimize import brentq

from dmlkit.data.causaldata import CausalData

GROUND_TRUTH_COLUMNS = ("m", "l", "mu0", "mu1", "cate")


def _sigmoid(z):
    """
    Numerically stable sigmoid: 1 / (1 + exp(-z)).

    Parameters
    ----------
    z : array-like

    Returns
    -------
    np.ndarray or float
    """
    z_arr = np.asarray(z, dtype=float)
    out = np.empty_like(z_arr, dtype=float)
    pos_mask = z_arr >= 0
    neg_mask = ~pos_mask
    out[pos_mask] = 1.0 / (1.0 + np.exp(-z_arr[pos_mask]))
    # exp(z) / (1 + exp(z)) avoids overflow for large negative z
    ez = np.exp(z_arr[neg_mask])
    out[neg_mask] = ez / (1.0 + ez)
    if out.ndim == 0:
        return float(out)
    return out


@dataclass(slots=True)
class CausalDatasetGenerator:
    """
    Generate synthetic causal datasets with known nuisance functions.

    **Treatment**
      treatment_type = "binary":
          P(T=1 | X) = sigmoid(alpha_t + s * f_t(X)),  f_t(X) = X @ beta_t + g_t(X)
      treatment_type = "continuous":
          T = alpha_t + f_t(X) + V,  V ~ N(0, sigma_t^2)

    **Outcome** (partially linear in T)
      Y = alpha_y + f_y(X) + theta * T + eps,  f_y(X) = X @ beta_y + g_y(X),  eps ~ N(0, sigma_y^2)

    **Returned columns**
      - y, t, <confounder columns>
      - m   : E[T | X] (the propensity for binary treatment)
      - l   : E[Y | X] = alpha_y + f_y(X) + theta * m
      - mu0 : E[Y | T=0, X]
      - mu1 : E[Y | T=1, X]
      - cate: mu1 - mu0 (equal to theta)

    Parameters
    ----------
    theta : float, default=1.0
        Constant treatment effect.
    beta_y, beta_t : array-like of shape (k,), optional
        Linear coefficients of the numeric design in the outcome and treatment scores.
    g_y, g_t : callable, optional
        Nonlinear functions of the numeric design added to the outcome / treatment score.
    alpha_y, alpha_t : float, default=0.0
        Intercepts. If `target_t_rate` is set, `alpha_t` is calibrated to it.
    sigma_y : float, default=1.0
        Outcome noise; ``0`` gives a noiseless outcome.
    sigma_t : float, default=1.0
        Treatment noise for continuous treatment.
    treatment_type : {"binary", "continuous"}, default="binary"
    confounder_specs : list of dict, optional
        Each spec is one of:
          {"name": str, "dist": "normal",   "mu": float, "sd": float}
          {"name": str, "dist": "uniform",  "a": float,  "b": float}
          {"name": str, "dist": "bernoulli","p": float}
          {"name": str, "dist": "categorical", "categories": list, "probs": list}
        Categorical columns are returned raw (one column) and enter the
        scores through their one-hot encoding, all levels except the first.
    k : int, default=5
        Number of independent N(0,1) confounders when `confounder_specs` is None.
    target_t_rate : float in (0,1), optional
        Desired mean propensity for binary treatment.
    propensity_sharpness : float, default=1.0
        Scales the X-driven treatment score; large values push propensities to 0/1.
    seed : int, optional

    Examples
    --------
    >>> gen = CausalDatasetGenerator(theta=2.0, beta_y=np.array([1.0, -0.5]),
    ...                              beta_t=np.array([0.8, 0.3]), k=2, seed=42)
    >>> df = gen.generate(1_000)
    """
    theta: float = 1.0
    beta_y: Optional[np.ndarray] = None
    beta_t: Optional[np.ndarray] = None
    g_y: Optional[Callable[[np.ndarray], np.ndarray]] = None
    g_t: Optional[Callable[[np.ndarray], np.ndarray]] = None
    alpha_y: float = 0.0
    alpha_t: float = 0.0
    sigma_y: float = 1.0
    sigma_t: float = 1.0
    treatment_type: str = "binary"

    confounder_specs: Optional[List[Dict[str, Any]]] = None
    k: int = 5

    target_t_rate: Optional[float] = None
    propensity_sharpness: float = 1.0
    seed: Optional[int] = None

    rng: np.random.Generator = field(init=False, repr=False)

    def __post_init__(self):
        if self.treatment_type not in {"binary", "continuous"}:
            raise ValueError("treatment_type must be 'binary' or 'continuous'.")
        self.rng = np.random.default_rng(self.seed)

    # ---------- Confounder sampling ----------

    def _sample_X(self, n: int) -> Tuple[pd.DataFrame, np.ndarray]:
        """Return the raw confounder frame and the numeric design used by the scores."""
        if self.confounder_specs is None:
            X = self.rng.normal(size=(n, self.k))
            frame = pd.DataFrame(X, columns=[f"x{i+1}" for i in range(self.k)])
            return frame, X

        raw: Dict[str, np.ndarray] = {}
        design = []
        for spec in self.confounder_specs:
            name = spec.get("name") or f"x{len(raw)+1}"
            dist = str(spec.get("dist", "normal")).lower()
            if dist == "normal":
                col = self.rng.normal(spec.get("mu", 0.0), spec.get("sd", 1.0), size=n)
            elif dist == "uniform":
                col = self.rng.uniform(spec.get("a", 0.0), spec.get("b", 1.0), size=n)
            elif dist == "bernoulli":
                col = self.rng.binomial(1, spec.get("p", 0.5), size=n).astype(float)
            elif dist == "categorical":
                categories = spec.get("categories", [0, 1, 2])
                col = self.rng.choice(categories, p=spec.get("probs", None), size=n)
                raw[name] = col
                for c in categories[1:]:
                    design.append((col == c).astype(float))
                continue
            else:
                raise ValueError(f"Unknown dist: {dist}")
            raw[name] = col
            design.append(col.astype(float))
        X = np.column_stack(design) if design else np.empty((n, 0))
        return pd.DataFrame(raw), X

    # ---------- Scores ----------

    @staticmethod
    def _linear(X: np.ndarray, beta: Optional[np.ndarray], label: str) -> np.ndarray:
        if beta is None:
            return np.zeros(X.shape[0], dtype=float)
        b = np.asarray(beta, dtype=float).reshape(-1)
        if b.shape[0] != X.shape[1]:
            raise ValueError(f"{label} shape {b.shape} is incompatible with X shape {X.shape}")
        return X @ b

    def _treatment_score(self, X: np.ndarray) -> np.ndarray:
        score = self._linear(X, self.beta_t, "beta_t")
        if self.g_t is not None:
            score = score + np.asarray(self.g_t(X), dtype=float)
        return float(self.propensity_sharpness) * score

    def _outcome_baseline(self, X: np.ndarray) -> np.ndarray:
        base = self.alpha_y + self._linear(X, self.beta_y, "beta_y")
        if self.g_y is not None:
            base = base + np.asarray(self.g_y(X), dtype=float)
        return base

    def _calibrate_alpha_t(self, X: np.ndarray, target: float) -> float:
        """Intercept whose mean propensity on `X` equals `target` (Brent root search)."""
        score = self._treatment_score(X)

        def gap(a: float) -> float:
            return float(_sigmoid(a + score).mean() - target)

        lo, hi = -50.0, 50.0
        if gap(lo) * gap(hi) > 0:
            # rate out of reach: take the closer end
            return lo if abs(gap(lo)) < abs(gap(hi)) else hi
        return float(brentq(gap, lo, hi, xtol=1e-10))

    # ---------- Public API ----------

    def generate(self, n: int) -> pd.DataFrame:
        """
        Draw a synthetic dataset of size `n`.

        Returns
        -------
        pandas.DataFrame
            Columns ``y``, ``t``, the confounders, then the ground truth columns
            ``m``, ``l``, ``mu0``, ``mu1``, ``cate``.
        """
        frame, X = self._sample_X(n)

        if self.treatment_type == "binary":
            if self.target_t_rate is not None:
                self.alpha_t = self._calibrate_alpha_t(X, self.target_t_rate)
            m = _sigmoid(self.alpha_t + self._treatment_score(X))
            T = self.rng.binomial(1, m).astype(float)
        else:
            m = self.alpha_t + self._treatment_score(X)
            T = m + self.rng.normal(0.0, self.sigma_t, size=n)

        base = self._outcome_baseline(X)
        noise = self.rng.normal(0.0, self.sigma_y, size=n) if self.sigma_y > 0 else np.zeros(n)
        Y = base + self.theta * T + noise

        df = pd.DataFrame({"y": Y, "t": T})
        for name in frame.columns:
            df[name] = frame[name].to_numpy()
        df["m"] = m
        df["l"] = base + self.theta * m
        df["mu0"] = base
        df["mu1"] = base + self.theta
        df["cate"] = df["mu1"] - df["mu0"]
        return df

    def to_causal_data(
        self,
        n: int,
        confounders: Optional[Union[str, List[str]]] = None,
        categorical: Optional[Union[str, List[str]]] = None,
    ) -> CausalData:
        """
        Generate a dataset and wrap it in a CausalData object.

        Confounders default to every generated covariate column; categorical
        specs are typed as categorical automatically.
        """
        df = self.generate(n)
        if confounders is None:
            exclude = {"y", "t", *GROUND_TRUTH_COLUMNS}
            confounder_cols = [c for c in df.columns if c not in exclude]
        elif isinstance(confounders, str):
            confounder_cols = [confounders]
        else:
            confounder_cols = list(confounders)
        if categorical is None and self.confounder_specs is not None:
            categorical = [
                s["name"] for s in self.confounder_specs
                if str(s.get("dist", "")).lower() == "categorical" and s.get("name") in confounder_cols
            ]
        return CausalData(df=df, treatment="t", outcome="y", confounders=confounder_cols, categorical=categorical)


def generate_plr_data(
    n: int = 500,
    theta: float = 0.5,
    k: int = 4,
    sigma_y: float = 1.0,
    random_state: Optional[int] = 42,
) -> pd.DataFrame:
    """
    Partially linear DGP with continuous treatment and linear nuisances.

    ``t = X @ beta_t + v`` and ``y = theta * t + X @ beta_y + eps``.
    """
    beta_t = np.linspace(0.8, 0.2, k)
    beta_y = np.linspace(-0.5, 1.0, k)
    gen = CausalDatasetGenerator(
        theta=theta, beta_y=beta_y, beta_t=beta_t, sigma_y=sigma_y,
        treatment_type="continuous", k=k, seed=random_state,
    )
    return gen.generate(n)


def generate_irm_data(
    n: int = 1000,
    theta: float = 1.0,
    k: int = 4,
    randomized: bool = False,
    propensity_sharpness: float = 1.0,
    random_state: Optional[int] = 42,
) -> pd.DataFrame:
    """
    Binary-treatment DGP with constant effect `theta`.

    With ``randomized=True`` treatment is a fair coin independent of X.
    """
    beta_t = None if randomized else np.linspace(0.6, -0.4, k)
    beta_y = np.linspace(1.0, -0.5, k)
    gen = CausalDatasetGenerator(
        theta=theta, beta_y=beta_y, beta_t=beta_t, k=k,
        g_y=lambda X: np.sin(X[:, 0]),
        propensity_sharpness=propensity_sharpness, seed=random_state,
    )
    return gen.generate(n)

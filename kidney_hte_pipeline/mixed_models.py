"""Piecewise-linear mixed models for eGFR slopes and the snapshots consumed by the bootstrap."""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass, fields

import numpy as np
import pandas as pd
import statsmodels.formula.api as smf
from statsmodels.regression.mixed_linear_model import MixedLMParams
from statsmodels.tools.sm_exceptions import ConvergenceWarning

from .cohort import Stratifier
from .errors import DegenerateSubgroupError, ModelConvergenceError

SLOPE_FORMULA = "value ~ clamped_time * treatment + spline_time * treatment"
RANDOM_EFFECTS_FORMULA = "~ spline_time + spline_time:treatment"

# statsmodels/patsy term name for each FixedEffects field
_FIXED_TERM_NAMES = {
    "intercept": "Intercept",
    "clamped_time": "clamped_time",
    "treatment": "treatment",
    "clamped_time_x_treatment": "clamped_time:treatment",
    "spline_time": "spline_time",
    "spline_time_x_treatment": "spline_time:treatment",
}

# column order of FittedModelSnapshot.random_cov / random_effects
RANDOM_INTERCEPT, RANDOM_CHRONIC, RANDOM_CHRONIC_X_TREATMENT = 0, 1, 2


def _free_pattern(k_fe: int) -> MixedLMParams:
    """Free-parameter mask with the chronic x chronic-by-treatment Cholesky entry held at zero.

    For treated participants the two chronic random-effect columns are identical and for controls
    the interaction column is zero, so that one entry is not identified from the data.
    """
    cov_re = np.ones((3, 3))
    cov_re[RANDOM_CHRONIC, RANDOM_CHRONIC_X_TREATMENT] = 0.0
    cov_re[RANDOM_CHRONIC_X_TREATMENT, RANDOM_CHRONIC] = 0.0
    return MixedLMParams.from_components(fe_params=np.ones(k_fe), cov_re=cov_re)


@dataclass(frozen=True)
class FixedEffects:
    intercept: float
    clamped_time: float
    treatment: float
    clamped_time_x_treatment: float
    spline_time: float
    spline_time_x_treatment: float

    @classmethod
    def field_names(cls) -> list[str]:
        return [f.name for f in fields(cls)]

    @classmethod
    def from_array(cls, values) -> "FixedEffects":
        arr = np.asarray(values, dtype=float)
        if arr.shape != (len(cls.field_names()),):
            raise ValueError(f"Expected {len(cls.field_names())} fixed effects, got shape {arr.shape}")
        return cls(*[float(v) for v in arr])

    @classmethod
    def from_params(cls, params: pd.Series) -> "FixedEffects":
        return cls(**{name: float(params[term]) for name, term in _FIXED_TERM_NAMES.items()})

    def as_array(self) -> np.ndarray:
        return np.array([getattr(self, name) for name in self.field_names()], dtype=float)


def _readonly(values, ndim: int) -> np.ndarray:
    arr = np.array(values, dtype=float, copy=True)
    if arr.ndim != ndim:
        raise ValueError(f"Expected a {ndim}-d array, got shape {arr.shape}")
    arr.setflags(write=False)
    return arr


@dataclass(frozen=True)
class FittedModelSnapshot:
    """Everything a replicate needs from one fitted mixed model.

    `fixed_cov` is aligned with `FixedEffects.field_names()`. `random_cov` and the columns of
    `random_effects` are ordered (intercept, chronic slope, chronic slope x treatment).
    `random_effects` holds the per-participant predicted deviations used for the point estimate.
    """

    label: str
    fixed_effects: FixedEffects
    fixed_cov: np.ndarray
    random_cov: np.ndarray
    random_effects: np.ndarray
    participant_ids: tuple = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "fixed_cov", _readonly(self.fixed_cov, 2))
        object.__setattr__(self, "random_cov", _readonly(self.random_cov, 2))
        object.__setattr__(self, "random_effects", _readonly(self.random_effects, 2))
        k_fe = len(FixedEffects.field_names())
        if self.fixed_cov.shape != (k_fe, k_fe):
            raise ValueError(f"{self.label}: fixed_cov must be {k_fe}x{k_fe}, got {self.fixed_cov.shape}")
        if self.random_cov.shape != (3, 3):
            raise ValueError(f"{self.label}: random_cov must be 3x3, got {self.random_cov.shape}")
        if self.random_effects.shape[1] != 3:
            raise ValueError(f"{self.label}: random_effects must have 3 columns, got {self.random_effects.shape}")

    @property
    def n_participants(self) -> int:
        return int(self.random_effects.shape[0])


def annualized_slope(acute, chronic, config: dict):
    """Total annual slope from the acute and chronic treatment interactions (per-day scale)."""
    return float(config["days_per_year"]) * (
        float(config["acute_weight"]) * np.asarray(acute, dtype=float)
        + float(config["chronic_weight"]) * np.asarray(chronic, dtype=float)
    )


def participant_slopes(snapshot: FittedModelSnapshot, config: dict) -> np.ndarray:
    """Per-participant annualized slope difference from fixed effects plus predicted deviations."""
    fe = snapshot.fixed_effects
    chronic = fe.spline_time_x_treatment + snapshot.random_effects[:, RANDOM_CHRONIC_X_TREATMENT]
    acute = np.full(snapshot.n_participants, fe.clamped_time_x_treatment)
    return annualized_slope(acute, chronic, config)


def fit_slope_model(long_df: pd.DataFrame, label: str, config: dict) -> FittedModelSnapshot:
    id_col = config["id_col"]
    if long_df.empty:
        raise DegenerateSubgroupError(f"{label}: no longitudinal rows to fit.")
    n_arms = long_df["treatment"].nunique()
    if n_arms < 2:
        raise DegenerateSubgroupError(f"{label}: only {n_arms} treatment arm(s) present in longitudinal data.")

    model = smf.mixedlm(
        SLOPE_FORMULA,
        data=long_df,
        groups=long_df[id_col],
        re_formula=RANDOM_EFFECTS_FORMULA,
    )
    logging.info(
        "Fitting slope model %s: rows=%s participants=%s method=%s",
        label,
        len(long_df),
        long_df[id_col].nunique(),
        config["mixed_model_method"],
    )
    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always", ConvergenceWarning)
        try:
            result = model.fit(
                reml=bool(config["mixed_model_reml"]),
                method=config["mixed_model_method"],
                maxiter=int(config["mixed_model_maxiter"]),
                free=_free_pattern(model.k_fe),
            )
        except (np.linalg.LinAlgError, ValueError) as exc:
            raise ModelConvergenceError(f"{label}: mixed model fit failed: {exc}") from exc
    for w in caught:
        logging.warning("%s: %s", label, w.message)

    if not getattr(result, "converged", False):
        raise ModelConvergenceError(
            f"{label}: mixed model did not converge with method={config['mixed_model_method']}"
        )

    fixed_effects = FixedEffects.from_params(result.fe_params)
    terms = [_FIXED_TERM_NAMES[name] for name in FixedEffects.field_names()]
    fixed_cov = result.cov_params().loc[terms, terms].to_numpy(dtype=float)
    random_cov = np.asarray(result.cov_re, dtype=float)
    if not (np.all(np.isfinite(fixed_cov)) and np.all(np.isfinite(random_cov))):
        raise ModelConvergenceError(f"{label}: non-finite covariance estimates.")

    # exog_re_names follow RANDOM_EFFECTS_FORMULA order, with the intercept renamed to the group label.
    re_names = list(model.data.exog_re_names)
    try:
        predicted = result.random_effects
    except ValueError as exc:
        raise ModelConvergenceError(f"{label}: cannot predict random effects: {exc}") from exc
    participant_ids = tuple(predicted.keys())
    random_effects = np.vstack([predicted[pid][re_names].to_numpy(dtype=float) for pid in participant_ids])

    return FittedModelSnapshot(
        label=label,
        fixed_effects=fixed_effects,
        fixed_cov=fixed_cov,
        random_cov=random_cov,
        random_effects=random_effects,
        participant_ids=participant_ids,
    )


def fit_stratified_slope_models(
    longitudinal: pd.DataFrame,
    stratifier: Stratifier,
    config: dict,
) -> tuple[FittedModelSnapshot, dict[int, FittedModelSnapshot]]:
    """Fit the overall model and one model per stratum level on observed data."""
    working = longitudinal.loc[longitudinal[stratifier.stratum_col].notna()]
    overall = fit_slope_model(working, f"{stratifier.name}:overall", config)
    per_level: dict[int, FittedModelSnapshot] = {}
    for level in range(1, int(config["n_strata"]) + 1):
        sub = working.loc[working[stratifier.stratum_col].eq(level).fillna(False).astype(bool)]
        per_level[level] = fit_slope_model(sub, f"{stratifier.name}:stratum_{level}", config)
    return overall, per_level

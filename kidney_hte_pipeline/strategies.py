"""Effect-estimation strategies: overall plus per-stratum treatment effects.

Each strategy returns a vector ``[overall, stratum 1, ..., stratum k]`` from
``point_estimate()`` on observed data and from ``draw_replicate(seed)`` on one bootstrap draw.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol

import numpy as np
import pandas as pd
from lifelines import KaplanMeierFitter
from lifelines.utils import restricted_mean_survival_time

from .cohort import OutcomeSpec, Stratifier
from .errors import DataIntegrityError, DegenerateSubgroupError
from .mixed_models import (
    RANDOM_CHRONIC_X_TREATMENT,
    FittedModelSnapshot,
    FixedEffects,
    annualized_slope,
    participant_slopes,
)


class EffectStrategy(Protocol):
    effect_type: str
    levels: tuple[int, ...]

    def point_estimate(self) -> np.ndarray: ...

    def draw_replicate(self, seed: int) -> np.ndarray: ...


def _rmst(durations: np.ndarray, events: np.ndarray, tau: float) -> float:
    kmf = KaplanMeierFitter()
    kmf.fit(durations=durations, event_observed=events)
    return float(restricted_mean_survival_time(kmf, t=tau))


def rmst_difference(df: pd.DataFrame, time_col: str, status_col: str, arm_col: str, tau: float, label: str) -> float:
    """Unadjusted RMST(treatment) - RMST(control) truncated at tau, on complete cases of df."""
    working = df[[time_col, status_col, arm_col]].dropna()
    if working.empty:
        raise DegenerateSubgroupError(f"{label}: no complete rows.")
    arms = working[arm_col].astype(int)
    if set(arms.unique()) != {0, 1}:
        raise DegenerateSubgroupError(f"{label}: treatment arms present={sorted(arms.unique().tolist())}; need both 0 and 1.")
    events = working[status_col].astype(int).to_numpy()
    if events.sum() == 0:
        raise DegenerateSubgroupError(f"{label}: zero events.")

    durations = working[time_col].astype(float).to_numpy()
    treated = (arms == 1).to_numpy()
    return _rmst(durations[treated], events[treated], tau) - _rmst(durations[~treated], events[~treated], tau)


@dataclass
class RMSTDifferenceStrategy:
    """Nonparametric bootstrap of the RMST difference; stratum labels travel with resampled rows."""

    cohort: pd.DataFrame
    outcome: OutcomeSpec
    stratifier: Stratifier
    treatment_col: str
    horizon_days: float
    levels: tuple[int, ...] = (1, 2, 3, 4)
    effect_type: str = field(default="rmst_difference", init=False)

    def __post_init__(self) -> None:
        cols = [self.outcome.time_col, self.outcome.status_col, self.treatment_col, self.stratifier.stratum_col]
        missing = [c for c in cols if c not in self.cohort.columns]
        if missing:
            raise DataIntegrityError(f"{self.outcome.name}/{self.stratifier.name}: columns missing: {', '.join(missing)}")
        self.cohort = self.cohort[cols].reset_index(drop=True)

    def estimate(self, cohort: pd.DataFrame) -> np.ndarray:
        time_col, status_col = self.outcome.time_col, self.outcome.status_col
        stratum_col = self.stratifier.stratum_col
        label = f"{self.outcome.name}/{self.stratifier.name}"
        values = [rmst_difference(cohort, time_col, status_col, self.treatment_col, self.horizon_days, f"{label}/overall")]
        for level in self.levels:
            sub = cohort.loc[cohort[stratum_col].eq(level).fillna(False).astype(bool)]
            values.append(
                rmst_difference(sub, time_col, status_col, self.treatment_col, self.horizon_days, f"{label}/stratum {level}")
            )
        return np.asarray(values, dtype=float)

    def point_estimate(self) -> np.ndarray:
        return self.estimate(self.cohort)

    def draw_replicate(self, seed: int) -> np.ndarray:
        rng = np.random.default_rng(seed)
        n = len(self.cohort)
        idx = rng.integers(0, n, size=n)
        return self.estimate(self.cohort.iloc[idx])


@dataclass
class SlopeDifferenceStrategy:
    """Parametric bootstrap of the annualized slope difference from per-stratum model snapshots.

    The overall figure pools participants across strata, both on observed data and in each draw.
    """

    strata: dict[int, FittedModelSnapshot]
    days_per_year: float = 365.0
    acute_weight: float = 4 / 84
    chronic_weight: float = 80 / 84
    effect_type: str = field(default="slope_difference", init=False)

    @property
    def levels(self) -> tuple[int, ...]:
        return tuple(sorted(self.strata))

    def _slope_config(self) -> dict:
        return {
            "days_per_year": self.days_per_year,
            "acute_weight": self.acute_weight,
            "chronic_weight": self.chronic_weight,
        }

    def point_estimate(self) -> np.ndarray:
        cfg = self._slope_config()
        per_level = [participant_slopes(self.strata[level], cfg) for level in self.levels]
        pooled = float(np.mean(np.concatenate(per_level)))
        return np.asarray([pooled, *[float(np.mean(s)) for s in per_level]], dtype=float)

    def draw_replicate(self, seed: int) -> np.ndarray:
        rng = np.random.default_rng(seed)
        cfg = self._slope_config()
        per_level: list[float] = []
        pooled: list[np.ndarray] = []
        for level in self.levels:
            snap = self.strata[level]
            fe = FixedEffects.from_array(rng.multivariate_normal(snap.fixed_effects.as_array(), snap.fixed_cov))
            deviations = rng.multivariate_normal(np.zeros(3), snap.random_cov, size=snap.n_participants)
            slopes = annualized_slope(
                fe.clamped_time_x_treatment,
                fe.spline_time_x_treatment + deviations[:, RANDOM_CHRONIC_X_TREATMENT],
                cfg,
            )
            per_level.append(float(np.mean(slopes)))
            pooled.append(slopes)
        return np.asarray([float(np.mean(np.concatenate(pooled))), *per_level], dtype=float)

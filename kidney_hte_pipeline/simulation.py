"""Synthetic trial data for mock runs and tests."""

from __future__ import annotations

import numpy as np
import pandas as pd

from .scores import egfr_ckd_epi

VISIT_DAYS = [0, 120, 240, 365, 730, 1095, 1460, 1825, 2190, 2555]


def _exponential_outcome(
    rng: np.random.Generator,
    treatment: np.ndarray,
    *,
    control_rate_per_year: float,
    hazard_ratio: float,
    censor_days: np.ndarray,
) -> tuple[np.ndarray, np.ndarray]:
    rate_per_day = control_rate_per_year / 365.0 * np.where(treatment == 1, hazard_ratio, 1.0)
    event_days = rng.exponential(1.0 / rate_per_day)
    days = np.minimum(event_days, censor_days)
    return np.round(days, 1), (event_days <= censor_days).astype(int)


def simulate_trial_cohort(n: int = 1000, seed: int = 42) -> pd.DataFrame:
    """One row per participant with covariates, a 1:1 randomized arm, and three outcomes."""
    rng = np.random.default_rng(seed)
    treatment = np.zeros(n, dtype=int)
    treatment[rng.permutation(n)[: n // 2]] = 1

    age = np.clip(rng.normal(62.0, 6.5, n), 40, 80).round(1)
    sex = np.where(rng.random(n) < 0.62, "Male", "Female")
    serum_creatinine = np.clip(rng.lognormal(np.log(0.9), 0.25, n), 0.4, 3.5).round(2)
    uacr = np.clip(rng.lognormal(np.log(15.0), 1.2, n), 0.5, 5000).round(1)
    censor_days = rng.uniform(3 * 365, 8 * 365, n)

    kidney_days, kidney_event = _exponential_outcome(
        rng, treatment, control_rate_per_year=0.05, hazard_ratio=0.8, censor_days=censor_days
    )
    death_days, death_event = _exponential_outcome(
        rng, treatment, control_rate_per_year=0.03, hazard_ratio=1.2, censor_days=censor_days
    )
    cv_days, cv_event = _exponential_outcome(
        rng, treatment, control_rate_per_year=0.015, hazard_ratio=1.3, censor_days=censor_days
    )

    cohort = pd.DataFrame(
        {
            "participant_id": np.arange(1, n + 1),
            "treatment": treatment,
            "age": age,
            "sex": sex,
            "serum_creatinine": serum_creatinine,
            "uacr": uacr,
            "kidney_composite_days": kidney_days,
            "kidney_composite_event": kidney_event,
            "death_days": death_days,
            "death_event": death_event,
            "cv_death_days": cv_days,
            "cv_death_event": cv_event,
        }
    )
    cohort["egfr"] = egfr_ckd_epi(cohort["serum_creatinine"], cohort["age"], cohort["sex"]).round(2)
    return cohort


def simulate_longitudinal(
    cohort: pd.DataFrame,
    seed: int = 43,
    *,
    knot_days: float = 165.0,
    acute_treatment_effect: float = -3.0,
    chronic_treatment_effect_per_year: float = 0.6,
) -> pd.DataFrame:
    """Repeated eGFR following the piecewise-linear model with a 165-day knot."""
    rng = np.random.default_rng(seed)
    rows: list[dict[str, object]] = []
    chronic_control = -1.5 / 365.0
    for rec in cohort.itertuples(index=False):
        treated = int(rec.treatment)
        chronic_dev = rng.normal(0.0, 1.0 / 365.0)
        chronic_treat_dev = rng.normal(0.0, 0.8 / 365.0) * treated
        baseline = float(rec.egfr) + rng.normal(0.0, 2.0)
        for visit in VISIT_DAYS:
            day = visit if visit == 0 else visit + int(rng.integers(-14, 15))
            clamped = min(day, knot_days)
            spline = max(day - knot_days, 0.0)
            mean = (
                baseline
                + (acute_treatment_effect / knot_days) * treated * clamped
                + (chronic_control + chronic_dev) * spline
                + (chronic_treatment_effect_per_year / 365.0 + chronic_treat_dev) * treated * spline
            )
            rows.append(
                {
                    "participant_id": rec.participant_id,
                    "days": day,
                    "egfr_value": round(mean + rng.normal(0.0, 3.0), 2),
                }
            )
    return pd.DataFrame(rows)

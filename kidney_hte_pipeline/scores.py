"""Kidney risk scores and quantile stratification."""

from __future__ import annotations

import numpy as np
import pandas as pd

_EGFR_PARAMS = {
    # sex: (kappa, alpha, beta)
    "Male": (0.9, -0.302, 1.0),
    "Female": (0.7, -0.241, 1.012),
}


def male_indicator(sex: object) -> pd.Series | float:
    """1.0 for male, 0.0 for female, NaN when sex is missing or unrecognised."""
    if isinstance(sex, pd.Series):
        return sex.map(male_indicator).astype(float)
    if isinstance(sex, (bool, np.bool_)):
        return float(sex)
    if pd.isna(sex):
        return np.nan
    s = str(sex).strip().lower()
    if s in {"male", "m", "1"}:
        return 1.0
    if s in {"female", "f", "0", "2"}:
        return 0.0
    return np.nan


def egfr_ckd_epi(serum_creatinine, age, sex):
    """CKD-EPI (2021, race-free) eGFR in mL/min/1.73m2.

    Accepts scalars or aligned pandas Series. `sex` is "Male"/"Female" (case-insensitive) or a
    boolean male indicator. Unrecognised sex gives NaN.
    """
    male = np.asarray(male_indicator(sex), dtype=float)
    scr = np.asarray(serum_creatinine, dtype=float)
    age_arr = np.asarray(age, dtype=float)
    male_arr = male == 1.0

    kappa = np.where(male_arr, _EGFR_PARAMS["Male"][0], _EGFR_PARAMS["Female"][0])
    alpha = np.where(male_arr, _EGFR_PARAMS["Male"][1], _EGFR_PARAMS["Female"][1])
    beta = np.where(male_arr, _EGFR_PARAMS["Male"][2], _EGFR_PARAMS["Female"][2])

    ratio = scr / kappa
    out = (
        142.0
        * np.power(np.minimum(ratio, 1.0), alpha)
        * np.power(np.maximum(ratio, 1.0), -1.2)
        * np.power(0.9938, age_arr)
        * beta
    )
    out = np.where(np.isnan(male), np.nan, out)
    if isinstance(serum_creatinine, pd.Series):
        return pd.Series(out, index=serum_creatinine.index, name="egfr")
    if out.ndim == 0:
        return float(out)
    return out


def kfre_5yr(age, sex, egfr, uacr):
    """4-variable kidney failure risk equation, 5-year horizon (non-North American calibration)."""
    male = np.asarray(male_indicator(sex), dtype=float)
    age_arr = np.asarray(age, dtype=float)
    egfr_arr = np.asarray(egfr, dtype=float)
    uacr_arr = np.asarray(uacr, dtype=float)

    with np.errstate(divide="ignore", invalid="ignore"):
        linear = (
            -0.2201 * (age_arr / 10.0 - 7.036)
            + 0.2467 * (male - 0.5642)
            - 0.5567 * (egfr_arr / 5.0 - 7.222)
            + 0.4510 * (np.log(uacr_arr) - 5.137)
        )
        out = 1.0 - np.power(0.8996, np.exp(linear))
    if isinstance(egfr, pd.Series):
        return pd.Series(out, index=egfr.index, name="kfre_5yr")
    if out.ndim == 0:
        return float(out)
    return out


def quantile_cut_points(score: pd.Series, n_strata: int = 4) -> np.ndarray:
    """Empirical cut points at 1/k, ..., (k-1)/k of the non-missing score."""
    values = pd.to_numeric(score, errors="coerce").dropna().to_numpy(dtype=float)
    if values.size == 0:
        raise ValueError(f"Cannot compute cut points for {score.name!r}: no non-missing values.")
    probs = np.arange(1, n_strata) / n_strata
    return np.quantile(values, probs)


def assign_strata(score: pd.Series, cut_points: np.ndarray) -> pd.Series:
    """Label each value 1..k using right-closed bins (-inf, q1], (q1, q2], ..., (q_{k-1}, inf)."""
    values = pd.to_numeric(score, errors="coerce")
    labels = np.searchsorted(np.asarray(cut_points, dtype=float), values.to_numpy(dtype=float), side="left") + 1
    out = pd.Series(labels, index=score.index, dtype="Int64")
    out[values.isna()] = pd.NA
    return out

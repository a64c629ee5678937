"""Configuration for the kidney-marker heterogeneity analyses of intensive glycemic control."""

from __future__ import annotations

import os
from pathlib import Path

CHANGE_LOG = [
    "2026-10-14: Collapsed the three per-score RMST bootstrap blocks into one stratified bootstrap engine.",
    "2026-10-14: Collapsed the three per-score mixed-model parametric bootstraps into the same engine via a slope strategy.",
    "2026-10-14: Replaced closure-captured model objects with immutable fitted-model snapshots passed to each replicate.",
    "2026-10-14: Replaced coefficient-name string lookups with a typed fixed-effects record.",
    "2026-10-14: Worker pool is now acquired once per run and injected into every bootstrap.",
    "2026-10-14: Replicate failures abort the affected outcome/stratifier combination instead of being zero-filled.",
    "2026-10-15: Stratum count, knot, horizon and acute/chronic weights exposed in CONFIG.",
    "2026-10-18: Slope models hold the unidentified chronic x chronic-by-treatment random-effect covariance at zero.",
    "2026-10-18: Observed overall slope now pools the stratum models, matching the quantity each replicate pools.",
    "2026-10-18: Missing or unrecognised sex leaves eGFR and KFRE missing instead of defaulting to female coefficients.",
]

ASSUMPTIONS = [
    "Quartile cut points are computed once on the full analysis cohort and are not recomputed within bootstrap replicates.",
    "RMST differences are unadjusted (treatment minus control) and truncated at the configured horizon.",
    "Rows missing time, status or arm for an outcome are excluded from that outcome's subgroup fit only.",
    "Slope models use a 165-day knot; the annualized total slope weights the acute and chronic treatment interactions 4/84 and 80/84.",
    "Mixed models are fit once per stratum on observed data and are not refit within the parametric bootstrap.",
    "The random chronic slope and its treatment interaction share a column for treated participants, so their Cholesky covariance term is fixed at zero.",
    "The overall-cohort slope model is fit as a check and reported in the notes; the overall estimate pools the stratum models.",
    "The overall parametric-bootstrap slope pools simulated participants across strata without size weighting.",
    "Percentile intervals use the 2.5th and 97.5th replicate percentiles; normalized intervals use per-replicate differences.",
]

OUTCOMES = {
    "kidney_composite": {
        "time_col": "kidney_composite_days",
        "status_col": "kidney_composite_event",
        "label": "Kidney composite (40% eGFR decline, ESKD)",
    },
    "all_cause_death": {
        "time_col": "death_days",
        "status_col": "death_event",
        "label": "All-cause death",
    },
    "cv_death": {
        "time_col": "cv_death_days",
        "status_col": "cv_death_event",
        "label": "Cardiovascular death",
    },
}

STRATIFIERS = {
    "egfr": {"score_col": "egfr", "stratum_col": "egfr_quartile", "label": "eGFR"},
    "uacr": {"score_col": "uacr", "stratum_col": "uacr_quartile", "label": "UACR"},
    "kfre": {"score_col": "kfre_5yr", "stratum_col": "kfre_quartile", "label": "5-year KFRE"},
}

CONFIG = {
    "cohort_path": os.environ.get("KIDNEY_HTE_COHORT_PATH", "").strip(),
    "longitudinal_path": os.environ.get("KIDNEY_HTE_LONGITUDINAL_PATH", "").strip(),
    "use_simulated_data": os.environ.get("KIDNEY_HTE_USE_SIMULATED", "").strip() in {"1", "true", "yes"},
    "simulated_n": 1000,
    "random_seed": 42,
    "id_col": "participant_id",
    "treatment_col": "treatment",
    "n_boot": int(os.environ.get("KIDNEY_HTE_N_BOOT", "1000")),
    "n_strata": 4,
    "stratum_label_prefix": "Quartile",
    "ci_quantiles": (0.025, 0.975),
    "horizon_days": 7 * 365,
    "spline_knot_days": 165,
    "days_per_year": 365,
    "acute_weight": 4 / 84,
    "chronic_weight": 80 / 84,
    "longitudinal_value_col": "egfr_value",
    "longitudinal_time_col": "days",
    "slope_outcome_label": "eGFR slope (mL/min/1.73m2 per year)",
    "mixed_model_method": "lbfgs",
    "mixed_model_reml": True,
    "mixed_model_maxiter": 2000,
    "n_jobs": int(os.environ.get("KIDNEY_HTE_N_JOBS", "0")) or None,
    "pool_reserved_cores": 2,
    "pool_backend": "loky",
    "required_cohort_columns": [
        "participant_id",
        "treatment",
        "age",
        "sex",
        "serum_creatinine",
        "uacr",
    ],
    "required_longitudinal_columns": ["participant_id", "days", "egfr_value"],
    "output_dir": os.environ.get(
        "KIDNEY_HTE_OUTPUT_DIR",
        str(Path(__file__).resolve().parents[1] / "kidney_hte_outputs"),
    ),
}

REQUIRED_OUTPUT_FILES = [
    "stratum_cutpoints.csv",
    "hte_raw_estimates.csv",
    "hte_normalized_estimates.csv",
    "analysis_failures.csv",
    "REPORT.md",
]


def validate_config(config: dict | None = None) -> None:
    cfg = CONFIG if config is None else config
    if not cfg.get("use_simulated_data"):
        if not cfg.get("cohort_path"):
            raise ValueError("KIDNEY_HTE_COHORT_PATH is empty. Set it (or KIDNEY_HTE_USE_SIMULATED=1) before running.")
        if not cfg.get("longitudinal_path"):
            raise ValueError("KIDNEY_HTE_LONGITUDINAL_PATH is empty. Set it before running.")
    if int(cfg["n_boot"]) < 1:
        raise ValueError(f"n_boot must be >= 1, got {cfg['n_boot']}")
    if int(cfg["n_strata"]) < 2:
        raise ValueError(f"n_strata must be >= 2, got {cfg['n_strata']}")
    lo, hi = cfg["ci_quantiles"]
    if not 0.0 < float(lo) < float(hi) < 1.0:
        raise ValueError(f"ci_quantiles must satisfy 0 < low < high < 1, got {cfg['ci_quantiles']}")
    if abs(float(cfg["acute_weight"]) + float(cfg["chronic_weight"]) - 1.0) > 1e-9:
        raise ValueError("acute_weight and chronic_weight must sum to 1.")
    if float(cfg["horizon_days"]) <= float(cfg["spline_knot_days"]):
        raise ValueError("horizon_days must exceed spline_knot_days.")


def ensure_output_dir(config: dict | None = None) -> Path:
    cfg = CONFIG if config is None else config
    out_dir = Path(cfg["output_dir"]).resolve()
    out_dir.mkdir(parents=True, exist_ok=True)
    return out_dir

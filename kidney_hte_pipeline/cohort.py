"""Analysis cohort construction: score derivation, stratification and longitudinal basis."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

import numpy as np
import pandas as pd

from .errors import DataIntegrityError
from .scores import assign_strata, egfr_ckd_epi, kfre_5yr, quantile_cut_points


@dataclass(frozen=True)
class OutcomeSpec:
    name: str
    time_col: str
    status_col: str
    label: str


@dataclass(frozen=True)
class Stratifier:
    name: str
    score_col: str
    stratum_col: str
    label: str


@dataclass
class CohortData:
    cohort: pd.DataFrame
    longitudinal: pd.DataFrame
    cut_points: pd.DataFrame
    cohort_flow: pd.DataFrame


def outcome_specs(outcomes: dict) -> list[OutcomeSpec]:
    return [
        OutcomeSpec(name=name, time_col=d["time_col"], status_col=d["status_col"], label=d.get("label", name))
        for name, d in outcomes.items()
    ]


def stratifier_specs(stratifiers: dict) -> list[Stratifier]:
    return [
        Stratifier(name=name, score_col=d["score_col"], stratum_col=d["stratum_col"], label=d.get("label", name))
        for name, d in stratifiers.items()
    ]


def _standardize_sex(x: object) -> str:
    if pd.isna(x):
        return "Unknown"
    s = str(x).strip().lower()
    if s in {"male", "m", "1"}:
        return "Male"
    if s in {"female", "f", "0", "2"}:
        return "Female"
    return "Unknown"


def load_table(path: str | Path) -> pd.DataFrame:
    path_obj = Path(path)
    if not path_obj.exists():
        raise FileNotFoundError(f"Unable to locate input table at {path_obj}")
    if path_obj.suffix.lower() in {".tsv", ".txt"}:
        return pd.read_csv(path_obj, sep="\t")
    return pd.read_csv(path_obj)


def validate_required_columns(df: pd.DataFrame, required: list[str], *, table: str) -> None:
    missing = [col for col in required if col not in df.columns]
    if missing:
        raise DataIntegrityError(f"{table}: required columns missing: {', '.join(sorted(missing))}")


def derive_scores(df: pd.DataFrame) -> pd.DataFrame:
    out = df.copy()
    out["sex"] = out["sex"].map(_standardize_sex)
    for col in ["age", "serum_creatinine", "uacr"]:
        out[col] = pd.to_numeric(out[col], errors="coerce")

    computed_egfr = egfr_ckd_epi(out["serum_creatinine"], out["age"], out["sex"])
    if "egfr" in out.columns:
        out["egfr"] = pd.to_numeric(out["egfr"], errors="coerce").fillna(computed_egfr)
    else:
        out["egfr"] = computed_egfr

    # log(UACR) is undefined at zero; treat as missing for the risk equation only.
    uacr_for_kfre = out["uacr"].where(out["uacr"] > 0)
    out["kfre_5yr"] = kfre_5yr(out["age"], out["sex"], out["egfr"], uacr_for_kfre)
    return out


def add_strata(
    df: pd.DataFrame,
    stratifiers: list[Stratifier],
    n_strata: int,
) -> tuple[pd.DataFrame, pd.DataFrame]:
    """Attach one stratum label column per stratifier; cut points come from the full cohort once."""
    out = df.copy()
    rows: list[dict[str, object]] = []
    for strat in stratifiers:
        if strat.score_col not in out.columns:
            raise DataIntegrityError(f"Stratification score column missing: {strat.score_col}")
        cuts = quantile_cut_points(out[strat.score_col], n_strata=n_strata)
        out[strat.stratum_col] = assign_strata(out[strat.score_col], cuts)
        counts = out[strat.stratum_col].value_counts(dropna=False)
        logging.info(
            "Stratified by %s: cut points=%s sizes=%s",
            strat.name,
            np.round(cuts, 4).tolist(),
            {str(k): int(v) for k, v in counts.sort_index().items()},
        )
        record: dict[str, object] = {"stratifier": strat.name, "score_col": strat.score_col}
        for i, cut in enumerate(cuts, start=1):
            record[f"q{i}"] = float(cut)
        for level in range(1, n_strata + 1):
            record[f"n_stratum_{level}"] = int((out[strat.stratum_col] == level).sum())
        record["n_missing_score"] = int(out[strat.stratum_col].isna().sum())
        rows.append(record)
    return out, pd.DataFrame(rows)


def prepare_longitudinal(
    long_df: pd.DataFrame,
    cohort: pd.DataFrame,
    config: dict,
    stratum_cols: list[str] | None = None,
) -> pd.DataFrame:
    """Restrict to cohort members and the follow-up horizon, then add the piecewise time basis."""
    id_col = config["id_col"]
    time_col = config["longitudinal_time_col"]
    value_col = config["longitudinal_value_col"]
    knot = float(config["spline_knot_days"])
    horizon = float(config["horizon_days"])

    out = long_df[[id_col, time_col, value_col]].copy()
    out[time_col] = pd.to_numeric(out[time_col], errors="coerce")
    out[value_col] = pd.to_numeric(out[value_col], errors="coerce")
    out = out.dropna(subset=[id_col, time_col, value_col])
    out = out.loc[out[id_col].isin(cohort[id_col])]
    out = out.loc[out[time_col].between(0, horizon)].copy()

    out["clamped_time"] = np.minimum(out[time_col], knot)
    out["spline_time"] = np.maximum(out[time_col] - knot, 0.0)

    keep_cols = [id_col, config["treatment_col"], *(stratum_cols or [])]
    out = out.merge(cohort[keep_cols], on=id_col, how="inner")
    out = out.rename(columns={config["treatment_col"]: "treatment", value_col: "value"})
    return out.sort_values([id_col, time_col]).reset_index(drop=True)


def build_cohort_data(
    cohort_raw: pd.DataFrame,
    longitudinal_raw: pd.DataFrame,
    config: dict,
    stratifiers: list[Stratifier],
    notes: list[str] | None = None,
) -> CohortData:
    validate_required_columns(cohort_raw, list(config["required_cohort_columns"]), table="cohort")
    validate_required_columns(longitudinal_raw, list(config["required_longitudinal_columns"]), table="longitudinal")

    id_col = config["id_col"]
    treatment_col = config["treatment_col"]
    flow: list[dict[str, object]] = [{"step": "input_cohort_rows", "n": int(len(cohort_raw))}]

    cohort = cohort_raw.drop_duplicates(subset=[id_col]).copy()
    flow.append({"step": "unique_participants", "n": int(len(cohort))})

    cohort[treatment_col] = pd.to_numeric(cohort[treatment_col], errors="coerce")
    bad_arm = ~cohort[treatment_col].isin([0, 1])
    if bad_arm.any():
        msg = f"Dropped {int(bad_arm.sum())} participants with treatment not in {{0, 1}}."
        logging.warning(msg)
        if notes is not None:
            notes.append(msg)
        cohort = cohort.loc[~bad_arm].copy()
    cohort[treatment_col] = cohort[treatment_col].astype(int)
    flow.append({"step": "valid_treatment_arm", "n": int(len(cohort))})

    cohort = derive_scores(cohort)
    cohort, cut_points = add_strata(cohort, stratifiers, n_strata=int(config["n_strata"]))
    for strat in stratifiers:
        n_missing = int(cohort[strat.stratum_col].isna().sum())
        if n_missing and notes is not None:
            notes.append(f"{strat.name}: {n_missing} participants lack a score and are excluded from {strat.name} analyses.")
        flow.append({"step": f"with_{strat.name}_stratum", "n": int(cohort[strat.stratum_col].notna().sum())})

    longitudinal = prepare_longitudinal(
        longitudinal_raw, cohort, config, stratum_cols=[s.stratum_col for s in stratifiers]
    )
    flow.append({"step": "longitudinal_rows_within_horizon", "n": int(len(longitudinal))})
    flow.append({"step": "longitudinal_participants", "n": int(longitudinal[id_col].nunique())})
    logging.info("Cohort built: participants=%s longitudinal_rows=%s", len(cohort), len(longitudinal))

    return CohortData(
        cohort=cohort.reset_index(drop=True),
        longitudinal=longitudinal,
        cut_points=cut_points,
        cohort_flow=pd.DataFrame(flow),
    )


def build_baseline_table(cohort: pd.DataFrame, stratifier: Stratifier, treatment_col: str) -> pd.DataFrame:
    rows: list[dict[str, object]] = []
    numeric_vars = ["age", "serum_creatinine", "egfr", "uacr", "kfre_5yr"]
    cat_vars = ["sex"]

    for (level, arm), g in cohort.groupby([stratifier.stratum_col, treatment_col], dropna=False, observed=False):
        base = {"stratifier": stratifier.name, "stratum": level, "treatment": arm}
        rows.append({**base, "variable": "N", "level": "overall", "n": int(len(g)), "value": float(len(g)), "stat": "count"})
        for var in numeric_vars:
            if var not in g.columns:
                continue
            non_null = g[var].dropna()
            rows.append(
                {
                    **base,
                    "variable": var,
                    "level": "median",
                    "n": int(non_null.shape[0]),
                    "value": float(non_null.median()) if len(non_null) else np.nan,
                    "stat": "median",
                }
            )
            rows.append(
                {
                    **base,
                    "variable": var,
                    "level": "mean",
                    "n": int(non_null.shape[0]),
                    "value": float(non_null.mean()) if len(non_null) else np.nan,
                    "stat": "mean",
                }
            )
        for var in cat_vars:
            if var not in g.columns:
                continue
            for cat, cnt in g[var].value_counts(dropna=False).items():
                rows.append(
                    {
                        **base,
                        "variable": var,
                        "level": str(cat),
                        "n": int(cnt),
                        "value": float(cnt / len(g)) if len(g) else np.nan,
                        "stat": "proportion",
                    }
                )
    return pd.DataFrame(rows)

"""Main entrypoint for the kidney-marker heterogeneity pipeline."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

import numpy as np
import pandas as pd

from .cohort import (
    CohortData,
    OutcomeSpec,
    Stratifier,
    build_baseline_table,
    build_cohort_data,
    load_table,
    outcome_specs,
    stratifier_specs,
)
from .config import (
    ASSUMPTIONS,
    CHANGE_LOG,
    CONFIG,
    OUTCOMES,
    REQUIRED_OUTPUT_FILES,
    STRATIFIERS,
    ensure_output_dir,
    validate_config,
)
from .engine import HTEResult, WorkerPool, run_stratified_bootstrap
from .errors import HTEAnalysisError, ReplicateFailureError
from .mixed_models import fit_stratified_slope_models, participant_slopes
from .plotting import point_range_plot
from .reporting import write_report
from .simulation import simulate_longitudinal, simulate_trial_cohort
from .strategies import RMSTDifferenceStrategy, SlopeDifferenceStrategy

FAILURE_COLUMNS = ["outcome", "stratifier", "effect_type", "replicate", "error"]


@dataclass
class PipelineRunResult:
    output_dir: Path
    generated_files: list[str]
    cohort_data: CohortData
    results: list[HTEResult]
    failures: pd.DataFrame
    notes: list[str]


def _configure_logging() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s | %(levelname)s | %(message)s",
    )


def _save_table(file_name: str, df: pd.DataFrame, output_dir: Path) -> Path:
    out_path = output_dir / file_name
    df.to_csv(out_path, index=False)
    logging.info("Saved %s (%s rows)", file_name, len(df))
    if logging.getLogger().isEnabledFor(logging.DEBUG) and not df.empty:
        logging.debug("%s preview:\n%s", file_name, df.head(20).to_string(index=False))
    return out_path


def _verify_outputs(output_dir: Path, notes: list[str]) -> None:
    for file_name in REQUIRED_OUTPUT_FILES:
        if file_name == "REPORT.md":
            continue
        if not (output_dir / file_name).exists():
            notes.append(f"Missing expected output artifact: {file_name}")


def _load_inputs(config: dict) -> tuple[pd.DataFrame, pd.DataFrame]:
    if config.get("use_simulated_data"):
        logging.info("Using simulated trial data (n=%s).", config["simulated_n"])
        cohort = simulate_trial_cohort(n=int(config["simulated_n"]), seed=int(config["random_seed"]))
        return cohort, simulate_longitudinal(cohort, seed=int(config["random_seed"]) + 1)
    logging.info("Loading cohort from %s", config["cohort_path"])
    logging.info("Loading longitudinal table from %s", config["longitudinal_path"])
    return load_table(config["cohort_path"]), load_table(config["longitudinal_path"])


def _failure_row(outcome: str, stratifier: str, effect_type: str, exc: Exception) -> dict[str, object]:
    return {
        "outcome": outcome,
        "stratifier": stratifier,
        "effect_type": effect_type,
        "replicate": exc.replicate if isinstance(exc, ReplicateFailureError) else None,
        "error": str(exc),
    }


def run_rmst_analyses(
    cohort: pd.DataFrame,
    outcomes: list[OutcomeSpec],
    stratifier: Stratifier,
    config: dict,
    pool: WorkerPool,
    failures: list[dict[str, object]],
    notes: list[str],
) -> list[HTEResult]:
    levels = tuple(range(1, int(config["n_strata"]) + 1))
    analysis_df = cohort.loc[cohort[stratifier.stratum_col].notna()]
    results: list[HTEResult] = []
    for outcome in outcomes:
        try:
            strategy = RMSTDifferenceStrategy(
                cohort=analysis_df,
                outcome=outcome,
                stratifier=stratifier,
                treatment_col=config["treatment_col"],
                horizon_days=float(config["horizon_days"]),
                levels=levels,
            )
            results.append(
                run_stratified_bootstrap(
                    strategy,
                    outcome=outcome.name,
                    stratifier=stratifier.name,
                    n_boot=int(config["n_boot"]),
                    pool=pool,
                    quantiles=tuple(config["ci_quantiles"]),
                    label_prefix=config["stratum_label_prefix"],
                )
            )
        except HTEAnalysisError as exc:
            logging.error("RMST analysis aborted (%s / %s): %s", outcome.name, stratifier.name, exc)
            notes.append(f"RMST analysis aborted for {outcome.name} by {stratifier.name}: {exc}")
            failures.append(_failure_row(outcome.name, stratifier.name, "rmst_difference", exc))
    return results


def run_slope_analysis(
    longitudinal: pd.DataFrame,
    stratifier: Stratifier,
    config: dict,
    pool: WorkerPool,
    failures: list[dict[str, object]],
    notes: list[str],
) -> HTEResult | None:
    try:
        overall, per_level = fit_stratified_slope_models(longitudinal, stratifier, config)
        strategy = SlopeDifferenceStrategy(
            strata=per_level,
            days_per_year=float(config["days_per_year"]),
            acute_weight=float(config["acute_weight"]),
            chronic_weight=float(config["chronic_weight"]),
        )
        overall_model_slope = float(np.mean(participant_slopes(overall, config)))
        pooled_slope = float(strategy.point_estimate()[0])
        logging.info(
            "%s: overall-model slope difference=%.3f, pooled stratum-model slope difference=%.3f",
            stratifier.name,
            overall_model_slope,
            pooled_slope,
        )
        notes.append(
            f"{stratifier.name}: overall slope model gives {overall_model_slope:.3f} per year; "
            f"the reported overall pools the stratum models ({pooled_slope:.3f})."
        )
        return run_stratified_bootstrap(
            strategy,
            outcome="egfr_slope",
            stratifier=stratifier.name,
            n_boot=int(config["n_boot"]),
            pool=pool,
            quantiles=tuple(config["ci_quantiles"]),
            label_prefix=config["stratum_label_prefix"],
        )
    except HTEAnalysisError as exc:
        logging.error("Slope analysis aborted (%s): %s", stratifier.name, exc)
        notes.append(f"Slope analysis aborted for {stratifier.name}: {exc}")
        failures.append(_failure_row("egfr_slope", stratifier.name, "slope_difference", exc))
        return None


def _plot_result(
    result: HTEResult,
    outcome_labels: dict[str, str],
    stratifier_labels: dict[str, str],
    config: dict,
    output_dir: Path,
) -> Path:
    if result.effect_type == "slope_difference":
        ylabel = config["slope_outcome_label"]
    else:
        ylabel = "RMST difference (days)"
    title = f"{outcome_labels.get(result.outcome, result.outcome)} by {stratifier_labels.get(result.stratifier, result.stratifier)}"
    file_name = f"plot_{result.outcome}_{result.stratifier}_{result.effect_type}.png"
    return point_range_plot(result.raw, title=title, ylabel=ylabel, out_path=output_dir / file_name)


def main(config: dict | None = None, pool: WorkerPool | None = None) -> PipelineRunResult:
    cfg = CONFIG if config is None else config
    _configure_logging()
    validate_config(cfg)

    output_dir = ensure_output_dir(cfg)
    outcomes = outcome_specs(cfg.get("outcomes", OUTCOMES))
    stratifiers = stratifier_specs(cfg.get("stratifiers", STRATIFIERS))
    logging.info("Starting kidney HTE pipeline. n_boot=%s strata=%s", cfg["n_boot"], cfg["n_strata"])
    logging.info("Output directory: %s", output_dir)

    notes: list[str] = []
    cohort_raw, longitudinal_raw = _load_inputs(cfg)
    cohort_data = build_cohort_data(cohort_raw, longitudinal_raw, cfg, stratifiers, notes=notes)

    generated_files: list[str] = []
    generated_files.append(_save_table("cohort_flow.csv", cohort_data.cohort_flow, output_dir).name)
    generated_files.append(_save_table("stratum_cutpoints.csv", cohort_data.cut_points, output_dir).name)
    for strat in stratifiers:
        baseline = build_baseline_table(cohort_data.cohort, strat, cfg["treatment_col"])
        generated_files.append(_save_table(f"baseline_by_{strat.name}.csv", baseline, output_dir).name)

    failures: list[dict[str, object]] = []
    results: list[HTEResult] = []
    own_pool = pool is None
    pool = pool or WorkerPool(
        cfg.get("n_jobs"),
        backend=cfg["pool_backend"],
        reserved_cores=int(cfg["pool_reserved_cores"]),
    )
    try:
        for strat in stratifiers:
            results.extend(run_rmst_analyses(cohort_data.cohort, outcomes, strat, cfg, pool, failures, notes))
            slope_result = run_slope_analysis(cohort_data.longitudinal, strat, cfg, pool, failures, notes)
            if slope_result is not None:
                results.append(slope_result)
    finally:
        if own_pool:
            pool.close()

    raw_long = pd.concat([r.raw_long() for r in results], ignore_index=True) if results else pd.DataFrame()
    norm_long = pd.concat([r.normalized_long() for r in results], ignore_index=True) if results else pd.DataFrame()
    failures_df = pd.DataFrame(failures, columns=FAILURE_COLUMNS)
    generated_files.append(_save_table("hte_raw_estimates.csv", raw_long, output_dir).name)
    generated_files.append(_save_table("hte_normalized_estimates.csv", norm_long, output_dir).name)
    generated_files.append(_save_table("analysis_failures.csv", failures_df, output_dir).name)

    outcome_labels = {o.name: o.label for o in outcomes}
    outcome_labels["egfr_slope"] = cfg["slope_outcome_label"]
    stratifier_labels = {s.name: s.label for s in stratifiers}
    for result in results:
        generated_files.append(_plot_result(result, outcome_labels, stratifier_labels, cfg, output_dir).name)

    _verify_outputs(output_dir, notes)
    report_path = write_report(
        output_dir=output_dir,
        change_log=CHANGE_LOG,
        assumptions=ASSUMPTIONS,
        cohort_flow=cohort_data.cohort_flow,
        cut_points=cohort_data.cut_points,
        raw_estimates=raw_long,
        failures=failures_df,
        generated_files=generated_files,
        notes=notes,
        n_boot=int(cfg["n_boot"]),
    )
    generated_files.append(report_path.name)

    if failures:
        logging.warning("%s analyses failed; see analysis_failures.csv", len(failures))
    logging.info("Pipeline complete. Generated files:")
    for fp in sorted(generated_files):
        logging.info("- %s", fp)

    return PipelineRunResult(
        output_dir=output_dir,
        generated_files=sorted(generated_files),
        cohort_data=cohort_data,
        results=results,
        failures=failures_df,
        notes=notes,
    )


if __name__ == "__main__":
    main()

"""Report generation for the heterogeneity analysis outputs."""

from __future__ import annotations

from pathlib import Path

import pandas as pd


def _fmt_ci(est: float, lo: float, hi: float) -> str:
    if pd.isna(est):
        return "NA"
    return f"{est:.1f} ({lo:.1f}, {hi:.1f})"


def write_report(
    *,
    output_dir: Path,
    change_log: list[str],
    assumptions: list[str],
    cohort_flow: pd.DataFrame,
    cut_points: pd.DataFrame,
    raw_estimates: pd.DataFrame,
    failures: pd.DataFrame,
    generated_files: list[str],
    notes: list[str],
    n_boot: int,
) -> Path:
    report_path = output_dir / "REPORT.md"

    lines: list[str] = []
    lines.append("# Kidney markers and the effect of intensive glycemic control")
    lines.append("")

    lines.append("## Change Log")
    for entry in change_log:
        lines.append(f"- {entry}")
    lines.append("")

    lines.append("## Assumptions")
    for entry in assumptions:
        lines.append(f"- {entry}")
    lines.append("")

    lines.append("## Cohort Flow")
    if cohort_flow.empty:
        lines.append("- Cohort flow unavailable.")
    else:
        for _, row in cohort_flow.iterrows():
            lines.append(f"- {row.get('step', 'step')}: {row.get('n', 'NA')}")
    lines.append("")

    lines.append("## Stratum Cut Points")
    if cut_points.empty:
        lines.append("- No stratifiers were computed.")
    else:
        q_cols = [c for c in cut_points.columns if c.startswith("q")]
        for _, row in cut_points.iterrows():
            cuts = ", ".join(f"{row[c]:.3g}" for c in q_cols)
            lines.append(f"- {row['stratifier']} ({row['score_col']}): {cuts}")
    lines.append("")

    lines.append(f"## Overall Estimates ({n_boot} bootstrap replicates)")
    overall = raw_estimates.loc[raw_estimates["stratum"] == "Overall"] if not raw_estimates.empty else raw_estimates
    if overall.empty:
        lines.append("- No estimates were produced.")
    else:
        for _, row in overall.iterrows():
            lines.append(
                f"- {row['outcome']} / {row['stratifier']} / {row['effect_type']}: "
                f"{_fmt_ci(row['estimate'], row['ci_low'], row['ci_high'])}"
            )
    lines.append("")

    lines.append("## Failed Analyses")
    if failures.empty:
        lines.append("- None.")
    else:
        for _, row in failures.iterrows():
            lines.append(f"- {row['outcome']} / {row['stratifier']} / {row['effect_type']}: {row['error']}")
    lines.append("")

    lines.append("## Generated Artifacts")
    for fp in sorted(generated_files):
        lines.append(f"- `{fp}`")
    lines.append("")

    lines.append("## Notes")
    if not notes:
        lines.append("- None.")
    else:
        for note in notes:
            lines.append(f"- {note}")
    lines.append("")

    lines.append("## Interpretation Guardrails")
    lines.append("- RMST differences are in days gained (treatment minus control) within the truncation horizon.")
    lines.append("- Slope differences are mL/min/1.73m2 per year (treatment minus control).")
    lines.append("- Normalized estimates are stratum minus overall; intervals come from per-replicate differences.")

    report_path.write_text("\n".join(lines), encoding="utf-8")
    return report_path

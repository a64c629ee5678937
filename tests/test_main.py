import numpy as np
import pandas as pd
import pytest

from kidney_hte_pipeline.config import OUTCOMES, STRATIFIERS
from kidney_hte_pipeline.main import main


def test_main_smoke_run_writes_required_outputs(config, pool):
    config.update(
        {
            "simulated_n": 400,
            "n_boot": 10,
            "outcomes": {"kidney_composite": OUTCOMES["kidney_composite"]},
            "stratifiers": {"egfr": STRATIFIERS["egfr"]},
        }
    )
    run = main(config, pool=pool)

    for file_name in [
        "cohort_flow.csv",
        "stratum_cutpoints.csv",
        "baseline_by_egfr.csv",
        "hte_raw_estimates.csv",
        "hte_normalized_estimates.csv",
        "analysis_failures.csv",
        "REPORT.md",
    ]:
        assert (run.output_dir / file_name).exists(), file_name

    finished = {(r.outcome, r.effect_type) for r in run.results}
    assert finished == {("kidney_composite", "rmst_difference"), ("egfr_slope", "slope_difference")}
    assert run.failures.empty

    slope = next(r for r in run.results if r.effect_type == "slope_difference")
    assert slope.replicates.shape == (10, 5)
    assert np.isfinite(slope.raw[["estimate", "ci_low", "ci_high"]].to_numpy()).all()
    assert slope.normalized["estimate"].tolist() == pytest.approx((slope.point[1:] - slope.point[0]).tolist())

    raw = pd.read_csv(run.output_dir / "hte_raw_estimates.csv")
    for result in run.results:
        rows = raw.loc[(raw["outcome"] == result.outcome) & (raw["effect_type"] == result.effect_type)]
        assert rows["stratum"].tolist() == ["Overall", "Quartile 1", "Quartile 2", "Quartile 3", "Quartile 4"]
        assert (run.output_dir / f"plot_{result.outcome}_egfr_{result.effect_type}.png").exists()

    report = (run.output_dir / "REPORT.md").read_text(encoding="utf-8")
    assert "## Cohort Flow" in report

import numpy as np
import pandas as pd
import pytest

from kidney_hte_pipeline.cohort import (
    build_baseline_table,
    build_cohort_data,
    derive_scores,
    prepare_longitudinal,
    stratifier_specs,
)
from kidney_hte_pipeline.config import STRATIFIERS
from kidney_hte_pipeline.errors import DataIntegrityError
from kidney_hte_pipeline.scores import egfr_ckd_epi
from kidney_hte_pipeline.simulation import simulate_longitudinal, simulate_trial_cohort


@pytest.fixture
def small_inputs():
    cohort = simulate_trial_cohort(n=200, seed=3)
    return cohort, simulate_longitudinal(cohort, seed=4)


def test_build_cohort_assigns_every_stratifier(config, small_inputs):
    cohort_raw, long_raw = small_inputs
    stratifiers = stratifier_specs(STRATIFIERS)
    data = build_cohort_data(cohort_raw, long_raw, config, stratifiers)

    assert len(data.cohort) == 200
    for strat in stratifiers:
        labels = data.cohort[strat.stratum_col]
        assert labels.notna().all()
        assert set(labels.unique()) == {1, 2, 3, 4}
        assert labels.value_counts().sum() == len(data.cohort)
    assert set(data.cut_points["stratifier"]) == {"egfr", "uacr", "kfre"}
    assert {"q1", "q2", "q3"}.issubset(data.cut_points.columns)
    assert data.cohort_flow["step"].iloc[0] == "input_cohort_rows"


def test_missing_required_column_is_fatal(config, small_inputs):
    cohort_raw, long_raw = small_inputs
    with pytest.raises(DataIntegrityError, match="serum_creatinine"):
        build_cohort_data(cohort_raw.drop(columns=["serum_creatinine"]), long_raw, config, stratifier_specs(STRATIFIERS))


def test_invalid_treatment_rows_are_dropped_with_note(config, small_inputs):
    cohort_raw, long_raw = small_inputs
    cohort_raw = cohort_raw.copy()
    cohort_raw.loc[0, "treatment"] = 2
    notes: list[str] = []
    data = build_cohort_data(cohort_raw, long_raw, config, stratifier_specs(STRATIFIERS), notes=notes)
    assert len(data.cohort) == 199
    assert any("treatment" in note for note in notes)


def test_derive_scores_fills_missing_egfr_from_creatinine():
    df = pd.DataFrame(
        {
            "age": [60, 45],
            "sex": ["male", "F"],
            "serum_creatinine": [1.0, 0.9],
            "uacr": [30.0, 0.0],
            "egfr": [np.nan, 75.0],
        }
    )
    out = derive_scores(df)
    assert out.loc[0, "egfr"] == pytest.approx(egfr_ckd_epi(1.0, 60, "Male"))
    assert out.loc[1, "egfr"] == 75.0
    assert out.loc[1, "sex"] == "Female"
    assert 0.0 <= out.loc[0, "kfre_5yr"] <= 1.0
    assert np.isnan(out.loc[1, "kfre_5yr"])


def test_longitudinal_basis_and_filters(config):
    cohort = pd.DataFrame({"participant_id": [1, 2], "treatment": [1, 0], "egfr_quartile": [1, 4]})
    long_df = pd.DataFrame(
        {
            "participant_id": [1, 1, 1, 2, 2, 3],
            "days": [0, 100, 400, 3000, np.nan, 50],
            "egfr_value": [80.0, 78.0, 75.0, 60.0, 61.0, 90.0],
        }
    )
    out = prepare_longitudinal(long_df, cohort, config, stratum_cols=["egfr_quartile"])

    assert out["participant_id"].tolist() == [1, 1, 1]
    assert out["clamped_time"].tolist() == [0, 100, 165]
    assert out["spline_time"].tolist() == [0, 0, 235]
    assert (out["treatment"] == 1).all()
    assert "value" in out.columns and "egfr_quartile" in out.columns


def test_baseline_table_covers_each_stratum_and_arm(config, small_inputs):
    cohort_raw, long_raw = small_inputs
    stratifiers = stratifier_specs(STRATIFIERS)
    data = build_cohort_data(cohort_raw, long_raw, config, stratifiers)
    table = build_baseline_table(data.cohort, stratifiers[0], "treatment")

    counts = table.loc[table["variable"] == "N"]
    assert len(counts) == 8
    assert counts["n"].sum() == len(data.cohort)


def test_participant_without_sex_gets_no_score_or_stratum(config, small_inputs):
    cohort_raw, long_raw = small_inputs
    cohort_raw = cohort_raw.drop(columns=["egfr"])
    cohort_raw.loc[0, "sex"] = np.nan
    notes: list[str] = []
    data = build_cohort_data(cohort_raw, long_raw, config, stratifier_specs(STRATIFIERS), notes=notes)

    row = data.cohort.loc[data.cohort["participant_id"] == cohort_raw.loc[0, "participant_id"]].iloc[0]
    assert np.isnan(row["egfr"])
    assert np.isnan(row["kfre_5yr"])
    assert pd.isna(row["egfr_quartile"])
    assert pd.isna(row["kfre_quartile"])
    assert row["uacr_quartile"] in {1, 2, 3, 4}
    assert any(note.startswith("egfr: 1 participants lack a score") for note in notes)

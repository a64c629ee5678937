from __future__ import annotations

import copy

import numpy as np
import pandas as pd
import pytest

from kidney_hte_pipeline.cohort import OutcomeSpec, Stratifier
from kidney_hte_pipeline.config import CONFIG
from kidney_hte_pipeline.engine import WorkerPool
from kidney_hte_pipeline.simulation import simulate_trial_cohort


@pytest.fixture
def config(tmp_path):
    cfg = copy.deepcopy(CONFIG)
    cfg.update(
        {
            "use_simulated_data": True,
            "output_dir": str(tmp_path / "outputs"),
            "n_boot": 20,
            "n_jobs": 1,
        }
    )
    return cfg


@pytest.fixture(scope="session")
def pool():
    with WorkerPool(n_jobs=1) as p:
        yield p


@pytest.fixture(scope="session")
def simulated_cohort() -> pd.DataFrame:
    return simulate_trial_cohort(n=1000, seed=11)


@pytest.fixture(scope="session")
def score_stratifier() -> Stratifier:
    return Stratifier(name="score", score_col="score", stratum_col="score_quartile", label="Uniform score")


@pytest.fixture(scope="session")
def exponential_cohort() -> pd.DataFrame:
    """1000 participants, 500/500 arms, exponential event times with arm-specific rates, uniform score."""
    rng = np.random.default_rng(2024)
    n = 1000
    treatment = np.repeat([0, 1], n // 2)
    rate = np.where(treatment == 1, 0.08, 0.12) / 365.0
    event_days = rng.exponential(1.0 / rate)
    censor_days = rng.uniform(4 * 365, 9 * 365, n)
    score = rng.uniform(0, 1, n)
    cuts = np.quantile(score, [0.25, 0.5, 0.75])
    return pd.DataFrame(
        {
            "participant_id": np.arange(n),
            "treatment": treatment,
            "event_days": np.minimum(event_days, censor_days),
            "event": (event_days <= censor_days).astype(int),
            "score": score,
            "score_quartile": pd.Series(np.searchsorted(cuts, score, side="left") + 1, dtype="Int64"),
        }
    )


@pytest.fixture(scope="session")
def exponential_outcome() -> OutcomeSpec:
    return OutcomeSpec(name="event", time_col="event_days", status_col="event", label="Simulated event")

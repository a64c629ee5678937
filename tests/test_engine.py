from dataclasses import dataclass, field

import numpy as np
import pytest

from kidney_hte_pipeline.engine import WorkerPool, default_n_jobs, draw_replicates, run_stratified_bootstrap
from kidney_hte_pipeline.errors import DegenerateSubgroupError, ReplicateFailureError
from kidney_hte_pipeline.strategies import RMSTDifferenceStrategy


@dataclass
class NoisyStrategy:
    levels: tuple = (1, 2, 3, 4)
    fail_on: frozenset = frozenset()
    effect_type: str = field(default="toy", init=False)

    def point_estimate(self):
        return np.array([0.0, -1.0, -0.5, 0.5, 1.0])

    def draw_replicate(self, seed):
        if seed in self.fail_on:
            raise DegenerateSubgroupError("single arm in stratum 2")
        rng = np.random.default_rng(seed)
        return self.point_estimate() + rng.normal(0.0, 0.1, size=5)


def test_default_n_jobs_keeps_at_least_one_worker():
    assert default_n_jobs(reserved_cores=10_000) == 1
    assert WorkerPool(n_jobs=3).n_jobs == 3


def test_pool_is_acquired_lazily_and_closed_once():
    pool = WorkerPool(n_jobs=1)
    assert not pool.is_active
    with pool:
        assert pool.map(pow, [(2, 3), (3, 2)]) == [8, 9]
        assert pool.is_active
    assert not pool.is_active
    pool.close()


def test_replicates_are_deterministic_and_ordered(pool):
    strategy = NoisyStrategy()
    first = draw_replicates(strategy, n_boot=30, pool=pool, outcome="toy", stratifier="s")
    second = draw_replicates(strategy, n_boot=30, pool=pool, outcome="toy", stratifier="s")
    assert first.shape == (30, 5)
    assert np.array_equal(first, second)
    assert np.array_equal(first[0], strategy.draw_replicate(1))
    assert np.array_equal(first[-1], strategy.draw_replicate(30))


def test_parallel_workers_match_sequential_run(pool):
    strategy = NoisyStrategy()
    sequential = draw_replicates(strategy, n_boot=25, pool=pool, outcome="toy", stratifier="s", seed_offset=7)
    with WorkerPool(n_jobs=2, backend="threading") as threaded:
        parallel = draw_replicates(strategy, n_boot=25, pool=threaded, outcome="toy", stratifier="s", seed_offset=7)
    assert np.array_equal(sequential, parallel)


def test_failed_replicate_aborts_with_its_index(pool):
    strategy = NoisyStrategy(fail_on=frozenset({9, 4}))
    with pytest.raises(ReplicateFailureError) as info:
        draw_replicates(strategy, n_boot=12, pool=pool, outcome="kidney_composite", stratifier="egfr")
    assert info.value.replicate == 4
    assert info.value.outcome == "kidney_composite"
    assert "single arm in stratum 2" in info.value.reason


@dataclass
class BrokenStrategy:
    levels: tuple = (1, 2)
    effect_type: str = field(default="toy", init=False)

    def point_estimate(self):
        return np.zeros(3)

    def draw_replicate(self, seed):
        return self.missing_attribute[seed]


def test_programming_errors_propagate_instead_of_becoming_replicate_failures():
    with WorkerPool(n_jobs=1) as own_pool, pytest.raises(AttributeError):
        draw_replicates(BrokenStrategy(), n_boot=3, pool=own_pool, outcome="toy", stratifier="s")


def test_seed_offset_shifts_replicate_seeds(pool):
    strategy = NoisyStrategy()
    shifted = draw_replicates(strategy, n_boot=3, pool=pool, outcome="toy", stratifier="s", seed_offset=100)
    assert np.array_equal(shifted[0], strategy.draw_replicate(101))


@pytest.fixture(scope="module")
def rmst_strategy(exponential_cohort, exponential_outcome, score_stratifier):
    return RMSTDifferenceStrategy(
        cohort=exponential_cohort,
        outcome=exponential_outcome,
        stratifier=score_stratifier,
        treatment_col="treatment",
        horizon_days=7 * 365,
    )


def test_rmst_bootstrap_end_to_end(rmst_strategy, pool):
    result = run_stratified_bootstrap(rmst_strategy, outcome="event", stratifier="score", n_boot=200, pool=pool)

    assert result.replicates.shape == (200, 5)
    assert len(result.raw) == 5
    assert len(result.normalized) == 4
    assert np.isfinite(result.raw[["estimate", "ci_low", "ci_high"]].to_numpy()).all()
    assert np.isfinite(result.normalized[["estimate", "ci_low", "ci_high"]].to_numpy()).all()
    # Lower hazard on treatment means a positive RMST difference overall.
    assert result.raw.loc[0, "estimate"] > 0
    assert result.raw.loc[0, "ci_low"] < result.raw.loc[0, "estimate"] < result.raw.loc[0, "ci_high"]

    long = result.raw_long()
    assert set(long["outcome"]) == {"event"}
    assert set(long["effect_type"]) == {"rmst_difference"}
    assert (long["n_boot"] == 200).all()


def test_normalized_replicates_are_stable_across_seed_streams(rmst_strategy, pool):
    def normalized_sums(offset):
        reps = draw_replicates(
            rmst_strategy, n_boot=200, pool=pool, outcome="event", stratifier="score", seed_offset=offset
        )
        return (reps[:, 1:] - reps[:, [0]]).sum(axis=1)

    a = normalized_sums(0)
    b = normalized_sums(10_000)
    se = np.sqrt(a.var(ddof=1) / len(a) + b.var(ddof=1) / len(b))
    assert abs(a.mean() - b.mean()) < 4 * se

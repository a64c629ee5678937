"""Stratified bootstrap engine and the shared worker pool."""

from __future__ import annotations

import logging
from contextlib import ExitStack
from dataclasses import dataclass
from typing import Callable, Iterable

import numpy as np
import pandas as pd
from joblib import Parallel, cpu_count, delayed

from .aggregate import normalized_table, percentile_table
from .errors import HTEAnalysisError, ReplicateFailureError
from .strategies import EffectStrategy


def default_n_jobs(reserved_cores: int = 2) -> int:
    return max(cpu_count() - reserved_cores, 1)


class WorkerPool:
    """A joblib worker pool acquired on first use and kept alive until `close()`.

    Reusing one pool across every outcome/stratifier combination avoids paying the worker
    start-up cost per bootstrap.
    """

    def __init__(self, n_jobs: int | None = None, *, backend: str = "loky", reserved_cores: int = 2) -> None:
        self.n_jobs = int(n_jobs) if n_jobs else default_n_jobs(reserved_cores)
        self.backend = backend
        self._stack: ExitStack | None = None
        self._parallel: Parallel | None = None

    @property
    def is_active(self) -> bool:
        return self._parallel is not None

    def acquire(self) -> Parallel:
        if self._parallel is None:
            logging.info("Starting worker pool: n_jobs=%s backend=%s", self.n_jobs, self.backend)
            self._stack = ExitStack()
            self._parallel = self._stack.enter_context(Parallel(n_jobs=self.n_jobs, backend=self.backend))
        return self._parallel

    def map(self, func: Callable, arg_tuples: Iterable[tuple]) -> list:
        parallel = self.acquire()
        return parallel(delayed(func)(*args) for args in arg_tuples)

    def close(self) -> None:
        if self._stack is not None:
            logging.info("Shutting down worker pool.")
            self._stack.close()
        self._stack = None
        self._parallel = None

    def __enter__(self) -> "WorkerPool":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


@dataclass
class ReplicateResult:
    replicate: int
    values: np.ndarray | None
    error: str | None = None


def _run_replicate(strategy: EffectStrategy, replicate: int) -> ReplicateResult:
    try:
        values = np.asarray(strategy.draw_replicate(replicate), dtype=float)
    except (HTEAnalysisError, np.linalg.LinAlgError, ValueError) as exc:
        return ReplicateResult(replicate=replicate, values=None, error=f"{type(exc).__name__}: {exc}")
    return ReplicateResult(replicate=replicate, values=values)


@dataclass
class HTEResult:
    outcome: str
    stratifier: str
    effect_type: str
    levels: tuple[int, ...]
    point: np.ndarray
    replicates: np.ndarray
    raw: pd.DataFrame
    normalized: pd.DataFrame

    def _tag(self, table: pd.DataFrame, kind: str) -> pd.DataFrame:
        out = table.copy()
        out.insert(0, "table", kind)
        out.insert(0, "effect_type", self.effect_type)
        out.insert(0, "stratifier", self.stratifier)
        out.insert(0, "outcome", self.outcome)
        out["n_boot"] = int(self.replicates.shape[0])
        return out

    def raw_long(self) -> pd.DataFrame:
        return self._tag(self.raw, "raw")

    def normalized_long(self) -> pd.DataFrame:
        return self._tag(self.normalized, "normalized")


def draw_replicates(
    strategy: EffectStrategy,
    *,
    n_boot: int,
    pool: WorkerPool,
    outcome: str,
    stratifier: str,
    seed_offset: int = 0,
) -> np.ndarray:
    """B x (k + 1) matrix of replicate estimates; replicate i uses seed `seed_offset + i`."""
    seeds = [seed_offset + i for i in range(1, int(n_boot) + 1)]
    results: list[ReplicateResult] = pool.map(_run_replicate, [(strategy, seed) for seed in seeds])

    failures = sorted((r for r in results if r.error is not None), key=lambda r: r.replicate)
    if failures:
        first = failures[0]
        logging.error(
            "%s/%s: %s of %s replicates failed; first failure at replicate %s: %s",
            outcome,
            stratifier,
            len(failures),
            len(results),
            first.replicate,
            first.error,
        )
        raise ReplicateFailureError(outcome, stratifier, first.replicate, first.error)

    results.sort(key=lambda r: r.replicate)
    return np.vstack([r.values for r in results])


def run_stratified_bootstrap(
    strategy: EffectStrategy,
    *,
    outcome: str,
    stratifier: str,
    n_boot: int,
    pool: WorkerPool,
    seed_offset: int = 0,
    quantiles: tuple[float, float] = (0.025, 0.975),
    label_prefix: str = "Quartile",
) -> HTEResult:
    logging.info(
        "Bootstrap start: outcome=%s stratifier=%s effect=%s n_boot=%s",
        outcome,
        stratifier,
        strategy.effect_type,
        n_boot,
    )
    point = np.asarray(strategy.point_estimate(), dtype=float)
    replicates = draw_replicates(
        strategy,
        n_boot=n_boot,
        pool=pool,
        outcome=outcome,
        stratifier=stratifier,
        seed_offset=seed_offset,
    )
    levels = tuple(strategy.levels)
    raw = percentile_table(point, replicates, levels, quantiles=quantiles, prefix=label_prefix)
    normalized = normalized_table(point, replicates, levels, quantiles=quantiles, prefix=label_prefix)
    logging.info(
        "Bootstrap done: outcome=%s stratifier=%s overall=%.4f [%.4f, %.4f]",
        outcome,
        stratifier,
        raw.loc[0, "estimate"],
        raw.loc[0, "ci_low"],
        raw.loc[0, "ci_high"],
    )
    return HTEResult(
        outcome=outcome,
        stratifier=stratifier,
        effect_type=strategy.effect_type,
        levels=levels,
        point=point,
        replicates=replicates,
        raw=raw,
        normalized=normalized,
    )

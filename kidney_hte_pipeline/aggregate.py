"""Percentile intervals and overall-normalized estimates from a replicate matrix."""

from __future__ import annotations

import numpy as np
import pandas as pd

TABLE_COLUMNS = ["stratum", "estimate", "ci_low", "ci_high"]


def stratum_labels(levels: tuple[int, ...] | list[int], prefix: str = "Quartile") -> list[str]:
    return [f"{prefix} {level}" for level in levels]


def _check_shapes(point: np.ndarray, replicates: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    point = np.asarray(point, dtype=float)
    replicates = np.asarray(replicates, dtype=float)
    if replicates.ndim != 2 or replicates.shape[1] != point.shape[0]:
        raise ValueError(
            f"Replicate matrix shape {replicates.shape} does not match point estimate length {point.shape[0]}"
        )
    if replicates.shape[0] == 0:
        raise ValueError("Replicate matrix is empty.")
    if not np.all(np.isfinite(replicates)):
        raise ValueError("Replicate matrix contains non-finite values.")
    return point, replicates


def percentile_table(
    point: np.ndarray,
    replicates: np.ndarray,
    levels: tuple[int, ...] | list[int],
    *,
    quantiles: tuple[float, float] = (0.025, 0.975),
    prefix: str = "Quartile",
) -> pd.DataFrame:
    """Rows Overall, stratum 1..k: observed estimate with percentile bootstrap interval.

    Column 0 of both inputs is the overall estimate; columns 1..k follow `levels`.
    """
    point, replicates = _check_shapes(point, replicates)
    lo, hi = np.quantile(replicates, list(quantiles), axis=0)
    return pd.DataFrame(
        {
            "stratum": ["Overall", *stratum_labels(levels, prefix)],
            "estimate": point,
            "ci_low": lo,
            "ci_high": hi,
        },
        columns=TABLE_COLUMNS,
    )


def normalized_table(
    point: np.ndarray,
    replicates: np.ndarray,
    levels: tuple[int, ...] | list[int],
    *,
    quantiles: tuple[float, float] = (0.025, 0.975),
    prefix: str = "Quartile",
) -> pd.DataFrame:
    """Stratum-minus-overall estimates; intervals use the per-replicate differences."""
    point, replicates = _check_shapes(point, replicates)
    diffs = replicates[:, 1:] - replicates[:, [0]]
    lo, hi = np.quantile(diffs, list(quantiles), axis=0)
    return pd.DataFrame(
        {
            "stratum": stratum_labels(levels, prefix),
            "estimate": point[1:] - point[0],
            "ci_low": lo,
            "ci_high": hi,
        },
        columns=TABLE_COLUMNS,
    )

"""Failure types raised by the heterogeneity analyses."""

from __future__ import annotations


class DataIntegrityError(ValueError):
    """A required column or stratum label is missing from an input table."""


class HTEAnalysisError(RuntimeError):
    """Base class for failures that abort one outcome/stratifier combination."""


class DegenerateSubgroupError(HTEAnalysisError):
    """A subgroup cannot support an effect fit (no rows, one arm, or no events)."""


class ModelConvergenceError(HTEAnalysisError):
    """A mixed-effects fit did not converge."""


class ReplicateFailureError(HTEAnalysisError):
    def __init__(self, outcome: str, stratifier: str, replicate: int, reason: str) -> None:
        self.outcome = outcome
        self.stratifier = stratifier
        self.replicate = replicate
        self.reason = reason
        super().__init__(
            f"Bootstrap replicate {replicate} failed for outcome={outcome} stratifier={stratifier}: {reason}"
        )

    def __reduce__(self):
        return (self.__class__, (self.outcome, self.stratifier, self.replicate, self.reason))

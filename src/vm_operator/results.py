"""Outcome of one reconcile stage."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from .models import Phase


class Outcome(str, Enum):
    PENDING = "Pending"
    DONE = "Done"
    FAILED = "Failed"


@dataclass(frozen=True)
class StageResult:
    """Pending and Done let later stages run; Failed carries the reason."""

    outcome: Outcome
    reason: str = ""

    @classmethod
    def pending(cls, reason: str) -> StageResult:
        return cls(Outcome.PENDING, reason)

    @classmethod
    def done(cls, reason: str = "") -> StageResult:
        return cls(Outcome.DONE, reason)

    @classmethod
    def failed(cls, reason: str) -> StageResult:
        return cls(Outcome.FAILED, reason)

    @property
    def is_done(self) -> bool:
        return self.outcome == Outcome.DONE

    @property
    def is_failed(self) -> bool:
        return self.outcome == Outcome.FAILED


def result_for_phase(phase: Phase | None, subject: str) -> StageResult:
    """Map a stack phase onto a stage result.

    A failure that reached this point had no reason attached and is not
    treated as terminal.
    """
    if phase == Phase.SUCCEEDED:
        return StageResult.done(f"{subject} is ready")
    if phase == Phase.FAILED:
        return StageResult.pending(f"{subject} reported failed without a reason")
    if phase is None:
        return StageResult.pending(f"{subject} is waiting for provider state")
    return StageResult.pending(f"{subject} is {phase.value.lower()}")

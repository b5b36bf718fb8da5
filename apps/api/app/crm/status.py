from __future__ import annotations

from typing import Protocol

from app.crm.enums import OpportunityStatus


class StageOutcome(Protocol):
    is_won: bool
    is_lost: bool


def infer_status(explicit_status: OpportunityStatus | str | None, stage: StageOutcome) -> OpportunityStatus:
    """Resolve an opportunity status from its stage's terminal flags.

    An explicit status always wins, even when it contradicts the stage; callers may use it
    to force e.g. ARCHIVED on an open stage.
    """
    if explicit_status is not None:
        return OpportunityStatus(explicit_status)
    if stage.is_won:
        return OpportunityStatus.WON
    if stage.is_lost:
        return OpportunityStatus.LOST
    return OpportunityStatus.OPEN


def stage_outcome_label(stage: StageOutcome) -> str:
    if stage.is_won:
        return "won"
    if stage.is_lost:
        return "lost"
    return "open"

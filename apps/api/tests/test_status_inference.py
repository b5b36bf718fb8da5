from __future__ import annotations

from dataclasses import dataclass

import pytest

from app.crm.enums import OpportunityStatus
from app.crm.status import infer_status, stage_outcome_label


@dataclass
class _Stage:
    is_won: bool = False
    is_lost: bool = False


def test_won_stage_infers_won() -> None:
    assert infer_status(None, _Stage(is_won=True)) == OpportunityStatus.WON


def test_lost_stage_infers_lost() -> None:
    assert infer_status(None, _Stage(is_lost=True)) == OpportunityStatus.LOST


def test_open_stage_infers_open() -> None:
    assert infer_status(None, _Stage()) == OpportunityStatus.OPEN


@pytest.mark.parametrize("explicit", list(OpportunityStatus))
@pytest.mark.parametrize("stage", [_Stage(), _Stage(is_won=True), _Stage(is_lost=True)])
def test_explicit_status_always_overrides_stage(explicit: OpportunityStatus, stage: _Stage) -> None:
    assert infer_status(explicit, stage) == explicit


def test_explicit_status_accepts_raw_value() -> None:
    assert infer_status("ARCHIVED", _Stage(is_won=True)) == OpportunityStatus.ARCHIVED


def test_invalid_explicit_status_is_rejected() -> None:
    with pytest.raises(ValueError):
        infer_status("PAUSED", _Stage())


def test_stage_outcome_label() -> None:
    assert stage_outcome_label(_Stage(is_won=True)) == "won"
    assert stage_outcome_label(_Stage(is_lost=True)) == "lost"
    assert stage_outcome_label(_Stage()) == "open"

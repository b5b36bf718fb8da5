from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from app.crm.enums import AuditAction, OpportunityStatus


class UserSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    email: str
    first_name: str
    last_name: str
    role: str


class AccountSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    industry: str | None
    deleted_at: datetime | None


class ContactSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    account_id: UUID | None
    first_name: str
    last_name: str
    email: str | None


class PipelineStageCreate(BaseModel):
    name: str = Field(min_length=1)
    order: int = Field(ge=0)
    probability: int = Field(default=0, ge=0, le=100)
    is_won: bool = False
    is_lost: bool = False
    description: str | None = None


class PipelineStageUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1)
    order: int | None = Field(default=None, ge=0)
    probability: int | None = Field(default=None, ge=0, le=100)
    is_won: bool | None = None
    is_lost: bool | None = None
    description: str | None = None


class PipelineStageRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    order: int
    probability: int
    is_won: bool
    is_lost: bool
    description: str | None
    created_at: datetime
    updated_at: datetime
    row_version: int


class OpportunityCreate(BaseModel):
    name: str = Field(min_length=1)
    account_id: UUID
    owner_user_id: UUID
    stage_id: UUID
    contact_id: UUID | None = None
    amount: Decimal | None = Field(default=None, ge=0)
    currency: str | None = Field(default=None, min_length=3, max_length=16)
    probability: int | None = Field(default=None, ge=0, le=100)
    status: OpportunityStatus | None = None
    expected_close_date: date | None = None
    description: str | None = None
    lost_reason: str | None = None


class OpportunityUpdate(BaseModel):
    """Partial update: only fields present in the request body are applied.

    An explicit ``null`` clears an optional field. ``row_version`` opts in to an optimistic
    concurrency check.
    """

    row_version: int | None = Field(default=None, ge=1)
    name: str | None = Field(default=None, min_length=1)
    account_id: UUID | None = None
    owner_user_id: UUID | None = None
    stage_id: UUID | None = None
    contact_id: UUID | None = None
    amount: Decimal | None = Field(default=None, ge=0)
    currency: str | None = Field(default=None, min_length=3, max_length=16)
    probability: int | None = Field(default=None, ge=0, le=100)
    status: OpportunityStatus | None = None
    expected_close_date: date | None = None
    description: str | None = None
    lost_reason: str | None = None


class OpportunityRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    account_id: UUID
    owner_user_id: UUID
    stage_id: UUID
    contact_id: UUID | None
    amount: Decimal | None
    currency: str
    probability: int | None
    status: OpportunityStatus
    expected_close_date: date | None
    description: str | None
    lost_reason: str | None
    created_at: datetime
    updated_at: datetime
    deleted_at: datetime | None
    row_version: int
    account: AccountSummary
    owner: UserSummary
    stage: PipelineStageRead
    contact: ContactSummary | None


class ActivityRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    activity_type: str
    subject: str
    description: str | None
    occurred_at: datetime
    user_id: UUID
    account_id: UUID | None
    contact_id: UUID | None
    opportunity_id: UUID | None
    created_at: datetime


class TaskRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    title: str
    description: str | None
    status: str
    priority: str
    due_date: datetime | None
    completed_at: datetime | None
    owner_user_id: UUID
    account_id: UUID | None
    contact_id: UUID | None
    opportunity_id: UUID | None
    activity_id: UUID | None
    created_at: datetime


class AuditLogRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    entity_type: str
    entity_id: str
    action: AuditAction
    actor_user_id: str | None
    opportunity_id: UUID | None
    changes: Any
    correlation_id: str | None
    created_at: datetime


class PipelineStageSummaryRow(BaseModel):
    stage_id: UUID
    stage_name: str
    order: int
    opportunity_count: int
    total_amount: Decimal


class OwnerPipelineSummaryRow(BaseModel):
    owner_user_id: UUID
    owner_name: str
    owner_email: str
    opportunity_count: int
    total_amount: Decimal

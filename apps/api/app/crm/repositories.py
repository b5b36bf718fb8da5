from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Any, Protocol

from sqlalchemy import and_, select
from sqlalchemy.orm import Session

from app.crm.models import CRMAccount, CRMActivity, CRMContact, CRMPipelineStage, CRMTask, CRMUser
from app.models.audit import AuditLog


class AccountLookup(Protocol):
    def find_active(self, session: Session, account_id: uuid.UUID) -> CRMAccount | None: ...


class UserLookup(Protocol):
    def find_by_id(self, session: Session, user_id: uuid.UUID) -> CRMUser | None: ...


class StageLookup(Protocol):
    def find_by_id(self, session: Session, stage_id: uuid.UUID) -> CRMPipelineStage | None: ...


class ContactLookup(Protocol):
    def find_active(self, session: Session, contact_id: uuid.UUID) -> CRMContact | None: ...


class ActivityStore(Protocol):
    def create(self, session: Session, **fields: Any) -> CRMActivity: ...


class TaskStore(Protocol):
    def create(self, session: Session, **fields: Any) -> CRMTask: ...


class AuditStore(Protocol):
    def append(self, session: Session, entry: AuditLog) -> None: ...


class AccountRepository:
    def find_active(self, session: Session, account_id: uuid.UUID) -> CRMAccount | None:
        return session.scalar(
            select(CRMAccount).where(and_(CRMAccount.id == account_id, CRMAccount.deleted_at.is_(None)))
        )


class UserRepository:
    def find_by_id(self, session: Session, user_id: uuid.UUID) -> CRMUser | None:
        return session.scalar(select(CRMUser).where(and_(CRMUser.id == user_id, CRMUser.is_active.is_(True))))


class PipelineStageRepository:
    def find_by_id(self, session: Session, stage_id: uuid.UUID) -> CRMPipelineStage | None:
        return session.get(CRMPipelineStage, stage_id)


class ContactRepository:
    def find_active(self, session: Session, contact_id: uuid.UUID) -> CRMContact | None:
        return session.scalar(
            select(CRMContact).where(and_(CRMContact.id == contact_id, CRMContact.deleted_at.is_(None)))
        )


class ActivityRepository:
    def create(self, session: Session, **fields: Any) -> CRMActivity:
        activity = CRMActivity(**fields)
        session.add(activity)
        session.flush()
        return activity


class TaskRepository:
    def create(self, session: Session, **fields: Any) -> CRMTask:
        task = CRMTask(**fields)
        session.add(task)
        session.flush()
        return task


class AuditLogRepository:
    """Insert-only access to ``audit_logs``; there is deliberately no update or delete method."""

    def append(self, session: Session, entry: AuditLog) -> None:
        session.add(entry)
        session.flush()


@dataclass
class CRMRepositories:
    """Data-access handle injected into the pipeline services.

    Stores add and flush but never commit; the caller's unit of work owns the transaction.
    """

    accounts: AccountLookup = field(default_factory=AccountRepository)
    users: UserLookup = field(default_factory=UserRepository)
    stages: StageLookup = field(default_factory=PipelineStageRepository)
    contacts: ContactLookup = field(default_factory=ContactRepository)
    activities: ActivityStore = field(default_factory=ActivityRepository)
    tasks: TaskStore = field(default_factory=TaskRepository)
    audit: AuditStore = field(default_factory=AuditLogRepository)

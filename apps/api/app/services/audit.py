from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, ClassVar, Mapping, Union

from sqlalchemy.orm import Session

from app.context import get_correlation_id
from app.crm.enums import AuditAction
from app.crm.errors import AuditWriteFailedError
from app.crm.repositories import AuditLogRepository, AuditStore
from app.models.audit import AuditLog


logger = logging.getLogger("app.audit")


def _json_default(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (uuid.UUID, Decimal)):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (set, frozenset)):
        return sorted(value, key=str)
    return str(value)


def to_storage_json(value: Any) -> Any:
    """Convert ``value`` into plain JSON types (dict/list/str/number/bool/None)."""
    try:
        return json.loads(json.dumps(value, default=_json_default))
    except (TypeError, ValueError) as exc:
        # Circular references end up here; keep a readable trace instead of losing the entry.
        logger.warning("audit.changes_unserializable", extra={"error": str(exc)})
        return {"unserializable": repr(value)[:2000]}


@dataclass(frozen=True)
class RawChanges:
    """Diff of a plain create/update: the payload exactly as the caller supplied it."""

    kind: ClassVar[str] = "raw"
    payload: Mapping[str, Any]

    def to_json(self) -> Any:
        return to_storage_json(dict(self.payload))


@dataclass(frozen=True)
class StageTransition:
    kind: ClassVar[str] = "stageTransition"
    from_stage_id: uuid.UUID
    to_stage_id: uuid.UUID

    def to_json(self) -> Any:
        return {"from": str(self.from_stage_id), "to": str(self.to_stage_id)}


AuditChanges = Union[RawChanges, StageTransition]


def serialize_changes(changes: AuditChanges | None) -> Any:
    if changes is None:
        return None
    return changes.to_json()


class AuditRecorder:
    def __init__(self, store: AuditStore | None = None) -> None:
        self._store = store or AuditLogRepository()

    def record(
        self,
        session: Session,
        *,
        entity_type: str,
        entity_id: uuid.UUID | str,
        action: AuditAction,
        actor_user_id: str | None = None,
        opportunity_id: uuid.UUID | None = None,
        changes: AuditChanges | None = None,
        correlation_id: str | None = None,
    ) -> AuditLog:
        entry = AuditLog(
            entity_type=entity_type,
            entity_id=str(entity_id),
            action=action.value,
            actor_user_id=actor_user_id,
            opportunity_id=opportunity_id,
            changes=serialize_changes(changes),
            correlation_id=correlation_id or get_correlation_id(),
        )
        try:
            self._store.append(session, entry)
        except Exception as exc:
            raise AuditWriteFailedError(
                "audit log write failed",
                details={"entity_type": entity_type, "entity_id": str(entity_id), "action": action.value},
            ) from exc
        return entry

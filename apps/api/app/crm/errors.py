from __future__ import annotations

from typing import Any


class CRMError(Exception):
    """Base error raised by CRM services; the route layer maps ``status_code`` to HTTP."""

    code = "crm_error"
    status_code = 500

    def __init__(self, message: str, *, details: Any = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class NotFoundError(CRMError):
    """A referenced record does not exist or is soft-deleted."""

    code = "not_found"
    status_code = 404

    def __init__(self, entity: str, entity_id: Any) -> None:
        super().__init__(f"{entity} not found", details={"entity": entity, "id": str(entity_id)})
        self.entity = entity
        self.entity_id = entity_id


class ValidationFailedError(CRMError):
    code = "validation_failed"
    status_code = 422


class ConflictError(CRMError):
    code = "conflict"
    status_code = 409


class AutomationFailedError(CRMError):
    """Activity or Task creation failed while applying a stage change."""

    code = "automation_failed"
    status_code = 500


class AuditWriteFailedError(CRMError):
    code = "audit_write_failed"
    status_code = 500

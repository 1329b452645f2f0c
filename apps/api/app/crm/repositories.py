from __future__ import annotations

import uuid
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Protocol

from sqlalchemy import inspect, select
from sqlalchemy.orm import Session

from app.automation import errors
from app.crm.models import (
    CRMCandidate,
    CRMContact,
    CRMDeal,
    CRMEmailSuppression,
    CRMPosition,
    CRMRecruitingPipeline,
    CRMStage,
)


class RecordStore(Protocol):
    """What the automation engine needs from the CRM persistence layer."""

    def find(self, entity_type: str, entity_id: Any, user_id: str | None = None) -> dict[str, Any] | None: ...

    def update(self, entity_type: str, entity_id: Any, changes: dict[str, Any]) -> dict[str, Any]: ...

    def find_suppression(self, email: str, user_id: str) -> str | None: ...

    def list_entities(self, entity_type: str, user_id: str, limit: int = 100) -> list[dict[str, Any]]: ...


# snapshot key -> mapped attribute
_FIELD_MAPS: dict[str, dict[str, str]] = {
    "contact": {
        "id": "id",
        "userId": "user_id",
        "firstName": "first_name",
        "lastName": "last_name",
        "email": "email",
        "phone": "phone",
        "company": "company",
        "position": "position",
        "source": "source",
        "tags": "tags",
        "notes": "notes",
        "customFields": "custom_fields",
        "createdAt": "created_at",
        "updatedAt": "updated_at",
    },
    "deal": {
        "id": "id",
        "userId": "user_id",
        "contactId": "contact_id",
        "stageId": "stage_id",
        "name": "name",
        "value": "value",
        "status": "status",
        "notes": "notes",
        "expectedCloseDate": "expected_close_date",
        "closedAt": "closed_at",
        "customFields": "custom_fields",
        "createdAt": "created_at",
        "updatedAt": "updated_at",
    },
    "stage": {
        "id": "id",
        "userId": "user_id",
        "name": "name",
        "order": "position",
        "color": "color",
        "isActive": "is_active",
        "pipelineType": "pipeline_type",
    },
    "candidate": {
        "id": "id",
        "userId": "user_id",
        "firstName": "first_name",
        "lastName": "last_name",
        "email": "email",
        "phone": "phone",
        "currentTitle": "current_title",
        "tags": "tags",
    },
    "position": {
        "id": "id",
        "userId": "user_id",
        "title": "title",
        "department": "department",
        "location": "location",
        "status": "status",
    },
    "pipeline": {
        "id": "id",
        "userId": "user_id",
        "candidateId": "candidate_id",
        "positionId": "position_id",
        "stageId": "stage_id",
        "status": "status",
        "rating": "rating",
        "notes": "notes",
        "interviewDate": "interview_date",
        "customFields": "custom_fields",
    },
}

_MODELS: dict[str, type] = {
    "contact": CRMContact,
    "deal": CRMDeal,
    "stage": CRMStage,
    "candidate": CRMCandidate,
    "position": CRMPosition,
    "pipeline": CRMRecruitingPipeline,
}

_READ_ONLY_FIELDS = {"id", "userId", "createdAt", "updatedAt"}


def _snapshot_value(value: Any) -> Any:
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, list):
        return list(value)
    if isinstance(value, dict):
        return dict(value)
    return value


def _as_uuid(value: Any) -> uuid.UUID | None:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError):
        return None


class SqlRecordStore:
    """RecordStore over a SQLAlchemy session.

    Snapshots are plain camelCase dicts; deals embed ``Contact``/``Stage`` and
    recruiting pipelines embed ``Candidate``/``Position`` so templates and
    conditions can reach related records.
    """

    entity_types = tuple(_MODELS)

    def __init__(self, session: Session) -> None:
        self.session = session

    def _model(self, entity_type: str) -> type:
        model = _MODELS.get(entity_type)
        if model is None:
            raise errors.ValidationError(f"unsupported entity type: {entity_type}")
        return model

    def _load(self, entity_type: str, entity_id: Any, user_id: str | None = None) -> Any:
        model = self._model(entity_type)
        parsed_id = _as_uuid(entity_id)
        if parsed_id is None:
            return None
        query = select(model).where(model.id == parsed_id)
        if user_id is not None:
            query = query.where(model.user_id == str(user_id))
        return self.session.scalar(query)

    def to_snapshot(self, entity_type: str, row: Any) -> dict[str, Any]:
        snapshot = {key: _snapshot_value(getattr(row, attr)) for key, attr in _FIELD_MAPS[entity_type].items()}
        if entity_type == "contact":
            snapshot["fullName"] = " ".join(part for part in (row.first_name, row.last_name) if part)
        elif entity_type == "deal":
            snapshot["Contact"] = self.to_snapshot("contact", row.contact) if row.contact is not None else None
            snapshot["Stage"] = self.to_snapshot("stage", row.stage) if row.stage is not None else None
        elif entity_type == "pipeline":
            snapshot["Candidate"] = self.to_snapshot("candidate", row.candidate) if row.candidate is not None else None
            snapshot["Position"] = self.to_snapshot("position", row.position) if row.position is not None else None
        return snapshot

    def find(self, entity_type: str, entity_id: Any, user_id: str | None = None) -> dict[str, Any] | None:
        row = self._load(entity_type, entity_id, user_id)
        if row is None:
            return None
        return self.to_snapshot(entity_type, row)

    def update(self, entity_type: str, entity_id: Any, changes: dict[str, Any]) -> dict[str, Any]:
        row = self._load(entity_type, entity_id)
        if row is None:
            raise errors.NotFoundError(f"{entity_type} {entity_id} not found")

        field_map = _FIELD_MAPS[entity_type]
        for key, value in changes.items():
            attr = field_map.get(key)
            if attr is None or key in _READ_ONLY_FIELDS:
                raise errors.ValidationError(f"field '{key}' is not writable on {entity_type}")
            setattr(row, attr, self._coerce(row, attr, value))

        self.session.add(row)
        self.session.flush()
        # reload relationships that follow a changed foreign key
        self.session.expire(row)
        return self.to_snapshot(entity_type, row)

    def find_suppression(self, email: str, user_id: str) -> str | None:
        normalized = email.strip().lower()
        if not normalized:
            return None
        row = self.session.scalar(
            select(CRMEmailSuppression).where(
                CRMEmailSuppression.email == normalized,
                CRMEmailSuppression.user_id == str(user_id),
            )
        )
        return row.reason if row is not None else None

    def list_entities(self, entity_type: str, user_id: str, limit: int = 100) -> list[dict[str, Any]]:
        model = self._model(entity_type)
        rows = self.session.scalars(select(model).where(model.user_id == str(user_id)).limit(limit)).all()
        return [self.to_snapshot(entity_type, row) for row in rows]

    def _coerce(self, row: Any, attr: str, value: Any) -> Any:
        column = inspect(row.__class__).columns[attr]
        try:
            python_type = column.type.python_type
        except NotImplementedError:
            python_type = None
        if value is None or python_type is None or isinstance(value, python_type):
            return value

        try:
            if python_type is uuid.UUID:
                return uuid.UUID(str(value))
            if python_type is Decimal:
                return Decimal(str(value))
            if python_type is datetime:
                return datetime.fromisoformat(str(value))
            if python_type is int:
                return int(value)
            if python_type is bool:
                return str(value).strip().lower() in {"1", "true", "yes"}
            if python_type is str:
                return str(value)
        except (TypeError, ValueError, InvalidOperation) as exc:
            raise errors.ValidationError(f"invalid value for '{attr}': {value!r}") from exc
        return value

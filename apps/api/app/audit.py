from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from app.context import get_correlation_id

audit_entries: list[dict[str, Any]] = []


def record(
    actor_user_id: str,
    automation_id: str,
    action: str,
    details: dict[str, Any] | None = None,
    correlation_id: str | None = None,
) -> None:
    """Append an operator action on an automation (manual enroll, unenroll, test run)."""
    audit_entries.append(
        {
            "id": str(uuid.uuid4()),
            "actor_user_id": actor_user_id,
            "automation_id": automation_id,
            "action": action,
            "details": details or {},
            "correlation_id": correlation_id or get_correlation_id(),
            "occurred_at": datetime.now(timezone.utc).isoformat(),
        }
    )

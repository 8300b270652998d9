"""
Admin activity log writer.

Every admin override operation records exactly one entry, in the same
transaction as the change it describes.
"""

from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models import AdminActivityLog
from app.models.domain import ActorContext


def _json_safe(value: Any) -> Any:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, (list, tuple)):
        return [_json_safe(item) for item in value]
    if isinstance(value, dict):
        return {str(key): _json_safe(item) for key, item in value.items()}
    return str(value)


def record_activity(
    session: AsyncSession,
    actor: ActorContext,
    action: str,
    target_type: str,
    target_id: Any = None,
    target_label: str | None = None,
    details: dict[str, Any] | None = None,
) -> AdminActivityLog:
    """Stage an activity log entry on the session (committed by the caller)."""
    entry = AdminActivityLog(
        admin_id=actor.admin_id,
        admin_email=actor.admin_email,
        action=action,
        target_type=target_type,
        target_id=str(target_id) if target_id is not None else None,
        target_label=target_label,
        details=_json_safe(details) if details else None,
        ip=actor.ip,
    )
    session.add(entry)
    return entry

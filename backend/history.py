"""
Task history emitter.

Writes append-only TaskHistory rows inside the caller's transaction. Entries are
only flushed here; the route commits them together with the change they
describe, so a failed history write rolls the whole mutation back.
"""

import logging
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from sqlalchemy.orm import Session

from models import HistoryAction, TaskHistory

logger = logging.getLogger(__name__)

# Derived stamps follow status and are never audited on their own
DERIVED_FIELDS = frozenset({"completed_at", "resolved_at"})


def render_value(value: Any) -> Optional[str]:
    """String form of a field value as stored in old_value/new_value."""
    if value is None:
        return None
    if isinstance(value, Enum):
        return str(value.value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def record_event(
    db: Session,
    task_id: int,
    actor_id: Optional[int],
    action: HistoryAction,
    field_name: Optional[str] = None,
    old_value: Any = None,
    new_value: Any = None,
) -> TaskHistory:
    """
    Append a single history entry.

    Args:
        db: Database session (entry is flushed, not committed)
        task_id: Task the entry belongs to
        actor_id: User who performed the action
        action: CREATED, UPDATED, UPLOADED, DELETED, COMMENTED, SUBMITTED or PERMISSION_VIOLATION
        field_name: Field or sub-resource the entry is about (optional)
        old_value: Previous value, rendered to a string (optional)
        new_value: New value, rendered to a string (optional)

    Returns:
        The flushed TaskHistory row
    """
    action = HistoryAction(action)
    entry = TaskHistory(
        task_id=task_id,
        user_id=actor_id,
        action=action.value,
        field_name=field_name,
        old_value=render_value(old_value),
        new_value=render_value(new_value),
    )
    db.add(entry)
    db.flush()

    logger.debug(f"History entry {entry.id}: task={task_id} action={action.value} field={field_name}")
    return entry


def record_field_changes(
    db: Session,
    task_id: int,
    actor_id: Optional[int],
    old_values: Mapping[str, Any],
    new_values: Mapping[str, Any],
    field_prefix: str = "",
) -> List[TaskHistory]:
    """
    Append one UPDATED entry per field whose rendered value changed.

    Fields in DERIVED_FIELDS are skipped. ``field_prefix`` namespaces
    sub-resource fields (e.g. "subtask_status").
    """
    entries = []
    for field_name, new_value in new_values.items():
        if field_name in DERIVED_FIELDS or field_name not in old_values:
            continue
        old_rendered = render_value(old_values[field_name])
        new_rendered = render_value(new_value)
        if old_rendered == new_rendered:
            continue
        entries.append(
            record_event(
                db,
                task_id,
                actor_id,
                HistoryAction.UPDATED,
                field_name=f"{field_prefix}{field_name}",
                old_value=old_rendered,
                new_value=new_rendered,
            )
        )

    if entries:
        logger.info(f"Recorded {len(entries)} field change(s) on task {task_id} by user {actor_id}")
    return entries


def record_permission_violations(
    db: Session, task_id: int, actor_id: Optional[int], rejected: List[str], requested: Dict[str, Any]
) -> List[TaskHistory]:
    """Append a PERMISSION_VIOLATION entry per rejected field, carrying the attempted value."""
    entries = []
    for field_name in rejected:
        entries.append(
            record_event(
                db,
                task_id,
                actor_id,
                HistoryAction.PERMISSION_VIOLATION,
                field_name=field_name,
                new_value=_attempted(requested.get(field_name)),
            )
        )
    if entries:
        logger.warning(f"User {actor_id} attempted to modify restricted fields {rejected} on task {task_id}")
    return entries


def _attempted(value: Any) -> Optional[str]:
    rendered = render_value(value)
    if rendered is not None and len(rendered) > 500:
        return rendered[:500]
    return rendered

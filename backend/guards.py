"""
Mutation guards: which requested fields an actor may write, and in what form.

The field tables below are the single source of truth for editable fields.
Each entry names the permission tiers that may write the field, a validator
that checks and normalizes the raw request value, and an optional rule that
needs request context (the assignee rule).

Tiers follow the task permission set:
    EDIT    can_edit            title, description, priority, status, due_date,
                                assignee_id, team_id, estimated_hours
    STATUS  can_update_status   status, actual_hours, progress, assignee_id
                                (self or null only)
    PROGRESS (anyone else)      progress

filter_editable_fields never raises for lack of permission; disallowed fields
come back in ``rejected`` and invalid values in ``errors``.
"""

import enum
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, timezone
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Mapping, Optional

from auth.access import TaskPermissions
from errors import FieldError, ValidationFailed
from models import BugSeverity, DeployEnvironment, TaskPriority, TaskStatus
from time_utils import utc_now

logger = logging.getLogger(__name__)


class Tier(enum.Enum):
    PROGRESS = "PROGRESS"
    STATUS = "STATUS"
    EDIT = "EDIT"


class Rejected(Exception):
    """Raised by a field rule when the actor may not set this value."""


@dataclass(frozen=True)
class GuardContext:
    actor_id: Optional[int]
    can_assign: bool
    current_assignee_id: Optional[int] = None
    team_member_ids: Optional[FrozenSet[int]] = None


@dataclass(frozen=True)
class FieldSpec:
    validator: Callable[[Any], Any]
    tiers: FrozenSet[Tier] = frozenset()
    rule: Optional[Callable[[Any, GuardContext], None]] = None


@dataclass
class FieldFilterResult:
    accepted: Dict[str, Any] = field(default_factory=dict)
    rejected: List[str] = field(default_factory=list)
    errors: List[FieldError] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

    def raise_for_errors(self) -> None:
        if self.errors:
            raise ValidationFailed(self.errors)


# ============== Validators ==============
# Each takes the raw request value and returns the normalized value or raises ValueError.

def _text(max_length: Optional[int] = None, required: bool = False) -> Callable[[Any], Any]:
    def validate(value):
        if value is None:
            if required:
                raise ValueError("is required")
            return ""
        if not isinstance(value, str):
            raise ValueError("must be a string")
        value = value.strip()
        if required and not value:
            raise ValueError("must not be empty")
        if max_length is not None and len(value) > max_length:
            raise ValueError(f"must be at most {max_length} characters")
        return value
    return validate


def _choice(enum_cls) -> Callable[[Any], Any]:
    allowed = ", ".join(member.value for member in enum_cls)

    def validate(value):
        if isinstance(value, enum_cls):
            return value
        if not isinstance(value, str):
            raise ValueError(f"must be one of: {allowed}")
        # "in progress" and "in_progress" both mean IN_PROGRESS
        normalized = value.strip().upper().replace(" ", "_").replace("-", "_")
        try:
            return enum_cls(normalized)
        except ValueError:
            raise ValueError(f"must be one of: {allowed}") from None
    return validate


def _datetime(nullable: bool) -> Callable[[Any], Any]:
    def validate(value):
        if value is None:
            if nullable:
                return None
            raise ValueError("is required")
        if isinstance(value, datetime):
            parsed = value
        elif isinstance(value, date):
            parsed = datetime.combine(value, time.min)
        elif isinstance(value, str):
            try:
                parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
            except ValueError:
                raise ValueError("must be an ISO 8601 date or datetime") from None
        else:
            raise ValueError("must be an ISO 8601 date or datetime")
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed
    return validate


def _hours(value):
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValueError("must be a number")
    try:
        hours = float(value)
    except (TypeError, ValueError):
        raise ValueError("must be a number") from None
    if hours < 0:
        raise ValueError("must not be negative")
    return hours


def _progress(value):
    if isinstance(value, bool) or value is None:
        raise ValueError("must be an integer between 0 and 100")
    try:
        progress = int(value)
    except (TypeError, ValueError):
        raise ValueError("must be an integer between 0 and 100") from None
    if progress != float(value) or not 0 <= progress <= 100:
        raise ValueError("must be an integer between 0 and 100")
    return progress


def _optional_id(value):
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValueError("must be an integer id or null")
    if isinstance(value, str) and value.strip().isdigit():
        value = int(value.strip())
    if not isinstance(value, int) or value <= 0:
        raise ValueError("must be an integer id or null")
    return value


# ============== Rules ==============

def _assignee_rule(value: Optional[int], ctx: GuardContext) -> None:
    """
    Self-assignment and unassignment are always allowed; assigning a third
    party needs can_assign. On team tasks the target must be a team member.
    """
    if value == ctx.current_assignee_id:
        return
    if value is not None and value != ctx.actor_id and not ctx.can_assign:
        raise Rejected()
    if value is not None and ctx.team_member_ids is not None and value not in ctx.team_member_ids:
        raise ValueError("must be a member of the task's team")


# ============== Field tables ==============

EDIT = frozenset({Tier.EDIT})
EDIT_OR_STATUS = frozenset({Tier.EDIT, Tier.STATUS})

TASK_FIELDS: Dict[str, FieldSpec] = {
    "title": FieldSpec(_text(200, required=True), EDIT),
    "description": FieldSpec(_text(), EDIT),
    "priority": FieldSpec(_choice(TaskPriority), EDIT),
    "status": FieldSpec(_choice(TaskStatus), EDIT_OR_STATUS),
    "due_date": FieldSpec(_datetime(nullable=False), EDIT),
    "assignee_id": FieldSpec(_optional_id, EDIT_OR_STATUS, rule=_assignee_rule),
    "team_id": FieldSpec(_optional_id, EDIT),
    "estimated_hours": FieldSpec(_hours, EDIT),
    "actual_hours": FieldSpec(_hours, frozenset({Tier.STATUS})),
    "progress": FieldSpec(_progress, frozenset({Tier.STATUS, Tier.PROGRESS})),
}

SUBTASK_FIELDS: Dict[str, FieldSpec] = {
    "title": FieldSpec(_text(200, required=True)),
    "description": FieldSpec(_text()),
    "status": FieldSpec(_choice(TaskStatus)),
    "priority": FieldSpec(_choice(TaskPriority)),
    "assignee_id": FieldSpec(_optional_id, rule=_assignee_rule),
    "due_date": FieldSpec(_datetime(nullable=True)),
}

BUG_REPORT_FIELDS: Dict[str, FieldSpec] = {
    "title": FieldSpec(_text(200, required=True)),
    "description": FieldSpec(_text()),
    "severity": FieldSpec(_choice(BugSeverity)),
    "environment": FieldSpec(_choice(DeployEnvironment)),
    "steps": FieldSpec(_text()),
    "expected": FieldSpec(_text()),
    "actual": FieldSpec(_text()),
    "resolution_notes": FieldSpec(_text()),
    "status": FieldSpec(_choice(TaskStatus)),
    "priority": FieldSpec(_choice(TaskPriority)),
    "assignee_id": FieldSpec(_optional_id, rule=_assignee_rule),
}


def permission_tier(permissions: TaskPermissions) -> Tier:
    if permissions.can_edit:
        return Tier.EDIT
    if permissions.can_update_status:
        return Tier.STATUS
    return Tier.PROGRESS


def _filter(
    table: Mapping[str, FieldSpec],
    requested: Mapping[str, Any],
    allowed: Callable[[FieldSpec], bool],
    ctx: GuardContext,
) -> FieldFilterResult:
    result = FieldFilterResult()

    for name, spec in table.items():
        if name not in requested:
            continue
        if not allowed(spec):
            result.rejected.append(name)
            continue
        try:
            value = spec.validator(requested[name])
            if spec.rule is not None:
                spec.rule(value, ctx)
        except Rejected:
            result.rejected.append(name)
            continue
        except ValueError as e:
            result.errors.append(FieldError(name, str(e)))
            continue
        result.accepted[name] = value

    result.rejected.extend(name for name in requested if name not in table)
    return result


def filter_editable_fields(
    permissions: TaskPermissions,
    requested: Mapping[str, Any],
    *,
    actor_id: Optional[int] = None,
    current_assignee_id: Optional[int] = None,
    team_member_ids: Optional[Iterable[int]] = None,
) -> FieldFilterResult:
    """
    Split a task update request by the actor's permission tier.

    Args:
        permissions: The actor's TaskPermissions on the task
        requested: Raw field -> value mapping from the request body
        actor_id: Acting user (needed for the self-assignment rule)
        current_assignee_id: Task's current assignee; an unchanged value skips the rule
        team_member_ids: Member ids of the task's team, None for personal tasks

    Returns:
        FieldFilterResult with normalized accepted values, rejected field names
        (not permitted or unknown) and per-field validation errors
    """
    tier = permission_tier(permissions)
    ctx = GuardContext(
        actor_id=actor_id,
        can_assign=permissions.can_assign,
        current_assignee_id=current_assignee_id,
        team_member_ids=frozenset(team_member_ids) if team_member_ids is not None else None,
    )
    result = _filter(TASK_FIELDS, requested, lambda spec: tier in spec.tiers, ctx)

    logger.debug(
        f"Field filter for user {actor_id} at tier {tier.value}: accepted={list(result.accepted)} "
        f"rejected={result.rejected} errors={len(result.errors)}"
    )
    return result


def filter_sub_resource_fields(
    table: Mapping[str, FieldSpec],
    requested: Mapping[str, Any],
    *,
    actor_id: Optional[int] = None,
    current_assignee_id: Optional[int] = None,
    team_member_ids: Optional[Iterable[int]] = None,
) -> FieldFilterResult:
    """
    Validate a subtask or bug report update.

    Access to sub-resources is all-or-nothing, so every known field is
    writable once the caller has passed the access check. Unknown fields are
    rejected and assignees must still be team members on team tasks.
    """
    ctx = GuardContext(
        actor_id=actor_id,
        can_assign=True,
        current_assignee_id=current_assignee_id,
        team_member_ids=frozenset(team_member_ids) if team_member_ids is not None else None,
    )
    return _filter(table, requested, lambda spec: True, ctx)


def apply_status_transition(record: Any, new_status: Any, stamp_field: str = "completed_at", now: Optional[datetime] = None) -> None:
    """
    Set a record's status and keep its completion stamp consistent.

    Entering COMPLETED stamps ``stamp_field`` with ``now`` (an already stamped
    COMPLETED record keeps its stamp); any other status clears it.
    """
    new_status = TaskStatus(new_status)
    was_completed = record.status == TaskStatus.COMPLETED
    record.status = new_status

    if new_status == TaskStatus.COMPLETED:
        if not was_completed or getattr(record, stamp_field) is None:
            setattr(record, stamp_field, now or utc_now())
    else:
        setattr(record, stamp_field, None)


def apply_fields(record: Any, accepted: Mapping[str, Any], stamp_field: str = "completed_at", now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    Write accepted values onto a record.

    Returns:
        Previous value of every written field, for the history emitter
    """
    old_values = {}
    for name, value in accepted.items():
        old_values[name] = getattr(record, name)
        if name == "status":
            apply_status_transition(record, value, stamp_field, now)
        else:
            setattr(record, name, value)
    return old_values

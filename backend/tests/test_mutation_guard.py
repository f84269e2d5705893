"""
Tests for the mutation guards (guards.py).

Tests cover:
- Field filtering by permission tier (edit, status-only, progress-only)
- Unknown fields and value normalization
- Assignee rules (self, unassign, third party, team membership)
- Completion stamp transitions
- Sub-resource field validation
"""

import logging
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest

from auth.access import TaskFacts, TaskPermissions, TeamIndex, task_permissions
from errors import ValidationFailed
from guards import (
    BUG_REPORT_FIELDS,
    SUBTASK_FIELDS,
    Tier,
    apply_fields,
    apply_status_transition,
    filter_editable_fields,
    filter_sub_resource_fields,
    permission_tier,
)
from models import TaskPriority, TaskStatus, TeamRole

logger = logging.getLogger(__name__)

OWNER, MEMBER, ASSIGNEE = 1, 2, 3
TEAM_ID = 10


@pytest.fixture
def team_index() -> TeamIndex:
    return TeamIndex(team_id=TEAM_ID, owner_id=OWNER, roles={OWNER: TeamRole.OWNER, MEMBER: TeamRole.MEMBER})


@pytest.fixture
def assignee_permissions(team_index: TeamIndex) -> TaskPermissions:
    task = TaskFacts(creator_id=OWNER, assignee_id=ASSIGNEE, team_id=TEAM_ID)
    return task_permissions(task, ASSIGNEE, team_index)


@pytest.fixture
def owner_permissions(team_index: TeamIndex) -> TaskPermissions:
    task = TaskFacts(creator_id=OWNER, assignee_id=ASSIGNEE, team_id=TEAM_ID)
    return task_permissions(task, OWNER, team_index)


# ============== Permission Tiers (6 tests) ==============


def test_status_tier_accepts_status_rejects_title(assignee_permissions: TaskPermissions):
    """Test that a status-only actor gets status applied and title rejected."""
    logger.debug("Testing status tier field filter")

    result = filter_editable_fields(
        assignee_permissions,
        {"title": "Renamed", "status": "COMPLETED"},
        actor_id=ASSIGNEE,
        current_assignee_id=ASSIGNEE,
    )

    assert permission_tier(assignee_permissions) == Tier.STATUS
    assert result.accepted == {"status": TaskStatus.COMPLETED}
    assert result.rejected == ["title"]
    assert result.ok
    logger.info("✓ Status tier accepts status and rejects title")


def test_edit_tier_accepts_edit_fields(owner_permissions: TaskPermissions):
    """Test that an editor can write every EDIT field."""
    due = "2030-01-15T12:00:00Z"
    result = filter_editable_fields(
        owner_permissions,
        {"title": "  New title  ", "priority": "high", "due_date": due, "estimated_hours": "4.5"},
        actor_id=OWNER,
    )

    assert result.ok
    assert result.rejected == []
    assert result.accepted["title"] == "New title"
    assert result.accepted["priority"] == TaskPriority.HIGH
    assert result.accepted["due_date"] == datetime(2030, 1, 15, 12, tzinfo=timezone.utc)
    assert result.accepted["estimated_hours"] == 4.5
    logger.info("✓ Edit tier accepts edit fields")


def test_edit_tier_does_not_include_status_only_fields(owner_permissions: TaskPermissions):
    """Test that actual_hours and progress belong to the status tier only."""
    result = filter_editable_fields(owner_permissions, {"actual_hours": 3, "progress": 50}, actor_id=OWNER)

    assert result.accepted == {}
    assert sorted(result.rejected) == ["actual_hours", "progress"]
    logger.info("✓ Edit tier rejects status-only fields")


def test_progress_tier_only_accepts_progress():
    """Test that an actor with no status permission can only report progress."""
    permissions = TaskPermissions.none()

    result = filter_editable_fields(permissions, {"progress": 40, "status": "COMPLETED"}, actor_id=MEMBER)

    assert permission_tier(permissions) == Tier.PROGRESS
    assert result.accepted == {"progress": 40}
    assert result.rejected == ["status"]
    logger.info("✓ Progress tier accepts progress only")


def test_unknown_fields_are_rejected(owner_permissions: TaskPermissions):
    """Test that fields outside the table are rejected, never applied."""
    result = filter_editable_fields(owner_permissions, {"creator_id": 99, "id": 5, "title": "Ok"}, actor_id=OWNER)

    assert result.accepted == {"title": "Ok"}
    assert sorted(result.rejected) == ["creator_id", "id"]
    logger.info("✓ Unknown fields rejected")


def test_status_spellings_are_normalized(assignee_permissions: TaskPermissions):
    """Test that 'in progress' and 'in-progress' both mean IN_PROGRESS."""
    for spelling in ("in progress", "IN-PROGRESS", "In_Progress"):
        result = filter_editable_fields(assignee_permissions, {"status": spelling}, actor_id=ASSIGNEE)
        assert result.accepted == {"status": TaskStatus.IN_PROGRESS}, f"Failed for {spelling!r}"
    logger.info("✓ Status spellings normalized")


# ============== Validation Errors (3 tests) ==============


def test_invalid_values_are_reported_per_field(owner_permissions: TaskPermissions):
    """Test that invalid values produce field errors and are not accepted."""
    result = filter_editable_fields(
        owner_permissions,
        {"title": "   ", "priority": "urgent", "due_date": "tomorrow", "estimated_hours": -1},
        actor_id=OWNER,
    )

    assert not result.ok
    assert result.accepted == {}
    assert {error.field for error in result.errors} == {"title", "priority", "due_date", "estimated_hours"}
    logger.info("✓ Invalid values reported per field")


def test_progress_out_of_range(assignee_permissions: TaskPermissions):
    """Test that progress must be an integer in 0..100."""
    for value in (-1, 101, 12.5, True, "abc"):
        result = filter_editable_fields(assignee_permissions, {"progress": value}, actor_id=ASSIGNEE)
        assert [error.field for error in result.errors] == ["progress"], f"Expected error for {value!r}"
    logger.info("✓ Out-of-range progress rejected")


def test_raise_for_errors_raises_validation_failed(owner_permissions: TaskPermissions):
    """Test that raise_for_errors produces a 400 with field errors."""
    result = filter_editable_fields(owner_permissions, {"due_date": None}, actor_id=OWNER)

    with pytest.raises(ValidationFailed) as exc_info:
        result.raise_for_errors()

    assert exc_info.value.status_code == 400
    assert exc_info.value.detail["code"] == "VALIDATION_FAILED"
    assert exc_info.value.detail["errors"][0]["field"] == "due_date"
    logger.info("✓ raise_for_errors raises ValidationFailed")


# ============== Assignee Rules (5 tests) ==============


def test_status_tier_may_unassign_self(assignee_permissions: TaskPermissions):
    """Test that the assignee can hand the task back."""
    result = filter_editable_fields(
        assignee_permissions, {"assignee_id": None}, actor_id=ASSIGNEE, current_assignee_id=ASSIGNEE
    )

    assert result.accepted == {"assignee_id": None}
    logger.info("✓ Assignee may unassign")


def test_status_tier_cannot_assign_third_party(assignee_permissions: TaskPermissions):
    """Test that assigning someone else needs can_assign."""
    result = filter_editable_fields(
        assignee_permissions, {"assignee_id": MEMBER}, actor_id=ASSIGNEE, current_assignee_id=ASSIGNEE
    )

    assert result.accepted == {}
    assert result.rejected == ["assignee_id"]
    logger.info("✓ Third-party assignment rejected without can_assign")


def test_unchanged_assignee_skips_rule(assignee_permissions: TaskPermissions, team_index: TeamIndex):
    """Test that resending the current non-member assignee is accepted."""
    result = filter_editable_fields(
        assignee_permissions,
        {"assignee_id": ASSIGNEE},
        actor_id=ASSIGNEE,
        current_assignee_id=ASSIGNEE,
        team_member_ids=team_index.member_ids,
    )

    assert result.accepted == {"assignee_id": ASSIGNEE}
    logger.info("✓ Unchanged assignee skips the rule")


def test_assignee_must_be_team_member(owner_permissions: TaskPermissions, team_index: TeamIndex):
    """Test that team tasks can only be assigned to team members."""
    result = filter_editable_fields(
        owner_permissions,
        {"assignee_id": 99},
        actor_id=OWNER,
        current_assignee_id=ASSIGNEE,
        team_member_ids=team_index.member_ids,
    )

    assert [error.field for error in result.errors] == ["assignee_id"]

    result = filter_editable_fields(
        owner_permissions,
        {"assignee_id": MEMBER},
        actor_id=OWNER,
        current_assignee_id=ASSIGNEE,
        team_member_ids=team_index.member_ids,
    )
    assert result.accepted == {"assignee_id": MEMBER}
    logger.info("✓ Assignee must be a team member")


def test_personal_task_assignee_unrestricted(owner_permissions: TaskPermissions):
    """Test that personal tasks accept any assignee from an editor."""
    result = filter_editable_fields(owner_permissions, {"assignee_id": "42"}, actor_id=OWNER)

    assert result.accepted == {"assignee_id": 42}
    logger.info("✓ Personal task assignee unrestricted")


# ============== Completion Stamps (4 tests) ==============


def test_entering_completed_stamps_time():
    """Test that COMPLETED sets completed_at to at least the request time."""
    record = SimpleNamespace(status=TaskStatus.IN_PROGRESS, completed_at=None)
    before = datetime.now(timezone.utc)

    apply_status_transition(record, TaskStatus.COMPLETED)

    assert record.status == TaskStatus.COMPLETED
    assert record.completed_at is not None
    assert record.completed_at >= before
    logger.info("✓ COMPLETED stamps completed_at")


def test_leaving_completed_clears_stamp():
    """Test that moving out of COMPLETED clears completed_at."""
    record = SimpleNamespace(status=TaskStatus.COMPLETED, completed_at=datetime.now(timezone.utc))

    apply_status_transition(record, "IN_PROGRESS")

    assert record.status == TaskStatus.IN_PROGRESS
    assert record.completed_at is None
    logger.info("✓ Leaving COMPLETED clears completed_at")


def test_recompleting_keeps_original_stamp():
    """Test that COMPLETED -> COMPLETED keeps the first completion time."""
    first = datetime.now(timezone.utc) - timedelta(days=1)
    record = SimpleNamespace(status=TaskStatus.COMPLETED, completed_at=first)

    apply_status_transition(record, TaskStatus.COMPLETED)

    assert record.completed_at == first
    logger.info("✓ Re-completing keeps the stamp")


def test_apply_fields_returns_old_values_and_uses_stamp_field():
    """Test apply_fields on a bug-report-like record with resolved_at."""
    now = datetime(2030, 5, 1, tzinfo=timezone.utc)
    record = SimpleNamespace(status=TaskStatus.TODO, resolved_at=None, title="Old")

    old_values = apply_fields(record, {"title": "New", "status": TaskStatus.COMPLETED}, stamp_field="resolved_at", now=now)

    assert old_values == {"title": "Old", "status": TaskStatus.TODO}
    assert record.title == "New"
    assert record.resolved_at == now
    logger.info("✓ apply_fields returns old values")


# ============== Sub-resource Fields (2 tests) ==============


def test_sub_resource_filter_accepts_known_fields_rejects_unknown():
    """Test that subtask updates accept table fields and reject the rest."""
    result = filter_sub_resource_fields(
        SUBTASK_FIELDS,
        {"title": "Step", "status": "completed", "task_id": 7},
        actor_id=MEMBER,
    )

    assert result.accepted == {"title": "Step", "status": TaskStatus.COMPLETED}
    assert result.rejected == ["task_id"]
    logger.info("✓ Sub-resource filter handles known and unknown fields")


def test_bug_report_assignee_must_be_team_member(team_index: TeamIndex):
    """Test that bug report assignees are checked against the team."""
    result = filter_sub_resource_fields(
        BUG_REPORT_FIELDS,
        {"assignee_id": ASSIGNEE, "severity": "critical"},
        actor_id=MEMBER,
        team_member_ids=team_index.member_ids,
    )

    assert [error.field for error in result.errors] == ["assignee_id"]
    assert "severity" in result.accepted
    logger.info("✓ Bug report assignee checked against team")

"""
Tests for team membership management (membership.py and /api/teams).

Tests cover:
- Team creation writes the OWNER membership row
- Adding members (roles, duplicates, unknown users, permissions)
- Removing members (self-removal, owner protection)
- Role changes (owner only, owner role immutable)
- Team endpoints hide teams from non-members
"""

import logging

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

import membership
import models
from errors import Conflict, Forbidden, InvalidOperation, NotFoundOrDenied, ValidationFailed
from models import TeamRole
from tests.conftest import auth_headers_for, create_user, make_task

logger = logging.getLogger(__name__)


def _role_of(db: Session, team: models.Team, user: models.User):
    row = (
        db.query(models.TeamMember)
        .filter(models.TeamMember.team_id == team.id, models.TeamMember.user_id == user.id)
        .first()
    )
    return row.role if row else None


# ============== Team Creation (2 tests) ==============


def test_create_team_adds_owner_membership(test_db: Session, team_owner: models.User):
    """Test that creating a team writes exactly one OWNER row for the creator."""
    team = membership.create_team(test_db, "Platform", None, team_owner)

    owners = test_db.query(models.TeamMember).filter(
        models.TeamMember.team_id == team.id, models.TeamMember.role == TeamRole.OWNER
    ).all()
    assert team.owner_id == team_owner.id
    assert [row.user_id for row in owners] == [team_owner.id]
    logger.info("✓ Team creation adds the OWNER row")


def test_create_team_endpoint(client: TestClient, team_owner: models.User):
    """Test POST /api/teams."""
    response = client.post(
        "/api/teams", json={"name": "Growth", "description": "Growth team"}, headers=auth_headers_for(team_owner)
    )

    assert response.status_code == 201, f"Expected 201, got {response.status_code}: {response.json()}"
    data = response.json()
    assert data["name"] == "Growth"
    assert data["owner_id"] == team_owner.id
    logger.info("✓ Team created through the API")


# ============== Add Member (5 tests) ==============


def test_admin_can_add_member(test_db: Session, team: models.Team, team_admin: models.User):
    """Test that an ADMIN may add members."""
    newcomer = create_user(test_db, "New User", "new@test.com")

    member = membership.add_member(test_db, team, newcomer.id, "MEMBER", team_admin.id)

    assert member.role == TeamRole.MEMBER
    assert _role_of(test_db, team, newcomer) == TeamRole.MEMBER
    logger.info("✓ ADMIN added a member")


def test_member_cannot_add_member(test_db: Session, team: models.Team, team_member: models.User, outsider: models.User):
    """Test that a plain MEMBER gets Forbidden."""
    with pytest.raises(Forbidden) as exc_info:
        membership.add_member(test_db, team, outsider.id, TeamRole.MEMBER, team_member.id)

    assert exc_info.value.status_code == 403
    assert _role_of(test_db, team, outsider) is None
    logger.info("✓ MEMBER cannot add members")


def test_add_member_rejects_owner_role(test_db: Session, team: models.Team, team_owner: models.User, outsider: models.User):
    """Test that the OWNER role cannot be granted."""
    with pytest.raises(ValidationFailed):
        membership.add_member(test_db, team, outsider.id, TeamRole.OWNER, team_owner.id)

    with pytest.raises(ValidationFailed):
        membership.add_member(test_db, team, outsider.id, "SUPERUSER", team_owner.id)
    logger.info("✓ OWNER and unknown roles rejected")


def test_add_existing_member_conflicts(test_db: Session, team: models.Team, team_owner: models.User, team_member: models.User):
    """Test that adding an existing member is a 409."""
    with pytest.raises(Conflict) as exc_info:
        membership.add_member(test_db, team, team_member.id, TeamRole.ADMIN, team_owner.id)

    assert exc_info.value.status_code == 409
    assert exc_info.value.detail["code"] == "ALREADY_MEMBER"
    assert _role_of(test_db, team, team_member) == TeamRole.MEMBER
    logger.info("✓ Duplicate member rejected")


def test_add_unknown_user_not_found(test_db: Session, team: models.Team, team_owner: models.User):
    """Test that adding a nonexistent user is a 404."""
    with pytest.raises(NotFoundOrDenied):
        membership.add_member(test_db, team, 99999, TeamRole.MEMBER, team_owner.id)
    logger.info("✓ Unknown user not found")


# ============== Remove Member (4 tests) ==============


def test_member_can_leave_team(test_db: Session, team: models.Team, team_member: models.User):
    """Test self-removal by a plain MEMBER."""
    membership.remove_member(test_db, team, team_member.id, team_member.id)

    assert _role_of(test_db, team, team_member) is None
    logger.info("✓ Member left the team")


def test_member_cannot_remove_others(test_db: Session, team: models.Team, team_member: models.User, reporter: models.User):
    """Test that a MEMBER cannot remove another member."""
    with pytest.raises(Forbidden):
        membership.remove_member(test_db, team, reporter.id, team_member.id)

    assert _role_of(test_db, team, reporter) == TeamRole.MEMBER
    logger.info("✓ MEMBER cannot remove others")


def test_owner_cannot_be_removed(test_db: Session, team: models.Team, team_owner: models.User, team_admin: models.User):
    """Test that the owner row is protected, even from the owner."""
    for actor in (team_admin, team_owner):
        with pytest.raises(InvalidOperation) as exc_info:
            membership.remove_member(test_db, team, team_owner.id, actor.id)
        assert exc_info.value.detail["code"] == "OWNER_REMOVAL"

    assert _role_of(test_db, team, team_owner) == TeamRole.OWNER
    logger.info("✓ Owner cannot be removed")


def test_remove_non_member_not_found(test_db: Session, team: models.Team, team_admin: models.User, outsider: models.User):
    """Test that removing a non-member is a 404."""
    with pytest.raises(NotFoundOrDenied):
        membership.remove_member(test_db, team, outsider.id, team_admin.id)
    logger.info("✓ Removing a non-member is not found")


# ============== Role Changes (4 tests) ==============


def test_owner_can_promote_member(test_db: Session, team: models.Team, team_owner: models.User, team_member: models.User):
    """Test that the owner can change a member's role."""
    member = membership.update_role(test_db, team, team_member.id, "ADMIN", team_owner.id)

    assert member.role == TeamRole.ADMIN
    logger.info("✓ Owner promoted member to ADMIN")


def test_admin_cannot_change_roles(test_db: Session, team: models.Team, team_admin: models.User, team_member: models.User):
    """Test that only the owner may change roles."""
    with pytest.raises(Forbidden) as exc_info:
        membership.update_role(test_db, team, team_member.id, TeamRole.ADMIN, team_admin.id)

    assert exc_info.value.detail["code"] == "FORBIDDEN"
    assert _role_of(test_db, team, team_member) == TeamRole.MEMBER
    logger.info("✓ ADMIN cannot change roles")


def test_owner_cannot_change_own_role(test_db: Session, team: models.Team, team_owner: models.User):
    """Test that the OWNER role is immutable."""
    with pytest.raises(InvalidOperation) as exc_info:
        membership.update_role(test_db, team, team_owner.id, TeamRole.MEMBER, team_owner.id)

    assert exc_info.value.detail["code"] == "OWNER_ROLE_CHANGE"
    assert _role_of(test_db, team, team_owner) == TeamRole.OWNER
    logger.info("✓ Owner role cannot be changed")


def test_owner_role_cannot_be_granted(test_db: Session, team: models.Team, team_owner: models.User, team_admin: models.User):
    """Test that promoting someone to OWNER is a validation error."""
    with pytest.raises(ValidationFailed):
        membership.update_role(test_db, team, team_admin.id, TeamRole.OWNER, team_owner.id)
    logger.info("✓ OWNER role cannot be granted")


# ============== Team Endpoints (6 tests) ==============


def test_non_member_gets_404_for_team(client: TestClient, team: models.Team, outsider: models.User):
    """Test that a team is hidden from non-members."""
    response = client.get(f"/api/teams/{team.id}", headers=auth_headers_for(outsider))

    assert response.status_code == 404, f"Expected 404, got {response.status_code}: {response.json()}"
    assert response.json()["detail"]["code"] == "NOT_FOUND"
    logger.info("✓ Team hidden from non-members")


def test_member_sees_team_with_role(client: TestClient, team: models.Team, team_member: models.User):
    """Test team detail for a plain member."""
    response = client.get(f"/api/teams/{team.id}", headers=auth_headers_for(team_member))

    assert response.status_code == 200, f"Expected 200, got {response.status_code}: {response.json()}"
    data = response.json()
    assert data["my_role"] == "MEMBER"
    assert len(data["members"]) == 4
    logger.info("✓ Member sees team detail")


def test_member_cannot_update_team(client: TestClient, team: models.Team, team_member: models.User):
    """Test that renaming a team is owner only."""
    response = client.put(f"/api/teams/{team.id}", json={"name": "Hijacked"}, headers=auth_headers_for(team_member))

    assert response.status_code == 403, f"Expected 403, got {response.status_code}: {response.json()}"
    logger.info("✓ Member cannot update team")


def test_add_member_endpoint_conflict(client: TestClient, team: models.Team, team_owner: models.User, team_member: models.User):
    """Test that the API maps duplicate adds to 409."""
    response = client.post(
        f"/api/teams/{team.id}/members",
        json={"user_id": team_member.id, "role": "MEMBER"},
        headers=auth_headers_for(team_owner),
    )

    assert response.status_code == 409, f"Expected 409, got {response.status_code}: {response.json()}"
    logger.info("✓ Duplicate add returns 409")


def test_role_change_endpoint_forbidden_for_admin(
    client: TestClient, team: models.Team, team_admin: models.User, team_member: models.User
):
    """Test PUT /api/teams/{id}/members/{user_id} by an ADMIN."""
    response = client.put(
        f"/api/teams/{team.id}/members/{team_member.id}",
        json={"role": "ADMIN"},
        headers=auth_headers_for(team_admin),
    )

    assert response.status_code == 403, f"Expected 403, got {response.status_code}: {response.json()}"
    logger.info("✓ ADMIN role change forbidden via API")


def test_team_task_list_respects_visibility(
    client: TestClient,
    test_db: Session,
    team: models.Team,
    team_owner: models.User,
    team_member: models.User,
    team_task: models.Task,
):
    """Test that a member only sees their own tasks in the team list while the owner sees all."""
    own = make_task(test_db, team_member, title="Member team task", team_id=team.id)

    owner_response = client.get(f"/api/teams/{team.id}/tasks", headers=auth_headers_for(team_owner))
    member_response = client.get(f"/api/teams/{team.id}/tasks", headers=auth_headers_for(team_member))

    assert owner_response.status_code == 200
    assert {t["id"] for t in owner_response.json()} == {team_task.id, own.id}
    assert [t["id"] for t in member_response.json()] == [own.id]
    logger.info("✓ Team task list respects visibility")

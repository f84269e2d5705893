"""
Team membership management.

Maintains the invariant that every team has exactly one OWNER membership row,
belonging to Team.owner_id and created in the same transaction as the team.
The OWNER role cannot be granted, changed or removed through these operations;
ownership transfer is not supported.

Each operation commits its own transaction and raises the HTTP-facing errors
from errors.py.
"""

import logging
from typing import Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from errors import Conflict, FieldError, Forbidden, InvalidOperation, NotFoundOrDenied, ValidationFailed
from models import Team, TeamMember, TeamRole, User
from auth.access import MANAGING_ROLES
from auth.permissions import load_team_index

logger = logging.getLogger(__name__)


def _assignable_role(role) -> TeamRole:
    try:
        role = TeamRole(role)
    except ValueError:
        raise ValidationFailed([FieldError("role", "must be ADMIN or MEMBER")])
    if role == TeamRole.OWNER:
        raise ValidationFailed([FieldError("role", "OWNER role cannot be assigned")])
    return role


def _get_member(db: Session, team_id: int, user_id: int) -> Optional[TeamMember]:
    return (
        db.query(TeamMember)
        .filter(TeamMember.team_id == team_id, TeamMember.user_id == user_id)
        .with_for_update()
        .first()
    )


def create_team(db: Session, name: str, description: Optional[str], owner: User) -> Team:
    """Create a team and its OWNER membership row in one transaction."""
    try:
        team = Team(name=name, description=description, owner_id=owner.id)
        db.add(team)
        db.flush()
        db.add(TeamMember(team_id=team.id, user_id=owner.id, role=TeamRole.OWNER))
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to create team {name!r} for user {owner.id}: {e}")
        raise

    db.refresh(team)
    logger.info(f"Team created: id={team.id}, owner={owner.id}")
    return team


def add_member(db: Session, team: Team, target_user_id: int, role, actor_id: int) -> TeamMember:
    """
    Add a user to a team.

    Raises:
        Forbidden: actor is not the team's OWNER or an ADMIN
        ValidationFailed: role is not ADMIN or MEMBER
        NotFoundOrDenied: target user does not exist
        Conflict: target user is already a member
    """
    index = load_team_index(db, team.id)
    actor_role = index.role_of(actor_id)
    if actor_role not in MANAGING_ROLES:
        logger.info(f"User {actor_id} (role={actor_role}) tried to add a member to team {team.id}")
        raise Forbidden("add team members")

    role = _assignable_role(role)

    if db.query(User).filter(User.id == target_user_id).first() is None:
        raise NotFoundOrDenied("User")

    if index.is_member(target_user_id):
        raise Conflict("ALREADY_MEMBER", "User is already a member of this team")

    member = TeamMember(team_id=team.id, user_id=target_user_id, role=role)
    db.add(member)
    try:
        db.commit()
    except IntegrityError:
        # Concurrent add of the same user
        db.rollback()
        raise Conflict("ALREADY_MEMBER", "User is already a member of this team")

    db.refresh(member)
    logger.info(f"User {target_user_id} added to team {team.id} with role {role.value} by {actor_id}")
    return member


def remove_member(db: Session, team: Team, target_user_id: int, actor_id: int) -> None:
    """
    Remove a user from a team. Members may always remove themselves.

    Raises:
        Forbidden: actor is neither OWNER/ADMIN nor the target
        InvalidOperation: target is the team owner
        NotFoundOrDenied: target is not a member
    """
    index = load_team_index(db, team.id)
    actor_role = index.role_of(actor_id)
    if actor_role not in MANAGING_ROLES and actor_id != target_user_id:
        logger.info(f"User {actor_id} (role={actor_role}) tried to remove {target_user_id} from team {team.id}")
        raise Forbidden("remove team members")

    if target_user_id == team.owner_id:
        raise InvalidOperation("OWNER_REMOVAL", "The team owner cannot be removed from the team")

    member = _get_member(db, team.id, target_user_id)
    if member is None:
        raise NotFoundOrDenied("Team member")

    try:
        db.delete(member)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to remove user {target_user_id} from team {team.id}: {e}")
        raise

    logger.info(f"User {target_user_id} removed from team {team.id} by {actor_id}")


def update_role(db: Session, team: Team, target_user_id: int, new_role, actor_id: int) -> TeamMember:
    """
    Change a member's role. Only the team owner may do this.

    Raises:
        Forbidden: actor is not the team owner
        InvalidOperation: target is the team owner
        ValidationFailed: new role is not ADMIN or MEMBER
        NotFoundOrDenied: target is not a member
    """
    if actor_id != team.owner_id:
        logger.info(f"User {actor_id} tried to change roles in team {team.id} without owning it")
        raise Forbidden("change member roles")

    if target_user_id == team.owner_id:
        raise InvalidOperation("OWNER_ROLE_CHANGE", "The team owner's role cannot be changed")

    role = _assignable_role(new_role)

    member = _get_member(db, team.id, target_user_id)
    if member is None:
        raise NotFoundOrDenied("Team member")

    old_role = member.role
    member.role = role
    try:
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to update role of {target_user_id} in team {team.id}: {e}")
        raise

    db.refresh(member)
    logger.info(f"Member {target_user_id} in team {team.id}: {old_role.value} -> {role.value}")
    return member


def update_team(db: Session, team: Team, actor_id: int, changes: dict) -> Team:
    """Rename or re-describe a team (owner only)."""
    if actor_id != team.owner_id:
        raise Forbidden("update this team")

    for name in ("name", "description"):
        if name in changes:
            setattr(team, name, changes[name])
    try:
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to update team {team.id}: {e}")
        raise

    db.refresh(team)
    logger.info(f"Team {team.id} updated by {actor_id}: {sorted(changes)}")
    return team


def delete_team(db: Session, team: Team, actor_id: int) -> None:
    """Delete a team with its memberships and tasks (owner only)."""
    if actor_id != team.owner_id:
        raise Forbidden("delete this team")

    team_id = team.id
    try:
        db.delete(team)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to delete team {team_id}: {e}")
        raise

    logger.info(f"Team {team_id} deleted by {actor_id}")

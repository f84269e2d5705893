"""
Team endpoints: team CRUD, membership management and the team task list.

Team details are only shown to members (404 otherwise). Membership changes
go through membership.py, which enforces who may add, remove or re-role whom.
"""

import logging
from typing import List

from fastapi import APIRouter, Depends, status
from sqlalchemy import or_
from sqlalchemy.orm import Session, joinedload

import membership
import models
import schemas
from database import get_db
from errors import NotFoundOrDenied
from auth.dependencies import get_current_user
from auth.permissions import build_visibility_predicate, require_team_member

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/teams", tags=["teams"])


def _get_team(db: Session, team_id: int) -> models.Team:
    team = db.query(models.Team).filter(models.Team.id == team_id).first()
    if team is None:
        raise NotFoundOrDenied("Team")
    return team


def _members(db: Session, team_id: int) -> List[models.TeamMember]:
    return (
        db.query(models.TeamMember)
        .options(joinedload(models.TeamMember.user))
        .filter(models.TeamMember.team_id == team_id)
        .order_by(models.TeamMember.id)
        .all()
    )


@router.post("", response_model=schemas.Team, status_code=status.HTTP_201_CREATED)
def create_team(
    team_in: schemas.TeamCreate,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Create a team owned by the current user."""
    logger.info(f"User {current_user.id} creating team: {team_in.name}")
    return membership.create_team(db, team_in.name.strip(), team_in.description, current_user)


@router.get("", response_model=List[schemas.Team])
def list_teams(
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """List teams the current user owns or belongs to."""
    member_team_ids = db.query(models.TeamMember.team_id).filter(models.TeamMember.user_id == current_user.id)
    return (
        db.query(models.Team)
        .filter(or_(models.Team.owner_id == current_user.id, models.Team.id.in_(member_team_ids)))
        .order_by(models.Team.id)
        .all()
    )


@router.get("/{team_id}", response_model=schemas.TeamWithMembers)
def get_team(
    team_id: int,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    team, index = require_team_member(db, current_user, team_id)
    base = schemas.Team.model_validate(team).model_dump()
    return schemas.TeamWithMembers(
        **base,
        members=[schemas.TeamMemberResponse.model_validate(m) for m in _members(db, team_id)],
        my_role=index.role_of(current_user.id),
    )


@router.put("/{team_id}", response_model=schemas.Team)
def update_team(
    team_id: int,
    team_update: schemas.TeamUpdate,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    team, _ = require_team_member(db, current_user, team_id)
    return membership.update_team(db, team, current_user.id, team_update.model_dump(exclude_unset=True))


@router.delete("/{team_id}")
def delete_team(
    team_id: int,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Delete a team, its memberships and its tasks (owner only)."""
    team, _ = require_team_member(db, current_user, team_id)
    membership.delete_team(db, team, current_user.id)
    return {"message": "Team deleted"}


# ============== Members ==============

@router.get("/{team_id}/members", response_model=List[schemas.TeamMemberResponse])
def list_team_members(
    team_id: int,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    require_team_member(db, current_user, team_id)
    return _members(db, team_id)


@router.post("/{team_id}/members", response_model=schemas.TeamMemberResponse, status_code=status.HTTP_201_CREATED)
def add_team_member(
    team_id: int,
    member_in: schemas.TeamMemberCreate,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Add a member to a team (team owner or admin)."""
    logger.debug(f"User {current_user.id} adding member {member_in.user_id} to team {team_id}")
    team = _get_team(db, team_id)
    return membership.add_member(db, team, member_in.user_id, member_in.role, current_user.id)


@router.put("/{team_id}/members/{user_id}", response_model=schemas.TeamMemberResponse)
def update_team_member(
    team_id: int,
    user_id: int,
    member_update: schemas.TeamMemberUpdate,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Change a member's role (team owner only)."""
    team = _get_team(db, team_id)
    return membership.update_role(db, team, user_id, member_update.role, current_user.id)


@router.delete("/{team_id}/members/{user_id}")
def remove_team_member(
    team_id: int,
    user_id: int,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Remove a member (team owner or admin; members may leave on their own)."""
    team = _get_team(db, team_id)
    membership.remove_member(db, team, user_id, current_user.id)
    return {"message": "Team member removed"}


# ============== Team tasks ==============

@router.get("/{team_id}/tasks", response_model=List[schemas.Task])
def list_team_tasks(
    team_id: int,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """
    Tasks of a team that the current user can see.

    The owner sees every team task; other members only see tasks they created
    or are assigned to.
    """
    require_team_member(db, current_user, team_id)
    predicate = build_visibility_predicate(db, current_user)
    return (
        db.query(models.Task)
        .filter(models.Task.team_id == team_id, predicate.as_clause())
        .order_by(models.Task.created_at.desc(), models.Task.id.desc())
        .all()
    )

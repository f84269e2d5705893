"""
Store-backed permission checks.

These helpers read ownership facts from the database and hand them to the
pure rules in auth.access. They raise the HTTP-facing errors so route handlers
can stay linear:

- NotFoundOrDenied (404) when the resource is missing OR hidden from the user
- Forbidden (403) when the resource is visible but the action is not allowed
"""

import logging
from typing import Iterable, List, Optional, Tuple

from sqlalchemy.orm import Session

from errors import Forbidden, NotFoundOrDenied
from models import BugReport, User, Task, Team, TeamMember, TeamRole
from auth.access import (
    MANAGING_ROLES,
    TaskPermissions,
    TaskVisibilityPredicate,
    TeamIndex,
    bug_report_access,
    sub_resource_access,
    task_list_visibility_predicate,
    task_permissions,
    task_visibility,
)

logger = logging.getLogger(__name__)


def load_team_index(db: Session, team_id: Optional[int]) -> Optional[TeamIndex]:
    """
    Build a TeamIndex snapshot for a team.

    Returns None if team_id is None or the team does not exist.
    """
    if team_id is None:
        return None

    team = db.query(Team).filter(Team.id == team_id).first()
    if team is None:
        return None

    rows = db.query(TeamMember.user_id, TeamMember.role).filter(TeamMember.team_id == team_id).all()
    return TeamIndex(team_id=team.id, owner_id=team.owner_id, roles={user_id: role for user_id, role in rows})


def get_owned_team_ids(db: Session, user_id: int) -> List[int]:
    """Ids of every team the user owns (by owner_id)."""
    return [team_id for (team_id,) in db.query(Team.id).filter(Team.owner_id == user_id).all()]


def build_visibility_predicate(db: Session, user: User) -> TaskVisibilityPredicate:
    return task_list_visibility_predicate(user.id, get_owned_team_ids(db, user.id))


def require_task_access(
    db: Session, user: User, task_id: int, for_update: bool = False
) -> Tuple[Task, Optional[TeamIndex]]:
    """
    Fetch a task the user can see, or raise.

    Args:
        db: Database session
        user: Acting user
        task_id: Task to fetch
        for_update: Lock the row for the rest of the transaction

    Returns:
        (task, team index of the task's team or None)

    Raises:
        NotFoundOrDenied: 404 if the task doesn't exist or is hidden from the user
    """
    query = db.query(Task).filter(Task.id == task_id)
    if for_update:
        query = query.with_for_update()
    task = query.first()

    if task is None:
        logger.info(f"Task {task_id} not found")
        raise NotFoundOrDenied("Task")

    team = load_team_index(db, task.team_id)
    if not task_visibility(task, user.id, team):
        logger.info(f"User {user.id} cannot see task {task_id}, returning 404")
        raise NotFoundOrDenied("Task")

    return task, team


def require_task_permission(
    db: Session, user: User, task_id: int, flag: str, action: str, for_update: bool = False
) -> Tuple[Task, Optional[TeamIndex], TaskPermissions]:
    """
    Require a specific permission flag on a task.

    Raises:
        NotFoundOrDenied: 404 if the task doesn't exist or is hidden from the user
        Forbidden: 403 if the task is visible but ``flag`` is not granted

    Example:
        >>> task, team, perms = require_task_permission(db, user, 7, "can_delete", "delete this task")
    """
    task, team = require_task_access(db, user, task_id, for_update=for_update)
    permissions = task_permissions(task, user.id, team)

    if not getattr(permissions, flag):
        logger.info(f"User {user.id} lacks {flag} on task {task_id} (level {permissions.permission_level})")
        raise Forbidden(action)

    return task, team, permissions


def require_sub_resource_access(
    db: Session,
    user: User,
    task_id: int,
    owner_ids: Iterable[Optional[int]] = (),
    granting_roles: Iterable[TeamRole] = MANAGING_ROLES,
    resource: str = "Task",
    for_update: bool = False,
) -> Tuple[Task, Optional[TeamIndex]]:
    """
    Fetch a parent task for a sub-resource operation, or raise 404.

    The parent is looked up without the task visibility rule: team ADMINs (and
    MEMBERs for bug reports) work on sub-resources of tasks they cannot open.
    """
    query = db.query(Task).filter(Task.id == task_id)
    if for_update:
        query = query.with_for_update()
    task = query.first()

    if task is None:
        logger.info(f"Parent task {task_id} not found")
        raise NotFoundOrDenied(resource)

    team = load_team_index(db, task.team_id)
    if not sub_resource_access(task, owner_ids, user.id, team, granting_roles=granting_roles):
        logger.info(f"User {user.id} has no sub-resource access under task {task_id}, returning 404")
        raise NotFoundOrDenied(resource)

    return task, team


def require_bug_report_access(
    db: Session, user: User, bug_id: int, for_update: bool = False
) -> Tuple[BugReport, Task, Optional[TeamIndex]]:
    """
    Fetch a bug report the user may work on, or raise 404.

    Returns:
        (bug report, parent task, team index of the parent's team or None)
    """
    query = db.query(BugReport).filter(BugReport.id == bug_id)
    if for_update:
        query = query.with_for_update()
    bug = query.first()

    if bug is None:
        logger.info(f"Bug report {bug_id} not found")
        raise NotFoundOrDenied("Bug report")

    task = db.query(Task).filter(Task.id == bug.task_id).first()
    team = load_team_index(db, task.team_id)
    if not bug_report_access(bug, task, user.id, team):
        logger.info(f"User {user.id} has no access to bug report {bug_id}, returning 404")
        raise NotFoundOrDenied("Bug report")

    return bug, task, team


def require_team_member(db: Session, user: User, team_id: int) -> Tuple[Team, TeamIndex]:
    """
    Fetch a team the user belongs to, or raise 404.

    Non-members get the same response as for a missing team.
    """
    team = db.query(Team).filter(Team.id == team_id).first()
    if team is None:
        logger.info(f"Team {team_id} not found")
        raise NotFoundOrDenied("Team")

    index = load_team_index(db, team_id)
    if not index.is_member(user.id):
        logger.info(f"User {user.id} is not a member of team {team_id}, returning 404")
        raise NotFoundOrDenied("Team")

    return team, index

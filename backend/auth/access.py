"""
Access core: visibility and permission derivation.

Every function here is pure and total. Inputs are ownership facts already read
from the store (ORM rows or ``TaskFacts``) plus the ``TeamIndex`` of the task's
team. Lack of access is expressed as ``False`` or the empty ``TaskPermissions``,
never as an exception; the caller decides between 404 and 403.

Role model (most to least privileged):
    team OWNER > team ADMIN > team MEMBER, alongside task creator > task assignee
    > sub-resource owner (subtask assignee, uploader, bug reporter).

Only team OWNER widens *task* visibility. ADMIN/MEMBER roles matter for
sub-resources (subtasks, attachments, bug reports) and membership management.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, FrozenSet, Iterable, Mapping, NamedTuple, Optional

from sqlalchemy import or_

from models import Task, TeamRole

logger = logging.getLogger(__name__)

MANAGING_ROLES: FrozenSet[TeamRole] = frozenset({TeamRole.OWNER, TeamRole.ADMIN})
ALL_TEAM_ROLES: FrozenSet[TeamRole] = frozenset(TeamRole)


class TaskFacts(NamedTuple):
    """Ownership facts of a task detached from the store."""

    creator_id: Optional[int]
    assignee_id: Optional[int] = None
    team_id: Optional[int] = None


@dataclass(frozen=True)
class TeamIndex:
    """
    Snapshot of a team's ownership and membership, keyed by user id.

    ``owner_id`` is authoritative for the OWNER role even if the explicit
    membership row were missing.
    """

    team_id: int
    owner_id: int
    roles: Mapping[int, TeamRole] = field(default_factory=dict)

    def role_of(self, user_id: Optional[int]) -> Optional[TeamRole]:
        return resolve_team_role(self, self.roles, user_id)

    def is_member(self, user_id: Optional[int]) -> bool:
        return self.role_of(user_id) is not None

    @property
    def member_ids(self) -> FrozenSet[int]:
        return frozenset(self.roles) | {self.owner_id}


@dataclass(frozen=True)
class TaskPermissions:
    is_team_owner: bool = False
    is_creator: bool = False
    is_assignee: bool = False
    can_edit: bool = False
    can_update_status: bool = False
    can_comment: bool = False
    can_delete: bool = False
    can_assign: bool = False
    can_view_history: bool = False
    can_view_submissions: bool = False
    permission_level: str = "NONE"

    @classmethod
    def none(cls) -> "TaskPermissions":
        return cls()


def resolve_team_role(team: Any, membership_index: Mapping[int, Any], actor_id: Optional[int]) -> Optional[TeamRole]:
    """
    Resolve the actor's role within a team.

    Args:
        team: anything with an ``owner_id`` (Team row or TeamIndex)
        membership_index: user id -> role for the team's membership rows
        actor_id: the acting user's id

    Returns:
        OWNER if the actor owns the team, else the membership role, else None
    """
    if team is None or actor_id is None:
        return None
    if team.owner_id == actor_id:
        return TeamRole.OWNER
    role = membership_index.get(actor_id)
    if role is None:
        return None
    return TeamRole(role)


def _team_role_for_task(task: Any, actor_id: Optional[int], team: Optional[TeamIndex]) -> Optional[TeamRole]:
    # An index for some other team than the task's never grants anything
    if team is None or task.team_id is None or team.team_id != task.team_id:
        return None
    return team.role_of(actor_id)


def _is_party(task: Any, actor_id: Optional[int]) -> bool:
    return actor_id is not None and actor_id in (task.creator_id, task.assignee_id)


def task_visibility(task: Any, actor_id: Optional[int], team: Optional[TeamIndex] = None) -> bool:
    """True iff the actor is the creator, the assignee, or the OWNER of the task's team."""
    if _is_party(task, actor_id):
        return True
    return _team_role_for_task(task, actor_id, team) == TeamRole.OWNER


@dataclass(frozen=True)
class TaskVisibilityPredicate:
    """
    List-form visibility rule:
    ``creator_id == actor OR assignee_id == actor OR team_id IN owned_team_ids``.

    ``matches`` evaluates it in memory, ``as_clause`` renders the same rule as
    a SQLAlchemy boolean expression for list queries.
    """

    actor_id: int
    owned_team_ids: FrozenSet[int] = frozenset()

    def matches(self, task: Any) -> bool:
        if _is_party(task, self.actor_id):
            return True
        return task.team_id is not None and task.team_id in self.owned_team_ids

    def as_clause(self, model=Task):
        conditions = [model.creator_id == self.actor_id, model.assignee_id == self.actor_id]
        if self.owned_team_ids:
            conditions.append(model.team_id.in_(sorted(self.owned_team_ids)))
        return or_(*conditions)


def task_list_visibility_predicate(actor_id: int, owned_team_ids: Iterable[int] = ()) -> TaskVisibilityPredicate:
    return TaskVisibilityPredicate(actor_id=actor_id, owned_team_ids=frozenset(owned_team_ids))


def task_permissions(task: Any, actor_id: Optional[int], team: Optional[TeamIndex] = None) -> TaskPermissions:
    """
    Derive the full permission set for an actor on a task.

    Idempotent for fixed inputs. An actor who cannot see the task gets the
    empty set (every flag False, level NONE).
    """
    is_team_owner = _team_role_for_task(task, actor_id, team) == TeamRole.OWNER
    is_creator = actor_id is not None and task.creator_id == actor_id
    is_assignee = actor_id is not None and task.assignee_id == actor_id

    if not (is_team_owner or is_creator or is_assignee):
        return TaskPermissions.none()

    manages = is_team_owner or is_creator
    if is_team_owner:
        level = "OWNER"
    elif is_creator:
        level = "CREATOR"
    else:
        level = "ASSIGNEE"

    return TaskPermissions(
        is_team_owner=is_team_owner,
        is_creator=is_creator,
        is_assignee=is_assignee,
        can_edit=manages,
        can_update_status=True,
        can_comment=True,
        can_delete=manages,
        can_assign=manages,
        can_view_history=manages,
        can_view_submissions=manages,
        permission_level=level,
    )


def _as_ids(owner_ids: Any) -> FrozenSet[int]:
    if owner_ids is None:
        return frozenset()
    if isinstance(owner_ids, int):
        return frozenset({owner_ids})
    return frozenset(i for i in owner_ids if i is not None)


def sub_resource_access(
    parent_task: Any,
    owner_ids: Any,
    actor_id: Optional[int],
    team: Optional[TeamIndex] = None,
    granting_roles: Iterable[TeamRole] = MANAGING_ROLES,
) -> bool:
    """
    Access rule for subtasks, attachments and bug reports.

    Args:
        parent_task: the owning task's facts
        owner_ids: the sub-resource's own assignee/uploader/reporter id(s);
            a single id, an iterable of ids, or None/() for "no owner yet"
        actor_id: the acting user's id
        team: TeamIndex of the parent's team, if any
        granting_roles: team roles that grant access on their own

    Returns:
        True if the actor owns the sub-resource, created or is assigned the
        parent task, or holds one of the granting roles in the parent's team
    """
    if actor_id is None:
        return False
    if actor_id in _as_ids(owner_ids):
        return True
    if _is_party(parent_task, actor_id):
        return True
    role = _team_role_for_task(parent_task, actor_id, team)
    granted = role is not None and role in frozenset(granting_roles)
    if not granted:
        logger.debug(f"Sub-resource access denied for user {actor_id} on task {getattr(parent_task, 'id', None)} (role={role})")
    return granted


def bug_report_access(bug: Any, parent_task: Any, actor_id: Optional[int], team: Optional[TeamIndex] = None) -> bool:
    """
    Bug-report form of ``sub_resource_access``.

    Any member of the parent's team may file and work bug reports, so every
    team role grants access here. ``bug`` may be None when checking whether a
    new report can be filed against ``parent_task``.
    """
    owner_ids = () if bug is None else (bug.reporter_id, bug.assignee_id)
    return sub_resource_access(parent_task, owner_ids, actor_id, team, granting_roles=ALL_TEAM_ROLES)

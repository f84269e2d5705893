"""
Bug report endpoints.

Any member of the parent task's team may file and work bug reports, alongside
the reporter, the bug's assignee and the parent's creator/assignee. Legacy
markdown descriptions are parsed into structured fields when a report is filed.
"""

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Body, Depends, Query, status
from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

import models
import schemas
from database import get_db
from errors import Forbidden, NotFoundOrDenied
from auth.access import bug_report_access, task_permissions
from auth.dependencies import get_current_user
from auth.permissions import build_visibility_predicate, load_team_index, require_bug_report_access
from bug_markdown import apply_legacy_markdown
from guards import BUG_REPORT_FIELDS, apply_fields, filter_sub_resource_fields
from history import record_event, record_field_changes

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/bugs", tags=["bugs"])


def _require_filing_access(db: Session, user: models.User, task_id: int, for_update: bool = False):
    query = db.query(models.Task).filter(models.Task.id == task_id)
    if for_update:
        query = query.with_for_update()
    task = query.first()
    if task is None:
        raise NotFoundOrDenied("Task")

    team = load_team_index(db, task.team_id)
    if not bug_report_access(None, task, user.id, team):
        logger.info(f"User {user.id} cannot file bugs against task {task_id}, returning 404")
        raise NotFoundOrDenied("Task")
    return task, team


@router.get("", response_model=List[schemas.BugReport])
def list_bug_reports(
    task_id: Optional[int] = Query(None),
    status_filter: Optional[models.TaskStatus] = Query(None, alias="status"),
    severity: Optional[models.BugSeverity] = Query(None),
    q: Optional[str] = Query(None, description="Case-insensitive title search"),
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """
    List bug reports.

    Without task_id: every report the user may open, i.e. reports on tasks the
    user can see or that belong to one of the user's teams, plus reports the
    user filed or is assigned. With task_id: every report on that task, if the
    user may work bug reports there.
    """
    logger.debug(f"User {current_user.id} listing bugs: task={task_id}, status={status_filter}, severity={severity}")

    query = db.query(models.BugReport)
    if task_id is not None:
        _require_filing_access(db, current_user, task_id)
        query = query.filter(models.BugReport.task_id == task_id)
    else:
        predicate = build_visibility_predicate(db, current_user)
        member_team_ids = db.query(models.TeamMember.team_id).filter(models.TeamMember.user_id == current_user.id)
        query = query.join(models.Task, models.BugReport.task_id == models.Task.id).filter(
            or_(
                predicate.as_clause(models.Task),
                models.Task.team_id.in_(member_team_ids),
                models.BugReport.reporter_id == current_user.id,
                models.BugReport.assignee_id == current_user.id,
            )
        )

    if status_filter:
        query = query.filter(models.BugReport.status == status_filter)
    if severity:
        query = query.filter(models.BugReport.severity == severity)
    if q:
        query = query.filter(models.BugReport.title.ilike(f"%{q.strip()}%"))

    return query.order_by(models.BugReport.created_at.desc(), models.BugReport.id.desc()).all()


@router.post("", response_model=schemas.BugReport, status_code=status.HTTP_201_CREATED)
def create_bug_report(
    bug_in: schemas.BugReportCreate,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    logger.info(f"User {current_user.id} filing bug {bug_in.title!r} against task {bug_in.task_id}")

    fields = apply_legacy_markdown(bug_in.model_dump(exclude={"task_id"}))
    fields["severity"] = fields.get("severity") or models.BugSeverity.MEDIUM
    fields["environment"] = fields.get("environment") or models.DeployEnvironment.STAGING

    try:
        task, team = _require_filing_access(db, current_user, bug_in.task_id, for_update=True)

        result = filter_sub_resource_fields(
            BUG_REPORT_FIELDS,
            fields,
            actor_id=current_user.id,
            team_member_ids=team.member_ids if team is not None else None,
        )
        result.raise_for_errors()

        bug = models.BugReport(
            task_id=task.id,
            team_id=task.team_id,
            reporter_id=current_user.id,  # SECURITY: reporter is always the authenticated user
            **result.accepted,
        )
        db.add(bug)
        record_event(db, task.id, current_user.id, models.HistoryAction.CREATED, field_name="bug_report", new_value=bug.title)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to file bug against task {bug_in.task_id}: {e}")
        raise

    db.refresh(bug)
    logger.info(f"Bug report {bug.id} filed (severity={bug.severity.value}, environment={bug.environment.value})")
    return bug


@router.get("/{bug_id}", response_model=schemas.BugReport)
def get_bug_report(
    bug_id: int,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    bug, _, _ = require_bug_report_access(db, current_user, bug_id)
    return bug


@router.put("/{bug_id}", response_model=schemas.BugReport)
def update_bug_report(
    bug_id: int,
    changes: Dict[str, Any] = Body(...),
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Update a bug report; COMPLETED stamps resolved_at, reopening clears it."""
    logger.debug(f"User {current_user.id} updating bug {bug_id}: {sorted(changes)}")

    try:
        bug, task, team = require_bug_report_access(db, current_user, bug_id, for_update=True)

        result = filter_sub_resource_fields(
            BUG_REPORT_FIELDS,
            changes,
            actor_id=current_user.id,
            current_assignee_id=bug.assignee_id,
            team_member_ids=team.member_ids if team is not None else None,
        )
        if result.rejected:
            logger.info(f"Ignoring unknown bug report fields {result.rejected}")
        result.raise_for_errors()

        old_values = apply_fields(bug, result.accepted, stamp_field="resolved_at")
        record_field_changes(db, task.id, current_user.id, old_values, result.accepted, field_prefix="bug_")
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to update bug report {bug_id}: {e}")
        raise

    db.refresh(bug)
    logger.info(f"Bug report {bug_id} updated by user {current_user.id}: {list(result.accepted)}")
    return bug


@router.delete("/{bug_id}")
def delete_bug_report(
    bug_id: int,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Delete a bug report (reporter, parent task creator or team owner)."""
    try:
        bug, task, team = require_bug_report_access(db, current_user, bug_id, for_update=True)

        if bug.reporter_id != current_user.id and not task_permissions(task, current_user.id, team).can_delete:
            logger.info(f"User {current_user.id} cannot delete bug report {bug_id}")
            raise Forbidden("delete this bug report")

        title = bug.title
        db.delete(bug)
        record_event(db, task.id, current_user.id, models.HistoryAction.DELETED, field_name="bug_report", old_value=title)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to delete bug report {bug_id}: {e}")
        raise

    logger.info(f"Bug report {bug_id} deleted by user {current_user.id}")
    return {"message": "Bug report deleted"}

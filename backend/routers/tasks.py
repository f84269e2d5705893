"""
Task endpoints: list, create, detail, guarded update, delete, category data,
history, comments and submissions.

Single-task reads answer 404 for tasks the user cannot see. Actions on a
visible task that the user's permission set does not allow answer 403.
"""

import logging
from typing import Any, Dict, List, Literal, Optional

from fastapi import APIRouter, Body, Depends, Query, status
from sqlalchemy import asc, desc
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

import models
import schemas
from database import get_db
from errors import FieldError, ValidationFailed
from auth.access import TaskPermissions, TeamIndex, task_permissions
from auth.dependencies import get_current_user
from auth.permissions import (
    build_visibility_predicate,
    load_team_index,
    require_task_access,
    require_task_permission,
)
from categories import dump_category_data, infer_category, upsert_category_data, validate_category_data
from guards import TASK_FIELDS, apply_fields, apply_status_transition, filter_editable_fields
from history import record_event, record_field_changes, record_permission_violations
from time_utils import is_overdue

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/tasks", tags=["tasks"])


def permissions_payload(permissions: TaskPermissions) -> schemas.TaskPermissions:
    return schemas.TaskPermissions(
        is_team_owner=permissions.is_team_owner,
        is_creator=permissions.is_creator,
        is_assignee=permissions.is_assignee,
        can_edit=permissions.can_edit,
        can_update_status=permissions.can_update_status,
        can_comment=permissions.can_comment,
        can_delete=permissions.can_delete,
        can_assign=permissions.can_assign,
        can_view_history=permissions.can_view_history,
        can_view_submissions=permissions.can_view_submissions,
        permission_level=permissions.permission_level,
    )


def build_task_detail(task: models.Task, actor_id: int, team: Optional[TeamIndex]) -> schemas.TaskDetail:
    """Task plus its sub-resources and the actor's permission set."""
    permissions = task_permissions(task, actor_id, team)
    base = schemas.Task.model_validate(task).model_dump()
    return schemas.TaskDetail(
        **base,
        is_overdue=is_overdue(task.due_date, task.status),
        permissions=permissions_payload(permissions),
        subtasks=[schemas.SubTask.model_validate(s) for s in task.subtasks],
        attachments=[schemas.Attachment.model_validate(a) for a in task.attachments],
        bug_reports=[schemas.BugReport.model_validate(b) for b in task.bug_reports],
        comments=[schemas.Comment.model_validate(c) for c in task.comments],
        category_data=dump_category_data(task),
    )


def _user_exists(db: Session, user_id: int) -> bool:
    return db.query(models.User.id).filter(models.User.id == user_id).first() is not None


def _check_assignees(db: Session, team: Optional[TeamIndex], assignees: List[tuple]) -> List[FieldError]:
    errors = []
    for field_name, user_id in assignees:
        if user_id is None:
            continue
        if team is not None:
            if not team.is_member(user_id):
                errors.append(FieldError(field_name, "must be a member of the task's team"))
        elif not _user_exists(db, user_id):
            errors.append(FieldError(field_name, "user not found"))
    return errors


# ============== Task CRUD ==============

@router.get("", response_model=List[schemas.Task])
def list_tasks(
    status_filter: Optional[models.TaskStatus] = Query(None, alias="status"),
    priority: Optional[models.TaskPriority] = Query(None),
    category: Optional[models.TaskCategory] = Query(None),
    team_id: Optional[int] = Query(None),
    q: Optional[str] = Query(None, description="Case-insensitive title search"),
    sort_by: Literal["created_at", "updated_at", "due_date", "priority", "status", "title"] = Query("created_at"),
    order: Literal["asc", "desc"] = Query("desc"),
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """List tasks the user created, is assigned to, or that belong to a team the user owns."""
    logger.debug(
        f"User {current_user.id} listing tasks: status={status_filter}, priority={priority}, "
        f"category={category}, team={team_id}, q={q}, sort={sort_by} {order}"
    )

    predicate = build_visibility_predicate(db, current_user)
    query = db.query(models.Task).filter(predicate.as_clause())

    if status_filter:
        query = query.filter(models.Task.status == status_filter)
    if priority:
        query = query.filter(models.Task.priority == priority)
    if category:
        query = query.filter(models.Task.category == category)
    if team_id is not None:
        query = query.filter(models.Task.team_id == team_id)
    if q:
        query = query.filter(models.Task.title.ilike(f"%{q.strip()}%"))

    column = getattr(models.Task, sort_by)
    query = query.order_by(desc(column) if order == "desc" else asc(column), models.Task.id)

    tasks = query.all()
    logger.debug(f"Returning {len(tasks)} tasks for user {current_user.id}")
    return tasks


@router.post("", response_model=schemas.TaskDetail, status_code=status.HTTP_201_CREATED)
def create_task(
    task_in: schemas.TaskCreate,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Create a task (optionally in a team the user belongs to) with inline subtasks."""
    logger.info(f"User {current_user.id} creating task: {task_in.title!r} (team={task_in.team_id})")

    errors = []
    team = None
    if task_in.team_id is not None:
        team = load_team_index(db, task_in.team_id)
        if team is None or not team.is_member(current_user.id):
            errors.append(FieldError("team_id", "team not found or you are not a member"))

    if not errors:
        assignees = [("assignee_id", task_in.assignee_id)]
        assignees += [(f"subtasks.{i}.assignee_id", s.assignee_id) for i, s in enumerate(task_in.subtasks)]
        errors.extend(_check_assignees(db, team, assignees))

    if errors:
        raise ValidationFailed(errors)

    inferred, is_bug_report = infer_category(task_in.title, task_in.description)
    category = task_in.category or inferred

    try:
        # SECURITY: creator is always the authenticated user
        task = models.Task(
            title=task_in.title.strip(),
            description=task_in.description or "",
            creator_id=current_user.id,
            assignee_id=task_in.assignee_id,
            team_id=task_in.team_id,
            priority=task_in.priority,
            category=category,
            is_bug_report=is_bug_report,
            due_date=task_in.due_date,
            estimated_hours=task_in.estimated_hours,
            progress=0,
        )
        apply_status_transition(task, task_in.status)
        db.add(task)
        db.flush()

        for sub_in in task_in.subtasks:
            subtask = models.SubTask(
                task_id=task.id,
                title=sub_in.title.strip(),
                description=sub_in.description or "",
                priority=sub_in.priority,
                assignee_id=sub_in.assignee_id,
                due_date=sub_in.due_date,
            )
            apply_status_transition(subtask, sub_in.status)
            db.add(subtask)

        record_event(db, task.id, current_user.id, models.HistoryAction.CREATED, field_name="task", new_value=task.title)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to create task for user {current_user.id}: {e}")
        raise

    upsert_category_data(db, task)
    db.refresh(task)

    logger.info(f"Task created successfully: id={task.id}, category={category.value}, subtasks={len(task_in.subtasks)}")
    return build_task_detail(task, current_user.id, team)


@router.get("/{task_id}", response_model=schemas.TaskDetail)
def get_task(
    task_id: int,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Get a task with its sub-resources and the caller's permission set."""
    task, team = require_task_access(db, current_user, task_id)
    return build_task_detail(task, current_user.id, team)


@router.put("/{task_id}", response_model=schemas.TaskUpdateResult)
def update_task(
    task_id: int,
    changes: Dict[str, Any] = Body(...),
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """
    Apply the subset of requested fields the caller may write.

    Returns the updated task plus which fields were accepted and rejected.
    Any validation error aborts the whole update (400, nothing applied).
    Category data, if present, is written after the task update commits.
    """
    logger.debug(f"User {current_user.id} updating task {task_id}: fields={sorted(changes)}")

    requested = dict(changes)
    category_data = requested.pop("category_data", None)

    try:
        task, team = require_task_access(db, current_user, task_id, for_update=True)
        permissions = task_permissions(task, current_user.id, team)

        # With team_id in the request the assignee's team is only known after filtering
        team_requested = "team_id" in requested
        result = filter_editable_fields(
            permissions,
            requested,
            actor_id=current_user.id,
            current_assignee_id=task.assignee_id,
            team_member_ids=team.member_ids if team is not None and not team_requested else None,
        )
        errors = list(result.errors)
        rejected = list(result.rejected)

        # Moving a task to another team: actor and assignee must belong to it
        new_team_id = result.accepted.get("team_id", task.team_id)
        assignee_id = result.accepted.get("assignee_id", task.assignee_id)
        if new_team_id != task.team_id:
            target_team = load_team_index(db, new_team_id)
            if new_team_id is not None and (target_team is None or not target_team.is_member(current_user.id)):
                errors.append(FieldError("team_id", "team not found or you are not a member"))
            else:
                errors.extend(_check_assignees(db, target_team, [("assignee_id", assignee_id)]))
        elif team_requested and "assignee_id" in result.accepted and assignee_id != task.assignee_id:
            errors.extend(_check_assignees(db, team, [("assignee_id", assignee_id)]))

        profile = None
        if category_data is not None:
            if not permissions.can_update_status:
                rejected.append("category_data")
            else:
                profile, category_rejected, category_errors = validate_category_data(task.category, category_data)
                rejected.extend(f"category_data.{name}" for name in category_rejected)
                errors.extend(category_errors)

        if errors:
            logger.info(f"Rejecting update of task {task_id} by user {current_user.id}: {len(errors)} validation error(s)")
            db.rollback()
            raise ValidationFailed(errors)

        old_values = apply_fields(task, result.accepted)
        record_field_changes(db, task.id, current_user.id, old_values, result.accepted)
        record_permission_violations(
            db, task.id, current_user.id, [name for name in rejected if name in TASK_FIELDS], requested
        )
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to update task {task_id}: {e}")
        raise

    accepted = list(result.accepted)
    if profile is not None:
        if upsert_category_data(db, task, profile) is not None:
            accepted.append("category_data")

    db.refresh(task)
    logger.info(f"Task {task_id} updated by user {current_user.id}: accepted={accepted}, rejected={rejected}")
    return schemas.TaskUpdateResult(
        task=schemas.Task.model_validate(task),
        accepted=accepted,
        rejected=rejected,
        category_data=dump_category_data(task),
    )


@router.delete("/{task_id}")
def delete_task(
    task_id: int,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Delete a task and everything it owns (creator or team owner)."""
    try:
        task, _, _ = require_task_permission(
            db, current_user, task_id, "can_delete", "delete this task", for_update=True
        )
        db.delete(task)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to delete task {task_id}: {e}")
        raise

    logger.info(f"Task {task_id} deleted by user {current_user.id}")
    return {"message": "Task deleted"}


# ============== Category data ==============

@router.put("/{task_id}/category-data", response_model=schemas.CategoryDataResult)
def update_category_data(
    task_id: int,
    data: Dict[str, Any] = Body(...),
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """
    Write category-specific fields for the task's current category.

    Fields belonging to other categories are rejected. A storage failure of the
    satellite write is logged and reported as ``applied: false``.
    """
    task, _, _ = require_task_permission(db, current_user, task_id, "can_update_status", "update category data")

    profile, rejected, errors = validate_category_data(task.category, data)
    if errors:
        raise ValidationFailed(errors)

    row = upsert_category_data(db, task, profile) if profile is not None else None
    db.refresh(task)

    return schemas.CategoryDataResult(
        task_id=task.id,
        category=task.category,
        applied=row is not None,
        rejected=rejected,
        data=dump_category_data(task),
    )


# ============== History ==============

@router.get("/{task_id}/history", response_model=schemas.HistoryList)
def get_task_history(
    task_id: int,
    action: Optional[models.HistoryAction] = Query(None),
    limit: int = Query(100, le=500),
    offset: int = Query(0, ge=0),
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Get the audit trail of a task (creator or team owner)."""
    logger.debug(f"Getting history for task {task_id}: action={action}, limit={limit}, offset={offset}")

    require_task_permission(db, current_user, task_id, "can_view_history", "view task history")

    query = db.query(models.TaskHistory).filter(models.TaskHistory.task_id == task_id)
    if action:
        query = query.filter(models.TaskHistory.action == action.value)

    total = query.count()
    entries = (
        query.order_by(models.TaskHistory.created_at.desc(), models.TaskHistory.id.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )
    return {"entries": entries, "total_count": total}


# ============== Comments ==============

@router.get("/{task_id}/comments", response_model=List[schemas.Comment])
def list_comments(
    task_id: int,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    task, _ = require_task_access(db, current_user, task_id)
    return task.comments


@router.post("/{task_id}/comments", response_model=schemas.Comment, status_code=status.HTTP_201_CREATED)
def create_comment(
    task_id: int,
    comment_in: schemas.CommentCreate,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        task, _, _ = require_task_permission(db, current_user, task_id, "can_comment", "comment on this task")
        comment = models.Comment(task_id=task.id, user_id=current_user.id, content=comment_in.content.strip())
        db.add(comment)
        record_event(db, task.id, current_user.id, models.HistoryAction.COMMENTED, field_name="comment", new_value=comment.content[:500])
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to add comment to task {task_id}: {e}")
        raise

    db.refresh(comment)
    logger.info(f"Comment {comment.id} added to task {task_id} by user {current_user.id}")
    return comment


# ============== Submissions ==============

@router.get("/{task_id}/submissions", response_model=List[schemas.Submission])
def list_submissions(
    task_id: int,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Work submitted against a task (creator or team owner)."""
    task, _, _ = require_task_permission(db, current_user, task_id, "can_view_submissions", "view submissions")
    return (
        db.query(models.Submission)
        .filter(models.Submission.task_id == task.id)
        .order_by(models.Submission.id)
        .all()
    )


@router.post("/{task_id}/submissions", response_model=schemas.Submission, status_code=status.HTTP_201_CREATED)
def create_submission(
    task_id: int,
    submission_in: schemas.SubmissionCreate,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Submit work for a task (anyone who can update its status)."""
    try:
        task, _, _ = require_task_permission(db, current_user, task_id, "can_update_status", "submit work for this task")
        submission = models.Submission(
            task_id=task.id,
            user_id=current_user.id,
            content=submission_in.content.strip(),
            file_urls=list(submission_in.file_urls),
        )
        db.add(submission)
        record_event(db, task.id, current_user.id, models.HistoryAction.SUBMITTED, field_name="submission")
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to add submission to task {task_id}: {e}")
        raise

    db.refresh(submission)
    logger.info(f"Submission {submission.id} added to task {task_id} by user {current_user.id}")
    return submission

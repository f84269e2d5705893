"""
Subtask endpoints.

Subtasks follow the sub-resource rule: the subtask's assignee, the parent's
creator or assignee, and the OWNER/ADMINs of the parent's team may work on them.
Everyone else gets 404. Deleting needs delete rights on the parent task.
"""

import logging
from typing import Any, Dict, List

from fastapi import APIRouter, Body, Depends, status
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

import models
import schemas
from database import get_db
from errors import Forbidden, NotFoundOrDenied
from auth.access import task_permissions
from auth.dependencies import get_current_user
from auth.permissions import require_sub_resource_access
from guards import SUBTASK_FIELDS, apply_fields, apply_status_transition, filter_sub_resource_fields
from history import record_event, record_field_changes

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/tasks/{task_id}/subtasks", tags=["subtasks"])


def _get_subtask(db: Session, task_id: int, subtask_id: int, for_update: bool = False) -> models.SubTask:
    query = db.query(models.SubTask).filter(models.SubTask.id == subtask_id, models.SubTask.task_id == task_id)
    if for_update:
        query = query.with_for_update()
    subtask = query.first()
    if subtask is None:
        logger.info(f"Subtask {subtask_id} not found under task {task_id}")
        raise NotFoundOrDenied("Subtask")
    return subtask


@router.get("", response_model=List[schemas.SubTask])
def list_subtasks(
    task_id: int,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    task, _ = require_sub_resource_access(db, current_user, task_id)
    return task.subtasks


@router.post("", response_model=schemas.SubTask, status_code=status.HTTP_201_CREATED)
def create_subtask(
    task_id: int,
    subtask_in: schemas.SubTaskCreate,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    logger.info(f"User {current_user.id} adding subtask {subtask_in.title!r} to task {task_id}")

    try:
        task, team = require_sub_resource_access(db, current_user, task_id, for_update=True)

        result = filter_sub_resource_fields(
            SUBTASK_FIELDS,
            subtask_in.model_dump(exclude={"status"}),
            actor_id=current_user.id,
            team_member_ids=team.member_ids if team is not None else None,
        )
        result.raise_for_errors()

        subtask = models.SubTask(task_id=task.id, **result.accepted)
        apply_status_transition(subtask, subtask_in.status)
        db.add(subtask)
        record_event(db, task.id, current_user.id, models.HistoryAction.CREATED, field_name="subtask", new_value=subtask.title)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to create subtask under task {task_id}: {e}")
        raise

    db.refresh(subtask)
    logger.info(f"Subtask {subtask.id} created under task {task_id}")
    return subtask


@router.put("/{subtask_id}", response_model=schemas.SubTask)
def update_subtask(
    task_id: int,
    subtask_id: int,
    changes: Dict[str, Any] = Body(...),
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Update a subtask; completing it stamps completed_at, reopening clears it."""
    logger.debug(f"User {current_user.id} updating subtask {subtask_id} of task {task_id}: {sorted(changes)}")

    try:
        subtask = _get_subtask(db, task_id, subtask_id, for_update=True)
        _, team = require_sub_resource_access(
            db, current_user, task_id, owner_ids=subtask.assignee_id, resource="Subtask"
        )

        result = filter_sub_resource_fields(
            SUBTASK_FIELDS,
            changes,
            actor_id=current_user.id,
            current_assignee_id=subtask.assignee_id,
            team_member_ids=team.member_ids if team is not None else None,
        )
        if result.rejected:
            logger.info(f"Ignoring unknown subtask fields {result.rejected}")
        result.raise_for_errors()

        old_values = apply_fields(subtask, result.accepted)
        record_field_changes(db, task_id, current_user.id, old_values, result.accepted, field_prefix="subtask_")
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to update subtask {subtask_id}: {e}")
        raise

    db.refresh(subtask)
    logger.info(f"Subtask {subtask_id} updated by user {current_user.id}: {list(result.accepted)}")
    return subtask


@router.delete("/{subtask_id}")
def delete_subtask(
    task_id: int,
    subtask_id: int,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Delete a subtask (creator of the parent task or team owner)."""
    try:
        subtask = _get_subtask(db, task_id, subtask_id, for_update=True)
        task, team = require_sub_resource_access(
            db, current_user, task_id, owner_ids=subtask.assignee_id, resource="Subtask"
        )

        if not task_permissions(task, current_user.id, team).can_delete:
            logger.info(f"User {current_user.id} cannot delete subtask {subtask_id} of task {task_id}")
            raise Forbidden("delete this subtask")

        title = subtask.title
        db.delete(subtask)
        record_event(db, task_id, current_user.id, models.HistoryAction.DELETED, field_name="subtask", old_value=title)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to delete subtask {subtask_id}: {e}")
        raise

    logger.info(f"Subtask {subtask_id} deleted by user {current_user.id}")
    return {"message": "Subtask deleted"}

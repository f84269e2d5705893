"""
Attachment endpoints.

Attachments are stored by reference (URL plus file metadata); uploading the
bytes happens elsewhere. Access follows the sub-resource rule with the
uploader as the attachment's owner.
"""

import logging
from typing import List

from fastapi import APIRouter, Depends, status
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

import models
import schemas
from database import get_db
from errors import FieldError, NotFoundOrDenied, ValidationFailed
from auth.dependencies import get_current_user
from auth.permissions import require_sub_resource_access
from history import record_event

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/tasks/{task_id}/attachments", tags=["attachments"])

ALLOWED_PROTOCOLS = ("http://", "https://")
MAX_FILE_SIZE = 50 * 1024 * 1024  # 50MB


def validate_attachment(attachment_in: schemas.AttachmentCreate) -> None:
    """
    Reject unsafe URLs (javascript:, data:, file: ...) and oversized files.

    Raises ValidationFailed with every problem found.
    """
    errors = []
    url = attachment_in.url.strip()
    if not url:
        errors.append(FieldError("url", "must not be empty"))
    elif not url.lower().startswith(ALLOWED_PROTOCOLS):
        errors.append(FieldError("url", "must use http:// or https://"))

    if attachment_in.file_size > MAX_FILE_SIZE:
        errors.append(FieldError("file_size", f"must be at most {MAX_FILE_SIZE // (1024 * 1024)}MB"))

    if errors:
        raise ValidationFailed(errors)


@router.get("", response_model=List[schemas.Attachment])
def list_attachments(
    task_id: int,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    task, _ = require_sub_resource_access(db, current_user, task_id)
    return task.attachments


@router.post("", response_model=schemas.Attachment, status_code=status.HTTP_201_CREATED)
def create_attachment(
    task_id: int,
    attachment_in: schemas.AttachmentCreate,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    logger.info(f"User {current_user.id} attaching {attachment_in.file_name!r} to task {task_id}")

    try:
        task, _ = require_sub_resource_access(db, current_user, task_id, for_update=True)
        validate_attachment(attachment_in)

        attachment = models.Attachment(
            task_id=task.id,
            uploaded_by=current_user.id,  # SECURITY: Always use authenticated user
            file_name=attachment_in.file_name.strip(),
            file_type=attachment_in.file_type.strip(),
            file_size=attachment_in.file_size,
            url=attachment_in.url.strip(),
        )
        db.add(attachment)
        record_event(
            db, task.id, current_user.id, models.HistoryAction.UPLOADED,
            field_name="attachment", new_value=attachment.file_name,
        )
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to create attachment record for task {task_id}: {e}")
        raise

    db.refresh(attachment)
    logger.info(f"Attachment {attachment.id} added to task {task_id}")
    return attachment


@router.delete("/{attachment_id}")
def delete_attachment(
    task_id: int,
    attachment_id: int,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Delete an attachment (uploader, parent creator/assignee, team owner or admin)."""
    try:
        attachment = (
            db.query(models.Attachment)
            .filter(models.Attachment.id == attachment_id, models.Attachment.task_id == task_id)
            .with_for_update()
            .first()
        )
        if attachment is None:
            raise NotFoundOrDenied("Attachment")

        require_sub_resource_access(
            db, current_user, task_id, owner_ids=attachment.uploaded_by, resource="Attachment"
        )

        file_name = attachment.file_name
        db.delete(attachment)
        record_event(
            db, task_id, current_user.id, models.HistoryAction.DELETED,
            field_name="attachment", old_value=file_name,
        )
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to delete attachment {attachment_id}: {e}")
        raise

    logger.info(f"Attachment {attachment_id} deleted from task {task_id} by user {current_user.id}")
    return {"message": "Attachment deleted"}

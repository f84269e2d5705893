"""
Time utilities for the TaskFlow application.

This module provides a single source of truth for time operations,
ensuring completion/resolution stamps and overdue checks agree with each other.
"""

from datetime import datetime, timezone
from typing import Optional


def utc_now() -> datetime:
    """
    Get current UTC time.
    Single source of truth for "now" throughout the application.

    Returns:
        timezone-aware datetime in UTC
    """
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """
    Normalize a datetime to timezone-aware UTC.

    Naive values are assumed to already be UTC (SQLite drops tzinfo on read).
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def is_overdue(due_date: Optional[datetime], status: str) -> bool:
    """
    Check if a task is overdue.

    A task is overdue if it has a due date in the past and is not COMPLETED.

    Args:
        due_date: The task's due date
        status: The task's status (enum member or raw value)

    Returns:
        True if task is overdue, False otherwise
    """
    status_value = getattr(status, "value", status)
    if not due_date or status_value == "COMPLETED":
        return False
    return as_utc(due_date) < utc_now()

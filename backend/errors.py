"""
Error taxonomy for the TaskFlow API.

Each error is an HTTPException subclass so route handlers can raise it directly
and FastAPI renders it with the right status code. Details are dicts with a
stable ``code`` so clients can branch on them:

- Unauthenticated   (401) blanket denial, no detail about why
- NotFoundOrDenied  (404) resource absent OR hidden from the actor
- Forbidden         (403) resource visible, action denied (names the action)
- ValidationFailed  (400) batch of per-field messages, nothing applied
- Conflict          (409) duplicate membership and similar
- InvalidOperation  (400) operation that can never succeed in the current state

Soft failures (category satellite writes) are never raised; see categories.py.
"""

from dataclasses import dataclass
from typing import Iterable, List

from fastapi import HTTPException, status


@dataclass(frozen=True)
class FieldError:
    field: str
    message: str


class Unauthenticated(HTTPException):
    def __init__(self) -> None:
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": "UNAUTHENTICATED", "message": "Not authenticated"},
            headers={"WWW-Authenticate": "Bearer"},
        )


class NotFoundOrDenied(HTTPException):
    """Same outward signal whether the resource is missing or merely hidden."""

    def __init__(self, resource: str = "Resource") -> None:
        self.resource = resource
        super().__init__(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"code": "NOT_FOUND", "message": f"{resource} not found"},
        )


class Forbidden(HTTPException):
    def __init__(self, action: str, message: str = None) -> None:
        self.action = action
        super().__init__(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={
                "code": "FORBIDDEN",
                "action": action,
                "message": message or f"You are not allowed to {action}",
            },
        )


class ValidationFailed(HTTPException):
    def __init__(self, errors: Iterable[FieldError]) -> None:
        self.errors: List[FieldError] = list(errors)
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "code": "VALIDATION_FAILED",
                "errors": [{"field": e.field, "message": e.message} for e in self.errors],
            },
        )


class Conflict(HTTPException):
    def __init__(self, code: str, message: str) -> None:
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            detail={"code": code, "message": message},
        )


class InvalidOperation(HTTPException):
    def __init__(self, code: str, message: str) -> None:
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": code, "message": message},
        )

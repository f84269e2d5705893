"""
FastAPI dependencies for authentication.

get_current_user resolves the bearer credential on every protected request
into a User row. Any failure (missing header, bad signature, expired token,
unknown or inactive user) produces the same 401 so callers learn nothing about
which check failed.
"""

import logging
from typing import Optional

from fastapi import Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session

from database import get_db
from errors import Unauthenticated
from models import User
from auth.security import resolve_actor_id

logger = logging.getLogger(__name__)

# HTTP Bearer token scheme for JWT authentication
security = HTTPBearer(auto_error=False)


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: Session = Depends(get_db),
) -> User:
    """
    Extract and validate the current user from a JWT bearer token.

    Raises:
        Unauthenticated: 401 if the credential cannot be resolved to an active user

    Example:
        @router.get("/api/tasks")
        def list_tasks(current_user: User = Depends(get_current_user)):
            return {"user_id": current_user.id}
    """
    if credentials is None or not credentials.credentials:
        logger.info("No authentication credentials provided")
        raise Unauthenticated()

    user_id = resolve_actor_id(credentials.credentials)
    if user_id is None:
        raise Unauthenticated()

    user = db.query(User).filter(User.id == user_id).first()
    if user is None:
        logger.info(f"User not found for id: {user_id}")
        raise Unauthenticated()

    if not user.is_active:
        logger.info(f"Inactive user attempted access: {user_id}")
        raise Unauthenticated()

    logger.debug(f"User authenticated via JWT: {user.email}")
    return user

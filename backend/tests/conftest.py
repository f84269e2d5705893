"""
Test configuration and fixtures for TaskFlow tests.

Provides:
- Test database with SQLite in-memory for speed
- FastAPI test client with database dependency override
- Authentication helpers (JWT token generation)
- Common fixtures for users, a team with every role, and tasks
"""

import os
import sys
import logging
from datetime import timedelta
from typing import Generator, Dict

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Add backend directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

# Must be set before the app modules read their configuration
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key-not-for-production")

from database import Base, get_db
from main import app
import models
import membership
from auth.security import create_access_token
from time_utils import utc_now

# Configure logging for tests
logging.basicConfig(level=logging.WARNING)
logger = logging.getLogger(__name__)

# SQLite in-memory database for fast testing
SQLALCHEMY_TEST_DATABASE_URL = "sqlite:///:memory:"


@pytest.fixture(scope="function")
def test_db() -> Generator[Session, None, None]:
    """
    Create a fresh in-memory SQLite database for each test.

    This ensures test isolation and fast execution.
    """
    logger.debug("Creating test database")

    engine = create_engine(
        SQLALCHEMY_TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)

    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    db = TestingSessionLocal()

    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)
        logger.debug("Test database cleaned up")


@pytest.fixture(scope="function")
def client(test_db: Session) -> TestClient:
    """
    Create FastAPI test client with database dependency override.
    """
    def override_get_db():
        try:
            yield test_db
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


def create_user(db: Session, name: str, email: str, is_active: bool = True) -> models.User:
    user = models.User(name=name, email=email, is_active=is_active)
    db.add(user)
    db.commit()
    db.refresh(user)
    logger.debug(f"Created user {email} with ID: {user.id}")
    return user


@pytest.fixture(scope="function")
def team_owner(test_db: Session) -> models.User:
    """Owner of the test team (U1)."""
    return create_user(test_db, "Owner User", "owner@test.com")


@pytest.fixture(scope="function")
def team_member(test_db: Session) -> models.User:
    """Plain MEMBER of the test team (U2)."""
    return create_user(test_db, "Member User", "member@test.com")


@pytest.fixture(scope="function")
def outsider(test_db: Session) -> models.User:
    """User with no team membership (U3)."""
    return create_user(test_db, "Outside User", "outsider@test.com")


@pytest.fixture(scope="function")
def reporter(test_db: Session) -> models.User:
    """Another plain MEMBER of the test team who files bugs (U4)."""
    return create_user(test_db, "Reporter User", "reporter@test.com")


@pytest.fixture(scope="function")
def team_admin(test_db: Session) -> models.User:
    """ADMIN of the test team."""
    return create_user(test_db, "Admin User", "admin@test.com")


@pytest.fixture(scope="function")
def team(
    test_db: Session,
    team_owner: models.User,
    team_member: models.User,
    team_admin: models.User,
    reporter: models.User,
) -> models.Team:
    """
    Create a test team owned by team_owner with an ADMIN and two MEMBERs.
    """
    team = membership.create_team(test_db, "Test Team", "A team for testing", team_owner)
    membership.add_member(test_db, team, team_admin.id, models.TeamRole.ADMIN, team_owner.id)
    membership.add_member(test_db, team, team_member.id, models.TeamRole.MEMBER, team_owner.id)
    membership.add_member(test_db, team, reporter.id, models.TeamRole.MEMBER, team_owner.id)
    test_db.refresh(team)
    logger.info(f"Created test team with ID: {team.id}")
    return team


def create_auth_token(user: models.User, expires_delta: timedelta = None) -> str:
    """
    Helper to create JWT access token for a user.

    Args:
        user: User to create token for
        expires_delta: Optional expiration time override

    Returns:
        JWT access token string
    """
    logger.debug(f"Creating auth token for user {user.id}")
    return create_access_token({"sub": str(user.id), "email": user.email}, expires_delta)


def auth_headers_for(user: models.User) -> Dict[str, str]:
    return {"Authorization": f"Bearer {create_auth_token(user)}"}


def make_task(db: Session, creator: models.User, **overrides) -> models.Task:
    """
    Insert a task row directly, bypassing API validation.

    Useful for arranging ownership facts the API would refuse to create
    (e.g. a team task assigned to a non-member).
    """
    values = {
        "title": "Test Task",
        "description": "",
        "creator_id": creator.id,
        "status": models.TaskStatus.TODO,
        "priority": models.TaskPriority.MEDIUM,
        "category": models.TaskCategory.GENERAL,
        "due_date": utc_now() + timedelta(days=7),
        "progress": 0,
    }
    values.update(overrides)
    task = models.Task(**values)
    db.add(task)
    db.commit()
    db.refresh(task)
    logger.debug(f"Created task {task.id} (creator={creator.id}, assignee={task.assignee_id}, team={task.team_id})")
    return task


@pytest.fixture(scope="function")
def team_task(test_db: Session, team: models.Team, team_owner: models.User, outsider: models.User) -> models.Task:
    """Task X: created by the team owner, assigned to a non-member, in the test team."""
    return make_task(test_db, team_owner, title="Team Task X", team_id=team.id, assignee_id=outsider.id)

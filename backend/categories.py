"""
Category-specific task data.

Each non-GENERAL category has a satellite table holding extra fields. Request
data is parsed into a tagged union of pydantic profiles, dispatched on the
task's category; fields of other categories are rejected, never written.

Satellite writes run after the task's own transaction has committed. They are
soft: any failure is logged and rolled back without affecting the task update.
"""

import logging
import re
from typing import Annotated, Any, Dict, List, Literal, Mapping, Optional, Tuple, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError, field_validator
from sqlalchemy.orm import Session

from errors import FieldError
from models import (
    DeployEnvironment,
    DesignTask,
    DevelopmentTask,
    DevOpsTask,
    MarketingTask,
    RiskLevel,
    Task,
    TaskCategory,
    TestingTask,
)

logger = logging.getLogger(__name__)


def _as_list(value):
    """Accept a single string where a list of strings is expected."""
    if value is None:
        return value
    if isinstance(value, str):
        return [value]
    return value


def _upper(value):
    if isinstance(value, str):
        return value.strip().upper()
    return value


class DevelopmentProfile(BaseModel):
    category: Literal[TaskCategory.DEVELOPMENT] = TaskCategory.DEVELOPMENT
    repo_link: Optional[str] = None
    tech_stack: Optional[List[str]] = None
    components: Optional[List[str]] = None
    progress: Optional[int] = Field(None, ge=0, le=100)

    @field_validator("tech_stack", "components", mode="before")
    @classmethod
    def coerce_lists(cls, value):
        return _as_list(value)


class TestingProfile(BaseModel):
    category: Literal[TaskCategory.TESTING] = TaskCategory.TESTING
    environment: Optional[DeployEnvironment] = None
    test_cases: Optional[List[str]] = None
    progress: Optional[int] = Field(None, ge=0, le=100)

    @field_validator("test_cases", mode="before")
    @classmethod
    def coerce_lists(cls, value):
        return _as_list(value)

    @field_validator("environment", mode="before")
    @classmethod
    def normalize_environment(cls, value):
        return _upper(value)


class MarketingProfile(BaseModel):
    category: Literal[TaskCategory.MARKETING] = TaskCategory.MARKETING
    campaign_type: Optional[str] = None
    platforms: Optional[List[str]] = None
    progress: Optional[int] = Field(None, ge=0, le=100)

    @field_validator("platforms", mode="before")
    @classmethod
    def coerce_lists(cls, value):
        return _as_list(value)


class DevOpsProfile(BaseModel):
    category: Literal[TaskCategory.DEVOPS] = TaskCategory.DEVOPS
    environment: Optional[DeployEnvironment] = None
    iac_ref: Optional[str] = None
    risk_level: Optional[RiskLevel] = None
    progress: Optional[int] = Field(None, ge=0, le=100)

    @field_validator("environment", "risk_level", mode="before")
    @classmethod
    def normalize_enums(cls, value):
        return _upper(value)


class DesignProfile(BaseModel):
    category: Literal[TaskCategory.DESIGN] = TaskCategory.DESIGN
    design_type: Optional[str] = None
    assets: Optional[List[str]] = None
    progress: Optional[int] = Field(None, ge=0, le=100)

    @field_validator("assets", mode="before")
    @classmethod
    def coerce_lists(cls, value):
        return _as_list(value)


CategoryProfile = Annotated[
    Union[DevelopmentProfile, TestingProfile, MarketingProfile, DevOpsProfile, DesignProfile],
    Field(discriminator="category"),
]

_profile_adapter = TypeAdapter(CategoryProfile)

PROFILES = {
    TaskCategory.DEVELOPMENT: DevelopmentProfile,
    TaskCategory.TESTING: TestingProfile,
    TaskCategory.MARKETING: MarketingProfile,
    TaskCategory.DEVOPS: DevOpsProfile,
    TaskCategory.DESIGN: DesignProfile,
}

SATELLITE_MODELS = {
    TaskCategory.DEVELOPMENT: DevelopmentTask,
    TaskCategory.TESTING: TestingTask,
    TaskCategory.MARKETING: MarketingTask,
    TaskCategory.DEVOPS: DevOpsTask,
    TaskCategory.DESIGN: DesignTask,
}

SATELLITE_ATTRIBUTES = {
    TaskCategory.DEVELOPMENT: "development_data",
    TaskCategory.TESTING: "testing_data",
    TaskCategory.MARKETING: "marketing_data",
    TaskCategory.DEVOPS: "devops_data",
    TaskCategory.DESIGN: "design_data",
}


def validate_category_data(
    category: TaskCategory, data: Mapping[str, Any]
) -> Tuple[Optional[BaseModel], List[str], List[FieldError]]:
    """
    Parse category data for a task of the given category.

    Args:
        category: The task's current category
        data: Raw field -> value mapping from the request

    Returns:
        (profile or None, rejected field names, validation errors).
        Fields that don't belong to the category's profile are rejected.
        GENERAL tasks have no profile, so every field is rejected.
    """
    category = TaskCategory(category)
    if not isinstance(data, Mapping):
        return None, [], [FieldError("category_data", "must be an object")]

    profile_cls = PROFILES.get(category)
    if profile_cls is None:
        return None, list(data), []

    known = set(profile_cls.model_fields) - {"category"}
    rejected = [name for name in data if name not in known]
    payload = {name: value for name, value in data.items() if name in known}
    payload["category"] = category

    try:
        profile = _profile_adapter.validate_python(payload)
    except ValidationError as e:
        errors = []
        for err in e.errors():
            field_name = next((part for part in err["loc"] if part in known), None)
            errors.append(FieldError(f"category_data.{field_name}" if field_name else "category_data", err["msg"]))
        return None, rejected, errors

    if rejected:
        logger.info(f"Rejected category data fields {rejected} for {category.value} task")
    return profile, rejected, []


def dump_category_data(task: Task) -> Optional[Dict[str, Any]]:
    """Satellite fields of a task as a plain dict, or None."""
    attribute = SATELLITE_ATTRIBUTES.get(task.category)
    if attribute is None:
        return None
    row = getattr(task, attribute)
    if row is None:
        return None
    fields = set(PROFILES[task.category].model_fields) - {"category"}
    return {name: getattr(row, name) for name in sorted(fields)}


def upsert_category_data(db: Session, task: Task, profile: Optional[BaseModel] = None):
    """
    Create or update the satellite row for the task's current category.

    Must run after the task's own transaction has committed. A profile for a
    different category than the task's is ignored. Failures are logged and
    rolled back; the caller never sees them.

    Returns:
        The satellite row, or None if there is none or the write failed
    """
    category = task.category
    model = SATELLITE_MODELS.get(category)
    if model is None:
        return None
    if profile is not None and profile.category != category:
        logger.warning(f"Ignoring {profile.category.value} data for task {task.id} of category {category.value}")
        return None

    values = profile.model_dump(exclude={"category"}, exclude_unset=True) if profile is not None else {}
    # progress is NOT NULL on every satellite
    if values.get("progress", 0) is None:
        values.pop("progress")

    try:
        row = db.query(model).filter(model.task_id == task.id).first()
        if row is None:
            row = model(task_id=task.id)
            db.add(row)
        for name, value in values.items():
            setattr(row, name, value)
        db.commit()
        db.refresh(row)
        logger.debug(f"Upserted {category.value} data for task {task.id}: {sorted(values)}")
        return row
    except Exception as e:
        db.rollback()
        logger.warning(f"Soft failure writing {category.value} data for task {task.id}: {e}")
        return None


# ============== Auto-categorization ==============

_CATEGORY_KEYWORDS = [
    (TaskCategory.DESIGN, re.compile(r"\b(design|ui|ux|mockup|wireframe)\b", re.IGNORECASE)),
    (TaskCategory.DEVELOPMENT, re.compile(r"\b(dev|develop\w*|backend|frontend|api|code|implement\w*)\b", re.IGNORECASE)),
    (TaskCategory.MARKETING, re.compile(r"\b(market\w*|campaign|seo|social)\b", re.IGNORECASE)),
    (TaskCategory.DEVOPS, re.compile(r"\b(deploy\w*|devops|infra\w*|pipeline|ci/cd)\b", re.IGNORECASE)),
    (TaskCategory.TESTING, re.compile(r"\b(test\w*|qa)\b", re.IGNORECASE)),
]


def infer_category(title: str, description: Optional[str] = "") -> Tuple[TaskCategory, bool]:
    """
    Guess a category from the task text.

    Returns:
        (category, is_bug_report). A "[BUG]" title prefix marks a bug report
        and always maps to TESTING.
    """
    title = title or ""
    if title.strip().upper().startswith("[BUG]"):
        return TaskCategory.TESTING, True

    text = f"{title} {description or ''}"
    for category, pattern in _CATEGORY_KEYWORDS:
        if pattern.search(text):
            return category, False
    return TaskCategory.GENERAL, False

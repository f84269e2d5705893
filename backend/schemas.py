from pydantic import BaseModel, EmailStr, Field
from datetime import datetime
from typing import Any, Dict, Optional, List

from models import (
    BugSeverity,
    DeployEnvironment,
    TaskCategory,
    TaskPriority,
    TaskStatus,
    TeamRole,
)


# User schemas
class User(BaseModel):
    id: int
    name: str
    email: EmailStr

    class Config:
        from_attributes = True


# Team schemas
class TeamBase(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=500)


class TeamCreate(TeamBase):
    pass


class TeamUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=500)


class Team(TeamBase):
    id: int
    owner_id: int
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class TeamMemberCreate(BaseModel):
    user_id: int
    role: TeamRole = TeamRole.MEMBER


class TeamMemberUpdate(BaseModel):
    role: TeamRole


class TeamMemberResponse(BaseModel):
    id: int
    team_id: int
    user_id: int
    role: TeamRole
    joined_at: Optional[datetime] = None
    user: Optional[User] = None

    class Config:
        from_attributes = True


class TeamWithMembers(Team):
    members: List[TeamMemberResponse] = []
    my_role: Optional[TeamRole] = None


# Permission set returned alongside a task
class TaskPermissions(BaseModel):
    is_team_owner: bool
    is_creator: bool
    is_assignee: bool
    can_edit: bool
    can_update_status: bool
    can_comment: bool
    can_delete: bool
    can_assign: bool
    can_view_history: bool
    can_view_submissions: bool
    permission_level: str


# SubTask schemas
class SubTaskCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = ""
    status: TaskStatus = TaskStatus.TODO
    priority: TaskPriority = TaskPriority.MEDIUM
    assignee_id: Optional[int] = None
    due_date: Optional[datetime] = None


class SubTask(BaseModel):
    id: int
    task_id: int
    title: str
    description: Optional[str] = None
    status: TaskStatus
    priority: TaskPriority
    assignee_id: Optional[int] = None
    due_date: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


# Task schemas
class TaskCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = ""
    status: TaskStatus = TaskStatus.TODO
    priority: TaskPriority = TaskPriority.MEDIUM
    category: Optional[TaskCategory] = None  # inferred from title/description when omitted
    due_date: datetime
    assignee_id: Optional[int] = None
    team_id: Optional[int] = None
    estimated_hours: Optional[float] = Field(None, ge=0)
    subtasks: List[SubTaskCreate] = []


class Task(BaseModel):
    id: int
    title: str
    description: Optional[str] = None
    creator_id: int
    assignee_id: Optional[int] = None
    team_id: Optional[int] = None
    status: TaskStatus
    priority: TaskPriority
    category: TaskCategory
    is_bug_report: bool
    due_date: datetime
    completed_at: Optional[datetime] = None
    estimated_hours: Optional[float] = None
    actual_hours: Optional[float] = None
    progress: int
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


# Attachment schemas
class AttachmentCreate(BaseModel):
    file_name: str = Field(..., min_length=1, max_length=255)
    file_type: str = Field(..., min_length=1, max_length=100)
    file_size: int = Field(..., ge=0)
    url: str


class Attachment(AttachmentCreate):
    id: int
    task_id: int
    uploaded_by: Optional[int] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


# Bug report schemas
class BugReportCreate(BaseModel):
    task_id: int
    title: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = ""
    severity: Optional[BugSeverity] = None
    environment: Optional[DeployEnvironment] = None
    steps: Optional[str] = ""
    expected: Optional[str] = ""
    actual: Optional[str] = ""
    priority: TaskPriority = TaskPriority.MEDIUM
    assignee_id: Optional[int] = None


class BugReport(BaseModel):
    id: int
    task_id: int
    team_id: Optional[int] = None
    reporter_id: int
    assignee_id: Optional[int] = None
    title: str
    description: Optional[str] = None
    severity: BugSeverity
    environment: DeployEnvironment
    steps: Optional[str] = None
    expected: Optional[str] = None
    actual: Optional[str] = None
    resolution_notes: Optional[str] = None
    status: TaskStatus
    priority: TaskPriority
    resolved_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


# Comment schemas
class CommentCreate(BaseModel):
    content: str = Field(..., min_length=1)


class Comment(BaseModel):
    id: int
    task_id: int
    user_id: Optional[int] = None
    content: str
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


# Submission schemas
class SubmissionCreate(BaseModel):
    content: str = Field(..., min_length=1)
    file_urls: List[str] = []


class Submission(BaseModel):
    id: int
    task_id: int
    user_id: Optional[int] = None
    content: str
    file_urls: List[str] = []
    feedback: Optional[str] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


# History schemas
class HistoryEntry(BaseModel):
    id: int
    task_id: int
    user_id: Optional[int] = None
    action: str
    field_name: Optional[str] = None
    old_value: Optional[str] = None
    new_value: Optional[str] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class HistoryList(BaseModel):
    entries: List[HistoryEntry]
    total_count: int


# Composite task responses
class TaskDetail(Task):
    is_overdue: bool = False
    permissions: TaskPermissions
    subtasks: List[SubTask] = []
    attachments: List[Attachment] = []
    bug_reports: List[BugReport] = []
    comments: List[Comment] = []
    category_data: Optional[Dict[str, Any]] = None


class TaskUpdateResult(BaseModel):
    task: Task
    accepted: List[str]
    rejected: List[str]
    category_data: Optional[Dict[str, Any]] = None


class CategoryDataResult(BaseModel):
    task_id: int
    category: TaskCategory
    applied: bool
    rejected: List[str] = []
    data: Optional[Dict[str, Any]] = None

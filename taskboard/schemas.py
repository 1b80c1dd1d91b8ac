from datetime import datetime
from typing import Literal, Optional
from uuid import UUID

from ninja import Schema


class ErrorSchema(Schema):
    code: str
    message: str
    retryable: bool = False
    reason: Optional[str] = None


class ErrorEnvelopeSchema(Schema):
    """Body of every failed request."""
    data: None = None
    error: ErrorSchema


class RegisterSchema(Schema):
    email: str
    password: str
    first_name: str
    last_name: str
    role: Literal["admin", "manager", "worker"] = "worker"
    business_id: str


class LoginSchema(Schema):
    email: str
    password: str


class SessionSchema(Schema):
    """Identity of the signed-in member."""
    internal_user_id: UUID
    role: str
    business_id: Optional[UUID]
    first_name: str
    last_name: str
    is_manager: bool
    is_admin: bool


class ProfileSchema(Schema):
    id: UUID
    first_name: str
    last_name: str
    email: str
    role: str
    business_id: Optional[UUID]


class RoleUpdateSchema(Schema):
    role: Literal["worker", "manager"]


class BusinessSchema(Schema):
    id: UUID
    name: str
    industry: str
    created_at: datetime


class BusinessLookupSchema(Schema):
    id: UUID
    name: str


class BusinessCreateSchema(Schema):
    name: str
    industry: str


class BusinessUpdateSchema(Schema):
    name: Optional[str] = None
    industry: Optional[str] = None


class AssignmentSchema(Schema):
    id: UUID
    task_id: UUID
    user_id: UUID
    assigned_at: datetime
    completed: bool
    completed_at: Optional[datetime]
    verification_photo_url: Optional[str]


class TaskStatusSchema(Schema):
    state: str
    completed_count: int
    total: int
    overdue: bool


class TaskSchema(Schema):
    id: UUID
    title: str
    description: str
    due_date: datetime
    created_by_id: UUID
    requires_photo: bool
    business_id: UUID
    created_at: datetime
    status: TaskStatusSchema
    assignments: list[AssignmentSchema]


class TaskCreateSchema(Schema):
    title: str
    description: str
    due_date: datetime
    requires_photo: bool = False
    assignee_ids: list[UUID]


class TaskCreatedSchema(Schema):
    task: TaskSchema
    failed_assignee_ids: list[UUID]


class TaskListSchema(Schema):
    tasks: list[TaskSchema]


class PhotoUploadSchema(Schema):
    url: Optional[str]


class PerformanceStatsSchema(Schema):
    completed: int
    pending: int
    overdue: int
    total: int
    completion_rate: int


class MemberPerformanceSchema(Schema):
    user: ProfileSchema
    stats: PerformanceStatsSchema


class TeamPerformanceSchema(Schema):
    members: list[MemberPerformanceSchema]
    workload_gini: float


class PerformanceRecordSchema(Schema):
    id: UUID
    user_id: UUID
    completed_tasks: int
    pending_tasks: int
    overdue_tasks: int
    week_number: int
    year: int
    created_at: datetime

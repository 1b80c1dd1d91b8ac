import logging
from dataclasses import asdict
from uuid import UUID

from django.conf import settings
from django.contrib.auth import authenticate, login, logout
from django.http import HttpRequest
from ninja import File, Form, NinjaAPI, Status, Swagger
from ninja.files import UploadedFile
from ninja.security import django_auth

from .errors import TaskboardError, ValidationError
from .identity import IdentityResolver, SessionContext
from .photos import PhotoUploader, UploadedImagePicker, acquire_image
from .schemas import (
    AssignmentSchema, BusinessCreateSchema, BusinessLookupSchema, BusinessSchema, BusinessUpdateSchema,
    ErrorEnvelopeSchema, LoginSchema, PerformanceRecordSchema, PerformanceStatsSchema,
    PhotoUploadSchema, ProfileSchema, RegisterSchema, RoleUpdateSchema, SessionSchema,
    TaskCreatedSchema, TaskCreateSchema, TaskListSchema, TeamPerformanceSchema
)
from .services import (
    BusinessDirectoryService, PerformanceService, RegistrationService,
    RosterService, TaskAssignmentService
)

logger = logging.getLogger(__name__)

api = NinjaAPI(docs=Swagger(settings={"persistAuthorization": True}), auth=django_auth)

ERRORS = {400: ErrorEnvelopeSchema, 403: ErrorEnvelopeSchema, 404: ErrorEnvelopeSchema}


@api.exception_handler(TaskboardError)
def taskboard_error(request: HttpRequest, exc: TaskboardError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.path, exc.message)
    else:
        logger.info("%s %s rejected (%s): %s", request.method, request.path, exc.code, exc.message)
    return api.create_response(request, {"data": None, "error": exc.as_dict()}, status=exc.status_code)


def _session(request: HttpRequest) -> SessionContext:
    return IdentityResolver.for_request(request)


def _uploader(request: HttpRequest) -> PhotoUploader:
    return PhotoUploader(public_base_url=settings.TASKBOARD_PUBLIC_BASE_URL or request.build_absolute_uri("/"))


def _session_payload(ctx: SessionContext) -> dict:
    return {
        "internal_user_id": ctx.internal_user_id,
        "role": ctx.role.value,
        "business_id": ctx.business_id,
        "first_name": ctx.first_name,
        "last_name": ctx.last_name,
        "is_manager": ctx.is_manager,
        "is_admin": ctx.is_admin,
    }


def _task_payload(task, assignments) -> dict:
    status = TaskAssignmentService.derive_task_status(task, assignments)
    return {
        "id": task.id,
        "title": task.title,
        "description": task.description,
        "due_date": task.due_date,
        "created_by_id": task.created_by_id,
        "requires_photo": task.requires_photo,
        "business_id": task.business_id,
        "created_at": task.created_at,
        "status": {
            "state": status.state.value,
            "completed_count": status.completed_count,
            "total": status.total,
            "overdue": status.overdue,
        },
        "assignments": list(assignments),
    }


# Auth

@api.post("/auth/register", auth=None, response={201: ProfileSchema, **ERRORS})
def register(request: HttpRequest, payload: RegisterSchema):
    """Create an account and its profile in an existing business."""
    profile = RegistrationService.register(**payload.dict())
    return Status(201, profile)


@api.post("/auth/login", auth=None, response={200: SessionSchema, 401: ErrorEnvelopeSchema, 404: ErrorEnvelopeSchema})
def sign_in(request: HttpRequest, payload: LoginSchema):
    user = authenticate(request, username=payload.email.strip().lower(), password=payload.password)
    if user is None:
        return Status(401, {"data": None, "error": {"code": "invalid_credentials", "message": "Invalid email or password"}})
    login(request, user)
    return Status(200, _session_payload(_session(request)))


@api.post("/auth/logout", response={204: None})
def sign_out(request: HttpRequest):
    logout(request)
    return Status(204, None)


@api.get("/auth/session", response={200: SessionSchema, **ERRORS})
def get_session(request: HttpRequest):
    """
    Identity of the signed-in member. A missing profile answers 404 with a
    retryable error, since profiles can be provisioned after the account.
    """
    return _session_payload(_session(request))


# Businesses

@api.get("/businesses/{business_id}/lookup", auth=None, response={200: BusinessLookupSchema, **ERRORS})
def lookup_business(request: HttpRequest, business_id: str):
    return BusinessDirectoryService.lookup(business_id)


@api.get("/businesses", response={200: list[BusinessSchema], **ERRORS})
def list_businesses(request: HttpRequest):
    return BusinessDirectoryService.list_businesses(_session(request))


@api.post("/businesses", response={201: BusinessSchema, **ERRORS})
def create_business(request: HttpRequest, payload: BusinessCreateSchema):
    return Status(201, BusinessDirectoryService.create_business(_session(request), payload.name, payload.industry))


@api.patch("/businesses/{business_id}", response={200: BusinessSchema, **ERRORS})
def update_business(request: HttpRequest, business_id: UUID, payload: BusinessUpdateSchema):
    return BusinessDirectoryService.update_business(
        _session(request), business_id, payload.dict(exclude_unset=True)
    )


# Roster

@api.get("/workers", response={200: list[ProfileSchema], **ERRORS})
def list_workers(request: HttpRequest):
    ctx = _session(request)
    if ctx.business_id is None:
        raise ValidationError("Business ID is required")
    return RosterService.list_workers(ctx.business_id)


@api.patch("/users/{user_id}/role", response={200: ProfileSchema, **ERRORS})
def update_user_role(request: HttpRequest, user_id: UUID, payload: RoleUpdateSchema):
    return RosterService.update_user_role(_session(request), user_id, payload.role)


# Tasks

@api.get("/tasks", response={200: TaskListSchema, **ERRORS})
def list_tasks(request: HttpRequest):
    """Tasks assigned to the signed-in member, with every assignee's progress."""
    tasks, assignments = TaskAssignmentService.fetch_visible_tasks(_session(request))
    by_task = {}
    for assignment in assignments:
        by_task.setdefault(assignment.task_id, []).append(assignment)
    return {"tasks": [_task_payload(task, by_task.get(task.id, [])) for task in tasks]}


@api.post("/tasks", response={201: TaskCreatedSchema, **ERRORS})
def create_task(request: HttpRequest, payload: TaskCreateSchema):
    created = TaskAssignmentService.create_task(
        _session(request),
        title=payload.title,
        description=payload.description,
        due_date=payload.due_date,
        assignee_ids=payload.assignee_ids,
        requires_photo=payload.requires_photo,
    )
    return Status(201, {
        "task": _task_payload(created.task, created.assignments),
        "failed_assignee_ids": created.failed_assignee_ids,
    })


@api.post("/tasks/{task_id}/photos", response={200: PhotoUploadSchema, 502: ErrorEnvelopeSchema, **ERRORS})
def upload_photo(request: HttpRequest, task_id: UUID, source: str = Form("camera"),
                 photo: UploadedFile = File(None)):
    """Upload a verification photo for an assigned task. A missing file means the member cancelled."""
    task = TaskAssignmentService.get_assigned_task(_session(request), task_id)
    image = acquire_image(source, UploadedImagePicker(photo))
    if image is None:
        return {"url": None}
    return {"url": _uploader(request).upload(image, task.id)}


@api.post("/assignments/{assignment_id}/complete", response={200: AssignmentSchema, 502: ErrorEnvelopeSchema, **ERRORS})
def complete_assignment(request: HttpRequest, assignment_id: UUID, source: str = Form("camera"),
                        photo: UploadedFile = File(None), photo_url: str = Form(None)):
    """Mark the member's own assignment completed, optionally uploading a photo first."""
    ctx = _session(request)
    if photo is not None:
        assignment = TaskAssignmentService.get_open_assignment(ctx, assignment_id)
        image = acquire_image(source, UploadedImagePicker(photo))
        if image is not None:
            photo_url = _uploader(request).upload(image, assignment.task_id)
    return TaskAssignmentService.complete_assignment(ctx, assignment_id, photo_url)


# Performance

@api.get("/performance/stats", response={200: PerformanceStatsSchema, **ERRORS})
def performance_stats(request: HttpRequest):
    """Team figures for managers and admins, personal figures for workers."""
    return asdict(PerformanceService.compute_stats(_session(request)))


@api.get("/performance/team", response={200: TeamPerformanceSchema, **ERRORS})
def team_performance(request: HttpRequest):
    rows, workload_gini = PerformanceService.team_breakdown(_session(request))
    return {
        "members": [{"user": member, "stats": asdict(stats)} for member, stats in rows],
        "workload_gini": workload_gini,
    }


@api.get("/performance/history", response={200: list[PerformanceRecordSchema], **ERRORS})
def performance_history(request: HttpRequest):
    return PerformanceService.history(_session(request))

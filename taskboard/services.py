import logging
import re
import uuid
from collections import defaultdict
from contextlib import nullcontext
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Iterable

from django.conf import settings
from django.contrib.auth import get_user_model
from django.db import DatabaseError, transaction
from django.utils import timezone
from inequality import gini  # type: ignore
import numpy as np

from .errors import (
    CrossBusinessError, ImmutableAdminError, NotFoundError,
    PermissionDenied, ValidationError
)
from .identity import SessionContext
from .models import Assignment, Business, PerformanceRecord, Profile, Role, Task

logger = logging.getLogger(__name__)

UUID_PATTERN = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE)


def _require(fields: dict, message: str = "Please fill all required fields") -> None:
    for value in fields.values():
        if value is None or (isinstance(value, str) and not value.strip()):
            raise ValidationError(message)


class RegistrationService:
    """Service class for account registration."""

    @staticmethod
    def register(email: str, password: str, first_name: str, last_name: str,
                 role: str, business_id: str) -> Profile:
        """Create the auth principal and its profile for an existing business."""
        _require({
            "email": email, "password": password, "first_name": first_name,
            "last_name": last_name, "role": role, "business_id": business_id,
        })
        if role not in Role.values:
            raise ValidationError(f"Unknown role: {role}")

        business = BusinessDirectoryService.lookup(business_id)

        User = get_user_model()
        email = email.strip().lower()
        if User.objects.filter(username=email).exists():
            raise ValidationError("An account with this email already exists")

        with transaction.atomic():
            auth_user = User.objects.create_user(username=email, email=email, password=password)
            profile = Profile.objects.create(
                auth_user=auth_user,
                email=email,
                first_name=first_name.strip(),
                last_name=last_name.strip(),
                role=role,
                business=business,
            )
        logger.info("Registered %s as %s of business %s", email, role, business.id)
        return profile


class BusinessDirectoryService:
    """Service class for business lookups and management."""

    @staticmethod
    def lookup(business_id: str) -> Business:
        """Find a business by its UUID, as typed in by a registering member."""
        business_id = str(business_id).strip()
        if not UUID_PATTERN.match(business_id):
            raise ValidationError("Invalid UUID format. Example: 123e4567-e89b-12d3-a456-426614174000")
        business = Business.objects.filter(id=business_id).first()
        if business is None:
            raise NotFoundError("Business ID not found. Please check with your administrator.")
        return business

    @staticmethod
    def list_businesses(ctx: SessionContext) -> list[Business]:
        """Admins see every business; managers see only their own."""
        if ctx.is_admin:
            return list(Business.objects.order_by("name"))
        if ctx.is_manager:
            return list(Business.objects.filter(id=ctx.business_id).order_by("name"))
        raise PermissionDenied("Only managers and admins can view businesses")

    @staticmethod
    def create_business(ctx: SessionContext, name: str, industry: str) -> Business:
        if not ctx.is_admin:
            raise PermissionDenied("Only admins can create businesses")
        _require({"name": name, "industry": industry})
        business = Business.objects.create(name=name.strip(), industry=industry.strip())
        logger.info("Business %s created by %s", business.id, ctx.internal_user_id)
        return business

    @staticmethod
    def update_business(ctx: SessionContext, business_id, fields: dict) -> Business:
        if not ctx.is_manager:
            raise PermissionDenied()
        if not ctx.is_admin and str(business_id) != str(ctx.business_id):
            raise CrossBusinessError("You can only update your own business")

        business = Business.objects.filter(id=business_id).first()
        if business is None:
            raise NotFoundError("Business not found")

        changed = []
        for name in ("name", "industry"):
            value = fields.get(name)
            if value is None:
                continue
            if not value.strip():
                raise ValidationError(f"{name} cannot be empty")
            setattr(business, name, value.strip())
            changed.append(name)
        if changed:
            business.save(update_fields=changed)
        return business


class RosterService:
    """Service class for business rosters and role changes."""

    PROMOTABLE_ROLES = (Role.WORKER, Role.MANAGER)

    @staticmethod
    def list_workers(business_id) -> list[Profile]:
        return list(Profile.objects.filter(business_id=business_id).order_by("first_name"))

    @classmethod
    def update_user_role(cls, acting: SessionContext, target_user_id, new_role: str) -> Profile:
        """
        Promote a worker to manager or demote a manager to worker.
        Admin accounts can neither be changed nor created here.
        """
        if new_role not in cls.PROMOTABLE_ROLES:
            raise ValidationError("Role must be either worker or manager")

        target = Profile.objects.filter(id=target_user_id).first()
        if target is None:
            raise NotFoundError("User not found")
        if target.role == Role.ADMIN:
            raise ImmutableAdminError()
        if not acting.is_admin:
            raise PermissionDenied("Only admins can update user roles")
        if target.business_id != acting.business_id:
            raise CrossBusinessError("You can only update users in your business")

        target.role = new_role
        target.save(update_fields=["role"])
        logger.info("User %s role changed to %s by %s", target.id, new_role, acting.internal_user_id)
        return target


class TaskState(str, Enum):
    PENDING = "pending"
    PARTIALLY_COMPLETED = "partially_completed"
    COMPLETED = "completed"


@dataclass(frozen=True)
class TaskStatus:
    state: TaskState
    completed_count: int
    total: int
    overdue: bool

    @property
    def fully_completed(self) -> bool:
        return self.state == TaskState.COMPLETED

    @property
    def partially_completed(self) -> bool:
        return self.state == TaskState.PARTIALLY_COMPLETED


@dataclass
class CreatedTask:
    task: Task
    assignments: list[Assignment] = field(default_factory=list)
    failed_assignee_ids: list[uuid.UUID] = field(default_factory=list)


class TaskAssignmentService:
    """Service class for tasks and their per-assignee completion records."""

    @staticmethod
    def derive_task_status(task: Task, assignments: Iterable[Assignment], now: datetime | None = None) -> TaskStatus:
        """Aggregate status of a task from its assignments. No assignments means pending."""
        now = now or timezone.now()
        assignments = list(assignments)
        completed_count = sum(1 for a in assignments if a.completed)
        total = len(assignments)

        if total > 0 and completed_count == total:
            state = TaskState.COMPLETED
        elif completed_count > 0:
            state = TaskState.PARTIALLY_COMPLETED
        else:
            state = TaskState.PENDING

        overdue = state != TaskState.COMPLETED and task.due_date < now
        return TaskStatus(state=state, completed_count=completed_count, total=total, overdue=overdue)

    @staticmethod
    def _insert_assignment(task: Task, assignee_id, business_id) -> Assignment:
        assignee = Profile.objects.filter(id=assignee_id, business_id=business_id).first()
        if assignee is None:
            raise NotFoundError(f"Assignee {assignee_id} is not a member of this business")
        with transaction.atomic():
            return Assignment.objects.create(task=task, user=assignee)

    @classmethod
    def create_task(cls, ctx: SessionContext, title: str, description: str, due_date: datetime,
                    assignee_ids: Iterable, requires_photo: bool = False) -> CreatedTask:
        """
        Insert the task, then one assignment per assignee.

        Assignment inserts are independent: a failed insert is logged and
        reported in ``failed_assignee_ids`` without undoing the task, unless
        ``TASKBOARD_ATOMIC_TASK_CREATION`` is set.
        """
        if not ctx.is_manager:
            raise PermissionDenied("Only managers and admins can create tasks")
        if ctx.business_id is None:
            raise ValidationError("Business ID is required")

        try:
            # dict.fromkeys keeps the first occurrence order
            assignee_ids = list(dict.fromkeys(uuid.UUID(str(a)) for a in assignee_ids or []))
        except ValueError as e:
            raise ValidationError("Invalid assignee id") from e
        if not assignee_ids:
            raise ValidationError("at least one assignee required")
        _require({"title": title, "description": description, "due_date": due_date})
        if timezone.is_naive(due_date):
            due_date = timezone.make_aware(due_date)

        atomic = getattr(settings, "TASKBOARD_ATOMIC_TASK_CREATION", False)
        with transaction.atomic() if atomic else nullcontext():
            task = Task.objects.create(
                title=title.strip(),
                description=description.strip(),
                due_date=due_date,
                requires_photo=requires_photo,
                created_by_id=ctx.internal_user_id,
                business_id=ctx.business_id,
            )
            result = CreatedTask(task=task)
            for assignee_id in assignee_ids:
                try:
                    result.assignments.append(cls._insert_assignment(task, assignee_id, ctx.business_id))
                except (DatabaseError, NotFoundError) as e:
                    if atomic:
                        logger.error("Failed to assign task %s to %s, rolling back: %s", task.id, assignee_id, e)
                        raise ValidationError(f"Could not assign task to {assignee_id}") from e
                    logger.error("Failed to assign task %s to %s: %s", task.id, assignee_id, e)
                    result.failed_assignee_ids.append(assignee_id)

        if result.failed_assignee_ids:
            logger.warning(
                "Task %s created with %d of %d assignments",
                task.id, len(result.assignments), len(assignee_ids)
            )
        return result

    @staticmethod
    def fetch_visible_tasks(ctx: SessionContext) -> tuple[list[Task], list[Assignment]]:
        """
        Tasks the member holds an assignment for, in their business, soonest due first.
        The assignment list covers every assignee of those tasks.
        """
        if ctx.business_id is None:
            raise ValidationError("Business ID is required")

        tasks = list(
            Task.objects.filter(
                business_id=ctx.business_id,
                assignments__user_id=ctx.internal_user_id,
            ).distinct().order_by("due_date")
        )
        assignments = list(
            Assignment.objects.filter(task__in=tasks).select_related("user").order_by("assigned_at")
        )
        return tasks, assignments

    @staticmethod
    def get_assigned_task(ctx: SessionContext, task_id) -> Task:
        """The task, provided the caller holds an assignment for it in their business."""
        task = Task.objects.filter(id=task_id, business_id=ctx.business_id).first()
        if task is None:
            raise NotFoundError("Task not found")
        if not task.assignments.filter(user_id=ctx.internal_user_id).exists():
            raise PermissionDenied("You can only add photos to tasks assigned to you")
        return task

    @staticmethod
    def get_open_assignment(ctx: SessionContext, assignment_id) -> Assignment:
        """The caller's own assignment, provided it is not completed yet."""
        assignment = Assignment.objects.select_related("task").filter(id=assignment_id).first()
        if assignment is None:
            raise NotFoundError("Assignment not found")
        if assignment.user_id != ctx.internal_user_id:
            raise PermissionDenied("You can only complete your own assignments")
        if assignment.completed:
            raise ValidationError("Assignment is already completed")
        return assignment

    @classmethod
    def complete_assignment(cls, ctx: SessionContext, assignment_id, photo_url: str | None = None) -> Assignment:
        assignment = cls.get_open_assignment(ctx, assignment_id)

        if assignment.task.requires_photo and not photo_url:
            logger.warning("Assignment %s completed without the required verification photo", assignment.id)

        assignment.completed = True
        assignment.completed_at = timezone.now()
        assignment.verification_photo_url = photo_url or None
        assignment.save(update_fields=["completed", "completed_at", "verification_photo_url"])
        return assignment


@dataclass(frozen=True)
class PerformanceStats:
    completed: int = 0
    pending: int = 0
    overdue: int = 0
    total: int = 0
    completion_rate: int = 0


class PerformanceService:
    """Service class for completion figures computed from assignments."""

    @staticmethod
    def calculate_stats(assignments: Iterable[Assignment], now: datetime | None = None) -> PerformanceStats:
        now = now or timezone.now()
        completed = pending = overdue = 0
        for assignment in assignments:
            if assignment.completed:
                completed += 1
            else:
                pending += 1
                if assignment.task.due_date < now:
                    overdue += 1

        total = completed + pending
        completion_rate = round(100 * completed / total) if total else 0
        return PerformanceStats(
            completed=completed,
            pending=pending,
            overdue=overdue,
            total=total,
            completion_rate=completion_rate,
        )

    @staticmethod
    def _assignments_for(user_ids) -> list[Assignment]:
        return list(Assignment.objects.filter(user_id__in=user_ids).select_related("task"))

    @classmethod
    def compute_stats(cls, ctx: SessionContext, now: datetime | None = None) -> PerformanceStats:
        """Team-wide figures for managers, personal figures for everyone else."""
        if ctx.is_manager:
            user_ids = list(Profile.objects.filter(business_id=ctx.business_id).values_list("id", flat=True))
        else:
            user_ids = [ctx.internal_user_id]
        return cls.calculate_stats(cls._assignments_for(user_ids), now)

    @staticmethod
    def _calculate_gini_coefficient(values):
        """Calculate Gini coefficient for a list of values."""
        if not values or len(values) == 1 or not any(values):
            return 0.0
        return float(gini.Gini(np.asarray(values, dtype=float)).g)

    @classmethod
    def team_breakdown(cls, ctx: SessionContext, now: datetime | None = None):
        """Per-member figures for the business plus how evenly completions are spread."""
        if not ctx.is_manager:
            raise PermissionDenied("Only managers and admins can view team performance")

        members = list(Profile.objects.filter(business_id=ctx.business_id).order_by("first_name"))
        by_user = defaultdict(list)
        for assignment in cls._assignments_for([m.id for m in members]):
            by_user[assignment.user_id].append(assignment)

        rows = [(member, cls.calculate_stats(by_user[member.id], now)) for member in members]
        workload_gini = cls._calculate_gini_coefficient([stats.completed for _, stats in rows])
        return rows, round(workload_gini, 3)

    @classmethod
    def snapshot_week(cls, now: datetime | None = None) -> list[PerformanceRecord]:
        """Store this ISO week's figures for every member, replacing earlier runs."""
        now = now or timezone.now()
        year, week_number, _ = now.isocalendar()

        by_user = defaultdict(list)
        for assignment in Assignment.objects.select_related("task"):
            by_user[assignment.user_id].append(assignment)

        records = []
        with transaction.atomic():
            for profile in Profile.objects.all():
                stats = cls.calculate_stats(by_user[profile.id], now)
                record, _ = PerformanceRecord.objects.update_or_create(
                    user=profile,
                    week_number=week_number,
                    year=year,
                    defaults={
                        "completed_tasks": stats.completed,
                        "pending_tasks": stats.pending,
                        "overdue_tasks": stats.overdue,
                    },
                )
                records.append(record)
        logger.info("Stored %d performance snapshots for week %d/%d", len(records), week_number, year)
        return records

    @staticmethod
    def history(ctx: SessionContext) -> list[PerformanceRecord]:
        records = PerformanceRecord.objects.select_related("user")
        if ctx.is_manager:
            records = records.filter(user__business_id=ctx.business_id)
        else:
            records = records.filter(user_id=ctx.internal_user_id)
        return list(records.order_by("-created_at"))

import uuid

from django.conf import settings
from django.db import models


class Role(models.TextChoices):
    ADMIN = "admin", "Admin"
    MANAGER = "manager", "Manager"
    WORKER = "worker", "Worker"


def has_manager_capability(role) -> bool:
    """Managers and admins may create tasks and see team figures."""
    return role in (Role.ADMIN, Role.MANAGER)


def is_admin(role) -> bool:
    return role == Role.ADMIN


class Business(models.Model):
    id         = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    name       = models.CharField(max_length=200)
    industry   = models.CharField(max_length=100)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["name"]

    def __str__(self):
        return self.name


class Profile(models.Model):
    """Domain user. ``id`` is the internal user id every task record keys on."""
    id         = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    auth_user  = models.OneToOneField(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="profile"
    )
    email      = models.EmailField()
    first_name = models.CharField(max_length=100)
    last_name  = models.CharField(max_length=100)
    role       = models.CharField(max_length=10, choices=Role.choices, default=Role.WORKER)
    business   = models.ForeignKey(
        Business,
        null=True, blank=True,
        on_delete=models.SET_NULL,
        related_name="members"
    )
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        indexes = [
            models.Index(fields=["business", "first_name"], name="profile_business_name_idx"),
        ]

    def __str__(self):
        return f"{self.first_name} {self.last_name}"

    @property
    def is_manager(self) -> bool:
        return has_manager_capability(self.role)


class Task(models.Model):
    id             = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    title          = models.CharField(max_length=200)
    description    = models.TextField()
    due_date       = models.DateTimeField(db_index=True)
    created_by     = models.ForeignKey(
        Profile,
        on_delete=models.CASCADE,
        related_name="created_tasks"
    )
    requires_photo = models.BooleanField(default=False)
    business       = models.ForeignKey(
        Business,
        on_delete=models.CASCADE,
        related_name="tasks"
    )
    created_at     = models.DateTimeField(auto_now_add=True)


class Assignment(models.Model):
    id                     = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    task                   = models.ForeignKey(
        Task,
        on_delete=models.CASCADE,
        related_name="assignments"
    )
    user                   = models.ForeignKey(
        Profile,
        on_delete=models.CASCADE,
        related_name="assignments"
    )
    assigned_at            = models.DateTimeField(auto_now_add=True)
    completed              = models.BooleanField(default=False)
    completed_at           = models.DateTimeField(null=True, blank=True)
    verification_photo_url = models.CharField(max_length=1024, null=True, blank=True)

    class Meta:
        unique_together = ("task", "user")
        indexes = [
            models.Index(fields=["user", "completed"], name="assignment_user_done_idx"),
        ]


class PerformanceRecord(models.Model):
    """Weekly snapshot of a member's assignment figures."""
    id              = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    user            = models.ForeignKey(
        Profile,
        on_delete=models.CASCADE,
        related_name="performance_records"
    )
    completed_tasks = models.PositiveIntegerField(default=0)
    pending_tasks   = models.PositiveIntegerField(default=0)
    overdue_tasks   = models.PositiveIntegerField(default=0)
    week_number     = models.PositiveSmallIntegerField()
    year            = models.PositiveSmallIntegerField()
    created_at      = models.DateTimeField(auto_now_add=True)

    class Meta:
        unique_together = ("user", "week_number", "year")

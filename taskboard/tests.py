import warnings
from datetime import timedelta
from unittest.mock import MagicMock, patch
from uuid import uuid4

import requests
from django.conf import settings
from django.contrib.auth import get_user_model
from django.core.files.storage import InMemoryStorage
from django.core.files.uploadedfile import SimpleUploadedFile
from django.core.management import call_command
from django.test import TestCase, override_settings
from django.test.client import Client
from django.utils import timezone

from .errors import (
    CrossBusinessError, ImmutableAdminError, NotFoundError, PermissionDenied,
    ProfileNotFound, UploadFailure, ValidationError
)
from .identity import IdentityResolver, SessionContext
from .models import Assignment, Business, PerformanceRecord, Profile, Role, Task, has_manager_capability
from .photos import (
    DirectUploadStrategy, ImageSource, LocalImage, PhotoUploader,
    StorageFallbackStrategy, UploadedImagePicker, acquire_image
)
from .services import (
    BusinessDirectoryService, PerformanceService, RegistrationService,
    RosterService, TaskAssignmentService, TaskState
)

IN_MEMORY_STORAGE = {"default": {"BACKEND": "django.core.files.storage.InMemoryStorage"}}
FAST_HASHERS = ["django.contrib.auth.hashers.MD5PasswordHasher"]


@override_settings(PASSWORD_HASHERS=FAST_HASHERS)
class TaskboardTestBase(TestCase):
    """Base test class with a bakery business and its team."""

    def setUp(self):
        """Set up common test data"""
        self.client = Client()
        self.now = timezone.now()

        self.bakery = Business.objects.create(name="Corner Bakery", industry="Food & Beverage")
        self.landscaper = Business.objects.create(name="Greenway Landscaping", industry="Landscaping")

        self.admin = self.make_member("alex@bakery.test", "Alex", "Moreno", Role.ADMIN, self.bakery)
        self.manager = self.make_member("blair@bakery.test", "Blair", "Chen", Role.MANAGER, self.bakery)
        self.worker1 = self.make_member("casey@bakery.test", "Casey", "Osei", Role.WORKER, self.bakery)
        self.worker2 = self.make_member("devon@bakery.test", "Devon", "Park", Role.WORKER, self.bakery)
        self.worker3 = self.make_member("ellis@bakery.test", "Ellis", "Quinn", Role.WORKER, self.bakery)
        self.outsider = self.make_member("frankie@greenway.test", "Frankie", "Silva", Role.WORKER, self.landscaper)

    def make_member(self, email, first_name, last_name, role, business):
        auth_user = get_user_model().objects.create_user(username=email, email=email, password="secret-pass")
        return Profile.objects.create(
            auth_user=auth_user, email=email, first_name=first_name,
            last_name=last_name, role=role, business=business
        )

    def ctx(self, profile):
        return SessionContext.from_profile(profile)

    def login(self, profile):
        self.client.force_login(profile.auth_user)

    def create_task(self, assignees, due_in=timedelta(days=2), requires_photo=False, title="Clean display cases"):
        return TaskAssignmentService.create_task(
            self.ctx(self.manager),
            title=title,
            description="Wipe down and sanitise the front cases.",
            due_date=self.now + due_in,
            assignee_ids=[a.id for a in assignees],
            requires_photo=requires_photo,
        )

    def post_json(self, url, data):
        return self.client.post(url, data, content_type="application/json")


class RoleTest(TestCase):

    def test_manager_capability(self):
        self.assertTrue(has_manager_capability(Role.ADMIN))
        self.assertTrue(has_manager_capability(Role.MANAGER))
        self.assertFalse(has_manager_capability(Role.WORKER))


class IdentityResolverTest(TaskboardTestBase):
    """Test mapping auth principals to profiles."""

    def test_resolve_exposes_internal_id_and_capabilities(self):
        context = IdentityResolver.resolve(self.manager.auth_user)

        self.assertEqual(context.internal_user_id, self.manager.id)
        self.assertNotEqual(context.internal_user_id, context.auth_id)
        self.assertEqual(context.business_id, self.bakery.id)
        self.assertTrue(context.is_manager)
        self.assertFalse(context.is_admin)
        self.assertFalse(IdentityResolver.resolve(self.worker1.auth_user).is_manager)

    def test_missing_profile_raises_profile_not_found(self):
        orphan = get_user_model().objects.create_user(username="orphan@bakery.test", password="secret-pass")
        with self.assertRaises(ProfileNotFound):
            IdentityResolver.resolve(orphan)

    def test_missing_profile_is_retryable_error_over_api(self):
        orphan = get_user_model().objects.create_user(username="orphan@bakery.test", password="secret-pass")
        self.client.force_login(orphan)

        response = self.client.get("/api/auth/session")

        self.assertEqual(response.status_code, 404)
        body = response.json()
        self.assertIsNone(body["data"])
        self.assertEqual(body["error"]["code"], "profile_not_found")
        self.assertTrue(body["error"]["retryable"])
        self.assertIn("contact an administrator", body["error"]["message"])

    def test_identity_cached_until_next_sign_in(self):
        self.login(self.worker1)
        self.assertEqual(self.client.get("/api/auth/session").json()["role"], "worker")

        Profile.objects.filter(id=self.worker1.id).update(role=Role.MANAGER)
        self.assertEqual(self.client.get("/api/auth/session").json()["role"], "worker")

        self.login(self.worker1)
        data = self.client.get("/api/auth/session").json()
        self.assertEqual(data["role"], "manager")
        self.assertTrue(data["is_manager"])

    def test_sign_out_tears_down_session(self):
        self.login(self.worker1)
        self.assertEqual(self.client.post("/api/auth/logout").status_code, 204)
        self.assertEqual(self.client.get("/api/auth/session").status_code, 401)


class RegistrationTest(TaskboardTestBase):
    """Test account registration against existing businesses."""

    def test_register_creates_principal_and_profile(self):
        profile = RegistrationService.register(
            "Gale@Bakery.test", "secret-pass", "Gale", "Ivers", "worker", str(self.bakery.id)
        )

        self.assertEqual(profile.email, "gale@bakery.test")
        self.assertEqual(profile.business_id, self.bakery.id)
        self.assertEqual(profile.auth_user.username, "gale@bakery.test")

        response = self.post_json("/api/auth/login", {"email": "gale@bakery.test", "password": "secret-pass"})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["internal_user_id"], str(profile.id))

    def test_unknown_business_creates_nothing(self):
        users_before = get_user_model().objects.count()
        with self.assertRaises(NotFoundError):
            RegistrationService.register(
                "gale@bakery.test", "secret-pass", "Gale", "Ivers", "worker", str(uuid4())
            )

        self.assertEqual(get_user_model().objects.count(), users_before)
        self.assertFalse(Profile.objects.filter(email="gale@bakery.test").exists())

    def test_malformed_business_id(self):
        with self.assertRaises(ValidationError):
            RegistrationService.register("gale@bakery.test", "secret-pass", "Gale", "Ivers", "worker", "bakery-1")

    def test_duplicate_email_and_missing_fields(self):
        with self.assertRaises(ValidationError):
            RegistrationService.register("casey@bakery.test", "pw", "Casey", "Osei", "worker", str(self.bakery.id))
        with self.assertRaises(ValidationError):
            RegistrationService.register("gale@bakery.test", "pw", "", "Ivers", "worker", str(self.bakery.id))

    def test_register_api(self):
        response = self.post_json("/api/auth/register", {
            "email": "gale@bakery.test", "password": "secret-pass", "first_name": "Gale",
            "last_name": "Ivers", "role": "worker", "business_id": str(uuid4()),
        })

        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["error"]["code"], "not_found")

        response = self.post_json("/api/auth/register", {
            "email": "gale@bakery.test", "password": "secret-pass", "first_name": "Gale",
            "last_name": "Ivers", "role": "worker", "business_id": str(self.bakery.id),
        })
        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.json()["role"], "worker")

    def test_wrong_password(self):
        response = self.post_json("/api/auth/login", {"email": "casey@bakery.test", "password": "nope"})
        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json()["error"]["code"], "invalid_credentials")


class BusinessDirectoryTest(TaskboardTestBase):
    """Test role-scoped business visibility and management."""

    def test_admin_sees_all_businesses_by_name(self):
        names = [b.name for b in BusinessDirectoryService.list_businesses(self.ctx(self.admin))]
        self.assertEqual(names, ["Corner Bakery", "Greenway Landscaping"])

    def test_manager_sees_only_own_business(self):
        businesses = BusinessDirectoryService.list_businesses(self.ctx(self.manager))
        self.assertEqual([b.id for b in businesses], [self.bakery.id])

    def test_worker_cannot_list_businesses(self):
        with self.assertRaises(PermissionDenied):
            BusinessDirectoryService.list_businesses(self.ctx(self.worker1))

        self.login(self.worker1)
        self.assertEqual(self.client.get("/api/businesses").status_code, 403)

    def test_only_admin_creates_business(self):
        business = BusinessDirectoryService.create_business(self.ctx(self.admin), "Harbor Cafe", "Food & Beverage")
        self.assertTrue(Business.objects.filter(id=business.id, name="Harbor Cafe").exists())

        with self.assertRaises(PermissionDenied):
            BusinessDirectoryService.create_business(self.ctx(self.manager), "Other Cafe", "Food & Beverage")

    def test_create_business_api(self):
        self.login(self.admin)
        response = self.post_json("/api/businesses", {"name": "Harbor Cafe", "industry": "Food & Beverage"})

        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.json()["name"], "Harbor Cafe")

    def test_manager_updates_only_own_business(self):
        updated = BusinessDirectoryService.update_business(
            self.ctx(self.manager), self.bakery.id, {"name": "Corner Bakery & Cafe"}
        )
        self.assertEqual(updated.name, "Corner Bakery & Cafe")

        with self.assertRaises(CrossBusinessError):
            BusinessDirectoryService.update_business(self.ctx(self.manager), self.landscaper.id, {"name": "Mine"})

    def test_lookup_for_registration(self):
        response = self.client.get(f"/api/businesses/{self.bakery.id}/lookup")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["name"], "Corner Bakery")

        response = self.client.get("/api/businesses/not-a-uuid/lookup")
        self.assertEqual(response.status_code, 400)


class RosterTest(TaskboardTestBase):
    """Test worker listing and role changes."""

    def test_list_workers_ordered_by_first_name(self):
        names = [p.first_name for p in RosterService.list_workers(self.bakery.id)]
        self.assertEqual(names, ["Alex", "Blair", "Casey", "Devon", "Ellis"])

    def test_admin_promotes_and_demotes(self):
        promoted = RosterService.update_user_role(self.ctx(self.admin), self.worker1.id, "manager")
        self.assertEqual(promoted.role, Role.MANAGER)

        demoted = RosterService.update_user_role(self.ctx(self.admin), self.worker1.id, "worker")
        self.assertEqual(demoted.role, Role.WORKER)

    def test_admin_role_is_immutable_for_any_caller(self):
        for caller in (self.admin, self.manager, self.worker1, self.outsider):
            with self.assertRaises(ImmutableAdminError):
                RosterService.update_user_role(self.ctx(caller), self.admin.id, "worker")

        self.admin.refresh_from_db()
        self.assertEqual(self.admin.role, Role.ADMIN)

    def test_cannot_grant_admin(self):
        with self.assertRaises(ValidationError):
            RosterService.update_user_role(self.ctx(self.admin), self.worker1.id, "admin")

    def test_cross_business_target_rejected(self):
        with self.assertRaises(CrossBusinessError):
            RosterService.update_user_role(self.ctx(self.admin), self.outsider.id, "manager")

        self.outsider.refresh_from_db()
        self.assertEqual(self.outsider.role, Role.WORKER)

    def test_only_admin_changes_roles(self):
        with self.assertRaises(PermissionDenied):
            RosterService.update_user_role(self.ctx(self.manager), self.worker1.id, "manager")

    def test_role_update_api(self):
        self.login(self.admin)

        response = self.client.patch(
            f"/api/users/{self.admin.id}/role", {"role": "worker"}, content_type="application/json"
        )
        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json()["error"]["code"], "immutable_admin")

        response = self.client.patch(
            f"/api/users/{self.worker2.id}/role", {"role": "manager"}, content_type="application/json"
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["role"], "manager")


class TaskStatusTest(TaskboardTestBase):
    """Test aggregate task status derived from assignments."""

    def test_no_assignments_is_pending_never_completed(self):
        task = Task(title="t", description="d", due_date=self.now + timedelta(days=1))
        status = TaskAssignmentService.derive_task_status(task, [], now=self.now)

        self.assertEqual(status.state, TaskState.PENDING)
        self.assertFalse(status.fully_completed)
        self.assertEqual(status.total, 0)

    def test_partial_and_full_completion(self):
        task = Task(title="t", description="d", due_date=self.now + timedelta(days=1))
        done, open_ = Assignment(completed=True), Assignment(completed=False)

        partial = TaskAssignmentService.derive_task_status(task, [done, open_], now=self.now)
        self.assertEqual(partial.state, TaskState.PARTIALLY_COMPLETED)
        self.assertEqual((partial.completed_count, partial.total), (1, 2))

        full = TaskAssignmentService.derive_task_status(task, [done, Assignment(completed=True)], now=self.now)
        self.assertEqual(full.state, TaskState.COMPLETED)

    def test_overdue_only_while_incomplete(self):
        task = Task(title="t", description="d", due_date=self.now - timedelta(hours=1))

        self.assertTrue(TaskAssignmentService.derive_task_status(task, [Assignment(completed=False)], now=self.now).overdue)
        self.assertFalse(TaskAssignmentService.derive_task_status(task, [Assignment(completed=True)], now=self.now).overdue)


class TaskCreationTest(TaskboardTestBase):
    """Test task creation with one assignment per assignee."""

    def test_creates_task_and_assignments(self):
        created = self.create_task([self.worker1, self.worker2], requires_photo=True)

        self.assertEqual(created.task.business_id, self.bakery.id)
        self.assertEqual(created.task.created_by_id, self.manager.id)
        self.assertEqual(
            set(Assignment.objects.filter(task=created.task).values_list("user_id", flat=True)),
            {self.worker1.id, self.worker2.id}
        )
        self.assertEqual(created.failed_assignee_ids, [])

    def test_empty_assignees_inserts_nothing(self):
        with self.assertRaises(ValidationError) as raised:
            self.create_task([])

        self.assertIn("at least one assignee", raised.exception.message)
        self.assertEqual(Task.objects.count(), 0)
        self.assertEqual(Assignment.objects.count(), 0)

    def test_worker_cannot_create_tasks(self):
        with self.assertRaises(PermissionDenied):
            TaskAssignmentService.create_task(
                self.ctx(self.worker1), "t", "d", self.now, [self.worker2.id]
            )

    def test_duplicate_assignees_collapse(self):
        created = TaskAssignmentService.create_task(
            self.ctx(self.manager), "t", "d", self.now + timedelta(days=1),
            [self.worker1.id, self.worker1.id, str(self.worker2.id)]
        )
        self.assertEqual(len(created.assignments), 2)

    def test_failed_assignee_does_not_undo_task(self):
        with self.assertLogs("taskboard.services", level="ERROR"):
            created = self.create_task([self.worker1, self.outsider])

        self.assertTrue(Task.objects.filter(id=created.task.id).exists())
        self.assertEqual([a.user_id for a in created.assignments], [self.worker1.id])
        self.assertEqual(created.failed_assignee_ids, [self.outsider.id])

    @override_settings(TASKBOARD_ATOMIC_TASK_CREATION=True)
    def test_atomic_creation_rolls_back(self):
        with self.assertRaises(ValidationError):
            self.create_task([self.worker1, self.outsider])

        self.assertEqual(Task.objects.count(), 0)
        self.assertEqual(Assignment.objects.count(), 0)

    def test_create_task_api(self):
        self.login(self.manager)
        response = self.post_json("/api/tasks", {
            "title": "Restock flour",
            "description": "Two sacks to the prep area.",
            "due_date": (self.now + timedelta(days=1)).isoformat(),
            "assignee_ids": [],
        })
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["error"]["code"], "validation_error")

        response = self.post_json("/api/tasks", {
            "title": "Restock flour",
            "description": "Two sacks to the prep area.",
            "due_date": (self.now + timedelta(days=1)).isoformat(),
            "assignee_ids": [str(self.worker1.id)],
        })
        self.assertEqual(response.status_code, 201)
        task = response.json()["task"]
        self.assertEqual(task["status"]["state"], "pending")
        self.assertEqual(len(task["assignments"]), 1)

    def test_created_status_without_deprecated_tuple(self):
        self.login(self.manager)
        with warnings.catch_warnings():
            warnings.filterwarnings("error", message="Returning tuple", category=DeprecationWarning)
            response = self.post_json("/api/tasks", {
                "title": "Restock flour",
                "description": "Two sacks to the prep area.",
                "due_date": (self.now + timedelta(days=1)).isoformat(),
                "assignee_ids": [str(self.worker1.id)],
            })

        self.assertEqual(response.status_code, 201)

    def test_due_date_without_offset_is_read_as_utc(self):
        self.login(self.manager)
        due = (self.now + timedelta(days=3)).replace(tzinfo=None, microsecond=0)

        response = self.post_json("/api/tasks", {
            "title": "Restock flour",
            "description": "Two sacks to the prep area.",
            "due_date": due.isoformat(),
            "assignee_ids": [str(self.worker1.id)],
        })

        self.assertEqual(response.status_code, 201)
        self.assertFalse(response.json()["task"]["status"]["overdue"])
        task = Task.objects.get()
        self.assertTrue(timezone.is_aware(task.due_date))
        self.assertEqual(task.due_date, timezone.make_aware(due))


class TaskVisibilityTest(TaskboardTestBase):
    """Test that members only see tasks they are assigned to."""

    def setUp(self):
        super().setUp()
        self.shared = self.create_task([self.worker1, self.worker2], due_in=timedelta(days=3), title="Shared")
        self.solo = self.create_task([self.worker2], due_in=timedelta(days=1), title="Solo")

    def test_worker_sees_assigned_tasks_with_all_assignments(self):
        tasks, assignments = TaskAssignmentService.fetch_visible_tasks(self.ctx(self.worker1))

        self.assertEqual([t.title for t in tasks], ["Shared"])
        self.assertEqual({a.user_id for a in assignments}, {self.worker1.id, self.worker2.id})

    def test_tasks_ordered_by_due_date(self):
        tasks, _ = TaskAssignmentService.fetch_visible_tasks(self.ctx(self.worker2))
        self.assertEqual([t.title for t in tasks], ["Solo", "Shared"])

    def test_manager_sees_only_own_assignments(self):
        tasks, assignments = TaskAssignmentService.fetch_visible_tasks(self.ctx(self.manager))
        self.assertEqual(tasks, [])
        self.assertEqual(assignments, [])


class CompletionTest(TaskboardTestBase):
    """Test per-assignee completion."""

    def setUp(self):
        super().setUp()
        self.created = self.create_task([self.worker1, self.worker2])
        self.assignment = next(a for a in self.created.assignments if a.user_id == self.worker1.id)

    def test_complete_round_trip(self):
        url = "https://storage.example/object/public/task-photos/proof.jpg"
        TaskAssignmentService.complete_assignment(self.ctx(self.worker1), self.assignment.id, url)

        refetched = Assignment.objects.get(id=self.assignment.id)
        self.assertTrue(refetched.completed)
        self.assertIsNotNone(refetched.completed_at)
        self.assertEqual(refetched.verification_photo_url, url)

    def test_cannot_complete_someone_elses_assignment(self):
        with self.assertRaises(PermissionDenied):
            TaskAssignmentService.complete_assignment(self.ctx(self.worker2), self.assignment.id)
        with self.assertRaises(PermissionDenied):
            TaskAssignmentService.complete_assignment(self.ctx(self.manager), self.assignment.id)

    def test_completed_is_terminal(self):
        TaskAssignmentService.complete_assignment(self.ctx(self.worker1), self.assignment.id)
        completed_at = Assignment.objects.get(id=self.assignment.id).completed_at

        with self.assertRaises(ValidationError):
            TaskAssignmentService.complete_assignment(self.ctx(self.worker1), self.assignment.id)
        self.assertEqual(Assignment.objects.get(id=self.assignment.id).completed_at, completed_at)

    def test_unknown_assignment(self):
        with self.assertRaises(NotFoundError):
            TaskAssignmentService.complete_assignment(self.ctx(self.worker1), uuid4())

    def test_missing_required_photo_is_advisory(self):
        created = self.create_task([self.worker3], requires_photo=True)

        with self.assertLogs("taskboard.services", level="WARNING"):
            assignment = TaskAssignmentService.complete_assignment(
                self.ctx(self.worker3), created.assignments[0].id
            )
        self.assertTrue(assignment.completed)
        self.assertIsNone(assignment.verification_photo_url)


class TeamTaskScenarioTest(TaskboardTestBase):
    """A manager assigns two of three workers; both complete in turn."""

    def task_status(self, worker):
        self.login(worker)
        tasks = self.client.get("/api/tasks").json()["tasks"]
        self.assertEqual(len(tasks), 1)
        return tasks[0]["status"]

    def complete(self, worker, assignment_id):
        self.login(worker)
        return self.client.post(f"/api/assignments/{assignment_id}/complete")

    def test_partial_then_full_completion(self):
        self.login(self.manager)
        response = self.post_json("/api/tasks", {
            "title": "Deep clean ovens",
            "description": "Both ovens, inside and out.",
            "due_date": (self.now + timedelta(days=1)).isoformat(),
            "requires_photo": False,
            "assignee_ids": [str(self.worker1.id), str(self.worker2.id)],
        })
        self.assertEqual(response.status_code, 201)
        assignments = {a["user_id"]: a["id"] for a in response.json()["task"]["assignments"]}

        response = self.complete(self.worker1, assignments[str(self.worker1.id)])
        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.json()["completed"])

        status = self.task_status(self.worker1)
        self.assertEqual(status["state"], "partially_completed")
        self.assertEqual((status["completed_count"], status["total"]), (1, 2))
        self.assertFalse(status["overdue"])

        self.complete(self.worker2, assignments[str(self.worker2.id)])
        status = self.task_status(self.worker2)
        self.assertEqual(status["state"], "completed")
        self.assertEqual((status["completed_count"], status["total"]), (2, 2))

        self.login(self.worker3)
        self.assertEqual(self.client.get("/api/tasks").json()["tasks"], [])

    def test_incomplete_task_becomes_overdue(self):
        created = self.create_task([self.worker1, self.worker2], due_in=timedelta(hours=1))
        TaskAssignmentService.complete_assignment(self.ctx(self.worker1), created.assignments[0].id)
        assignments = list(Assignment.objects.filter(task=created.task))

        before = TaskAssignmentService.derive_task_status(created.task, assignments, now=self.now)
        after = TaskAssignmentService.derive_task_status(created.task, assignments, now=self.now + timedelta(hours=2))

        self.assertFalse(before.overdue)
        self.assertTrue(after.overdue)
        self.assertEqual(after.state, TaskState.PARTIALLY_COMPLETED)

    def test_other_member_cannot_complete_over_api(self):
        created = self.create_task([self.worker1])
        response = self.complete(self.worker2, created.assignments[0].id)

        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json()["error"]["code"], "permission_denied")


class PerformanceTest(TaskboardTestBase):
    """Test completion figures."""

    def setUp(self):
        super().setUp()
        # worker1: one done, one open, one open and overdue
        done = self.create_task([self.worker1, self.worker2], title="Done")
        self.create_task([self.worker1], title="Open")
        self.create_task([self.worker1, self.worker3], due_in=-timedelta(days=1), title="Late")
        TaskAssignmentService.complete_assignment(
            self.ctx(self.worker1), next(a.id for a in done.assignments if a.user_id == self.worker1.id)
        )

    def test_worker_stats(self):
        stats = PerformanceService.compute_stats(self.ctx(self.worker1))

        self.assertEqual((stats.completed, stats.pending, stats.overdue), (1, 2, 1))
        self.assertEqual(stats.completed + stats.pending, stats.total)
        self.assertEqual(stats.completion_rate, 33)

    def test_no_assignments_means_zero_rate(self):
        stats = PerformanceService.compute_stats(self.ctx(self.outsider))

        self.assertEqual(stats.total, 0)
        self.assertEqual(stats.completion_rate, 0)

    def test_manager_stats_cover_the_business(self):
        stats = PerformanceService.compute_stats(self.ctx(self.manager))

        # worker1: 3, worker2: 1, worker3: 1
        self.assertEqual(stats.total, 5)
        self.assertEqual(stats.completed, 1)
        self.assertEqual(stats.overdue, 2)
        self.assertEqual(stats.completion_rate, 20)

    def test_team_breakdown(self):
        rows, workload_gini = PerformanceService.team_breakdown(self.ctx(self.manager))

        by_name = {member.first_name: stats for member, stats in rows}
        self.assertEqual(by_name["Casey"].completed, 1)
        self.assertEqual(by_name["Devon"].pending, 1)
        self.assertEqual(by_name["Alex"].total, 0)
        self.assertGreater(workload_gini, 0)

        with self.assertRaises(PermissionDenied):
            PerformanceService.team_breakdown(self.ctx(self.worker1))

    def test_gini_guards(self):
        self.assertEqual(PerformanceService._calculate_gini_coefficient([]), 0.0)
        self.assertEqual(PerformanceService._calculate_gini_coefficient([4]), 0.0)
        self.assertEqual(PerformanceService._calculate_gini_coefficient([0, 0, 0]), 0.0)

    def test_stats_api(self):
        self.login(self.worker1)
        data = self.client.get("/api/performance/stats").json()
        self.assertEqual(data["completion_rate"], 33)

        self.assertEqual(self.client.get("/api/performance/team").status_code, 403)

        self.login(self.manager)
        data = self.client.get("/api/performance/team").json()
        self.assertEqual(len(data["members"]), 5)

    def test_weekly_snapshot(self):
        PerformanceService.snapshot_week(self.now)
        call_command("snapshot_performance")

        year, week_number, _ = timezone.now().isocalendar()
        record = PerformanceRecord.objects.get(user=self.worker1, week_number=week_number, year=year)
        self.assertEqual((record.completed_tasks, record.pending_tasks, record.overdue_tasks), (1, 2, 1))
        self.assertEqual(
            PerformanceRecord.objects.filter(week_number=week_number, year=year).count(),
            Profile.objects.count()
        )

        own = PerformanceService.history(self.ctx(self.worker1))
        self.assertEqual({r.user_id for r in own}, {self.worker1.id})

        team = PerformanceService.history(self.ctx(self.manager))
        self.assertNotIn(self.outsider.id, {r.user_id for r in team})


class PhotoAcquisitionTest(TestCase):
    """Test picking an image from the camera or the gallery."""

    def upload(self):
        return SimpleUploadedFile("proof.jpg", b"\xff\xd8\xff\xe0jpeg-bytes", content_type="image/jpeg")

    def test_returns_picked_image(self):
        image = acquire_image("gallery", UploadedImagePicker(self.upload(), allowed_sources=["gallery"]))

        self.assertEqual(image.content, b"\xff\xd8\xff\xe0jpeg-bytes")
        self.assertEqual(image.content_type, "image/jpeg")

    def test_refused_permission(self):
        with self.assertRaises(PermissionDenied) as raised:
            acquire_image(ImageSource.CAMERA, UploadedImagePicker(self.upload(), allowed_sources=["gallery"]))
        self.assertIn("Camera permission", raised.exception.message)

    def test_cancellation_is_not_an_error(self):
        self.assertIsNone(acquire_image("camera", UploadedImagePicker(None, allowed_sources=["camera"])))

    def test_unknown_source(self):
        with self.assertRaises(ValidationError):
            acquire_image("scanner", UploadedImagePicker(self.upload()))


@override_settings(STORAGES=IN_MEMORY_STORAGE, TASKBOARD_STORAGE_URL="", TASKBOARD_PUBLIC_BASE_URL="")
class PhotoUploadTest(TaskboardTestBase):
    """Test the direct upload and its storage fallback."""

    image = LocalImage(name="proof.jpg", content=b"jpeg-bytes")
    site = "https://taskboard.example"

    def photo(self):
        return SimpleUploadedFile("proof.jpg", b"jpeg-bytes", content_type="image/jpeg")

    def test_key_namespaced_by_task(self):
        task_id = uuid4()
        self.assertTrue(PhotoUploader.build_key(task_id).startswith(f"task_verification/{task_id}/"))

    def test_unconfigured_direct_stage_is_skipped_quietly(self):
        task_id = uuid4()
        with self.assertNoLogs("taskboard.photos", level="WARNING"):
            url = PhotoUploader(public_base_url=self.site).upload(self.image, task_id)

        self.assertTrue(url.startswith(f"{self.site}/media/task_verification/{task_id}/"))

    @override_settings(TASKBOARD_PUBLIC_BASE_URL="https://cdn.taskboard.example/")
    def test_public_base_url_setting(self):
        url = PhotoUploader().upload(self.image, "task-1")
        self.assertTrue(url.startswith("https://cdn.taskboard.example/media/task_verification/task-1/"))

    def test_relative_storage_url_without_base_is_an_error(self):
        with self.assertRaises(UploadFailure) as raised:
            PhotoUploader().upload(self.image, "task-1")

        self.assertEqual(raised.exception.reason, UploadFailure.STORAGE)
        self.assertIn("relative URL", raised.exception.message)

    @patch("taskboard.photos.requests.put")
    def test_direct_upload(self, put):
        put.return_value = MagicMock(raise_for_status=MagicMock(return_value=None))
        strategy = DirectUploadStrategy(base_url="https://storage.example", token="session-token")

        url = PhotoUploader([strategy, StorageFallbackStrategy(public_base_url=self.site)]).upload(self.image, "task-1")

        self.assertTrue(url.startswith("https://storage.example/object/public/task-photos/task_verification/task-1/"))
        self.assertEqual(put.call_args.kwargs["headers"]["Authorization"], "Bearer session-token")
        self.assertEqual(put.call_args.kwargs["data"], b"jpeg-bytes")

    @patch("taskboard.photos.requests.put", side_effect=requests.ConnectionError("connection reset"))
    def test_network_failure_falls_back(self, put):
        strategy = DirectUploadStrategy(base_url="https://storage.example", token="t")

        with self.assertLogs("taskboard.photos", level="WARNING"):
            url = PhotoUploader([strategy, StorageFallbackStrategy(public_base_url=self.site)]).upload(
                self.image, "task-1"
            )

        put.assert_called_once()
        self.assertTrue(url.startswith(f"{self.site}/media/task_verification/task-1/"))

    @patch("taskboard.photos.requests.put", side_effect=requests.ConnectionError("connection reset"))
    def test_all_stages_failing(self, put):
        direct = DirectUploadStrategy(base_url="https://storage.example", token="t")

        with self.assertRaises(UploadFailure) as raised:
            PhotoUploader([direct]).upload(self.image, "task-1")
        self.assertEqual(raised.exception.reason, UploadFailure.NETWORK)

        with patch.object(InMemoryStorage, "save", side_effect=OSError("disk full")):
            with self.assertRaises(UploadFailure) as raised:
                PhotoUploader([direct, StorageFallbackStrategy(public_base_url=self.site)]).upload(
                    self.image, "task-1"
                )
        self.assertEqual(raised.exception.reason, UploadFailure.STORAGE)
        self.assertIn("connection reset", raised.exception.message)
        self.assertIn("disk full", raised.exception.message)

    def test_upload_api(self):
        created = self.create_task([self.worker1], requires_photo=True)
        self.login(self.worker1)

        response = self.client.post(f"/api/tasks/{created.task.id}/photos", {"source": "camera", "photo": self.photo()})
        self.assertEqual(response.status_code, 200)
        self.assertTrue(
            response.json()["url"].startswith(f"http://testserver/media/task_verification/{created.task.id}/")
        )

        response = self.client.post(f"/api/tasks/{created.task.id}/photos", {"source": "camera"})
        self.assertEqual(response.status_code, 200)
        self.assertIsNone(response.json()["url"])

    @patch("taskboard.api.PhotoUploader.upload")
    def test_upload_api_requires_an_assignment(self, upload):
        created = self.create_task([self.worker1], requires_photo=True)

        self.login(self.outsider)
        response = self.client.post(f"/api/tasks/{created.task.id}/photos", {"source": "camera", "photo": self.photo()})
        self.assertEqual(response.status_code, 404)

        self.login(self.worker2)
        response = self.client.post(f"/api/tasks/{created.task.id}/photos", {"source": "camera", "photo": self.photo()})
        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json()["error"]["code"], "permission_denied")

        response = self.client.post(f"/api/tasks/{uuid4()}/photos", {"source": "camera", "photo": self.photo()})
        self.assertEqual(response.status_code, 404)

        upload.assert_not_called()

    @override_settings(TASKBOARD_PHOTO_SOURCES=["gallery"])
    def test_upload_api_permission_denied(self):
        created = self.create_task([self.worker1], requires_photo=True)
        self.login(self.worker1)

        response = self.client.post(f"/api/tasks/{created.task.id}/photos", {"source": "camera", "photo": self.photo()})

        self.assertEqual(response.status_code, 403)
        self.assertIn("Camera permission", response.json()["error"]["message"])

    def test_complete_with_photo_api(self):
        created = self.create_task([self.worker1], requires_photo=True)
        self.login(self.worker1)

        response = self.client.post(f"/api/assignments/{created.assignments[0].id}/complete", {
            "source": "gallery",
            "photo": self.photo(),
        })

        self.assertEqual(response.status_code, 200)
        assignment = Assignment.objects.get(id=created.assignments[0].id)
        self.assertTrue(assignment.completed)
        self.assertTrue(
            assignment.verification_photo_url.startswith(f"http://testserver/media/task_verification/{created.task.id}/")
        )

    @patch("taskboard.api.PhotoUploader.upload")
    def test_completed_assignment_rejects_photo_before_upload(self, upload):
        created = self.create_task([self.worker1], requires_photo=True)
        TaskAssignmentService.complete_assignment(self.ctx(self.worker1), created.assignments[0].id)
        self.login(self.worker1)

        response = self.client.post(f"/api/assignments/{created.assignments[0].id}/complete", {
            "source": "gallery",
            "photo": self.photo(),
        })

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["error"]["code"], "validation_error")
        upload.assert_not_called()


@override_settings(PASSWORD_HASHERS=FAST_HASHERS)
class SeedDataTest(TestCase):

    def test_load_seed_data(self):
        seed_dir = str(settings.BASE_DIR / "seed_data")
        call_command("load_seed_data", dir=seed_dir)
        call_command("load_seed_data", dir=seed_dir)

        self.assertEqual(Business.objects.count(), 2)
        self.assertEqual(Profile.objects.count(), 5)
        self.assertEqual(Task.objects.count(), 2)
        self.assertEqual(Assignment.objects.filter(completed=True).count(), 1)

        casey = Profile.objects.get(email="casey@bakery.test")
        tasks, assignments = TaskAssignmentService.fetch_visible_tasks(SessionContext.from_profile(casey))
        self.assertEqual(len(tasks), 2)
        self.assertEqual(len(assignments), 3)
        self.assertTrue(self.client.login(username="casey@bakery.test", password="changeme"))

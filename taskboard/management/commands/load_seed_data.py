import json
from pathlib import Path

from django.contrib.auth import get_user_model
from django.core.management.base import BaseCommand, CommandError
from django.db import transaction

from taskboard.models import Assignment, Business, Profile, Task


class Command(BaseCommand):
    help = "Load demo seed data from JSON files in seed_data/."

    def add_arguments(self, parser):
        parser.add_argument(
            "--truncate",
            action="store_true",
            help="Delete existing data before loading.",
        )
        parser.add_argument(
            "--dir",
            default="seed_data",
            help="Directory containing JSON files (default: seed_data).",
        )

    @transaction.atomic
    def handle(self, *args, **options):
        base_dir = Path(options["dir"]).resolve()
        User = get_user_model()

        # 1. optional clean
        if options["truncate"]:
            self.stdout.write("Deleting existing records…")
            Assignment.objects.all().delete()
            Task.objects.all().delete()
            Profile.objects.all().delete()
            Business.objects.all().delete()
            User.objects.filter(is_superuser=False).delete()

        # 2. load json helpers
        def load_json(name):
            path = base_dir / f"{name}.json"
            if not path.exists():
                raise CommandError(f"{path} not found")
            with open(path) as f:
                return json.load(f)

        businesses = load_json("businesses")
        users      = load_json("users")
        tasks      = load_json("tasks")
        assigns    = load_json("assignments")

        # 3. create records
        Business.objects.bulk_create(
            [Business(id=b["id"], name=b["name"], industry=b["industry"]) for b in businesses],
            ignore_conflicts=True,
        )
        for u in users:
            auth_user, created = User.objects.get_or_create(username=u["email"], defaults={"email": u["email"]})
            if created:
                auth_user.set_password(u.get("password", "changeme"))
                auth_user.save(update_fields=["password"])
            Profile.objects.update_or_create(
                id=u["id"],
                defaults={
                    "auth_user": auth_user,
                    "email": u["email"],
                    "first_name": u["first_name"],
                    "last_name": u["last_name"],
                    "role": u["role"],
                    "business_id": u.get("business_id"),
                },
            )
        Task.objects.bulk_create(
            [
                Task(
                    id=t["id"],
                    title=t["title"],
                    description=t["description"],
                    due_date=t["due_date"],
                    requires_photo=t.get("requires_photo", False),
                    created_by_id=t["created_by"],
                    business_id=t["business_id"],
                )
                for t in tasks
            ],
            ignore_conflicts=True,
        )
        Assignment.objects.bulk_create(
            [
                Assignment(
                    task_id=a["task_id"],
                    user_id=a["user_id"],
                    completed=a.get("completed", False),
                    completed_at=a.get("completed_at"),
                )
                for a in assigns
            ],
            ignore_conflicts=True,
        )

        self.stdout.write(self.style.SUCCESS("✅  Seed data loaded successfully"))

from django.core.management.base import BaseCommand

from taskboard.services import PerformanceService


class Command(BaseCommand):
    help = "Store this week's completion figures for every member."

    def handle(self, *args, **options):
        records = PerformanceService.snapshot_week()
        self.stdout.write(self.style.SUCCESS(f"Stored {len(records)} performance snapshots"))

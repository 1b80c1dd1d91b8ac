from django.apps import AppConfig


class TaskboardConfig(AppConfig):
    name = "taskboard"
    default_auto_field = "django.db.models.BigAutoField"

    def ready(self):
        from . import identity  # noqa: F401  registers auth signal receivers

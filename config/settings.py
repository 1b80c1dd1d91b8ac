import os
from pathlib import Path

from dotenv import load_dotenv

BASE_DIR = Path(__file__).resolve().parent.parent

load_dotenv(BASE_DIR / ".env")


def env_bool(name: str, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def env_list(name: str, default: str = "") -> list[str]:
    return [item.strip() for item in os.environ.get(name, default).split(",") if item.strip()]


SECRET_KEY = os.environ.get("DJANGO_SECRET_KEY", "insecure-development-key")
DEBUG = env_bool("DJANGO_DEBUG")
ALLOWED_HOSTS = env_list("DJANGO_ALLOWED_HOSTS", "localhost,127.0.0.1,testserver")

INSTALLED_APPS = [
    "django.contrib.auth",
    "django.contrib.contenttypes",
    "django.contrib.sessions",
    "taskboard.apps.TaskboardConfig",
]

MIDDLEWARE = [
    "django.middleware.security.SecurityMiddleware",
    "django.contrib.sessions.middleware.SessionMiddleware",
    "django.middleware.common.CommonMiddleware",
    "django.middleware.csrf.CsrfViewMiddleware",
    "django.contrib.auth.middleware.AuthenticationMiddleware",
]

ROOT_URLCONF = "config.urls"

DATABASES = {
    "default": {
        "ENGINE": "django.db.backends.sqlite3",
        "NAME": os.environ.get("DATABASE_PATH", str(BASE_DIR / "db.sqlite3")),
    }
}

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

USE_TZ = True
TIME_ZONE = "UTC"

MEDIA_ROOT = os.environ.get("MEDIA_ROOT", str(BASE_DIR / "media"))
MEDIA_URL = "/media/"

STORAGES = {
    "default": {"BACKEND": "django.core.files.storage.FileSystemStorage"},
}

# Verification photos
TASKBOARD_STORAGE_URL = os.environ.get("TASKBOARD_STORAGE_URL", "")
TASKBOARD_STORAGE_TOKEN = os.environ.get("TASKBOARD_STORAGE_TOKEN", "")
TASKBOARD_STORAGE_BUCKET = os.environ.get("TASKBOARD_STORAGE_BUCKET", "task-photos")
TASKBOARD_STORAGE_TIMEOUT = float(os.environ.get("TASKBOARD_STORAGE_TIMEOUT", "30"))
TASKBOARD_PHOTO_STORAGE = os.environ.get("TASKBOARD_PHOTO_STORAGE", "default")
# Prefix for relative storage URLs; defaults to the requesting host
TASKBOARD_PUBLIC_BASE_URL = os.environ.get("TASKBOARD_PUBLIC_BASE_URL", "")
TASKBOARD_PHOTO_SOURCES = env_list("TASKBOARD_PHOTO_SOURCES", "camera,gallery")

# When true, a failed assignee insert rolls the whole task back.
TASKBOARD_ATOMIC_TASK_CREATION = env_bool("TASKBOARD_ATOMIC_TASK_CREATION")

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "simple": {"format": "%(asctime)s %(levelname)s %(name)s: %(message)s"},
    },
    "handlers": {
        "console": {"class": "logging.StreamHandler", "formatter": "simple"},
    },
    "loggers": {
        "taskboard": {
            "handlers": ["console"],
            "level": os.environ.get("TASKBOARD_LOG_LEVEL", "INFO"),
        },
    },
}

import logging
import time
from dataclasses import dataclass
from enum import Enum
from urllib.parse import urljoin, urlsplit

import requests
from django.conf import settings
from django.core.files.base import ContentFile
from django.core.files.storage import storages

from .errors import PermissionDenied, UploadFailure, ValidationError

logger = logging.getLogger(__name__)


class ImageSource(str, Enum):
    CAMERA = "camera"
    GALLERY = "gallery"


PERMISSION_MESSAGES = {
    ImageSource.CAMERA: "Camera permission is required to take a verification photo",
    ImageSource.GALLERY: "Gallery permission is required to select a verification photo",
}


@dataclass(frozen=True)
class LocalImage:
    name: str
    content: bytes
    content_type: str = "image/jpeg"


class UploadedImagePicker:
    """Image picker backed by a multipart upload from the mobile client."""

    def __init__(self, uploaded_file=None, allowed_sources=None):
        self.uploaded_file = uploaded_file
        if allowed_sources is None:
            allowed_sources = settings.TASKBOARD_PHOTO_SOURCES
        self.allowed_sources = set(allowed_sources)

    def request_permission(self, source: ImageSource) -> bool:
        return source.value in self.allowed_sources

    def pick(self, source: ImageSource) -> LocalImage | None:
        if self.uploaded_file is None:
            return None
        return LocalImage(
            name=self.uploaded_file.name,
            content=self.uploaded_file.read(),
            content_type=self.uploaded_file.content_type or "image/jpeg",
        )


def acquire_image(source, picker) -> LocalImage | None:
    """Returns the picked image, or None when the member cancelled."""
    try:
        source = ImageSource(source)
    except ValueError as e:
        raise ValidationError(f"Unknown image source: {source}") from e
    if not picker.request_permission(source):
        raise PermissionDenied(PERMISSION_MESSAGES[source])
    image = picker.pick(source)
    if image is None:
        logger.info("No image picked from %s", source.value)
    return image


@dataclass(frozen=True)
class UploadResult:
    url: str | None = None
    error: str | None = None


class DirectUploadStrategy:
    """PUT the raw bytes straight to the object store with a bearer token."""

    stage = UploadFailure.NETWORK

    def __init__(self, base_url=None, token=None, bucket=None, timeout=None):
        self.base_url = (base_url if base_url is not None else settings.TASKBOARD_STORAGE_URL).rstrip("/")
        self.token = token if token is not None else settings.TASKBOARD_STORAGE_TOKEN
        self.bucket = bucket or settings.TASKBOARD_STORAGE_BUCKET
        self.timeout = timeout or settings.TASKBOARD_STORAGE_TIMEOUT

    @property
    def configured(self) -> bool:
        return bool(self.base_url)

    def upload(self, image: LocalImage, key: str) -> UploadResult:
        if not self.configured:
            return UploadResult(error="direct upload is not configured")

        try:
            response = requests.put(
                f"{self.base_url}/object/{self.bucket}/{key}",
                data=image.content,
                headers={
                    "Authorization": f"Bearer {self.token}",
                    "Content-Type": image.content_type,
                },
                timeout=self.timeout,
            )
            response.raise_for_status()
        except requests.RequestException as e:
            return UploadResult(error=f"direct upload failed: {e}")

        return UploadResult(url=f"{self.base_url}/object/public/{self.bucket}/{key}")


class StorageFallbackStrategy:
    """Save the image with a Django storage backend and link to it by absolute URL."""

    stage = UploadFailure.STORAGE
    configured = True

    def __init__(self, alias=None, public_base_url=None):
        self.alias = alias or settings.TASKBOARD_PHOTO_STORAGE
        self.public_base_url = public_base_url or settings.TASKBOARD_PUBLIC_BASE_URL

    def upload(self, image: LocalImage, key: str) -> UploadResult:
        storage = storages[self.alias]
        try:
            name = storage.save(key, ContentFile(image.content))
            url = storage.url(name)
        except (OSError, NotImplementedError) as e:
            return UploadResult(error=f"storage upload failed: {e}")

        if self.public_base_url:
            url = urljoin(self.public_base_url, url)
        if not urlsplit(url).netloc:
            storage.delete(name)
            return UploadResult(error=f"storage returned a relative URL {url} and no public base URL is set")
        return UploadResult(url=url)


class PhotoUploader:
    """Tries each configured upload strategy in order until one yields a public URL."""

    def __init__(self, strategies=None, public_base_url=None):
        self.strategies = strategies if strategies is not None else [
            DirectUploadStrategy(),
            StorageFallbackStrategy(public_base_url=public_base_url),
        ]

    @staticmethod
    def build_key(task_id) -> str:
        return f"task_verification/{task_id}/{int(time.time() * 1000)}"

    def upload(self, image: LocalImage, task_id) -> str:
        key = self.build_key(task_id)
        errors = []
        reason = UploadFailure.NETWORK

        started = time.monotonic()
        for strategy in self.strategies:
            if not strategy.configured:
                logger.debug("Skipping unconfigured upload stage %s", strategy.stage)
                continue
            result = strategy.upload(image, key)
            if result.url:
                logger.info(
                    "Uploaded verification photo for task %s in %dms",
                    task_id, (time.monotonic() - started) * 1000
                )
                return result.url
            logger.warning("Upload stage %s failed for task %s: %s", strategy.stage, task_id, result.error)
            errors.append(result.error)
            reason = strategy.stage

        raise UploadFailure(f"Error uploading photo: {'; '.join(errors) or 'no upload strategy'}", reason=reason)

import logging
import uuid
from dataclasses import dataclass

from django.contrib.auth.signals import user_logged_in, user_logged_out
from django.dispatch import receiver
from django.http import HttpRequest

from .errors import ProfileIntegrityError, ProfileNotFound
from .models import Profile, Role, has_manager_capability, is_admin

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SessionContext:
    """Identity of the signed-in member, passed explicitly into every service call."""
    auth_id: int
    internal_user_id: uuid.UUID
    role: Role
    business_id: uuid.UUID | None
    first_name: str = ""
    last_name: str = ""

    @property
    def is_manager(self) -> bool:
        return has_manager_capability(self.role)

    @property
    def is_admin(self) -> bool:
        return is_admin(self.role)

    @classmethod
    def from_profile(cls, profile: Profile) -> "SessionContext":
        return cls(
            auth_id=profile.auth_user_id,
            internal_user_id=profile.id,
            role=Role(profile.role),
            business_id=profile.business_id,
            first_name=profile.first_name,
            last_name=profile.last_name,
        )

    def to_session(self) -> dict:
        return {
            "auth_id": self.auth_id,
            "internal_user_id": str(self.internal_user_id),
            "role": self.role.value,
            "business_id": str(self.business_id) if self.business_id else None,
            "first_name": self.first_name,
            "last_name": self.last_name,
        }

    @classmethod
    def from_session(cls, data: dict) -> "SessionContext":
        return cls(
            auth_id=data["auth_id"],
            internal_user_id=uuid.UUID(data["internal_user_id"]),
            role=Role(data["role"]),
            business_id=uuid.UUID(data["business_id"]) if data["business_id"] else None,
            first_name=data.get("first_name", ""),
            last_name=data.get("last_name", ""),
        )


class IdentityResolver:
    """Maps an auth principal to its domain profile and caches it per session."""

    SESSION_KEY = "taskboard.identity"

    @staticmethod
    def resolve(auth_user) -> SessionContext:
        profiles = list(Profile.objects.filter(auth_user_id=auth_user.pk)[:2])
        if not profiles:
            raise ProfileNotFound()
        if len(profiles) > 1:
            logger.error("Multiple profiles found for auth user %s", auth_user.pk)
            raise ProfileIntegrityError()
        return SessionContext.from_profile(profiles[0])

    @classmethod
    def for_request(cls, request: HttpRequest) -> SessionContext:
        cached = request.session.get(cls.SESSION_KEY)
        if cached and cached.get("auth_id") == request.user.pk:
            return SessionContext.from_session(cached)

        context = cls.resolve(request.user)
        request.session[cls.SESSION_KEY] = context.to_session()
        return context

    @classmethod
    def forget(cls, request: HttpRequest) -> None:
        if hasattr(request, "session"):
            request.session.pop(cls.SESSION_KEY, None)


@receiver(user_logged_in)
def cache_identity_on_login(sender, request, user, **kwargs):
    IdentityResolver.forget(request)
    try:
        context = IdentityResolver.resolve(user)
    except ProfileNotFound:
        logger.warning("Signed in auth user %s has no profile yet", user.pk)
        return
    request.session[IdentityResolver.SESSION_KEY] = context.to_session()


@receiver(user_logged_out)
def drop_identity_on_logout(sender, request, user, **kwargs):
    IdentityResolver.forget(request)

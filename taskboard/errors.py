class TaskboardError(Exception):
    """Base class for failures surfaced to API callers as ``{data, error}``."""
    status_code = 400
    code = "error"
    retryable = False
    default_message = "Request failed"

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def as_dict(self) -> dict:
        return {"code": self.code, "message": self.message, "retryable": self.retryable}


class ProfileNotFound(TaskboardError):
    status_code = 404
    code = "profile_not_found"
    retryable = True
    default_message = "User profile not found. Please contact an administrator."


class ProfileIntegrityError(TaskboardError):
    status_code = 500
    code = "profile_error"
    default_message = "Failed to load user profile"


class ValidationError(TaskboardError):
    code = "validation_error"
    default_message = "Please fill all required fields"


class PermissionDenied(TaskboardError):
    status_code = 403
    code = "permission_denied"
    default_message = "Permission denied"


class CrossBusinessError(TaskboardError):
    status_code = 403
    code = "cross_business"
    default_message = "You can only manage users in your business"


class ImmutableAdminError(TaskboardError):
    status_code = 403
    code = "immutable_admin"
    default_message = "Admin roles cannot be changed"


class NotFoundError(TaskboardError):
    status_code = 404
    code = "not_found"
    default_message = "Not found"


class UploadFailure(TaskboardError):
    status_code = 502
    code = "upload_failed"
    retryable = True
    default_message = "Failed to upload the photo"

    NETWORK = "network"
    STORAGE = "storage"

    def __init__(self, message: str | None = None, reason: str = NETWORK):
        self.reason = reason
        super().__init__(message)

    def as_dict(self) -> dict:
        data = super().as_dict()
        data["reason"] = self.reason
        return data

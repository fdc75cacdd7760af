"""Error taxonomy shared by the quiz engine, the review workflow and the API."""

from fastapi import status


class PortalError(Exception):
    """Base class. ``code`` is a stable machine-readable identifier."""

    status_code = status.HTTP_400_BAD_REQUEST
    default_code = "error"

    def __init__(self, message: str, code: str | None = None):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code


class ValidationError(PortalError):
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    default_code = "validation_error"


class PermissionDenied(PortalError):
    status_code = status.HTTP_403_FORBIDDEN
    default_code = "permission_denied"


class NotFound(PortalError):
    status_code = status.HTTP_404_NOT_FOUND
    default_code = "not_found"


class ConflictError(PortalError):
    status_code = status.HTTP_409_CONFLICT
    default_code = "conflict"


class UpstreamError(PortalError):
    status_code = status.HTTP_502_BAD_GATEWAY
    default_code = "upstream_error"


class NotificationUnavailable(PortalError):
    """Advisory: the notifier looks down. Never blocks a decision on its own."""

    status_code = status.HTTP_409_CONFLICT
    default_code = "notification_unavailable"

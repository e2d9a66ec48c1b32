"""Errors raised by the notification delivery core."""


class NotificationError(Exception):
    """Base class for notification delivery failures."""


class InvalidTokenFormat(NotificationError):
    """Push token does not match the provider's token format."""

    def __init__(self, token: str):
        self.token = token
        super().__init__(f"Push token {token!r} is not a valid push token")


class UserNotFound(NotificationError):
    """No teacher/student record exists for the given identity."""

    def __init__(self, user_id, role):
        self.user_id = user_id
        self.role = role
        super().__init__(f"{role} {user_id} not found")


class ProviderBatchFailure(NotificationError):
    """A whole batch was rejected or could not be submitted to the push provider."""


class ResolutionFailure(NotificationError):
    """The target specification cannot be resolved into an audience."""

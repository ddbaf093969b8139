"""Error taxonomy for guild lifecycle operations.

Every error carries a stable ``code`` that the HTTP layer maps to a status
code. Remote platform failures are raised as ``RemoteAPIError`` from
``guild_control.providers.machines_client`` and are not part of this
hierarchy, so callers can tell "the platform said no" apart from "the
request was not allowed".
"""

from __future__ import annotations


class GuildControlError(Exception):
    """Base class for orchestrator errors surfaced to callers."""

    code = "internal"

    def __init__(self, message: str = "") -> None:
        self.message = message or self.__class__.__name__
        super().__init__(self.message)


class UnauthenticatedError(GuildControlError):
    """No caller identity on a user-facing request."""

    code = "unauthenticated"


class NotFoundError(GuildControlError):
    code = "not_found"


class PermissionDeniedError(GuildControlError):
    code = "permission_denied"


class FailedPreconditionError(GuildControlError):
    """Missing config, inactive subscription, or a guild in the wrong state."""

    code = "failed_precondition"


class ResourceExhaustedError(GuildControlError):
    """No free-tier capacity left."""

    code = "resource_exhausted"


class AlreadyExistsError(GuildControlError):
    code = "already_exists"


class InvalidArgumentError(GuildControlError):
    code = "invalid_argument"


class InternalError(GuildControlError):
    code = "internal"


def describe_error(exc: BaseException) -> str:
    """Return the human-readable part of an exception for ``error_message``."""
    message = getattr(exc, "message", None)
    if isinstance(message, str) and message:
        return message
    return str(exc) or exc.__class__.__name__

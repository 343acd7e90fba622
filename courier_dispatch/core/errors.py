"""
Dispatch Error Taxonomy

Every business failure raised by the services derives from DispatchError.
The HTTP layer maps them to ErrorResponse bodies; the live channel turns
them into an ``error`` event on the sending connection.

Version: 1.0.0
"""

from typing import Any, Optional


class DispatchError(Exception):
    """Base class for expected, client-visible failures."""

    status_code: int = 400
    error_code: str = "dispatch_error"

    def __init__(self, message: str, detail: Optional[str] = None):
        self.message = message
        self.detail = detail
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": False,
            "error": self.error_code,
            "detail": self.detail or self.message,
        }


class OrderAlreadyTakenError(DispatchError):
    """The conditional accept/assign matched zero rows. Never retried."""

    status_code = 409
    error_code = "already_taken"

    def __init__(self, order_id: int):
        self.order_id = order_id
        super().__init__(f"Order #{order_id} has already been taken by another courier")


class InvalidTransitionError(DispatchError):
    """The order exists but is not in a state that allows the action."""

    status_code = 409
    error_code = "invalid_state"


class AuthorizationError(DispatchError):
    """The actor does not own the resource or lacks the role."""

    status_code = 403
    error_code = "forbidden"


class NotFoundError(DispatchError):
    status_code = 404
    error_code = "not_found"


class SessionInvalidError(DispatchError):
    """Token expired, superseded by a newer login, or logged out."""

    status_code = 401
    error_code = "session_expired"

    def __init__(self, message: str = "Session expired, please log in again"):
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        body = super().to_dict()
        body["forceLogout"] = True
        return body


class AuthenticationError(DispatchError):
    status_code = 401
    error_code = "invalid_credentials"

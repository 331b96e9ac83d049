"""Errors raised by the marketplace API.

Each error knows the HTTP status it maps to; ``app.py`` registers a handler
that turns them into ``{"error": ...}`` JSON responses.
"""


class MarketplaceError(Exception):
    status_code = 400
    default_message = "Bad request"

    def __init__(self, message=None, details=None):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message
        self.details = details

    def to_dict(self):
        payload = {"error": self.message}
        if self.details is not None:
            payload["details"] = self.details
        return payload


class Unauthenticated(MarketplaceError):
    status_code = 401
    default_message = "Unauthorized"


class Forbidden(MarketplaceError):
    status_code = 403
    default_message = "Forbidden"


class NotFound(MarketplaceError):
    status_code = 404
    default_message = "Not found"


class Conflict(MarketplaceError):
    """Invalid state transition (offer not pending, listing not active)."""

    status_code = 400
    default_message = "Invalid state transition"


class ValidationFailed(MarketplaceError):
    status_code = 400
    default_message = "Invalid request data"

from __future__ import annotations

"""
EMBED_SUMMARY: Typed service errors mapped to HTTP statuses by the exception handlers.
EMBED_TAGS: errors, validation, authorization, not found, dependency
"""


class InsightsError(Exception):
    status_code = 500

    def __init__(self, message: str = "") -> None:
        super().__init__(message)
        self.message = message


class ValidationError(InsightsError):
    """Missing field, unknown enum value or malformed date range."""

    status_code = 400


class AuthenticationError(InsightsError):
    status_code = 401


class AuthorizationError(InsightsError):
    """Caller lacks the required role."""

    status_code = 403


class NotFoundError(InsightsError):
    status_code = 404


class DependencyError(InsightsError):
    """The database or a collaborator failed."""

    status_code = 500


class RateLimitError(InsightsError):
    status_code = 429

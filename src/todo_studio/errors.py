"""Error taxonomy shared by services, integrations and the HTTP layer.

Every domain error carries a machine-readable ``code`` (the taxonomy tag
rendered in API error envelopes) and the HTTP ``status_code`` it maps to.
Messages are safe to show to end users; provider errors additionally keep
the provider's raw error text in ``detail`` for diagnostics.
"""

from __future__ import annotations


class TodoStudioError(Exception):
    """Base class for all domain errors."""

    code = "internal_error"
    status_code = 500

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message()
        super().__init__(self.message)

    @classmethod
    def default_message(cls) -> str:
        return "Unexpected error"


class NotFoundOrForbidden(TodoStudioError):
    """Entity is absent or the principal has no relationship to it.

    The two cases are deliberately indistinguishable to callers.
    """

    code = "not_found"
    status_code = 404

    @classmethod
    def default_message(cls) -> str:
        return "Not found"


class InsufficientRole(TodoStudioError):
    """The principal can see the entity but its role is too low for the operation."""

    code = "insufficient_role"
    status_code = 403

    @classmethod
    def default_message(cls) -> str:
        return "You do not have permission to perform this action"


class ConfigurationError(TodoStudioError):
    """Missing or invalid key material, provider credentials or config values."""

    code = "configuration_error"
    status_code = 500


class NotConnectedError(TodoStudioError):
    """No calendar integration connection exists for the user."""

    code = "not_connected"
    status_code = 409

    @classmethod
    def default_message(cls) -> str:
        return "Google Calendar is not connected"


class MissingRefreshTokenError(TodoStudioError):
    """The stored connection has no refresh token; the user must reconnect."""

    code = "reconnect_required"
    status_code = 409

    @classmethod
    def default_message(cls) -> str:
        return "Google refresh token is missing. Reconnect your account"


class ProviderError(TodoStudioError):
    """Base for errors returned by the external calendar provider."""

    status_code = 502

    def __init__(
        self,
        message: str,
        *,
        detail: str | None = None,
        provider_status: int | None = None,
    ) -> None:
        self.detail = detail
        self.provider_status = provider_status
        super().__init__(message)


class ProviderAuthError(ProviderError):
    """OAuth token exchange, refresh or user-info call was rejected."""

    code = "provider_auth_error"


class ProviderApiError(ProviderError):
    """A calendar REST call was rejected or returned an unexpected payload."""

    code = "provider_api_error"


class ValidationError(TodoStudioError):
    """Malformed input at a boundary; raised before any state change."""

    code = "validation_error"
    status_code = 400


class ConflictError(TodoStudioError):
    """A uniqueness rule would be violated (duplicate list name, owner invite)."""

    code = "conflict"
    status_code = 409


class RateLimitedError(TodoStudioError):
    """The caller exceeded a rate-limit window."""

    code = "rate_limited"
    status_code = 429

    def __init__(self, retry_after_seconds: int) -> None:
        self.retry_after_seconds = retry_after_seconds
        super().__init__(f"Too many requests. Retry in {retry_after_seconds}s")


class AuthenticationRequired(TodoStudioError):
    """The request carries no (known) principal."""

    code = "unauthorized"
    status_code = 401

    @classmethod
    def default_message(cls) -> str:
        return "Authentication required"


class FeatureUnavailableError(TodoStudioError):
    """The endpoint exists but its body is not served by this deployment."""

    code = "not_implemented"
    status_code = 501

"""hookrelay exception hierarchy.

Provides structured exceptions for error handling throughout the codebase.
All exceptions inherit from RelayError for easy catching.

Registry and API errors propagate synchronously to the caller. Delivery
errors are raised inside the dispatcher, classified, and recorded on the
delivery record; they never escape a worker.
"""

from __future__ import annotations


class RelayError(Exception):
    """Base exception for all hookrelay errors.

    Attributes:
        message: Human-readable error description.
        code: Machine-readable error code for API responses.
    """

    code: str = "relay_error"

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)

    def to_dict(self) -> dict[str, object]:
        """Convert exception to API-friendly dictionary."""
        return {
            "error": {
                "code": self.code,
                "message": self.message,
            }
        }


class ValidationError(RelayError):
    """Invalid input provided.

    Raised synchronously at registration or broadcast time. Never retried.

    Attributes:
        field: The field that failed validation.
        message: Description of the validation failure.
    """

    code: str = "validation_error"

    def __init__(self, field: str, message: str) -> None:
        self.field = field
        super().__init__(f"{field}: {message}")

    def to_dict(self) -> dict[str, object]:
        """Convert exception to API-friendly dictionary."""
        return {
            "error": {
                "code": self.code,
                "field": self.field,
                "message": self.message,
            }
        }


class InvalidURLError(ValidationError):
    """Endpoint URL rejected.

    Raised when the scheme is not http/https, or the host points at a
    private, loopback or otherwise non-public address that is not allow-listed.
    """

    code: str = "invalid_url"

    def __init__(self, message: str) -> None:
        super().__init__("url", message)


class NotFoundError(RelayError):
    """Resource not found.

    Attributes:
        resource_type: Type of resource (e.g., "endpoint", "delivery").
        resource_id: ID of the missing resource.
    """

    code: str = "not_found"

    def __init__(self, resource_type: str, resource_id: str) -> None:
        self.resource_type = resource_type
        self.resource_id = resource_id
        super().__init__(f"{resource_type} not found: {resource_id}")

    def to_dict(self) -> dict[str, object]:
        """Convert exception to API-friendly dictionary."""
        return {
            "error": {
                "code": self.code,
                "resource_type": self.resource_type,
                "resource_id": self.resource_id,
                "message": self.message,
            }
        }


class StorageError(RelayError):
    """Storage operation failed."""

    code: str = "storage_error"


class ConfigurationError(RelayError):
    """Required configuration is missing or invalid."""

    code: str = "configuration_error"


class AuthenticationError(RelayError):
    """Management API credentials are invalid or missing."""

    code: str = "authentication_error"


class DeliveryError(RelayError):
    """Base class for outcomes of a single HTTP delivery attempt.

    Attributes:
        response_code: HTTP status returned by the endpoint, if any.
        response_body: Raw response text, if any.
    """

    code: str = "delivery_error"

    def __init__(
        self,
        message: str,
        response_code: int | None = None,
        response_body: str | None = None,
    ) -> None:
        self.response_code = response_code
        self.response_body = response_body
        super().__init__(message)

    def to_dict(self) -> dict[str, object]:
        """Convert exception to API-friendly dictionary."""
        return {
            "error": {
                "code": self.code,
                "response_code": self.response_code,
                "message": self.message,
            }
        }


class TransientDeliveryError(DeliveryError):
    """Retryable failure: timeout, connection error, 5xx or 429.

    Attributes:
        retry_after: Seconds requested by the endpoint's Retry-After header.
    """

    code: str = "transient_delivery_error"

    def __init__(
        self,
        message: str,
        response_code: int | None = None,
        response_body: str | None = None,
        retry_after: float | None = None,
    ) -> None:
        self.retry_after = retry_after
        super().__init__(message, response_code=response_code, response_body=response_body)


class PermanentDeliveryError(DeliveryError):
    """Non-retryable rejection by the endpoint (4xx other than 429, or 3xx)."""

    code: str = "permanent_delivery_error"


class ExhaustedRetriesError(DeliveryError):
    """Delivery reached its maximum number of attempts."""

    code: str = "exhausted_retries"

    def __init__(
        self,
        attempts: int,
        last_error: str,
        response_code: int | None = None,
        response_body: str | None = None,
    ) -> None:
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"Max attempts exceeded after {attempts} attempts: {last_error}",
            response_code=response_code,
            response_body=response_body,
        )

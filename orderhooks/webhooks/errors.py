"""Error types for the webhook delivery engine.

Exception Hierarchy:
    WebhookError (base)
    ├── ValidationError - Malformed subscription input
    ├── NotFoundError - Unknown subscription or delivery
    └── DeliveryError - Outbound delivery failures
        ├── TransientDeliveryError - Network, timeout, 5xx, 429
        └── PermanentDeliveryError - 4xx when client errors are not retried

Management operations raise ValidationError and NotFoundError to the
caller. DeliveryError subclasses never escape the dispatcher; they are
recorded on the delivery.
"""

from typing import Any


class WebhookError(Exception):
    """Base exception for all webhook engine errors.

    Attributes:
        message: Human-readable error message.
        details: Additional error details.
    """

    def __init__(
        self,
        message: str,
        *,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for logging/API responses."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "details": self.details,
        }


class ValidationError(WebhookError):
    """Subscription input was rejected.

    Attributes:
        field: Name of the offending field, if known.
    """

    def __init__(
        self,
        message: str,
        *,
        field: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, details=details)
        self.field = field

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        base = super().to_dict()
        base["field"] = self.field
        return base


class NotFoundError(WebhookError):
    """Referenced subscription or delivery does not exist.

    Attributes:
        resource: Kind of resource ("subscription" or "delivery").
        resource_id: Identifier that was looked up.
    """

    def __init__(
        self,
        resource: str,
        resource_id: str,
        *,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(f"{resource.capitalize()} {resource_id} not found", details=details)
        self.resource = resource
        self.resource_id = resource_id

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        base = super().to_dict()
        base.update({"resource": self.resource, "resource_id": self.resource_id})
        return base


class DeliveryError(WebhookError):
    """A single delivery attempt did not reach a 2xx response.

    Attributes:
        status_code: HTTP status from the receiver, None for transport errors.
        response_body: Truncated response body, if any.
        retryable: Whether the attempt may be retried.
    """

    retryable = True

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        response_body: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, details=details)
        self.status_code = status_code
        self.response_body = response_body

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        base = super().to_dict()
        base.update({"status_code": self.status_code, "retryable": self.retryable})
        return base


class TransientDeliveryError(DeliveryError):
    """Network error, timeout, 5xx or 429 from the receiver."""

    retryable = True


class PermanentDeliveryError(DeliveryError):
    """Client error the receiver is not expected to recover from."""

    retryable = False

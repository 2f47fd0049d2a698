"""Error taxonomy shared by the raffle workflows and the HTTP layer."""

from __future__ import annotations

from typing import Any, Optional


class RaffleError(Exception):
    """Base class for every error the raffle workflows raise on purpose.

    Attributes
    ----------
    message : str
        Human readable reason, safe to show to the caller.
    status_code : int
        HTTP status the web layer answers with.
    code : str
        Stable machine readable identifier.
    details : Optional[dict]
        Extra fields included in the JSON error body.
    """

    status_code = 500
    code = "internal_error"

    def __init__(self, message: str, *, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_json(self) -> dict[str, Any]:
        body: dict[str, Any] = {"error": self.message, "code": self.code}
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(RaffleError, ValueError):
    """Malformed or missing input."""

    status_code = 400
    code = "validation_error"

    def __init__(self, message: str, *, field: Optional[str] = None):
        super().__init__(message, details={"field": field} if field else None)
        self.field = field


class AuthenticationError(RaffleError):
    status_code = 401
    code = "authentication_failed"


class AuthorizationError(RaffleError):
    status_code = 403
    code = "forbidden"


class NotFoundError(RaffleError):
    status_code = 404
    code = "not_found"


class AlreadyClosedError(RaffleError):
    """Raised when closing a raffle that has already been drawn."""

    status_code = 409
    code = "already_closed"


class RaffleClosedError(RaffleError):
    """Raised when issuing tickets for a raffle past its end time."""

    status_code = 409
    code = "raffle_closed"


class PaymentVerificationError(RaffleError):
    """The gateway did not confirm a successful charge."""

    status_code = 402
    code = "payment_not_verified"


class InvalidSignatureError(RaffleError):
    status_code = 400
    code = "invalid_signature"


class PersistenceError(RaffleError):
    """Storing issued tickets failed; nothing was issued."""

    status_code = 500
    code = "persistence_failed"


class ArtifactRenderError(RaffleError):
    """Rendering a ticket artifact failed.

    When raised after persistence the ticket is issued and its document can
    be fetched again.
    """

    status_code = 500
    code = "artifact_render_failed"


class UpstreamUnavailableError(RaffleError):
    status_code = 503
    code = "upstream_unavailable"


class ConfigurationError(RaffleError):
    """Required configuration is missing; the process must not start."""

    code = "configuration_error"


__all__ = [
    "RaffleError",
    "ValidationError",
    "AuthenticationError",
    "AuthorizationError",
    "NotFoundError",
    "AlreadyClosedError",
    "RaffleClosedError",
    "PaymentVerificationError",
    "InvalidSignatureError",
    "PersistenceError",
    "ArtifactRenderError",
    "UpstreamUnavailableError",
    "ConfigurationError",
]

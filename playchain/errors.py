"""
playchain/errors.py - Error taxonomy shared by the services and the API.

Every public service operation either returns a value or raises one of these.
The API maps them onto status codes in api/server.py.
"""

from dataclasses import dataclass


@dataclass
class FieldError:
    """One violated constraint, reported back to the client per field."""

    field: str
    message: str

    def to_dict(self) -> dict[str, str]:
        return {"field": self.field, "message": self.message}


class PlaychainError(Exception):
    """Base class for all playchain errors."""


class ValidationError(PlaychainError, ValueError):
    """Bad input shape or range. Carries field-level detail."""

    def __init__(self, message: str, errors: list[FieldError] | None = None):
        super().__init__(message)
        self.errors = errors or []

    @classmethod
    def for_field(cls, field: str, message: str) -> "ValidationError":
        return cls(message, [FieldError(field, message)])


class NotFoundError(PlaychainError, KeyError):
    """Unknown tournament id, category id, or player address."""

    def __str__(self) -> str:
        # KeyError quotes its argument; keep the plain message
        return str(self.args[0]) if self.args else ""


class CapacityError(PlaychainError):
    """Tournament roster is full."""


class DuplicateError(PlaychainError):
    """Player is already registered for the tournament."""


class GatewayError(PlaychainError, RuntimeError):
    """Chain Gateway call failed (network error, timeout, or contract revert).

    Never retried internally. Callers decide whether to retry.
    """

    def __init__(self, operation: str, cause: Exception | str):
        super().__init__(f"{operation} failed: {cause}")
        self.operation = operation
        self.cause = cause

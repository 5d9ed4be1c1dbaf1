"""Domain error taxonomy.

Every error carries a stable machine-readable ``code`` so callers can branch
on it without string matching the message. Errors are returned inside a
``Result`` by the use cases; they subclass ``Exception`` only so they can be
raised from adapters and rendered with the usual tooling.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, ClassVar

_NORMALIZED_DETAIL_KEYS = ("original_error", "error")


def describe_exception(exc: Any) -> Any:
    """Render an exception as a plain, serializable dict.

    Domain errors keep their code and details so a wrapped failure can still
    be inspected programmatically. Mappings are copied; scalars become a
    ``{"message": ...}`` dict.
    """
    if isinstance(exc, DomainError):
        return {
            "type": type(exc).__name__,
            "message": exc.message,
            "code": exc.code,
            "details": exc.details,
        }
    if isinstance(exc, BaseException):
        return {"type": type(exc).__name__, "message": str(exc)}
    if isinstance(exc, Mapping):
        return {"message": "Non-exception error", **exc}
    return {"message": str(exc)}


class DomainError(Exception):
    code: ClassVar[str] = "DOMAIN_ERROR"

    def __init__(self, message: str, details: Mapping[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        normalized = dict(details or {})
        for key in _NORMALIZED_DETAIL_KEYS:
            if normalized.get(key) is not None:
                normalized[key] = describe_exception(normalized[key])
        self.details: dict[str, Any] = normalized

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details}

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code!r}, message={self.message!r})"


class NotFoundError(DomainError):
    code: ClassVar[str] = "NOT_FOUND"

    def __init__(self, resource: str, identifier: Any, details: Mapping[str, Any] | None = None) -> None:
        identifier = str(identifier)
        super().__init__(
            f"{resource} with identifier '{identifier}' not found",
            {"resource": resource, "identifier": identifier, **(details or {})},
        )
        self.resource = resource
        self.identifier = identifier


class ValidationError(DomainError):
    """Input or business-rule violation, optionally scoped to one field."""

    code: ClassVar[str] = "VALIDATION_ERROR"

    def __init__(
        self,
        message: str,
        field: str | None = None,
        details: Mapping[str, Any] | None = None,
    ) -> None:
        super().__init__(message, {"field": field, **(details or {})})
        self.field = field


class ConflictError(DomainError):
    code: ClassVar[str] = "CONFLICT"

    def __init__(self, resource: str, identifier: Any, details: Mapping[str, Any] | None = None) -> None:
        identifier = str(identifier)
        super().__init__(
            f"{resource} with identifier '{identifier}' already exists",
            {"resource": resource, "identifier": identifier, **(details or {})},
        )
        self.resource = resource
        self.identifier = identifier


class UnauthorizedError(DomainError):
    code: ClassVar[str] = "UNAUTHORIZED"

    def __init__(self, action: str, resource: str | None = None, details: Mapping[str, Any] | None = None) -> None:
        message = f"Not authorized to {action} on {resource}" if resource else f"Not authorized to {action}"
        super().__init__(message, {"action": action, "resource": resource, **(details or {})})
        self.action = action
        self.resource = resource


class InfrastructureError(DomainError):
    """A required adapter or port is missing or misconfigured."""

    code: ClassVar[str] = "INFRASTRUCTURE_ERROR"


class AbortedError(DomainError):
    code: ClassVar[str] = "ABORTED"

    def __init__(self, reason: str, details: Mapping[str, Any] | None = None) -> None:
        super().__init__(f"Use case execution aborted: {reason}", {"reason": reason, **(details or {})})
        self.reason = reason

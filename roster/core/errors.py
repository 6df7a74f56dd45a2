"""Error taxonomy for roster operations.

Every failure the core surfaces to a caller is one of four kinds:

    - ValidationError: a field rule was violated. Raised before the store is
      touched, so nothing needs rolling back.
    - Conflict: a uniqueness rule was violated (group names). If the
      optimistic apply already happened it is rolled back.
    - NotFound: an operation referenced an id that does not exist. Nothing
      is mutated.
    - BackendFailure: the storage backend failed or timed out. The optimistic
      apply is rolled back; retrying is left to the caller.

None of these is fatal; the client stays usable after any of them.
"""

from typing import Any


class RosterError(Exception):
    """Base exception for all roster failures."""

    code = "ROSTER_ERROR"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message}


class ValidationError(RosterError):
    """A request violated one or more field rules."""

    code = "VALIDATION_ERROR"

    def __init__(self, message: str, errors: dict[str, str] | None = None):
        super().__init__(message)
        self.errors = errors or {}

    @classmethod
    def from_pydantic(cls, exc) -> "ValidationError":
        """Build from a pydantic ValidationError, keyed by dotted field path."""
        errors = {}
        for error in exc.errors():
            field = ".".join(str(part) for part in error["loc"]) or "__root__"
            errors.setdefault(field, error["msg"])
        summary = "; ".join(f"{field}: {msg}" for field, msg in errors.items())
        return cls(f"Invalid request: {summary}", errors)

    def to_dict(self) -> dict[str, Any]:
        return {**super().to_dict(), "errors": self.errors}


class Conflict(RosterError):
    """A uniqueness rule would be violated."""

    code = "CONFLICT"


class NotFound(RosterError):
    """A referenced entity does not exist."""

    code = "NOT_FOUND"

    def __init__(self, kind: str, entity_id: str):
        super().__init__(f"{kind} '{entity_id}' not found")
        self.kind = kind
        self.entity_id = entity_id


class BackendFailure(RosterError):
    """The storage backend rejected the request for a non-domain reason or timed out."""

    code = "BACKEND_FAILURE"

    def __init__(self, message: str, operation: str):
        super().__init__(f"Backend {operation} failed: {message}")
        self.operation = operation

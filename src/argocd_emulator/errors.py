# ABOUTME: Error taxonomy for the GitOps reconciliation engine
# ABOUTME: Defines typed engine errors and the CommandResult returned at the command boundary

"""
Engine errors and command results.

=============================================================================
ERROR TAXONOMY
=============================================================================

Every command the engine accepts ends in exactly one of these outcomes:

    ValidationError     malformed name/schedule/URL, duplicate name,
                        unresolved reference. State is unchanged.
    ConflictError       the request collides with current state: a sync is
                        already running, a rollback has nothing to roll back
                        to, a role is still referenced. State is unchanged.
    PolicyDeniedError   a sync window or an RBAC policy blocks the action.
                        The blocking window/policy is named in the error.
    accepted            the command was scheduled. A sync that later fails
                        is still "accepted": the failure is recorded on the
                        SyncOperation and the Application, never raised.

Errors are raised inside the engine and converted to a CommandResult at the
command boundary, so callers never see an exception for a rejected command:

    result = await engine.start_sync("my-app")
    if not result:
        print(result.errors)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


class EngineError(Exception):
    """
    Base class for errors raised inside the engine.

    Mirrors the shape of an Argo CD API error: a short machine code, a human
    message, and optional details.
    """

    kind = "error"

    def __init__(self, message: str, details: str | None = None, code: str | None = None) -> None:
        self.message = message
        self.details = details
        self.code = code or self.kind
        super().__init__(str(self))

    def __str__(self) -> str:
        base = f"{self.message}"
        if self.details:
            base += f" - {self.details}"
        return base


class ValidationError(EngineError):
    """Malformed input or an unresolved reference."""

    kind = "validation"


class NotFoundError(ValidationError):
    """A named entity does not exist."""

    kind = "not_found"


class ConflictError(EngineError):
    """The request conflicts with current engine state."""

    kind = "conflict"


class PolicyDeniedError(EngineError):
    """A sync window or RBAC policy blocks the action."""

    kind = "policy_denied"

    def __init__(
        self,
        message: str,
        details: str | None = None,
        code: str | None = None,
        blocked_by: str | None = None,
    ) -> None:
        self.blocked_by = blocked_by
        super().__init__(message, details, code)


class GeneratorError(EngineError):
    """A generator collaborator (Git, cluster registry) failed."""

    kind = "generator"


@dataclass
class CommandResult:
    """Outcome of a command submitted to the engine."""

    ok: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    kind: str | None = None
    value: Any = None

    def __bool__(self) -> bool:
        return self.ok

    @classmethod
    def accepted(cls, value: Any = None, warnings: list[str] | None = None) -> CommandResult:
        return cls(ok=True, value=value, warnings=list(warnings or []))

    @classmethod
    def rejected(cls, error: EngineError) -> CommandResult:
        errors = getattr(error, "errors", None) or [str(error)]
        return cls(ok=False, errors=list(errors), kind=error.kind)


class AdmissionError(ValidationError):
    """Several validation failures collected for a single entity."""

    def __init__(self, subject: str, errors: list[str]) -> None:
        self.errors = errors
        super().__init__(f"{subject} rejected", "; ".join(errors))

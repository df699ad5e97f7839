"""
Error taxonomy for codesession.

PURPOSE: Caller-facing failures with a stable machine-readable code.
AI CONTEXT: Every error carries ``code`` (an ErrorCode value) and a
human-readable ``message`` so CLI, MCP and web callers branch on the code
instead of matching message text.

TAXONOMY:
- SessionNotFoundError / NoActiveSessionError: nothing to act on
- AlreadyActiveError: start refused, carries the conflicting session
- BudgetExceededError: usage rejected before any write, carries amounts
- UnknownModelError: cost omitted and model not in pricing table
- MissingTokensError: neither a total nor a prompt/completion split given
- InvalidArgumentError: malformed caller input

Transient observer failures (git, filesystem watch) are not represented
here: they are logged and absorbed inside the observers.
"""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .models import Session

__all__ = [
    "ErrorCode",
    "TrackerError",
    "SessionNotFoundError",
    "NoActiveSessionError",
    "AlreadyActiveError",
    "BudgetExceededError",
    "UnknownModelError",
    "MissingTokensError",
    "InvalidArgumentError",
]


class ErrorCode(str, Enum):
    """Stable error codes shared by every caller-facing surface."""

    NOT_FOUND = "session_not_found"
    NO_ACTIVE_SESSION = "no_active_session"
    SESSION_ACTIVE = "session_active"
    BUDGET_EXCEEDED = "budget_exceeded"
    UNKNOWN_MODEL = "unknown_model"
    MISSING_TOKENS = "missing_tokens"
    INVALID_ARGUMENT = "invalid_argument"
    INTERNAL_ERROR = "internal_error"


class TrackerError(Exception):
    """Base class for caller-facing errors."""

    code: ErrorCode = ErrorCode.INTERNAL_ERROR

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def details(self) -> dict[str, Any]:
        """Extra structured fields merged into to_dict()."""
        return {}

    def to_dict(self) -> dict[str, Any]:
        """
        Serialize to the error shape used by CLI --json, MCP and web.

        Returns:
            Dict with 'error' (the code string), 'message' and any
            subclass-specific fields.

        Example:
            >>> NoActiveSessionError().to_dict()
            {'error': 'no_active_session', 'message': 'No active session'}
        """
        result: dict[str, Any] = {"error": self.code.value, "message": self.message}
        result.update(self.details())
        return result


class SessionNotFoundError(TrackerError):
    """Session id does not exist (or is not active when it must be)."""

    code = ErrorCode.NOT_FOUND

    def __init__(self, session_id: int, message: str | None = None) -> None:
        super().__init__(message or f"No session with id {session_id}")
        self.session_id = session_id

    def details(self) -> dict[str, Any]:
        return {"id": self.session_id}


class NoActiveSessionError(TrackerError):
    """No active session could be resolved for the requested scope."""

    code = ErrorCode.NO_ACTIVE_SESSION

    def __init__(self, message: str = "No active session") -> None:
        super().__init__(message)


class AlreadyActiveError(TrackerError):
    """A start was refused because the slot already holds an active session."""

    code = ErrorCode.SESSION_ACTIVE

    def __init__(self, session: Session) -> None:
        super().__init__(f'Session "{session.name}" is already active (id: {session.id})')
        self.session = session

    def details(self) -> dict[str, Any]:
        return {
            "id": self.session.id,
            "active_session": self.session.name,
            "hint": "Use --resume to reattach or --close-stale to auto-close",
        }


class BudgetExceededError(TrackerError):
    """
    AI usage would push the session past its budget ceiling.

    Raised strictly before anything is written, so callers can rely on the
    stored totals being unchanged when they catch it.

    Attributes:
        spent: The total that the rejected event would have produced.
        budget: The configured ceiling.
    """

    code = ErrorCode.BUDGET_EXCEEDED

    def __init__(self, spent: float, budget: float) -> None:
        super().__init__(f"Budget exceeded: spent ${spent:.2f} of ${budget:.2f} limit")
        self.spent = spent
        self.budget = budget

    def details(self) -> dict[str, Any]:
        return {"spent": self.spent, "budget": self.budget}


class UnknownModelError(TrackerError):
    """Cost was omitted and the model has no pricing entry."""

    code = ErrorCode.UNKNOWN_MODEL

    def __init__(self, model: str) -> None:
        super().__init__(
            f'Unknown model "{model}" - provide a cost or use a model from the pricing table'
        )
        self.model = model


class MissingTokensError(TrackerError):
    """Neither a token total nor a prompt/completion split was supplied."""

    code = ErrorCode.MISSING_TOKENS

    def __init__(
        self,
        message: str = "Must provide tokens or prompt_tokens/completion_tokens",
    ) -> None:
        super().__init__(message)


class InvalidArgumentError(TrackerError):
    """Caller supplied a malformed value (empty name, negative tokens...)."""

    code = ErrorCode.INVALID_ARGUMENT

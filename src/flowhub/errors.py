"""Unified exception hierarchy for FlowHub."""

from __future__ import annotations

from typing import Any


class FlowHubError(Exception):
    """Base exception for all FlowHub errors."""


class NotFoundError(FlowHubError, ValueError):
    """A task, notification, or connection does not exist for the owner."""


# Message sources
class SourceError(FlowHubError):
    """Failed to list or fetch items from a message source."""


class SourceAuthError(SourceError):
    """Source credential is expired, revoked, or could not be refreshed."""


# AI providers
class AiProviderError(FlowHubError):
    """AI backend call failed.

    Args:
        message: Human-readable failure description.
        status: HTTP status returned by the backend, when known.
        retryable: Whether the failure is worth retrying with backoff.
    """

    def __init__(self, message: str, status: int | None = None, retryable: bool = False) -> None:
        super().__init__(message)
        self.status = status
        self.retryable = retryable


# Quota
class QuotaExceededError(FlowHubError):
    """Monthly AI task ceiling reached for the owner's plan."""

    def __init__(
        self,
        current_count: int,
        limit: int,
        plan_type: str,
        created_tasks: list[Any] | None = None,
    ) -> None:
        super().__init__(f"AI task limit exceeded ({current_count}/{limit} on {plan_type} plan)")
        self.current_count = current_count
        self.limit = limit
        self.plan_type = plan_type
        self.created_tasks = list(created_tasks or [])

    def to_payload(self) -> dict[str, Any]:
        """Structured body for API callers that prompt an upgrade."""
        return {
            "message": "AI task limit exceeded",
            "error": "PLAN_LIMIT_EXCEEDED",
            "current_count": self.current_count,
            "limit": self.limit,
            "plan_type": self.plan_type,
            "created_task_ids": [getattr(task, "id", task) for task in self.created_tasks],
            "upgrade_required": True,
        }


def is_retryable_message(message: str) -> bool:
    """Return True when an error message signals overload, quota, or rate limiting."""
    lowered = message.lower()
    return "overloaded" in lowered or "quota" in lowered or "rate limit" in lowered

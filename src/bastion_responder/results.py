"""Per-action outcomes and the per-event execution summary."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any


@dataclass(frozen=True)
class ActionOutcome:
    """Result of one action.

    Every handler call produces exactly one of these, whether the handler
    returned normally, raised, or timed out.
    """

    action_name: str
    success: bool
    message: str
    details: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))
    duration_seconds: float = 0.0

    @classmethod
    def succeeded(cls, action_name: str, message: str, **details: Any) -> ActionOutcome:
        return cls(
            action_name=action_name,
            success=True,
            message=message,
            details=MappingProxyType(details),
        )

    @classmethod
    def failed(cls, action_name: str, message: str, **details: Any) -> ActionOutcome:
        return cls(
            action_name=action_name,
            success=False,
            message=message,
            details=MappingProxyType(details),
        )

    def with_duration(self, duration_seconds: float) -> ActionOutcome:
        return ActionOutcome(
            action_name=self.action_name,
            success=self.success,
            message=self.message,
            details=self.details,
            duration_seconds=duration_seconds,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "action": self.action_name,
            "success": self.success,
            "message": self.message,
            "details": dict(self.details),
            "duration_seconds": round(self.duration_seconds, 3),
        }


@dataclass(frozen=True)
class ExecutionSummary:
    """Ordered outcomes of all actions run for one event."""

    outcomes: tuple[ActionOutcome, ...] = ()
    dry_run: bool = False

    @property
    def success_count(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.success)

    @property
    def failure_count(self) -> int:
        return sum(1 for outcome in self.outcomes if not outcome.success)

    @property
    def all_succeeded(self) -> bool:
        """True when every action succeeded (vacuously true when none ran)."""
        return self.failure_count == 0

    def outcome_for(self, action_name: str) -> ActionOutcome | None:
        for outcome in self.outcomes:
            if outcome.action_name == action_name:
                return outcome
        return None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "dry_run": self.dry_run,
            "success_count": self.success_count,
            "failure_count": self.failure_count,
            "outcomes": [outcome.to_dict() for outcome in self.outcomes],
        }

"""Audit trail handler for monitored role changes."""

from __future__ import annotations

from typing import TYPE_CHECKING

from ..results import ActionOutcome
from ..security import log_security_audit_event
from .base import ActionHandler

if TYPE_CHECKING:
    from ..executor import ExecutionContext


class LogRoleChangeHandler(ActionHandler):
    """Write a security audit record for the role change. Never mutates Azure."""

    name = "log-role-change"

    def __init__(self, enabled: bool = True) -> None:
        self._enabled = enabled

    def execute(self, context: ExecutionContext) -> ActionOutcome:
        return self._record(context, result="success")

    def plan(self, context: ExecutionContext) -> ActionOutcome:
        # Logging is side-effect free, so dry runs record the event too
        outcome = self._record(context, result="planned")
        return ActionOutcome.succeeded(
            outcome.action_name, outcome.message, dry_run=True, **outcome.details
        )

    def _record(self, context: ExecutionContext, result: str) -> ActionOutcome:
        event = context.event
        event_type = f"role_{event.change_kind.value}"
        if not self._enabled:
            return ActionOutcome.succeeded(self.name, "Audit logging disabled", logged=False)

        log_security_audit_event(
            event_type=event_type,
            principal_id=event.principal_id,
            target_resource=event.scope,
            action=context.rule.display_name or context.rule.role_id,
            result=result,
            correlation_id=event.correlation_id,
            caller=event.caller,
        )
        return ActionOutcome.succeeded(
            self.name,
            f"Recorded {event_type} for principal {event.principal_id}",
            logged=True,
            event_type=event_type,
        )

"""Outcome reporting for processed role change notifications.

Every notification ends in exactly one of: a rejection, a skip, or an
execution summary. Each is written as a structured log record so that
queries like these work against Log Analytics:
- "Which bastions were created for principal X?"
- "Which revokes left a bastion in place, and why?"
- "Which notifications were dropped as malformed?"
"""

from __future__ import annotations

import logging
import os

from .events import Rejection, RejectionReason, RoleChangeEvent
from .resolver import Skip
from .results import ExecutionSummary

logger = logging.getLogger(__name__)

# Version is set at build time or falls back to dev
RESPONDER_VERSION = os.environ.get("RESPONDER_VERSION", "dev")

# Rejections that are expected noise rather than signs of a broken feed
_QUIET_REJECTIONS = frozenset(
    {RejectionReason.NOT_APPLICABLE, RejectionReason.INCOMPLETE_OPERATION}
)


class OutcomeReporter:
    """Writes one log record per verdict and per action outcome."""

    def __init__(self, version: str = RESPONDER_VERSION) -> None:
        self._version = version

    def report_rejection(self, rejection: Rejection) -> None:
        level = logging.DEBUG if rejection.reason in _QUIET_REJECTIONS else logging.INFO
        logger.log(
            level,
            "Notification rejected",
            extra={
                "correlation_id": rejection.correlation_id,
                "rejection_reason": rejection.reason.value,
                "detail": rejection.message,
                "responder_version": self._version,
            },
        )

    def report_skip(self, event: RoleChangeEvent, skip: Skip) -> None:
        logger.info(
            "Role change skipped",
            extra={
                **event.log_fields(),
                "skip_reason": skip.reason.value,
                "detail": skip.message,
                "responder_version": self._version,
            },
        )

    def report_summary(self, event: RoleChangeEvent, summary: ExecutionSummary) -> None:
        """Log each action outcome, then the summary for the event.

        The summary is logged at WARNING when any action failed.
        """
        fields = event.log_fields()

        for outcome in summary.outcomes:
            logger.log(
                logging.INFO if outcome.success else logging.ERROR,
                "Action outcome",
                extra={
                    **fields,
                    "action": outcome.action_name,
                    "success": outcome.success,
                    "detail": outcome.message,
                    "details": dict(outcome.details),
                    "duration_seconds": round(outcome.duration_seconds, 3),
                    "dry_run": summary.dry_run,
                },
            )

        logger.log(
            logging.INFO if summary.all_succeeded else logging.WARNING,
            "Role change processed",
            extra={
                **fields,
                "summary": summary.to_dict(),
                "success_count": summary.success_count,
                "failure_count": summary.failure_count,
                "dry_run": summary.dry_run,
                "responder_version": self._version,
            },
        )


# Global singleton for outcome reporting
_outcome_reporter: OutcomeReporter | None = None


def get_outcome_reporter() -> OutcomeReporter:
    """Get the global outcome reporter instance."""
    global _outcome_reporter
    if _outcome_reporter is None:
        _outcome_reporter = OutcomeReporter()
    return _outcome_reporter

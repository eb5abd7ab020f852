"""End-to-end processing of role change notifications.

One notification flows through:

    split_notification -> normalize -> resolve -> ActionExecutor -> OutcomeReporter

Rejections and skips are terminal values. A notification whose actions fail
is still COMPLETED: failures live in the ExecutionSummary, never in
exceptions, so the delivery is acknowledged and not redelivered.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any

from .config import Config, SecurityConfig
from .events import Rejection, RoleChangeEvent
from .executor import ActionExecutor, ExecutionContext
from .handlers import HandlerRegistry
from .handlers.audit import LogRoleChangeHandler
from .handlers.bastion import CleanupBastionHandler, CreateBastionHandler
from .network import BastionNetwork
from .normalizer import normalize, split_notification
from .registry import Registry, load_registry_file
from .reporter import OutcomeReporter, get_outcome_reporter
from .resolver import Skip, resolve
from .results import ExecutionSummary
from .security import get_managed_identity_credential

logger = logging.getLogger(__name__)

# Action names the role-action document may reference
BUILTIN_ACTIONS = frozenset(
    {CreateBastionHandler.name, CleanupBastionHandler.name, LogRoleChangeHandler.name}
)


class ProcessingStatus(str, Enum):
    """Terminal state of one processed notification."""

    REJECTED = "rejected"
    SKIPPED = "skipped"
    COMPLETED = "completed"


@dataclass(frozen=True)
class ProcessingResult:
    """What happened to one notification."""

    status: ProcessingStatus
    correlation_id: str | None = None
    event: RoleChangeEvent | None = None
    rejection: Rejection | None = None
    skip: Skip | None = None
    summary: ExecutionSummary | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result: dict[str, Any] = {
            "status": self.status.value,
            "correlation_id": self.correlation_id,
        }
        if self.rejection is not None:
            result["reason"] = self.rejection.reason.value
            result["message"] = self.rejection.message
        if self.skip is not None:
            result["reason"] = self.skip.reason.value
            result["message"] = self.skip.message
        if self.summary is not None:
            result["summary"] = self.summary.to_dict()
        return result


def build_handler_registry(
    network: BastionNetwork, security: SecurityConfig | None = None
) -> HandlerRegistry:
    """Register the built-in action handlers."""
    security = security or SecurityConfig()
    return HandlerRegistry(
        [
            CreateBastionHandler(network),
            CleanupBastionHandler(network),
            LogRoleChangeHandler(enabled=security.enable_audit_logging),
        ]
    )


class RoleChangeResponder:
    """Processes role change notifications against a fixed registry.

    Everything is injected at construction; nothing is read from the
    environment after startup.
    """

    def __init__(
        self,
        registry: Registry,
        handlers: HandlerRegistry,
        location: str,
        dry_run: bool = False,
        reporter: OutcomeReporter | None = None,
    ) -> None:
        self._registry = registry
        self._executor = ActionExecutor(handlers, registry)
        self._location = location
        # Either source can force dry-run on; neither can force it off
        self._dry_run = dry_run or registry.dry_run
        self._reporter = reporter or get_outcome_reporter()

    @classmethod
    def from_config(cls, config: Config) -> RoleChangeResponder:
        """Build a responder with live Azure clients.

        Raises:
            ConfigurationError: If the role-action document is invalid.
            SecretlessViolationError: If credential secrets are in the environment.
        """
        credential = get_managed_identity_credential(config.security.managed_identity_client_id)
        network = BastionNetwork.from_credential(credential, config.subscription_id)
        handlers = build_handler_registry(network, config.security)
        registry = load_registry_file(config.registry_path, handlers.names())

        logger.info(
            "Role-action registry loaded",
            extra={
                "registry_path": str(config.registry_path),
                "roles": registry.role_ids,
                "handlers": sorted(handlers.names()),
            },
        )
        return cls(
            registry=registry,
            handlers=handlers,
            location=config.location,
            dry_run=config.dry_run,
        )

    @property
    def registry(self) -> Registry:
        return self._registry

    @property
    def dry_run(self) -> bool:
        return self._dry_run

    async def process(self, raw: Any) -> list[ProcessingResult]:
        """Process a webhook delivery, which may batch several notifications."""
        return [await self.process_record(record) for record in split_notification(raw)]

    async def process_record(self, record: Any) -> ProcessingResult:
        """Process a single notification to a terminal state."""
        normalized = normalize(record)
        if isinstance(normalized, Rejection):
            self._reporter.report_rejection(normalized)
            return ProcessingResult(
                status=ProcessingStatus.REJECTED,
                correlation_id=normalized.correlation_id,
                rejection=normalized,
            )
        event = normalized

        resolved = resolve(event, self._registry)
        if isinstance(resolved, Skip):
            self._reporter.report_skip(event, resolved)
            return ProcessingResult(
                status=ProcessingStatus.SKIPPED,
                correlation_id=event.correlation_id,
                event=event,
                skip=resolved,
            )

        logger.info(
            "Processing role change",
            extra={
                **event.log_fields(),
                "actions": list(resolved.actions),
                "dry_run": self._dry_run,
            },
        )
        context = ExecutionContext(
            event=event,
            rule=resolved.rule,
            dry_run=self._dry_run,
            location=self._location,
            rules=self._registry.rules,
        )
        summary = await self._executor.execute_all(resolved.actions, context)
        self._reporter.report_summary(event, summary)

        return ProcessingResult(
            status=ProcessingStatus.COMPLETED,
            correlation_id=event.correlation_id,
            event=event,
            summary=summary,
        )

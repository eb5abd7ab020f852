"""Sequential action execution with per-action isolation.

Actions run one at a time in registry-declared order; later actions may
depend on earlier ones. Each handler call:

1. runs in its own daemon thread (Azure SDK calls block),
2. is bounded by the action's timeout,
3. has any exception converted to a failed ActionOutcome,
4. is replaced by handler.plan() when dry-run is set.

A failed, missing, or timed-out action never stops the remaining actions.
There is no retry here; retry safety depends on the operation and is left
to the handlers.

Timed-out handler threads cannot be interrupted. They are daemon threads
owned by no executor, so they neither delay the event loop's shutdown nor
keep the process alive. Actions are idempotent, so a redelivered event
converges.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import threading
import time
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

from .events import RoleChangeEvent
from .handlers import ActionHandler, HandlerRegistry
from .registry import Registry, RoleActionRule
from .results import ActionOutcome, ExecutionSummary

logger = logging.getLogger(__name__)

HANDLER_NOT_FOUND_MESSAGE = "handler not found"


@dataclass(frozen=True)
class ExecutionContext:
    """Everything a handler needs for one action invocation.

    Attributes:
        event: The role change being remediated.
        rule: The registry rule that matched the event.
        dry_run: When True, no live mutation may happen.
        location: Default region for created resources.
        rules: Every configured rule. Cleanup handlers use it to find
            grants of other roles that still need a resource.
        parameters: Per-action parameters from the role-action document.
        action_name: Name of the action being run.
    """

    event: RoleChangeEvent
    rule: RoleActionRule
    dry_run: bool
    location: str
    rules: tuple[RoleActionRule, ...] = ()
    parameters: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))
    action_name: str = ""


class ActionExecutor:
    """Runs resolved actions through their handlers."""

    def __init__(self, handlers: HandlerRegistry, registry: Registry) -> None:
        self._handlers = handlers
        self._registry = registry

    async def execute_all(
        self, actions: Sequence[str], context: ExecutionContext
    ) -> ExecutionSummary:
        """Execute actions in order and collect one outcome per action.

        Args:
            actions: Action names in execution order.
            context: Shared context; per-action parameters are merged in.

        Returns:
            ExecutionSummary with outcomes in the same order as actions.
        """
        outcomes: list[ActionOutcome] = []

        for action_name in actions:
            logger.debug(
                "Starting action",
                extra={"correlation_id": context.event.correlation_id, "action": action_name},
            )
            outcomes.append(await self._execute_one(action_name, context))

        return ExecutionSummary(outcomes=tuple(outcomes), dry_run=context.dry_run)

    async def _execute_one(self, action_name: str, context: ExecutionContext) -> ActionOutcome:
        handler = self._handlers.get(action_name)
        if handler is None:
            return ActionOutcome.failed(action_name, HANDLER_NOT_FOUND_MESSAGE)

        settings = self._registry.action_settings(action_name)
        action_context = dataclasses.replace(
            context,
            parameters=MappingProxyType({**context.parameters, **settings.parameters}),
            action_name=action_name,
        )
        timeout_seconds = self._registry.timeout_for(action_name)

        start = time.monotonic()
        outcome = await self._invoke(handler, action_context, timeout_seconds)
        return outcome.with_duration(time.monotonic() - start)

    async def _invoke(
        self,
        handler: ActionHandler,
        context: ExecutionContext,
        timeout_seconds: int,
    ) -> ActionOutcome:
        action_name = context.action_name
        call = handler.plan if context.dry_run else handler.execute

        try:
            result = await asyncio.wait_for(
                _run_in_daemon_thread(call, context),
                timeout=timeout_seconds,
            )
        except TimeoutError:
            logger.error(
                "Action timed out",
                extra={
                    "correlation_id": context.event.correlation_id,
                    "action": action_name,
                    "timeout_seconds": timeout_seconds,
                },
            )
            return ActionOutcome.failed(
                action_name,
                f"timed out after {timeout_seconds}s",
                timeout_seconds=timeout_seconds,
            )
        except Exception as e:
            logger.exception(
                "Action raised an exception",
                extra={"correlation_id": context.event.correlation_id, "action": action_name},
            )
            return ActionOutcome.failed(
                action_name,
                str(e) or type(e).__name__,
                error_type=type(e).__name__,
            )

        if not isinstance(result, ActionOutcome):
            return ActionOutcome.failed(
                action_name,
                f"handler returned {type(result).__name__} instead of an ActionOutcome",
            )

        if result.action_name != action_name:
            result = dataclasses.replace(result, action_name=action_name)
        return result


def _run_in_daemon_thread(
    call: Callable[[ExecutionContext], Any], context: ExecutionContext
) -> asyncio.Future[Any]:
    """Run a blocking handler call on a daemon thread and expose it as a future.

    Unlike the loop's default executor, the thread is never joined by
    asyncio.run() on shutdown.
    """
    loop = asyncio.get_running_loop()
    future: asyncio.Future[Any] = loop.create_future()

    def resolve(result: Any, error: BaseException | None) -> None:
        # Cancelled by wait_for on timeout
        if future.done():
            return
        if error is not None:
            future.set_exception(error)
        else:
            future.set_result(result)

    def run() -> None:
        result: Any = None
        error: BaseException | None = None
        try:
            result = call(context)
        except Exception as e:
            error = e
        try:
            loop.call_soon_threadsafe(resolve, result, error)
        except RuntimeError:
            logger.debug(
                "Event loop closed before a timed-out action finished",
                extra={"action": context.action_name},
            )

    threading.Thread(target=run, name=f"action-{context.action_name}", daemon=True).start()
    return future

"""Remediation action handlers."""

from __future__ import annotations

from collections.abc import Iterable, Iterator

from .base import (
    ActionHandler,
    HandlerConfigurationError,
    call_with_retry,
    is_transient_error,
)


class HandlerRegistry:
    """Name -> handler mapping, populated once at startup.

    The registry document is validated against names() so that an unknown
    action is a startup error rather than a per-event surprise.
    """

    def __init__(self, handlers: Iterable[ActionHandler] = ()) -> None:
        self._handlers: dict[str, ActionHandler] = {}
        for handler in handlers:
            self.register(handler)

    def register(self, handler: ActionHandler) -> None:
        """Register a handler under its name.

        Raises:
            ValueError: If the name is blank or already registered.
        """
        if not handler.name:
            raise ValueError(f"Handler {type(handler).__name__} has no name")
        if handler.name in self._handlers:
            raise ValueError(f"Duplicate handler name: {handler.name}")
        self._handlers[handler.name] = handler

    def get(self, name: str) -> ActionHandler | None:
        return self._handlers.get(name)

    def names(self) -> frozenset[str]:
        return frozenset(self._handlers)

    def __contains__(self, name: object) -> bool:
        return name in self._handlers

    def __iter__(self) -> Iterator[ActionHandler]:
        return iter(self._handlers.values())

    def __len__(self) -> int:
        return len(self._handlers)


__all__ = [
    "ActionHandler",
    "HandlerConfigurationError",
    "HandlerRegistry",
    "call_with_retry",
    "is_transient_error",
]

"""Synchronous change-listener fan-out shared by the cache managers."""

from __future__ import annotations

import logging
from typing import Any, Callable

logger = logging.getLogger(__name__)

Listener = Callable[..., Any]
Unsubscribe = Callable[[], None]


class Broadcaster:
    """Registry of callbacks invoked after each committed mutation.

    Listeners run synchronously in subscription order. A listener that raises
    is logged and skipped; it never aborts the mutation that triggered it.
    """

    def __init__(self, name: str = "") -> None:
        self._name = name
        self._listeners: list[Listener] = []

    def subscribe(self, listener: Listener) -> Unsubscribe:
        """Register ``listener`` and return a callable that removes it."""

        self._listeners.append(listener)

        def _unsubscribe() -> None:
            try:
                self._listeners.remove(listener)
            except ValueError:
                pass

        return _unsubscribe

    def emit(self, *args: Any) -> None:
        for listener in list(self._listeners):
            try:
                listener(*args)
            except Exception:
                logger.exception("Error in %s listener %r", self._name or "change", listener)

    def __len__(self) -> int:
        return len(self._listeners)

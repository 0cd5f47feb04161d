"""Lightweight signal dispatch for the storage engine and backend clients.

Listeners are plain callables or coroutine functions registered per signal
name. ``emit`` dispatches synchronously. ``emit_soon`` dispatches on the next
event loop turn so that listeners attached right after the triggering call
still observe the signal. Without a running loop, deferred signals are held
until ``release_held`` is called from one.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections import defaultdict
from typing import Any, Callable

logger = logging.getLogger(__name__)

Listener = Callable[..., Any]


class SignalEmitter:
    """Registry of named signal listeners."""

    def __init__(self) -> None:
        # signal name -> [(listener, once)]
        self._listeners: dict[str, list[tuple[Listener, bool]]] = defaultdict(list)
        self._held: list[tuple[str, tuple[Any, ...]]] = []
        self._tasks: set[asyncio.Task[Any]] = set()

    def on(self, signal: str, listener: Listener) -> "SignalEmitter":
        """Register a listener called every time ``signal`` is emitted."""
        self._listeners[signal].append((listener, False))
        return self

    def once(self, signal: str, listener: Listener) -> "SignalEmitter":
        """Register a listener removed after its first call."""
        self._listeners[signal].append((listener, True))
        return self

    def off(self, signal: str, listener: Listener) -> "SignalEmitter":
        """Remove the first registration of ``listener`` for ``signal``."""
        entries = self._listeners.get(signal)
        if not entries:
            return self
        for i, (registered, _) in enumerate(entries):
            if registered is listener:
                del entries[i]
                break
        return self

    def listener_count(self, signal: str) -> int:
        return len(self._listeners.get(signal, ()))

    def emit(self, signal: str, *args: Any) -> bool:
        """Call every listener of ``signal`` with ``args``.

        Returns:
            True if at least one listener was registered.
        """
        entries = self._listeners.get(signal)
        if not entries:
            return False

        snapshot = list(entries)
        # Drop one-shot listeners before calling so re-entrant emits skip them
        self._listeners[signal] = [entry for entry in entries if not entry[1]]

        for listener, _ in snapshot:
            result = listener(*args)
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)
        return True

    def emit_soon(self, signal: str, *args: Any) -> None:
        """Emit ``signal`` on the next event loop turn."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._held.append((signal, args))
            return
        loop.call_soon(self.emit, signal, *args)

    def release_held(self) -> None:
        """Schedule signals deferred while no event loop was running."""
        if not self._held:
            return
        loop = asyncio.get_running_loop()
        held, self._held = self._held, []
        for signal, args in held:
            logger.debug("Releasing held signal %s", signal)
            loop.call_soon(self.emit, signal, *args)

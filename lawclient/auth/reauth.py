from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Callable

from lawclient.constants import LOGGER

ReauthHandler = Callable[[], Any]


class ReauthEventBridge:
    """Tells whoever is interactive that the user has to log in again.

    Repeated signals collapse into one delivery until ``settle`` is called,
    so a burst of failing requests opens a single prompt. A handler that
    raises settles the bridge, so the next signal is delivered again.
    Handlers may be coroutine functions; they are scheduled on the running
    loop.
    """

    def __init__(self, *, logger: logging.Logger | None = None) -> None:
        self._handlers: list[ReauthHandler] = []
        self._outstanding = False
        self._tasks: set[asyncio.Task] = set()
        self._logger = logger or LOGGER
        self.signal_count = 0
        self.delivered_count = 0

    @property
    def outstanding(self) -> bool:
        return self._outstanding

    def on_signal(self, handler: ReauthHandler) -> Callable[[], None]:
        self._handlers.append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers:
                self._handlers.remove(handler)

        return unsubscribe

    def signal(self) -> bool:
        self.signal_count += 1
        if self._outstanding:
            return False

        self._outstanding = True
        self.delivered_count += 1
        self._logger.info(
            "Re-authentication required; notifying %s handler(s)", len(self._handlers)
        )
        for handler in list(self._handlers):
            try:
                result = handler()
            except Exception:
                self._logger.exception("Re-authentication handler %r failed", handler)
                self.settle()
                continue
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._tasks.add(task)
                task.add_done_callback(self._handler_done)
        return True

    def settle(self) -> None:
        self._outstanding = False

    def _handler_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            self._logger.error("Re-authentication handler failed: %s", error, exc_info=error)
            self.settle()

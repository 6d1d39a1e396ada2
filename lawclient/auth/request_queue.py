from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable

from lawclient.auth.models import OutgoingRequest, QueueEntry, Replay
from lawclient.constants import DEFAULT_QUEUE_TTL_SECONDS, LOGGER
from lawclient.errors import AuthExpired


class RequestQueue:
    """FIFO of requests parked until the user logs in again.

    Every entry is bound to the future its caller is awaiting. ``flush``
    replays entries one by one in enqueue order; ``abandon`` and the
    per-entry TTL reject them with ``AuthExpired``.
    """

    def __init__(
        self,
        *,
        ttl_seconds: float | None = DEFAULT_QUEUE_TTL_SECONDS,
        clock=time.monotonic,
        logger: logging.Logger | None = None,
    ) -> None:
        self._entries: list[QueueEntry] = []
        self._ttl_seconds = ttl_seconds
        self._clock = clock
        self._logger = logger or LOGGER
        self._flushing = False
        self._replaying: list[QueueEntry] = []
        self._subscribers: list[Callable[[], None]] = []

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def has_pending(self) -> bool:
        return bool(self._entries)

    @property
    def flushing(self) -> bool:
        return self._flushing

    def enqueue(self, request: OutgoingRequest, replay: Replay) -> asyncio.Future:
        request.mark_queued()
        loop = asyncio.get_running_loop()
        entry = QueueEntry(
            request=request,
            replay=replay,
            future=loop.create_future(),
            enqueued_at=self._clock(),
        )
        if self._ttl_seconds is not None:
            entry.timer = loop.call_later(self._ttl_seconds, self._expire, entry)
        entry.future.add_done_callback(lambda _future: self._forget_cancelled(entry))
        self._entries.append(entry)

        self._logger.warning(
            "Queued %s %s until re-authentication (%s pending)",
            request.method,
            request.url,
            len(self._entries),
        )
        return entry.future

    async def flush(self) -> int:
        if self._flushing:
            self._logger.info("Queue flush already running; ignoring")
            return 0

        self._flushing = True
        pending = self._replaying = self._entries
        self._entries = []
        replayed = 0
        try:
            while pending:
                entry = pending.pop(0)
                entry.disarm()
                if entry.future.done():
                    continue
                try:
                    response = await entry.replay(entry.request)
                except asyncio.CancelledError:
                    pending.insert(0, entry)
                    raise
                except Exception as error:
                    if not entry.future.done():
                        entry.future.set_exception(error)
                else:
                    if entry.future.done():
                        await response.aclose()
                    else:
                        entry.future.set_result(response)
                replayed += 1
        finally:
            if pending:
                # Interrupted mid-flush; keep the rest ahead of newer entries.
                self._entries[:0] = pending
                for entry in pending:
                    self._arm(entry)
            self._replaying = []
            self._flushing = False

        self._logger.info("Replayed %s queued request(s)", replayed)
        self._notify()
        return replayed

    def abandon(self, reason: str = "Please log in again to continue.") -> int:
        # Also takes the entries a running flush has not replayed yet.
        pending = self._replaying + self._entries
        self._replaying.clear()
        self._entries = []
        rejected = 0
        for entry in pending:
            entry.disarm()
            if not entry.future.done():
                entry.future.set_exception(AuthExpired(reason))
                rejected += 1

        if rejected:
            self._logger.warning("Abandoned %s queued request(s): %s", rejected, reason)
        self._notify()
        return rejected

    def subscribe(self, callback: Callable[[], None]) -> Callable[[], None]:
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def _arm(self, entry: QueueEntry) -> None:
        if self._ttl_seconds is None or entry.timer is not None:
            return
        remaining = self._ttl_seconds - (self._clock() - entry.enqueued_at)
        loop = asyncio.get_running_loop()
        entry.timer = loop.call_later(max(0.0, remaining), self._expire, entry)

    def _expire(self, entry: QueueEntry) -> None:
        entry.timer = None
        if entry in self._entries:
            self._entries.remove(entry)
        if entry.future.done():
            return
        self._logger.warning(
            "Queued %s %s expired after %ss without re-authentication",
            entry.request.method,
            entry.request.url,
            self._ttl_seconds,
        )
        entry.future.set_exception(
            AuthExpired(f"Re-authentication did not complete within {self._ttl_seconds}s.")
        )
        self._notify()

    def _forget_cancelled(self, entry: QueueEntry) -> None:
        if not entry.future.cancelled():
            return
        entry.disarm()
        if entry in self._entries:
            self._entries.remove(entry)
            self._notify()

    def _notify(self) -> None:
        for callback in list(self._subscribers):
            try:
                callback()
            except Exception:
                self._logger.exception("Queue subscriber %r failed", callback)

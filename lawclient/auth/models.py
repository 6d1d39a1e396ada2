from __future__ import annotations

import asyncio
import enum
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

import httpx


@dataclass(frozen=True)
class Credential:
    token: str
    source: str


class RefreshState(str, enum.Enum):
    IDLE = "idle"
    IN_FLIGHT = "in-flight"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class OutgoingRequest:
    method: str
    url: httpx.URL
    headers: httpx.Headers
    content: bytes = b""
    extensions: dict[str, Any] = field(default_factory=dict)
    retried: bool = False
    queued: bool = False

    @classmethod
    def from_httpx(cls, request: httpx.Request) -> "OutgoingRequest":
        return cls(
            method=request.method,
            url=request.url,
            headers=httpx.Headers(request.headers),
            content=request.content,
            extensions=dict(request.extensions),
        )

    def build(self) -> httpx.Request:
        return httpx.Request(
            method=self.method,
            url=self.url,
            headers=self.headers,
            content=self.content,
            extensions=self.extensions,
        )

    def authorize(self, token: str | None) -> None:
        if token:
            self.headers["Authorization"] = f"Bearer {token}"

    @property
    def bearer_token(self) -> str | None:
        scheme, _, token = self.headers.get("authorization", "").partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            return None
        return token.strip()

    def mark_retried(self) -> None:
        if self.retried:
            raise RuntimeError(f"{self.method} {self.url} was already retried.")
        self.retried = True

    def mark_queued(self) -> None:
        if self.queued:
            raise RuntimeError(f"{self.method} {self.url} was already queued.")
        self.queued = True


Replay = Callable[[OutgoingRequest], Awaitable[httpx.Response]]


@dataclass(eq=False)
class QueueEntry:
    request: OutgoingRequest
    replay: Replay
    future: asyncio.Future
    enqueued_at: float
    timer: asyncio.TimerHandle | None = None

    def disarm(self) -> None:
        if self.timer is not None:
            self.timer.cancel()
            self.timer = None

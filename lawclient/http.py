from __future__ import annotations

import logging
from http.cookiejar import CookieJar

import httpx

from .auth.models import OutgoingRequest
from .auth.reauth import ReauthEventBridge
from .auth.refresh import RefreshCoordinator, RefreshPolicy
from .auth.request_queue import RequestQueue
from .auth.token_store import TokenStore, extract_credential
from .constants import DEFAULT_TIMEOUT_SECONDS, LOGGER
from .errors import RefreshFailure


class AuthTransport(httpx.AsyncBaseTransport):
    """Runs every request through the bearer/refresh/re-auth pipeline.

    Sent -> 2xx: returned as is.
    Sent -> auth failure per the policy: one shared refresh, then exactly
    one retry whose response is returned whatever its status.
    Refresh failed: parked in the request queue and the re-auth bridge is
    signalled; the caller keeps waiting until the queue replays or rejects it.
    """

    def __init__(
        self,
        transport: httpx.AsyncBaseTransport,
        *,
        policy: RefreshPolicy,
        token_store: TokenStore,
        coordinator: RefreshCoordinator,
        queue: RequestQueue,
        bridge: ReauthEventBridge,
        logger: logging.Logger | None = None,
    ) -> None:
        self._transport = transport
        self._policy = policy
        self._token_store = token_store
        self._coordinator = coordinator
        self._queue = queue
        self._bridge = bridge
        self._logger = logger or LOGGER

    def attach_credential(self, request: OutgoingRequest) -> None:
        token = self._token_store.get()
        if token:
            request.authorize(token)

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        await request.aread()
        outgoing = OutgoingRequest.from_httpx(request)
        self.attach_credential(outgoing)
        response = await self._send(outgoing)

        if outgoing.retried or outgoing.queued:
            return response
        if self._policy.classifier is not None and not response.is_success:
            await response.aread()
        if not self._policy.should_refresh(response.status_code, outgoing.url, response):
            return response

        outgoing.mark_retried()
        await response.aclose()
        try:
            token = await self._coordinator.refresh()
        except RefreshFailure as error:
            return await self._defer(outgoing, error)

        outgoing.authorize(token or self._token_store.get())
        self._logger.info("Retrying %s %s after session refresh", outgoing.method, outgoing.url)
        return await self._send(outgoing)

    async def _send(self, outgoing: OutgoingRequest) -> httpx.Response:
        response = await self._transport.handle_async_request(outgoing.build())
        if response.is_success:
            await self._capture_credential(response)
        return response

    async def _capture_credential(self, response: httpx.Response) -> None:
        if "json" in response.headers.get("content-type", ""):
            await response.aread()
        token = extract_credential(response)
        if token and token != self._token_store.get():
            self._logger.info("Captured updated credential from response")
            self._token_store.set(token)

    async def _defer(self, outgoing: OutgoingRequest, error: RefreshFailure) -> httpx.Response:
        self._logger.warning(
            "Deferring %s %s until re-authentication: %s",
            outgoing.method,
            outgoing.url,
            error,
        )
        future = self._queue.enqueue(outgoing, self._replay)
        self._bridge.signal()
        return await future

    async def _replay(self, outgoing: OutgoingRequest) -> httpx.Response:
        self.attach_credential(outgoing)
        return await self._send(outgoing)

    async def aclose(self) -> None:
        await self._transport.aclose()


def create_authenticated_client(
    base_url: str,
    refresh_policy: RefreshPolicy,
    *,
    token_store: TokenStore,
    coordinator: RefreshCoordinator,
    queue: RequestQueue,
    bridge: ReauthEventBridge,
    transport: httpx.AsyncBaseTransport | None = None,
    cookies: CookieJar | None = None,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
    debug_enabled: bool = False,
) -> httpx.AsyncClient:
    async def log_request(request: httpx.Request) -> None:
        if not debug_enabled:
            return
        LOGGER.info("API request %s %s", request.method, request.url)

    async def log_response(response: httpx.Response) -> None:
        if not debug_enabled:
            return
        LOGGER.info(
            "API response %s %s -> %s",
            response.request.method,
            response.request.url,
            response.status_code,
        )
        if response.status_code >= 400:
            body = await response.aread()
            text = body.decode("utf-8", errors="replace")
            if len(text) > 1000:
                text = text[:1000] + "...<truncated>"
            LOGGER.warning("API error body: %s", text)

    auth_transport = AuthTransport(
        transport or httpx.AsyncHTTPTransport(),
        policy=refresh_policy,
        token_store=token_store,
        coordinator=coordinator,
        queue=queue,
        bridge=bridge,
        logger=LOGGER,
    )
    return httpx.AsyncClient(
        base_url=base_url,
        cookies=cookies,
        timeout=timeout,
        transport=auth_transport,
        event_hooks={
            "request": [log_request],
            "response": [log_response],
        },
    )

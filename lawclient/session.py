from __future__ import annotations

import logging
from http.cookiejar import CookieJar
from typing import Callable

import httpx

from .auth.reauth import ReauthEventBridge
from .auth.refresh import RefreshCoordinator, RefreshPolicy, service_policy
from .auth.request_queue import RequestQueue
from .auth.token_store import TokenStore, build_token_store, extract_credential
from .constants import LOGGER, LOGIN_PATH, LOGOUT_PATH
from .env import Settings
from .http import create_authenticated_client

TransportFactory = Callable[[str], httpx.AsyncBaseTransport]


class AuthSession:
    """Owns the credential state shared by every backend client.

    One token store, refresh coordinator, request queue and re-auth bridge
    are shared by all clients handed out by ``client(service)``, so a
    refresh or a login performed for one backend unblocks all of them.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        token_store: TokenStore | None = None,
        bridge: ReauthEventBridge | None = None,
        queue: RequestQueue | None = None,
        transport_factory: TransportFactory | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.settings = settings
        self._logger = logger or LOGGER
        self._transport_factory = transport_factory
        # Session cookies set by the backends; attached to every client.
        self.cookie_jar = CookieJar()
        # Legacy token cookies are mirrored here and never sent anywhere.
        self.legacy_cookies = httpx.Cookies()
        self.token_store = token_store or build_token_store(
            token_path=settings.token_path,
            storage_path=settings.storage_path,
            cookies=self.legacy_cookies,
            raw_cookie=settings.raw_cookie,
        )
        self.bridge = bridge or ReauthEventBridge(logger=self._logger)
        self.queue = queue or RequestQueue(
            ttl_seconds=settings.queue_ttl_seconds,
            logger=self._logger,
        )
        self.queue.subscribe(self._settle_when_drained)

        self.policy = service_policy(
            "auth",
            auth_base_url=settings.auth_base_url,
            excluded_paths=settings.excluded_paths,
            refresh_on_403=settings.refresh_on_403,
        )
        self._auth_client = httpx.AsyncClient(
            base_url=settings.auth_base_url,
            cookies=self.cookie_jar,
            timeout=settings.timeout,
            transport=self._transport_for(settings.auth_base_url),
        )
        self.coordinator = RefreshCoordinator(
            self._auth_client,
            self.token_store,
            self.policy,
            logger=self._logger,
        )
        self._clients: dict[str, httpx.AsyncClient] = {}

    def _transport_for(self, base_url: str) -> httpx.AsyncBaseTransport | None:
        if self._transport_factory is None:
            return None
        return self._transport_factory(base_url)

    def _settle_when_drained(self) -> None:
        # Nothing is waiting any more, so the next refresh failure prompts again.
        if not self.queue.has_pending and self.bridge.outstanding:
            self.bridge.settle()

    def policy_for(self, service: str) -> RefreshPolicy:
        return service_policy(
            service,
            auth_base_url=self.settings.auth_base_url,
            excluded_paths=self.settings.excluded_paths,
            refresh_on_403=self.settings.refresh_on_403,
        )

    def client(self, service: str) -> httpx.AsyncClient:
        client = self._clients.get(service)
        if client is None:
            base_url = self.settings.base_url(service)
            client = create_authenticated_client(
                base_url,
                self.policy_for(service),
                token_store=self.token_store,
                coordinator=self.coordinator,
                queue=self.queue,
                bridge=self.bridge,
                transport=self._transport_for(base_url),
                cookies=self.cookie_jar,
                timeout=self.settings.timeout,
                debug_enabled=self.settings.debug,
            )
            self._clients[service] = client
        return client

    async def login(self, email: str, password: str) -> dict:
        response = await self._auth_client.post(
            LOGIN_PATH,
            json={"email": email, "password": password},
        )
        if not response.is_success:
            raise RuntimeError(f"Login failed with status {response.status_code}.")

        token = extract_credential(response)
        if token:
            self.token_store.set(token)
        else:
            self._logger.warning("Login response carried no token; relying on session cookies")

        await self.complete_reauth()
        try:
            payload = response.json()
        except ValueError:
            return {}
        return payload if isinstance(payload, dict) else {}

    async def logout(self) -> None:
        headers = {}
        token = self.token_store.get()
        if token:
            headers["Authorization"] = f"Bearer {token}"
        try:
            response = await self._auth_client.post(LOGOUT_PATH, headers=headers)
            if not response.is_success:
                self._logger.warning("Logout returned status %s", response.status_code)
        except httpx.HTTPError as error:
            self._logger.warning("Logout request failed: %s", error)
        finally:
            self.token_store.clear()
            self.cancel_reauth("Logged out.")

    async def complete_reauth(self) -> int:
        self.bridge.settle()
        if not self.queue.has_pending:
            return 0
        return await self.queue.flush()

    def cancel_reauth(self, reason: str = "Please log in again to continue.") -> int:
        self.bridge.settle()
        return self.queue.abandon(reason)

    async def aclose(self) -> None:
        for client in self._clients.values():
            await client.aclose()
        self._clients.clear()
        await self._auth_client.aclose()

    async def __aenter__(self) -> "AuthSession":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

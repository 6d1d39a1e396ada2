from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Callable

import httpx

from lawclient.auth.models import RefreshState
from lawclient.auth.token_store import TokenStore, extract_credential
from lawclient.constants import (
    AUTH_ERROR_KEYWORDS,
    AUTH_EXCLUDED_PATHS,
    LOGGER,
    REFRESH_PATH,
    SERVICE_AUTH_STATUSES,
)
from lawclient.errors import RefreshFailure

ResponseClassifier = Callable[[httpx.Response], bool]


def looks_like_auth_error(response: httpx.Response) -> bool:
    """True for a 400 whose ``message`` or ``error`` mentions the session.

    The marketing API reports expired tokens this way instead of with a 401.
    The body must already be read.
    """
    if response.status_code != 400:
        return False
    try:
        payload = response.json()
    except ValueError:
        return False
    if not isinstance(payload, dict):
        return False
    text = " ".join(str(payload.get(key) or "") for key in ("message", "error")).lower()
    return any(keyword in text for keyword in AUTH_ERROR_KEYWORDS)


SERVICE_CLASSIFIERS: dict[str, ResponseClassifier] = {"mkt": looks_like_auth_error}


@dataclass(frozen=True)
class RefreshPolicy:
    auth_base_url: str
    refresh_path: str = REFRESH_PATH
    auth_statuses: frozenset[int] = field(default_factory=lambda: frozenset({401, 403}))
    excluded_paths: tuple[str, ...] = AUTH_EXCLUDED_PATHS
    classifier: ResponseClassifier | None = None

    @property
    def refresh_url(self) -> str:
        return f"{self.auth_base_url.rstrip('/')}{self.refresh_path}"

    def is_excluded(self, url: httpx.URL) -> bool:
        # Whole segments only: /api/auth/me must not cover /api/auth/metrics.
        path = f"{url.path.rstrip('/')}/"
        return any(f"{excluded.rstrip('/')}/" in path for excluded in self.excluded_paths)

    def should_refresh(
        self,
        status_code: int,
        url: httpx.URL,
        response: httpx.Response | None = None,
    ) -> bool:
        if self.is_excluded(url):
            return False
        if status_code in self.auth_statuses:
            return True
        return self.classifier is not None and response is not None and self.classifier(response)


def service_policy(
    service: str,
    *,
    auth_base_url: str,
    excluded_paths: tuple[str, ...] = AUTH_EXCLUDED_PATHS,
    refresh_on_403: bool = True,
) -> RefreshPolicy:
    statuses = SERVICE_AUTH_STATUSES.get(service, frozenset({401}))
    if not refresh_on_403:
        statuses = statuses - {403}
    return RefreshPolicy(
        auth_base_url=auth_base_url,
        auth_statuses=statuses,
        excluded_paths=excluded_paths,
        classifier=SERVICE_CLASSIFIERS.get(service),
    )


class RefreshCoordinator:
    """Exchanges the session cookie for a fresh bearer token, single-flight.

    Callers arriving while a refresh is running wait on that same attempt
    and receive its outcome, so N simultaneous auth failures cost one call
    to the refresh endpoint.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        token_store: TokenStore,
        policy: RefreshPolicy,
        *,
        logger: logging.Logger | None = None,
    ) -> None:
        self._client = client
        self._token_store = token_store
        self.policy = policy
        self._logger = logger or LOGGER
        self._inflight: asyncio.Task | None = None
        self.state = RefreshState.IDLE
        self.attempts = 0

    @property
    def in_flight(self) -> bool:
        return self._inflight is not None and not self._inflight.done()

    async def refresh(self) -> str | None:
        """Return the new token (``None`` if the endpoint sent none) or raise ``RefreshFailure``."""
        if self._inflight is None or self._inflight.done():
            self._inflight = asyncio.ensure_future(self._refresh_once())
            self._inflight.add_done_callback(self._consume_result)
        else:
            self._logger.info("Joining in-flight session refresh")
        return await asyncio.shield(self._inflight)

    async def _refresh_once(self) -> str | None:
        self.state = RefreshState.IN_FLIGHT
        self.attempts += 1
        self._logger.info("Refreshing session via %s", self.policy.refresh_url)

        try:
            response = await self._client.post(self.policy.refresh_url)
        except httpx.HTTPError as error:
            self.state = RefreshState.FAILED
            self._logger.warning("Session refresh failed: %s", error)
            raise RefreshFailure(f"Refresh request failed: {error}") from error

        if not response.is_success:
            self.state = RefreshState.FAILED
            self._logger.warning("Session refresh rejected with status %s", response.status_code)
            raise RefreshFailure(
                f"Refresh request failed with status {response.status_code}.",
                status_code=response.status_code,
            )

        token = extract_credential(response)
        if token:
            self._token_store.set(token)
        else:
            self._logger.info("Refresh succeeded without a new token; keeping current credential")
        self.state = RefreshState.SUCCEEDED
        return token

    def _consume_result(self, task: asyncio.Task) -> None:
        # Every waiter may have been cancelled; read the outcome so it is not reported as lost.
        if not task.cancelled():
            task.exception()

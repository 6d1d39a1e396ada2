import asyncio
import dataclasses
import itertools

import httpx
import pytest
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from lawclient.errors import AuthExpired
from lawclient.session import AuthSession
from tests.api_helpers import wait_until

EMAIL = "ana@estudio.com.ar"
PASSWORD = "correct-horse"


class Backend:
    """Session-cookie backend: login sets ``refresh_session``, refresh trades it for a token."""

    def __init__(self, *, refresh_delay: float = 0.0) -> None:
        self.refresh_delay = refresh_delay
        self.tokens: set[str] = set()
        self.sessions: set[str] = set()
        self.refresh_calls = 0
        self.logout_calls = 0
        self.bearers: list[str | None] = []
        self.cookie_headers: list[str] = []
        self._ids = itertools.count(1)

    def expire_tokens(self) -> None:
        self.tokens.clear()

    def revoke_sessions(self) -> None:
        self.tokens.clear()
        self.sessions.clear()

    def _issue_token(self) -> str:
        token = f"T{next(self._ids)}"
        self.tokens.add(token)
        return token

    async def login(self, request: Request) -> JSONResponse:
        payload = await request.json()
        if payload.get("email") != EMAIL or payload.get("password") != PASSWORD:
            return JSONResponse({"success": False, "message": "Invalid credentials"}, status_code=401)

        session_id = f"S{next(self._ids)}"
        self.sessions.add(session_id)
        response = JSONResponse(
            {"success": True, "token": self._issue_token(), "user": {"email": EMAIL}}
        )
        response.set_cookie("refresh_session", session_id, httponly=True)
        return response

    def _record_cookies(self, request: Request) -> None:
        self.cookie_headers.append(request.headers.get("cookie", ""))

    def _authorized(self, request: Request) -> bool:
        header = request.headers.get("authorization")
        self.bearers.append(header)
        scheme, _, token = (header or "").partition(" ")
        return scheme == "Bearer" and token in self.tokens

    async def refresh(self, request: Request) -> JSONResponse:
        self.refresh_calls += 1
        self._record_cookies(request)
        if self.refresh_delay:
            await asyncio.sleep(self.refresh_delay)
        if request.cookies.get("refresh_session") not in self.sessions:
            return JSONResponse({"success": False, "message": "Session expired"}, status_code=401)
        return JSONResponse({"success": True, "token": self._issue_token()})

    async def logout(self, request: Request) -> JSONResponse:
        self.logout_calls += 1
        self.sessions.discard(request.cookies.get("refresh_session"))
        return JSONResponse({"success": True})

    async def causas(self, request: Request) -> JSONResponse:
        self._record_cookies(request)
        if not self._authorized(request):
            return JSONResponse({"message": "Unauthorized"}, status_code=401)
        return JSONResponse({"causas": [{"numero": "CIV 1234/2024"}]})

    async def plans(self, request: Request) -> JSONResponse:
        if not self._authorized(request):
            return JSONResponse({"message": "Forbidden"}, status_code=403)
        return JSONResponse({"plans": ["standard"]})

    async def campaigns(self, request: Request) -> JSONResponse:
        if not self._authorized(request):
            return JSONResponse({"success": False, "message": "Invalid token"}, status_code=400)
        if request.method == "POST":
            return JSONResponse(
                {"success": False, "message": "Missing field: nombre"}, status_code=400
            )
        return JSONResponse({"campaigns": []})

    def app(self) -> Starlette:
        return Starlette(
            routes=[
                Route("/api/auth/login", self.login, methods=["POST"]),
                Route("/api/auth/refresh-token", self.refresh, methods=["POST"]),
                Route("/api/auth/logout", self.logout, methods=["POST"]),
                Route("/api/causas", self.causas, methods=["GET"]),
                Route("/api/plans", self.plans, methods=["GET"]),
                Route("/api/campaigns", self.campaigns, methods=["GET", "POST"]),
            ]
        )


def _session(settings, backend: Backend) -> AuthSession:
    app = backend.app()
    return AuthSession(settings, transport_factory=lambda base_url: httpx.ASGITransport(app=app))


@pytest.mark.asyncio
async def test_login_then_authenticated_request(settings) -> None:
    backend = Backend()

    async with _session(settings, backend) as session:
        payload = await session.login(EMAIL, PASSWORD)
        response = await session.client("pjn").get("/api/causas")
        credential = session.token_store.lookup()

    assert payload["user"] == {"email": EMAIL}
    assert response.status_code == 200
    assert backend.bearers == ["Bearer T2"]
    assert credential.token == "T2"
    assert credential.source == "secure"


@pytest.mark.asyncio
async def test_login_with_wrong_password(settings) -> None:
    backend = Backend()

    async with _session(settings, backend) as session:
        with pytest.raises(RuntimeError, match="Login failed with status 401"):
            await session.login(EMAIL, "wrong")

        assert session.token_store.get() is None


@pytest.mark.asyncio
async def test_expired_token_refreshed_with_session_cookie(settings) -> None:
    backend = Backend()

    async with _session(settings, backend) as session:
        await session.login(EMAIL, PASSWORD)
        backend.expire_tokens()

        response = await session.client("pjn").get("/api/causas")
        token = session.token_store.get()

    assert response.status_code == 200
    assert backend.refresh_calls == 1
    assert backend.bearers == ["Bearer T2", "Bearer T3"]
    assert token == "T3"


@pytest.mark.asyncio
async def test_clients_for_different_services_share_one_refresh(settings) -> None:
    backend = Backend(refresh_delay=0.05)

    async with _session(settings, backend) as session:
        await session.login(EMAIL, PASSWORD)
        backend.expire_tokens()

        responses = await asyncio.gather(
            session.client("pjn").get("/api/causas"),
            session.client("admin").get("/api/causas"),
            session.client("pjn").get("/api/causas"),
        )

    assert [response.status_code for response in responses] == [200, 200, 200]
    assert backend.refresh_calls == 1


@pytest.mark.asyncio
async def test_client_cached_per_service(settings) -> None:
    async with _session(settings, Backend()) as session:
        assert session.client("pjn") is session.client("pjn")
        assert session.client("pjn") is not session.client("admin")
        with pytest.raises(RuntimeError, match="Unknown service"):
            session.client("billing")


@pytest.mark.asyncio
async def test_revoked_session_waits_for_login(settings) -> None:
    backend = Backend()

    async with _session(settings, backend) as session:
        await session.login(EMAIL, PASSWORD)
        backend.revoke_sessions()

        async def relogin() -> None:
            await session.login(EMAIL, PASSWORD)

        session.bridge.on_signal(relogin)
        response = await session.client("pjn").get("/api/causas")

        assert response.status_code == 200
        assert response.json()["causas"][0]["numero"] == "CIV 1234/2024"
        assert session.bridge.delivered_count == 1
        assert session.bridge.outstanding is False
        assert len(session.queue) == 0


@pytest.mark.asyncio
async def test_dismissed_login_rejects_queued_request(settings) -> None:
    backend = Backend()

    async with _session(settings, backend) as session:
        await session.login(EMAIL, PASSWORD)
        backend.revoke_sessions()
        session.bridge.on_signal(lambda: session.cancel_reauth("Login dismissed."))

        with pytest.raises(AuthExpired, match="Login dismissed."):
            await session.client("pjn").get("/api/causas")

        assert session.bridge.outstanding is False


@pytest.mark.asyncio
async def test_logout_clears_credentials_and_rejects_queue(settings) -> None:
    backend = Backend()

    async with _session(settings, backend) as session:
        await session.login(EMAIL, PASSWORD)
        backend.revoke_sessions()

        task = asyncio.ensure_future(session.client("pjn").get("/api/causas"))
        await wait_until(lambda: session.queue.has_pending)
        await session.logout()

        with pytest.raises(AuthExpired, match="Logged out."):
            await task
        assert session.token_store.get() is None

    assert backend.logout_calls == 1
    assert not (settings.token_path.exists() and "auth_token" in settings.token_path.read_text())


@pytest.mark.asyncio
async def test_complete_reauth_without_pending_requests(settings) -> None:
    async with _session(settings, Backend()) as session:
        assert await session.complete_reauth() == 0
        assert session.cancel_reauth() == 0


@pytest.mark.asyncio
async def test_legacy_token_cookies_are_never_sent(settings) -> None:
    backend = Backend()

    async with _session(settings, backend) as session:
        await session.login(EMAIL, PASSWORD)
        backend.expire_tokens()
        await session.client("pjn").get("/api/causas")
        await session.client("admin").get("/api/causas")
        mirrored = {cookie.name for cookie in session.legacy_cookies.jar}

    assert mirrored == {"token", "authToken", "auth_token"}
    assert backend.refresh_calls == 1
    assert len(backend.cookie_headers) == 4
    for header in backend.cookie_headers:
        names = {pair.partition("=")[0].strip() for pair in header.split(";")}
        assert names == {"refresh_session"}
        assert "T2" not in header and "T3" not in header


@pytest.mark.asyncio
async def test_admin_403_is_returned_without_refresh(settings) -> None:
    backend = Backend()

    async with _session(settings, backend) as session:
        await session.login(EMAIL, PASSWORD)
        backend.expire_tokens()
        response = await session.client("admin").get("/api/plans")

    assert response.status_code == 403
    assert response.json() == {"message": "Forbidden"}
    assert backend.refresh_calls == 0


@pytest.mark.asyncio
async def test_pjn_403_triggers_refresh(settings) -> None:
    backend = Backend()

    async with _session(settings, backend) as session:
        await session.login(EMAIL, PASSWORD)
        backend.expire_tokens()
        response = await session.client("pjn").get("/api/plans")

    assert response.status_code == 200
    assert backend.refresh_calls == 1
    assert backend.bearers == ["Bearer T2", "Bearer T3"]


@pytest.mark.asyncio
async def test_pjn_403_passes_through_when_disabled(settings) -> None:
    backend = Backend()
    settings = dataclasses.replace(settings, refresh_on_403=False)

    async with _session(settings, backend) as session:
        await session.login(EMAIL, PASSWORD)
        backend.expire_tokens()
        response = await session.client("pjn").get("/api/plans")

    assert response.status_code == 403
    assert backend.refresh_calls == 0


@pytest.mark.asyncio
async def test_marketing_token_error_400_triggers_refresh(settings) -> None:
    backend = Backend()

    async with _session(settings, backend) as session:
        await session.login(EMAIL, PASSWORD)
        backend.expire_tokens()
        response = await session.client("mkt").get("/api/campaigns")

    assert response.status_code == 200
    assert response.json() == {"campaigns": []}
    assert backend.refresh_calls == 1


@pytest.mark.asyncio
async def test_marketing_validation_400_is_returned(settings) -> None:
    backend = Backend()

    async with _session(settings, backend) as session:
        await session.login(EMAIL, PASSWORD)
        response = await session.client("mkt").post("/api/campaigns", json={})
        admin_response = await session.client("admin").get("/api/plans")

    assert response.status_code == 400
    assert response.json()["message"] == "Missing field: nombre"
    assert admin_response.status_code == 200
    assert backend.refresh_calls == 0


@pytest.mark.asyncio
async def test_failed_prompt_is_shown_again_on_next_request(settings) -> None:
    backend = Backend()
    settings = dataclasses.replace(settings, queue_ttl_seconds=0.2)

    async with _session(settings, backend) as session:
        await session.login(EMAIL, PASSWORD)
        backend.revoke_sessions()
        prompts: list[int] = []

        def prompt():
            prompts.append(len(prompts))
            if len(prompts) == 1:
                raise EOFError("no terminal attached")
            return session.login(EMAIL, PASSWORD)

        session.bridge.on_signal(prompt)

        with pytest.raises(AuthExpired, match="did not complete"):
            await session.client("pjn").get("/api/causas")
        response = await session.client("pjn").get("/api/causas")

    assert prompts == [0, 1]
    assert response.status_code == 200
    assert backend.refresh_calls == 2


@pytest.mark.asyncio
async def test_expired_wait_prompts_again(settings) -> None:
    backend = Backend()
    settings = dataclasses.replace(settings, queue_ttl_seconds=0.05)

    async with _session(settings, backend) as session:
        await session.login(EMAIL, PASSWORD)
        backend.revoke_sessions()
        prompts: list[str] = []

        async def ignore_prompt() -> None:
            prompts.append("prompt")

        session.bridge.on_signal(ignore_prompt)

        for _ in range(2):
            with pytest.raises(AuthExpired):
                await session.client("pjn").get("/api/causas")

        assert session.bridge.outstanding is False

    assert prompts == ["prompt", "prompt"]
    assert session.bridge.delivered_count == 2

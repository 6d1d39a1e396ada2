from __future__ import annotations

import argparse
import asyncio
import getpass
import json
import sys
from typing import Callable, Coroutine

import httpx

from .constants import LOGGER, SERVICE_URLS
from .env import load_env, load_settings, setup_logging, validate_env
from .errors import AuthExpired
from .session import AuthSession


def console_reauth(session: AuthSession) -> Callable[[], Coroutine]:
    async def prompt() -> None:
        print(
            "Your session has expired. Log in again (leave the email empty to cancel).",
            file=sys.stderr,
        )
        email = (await asyncio.to_thread(input, "Email: ")).strip()
        if not email:
            session.cancel_reauth("Re-authentication cancelled.")
            return
        password = await asyncio.to_thread(getpass.getpass, "Password: ")
        try:
            await session.login(email, password)
        except (RuntimeError, httpx.HTTPError) as error:
            LOGGER.warning("Re-authentication failed: %s", error)
            session.cancel_reauth(str(error))

    return prompt


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="lawclient",
        description="Send one authenticated request to a backend service.",
    )
    parser.add_argument("method", help="HTTP method, e.g. GET")
    parser.add_argument("path", help="Path relative to the service base URL")
    parser.add_argument(
        "--service",
        default="pjn",
        choices=sorted(SERVICE_URLS),
        help="Backend service to call (default: pjn)",
    )
    parser.add_argument("--json", dest="body", help="JSON request body")
    return parser


async def run(method: str, path: str, *, service: str, body: object | None) -> int:
    settings = load_settings()
    async with AuthSession(settings) as session:
        session.bridge.on_signal(console_reauth(session))
        client = session.client(service)
        try:
            response = await client.request(method.upper(), path, json=body)
        except AuthExpired as error:
            print(f"Request abandoned: {error}", file=sys.stderr)
            return 1

    print(f"{response.status_code} {response.reason_phrase}")
    print(response.text)
    return 0 if response.is_success else 1


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    body = None
    if args.body is not None:
        try:
            body = json.loads(args.body)
        except json.JSONDecodeError as error:
            parser.error(f"--json is not valid JSON: {error}")

    load_env()
    setup_logging()
    validate_env()
    return asyncio.run(run(args.method, args.path, service=args.service, body=body))


if __name__ == "__main__":
    sys.exit(main())

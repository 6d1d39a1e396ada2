from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv
from pydantic import AnyHttpUrl, TypeAdapter, ValidationError

from .constants import (
    AUTH_EXCLUDED_PATHS,
    DEFAULT_QUEUE_TTL_SECONDS,
    DEFAULT_STORAGE_PATH,
    DEFAULT_TIMEOUT_SECONDS,
    DEFAULT_TOKEN_PATH,
    LOGGER,
    SERVICE_URLS,
)

_URL_ADAPTER = TypeAdapter(AnyHttpUrl)


@dataclass
class Settings:
    service_urls: dict[str, str]
    timeout: float = DEFAULT_TIMEOUT_SECONDS
    queue_ttl_seconds: float | None = DEFAULT_QUEUE_TTL_SECONDS
    refresh_on_403: bool = True
    token_path: Path = DEFAULT_TOKEN_PATH
    storage_path: Path = DEFAULT_STORAGE_PATH
    raw_cookie: str = ""
    debug: bool = False
    excluded_paths: tuple[str, ...] = AUTH_EXCLUDED_PATHS

    @property
    def auth_base_url(self) -> str:
        return self.service_urls["auth"]

    def base_url(self, service: str) -> str:
        try:
            return self.service_urls[service]
        except KeyError:
            known = ", ".join(sorted(self.service_urls))
            raise RuntimeError(f"Unknown service {service!r}; expected one of: {known}.")


def is_truthy(value: str | None) -> bool:
    if value is None:
        return False
    return value.strip().lower() in {"1", "true", "yes", "on"}


def parse_csv_env(key: str) -> set[str]:
    raw = os.getenv(key, "")
    if not raw.strip():
        return set()
    return {item.strip() for item in raw.split(",") if item.strip()}


def _get_env_float(key: str, default: float) -> float:
    raw = os.getenv(key, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise RuntimeError(f"{key} must be a numeric value.")


def _get_env_path(key: str, default: Path) -> Path:
    raw = os.getenv(key, "").strip()
    if not raw:
        return default
    return Path(raw).expanduser()


def load_env() -> None:
    env_path = Path.cwd() / ".env"
    if not env_path.exists():
        return
    load_dotenv(env_path, override=True)


def service_urls_from_env() -> dict[str, str]:
    return {
        service: os.getenv(key, "").strip() or default
        for service, (key, default) in SERVICE_URLS.items()
    }


def validate_env() -> None:
    invalid: list[str] = []
    urls = service_urls_from_env()
    for service, (key, _default) in SERVICE_URLS.items():
        url = urls[service]
        try:
            _URL_ADAPTER.validate_python(url)
        except ValidationError:
            invalid.append(key)
    if invalid:
        raise RuntimeError(
            f"Invalid base URL in environment variables: {', '.join(invalid)} "
            "(for example: https://api.lawanalytics.app)."
        )

    if _get_env_float("LAWCLIENT_TIMEOUT", DEFAULT_TIMEOUT_SECONDS) <= 0:
        raise RuntimeError("LAWCLIENT_TIMEOUT must be greater than zero.")


def load_settings() -> Settings:
    queue_ttl = _get_env_float("LAWCLIENT_QUEUE_TTL", DEFAULT_QUEUE_TTL_SECONDS)
    return Settings(
        service_urls=service_urls_from_env(),
        timeout=_get_env_float("LAWCLIENT_TIMEOUT", DEFAULT_TIMEOUT_SECONDS),
        queue_ttl_seconds=queue_ttl if queue_ttl > 0 else None,
        refresh_on_403=is_truthy(os.getenv("LAWCLIENT_REFRESH_ON_403", "1")),
        token_path=_get_env_path("LAWCLIENT_TOKEN_PATH", DEFAULT_TOKEN_PATH),
        storage_path=_get_env_path("LAWCLIENT_STORAGE_PATH", DEFAULT_STORAGE_PATH),
        raw_cookie=os.getenv("LAWCLIENT_COOKIE", ""),
        debug=is_truthy(os.getenv("LAWCLIENT_DEBUG", "0")),
        excluded_paths=AUTH_EXCLUDED_PATHS
        + tuple(sorted(parse_csv_env("LAWCLIENT_EXCLUDED_PATHS"))),
    )


def setup_logging() -> bool:
    debug_enabled = is_truthy(os.getenv("LAWCLIENT_DEBUG", "0"))
    if debug_enabled:
        logging.basicConfig(level=logging.INFO)
        LOGGER.setLevel(logging.INFO)
    return debug_enabled

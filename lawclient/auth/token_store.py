from __future__ import annotations

import json
import os
import tempfile
import urllib.parse
from abc import ABC, abstractmethod
from pathlib import Path
from typing import MutableMapping, Sequence

import httpx

from lawclient.auth.models import Credential
from lawclient.constants import LEGACY_COOKIE_NAMES, LOGGER, MIRROR_COOKIE_NAMES, STORAGE_KEYS


class CredentialBackend(ABC):
    name: str

    @abstractmethod
    def read(self) -> str | None:
        raise NotImplementedError

    @abstractmethod
    def write(self, token: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def delete(self) -> None:
        raise NotImplementedError


class MemoryBackend(CredentialBackend):
    def __init__(self, name: str = "token_service") -> None:
        self.name = name
        self._token: str | None = None

    def read(self) -> str | None:
        return self._token

    def write(self, token: str) -> None:
        self._token = token

    def delete(self) -> None:
        self._token = None


class MappingBackend(CredentialBackend):
    """Key/value storage read through several legacy keys, first hit wins."""

    def __init__(
        self,
        mapping: MutableMapping[str, str],
        *,
        name: str = "session_storage",
        keys: Sequence[str] = STORAGE_KEYS,
    ) -> None:
        self.name = name
        self._mapping = mapping
        self._keys = tuple(keys)

    def read(self) -> str | None:
        for key in self._keys:
            value = self._mapping.get(key)
            if value:
                return value
        return None

    def write(self, token: str) -> None:
        self._mapping[self._keys[0]] = token

    def delete(self) -> None:
        for key in self._keys:
            self._mapping.pop(key, None)


class FileBackend(CredentialBackend):
    def __init__(
        self,
        path: str | Path,
        *,
        name: str = "secure",
        keys: Sequence[str] = ("auth_token",),
    ) -> None:
        self.name = name
        self._path = Path(path)
        self._keys = tuple(keys)

    def read(self) -> str | None:
        payload = self._read_all()
        for key in self._keys:
            value = payload.get(key)
            if isinstance(value, str) and value:
                return value
        return None

    def write(self, token: str) -> None:
        payload = self._read_all()
        payload[self._keys[0]] = token
        self._write_all(payload)

    def delete(self) -> None:
        payload = self._read_all()
        if not any(key in payload for key in self._keys):
            return
        for key in self._keys:
            payload.pop(key, None)
        self._write_all(payload)

    def _read_all(self) -> dict[str, str]:
        if not self._path.exists():
            return {}

        # An unreadable file counts as empty and is replaced on the next write.
        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
        except ValueError as error:
            LOGGER.warning("Ignoring unreadable credential file %s: %s", self._path, error)
            return {}
        if not isinstance(raw, dict):
            LOGGER.warning(
                "Ignoring credential file %s; expected top-level JSON object.", self._path
            )
            return {}
        return raw

    def _write_all(self, payload: dict[str, str]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)

        fd, tmp_name = tempfile.mkstemp(
            prefix=f"{self._path.name}.",
            suffix=".tmp",
            dir=self._path.parent,
        )
        tmp_path = Path(tmp_name)

        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(payload, handle, indent=2, sort_keys=True)
            os.replace(tmp_path, self._path)
        finally:
            if tmp_path.exists():
                tmp_path.unlink()


class CookieJarBackend(CredentialBackend):
    """Legacy token cookies.

    Cookies set here carry no domain, so the jar must never be attached to a
    client: it would send the bearer to every host.
    """

    def __init__(
        self,
        cookies: httpx.Cookies,
        *,
        name: str = "cookies",
        names: Sequence[str] = LEGACY_COOKIE_NAMES,
        write_names: Sequence[str] = MIRROR_COOKIE_NAMES,
    ) -> None:
        self.name = name
        self._cookies = cookies
        self._names = tuple(names)
        self._write_names = tuple(write_names)

    def read(self) -> str | None:
        # httpx.Cookies.get raises on same-name cookies from different domains.
        for cookie_name in self._names:
            for cookie in self._cookies.jar:
                if cookie.name == cookie_name and cookie.value:
                    return cookie.value
        return None

    def write(self, token: str) -> None:
        for cookie_name in self._write_names:
            self._cookies.set(cookie_name, token)

    def delete(self) -> None:
        for cookie_name in self._names:
            self._cookies.delete(cookie_name)


class RawCookieBackend(CredentialBackend):
    """Parses a raw ``Cookie`` header string, in cookie order."""

    def __init__(
        self,
        header: str = "",
        *,
        name: str = "raw_cookie",
        names: Sequence[str] = LEGACY_COOKIE_NAMES,
    ) -> None:
        self.name = name
        self.header = header
        self._names = tuple(names)

    def _pairs(self) -> list[tuple[str, str]]:
        pairs = []
        for chunk in self.header.split(";"):
            cookie_name, sep, value = chunk.strip().partition("=")
            if sep:
                pairs.append((cookie_name, value))
        return pairs

    def read(self) -> str | None:
        for cookie_name, value in self._pairs():
            if cookie_name in self._names and value:
                return urllib.parse.unquote(value)
        return None

    def write(self, token: str) -> None:
        pairs = [(key, value) for key, value in self._pairs() if key != self._names[0]]
        pairs.insert(0, (self._names[0], urllib.parse.quote(token, safe="")))
        self.header = "; ".join(f"{key}={value}" for key, value in pairs)

    def delete(self) -> None:
        pairs = [(key, value) for key, value in self._pairs() if key not in self._names]
        self.header = "; ".join(f"{key}={value}" for key, value in pairs)


class TokenStore:
    """Single source of truth for the bearer credential.

    Backends are consulted in order and the first non-empty value wins.
    ``set`` writes the first backend and mirrors the value into the backends
    named in ``mirrors`` so callers still reading older locations keep
    working. ``clear`` empties every backend.
    """

    def __init__(
        self,
        backends: Sequence[CredentialBackend],
        *,
        mirrors: Sequence[str] = (),
    ) -> None:
        if not backends:
            raise RuntimeError("TokenStore needs at least one backend.")
        self._backends = list(backends)
        names = {backend.name for backend in self._backends}
        unknown = [name for name in mirrors if name not in names]
        if unknown:
            raise RuntimeError(f"Unknown mirror backends: {', '.join(unknown)}")
        self._mirrors = tuple(mirrors)

    @property
    def backends(self) -> list[CredentialBackend]:
        return list(self._backends)

    def lookup(self) -> Credential | None:
        for backend in self._backends:
            token = backend.read()
            if token:
                return Credential(token=token, source=backend.name)
        return None

    def get(self) -> str | None:
        credential = self.lookup()
        return None if credential is None else credential.token

    def set(self, token: str) -> None:
        if not token:
            raise RuntimeError("Refusing to store an empty credential.")
        primary = self._backends[0]
        primary.write(token)
        for backend in self._backends[1:]:
            if backend.name in self._mirrors:
                backend.write(token)

    def clear(self) -> None:
        for backend in self._backends:
            backend.delete()


def build_token_store(
    *,
    token_path: str | Path,
    storage_path: str | Path,
    cookies: httpx.Cookies,
    raw_cookie: str = "",
    session_storage: MutableMapping[str, str] | None = None,
) -> TokenStore:
    return TokenStore(
        [
            FileBackend(token_path, name="secure"),
            MemoryBackend("token_service"),
            CookieJarBackend(cookies),
            RawCookieBackend(raw_cookie),
            FileBackend(storage_path, name="local_storage", keys=STORAGE_KEYS),
            MappingBackend({} if session_storage is None else session_storage),
        ],
        mirrors=("token_service", "cookies"),
    )


def extract_credential(response: httpx.Response) -> str | None:
    """Return a credential carried by ``response`` (headers first, then JSON body).

    The body must already be read.
    """
    header = response.headers.get("authorization")
    if header:
        scheme, _, token = header.partition(" ")
        if scheme.lower() == "bearer":
            return token.strip() or None
        return header.strip() or None

    header = response.headers.get("x-auth-token")
    if header and header.strip():
        return header.strip()

    if "json" not in response.headers.get("content-type", ""):
        return None
    try:
        payload = response.json()
    except ValueError:
        return None
    if isinstance(payload, dict):
        token = payload.get("token")
        if isinstance(token, str) and token:
            return token
    return None

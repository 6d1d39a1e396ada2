import os

import pytest

from lawclient.env import Settings

SESSION_API_URL = "http://api.test"


@pytest.fixture(autouse=True)
def clean_env(monkeypatch) -> None:
    for key in list(os.environ):
        if key.startswith("LAWCLIENT_"):
            monkeypatch.delenv(key)


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        service_urls={service: SESSION_API_URL for service in ("auth", "pjn", "admin", "mkt")},
        token_path=tmp_path / "credentials.json",
        storage_path=tmp_path / "storage.json",
        queue_ttl_seconds=None,
    )

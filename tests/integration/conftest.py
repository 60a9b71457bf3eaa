"""Integration-test fixtures for deterministic endpoint and credential behavior."""

from __future__ import annotations

from typing import Any

import pytest

from tests.fakes import ScriptedClient, uppercase_echo


class InMemoryCredentialStore:
    """Credential store double that never touches the OS keyring."""

    def __init__(self) -> None:
        self.api_key: str | None = None
        self.available = True

    def is_available(self) -> bool:
        return self.available

    def get_api_key(self) -> str | None:
        return self.api_key

    def set_api_key(self, api_key: str) -> None:
        """Store the key, failing like keyring when no backend is available."""

        if not self.available:
            raise RuntimeError("no usable keyring backend")
        self.api_key = api_key.strip()

    def clear_api_key(self) -> bool:
        existed = self.api_key is not None
        self.api_key = None
        return existed


@pytest.fixture(autouse=True)
def credential_store(monkeypatch: pytest.MonkeyPatch) -> InMemoryCredentialStore:
    """Replace secure storage for every CLI invocation in integration tests."""

    store = InMemoryCredentialStore()
    monkeypatch.setattr("chunkrelay.cli.create_credential_store", lambda: store)
    return store


@pytest.fixture
def endpoint(monkeypatch: pytest.MonkeyPatch) -> ScriptedClient:
    """Route jobs built without an explicit client to an upper-casing fake endpoint.

    The keyword arguments the job used to build its client are kept in
    `endpoint.created_with` for assertions on resolved URL and API key.
    """

    client = ScriptedClient(responder=uppercase_echo)
    client.created_with = []  # type: ignore[attr-defined]

    def _factory(**kwargs: Any) -> ScriptedClient:
        client.created_with.append(kwargs)  # type: ignore[attr-defined]
        return client

    monkeypatch.setattr("chunkrelay.engine.job.StreamingClient", _factory)
    return client

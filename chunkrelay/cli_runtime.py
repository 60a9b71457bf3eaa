"""Collect endpoint runtime values (url, model, API key) from the CLI side.

Values gathered here become the `cli` and `secure` layers of
`RuntimeConfigSources`; environment and defaults are layered in by `config`.
"""

from __future__ import annotations

from typing import Callable, Protocol

import typer

from .credentials import create_credential_store
from .errors import ConfigurationError
from .parsing import normalize_optional_string

_API_KEY_PROMPT = "API key (hidden; leave blank to skip)"


class ApiKeyStore(Protocol):
    """Subset of `CredentialStore` used while resolving a run."""

    def get_api_key(self) -> str | None: ...

    def set_api_key(self, api_key: str) -> None: ...


def _prompt_for_api_key() -> str | None:
    entered = typer.prompt(_API_KEY_PROMPT, default="", hide_input=True, show_default=False)
    return normalize_optional_string(entered)


def _persist_prompted_key(store: ApiKeyStore, api_key: str) -> None:
    try:
        store.set_api_key(api_key)
    except Exception as exc:
        raise ConfigurationError(
            stage="credentials",
            kind="credentials_unavailable",
            detail=f"Failed to store API key securely: {exc}",
            hint=(
                "Install and configure a keyring backend, or rerun with "
                "`--no-store-api-key` for one-off usage."
            ),
        ) from exc
    typer.echo("Stored API key in secure credential storage.")


def resolve_runtime_sources(
    url: str | None,
    model: str | None,
    api_key: str | None,
    prompt_api_key: bool,
    store_api_key: bool,
    credential_store_factory: Callable[[], ApiKeyStore] = create_credential_store,
) -> tuple[dict[str, str], dict[str, str]]:
    """Return `(cli_values, secure_values)` for the endpoint runtime settings.

    Blank CLI values are dropped. `--prompt-api-key` only prompts when no
    `--api-key` was given; a prompted key is saved to secure storage when
    `store_api_key` is set, and a failure to save it aborts the run.
    """

    cli_values: dict[str, str] = {}
    for name, raw in (("url", url), ("model", model), ("api_key", api_key)):
        cleaned = normalize_optional_string(raw)
        if cleaned is not None:
            cli_values[name] = cleaned

    prompted_key = None
    if prompt_api_key and "api_key" not in cli_values:
        prompted_key = _prompt_for_api_key()
        if prompted_key is not None:
            cli_values["api_key"] = prompted_key

    store = credential_store_factory()
    stored_key = store.get_api_key()
    secure_values = {"api_key": stored_key} if stored_key is not None else {}

    if prompted_key is not None and store_api_key:
        _persist_prompted_key(store, prompted_key)

    return cli_values, secure_values

"""Command-line interface for chunkrelay.

Responsibilities:
- Expose user-facing commands for batch translate/transform jobs.
- Convert CLI arguments and YAML run files into `RunConfig` and execute jobs.
- Manage saved progress records and the stored API key.

Key public functions:
- `app`: Typer application instance.
- `main`: invoke the Typer application.
"""

from __future__ import annotations

import dataclasses
import os
from pathlib import Path
import signal
from typing import Annotated, Any

import typer

from .cli_rendering import echo_job_outcome, echo_progress_entries, exit_with_command_error
from .cli_runtime import resolve_runtime_sources
from .config import (
    ConfigLoader,
    RunConfig,
    RuntimeConfigSources,
    build_prompt_set,
    encode_image_file,
    resolve_state_dir,
)
from .credentials import create_credential_store
from .engine.job import BatchJob, JobContext, install_interrupt_handler
from .engine.progress import ProgressStore, source_key_for_file
from .errors import ConfigurationError, EngineError, SourceFileError
from .llm.backends import resolve_dialect
from .llm.prompts import TaskMode
from .models.datatypes import ParamSetting
from .parsing import normalize_optional_string
from .telemetry.logger import RunLogger

app = typer.Typer(
    name="chunkrelay",
    no_args_is_help=True,
    help="Push long texts through LLM endpoints in resumable, ordered chunks.",
)
progress_app = typer.Typer(
    name="progress",
    no_args_is_help=True,
    help="Inspect or discard saved job progress.",
)
app.add_typer(progress_app, name="progress")


SourceArgument = Annotated[Path, typer.Argument(help="UTF-8 text file to process.")]
TargetArgument = Annotated[
    Path, typer.Argument(help="Output file; must not exist on a fresh run.")
]
ConfigOption = Annotated[
    Path | None,
    typer.Option("--config", help="Path to YAML run file with job defaults."),
]
UrlOption = Annotated[
    str | None,
    typer.Option("--url", help="Endpoint URL, e.g. `http://host/v1/chat/completions`."),
]
ModelOption = Annotated[str | None, typer.Option("--model", help="Model identifier.")]
ApiKeyOption = Annotated[
    str | None,
    typer.Option(
        "--api-key",
        help="API key override. Prefer `--prompt-api-key` to avoid shell history.",
    ),
]
PromptApiKeyOption = Annotated[
    bool,
    typer.Option("--prompt-api-key", help="Prompt for API key with hidden input."),
]
StoreApiKeyOption = Annotated[
    bool,
    typer.Option(
        "--store-api-key/--no-store-api-key",
        help="Persist a prompted API key to secure credential storage.",
    ),
]
DialectOption = Annotated[
    str | None,
    typer.Option("--dialect", help="Wire dialect: `chat`, `responses`, or `legacy`."),
]
ChunkSizeOption = Annotated[
    int | None, typer.Option("--chunk-size", help="Maximum characters per chunk.")
]
ParallelOption = Annotated[
    int | None, typer.Option("--parallel", help="Maximum requests in flight.")
]
WaitOption = Annotated[
    float | None,
    typer.Option("--wait", help="Minimum seconds between request starts."),
]
MaxAttemptsOption = Annotated[
    int | None, typer.Option("--max-attempts", help="Attempts per chunk, including the first.")
]
TempIncrementOption = Annotated[
    float | None,
    typer.Option("--temp-increment", help="Temperature added on every retry."),
]
TemperatureOption = Annotated[
    float | None, typer.Option("--temperature", help="Sampling temperature (0-2).")
]
StreamOption = Annotated[
    bool | None,
    typer.Option("--stream/--no-stream", help="Request streamed or single-body responses."),
]
SessionOption = Annotated[
    bool | None,
    typer.Option(
        "--session/--no-session",
        help="Carry the previous turn and its reasoning into each request (sequential).",
    ),
]
ShowReasoningOption = Annotated[
    bool | None,
    typer.Option(
        "--show-reasoning/--hide-reasoning",
        help="Include revealed model reasoning in the output.",
    ),
]
StateDirOption = Annotated[
    Path | None,
    typer.Option("--state-dir", help="Progress directory (default: $CHUNKRELAY_STATE_DIR)."),
]
LogLevelOption = Annotated[
    str, typer.Option("--log-level", help="Runtime log level written to stderr.")
]


class ChunkProgressIndicator:
    """Render deterministic per-chunk progress lines for long-running commands."""

    _SPINNER_FRAMES = "|/-\\"

    def __init__(self, command_name: str) -> None:
        """Initialize progress indicator metadata for a command invocation."""

        self._command_name = command_name

    def on_plan(self, start_index: int, total: int) -> None:
        if start_index > 0:
            typer.echo(
                f"[progress] command={self._command_name} "
                f"resume from {start_index + 1}/{total}"
            )

    def on_commit(self, index: int, total: int) -> None:
        """Print one progress line for a committed chunk."""

        spinner = self._SPINNER_FRAMES[index % len(self._SPINNER_FRAMES)]
        typer.echo(
            f"[progress] command={self._command_name} {spinner} {index + 1}/{total} committed"
        )


def _load_yaml_config(config_path: Path | None, mode: TaskMode) -> RunConfig | None:
    """Load a YAML run file when requested and map failures to configuration errors."""

    if config_path is None:
        return None

    try:
        return ConfigLoader.from_yaml(config_path, mode=mode)
    except FileNotFoundError as exc:
        raise ConfigurationError(
            stage="config",
            detail=f"Config file not found: `{config_path}`.",
            hint="Provide an existing path via `--config <path.yaml>`.",
        ) from exc
    except ValueError as exc:
        raise ConfigurationError(
            stage="config",
            detail=f"Invalid config file `{config_path}`: {exc}",
            hint="Fix config schema/values and rerun.",
        ) from exc
    except OSError as exc:
        raise ConfigurationError(
            stage="config",
            detail=f"Failed to load config file `{config_path}`: {exc}",
            hint="Verify file permissions.",
        ) from exc


def _encode_images(paths: list[Path] | None) -> tuple[str, ...] | None:
    if not paths:
        return None
    try:
        return tuple(encode_image_file(path) for path in paths)
    except (OSError, ValueError) as exc:
        raise ConfigurationError(
            stage="config",
            detail=f"Could not attach image: {exc}",
            hint="Pass readable .png, .jpg, .gif, or .webp files via `--image`.",
        ) from exc


def _resolve_command_config(
    *,
    mode: TaskMode,
    config_file: Path | None,
    dialect: str | None,
    chunk_size: int | None,
    parallel: int | None,
    wait: float | None,
    max_attempts: int | None,
    temp_increment: float | None,
    temperature: float | None,
    stream: bool | None,
    session: bool | None,
    show_reasoning: bool | None,
    state_dir: Path | None,
    system_prompt: str | None = None,
    prompt: str | None = None,
    prefill: str | None = None,
    images: list[Path] | None = None,
    source_language: str | None = None,
    target_language: str | None = None,
    context: str | None = None,
) -> RunConfig:
    """Resolve effective job config from YAML defaults and explicit CLI overrides."""

    base = _load_yaml_config(config_file, mode) or RunConfig(mode=mode)
    overrides: dict[str, Any] = {}

    if dialect is not None:
        try:
            overrides["dialect"] = resolve_dialect("", dialect)
        except ValueError as exc:
            raise ConfigurationError(stage="config", detail=str(exc)) from exc
    if chunk_size is not None:
        overrides["chunk_size"] = chunk_size
    if parallel is not None:
        overrides["concurrency"] = parallel
    if wait is not None:
        overrides["inter_request_delay"] = wait
    if stream is not None:
        overrides["stream"] = stream
    if session is not None:
        overrides["session_mode"] = session
    if show_reasoning is not None:
        overrides["show_reasoning"] = show_reasoning
    if state_dir is not None:
        overrides["state_dir"] = state_dir
    if temperature is not None:
        overrides["params"] = dataclasses.replace(
            base.params, temperature=ParamSetting.on(temperature)
        )

    retry_overrides: dict[str, Any] = {}
    if max_attempts is not None:
        retry_overrides["max_attempts"] = max_attempts
    if temp_increment is not None:
        retry_overrides["temp_increment"] = temp_increment
    if retry_overrides:
        overrides["retry"] = dataclasses.replace(base.retry, **retry_overrides)

    if any(value is not None for value in (system_prompt, prompt, prefill)):
        overrides["prompts"] = build_prompt_set(
            base.effective_prompts, system=system_prompt, prompt=prompt, prefill=prefill
        )
    encoded_images = _encode_images(images)
    if encoded_images is not None:
        overrides["images"] = encoded_images
    if normalize_optional_string(source_language) is not None:
        overrides["source_language"] = source_language.strip()
    if normalize_optional_string(target_language) is not None:
        overrides["target_language"] = target_language.strip()
    if normalize_optional_string(context) is not None:
        overrides["context_info"] = context

    return dataclasses.replace(base, **overrides)


def _run_job(
    command_name: str,
    config: RunConfig,
    source: Path,
    target: Path,
    log_level: str,
) -> None:
    """Execute one job with SIGINT routed to cooperative cancellation."""

    indicator = ChunkProgressIndicator(command_name=command_name)
    context = JobContext()
    previous_handler = install_interrupt_handler(context)
    try:
        job = BatchJob(
            config,
            source,
            target,
            run_logger=RunLogger(level=log_level),
            on_plan=indicator.on_plan,
            on_commit=indicator.on_commit,
        )
        outcome = job.execute(context)
    except Exception as exc:
        exit_with_command_error(command_name, exc)
    finally:
        if previous_handler is not None:
            signal.signal(signal.SIGINT, previous_handler)
    echo_job_outcome(command_name, outcome, target)


def _with_runtime_sources(
    config: RunConfig,
    *,
    url: str | None,
    model: str | None,
    api_key: str | None,
    prompt_api_key: bool,
    store_api_key: bool,
) -> RunConfig:
    """Attach runtime source mappings while keeping base config defaults intact."""

    runtime_cli_values, runtime_secure_values = resolve_runtime_sources(
        url=url,
        model=model,
        api_key=api_key,
        prompt_api_key=prompt_api_key,
        store_api_key=store_api_key,
        credential_store_factory=create_credential_store,
    )
    return dataclasses.replace(
        config,
        runtime_sources=RuntimeConfigSources(
            cli=runtime_cli_values,
            secure=runtime_secure_values,
            env=ConfigLoader.runtime_env(os.environ),
        ),
    )


@app.command("translate")
def translate_command(
    source: SourceArgument,
    target: TargetArgument,
    source_lang: Annotated[
        str | None, typer.Option("--source-lang", help="Language of the source text.")
    ] = None,
    target_lang: Annotated[
        str | None, typer.Option("--target-lang", help="Language to translate into.")
    ] = None,
    context: Annotated[
        str | None,
        typer.Option("--context", help="Background information injected into the prompt."),
    ] = None,
    config_file: ConfigOption = None,
    url: UrlOption = None,
    model: ModelOption = None,
    api_key: ApiKeyOption = None,
    prompt_api_key: PromptApiKeyOption = False,
    store_api_key: StoreApiKeyOption = True,
    dialect: DialectOption = None,
    chunk_size: ChunkSizeOption = None,
    parallel: ParallelOption = None,
    wait: WaitOption = None,
    max_attempts: MaxAttemptsOption = None,
    temp_increment: TempIncrementOption = None,
    temperature: TemperatureOption = None,
    stream: StreamOption = None,
    session: SessionOption = None,
    show_reasoning: ShowReasoningOption = None,
    state_dir: StateDirOption = None,
    log_level: LogLevelOption = "INFO",
) -> None:
    """Translate SOURCE into TARGET chunk by chunk."""

    try:
        config = _resolve_command_config(
            mode=TaskMode.TRANSLATE,
            config_file=config_file,
            dialect=dialect,
            chunk_size=chunk_size,
            parallel=parallel,
            wait=wait,
            max_attempts=max_attempts,
            temp_increment=temp_increment,
            temperature=temperature,
            stream=stream,
            session=session,
            show_reasoning=show_reasoning,
            state_dir=state_dir,
            source_language=source_lang,
            target_language=target_lang,
            context=context,
        )
        config = _with_runtime_sources(
            config,
            url=url,
            model=model,
            api_key=api_key,
            prompt_api_key=prompt_api_key,
            store_api_key=store_api_key,
        )
    except Exception as exc:
        exit_with_command_error("translate", exc)
    _run_job("translate", config, source, target, log_level)


@app.command("transform")
def transform_command(
    source: SourceArgument,
    target: TargetArgument,
    prompt: Annotated[
        str | None,
        typer.Option(
            "--prompt",
            help="User prompt; `{{ .TextToInject }}` marks where the chunk goes.",
        ),
    ] = None,
    system_prompt: Annotated[
        str | None, typer.Option("--system-prompt", help="System instruction.")
    ] = None,
    prefill: Annotated[
        str | None,
        typer.Option("--prefill", help="Assistant text the model continues from."),
    ] = None,
    image: Annotated[
        list[Path] | None,
        typer.Option("--image", help="Image attached to every request (repeatable)."),
    ] = None,
    config_file: ConfigOption = None,
    url: UrlOption = None,
    model: ModelOption = None,
    api_key: ApiKeyOption = None,
    prompt_api_key: PromptApiKeyOption = False,
    store_api_key: StoreApiKeyOption = True,
    dialect: DialectOption = None,
    chunk_size: ChunkSizeOption = None,
    parallel: ParallelOption = None,
    wait: WaitOption = None,
    max_attempts: MaxAttemptsOption = None,
    temp_increment: TempIncrementOption = None,
    temperature: TemperatureOption = None,
    stream: StreamOption = None,
    session: SessionOption = None,
    show_reasoning: ShowReasoningOption = None,
    state_dir: StateDirOption = None,
    log_level: LogLevelOption = "INFO",
) -> None:
    """Apply a prompt to SOURCE chunk by chunk and write the results to TARGET."""

    try:
        config = _resolve_command_config(
            mode=TaskMode.TRANSFORM,
            config_file=config_file,
            dialect=dialect,
            chunk_size=chunk_size,
            parallel=parallel,
            wait=wait,
            max_attempts=max_attempts,
            temp_increment=temp_increment,
            temperature=temperature,
            stream=stream,
            session=session,
            show_reasoning=show_reasoning,
            state_dir=state_dir,
            system_prompt=system_prompt,
            prompt=prompt,
            prefill=prefill,
            images=image,
        )
        config = _with_runtime_sources(
            config,
            url=url,
            model=model,
            api_key=api_key,
            prompt_api_key=prompt_api_key,
            store_api_key=store_api_key,
        )
    except Exception as exc:
        exit_with_command_error("transform", exc)
    _run_job("transform", config, source, target, log_level)


@progress_app.command("list")
def progress_list_command(state_dir: StateDirOption = None) -> None:
    """List saved progress records."""

    try:
        store = ProgressStore(resolve_state_dir(state_dir))
        entries = store.list_entries()
        locked = {entry.source_key for entry in entries if store.is_locked(entry.source_key)}
    except Exception as exc:
        exit_with_command_error("progress list", exc)
    echo_progress_entries(entries, locked)


@progress_app.command("rm")
def progress_rm_command(
    source: Annotated[
        Path | None, typer.Argument(help="Source file whose progress should be discarded.")
    ] = None,
    all_entries: Annotated[
        bool, typer.Option("--all", help="Discard every saved progress record.")
    ] = False,
    force: Annotated[
        bool,
        typer.Option("--force", help="Also remove the lock left by a crashed run."),
    ] = False,
    state_dir: StateDirOption = None,
) -> None:
    """Discard saved progress for SOURCE, or for everything with `--all`."""

    if (source is None) == (not all_entries):
        exit_with_command_error(
            "progress rm",
            ConfigurationError(
                stage="progress",
                detail="Provide exactly one of `<source>` or `--all`.",
                hint="Use `chunkrelay progress list` to see saved records.",
            ),
        )
    try:
        store = ProgressStore(resolve_state_dir(state_dir))
        if source is None:
            removed = store.remove_all()
            typer.echo(f"Removed {removed} progress record(s).")
            return
        key = _source_key_or_error(source)
        if store.is_locked(key):
            if not force:
                raise ConfigurationError(
                    stage="progress",
                    kind="job_locked",
                    detail=f"A run for `{source}` is active or crashed while holding its lock.",
                    hint="Stop the other run, or rerun with `--force` if it crashed.",
                )
            store.break_lock(key)
        if store.remove(key):
            typer.echo(f"Removed progress for `{source}`.")
        else:
            typer.echo(f"No saved progress for `{source}`.")
    except (EngineError, OSError) as exc:
        exit_with_command_error("progress rm", exc)


def _source_key_or_error(source: Path) -> str:
    try:
        return source_key_for_file(source)
    except FileNotFoundError as exc:
        raise SourceFileError(
            stage="progress",
            detail=f"Source file `{source}` does not exist.",
        ) from exc
    except (OSError, UnicodeDecodeError) as exc:
        raise SourceFileError(
            stage="progress",
            kind="source_unreadable",
            detail=f"Source file `{source}` could not be read as UTF-8: {exc}",
        ) from exc


@app.command("credentials")
def credentials_command(
    set_api_key: Annotated[
        bool,
        typer.Option(
            "--set-api-key",
            help="Prompt for API key with hidden input and store it securely.",
        ),
    ] = False,
    clear_api_key: Annotated[
        bool,
        typer.Option(
            "--clear-api-key",
            help="Clear stored API key from secure credential storage.",
        ),
    ] = False,
) -> None:
    """Manage securely stored CLI credentials."""

    if set_api_key and clear_api_key:
        exit_with_command_error(
            "credentials",
            ConfigurationError(
                stage="credentials",
                detail="`--set-api-key` and `--clear-api-key` cannot be used together.",
                hint="Run one credentials action per command invocation.",
            ),
        )
    credential_store = create_credential_store()
    if set_api_key:
        prompted_api_key = normalize_optional_string(
            typer.prompt(
                "API key (hidden input)",
                default="",
                hide_input=True,
                show_default=False,
            )
        )
        if prompted_api_key is None:
            exit_with_command_error(
                "credentials",
                ConfigurationError(
                    stage="credentials",
                    detail="API key input was empty.",
                    hint="Rerun `chunkrelay credentials --set-api-key` and enter a key.",
                ),
            )
        try:
            credential_store.set_api_key(prompted_api_key)
        except Exception as exc:
            exit_with_command_error(
                "credentials",
                ConfigurationError(
                    stage="credentials",
                    kind="credentials_unavailable",
                    detail=f"Failed to store API key securely: {exc}",
                    hint="Install and configure a keyring backend, then retry.",
                ),
            )
        typer.echo("API key stored in secure credential storage.")
        return

    if clear_api_key:
        removed = credential_store.clear_api_key()
        if removed:
            typer.echo("Stored API key cleared from secure credential storage.")
        else:
            typer.echo("No stored API key found in secure credential storage.")
        return

    availability = "available" if credential_store.is_available() else "unavailable"
    has_stored_key = credential_store.get_api_key() is not None
    status = "present" if has_stored_key else "not set"
    typer.echo(f"Secure credential storage: {availability}")
    typer.echo(f"Stored API key: {status}")


def main() -> None:
    """CLI entrypoint for console scripts."""
    app()


if __name__ == "__main__":
    main()

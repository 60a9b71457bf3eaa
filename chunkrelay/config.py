"""Configuration model and loaders for chunkrelay.

Responsibilities:
- Define run configuration as a typed dataclass with range validation.
- Provide deterministic precedence resolution for endpoint, model, and API key.
- Provide the YAML loader and image-file encoding used by the CLI.

Key types:
- `RunConfig`: settings for one batch job.
- `RuntimeSettings`: resolved endpoint values for one run.
- `RuntimeConfigSources`: optional value sources for precedence resolution.
- `ConfigLoader`: static construction helpers for `RunConfig`.
"""

from __future__ import annotations

import base64
from dataclasses import dataclass, field
import os
from pathlib import Path
from typing import Any, Mapping, Sequence
from urllib.parse import urlparse

import yaml

from .llm.backends import Dialect, resolve_dialect
from .llm.executor import RetryPolicy
from .llm.prompts import PromptSet, TaskMode
from .llm.reasoning import ReasoningPreference
from .models.datatypes import GenerationParams, ParamSetting, PromptSetting
from .parsing import (
    normalize_optional_string,
    parse_integer,
    parse_number,
    parse_permissive_boolean,
    require_range,
)

DEFAULT_URL = "http://localhost:8080/v1/chat/completions"
DEFAULT_MODEL = "default"
DEFAULT_CHUNK_SIZE = 2000
DEFAULT_CONCURRENCY = 2
DEFAULT_MAX_SOURCE_MB = 50.0
DEFAULT_STATE_DIR = Path("~/.local/state/chunkrelay")
STATE_DIR_ENV_KEY = "CHUNKRELAY_STATE_DIR"

_REASONING_EFFORTS = frozenset({"none", "low", "medium", "high", "xhigh"})
_IMAGE_MIME_TYPES = {
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".gif": "image/gif",
    ".webp": "image/webp",
}


@dataclass(frozen=True, slots=True)
class RuntimeConfigSources:
    """Source mappings used for deterministic runtime value precedence.

    Attributes:
        cli: Values explicitly provided by CLI arguments.
        secure: Values loaded from secure local credential storage.
        env: Values loaded from environment variables.
    """

    cli: Mapping[str, str] = field(default_factory=dict)
    secure: Mapping[str, str] = field(default_factory=dict)
    env: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class RuntimeSettings:
    """Resolved endpoint values for one run.

    Attributes:
        url: Endpoint URL requests are posted to.
        model: Model identifier.
        dialect: Wire dialect, explicit or inferred from `url`.
        api_key: Optional bearer token (resolved but never persisted).
    """

    url: str
    model: str
    dialect: Dialect
    api_key: str | None = None

    def as_metadata(self) -> dict[str, str]:
        """Return non-secret runtime values safe to persist."""

        return {"url": self.url, "model": self.model, "dialect": self.dialect.value}


def build_prompt_set(
    base: PromptSet,
    *,
    system: str | None = None,
    prompt: str | None = None,
    prefill: str | None = None,
) -> PromptSet:
    """Return `base` with any explicitly given prompt slots replaced."""

    return PromptSet(
        system=base.system if system is None else PromptSetting(True, system, "system"),
        prepend=base.prepend if prompt is None else PromptSetting(True, prompt, "user"),
        prefill=(
            base.prefill if prefill is None else PromptSetting(True, prefill, "assistant")
        ),
    )


def encode_image_file(path: Path) -> str:
    """Read an image file and return it as a base64 `data:` URI.

    Raises:
        ValueError: If the extension is not a supported image type.
        OSError: If the file cannot be read.
    """

    mime = _IMAGE_MIME_TYPES.get(path.suffix.lower())
    if mime is None:
        supported = ", ".join(sorted(_IMAGE_MIME_TYPES))
        raise ValueError(f"Unsupported image type `{path.suffix}`; supported: {supported}.")
    encoded = base64.b64encode(path.read_bytes()).decode("ascii")
    return f"data:{mime};base64,{encoded}"


def resolve_state_dir(configured: Path | None, env: Mapping[str, str] | None = None) -> Path:
    """Return the progress directory: config value, then env, then default."""

    if configured is not None:
        return configured.expanduser()
    env_map: Mapping[str, str] = os.environ if env is None else env
    env_value = normalize_optional_string(env_map.get(STATE_DIR_ENV_KEY))
    if env_value is not None:
        return Path(env_value).expanduser()
    return DEFAULT_STATE_DIR.expanduser()


@dataclass(slots=True)
class RunConfig:
    """Configuration for one batch job.

    Attributes:
        url: Endpoint URL default (overridable by CLI, keyring, env).
        model: Model identifier default.
        api_key: Optional API key default.
        dialect: Explicit wire dialect; inferred from the URL when `None`.
        mode: Translate or transform.
        params: Optional generation parameters.
        prompts: Prompt slots; `None` means the mode's defaults.
        source_language: Source language name for translate prompts.
        target_language: Target language name for translate prompts.
        context_info: Optional background text injected into translate prompts.
        images: Image `data:` URIs attached to every user message.
        chunk_size: Maximum chunk length in characters.
        concurrency: Maximum chunk exchanges in flight.
        inter_request_delay: Minimum seconds between request starts.
        retry: Retry and temperature escalation policy.
        timeout_seconds: Per-attempt wall-clock budget.
        stream: Ask the backend for streamed responses.
        session_mode: Carry the previous turn and its reasoning into each request.
        show_reasoning: Include revealed reasoning text in the output.
        reasoning_preference: Reasoning form replayed in session mode.
        max_source_mb: Largest accepted source file in megabytes.
        state_dir: Progress directory override.
        runtime_sources: Optional runtime source overrides injected by CLI.
    """

    url: str = DEFAULT_URL
    model: str = DEFAULT_MODEL
    api_key: str | None = None
    dialect: Dialect | None = None
    mode: TaskMode = TaskMode.TRANSFORM
    params: GenerationParams = field(default_factory=GenerationParams)
    prompts: PromptSet | None = None
    source_language: str = "English"
    target_language: str = ""
    context_info: str | None = None
    images: tuple[str, ...] = ()
    chunk_size: int = DEFAULT_CHUNK_SIZE
    concurrency: int = DEFAULT_CONCURRENCY
    inter_request_delay: float = 0.0
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    timeout_seconds: float = 600.0
    stream: bool = True
    session_mode: bool = False
    show_reasoning: bool = False
    reasoning_preference: ReasoningPreference = ReasoningPreference.ENCRYPTED
    max_source_mb: float = DEFAULT_MAX_SOURCE_MB
    state_dir: Path | None = None
    runtime_sources: RuntimeConfigSources = field(default_factory=RuntimeConfigSources)

    @property
    def effective_prompts(self) -> PromptSet:
        return self.prompts if self.prompts is not None else PromptSet.defaults_for(self.mode)

    @property
    def effective_concurrency(self) -> int:
        """Concurrency actually used; session mode is strictly sequential."""

        return 1 if self.session_mode else self.concurrency

    def validate(self) -> None:
        """Validate configuration values before any file or network activity."""

        require_range(self.chunk_size, "chunk_size", minimum=1, maximum=200_000)
        require_range(self.concurrency, "concurrency", minimum=1, maximum=64)
        require_range(self.inter_request_delay, "inter_request_delay", minimum=0)
        require_range(self.timeout_seconds, "timeout_seconds", minimum=1)
        require_range(self.max_source_mb, "max_source_mb", minimum=0.001)
        self.retry.validate()
        self._validate_params(self.params)
        for image in self.images:
            if not image.startswith("data:"):
                raise ValueError("Images must be `data:` URIs.")

    def validate_runtime(self, runtime: RuntimeSettings) -> None:
        """Validate resolved endpoint values and inputs only known once overrides apply."""

        parsed = urlparse(runtime.url)
        if parsed.scheme not in {"http", "https"} or not parsed.netloc:
            raise ValueError(f"`url` must be an http(s) URL, got `{runtime.url}`.")
        self._require_non_empty(runtime.model, "model")
        if runtime.dialect is Dialect.LEGACY and self.images:
            raise ValueError("The legacy completions dialect cannot carry images.")
        if self.mode is TaskMode.TRANSLATE and not self.target_language.strip():
            raise ValueError("`target_language` is required in translate mode.")

    def resolved_runtime(self, sources: RuntimeConfigSources | None = None) -> RuntimeSettings:
        """Resolve endpoint settings with deterministic source precedence.

        Precedence for each key is:
        `cli` > `secure` > `env` > config field default.
        """

        resolved_sources = sources if sources is not None else self.runtime_sources
        url = self._resolve_runtime_value(
            key="url", env_key="CHUNKRELAY_URL", default_value=self.url, sources=resolved_sources
        )
        model = self._resolve_runtime_value(
            key="model",
            env_key="CHUNKRELAY_MODEL",
            default_value=self.model,
            sources=resolved_sources,
        )
        api_key = self._resolve_optional_runtime_value(
            key="api_key",
            env_key="CHUNKRELAY_API_KEY",
            default_value=self.api_key,
            sources=resolved_sources,
        )
        return RuntimeSettings(
            url=url,
            model=model,
            dialect=resolve_dialect(url, self.dialect),
            api_key=api_key,
        )

    def fingerprint_fields(self, runtime: RuntimeSettings) -> dict[str, Any]:
        """Return the fields whose change makes earlier output incompatible."""

        return {
            "model": runtime.model,
            "prompts": self.effective_prompts.as_json(),
            "chunkSize": self.chunk_size,
            "sourceLanguage": self.source_language,
            "targetLanguage": self.target_language,
            "mode": self.mode.value,
            "dialect": runtime.dialect.value,
        }

    def persisted_fields(self, runtime: RuntimeSettings) -> dict[str, Any]:
        """Return the non-secret resolved configuration stored with progress."""

        return {
            **runtime.as_metadata(),
            "mode": self.mode.value,
            "chunkSize": self.chunk_size,
            "parallel": self.effective_concurrency,
            "delaySeconds": self.inter_request_delay,
            "sourceLanguage": self.source_language,
            "targetLanguage": self.target_language,
            "prompts": self.effective_prompts.as_json(),
            "params": self.params.as_json(),
            "maxAttempts": self.retry.max_attempts,
            "tempIncrement": self.retry.temp_increment,
            "session": self.session_mode,
            "stream": self.stream,
        }

    @staticmethod
    def _validate_params(params: GenerationParams) -> None:
        ranges: dict[str, tuple[float, float]] = {
            "temperature": (0.0, 2.0),
            "top_p": (0.0, 1.0),
            "top_k": (0, 1000),
            "presence_penalty": (-2.0, 2.0),
        }
        for name, (minimum, maximum) in ranges.items():
            setting: ParamSetting[Any] = getattr(params, name)
            if setting.enabled:
                require_range(
                    parse_number(setting.value, name), name, minimum=minimum, maximum=maximum
                )
        if params.top_k.enabled:
            parse_integer(params.top_k.value, "top_k")
        if params.seed.enabled:
            require_range(parse_integer(params.seed.value, "seed"), "seed", minimum=1)
        if params.reasoning_effort.enabled and params.reasoning_effort.value not in (
            _REASONING_EFFORTS
        ):
            supported = ", ".join(sorted(_REASONING_EFFORTS))
            raise ValueError(f"`reasoning_effort` must be one of: {supported}.")
        if params.chat_template_kwargs.enabled and not isinstance(
            params.chat_template_kwargs.value, Mapping
        ):
            raise ValueError("`chat_template_kwargs` must be a mapping.")
        if params.enable_thinking.enabled and not isinstance(params.enable_thinking.value, bool):
            raise ValueError("`enable_thinking` must be a boolean.")

    def _resolve_runtime_value(
        self,
        key: str,
        env_key: str,
        default_value: str | None,
        sources: RuntimeConfigSources,
    ) -> str:
        """Resolve a runtime value from sources in deterministic precedence order."""

        resolved = self._resolve_optional_runtime_value(key, env_key, default_value, sources)
        if resolved is None:
            raise ValueError(
                f"`{key}` could not be resolved from CLI, secure storage, env, or defaults."
            )
        return resolved

    def _resolve_optional_runtime_value(
        self,
        key: str,
        env_key: str,
        default_value: str | None,
        sources: RuntimeConfigSources,
    ) -> str | None:
        """Resolve an optional runtime value from sources in deterministic order."""

        cli_value = self._normalized_lookup(sources.cli, key)
        if cli_value is not None:
            return cli_value

        secure_value = self._normalized_lookup(sources.secure, key)
        if secure_value is not None:
            return secure_value

        env_value = self._normalized_lookup(sources.env, env_key)
        if env_value is not None:
            return env_value

        return normalize_optional_string(default_value)

    @staticmethod
    def _normalized_lookup(mapping: Mapping[str, str], key: str) -> str | None:
        """Return a stripped mapping value for a key or `None` when missing/blank."""

        if key not in mapping:
            return None
        return normalize_optional_string(mapping.get(key))

    @staticmethod
    def _require_non_empty(value: str, field_name: str) -> None:
        if not isinstance(value, str) or not value.strip():
            raise ValueError(f"`{field_name}` must be a non-empty string.")


class ConfigLoader:
    """Factory methods for creating `RunConfig` from external sources."""

    _SUPPORTED_YAML_KEYS = frozenset(
        {
            "url",
            "model",
            "api_key",
            "dialect",
            "mode",
            "params",
            "system_prompt",
            "prompt",
            "prefill",
            "source_language",
            "target_language",
            "context",
            "images",
            "chunk_size",
            "concurrency",
            "inter_request_delay",
            "max_attempts",
            "temp_increment",
            "max_temperature",
            "retry_delay",
            "timeout_seconds",
            "stream",
            "session",
            "show_reasoning",
            "reasoning_preference",
            "max_source_mb",
            "state_dir",
        }
    )
    _SUPPORTED_PARAM_KEYS = frozenset(
        {
            "temperature",
            "top_p",
            "top_k",
            "presence_penalty",
            "seed",
            "reasoning_effort",
            "chat_template_kwargs",
            "enable_thinking",
        }
    )
    _RUNTIME_ENV_KEYS = frozenset({"CHUNKRELAY_URL", "CHUNKRELAY_MODEL", "CHUNKRELAY_API_KEY"})

    @staticmethod
    def from_yaml(path: Path, *, mode: TaskMode | None = None) -> RunConfig:
        """Create a validated config from a YAML run file.

        A given `mode` takes precedence over the file's own `mode` key.
        """

        path_text = path.read_text(encoding="utf-8")
        payload = ConfigLoader._parse_yaml_payload(path_text, path)
        return ConfigLoader.from_mapping(payload, source_label=f"YAML `{path}`", mode=mode)

    @staticmethod
    def runtime_env(env: Mapping[str, str] | None = None) -> dict[str, str]:
        """Return the non-blank runtime environment overrides."""

        env_map: Mapping[str, str] = os.environ if env is None else env
        return {
            key: value
            for key, value in env_map.items()
            if key in ConfigLoader._RUNTIME_ENV_KEYS
            and normalize_optional_string(value) is not None
        }

    @staticmethod
    def _parse_yaml_payload(raw_text: str, path: Path) -> Mapping[str, Any]:
        """Parse YAML text and enforce a mapping root payload."""

        try:
            payload = yaml.safe_load(raw_text)
        except yaml.YAMLError as exc:
            raise ValueError(f"YAML config `{path}` is not valid YAML: {exc}") from exc
        if payload is None:
            payload = {}
        if not isinstance(payload, Mapping):
            raise ValueError(f"YAML config `{path}` must contain a top-level mapping/object.")
        return payload

    @staticmethod
    def from_mapping(
        payload: Mapping[str, Any], source_label: str, *, mode: TaskMode | None = None
    ) -> RunConfig:
        """Build a validated config from a normalized mapping payload."""

        unknown = sorted(set(payload).difference(ConfigLoader._SUPPORTED_YAML_KEYS))
        if unknown:
            raise ValueError(f"{source_label} includes unsupported key(s): {', '.join(unknown)}.")

        def text(key: str) -> str | None:
            return ConfigLoader._optional_non_empty_string(payload, key)

        file_mode = ConfigLoader._optional_enum(payload, "mode", TaskMode, source_label)
        mode = mode or file_mode or TaskMode.TRANSFORM
        dialect = ConfigLoader._optional_enum(payload, "dialect", Dialect, source_label)
        preference = ConfigLoader._optional_enum(
            payload, "reasoning_preference", ReasoningPreference, source_label
        )
        defaults = RetryPolicy()
        retry = RetryPolicy(
            max_attempts=ConfigLoader._optional_positive_int(
                payload, "max_attempts", source_label, default=defaults.max_attempts
            ),
            temp_increment=ConfigLoader._optional_number(
                payload, "temp_increment", source_label, default=defaults.temp_increment
            ),
            max_temperature=ConfigLoader._optional_number(
                payload, "max_temperature", source_label, default=defaults.max_temperature
            ),
            retry_delay_seconds=ConfigLoader._optional_number(
                payload, "retry_delay", source_label, default=defaults.retry_delay_seconds
            ),
        )
        state_dir = text("state_dir")

        config = RunConfig(
            url=text("url") or DEFAULT_URL,
            model=text("model") or DEFAULT_MODEL,
            api_key=text("api_key"),
            dialect=dialect,
            mode=mode,
            params=ConfigLoader._optional_params(payload, "params", source_label),
            prompts=build_prompt_set(
                PromptSet.defaults_for(mode),
                system=ConfigLoader._optional_raw_string(payload, "system_prompt", source_label),
                prompt=ConfigLoader._optional_raw_string(payload, "prompt", source_label),
                prefill=ConfigLoader._optional_raw_string(payload, "prefill", source_label),
            ),
            source_language=text("source_language") or "English",
            target_language=text("target_language") or "",
            context_info=text("context"),
            images=ConfigLoader._optional_string_list(payload, "images", source_label),
            chunk_size=ConfigLoader._optional_positive_int(
                payload, "chunk_size", source_label, default=DEFAULT_CHUNK_SIZE
            ),
            concurrency=ConfigLoader._optional_positive_int(
                payload, "concurrency", source_label, default=DEFAULT_CONCURRENCY
            ),
            inter_request_delay=ConfigLoader._optional_number(
                payload, "inter_request_delay", source_label, default=0.0
            ),
            retry=retry,
            timeout_seconds=ConfigLoader._optional_number(
                payload, "timeout_seconds", source_label, default=600.0
            ),
            stream=ConfigLoader._optional_boolean(payload, "stream", source_label, default=True),
            session_mode=ConfigLoader._optional_boolean(
                payload, "session", source_label, default=False
            ),
            show_reasoning=ConfigLoader._optional_boolean(
                payload, "show_reasoning", source_label, default=False
            ),
            reasoning_preference=preference or ReasoningPreference.ENCRYPTED,
            max_source_mb=ConfigLoader._optional_number(
                payload, "max_source_mb", source_label, default=DEFAULT_MAX_SOURCE_MB
            ),
            state_dir=Path(state_dir) if state_dir is not None else None,
        )
        config.validate()
        return config

    @staticmethod
    def _optional_non_empty_string(payload: Mapping[str, Any], key: str) -> str | None:
        """Read an optional string field and normalize blank values to `None`."""

        if key not in payload:
            return None
        return normalize_optional_string(payload[key])

    @staticmethod
    def _optional_raw_string(
        payload: Mapping[str, Any], key: str, source_label: str
    ) -> str | None:
        """Read an optional prompt string verbatim; an empty string disables the slot."""

        if key not in payload or payload[key] is None:
            return None
        value = payload[key]
        if not isinstance(value, str):
            raise ValueError(f"{source_label} field `{key}` must be a string.")
        return value

    @staticmethod
    def _optional_enum(
        payload: Mapping[str, Any], key: str, enum_type: type, source_label: str
    ) -> Any:
        value = normalize_optional_string(payload.get(key))
        if value is None:
            return None
        try:
            return enum_type(value.lower())
        except ValueError as exc:
            supported = ", ".join(member.value for member in enum_type)
            raise ValueError(
                f"{source_label} field `{key}` must be one of: {supported}."
            ) from exc

    @staticmethod
    def _optional_positive_int(
        payload: Mapping[str, Any], key: str, source_label: str, default: int
    ) -> int:
        """Read and validate a positive integer payload field."""

        if key not in payload or normalize_optional_string(payload[key]) is None:
            return default
        try:
            parsed = parse_integer(payload[key], key)
        except ValueError as exc:
            raise ValueError(f"{source_label} field `{key}` must be a positive integer.") from exc
        if parsed <= 0:
            raise ValueError(f"{source_label} field `{key}` must be a positive integer.")
        return parsed

    @staticmethod
    def _optional_number(
        payload: Mapping[str, Any], key: str, source_label: str, default: float
    ) -> float:
        if key not in payload or normalize_optional_string(payload[key]) is None:
            return default
        try:
            return parse_number(payload[key], key)
        except ValueError as exc:
            raise ValueError(f"{source_label} field `{key}` must be a number.") from exc

    @staticmethod
    def _optional_boolean(
        payload: Mapping[str, Any], key: str, source_label: str, default: bool
    ) -> bool:
        """Read and validate a boolean field from a payload."""

        if key not in payload:
            return default

        parsed = parse_permissive_boolean(payload[key])
        if parsed is None:
            raise ValueError(
                f"{source_label} field `{key}` must be a boolean value "
                "(`true`/`false`, `1`/`0`, `yes`/`no`)."
            )
        return parsed

    @staticmethod
    def _optional_string_list(
        payload: Mapping[str, Any], key: str, source_label: str
    ) -> tuple[str, ...]:
        raw = payload.get(key)
        if raw is None:
            return ()
        if isinstance(raw, str) or not isinstance(raw, Sequence):
            raise ValueError(f"{source_label} field `{key}` must be a list of strings.")
        values: list[str] = []
        for item in raw:
            value = normalize_optional_string(item)
            if value is None:
                raise ValueError(f"{source_label} field `{key}` contains a blank entry.")
            values.append(value)
        return tuple(values)

    @staticmethod
    def _optional_params(
        payload: Mapping[str, Any], key: str, source_label: str
    ) -> GenerationParams:
        """Read the `params` mapping; a present non-null value enables the parameter."""

        raw = payload.get(key)
        if raw is None:
            return GenerationParams()
        if not isinstance(raw, Mapping):
            raise ValueError(f"{source_label} field `{key}` must be a mapping/object.")
        unknown = sorted(set(raw).difference(ConfigLoader._SUPPORTED_PARAM_KEYS))
        if unknown:
            raise ValueError(
                f"{source_label} field `{key}` includes unsupported key(s): {', '.join(unknown)}."
            )

        def setting(name: str, parse: Any = None) -> ParamSetting[Any]:
            if raw.get(name) is None:
                return ParamSetting.off()
            value = raw[name]
            try:
                return ParamSetting.on(parse(value, name) if parse is not None else value)
            except ValueError as exc:
                raise ValueError(f"{source_label} field `{key}.{name}`: {exc}") from exc

        def boolean(value: object, name: str) -> bool:
            parsed = parse_permissive_boolean(value)
            if parsed is None:
                raise ValueError(f"`{name}` must be a boolean value.")
            return parsed

        def effort(value: object, name: str) -> str:
            normalized = normalize_optional_string(value)
            if normalized is None:
                raise ValueError(f"`{name}` must not be blank.")
            return normalized.lower()

        return GenerationParams(
            temperature=setting("temperature", parse_number),
            top_p=setting("top_p", parse_number),
            top_k=setting("top_k", parse_integer),
            presence_penalty=setting("presence_penalty", parse_number),
            seed=setting("seed", parse_integer),
            reasoning_effort=setting("reasoning_effort", effort),
            chat_template_kwargs=setting("chat_template_kwargs"),
            enable_thinking=setting("enable_thinking", boolean),
        )

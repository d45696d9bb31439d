from __future__ import annotations

import json
import os
import tomllib
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

from swarm.errors import ConfigError
from swarm.pipeline_config import (
    DEFAULT_PIPELINE_DOCUMENT,
    PipelineConfig,
    parse_pipeline_config,
)

BackendName = Literal["claude", "codex", "codex_sdk"]
BACKEND_NAMES: tuple[str, ...] = ("claude", "codex", "codex_sdk")
DEFAULT_CONFIG_FILE = "swarm.toml"


@dataclass(slots=True)
class BackendConfig:
    primary: BackendName = "claude"
    fallback: BackendName = "codex"
    max_retries: int = 1
    retry_backoff_seconds: float = 0.5


@dataclass(slots=True)
class RuntimeConfig:
    swarm_dir: str = ".swarm"
    agents_dir: str = ".github/agents"
    session_timeout_seconds: float = 300.0
    max_retries: int = 2
    max_auto_resume: int = 3
    verbose: bool = False


@dataclass(slots=True)
class SwarmConfig:
    backend: BackendConfig = field(default_factory=BackendConfig)
    runtime: RuntimeConfig = field(default_factory=RuntimeConfig)
    pipeline: PipelineConfig = field(
        default_factory=lambda: parse_pipeline_config(DEFAULT_PIPELINE_DOCUMENT)
    )

    @classmethod
    def default(cls) -> SwarmConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> SwarmConfig:
        backend = _section(BackendConfig, data, "backend")
        if backend.primary not in BACKEND_NAMES or backend.fallback not in BACKEND_NAMES:
            raise ConfigError(
                f"backend: primary/fallback must be one of {', '.join(BACKEND_NAMES)}"
            )
        pipeline_keys = ("primary_model", "review_model", "agents", "pipeline", "verify")
        if "pipeline" in data:
            pipeline = parse_pipeline_config({key: data[key] for key in pipeline_keys if key in data})
        else:
            document = dict(DEFAULT_PIPELINE_DOCUMENT)
            document.update({key: data[key] for key in pipeline_keys if key in data})
            pipeline = parse_pipeline_config(document)
        return cls(
            backend=backend,
            runtime=_section(RuntimeConfig, data, "runtime"),
            pipeline=pipeline,
        )

    def to_dict(self) -> dict[str, Any]:
        payload = self.pipeline.to_dict()
        return {
            "primary_model": payload["primary_model"],
            "review_model": payload["review_model"],
            "backend": {
                "primary": self.backend.primary,
                "fallback": self.backend.fallback,
                "max_retries": self.backend.max_retries,
                "retry_backoff_seconds": self.backend.retry_backoff_seconds,
            },
            "runtime": {
                "swarm_dir": self.runtime.swarm_dir,
                "agents_dir": self.runtime.agents_dir,
                "session_timeout_seconds": self.runtime.session_timeout_seconds,
                "max_retries": self.runtime.max_retries,
                "max_auto_resume": self.runtime.max_auto_resume,
                "verbose": self.runtime.verbose,
            },
            "agents": payload["agents"],
            "verify": payload.get("verify", {}),
            "pipeline": payload["pipeline"],
        }


def _section(section_type: type, data: Mapping[str, Any], name: str) -> Any:
    raw = data.get(name, {})
    if not isinstance(raw, Mapping):
        raise ConfigError(f"[{name}] must be a table")
    try:
        return section_type(**raw)
    except TypeError as exc:
        raise ConfigError(f"[{name}] has unsupported keys: {exc}") from exc


def _env_int(name: str, minimum: int) -> int | None:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return None
    try:
        value = int(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from exc
    if value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got {value}")
    return value


def apply_env_overrides(config: SwarmConfig) -> SwarmConfig:
    """Apply environment overrides on top of a loaded configuration."""
    primary_model = os.environ.get("PRIMARY_MODEL", "").strip() or None
    review_model = os.environ.get("REVIEW_MODEL", "").strip() or None
    if primary_model or review_model:
        config.pipeline = config.pipeline.with_models(
            primary_model=primary_model, review_model=review_model
        )

    swarm_dir = os.environ.get("SWARM_DIR", "").strip()
    if swarm_dir:
        config.runtime.swarm_dir = swarm_dir
    agents_dir = os.environ.get("AGENTS_DIR", "").strip()
    if agents_dir:
        config.runtime.agents_dir = agents_dir

    timeout_raw = os.environ.get("SESSION_TIMEOUT_SECONDS", "").strip()
    if timeout_raw:
        try:
            timeout = float(timeout_raw)
        except ValueError as exc:
            raise ConfigError(
                f"SESSION_TIMEOUT_SECONDS must be a number, got {timeout_raw!r}"
            ) from exc
        if timeout <= 0:
            raise ConfigError("SESSION_TIMEOUT_SECONDS must be positive")
        config.runtime.session_timeout_seconds = timeout

    max_retries = _env_int("MAX_RETRIES", 1)
    if max_retries is not None:
        config.runtime.max_retries = max_retries
    max_auto_resume = _env_int("MAX_AUTO_RESUME", 0)
    if max_auto_resume is not None:
        config.runtime.max_auto_resume = max_auto_resume

    if os.environ.get("VERBOSE", "").strip().lower() in {"1", "true", "yes"}:
        config.runtime.verbose = True
    return config


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        return rendered if rendered else "0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def _toml_key(key: str) -> str:
    if key.replace("-", "").replace("_", "").isalnum():
        return key
    return json.dumps(key, ensure_ascii=False)


def _dump_table(lines: list[str], header: str, table: Mapping[str, Any]) -> None:
    nested: list[tuple[str, Any]] = []
    lines.append(header)
    for key, value in table.items():
        if isinstance(value, Mapping) or (
            isinstance(value, list) and value and isinstance(value[0], Mapping)
        ):
            nested.append((key, value))
            continue
        lines.append(f"{_toml_key(key)} = {_toml_value(value)}")
    lines.append("")
    name = header.strip("[]")
    for key, value in nested:
        if isinstance(value, Mapping):
            _dump_table(lines, f"[{name}.{key}]", value)
        else:
            for item in value:
                _dump_table(lines, f"[[{name}.{key}]]", item)


def dumps_toml(config: SwarmConfig) -> str:
    data = config.to_dict()
    lines = [
        f"primary_model = {_toml_value(data['primary_model'])}",
        f"review_model = {_toml_value(data['review_model'])}",
        "",
    ]
    for section in ("backend", "runtime", "agents"):
        _dump_table(lines, f"[{section}]", data[section])
    if data["verify"]:
        _dump_table(lines, "[verify]", data["verify"])
    for phase in data["pipeline"]:
        _dump_table(lines, "[[pipeline]]", phase)
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path, *, env: bool = True) -> SwarmConfig:
    if not path.exists():
        config = SwarmConfig.default()
    else:
        try:
            raw = tomllib.loads(path.read_text(encoding="utf-8"))
        except tomllib.TOMLDecodeError as exc:
            raise ConfigError(f"Invalid TOML in {path}: {exc}") from exc
        config = SwarmConfig.from_dict(raw)
    return apply_env_overrides(config) if env else config


def save_config(path: Path, config: SwarmConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")

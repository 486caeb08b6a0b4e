from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

BackendName = Literal["claude", "openai"]
StateBackendName = Literal["notes", "local"]


@dataclass(slots=True)
class ProjectConfig:
    name: str = "my-pipeline"
    registry_file: str = ""


@dataclass(slots=True)
class BackendConfig:
    primary: BackendName = "claude"
    fallback: BackendName = "openai"
    max_retries: int = 1
    retry_backoff_seconds: float = 0.5
    timeout_seconds: float = 90.0


@dataclass(slots=True)
class AgentsConfig:
    model: str = "claude-sonnet-4-5"
    critic_model: str = "claude-sonnet-4-5"


@dataclass(slots=True)
class CheckerConfig:
    enabled: bool = True
    artifact_truncate_chars: int = 2000


@dataclass(slots=True)
class EngineConfig:
    enable_parallel: bool = True
    fallback_to_sequential: bool = True
    require_artifacts_on_advance: bool = True
    max_rollback_depth: int = 0


@dataclass(slots=True)
class StateConfig:
    backend: StateBackendName = "local"


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"
    file: str = ""


@dataclass(slots=True)
class PhasegateConfig:
    project: ProjectConfig = field(default_factory=ProjectConfig)
    backend: BackendConfig = field(default_factory=BackendConfig)
    agents: AgentsConfig = field(default_factory=AgentsConfig)
    checker: CheckerConfig = field(default_factory=CheckerConfig)
    engine: EngineConfig = field(default_factory=EngineConfig)
    state: StateConfig = field(default_factory=StateConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def default(cls) -> PhasegateConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> PhasegateConfig:
        return cls(
            project=ProjectConfig(**data.get("project", {})),
            backend=BackendConfig(**data.get("backend", {})),
            agents=AgentsConfig(**data.get("agents", {})),
            checker=CheckerConfig(**data.get("checker", {})),
            engine=EngineConfig(**data.get("engine", {})),
            state=StateConfig(**data.get("state", {})),
            logging=LoggingConfig(**data.get("logging", {})),
        )

    def to_dict(self) -> dict:
        return {
            "project": {
                "name": self.project.name,
                "registry_file": self.project.registry_file,
            },
            "backend": {
                "primary": self.backend.primary,
                "fallback": self.backend.fallback,
                "max_retries": self.backend.max_retries,
                "retry_backoff_seconds": self.backend.retry_backoff_seconds,
                "timeout_seconds": self.backend.timeout_seconds,
            },
            "agents": {
                "model": self.agents.model,
                "critic_model": self.agents.critic_model,
            },
            "checker": {
                "enabled": self.checker.enabled,
                "artifact_truncate_chars": self.checker.artifact_truncate_chars,
            },
            "engine": {
                "enable_parallel": self.engine.enable_parallel,
                "fallback_to_sequential": self.engine.fallback_to_sequential,
                "require_artifacts_on_advance": self.engine.require_artifacts_on_advance,
                "max_rollback_depth": self.engine.max_rollback_depth,
            },
            "state": {
                "backend": self.state.backend,
            },
            "logging": {
                "level": self.logging.level,
                "file": self.logging.file,
            },
        }


SECTION_ORDER = ["project", "backend", "agents", "checker", "engine", "state", "logging"]


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


def dumps_toml(config: PhasegateConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    for section in SECTION_ORDER:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> PhasegateConfig:
    if not path.exists():
        return PhasegateConfig.default()
    return PhasegateConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: PhasegateConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")

from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

BackendName = Literal["echo", "claude", "openai"]
StepRunnerName = Literal["inline", "worker"]

CONFIG_FILE_NAME = "openplane.toml"


@dataclass(slots=True)
class WorkspaceConfig:
    id: str = "default"
    root: str = "."


@dataclass(slots=True)
class StorageConfig:
    state_dir: str = ".openplane/state"
    lock_timeout_seconds: float = 3.0


@dataclass(slots=True)
class ExecutionConfig:
    step_runner: StepRunnerName = "inline"
    system_prompt: str = "You are executing one step of an approved plan. Answer concisely."


@dataclass(slots=True)
class WorkerConfig:
    python: str = ""
    request_timeout_seconds: float = 120.0
    stream_limit_bytes: int = 8 * 1024 * 1024
    log_level: str = "WARNING"


@dataclass(slots=True)
class ConnectorsConfig:
    startup_grace_seconds: float = 0.2


@dataclass(slots=True)
class BackendConfig:
    primary: BackendName = "echo"
    fallback: BackendName = "echo"
    model: str = "gpt-5-mini"
    max_retries: int = 1
    retry_backoff_seconds: float = 0.5
    timeout_seconds: float = 90.0
    cli_binary: str = "claude"
    openai_base_url: str = ""


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"
    file: str = ".openplane/openplane.log"
    console: bool = False


@dataclass(slots=True)
class OpenPlaneConfig:
    workspace: WorkspaceConfig = field(default_factory=WorkspaceConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    execution: ExecutionConfig = field(default_factory=ExecutionConfig)
    worker: WorkerConfig = field(default_factory=WorkerConfig)
    connectors: ConnectorsConfig = field(default_factory=ConnectorsConfig)
    backend: BackendConfig = field(default_factory=BackendConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def default(cls) -> OpenPlaneConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> OpenPlaneConfig:
        return cls(
            workspace=WorkspaceConfig(**data.get("workspace", {})),
            storage=StorageConfig(**data.get("storage", {})),
            execution=ExecutionConfig(**data.get("execution", {})),
            worker=WorkerConfig(**data.get("worker", {})),
            connectors=ConnectorsConfig(**data.get("connectors", {})),
            backend=BackendConfig(**data.get("backend", {})),
            logging=LoggingConfig(**data.get("logging", {})),
        )

    def to_dict(self) -> dict:
        return {
            "workspace": {
                "id": self.workspace.id,
                "root": self.workspace.root,
            },
            "storage": {
                "state_dir": self.storage.state_dir,
                "lock_timeout_seconds": self.storage.lock_timeout_seconds,
            },
            "execution": {
                "step_runner": self.execution.step_runner,
                "system_prompt": self.execution.system_prompt,
            },
            "worker": {
                "python": self.worker.python,
                "request_timeout_seconds": self.worker.request_timeout_seconds,
                "stream_limit_bytes": self.worker.stream_limit_bytes,
                "log_level": self.worker.log_level,
            },
            "connectors": {
                "startup_grace_seconds": self.connectors.startup_grace_seconds,
            },
            "backend": {
                "primary": self.backend.primary,
                "fallback": self.backend.fallback,
                "model": self.backend.model,
                "max_retries": self.backend.max_retries,
                "retry_backoff_seconds": self.backend.retry_backoff_seconds,
                "timeout_seconds": self.backend.timeout_seconds,
                "cli_binary": self.backend.cli_binary,
                "openai_base_url": self.backend.openai_base_url,
            },
            "logging": {
                "level": self.logging.level,
                "file": self.logging.file,
                "console": self.logging.console,
            },
        }

    def workspace_root(self, base: Path) -> Path:
        root = Path(self.workspace.root).expanduser()
        if not root.is_absolute():
            root = base / root
        return root.resolve()

    def state_dir(self, base: Path) -> Path:
        state_dir = Path(self.storage.state_dir).expanduser()
        if not state_dir.is_absolute():
            state_dir = base / state_dir
        return state_dir.resolve()


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        if not rendered:
            return "0.0"
        return rendered if "." in rendered else f"{rendered}.0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: OpenPlaneConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = [
        "workspace",
        "storage",
        "execution",
        "worker",
        "connectors",
        "backend",
        "logging",
    ]
    for section in section_order:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> OpenPlaneConfig:
    if not path.exists():
        return OpenPlaneConfig.default()
    return OpenPlaneConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: OpenPlaneConfig) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(dumps_toml(config), encoding="utf-8")

from __future__ import annotations

import json
import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path

CONFIG_FILENAME = "taskloop.toml"


@dataclass(slots=True)
class EngineConfig:
    agent_timeout_seconds: float = 1800.0
    check_timeout_seconds: float = 600.0
    pause_seconds: float = 2.0
    max_consecutive_failures: int = 3
    revert_on_failure: bool = False
    commit_type: str = ""


@dataclass(slots=True)
class PathsConfig:
    state_dir: str = ".claude/auto"
    store_file: str = "prd.json"
    progress_file: str = "progress.md"


@dataclass(slots=True)
class AgentsConfig:
    claude: str = "claude"
    codex: str = "codex"
    amp: str = "amp"
    cursor: str = "cursor-agent"

    def binary_for(self, tool: str) -> str:
        return str(getattr(self, tool, tool))


@dataclass(slots=True)
class TaskLoopConfig:
    engine: EngineConfig = field(default_factory=EngineConfig)
    paths: PathsConfig = field(default_factory=PathsConfig)
    agents: AgentsConfig = field(default_factory=AgentsConfig)

    @classmethod
    def default(cls) -> TaskLoopConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> TaskLoopConfig:
        return cls(
            engine=EngineConfig(**data.get("engine", {})),
            paths=PathsConfig(**data.get("paths", {})),
            agents=AgentsConfig(**data.get("agents", {})),
        )

    def to_dict(self) -> dict:
        return {
            "engine": {
                "agent_timeout_seconds": self.engine.agent_timeout_seconds,
                "check_timeout_seconds": self.engine.check_timeout_seconds,
                "pause_seconds": self.engine.pause_seconds,
                "max_consecutive_failures": self.engine.max_consecutive_failures,
                "revert_on_failure": self.engine.revert_on_failure,
                "commit_type": self.engine.commit_type,
            },
            "paths": {
                "state_dir": self.paths.state_dir,
                "store_file": self.paths.store_file,
                "progress_file": self.paths.progress_file,
            },
            "agents": {
                "claude": self.agents.claude,
                "codex": self.agents.codex,
                "amp": self.agents.amp,
                "cursor": self.agents.cursor,
            },
        }

    def state_dir(self, repo_root: Path) -> Path:
        return repo_root / self.paths.state_dir

    def store_path(self, repo_root: Path) -> Path:
        return self.state_dir(repo_root) / self.paths.store_file

    def progress_path(self, repo_root: Path) -> Path:
        return self.state_dir(repo_root) / self.paths.progress_file


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


def dumps_toml(config: TaskLoopConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    for section in ("engine", "paths", "agents"):
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def _apply_env_overrides(config: TaskLoopConfig) -> TaskLoopConfig:
    pause = os.environ.get("PAUSE_SECONDS")
    if pause:
        try:
            config.engine.pause_seconds = float(pause)
        except ValueError:
            pass
    max_failures = os.environ.get("MAX_CONSECUTIVE_FAILURES")
    if max_failures:
        try:
            config.engine.max_consecutive_failures = int(max_failures)
        except ValueError:
            pass
    return config


def load_config(path: Path) -> TaskLoopConfig:
    if not path.exists():
        return _apply_env_overrides(TaskLoopConfig.default())
    config = TaskLoopConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))
    return _apply_env_overrides(config)


def save_config(path: Path, config: TaskLoopConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")

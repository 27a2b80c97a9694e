from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
import tomllib
from typing import cast


DEFAULT_CONFIG_FILENAME = ".auto-pr.toml"


@dataclass(frozen=True)
class RuntimeConfig:
    poll_interval_seconds: int = 30
    max_concurrent: int = 2
    state_dir: str = ".pr-watch-state"
    worktree_dir: str = ".worktrees"


@dataclass(frozen=True)
class RepoConfig:
    issue_labels: tuple[str, ...] = ("auto", "claude")
    base_branch: str | None = None
    full_name: str | None = None


@dataclass(frozen=True)
class AgentConfig:
    command: str = "claude"
    extra_args: tuple[str, ...] = ()


@dataclass(frozen=True)
class DockerConfig:
    enabled: bool = False
    image: str = "auto-pr-worker"
    dockerfile: str | None = None


@dataclass(frozen=True)
class AppConfig:
    runtime: RuntimeConfig = field(default_factory=RuntimeConfig)
    repo: RepoConfig = field(default_factory=RepoConfig)
    agent: AgentConfig = field(default_factory=AgentConfig)
    docker: DockerConfig = field(default_factory=DockerConfig)


class ConfigError(ValueError):
    pass


DEFAULT_CONFIG_TEMPLATE = """\
# auto-pr configuration. Uncomment and edit values as needed; defaults are shown.

[runtime]
# Poll interval in seconds
# poll_interval_seconds = 30
# Max concurrent issue workers
# max_concurrent = 2
# state_dir = ".pr-watch-state"
# worktree_dir = ".worktrees"

[repo]
# Issue labels that trigger processing (comma-separated, any label matches)
# issue_labels = "auto,claude"
# Base branch for new issue branches (default: the repository default branch)
# base_branch = "main"
# full_name = "owner/name"

[agent]
# command = "claude"
# extra_args = []

[docker]
# Run each worker's agent inside its own container
# enabled = false
# image = "auto-pr-worker"
# Lookup order: dockerfile -> <project>/Dockerfile.autopr -> built-in default
# dockerfile = ""
"""


def write_default_config(path: Path) -> bool:
    """Write the commented default template when ``path`` does not exist yet."""
    if path.exists():
        return False
    path.write_text(DEFAULT_CONFIG_TEMPLATE, encoding="utf-8")
    return True


def load_config(path: Path) -> AppConfig:
    if not path.exists():
        return AppConfig()
    with path.open("rb") as fh:
        try:
            data = tomllib.load(fh)
        except tomllib.TOMLDecodeError as exc:
            raise ConfigError(f"{path} is not valid TOML: {exc}") from exc

    runtime_data = _optional_table(data, "runtime")
    repo_data = _optional_table(data, "repo")
    agent_data = _optional_table(data, "agent")
    docker_data = _optional_table(data, "docker")

    defaults = AppConfig()
    runtime = RuntimeConfig(
        poll_interval_seconds=_int_with_default(
            runtime_data, "poll_interval_seconds", defaults.runtime.poll_interval_seconds
        ),
        max_concurrent=_int_with_default(
            runtime_data, "max_concurrent", defaults.runtime.max_concurrent
        ),
        state_dir=_str_with_default(runtime_data, "state_dir", defaults.runtime.state_dir),
        worktree_dir=_str_with_default(
            runtime_data, "worktree_dir", defaults.runtime.worktree_dir
        ),
    )
    if runtime.poll_interval_seconds < 1:
        raise ConfigError("runtime.poll_interval_seconds must be >= 1")
    if runtime.max_concurrent < 1:
        raise ConfigError("runtime.max_concurrent must be >= 1")

    repo = RepoConfig(
        issue_labels=_labels_with_default(repo_data, "issue_labels", defaults.repo.issue_labels),
        base_branch=_optional_str(repo_data, "base_branch"),
        full_name=_optional_full_name(repo_data, "full_name"),
    )
    agent = AgentConfig(
        command=_str_with_default(agent_data, "command", defaults.agent.command),
        extra_args=_tuple_of_str(agent_data, "extra_args"),
    )
    docker = DockerConfig(
        enabled=_bool_with_default(docker_data, "enabled", defaults.docker.enabled),
        image=_str_with_default(docker_data, "image", defaults.docker.image),
        dockerfile=_optional_str(docker_data, "dockerfile"),
    )
    return AppConfig(runtime=runtime, repo=repo, agent=agent, docker=docker)


def parse_labels(raw: str) -> tuple[str, ...]:
    labels: list[str] = []
    for part in raw.split(","):
        label = part.strip()
        if label and label not in labels:
            labels.append(label)
    return tuple(labels)


def _optional_table(data: dict[str, object], key: str) -> dict[str, object]:
    value = data.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"[{key}] must be a TOML table when provided")
    if not all(isinstance(item, str) for item in value.keys()):
        raise ConfigError(f"[{key}] must have string keys")
    return cast(dict[str, object], value)


def _optional_str(data: dict[str, object], key: str) -> str | None:
    value = data.get(key)
    if value is None or value == "":
        return None
    if not isinstance(value, str):
        raise ConfigError(f"{key} must be a string if provided")
    return value


def _optional_full_name(data: dict[str, object], key: str) -> str | None:
    value = _optional_str(data, key)
    if value is None:
        return None
    owner, sep, name = value.partition("/")
    if not sep or not owner or not name or "/" in name:
        raise ConfigError(f"{key} must look like 'owner/name'")
    return value


def _int_with_default(data: dict[str, object], key: str, default: int) -> int:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{key} must be an integer")
    return value


def _bool_with_default(data: dict[str, object], key: str, default: bool) -> bool:
    value = data.get(key, default)
    if not isinstance(value, bool):
        raise ConfigError(f"{key} must be a boolean")
    return value


def _str_with_default(data: dict[str, object], key: str, default: str) -> str:
    value = data.get(key, default)
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} must be a non-empty string")
    return value


def _labels_with_default(
    data: dict[str, object], key: str, default: tuple[str, ...]
) -> tuple[str, ...]:
    if key not in data:
        return default
    value = data[key]
    if isinstance(value, str):
        return parse_labels(value)
    if isinstance(value, list) and all(isinstance(item, str) for item in value):
        return parse_labels(",".join(cast(list[str], value)))
    raise ConfigError(f"{key} must be a comma-separated string or a list of strings")


def _tuple_of_str(data: dict[str, object], key: str) -> tuple[str, ...]:
    value = data.get(key, [])
    if not isinstance(value, list):
        raise ConfigError(f"{key} must be a list of strings")
    out: list[str] = []
    for item in value:
        if not isinstance(item, str):
            raise ConfigError(f"{key} must be a list of strings")
        out.append(item)
    return tuple(out)

from __future__ import annotations

from pathlib import Path
import tomllib

import pytest

from autopr import config
from autopr.config import AppConfig, ConfigError


def _write(path: Path, content: str) -> Path:
    path.write_text(content, encoding="utf-8")
    return path


def test_missing_file_yields_defaults(tmp_path: Path) -> None:
    loaded = config.load_config(tmp_path / ".auto-pr.toml")

    assert loaded == AppConfig()
    assert loaded.runtime.poll_interval_seconds == 30
    assert loaded.runtime.max_concurrent == 2
    assert loaded.runtime.state_dir == ".pr-watch-state"
    assert loaded.runtime.worktree_dir == ".worktrees"
    assert loaded.repo.issue_labels == ("auto", "claude")
    assert loaded.repo.base_branch is None
    assert loaded.agent.command == "claude"
    assert loaded.docker.enabled is False
    assert loaded.docker.image == "auto-pr-worker"


def test_load_config_reads_every_table(tmp_path: Path) -> None:
    cfg_path = _write(
        tmp_path / ".auto-pr.toml",
        """
[runtime]
poll_interval_seconds = 5
max_concurrent = 4
state_dir = "state"
worktree_dir = "wt"

[repo]
issue_labels = " auto , bug,auto,, "
base_branch = "develop"
full_name = "octo/widgets"

[agent]
command = "my-agent"
extra_args = ["--model", "big"]

[docker]
enabled = true
image = "custom-image"
dockerfile = "docker/Dockerfile"
""".strip(),
    )

    loaded = config.load_config(cfg_path)

    assert loaded.runtime.poll_interval_seconds == 5
    assert loaded.runtime.max_concurrent == 4
    assert loaded.runtime.state_dir == "state"
    assert loaded.runtime.worktree_dir == "wt"
    assert loaded.repo.issue_labels == ("auto", "bug")
    assert loaded.repo.base_branch == "develop"
    assert loaded.repo.full_name == "octo/widgets"
    assert loaded.agent.command == "my-agent"
    assert loaded.agent.extra_args == ("--model", "big")
    assert loaded.docker.enabled is True
    assert loaded.docker.image == "custom-image"
    assert loaded.docker.dockerfile == "docker/Dockerfile"


def test_issue_labels_accepts_a_list(tmp_path: Path) -> None:
    cfg_path = _write(tmp_path / "c.toml", '[repo]\nissue_labels = ["a", "b", "a"]\n')
    assert config.load_config(cfg_path).repo.issue_labels == ("a", "b")


@pytest.mark.parametrize(
    ("content", "message"),
    [
        ("[runtime]\npoll_interval_seconds = 0\n", "poll_interval_seconds must be >= 1"),
        ("[runtime]\nmax_concurrent = 0\n", "max_concurrent must be >= 1"),
        ("[runtime]\nmax_concurrent = true\n", "max_concurrent must be an integer"),
        ('[runtime]\nstate_dir = ""\n', "state_dir must be a non-empty string"),
        ("[repo]\nissue_labels = 3\n", "issue_labels must be"),
        ('[repo]\nfull_name = "nope"\n', "full_name must look like"),
        ("[agent]\nextra_args = [1]\n", "extra_args must be a list of strings"),
        ('[docker]\nenabled = "yes"\n', "enabled must be a boolean"),
        ('runtime = "x"\n', r"\[runtime\] must be a TOML table"),
    ],
)
def test_load_config_rejects_invalid_values(tmp_path: Path, content: str, message: str) -> None:
    cfg_path = _write(tmp_path / "c.toml", content)
    with pytest.raises(ConfigError, match=message):
        config.load_config(cfg_path)


def test_invalid_toml_is_a_config_error(tmp_path: Path) -> None:
    cfg_path = _write(tmp_path / "c.toml", "[runtime\n")
    with pytest.raises(ConfigError, match="not valid TOML"):
        config.load_config(cfg_path)


def test_write_default_config_only_when_missing(tmp_path: Path) -> None:
    path = tmp_path / ".auto-pr.toml"

    assert config.write_default_config(path) is True
    assert config.write_default_config(path) is False
    # The template is valid TOML and every value in it is commented out.
    assert config.load_config(path) == AppConfig()
    parsed = tomllib.loads(path.read_text(encoding="utf-8"))
    assert set(parsed) == {"runtime", "repo", "agent", "docker"}


def test_parse_labels_dedupes_and_strips() -> None:
    assert config.parse_labels("a, b ,a,,c") == ("a", "b", "c")
    assert config.parse_labels("") == ()

from __future__ import annotations

import argparse
import json
from pathlib import Path
import threading

import pytest

from autopr import cli
from autopr.agent import LocalBackend
from autopr.config import AgentConfig, AppConfig, ConfigError, DockerConfig, RuntimeConfig
from autopr.models import PullRequestReview, PullRequestReviewComment
from autopr.worker import IssueWorker


def _comment(comment_id: int, review_id: int, body: str = "Nit: rename") -> PullRequestReviewComment:
    return PullRequestReviewComment(
        comment_id=comment_id,
        body=body,
        path="main.py",
        line=4,
        original_line=4,
        user_login="carol",
        review_id=review_id,
        created_at="2024-05-01T00:00:00Z",
        updated_at="2024-05-01T00:00:00Z",
    )


def _review(review_id: int, state: str, body: str) -> PullRequestReview:
    return PullRequestReview(
        review_id=review_id,
        state=state,
        body=body,
        user_login="dave",
        submitted_at=f"2024-05-0{review_id}T00:00:00Z",
    )


class FakeGateway:
    full_name = "o/r"

    def __init__(self) -> None:
        self.comments = [_comment(101, 1, "First line\nsecond line"), _comment(202, 2)]
        self.reviews = [
            _review(1, "COMMENTED", ""),
            _review(2, "CHANGES_REQUESTED", "Please add tests"),
        ]
        self.replies: list[tuple[int, int, str]] = []
        self.branch_prs: dict[str, int] = {"feature/x": 17}

    def list_review_comments(self, pr_number: int) -> list[PullRequestReviewComment]:
        _ = pr_number
        return list(self.comments)

    def list_reviews(self, pr_number: int) -> list[PullRequestReview]:
        _ = pr_number
        return list(self.reviews)

    def post_review_comment_reply(self, pr_number: int, review_comment_id: int, body: str) -> int:
        self.replies.append((pr_number, review_comment_id, body))
        return 999

    def find_open_pull_request_for_branch(self, branch: str) -> int | None:
        return self.branch_prs.get(branch)

    def get_default_branch(self) -> str:
        return "main"


@pytest.fixture
def gateway(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> FakeGateway:
    fake = FakeGateway()
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(cli, "_gateway", lambda config, project_root: fake)
    monkeypatch.setattr(cli, "configure_logging", lambda verbose, **kwargs: None)
    monkeypatch.setattr(cli.shutil, "which", lambda name: f"/usr/bin/{name}")
    monkeypatch.setattr(cli, "current_branch", lambda cwd=None: "feature/x")
    return fake


def test_build_parser_supports_commands() -> None:
    parser = cli.build_parser()

    watch = parser.parse_args(["watch", "12", "--once", "--interval", "5", "-v"])
    repo = parser.parse_args(["watch", "--repo", "--max-concurrent", "4", "--docker"])
    reply = parser.parse_args(["reply", "55", "Fixed", "it", "--pr", "3"])
    listing = parser.parse_args(["reply", "--list", "9"])
    reviews = parser.parse_args(["reviews", "8", "--latest", "--json"])

    assert (watch.command, watch.pr_number, watch.once, watch.interval) == ("watch", 12, True, 5)
    assert watch.verbose is True
    assert (repo.repo, repo.pr_number, repo.max_concurrent, repo.docker) == (True, None, 4, True)
    assert (reply.args, reply.pr, reply.list) == (["55", "Fixed", "it"], 3, False)
    assert (listing.list, listing.args) == (True, ["9"])
    assert (reviews.pr_number, reviews.latest, reviews.json) == (8, True, True)


def test_build_parser_requires_a_command() -> None:
    with pytest.raises(SystemExit):
        cli.build_parser().parse_args([])


def test_apply_cli_overrides() -> None:
    args = argparse.Namespace(interval=7, max_concurrent=3, docker=True)

    config = cli.apply_cli_overrides(AppConfig(), args)

    assert config.runtime == RuntimeConfig(poll_interval_seconds=7, max_concurrent=3)
    assert config.docker.enabled is True

    unchanged = cli.apply_cli_overrides(
        AppConfig(), argparse.Namespace(interval=None, max_concurrent=None, docker=False)
    )
    assert unchanged == AppConfig()


@pytest.mark.parametrize(
    ("interval", "max_concurrent", "message"),
    [(0, None, "--interval"), (None, 0, "--max-concurrent")],
)
def test_apply_cli_overrides_rejects_non_positive(
    interval: int | None, max_concurrent: int | None, message: str
) -> None:
    args = argparse.Namespace(interval=interval, max_concurrent=max_concurrent, docker=False)

    with pytest.raises(ConfigError, match=message):
        cli.apply_cli_overrides(AppConfig(), args)


def test_check_environment_requires_agent_or_docker(monkeypatch: pytest.MonkeyPatch) -> None:
    available = {"gh"}
    monkeypatch.setattr(
        cli.shutil, "which", lambda name: f"/bin/{name}" if name in available else None
    )

    with pytest.raises(cli.EnvironmentCheckError, match="claude CLI not found"):
        cli.check_environment(AppConfig())
    with pytest.raises(cli.EnvironmentCheckError, match="docker CLI not found"):
        cli.check_environment(AppConfig(docker=DockerConfig(enabled=True)))

    available.update({"claude", "docker"})
    cli.check_environment(AppConfig())
    cli.check_environment(AppConfig(docker=DockerConfig(enabled=True)))

    available.clear()
    with pytest.raises(cli.EnvironmentCheckError, match="gh CLI not found"):
        cli.check_environment(AppConfig())


def test_main_reports_missing_tools_and_exits_1(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(cli.shutil, "which", lambda name: None)

    with pytest.raises(SystemExit) as excinfo:
        cli.main(["watch", "5"])

    assert excinfo.value.code == 1
    captured = capsys.readouterr()
    assert "Error: gh CLI not found" in captured.err
    assert "Generated default .auto-pr.toml" in captured.out
    assert (tmp_path / ".auto-pr.toml").exists()


def test_main_reports_invalid_config(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    monkeypatch.chdir(tmp_path)
    bad = tmp_path / "bad.toml"
    bad.write_text("[runtime]\nmax_concurrent = 0\n", encoding="utf-8")

    with pytest.raises(SystemExit):
        cli.main(["watch", "--config", str(bad)])

    assert "Error: runtime.max_concurrent must be >= 1" in capsys.readouterr().err
    assert not (tmp_path / ".auto-pr.toml").exists()


def test_reply_list_prints_ids(gateway: FakeGateway, capsys: pytest.CaptureFixture[str]) -> None:
    cli.main(["reply", "--list", "17"])

    out = capsys.readouterr().out.splitlines()
    assert out == [
        "ID: 101  @carol  main.py:4",
        "  First line",
        "ID: 202  @carol  main.py:4",
        "  Nit: rename",
    ]


def test_reply_list_without_comments(gateway: FakeGateway, capsys: pytest.CaptureFixture[str]) -> None:
    gateway.comments = []

    cli.main(["reply", "--list", "--pr", "4"])

    assert capsys.readouterr().out.strip() == "No inline review comments on PR #4."


def test_reply_posts_to_detected_pr(gateway: FakeGateway, capsys: pytest.CaptureFixture[str]) -> None:
    cli.main(["reply", "101", "Renamed", "the", "variable"])

    assert gateway.replies == [(17, 101, "Renamed the variable")]
    out = capsys.readouterr().out
    assert "Detected PR #17 for branch 'feature/x'" in out
    assert "Reply posted (ID: 999)" in out


def test_reply_uses_explicit_pr(gateway: FakeGateway) -> None:
    cli.main(["reply", "202", "Done", "--pr", "5"])

    assert gateway.replies == [(5, 202, "Done")]


@pytest.mark.parametrize(
    ("argv", "message"),
    [
        (["reply", "101"], "usage: auto-pr reply"),
        (["reply", "abc", "body"], "Invalid comment id"),
    ],
)
def test_reply_rejects_bad_arguments(
    gateway: FakeGateway, capsys: pytest.CaptureFixture[str], argv: list[str], message: str
) -> None:
    with pytest.raises(SystemExit):
        cli.main(argv)

    assert message in capsys.readouterr().err
    assert gateway.replies == []


def test_reply_without_pr_for_branch_fails(
    gateway: FakeGateway, capsys: pytest.CaptureFixture[str]
) -> None:
    gateway.branch_prs = {}

    with pytest.raises(SystemExit):
        cli.main(["reply", "101", "body"])

    assert "No open PR found for branch 'feature/x'" in capsys.readouterr().err


def test_reviews_pretty_output(gateway: FakeGateway, capsys: pytest.CaptureFixture[str]) -> None:
    cli.main(["reviews", "17"])

    out = capsys.readouterr().out
    assert "=== PR #17 Reviews ===" in out
    assert "-- CHANGES_REQUESTED by @dave (2024-05-02T00:00:00Z) --" in out
    assert "Please add tests" in out
    assert "-- COMMENTED" not in out
    assert "-- Inline Comments (2) --" in out
    assert "  main.py:4  @carol" in out
    assert "  ID: 202" in out
    assert out.rstrip().endswith("Done.")


def test_reviews_json(gateway: FakeGateway, capsys: pytest.CaptureFixture[str]) -> None:
    cli.main(["reviews", "17", "--json"])

    payload = json.loads(capsys.readouterr().out)
    assert [r["review_id"] for r in payload["reviews"]] == [1, 2]
    assert [c["comment_id"] for c in payload["comments"]] == [101, 202]
    assert payload["comments"][0]["path"] == "main.py"


def test_reviews_latest_filters_json(gateway: FakeGateway, capsys: pytest.CaptureFixture[str]) -> None:
    cli.main(["reviews", "--latest", "--json"])

    out = capsys.readouterr().out
    payload = json.loads(out[out.index("{") :])
    assert [r["review_id"] for r in payload["reviews"]] == [2]
    assert [c["comment_id"] for c in payload["comments"]] == [202]


class _Recorder:
    instances: list[_Recorder] = []

    def __init__(self, *args: object, **kwargs: object) -> None:
        self.args = args
        self.kwargs = kwargs
        self.run_kwargs: dict[str, object] = {}
        type(self).instances.append(self)

    def run(self, **kwargs: object) -> None:
        self.run_kwargs = kwargs


@pytest.fixture
def watch_env(monkeypatch: pytest.MonkeyPatch, gateway: FakeGateway) -> threading.Event:
    stop_event = threading.Event()
    monkeypatch.setattr(cli, "_install_signal_handlers", lambda: stop_event)
    monkeypatch.setattr(cli, "check_environment", lambda config: None)
    return stop_event


def test_watch_single_pr_wiring(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path, watch_env: threading.Event
) -> None:
    class FakeWatcher(_Recorder):
        instances: list[_Recorder] = []

    monkeypatch.setattr(cli, "SinglePRWatcher", FakeWatcher)

    cli.main(["watch", "--once", "--interval", "9"])

    [watcher] = FakeWatcher.instances
    assert watcher.kwargs["pr_number"] == 17
    assert watcher.kwargs["project_root"] == tmp_path.resolve()
    assert watcher.kwargs["poll_interval_seconds"] == 9
    assert watcher.kwargs["stop_event"] is watch_env
    assert isinstance(watcher.kwargs["backend"], LocalBackend)
    assert watcher.run_kwargs == {"once": True}
    assert (tmp_path / ".pr-watch-state" / "issues").is_dir()
    gitignore = (tmp_path / ".gitignore").read_text(encoding="utf-8")
    assert ".pr-watch-state/" in gitignore
    assert ".worktrees/" in gitignore


def test_watch_repo_mode_builds_issue_workers(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path, watch_env: threading.Event
) -> None:
    class FakeScheduler(_Recorder):
        instances: list[_Recorder] = []

    monkeypatch.setattr(cli, "RepoScheduler", FakeScheduler)
    config_path = tmp_path / "custom.toml"
    config_path.write_text(
        '[repo]\nissue_labels = "auto"\nbase_branch = "develop"\n', encoding="utf-8"
    )

    cli.main(["watch", "--repo", "--max-concurrent", "3", "--config", str(config_path)])

    [scheduler] = FakeScheduler.instances
    config = scheduler.args[0]
    assert isinstance(config, AppConfig)
    assert config.runtime.max_concurrent == 3
    assert config.repo.issue_labels == ("auto",)
    assert scheduler.kwargs["stop_event"] is watch_env
    assert scheduler.run_kwargs == {"once": False}
    assert not (tmp_path / ".auto-pr.toml").exists()

    factory = scheduler.kwargs["worker_factory"]
    worker = factory(42, threading.Event())  # type: ignore[operator]
    assert isinstance(worker, IssueWorker)
    assert worker.issue_number == 42
    assert worker.branch == "auto/issue-42"


def test_build_backend_local_by_default(tmp_path: Path) -> None:
    backend = cli._build_backend(AppConfig(agent=AgentConfig(command="claude")), tmp_path)

    assert isinstance(backend, LocalBackend)

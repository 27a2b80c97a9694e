from __future__ import annotations

import argparse
from dataclasses import asdict, replace
import json
from pathlib import Path
import shutil
import signal
import sys
import threading
from types import FrameType

from autopr.agent import ContainerBackend, ExecutionBackend, LocalBackend
from autopr.config import (
    DEFAULT_CONFIG_FILENAME,
    AppConfig,
    ConfigError,
    load_config,
    write_default_config,
)
from autopr.container import DockerManager
from autopr.github_gateway import (
    GitHubGateway,
    detect_repo_full_name,
    filter_latest_review_round,
)
from autopr.observability import configure_logging
from autopr.scheduler import RepoScheduler
from autopr.shell import CommandError
from autopr.single_pr import SinglePRWatcher, first_line
from autopr.state import StateStore, ensure_gitignore
from autopr.worker import IssueWorker
from autopr.worktree import WorktreeManager, current_branch, find_project_root


class EnvironmentCheckError(RuntimeError):
    """A required external tool is not installed."""


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="auto-pr")
    subparsers = parser.add_subparsers(dest="command", required=True)

    watch_parser = subparsers.add_parser(
        "watch",
        help="Watch one PR for reviews, or (--repo) implement labeled issues end to end",
    )
    watch_parser.add_argument(
        "pr_number",
        nargs="?",
        type=int,
        help="PR to watch in single-PR mode (default: the PR for the current branch)",
    )
    watch_parser.add_argument(
        "--repo", action="store_true", help="Repo mode: spawn a worker per new labeled issue"
    )
    watch_parser.add_argument("--once", action="store_true", help="Run one cycle and exit")
    watch_parser.add_argument("--interval", type=int, help="Poll interval in seconds")
    watch_parser.add_argument("--max-concurrent", type=int, help="Max concurrent issue workers")
    watch_parser.add_argument(
        "--docker", action="store_true", help="Run the agent inside per-worker containers"
    )
    _add_common_options(watch_parser)

    reply_parser = subparsers.add_parser(
        "reply", help="Reply to an inline review comment, or list comments with --list"
    )
    reply_parser.add_argument(
        "args",
        nargs="*",
        help="<comment_id> <body...>, or [PR_NUMBER] with --list",
    )
    reply_parser.add_argument(
        "--list", action="store_true", help="List inline review comments with their ids"
    )
    reply_parser.add_argument("--pr", type=int, help="PR number (default: detect from branch)")
    _add_common_options(reply_parser)

    reviews_parser = subparsers.add_parser("reviews", help="Print reviews and inline comments")
    reviews_parser.add_argument("pr_number", nargs="?", type=int)
    reviews_parser.add_argument(
        "--latest", action="store_true", help="Only show the latest review round"
    )
    reviews_parser.add_argument("--json", action="store_true", help="Print raw JSON")
    _add_common_options(reviews_parser)

    return parser


def _add_common_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--config",
        type=Path,
        help=f"Config file (default: <project>/{DEFAULT_CONFIG_FILENAME})",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose runtime logging to stderr",
    )


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    try:
        if args.command == "watch":
            _cmd_watch(args)
        elif args.command == "reply":
            _cmd_reply(args)
        elif args.command == "reviews":
            _cmd_reviews(args)
        else:
            raise RuntimeError(f"Unknown command: {args.command}")
    except (EnvironmentCheckError, ConfigError, CommandError, ValueError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        raise SystemExit(1) from exc


def check_environment(config: AppConfig) -> None:
    if shutil.which("gh") is None:
        raise EnvironmentCheckError("gh CLI not found. Install it from https://cli.github.com")
    if config.docker.enabled:
        if shutil.which("docker") is None:
            raise EnvironmentCheckError("docker CLI not found. Install Docker first")
    elif shutil.which(config.agent.command) is None:
        raise EnvironmentCheckError(
            f"{config.agent.command} CLI not found. Ensure '{config.agent.command}' is in PATH"
        )


def apply_cli_overrides(config: AppConfig, args: argparse.Namespace) -> AppConfig:
    runtime = config.runtime
    if args.interval is not None:
        if args.interval < 1:
            raise ConfigError("--interval must be >= 1")
        runtime = replace(runtime, poll_interval_seconds=args.interval)
    if args.max_concurrent is not None:
        if args.max_concurrent < 1:
            raise ConfigError("--max-concurrent must be >= 1")
        runtime = replace(runtime, max_concurrent=args.max_concurrent)
    docker = config.docker
    if args.docker:
        docker = replace(docker, enabled=True)
    return replace(config, runtime=runtime, docker=docker)


def _cmd_watch(args: argparse.Namespace) -> None:
    project_root = find_project_root(Path.cwd())
    config_path = args.config if args.config is not None else project_root / DEFAULT_CONFIG_FILENAME
    if args.config is None and write_default_config(config_path):
        print(f"Generated default {config_path.name} (edit as needed)")
    config = apply_cli_overrides(load_config(config_path), args)
    check_environment(config)

    state_root = project_root / config.runtime.state_dir
    configure_logging("high" if args.verbose else "low", state_dir=state_root)
    github = _gateway(config, project_root)

    state = StateStore(state_root)
    state.init()
    ensure_gitignore(
        project_root, (f"{config.runtime.state_dir}/", f"{config.runtime.worktree_dir}/")
    )

    backend = _build_backend(config, project_root)
    stop_event = _install_signal_handlers()

    if args.repo:
        worktrees = WorktreeManager(
            project_root,
            config.runtime.worktree_dir,
            default_branch=github.get_default_branch,
        )

        def make_worker(issue_number: int, cancel_event: threading.Event) -> IssueWorker:
            return IssueWorker(
                issue_number=issue_number,
                repo_full_name=github.full_name,
                state=state,
                github=github,
                worktrees=worktrees,
                backend=backend,
                base_branch=config.repo.base_branch,
                poll_interval_seconds=config.runtime.poll_interval_seconds,
                once=bool(args.once),
                cancel_event=cancel_event,
            )

        RepoScheduler(
            config,
            state=state,
            github=github,
            worktrees=worktrees,
            worker_factory=make_worker,
            stop_event=stop_event,
        ).run(once=bool(args.once))
        return

    pr_number = args.pr_number
    if pr_number is None:
        pr_number = _detect_pr_for_branch(github)
    SinglePRWatcher(
        pr_number=pr_number,
        project_root=project_root,
        state=state,
        github=github,
        backend=backend,
        poll_interval_seconds=config.runtime.poll_interval_seconds,
        stop_event=stop_event,
    ).run(once=bool(args.once))


def _cmd_reply(args: argparse.Namespace) -> None:
    config, project_root = _load_for_readonly_command(args)
    github = _gateway(config, project_root)

    if args.list:
        pr_number = args.pr
        if args.args:
            pr_number = _parse_int(args.args[0], what="PR number")
        if pr_number is None:
            pr_number = _detect_pr_for_branch(github)
        comments = github.list_review_comments(pr_number)
        if not comments:
            print(f"No inline review comments on PR #{pr_number}.")
            return
        for comment in comments:
            print(
                f"ID: {comment.comment_id}  @{comment.user_login}  "
                f"{comment.path}:{comment.line_display}"
            )
            print(f"  {first_line(comment.body)}")
        return

    if len(args.args) < 2:
        raise ValueError('usage: auto-pr reply <comment_id> "<body>" [--pr N]')
    comment_id = _parse_int(args.args[0], what="comment id")
    body = " ".join(args.args[1:]).strip()
    if not body:
        raise ValueError("reply body must not be empty")
    pr_number = args.pr if args.pr is not None else _detect_pr_for_branch(github)
    reply_id = github.post_review_comment_reply(pr_number, comment_id, body)
    print(f"Reply posted (ID: {reply_id})")


def _cmd_reviews(args: argparse.Namespace) -> None:
    config, project_root = _load_for_readonly_command(args)
    github = _gateway(config, project_root)
    pr_number = args.pr_number if args.pr_number is not None else _detect_pr_for_branch(github)

    comments = github.list_review_comments(pr_number)
    reviews = github.list_reviews(pr_number)
    if args.latest:
        reviews, comments = filter_latest_review_round(reviews, comments)

    if args.json:
        payload = {
            "reviews": [asdict(review) for review in reviews],
            "comments": [asdict(comment) for comment in comments],
        }
        print(json.dumps(payload, indent=2))
        return

    print()
    print(f"=== PR #{pr_number} Reviews ===")
    print()
    for review in reviews:
        if not review.body and review.state == "COMMENTED":
            continue
        submitted = review.submitted_at or "pending"
        print(f"-- {review.state} by @{review.user_login} ({submitted}) --")
        print(review.body)
        print()
    if comments:
        print(f"-- Inline Comments ({len(comments)}) --")
        print()
        for comment in comments:
            print(f"  {comment.path}:{comment.line_display}  @{comment.user_login}")
            print(f"  {comment.body}")
            print(f"  ID: {comment.comment_id}")
            print()
    print("Done.")


def _load_for_readonly_command(args: argparse.Namespace) -> tuple[AppConfig, Path]:
    project_root = find_project_root(Path.cwd())
    config_path = args.config if args.config is not None else project_root / DEFAULT_CONFIG_FILENAME
    config = load_config(config_path)
    configure_logging("high" if args.verbose else None)
    if shutil.which("gh") is None:
        raise EnvironmentCheckError("gh CLI not found. Install it from https://cli.github.com")
    return config, project_root


def _gateway(config: AppConfig, project_root: Path) -> GitHubGateway:
    full_name = config.repo.full_name or detect_repo_full_name(project_root)
    return GitHubGateway.from_full_name(full_name)


def _build_backend(config: AppConfig, project_root: Path) -> ExecutionBackend:
    if not config.docker.enabled:
        return LocalBackend(config.agent)
    manager = DockerManager(
        image=config.docker.image,
        project_root=project_root,
        dockerfile=config.docker.dockerfile,
    )
    manager.ensure_image()
    return ContainerBackend(manager, config.agent)


def _detect_pr_for_branch(github: GitHubGateway) -> int:
    branch = current_branch()
    pr_number = github.find_open_pull_request_for_branch(branch)
    if pr_number is None:
        raise ValueError(f"No open PR found for branch '{branch}'")
    print(f"Detected PR #{pr_number} for branch '{branch}'")
    return pr_number


def _parse_int(raw: str, *, what: str) -> int:
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"Invalid {what}: {raw!r}") from exc


def _install_signal_handlers() -> threading.Event:
    stop_event = threading.Event()

    def _handle(signum: int, frame: FrameType | None) -> None:
        stop_event.set()

    signal.signal(signal.SIGINT, _handle)
    signal.signal(signal.SIGTERM, _handle)
    return stop_event

from __future__ import annotations

from dataclasses import dataclass, replace
import json
import logging
import os
from pathlib import Path
import tempfile
from typing import cast, get_args

from autopr.models import IssueStatus
from autopr.observability import log_event, log_warning_event


LOGGER = logging.getLogger("autopr.state")

_INITIALIZED_SENTINEL = ".initialized"
_GITIGNORE_MARKER = "# auto-pr state (auto-generated)"

# Statuses an issue record may move to from each status. Same-status rewrites are
# always allowed so that idempotent writes never fail.
_ALLOWED_TRANSITIONS: dict[IssueStatus, frozenset[IssueStatus]] = {
    "preexisting": frozenset(),
    "in_progress": frozenset({"watching", "failed"}),
    "watching": frozenset({"done", "failed"}),
    "done": frozenset(),
    "failed": frozenset(),
}
_INITIAL_STATUSES: frozenset[IssueStatus] = frozenset({"preexisting", "in_progress"})


class StateTransitionError(ValueError):
    """Raised when a write would move an issue record backwards or rewrite its identity."""


class CorruptRecordError(ValueError):
    """A record file exists but does not hold a valid record."""


@dataclass(frozen=True)
class IssueRecord:
    status: IssueStatus
    branch: str = ""
    pr_number: int | None = None


@dataclass(frozen=True)
class PRRecord:
    last_comment_ts: str
    branch: str = ""


class StateStore:
    """Crash-safe JSON records for issues and PRs under a single state directory.

    Layout::

        <root>/issues/<N>.json
        <root>/prs/<N>.json
        <root>/logs/issue-<N>.log
        <root>/.initialized
    """

    def __init__(self, root: Path) -> None:
        self.root = root

    @property
    def issues_dir(self) -> Path:
        return self.root / "issues"

    @property
    def prs_dir(self) -> Path:
        return self.root / "prs"

    @property
    def logs_dir(self) -> Path:
        return self.root / "logs"

    def init(self) -> None:
        try:
            self._migrate_legacy_file()
        except OSError as exc:
            log_warning_event(
                LOGGER,
                "state_migration_failed",
                path=str(self.root),
                error_type=type(exc).__name__,
                error=str(exc),
            )
        for directory in (self.issues_dir, self.prs_dir, self.logs_dir):
            directory.mkdir(parents=True, exist_ok=True)

    def read_issue(self, issue_number: int) -> IssueRecord | None:
        """Return the record, or None when the issue was never seen.

        An unreadable file raises ``CorruptRecordError``: the issue has been seen,
        so it must not look new.
        """
        path = self.issues_dir / f"{issue_number}.json"
        payload = _read_json_object(path)
        if payload is None:
            return None
        status = payload.get("status")
        if status not in get_args(IssueStatus):
            raise CorruptRecordError(f"Issue record {path} has unknown status {status!r}")
        branch = payload.get("branch")
        pr_number = payload.get("pr_number")
        return IssueRecord(
            status=cast(IssueStatus, status),
            branch=branch if isinstance(branch, str) else "",
            pr_number=pr_number if isinstance(pr_number, int) and pr_number > 0 else None,
        )

    def write_issue(self, issue_number: int, record: IssueRecord) -> None:
        previous = self.read_issue(issue_number)
        _check_issue_transition(issue_number, previous, record)
        payload: dict[str, object] = {
            "status": record.status,
            "branch": record.branch,
            "pr_number": record.pr_number,
        }
        _atomic_write_json(self.issues_dir / f"{issue_number}.json", payload)
        log_event(
            LOGGER,
            "issue_record_written",
            issue_number=issue_number,
            status=record.status,
            previous_status=previous.status if previous else None,
            pr_number=record.pr_number,
        )

    def read_pr(self, pr_number: int) -> PRRecord | None:
        try:
            payload = _read_json_object(self.prs_dir / f"{pr_number}.json")
        except CorruptRecordError as exc:
            # A lost baseline is re-seeded from the PR's current activity.
            log_warning_event(LOGGER, "pr_record_unreadable", pr_number=pr_number, error=str(exc))
            return None
        if payload is None:
            return None
        last_comment_ts = payload.get("last_comment_ts")
        branch = payload.get("branch")
        return PRRecord(
            last_comment_ts=last_comment_ts if isinstance(last_comment_ts, str) else "",
            branch=branch if isinstance(branch, str) else "",
        )

    def write_pr(self, pr_number: int, record: PRRecord) -> PRRecord:
        """Persist ``record`` without ever moving ``last_comment_ts`` backwards.

        Returns the record actually written.
        """
        previous = self.read_pr(pr_number)
        effective = record
        if previous is not None and previous.last_comment_ts > record.last_comment_ts:
            effective = replace(record, last_comment_ts=previous.last_comment_ts)
        if previous is not None and not effective.branch and previous.branch:
            effective = replace(effective, branch=previous.branch)
        _atomic_write_json(
            self.prs_dir / f"{pr_number}.json",
            {"last_comment_ts": effective.last_comment_ts, "branch": effective.branch},
        )
        return effective

    def is_initialized(self) -> bool:
        return (self.root / _INITIALIZED_SENTINEL).exists()

    def mark_initialized(self) -> None:
        self.root.mkdir(parents=True, exist_ok=True)
        (self.root / _INITIALIZED_SENTINEL).touch()

    def issue_log_path(self, issue_number: int) -> Path:
        return self.logs_dir / f"issue-{issue_number}.log"

    def _migrate_legacy_file(self) -> None:
        # Older releases kept a single flat file of "<pr>_<timestamp>" lines at the
        # location now used for the state directory.
        if not self.root.exists() or self.root.is_dir():
            return

        log_event(LOGGER, "state_migration_started", path=str(self.root))
        content = self.root.read_text(encoding="utf-8")
        self.root.unlink()
        self.prs_dir.mkdir(parents=True, exist_ok=True)

        migrated = 0
        for raw_line in content.splitlines():
            line = raw_line.strip()
            if not line:
                continue
            pr_part, sep, ts_part = line.partition("_")
            if not sep or not pr_part or not ts_part or not pr_part.isdigit():
                log_warning_event(LOGGER, "state_migration_line_skipped", line=line)
                continue
            try:
                _atomic_write_json(
                    self.prs_dir / f"{int(pr_part)}.json",
                    {"last_comment_ts": ts_part, "branch": ""},
                )
            except OSError as exc:
                log_warning_event(
                    LOGGER,
                    "state_migration_pr_failed",
                    pr_number=int(pr_part),
                    error_type=type(exc).__name__,
                )
                continue
            migrated += 1
        log_event(LOGGER, "state_migration_completed", migrated_pr_count=migrated)


def ensure_gitignore(project_root: Path, entries: tuple[str, ...]) -> tuple[str, ...]:
    """Append any of ``entries`` missing from the project's .gitignore; returns what was added."""
    gitignore_path = project_root / ".gitignore"
    existing = ""
    if gitignore_path.exists():
        existing = gitignore_path.read_text(encoding="utf-8")
    present = {line.strip() for line in existing.splitlines()}
    to_add = tuple(entry for entry in entries if entry not in present)
    if not to_add:
        return ()

    chunks: list[str] = []
    if existing and not existing.endswith("\n"):
        chunks.append("\n")
    chunks.append(f"\n{_GITIGNORE_MARKER}\n")
    chunks.extend(f"{entry}\n" for entry in to_add)
    with gitignore_path.open("a", encoding="utf-8") as fh:
        fh.write("".join(chunks))
    return to_add


def _check_issue_transition(
    issue_number: int, previous: IssueRecord | None, record: IssueRecord
) -> None:
    if previous is None:
        if record.status not in _INITIAL_STATUSES and record.status != "failed":
            raise StateTransitionError(
                f"Issue #{issue_number} cannot start in status {record.status!r}"
            )
        return

    if record.status != previous.status and record.status not in _ALLOWED_TRANSITIONS[
        previous.status
    ]:
        raise StateTransitionError(
            f"Issue #{issue_number} cannot move from {previous.status!r} to {record.status!r}"
        )
    if previous.branch and record.branch != previous.branch:
        raise StateTransitionError(
            f"Issue #{issue_number} branch is fixed at {previous.branch!r}, got {record.branch!r}"
        )
    if previous.pr_number is not None and record.pr_number != previous.pr_number:
        raise StateTransitionError(
            f"Issue #{issue_number} pr_number is fixed at {previous.pr_number}, "
            f"got {record.pr_number}"
        )


def _read_json_object(path: Path) -> dict[str, object] | None:
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as exc:
        raise CorruptRecordError(f"Record {path} is not valid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise CorruptRecordError(f"Record {path} is not a JSON object")
    return cast(dict[str, object], payload)


def _atomic_write_json(path: Path, payload: dict[str, object]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".tmp-", suffix=".json")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            json.dump(payload, fh, sort_keys=True)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise

from __future__ import annotations

from pathlib import Path
import logging
import threading

from autopr.agent import AgentInvocationError, AgentSession, ExecutionBackend
from autopr.container import container_name_for_issue
from autopr.github_gateway import GitHubGateway, GitHubPollingError
from autopr.models import EPOCH_TIMESTAMP, IssueStatus, ReviewActivity
from autopr.observability import issue_log_file, log_event, log_warning_event
from autopr.prompts import build_implement_prompt, build_review_prompt
from autopr.state import CorruptRecordError, IssueRecord, PRRecord, StateStore
from autopr.worktree import WorktreeManager, issue_branch


LOGGER = logging.getLogger("autopr.worker")


class WorkerCancelled(RuntimeError):
    """The scheduler asked this worker to stop."""


class PullRequestNotFoundError(RuntimeError):
    """The agent finished Phase 1 without an open PR on the issue branch."""


def mark_issue_failed(state: StateStore, issue_number: int) -> bool:
    """Move a live issue record to ``failed``; returns False when there was nothing to move."""
    try:
        record = state.read_issue(issue_number)
    except CorruptRecordError as exc:
        log_warning_event(
            LOGGER, "issue_record_unreadable", issue_number=issue_number, error=str(exc)
        )
        return False
    if record is None:
        state.write_issue(
            issue_number, IssueRecord(status="failed", branch=issue_branch(issue_number))
        )
        return True
    if record.status not in ("in_progress", "watching"):
        return False
    state.write_issue(
        issue_number,
        IssueRecord(status="failed", branch=record.branch, pr_number=record.pr_number),
    )
    return True


def baseline_after_agent_run(
    github: GitHubGateway, pr_number: int, baseline: str, activity: ReviewActivity
) -> str:
    """Baseline to persist once the agent has handled ``activity``.

    The agent replies to the comments it addressed, so the PR's latest activity is
    read again and those replies land at or below the new baseline. When that read
    fails the newest timestamp in the batch is used.
    """
    candidates = [baseline, activity.latest_timestamp() or baseline]
    try:
        latest = github.latest_activity_timestamp(pr_number)
    except GitHubPollingError as exc:
        log_warning_event(
            LOGGER, "review_baseline_refresh_failed", pr_number=pr_number, error=str(exc)
        )
        latest = None
    if latest:
        candidates.append(latest)
    return max(candidates)


class IssueWorker:
    """Owns one issue from implementation through review watching.

    Phase 1 creates the issue worktree, has the agent implement the issue and
    resolves the PR it opened. Phase 2 polls that PR for new review activity and
    resumes the same agent conversation for each batch until the PR is no longer
    open. Every abort path leaves the issue record at ``failed``.
    """

    def __init__(
        self,
        *,
        issue_number: int,
        repo_full_name: str,
        state: StateStore,
        github: GitHubGateway,
        worktrees: WorktreeManager,
        backend: ExecutionBackend,
        base_branch: str | None,
        poll_interval_seconds: float,
        once: bool,
        cancel_event: threading.Event,
    ) -> None:
        self.issue_number = issue_number
        self.branch = issue_branch(issue_number)
        self._repo_full_name = repo_full_name
        self._state = state
        self._github = github
        self._worktrees = worktrees
        self._backend = backend
        self._base_branch = base_branch
        self._poll_interval_seconds = poll_interval_seconds
        self._once = once
        self._cancel_event = cancel_event

    def run(self) -> IssueStatus:
        log_path = self._state.issue_log_path(self.issue_number)
        with issue_log_file(log_path):
            log_event(
                LOGGER,
                "worker_started",
                issue_number=self.issue_number,
                repo=self._repo_full_name,
                branch=self.branch,
            )
            try:
                with self._backend.open_session(
                    container_name_for_issue(self.issue_number), log_path
                ) as session:
                    wt_path, pr_number = self._implement(session)
                    self._watch_reviews(session, wt_path, pr_number)
            except Exception as exc:
                log_warning_event(
                    LOGGER,
                    "worker_failed",
                    issue_number=self.issue_number,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                mark_issue_failed(self._state, self.issue_number)
                raise
            log_event(LOGGER, "worker_finished", issue_number=self.issue_number, status="done")
            return "done"

    def _implement(self, session: AgentSession) -> tuple[Path, int]:
        log_event(
            LOGGER, "worker_phase_started", issue_number=self.issue_number, phase="implement"
        )
        wt_path = self._worktrees.create_for_issue(self.issue_number, self._base_branch)
        issue = self._github.get_issue(self.issue_number)
        self._check_cancelled()

        prompt = build_implement_prompt(
            repo_full_name=self._repo_full_name, issue=issue, branch=self.branch
        )
        session.run(wt_path, prompt)

        pr_number = self._github.find_open_pull_request_for_branch(self.branch)
        if pr_number is None:
            raise PullRequestNotFoundError(
                f"No open PR found for branch {self.branch} after implementing "
                f"issue #{self.issue_number}"
            )

        self._check_cancelled()
        self._state.write_issue(
            self.issue_number,
            IssueRecord(status="watching", branch=self.branch, pr_number=pr_number),
        )
        log_event(
            LOGGER,
            "pull_request_detected",
            issue_number=self.issue_number,
            pr_number=pr_number,
            branch=self.branch,
        )
        return wt_path, pr_number

    def _watch_reviews(self, session: AgentSession, wt_path: Path, pr_number: int) -> None:
        log_event(
            LOGGER,
            "worker_phase_started",
            issue_number=self.issue_number,
            phase="watch_reviews",
            pr_number=pr_number,
        )
        baseline = self._initial_baseline(pr_number)

        while True:
            self._sleep()
            baseline, pr_open = self._poll_reviews(session, wt_path, pr_number, baseline)
            if not pr_open or self._once:
                break

        self._check_cancelled()
        self._state.write_issue(
            self.issue_number,
            IssueRecord(status="done", branch=self.branch, pr_number=pr_number),
        )

    def _initial_baseline(self, pr_number: int) -> str:
        try:
            latest = self._github.latest_activity_timestamp(pr_number)
        except GitHubPollingError as exc:
            log_warning_event(
                LOGGER,
                "review_baseline_unavailable",
                issue_number=self.issue_number,
                pr_number=pr_number,
                error=str(exc),
            )
            latest = None
        baseline = self._state.write_pr(
            pr_number, PRRecord(last_comment_ts=latest or EPOCH_TIMESTAMP, branch=self.branch)
        ).last_comment_ts
        log_event(
            LOGGER,
            "review_baseline_established",
            issue_number=self.issue_number,
            pr_number=pr_number,
            baseline=baseline,
        )
        return baseline

    def _poll_reviews(
        self, session: AgentSession, wt_path: Path, pr_number: int, baseline: str
    ) -> tuple[str, bool]:
        """Run one review poll; returns the new baseline and whether the PR is still open."""
        try:
            pr_state = self._github.get_pull_request_state(pr_number)
        except GitHubPollingError as exc:
            log_warning_event(
                LOGGER,
                "review_poll_failed",
                issue_number=self.issue_number,
                pr_number=pr_number,
                step="pull_request_state",
                error=str(exc),
            )
            return baseline, True
        if pr_state != "open":
            log_event(
                LOGGER,
                "pull_request_no_longer_open",
                issue_number=self.issue_number,
                pr_number=pr_number,
                state=pr_state,
            )
            return baseline, False

        try:
            activity = self._github.fetch_new_review_activity(pr_number, baseline)
        except GitHubPollingError as exc:
            log_warning_event(
                LOGGER,
                "review_poll_failed",
                issue_number=self.issue_number,
                pr_number=pr_number,
                step="review_activity",
                error=str(exc),
            )
            return baseline, True
        if activity.is_empty:
            return baseline, True

        log_event(
            LOGGER,
            "review_activity_detected",
            issue_number=self.issue_number,
            pr_number=pr_number,
            inline_comment_count=len(activity.inline_comments),
            review_count=len(activity.reviews),
        )
        prompt = build_review_prompt(
            repo_full_name=self._repo_full_name,
            pr_number=pr_number,
            branch=self.branch,
            activity=activity,
        )
        agent_error: AgentInvocationError | None = None
        try:
            session.run_continued(wt_path, prompt)
        except AgentInvocationError as exc:
            agent_error = exc

        candidate = baseline_after_agent_run(self._github, pr_number, baseline, activity)
        self._check_cancelled()
        new_baseline = self._state.write_pr(
            pr_number, PRRecord(last_comment_ts=candidate, branch=self.branch)
        ).last_comment_ts
        if agent_error is not None:
            log_warning_event(
                LOGGER,
                "review_agent_failed_baseline_advanced",
                issue_number=self.issue_number,
                pr_number=pr_number,
                exit_code=agent_error.exit_code,
                baseline=new_baseline,
            )
        else:
            log_event(
                LOGGER,
                "review_baseline_advanced",
                issue_number=self.issue_number,
                pr_number=pr_number,
                baseline=new_baseline,
            )
        return new_baseline, True

    def _sleep(self) -> None:
        if self._cancel_event.wait(self._poll_interval_seconds):
            raise WorkerCancelled(f"Worker for issue #{self.issue_number} was cancelled")

    def _check_cancelled(self) -> None:
        if self._cancel_event.is_set():
            raise WorkerCancelled(f"Worker for issue #{self.issue_number} was cancelled")

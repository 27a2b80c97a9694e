from __future__ import annotations

from pathlib import Path
import logging
import threading

from autopr.agent import AgentInvocationError, ExecutionBackend
from autopr.container import container_name_for_pr
from autopr.github_gateway import GitHubGateway, GitHubPollingError
from autopr.models import EPOCH_TIMESTAMP, ReviewActivity
from autopr.observability import log_event, log_warning_event
from autopr.prompts import build_single_pr_prompt
from autopr.state import PRRecord, StateStore
from autopr.worker import baseline_after_agent_run


LOGGER = logging.getLogger("autopr.single_pr")


def first_line(text: str) -> str:
    return text.split("\n", 1)[0]


def preview_lines(activity: ReviewActivity) -> list[str]:
    lines = [
        f"  -> @{comment.user_login} on {comment.path}:{comment.line_display}: "
        f"{first_line(comment.body)}"
        for comment in activity.inline_comments
    ]
    lines.extend(
        f"  -> @{review.user_login} [{review.state}]: {first_line(review.body)}"
        for review in activity.reviews
    )
    return lines


class SinglePRWatcher:
    """Watches one PR in the project checkout and hands each batch of review activity to the agent."""

    def __init__(
        self,
        *,
        pr_number: int,
        project_root: Path,
        state: StateStore,
        github: GitHubGateway,
        backend: ExecutionBackend,
        poll_interval_seconds: float,
        stop_event: threading.Event | None = None,
    ) -> None:
        self.pr_number = pr_number
        self._project_root = project_root
        self._state = state
        self._github = github
        self._backend = backend
        self._poll_interval_seconds = poll_interval_seconds
        self._stop_event = stop_event if stop_event is not None else threading.Event()

    def run(self, *, once: bool) -> str:
        """Poll until stopped (or once); returns the final persisted baseline."""
        baseline = self._load_baseline()
        log_event(
            LOGGER,
            "single_pr_watch_started",
            pr_number=self.pr_number,
            repo=self._github.full_name,
            baseline=baseline,
            poll_interval_seconds=self._poll_interval_seconds,
        )
        with self._backend.open_session(container_name_for_pr(self.pr_number), None) as session:
            while not self._stop_event.is_set():
                activity = self._fetch(baseline)
                if activity is not None and not activity.is_empty:
                    log_event(
                        LOGGER,
                        "review_activity_detected",
                        pr_number=self.pr_number,
                        inline_comment_count=len(activity.inline_comments),
                        review_count=len(activity.reviews),
                    )
                    for line in preview_lines(activity):
                        print(line)
                    prompt = build_single_pr_prompt(
                        repo_full_name=self._github.full_name,
                        pr_number=self.pr_number,
                        activity=activity,
                    )
                    try:
                        session.run(self._project_root, prompt)
                    except AgentInvocationError as exc:
                        log_warning_event(
                            LOGGER,
                            "review_agent_failed_baseline_advanced",
                            pr_number=self.pr_number,
                            exit_code=exc.exit_code,
                        )
                    baseline = self._advance(baseline, activity)

                if once or self._stop_event.wait(self._poll_interval_seconds):
                    break
        return baseline

    def _load_baseline(self) -> str:
        record = self._state.read_pr(self.pr_number)
        if record is not None and record.last_comment_ts:
            log_event(
                LOGGER,
                "single_pr_baseline_resumed",
                pr_number=self.pr_number,
                baseline=record.last_comment_ts,
            )
            return record.last_comment_ts

        try:
            latest = self._github.latest_activity_timestamp(self.pr_number)
        except GitHubPollingError as exc:
            log_warning_event(
                LOGGER, "review_baseline_unavailable", pr_number=self.pr_number, error=str(exc)
            )
            latest = None
        written = self._state.write_pr(
            self.pr_number, PRRecord(last_comment_ts=latest or EPOCH_TIMESTAMP)
        )
        return written.last_comment_ts

    def _fetch(self, baseline: str) -> ReviewActivity | None:
        try:
            return self._github.fetch_new_review_activity(self.pr_number, baseline)
        except GitHubPollingError as exc:
            log_warning_event(
                LOGGER, "review_poll_failed", pr_number=self.pr_number, error=str(exc)
            )
            return None

    def _advance(self, baseline: str, activity: ReviewActivity) -> str:
        candidate = baseline_after_agent_run(self._github, self.pr_number, baseline, activity)
        written = self._state.write_pr(self.pr_number, PRRecord(last_comment_ts=candidate))
        log_event(
            LOGGER,
            "review_baseline_advanced",
            pr_number=self.pr_number,
            baseline=written.last_comment_ts,
        )
        return written.last_comment_ts

from __future__ import annotations

from collections.abc import Callable
from concurrent.futures import Executor, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
import logging
import threading
from typing import Protocol

from autopr.config import AppConfig
from autopr.github_gateway import GitHubGateway, GitHubPollingError
from autopr.models import IssueStatus
from autopr.observability import log_event, log_warning_event
from autopr.state import CorruptRecordError, IssueRecord, StateStore
from autopr.worker import mark_issue_failed
from autopr.worktree import WorktreeError, WorktreeManager, issue_branch


LOGGER = logging.getLogger("autopr.scheduler")


class Worker(Protocol):
    def run(self) -> IssueStatus: ...


WorkerFactory = Callable[[int, threading.Event], Worker]


@dataclass(frozen=True)
class _WorkerHandle:
    cancel_event: threading.Event
    future: Future[IssueStatus]


class RepoScheduler:
    """Discovers labeled issues and runs one worker per issue under a concurrency bound."""

    def __init__(
        self,
        config: AppConfig,
        *,
        state: StateStore,
        github: GitHubGateway,
        worktrees: WorktreeManager,
        worker_factory: WorkerFactory,
        stop_event: threading.Event | None = None,
    ) -> None:
        self._config = config
        self._state = state
        self._github = github
        self._worktrees = worktrees
        self._worker_factory = worker_factory
        self._stop_event = stop_event if stop_event is not None else threading.Event()
        self._slots = threading.BoundedSemaphore(config.runtime.max_concurrent)
        self._active: dict[int, _WorkerHandle] = {}
        self._active_lock = threading.Lock()

    @property
    def active_issue_numbers(self) -> tuple[int, ...]:
        with self._active_lock:
            return tuple(sorted(self._active))

    def run(self, *, once: bool) -> None:
        log_event(
            LOGGER,
            "scheduler_started",
            repo=self._github.full_name,
            once=once,
            poll_interval_seconds=self._config.runtime.poll_interval_seconds,
            max_concurrent=self._config.runtime.max_concurrent,
            issue_labels=",".join(self._config.repo.issue_labels),
        )
        with ThreadPoolExecutor(
            max_workers=self._config.runtime.max_concurrent,
            thread_name_prefix="issue-worker",
        ) as pool:
            try:
                while not self._stop_event.is_set():
                    self.run_cycle(pool)
                    if once:
                        self._wait_for_all()
                        break
                    if self._stop_event.wait(self._config.runtime.poll_interval_seconds):
                        break
            finally:
                self.shutdown()

    def run_cycle(self, pool: Executor) -> None:
        log_event(LOGGER, "scan_started", active_worker_count=len(self.active_issue_numbers))
        self.reap_finished()
        self.cleanup_stale_worktrees()
        discovered = self.discover_and_admit(pool)
        if discovered and not self._state.is_initialized():
            self._state.mark_initialized()
            log_event(LOGGER, "first_scan_completed")
        log_event(
            LOGGER,
            "scan_completed",
            active_worker_count=len(self.active_issue_numbers),
            max_concurrent=self._config.runtime.max_concurrent,
        )

    def reap_finished(self) -> None:
        with self._active_lock:
            snapshot = list(self._active.items())
        for issue_number, handle in snapshot:
            try:
                record = self._state.read_issue(issue_number)
            except CorruptRecordError as exc:
                log_warning_event(
                    LOGGER, "issue_record_unreadable", issue_number=issue_number, error=str(exc)
                )
                continue
            if record is None or record.status not in ("done", "failed"):
                continue
            handle.cancel_event.set()
            with self._active_lock:
                self._active.pop(issue_number, None)
            log_event(LOGGER, "worker_reaped", issue_number=issue_number, status=record.status)

    def cleanup_stale_worktrees(self) -> None:
        active = set(self.active_issue_numbers)
        for kind, number, wt_path in self._worktrees.list_named_worktrees():
            try:
                if kind == "issue":
                    # Live workers own their directories.
                    if number in active:
                        continue
                    upstream_state = self._github.get_issue(number).state
                    stale = upstream_state == "closed"
                else:
                    upstream_state = self._github.get_pull_request_state(number)
                    stale = upstream_state in ("closed", "merged")
            except GitHubPollingError:
                continue
            if not stale:
                continue

            log_event(
                LOGGER,
                "stale_worktree_found",
                kind=kind,
                number=number,
                upstream_state=upstream_state,
            )
            try:
                self._worktrees.remove(wt_path)
            except WorktreeError as exc:
                log_warning_event(
                    LOGGER, "worktree_remove_failed", path=str(wt_path), error=str(exc)
                )

    def discover_and_admit(self, pool: Executor) -> bool:
        """Admit new labeled issues; returns False when the issue listing failed."""
        labels = self._config.repo.issue_labels
        if not labels:
            return True
        try:
            issues = self._github.list_open_issues_with_any_labels(labels)
        except GitHubPollingError as exc:
            log_warning_event(LOGGER, "issue_discovery_failed", error=str(exc))
            return False

        first_scan = not self._state.is_initialized()
        for issue in issues:
            with self._active_lock:
                if issue.number in self._active:
                    continue
            try:
                if self._state.read_issue(issue.number) is not None:
                    continue
            except CorruptRecordError as exc:
                log_warning_event(
                    LOGGER, "issue_record_unreadable", issue_number=issue.number, error=str(exc)
                )
                continue

            if first_scan:
                self._state.write_issue(issue.number, IssueRecord(status="preexisting"))
                log_event(LOGGER, "issue_marked_preexisting", issue_number=issue.number)
                continue

            if not self._slots.acquire(blocking=False):
                log_event(
                    LOGGER,
                    "issue_deferred",
                    issue_number=issue.number,
                    reason="worker_capacity_full",
                )
                continue
            try:
                self._admit(pool, issue.number)
            except BaseException:
                self._slots.release()
                raise
        return True

    def shutdown(self) -> None:
        with self._active_lock:
            handles = dict(self._active)
        log_event(LOGGER, "scheduler_shutdown_started", active_worker_count=len(handles))
        for issue_number, handle in handles.items():
            log_event(LOGGER, "worker_cancel_requested", issue_number=issue_number)
            handle.cancel_event.set()
        wait([handle.future for handle in handles.values()])
        log_event(LOGGER, "scheduler_shutdown_completed")

    def _admit(self, pool: Executor, issue_number: int) -> None:
        self._state.write_issue(
            issue_number,
            IssueRecord(status="in_progress", branch=issue_branch(issue_number)),
        )
        cancel_event = threading.Event()
        # Hold the lock across submit so the worker's own cleanup cannot run first.
        with self._active_lock:
            future = pool.submit(self._run_worker, issue_number, cancel_event)
            self._active[issue_number] = _WorkerHandle(cancel_event=cancel_event, future=future)
        log_event(
            LOGGER,
            "worker_spawned",
            issue_number=issue_number,
            log_path=str(self._state.issue_log_path(issue_number)),
        )

    def _run_worker(self, issue_number: int, cancel_event: threading.Event) -> IssueStatus:
        status: IssueStatus = "failed"
        try:
            status = self._worker_factory(issue_number, cancel_event).run()
            return status
        except Exception as exc:
            log_warning_event(
                LOGGER,
                "worker_exited_with_error",
                issue_number=issue_number,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            mark_issue_failed(self._state, issue_number)
            return "failed"
        finally:
            with self._active_lock:
                handle = self._active.get(issue_number)
                if handle is not None and handle.cancel_event is cancel_event:
                    del self._active[issue_number]
            self._slots.release()
            log_event(LOGGER, "worker_finished", issue_number=issue_number, status=status)

    def _wait_for_all(self) -> None:
        while not self._stop_event.is_set():
            with self._active_lock:
                futures = [handle.future for handle in self._active.values()]
            if not futures:
                return
            wait(futures, timeout=1.0)

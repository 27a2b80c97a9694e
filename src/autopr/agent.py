from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Iterator
from contextlib import AbstractContextManager, contextmanager
from pathlib import Path
import logging

from autopr.config import AgentConfig
from autopr.container import DockerManager, to_container_path, worker_env
from autopr.observability import log_event, log_warning_event
from autopr.shell import CommandError, stream


LOGGER = logging.getLogger("autopr.agent")


class AgentInvocationError(CommandError):
    """The coding agent exited non-zero."""


class AgentSession(ABC):
    @abstractmethod
    def run(self, cwd: Path, prompt: str) -> None:
        """Start a fresh agent conversation in ``cwd``."""

    @abstractmethod
    def run_continued(self, cwd: Path, prompt: str) -> None:
        """Resume the most recent agent conversation associated with ``cwd``."""


class ExecutionBackend(ABC):
    @abstractmethod
    def open_session(self, name: str, log_path: Path | None) -> AbstractContextManager[AgentSession]:
        """Return a context manager yielding a session scoped to one worker."""


def build_agent_argv(config: AgentConfig, prompt: str, *, continued: bool) -> list[str]:
    argv = [config.command, "-p", prompt]
    if continued:
        argv.append("--continue")
    argv.append("--verbose")
    argv.extend(config.extra_args)
    return argv


def _check_exit(exit_code: int, *, cwd: str, continued: bool) -> None:
    log_event(
        LOGGER,
        "agent_invocation_finished",
        cwd=cwd,
        continued=continued,
        exit_code=exit_code,
    )
    if exit_code != 0:
        raise AgentInvocationError(
            f"Agent exited with status {exit_code} in {cwd}", exit_code=exit_code
        )


class _LocalSession(AgentSession):
    def __init__(self, config: AgentConfig, log_path: Path | None) -> None:
        self._config = config
        self._log_path = log_path

    def run(self, cwd: Path, prompt: str) -> None:
        self._invoke(cwd, prompt, continued=False)

    def run_continued(self, cwd: Path, prompt: str) -> None:
        self._invoke(cwd, prompt, continued=True)

    def _invoke(self, cwd: Path, prompt: str, *, continued: bool) -> None:
        log_event(LOGGER, "agent_invocation_started", cwd=str(cwd), continued=continued)
        exit_code = stream(
            build_agent_argv(self._config, prompt, continued=continued),
            cwd=cwd,
            log_path=self._log_path,
        )
        _check_exit(exit_code, cwd=str(cwd), continued=continued)


class LocalBackend(ExecutionBackend):
    def __init__(self, config: AgentConfig) -> None:
        self._config = config

    @contextmanager
    def open_session(self, name: str, log_path: Path | None) -> Iterator[AgentSession]:
        yield _LocalSession(self._config, log_path)


class _ContainerSession(AgentSession):
    def __init__(
        self,
        manager: DockerManager,
        container_id: str,
        config: AgentConfig,
        log_path: Path | None,
    ) -> None:
        self._manager = manager
        self._container_id = container_id
        self._config = config
        self._log_path = log_path

    def run(self, cwd: Path, prompt: str) -> None:
        self._invoke(cwd, prompt, continued=False)

    def run_continued(self, cwd: Path, prompt: str) -> None:
        self._invoke(cwd, prompt, continued=True)

    def _invoke(self, cwd: Path, prompt: str, *, continued: bool) -> None:
        workdir = to_container_path(self._manager.project_root, cwd)
        log_event(
            LOGGER,
            "agent_invocation_started",
            cwd=workdir,
            continued=continued,
            container_id=self._container_id[:12],
        )
        exit_code = self._manager.exec(
            self._container_id,
            workdir,
            build_agent_argv(self._config, prompt, continued=continued),
            log_path=self._log_path,
        )
        _check_exit(exit_code, cwd=workdir, continued=continued)


class ContainerBackend(ExecutionBackend):
    """Runs each worker's agent inside its own long-lived container."""

    def __init__(self, manager: DockerManager, config: AgentConfig) -> None:
        self._manager = manager
        self._config = config

    @contextmanager
    def open_session(self, name: str, log_path: Path | None) -> Iterator[AgentSession]:
        container_id = self._manager.start(name, worker_env())
        try:
            yield _ContainerSession(self._manager, container_id, self._config, log_path)
        finally:
            try:
                self._manager.stop(container_id)
            except CommandError as exc:
                log_warning_event(
                    LOGGER, "agent_container_stop_failed", name=name, error=str(exc)
                )

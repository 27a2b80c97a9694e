from __future__ import annotations

from pathlib import Path
import logging
import os
import tempfile

from autopr.observability import log_event, log_warning_event
from autopr.shell import CommandError, run, stream


LOGGER = logging.getLogger("autopr.container")

CONTAINER_WORKSPACE = "/workspace"
PROJECT_DOCKERFILE_NAME = "Dockerfile.autopr"

DEFAULT_DOCKERFILE = """\
FROM ubuntu:22.04

ENV DEBIAN_FRONTEND=noninteractive

RUN apt-get update && apt-get install -y \\
    git curl wget jq unzip \\
    build-essential pkg-config \\
    ca-certificates gnupg lsb-release \\
    software-properties-common \\
    python3 python3-pip python3-venv \\
    && rm -rf /var/lib/apt/lists/*

RUN curl -fsSL https://deb.nodesource.com/setup_20.x | bash - \\
    && apt-get install -y nodejs \\
    && rm -rf /var/lib/apt/lists/*

RUN curl -fsSL https://cli.github.com/packages/githubcli-archive-keyring.gpg \\
    | dd of=/usr/share/keyrings/githubcli-archive-keyring.gpg \\
    && chmod go+r /usr/share/keyrings/githubcli-archive-keyring.gpg \\
    && echo "deb [arch=$(dpkg --print-architecture) signed-by=/usr/share/keyrings/githubcli-archive-keyring.gpg] https://cli.github.com/packages stable main" \\
    | tee /etc/apt/sources.list.d/github-cli.list > /dev/null \\
    && apt-get update && apt-get install -y gh \\
    && rm -rf /var/lib/apt/lists/*

RUN npm install -g @anthropic-ai/claude-code

WORKDIR /workspace
"""


def container_name_for_issue(issue_number: int) -> str:
    return f"worker-issue-{issue_number}"


def container_name_for_pr(pr_number: int) -> str:
    return f"worker-pr-{pr_number}"


def to_container_path(project_root: Path, host_path: Path) -> str:
    """Translate an absolute host path under ``project_root`` to its path inside the mount."""
    try:
        rel = host_path.resolve().relative_to(project_root.resolve())
    except ValueError:
        return CONTAINER_WORKSPACE
    if rel == Path("."):
        return CONTAINER_WORKSPACE
    return f"{CONTAINER_WORKSPACE}/{rel.as_posix()}"


def worker_env() -> dict[str, str]:
    """Collect the credentials a containerized agent needs."""
    env: dict[str, str] = {}
    api_key = os.environ.get("ANTHROPIC_API_KEY")
    if api_key:
        env["ANTHROPIC_API_KEY"] = api_key

    token = os.environ.get("GH_TOKEN") or os.environ.get("GITHUB_TOKEN")
    if not token:
        try:
            token = run(["gh", "auth", "token"], timeout=30.0).strip()
        except CommandError:
            token = ""
    if token:
        env["GH_TOKEN"] = token
    return env


class DockerManager:
    def __init__(self, *, image: str, project_root: Path, dockerfile: str | None = None) -> None:
        self.image = image
        self.project_root = project_root
        self.dockerfile = dockerfile

    def ensure_image(self) -> None:
        try:
            run(["docker", "image", "inspect", self.image])
            return
        except CommandError:
            pass

        dockerfile_path, is_temp = self._resolve_dockerfile()
        try:
            log_event(
                LOGGER, "docker_image_build_started", image=self.image, dockerfile=dockerfile_path
            )
            exit_code = stream(
                ["docker", "build", "-t", self.image, "-f", str(dockerfile_path), "."],
                cwd=dockerfile_path.parent,
            )
            if exit_code != 0:
                raise CommandError(
                    f"docker build failed for image {self.image}", exit_code=exit_code
                )
            log_event(LOGGER, "docker_image_built", image=self.image)
        finally:
            if is_temp:
                dockerfile_path.unlink(missing_ok=True)

    def start(self, name: str, env: dict[str, str]) -> str:
        # A container left over from a crashed run would block the name.
        run(["docker", "rm", "-f", name], check=False)

        argv = ["docker", "run", "-d", "--name", name, "-v", f"{self.project_root}:{CONTAINER_WORKSPACE}"]
        claude_dir = Path.home() / ".claude"
        if claude_dir.is_dir():
            argv.extend(["-v", f"{claude_dir}:/root/.claude"])
        for key in sorted(env):
            argv.extend(["-e", f"{key}={env[key]}"])
        argv.extend([self.image, "sleep", "infinity"])

        container_id = run(argv).strip()
        log_event(LOGGER, "docker_container_started", name=name, container_id=container_id[:12])
        return container_id

    def exec(self, container_id: str, workdir: str | None, argv: list[str], *, log_path: Path | None) -> int:
        cmd = ["docker", "exec"]
        if workdir:
            cmd.extend(["-w", workdir])
        cmd.append(container_id)
        cmd.extend(argv)
        return stream(cmd, log_path=log_path)

    def stop(self, container_id: str) -> None:
        run(["docker", "stop", container_id], check=False)
        try:
            run(["docker", "rm", "-f", container_id])
        except CommandError as exc:
            log_warning_event(
                LOGGER, "docker_container_remove_failed", container_id=container_id[:12], error=str(exc)
            )
            return
        log_event(LOGGER, "docker_container_stopped", container_id=container_id[:12])

    def _resolve_dockerfile(self) -> tuple[Path, bool]:
        if self.dockerfile:
            configured = Path(self.dockerfile)
            if not configured.is_absolute():
                configured = self.project_root / configured
            if not configured.is_file():
                raise FileNotFoundError(f"Configured dockerfile not found: {configured}")
            return configured, False

        project_file = self.project_root / PROJECT_DOCKERFILE_NAME
        if project_file.is_file():
            return project_file, False

        fd, tmp_name = tempfile.mkstemp(prefix="auto-pr-dockerfile-")
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(DEFAULT_DOCKERFILE)
        return Path(tmp_name), True

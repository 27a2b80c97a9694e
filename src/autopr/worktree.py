from __future__ import annotations

from pathlib import Path
import logging
import os
import re
import shutil
from typing import Callable

from autopr.observability import log_event, log_warning_event
from autopr.shell import CommandError, run


LOGGER = logging.getLogger("autopr.worktree")

ISSUE_WORKTREE_RE = re.compile(r"^issue-(\d+)$")
PR_WORKTREE_RE = re.compile(r"^pr-(\d+)$")


class WorktreeError(RuntimeError):
    """Raised when a worktree cannot be created after every fallback has been tried."""


def issue_branch(issue_number: int) -> str:
    return f"auto/issue-{issue_number}"


def issue_worktree_name(issue_number: int) -> str:
    return f"issue-{issue_number}"


def pr_worktree_name(pr_number: int) -> str:
    return f"pr-{pr_number}"


def parse_worktree_name(name: str) -> tuple[str, int] | None:
    """Map a worktree directory name back to ``("issue", N)`` or ``("pr", N)``."""
    match = ISSUE_WORKTREE_RE.match(name)
    if match is not None:
        return "issue", int(match.group(1))
    match = PR_WORKTREE_RE.match(name)
    if match is not None:
        return "pr", int(match.group(1))
    return None


def current_branch(cwd: Path | None = None) -> str:
    return run(["git", "rev-parse", "--abbrev-ref", "HEAD"], cwd=cwd).strip()


def find_project_root(start: Path) -> Path:
    """Walk up from ``start`` to the first directory holding ``.git``; fall back to ``start``."""
    current = start.resolve()
    for candidate in (current, *current.parents):
        if (candidate / ".git").exists():
            return candidate
    return current


class WorktreeManager:
    def __init__(
        self,
        project_root: Path,
        worktree_dir: str,
        *,
        default_branch: Callable[[], str] | None = None,
    ) -> None:
        self.project_root = project_root
        self.worktrees_root = project_root / worktree_dir
        self._default_branch = default_branch

    def path_for(self, name: str) -> Path:
        return self.worktrees_root / name

    def ensure(self, branch: str, name: str) -> Path:
        wt_path = self.path_for(name)

        if wt_path.is_dir():
            if self.is_valid(wt_path):
                log_event(LOGGER, "worktree_refreshed", name=name, branch=branch)
                self._git(wt_path, "fetch", "origin", branch, check=False)
                try:
                    self._git(wt_path, "reset", "--hard", f"origin/{branch}")
                except CommandError:
                    self._git(wt_path, "checkout", branch, check=False)
                return wt_path

            log_warning_event(LOGGER, "worktree_corrupted", name=name, path=str(wt_path))
            self._git(self.project_root, "worktree", "remove", "--force", str(wt_path), check=False)
            shutil.rmtree(wt_path, ignore_errors=True)

        log_event(LOGGER, "worktree_creating", name=name, branch=branch)
        self.worktrees_root.mkdir(parents=True, exist_ok=True)
        try:
            self._git(self.project_root, "worktree", "add", str(wt_path), branch)
        except CommandError:
            # Branch might only exist on the remote.
            self._git(self.project_root, "fetch", "origin", branch, check=False)
            try:
                self._git(self.project_root, "worktree", "add", str(wt_path), branch)
            except CommandError:
                try:
                    self._git(
                        self.project_root,
                        "worktree",
                        "add",
                        "-B",
                        branch,
                        str(wt_path),
                        f"origin/{branch}",
                    )
                except CommandError as exc:
                    raise WorktreeError(f"Failed to create worktree {name!r}: {exc}") from exc

        relativize_worktree_links(wt_path)
        log_event(LOGGER, "worktree_created", name=name, branch=branch, path=str(wt_path))
        return wt_path

    def create_for_issue(self, issue_number: int, base_branch: str | None) -> Path:
        branch = issue_branch(issue_number)
        base = base_branch
        if not base:
            base = self._default_branch() if self._default_branch is not None else "main"

        self._git(self.project_root, "worktree", "prune", check=False)
        self._git(self.project_root, "fetch", "origin", base, check=False)
        # Fails harmlessly when the branch already exists from an earlier run.
        self._git(self.project_root, "branch", branch, f"origin/{base}", check=False)
        return self.ensure(branch, issue_worktree_name(issue_number))

    def remove(self, wt_path: Path) -> None:
        try:
            self._git(self.project_root, "worktree", "remove", "--force", str(wt_path))
        except CommandError as exc:
            raise WorktreeError(f"Could not remove worktree {wt_path}: {exc}") from exc
        log_event(LOGGER, "worktree_removed", path=str(wt_path))

    def list_named_worktrees(self) -> list[tuple[str, int, Path]]:
        """Return ``(kind, number, path)`` for every directory matching the naming scheme."""
        if not self.worktrees_root.is_dir():
            return []
        found: list[tuple[str, int, Path]] = []
        for entry in sorted(self.worktrees_root.iterdir()):
            if not entry.is_dir():
                continue
            parsed = parse_worktree_name(entry.name)
            if parsed is None:
                continue
            kind, number = parsed
            found.append((kind, number, entry))
        return found

    def is_valid(self, wt_path: Path) -> bool:
        """True only when ``wt_path`` is the top level of its own checkout.

        The worktree directory lives inside the project repository, so git run from
        a stray directory there resolves to the project checkout instead.
        """
        if not (wt_path / ".git").exists():
            return False
        try:
            toplevel = run(["git", "-C", str(wt_path), "rev-parse", "--show-toplevel"]).strip()
        except CommandError:
            return False
        return bool(toplevel) and Path(toplevel).resolve() == wt_path.resolve()

    def _git(self, cwd: Path, *args: str, check: bool = True) -> str:
        return run(["git", "-C", str(cwd), *args], check=check)


def relativize_worktree_links(wt_path: Path) -> None:
    """Rewrite the worktree's gitdir links as relative paths.

    The project root is bind-mounted at a different absolute path inside worker
    containers; relative links resolve in both places.
    """
    dot_git = wt_path / ".git"
    try:
        content = dot_git.read_text(encoding="utf-8").strip()
    except OSError:
        return
    if not content.startswith("gitdir: "):
        return
    gitdir_target = Path(content[len("gitdir: ") :])

    if gitdir_target.is_absolute():
        rel = Path(os.path.relpath(gitdir_target, wt_path)).as_posix()
        dot_git.write_text(f"gitdir: {rel}\n", encoding="utf-8")
    else:
        gitdir_target = (wt_path / gitdir_target).resolve()

    back_pointer_file = gitdir_target / "gitdir"
    try:
        back_pointer = Path(back_pointer_file.read_text(encoding="utf-8").strip())
    except OSError:
        return
    if back_pointer.is_absolute():
        rel = Path(os.path.relpath(back_pointer, back_pointer_file.parent)).as_posix()
        back_pointer_file.write_text(f"{rel}\n", encoding="utf-8")

"""Provide small best-effort git helpers used by the phase sagas.

Every helper tolerates a missing git binary or a directory that is not a
repository: queries return ``None``/``False`` and mutations report failure
instead of raising.
"""

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Optional

from loguru import logger

from .constants import GITIGNORE_ENTRIES, GITIGNORE_MARKER


def _run_git(project_dir: Path, *args: str) -> subprocess.CompletedProcess[str]:
    try:
        return subprocess.run(
            ["git", *args],
            cwd=project_dir,
            capture_output=True,
            text=True,
            check=False,
        )
    except (FileNotFoundError, NotADirectoryError) as exc:
        return subprocess.CompletedProcess(["git", *args], 127, "", str(exc))


def _git_is_repo(project_dir: Path) -> bool:
    result = _run_git(project_dir, "rev-parse", "--is-inside-work-tree")
    return result.returncode == 0 and result.stdout.strip().lower() == "true"


def _git_current_branch(project_dir: Path) -> Optional[str]:
    result = _run_git(project_dir, "rev-parse", "--abbrev-ref", "HEAD")
    if result.returncode != 0:
        # Unborn branch (no commits yet).
        result = _run_git(project_dir, "symbolic-ref", "--short", "HEAD")
        if result.returncode != 0:
            return None
    return result.stdout.strip() or None


def _git_head_sha(project_dir: Path) -> Optional[str]:
    result = _run_git(project_dir, "rev-parse", "HEAD")
    if result.returncode != 0:
        return None
    return result.stdout.strip() or None


def _git_branch_exists(project_dir: Path, branch: str) -> bool:
    result = _run_git(project_dir, "show-ref", "--verify", f"refs/heads/{branch}")
    return result.returncode == 0


def _git_has_changes(project_dir: Path) -> bool:
    result = _run_git(project_dir, "status", "--porcelain")
    return result.returncode == 0 and bool(result.stdout.strip())


def _git_create_branch(project_dir: Path, branch: str) -> bool:
    result = _run_git(project_dir, "checkout", "-b", branch)
    if result.returncode != 0:
        logger.warning("git checkout -b {} failed: {}", branch, result.stderr.strip())
    return result.returncode == 0


def _git_checkout(project_dir: Path, branch: str) -> bool:
    result = _run_git(project_dir, "checkout", branch)
    if result.returncode != 0:
        logger.warning("git checkout {} failed: {}", branch, result.stderr.strip())
    return result.returncode == 0


def _git_delete_branch(project_dir: Path, branch: str) -> bool:
    result = _run_git(project_dir, "branch", "-D", branch)
    if result.returncode != 0:
        logger.warning("git branch -D {} failed: {}", branch, result.stderr.strip())
    return result.returncode == 0


def _git_find_stash(project_dir: Path, message: str) -> Optional[str]:
    result = _run_git(project_dir, "stash", "list", "--format=%gd%x09%s")
    if result.returncode != 0:
        return None
    for line in result.stdout.splitlines():
        ref, _, subject = line.partition("\t")
        if subject.endswith(message):
            return ref.strip()
    return None


def _git_stash_push(project_dir: Path, message: str, exclude: Optional[str] = None) -> Optional[str]:
    """Stash tracked and untracked changes; return the stash ref or ``None`` if nothing was stashed."""
    if not _git_has_changes(project_dir):
        return None
    args = ["stash", "push", "--include-untracked", "-m", message]
    if exclude:
        args += ["--", ".", f":(exclude){exclude}"]
    result = _run_git(project_dir, *args)
    if result.returncode != 0:
        logger.warning("git stash push failed: {}", result.stderr.strip())
        return None
    return _git_find_stash(project_dir, message)


def _git_stash_pop(project_dir: Path, message: str) -> bool:
    ref = _git_find_stash(project_dir, message)
    if ref is None:
        return False
    result = _run_git(project_dir, "stash", "pop", ref)
    if result.returncode != 0:
        logger.warning("git stash pop {} failed: {}", ref, result.stderr.strip())
    return result.returncode == 0


def _git_commit_all(project_dir: Path, message: str) -> Optional[str]:
    """Stage everything and commit; return the new HEAD sha or ``None`` if nothing was committed."""
    if not _git_has_changes(project_dir):
        return None
    add = _run_git(project_dir, "add", "-A", "--", ".")
    if add.returncode != 0:
        logger.warning("git add failed: {}", add.stderr.strip())
        return None
    commit = _run_git(project_dir, "commit", "-m", message)
    if commit.returncode != 0:
        logger.warning("git commit failed: {}", (commit.stderr or commit.stdout).strip())
        return None
    return _git_head_sha(project_dir)


def _git_undo_commit(project_dir: Path, sha: str) -> bool:
    """Soft-reset HEAD off *sha*, keeping its changes staged. No-op unless HEAD is *sha*."""
    if _git_head_sha(project_dir) != sha:
        return False
    parent = _run_git(project_dir, "rev-parse", "--verify", "--quiet", f"{sha}^")
    if parent.returncode == 0:
        result = _run_git(project_dir, "reset", "--soft", parent.stdout.strip())
    else:
        # Root commit: drop the ref so the branch becomes unborn again.
        result = _run_git(project_dir, "update-ref", "-d", "HEAD")
    if result.returncode != 0:
        logger.warning("Unable to undo commit {}: {}", sha, result.stderr.strip())
    return result.returncode == 0


def _gitignore_has_ralph_entries(path: Path) -> bool:
    if not path.exists():
        return False
    try:
        contents = path.read_text()
    except OSError:
        return False
    lines = {line.strip() for line in contents.splitlines()}
    return GITIGNORE_MARKER in lines or GITIGNORE_ENTRIES[0] in lines


def _ensure_gitignore(project_dir: Path) -> bool:
    """Append the ralph-dev ignore block once; return True if the file changed."""
    gitignore_path = project_dir / ".gitignore"
    if _gitignore_has_ralph_entries(gitignore_path):
        return False
    contents = gitignore_path.read_text() if gitignore_path.exists() else ""
    if contents and not contents.endswith("\n"):
        contents += "\n"
    if contents:
        contents += "\n"
    contents += GITIGNORE_MARKER + "\n" + "\n".join(GITIGNORE_ENTRIES) + "\n"
    gitignore_path.write_text(contents)
    return True

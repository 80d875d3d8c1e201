# git.py
# Small, focused wrapper around the Git CLI, used to describe the local
# repository as an incoming event (branch + changed files).

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import List, Optional, Tuple

from ..model import Event, EventKind


def _git(args: list[str], cwd: Optional[str] = None) -> str:
    """
    Execute a git command and return its stdout as a clean string.

    Raises subprocess.CalledProcessError on a non-zero exit and
    FileNotFoundError when git is not installed.
    """
    out = subprocess.check_output(
        ["git", *args],
        cwd=cwd,
        text=True,
        stderr=subprocess.DEVNULL,
    )
    return out.strip()


def repo_root(cwd: Optional[str] = None) -> Path:
    """Absolute path to the root of the current Git repository."""
    return Path(_git(["rev-parse", "--show-toplevel"], cwd=cwd))


def current_branch(cwd: Optional[str] = None) -> Optional[str]:
    """The checked out branch, or None on a detached HEAD."""
    name = _git(["rev-parse", "--abbrev-ref", "HEAD"], cwd=cwd)
    return None if name == "HEAD" else name


def current_tag(cwd: Optional[str] = None) -> Optional[str]:
    """A tag pointing exactly at HEAD, if any."""
    try:
        return _git(["describe", "--tags", "--exact-match", "HEAD"], cwd=cwd) or None
    except subprocess.CalledProcessError:
        return None


def changed_files(base: str, head: str = "HEAD", cwd: Optional[str] = None) -> List[str]:
    """Files (relative to the repo root) changed between two refs."""
    out = _git(["diff", "--name-only", f"{base}..{head}"], cwd=cwd)
    if not out:
        return []
    return out.splitlines()


def working_tree_changes(cwd: Optional[str] = None) -> List[str]:
    """Staged, unstaged and untracked files."""
    files = set()
    for args in (["diff", "--name-only"], ["diff", "--name-only", "--cached"],
                 ["ls-files", "--others", "--exclude-standard"]):
        out = _git(args, cwd=cwd)
        if out:
            files.update(out.splitlines())
    return sorted(files)


def merge_base(with_ref: str = "origin/main", cwd: Optional[str] = None) -> str:
    """Commit where HEAD diverged from `with_ref`."""
    return _git(["merge-base", "HEAD", with_ref], cwd=cwd)


def git_changes(compare_ref: str = "origin/main", cwd: Optional[str] = None) -> Tuple[Optional[str], List[str]]:
    """
    (branch, changed files) of the local checkout.

    Changed files are the working tree changes plus the commits since the
    merge-base with `compare_ref` (falling back to HEAD~1, then to nothing).
    """
    branch = current_branch(cwd=cwd)
    changed = set(working_tree_changes(cwd=cwd))
    try:
        base = merge_base(compare_ref, cwd=cwd)
    except subprocess.CalledProcessError:
        # e.g. no remote configured
        base = "HEAD~1"
    try:
        changed.update(changed_files(base, "HEAD", cwd=cwd))
    except subprocess.CalledProcessError:
        # first commit: only the working tree counts
        pass
    return branch, sorted(changed)


def event_from_git(kind: EventKind, compare_ref: str = "origin/main", cwd: Optional[str] = None) -> Event:
    branch, changed = git_changes(compare_ref, cwd=cwd)
    return Event(kind=kind, branch=branch, tag=current_tag(cwd=cwd), paths=tuple(changed))

# git.py
# Small, focused wrapper around the Git CLI.
# Used to fill in the run context (ref, actor)
# when the CLI is not told them explicitly.

from __future__ import annotations

import subprocess
from typing import Optional


def _git(args: list[str], cwd: Optional[str] = None) -> str:
    """
    Execute a git command and return its stdout as a clean string.

    Args:
        args: List of git arguments (e.g. ["rev-parse", "HEAD"])
        cwd: Optional working directory in which to run the git command.

    Returns:
        Stdout from the git command with surrounding whitespace removed.

    Raises:
        subprocess.CalledProcessError: git exited non-zero
        FileNotFoundError: git is not installed
    """
    out = subprocess.check_output(
        ["git", *args],
        cwd=cwd,
        text=True,
        stderr=subprocess.DEVNULL,
    )
    return out.strip()


def get_current_ref(cwd: Optional[str] = None) -> str:
    """
    Return the current branch as a full ref (refs/heads/<branch>),
    or the HEAD commit SHA when detached.
    """
    branch = _git(["rev-parse", "--abbrev-ref", "HEAD"], cwd=cwd)
    if branch and branch != "HEAD":
        return f"refs/heads/{branch}"
    return _git(["rev-parse", "HEAD"], cwd=cwd)


def get_user_name(cwd: Optional[str] = None) -> str:
    return _git(["config", "user.name"], cwd=cwd)


def context_defaults(cwd: Optional[str] = None) -> dict[str, str]:
    """Best-effort ref/actor from the local checkout; missing facts are left out."""
    facts: dict[str, str] = {}
    for key, fn in (("ref", get_current_ref), ("actor", get_user_name)):
        try:
            value = fn(cwd=cwd)
        except (subprocess.CalledProcessError, FileNotFoundError):
            continue
        if value:
            facts[key] = value
    return facts

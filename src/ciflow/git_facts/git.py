# git.py
# Small wrapper around the Git CLI.
# The CLI uses it to fill in event facts (ref, sha, actor) that were not
# passed explicitly, so the rest of the codebase never shells out to git.

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
        subprocess.CalledProcessError: git exited non-zero (e.g. not a repo)
        FileNotFoundError: git is not installed
    """
    out = subprocess.check_output(
        ["git", *args],
        cwd=cwd,
        text=True,
        stderr=subprocess.DEVNULL,
    )
    return out.strip()


def head_sha(cwd: Optional[str] = None) -> str:
    """Full SHA of the current HEAD commit."""
    return _git(["rev-parse", "HEAD"], cwd=cwd)


def get_current_ref(cwd: Optional[str] = None) -> str:
    """
    Return the fully-qualified ref of the checkout.

    A branch checkout gives `refs/heads/<branch>`; a detached HEAD gives the
    bare commit SHA, which no branch filter will match.
    """
    # `symbolic-ref` fails on a detached HEAD
    try:
        return _git(["symbolic-ref", "-q", "HEAD"], cwd=cwd)
    except subprocess.CalledProcessError:
        return head_sha(cwd=cwd)


def get_user_name(cwd: Optional[str] = None) -> Optional[str]:
    """Configured `user.name`, or None when unset."""
    try:
        return _git(["config", "user.name"], cwd=cwd) or None
    except subprocess.CalledProcessError:
        return None

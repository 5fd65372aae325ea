# git.py
# Small, focused wrapper around the Git CLI.
# Only used to fill in trigger defaults (ref, repository) for local runs.

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Optional


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


def head_sha(cwd: Optional[str] = None) -> str:
    """Full SHA of HEAD."""
    return _git(["rev-parse", "HEAD"], cwd=cwd)


def current_ref(cwd: Optional[str] = None) -> str:
    """
    Current branch name, or the HEAD SHA when detached.

    `git rev-parse --abbrev-ref HEAD` prints "HEAD" on a detached checkout,
    which is useless as a trigger ref.
    """
    ref = _git(["rev-parse", "--abbrev-ref", "HEAD"], cwd=cwd)
    if ref == "HEAD":
        return head_sha(cwd=cwd)
    return ref


def remote_url(remote: str = "origin", cwd: Optional[str] = None) -> str:
    """URL of a configured remote."""
    return _git(["remote", "get-url", remote], cwd=cwd)


def repository_name(cwd: Optional[str] = None) -> str:
    """
    `owner/name` style identifier derived from the origin URL, falling back
    to the directory name when there is no remote or no git at all.
    """
    try:
        url = remote_url(cwd=cwd)
    except (subprocess.CalledProcessError, FileNotFoundError):
        return Path(cwd or ".").resolve().name

    tail = url.rstrip("/").replace(":", "/").split("/")[-2:]
    return "/".join(tail).removesuffix(".git")


def trigger_ref(cwd: Optional[str] = None) -> str:
    try:
        return current_ref(cwd=cwd)
    except (subprocess.CalledProcessError, FileNotFoundError):
        return "HEAD"

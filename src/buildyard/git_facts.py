# git_facts.py
# Small wrapper around the Git CLI, used to record which commit of the
# package repository a submit was built from.

from __future__ import annotations

import logging
import shutil
import subprocess
from pathlib import Path
from typing import List, Optional

logger = logging.getLogger(__name__)


def _git(args: List[str], cwd: str | Path | None = None) -> str:
    """
    Execute a git command and return its stdout, stripped.

    Raises subprocess.CalledProcessError on a non-zero exit.
    """
    out = subprocess.check_output(
        ["git", *args],
        cwd=str(cwd) if cwd is not None else None,
        text=True,
        stderr=subprocess.DEVNULL,
    )
    return out.strip()


def _available() -> bool:
    return shutil.which("git") is not None


def head_sha(path: str | Path) -> Optional[str]:
    """
    Full SHA of HEAD for the repository at `path`.

    None if git is missing, `path` is not inside a repository,
    or the repository has no commits yet.
    """
    if not _available():
        return None
    try:
        return _git(["rev-parse", "HEAD"], cwd=path)
    except (subprocess.CalledProcessError, OSError) as e:
        logger.debug("No git HEAD for %s: %s", path, e)
        return None

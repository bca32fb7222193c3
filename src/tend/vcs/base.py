"""VCS adapter protocol.

The reconcile engine depends only on this capability set, never on a
concrete VCS binding.  Every method either returns normally or raises an
``AdapterError`` subclass carrying a ``FailureKind``.
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import Protocol

from pydantic import BaseModel


class VcsStatus(BaseModel):
    """Working-copy status reported by an adapter.

    Attributes:
        branch: Checked-out branch name, or ``None`` when detached.
        tags: Tags pointing at ``HEAD``.
        head_commit: Full commit hash of ``HEAD`` (``None`` for an empty repo).
        dirty: Uncommitted changes (including untracked files) present.
        remote_url: URL of ``origin``, or ``None`` if not configured.
    """

    branch: str | None = None
    tags: list[str] = []
    head_commit: str | None = None
    dirty: bool = False
    remote_url: str | None = None

    model_config = {"frozen": True}


class VcsAdapter(Protocol):
    """Protocol that all VCS adapters must satisfy."""

    def clone(
        self,
        url: str,
        ref: str | None,
        path: Path,
        *,
        shallow: bool = False,
        submodules: bool = False,
    ) -> None:
        """Clone *url* into *path* and check out *ref* (default branch if None)."""
        ...  # pragma: no cover

    def fetch(self, path: Path) -> None:
        """Fetch all refs and tags from ``origin``."""
        ...  # pragma: no cover

    def checkout(self, path: Path, ref: str) -> None:
        """Check out *ref* without discarding local changes."""
        ...  # pragma: no cover

    def status(self, path: Path) -> VcsStatus:
        """Report the working-copy status of *path*."""
        ...  # pragma: no cover


# ---------------------------------------------------------------------------
# Remote URL comparison
# ---------------------------------------------------------------------------

# git@host:org/repo(.git)
_SCP_LIKE = re.compile(r"^(?:[^@/]+@)?(?P<host>[^:/]+):(?P<path>(?!/).+)$")
# scheme://[user@]host[:port]/path
_URL_LIKE = re.compile(
    r"^(?P<scheme>[a-z][a-z0-9+.-]*)://(?:[^@/]+@)?(?P<host>[^/:]+)(?::\d+)?/(?P<path>.*)$",
    re.IGNORECASE,
)


def normalize_remote_url(url: str) -> str:
    """Reduce a remote URL to a comparable ``host/path`` form.

    ``git@github.com:org/repo.git``, ``ssh://git@github.com/org/repo`` and
    ``https://github.com/org/repo/`` all normalise to
    ``github.com/org/repo``.  Local paths (and ``file://`` URLs) normalise
    to their resolved absolute path.
    """
    text = url.strip()
    if text.lower().startswith("file://"):
        return str(Path(text[len("file://"):]).expanduser().resolve())

    match = _URL_LIKE.match(text)
    if match:
        host = match.group("host").lower()
        path = match.group("path")
    else:
        scp = _SCP_LIKE.match(text)
        if scp and not Path(text).exists():
            host = scp.group("host").lower()
            path = scp.group("path")
        else:
            return str(Path(text).expanduser().resolve())

    path = path.rstrip("/")
    if path.endswith(".git"):
        path = path[: -len(".git")]
    return f"{host}/{path.strip('/')}"


def same_remote(a: str | None, b: str | None) -> bool:
    """True when two remote URLs point at the same repository."""
    if not a or not b:
        return False
    return normalize_remote_url(a) == normalize_remote_url(b)

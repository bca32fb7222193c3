"""Read-only inspection of the workspace.

``probe`` turns one RepoSpec into a RepoState by looking at the target
path and, for git working copies, asking the VCS adapter for its status.
Nothing here writes to disk.  Failures are recorded on the returned state
(``RepoState.error``) instead of being raised, so one unreadable repository
never stops the others from being probed.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import datetime, timezone
from functools import partial
from pathlib import Path

from tend.core.async_utils import gather_limited
from tend.errors import AdapterError, ProbeError
from tend.reconcile.models import RepoSpec, RepoState
from tend.vcs.base import VcsAdapter

logger = logging.getLogger(__name__)

VCS_GIT = "git"
VCS_UNKNOWN = "unknown"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def inspect_path(target: Path) -> str | None:
    """Classify what lives at *target* without touching the adapter.

    Returns:
        ``None`` when nothing usable is there (missing, or an empty
        directory), ``"git"`` for a git working copy, ``"unknown"`` for
        anything else.

    Raises:
        ProbeError: The path exists but cannot be read.
    """
    try:
        if not target.exists() and not target.is_symlink():
            return None
        if not target.is_dir():
            return VCS_UNKNOWN
        if (target / ".git").exists():
            return VCS_GIT
        if not any(target.iterdir()):
            return None
    except OSError as exc:
        raise ProbeError(f"cannot read {target}: {exc}") from exc
    return VCS_UNKNOWN


def probe(
    workspace_root: Path, spec: RepoSpec, adapter: VcsAdapter
) -> RepoState:
    """Observe the current state of one repository.

    Args:
        workspace_root: Absolute workspace root.
        spec: The repository to inspect.
        adapter: VCS adapter used for the ``status`` query.

    Returns:
        A ``RepoState``.  Probe failures are reported through
        ``RepoState.error`` with ``present=True``.
    """
    target = workspace_root / spec.path
    probed_at = _now()

    try:
        kind = inspect_path(target)
    except ProbeError as exc:
        logger.warning("Probe failed for %s: %s", spec.name, exc)
        return RepoState(present=True, probed_at=probed_at, error=str(exc))

    if kind is None:
        logger.debug("%s: absent at %s", spec.name, target)
        return RepoState(present=False, probed_at=probed_at)

    if kind == VCS_UNKNOWN:
        logger.debug("%s: %s is not a git working copy", spec.name, target)
        return RepoState(
            present=True, vcs_kind=VCS_UNKNOWN, probed_at=probed_at
        )

    try:
        status = adapter.status(target)
    except AdapterError as exc:
        logger.warning("Status query failed for %s: %s", spec.name, exc)
        return RepoState(
            present=True,
            vcs_kind=VCS_GIT,
            probed_at=probed_at,
            error=f"status failed: {exc}",
        )

    current_ref = status.branch
    if current_ref is None and status.tags:
        current_ref = status.tags[0]

    return RepoState(
        present=True,
        vcs_kind=VCS_GIT,
        current_ref=current_ref,
        tags=list(status.tags),
        head_commit=status.head_commit,
        dirty=status.dirty,
        remote_url=status.remote_url,
        probed_at=probed_at,
    )


async def probe_all(
    workspace_root: Path,
    specs: Sequence[RepoSpec],
    adapter: VcsAdapter,
    max_parallel: int = 8,
) -> list[RepoState]:
    """Probe every spec concurrently.

    Probing is read-only, so repositories are inspected in parallel with no
    coordination beyond the *max_parallel* bound.

    Returns:
        States in the same order as *specs*.
    """
    calls = [partial(probe, workspace_root, spec, adapter) for spec in specs]
    states = await gather_limited(calls, max(1, max_parallel))
    logger.info(
        "Probed %d repositories (%d present)",
        len(states),
        sum(1 for s in states if s.present),
    )
    return states

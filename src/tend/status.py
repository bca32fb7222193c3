"""Workspace status listing (``tend status``)."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from enum import Enum
from pathlib import Path, PurePosixPath

from pydantic import BaseModel

from .errors import AdapterError, ProbeError
from .reconcile.models import RepoSpec
from .reconcile.prober import VCS_GIT, inspect_path
from .validators import normalize_relative_path
from .vcs.base import VcsAdapter

logger = logging.getLogger(__name__)


class RepoStatus(str, Enum):
    CLEAN = "clean"
    DIRTY = "dirty"
    MISSING = "missing"
    UNKNOWN = "unknown"
    ERROR = "error"


class StatusEntry(BaseModel):
    name: str
    status: RepoStatus
    detail: str | None = None

    model_config = {"frozen": True}


def _status_of(
    base_dir: Path, spec: RepoSpec, adapter: VcsAdapter
) -> StatusEntry:
    target = base_dir / spec.path
    try:
        kind = inspect_path(target)
    except ProbeError as exc:
        return StatusEntry(name=spec.name, status=RepoStatus.ERROR, detail=str(exc))

    if kind is None:
        return StatusEntry(name=spec.name, status=RepoStatus.MISSING)
    if kind != VCS_GIT:
        return StatusEntry(
            name=spec.name,
            status=RepoStatus.ERROR,
            detail="not a git working copy",
        )

    try:
        status = adapter.status(target)
    except AdapterError as exc:
        logger.warning("Status query failed for %s: %s", spec.name, exc)
        return StatusEntry(name=spec.name, status=RepoStatus.ERROR, detail=str(exc))

    return StatusEntry(
        name=spec.name,
        status=RepoStatus.DIRTY if status.dirty else RepoStatus.CLEAN,
        detail=status.branch,
    )


def check_status(
    base_dir: Path, specs: Sequence[RepoSpec], adapter: VcsAdapter
) -> list[StatusEntry]:
    """Report every expected repository plus unexpected directories.

    Expected repositories come first, in *specs* order.  Then every
    non-hidden directory directly under *base_dir* that is neither an
    expected repository nor a parent of one is listed as ``unknown``,
    sorted by name.
    """
    entries = [_status_of(base_dir, spec, adapter) for spec in specs]

    expected_roots = set()
    for spec in specs:
        rel = normalize_relative_path(spec.path) or spec.path
        expected_roots.add(PurePosixPath(rel).parts[0])

    if base_dir.is_dir():
        unknown = sorted(
            child.name
            for child in base_dir.iterdir()
            if child.is_dir()
            and not child.name.startswith(".")
            and child.name not in expected_roots
        )
        entries.extend(
            StatusEntry(name=name, status=RepoStatus.UNKNOWN) for name in unknown
        )

    return entries


def format_status(workspace_name: str, entries: Sequence[StatusEntry]) -> str:
    """Human-readable status table with a count line."""
    icons = {
        RepoStatus.CLEAN: "ok",
        RepoStatus.DIRTY: "!!",
        RepoStatus.MISSING: "--",
        RepoStatus.UNKNOWN: "??",
        RepoStatus.ERROR: "xx",
    }
    lines = [f"workspace: {workspace_name}", ""]
    for entry in entries:
        label = entry.status.value
        if entry.detail and entry.status == RepoStatus.ERROR:
            label += f" ({entry.detail})"
        lines.append(f"  [{icons[entry.status]}] {entry.name:<40} {label}")

    counts = {status: 0 for status in RepoStatus}
    for entry in entries:
        counts[entry.status] += 1
    lines.append("")
    lines.append(
        f"  {counts[RepoStatus.CLEAN]} clean, {counts[RepoStatus.DIRTY]} dirty, "
        f"{counts[RepoStatus.MISSING]} missing, "
        f"{counts[RepoStatus.UNKNOWN]} unknown"
        + (
            f", {counts[RepoStatus.ERROR]} errors"
            if counts[RepoStatus.ERROR]
            else ""
        )
    )
    return "\n".join(lines)

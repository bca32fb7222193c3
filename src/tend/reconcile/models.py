"""Pydantic models for the workspace reconciliation engine.

Defines the core data contracts used across all reconcile modules:

- ``RepoSpec``: Declared desired configuration of one repository.
- ``RepoState``: Observed on-disk state of one repository.
- ``ActionKind`` / ``Action``: The corrective operation planned per repo.
- ``OutcomeStatus`` / ``Outcome``: Result of executing one Action.
- ``RunStatus`` / ``RunReport``: Aggregate result of a reconcile run.

All models are frozen (immutable) for safety.
"""

from __future__ import annotations

import hashlib
from enum import Enum

from pydantic import BaseModel


class RepoSpec(BaseModel):
    """Desired configuration for one repository.

    Attributes:
        name: Logical name, unique within a workspace.
        url: Remote URL or local path to clone from.
        ref: Branch, tag or commit to check out.  ``None`` means the
            remote's default branch and matches whatever is checked out.
        path: Target path relative to the workspace root.
        shallow: Clone with ``--depth 1``.
        submodules: Initialise submodules recursively.
    """

    name: str
    url: str
    ref: str | None = None
    path: str
    shallow: bool = False
    submodules: bool = False

    model_config = {"frozen": True}

    def fingerprint(self) -> str:
        """Stable digest of every field, used to detect a changed spec."""
        return hashlib.sha256(
            self.model_dump_json().encode("utf-8")
        ).hexdigest()


class RepoState(BaseModel):
    """Observed state of one repository at probe time.

    Attributes:
        present: Something exists at the target path.
        vcs_kind: ``"git"`` for a git working copy, ``"unknown"`` for
            anything else, ``None`` when absent.
        current_ref: Checked-out branch or tag name (``None`` if detached
            or unknown).
        tags: Tags pointing at the checked-out commit.
        head_commit: Full hash of ``HEAD``.
        dirty: Uncommitted changes present.
        remote_url: URL of the ``origin`` remote.
        probed_at: ISO 8601 timestamp of the probe.
        error: Probe failure message, if probing failed.
    """

    present: bool
    vcs_kind: str | None = None
    current_ref: str | None = None
    tags: list[str] = []
    head_commit: str | None = None
    dirty: bool = False
    remote_url: str | None = None
    probed_at: str | None = None
    error: str | None = None

    model_config = {"frozen": True}


class ActionKind(str, Enum):
    """Possible reconcile operations for one repository."""

    CLONE = "clone"
    FETCH_CHECKOUT = "fetch_checkout"
    RELOCATE = "relocate"
    SKIP = "skip"
    CONFLICT = "conflict"


class Action(BaseModel):
    """The operation planned for one repository.

    Attributes:
        kind: What to do.
        spec: The desired configuration.
        state: The observed state the decision was derived from.
        reason: Short explanation, shown in reports.
        source_path: For ``RELOCATE``, the workspace-relative path the
            working copy currently lives at.
    """

    kind: ActionKind
    spec: RepoSpec
    state: RepoState
    reason: str | None = None
    source_path: str | None = None

    model_config = {"frozen": True}

    @property
    def name(self) -> str:
        return self.spec.name


class OutcomeStatus(str, Enum):
    """Final status of one executed Action."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CONFLICT = "conflict"
    CANCELLED = "cancelled"


class Outcome(BaseModel):
    """Result of executing one Action.

    Attributes:
        name: Repository name.
        action: The kind of Action that was executed.
        status: Final status.
        reason: Error message or explanation.
        retryable: For failures, whether the last error was transient.
        attempts: Number of adapter attempts made.
        resumed: Skipped because the ledger already recorded success.
        started_at: ISO 8601 timestamp when execution started.
        finished_at: ISO 8601 timestamp when execution finished.
    """

    name: str
    action: ActionKind
    status: OutcomeStatus
    reason: str | None = None
    retryable: bool = False
    attempts: int = 0
    resumed: bool = False
    started_at: str | None = None
    finished_at: str | None = None

    model_config = {"frozen": True}

    @property
    def ok(self) -> bool:
        """True for succeeded and skipped outcomes."""
        return self.status in (OutcomeStatus.SUCCEEDED, OutcomeStatus.SKIPPED)


class RunStatus(str, Enum):
    """Overall signal of a reconcile run."""

    ALL_SUCCEEDED = "all_succeeded"
    PARTIAL_FAILURE = "partial_failure"
    TOTAL_FAILURE = "total_failure"


class RunReport(BaseModel):
    """Aggregate report for a reconcile run.

    Attributes:
        workspace: Workspace root the run operated on.
        status: Overall run status.
        outcomes: One Outcome per planned Action, sorted by name.
        dry_run: Whether this was a dry-run (no changes applied).
        started_at: ISO 8601 timestamp when the run started.
        completed_at: ISO 8601 timestamp when the run completed.
    """

    workspace: str
    status: RunStatus
    outcomes: list[Outcome] = []
    dry_run: bool = False
    started_at: str | None = None
    completed_at: str | None = None

    model_config = {"frozen": True}

    @property
    def succeeded(self) -> list[Outcome]:
        """Outcomes that changed something successfully."""
        return [
            o for o in self.outcomes if o.status == OutcomeStatus.SUCCEEDED
        ]

    @property
    def skipped(self) -> list[Outcome]:
        """Outcomes where nothing needed doing."""
        return [
            o for o in self.outcomes if o.status == OutcomeStatus.SKIPPED
        ]

    @property
    def failed(self) -> list[Outcome]:
        """Outcomes that failed."""
        return [o for o in self.outcomes if o.status == OutcomeStatus.FAILED]

    @property
    def conflicts(self) -> list[Outcome]:
        """Outcomes that need operator attention."""
        return [
            o for o in self.outcomes if o.status == OutcomeStatus.CONFLICT
        ]

    @property
    def cancelled(self) -> list[Outcome]:
        """Outcomes of Actions that never started because of cancellation."""
        return [
            o for o in self.outcomes if o.status == OutcomeStatus.CANCELLED
        ]

    @property
    def resumed(self) -> list[Outcome]:
        """Outcomes skipped because a previous run already finished them."""
        return [o for o in self.outcomes if o.resumed]

    def summary(self) -> str:
        """Format a human-readable summary of the run.

        Returns:
            Multi-line summary string with counts by status.
        """
        lines = [
            f"Reconcile report for '{self.workspace}'"
            + (" (dry run)" if self.dry_run else ""),
            f"  Status:     {self.status.value}",
            f"  Succeeded:  {len(self.succeeded)}",
            f"  Skipped:    {len(self.skipped)}",
            f"  Conflicts:  {len(self.conflicts)}",
            f"  Failed:     {len(self.failed)}",
            f"  Cancelled:  {len(self.cancelled)}",
            f"  Total:      {len(self.outcomes)}",
        ]
        return "\n".join(lines)

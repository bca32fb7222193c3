"""Run report aggregation and formatting.

- ``summarize`` -- reduce Outcomes to a ``RunReport`` with an overall status.
- ``exit_code`` -- map a ``RunStatus`` to a process exit code.
- ``format_run_report`` -- full post-run summary.
- ``format_plan_preview`` -- dry-run preview grouped by action.
- ``report_to_json`` -- structured dict for ``--json`` output.
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterable, Sequence

from .models import (
    Action,
    ActionKind,
    Outcome,
    OutcomeStatus,
    RunReport,
    RunStatus,
)

_EXIT_CODES = {
    RunStatus.ALL_SUCCEEDED: 0,
    RunStatus.PARTIAL_FAILURE: 1,
    RunStatus.TOTAL_FAILURE: 2,
}

# ------------------------------------------------------------------
# Aggregation
# ------------------------------------------------------------------


def overall_status(outcomes: Iterable[Outcome]) -> RunStatus:
    """Classify a set of outcomes.  Independent of their order."""
    total = 0
    ok = 0
    for outcome in outcomes:
        total += 1
        if outcome.ok:
            ok += 1
    if ok == total:
        return RunStatus.ALL_SUCCEEDED
    if ok == 0:
        return RunStatus.TOTAL_FAILURE
    return RunStatus.PARTIAL_FAILURE


def summarize(
    outcomes: Iterable[Outcome],
    workspace: str,
    dry_run: bool = False,
    started_at: str | None = None,
    completed_at: str | None = None,
) -> RunReport:
    """Build the RunReport for a finished run.

    An empty run is ``ALL_SUCCEEDED``.  Outcomes are sorted by name so the
    report does not depend on completion order.
    """
    ordered = sorted(outcomes, key=lambda o: o.name)
    return RunReport(
        workspace=workspace,
        status=overall_status(ordered),
        outcomes=ordered,
        dry_run=dry_run,
        started_at=started_at,
        completed_at=completed_at,
    )


def worst_status(statuses: Iterable[RunStatus]) -> RunStatus:
    """Most severe status of several runs (``ALL_SUCCEEDED`` if none)."""
    return max(
        statuses,
        key=lambda s: _EXIT_CODES[s],
        default=RunStatus.ALL_SUCCEEDED,
    )


def exit_code(status: RunStatus) -> int:
    return _EXIT_CODES[status]


# ------------------------------------------------------------------
# Human-readable report
# ------------------------------------------------------------------


def format_run_report(report: RunReport) -> str:
    """Format a complete run report as human-readable text.

    Sections are only included when they contain at least one outcome.
    Repositories that were already up to date are summarised by count.

    Args:
        report: The completed run report.

    Returns:
        Multi-line formatted string.
    """
    lines: list[str] = []

    header = f"Reconcile report for '{report.workspace}'"
    if report.dry_run:
        header += " (DRY RUN)"
    lines.append(header)
    if report.started_at:
        lines.append(f"Started: {report.started_at}")
    if report.completed_at:
        lines.append(f"Completed: {report.completed_at}")
    lines.append("")

    lines.append(
        f"{len(report.outcomes)} repositories: "
        f"{len(report.succeeded)} updated, "
        f"{len(report.skipped)} skipped, "
        f"{len(report.conflicts)} conflicts, "
        f"{len(report.failed)} failed"
    )
    lines.append("")

    if report.succeeded:
        lines.append("Updated:")
        for o in report.succeeded:
            lines.append(f"  {o.name}: {o.action.value} ({o.reason})")
        lines.append("")

    if report.conflicts:
        lines.append("Conflicts (resolve manually):")
        for o in report.conflicts:
            lines.append(f"  {o.name}: {o.reason}")
        lines.append("")

    if report.failed:
        lines.append("Failed:")
        for o in report.failed:
            suffix = ""
            if o.retryable:
                suffix = f" [transient, {o.attempts} attempts]"
            lines.append(f"  {o.name}: {o.reason}{suffix}")
        lines.append("")

    if report.cancelled:
        lines.append("Not started (cancelled):")
        for o in report.cancelled:
            lines.append(f"  {o.name}")
        lines.append("")

    if report.resumed:
        lines.append(
            f"Resumed: {len(report.resumed)} already done in a previous run"
        )
        lines.append("")

    lines.append(f"Status: {report.status.value}")
    return "\n".join(lines).rstrip()


def format_summary_line(report: RunReport) -> str:
    """One-line summary used by ``--quiet``."""
    counts = (
        f"{len(report.succeeded)} updated, {len(report.skipped)} skipped, "
        f"{len(report.conflicts)} conflicts, {len(report.failed)} failed"
    )
    if report.cancelled:
        counts += f", {len(report.cancelled)} cancelled"
    return f"{report.workspace}: {report.status.value} ({counts})"


# ------------------------------------------------------------------
# Dry-run preview
# ------------------------------------------------------------------


def format_plan_preview(plan: Sequence[Action], workspace: str = "") -> str:
    """Format planned actions grouped by kind.

    Args:
        plan: Actions from ``build_plan``.
        workspace: Workspace label for the header.

    Returns:
        Multi-line formatted string.
    """
    lines: list[str] = []
    lines.append("DRY RUN -- No changes will be made")
    if workspace:
        lines.append(f"Workspace: {workspace}")
    lines.append("")

    groups: dict[ActionKind, list[Action]] = defaultdict(list)
    for action in plan:
        groups[action.kind].append(action)

    display_order = [
        ActionKind.CLONE,
        ActionKind.FETCH_CHECKOUT,
        ActionKind.RELOCATE,
        ActionKind.CONFLICT,
    ]
    for kind in display_order:
        if kind not in groups:
            continue
        label = kind.value.upper().replace("_", " ")
        lines.append(f"[{label}]")
        for action in sorted(groups[kind], key=lambda a: a.name):
            lines.append(f"  {action.name} ({action.spec.path}): {action.reason}")
        lines.append("")

    skip_count = len(groups.get(ActionKind.SKIP, []))
    if skip_count > 0:
        lines.append(f"Skipped: {skip_count} repositories (up to date)")
        lines.append("")

    if not any(kind != ActionKind.SKIP for kind in groups):
        lines.append("No changes needed.")
        lines.append("")

    return "\n".join(lines).rstrip()


# ------------------------------------------------------------------
# JSON output
# ------------------------------------------------------------------


def report_to_json(report: RunReport) -> dict:
    """Convert a run report to a structured dict for JSON serialisation."""
    outcomes = []
    for o in report.outcomes:
        entry: dict = {
            "name": o.name,
            "action": o.action.value,
            "status": o.status.value,
            "attempts": o.attempts,
        }
        if o.reason:
            entry["reason"] = o.reason
        if o.status == OutcomeStatus.FAILED:
            entry["retryable"] = o.retryable
        if o.resumed:
            entry["resumed"] = True
        outcomes.append(entry)

    return {
        "workspace": report.workspace,
        "status": report.status.value,
        "dry_run": report.dry_run,
        "started_at": report.started_at,
        "completed_at": report.completed_at,
        "counts": {
            "total": len(report.outcomes),
            "succeeded": len(report.succeeded),
            "skipped": len(report.skipped),
            "conflicts": len(report.conflicts),
            "failed": len(report.failed),
            "cancelled": len(report.cancelled),
            "resumed": len(report.resumed),
        },
        "outcomes": outcomes,
    }

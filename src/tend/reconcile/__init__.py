"""Workspace reconciliation engine.

Public API for bringing a directory of git working copies in line with a
declared set of repositories.

Architecture
------------
Each run is **probe, plan, execute**: the actual state of every target
path is observed read-only, a pure decision table maps each
(desired, actual) pair to exactly one Action, and a bounded worker pool
executes the Actions through a VCS adapter.  The run ledger records each
finalized Outcome so an interrupted run can resume.

Modules:

- ``models``   -- ``RepoSpec``, ``RepoState``, ``Action``, ``Outcome``,
  ``RunReport`` and their enums.
- ``desired``  -- ``validate_specs``: reject inconsistent declarations.
- ``prober``   -- ``probe`` / ``probe_all``: read-only state inspection.
- ``planner``  -- ``plan`` / ``build_plan``: desired vs. actual diff.
- ``engine``   -- ``ReconcileEngine`` and the ``reconcile`` entry point.
- ``ledger``   -- ``RunLedger`` (JSON file) and ``MemoryLedger``.
- ``reporter`` -- ``summarize`` plus text and JSON formatting.

Usage example
-------------
::

    from pathlib import Path
    from tend.reconcile import RepoSpec, RunLedger, format_run_report, reconcile
    from tend.vcs import GitAdapter

    root = Path("~/code").expanduser()
    specs = [
        RepoSpec(name="svc-a", url="git@github.com:acme/svc-a.git",
                 ref="main", path="svc-a"),
    ]

    report = reconcile(specs, root, GitAdapter(), RunLedger.for_workspace(root))
    print(format_run_report(report))
"""

from .desired import validate_specs
from .engine import (
    ReconcileEngine,
    plan_workspace,
    plan_workspace_async,
    reconcile,
    reconcile_async,
)
from .ledger import Ledger, MemoryLedger, RunLedger
from .models import (
    Action,
    ActionKind,
    Outcome,
    OutcomeStatus,
    RepoSpec,
    RepoState,
    RunReport,
    RunStatus,
)
from .planner import build_plan, plan
from .prober import probe, probe_all
from .reporter import (
    exit_code,
    format_plan_preview,
    format_run_report,
    format_summary_line,
    report_to_json,
    summarize,
    worst_status,
)

__all__ = [
    "Action",
    "ActionKind",
    "Ledger",
    "MemoryLedger",
    "Outcome",
    "OutcomeStatus",
    "ReconcileEngine",
    "RepoSpec",
    "RepoState",
    "RunLedger",
    "RunReport",
    "RunStatus",
    "build_plan",
    "exit_code",
    "format_plan_preview",
    "format_run_report",
    "format_summary_line",
    "plan",
    "plan_workspace",
    "plan_workspace_async",
    "probe",
    "probe_all",
    "reconcile",
    "reconcile_async",
    "report_to_json",
    "summarize",
    "validate_specs",
    "worst_status",
]

"""Execution engine that drives a reconcile plan to completion.

The ``ReconcileEngine`` runs a list of Actions through a bounded pool of
asyncio workers.  Each worker takes one Action, runs it to completion
(including retries) via the VCS adapter in a worker thread, records the
Outcome in the run ledger, then takes the next one.

``reconcile()`` is the single entry point used by the CLI.  It:

1. Validates the declared RepoSpecs (the only run-fatal step).
2. Probes every target path in parallel.
3. Probes previous locations of repositories whose path changed.
4. Plans one Action per RepoSpec.
5. Executes the plan, resuming from the ledger.
6. Summarises the Outcomes into a ``RunReport``.
7. Archives the ledger unless the run was cancelled or a dry run.

Error handling is per-repository: a failure in one Action never stops the
others.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
import threading
from collections.abc import Awaitable, Callable, Sequence
from datetime import datetime, timezone
from pathlib import Path

from tend.config import EngineSettings
from tend.core.async_utils import run_sync
from tend.errors import (
    AdapterError,
    ConflictError,
    LedgerError,
    RetryableAdapterError,
)
from tend.reconcile.desired import validate_specs
from tend.reconcile.ledger import Ledger, build_entry
from tend.reconcile.models import (
    Action,
    ActionKind,
    Outcome,
    OutcomeStatus,
    RepoSpec,
    RepoState,
    RunReport,
)
from tend.reconcile.planner import build_plan, ref_matches, relocation_candidates
from tend.reconcile.prober import probe, probe_all
from tend.reconcile.reporter import summarize
from tend.validators import normalize_relative_path
from tend.vcs.base import VcsAdapter

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class ReconcileEngine:
    """Execute reconcile plans for one workspace.

    Args:
        adapter: VCS adapter used for every repository operation.
        ledger: Run ledger used for resume and progress tracking.
        workspace_root: Absolute workspace root.
        settings: Concurrency, retry and backoff settings.
        sleep: Coroutine used for backoff waits (tests pass a no-op).
    """

    def __init__(
        self,
        adapter: VcsAdapter,
        ledger: Ledger,
        workspace_root: Path,
        settings: EngineSettings | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.adapter = adapter
        self.ledger = ledger
        self.workspace_root = workspace_root
        self.settings = settings or EngineSettings()
        self._sleep = sleep

    # ------------------------------------------------------------------
    # Main entry points
    # ------------------------------------------------------------------

    def execute(
        self,
        plan: Sequence[Action],
        cancel: threading.Event | None = None,
        dry_run: bool = False,
    ) -> list[Outcome]:
        """Synchronous wrapper around ``execute_async``."""
        return asyncio.run(self.execute_async(plan, cancel, dry_run))

    async def execute_async(
        self,
        plan: Sequence[Action],
        cancel: threading.Event | None = None,
        dry_run: bool = False,
    ) -> list[Outcome]:
        """Run every Action in *plan*.

        Args:
            plan: Actions, one per repository.
            cancel: Once set, no new Action (or retry) is started.
            dry_run: If ``True``, report what would happen and do nothing.

        Returns:
            One Outcome per Action, in plan order.
        """
        if dry_run:
            return [self._dry_run_outcome(action) for action in plan]

        cancel = cancel or threading.Event()
        results: list[Outcome | None] = [None] * len(plan)
        queue: asyncio.Queue[tuple[int, Action]] = asyncio.Queue()

        for index, action in enumerate(plan):
            # Conflicts are re-reported even if an earlier run finished them.
            if action.kind != ActionKind.CONFLICT and self.ledger.is_completed(
                action.spec
            ):
                logger.info(
                    "%s: already completed in a previous run, skipping",
                    action.name,
                )
                results[index] = Outcome(
                    name=action.name,
                    action=ActionKind.SKIP,
                    status=OutcomeStatus.SKIPPED,
                    reason="completed in a previous run",
                    resumed=True,
                    finished_at=_now(),
                )
            else:
                queue.put_nowait((index, action))

        workers = min(self.settings.concurrency, queue.qsize())
        logger.info(
            "Executing %d actions with %d workers (%d resumed)",
            queue.qsize(),
            workers,
            len(plan) - queue.qsize(),
        )

        async def _worker(worker_id: int) -> None:
            while not cancel.is_set():
                try:
                    index, action = queue.get_nowait()
                except asyncio.QueueEmpty:
                    return
                logger.debug(
                    "[worker %d] %s: %s",
                    worker_id,
                    action.name,
                    action.kind.value,
                )
                outcome = await self._run_action(action, cancel)
                results[index] = outcome
                await self._record(action, outcome)

        await asyncio.gather(*(_worker(i) for i in range(workers)))

        outcomes: list[Outcome] = []
        for index, action in enumerate(plan):
            outcome = results[index]
            if outcome is None:
                outcome = Outcome(
                    name=action.name,
                    action=action.kind,
                    status=OutcomeStatus.CANCELLED,
                    reason="cancelled",
                    finished_at=_now(),
                )
            outcomes.append(outcome)

        if cancel.is_set():
            logger.warning(
                "Run cancelled: %d actions not started",
                sum(1 for o in outcomes if o.status == OutcomeStatus.CANCELLED),
            )
        return outcomes

    # ------------------------------------------------------------------
    # Per-action execution
    # ------------------------------------------------------------------

    async def _run_action(
        self, action: Action, cancel: threading.Event
    ) -> Outcome:
        """Execute one Action, retrying transient failures."""
        started_at = _now()

        def _outcome(
            status: OutcomeStatus,
            reason: str | None = None,
            attempts: int = 0,
            retryable: bool = False,
        ) -> Outcome:
            return Outcome(
                name=action.name,
                action=action.kind,
                status=status,
                reason=reason,
                attempts=attempts,
                retryable=retryable,
                started_at=started_at,
                finished_at=_now(),
            )

        if action.kind == ActionKind.SKIP:
            return _outcome(OutcomeStatus.SKIPPED, action.reason)

        if action.kind == ActionKind.CONFLICT:
            logger.warning("%s: conflict: %s", action.name, action.reason)
            return _outcome(OutcomeStatus.CONFLICT, action.reason)

        max_attempts = self.settings.max_retries + 1
        attempt = 0
        while True:
            attempt += 1
            try:
                await run_sync(self._apply, action)
            except RetryableAdapterError as exc:
                if attempt >= max_attempts:
                    logger.error(
                        "%s: %s failed after %d attempts: %s",
                        action.name,
                        action.kind.value,
                        attempt,
                        exc,
                    )
                    return _outcome(
                        OutcomeStatus.FAILED, str(exc), attempt, True
                    )
                if cancel.is_set():
                    return _outcome(
                        OutcomeStatus.FAILED,
                        f"{exc} (not retried: cancelled)",
                        attempt,
                        True,
                    )
                delay = self.settings.backoff_delay(attempt)
                logger.warning(
                    "%s: %s (%s), retry %d/%d in %.1fs",
                    action.name,
                    exc,
                    exc.kind.value,
                    attempt,
                    self.settings.max_retries,
                    delay,
                )
                await self._sleep(delay)
                if cancel.is_set():
                    return _outcome(
                        OutcomeStatus.FAILED,
                        f"{exc} (not retried: cancelled)",
                        attempt,
                        True,
                    )
                continue
            except ConflictError as exc:
                logger.warning("%s: conflict: %s", action.name, exc)
                return _outcome(OutcomeStatus.CONFLICT, str(exc), attempt)
            except AdapterError as exc:
                logger.error(
                    "%s: %s failed (%s): %s",
                    action.name,
                    action.kind.value,
                    exc.kind.value,
                    exc,
                )
                return _outcome(OutcomeStatus.FAILED, str(exc), attempt)
            except Exception as exc:
                logger.exception(
                    "%s: unexpected error during %s",
                    action.name,
                    action.kind.value,
                )
                return _outcome(OutcomeStatus.FAILED, str(exc), attempt)

            logger.info(
                "%s: %s succeeded (%s)",
                action.name,
                action.kind.value,
                action.reason,
            )
            return _outcome(OutcomeStatus.SUCCEEDED, action.reason, attempt)

    def _apply(self, action: Action) -> None:
        """Perform one attempt of *action*.  Runs in a worker thread."""
        spec = action.spec
        target = self.workspace_root / spec.path

        if action.kind == ActionKind.CLONE:
            self.adapter.clone(
                spec.url,
                spec.ref,
                target,
                shallow=spec.shallow,
                submodules=spec.submodules,
            )
            return

        if action.kind == ActionKind.FETCH_CHECKOUT:
            self._fetch_checkout(spec, target)
            return

        if action.kind == ActionKind.RELOCATE:
            self._relocate(action, target)
            return

        raise ValueError(f"Unhandled action: {action.kind}")

    def _fetch_checkout(self, spec: RepoSpec, target: Path) -> None:
        self.adapter.fetch(target)
        if spec.ref is None:
            return
        # The tree may have changed since it was probed.
        status = self.adapter.status(target)
        if status.dirty:
            raise ConflictError(
                f"uncommitted changes appeared in {spec.path}; "
                f"not checking out {spec.ref}"
            )
        self.adapter.checkout(target, spec.ref)

    def _relocate(self, action: Action, target: Path) -> None:
        if action.source_path is None:
            raise ValueError("relocate action without a source path")
        source = self.workspace_root / action.source_path

        if source.exists() and not target.exists():
            target.parent.mkdir(parents=True, exist_ok=True)
            logger.info("Moving %s -> %s", source, target)
            shutil.move(str(source), str(target))
        elif not target.exists():
            raise ConflictError(
                f"neither {action.source_path} nor {action.spec.path} exists"
            )
        elif source.exists():
            raise ConflictError(
                f"both {action.source_path} and {action.spec.path} exist"
            )

        if ref_matches(action.spec.ref, action.state) or action.state.dirty:
            return
        self._fetch_checkout(action.spec, target)

    def _dry_run_outcome(self, action: Action) -> Outcome:
        if action.kind == ActionKind.CONFLICT:
            status = OutcomeStatus.CONFLICT
            reason = action.reason
        elif action.kind == ActionKind.SKIP:
            status = OutcomeStatus.SKIPPED
            reason = action.reason
        else:
            status = OutcomeStatus.SKIPPED
            reason = f"dry run: would {action.kind.value} ({action.reason})"
        return Outcome(
            name=action.name,
            action=action.kind,
            status=status,
            reason=reason,
            finished_at=_now(),
        )

    # ------------------------------------------------------------------
    # Ledger
    # ------------------------------------------------------------------

    async def _record(self, action: Action, outcome: Outcome) -> None:
        """Write the ledger entry for a finalized outcome."""
        entry = build_entry(action, outcome)
        try:
            await run_sync(self.ledger.record, action.name, entry)
        except LedgerError as exc:
            logger.error("%s: %s", action.name, exc)


# ---------------------------------------------------------------------------
# Full reconcile cycle
# ---------------------------------------------------------------------------


async def _probe_previous_locations(
    workspace_root: Path,
    specs: Sequence[RepoSpec],
    states: Sequence[RepoState],
    ledger: Ledger,
    adapter: VcsAdapter,
) -> dict[str, tuple[str, RepoState]]:
    """Probe old paths of repositories whose declared path changed."""
    absent = {
        spec.name for spec, state in zip(specs, states) if not state.present
    }
    old_states: dict[str, tuple[str, RepoState]] = {}
    for spec in specs:
        if spec.name not in absent:
            continue
        old_path = relocation_candidates([spec], ledger).get(spec.name)
        if old_path is None:
            continue
        if normalize_relative_path(old_path) is None:
            logger.warning(
                "%s: ignoring recorded path %r outside the workspace",
                spec.name,
                old_path,
            )
            continue
        old_spec = spec.model_copy(update={"path": old_path})
        old_state = await run_sync(probe, workspace_root, old_spec, adapter)
        if old_state.present:
            old_states[spec.name] = (old_path, old_state)
    return old_states


async def plan_workspace_async(
    specs: Sequence[RepoSpec],
    workspace_root: Path,
    adapter: VcsAdapter,
    ledger: Ledger,
    settings: EngineSettings | None = None,
) -> list[Action]:
    """Validate, probe and plan without changing anything.

    Raises:
        ValidationError: The declaration is inconsistent.
    """
    settings = settings or EngineSettings()
    validate_specs(specs)

    states = await probe_all(
        workspace_root, specs, adapter, settings.concurrency
    )
    old_states = await _probe_previous_locations(
        workspace_root, specs, states, ledger, adapter
    )
    return build_plan(specs, states, old_states)


async def reconcile_async(
    specs: Sequence[RepoSpec],
    workspace_root: Path,
    adapter: VcsAdapter,
    ledger: Ledger,
    settings: EngineSettings | None = None,
    cancel: threading.Event | None = None,
    dry_run: bool = False,
) -> RunReport:
    """Bring *workspace_root* in line with *specs*.

    Raises:
        ValidationError: The declaration is inconsistent.  Nothing has
            been probed or changed when this is raised.
    """
    settings = settings or EngineSettings()
    cancel = cancel or threading.Event()
    started_at = _now()

    plan = await plan_workspace_async(
        specs, workspace_root, adapter, ledger, settings
    )

    engine = ReconcileEngine(adapter, ledger, workspace_root, settings)
    outcomes = await engine.execute_async(plan, cancel, dry_run)

    report = summarize(
        outcomes,
        workspace=str(workspace_root),
        dry_run=dry_run,
        started_at=started_at,
        completed_at=_now(),
    )

    # A cancelled run keeps its ledger so the next one resumes it.
    if not dry_run and not cancel.is_set():
        ledger.finalize(archive=settings.archive_ledger)

    return report


def reconcile(
    specs: Sequence[RepoSpec],
    workspace_root: Path,
    adapter: VcsAdapter,
    ledger: Ledger,
    settings: EngineSettings | None = None,
    cancel: threading.Event | None = None,
    dry_run: bool = False,
) -> RunReport:
    """Synchronous wrapper around ``reconcile_async``."""
    return asyncio.run(
        reconcile_async(
            specs, workspace_root, adapter, ledger, settings, cancel, dry_run
        )
    )


def plan_workspace(
    specs: Sequence[RepoSpec],
    workspace_root: Path,
    adapter: VcsAdapter,
    ledger: Ledger,
    settings: EngineSettings | None = None,
) -> list[Action]:
    """Synchronous wrapper around ``plan_workspace_async``."""
    return asyncio.run(
        plan_workspace_async(specs, workspace_root, adapter, ledger, settings)
    )

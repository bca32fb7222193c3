"""Tests for the reconcile engine.

Covers:
- End-to-end runs: fresh clone, up to date, dirty conflict, transient
  retry, resume after interruption
- Idempotence and per-repository isolation
- Retry exhaustion, terminal failures, backoff delays
- Cancellation and dry run
- Relocation of a working copy whose path changed
- Ledger finalisation rules
"""

from __future__ import annotations

import json
import threading
import time
from pathlib import Path

import pytest

from conftest import FakeVcsAdapter, make_working_copy, spec
from tend.config import EngineSettings
from tend.errors import (
    DuplicateNameError,
    FailureKind,
    RetryableAdapterError,
)
from tend.reconcile.engine import ReconcileEngine, plan_workspace, reconcile_async
from tend.reconcile.ledger import MemoryLedger, RunLedger
from tend.reconcile.models import (
    Action,
    ActionKind,
    OutcomeStatus,
    RepoState,
    RunStatus,
)
from tend.reconcile.planner import build_plan

URL = "https://example.com/acme/{}.git"


def _settings(**kw) -> EngineSettings:
    kw.setdefault("concurrency", 2)
    kw.setdefault("max_retries", 2)
    kw.setdefault("backoff_base", 0.0)
    return EngineSettings(**kw)


def _remotes(*names: str, refs=("main",)) -> dict[str, list[str]]:
    return {URL.format(n): list(refs) for n in names}


def _outcomes(report) -> dict:
    return {o.name: o for o in report.outcomes}


def _network_error() -> RetryableAdapterError:
    return RetryableAdapterError(
        "fatal: unable to access: Connection reset by peer",
        FailureKind.NETWORK,
    )


def _state(path: Path) -> dict:
    return json.loads((path / ".git" / "fake_state.json").read_text())


# ---------------------------------------------------------------------------
# End-to-end scenarios
# ---------------------------------------------------------------------------


class TestScenarios:
    async def test_fresh_workspace_clones_everything(self, workspace: Path):
        specs = [spec("a"), spec("b"), spec("c")]
        adapter = FakeVcsAdapter(_remotes("a", "b", "c"))
        ledger = MemoryLedger()

        report = await reconcile_async(
            specs, workspace, adapter, ledger, _settings()
        )

        assert report.status == RunStatus.ALL_SUCCEEDED
        assert [o.name for o in report.outcomes] == ["a", "b", "c"]
        for outcome in report.outcomes:
            assert outcome.action == ActionKind.CLONE
            assert outcome.status == OutcomeStatus.SUCCEEDED
            assert outcome.attempts == 1
        for name in ("a", "b", "c"):
            assert (workspace / name / ".git").is_dir()
        assert ledger.finalized

    async def test_up_to_date_workspace_is_left_alone(self, workspace: Path):
        for name in ("a", "b"):
            make_working_copy(workspace / name, URL.format(name))
        adapter = FakeVcsAdapter(_remotes("a", "b"))

        report = await reconcile_async(
            [spec("a"), spec("b")], workspace, adapter, MemoryLedger(), _settings()
        )

        assert report.status == RunStatus.ALL_SUCCEEDED
        assert all(o.status == OutcomeStatus.SKIPPED for o in report.outcomes)
        assert adapter.mutating_calls() == []

    async def test_dirty_tree_on_other_ref_is_a_conflict(self, workspace: Path):
        make_working_copy(
            workspace / "a", URL.format("a"), branch="dev", dirty=True
        )
        adapter = FakeVcsAdapter(_remotes("a", "b", refs=("main", "dev")))
        ledger = MemoryLedger()

        report = await reconcile_async(
            [spec("a"), spec("b")], workspace, adapter, ledger, _settings()
        )

        outcomes = _outcomes(report)
        assert outcomes["a"].status == OutcomeStatus.CONFLICT
        assert "uncommitted changes" in outcomes["a"].reason
        assert outcomes["b"].status == OutcomeStatus.SUCCEEDED
        assert report.status == RunStatus.PARTIAL_FAILURE
        # The dirty working copy was not touched.
        assert _state(workspace / "a")["branch"] == "dev"
        assert ("fetch", "a") not in adapter.calls
        assert ("checkout", "a") not in adapter.calls
        # The run completed, so nothing is left to resume.
        assert ledger.finalized

    async def test_lone_conflict_is_total_failure(self, workspace: Path):
        make_working_copy(workspace / "a", "https://elsewhere.example/a.git")
        adapter = FakeVcsAdapter(_remotes("a"))

        report = await reconcile_async(
            [spec("a")], workspace, adapter, MemoryLedger(), _settings()
        )

        assert report.status == RunStatus.TOTAL_FAILURE
        assert "remote mismatch" in report.outcomes[0].reason

    async def test_transient_failure_is_retried(self, workspace: Path):
        adapter = FakeVcsAdapter(
            _remotes("a"), failures={"a": [_network_error()]}
        )

        report = await reconcile_async(
            [spec("a")], workspace, adapter, MemoryLedger(), _settings()
        )

        outcome = report.outcomes[0]
        assert outcome.status == OutcomeStatus.SUCCEEDED
        assert outcome.attempts == 2
        assert adapter.mutating_calls() == [("clone", "a"), ("clone", "a")]

    async def test_resume_after_interruption(self, workspace: Path):
        cancel = threading.Event()

        class InterruptingAdapter(FakeVcsAdapter):
            def clone(self, url, ref, path, **kw):
                super().clone(url, ref, path, **kw)
                cancel.set()

        specs = [spec("a"), spec("b"), spec("c")]
        ledger = RunLedger.for_workspace(workspace)

        first = await reconcile_async(
            specs,
            workspace,
            InterruptingAdapter(_remotes("a", "b", "c")),
            ledger,
            _settings(concurrency=1),
            cancel,
        )
        first_outcomes = _outcomes(first)
        assert first_outcomes["a"].status == OutcomeStatus.SUCCEEDED
        assert first_outcomes["b"].status == OutcomeStatus.CANCELLED
        assert first_outcomes["c"].status == OutcomeStatus.CANCELLED
        assert first.status == RunStatus.PARTIAL_FAILURE
        assert set(RunLedger.for_workspace(workspace).entries()) == {"a"}

        adapter = FakeVcsAdapter(_remotes("a", "b", "c"))
        second = await reconcile_async(
            specs,
            workspace,
            adapter,
            RunLedger.for_workspace(workspace),
            _settings(),
        )

        outcomes = _outcomes(second)
        assert outcomes["a"].resumed
        assert outcomes["a"].status == OutcomeStatus.SKIPPED
        assert outcomes["b"].status == OutcomeStatus.SUCCEEDED
        assert outcomes["c"].status == OutcomeStatus.SUCCEEDED
        assert sorted(adapter.mutating_calls()) == [
            ("clone", "b"),
            ("clone", "c"),
        ]
        assert second.status == RunStatus.ALL_SUCCEEDED
        # Fully successful: the live ledger was archived.
        assert not ledger.path.exists()

    async def test_drift_after_partial_failure_is_repaired(self, workspace: Path):
        specs = [spec("a"), spec("b")]
        adapter = FakeVcsAdapter(_remotes("a", refs=("main", "dev")))

        first = await reconcile_async(
            specs, workspace, adapter, RunLedger.for_workspace(workspace), _settings()
        )
        assert first.status == RunStatus.PARTIAL_FAILURE
        assert not RunLedger.for_workspace(workspace).path.exists()

        # Someone switches "a" to another branch between runs.
        state = _state(workspace / "a")
        state["branch"] = "dev"
        (workspace / "a" / ".git" / "fake_state.json").write_text(json.dumps(state))
        adapter.calls.clear()

        second = await reconcile_async(
            specs, workspace, adapter, RunLedger.for_workspace(workspace), _settings()
        )

        outcome = _outcomes(second)["a"]
        assert not outcome.resumed
        assert outcome.action == ActionKind.FETCH_CHECKOUT
        assert outcome.status == OutcomeStatus.SUCCEEDED
        assert _state(workspace / "a")["branch"] == "main"
        assert ("checkout", "a") in adapter.calls


# ---------------------------------------------------------------------------
# Properties
# ---------------------------------------------------------------------------


class TestProperties:
    async def test_second_run_changes_nothing(self, workspace: Path):
        specs = [spec("a"), spec("b", ref="v1")]
        adapter = FakeVcsAdapter(_remotes("a", "b", refs=("main", "v1")))

        await reconcile_async(specs, workspace, adapter, MemoryLedger(), _settings())
        adapter.calls.clear()
        report = await reconcile_async(
            specs, workspace, adapter, MemoryLedger(), _settings()
        )

        assert adapter.mutating_calls() == []
        assert all(o.status == OutcomeStatus.SKIPPED for o in report.outcomes)

    async def test_failure_does_not_stop_other_repositories(
        self, workspace: Path
    ):
        adapter = FakeVcsAdapter(
            _remotes("a", "c"),  # "b" does not exist on the remote
        )

        report = await reconcile_async(
            [spec("a"), spec("b"), spec("c")],
            workspace,
            adapter,
            MemoryLedger(),
            _settings(),
        )

        outcomes = _outcomes(report)
        assert outcomes["a"].status == OutcomeStatus.SUCCEEDED
        assert outcomes["c"].status == OutcomeStatus.SUCCEEDED
        assert outcomes["b"].status == OutcomeStatus.FAILED
        assert outcomes["b"].attempts == 1
        assert not outcomes["b"].retryable
        assert report.status == RunStatus.PARTIAL_FAILURE

    async def test_retries_are_bounded(self, workspace: Path):
        adapter = FakeVcsAdapter(
            _remotes("a"), failures={"a": [_network_error() for _ in range(5)]}
        )

        report = await reconcile_async(
            [spec("a")], workspace, adapter, MemoryLedger(), _settings()
        )

        outcome = report.outcomes[0]
        assert outcome.status == OutcomeStatus.FAILED
        assert outcome.retryable
        assert outcome.attempts == 3
        assert len(adapter.mutating_calls()) == 3
        assert report.status == RunStatus.TOTAL_FAILURE

    async def test_concurrency_limit_is_respected(self, workspace: Path):
        class CountingAdapter(FakeVcsAdapter):
            """Tracks how many clones run at the same time."""

            def __init__(self, remotes):
                super().__init__(remotes)
                self.active = 0
                self.peak = 0
                self._count_lock = threading.Lock()

            def clone(self, url, ref, path, **kw):
                with self._count_lock:
                    self.active += 1
                    self.peak = max(self.peak, self.active)
                try:
                    time.sleep(0.05)
                    super().clone(url, ref, path, **kw)
                finally:
                    with self._count_lock:
                        self.active -= 1

        names = [f"r{i}" for i in range(6)]
        adapter = CountingAdapter(_remotes(*names))

        report = await reconcile_async(
            [spec(n) for n in names],
            workspace,
            adapter,
            MemoryLedger(),
            _settings(concurrency=2),
        )

        assert report.status == RunStatus.ALL_SUCCEEDED
        assert len(adapter.mutating_calls()) == 6
        assert adapter.peak == 2

    async def test_validation_error_before_probing(self, workspace: Path):
        adapter = FakeVcsAdapter()
        make_working_copy(workspace / "a", URL.format("a"))

        with pytest.raises(DuplicateNameError):
            await reconcile_async(
                [spec("a"), spec("a", path="other")],
                workspace,
                adapter,
                MemoryLedger(),
                _settings(),
            )

        assert adapter.calls == []


# ---------------------------------------------------------------------------
# Checkout and relocation
# ---------------------------------------------------------------------------


class TestCheckoutAndRelocate:
    async def test_fetch_checkout_to_new_ref(self, workspace: Path):
        make_working_copy(workspace / "a", URL.format("a"), branch="main")
        adapter = FakeVcsAdapter(_remotes("a", refs=("main", "v2")))

        report = await reconcile_async(
            [spec("a", ref="v2")], workspace, adapter, MemoryLedger(), _settings()
        )

        outcome = report.outcomes[0]
        assert outcome.action == ActionKind.FETCH_CHECKOUT
        assert outcome.status == OutcomeStatus.SUCCEEDED
        assert _state(workspace / "a")["branch"] == "v2"
        assert adapter.mutating_calls() == [("fetch", "a"), ("checkout", "a")]

    async def test_unknown_ref_fails_terminally(self, workspace: Path):
        make_working_copy(workspace / "a", URL.format("a"))
        adapter = FakeVcsAdapter(_remotes("a"))

        report = await reconcile_async(
            [spec("a", ref="nope")], workspace, adapter, MemoryLedger(), _settings()
        )

        outcome = report.outcomes[0]
        assert outcome.status == OutcomeStatus.FAILED
        assert "did not match" in outcome.reason
        assert _state(workspace / "a")["branch"] == "main"

    async def test_relocates_moved_repository(self, workspace: Path):
        adapter = FakeVcsAdapter(_remotes("a"))
        ledger = MemoryLedger()
        await reconcile_async([spec("a")], workspace, adapter, ledger, _settings())
        adapter.calls.clear()

        report = await reconcile_async(
            [spec("a", path="libs/a")], workspace, adapter, ledger, _settings()
        )

        outcome = report.outcomes[0]
        assert outcome.action == ActionKind.RELOCATE
        assert outcome.status == OutcomeStatus.SUCCEEDED
        assert (workspace / "libs" / "a" / ".git").is_dir()
        assert not (workspace / "a").exists()
        assert adapter.mutating_calls() == []

    def test_relocate_refuses_when_both_paths_exist(self, workspace: Path):
        make_working_copy(workspace / "a", URL.format("a"))
        make_working_copy(workspace / "b", URL.format("a"))
        adapter = FakeVcsAdapter(_remotes("a"))
        engine = ReconcileEngine(adapter, MemoryLedger(), workspace, _settings())
        moved = spec("a", path="b")
        action = Action(
            kind=ActionKind.RELOCATE,
            spec=moved,
            state=RepoState(present=True, vcs_kind="git", current_ref="main"),
            reason="moved from a",
            source_path="a",
        )

        [outcome] = engine.execute([action])

        assert outcome.status == OutcomeStatus.CONFLICT
        assert "both a and b exist" in outcome.reason


# ---------------------------------------------------------------------------
# Engine internals: backoff, cancellation, dry run
# ---------------------------------------------------------------------------


def _clone_plan(*names: str):
    specs = [spec(n) for n in names]
    return build_plan(specs, [RepoState(present=False) for _ in specs])


class TestEngine:
    async def test_backoff_delays_grow(self, workspace: Path):
        delays: list[float] = []

        async def fake_sleep(seconds: float) -> None:
            delays.append(seconds)

        adapter = FakeVcsAdapter(
            _remotes("a"), failures={"a": [_network_error(), _network_error()]}
        )
        engine = ReconcileEngine(
            adapter,
            MemoryLedger(),
            workspace,
            EngineSettings(concurrency=1, max_retries=3),
            sleep=fake_sleep,
        )

        [outcome] = await engine.execute_async(_clone_plan("a"))

        assert outcome.status == OutcomeStatus.SUCCEEDED
        assert delays == [1.0, 2.0]

    async def test_cancel_during_backoff_stops_retrying(self, workspace: Path):
        cancel = threading.Event()

        async def cancelling_sleep(seconds: float) -> None:
            cancel.set()

        adapter = FakeVcsAdapter(
            _remotes("a"), failures={"a": [_network_error()]}
        )
        engine = ReconcileEngine(
            adapter, MemoryLedger(), workspace, _settings(), sleep=cancelling_sleep
        )

        [outcome] = await engine.execute_async(_clone_plan("a"), cancel)

        assert outcome.status == OutcomeStatus.FAILED
        assert "not retried: cancelled" in outcome.reason
        assert outcome.attempts == 1

    async def test_preset_cancel_starts_nothing(self, workspace: Path):
        cancel = threading.Event()
        cancel.set()
        adapter = FakeVcsAdapter(_remotes("a", "b"))
        ledger = MemoryLedger()

        report = await reconcile_async(
            [spec("a"), spec("b")], workspace, adapter, ledger, _settings(), cancel
        )

        assert [o.reason for o in report.outcomes] == ["cancelled", "cancelled"]
        assert report.cancelled == report.outcomes
        assert report.status == RunStatus.TOTAL_FAILURE
        assert adapter.mutating_calls() == []
        assert ledger.entries() == {}
        assert not ledger.finalized

    async def test_outcomes_are_recorded_in_ledger(self, workspace: Path):
        adapter = FakeVcsAdapter(_remotes("a"))
        ledger = MemoryLedger()
        engine = ReconcileEngine(adapter, ledger, workspace, _settings())

        await engine.execute_async(_clone_plan("a", "b"))

        entries = ledger.entries()
        assert entries["a"]["status"] == "succeeded"
        assert entries["b"]["status"] == "failed"
        assert entries["a"]["fingerprint"] == spec("a").fingerprint()

    def test_dry_run_changes_nothing(self, workspace: Path):
        make_working_copy(workspace / "b", URL.format("b"))
        adapter = FakeVcsAdapter(_remotes("a", "b"))
        ledger = MemoryLedger()

        plan = plan_workspace(
            [spec("a"), spec("b")], workspace, adapter, ledger, _settings()
        )
        engine = ReconcileEngine(adapter, ledger, workspace, _settings())
        outcomes = engine.execute(plan, dry_run=True)

        assert outcomes[0].reason == "dry run: would clone (missing)"
        assert outcomes[1].reason == "up to date"
        assert adapter.mutating_calls() == []
        assert not (workspace / "a").exists()
        assert ledger.entries() == {}

    async def test_dry_run_report_does_not_finalize(self, workspace: Path):
        adapter = FakeVcsAdapter(_remotes("a"))
        ledger = MemoryLedger()

        report = await reconcile_async(
            [spec("a")], workspace, adapter, ledger, _settings(), dry_run=True
        )

        assert report.dry_run
        assert not ledger.finalized
        assert adapter.mutating_calls() == []

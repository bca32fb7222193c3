"""Tests for the planner decision table.

Covers:
- Every row of the decision table
- Ref matching for branches, tags and commit prefixes
- Determinism (same input, same Action)
- Dirty working copies never lead to fetch/checkout
- Relocation planning and build_plan ordering
"""

from __future__ import annotations

import itertools

import pytest

from conftest import spec
from tend.reconcile.ledger import MemoryLedger
from tend.reconcile.models import ActionKind, RepoState
from tend.reconcile.planner import (
    build_plan,
    plan,
    plan_relocation,
    ref_matches,
    relocation_candidates,
)

URL = "https://example.com/acme/a.git"
HEAD = "0123456789abcdef0123456789abcdef01234567"


def _state(**overrides) -> RepoState:
    fields = {
        "present": True,
        "vcs_kind": "git",
        "current_ref": "main",
        "head_commit": HEAD,
        "dirty": False,
        "remote_url": URL,
    }
    fields.update(overrides)
    return RepoState(**fields)


# ---------------------------------------------------------------------------
# ref_matches()
# ---------------------------------------------------------------------------


class TestRefMatches:
    def test_none_matches_anything(self):
        assert ref_matches(None, _state(current_ref="whatever"))

    def test_branch(self):
        assert ref_matches("main", _state())
        assert not ref_matches("dev", _state())

    def test_tag_at_head(self):
        assert ref_matches("v2", _state(current_ref=None, tags=["v1", "v2"]))

    def test_commit_prefix(self):
        assert ref_matches("0123456", _state(current_ref=None))
        assert ref_matches(HEAD.upper(), _state(current_ref=None))
        assert not ref_matches("fedcba9", _state(current_ref=None))


# ---------------------------------------------------------------------------
# plan() decision table
# ---------------------------------------------------------------------------


class TestPlan:
    def test_absent_clones(self):
        action = plan(spec("a"), RepoState(present=False))
        assert action.kind == ActionKind.CLONE
        assert action.reason == "missing"

    def test_probe_error_conflicts(self):
        action = plan(spec("a"), RepoState(present=True, error="denied"))
        assert action.kind == ActionKind.CONFLICT
        assert "probe failed" in action.reason

    def test_not_git_conflicts(self):
        action = plan(spec("a"), RepoState(present=True, vcs_kind="unknown"))
        assert action.kind == ActionKind.CONFLICT
        assert "not a git working copy" in action.reason

    def test_wrong_remote_conflicts(self):
        action = plan(
            spec("a"), _state(remote_url="https://example.com/other/a.git")
        )
        assert action.kind == ActionKind.CONFLICT
        assert "remote mismatch" in action.reason

    def test_missing_remote_conflicts(self):
        action = plan(spec("a"), _state(remote_url=None))
        assert action.kind == ActionKind.CONFLICT
        assert "no origin" in action.reason

    def test_equivalent_remote_spelling_matches(self):
        action = plan(
            spec("a", url="git@github.com:acme/a.git"),
            _state(remote_url="https://github.com/acme/a"),
        )
        assert action.kind == ActionKind.SKIP

    def test_clean_up_to_date_skips(self):
        action = plan(spec("a"), _state())
        assert action.kind == ActionKind.SKIP
        assert action.reason == "up to date"

    def test_dirty_up_to_date_skips(self):
        action = plan(spec("a"), _state(dirty=True))
        assert action.kind == ActionKind.SKIP
        assert "uncommitted" in action.reason

    def test_clean_wrong_ref_updates(self):
        action = plan(spec("a", ref="v2"), _state())
        assert action.kind == ActionKind.FETCH_CHECKOUT
        assert action.reason == "main -> v2"

    def test_dirty_wrong_ref_conflicts(self):
        action = plan(spec("a", ref="v2"), _state(dirty=True))
        assert action.kind == ActionKind.CONFLICT
        assert "uncommitted changes" in action.reason

    def test_no_ref_never_updates(self):
        action = plan(spec("a", ref=None), _state(current_ref="feature"))
        assert action.kind == ActionKind.SKIP

    def test_action_carries_spec_and_state(self):
        s, st = spec("a"), _state()
        action = plan(s, st)
        assert action.spec == s
        assert action.state == st
        assert action.name == "a"


class TestPlanProperties:
    STATES = [
        RepoState(present=False),
        RepoState(present=True, error="boom"),
        RepoState(present=True, vcs_kind="unknown"),
        _state(),
        _state(dirty=True),
        _state(current_ref="dev"),
        _state(current_ref="dev", dirty=True),
        _state(remote_url="https://example.com/x/y.git"),
    ]
    REFS = [None, "main", "v2", "0123456"]

    def test_deterministic(self):
        for state, ref in itertools.product(self.STATES, self.REFS):
            s = spec("a", ref=ref)
            assert plan(s, state) == plan(s, state)

    @pytest.mark.parametrize("ref", REFS)
    def test_dirty_never_fetch_checkout(self, ref):
        for state in self.STATES:
            if not state.dirty:
                continue
            action = plan(spec("a", ref=ref), state)
            assert action.kind in (ActionKind.SKIP, ActionKind.CONFLICT)


# ---------------------------------------------------------------------------
# Relocation
# ---------------------------------------------------------------------------


class TestRelocation:
    def test_relocates_when_old_path_holds_repo(self):
        action = plan_relocation(
            spec("a", path="new/a"), RepoState(present=False), "a", _state()
        )
        assert action.kind == ActionKind.RELOCATE
        assert action.source_path == "a"
        assert action.reason == "moved from a"

    def test_relocate_with_ref_change(self):
        action = plan_relocation(
            spec("a", ref="v2", path="new/a"),
            RepoState(present=False),
            "a",
            _state(),
        )
        assert action.reason == "moved from a; checkout v2"

    def test_dirty_relocate_skips_checkout(self):
        action = plan_relocation(
            spec("a", ref="v2", path="new/a"),
            RepoState(present=False),
            "a",
            _state(dirty=True),
        )
        assert action.kind == ActionKind.RELOCATE
        assert "not checking out v2" in action.reason

    def test_no_relocation_when_target_present(self):
        assert (
            plan_relocation(spec("a", path="new/a"), _state(), "a", _state())
            is None
        )

    def test_no_relocation_for_other_remote(self):
        other = _state(remote_url="https://example.com/x/other.git")
        assert (
            plan_relocation(
                spec("a", path="new/a"), RepoState(present=False), "a", other
            )
            is None
        )

    def test_candidates_from_ledger(self):
        ledger = MemoryLedger(
            {"a": {"status": "succeeded", "path": "a", "url": URL}}
        )
        specs = [spec("a", path="new/a"), spec("b")]
        assert relocation_candidates(specs, ledger) == {"a": "a"}

    def test_candidates_ignore_url_change(self):
        ledger = MemoryLedger(
            {"a": {"status": "succeeded", "path": "a", "url": "elsewhere"}}
        )
        assert relocation_candidates([spec("a", path="new/a")], ledger) == {}

    def test_candidates_from_archived_history(self):
        ledger = MemoryLedger(
            history={"a": {"status": "succeeded", "path": "a", "url": URL}}
        )
        assert relocation_candidates([spec("a", path="new/a")], ledger) == {
            "a": "a"
        }


class TestBuildPlan:
    def test_one_action_per_spec_in_order(self):
        specs = [spec("b"), spec("a"), spec("c")]
        states = [RepoState(present=False), _state(), _state(dirty=True)]
        actions = build_plan(specs, states)
        assert [a.name for a in actions] == ["b", "a", "c"]

    def test_length_mismatch(self):
        with pytest.raises(ValueError):
            build_plan([spec("a")], [])

    def test_uses_relocation(self):
        specs = [spec("a", path="new/a")]
        actions = build_plan(
            specs, [RepoState(present=False)], {"a": ("a", _state())}
        )
        assert actions[0].kind == ActionKind.RELOCATE

    def test_never_moves_out_of_claimed_path(self):
        specs = [spec("a", path="new/a"), spec("b", path="a")]
        actions = build_plan(
            specs,
            [RepoState(present=False), RepoState(present=False)],
            {"a": ("a", _state())},
        )
        assert actions[0].kind == ActionKind.CLONE

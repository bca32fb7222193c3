"""Diff desired against actual state and decide what to do per repository.

``plan`` is a pure function of ``(RepoSpec, RepoState)``: the same pair
always yields the same Action, and nothing here touches the filesystem or
git.  ``build_plan`` applies it across a workspace and adds the one
decision that needs history: relocating a working copy whose target path
changed since it was last reconciled.

Decision table (first match wins):

===========================================  =================
Actual state                                 Action
===========================================  =================
probe failed                                 CONFLICT
absent                                       CLONE
present, not a git working copy              CONFLICT
present, different remote (or none)          CONFLICT
present, ref matches (dirty or clean)        SKIP
present, ref differs, dirty                  CONFLICT
present, ref differs, clean                  FETCH_CHECKOUT
===========================================  =================

Uncommitted changes never lead to a checkout.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Protocol

from tend.reconcile.models import Action, ActionKind, RepoSpec, RepoState
from tend.reconcile.prober import VCS_GIT
from tend.validators import looks_like_commit
from tend.vcs.base import same_remote

logger = logging.getLogger(__name__)


class LocationHistory(Protocol):
    """Where a repository was last reconciled (satisfied by the ledgers)."""

    def previous_path(self, spec: RepoSpec) -> str | None:
        ...  # pragma: no cover


def ref_matches(desired: str | None, state: RepoState) -> bool:
    """True when the checked-out revision satisfies *desired*.

    ``None`` accepts anything.  Otherwise the ref matches the current
    branch, any tag at ``HEAD``, or -- for commit hashes -- a prefix of
    the ``HEAD`` commit.
    """
    if desired is None:
        return True
    if desired == state.current_ref or desired in state.tags:
        return True
    if looks_like_commit(desired) and state.head_commit:
        return state.head_commit.lower().startswith(desired.lower())
    return False


def plan(spec: RepoSpec, state: RepoState) -> Action:
    """Decide the Action for one repository.

    Args:
        spec: Desired configuration.
        state: Observed state from the prober.

    Returns:
        Exactly one ``Action``.
    """

    def _action(kind: ActionKind, reason: str | None = None) -> Action:
        return Action(kind=kind, spec=spec, state=state, reason=reason)

    if state.error:
        return _action(ActionKind.CONFLICT, f"probe failed: {state.error}")

    if not state.present:
        return _action(ActionKind.CLONE, "missing")

    if state.vcs_kind != VCS_GIT:
        return _action(
            ActionKind.CONFLICT,
            f"{spec.path} exists but is not a git working copy",
        )

    if not same_remote(state.remote_url, spec.url):
        return _action(
            ActionKind.CONFLICT,
            f"remote mismatch: found {state.remote_url or 'no origin'}, "
            f"expected {spec.url}",
        )

    if ref_matches(spec.ref, state):
        if state.dirty:
            return _action(ActionKind.SKIP, "up to date (uncommitted changes)")
        return _action(ActionKind.SKIP, "up to date")

    current = state.current_ref or (state.head_commit or "unknown")[:12]
    if state.dirty:
        return _action(
            ActionKind.CONFLICT,
            f"on {current}, want {spec.ref}, but the working tree has "
            "uncommitted changes",
        )

    return _action(ActionKind.FETCH_CHECKOUT, f"{current} -> {spec.ref}")


def plan_relocation(
    spec: RepoSpec,
    state: RepoState,
    old_path: str,
    old_state: RepoState,
) -> Action | None:
    """Return a RELOCATE action when the old location holds this repo.

    Only applies when the new target is absent and the old path is a git
    working copy of the same remote.
    """
    if state.present or state.error or old_path == spec.path:
        return None
    if old_state.error or old_state.vcs_kind != VCS_GIT:
        return None
    if not same_remote(old_state.remote_url, spec.url):
        return None

    reason = f"moved from {old_path}"
    if not ref_matches(spec.ref, old_state):
        if old_state.dirty:
            reason += f"; not checking out {spec.ref} (uncommitted changes)"
        else:
            reason += f"; checkout {spec.ref}"
    return Action(
        kind=ActionKind.RELOCATE,
        spec=spec,
        state=old_state,
        reason=reason,
        source_path=old_path,
    )


def build_plan(
    specs: Sequence[RepoSpec],
    states: Sequence[RepoState],
    old_states: dict[str, tuple[str, RepoState]] | None = None,
) -> list[Action]:
    """Plan every repository in the workspace.

    Args:
        specs: Validated desired configuration.
        states: Probe results, same order as *specs*.
        old_states: For repositories whose recorded location differs from
            the declared one: name -> (old path, state probed at it).

    Returns:
        One Action per spec, in spec order.
    """
    if len(specs) != len(states):
        raise ValueError("specs and states must have the same length")

    old_states = old_states or {}
    claimed = {spec.path for spec in specs}
    actions: list[Action] = []

    for spec, state in zip(specs, states):
        action = None
        if spec.name in old_states:
            old_path, old_state = old_states[spec.name]
            # Never move a working copy out of a path another spec owns.
            if old_path not in claimed:
                action = plan_relocation(spec, state, old_path, old_state)
        if action is None:
            action = plan(spec, state)
        logger.debug(
            "Planned %s for %s (%s)", action.kind.value, spec.name, action.reason
        )
        actions.append(action)

    return actions


def relocation_candidates(
    specs: Sequence[RepoSpec], history: LocationHistory
) -> dict[str, str]:
    """Map repo name -> previous path for repos whose path changed."""
    candidates: dict[str, str] = {}
    for spec in specs:
        old_path = history.previous_path(spec)
        if old_path and old_path != spec.path:
            candidates[spec.name] = old_path
    return candidates

"""Propagate ``nix flake update`` through a chain of dependent repositories.

After a repository is pushed, every repository whose flake depends on it
(directly or transitively) needs its ``flake.lock`` bumped, in dependency
order, so each one picks up the freshly pushed inputs.  ``flake_deps`` in
the workspace config maps a repository to the flake inputs it consumes.
"""

from __future__ import annotations

import heapq
import logging
import subprocess
from collections import deque
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from .errors import FlakeCycleError, FlakeUpdateError

logger = logging.getLogger(__name__)

Runner = Callable[[Sequence[str], Path], subprocess.CompletedProcess]


@dataclass(frozen=True)
class UpdateStep:
    """One repository to update and the inputs to pass to ``nix flake update``."""

    repo: str
    inputs: tuple[str, ...]


class StepResult(str, Enum):
    DRY_RUN = "dry_run"
    UNCHANGED = "unchanged"
    PUSHED = "pushed"


def compute_update_chain(
    changed: str, flake_deps: Mapping[str, Sequence[str]]
) -> list[UpdateStep]:
    """Order the repositories affected by a push of *changed*.

    Repositories are sorted topologically; among repositories that are
    ready at the same time, names sort alphabetically.  Each step lists
    the inputs that are *changed* itself or were updated earlier in the
    chain.

    Raises:
        FlakeCycleError: The affected repositories depend on each other
            in a cycle.
    """
    dependents: dict[str, list[str]] = {}
    for repo, deps in flake_deps.items():
        for dep in deps:
            dependents.setdefault(dep, []).append(repo)

    affected: set[str] = set()
    queue = deque([changed])
    while queue:
        current = queue.popleft()
        for repo in dependents.get(current, []):
            if repo != changed and repo not in affected:
                affected.add(repo)
                queue.append(repo)

    if not affected:
        return []

    in_degree = {repo: 0 for repo in affected}
    forward: dict[str, list[str]] = {}
    for repo in affected:
        for dep in flake_deps.get(repo, []):
            if dep in affected:
                forward.setdefault(dep, []).append(repo)
                in_degree[repo] += 1

    ready = [repo for repo, degree in in_degree.items() if degree == 0]
    heapq.heapify(ready)

    ordered: list[str] = []
    while ready:
        repo = heapq.heappop(ready)
        ordered.append(repo)
        for dependent in forward.get(repo, []):
            in_degree[dependent] -= 1
            if in_degree[dependent] == 0:
                heapq.heappush(ready, dependent)

    if len(ordered) != len(affected):
        stuck = sorted(affected - set(ordered))
        raise FlakeCycleError(
            f"cycle detected in flake_deps among: {', '.join(stuck)}"
        )

    updated = {changed}
    steps: list[UpdateStep] = []
    for repo in ordered:
        inputs = tuple(d for d in flake_deps.get(repo, []) if d in updated)
        if inputs:
            steps.append(UpdateStep(repo=repo, inputs=inputs))
            updated.add(repo)
    return steps


def _run(args: Sequence[str], cwd: Path) -> subprocess.CompletedProcess:
    return subprocess.run(
        list(args), cwd=cwd, capture_output=True, text=True, check=False
    )


def _checked(
    runner: Runner, args: Sequence[str], cwd: Path, repo: str
) -> subprocess.CompletedProcess:
    try:
        result = runner(args, cwd)
    except OSError as exc:
        raise FlakeUpdateError(f"{args[0]} could not be run in {repo}: {exc}") from exc
    if result.returncode != 0:
        raise FlakeUpdateError(
            f"{' '.join(args[:3])} failed in {repo}: "
            f"{(result.stderr or '').strip()}"
        )
    return result


def execute_update_chain(
    root: Path,
    chain: Sequence[UpdateStep],
    dry_run: bool = False,
    runner: Runner = _run,
    progress: Callable[[int, int, UpdateStep, StepResult], None] | None = None,
    paths: Mapping[str, str] | None = None,
) -> list[tuple[UpdateStep, StepResult]]:
    """Update, commit and push each repository in *chain*, in order.

    Args:
        root: Workspace base directory.
        chain: Steps from ``compute_update_chain``.
        dry_run: Only check the repositories exist.
        runner: Runs a command in a directory (tests inject a fake).
        progress: Called after each step with (index, total, step, result).
        paths: Workspace-relative directory per repository; a repository
            not listed lives at its own name.

    Returns:
        The result of every step.

    Raises:
        FlakeUpdateError: A repository is missing or dirty, or a command
            failed.  Later steps are not attempted.
    """
    results: list[tuple[UpdateStep, StepResult]] = []
    total = len(chain)

    for index, step in enumerate(chain, start=1):
        repo_path = root / (paths or {}).get(step.repo, step.repo)
        if not repo_path.exists():
            raise FlakeUpdateError(
                f"repo directory does not exist: {repo_path}"
            )
        logger.info(
            "[%d/%d] %s: updating %s",
            index,
            total,
            step.repo,
            ", ".join(step.inputs),
        )

        if dry_run:
            result = StepResult.DRY_RUN
        else:
            result = _update_one(runner, repo_path, step)

        results.append((step, result))
        if progress is not None:
            progress(index, total, step, result)

    return results


def _update_one(runner: Runner, repo_path: Path, step: UpdateStep) -> StepResult:
    status = _checked(runner, ["git", "status", "--porcelain"], repo_path, step.repo)
    if status.stdout.strip():
        raise FlakeUpdateError(f"{step.repo} has uncommitted changes")

    _checked(runner, ["nix", "flake", "update", *step.inputs], repo_path, step.repo)
    _checked(runner, ["git", "add", "flake.lock"], repo_path, step.repo)

    try:
        diff = runner(["git", "diff", "--cached", "--quiet"], repo_path)
    except OSError as exc:
        raise FlakeUpdateError(f"git could not be run in {step.repo}: {exc}") from exc
    if diff.returncode == 0:
        logger.info("%s: flake.lock unchanged", step.repo)
        return StepResult.UNCHANGED

    message = f"chore: update {' '.join(step.inputs)}"
    _checked(runner, ["git", "commit", "-m", message], repo_path, step.repo)
    _checked(runner, ["git", "push"], repo_path, step.repo)
    logger.info("%s: pushed flake.lock update", step.repo)
    return StepResult.PUSHED

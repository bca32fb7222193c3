"""Validation of the declared workspace.

``validate_specs`` is pure: it only looks at the RepoSpec values, never at
the filesystem, so a declaration can be rejected before anything is probed.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence

from tend.errors import DuplicateNameError, InvalidPathError, ValidationError
from tend.reconcile.models import RepoSpec
from tend.validators import (
    normalize_relative_path,
    paths_collide,
    validate_repo_name,
    validate_target_path,
    validate_url,
)

logger = logging.getLogger(__name__)


def validate_specs(specs: Sequence[RepoSpec]) -> list[RepoSpec]:
    """Check a list of RepoSpecs for consistency.

    Every problem is collected first; the raised error carries them all in
    ``problems`` and uses the most specific class for the first one.

    Args:
        specs: Declared repositories, in declaration order.

    Returns:
        The specs unchanged, as a list.

    Raises:
        DuplicateNameError: Two specs share a logical name.
        InvalidPathError: A target path is empty, absolute, escapes the
            workspace root, or collides with another spec's path.
        ValidationError: A name or URL is empty.
    """
    problems: list[tuple[type[ValidationError], str]] = []
    seen_names: dict[str, int] = {}
    claimed: list[tuple[str, str]] = []

    for index, spec in enumerate(specs):
        ok, msg = validate_repo_name(spec.name)
        if not ok:
            problems.append((ValidationError, msg))
        elif spec.name in seen_names:
            problems.append(
                (
                    DuplicateNameError,
                    f"Duplicate repository name '{spec.name}' "
                    f"(entries {seen_names[spec.name] + 1} and {index + 1})",
                )
            )
        else:
            seen_names[spec.name] = index

        ok, msg = validate_url(spec.url)
        if not ok:
            problems.append((ValidationError, f"{spec.name}: {msg}"))

        ok, msg = validate_target_path(spec.path)
        if not ok:
            problems.append((InvalidPathError, f"{spec.name}: {msg}"))
            continue

        normalised = normalize_relative_path(spec.path) or spec.path
        for other_name, other_path in claimed:
            if paths_collide(normalised, other_path):
                problems.append(
                    (
                        InvalidPathError,
                        f"{spec.name}: target path '{spec.path}' collides "
                        f"with '{other_path}' of {other_name}",
                    )
                )
                break
        claimed.append((spec.name, normalised))

    if problems:
        for _, msg in problems:
            logger.debug("Validation problem: %s", msg)
        error_cls, first = problems[0]
        raise error_cls(first, [msg for _, msg in problems])

    return list(specs)

"""
Input validation functions for tend.

Lexical checks on repository names, target paths and remote URLs.  These
never touch the filesystem; they return ``(is_valid, error_message)`` so
callers can collect every problem before raising.
"""

import posixpath
import re

_REF_HEX = re.compile(r"^[0-9a-fA-F]{7,40}$")


# ---------------------------------------------------------------------------
# Error message formatting helpers
# ---------------------------------------------------------------------------


def format_validation_error(field_name: str, reason: str) -> str:
    """
    Generate consistent error message for validation failures.

    Args:
        field_name: Human-readable field name (e.g., "Repository name")
        reason: Description of validation failure (e.g., "cannot be empty")

    Returns:
        Formatted error message string
    """
    return f"{field_name} {reason}"


def validate_repo_name(name: str) -> tuple[bool, str]:
    """
    Validate a logical repository name.

    Validation rules:
        - Cannot be empty or whitespace-only
        - Cannot contain path separators
        - Cannot be '.' or '..'
    """
    if not name or not name.strip():
        return (
            False,
            format_validation_error("Repository name", "cannot be empty"),
        )

    if "/" in name or "\\" in name:
        return (
            False,
            format_validation_error(
                f"Repository name '{name}'", "cannot contain path separators"
            ),
        )

    if name in (".", ".."):
        return (
            False,
            format_validation_error(
                f"Repository name '{name}'", "is not allowed"
            ),
        )

    return (True, "")


def normalize_relative_path(path: str) -> str | None:
    """Normalise a workspace-relative path lexically.

    Returns the normalised POSIX form, or ``None`` when the path is empty,
    absolute, points at the workspace root, or escapes it via ``..``.
    """
    if not path or not path.strip():
        return None

    candidate = path.strip().replace("\\", "/")
    if candidate.startswith("/") or re.match(r"^[A-Za-z]:", candidate):
        return None

    normalised = posixpath.normpath(candidate)
    if normalised in (".", "") or normalised == ".." or normalised.startswith("../"):
        return None
    return normalised


def validate_target_path(path: str) -> tuple[bool, str]:
    """
    Validate a repository's target path relative to the workspace root.

    Validation rules:
        - Cannot be empty
        - Cannot be absolute
        - Cannot resolve to the workspace root or outside it
    """
    if not path or not path.strip():
        return (
            False,
            format_validation_error("Target path", "cannot be empty"),
        )

    if normalize_relative_path(path) is None:
        return (
            False,
            format_validation_error(
                f"Target path '{path}'", "escapes the workspace root"
            ),
        )

    return (True, "")


def validate_url(url: str) -> tuple[bool, str]:
    """Validate that a source location is present."""
    if not url or not url.strip():
        return (
            False,
            format_validation_error("Source URL", "cannot be empty"),
        )
    return (True, "")


def paths_collide(a: str, b: str) -> bool:
    """Return True when two normalised paths are equal or nested."""
    return a == b or a.startswith(b + "/") or b.startswith(a + "/")


def looks_like_commit(ref: str) -> bool:
    """Return True when *ref* is an abbreviated or full commit hash."""
    return bool(_REF_HEX.match(ref))

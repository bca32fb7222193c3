"""Error taxonomy for tend.

Only ``ValidationError`` is fatal for a whole run.  Everything else is
scoped to a single repository and ends up as an Outcome in the run report.
"""

from __future__ import annotations

import re
from enum import Enum


class TendError(Exception):
    """Base class for all tend errors."""


# ---------------------------------------------------------------------------
# Configuration / validation
# ---------------------------------------------------------------------------


class ConfigError(TendError):
    """Configuration file missing, unreadable, or structurally invalid."""


class ValidationError(TendError):
    """The declared workspace is inconsistent.

    Attributes:
        problems: Every problem found, in declaration order.  The
            exception message is the first problem.
    """

    def __init__(self, message: str, problems: list[str] | None = None):
        super().__init__(message)
        self.problems = problems or [message]


class DuplicateNameError(ValidationError):
    """Two repositories share a logical name."""


class InvalidPathError(ValidationError):
    """A target path escapes the workspace or collides with another one."""


# ---------------------------------------------------------------------------
# Per-repository errors
# ---------------------------------------------------------------------------


class ProbeError(TendError):
    """The on-disk state of a repository could not be determined."""


class ConflictError(TendError):
    """Reconciling a repository would discard or overwrite local work."""


class FailureKind(str, Enum):
    """Classification of a failed VCS operation."""

    NETWORK = "network"
    TIMEOUT = "timeout"
    LOCK = "lock"
    AUTH = "auth"
    NOT_FOUND = "not_found"
    CONFLICT_ON_DISK = "conflict_on_disk"
    UNKNOWN = "unknown"


RETRYABLE_KINDS = frozenset(
    {FailureKind.NETWORK, FailureKind.TIMEOUT, FailureKind.LOCK}
)


class AdapterError(TendError):
    """A VCS adapter operation failed.

    Use ``RetryableAdapterError`` / ``TerminalAdapterError`` (or
    ``adapter_error()``) rather than raising this class directly.
    """

    def __init__(self, message: str, kind: FailureKind = FailureKind.UNKNOWN):
        super().__init__(message)
        self.kind = kind

    @property
    def retryable(self) -> bool:
        return isinstance(self, RetryableAdapterError)


class RetryableAdapterError(AdapterError):
    """Transient failure: network, timeout, or lock contention."""


class TerminalAdapterError(AdapterError):
    """Permanent failure: auth, not-found, conflict on disk."""


def adapter_error(message: str, kind: FailureKind) -> AdapterError:
    """Build the right ``AdapterError`` subclass for *kind*."""
    if kind in RETRYABLE_KINDS:
        return RetryableAdapterError(message, kind)
    return TerminalAdapterError(message, kind)


# Ordered: first match wins.  Auth is checked before network because an
# ssh auth failure also prints "Could not read from remote repository".
_GIT_ERROR_PATTERNS: list[tuple[re.Pattern, FailureKind]] = [
    (
        re.compile(
            r"Authentication failed|Permission denied \(publickey|"
            r"could not read Username|terminal prompts disabled|"
            r"HTTP Basic: Access denied|403 Forbidden",
            re.IGNORECASE,
        ),
        FailureKind.AUTH,
    ),
    (
        re.compile(
            r"Repository not found|does not appear to be a git repository|"
            r"did not match any|not found in upstream|"
            r"couldn't find remote ref|unknown revision|invalid reference",
            re.IGNORECASE,
        ),
        FailureKind.NOT_FOUND,
    ),
    (
        re.compile(r"index\.lock|Unable to create .*\.lock|cannot lock ref", re.IGNORECASE),
        FailureKind.LOCK,
    ),
    (
        re.compile(
            r"would be overwritten|already exists and is not an empty directory|"
            r"untracked working tree files",
            re.IGNORECASE,
        ),
        FailureKind.CONFLICT_ON_DISK,
    ),
    (
        re.compile(
            r"Could not resolve host|Connection timed out|Connection refused|"
            r"Connection reset|Network is unreachable|early EOF|"
            r"RPC failed|Operation timed out|unable to access|"
            r"Could not read from remote repository|TLS",
            re.IGNORECASE,
        ),
        FailureKind.NETWORK,
    ),
]


def classify_git_error(stderr: str) -> FailureKind:
    """Map git's stderr text to a ``FailureKind``."""
    for pattern, kind in _GIT_ERROR_PATTERNS:
        if pattern.search(stderr):
            return kind
    return FailureKind.UNKNOWN


# ---------------------------------------------------------------------------
# Persistence / outer surfaces
# ---------------------------------------------------------------------------


class LedgerError(TendError):
    """The run ledger could not be written."""


class ProviderError(TendError):
    """Repository discovery against a hosting provider failed."""


class FlakeCycleError(TendError):
    """``flake_deps`` contains a dependency cycle."""


class FlakeUpdateError(TendError):
    """A step of the flake update chain failed."""

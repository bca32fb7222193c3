"""Run ledger persistence layer.

The ledger records, per repository, the last finalized Outcome of a
reconcile run so that an interrupted run can resume without repeating
completed clones and fetches.  It is the only state tend keeps between
invocations.  A run that finishes without being cancelled archives the
live ledger, so only an interrupted run is ever resumed.

Key design choices:

* **Atomic writes** -- every ``record()`` writes the full document to a
  temp file then calls ``os.replace()`` so readers never see partial data.
* **One lock, one entry** -- ``record()`` holds a lock only for the
  duration of a single entry update; entries for different repositories
  never share a critical section beyond that write.
* **Tolerant reads** -- a missing, truncated or foreign ledger loads as
  empty (with a warning) rather than failing the run.
* **Injectable** -- the engine only needs the ``Ledger`` protocol;
  ``MemoryLedger`` is used in tests.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Protocol

from tend.errors import LedgerError
from tend.reconcile.models import Action, Outcome, OutcomeStatus, RepoSpec

logger = logging.getLogger(__name__)

LEDGER_VERSION = 1
DEFAULT_LEDGER_DIR = ".tend"
DEFAULT_LEDGER_NAME = "ledger.json"

# Only work that changed something is worth not repeating on resume.
_RESUMABLE = frozenset({OutcomeStatus.SUCCEEDED.value})

# Entries whose recorded path held a healthy working copy.
_LOCATED = frozenset(
    {OutcomeStatus.SUCCEEDED.value, OutcomeStatus.SKIPPED.value}
)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def build_entry(action: Action, outcome: Outcome) -> dict:
    """Build the ledger entry for a finalized outcome."""
    return {
        "fingerprint": action.spec.fingerprint(),
        "status": outcome.status.value,
        "action": outcome.action.value,
        "path": action.spec.path,
        "url": action.spec.url,
        "reason": outcome.reason,
        "finished_at": outcome.finished_at or _now(),
    }


class Ledger(Protocol):
    """Protocol that all ledger stores must satisfy."""

    def get(self, name: str) -> dict | None:
        """Return the entry for *name*, or ``None`` if absent."""
        ...  # pragma: no cover

    def record(self, name: str, entry: dict) -> None:
        """Atomically upsert the entry for *name*."""
        ...  # pragma: no cover

    def entries(self) -> dict[str, dict]:
        """Return a snapshot of all entries."""
        ...  # pragma: no cover

    def finalize(self, archive: bool = True) -> None:
        """Close out a run that was not interrupted (archive or clear)."""
        ...  # pragma: no cover

    def discard(self) -> None:
        """Drop the live entries without archiving them."""
        ...  # pragma: no cover

    def is_completed(self, spec: RepoSpec) -> bool:
        """True when *spec* needs no further work this invocation."""
        ...  # pragma: no cover

    def previous_path(self, spec: RepoSpec) -> str | None:
        """Where *spec* was last reconciled, if known."""
        ...  # pragma: no cover


class _LedgerQueries(ABC):
    """Query helpers shared by the ledger implementations."""

    @abstractmethod
    def get(self, name: str) -> dict | None:
        """Live entry for *name*."""

    @abstractmethod
    def history(self, name: str) -> dict | None:
        """Entry for *name* from the last finalized run."""

    def is_completed(self, spec: RepoSpec) -> bool:
        """True when an interrupted run already applied *spec* unchanged."""
        entry = self.get(spec.name)
        if entry is None:
            return False
        return (
            entry.get("status") in _RESUMABLE
            and entry.get("fingerprint") == spec.fingerprint()
        )

    def previous_path(self, spec: RepoSpec) -> str | None:
        """Path the repository was last reconciled at, if it was for the same URL.

        The live ledger wins; otherwise the most recently archived ledger
        is consulted.
        """
        entry = self.get(spec.name) or self.history(spec.name)
        if entry is None or entry.get("url") != spec.url:
            return None
        if entry.get("status") not in _LOCATED:
            return None
        return entry.get("path")


class MemoryLedger(_LedgerQueries):
    """In-memory ledger for tests and ``--fresh`` runs."""

    def __init__(
        self,
        entries: dict[str, dict] | None = None,
        history: dict[str, dict] | None = None,
    ) -> None:
        self._entries: dict[str, dict] = dict(entries or {})
        self._history: dict[str, dict] = dict(history or {})
        self._lock = threading.Lock()
        self.finalized = False

    def get(self, name: str) -> dict | None:
        return self._entries.get(name)

    def history(self, name: str) -> dict | None:
        return self._history.get(name)

    def record(self, name: str, entry: dict) -> None:
        with self._lock:
            self._entries[name] = dict(entry)

    def entries(self) -> dict[str, dict]:
        with self._lock:
            return dict(self._entries)

    def finalize(self, archive: bool = True) -> None:
        with self._lock:
            self._history = dict(self._entries)
            self._entries.clear()
            self.finalized = True

    def discard(self) -> None:
        with self._lock:
            self._entries.clear()


class RunLedger(_LedgerQueries):
    """JSON-file ledger for one workspace.

    Args:
        path: Ledger file location (typically ``<root>/.tend/ledger.json``).
        workspace_root: Absolute workspace root; a ledger written for a
            different root is ignored.
    """

    max_archives = 5

    def __init__(self, path: Path, workspace_root: Path) -> None:
        self.path = path
        self.workspace_root = str(workspace_root)
        self._lock = threading.Lock()
        self._state = self._load()
        self._history: dict[str, dict] | None = None

    @classmethod
    def for_workspace(
        cls, workspace_root: Path, ledger_dir: str | None = None
    ) -> "RunLedger":
        """Return the ledger for *workspace_root*.

        By default the ledger lives inside the workspace.  With a shared
        *ledger_dir*, each workspace gets its own subdirectory keyed by a
        digest of its root.
        """
        if ledger_dir:
            digest = hashlib.sha256(
                str(workspace_root).encode("utf-8")
            ).hexdigest()[:16]
            directory = Path(ledger_dir).expanduser() / digest
        else:
            directory = workspace_root / DEFAULT_LEDGER_DIR
        return cls(directory / DEFAULT_LEDGER_NAME, workspace_root)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _empty(self) -> dict:
        return {
            "version": LEDGER_VERSION,
            "workspace": self.workspace_root,
            "started_at": None,
            "updated_at": None,
            "entries": {},
        }

    def _load(self, path: Path | None = None) -> dict:
        """Load a ledger document from disk, falling back to an empty one."""
        path = path or self.path
        if not path.exists():
            return self._empty()
        try:
            with open(path, encoding="utf-8") as fh:
                data = json.load(fh)
        except (OSError, ValueError) as exc:
            logger.warning("Ignoring unreadable ledger %s: %s", path, exc)
            return self._empty()

        if not isinstance(data, dict) or not isinstance(
            data.get("entries"), dict
        ):
            logger.warning("Ignoring malformed ledger %s", path)
            return self._empty()
        if data.get("workspace") != self.workspace_root:
            logger.warning(
                "Ledger %s belongs to workspace %s, not %s; ignoring it",
                path,
                data.get("workspace"),
                self.workspace_root,
            )
            return self._empty()
        return data

    def _archives(self) -> list[Path]:
        """Archived ledgers next to the live file, newest first."""
        if not self.path.parent.exists():
            return []
        pattern = f"{self.path.stem}.*{self.path.suffix}"
        return sorted(self.path.parent.glob(pattern), reverse=True)

    def history(self, name: str) -> dict | None:
        """Entry for *name* in the most recent archived ledger."""
        if self._history is None:
            archives = self._archives()
            self._history = (
                self._load(archives[0]).get("entries", {}) if archives else {}
            )
        return self._history.get(name)

    def _write(self) -> None:
        """Persist the ledger atomically.  Caller holds the lock."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._state["updated_at"] = _now()
        if self._state.get("started_at") is None:
            self._state["started_at"] = self._state["updated_at"]

        fd, tmp_path = tempfile.mkstemp(
            dir=str(self.path.parent), suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(self._state, fh, indent=2)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_path, self.path)
        except BaseException:
            # Clean up temp file on any failure.
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise

    # ------------------------------------------------------------------
    # Entry helpers
    # ------------------------------------------------------------------

    def get(self, name: str) -> dict | None:
        return self._state.get("entries", {}).get(name)

    def record(self, name: str, entry: dict) -> None:
        """Upsert *entry* under *name* and persist immediately.

        Raises:
            LedgerError: The ledger file could not be written.
        """
        with self._lock:
            self._state.setdefault("entries", {})[name] = dict(entry)
            try:
                self._write()
            except OSError as exc:
                raise LedgerError(
                    f"cannot write ledger {self.path}: {exc}"
                ) from exc

    def entries(self) -> dict[str, dict]:
        with self._lock:
            return dict(self._state.get("entries", {}))

    def discard(self) -> None:
        """Delete the live ledger file; archives are kept.

        Raises:
            LedgerError: The file could not be removed.
        """
        with self._lock:
            try:
                self.path.unlink(missing_ok=True)
            except OSError as exc:
                raise LedgerError(
                    f"cannot remove ledger {self.path}: {exc}"
                ) from exc
            self._state = self._empty()
            logger.info("Discarded ledger %s", self.path)

    def finalize(self, archive: bool = True) -> None:
        """Archive (or delete) the ledger once a run has run to completion.

        The archived copy is named ``ledger.<UTC timestamp>.json`` next to
        the live file.  The in-memory entries are cleared to match.

        Raises:
            LedgerError: The ledger could not be moved or removed.
        """
        with self._lock:
            if not self.path.exists():
                return
            try:
                if archive:
                    stamp = datetime.now(timezone.utc).strftime(
                        "%Y%m%dT%H%M%S%fZ"
                    )
                    target = self.path.with_name(
                        f"{self.path.stem}.{stamp}{self.path.suffix}"
                    )
                    os.replace(self.path, target)
                    logger.info("Archived ledger to %s", target)
                    self._history = dict(self._state.get("entries", {}))
                    for stale in self._archives()[self.max_archives :]:
                        stale.unlink()
                        logger.debug("Pruned old ledger archive %s", stale)
                else:
                    self.path.unlink()
                    logger.info("Removed ledger %s", self.path)
                self._state = self._empty()
            except OSError as exc:
                raise LedgerError(
                    f"cannot finalize ledger {self.path}: {exc}"
                ) from exc

"""Shared pytest fixtures for tend tests."""

from __future__ import annotations

import hashlib
import json
import threading
from pathlib import Path
from typing import Any

import pytest

from tend.errors import FailureKind, TerminalAdapterError
from tend.reconcile.models import RepoSpec
from tend.vcs.base import VcsStatus

_STATE_FILE = "fake_state.json"


def _commit(url: str, ref: str) -> str:
    return hashlib.sha1(f"{url}@{ref}".encode()).hexdigest()


def make_working_copy(
    target: Path,
    url: str,
    branch: str | None = "main",
    dirty: bool = False,
    tags: list[str] | None = None,
    head: str | None = None,
) -> Path:
    """Create a directory that ``FakeVcsAdapter`` treats as a working copy."""
    (target / ".git").mkdir(parents=True, exist_ok=True)
    state = {
        "remote": url,
        "branch": branch,
        "tags": tags or [],
        "head": head or _commit(url, branch or "detached"),
        "dirty": dirty,
    }
    (target / ".git" / _STATE_FILE).write_text(json.dumps(state))
    return target


class FakeVcsAdapter:
    """In-memory stand-in for ``GitAdapter``.

    Working copies are real directories (so the prober and relocation see
    them), with their git state kept in a JSON file under ``.git``.

    Args:
        remotes: url -> list of refs that exist on that remote.  Cloning
            an unknown url fails with ``not_found``.
        failures: repo directory name -> errors raised by the next
            mutating calls, consumed in order.
    """

    def __init__(
        self,
        remotes: dict[str, list[str]] | None = None,
        failures: dict[str, list[Exception]] | None = None,
    ) -> None:
        self.remotes = remotes or {}
        self.failures = {k: list(v) for k, v in (failures or {}).items()}
        self.calls: list[tuple[str, str]] = []
        self._lock = threading.Lock()

    def _enter(self, op: str, path: Path) -> None:
        with self._lock:
            self.calls.append((op, path.name))
            pending = self.failures.get(path.name)
            if op != "status" and pending:
                raise pending.pop(0)

    def _read(self, path: Path) -> dict[str, Any]:
        return json.loads((path / ".git" / _STATE_FILE).read_text())

    def _write(self, path: Path, state: dict[str, Any]) -> None:
        (path / ".git" / _STATE_FILE).write_text(json.dumps(state))

    def mutating_calls(self) -> list[tuple[str, str]]:
        return [c for c in self.calls if c[0] != "status"]

    # -- VcsAdapter protocol -------------------------------------------

    def clone(self, url, ref, path, *, shallow=False, submodules=False):
        self._enter("clone", path)
        if url not in self.remotes:
            raise TerminalAdapterError(
                f"Repository not found: {url}", FailureKind.NOT_FOUND
            )
        branch = ref or "main"
        if branch not in self.remotes[url]:
            raise TerminalAdapterError(
                f"Remote branch {branch} not found", FailureKind.NOT_FOUND
            )
        make_working_copy(path, url, branch=branch)

    def fetch(self, path):
        self._enter("fetch", path)

    def checkout(self, path, ref):
        self._enter("checkout", path)
        state = self._read(path)
        if ref not in self.remotes.get(state["remote"], []):
            raise TerminalAdapterError(
                f"pathspec '{ref}' did not match any file(s) known to git",
                FailureKind.NOT_FOUND,
            )
        state["branch"] = ref
        state["head"] = _commit(state["remote"], ref)
        self._write(path, state)

    def status(self, path):
        self._enter("status", path)
        state = self._read(path)
        return VcsStatus(
            branch=state["branch"],
            tags=state["tags"],
            head_commit=state["head"],
            dirty=state["dirty"],
            remote_url=state["remote"],
        )


def spec(name: str, ref: str | None = "main", path: str | None = None, **kw):
    """Build a RepoSpec with a predictable fake URL."""
    return RepoSpec(
        name=name,
        url=kw.pop("url", f"https://example.com/acme/{name}.git"),
        ref=ref,
        path=path or name,
        **kw,
    )


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    root = tmp_path / "ws"
    root.mkdir()
    return root


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch, tmp_path: Path):
    """Keep the user's tend environment out of every test."""
    for var in (
        "TEND_CONFIG",
        "TEND_CONCURRENCY",
        "TEND_MAX_RETRIES",
        "TEND_COMMAND_TIMEOUT",
        "TEND_LEDGER_DIR",
        "TEND_GITHUB_TOKEN",
        "GITHUB_TOKEN",
        "LOG_LEVEL",
    ):
        monkeypatch.delenv(var, raising=False)
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg"))

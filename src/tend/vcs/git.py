"""Git implementation of the VCS adapter.

Shells out to the ``git`` executable with ``subprocess.run``.  Every call
carries a timeout; git's stderr is classified into a ``FailureKind`` so the
engine can decide whether to retry.
"""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
from pathlib import Path

from tend.errors import (
    AdapterError,
    FailureKind,
    RetryableAdapterError,
    TerminalAdapterError,
    adapter_error,
    classify_git_error,
)
from tend.validators import looks_like_commit
from tend.vcs.base import VcsStatus

logger = logging.getLogger(__name__)


class GitAdapter:
    """Run clone/fetch/checkout/status against the ``git`` CLI.

    Args:
        timeout: Seconds allowed for a single git invocation.
        git: Name or path of the git executable.
    """

    def __init__(self, timeout: float = 300.0, git: str = "git") -> None:
        self.timeout = timeout
        self.git = git

    # ------------------------------------------------------------------
    # Capabilities
    # ------------------------------------------------------------------

    def clone(
        self,
        url: str,
        ref: str | None,
        path: Path,
        *,
        shallow: bool = False,
        submodules: bool = False,
    ) -> None:
        """Clone *url* into *path* and check out *ref*.

        When a step fails, whatever this call put at *path* is removed
        again so a retried clone starts from the same empty target.
        """
        path.parent.mkdir(parents=True, exist_ok=True)
        args = ["clone"]
        by_commit = ref is not None and looks_like_commit(ref)

        if by_commit:
            # --branch only accepts branch and tag names
            args.append("--no-checkout")
        elif ref is not None:
            args.extend(["--branch", ref])
        if shallow:
            args.extend(["--depth", "1"])
        if submodules and not by_commit:
            args.append("--recurse-submodules")
        args.extend(["--", url, str(path)])

        created = not path.exists()
        was_empty = not created and path.is_dir() and not any(path.iterdir())

        logger.info("git clone %s -> %s", url, path)
        try:
            self._run(args)
            if by_commit:
                if shallow:
                    self._run(["fetch", "--depth", "1", "origin", ref], cwd=path)
                self._run(["checkout", "--detach", ref], cwd=path)
                if submodules:
                    self._run(
                        ["submodule", "update", "--init", "--recursive"],
                        cwd=path,
                    )
        except AdapterError:
            if (created or was_empty) and path.exists():
                logger.debug("Removing partial clone at %s", path)
                shutil.rmtree(path, ignore_errors=True)
                if was_empty:
                    path.mkdir()
            raise

    def fetch(self, path: Path) -> None:
        logger.info("git fetch in %s", path)
        self._run(["fetch", "--tags", "--prune", "origin"], cwd=path)

    def checkout(self, path: Path, ref: str) -> None:
        logger.info("git checkout %s in %s", ref, path)
        if self._is_shallow(path):
            self._fetch_for_shallow(path, ref)
        self._run(["checkout", ref], cwd=path)

        # Fast-forward a tracking branch to what was just fetched.
        upstream = self._run(
            ["rev-parse", "--abbrev-ref", "--symbolic-full-name", "@{u}"],
            cwd=path,
            check=False,
        )
        if upstream.returncode == 0 and upstream.stdout.strip():
            self._run(["merge", "--ff-only", "@{u}"], cwd=path)

    def status(self, path: Path) -> VcsStatus:
        branch_proc = self._run(
            ["symbolic-ref", "--quiet", "--short", "HEAD"],
            cwd=path,
            check=False,
        )
        branch = (
            branch_proc.stdout.strip() if branch_proc.returncode == 0 else None
        )

        head_proc = self._run(
            ["rev-parse", "--verify", "--quiet", "HEAD"],
            cwd=path,
            check=False,
        )
        head = head_proc.stdout.strip() if head_proc.returncode == 0 else None

        tags: list[str] = []
        if head:
            tag_proc = self._run(["tag", "--points-at", "HEAD"], cwd=path)
            tags = [t for t in tag_proc.stdout.splitlines() if t.strip()]

        porcelain = self._run(["status", "--porcelain"], cwd=path)

        remote_proc = self._run(
            ["remote", "get-url", "origin"], cwd=path, check=False
        )
        remote = (
            remote_proc.stdout.strip() if remote_proc.returncode == 0 else None
        )

        return VcsStatus(
            branch=branch or None,
            tags=tags,
            head_commit=head or None,
            dirty=bool(porcelain.stdout.strip()),
            remote_url=remote or None,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _is_shallow(path: Path) -> bool:
        return (path / ".git" / "shallow").exists()

    def _resolves(self, path: Path, name: str) -> bool:
        proc = self._run(
            ["rev-parse", "--verify", "--quiet", name], cwd=path, check=False
        )
        return proc.returncode == 0

    def _fetch_for_shallow(self, path: Path, ref: str) -> None:
        """Make *ref* available in a ``--depth 1`` clone.

        A shallow clone only tracks the branch it was cloned at, so any
        other branch, tag or commit is fetched by name (one commit deep).
        Refs that are already present are left to the regular fetch.
        """
        if looks_like_commit(ref):
            if not self._resolves(path, f"{ref}^{{commit}}"):
                self._run(["fetch", "--depth", "1", "origin", ref], cwd=path)
            return

        if self._resolves(path, f"refs/remotes/origin/{ref}") or self._resolves(
            path, f"refs/tags/{ref}"
        ):
            return

        heads = self._run(["ls-remote", "origin", f"refs/heads/{ref}"], cwd=path)
        if heads.stdout.strip():
            # Track the branch from now on so later fetches update it.
            self._run(
                ["remote", "set-branches", "--add", "origin", ref], cwd=path
            )
            refspec = f"+refs/heads/{ref}:refs/remotes/origin/{ref}"
        else:
            refspec = f"+refs/tags/{ref}:refs/tags/{ref}"
        logger.debug("Fetching %s into shallow clone %s", ref, path)
        self._run(["fetch", "--depth", "1", "origin", refspec], cwd=path)

    def _run(
        self,
        args: list[str],
        cwd: Path | None = None,
        check: bool = True,
    ) -> subprocess.CompletedProcess:
        """Run one git command and classify failures."""
        env = dict(os.environ)
        # Never block on a credential prompt.
        env["GIT_TERMINAL_PROMPT"] = "0"
        env.setdefault("GIT_SSH_COMMAND", "ssh -o BatchMode=yes")

        command = [self.git, *args]
        logger.debug("Running %s (cwd=%s)", " ".join(command), cwd)
        try:
            result = subprocess.run(
                command,
                cwd=str(cwd) if cwd else None,
                capture_output=True,
                text=True,
                timeout=self.timeout,
                env=env,
            )
        except subprocess.TimeoutExpired as exc:
            raise RetryableAdapterError(
                f"git {args[0]} timed out after {self.timeout}s",
                FailureKind.TIMEOUT,
            ) from exc
        except FileNotFoundError as exc:
            raise TerminalAdapterError(
                f"git executable not found: {self.git}",
                FailureKind.UNKNOWN,
            ) from exc

        if check and result.returncode != 0:
            stderr = result.stderr.strip()
            kind = classify_git_error(stderr)
            logger.debug(
                "git %s failed (rc=%d, kind=%s): %s",
                args[0],
                result.returncode,
                kind.value,
                stderr,
            )
            raise adapter_error(
                f"git {args[0]} failed: {stderr or f'exit code {result.returncode}'}",
                kind,
            )
        return result

"""Shared helpers used by the reconcile engine and the CLI."""

from .async_utils import gather_limited, run_sync

__all__ = ["gather_limited", "run_sync"]

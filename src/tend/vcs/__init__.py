"""VCS adapters: the boundary between the reconcile engine and git."""

from .base import VcsAdapter, VcsStatus, normalize_remote_url, same_remote
from .git import GitAdapter

__all__ = [
    "GitAdapter",
    "VcsAdapter",
    "VcsStatus",
    "normalize_remote_url",
    "same_remote",
]

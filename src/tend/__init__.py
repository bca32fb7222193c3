"""tend -- workspace repository manager.

Keeps a directory of git repositories in line with a declared workspace
configuration: missing repositories are cloned, repositories on the wrong
ref are fetched and checked out, and anything that would need a
destructive change is reported as a conflict instead.
"""

__version__ = "0.1.0"

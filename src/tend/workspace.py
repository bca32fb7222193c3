"""Turn a configured workspace into the RepoSpecs the engine reconciles."""

from __future__ import annotations

import logging
from collections.abc import Callable

from .config_schema import CloneMethod, WorkspaceConfig
from .provider import discover_github_repos
from .reconcile.models import RepoSpec

logger = logging.getLogger(__name__)

Discoverer = Callable[[str], list[str]]


def clone_url(workspace: WorkspaceConfig, repo_name: str) -> str:
    """Default clone URL for *repo_name* in *workspace*."""
    org = workspace.org_name
    if workspace.clone_method == CloneMethod.HTTPS:
        return f"https://github.com/{org}/{repo_name}.git"
    return f"git@github.com:{org}/{repo_name}.git"


def resolve_repo_names(
    workspace: WorkspaceConfig,
    discover: Discoverer = discover_github_repos,
) -> list[str]:
    """Repository names for *workspace*: discovered + extras + declared, minus excludes.

    Raises:
        ProviderError: Discovery is enabled and the provider failed.
    """
    names: list[str] = []
    if workspace.discover:
        names.extend(discover(workspace.org_name))

    names.extend(workspace.extra_repos)
    names.extend(repo.name for repo in workspace.repos)

    excluded = set(workspace.exclude)
    resolved = sorted({n for n in names if n not in excluded})
    logger.debug(
        "Workspace %s: %d repositories (%d excluded)",
        workspace.name,
        len(resolved),
        len(excluded),
    )
    return resolved


def build_repo_specs(
    workspace: WorkspaceConfig, names: list[str]
) -> list[RepoSpec]:
    """Build one RepoSpec per name, applying per-repo overrides."""
    overrides = {repo.name: repo for repo in workspace.repos}
    specs = []
    for name in names:
        repo = overrides.get(name)
        if repo is None:
            specs.append(
                RepoSpec(
                    name=name,
                    url=clone_url(workspace, name),
                    ref=workspace.default_ref,
                    path=name,
                    shallow=workspace.shallow,
                    submodules=workspace.submodules,
                )
            )
            continue
        specs.append(
            RepoSpec(
                name=name,
                url=repo.url or clone_url(workspace, name),
                ref=repo.ref if repo.ref is not None else workspace.default_ref,
                path=repo.path or name,
                shallow=(
                    workspace.shallow if repo.shallow is None else repo.shallow
                ),
                submodules=(
                    workspace.submodules
                    if repo.submodules is None
                    else repo.submodules
                ),
            )
        )
    return specs


def load_workspace_specs(
    workspace: WorkspaceConfig,
    discover: Discoverer = discover_github_repos,
) -> list[RepoSpec]:
    """Resolve names and build specs in one step."""
    return build_repo_specs(workspace, resolve_repo_names(workspace, discover))


def filter_workspaces(
    workspaces: list[WorkspaceConfig], name: str | None
) -> list[WorkspaceConfig]:
    """All workspaces, or only the one called *name*."""
    if name is None:
        return list(workspaces)
    return [ws for ws in workspaces if ws.name == name]

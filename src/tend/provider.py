"""
Repository discovery from hosting providers.

Only GitHub is supported: all non-archived repositories of an organisation
or user account are listed through the REST API.
"""

import logging
import os

import requests

from . import __version__
from .errors import ProviderError

logger = logging.getLogger(__name__)

GITHUB_API = "https://api.github.com"
PER_PAGE = 100


def github_token() -> str | None:
    """Token from ``TEND_GITHUB_TOKEN`` or ``GITHUB_TOKEN`` (optional)."""
    return os.environ.get("TEND_GITHUB_TOKEN") or os.environ.get(
        "GITHUB_TOKEN"
    )


def _create_session(token: str | None) -> requests.Session:
    session = requests.Session()
    session.headers["User-Agent"] = f"tend/{__version__}"
    session.headers["Accept"] = "application/vnd.github+json"
    if token:
        session.headers["Authorization"] = f"Bearer {token}"
    return session


def _fetch_repos(
    session: requests.Session, endpoint: str, name: str
) -> list[str]:
    """Page through ``/{endpoint}/{name}/repos`` until an empty page.

    Raises:
        requests.HTTPError: On a non-2xx response.
    """
    repos: list[str] = []
    page = 1
    while True:
        response = session.get(
            f"{GITHUB_API}/{endpoint}/{name}/repos",
            params={"per_page": PER_PAGE, "page": page, "type": "all"},
            timeout=(10, 60),
        )
        response.raise_for_status()
        batch = response.json()
        if not batch:
            break
        for repo in batch:
            if repo.get("archived"):
                logger.debug("Skipping archived repo %s", repo.get("name"))
                continue
            repos.append(repo["name"])
        page += 1
    return repos


def discover_github_repos(
    org: str, session: requests.Session | None = None
) -> list[str]:
    """List the non-archived repositories of a GitHub org or user.

    The ``/orgs`` endpoint is tried first; a 404 falls back to ``/users``.

    Args:
        org: Organisation or user login.
        session: Optional pre-configured session (tests inject one).

    Returns:
        Sorted repository names.

    Raises:
        ProviderError: The API could not be reached or returned an error.
    """
    session = session or _create_session(github_token())

    for endpoint in ("orgs", "users"):
        try:
            repos = _fetch_repos(session, endpoint, org)
        except requests.HTTPError as e:
            status = e.response.status_code if e.response is not None else 0
            if endpoint == "orgs" and status == 404:
                logger.debug("%s is not an organisation, trying users", org)
                continue
            body = e.response.text if e.response is not None else ""
            raise ProviderError(
                f"GitHub API returned {status} for {org}: {body[:200]}"
            ) from e
        except requests.RequestException as e:
            raise ProviderError(
                f"fetching repos for {org} failed: {e}"
            ) from e
        except (ValueError, KeyError, TypeError) as e:
            raise ProviderError(
                f"unexpected GitHub API response for {org}: {e}"
            ) from e

        logger.info("Discovered %d repositories in %s", len(repos), org)
        return sorted(repos)

    return []

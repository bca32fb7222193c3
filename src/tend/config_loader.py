"""
Locating, reading and merging tend's YAML config files.

A config file may pull other YAML files in with ``!include`` and refer to
environment variables as ``${NAME}`` or ``${NAME:-fallback}``.  Several
files can apply at once (project and global); the project file takes
precedence key by key.

Usage:
    from tend.config_loader import load_hierarchical_config

    raw = load_hierarchical_config()
"""

import logging
import os
import re
from pathlib import Path
from typing import Any

import yaml

from .errors import ConfigError

logger = logging.getLogger(__name__)

PROJECT_CONFIG = Path(".tend") / "config.yml"

# ---------------------------------------------------------------------------
# Environment references
# ---------------------------------------------------------------------------

# ${NAME} or ${NAME:-fallback}
_ENV_REF = re.compile(r"\$\{(?P<name>[^}:]+?)(?::-(?P<fallback>.*?))?\}")


def interpolate_env_vars(value: str) -> str:
    """Substitute environment references in a single string.

    An unset or empty variable yields its fallback, or ``""`` when none is
    given.  Text such as ``${OPEN`` without a closing brace is kept as is.
    """

    def _lookup(ref: re.Match) -> str:
        return os.environ.get(ref.group("name")) or ref.group("fallback") or ""

    return _ENV_REF.sub(_lookup, value)


def _expand_tree(node: Any) -> Any:
    """Apply ``interpolate_env_vars`` to every string in a parsed document."""
    if isinstance(node, dict):
        return {key: _expand_tree(item) for key, item in node.items()}
    if isinstance(node, list):
        return [_expand_tree(item) for item in node]
    if isinstance(node, str):
        return interpolate_env_vars(node)
    return node


# ---------------------------------------------------------------------------
# !include
# ---------------------------------------------------------------------------


class ConfigLoader(yaml.SafeLoader):
    """SafeLoader that understands ``!include <path>``.

    Registering the tag on a subclass leaves ``yaml.SafeLoader`` itself
    untouched.  Each instance carries the chain of files being loaded
    (``include_chain``) so that a file including itself is caught.
    """

    include_chain: tuple[Path, ...] = ()


def _construct_include(loader: ConfigLoader, node: yaml.ScalarNode) -> Any:
    """Load the referenced file; relative paths start at the including file."""
    including = Path(loader.name).resolve()
    target = Path(loader.construct_scalar(node)).expanduser()
    if not target.is_absolute():
        target = including.parent / target
    target = target.resolve()

    if target in loader.include_chain:
        cycle = " -> ".join(str(p) for p in (*loader.include_chain, target))
        raise ConfigError(f"Circular include detected: {cycle}")
    if not target.exists():
        raise ConfigError(
            f"Include file not found: {target} (referenced from {including})"
        )
    return load_yaml_file(target, loader.include_chain)


ConfigLoader.add_constructor("!include", _construct_include)


def load_yaml_file(path: Path, include_chain: tuple[Path, ...] = ()) -> Any:
    """Parse one YAML file, following ``!include`` tags.

    Raises:
        ConfigError: An include is missing or circular.
        OSError, yaml.YAMLError: The file cannot be read or parsed.
    """
    path = path.resolve()
    with open(path, encoding="utf-8") as stream:
        loader = ConfigLoader(stream)
        loader.include_chain = (*include_chain, path)
        try:
            return loader.get_single_data()
        finally:
            loader.dispose()


# ---------------------------------------------------------------------------
# Where config files live
# ---------------------------------------------------------------------------


def global_config_path() -> Path:
    """``$XDG_CONFIG_HOME/tend/config.yaml`` (default ``~/.config``)."""
    config_home = os.environ.get("XDG_CONFIG_HOME")
    base = Path(config_home) if config_home else Path.home() / ".config"
    return base / "tend" / "config.yaml"


def _must_exist(path: Path, what: str) -> Path:
    path = path.expanduser().resolve()
    if not path.exists():
        raise ConfigError(f"{what}: {path}")
    return path


def discover_config_files(explicit: Path | None = None) -> list[Path]:
    """Config files that apply, most important first.

    ``--config`` (*explicit*) or, failing that, ``TEND_CONFIG`` names a
    single file that is used on its own and must exist.  Otherwise the
    project file ``./.tend/config.yml`` and the global file are returned,
    whichever of them exist.

    Raises:
        ConfigError: An explicitly named file does not exist.
    """
    if explicit is not None:
        return [_must_exist(Path(explicit), "Config file not found")]

    from_env = os.environ.get("TEND_CONFIG")
    if from_env:
        return [
            _must_exist(Path(from_env), "TEND_CONFIG points to a missing file")
        ]

    found = []
    for candidate in (Path.cwd() / PROJECT_CONFIG, global_config_path()):
        if candidate.exists():
            found.append(candidate)
    return found


def resolve_config_path(explicit: Path | None = None) -> Path:
    """The file ``tend`` reads first, or the global path when none exists."""
    found = discover_config_files(explicit)
    return found[0] if found else global_config_path()


# ---------------------------------------------------------------------------
# tend init
# ---------------------------------------------------------------------------

_STARTER_CONFIG = """\
# tend configuration
#
# Engine settings can also be set via environment variables:
#   TEND_CONCURRENCY, TEND_MAX_RETRIES, TEND_COMMAND_TIMEOUT, TEND_LEDGER_DIR
#
# engine:
#   concurrency: 8
#   max_retries: 3
#   command_timeout: 300
#   archive_ledger: true
#
# logging:
#   level: INFO
#   file: null

workspaces:
  - name: my-org
    provider: github
    base_dir: ~/code/github/my-org
    clone_method: ssh
    discover: true
    org: my-org
    exclude:
      - .github
    extra_repos: []
    # repos:
    #   - name: svc-a
    #     ref: main
    #     path: services/svc-a
    # flake_deps:
    #   app: [lib]
"""


def starter_config() -> str:
    return _STARTER_CONFIG


def ensure_config(target: Path | None = None) -> Path:
    """Create a starter config at *target* (default: the global path).

    Raises:
        ConfigError: Something already exists at that path.
    """
    path = Path(target).expanduser() if target else global_config_path()
    if path.exists():
        raise ConfigError(f"config already exists at {path}")

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(_STARTER_CONFIG, encoding="utf-8")
    logger.info("Wrote starter config to %s", path)
    return path


# ---------------------------------------------------------------------------
# Merging
# ---------------------------------------------------------------------------


def load_hierarchical_config(explicit: Path | None = None) -> dict[str, Any]:
    """Read every applicable config file into one dict.

    The global file is read first and the project file second; a top-level
    key from the project file replaces the global one wholesale, with no
    deep merge.  Environment references are expanded on the merged result.
    With no config files at all the result is ``{}``.

    Raises:
        ConfigError: A file cannot be read or parsed.
    """
    files = discover_config_files(explicit)
    if not files:
        logger.debug("No config file found")
        return {}

    merged: dict[str, Any] = {}
    for path in files[::-1]:
        logger.debug("Reading config %s", path)
        try:
            document = load_yaml_file(path)
        except (OSError, yaml.YAMLError) as exc:
            raise ConfigError(f"Failed to load config file {path}: {exc}") from exc

        if document is None:
            continue
        if not isinstance(document, dict):
            logger.warning(
                "Ignoring %s: top level is a %s, not a mapping",
                path,
                type(document).__name__,
            )
            continue
        merged.update(document)

    return _expand_tree(merged)

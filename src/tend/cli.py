"""Command line entry point for tend.

Subcommands:
    sync          Reconcile workspaces with the config (clone, fetch, checkout)
    status        Show repo status (clean/dirty/missing/unknown)
    list          List configured repos
    discover      Discover repos from a GitHub org or user
    init          Generate a starter config file
    flake-update  Propagate nix flake update through the dependency chain

Exit codes for ``sync``: 0 when every repository succeeded, 1 on partial
failure, 2 on total failure or a configuration error, 130 when
interrupted.
"""

from __future__ import annotations

import argparse
import json
import logging
import signal
import sys
import threading
from datetime import datetime, timezone
from pathlib import Path

import pydantic
from dotenv import load_dotenv

from . import __version__
from .config import EngineSettings, load_settings
from .config_loader import ensure_config, load_hierarchical_config
from .config_schema import TendConfig, WorkspaceConfig, build_config
from .errors import (
    ConfigError,
    FlakeCycleError,
    FlakeUpdateError,
    LedgerError,
    ProviderError,
    ValidationError,
)
from .flake import StepResult, UpdateStep, compute_update_chain, execute_update_chain
from .logger import setup_logging
from .provider import discover_github_repos
from .reconcile import (
    ReconcileEngine,
    RunLedger,
    RunReport,
    RunStatus,
    exit_code,
    format_plan_preview,
    format_run_report,
    format_summary_line,
    plan_workspace,
    reconcile,
    report_to_json,
    summarize,
    worst_status,
)
from .status import check_status, format_status
from .vcs import GitAdapter
from .workspace import build_repo_specs, filter_workspaces, resolve_repo_names

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CONFIG = 2
EXIT_INTERRUPTED = 130


# ---------------------------------------------------------------------------
# Argument parsing
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tend",
        description="Workspace repository manager",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Create ~/.config/tend/config.yaml
  tend init

  # Preview, then reconcile every configured workspace
  tend sync --dry-run
  tend sync

  # One workspace, more parallelism, discard an interrupted run's ledger
  tend sync --workspace my-org --concurrency 16 --fresh

  # Update flake.lock in every repo that depends on 'lib'
  tend flake-update --changed lib
        """,
    )
    parser.add_argument(
        "--debug", action="store_true", help="Enable debug logging"
    )
    parser.add_argument(
        "--log-format",
        choices=["text", "json"],
        default="text",
        help="Log output format on stderr (default: text)",
    )
    parser.add_argument(
        "--version", action="version", version=f"tend {__version__}"
    )

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--config", type=Path, help="Path to config file"
    )
    common.add_argument(
        "--workspace", help="Only process a specific workspace by name"
    )

    sub = parser.add_subparsers(dest="command", required=True)

    sync = sub.add_parser(
        "sync", parents=[common], help="Reconcile workspaces with the config"
    )
    sync.add_argument(
        "--quiet",
        action="store_true",
        help="Suppress per-repo output, only show a summary line",
    )
    sync.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would change without changing anything",
    )
    sync.add_argument(
        "--concurrency",
        type=int,
        help="Repositories processed in parallel (overrides TEND_CONCURRENCY)",
    )
    sync.add_argument(
        "--max-retries",
        type=int,
        help="Retries for transient git failures (overrides TEND_MAX_RETRIES)",
    )
    sync.add_argument(
        "--fresh",
        action="store_true",
        help="Discard the ledger of an interrupted run instead of resuming it",
    )
    sync.add_argument(
        "--json", action="store_true", help="Print the run report as JSON"
    )

    sub.add_parser(
        "status",
        parents=[common],
        help="Show repo status (clean/dirty/missing/unknown)",
    )
    sub.add_parser("list", parents=[common], help="List configured repos")

    discover = sub.add_parser(
        "discover", help="Discover repos from a GitHub org or user"
    )
    discover.add_argument("org", help="GitHub org or user name")
    discover.add_argument(
        "--provider",
        choices=["github"],
        default="github",
        help="Provider (only github is supported)",
    )

    init = sub.add_parser("init", help="Generate a starter config file")
    init.add_argument(
        "--config",
        type=Path,
        help="Where to write the config (default: ~/.config/tend/config.yaml)",
    )

    flake = sub.add_parser(
        "flake-update",
        parents=[common],
        help="Propagate nix flake update through the dependency chain",
    )
    flake.add_argument(
        "--changed", required=True, help="Repo that was just pushed"
    )
    flake.add_argument(
        "--dry-run",
        action="store_true",
        help="Show the chain without executing",
    )
    flake.add_argument(
        "--quiet", action="store_true", help="Suppress per-step output"
    )

    return parser


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _load_config(args: argparse.Namespace) -> TendConfig:
    """Load, validate and apply logging settings from the config file.

    Raises:
        ConfigError: The file is missing, unreadable or invalid.
    """
    raw = load_hierarchical_config(args.config)
    try:
        config = build_config(raw)
    except pydantic.ValidationError as exc:
        raise ConfigError(f"Invalid configuration:\n{exc}") from exc

    setup_logging(
        debug=args.debug,
        log_file=config.logging.file,
        log_format=args.log_format,
        level=config.logging.level,
    )
    return config


def _selected_workspaces(
    config: TendConfig, name: str | None
) -> list[WorkspaceConfig]:
    if not config.workspaces:
        raise ConfigError("no workspaces configured; run 'tend init' first")
    selected = filter_workspaces(config.workspaces, name)
    if not selected:
        raise ConfigError(f"no workspace named '{name}' in the config")
    return selected


class _CancelOnInterrupt:
    """First Ctrl-C requests cancellation; a second one aborts."""

    def __init__(self) -> None:
        self.event = threading.Event()
        self._previous = None

    def _handle(self, signum, frame) -> None:
        if self.event.is_set():
            raise KeyboardInterrupt
        self.event.set()
        print(
            "\nFinishing in-flight operations; press Ctrl-C again to abort.",
            file=sys.stderr,
        )

    def __enter__(self) -> threading.Event:
        self._previous = signal.signal(signal.SIGINT, self._handle)
        return self.event

    def __exit__(self, *exc_info) -> None:
        previous = self._previous
        if previous is None:
            previous = signal.default_int_handler
        signal.signal(signal.SIGINT, previous)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def _sync_workspace(
    ws: WorkspaceConfig,
    args: argparse.Namespace,
    settings: EngineSettings,
    cancel: threading.Event,
) -> RunReport:
    root = ws.base_path.resolve()
    started_at = datetime.now(timezone.utc).isoformat()
    try:
        names = resolve_repo_names(ws)
    except ProviderError as exc:
        logger.error("%s: repository discovery failed: %s", ws.name, exc)
        return RunReport(
            workspace=ws.name,
            status=RunStatus.TOTAL_FAILURE,
            dry_run=args.dry_run,
            started_at=started_at,
        )

    specs = build_repo_specs(ws, names)
    adapter = GitAdapter(timeout=settings.command_timeout)
    ledger = RunLedger.for_workspace(root, settings.ledger_dir)
    if args.fresh and not args.dry_run:
        ledger.discard()

    if args.dry_run:
        plan = plan_workspace(specs, root, adapter, ledger, settings)
        if not args.quiet and not args.json:
            print(format_plan_preview(plan, ws.name))
        engine = ReconcileEngine(adapter, ledger, root, settings)
        report = summarize(
            engine.execute(plan, dry_run=True),
            workspace=ws.name,
            dry_run=True,
            started_at=started_at,
        )
    else:
        root.mkdir(parents=True, exist_ok=True)
        report = reconcile(
            specs, root, adapter, ledger, settings, cancel=cancel
        )
        report = report.model_copy(update={"workspace": ws.name})
        if not args.quiet and not args.json:
            print(format_run_report(report))

    if args.quiet and not args.json:
        print(format_summary_line(report))
    return report


def cmd_sync(args: argparse.Namespace) -> int:
    config = _load_config(args)
    workspaces = _selected_workspaces(config, args.workspace)
    try:
        settings = load_settings(
            concurrency=args.concurrency,
            max_retries=args.max_retries,
            yaml_fallbacks=config.engine.model_dump(exclude_none=True),
        )
    except ValueError as exc:
        raise ConfigError(str(exc)) from exc

    reports: list[RunReport] = []
    with _CancelOnInterrupt() as cancel:
        for ws in workspaces:
            if cancel.is_set():
                break
            reports.append(_sync_workspace(ws, args, settings, cancel))
            if not args.quiet and not args.json:
                print()

    if args.json:
        print(json.dumps([report_to_json(r) for r in reports], indent=2))

    if cancel.is_set():
        print("Interrupted; rerun 'tend sync' to resume.", file=sys.stderr)
        return EXIT_INTERRUPTED
    return exit_code(worst_status(r.status for r in reports))


def cmd_status(args: argparse.Namespace) -> int:
    config = _load_config(args)
    result = EXIT_OK
    for ws in _selected_workspaces(config, args.workspace):
        try:
            names = resolve_repo_names(ws)
        except ProviderError as exc:
            print(f"{ws.name}: {exc}", file=sys.stderr)
            result = EXIT_FAILURE
            continue
        specs = build_repo_specs(ws, names)
        entries = check_status(ws.base_path, specs, GitAdapter())
        print(format_status(ws.name, entries))
        print()
    return result


def cmd_list(args: argparse.Namespace) -> int:
    config = _load_config(args)
    result = EXIT_OK
    for ws in _selected_workspaces(config, args.workspace):
        try:
            names = resolve_repo_names(ws)
        except ProviderError as exc:
            print(f"{ws.name}: {exc}", file=sys.stderr)
            result = EXIT_FAILURE
            continue
        print(f"{ws.name} ({len(names)} repos):")
        for name in names:
            print(f"  {name}")
    return result


def cmd_discover(args: argparse.Namespace) -> int:
    setup_logging(debug=args.debug, log_format=args.log_format)
    try:
        repos = discover_github_repos(args.org)
    except ProviderError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_FAILURE
    print(f"discovered {len(repos)} repos in {args.org}:")
    for repo in repos:
        print(f"  {repo}")
    return EXIT_OK


def cmd_init(args: argparse.Namespace) -> int:
    setup_logging(debug=args.debug, log_format=args.log_format)
    path = ensure_config(args.config)
    print(f"config written to {path}")
    return EXIT_OK


def _print_flake_step(
    index: int, total: int, step: UpdateStep, result: StepResult
) -> None:
    messages = {
        StepResult.DRY_RUN: "dry run, skipped",
        StepResult.UNCHANGED: "flake.lock unchanged",
        StepResult.PUSHED: "committed and pushed",
    }
    print(
        f"  [{index}/{total}] {step.repo} ({', '.join(step.inputs)}): "
        f"{messages[result]}"
    )


def cmd_flake_update(args: argparse.Namespace) -> int:
    config = _load_config(args)
    result = EXIT_OK
    for ws in _selected_workspaces(config, args.workspace):
        if not ws.flake_deps:
            continue
        try:
            chain = compute_update_chain(args.changed, ws.flake_deps)
        except FlakeCycleError as exc:
            print(f"{ws.name}: {exc}", file=sys.stderr)
            result = EXIT_FAILURE
            continue
        if not chain:
            if not args.quiet:
                print(f"{ws.name}: no repos depend on {args.changed}")
            continue
        if not args.quiet:
            print(f"{ws.name}: {len(chain)} repos to update")
        specs = build_repo_specs(ws, [step.repo for step in chain])
        try:
            execute_update_chain(
                ws.base_path,
                chain,
                dry_run=args.dry_run,
                progress=None if args.quiet else _print_flake_step,
                paths={s.name: s.path for s in specs},
            )
        except FlakeUpdateError as exc:
            print(f"{ws.name}: {exc}", file=sys.stderr)
            result = EXIT_FAILURE
    return result


_COMMANDS = {
    "sync": cmd_sync,
    "status": cmd_status,
    "list": cmd_list,
    "discover": cmd_discover,
    "init": cmd_init,
    "flake-update": cmd_flake_update,
}


# ---------------------------------------------------------------------------
# Entry points
# ---------------------------------------------------------------------------


def main(argv: list[str] | None = None) -> int:
    """Parse *argv*, run the command, and return the exit code."""
    load_dotenv()
    args = build_parser().parse_args(argv)

    try:
        return _COMMANDS[args.command](args)
    except (ConfigError, ValidationError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        if isinstance(exc, ValidationError):
            for problem in exc.problems[1:]:
                print(f"  {problem}", file=sys.stderr)
        return EXIT_CONFIG
    except LedgerError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_FAILURE


def run() -> None:
    """Console script entry point."""
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        sys.exit(EXIT_INTERRUPTED)

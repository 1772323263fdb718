"""
Command-line interface.

Usage:
    binaudit check [--offline] [--json]
    binaudit get NAME
    binaudit get-missing [--keep-going]
    binaudit upgrade [--keep-going]
    binaudit init [--force]
    binaudit list
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import Callable, Sequence

from . import __version__
from .bulk import OutcomeSummary, ProgressTracker, fetch_missing, fetch_one, fetch_outdated
from .collectors import get_github_rate_limit
from .config import ConfigurationError, Settings, load_settings
from .detection import scan_target_dir
from .installer import get_installer
from .logging_config import setup_logging
from .manifest import load_manifest, write_default_manifest
from .reconcile import reconcile
from .render import print_summary, render_json, render_manifest, render_table

logger = logging.getLogger(__name__)


def _print_progress(name: str, status: str, message: str) -> None:
    if status == "in_progress":
        print(f"→ {name}: {message}", file=sys.stderr)
    elif status == "success":
        print(f"✓ {name} {message}".rstrip(), file=sys.stderr)
    elif status == "failed":
        print(f"✗ {name}: {message}", file=sys.stderr)
    elif status == "skipped":
        print(f"- {name}: {message}", file=sys.stderr)


def _progress() -> ProgressTracker:
    tracker = ProgressTracker()
    tracker.register_callback(_print_progress)
    return tracker


def _fail_fast(args: argparse.Namespace) -> bool | None:
    # None defers to the configured default
    return False if getattr(args, "keep_going", False) else None


def _report_outcome(summary: OutcomeSummary, as_json: bool = False) -> int:
    if as_json:
        print(json.dumps(summary.to_dict(), indent=2))
    else:
        print(summary.message())
    return 0 if summary.ok else 1


def _warn_rate_limit(settings: Settings, needed: int) -> None:
    rate = get_github_rate_limit(
        timeout=settings.http_timeout_seconds,
        token=settings.github_token,
        api_url=settings.github_api_url,
    )
    if rate and rate["remaining"] < needed:
        logger.warning(
            f"GitHub API rate limit: {rate['remaining']}/{rate['limit']} requests left, "
            f"{needed} needed (set GITHUB_TOKEN to raise the limit)"
        )


def cmd_check(args: argparse.Namespace, settings: Settings) -> int:
    """Print the status of every declared binary."""
    manifest = load_manifest(settings.manifest_path)
    include_remote = not args.offline

    if include_remote and len(manifest):
        _warn_rate_limit(settings, len(manifest))

    installed = scan_target_dir(settings.target_path)
    report = reconcile(manifest, installed, settings, include_remote=include_remote)

    if args.json:
        render_json(report)
        return 0

    use_color = not args.no_color and sys.stdout.isatty()
    render_table(report, use_color=use_color, use_emoji=not args.no_emoji)
    print_summary(report)
    return 0


def cmd_get(args: argparse.Namespace, settings: Settings) -> int:
    """Fetch one declared binary."""
    manifest = load_manifest(settings.manifest_path)
    installer = get_installer(settings, verbose=args.verbose)
    outcome = fetch_one(manifest, settings, installer, args.name, progress=_progress())
    return 0 if outcome.success else 1


def cmd_get_missing(args: argparse.Namespace, settings: Settings) -> int:
    """Fetch every declared binary that is not installed."""
    manifest = load_manifest(settings.manifest_path)
    installer = get_installer(settings, verbose=args.verbose)
    summary = fetch_missing(manifest, settings, installer, fail_fast=_fail_fast(args), progress=_progress())
    return _report_outcome(summary)


def cmd_upgrade(args: argparse.Namespace, settings: Settings) -> int:
    """Fetch every declared binary with a newer release."""
    manifest = load_manifest(settings.manifest_path)
    installer = get_installer(settings, verbose=args.verbose)
    summary = fetch_outdated(manifest, settings, installer, fail_fast=_fail_fast(args), progress=_progress())
    return _report_outcome(summary)


def cmd_init(args: argparse.Namespace, settings: Settings) -> int:
    """Write the starter manifest."""
    path = write_default_manifest(settings.manifest_path, overwrite=args.force)
    print(f"Manifest written to {path}")
    return 0


def cmd_list(args: argparse.Namespace, settings: Settings) -> int:
    """Print the declared binaries."""
    manifest = load_manifest(settings.manifest_path)
    render_manifest(manifest)
    return 0


COMMANDS: dict[str, Callable[[argparse.Namespace, Settings], int]] = {
    "check": cmd_check,
    "get": cmd_get,
    "get-missing": cmd_get_missing,
    "upgrade": cmd_upgrade,
    "init": cmd_init,
    "list": cmd_list,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="binaudit",
        description="Reconcile declared command-line binaries against XDG_BIN_HOME",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--config", metavar="PATH", help="Config file to load")
    parser.add_argument("--manifest", metavar="PATH", help="Manifest file (default: ~/.config/binaudit/manifest.yml)")
    parser.add_argument("--target-dir", metavar="PATH", help="Directory holding the binaries (default: $XDG_BIN_HOME)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose output")
    parser.add_argument("--quiet", "-q", action="store_true", help="Only print warnings and errors")
    parser.add_argument("--log-file", metavar="PATH", help="Also write debug logs to this file")

    subparsers = parser.add_subparsers(dest="command", metavar="COMMAND")

    check = subparsers.add_parser("check", help="Show installed and latest versions (default)")
    check.add_argument("--offline", action="store_true", help="Skip latest-release lookups")
    check.add_argument("--json", action="store_true", help="Print the report as JSON")
    check.add_argument("--no-color", action="store_true", help="Disable colored output")
    check.add_argument("--no-emoji", action="store_true", help="Use plain status symbols")

    get = subparsers.add_parser("get", help="Fetch one binary")
    get.add_argument("name", help="Manifest entry name")

    for name, help_text in (
        ("get-missing", "Fetch every binary that is not installed"),
        ("upgrade", "Fetch every binary with a newer release"),
    ):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument(
            "--keep-going",
            action="store_true",
            help="Continue after a failed install and report all failures",
        )

    init = subparsers.add_parser("init", help="Write the default manifest")
    init.add_argument("--force", action="store_true", help="Overwrite an existing manifest")

    subparsers.add_parser("list", help="List declared binaries")

    return parser


def main(argv: Sequence[str] | None = None) -> int:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        args.command = "check"
        args.offline = False
        args.json = False
        args.no_color = False
        args.no_emoji = False

    setup_logging(verbose=args.verbose, quiet=args.quiet, log_file=args.log_file)

    try:
        settings = load_settings(
            custom_path=args.config,
            overrides={"target_dir": args.target_dir, "manifest_path": args.manifest},
        )
        return COMMANDS[args.command](args, settings)
    except ConfigurationError as e:
        print(f"✗ {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("\nInterrupted", file=sys.stderr)
        return 130


if __name__ == "__main__":
    sys.exit(main())

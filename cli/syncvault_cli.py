"""Command line interface for the SyncVault engine."""

from __future__ import annotations

import argparse
import asyncio
import subprocess
import sys
from typing import TYPE_CHECKING

from syncvault.config import Settings
from syncvault.exceptions import SyncVaultError
from syncvault.main import _configure_logging, build_application, run_engine
from syncvault.services.metadata_service import list_open_conflicts

if TYPE_CHECKING:
    from syncvault.main import Application


async def _add(app: Application, args: argparse.Namespace) -> int:
    keys = args.secret_keys.split(",") if args.secret_keys else None
    result = await app.tracking.add_file(args.path, keys)
    print(f"Tracking {result.template_path} (project {result.project_id}, file {result.file_id})")
    print(f"  Secret keys: {', '.join(result.secret_keys) or '(none)'}")
    for warning in result.warnings:
        print(f"  Warning: {warning}")
    return 0


async def _list_remote(app: Application, args: argparse.Namespace) -> int:
    items = await app.tracking.list_remote_files(args.owner, args.repo, clone_url=args.clone_url)
    if not items:
        print("No tracked files in repository.")
    for item in items:
        print(f"{item.file_id}  {item.template_path}")
    return 0


async def _pull(app: Application, args: argparse.Namespace) -> int:
    target = await app.tracking.pull_file(
        args.owner, args.repo, args.file_id, args.target, clone_url=args.clone_url
    )
    print(f"Wrote {target}")
    return 0


async def _link(app: Application, args: argparse.Namespace) -> int:
    await app.tracking.link_remote(args.project_id, args.owner, args.repo, clone_url=args.clone_url)
    print(f"Linked project {args.project_id} to {args.owner}/{args.repo}")
    return 0


async def _set_enabled(app: Application, args: argparse.Namespace) -> int:
    enabled = args.command == "track"
    if not await app.tracking.set_destination_enabled(args.path, enabled):
        print(f"Error: {args.path} is not a tracked destination")
        return 1
    print(f"{'Enabled' if enabled else 'Disabled'} {args.path}")
    return 0


async def _conflicts(app: Application, args: argparse.Namespace) -> int:
    async with app.engine.session_factory() as session:
        conflicts = await list_open_conflicts(session)
    if not conflicts:
        print("No open conflicts.")
    for conflict in conflicts:
        print(f"{conflict.id}  {conflict.destination_path}  (detected {conflict.detected_at})")
        if conflict.local_copy_path:
            print(f"    local:  {conflict.local_copy_path}")
        if conflict.remote_copy_path:
            print(f"    remote: {conflict.remote_copy_path}")
    return 0


async def _resolve(app: Application, args: argparse.Namespace) -> int:
    if args.keep == "local":
        await app.engine.resolve_keep_local(args.conflict_id)
    else:
        await app.engine.resolve_keep_remote(args.conflict_id)
    print(f"Resolved {args.conflict_id} keeping {args.keep} content")
    return 0


async def _poll(app: Application, args: argparse.Namespace) -> int:
    report = await app.engine.poll_once()
    if report is None:
        print("A poll is already running.")
        return 0
    print(f"Polled {report.projects} project(s)")
    print(f"  Written:   {len(report.written)}")
    print(f"  In sync:   {len(report.in_sync)}")
    print(f"  Conflicts: {len(report.conflicts)}")
    for path in report.conflicts:
        print(f"    ! {path}")
    if report.failed_projects:
        print(f"  Failed projects: {', '.join(report.failed_projects)}")
    return 0


_COMMANDS = {
    "add": _add,
    "list-remote": _list_remote,
    "pull": _pull,
    "link": _link,
    "track": _set_enabled,
    "untrack": _set_enabled,
    "conflicts": _conflicts,
    "resolve": _resolve,
    "poll": _poll,
}


async def _dispatch(settings: Settings, args: argparse.Namespace) -> int:
    app = await build_application(settings)
    try:
        return await _COMMANDS[args.command](app, args)
    finally:
        await app.close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="syncvault",
        description="Keep .env files in sync through a template repository and a secret store",
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    subparsers = parser.add_subparsers(dest="command")

    subparsers.add_parser("run", help="Run the watcher and the poller until interrupted")
    subparsers.add_parser("poll", help="Run a single remote poll pass")

    add = subparsers.add_parser("add", help="Start tracking a local .env file")
    add.add_argument("path", help="Path of the .env file")
    add.add_argument(
        "--secret-keys", help="Comma-separated keys to treat as secret (default: detect)"
    )

    for name, help_text in (
        ("list-remote", "List files published in a template repository"),
        ("pull", "Render a remote file to a local path and track it"),
        ("link", "Attach a GitHub repository to a local project"),
    ):
        sub = subparsers.add_parser(name, help=help_text)
        if name == "link":
            sub.add_argument("project_id")
        sub.add_argument("owner")
        sub.add_argument("repo")
        if name == "pull":
            sub.add_argument("file_id")
            sub.add_argument("target", help="Where to write the rendered file")
        sub.add_argument("--clone-url", help="Clone URL (default: GitHub URL of owner/repo)")

    for name, help_text in (
        ("track", "Re-enable a disabled destination"),
        ("untrack", "Stop syncing a destination without deleting it"),
    ):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("path")

    subparsers.add_parser("conflicts", help="List open conflicts")
    resolve = subparsers.add_parser("resolve", help="Resolve an open conflict")
    resolve.add_argument("conflict_id")
    resolve.add_argument("--keep", choices=["local", "remote"], required=True)
    return parser


def main(argv: list[str] | None = None) -> None:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)
    settings = Settings()
    if args.debug:
        settings = settings.model_copy(update={"debug": True})
    _configure_logging(settings.debug)

    if args.command is None:
        parser.print_help()
        sys.exit(1)
    if args.command == "run":
        asyncio.run(run_engine(settings))
        return
    try:
        sys.exit(asyncio.run(_dispatch(settings, args)))
    except (SyncVaultError, OSError, ValueError, subprocess.SubprocessError) as exc:
        print(f"Error: {exc}")
        sys.exit(1)


if __name__ == "__main__":
    main()

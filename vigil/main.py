"""Vigil entrypoint."""

from __future__ import annotations

import argparse
import asyncio
import getpass
import logging
import sys
from pathlib import Path

logger = logging.getLogger("vigil")


def _build_parser() -> argparse.ArgumentParser:
    from vigil import __version__

    parser = argparse.ArgumentParser(
        prog="vigil", description="Credential container manager with breach intelligence."
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("init", help="create a new container")
    p.add_argument("container", type=Path)
    p.add_argument("--name", default=None)

    p = sub.add_parser("tree", help="print the group/entry tree")
    p.add_argument("container", type=Path, nargs="?")

    p = sub.add_parser("scan", help="check every password (and optionally email) for breaches")
    p.add_argument("container", type=Path, nargs="?")
    p.add_argument("--emails", action="store_true", help="also check usernames that are emails")

    p = sub.add_parser("report", help="show breached and weak entries from the cache")
    p.add_argument("container", type=Path, nargs="?")

    p = sub.add_parser("import-csv", help="import a browser password export")
    p.add_argument("container", type=Path)
    p.add_argument("csv_file", type=Path)
    p.add_argument("--group", default="Imported")

    p = sub.add_parser("clear-cache", help="forget cached breach results")
    p.add_argument("container", type=Path, nargs="?")

    p = sub.add_parser("set-api-key", help="store the HaveIBeenPwned API key ('' clears it)")
    p.add_argument("api_key")
    return parser


def _resolve_container(arg: Path | None, data_dir: Path) -> Path:
    from vigil.paths import load_last_container_path

    if arg is not None:
        return arg
    last = load_last_container_path(data_dir)
    if last is None:
        raise SystemExit("ERROR: no container given and no recently used container found")
    return last


def _open_session(path: Path, data_dir: Path):
    from vigil.container.session import ContainerSession

    password = getpass.getpass(f"Password for {path.name}: ")
    return ContainerSession.open(path, password, data_dir=data_dir)


# ----------------------------------------------------------------------
#  Commands
# ----------------------------------------------------------------------
def cmd_init(args, data_dir: Path) -> int:
    from vigil.config import Config
    from vigil.container.session import ContainerSession

    if args.container.exists():
        print(f"ERROR: {args.container} already exists", file=sys.stderr)
        return 1
    password = getpass.getpass("New password: ")
    if password != getpass.getpass("Confirm password: "):
        print("ERROR: passwords do not match", file=sys.stderr)
        return 1
    session = ContainerSession.create(
        args.container,
        password,
        name=args.name or Config.DEFAULT_CONTAINER_NAME,
        data_dir=data_dir,
        kdf_params=Config.get_kdf_params(data_dir),
    )
    session.close()
    print(f"Created {args.container}")
    return 0


def cmd_tree(args, data_dir: Path) -> int:
    from vigil.breach.cache import StatusCache
    from vigil.paths import get_status_cache_path

    session = _open_session(_resolve_container(args.container, data_dir), data_dir)
    try:
        statuses = StatusCache(get_status_cache_path(data_dir)).get_all(session.container_key)

        def show(group, depth):
            print(f"{'  ' * depth}{group.name}/ ({group.count_entries()})")
            for entry in group.entries:
                status = statuses.get(entry.id)
                mark = ""
                if status is not None and status.is_pwned:
                    mark = f"  [breached x{status.count}]"
                user = f" <{entry.username}>" if entry.username else ""
                print(f"{'  ' * (depth + 1)}{entry.title or '(untitled)'}{user}{mark}")
            for sub in group.groups:
                show(sub, depth + 1)

        show(session.tree, 0)
    finally:
        session.close()
    return 0


async def _run_scan(orchestrator, session, emails: bool) -> bool:
    from vigil.util.cancellation import CancellationToken

    token = CancellationToken()
    try:
        found = await orchestrator.check_group(
            session.container_key, session.tree, root_scan=True, token=token
        )
        if emails:
            found = await orchestrator.check_group_emails(
                session.container_key, session.tree, root_scan=True, token=token
            ) or found
        return found
    except asyncio.CancelledError:
        token.cancel("interrupted")
        raise
    finally:
        await orchestrator.aclose()


def cmd_scan(args, data_dir: Path) -> int:
    from vigil.breach.orchestrator import BreachOrchestrator

    session = _open_session(_resolve_container(args.container, data_dir), data_dir)
    try:
        orchestrator = BreachOrchestrator.from_config(data_dir)
        if args.emails and not orchestrator.client.api_key:
            print("WARNING: no HaveIBeenPwned API key set; skipping email checks", file=sys.stderr)
        asyncio.run(_run_scan(orchestrator, session, args.emails))
        _print_report(orchestrator, session)
    finally:
        session.close()
    return 0


def cmd_report(args, data_dir: Path) -> int:
    from vigil.breach.orchestrator import BreachOrchestrator
    from vigil.breach.hibp import HibpClient

    session = _open_session(_resolve_container(args.container, data_dir), data_dir)
    orchestrator = BreachOrchestrator.from_config(data_dir, client=HibpClient())
    try:
        _print_report(orchestrator, session)
        if orchestrator.needs_scan(session.tree, session.container_key):
            print("\nSome entries have no current result; run 'vigil scan' to refresh.")
    finally:
        asyncio.run(orchestrator.aclose())
        session.close()
    return 0


def _print_report(orchestrator, session) -> None:
    key = session.container_key
    report = orchestrator.find_breached_and_weak_entries(session.tree, key)
    if not report.has_checked_entries:
        print("No breach results cached for this container.")
        return

    print(f"Breached passwords: {len(report.breached)}")
    for entry in report.breached:
        status = orchestrator.get_entry_breach_status(key, entry.id)
        count = status.count if status is not None else 0
        print(f"  - {entry.title or '(untitled)'} (seen {count} times)")

    print(f"Weak passwords: {len(report.weak)}")
    for entry in report.weak:
        print(f"  - {entry.title or '(untitled)'}")

    emails = orchestrator.find_breached_emails(session.tree, key)
    if emails.has_checked_emails:
        print(f"Entries with breached emails: {len(emails.breached)}")
        for entry, breaches in emails.breached:
            names = ", ".join(b.title or b.name for b in breaches)
            print(f"  - {entry.title or '(untitled)'}: {names}")


def cmd_import_csv(args, data_dir: Path) -> int:
    from vigil.importers.csv_import import import_into, parse_csv

    try:
        credentials = parse_csv(args.csv_file.read_text(encoding="utf-8-sig"))
    except (OSError, ValueError) as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return 1

    session = _open_session(args.container, data_dir)
    try:
        # Unsaved tree edits would otherwise drop the imported group on export
        session.save()
        import_into(session.container, credentials, group_name=args.group)
        session.reload_tree()
        written = session.save()
    finally:
        session.close()
    print(f"Imported {len(credentials)} entries into {written}")
    return 0


def cmd_clear_cache(args, data_dir: Path) -> int:
    from vigil.breach.orchestrator import BreachOrchestrator
    from vigil.breach.hibp import HibpClient

    orchestrator = BreachOrchestrator.from_config(data_dir, client=HibpClient())
    try:
        if args.container is None:
            orchestrator.clear_cache()
            print("Cleared all cached breach results")
        else:
            orchestrator.clear_cache(str(args.container.resolve()))
            print(f"Cleared cached breach results for {args.container}")
    finally:
        asyncio.run(orchestrator.aclose())
    return 0


def cmd_set_api_key(args, data_dir: Path) -> int:
    from vigil.config import Config

    Config.set_hibp_api_key(args.api_key.strip() or None, data_dir)
    print("API key cleared" if not args.api_key.strip() else "API key saved")
    return 0


_COMMANDS = {
    "init": cmd_init,
    "tree": cmd_tree,
    "scan": cmd_scan,
    "report": cmd_report,
    "import-csv": cmd_import_csv,
    "clear-cache": cmd_clear_cache,
    "set-api-key": cmd_set_api_key,
}


def main(argv: list[str] | None = None) -> int:
    """Application entry point."""
    # 1. Check dependencies
    from vigil import check_dependencies

    check_dependencies()
    args = _build_parser().parse_args(argv)

    # 2. Resolve data directory
    from vigil.paths import get_data_dir

    data_dir = get_data_dir()
    data_dir.mkdir(parents=True, exist_ok=True)

    # 3. Initialise logging
    from vigil.logging_setup import setup_secure_logging

    setup_secure_logging(data_dir, logging.DEBUG if args.verbose else logging.INFO)

    # 4. KDF calibration on first run
    from vigil.config import Config

    if not Config.config_exists(data_dir):
        logger.info("First run, calibrating KDF...")
        try:
            Config.calibrate_kdf(data_dir)
        except RuntimeError as exc:
            logger.error("KDF calibration failed: %s", exc)
            print(f"ERROR: could not calibrate the KDF: {exc}", file=sys.stderr)
            return 1

    # 5. Dispatch
    from vigil.errors import VigilError

    try:
        return _COMMANDS[args.command](args, data_dir)
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 130
    except (ValueError, RuntimeError, VigilError, OSError) as exc:
        logger.error("%s failed: %s", args.command, exc)
        print(f"ERROR: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())

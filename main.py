"""PiBridge — command-line entry point.

Configures logging, loads the saved profiles and runs one subcommand::

    python main.py profiles
    python main.py profile-add pi 192.168.1.50 --user pi --password
    python main.py ls pi /home/pi
    python main.py get pi /home/pi/photos ./backup
    python main.py put pi ./notes.txt /home/pi/docs
    python main.py diff pi ./site /var/www/html
"""

from __future__ import annotations

import argparse
import getpass
import logging
import sys
from datetime import datetime
from typing import Sequence

from pibridge.config import ConfigManager, host_from_profile
from pibridge.errors import ConnectionError, ListError, PiBridgeError, UnknownHostError
from pibridge.models import BatchStatus, ItemStatus, StrategyKind, TransferBatch, TransferDirection, TransferItem
from pibridge.reconcile import Reconciler
from pibridge.remote_fs import RemoteFilesystemView
from pibridge.session import Session, SessionManager, accept_host_key, delete_password, store_password
from pibridge.transfer import TransferCoordinator, TransferRequest
from pibridge.utils.path_helpers import human_readable_size

_LOG_FORMAT = "%(asctime)s  %(levelname)-8s  %(name)s — %(message)s"
_DATE_FORMAT = "%H:%M:%S"

log = logging.getLogger("pibridge.cli")


def _configure_logging(verbose: bool) -> None:
    """Set up root logging to stderr."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=_LOG_FORMAT,
        datefmt=_DATE_FORMAT,
        stream=sys.stderr,
    )
    # Quieten noisy third-party loggers
    logging.getLogger("paramiko").setLevel(logging.WARNING)


# ---------------------------------------------------------------------------
# Argument parsing
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="pibridge", description="Move files to and from a remote SSH host.")
    parser.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    parser.add_argument(
        "--accept-host-key",
        action="store_true",
        help="trust and save an unknown host key instead of aborting",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("profiles", help="list saved connection profiles")

    add = sub.add_parser("profile-add", help="save or update a connection profile")
    add.add_argument("name")
    add.add_argument("host")
    add.add_argument("--port", type=int, default=22)
    add.add_argument("--user", default="pi")
    add.add_argument("--key", dest="key_path", help="private key file")
    add.add_argument("--password", action="store_true", help="prompt for a password and store it in the keyring")

    remove = sub.add_parser("profile-rm", help="delete a connection profile")
    remove.add_argument("name")

    ls = sub.add_parser("ls", help="list a remote directory")
    ls.add_argument("profile")
    ls.add_argument("path", nargs="?")
    ls.add_argument("-a", "--all", action="store_true", help="include hidden entries")

    for name, help_text in (("get", "download from the remote host"), ("put", "upload to the remote host")):
        cmd = sub.add_parser(name, help=help_text)
        cmd.add_argument("profile")
        cmd.add_argument("sources", nargs="+")
        cmd.add_argument("destination")
        cmd.add_argument("--strategy", choices=[k.value for k in StrategyKind], help="force a transfer strategy")

    diff = sub.add_parser("diff", help="compare a local directory with a remote one")
    diff.add_argument("profile")
    diff.add_argument("local")
    diff.add_argument("remote")
    return parser


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _connect(manager: SessionManager, config: ConfigManager, profile_name: str, accept_key: bool) -> Session:
    profile = config.get_profile(profile_name)
    if profile is None:
        raise PiBridgeError(f"No profile named {profile_name!r} (see 'profiles')")
    host = host_from_profile(profile)
    try:
        return manager.connect(host)
    except UnknownHostError as exc:
        if not accept_key or exc.key is None:
            raise
        log.warning("Trusting new %s key for %s (%s)", exc.key_type, exc.hostname, exc.fingerprint)
        accept_host_key(exc.hostname, exc.key)
        return manager.connect(host)


def _print_item(batch: TransferBatch, item: TransferItem) -> None:
    if item.status == ItemStatus.COMPLETED:
        print(f"  ok      {item.destination_path}  ({human_readable_size(item.bytes_done)})")
    else:
        reason = item.failure.name if item.failure else "?"
        print(f"  FAILED  {item.source_path}: {reason} {item.failure_message or ''}".rstrip())


def _print_summary(batch: TransferBatch) -> None:
    done = sum(1 for i in batch.items if i.status == ItemStatus.COMPLETED)
    print(
        f"{batch.overall_status.name}: {done}/{len(batch.items)} item(s), "
        f"{human_readable_size(batch.bytes_done)} moved via {batch.strategy.value}"
    )
    if batch.drift is not None:
        for entry in batch.drift.mismatches:
            print(f"  drift   {entry.path}: {entry.kind} expected={entry.expected} actual={entry.actual}")


# ---------------------------------------------------------------------------
# Subcommands
# ---------------------------------------------------------------------------


def cmd_profiles(config: ConfigManager) -> int:
    profiles = config.get_profiles()
    if not profiles:
        print("No saved profiles.")
    for p in profiles:
        auth = f"key {p['key_path']}" if p.get("key_path") else "password"
        print(f"{p.get('name'):<16} {p.get('username', 'pi')}@{p.get('host')}:{p.get('port', 22)}  ({auth})")
    return 0


def cmd_profile_add(config: ConfigManager, args: argparse.Namespace) -> int:
    profile = {"name": args.name, "host": args.host, "port": args.port, "username": args.user}
    if args.key_path:
        profile["key_path"] = args.key_path
    config.save_profile(profile)
    if args.password:
        store_password(host_from_profile(profile), getpass.getpass(f"Password for {args.user}@{args.host}: "))
    return 0


def cmd_profile_rm(config: ConfigManager, args: argparse.Namespace) -> int:
    profile = config.get_profile(args.name)
    if profile is None or not config.delete_profile(args.name):
        print(f"No profile named {args.name!r}", file=sys.stderr)
        return 1
    if not profile.get("key_path"):
        delete_password(host_from_profile(profile))
    return 0


def cmd_ls(session: Session, view: RemoteFilesystemView, path: str, show_hidden: bool) -> int:
    for entry in view.list(session, path):
        if entry.is_hidden and not show_hidden:
            continue
        when = datetime.fromtimestamp(entry.modified_at).strftime("%Y-%m-%d %H:%M")
        name = entry.name + ("/" if entry.is_dir else "")
        if entry.link_target:
            name += f" -> {entry.link_target}"
        print(f"{entry.kind.value[0]}{entry.permissions}  {human_readable_size(entry.size_bytes):>9}  {when}  {name}")
    return 0


def cmd_transfer(
    session: Session,
    coordinator: TransferCoordinator,
    direction: TransferDirection,
    args: argparse.Namespace,
) -> int:
    request = TransferRequest(
        sources=args.sources,
        destination=args.destination,
        direction=direction,
        strategy_hint=StrategyKind(args.strategy) if args.strategy else None,
    )
    handle = coordinator.submit(request, session)
    try:
        batch = coordinator.wait(handle)
    except KeyboardInterrupt:
        log.warning("Interrupted, cancelling transfer")
        coordinator.cancel(handle)
        batch = coordinator.wait(handle)
    _print_summary(batch)
    return 0 if batch.overall_status == BatchStatus.SUCCEEDED else 1


def cmd_diff(session: Session, reconciler: Reconciler, local: str, remote: str) -> int:
    report = reconciler.compare_directories(session, local, remote)
    for name in report.only_local:
        print(f"< {name}")
    for name in report.only_remote:
        print(f"> {name}")
    for entry in report.mismatches:
        print(f"! {entry.path}: {entry.kind} local={entry.expected} remote={entry.actual}")
    return 0 if report.is_empty else 1


# ---------------------------------------------------------------------------
# main
# ---------------------------------------------------------------------------


def main(argv: Sequence[str] | None = None, config: ConfigManager | None = None) -> int:
    """Parse *argv*, run the subcommand and return the process exit code."""
    args = build_parser().parse_args(argv)
    _configure_logging(args.verbose)
    config = config or ConfigManager()

    if args.command == "profiles":
        return cmd_profiles(config)
    if args.command == "profile-add":
        return cmd_profile_add(config, args)
    if args.command == "profile-rm":
        return cmd_profile_rm(config, args)

    manager = SessionManager(
        timeout=float(config.get("ssh_timeout", 15)),
        keepalive_interval=float(config.get("keepalive_interval", 30)),
    )
    view = RemoteFilesystemView()
    coordinator = TransferCoordinator(view, config.transfer_settings(), on_item_complete=_print_item)
    try:
        session = _connect(manager, config, args.profile, args.accept_host_key)
        if args.command == "ls":
            return cmd_ls(session, view, args.path or config.get("remote_start_path", "/"), args.all)
        if args.command == "get":
            return cmd_transfer(session, coordinator, TransferDirection.DOWNLOAD, args)
        if args.command == "put":
            return cmd_transfer(session, coordinator, TransferDirection.UPLOAD, args)
        if args.command == "diff":
            return cmd_diff(session, Reconciler(view), args.local, args.remote)
        raise AssertionError(f"unhandled command {args.command}")
    except UnknownHostError as exc:
        print(f"{exc}\nRe-run with --accept-host-key to trust it.", file=sys.stderr)
        return 2
    except (ConnectionError, ListError, PiBridgeError, ValueError) as exc:
        log.error("%s", exc)
        return 2
    finally:
        coordinator.shutdown()
        manager.close_all()


if __name__ == "__main__":
    sys.exit(main())

#!/usr/bin/env python3
"""
Tiered backup rotation.

Takes a yearly, monthly or daily backup of every configured directory into an
archive store, depending on which tiers already exist for the current year
and month, then prunes old monthly and daily batches. Yearly archives are
kept forever.
"""
from __future__ import annotations

import argparse
import configparser
import logging
import logging.handlers
import os
import shlex
import signal
import socket
import subprocess
import sys
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional, Set

from archive_catalog import (
    DEFAULT_KEEP_DAILY,
    DEFAULT_KEEP_MONTHLY,
    Catalog,
    Tier,
    format_archive_name,
    load_catalog,
    prune_tier,
    select_tier,
    target_name,
)
from archive_store import ArchiveStore, BorgStore, StoreUnavailableError
from run_events import LOGGER_NAME, log_event
from run_lock import LockError, RunLock


CONFIG_SECTION = "rotation"
DEFAULT_ARCHIVE_TOOL = "borg"
DEFAULT_LOCK_PATH = Path("/var/lock/backup-rotation")
SYSLOG_ADDRESS = "/dev/log"
INTERRUPT_SIGNALS = ("SIGTERM", "SIGHUP", "SIGINT")


class ConfigurationError(Exception):
    """Raised when required configuration is missing or invalid."""


class HookScriptError(Exception):
    """Raised when a hook script is not executable or exits with an error."""


class RunInterrupted(Exception):
    """Raised from a signal handler to unwind a run."""

    def __init__(self, signum: int) -> None:
        self.signum = signum
        super().__init__(f"Interrupted by signal {signal.Signals(signum).name}")


@dataclass
class RotationConfig:
    host: str
    targets: List[str]
    archive_tool: List[str] = field(default_factory=lambda: [DEFAULT_ARCHIVE_TOOL])
    repository: Optional[str] = None
    create_options: List[str] = field(default_factory=list)
    lock_path: Path = DEFAULT_LOCK_PATH
    use_local_time: bool = False
    pre_hook: Optional[Path] = None
    post_hook: Optional[Path] = None
    keep_monthly: int = DEFAULT_KEEP_MONTHLY
    keep_daily: int = DEFAULT_KEEP_DAILY
    dry_run: bool = False


@dataclass
class TargetResult:
    directory: str
    archive_name: str
    ok: bool
    duration: float
    error: Optional[str] = None


@dataclass
class RunContext:
    host: str
    tier: Tier
    timestamp: datetime
    catalog: Catalog
    results: List[TargetResult] = field(default_factory=list)
    deleted: Set[str] = field(default_factory=set)

    @property
    def failed(self) -> bool:
        return any(not result.ok for result in self.results)

    @property
    def failed_targets(self) -> List[str]:
        return [result.directory for result in self.results if not result.ok]


def parse_args(argv: Optional[Iterable[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Take a yearly, monthly or daily backup and prune old archives."
    )
    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        help="Path to an INI config file containing rotation parameters.",
    )
    parser.add_argument(
        "--host",
        help="Host identifier used in archive names (default: short hostname).",
    )
    parser.add_argument(
        "--target",
        dest="targets",
        action="append",
        metavar="DIR",
        help="Directory to back up. Repeat to back up several directories.",
    )
    parser.add_argument(
        "--archive-tool",
        help="Archive tool invocation (default: borg).",
    )
    parser.add_argument(
        "--repository",
        help="Repository location passed to the archive tool.",
    )
    parser.add_argument(
        "--create-options",
        help="Extra options passed to the archive tool when creating archives.",
    )
    parser.add_argument(
        "--lock-path",
        type=Path,
        help=f"Lock directory preventing concurrent runs (default: {DEFAULT_LOCK_PATH}).",
    )
    parser.add_argument(
        "--local-time",
        dest="use_local_time",
        action="store_true",
        help="Use local time instead of UTC in archive names.",
    )
    parser.add_argument(
        "--utc",
        dest="use_local_time",
        action="store_false",
        help=argparse.SUPPRESS,
    )
    parser.set_defaults(use_local_time=None)
    parser.add_argument(
        "--pre-hook",
        type=Path,
        help="Executable run before the backup phase.",
    )
    parser.add_argument(
        "--post-hook",
        type=Path,
        help="Executable run after the backup phase.",
    )
    parser.add_argument(
        "--keep-monthly",
        type=int,
        help=f"Number of monthly batches to keep (default: {DEFAULT_KEEP_MONTHLY}).",
    )
    parser.add_argument(
        "--keep-daily",
        type=int,
        help=f"Number of daily batches to keep (default: {DEFAULT_KEEP_DAILY}).",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"],
        help="Logging verbosity (default: INFO).",
    )
    parser.add_argument(
        "--syslog",
        action="store_true",
        help="Also send log records to the local syslog daemon.",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show planned actions without creating or deleting archives.",
    )
    return parser.parse_args(argv)


def read_config_file(config_path: Path) -> Dict[str, str]:
    parser = configparser.ConfigParser()
    read_files = parser.read(config_path)
    if not read_files:
        raise ConfigurationError(f"Config file {config_path} could not be read.")
    if CONFIG_SECTION not in parser:
        raise ConfigurationError(
            f"Config file {config_path} is missing the [{CONFIG_SECTION}] section."
        )
    return {k: v for k, v in parser[CONFIG_SECTION].items()}


def merge_config(
    args: argparse.Namespace, file_config: Optional[Dict[str, str]]
) -> RotationConfig:
    file_cfg = file_config or {}

    host = args.host if args.host is not None else file_cfg.get("host")
    if host is None:
        host = default_host()
    host = host.strip()
    if not host or any(char.isspace() for char in host) or "/" in host:
        raise ConfigurationError(f"Invalid host identifier: {host!r}")

    if args.targets:
        targets = [target.strip() for target in args.targets if target.strip()]
    else:
        targets = parse_list(file_cfg.get("targets", ""))
    if not targets:
        raise ConfigurationError("At least one target directory must be supplied.")
    seen_names: Dict[str, str] = {}
    for target in targets:
        name = target_name(target)
        if name in seen_names:
            raise ConfigurationError(
                f"Targets {seen_names[name]} and {target} both map to archive suffix {name!r}."
            )
        seen_names[name] = target

    tool_value = args.archive_tool or file_cfg.get("archive_tool") or DEFAULT_ARCHIVE_TOOL
    archive_tool = shlex.split(tool_value)
    if not archive_tool:
        raise ConfigurationError("archive_tool must not be empty.")

    options_value = (
        args.create_options
        if args.create_options is not None
        else file_cfg.get("create_options", "")
    )
    create_options = shlex.split(options_value)

    repository = args.repository or file_cfg.get("repository") or None

    lock_value = args.lock_path or file_cfg.get("lock_path")
    lock_path = Path(lock_value).expanduser() if lock_value else DEFAULT_LOCK_PATH

    if args.use_local_time is not None:
        use_local_time = args.use_local_time
    elif "use_local_time" in file_cfg:
        use_local_time = parse_bool(file_cfg["use_local_time"])
    else:
        use_local_time = False

    pre_hook = _hook_path(args.pre_hook, file_cfg.get("pre_hook"))
    post_hook = _hook_path(args.post_hook, file_cfg.get("post_hook"))

    keep_monthly = _keep_count(args.keep_monthly, file_cfg, "keep_monthly", DEFAULT_KEEP_MONTHLY)
    keep_daily = _keep_count(args.keep_daily, file_cfg, "keep_daily", DEFAULT_KEEP_DAILY)

    return RotationConfig(
        host=host,
        targets=targets,
        archive_tool=archive_tool,
        repository=repository,
        create_options=create_options,
        lock_path=lock_path,
        use_local_time=use_local_time,
        pre_hook=pre_hook,
        post_hook=post_hook,
        keep_monthly=keep_monthly,
        keep_daily=keep_daily,
        dry_run=args.dry_run,
    )


def _hook_path(cli_value: Optional[Path], file_value: Optional[str]) -> Optional[Path]:
    if cli_value is not None:
        return cli_value.expanduser()
    if file_value and file_value.strip():
        return Path(file_value.strip()).expanduser()
    return None


def _keep_count(
    cli_value: Optional[int], file_cfg: Dict[str, str], name: str, default: int
) -> int:
    if cli_value is not None:
        value = cli_value
    elif name in file_cfg:
        value = parse_int(file_cfg[name], name)
    else:
        value = default
    if value < 1:
        raise ConfigurationError(f"{name} must be a positive integer.")
    return value


def default_host() -> str:
    return socket.gethostname().split(".")[0]


def parse_list(value: str) -> List[str]:
    items: List[str] = []
    for line in value.splitlines():
        for part in line.split(","):
            part = part.strip()
            if part:
                items.append(part)
    return items


def parse_bool(value: str) -> bool:
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ConfigurationError(f"Invalid boolean value: {value}")


def parse_int(value: str, name: str) -> int:
    try:
        return int(value)
    except ValueError as error:
        raise ConfigurationError(f"{name} must be an integer.") from error


def configure_logging(log_level: str, *, syslog: bool = False) -> None:
    level = getattr(logging, log_level.upper(), None)
    if level is None:
        raise ValueError(f"Invalid log level: {log_level}")
    logging.basicConfig(level=level)
    if syslog:
        handler = logging.handlers.SysLogHandler(address=SYSLOG_ADDRESS)
        handler.setFormatter(
            logging.Formatter(f"{LOGGER_NAME}[%(process)d]: %(levelname)s %(message)s")
        )
        logging.getLogger(LOGGER_NAME).addHandler(handler)


def current_time(use_local_time: bool) -> datetime:
    if use_local_time:
        return datetime.now()
    return datetime.now(timezone.utc).replace(tzinfo=None)


def create_store(config: RotationConfig) -> ArchiveStore:
    return BorgStore(
        config.archive_tool,
        repository=config.repository,
        create_options=config.create_options,
    )


def check_hook(path: Path, *, stage: str) -> None:
    if not path.is_file() or not os.access(path, os.X_OK):
        raise HookScriptError(f"{stage} hook {path} is not an executable file.")


def run_hook(path: Path, *, stage: str, dry_run: bool = False) -> None:
    check_hook(path, stage=stage)

    if dry_run:
        log_event(logging.INFO, "hook_planned", stage=stage, hook=path)
        return

    log_event(logging.INFO, "hook_start", stage=stage, hook=path)
    started = time.monotonic()
    try:
        result = subprocess.run([str(path)], capture_output=True, text=True, check=False)
    except OSError as error:
        raise HookScriptError(f"{stage} hook {path} could not be run: {error}") from error

    duration = time.monotonic() - started
    if result.returncode != 0:
        stderr = (result.stderr or "").strip()
        raise HookScriptError(
            f"{stage} hook {path} exited with status {result.returncode}"
            + (f": {stderr}" if stderr else "")
        )
    log_event(logging.INFO, "hook_finish", stage=stage, hook=path, duration=duration)


def run_backups(
    store: ArchiveStore,
    targets: Iterable[str],
    *,
    tier: Tier,
    timestamp: datetime,
    host: str,
    dry_run: bool = False,
) -> List[TargetResult]:
    results: List[TargetResult] = []
    for directory in targets:
        archive_name = format_archive_name(host, tier, timestamp, directory)

        if dry_run:
            log_event(
                logging.INFO,
                "backup_planned",
                tier=tier,
                directory=directory,
                archive=archive_name,
            )
            results.append(TargetResult(directory, archive_name, ok=True, duration=0.0))
            continue

        log_event(logging.INFO, "backup_start", tier=tier, directory=directory, archive=archive_name)
        started = time.monotonic()
        try:
            store.create_archive(archive_name, directory)
        except StoreUnavailableError as error:
            duration = time.monotonic() - started
            log_event(
                logging.ERROR,
                "backup_error",
                tier=tier,
                directory=directory,
                archive=archive_name,
                duration=duration,
                error=str(error),
            )
            results.append(
                TargetResult(directory, archive_name, ok=False, duration=duration, error=str(error))
            )
            continue

        duration = time.monotonic() - started
        log_event(
            logging.INFO,
            "backup_finish",
            tier=tier,
            directory=directory,
            archive=archive_name,
            duration=duration,
        )
        results.append(TargetResult(directory, archive_name, ok=True, duration=duration))

    return results


def run_rotation(
    config: RotationConfig, store: ArchiveStore, *, now: Optional[datetime] = None
) -> int:
    try:
        with RunLock(config.lock_path):
            return _run_locked(config, store, now)
    except LockError as error:
        log_event(logging.ERROR, "lock_failed", lock=config.lock_path, error=str(error))
        return 1
    except StoreUnavailableError as error:
        log_event(logging.ERROR, "catalog_failed", error=str(error))
        return 1
    except HookScriptError as error:
        log_event(logging.ERROR, "hook_failed", error=str(error))
        return 1


def _run_locked(
    config: RotationConfig, store: ArchiveStore, now: Optional[datetime]
) -> int:
    run_started = time.monotonic()
    timestamp = now or current_time(config.use_local_time)

    if config.pre_hook is not None:
        check_hook(config.pre_hook, stage="pre_backup")
    if config.post_hook is not None:
        check_hook(config.post_hook, stage="post_backup")

    catalog = load_catalog(store)
    tier = select_tier(catalog, config.host, timestamp)
    context = RunContext(host=config.host, tier=tier, timestamp=timestamp, catalog=catalog)
    log_event(
        logging.INFO,
        "tier_selected",
        tier=tier,
        host=config.host,
        archives=len(catalog.archives),
        dry_run=config.dry_run or None,
    )

    if config.pre_hook is not None:
        run_hook(config.pre_hook, stage="pre_backup", dry_run=config.dry_run)

    context.results = run_backups(
        store,
        config.targets,
        tier=tier,
        timestamp=timestamp,
        host=config.host,
        dry_run=config.dry_run,
    )

    if config.post_hook is not None:
        run_hook(config.post_hook, stage="post_backup", dry_run=config.dry_run)

    if context.failed:
        log_event(
            logging.ERROR,
            "prune_skipped",
            tier=tier,
            reason="backup_failed",
            failed=",".join(context.failed_targets),
        )
        return 1

    context.catalog = load_catalog(store)
    if config.dry_run:
        context.catalog = context.catalog.including(r.archive_name for r in context.results)

    for prune_target, keep in ((Tier.MONTHLY, config.keep_monthly), (Tier.DAILY, config.keep_daily)):
        result = prune_tier(
            store,
            context.catalog,
            host=config.host,
            tier=prune_target,
            keep=keep,
            dry_run=config.dry_run,
        )
        context.deleted |= result.deleted

    log_event(
        logging.INFO,
        "run_complete",
        tier=tier,
        targets=len(context.results),
        deleted=len(context.deleted),
        duration=time.monotonic() - run_started,
    )
    return 0


@contextmanager
def interrupt_on_signals() -> Iterator[None]:
    def _raise_interrupt(signum, frame):
        raise RunInterrupted(signum)

    previous = {}
    for name in INTERRUPT_SIGNALS:
        signum = getattr(signal, name, None)
        if signum is None:
            continue
        previous[signum] = signal.signal(signum, _raise_interrupt)
    try:
        yield
    finally:
        for signum, handler in previous.items():
            signal.signal(signum, handler)


def main(argv: Optional[Iterable[str]] = None) -> int:
    args = parse_args(argv)
    try:
        configure_logging(args.log_level, syslog=args.syslog)
    except (ValueError, OSError) as error:
        logging.error("%s", error)
        return 1

    try:
        file_config: Optional[Dict[str, str]] = None
        if args.config:
            file_config = read_config_file(args.config)
        config = merge_config(args, file_config)
    except ConfigurationError as error:
        log_event(logging.ERROR, "config_invalid", error=str(error))
        return 1

    store = create_store(config)
    try:
        with interrupt_on_signals():
            return run_rotation(config, store)
    except RunInterrupted as error:
        log_event(logging.ERROR, "run_interrupted", signal=signal.Signals(error.signum).name)
        return 1


if __name__ == "__main__":
    sys.exit(main())

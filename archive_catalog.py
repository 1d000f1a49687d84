"""
Archive catalog, tier selection and retention pruning.

Archive names follow ``<host>-<tier>-<YYYY-MM-DD_HH:MM:SS>-<target>``. All
archives created by one run share the ``<host>-<tier>-<date>`` prefix and form
a batch; retention keeps or deletes whole batches.
"""
from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Iterable, List, Set

from archive_store import ArchiveStore, StoreUnavailableError
from run_events import log_event


ARCHIVE_TIMESTAMP_FORMAT = "%Y-%m-%d_%H:%M:%S"
BATCH_DATE_FORMAT = "%Y-%m-%d"

ARCHIVE_NAME_PATTERN = re.compile(
    r"^(?P<host>.+)-(?P<tier>yearly|monthly|daily)-"
    r"(?P<timestamp>\d{4}-\d{2}-\d{2}_\d{2}:\d{2}:\d{2})-"
    r"(?P<target>[^/]*)$"
)


class Tier(Enum):
    YEARLY = "yearly"
    MONTHLY = "monthly"
    DAILY = "daily"


DEFAULT_KEEP_MONTHLY = 12
DEFAULT_KEEP_DAILY = 31


class ArchiveNameError(ValueError):
    """Raised when an archive name does not follow the naming convention."""


@dataclass(frozen=True)
class ArchiveName:
    name: str
    host: str
    tier: Tier
    timestamp: datetime
    target: str

    @property
    def batch_prefix(self) -> str:
        return f"{self.host}-{self.tier.value}-{self.timestamp.strftime(BATCH_DATE_FORMAT)}"


def target_name(directory: str) -> str:
    return directory.replace("/", "")


def format_archive_name(host: str, tier: Tier, timestamp: datetime, directory: str) -> str:
    return (
        f"{host}-{tier.value}-{timestamp.strftime(ARCHIVE_TIMESTAMP_FORMAT)}-"
        f"{target_name(directory)}"
    )


def parse_archive_name(name: str) -> ArchiveName:
    match = ARCHIVE_NAME_PATTERN.match(name)
    if match is None:
        raise ArchiveNameError(f"Archive name {name!r} does not match the naming convention.")
    try:
        timestamp = datetime.strptime(match.group("timestamp"), ARCHIVE_TIMESTAMP_FORMAT)
    except ValueError as error:
        raise ArchiveNameError(f"Archive name {name!r} has an invalid timestamp.") from error
    return ArchiveName(
        name=name,
        host=match.group("host"),
        tier=Tier(match.group("tier")),
        timestamp=timestamp,
        target=match.group("target"),
    )


@dataclass
class Catalog:
    archives: List[ArchiveName] = field(default_factory=list)
    rejected: List[str] = field(default_factory=list)

    def names(self) -> List[str]:
        return [archive.name for archive in self.archives]

    def for_host_tier(self, host: str, tier: Tier) -> List[ArchiveName]:
        return [a for a in self.archives if a.host == host and a.tier == tier]

    def including(self, names: Iterable[str]) -> "Catalog":
        merged = build_catalog(self.names() + list(names))
        merged.rejected = sorted(set(self.rejected) | set(merged.rejected))
        return merged


def build_catalog(raw_names: Iterable[str]) -> Catalog:
    unique_names = sorted({name.strip() for name in raw_names if name.strip()})

    archives: List[ArchiveName] = []
    rejected: List[str] = []
    for name in unique_names:
        try:
            archives.append(parse_archive_name(name))
        except ArchiveNameError as error:
            log_event(logging.WARNING, "archive_name_rejected", archive=name, error=str(error))
            rejected.append(name)

    return Catalog(archives=archives, rejected=rejected)


def load_catalog(store: ArchiveStore) -> Catalog:
    started = time.monotonic()
    raw_names = store.list_archives()
    duration = time.monotonic() - started
    catalog = build_catalog(raw_names)
    log_event(
        logging.DEBUG,
        "catalog_loaded",
        archives=len(catalog.archives),
        rejected=len(catalog.rejected),
        duration=duration,
    )
    return catalog


def select_tier(catalog: Catalog, host: str, now: datetime) -> Tier:
    yearly_done = any(
        archive.timestamp.year == now.year
        for archive in catalog.for_host_tier(host, Tier.YEARLY)
    )
    if not yearly_done:
        return Tier.YEARLY

    monthly_done = any(
        (archive.timestamp.year, archive.timestamp.month) == (now.year, now.month)
        for archive in catalog.for_host_tier(host, Tier.MONTHLY)
    )
    if not monthly_done:
        return Tier.MONTHLY

    return Tier.DAILY


def determine_batches_to_delete(
    catalog: Catalog, host: str, tier: Tier, keep: int
) -> List[str]:
    if tier == Tier.YEARLY:
        raise ValueError("Yearly archives are never pruned.")
    if keep < 1:
        raise ValueError("keep must be a positive integer.")

    prefixes = sorted(
        {archive.batch_prefix for archive in catalog.for_host_tier(host, tier)},
        reverse=True,
    )
    return prefixes[keep:]


@dataclass
class PruneResult:
    tier: Tier
    batches: List[str] = field(default_factory=list)
    deleted: Set[str] = field(default_factory=set)
    failed: List[str] = field(default_factory=list)


def prune_tier(
    store: ArchiveStore,
    catalog: Catalog,
    *,
    host: str,
    tier: Tier,
    keep: int,
    dry_run: bool = False,
) -> PruneResult:
    result = PruneResult(tier=tier)
    result.batches = determine_batches_to_delete(catalog, host, tier, keep)

    if not result.batches:
        log_event(logging.INFO, "prune_noop", tier=tier, keep=keep)
        return result

    for prefix in result.batches:
        members = [a for a in catalog.archives if a.batch_prefix == prefix]
        log_event(logging.INFO, "prune_batch", tier=tier, batch=prefix, archives=len(members))
        for archive in members:
            if dry_run:
                log_event(logging.INFO, "prune_planned", tier=tier, archive=archive.name)
                continue
            started = time.monotonic()
            try:
                store.delete_archive(archive.name)
            except StoreUnavailableError as error:
                log_event(
                    logging.ERROR,
                    "prune_delete_error",
                    tier=tier,
                    archive=archive.name,
                    duration=time.monotonic() - started,
                    error=str(error),
                )
                result.failed.append(archive.name)
                continue
            log_event(
                logging.INFO,
                "prune_deleted",
                tier=tier,
                archive=archive.name,
                duration=time.monotonic() - started,
            )
            result.deleted.add(archive.name)

    return result

"""Backup files on disk for Cubby.

Snapshots produced by ``backup.export_snapshot`` are written as JSON files
named ``backup_YYYY-MM-DD_HH-MM-SS.json`` under the Home Assistant config
directory. Blocking file I/O runs in the executor; the sync helpers are
exported for tests.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path

from homeassistant.core import HomeAssistant
from homeassistant.exceptions import HomeAssistantError
from homeassistant.util.file import write_utf8_file

from .backup import dumps_snapshot, export_snapshot, import_snapshot
from .const import AUTO_BACKUP_MAX_AGE, BACKUP_DIRECTORY, DOMAIN
from .exceptions import SnapshotUnavailableError, ValidationError
from .repository import Repository

LOGGER = logging.getLogger(__name__)

BACKUP_PREFIX = "backup_"
BACKUP_SUFFIX = ".json"
BACKUP_TIME_FORMAT = "%Y-%m-%d_%H-%M-%S"


@dataclass(frozen=True)
class BackupFile:
    name: str
    created_at: datetime
    size: int


def backup_filename(moment: datetime) -> str:
    return f"{BACKUP_PREFIX}{moment.astimezone(UTC).strftime(BACKUP_TIME_FORMAT)}{BACKUP_SUFFIX}"


def parse_backup_filename(name: str) -> datetime | None:
    """Return the UTC timestamp encoded in a backup file name, or None."""

    if not (name.startswith(BACKUP_PREFIX) and name.endswith(BACKUP_SUFFIX)):
        return None
    stamp = name[len(BACKUP_PREFIX) : -len(BACKUP_SUFFIX)]
    try:
        return datetime.strptime(stamp, BACKUP_TIME_FORMAT).replace(tzinfo=UTC)
    except ValueError:
        return None


def _resolve(directory: Path, name: str) -> Path:
    # Only bare file names produced by backup_filename are accepted
    if parse_backup_filename(name) is None or os.path.basename(name) != name:
        raise ValidationError(f"not a backup file name: {name}")
    return directory / name


# -----------------------------
# Sync helpers (executor)
# -----------------------------


def write_backup_file(directory: Path, name: str, text: str) -> Path:
    path = _resolve(directory, name)
    try:
        directory.mkdir(parents=True, exist_ok=True)
        write_utf8_file(str(path), text)
    except (OSError, HomeAssistantError) as exc:
        raise SnapshotUnavailableError(f"could not write backup {name}") from exc
    return path


def list_backup_files(directory: Path) -> list[BackupFile]:
    """List backup files, newest first. A missing directory yields an empty list."""

    if not directory.is_dir():
        return []
    files: list[BackupFile] = []
    try:
        for entry in directory.iterdir():
            created = parse_backup_filename(entry.name)
            if created is None or not entry.is_file():
                continue
            files.append(BackupFile(name=entry.name, created_at=created, size=entry.stat().st_size))
    except OSError as exc:
        raise SnapshotUnavailableError("could not list backups") from exc
    files.sort(key=lambda f: f.created_at, reverse=True)
    return files


def read_backup_file(directory: Path, name: str) -> str:
    path = _resolve(directory, name)
    try:
        return path.read_text(encoding="utf-8")
    except FileNotFoundError as exc:
        raise SnapshotUnavailableError(f"backup {name} does not exist") from exc
    except (OSError, UnicodeDecodeError) as exc:
        raise SnapshotUnavailableError(f"could not read backup {name}") from exc


def delete_backup_file(directory: Path, name: str) -> None:
    path = _resolve(directory, name)
    try:
        path.unlink()
    except FileNotFoundError as exc:
        raise SnapshotUnavailableError(f"backup {name} does not exist") from exc
    except OSError as exc:
        raise SnapshotUnavailableError(f"could not delete backup {name}") from exc


def should_auto_backup(
    newest: datetime | None, now: datetime, *, max_age: timedelta = AUTO_BACKUP_MAX_AGE
) -> bool:
    """True when there is no backup yet or the newest one is older than ``max_age``."""

    if newest is None:
        return True
    return now - newest > max_age


# -----------------------------
# Async API
# -----------------------------


def backup_directory(hass: HomeAssistant) -> Path:
    return Path(hass.config.path(BACKUP_DIRECTORY))


async def async_create_backup(
    hass: HomeAssistant, repo: Repository, *, now: datetime | None = None
) -> BackupFile:
    """Export ``repo`` and write it to a new backup file."""

    moment = now or datetime.now(tz=UTC)
    text = dumps_snapshot(export_snapshot(repo, now=moment))
    name = backup_filename(moment)
    await hass.async_add_executor_job(write_backup_file, backup_directory(hass), name, text)
    LOGGER.info(
        "Backup written",
        extra={"domain": DOMAIN, "op": "create_backup", "backup": name, "bytes": len(text)},
    )
    return BackupFile(
        name=name,
        created_at=moment.astimezone(UTC).replace(microsecond=0),
        size=len(text.encode("utf-8")),
    )


async def async_list_backups(hass: HomeAssistant) -> list[BackupFile]:
    return await hass.async_add_executor_job(list_backup_files, backup_directory(hass))


async def async_restore_backup(hass: HomeAssistant, repo: Repository, name: str) -> dict[str, int]:
    """Replace ``repo`` with the contents of backup file ``name``."""

    text = await hass.async_add_executor_job(read_backup_file, backup_directory(hass), name)
    counts = import_snapshot(repo, text)
    LOGGER.info(
        "Backup file restored",
        extra={"domain": DOMAIN, "op": "restore_backup", "backup": name},
    )
    return counts


async def async_delete_backup(hass: HomeAssistant, name: str) -> None:
    await hass.async_add_executor_job(delete_backup_file, backup_directory(hass), name)


async def async_auto_backup_if_due(
    hass: HomeAssistant, repo: Repository, *, now: datetime | None = None
) -> BackupFile | None:
    """Write a backup when the newest one is older than AUTO_BACKUP_MAX_AGE."""

    moment = now or datetime.now(tz=UTC)
    existing = await async_list_backups(hass)
    newest = existing[0].created_at if existing else None
    if not should_auto_backup(newest, moment):
        LOGGER.debug(
            "Auto backup not due",
            extra={"domain": DOMAIN, "op": "auto_backup", "newest": str(newest)},
        )
        return None
    return await async_create_backup(hass, repo, now=moment)

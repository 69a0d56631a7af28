"""Persistent storage manager for Cubby.

Wraps Home Assistant's Store with schema-aware load/save and migrations.

The persisted payload is a backup snapshot (see ``backup.py``) plus a
``schema_version`` marker:
    {
        "schema_version": int,
        "version": int,
        "date": str | None,
        "locations": [...],
        "items": [...],
        "tags": [...],
        "reviewHistory": [...],
    }

The manager ensures first load initializes an empty dataset and applies
forward-only migrations when an older schema payload is encountered.
"""

from __future__ import annotations

import asyncio
import logging
import time
from copy import deepcopy
from typing import Any, Final

from homeassistant.core import HomeAssistant
from homeassistant.helpers.storage import Store

from . import migrations
from .backup import SNAPSHOT_VERSION, export_snapshot
from .const import DOMAIN
from .exceptions import StorageError

_LOGGER = logging.getLogger(__name__)

# Persisted payloads share the backup snapshot version
CURRENT_SCHEMA_VERSION: Final[int] = SNAPSHOT_VERSION

STORAGE_KEY: Final[str] = "cubby_store"

# Home Assistant Store envelope version; payload migrations use schema_version
STORAGE_VERSION: Final[int] = 1

# Debounce delay for persistence operations (seconds)
PERSIST_DEBOUNCE_DELAY: Final[float] = 1.0

_COLLECTIONS: Final[tuple[str, ...]] = ("locations", "items", "tags", "reviewHistory")


def _empty_payload() -> dict[str, Any]:
    """Create a new empty payload matching the current schema."""

    payload: dict[str, Any] = {
        "schema_version": CURRENT_SCHEMA_VERSION,
        "version": CURRENT_SCHEMA_VERSION,
        "date": None,
    }
    for key in _COLLECTIONS:
        payload[key] = []
    return payload


def _payload_version(raw: dict[str, Any]) -> int:
    try:
        return int(raw.get("schema_version", raw.get("version", 0)))
    except (TypeError, ValueError) as exc:
        raise StorageError("storage payload has a non-integer schema_version") from exc


def _get_persist_lock(hass: HomeAssistant) -> asyncio.Lock:
    """Get or create the persistence lock for this hass instance."""
    bucket = hass.data.setdefault(DOMAIN, {})
    if "persist_lock" not in bucket:
        bucket["persist_lock"] = asyncio.Lock()
    return bucket["persist_lock"]


class DomainStore:
    """Schema-aware wrapper around Home Assistant's Store for Cubby.

    Exposed via ``hass.data[DOMAIN]["store"]``.
    """

    def __init__(
        self, hass: HomeAssistant, *, key: str = STORAGE_KEY, version: int = CURRENT_SCHEMA_VERSION
    ) -> None:
        self._hass = hass
        self._key = key
        self._store: Store[dict[str, Any]] = Store(hass, STORAGE_VERSION, key)
        self._schema_version = version

    @property
    def schema_version(self) -> int:
        return self._schema_version

    @property
    def key(self) -> str:
        return self._key

    async def async_load(self) -> dict[str, Any]:
        """Load the persisted dataset, applying migrations if needed.

        Returns a copy so callers cannot mutate the Store's cached object.
        """

        raw = await self._store.async_load()
        if raw is None:
            return _empty_payload()

        migrated = await self.async_migrate_if_needed(raw)
        return deepcopy(migrated)

    async def async_save(self, data: dict[str, Any]) -> None:
        """Persist the dataset ensuring schema_version is up-to-date."""

        payload = deepcopy(data) if isinstance(data, dict) else {}
        payload["schema_version"] = self._schema_version
        for key in _COLLECTIONS:
            payload.setdefault(key, [])
        await self._store.async_save(payload)

    async def async_migrate_if_needed(self, raw: dict[str, Any]) -> dict[str, Any]:
        """Migrate ``raw`` payload to the current schema iff needed.

        If a migration occurs, persist the migrated payload back to storage.
        """

        if not isinstance(raw, dict):
            _LOGGER.error(
                "Corrupted storage payload: expected dict, got %s",
                type(raw).__name__,
                extra={
                    "domain": DOMAIN,
                    "op": "migrate",
                    "from_version": None,
                    "to_version": self._schema_version,
                    "storage_key": self.key,
                },
            )
            raise StorageError("corrupted storage payload: not a dict")

        from_version = _payload_version(raw)
        to_version = self._schema_version
        if from_version > to_version:
            raise StorageError(
                f"storage schema_version {from_version} is newer than supported {to_version}"
            )
        if from_version == to_version:
            normalized = _empty_payload()
            normalized.update(raw)
            return normalized

        try:
            migrated = migrations.migrate(raw, from_version=from_version, to_version=to_version)
        except (KeyError, TypeError, ValueError, AttributeError) as exc:
            # On-disk payload stays untouched
            _LOGGER.error(
                "Storage migration failed",
                extra={
                    "domain": DOMAIN,
                    "op": "migrate",
                    "from_version": from_version,
                    "to_version": to_version,
                    "storage_key": self.key,
                },
                exc_info=True,
            )
            raise StorageError("storage migration failed") from exc
        migrated["schema_version"] = to_version

        _LOGGER.info(
            "Storage migrated",
            extra={
                "domain": DOMAIN,
                "op": "migrate",
                "from_version": from_version,
                "to_version": to_version,
                "storage_key": self.key,
            },
        )
        await self._store.async_save(migrated)
        return migrated


async def async_persist_repo(hass: HomeAssistant) -> None:
    """Persist the current repository state via DomainStore with exclusive locking.

    Fails fast with StorageError if setup has not populated the store or the
    repository, so changes are never silently dropped.
    """

    lock = _get_persist_lock(hass)
    async with lock:
        bucket = hass.data.get(DOMAIN) or {}
        store = bucket.get("store")
        repo = bucket.get("repository")
        if store is None:
            raise StorageError("storage manager not initialized; run integration setup")
        if repo is None:
            raise StorageError("repository not initialized; run integration setup")

        start_time = time.monotonic()
        generation = repo.generation
        _LOGGER.debug(
            "Persisting repository state",
            extra={"domain": DOMAIN, "op": "persist_start", "generation": generation},
        )

        payload = export_snapshot(repo)
        try:
            await store.async_save(payload)
        except (OSError, TypeError, ValueError) as exc:
            elapsed = time.monotonic() - start_time
            _LOGGER.error(
                "Failed to persist repository",
                extra={
                    "domain": DOMAIN,
                    "op": "persist_failed",
                    "generation": generation,
                    "elapsed_ms": int(elapsed * 1000),
                },
                exc_info=True,
            )
            raise StorageError("failed to persist repository") from exc

        elapsed = time.monotonic() - start_time
        bucket["persisted_generation"] = generation
        _LOGGER.debug(
            "Repository persisted successfully",
            extra={
                "domain": DOMAIN,
                "op": "persist_complete",
                "generation": generation,
                "elapsed_ms": int(elapsed * 1000),
            },
        )


def _cancel_pending_persist(bucket: dict[str, Any], *, reason: str) -> None:
    task: asyncio.Task | None = bucket.pop("persist_task", None)
    if task is not None and not task.done():
        task.cancel()
        _LOGGER.debug(
            "Cancelled pending persist task",
            extra={"domain": DOMAIN, "op": "persist_cancel", "reason": reason},
        )


async def async_request_persist(hass: HomeAssistant) -> None:
    """Schedule a persist after PERSIST_DEBOUNCE_DELAY.

    A newer request replaces a pending one, so a burst of changes ends in a
    single write.
    """

    bucket = hass.data.setdefault(DOMAIN, {})
    _cancel_pending_persist(bucket, reason="debounce")

    async def _delayed_persist() -> None:
        try:
            await asyncio.sleep(PERSIST_DEBOUNCE_DELAY)
            await async_persist_repo(hass)
        except asyncio.CancelledError:
            _LOGGER.debug(
                "Debounced persist superseded",
                extra={"domain": DOMAIN, "op": "persist_debounce"},
            )
        except StorageError:
            _LOGGER.error(
                "Debounced persist failed",
                extra={"domain": DOMAIN, "op": "persist_debounce"},
                exc_info=True,
            )

    bucket["persist_task"] = asyncio.create_task(_delayed_persist())


async def async_persist_immediate(hass: HomeAssistant) -> None:
    """Persist now, dropping any pending debounced write.

    Used on unload and after a backup restore so storage matches memory.
    """

    _cancel_pending_persist(hass.data.setdefault(DOMAIN, {}), reason="immediate")
    await async_persist_repo(hass)

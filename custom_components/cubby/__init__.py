"""Cubby integration bootstrap.

This module initializes the integration, prepares persistent storage, builds
the repository from the stored snapshot, registers services and WebSocket
commands, and schedules the hourly review sweep and optional auto-backup.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from homeassistant.config_entries import ConfigEntry
from homeassistant.core import HomeAssistant
from homeassistant.exceptions import ConfigEntryNotReady
from homeassistant.helpers import config_validation as cv
from homeassistant.helpers.event import async_track_time_interval

from . import backups, review
from . import services as services_mod
from . import ws as ws_mod
from .backup import repository_from_snapshot
from .const import (
    CONF_AUTO_BACKUP,
    CONF_REVIEW_EXPIRATION_DAYS,
    DEFAULT_AUTO_BACKUP,
    DEFAULT_REVIEW_EXPIRATION_DAYS,
    DOMAIN,
    REVIEW_SWEEP_INTERVAL,
)
from .exceptions import StorageError
from .repository import Repository
from .storage import DomainStore, async_persist_immediate, async_request_persist

LOGGER = logging.getLogger(__name__)


# This integration is config-entry only; no YAML configuration is accepted.
CONFIG_SCHEMA = cv.config_entry_only_config_schema(DOMAIN)


async def async_setup(hass: HomeAssistant, _config: dict) -> bool:
    """Set up the Cubby domain at Home Assistant startup.

    Initializes an empty domain bucket in hass.data with no side effects.
    """
    hass.data.setdefault(DOMAIN, {})
    return True


async def async_setup_entry(hass: HomeAssistant, entry: ConfigEntry) -> bool:
    """Set up Cubby from a config entry."""
    bucket = hass.data.setdefault(DOMAIN, {})

    store = DomainStore(hass)
    bucket["store"] = store

    try:
        payload = await store.async_load()
        repo = repository_from_snapshot(payload)
    except StorageError as exc:
        LOGGER.error(
            "Storage validation failed during setup",
            extra={"domain": DOMAIN, "op": "setup_storage", "schema_version": store.schema_version},
            exc_info=True,
        )
        bucket.pop("store", None)
        raise ConfigEntryNotReady("storage validation failed") from exc
    _log_storage_health(repo, schema_version=store.schema_version)

    bucket["repository"] = repo
    bucket[CONF_REVIEW_EXPIRATION_DAYS] = int(
        entry.options.get(CONF_REVIEW_EXPIRATION_DAYS, DEFAULT_REVIEW_EXPIRATION_DAYS)
    )
    bucket[CONF_AUTO_BACKUP] = bool(entry.options.get(CONF_AUTO_BACKUP, DEFAULT_AUTO_BACKUP))

    # Register services
    services_mod.setup(hass)

    # Register WebSocket commands
    ws_mod.setup(hass)

    # Catch up on reviews that expired while Home Assistant was down
    await _async_run_periodic(hass)

    async def _async_tick(now: datetime) -> None:
        await _async_run_periodic(hass, now)

    entry.async_on_unload(async_track_time_interval(hass, _async_tick, REVIEW_SWEEP_INTERVAL))
    entry.async_on_unload(entry.add_update_listener(_async_options_updated))

    return True


async def async_unload_entry(hass: HomeAssistant, entry: ConfigEntry) -> bool:
    """Unload a config entry.

    Persists pending changes, removes services and drops the repository.
    Timers registered with ``entry.async_on_unload`` are cancelled by Home
    Assistant.
    """

    bucket = hass.data.get(DOMAIN) or {}

    # Ensure any pending changes are persisted before unload
    try:
        await async_persist_immediate(hass)
    except StorageError:
        LOGGER.warning(
            "Failed to persist during unload",
            extra={"domain": DOMAIN, "op": "unload"},
            exc_info=True,
        )

    services_mod.unload(hass)

    for key in ("repository", "store", "persist_task", CONF_REVIEW_EXPIRATION_DAYS, CONF_AUTO_BACKUP):
        bucket.pop(key, None)

    return True


async def _async_options_updated(hass: HomeAssistant, entry: ConfigEntry) -> None:
    LOGGER.debug(
        "Options changed; reloading entry",
        extra={"domain": DOMAIN, "op": "options_updated", **dict(entry.options)},
    )
    await hass.config_entries.async_reload(entry.entry_id)


async def _async_run_periodic(hass: HomeAssistant, now: datetime | None = None) -> None:
    """Run the review expiry sweep and, when enabled, the auto-backup check."""

    bucket = hass.data.get(DOMAIN) or {}
    repo: Repository | None = bucket.get("repository")
    if repo is None:
        return
    moment = now or datetime.now(tz=UTC)

    expired = review.sweep_expired(
        repo,
        now=moment,
        threshold_days=bucket.get(CONF_REVIEW_EXPIRATION_DAYS, DEFAULT_REVIEW_EXPIRATION_DAYS),
    )
    if expired:
        LOGGER.info(
            "Review sweep cleared expired locations",
            extra={"domain": DOMAIN, "op": "review_sweep", "expired_count": len(expired)},
        )
        await async_request_persist(hass)

    if bucket.get(CONF_AUTO_BACKUP):
        try:
            await backups.async_auto_backup_if_due(hass, repo, now=moment)
        except StorageError:
            LOGGER.error(
                "Auto backup failed",
                extra={"domain": DOMAIN, "op": "auto_backup"},
                exc_info=True,
            )


def _log_storage_health(repo: Repository, *, schema_version: int) -> None:
    """Log storage health summary after load."""

    counts: dict[str, Any] = repo.get_counts()
    empty = counts["locations_total"] == 0 and counts["items_total"] == 0

    level = logging.WARNING if empty else logging.DEBUG
    LOGGER.log(
        level,
        "Storage health: schema_version=%s locations=%s items=%s tags=%s",
        schema_version,
        counts["locations_total"],
        counts["items_total"],
        counts["tags_total"],
        extra={
            "domain": DOMAIN,
            "op": "setup_storage_health",
            "schema_version": schema_version,
            **counts,
        },
    )

"""Service registration and handlers for Cubby.

Exposes Home Assistant services under the ``cubby`` domain to mutate the
inventory: locations, items, tags, moves, review state and backups. Input is
validated with voluptuous and operations are delegated to the ``Repository``
owned by the config entry, the move engine, the review ledger and the backup
file manager.

Errors from the domain layer (validation, depth, cycles, not found, conflicts,
storage) are logged with contextual fields and do not raise stack traces.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any

import voluptuous as vol
from homeassistant.core import HomeAssistant, ServiceCall

from . import backups, placement, review
from .const import CONF_REVIEW_EXPIRATION_DAYS, DEFAULT_REVIEW_EXPIRATION_DAYS, DOMAIN
from .exceptions import ConflictError, CubbyError, StorageError
from .models import ItemBatchResult, ItemPlan
from .repository import Repository
from .storage import async_persist_immediate, async_persist_repo

LOGGER = logging.getLogger(__name__)


# -----------------------------
# Validation schemas
# -----------------------------

_ID = vol.All(vol.Coerce(str), vol.Length(min=1))
_OPTIONAL_ID = vol.Any(None, _ID)
_PLAN = vol.Any(None, vol.In([p.value for p in ItemPlan] + [p.name.lower() for p in ItemPlan]))

SCHEMA_LOCATION_CREATE = vol.Schema(
    {vol.Required("name"): str, vol.Optional("parent_id"): _OPTIONAL_ID}
)

SCHEMA_LOCATION_RENAME = vol.Schema({vol.Required("location_id"): _ID, vol.Required("name"): str})

SCHEMA_LOCATION_DELETE = vol.Schema({vol.Required("location_id"): _ID})

SCHEMA_LOCATION_MOVE = vol.Schema(
    {vol.Required("location_id"): _ID, vol.Required("destination_id"): _ID}
)

# Either ``name`` or both book fields; the repository enforces the pairing
SCHEMA_ITEM_CREATE = vol.Schema(
    {
        vol.Optional("name"): str,
        vol.Optional("location_id"): _OPTIONAL_ID,
        vol.Optional("book_title"): str,
        vol.Optional("book_author"): str,
        vol.Optional("tag_ids", default=list): [_ID],
        vol.Optional("plan"): _PLAN,
        vol.Optional("move_destination"): vol.Any(None, str),
    }
)

SCHEMA_ITEM_RENAME = vol.Schema({vol.Required("item_id"): _ID, vol.Required("name"): str})

SCHEMA_ITEM_SET_BOOK = vol.Schema(
    {
        vol.Required("item_id"): _ID,
        vol.Required("book_title"): str,
        vol.Required("book_author"): str,
    }
)

SCHEMA_ITEM_CLEAR_BOOK = vol.Schema({vol.Required("item_id"): _ID, vol.Required("name"): str})

SCHEMA_ITEM_DELETE = vol.Schema({vol.Required("item_id"): _ID})

SCHEMA_ITEM_MOVE = vol.Schema(
    {vol.Required("item_id"): _ID, vol.Optional("destination_id"): _OPTIONAL_ID}
)

SCHEMA_ITEM_RETAG = vol.Schema({vol.Required("item_id"): _ID, vol.Required("tag_ids"): [_ID]})

SCHEMA_ITEM_SET_PLAN = vol.Schema(
    {
        vol.Required("item_id"): _ID,
        vol.Optional("plan"): _PLAN,
        vol.Optional("move_destination"): vol.Any(None, str),
    }
)

SCHEMA_MOVE_BATCH = vol.Schema(
    {
        vol.Optional("destination_id"): _OPTIONAL_ID,
        vol.Optional("item_ids", default=list): [_ID],
        vol.Optional("location_ids", default=list): [_ID],
    }
)

_ITEM_IDS = vol.All([_ID], vol.Length(min=1))

SCHEMA_ITEM_BATCH_RETAG = vol.Schema(
    {vol.Required("item_ids"): _ITEM_IDS, vol.Required("tag_ids"): [_ID]}
)

SCHEMA_ITEM_BATCH_SET_PLAN = vol.Schema(
    {
        vol.Required("item_ids"): _ITEM_IDS,
        vol.Required("plan"): _PLAN,
        vol.Optional("move_destination"): vol.Any(None, str),
    }
)

SCHEMA_ITEM_BATCH = vol.Schema({vol.Required("item_ids"): _ITEM_IDS})

SCHEMA_TAG_CREATE = vol.Schema({vol.Required("name"): str, vol.Optional("color"): str})

SCHEMA_TAG_RENAME = vol.Schema({vol.Required("tag_id"): _ID, vol.Required("name"): str})

SCHEMA_TAG_DELETE = vol.Schema({vol.Required("tag_id"): _ID})

SCHEMA_REVIEW_TOGGLE = vol.Schema({vol.Required("location_id"): _ID})

SCHEMA_REVIEW_SWEEP = vol.Schema({})

SCHEMA_BACKUP_CREATE = vol.Schema({})

SCHEMA_BACKUP_FILE = vol.Schema({vol.Required("name"): str})


# -----------------------------
# Internal helpers
# -----------------------------


def _get_repo(hass: HomeAssistant) -> Repository:
    bucket = hass.data.get(DOMAIN) or {}
    repo = bucket.get("repository")
    if repo is None:
        raise StorageError("repository not initialized; run integration setup")
    return repo  # type: ignore[return-value]


def _review_threshold(hass: HomeAssistant) -> int:
    bucket = hass.data.get(DOMAIN) or {}
    return int(bucket.get(CONF_REVIEW_EXPIRATION_DAYS, DEFAULT_REVIEW_EXPIRATION_DAYS))


def _log_domain_error(op: str, context: dict[str, Any], exc: Exception) -> None:
    level = logging.WARNING
    if isinstance(exc, ConflictError | StorageError):
        level = logging.ERROR
    LOGGER.log(level, str(exc), extra={"domain": DOMAIN, "op": op, **context})


async def _finish_item_batch(hass: HomeAssistant, op: str, result: ItemBatchResult) -> None:
    for item_id, exc in result.skipped.items():
        _log_domain_error(op, {"item_id": item_id}, exc)
    if result.applied:
        await _persist_repo(hass)


async def _persist_repo(hass: HomeAssistant) -> None:
    try:
        await async_persist_repo(hass)
    except StorageError:
        LOGGER.error(
            "Failed to persist repository",
            exc_info=True,
            extra={"domain": DOMAIN, "op": "persist_repo"},
        )


# -----------------------------
# Service handlers (exported for tests)
# -----------------------------


async def service_location_create(hass: HomeAssistant, data: dict) -> None:
    op = "location_create"
    try:
        payload = SCHEMA_LOCATION_CREATE(data)
        loc = _get_repo(hass).create_location(
            name=payload["name"], parent_id=payload.get("parent_id")
        )
        LOGGER.debug(
            "Service location_create created location",
            extra={"domain": DOMAIN, "op": op, "location_id": str(loc.id)},
        )
        await _persist_repo(hass)
    except CubbyError as exc:
        _log_domain_error(
            op, {"location_name": data.get("name"), "parent_id": data.get("parent_id")}, exc
        )


async def service_location_rename(hass: HomeAssistant, data: dict) -> None:
    op = "location_rename"
    try:
        payload = SCHEMA_LOCATION_RENAME(data)
        _get_repo(hass).rename_location(payload["location_id"], payload["name"])
        await _persist_repo(hass)
    except CubbyError as exc:
        _log_domain_error(op, {"location_id": data.get("location_id")}, exc)


async def service_location_delete(hass: HomeAssistant, data: dict) -> None:
    op = "location_delete"
    try:
        payload = SCHEMA_LOCATION_DELETE(data)
        _get_repo(hass).delete_location(payload["location_id"])
        await _persist_repo(hass)
    except CubbyError as exc:
        _log_domain_error(op, {"location_id": data.get("location_id")}, exc)


async def service_location_move(hass: HomeAssistant, data: dict) -> None:
    op = "location_move"
    try:
        payload = SCHEMA_LOCATION_MOVE(data)
        placement.move_location(_get_repo(hass), payload["location_id"], payload["destination_id"])
        await _persist_repo(hass)
    except CubbyError as exc:
        _log_domain_error(
            op,
            {"location_id": data.get("location_id"), "destination_id": data.get("destination_id")},
            exc,
        )


async def service_item_create(hass: HomeAssistant, data: dict) -> None:
    op = "item_create"
    try:
        payload = SCHEMA_ITEM_CREATE(data)
        item = _get_repo(hass).create_item(
            name=payload.get("name"),
            location_id=payload.get("location_id"),
            book_title=payload.get("book_title"),
            book_author=payload.get("book_author"),
            tag_ids=payload["tag_ids"],
            plan=payload.get("plan"),
            move_destination=payload.get("move_destination"),
        )
        LOGGER.debug(
            "Service item_create created item",
            extra={"domain": DOMAIN, "op": op, "item_id": str(item.id)},
        )
        await _persist_repo(hass)
    except CubbyError as exc:
        _log_domain_error(op, {"item_name": data.get("name")}, exc)


async def service_item_rename(hass: HomeAssistant, data: dict) -> None:
    op = "item_rename"
    try:
        payload = SCHEMA_ITEM_RENAME(data)
        _get_repo(hass).rename_item(payload["item_id"], payload["name"])
        await _persist_repo(hass)
    except CubbyError as exc:
        _log_domain_error(op, {"item_id": data.get("item_id")}, exc)


async def service_item_set_book(hass: HomeAssistant, data: dict) -> None:
    op = "item_set_book"
    try:
        payload = SCHEMA_ITEM_SET_BOOK(data)
        _get_repo(hass).set_book_info(
            payload["item_id"], payload["book_title"], payload["book_author"]
        )
        await _persist_repo(hass)
    except CubbyError as exc:
        _log_domain_error(op, {"item_id": data.get("item_id")}, exc)


async def service_item_clear_book(hass: HomeAssistant, data: dict) -> None:
    op = "item_clear_book"
    try:
        payload = SCHEMA_ITEM_CLEAR_BOOK(data)
        _get_repo(hass).clear_book_info(payload["item_id"], payload["name"])
        await _persist_repo(hass)
    except CubbyError as exc:
        _log_domain_error(op, {"item_id": data.get("item_id")}, exc)


async def service_item_delete(hass: HomeAssistant, data: dict) -> None:
    op = "item_delete"
    try:
        payload = SCHEMA_ITEM_DELETE(data)
        _get_repo(hass).delete_item(payload["item_id"])
        await _persist_repo(hass)
    except CubbyError as exc:
        _log_domain_error(op, {"item_id": data.get("item_id")}, exc)


async def service_item_move(hass: HomeAssistant, data: dict) -> None:
    op = "item_move"
    try:
        payload = SCHEMA_ITEM_MOVE(data)
        placement.move_item(_get_repo(hass), payload["item_id"], payload.get("destination_id"))
        await _persist_repo(hass)
    except CubbyError as exc:
        _log_domain_error(
            op, {"item_id": data.get("item_id"), "destination_id": data.get("destination_id")}, exc
        )


async def service_item_retag(hass: HomeAssistant, data: dict) -> None:
    op = "item_retag"
    try:
        payload = SCHEMA_ITEM_RETAG(data)
        _get_repo(hass).retag_item(payload["item_id"], payload["tag_ids"])
        await _persist_repo(hass)
    except CubbyError as exc:
        _log_domain_error(op, {"item_id": data.get("item_id")}, exc)


async def service_item_set_plan(hass: HomeAssistant, data: dict) -> None:
    op = "item_set_plan"
    try:
        payload = SCHEMA_ITEM_SET_PLAN(data)
        _get_repo(hass).assign_plan(
            payload["item_id"],
            payload.get("plan"),
            move_destination=payload.get("move_destination"),
        )
        await _persist_repo(hass)
    except CubbyError as exc:
        _log_domain_error(op, {"item_id": data.get("item_id"), "plan": data.get("plan")}, exc)


async def service_item_batch_retag(hass: HomeAssistant, data: dict) -> None:
    op = "item_batch_retag"
    try:
        payload = SCHEMA_ITEM_BATCH_RETAG(data)
        result = _get_repo(hass).retag_items(payload["item_ids"], payload["tag_ids"])
        await _finish_item_batch(hass, op, result)
    except CubbyError as exc:
        _log_domain_error(op, {"tag_ids": data.get("tag_ids")}, exc)


async def service_item_batch_set_plan(hass: HomeAssistant, data: dict) -> None:
    op = "item_batch_set_plan"
    try:
        payload = SCHEMA_ITEM_BATCH_SET_PLAN(data)
        result = _get_repo(hass).assign_plan_to_items(
            payload["item_ids"],
            payload["plan"],
            move_destination=payload.get("move_destination"),
        )
        await _finish_item_batch(hass, op, result)
    except CubbyError as exc:
        _log_domain_error(op, {"plan": data.get("plan")}, exc)


async def service_item_batch_clear_plan(hass: HomeAssistant, data: dict) -> None:
    op = "item_batch_clear_plan"
    try:
        payload = SCHEMA_ITEM_BATCH(data)
        result = _get_repo(hass).clear_plan_for_items(payload["item_ids"])
        await _finish_item_batch(hass, op, result)
    except CubbyError as exc:
        _log_domain_error(op, {}, exc)


async def service_item_batch_delete(hass: HomeAssistant, data: dict) -> None:
    op = "item_batch_delete"
    try:
        payload = SCHEMA_ITEM_BATCH(data)
        result = _get_repo(hass).delete_items(payload["item_ids"])
        await _finish_item_batch(hass, op, result)
    except CubbyError as exc:
        _log_domain_error(op, {}, exc)


async def service_move_batch(hass: HomeAssistant, data: dict) -> None:
    op = "move_batch"
    try:
        payload = SCHEMA_MOVE_BATCH(data)
        result = placement.move_batch(
            _get_repo(hass),
            payload.get("destination_id"),
            item_ids=payload["item_ids"],
            location_ids=payload["location_ids"],
        )
        for target_id, exc in result.skipped.items():
            _log_domain_error(op, {"target_id": target_id}, exc)
        if result.moved_items or result.moved_locations:
            await _persist_repo(hass)
    except CubbyError as exc:
        _log_domain_error(op, {"destination_id": data.get("destination_id")}, exc)


async def service_tag_create(hass: HomeAssistant, data: dict) -> None:
    op = "tag_create"
    try:
        payload = SCHEMA_TAG_CREATE(data)
        repo = _get_repo(hass)
        if "color" in payload:
            repo.create_tag(payload["name"], color=payload["color"])
        else:
            repo.create_tag(payload["name"])
        await _persist_repo(hass)
    except CubbyError as exc:
        _log_domain_error(op, {"tag_name": data.get("name")}, exc)


async def service_tag_rename(hass: HomeAssistant, data: dict) -> None:
    op = "tag_rename"
    try:
        payload = SCHEMA_TAG_RENAME(data)
        _get_repo(hass).rename_tag(payload["tag_id"], payload["name"])
        await _persist_repo(hass)
    except CubbyError as exc:
        _log_domain_error(op, {"tag_id": data.get("tag_id")}, exc)


async def service_tag_delete(hass: HomeAssistant, data: dict) -> None:
    op = "tag_delete"
    try:
        payload = SCHEMA_TAG_DELETE(data)
        _get_repo(hass).delete_tag(payload["tag_id"])
        await _persist_repo(hass)
    except CubbyError as exc:
        _log_domain_error(op, {"tag_id": data.get("tag_id")}, exc)


async def service_review_toggle(hass: HomeAssistant, data: dict) -> None:
    op = "review_toggle"
    try:
        payload = SCHEMA_REVIEW_TOGGLE(data)
        review.toggle_review(_get_repo(hass), payload["location_id"])
        await _persist_repo(hass)
    except CubbyError as exc:
        _log_domain_error(op, {"location_id": data.get("location_id")}, exc)


async def service_review_sweep(hass: HomeAssistant, data: dict) -> None:
    op = "review_sweep"
    try:
        SCHEMA_REVIEW_SWEEP(data)
        entries = review.sweep_expired(
            _get_repo(hass), now=datetime.now(tz=UTC), threshold_days=_review_threshold(hass)
        )
        if entries:
            await _persist_repo(hass)
    except CubbyError as exc:
        _log_domain_error(op, {}, exc)


async def service_backup_create(hass: HomeAssistant, data: dict) -> None:
    op = "backup_create"
    try:
        SCHEMA_BACKUP_CREATE(data)
        await backups.async_create_backup(hass, _get_repo(hass))
    except CubbyError as exc:
        _log_domain_error(op, {}, exc)


async def service_backup_restore(hass: HomeAssistant, data: dict) -> None:
    op = "backup_restore"
    try:
        payload = SCHEMA_BACKUP_FILE(data)
        await backups.async_restore_backup(hass, _get_repo(hass), payload["name"])
        await async_persist_immediate(hass)
    except CubbyError as exc:
        _log_domain_error(op, {"backup": data.get("name")}, exc)


async def service_backup_delete(hass: HomeAssistant, data: dict) -> None:
    op = "backup_delete"
    try:
        payload = SCHEMA_BACKUP_FILE(data)
        await backups.async_delete_backup(hass, payload["name"])
    except CubbyError as exc:
        _log_domain_error(op, {"backup": data.get("name")}, exc)


# -----------------------------
# Registration
# -----------------------------

_ServiceHandler = Callable[[HomeAssistant, dict], Awaitable[None]]

SERVICES: dict[str, tuple[_ServiceHandler, vol.Schema]] = {
    "location_create": (service_location_create, SCHEMA_LOCATION_CREATE),
    "location_rename": (service_location_rename, SCHEMA_LOCATION_RENAME),
    "location_delete": (service_location_delete, SCHEMA_LOCATION_DELETE),
    "location_move": (service_location_move, SCHEMA_LOCATION_MOVE),
    "item_create": (service_item_create, SCHEMA_ITEM_CREATE),
    "item_rename": (service_item_rename, SCHEMA_ITEM_RENAME),
    "item_set_book": (service_item_set_book, SCHEMA_ITEM_SET_BOOK),
    "item_clear_book": (service_item_clear_book, SCHEMA_ITEM_CLEAR_BOOK),
    "item_delete": (service_item_delete, SCHEMA_ITEM_DELETE),
    "item_move": (service_item_move, SCHEMA_ITEM_MOVE),
    "item_retag": (service_item_retag, SCHEMA_ITEM_RETAG),
    "item_set_plan": (service_item_set_plan, SCHEMA_ITEM_SET_PLAN),
    "item_batch_retag": (service_item_batch_retag, SCHEMA_ITEM_BATCH_RETAG),
    "item_batch_set_plan": (service_item_batch_set_plan, SCHEMA_ITEM_BATCH_SET_PLAN),
    "item_batch_clear_plan": (service_item_batch_clear_plan, SCHEMA_ITEM_BATCH),
    "item_batch_delete": (service_item_batch_delete, SCHEMA_ITEM_BATCH),
    "move_batch": (service_move_batch, SCHEMA_MOVE_BATCH),
    "tag_create": (service_tag_create, SCHEMA_TAG_CREATE),
    "tag_rename": (service_tag_rename, SCHEMA_TAG_RENAME),
    "tag_delete": (service_tag_delete, SCHEMA_TAG_DELETE),
    "review_toggle": (service_review_toggle, SCHEMA_REVIEW_TOGGLE),
    "review_sweep": (service_review_sweep, SCHEMA_REVIEW_SWEEP),
    "backup_create": (service_backup_create, SCHEMA_BACKUP_CREATE),
    "backup_restore": (service_backup_restore, SCHEMA_BACKUP_FILE),
    "backup_delete": (service_backup_delete, SCHEMA_BACKUP_FILE),
}


def _make_service_callback(
    hass: HomeAssistant, handler: _ServiceHandler
) -> Callable[[ServiceCall], Awaitable[None]]:
    async def _handle(call: ServiceCall) -> None:
        await handler(hass, dict(call.data))

    return _handle


def setup(hass: HomeAssistant) -> None:
    """Register cubby.* services on Home Assistant."""

    # Idempotent: avoid duplicate registration across reloads
    bucket = hass.data.setdefault(DOMAIN, {})
    if bucket.get("services_registered"):
        return

    # Home Assistant validates inputs against these schemas before invoking
    # the handler. Handlers are exported above for testability.
    for name, (handler, schema) in SERVICES.items():
        hass.services.async_register(DOMAIN, name, _make_service_callback(hass, handler), schema)

    bucket["services_registered"] = True


def unload(hass: HomeAssistant) -> None:
    """Remove cubby.* services."""

    bucket = hass.data.get(DOMAIN) or {}
    for name in SERVICES:
        hass.services.async_remove(DOMAIN, name)
    bucket.pop("services_registered", None)

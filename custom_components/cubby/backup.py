"""Backup codec for Cubby.

Serializes the whole inventory graph to a portable, versioned snapshot and
restores it. Cross references (parent, owning location, tags, reviewed
location) are written as ids, never as nested objects.

Restore is exclusive and all-or-nothing: the snapshot is decoded, migrated
and validated, then rebuilt into a staged repository in dependency order
(tags, locations without parents, parent links, items, review history). Only
when that succeeds is the staged state swapped into the target. Ids that
point at nothing become "no relationship", and tags whose names differ only
in case are folded into the first one.

Snapshot shape (version 2)::

    {
        "version": 2,
        "date": "2026-01-01T00:00:00Z",
        "locations": [{id, name, dateAdded, parentID, isReviewed, lastReviewedDate}],
        "items": [{id, name, dateAdded, locationID, tagIDs, plan, moveDestination,
                   isBook, bookTitle, bookAuthor}],
        "tags": [{id, name, color, dateAdded}],
        "reviewHistory": [{id, date, action, isAutomatic, locationID}],
    }
"""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from typing import Any, Final

import voluptuous as vol

from . import migrations
from .const import DEFAULT_TAG_COLOR, DOMAIN
from .exceptions import CubbyError, SnapshotCorruptError
from .models import (
    Item,
    ItemPlan,
    Location,
    ReviewAction,
    ReviewHistory,
    Tag,
    format_iso_utc,
    parse_iso_utc,
)
from .repository import Repository

LOGGER = logging.getLogger(__name__)

SNAPSHOT_VERSION: Final[int] = 2


# -----------------------------
# Validation schemas
# -----------------------------


def _uuid_string(value: Any) -> str:
    try:
        return str(uuid.UUID(str(value)))
    except (TypeError, ValueError) as exc:
        raise vol.Invalid(f"invalid id: {value!r}") from exc


def _timestamp(value: Any) -> str:
    try:
        return format_iso_utc(parse_iso_utc(value))
    except CubbyError as exc:
        raise vol.Invalid(f"invalid timestamp: {value!r}") from exc


_ID = vol.All(vol.Coerce(str), _uuid_string)
_OPTIONAL_ID = vol.Any(None, _ID)
_TS = vol.All(str, _timestamp)
_OPTIONAL_TS = vol.Any(None, _TS)
_OPTIONAL_STR = vol.Any(None, str)

SCHEMA_LOCATION = vol.Schema(
    {
        vol.Required("id"): _ID,
        vol.Required("name"): str,
        vol.Required("dateAdded"): _TS,
        vol.Optional("parentID", default=None): _OPTIONAL_ID,
        vol.Optional("isReviewed", default=False): bool,
        vol.Optional("lastReviewedDate", default=None): _OPTIONAL_TS,
    },
    extra=vol.ALLOW_EXTRA,
)

SCHEMA_ITEM = vol.Schema(
    {
        vol.Required("id"): _ID,
        vol.Required("name"): str,
        vol.Required("dateAdded"): _TS,
        vol.Optional("locationID", default=None): _OPTIONAL_ID,
        vol.Optional("tagIDs", default=list): [_ID],
        vol.Optional("plan", default=None): _OPTIONAL_STR,
        vol.Optional("moveDestination", default=None): _OPTIONAL_STR,
        vol.Optional("isBook", default=False): bool,
        vol.Optional("bookTitle", default=None): _OPTIONAL_STR,
        vol.Optional("bookAuthor", default=None): _OPTIONAL_STR,
    },
    extra=vol.ALLOW_EXTRA,
)

SCHEMA_TAG = vol.Schema(
    {
        vol.Required("id"): _ID,
        vol.Required("name"): str,
        vol.Optional("color", default=DEFAULT_TAG_COLOR): vol.Any(None, str),
        vol.Optional("dateAdded", default=None): _OPTIONAL_TS,
    },
    extra=vol.ALLOW_EXTRA,
)

SCHEMA_REVIEW_HISTORY = vol.Schema(
    {
        vol.Required("id"): _ID,
        vol.Required("date"): _TS,
        vol.Required("action"): str,
        vol.Optional("isAutomatic", default=False): bool,
        vol.Optional("locationID", default=None): _OPTIONAL_ID,
    },
    extra=vol.ALLOW_EXTRA,
)

# Checked on the raw input before any migration step runs
SCHEMA_SNAPSHOT_ENVELOPE = vol.Schema(
    {
        vol.Required("version"): vol.All(int, vol.Range(min=1)),
        vol.Optional("date"): vol.Any(None, str),
        vol.Required("locations"): list,
        vol.Required("items"): list,
        vol.Required("tags"): list,
        vol.Required("reviewHistory"): list,
    },
    extra=vol.ALLOW_EXTRA,
)

SCHEMA_SNAPSHOT = vol.Schema(
    {
        vol.Required("version"): int,
        vol.Optional("date", default=None): _OPTIONAL_TS,
        vol.Required("locations"): [SCHEMA_LOCATION],
        vol.Required("items"): [SCHEMA_ITEM],
        vol.Required("tags"): [SCHEMA_TAG],
        vol.Required("reviewHistory"): [SCHEMA_REVIEW_HISTORY],
    },
    extra=vol.ALLOW_EXTRA,
)


@dataclass
class Snapshot:
    """A decoded, validated snapshot ready to be rebuilt into a repository."""

    version: int
    date: str | None
    locations: list[Location] = field(default_factory=list)
    items: list[tuple[Item, list[str]]] = field(default_factory=list)
    tags: list[Tag] = field(default_factory=list)
    review_history: list[ReviewHistory] = field(default_factory=list)


# -----------------------------
# Export
# -----------------------------


def _serialize_location(loc: Location) -> dict[str, Any]:
    return {
        "id": str(loc.id),
        "name": loc.name,
        "dateAdded": loc.created_at,
        "parentID": str(loc.parent_id) if loc.parent_id is not None else None,
        "isReviewed": bool(loc.is_reviewed),
        "lastReviewedDate": loc.last_reviewed_at,
    }


def _serialize_item(item: Item, tag_ids: list[str]) -> dict[str, Any]:
    return {
        "id": str(item.id),
        "name": item.name,
        "dateAdded": item.created_at,
        "locationID": str(item.location_id) if item.location_id is not None else None,
        "tagIDs": tag_ids,
        "plan": item.plan.value if item.plan is not None else None,
        "moveDestination": item.move_destination,
        "isBook": bool(item.is_book),
        "bookTitle": item.book_title,
        "bookAuthor": item.book_author,
    }


def _serialize_tag(tag: Tag) -> dict[str, Any]:
    return {
        "id": str(tag.id),
        "name": tag.name,
        "color": tag.color,
        "dateAdded": tag.created_at,
    }


def _serialize_history(entry: ReviewHistory) -> dict[str, Any]:
    return {
        "id": str(entry.id),
        "date": entry.created_at,
        "action": entry.action.value,
        "isAutomatic": bool(entry.is_automatic),
        "locationID": str(entry.location_id) if entry.location_id is not None else None,
    }


def export_snapshot(repo: Repository, *, now: datetime | None = None) -> dict[str, Any]:
    """Serialize the whole repository to a plain, JSON-compatible dict."""

    return {
        "version": SNAPSHOT_VERSION,
        "date": format_iso_utc(now or datetime.now(tz=UTC)),
        "locations": [_serialize_location(loc) for loc in repo.list_locations()],
        "items": [
            _serialize_item(item, sorted(str(t.id) for t in repo.tags_for_item(item.id)))
            for item in repo.list_items()
        ],
        "tags": [_serialize_tag(tag) for tag in repo.list_tags()],
        "reviewHistory": [_serialize_history(e) for e in repo.history_entries()],
    }


def dumps_snapshot(snapshot: dict[str, Any]) -> str:
    return json.dumps(snapshot, indent=2, ensure_ascii=False)


# -----------------------------
# Decode and validate
# -----------------------------


def _plan_from_raw(value: str | None) -> ItemPlan | None:
    if value is None:
        return None
    try:
        return ItemPlan(value)
    except ValueError:
        LOGGER.warning(
            "Unknown plan in snapshot; leaving item unplanned",
            extra={"domain": DOMAIN, "op": "parse_snapshot", "plan": value},
        )
        return None


def parse_snapshot(raw: str | bytes | dict[str, Any]) -> Snapshot:
    """Decode JSON text or a mapping into a validated ``Snapshot``.

    Raises SnapshotCorruptError on malformed JSON, unsupported versions or
    schema violations. Never touches a repository.
    """

    data: Any = raw
    if isinstance(raw, str | bytes):
        try:
            data = json.loads(raw)
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise SnapshotCorruptError("backup is not valid JSON") from exc
    if not isinstance(data, dict):
        raise SnapshotCorruptError("backup must be a JSON object")

    try:
        SCHEMA_SNAPSHOT_ENVELOPE(data)
    except vol.Invalid as exc:
        raise SnapshotCorruptError(f"backup is not a snapshot: {exc}") from exc
    from_version = data["version"]
    if from_version > SNAPSHOT_VERSION:
        raise SnapshotCorruptError(
            f"backup version {from_version} is newer than supported version {SNAPSHOT_VERSION}"
        )

    migrated = migrations.migrate(data, from_version=from_version, to_version=SNAPSHOT_VERSION)
    try:
        valid = SCHEMA_SNAPSHOT(migrated)
    except vol.Invalid as exc:
        raise SnapshotCorruptError(f"backup failed validation: {exc}") from exc

    fallback_ts = valid["date"] or format_iso_utc(datetime.now(tz=UTC))
    snapshot = Snapshot(version=valid["version"], date=valid["date"])

    for row in valid["tags"]:
        snapshot.tags.append(
            Tag(
                id=uuid.UUID(row["id"]),
                name=row["name"],
                color=row["color"] or DEFAULT_TAG_COLOR,
                created_at=row["dateAdded"] or fallback_ts,
            )
        )

    for row in valid["locations"]:
        snapshot.locations.append(
            Location(
                id=uuid.UUID(row["id"]),
                name=row["name"],
                parent_id=uuid.UUID(row["parentID"]) if row["parentID"] else None,
                created_at=row["dateAdded"],
                is_reviewed=row["isReviewed"],
                last_reviewed_at=row["lastReviewedDate"],
            )
        )

    for row in valid["items"]:
        plan = _plan_from_raw(row["plan"])
        is_book = bool(row["isBook"] and row["bookTitle"] and row["bookAuthor"])
        item = Item(
            id=uuid.UUID(row["id"]),
            name=row["name"],
            location_id=uuid.UUID(row["locationID"]) if row["locationID"] else None,
            created_at=row["dateAdded"],
            plan=plan,
            move_destination=row["moveDestination"] if plan is ItemPlan.MOVE else None,
            is_book=is_book,
            book_title=row["bookTitle"] if is_book else None,
            book_author=row["bookAuthor"] if is_book else None,
        )
        snapshot.items.append((item, list(row["tagIDs"])))

    for row in valid["reviewHistory"]:
        try:
            action = ReviewAction(row["action"])
        except ValueError:
            LOGGER.warning(
                "Dropping review history entry with unknown action",
                extra={"domain": DOMAIN, "op": "parse_snapshot", "history_id": row["id"]},
            )
            continue
        snapshot.review_history.append(
            ReviewHistory(
                id=uuid.UUID(row["id"]),
                action=action,
                is_automatic=row["isAutomatic"],
                location_id=uuid.UUID(row["locationID"]) if row["locationID"] else None,
                created_at=row["date"],
            )
        )

    return snapshot


# -----------------------------
# Rebuild and import
# -----------------------------


def _check_unique(kind: str, ids: list[str]) -> None:
    if len(ids) != len(set(ids)):
        raise SnapshotCorruptError(f"backup contains duplicate {kind} ids")


def build_repository(snapshot: Snapshot) -> Repository:
    """Rebuild a fresh repository from a snapshot in dependency order."""

    _check_unique("tag", [str(t.id) for t in snapshot.tags])
    _check_unique("location", [str(loc.id) for loc in snapshot.locations])
    _check_unique("item", [str(it.id) for it, _ in snapshot.items])

    staged = Repository()
    merged_tags: dict[str, str] = {}
    try:
        # 1. Tags have no dependencies; case-duplicate names fold into the first
        for tag in snapshot.tags:
            kept = staged._restore_tag(tag)
            if kept != str(tag.id):
                merged_tags[str(tag.id)] = kept
                LOGGER.warning(
                    "Merging tag with duplicate name into existing tag",
                    extra={
                        "domain": DOMAIN,
                        "op": "build_repository",
                        "tag_id": str(tag.id),
                        "merged_into": kept,
                        "tag_name": tag.name,
                    },
                )

        # 2a. Every location row, detached
        for loc in snapshot.locations:
            staged._restore_location(replace(loc, parent_id=None))

        # 2b. Parent links, now that every id exists; dangling parents stay roots
        for loc in snapshot.locations:
            if loc.parent_id is None:
                continue
            parent_key = str(loc.parent_id)
            if staged._has_location(parent_key):
                staged._commit_location_parent(str(loc.id), parent_key)
        staged.validate_structure()

        # 3. Items depend on locations and tags
        for item, tag_ids in snapshot.items:
            location_key = str(item.location_id) if item.location_id is not None else None
            if location_key is not None and not staged._has_location(location_key):
                item = replace(item, location_id=None)
            tag_keys = {merged_tags.get(t, t) for t in tag_ids}
            staged._restore_item(item, [t for t in tag_keys if staged._has_tag(t)])

        # 4. Review history depends on locations
        for entry in snapshot.review_history:
            location_key = str(entry.location_id) if entry.location_id is not None else None
            if location_key is not None and not staged._has_location(location_key):
                entry = replace(entry, location_id=None)
            staged._restore_history(entry)
    except CubbyError as exc:
        raise SnapshotCorruptError(f"backup is inconsistent: {exc}") from exc

    staged.generation = 0
    return staged


def repository_from_snapshot(raw: str | bytes | dict[str, Any]) -> Repository:
    """Create a Repository instance from a snapshot payload."""

    return build_repository(parse_snapshot(raw))


def import_snapshot(repo: Repository, raw: str | bytes | dict[str, Any]) -> dict[str, int]:
    """Replace the contents of ``repo`` with the snapshot.

    The target is left untouched when decoding, validation or rebuilding
    fails. Returns the repository counts after the import.
    """

    staged = repository_from_snapshot(raw)
    repo._adopt(staged)
    counts = repo.get_counts()
    LOGGER.info(
        "Backup restored",
        extra={"domain": DOMAIN, "op": "import_snapshot", **counts},
    )
    return counts

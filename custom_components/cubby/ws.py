"""WebSocket command handlers for Cubby.

Read-only query commands over the inventory: location browsing with paths,
recursive listings, move destinations, tag membership, plan groups, the book
catalogue, search, triage lists, duplicate detection and review history.
Mutations go through Home Assistant services (see ``services.py``).

Adheres to the envelope: input {id, type, ...payload}, output
result_message/error_message. Result payloads are produced by the
``query_*`` builders, which take a repository and plain arguments so they can
be exercised without a connection.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Any

import voluptuous as vol
from homeassistant.components import websocket_api
from homeassistant.core import HomeAssistant

from . import backups, placement, queries
from .const import DOMAIN, INTEGRATION_VERSION, MAX_LOCATION_DEPTH
from .exceptions import (
    ConflictError,
    CubbyError,
    CycleRejectedError,
    DepthExceededError,
    NotFoundError,
    StorageError,
    ValidationError,
)
from .models import Item, Location, LocationPath, ReviewHistory, Tag
from .repository import Repository
from .storage import CURRENT_SCHEMA_VERSION

LOGGER = logging.getLogger(__name__)


def _repo(hass: HomeAssistant) -> Repository:
    bucket = hass.data.get(DOMAIN) or {}
    repo = bucket.get("repository")
    if repo is None:
        raise StorageError("repository not initialized; run integration setup")
    return repo  # type: ignore[return-value]


def _error_code(exc: Exception) -> str:
    # Subclasses first: depth and cycle errors are also validation errors
    if isinstance(exc, DepthExceededError):
        return "depth_exceeded"
    if isinstance(exc, CycleRejectedError):
        return "cycle_rejected"
    if isinstance(exc, ValidationError):
        return "validation_error"
    if isinstance(exc, NotFoundError):
        return "not_found"
    if isinstance(exc, ConflictError):
        return "conflict"
    if isinstance(exc, StorageError):
        return "storage_error"
    return "unknown_error"


def _error_message(_id: int, exc: Exception, *, context: dict[str, Any]) -> dict[str, Any]:
    level = logging.WARNING
    if isinstance(exc, ConflictError | StorageError):
        level = logging.ERROR
    LOGGER.log(level, str(exc), extra={"domain": DOMAIN, **context})
    return websocket_api.error_message(_id, _error_code(exc), str(exc))


# -----------------------------
# Unified exception handling for WS handlers
# -----------------------------

_WSHandler = Callable[[HomeAssistant, Any, dict], Awaitable[Any]]


def _context_from_msg(op: str, msg: dict, fields: tuple[str, ...]) -> dict[str, Any]:
    context: dict[str, Any] = {"op": op}
    for field in fields:
        if field in msg:
            # Avoid the reserved LogRecord key 'name'
            context["query_name" if field == "name" else field] = msg.get(field)
    return context


def ws_guard(op: str, context_fields: tuple[str, ...] = ()) -> Callable[[_WSHandler], _WSHandler]:
    """Decorator to map domain exceptions to unified WS errors.

    Builds a structured logging context from selected message fields and sends
    a Home Assistant websocket error envelope with {code, message}.
    """

    def decorator(func: _WSHandler) -> _WSHandler:
        async def wrapper(hass: HomeAssistant, conn, msg):  # type: ignore[override]
            try:
                return await func(hass, conn, msg)
            except CubbyError as exc:
                ctx = _context_from_msg(op, msg, context_fields)
                err = _error_message(msg.get("id", 0), exc, context=ctx)
                conn.send_message(err)
                return err

        wrapper.__name__ = getattr(func, "__name__", "ws_handler")
        return wrapper

    return decorator


# -----------------------------
# Serialization helpers
# -----------------------------


def _serialize_path(path: LocationPath) -> dict[str, Any]:
    return {
        "id_path": [str(x) for x in path.id_path],
        "name_path": list(path.name_path),
        "display_path": path.display_path,
        "sort_key": path.sort_key,
    }


def _serialize_location(repo: Repository, loc: Location) -> dict[str, Any]:
    return {
        "id": str(loc.id),
        "name": loc.name,
        "parent_id": str(loc.parent_id) if loc.parent_id is not None else None,
        "created_at": loc.created_at,
        "is_reviewed": loc.is_reviewed,
        "last_reviewed_at": loc.last_reviewed_at,
        "depth": repo.depth(loc.id),
        "path": _serialize_path(repo.location_path(loc.id)),
    }


def _serialize_tag(tag: Tag) -> dict[str, Any]:
    return {"id": str(tag.id), "name": tag.name, "color": tag.color, "created_at": tag.created_at}


def _serialize_item(repo: Repository, item: Item) -> dict[str, Any]:
    return {
        "id": str(item.id),
        "name": item.name,
        "display_name": item.display_name,
        "location_id": str(item.location_id) if item.location_id is not None else None,
        "created_at": item.created_at,
        "plan": item.plan.value if item.plan is not None else None,
        "move_destination": item.move_destination,
        "is_book": item.is_book,
        "book_title": item.book_title,
        "book_author": item.book_author,
        "tags": [_serialize_tag(t) for t in repo.tags_for_item(item.id)],
        "location_path": _serialize_path(repo.item_location_path(item.id)),
    }


def _serialize_history(entry: ReviewHistory) -> dict[str, Any]:
    return {
        "id": str(entry.id),
        "date": entry.created_at,
        "action": entry.action.value,
        "is_automatic": entry.is_automatic,
        "location_id": str(entry.location_id) if entry.location_id is not None else None,
    }


# -----------------------------
# Query builders
# -----------------------------


def query_location(repo: Repository, location_id: str) -> dict[str, Any]:
    loc = repo.get_location(location_id)
    data = _serialize_location(repo, loc)
    data["children"] = [_serialize_location(repo, c) for c in repo.list_children(loc.id)]
    data["items"] = [_serialize_item(repo, it) for it in repo.items_in_location(loc.id)]
    return data


def query_root_locations(repo: Repository) -> list[dict[str, Any]]:
    return [_serialize_location(repo, loc) for loc in repo.list_root_locations()]


def query_location_tree(repo: Repository) -> list[dict[str, Any]]:
    def build_node(loc: Location) -> dict[str, Any]:
        return {
            "id": str(loc.id),
            "name": loc.name,
            "is_reviewed": loc.is_reviewed,
            "children": [build_node(c) for c in repo.list_children(loc.id)],
        }

    return [build_node(root) for root in repo.list_root_locations()]


def query_location_items(
    repo: Repository, location_id: str, *, recursive: bool = False
) -> list[dict[str, Any]]:
    items = repo.items_recursively(location_id) if recursive else repo.items_in_location(location_id)
    return [_serialize_item(repo, it) for it in items]


def query_move_targets(repo: Repository, location_id: str | None = None) -> dict[str, Any]:
    targets = placement.move_targets(repo, location_id)
    return {
        "max_depth": MAX_LOCATION_DEPTH,
        "targets": [
            {
                "id": str(t.location.id),
                "name": t.location.name,
                "depth": t.depth,
                "allowed": t.allowed,
                "display_path": repo.location_path(t.location.id).display_path,
            }
            for t in targets
        ],
    }


def query_tags(repo: Repository) -> list[dict[str, Any]]:
    return [
        {**_serialize_tag(tag), "item_count": len(repo.items_for_tag(tag.id))}
        for tag in repo.list_tags()
    ]


def query_tag_items(repo: Repository, tag_id: str) -> list[dict[str, Any]]:
    return [_serialize_item(repo, it) for it in repo.items_for_tag(tag_id)]


def query_items_by_plan(repo: Repository) -> list[dict[str, Any]]:
    return [
        {"plan": plan.value, "items": [_serialize_item(repo, it) for it in items]}
        for plan, items in queries.items_by_plan(repo)
    ]


def query_books(
    repo: Repository,
    *,
    search: str | None = None,
    sort_by: str = "title",
    group_by: str = "none",
) -> list[dict[str, Any]]:
    groups = queries.list_books(repo, search=search, sort_by=sort_by, group_by=group_by)  # type: ignore[arg-type]
    return [
        {"key": key, "books": [_serialize_item(repo, b) for b in books]} for key, books in groups
    ]


def query_search(repo: Repository, query: str) -> list[dict[str, Any]]:
    return [_serialize_item(repo, listing.item) for listing in queries.search_items(repo, query)]


def query_unplanned(
    repo: Repository, *, location_id: str | None = None, include_books: bool = True
) -> list[dict[str, Any]]:
    items = queries.unplanned_items(repo, location_id=location_id, include_books=include_books)
    return [_serialize_item(repo, it) for it in items]


def query_duplicates(
    repo: Repository, name: str, *, exclude_item_id: str | None = None
) -> list[dict[str, Any]]:
    return [
        {"item": _serialize_item(repo, c.item), "path": c.path, "similarity": round(c.similarity, 4)}
        for c in queries.find_possible_duplicates(repo, name, exclude_item_id=exclude_item_id)
    ]


def query_review_history(repo: Repository, location_id: str | None = None) -> list[dict[str, Any]]:
    return [_serialize_history(e) for e in repo.review_history(location_id)]


def query_health(repo: Repository) -> dict[str, Any]:
    issues: list[str] = []
    try:
        repo.validate_structure()
    except ValidationError as exc:
        issues.append(str(exc))
    if not repo.tag_links_consistent():
        issues.append("tag links are not symmetric")
    return {"healthy": not issues, "issues": issues, "counts": repo.get_counts()}


# -----------------------------
# Commands
# -----------------------------


@websocket_api.websocket_command({"type": "cubby/version"})
@websocket_api.async_response
async def ws_version(hass: HomeAssistant, conn, msg):
    bucket = hass.data.get(DOMAIN) or {}
    store = bucket.get("store")
    result = {
        "integration_version": INTEGRATION_VERSION,
        "schema_version": store.schema_version if store is not None else CURRENT_SCHEMA_VERSION,
    }
    conn.send_message(websocket_api.result_message(msg.get("id", 0), result))


@websocket_api.websocket_command({"type": "cubby/stats"})
@websocket_api.async_response
@ws_guard("stats")
async def ws_stats(hass: HomeAssistant, conn, msg):
    conn.send_message(websocket_api.result_message(msg.get("id", 0), _repo(hass).get_counts()))


@websocket_api.websocket_command({"type": "cubby/health"})
@websocket_api.async_response
@ws_guard("health")
async def ws_health(hass: HomeAssistant, conn, msg):
    conn.send_message(websocket_api.result_message(msg.get("id", 0), query_health(_repo(hass))))


@websocket_api.websocket_command({"type": "cubby/location/roots"})
@websocket_api.async_response
@ws_guard("location_roots")
async def ws_location_roots(hass: HomeAssistant, conn, msg):
    result = query_root_locations(_repo(hass))
    conn.send_message(websocket_api.result_message(msg.get("id", 0), result))


@websocket_api.websocket_command({"type": "cubby/location/tree"})
@websocket_api.async_response
@ws_guard("location_tree")
async def ws_location_tree(hass: HomeAssistant, conn, msg):
    result = query_location_tree(_repo(hass))
    conn.send_message(websocket_api.result_message(msg.get("id", 0), result))


@websocket_api.websocket_command(
    {vol.Required("type"): "cubby/location/get", vol.Required("location_id"): str}
)
@websocket_api.async_response
@ws_guard("location_get", ("location_id",))
async def ws_location_get(hass: HomeAssistant, conn, msg):
    result = query_location(_repo(hass), msg["location_id"])
    conn.send_message(websocket_api.result_message(msg.get("id", 0), result))


@websocket_api.websocket_command(
    {
        vol.Required("type"): "cubby/location/items",
        vol.Required("location_id"): str,
        vol.Optional("recursive", default=False): bool,
    }
)
@websocket_api.async_response
@ws_guard("location_items", ("location_id", "recursive"))
async def ws_location_items(hass: HomeAssistant, conn, msg):
    result = query_location_items(
        _repo(hass), msg["location_id"], recursive=msg.get("recursive", False)
    )
    conn.send_message(websocket_api.result_message(msg.get("id", 0), result))


@websocket_api.websocket_command(
    {vol.Required("type"): "cubby/location/move_targets", vol.Optional("location_id"): str}
)
@websocket_api.async_response
@ws_guard("location_move_targets", ("location_id",))
async def ws_location_move_targets(hass: HomeAssistant, conn, msg):
    result = query_move_targets(_repo(hass), msg.get("location_id"))
    conn.send_message(websocket_api.result_message(msg.get("id", 0), result))


@websocket_api.websocket_command({"type": "cubby/tag/list"})
@websocket_api.async_response
@ws_guard("tag_list")
async def ws_tag_list(hass: HomeAssistant, conn, msg):
    conn.send_message(websocket_api.result_message(msg.get("id", 0), query_tags(_repo(hass))))


@websocket_api.websocket_command(
    {vol.Required("type"): "cubby/tag/items", vol.Required("tag_id"): str}
)
@websocket_api.async_response
@ws_guard("tag_items", ("tag_id",))
async def ws_tag_items(hass: HomeAssistant, conn, msg):
    result = query_tag_items(_repo(hass), msg["tag_id"])
    conn.send_message(websocket_api.result_message(msg.get("id", 0), result))


@websocket_api.websocket_command(
    {vol.Required("type"): "cubby/item/get", vol.Required("item_id"): str}
)
@websocket_api.async_response
@ws_guard("item_get", ("item_id",))
async def ws_item_get(hass: HomeAssistant, conn, msg):
    repo = _repo(hass)
    result = _serialize_item(repo, repo.get_item(msg["item_id"]))
    conn.send_message(websocket_api.result_message(msg.get("id", 0), result))


@websocket_api.websocket_command({"type": "cubby/items/by_plan"})
@websocket_api.async_response
@ws_guard("items_by_plan")
async def ws_items_by_plan(hass: HomeAssistant, conn, msg):
    result = query_items_by_plan(_repo(hass))
    conn.send_message(websocket_api.result_message(msg.get("id", 0), result))


@websocket_api.websocket_command(
    {
        vol.Required("type"): "cubby/items/books",
        vol.Optional("search"): vol.Any(None, str),
        vol.Optional("sort_by", default="title"): str,
        vol.Optional("group_by", default="none"): str,
    }
)
@websocket_api.async_response
@ws_guard("items_books", ("search", "sort_by", "group_by"))
async def ws_items_books(hass: HomeAssistant, conn, msg):
    result = query_books(
        _repo(hass),
        search=msg.get("search"),
        sort_by=msg.get("sort_by", "title"),
        group_by=msg.get("group_by", "none"),
    )
    conn.send_message(websocket_api.result_message(msg.get("id", 0), result))


@websocket_api.websocket_command(
    {vol.Required("type"): "cubby/items/search", vol.Required("query"): str}
)
@websocket_api.async_response
@ws_guard("items_search", ("query",))
async def ws_items_search(hass: HomeAssistant, conn, msg):
    result = query_search(_repo(hass), msg["query"])
    conn.send_message(websocket_api.result_message(msg.get("id", 0), result))


@websocket_api.websocket_command(
    {
        vol.Required("type"): "cubby/items/unplanned",
        vol.Optional("location_id"): str,
        vol.Optional("include_books", default=True): bool,
    }
)
@websocket_api.async_response
@ws_guard("items_unplanned", ("location_id", "include_books"))
async def ws_items_unplanned(hass: HomeAssistant, conn, msg):
    result = query_unplanned(
        _repo(hass),
        location_id=msg.get("location_id"),
        include_books=msg.get("include_books", True),
    )
    conn.send_message(websocket_api.result_message(msg.get("id", 0), result))


@websocket_api.websocket_command(
    {
        vol.Required("type"): "cubby/items/duplicates",
        vol.Required("name"): str,
        vol.Optional("exclude_item_id"): str,
    }
)
@websocket_api.async_response
@ws_guard("items_duplicates", ("name", "exclude_item_id"))
async def ws_items_duplicates(hass: HomeAssistant, conn, msg):
    result = query_duplicates(
        _repo(hass), msg["name"], exclude_item_id=msg.get("exclude_item_id")
    )
    conn.send_message(websocket_api.result_message(msg.get("id", 0), result))


@websocket_api.websocket_command(
    {vol.Required("type"): "cubby/review/history", vol.Optional("location_id"): str}
)
@websocket_api.async_response
@ws_guard("review_history", ("location_id",))
async def ws_review_history(hass: HomeAssistant, conn, msg):
    result = query_review_history(_repo(hass), msg.get("location_id"))
    conn.send_message(websocket_api.result_message(msg.get("id", 0), result))


@websocket_api.websocket_command({"type": "cubby/backup/list"})
@websocket_api.async_response
@ws_guard("backup_list")
async def ws_backup_list(hass: HomeAssistant, conn, msg):
    files = await backups.async_list_backups(hass)
    result = [
        {"name": f.name, "created_at": f.created_at.isoformat(), "size": f.size} for f in files
    ]
    conn.send_message(websocket_api.result_message(msg.get("id", 0), result))


# -----------------------------
# Registration
# -----------------------------

HANDLERS = (
    ws_version,
    ws_stats,
    ws_health,
    ws_location_roots,
    ws_location_tree,
    ws_location_get,
    ws_location_items,
    ws_location_move_targets,
    ws_tag_list,
    ws_tag_items,
    ws_item_get,
    ws_items_by_plan,
    ws_items_books,
    ws_items_search,
    ws_items_unplanned,
    ws_items_duplicates,
    ws_review_history,
    ws_backup_list,
)


def setup(hass: HomeAssistant) -> None:
    # Idempotent: commands stay registered across entry reloads
    bucket = hass.data.setdefault(DOMAIN, {})
    if bucket.get("ws_registered"):
        return

    for handler in HANDLERS:
        websocket_api.async_register_command(hass, handler)

    bucket["ws_registered"] = True

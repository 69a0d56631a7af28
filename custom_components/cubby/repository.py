"""In-memory repository with indexes and structural rules for Cubby.

This module provides a synchronous repository class that owns the whole
inventory graph: the location tree (depth-capped, cascade delete), the item
store, the tag registry with its symmetric item relation, and the review
history table. Every operation validates fully before it mutates anything.

The repository is framework-agnostic and designed to be exercised by offline
tests and invoked by the move engine, the review ledger, the backup codec and
the service/WebSocket layers. Callers receive the repository explicitly; there
is no module-level singleton.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Iterable
from dataclasses import replace

from .const import DEFAULT_TAG_COLOR, DOMAIN, MAX_LOCATION_DEPTH
from .exceptions import (
    ConflictError,
    CubbyError,
    DepthExceededError,
    NotFoundError,
    ValidationError,
)
from .models import (
    EMPTY_LOCATION_PATH,
    Item,
    ItemBatchResult,
    ItemPlan,
    Location,
    LocationPath,
    ReviewAction,
    ReviewHistory,
    Tag,
    book_display_name,
    build_location_path,
    iso_utc_now,
    new_uuid4,
    normalize_text_for_sort,
    parse_plan,
    validate_book_fields,
    validate_name,
)
from .relations import TagLinks

LOGGER = logging.getLogger(__name__)

# Upper bound on parent-chain walks; only reachable with corrupted maps
LOCATION_GUARD_MAX_STEPS: int = 10_000


def _key(value: str | uuid.UUID) -> str:
    """Normalize an id to the canonical string key used by the indexes."""

    if isinstance(value, uuid.UUID):
        return str(value)
    try:
        return str(uuid.UUID(str(value)))
    except ValueError:
        return str(value)


class Repository:
    """In-memory repository maintaining indexes and providing operations.

    Notes:
        - Locations reference their parent by id; children are derived from
          ``_children_ids_by_parent_id`` (roots live under the ``None`` key).
        - Item/tag edges are owned by a single ``TagLinks`` instance.
        - ``generation`` increments on every committed mutation so persistence
          can tell whether state changed.
    """

    # -----------------------------
    # Lifecycle
    # -----------------------------

    def __init__(self) -> None:
        # Primary stores
        self._locations_by_id: dict[str, Location] = {}
        self._items_by_id: dict[str, Item] = {}
        self._tags_by_id: dict[str, Tag] = {}
        self._history: list[ReviewHistory] = []

        # Indexes
        self._children_ids_by_parent_id: dict[str | None, set[str]] = {}
        self._items_by_location_id: dict[str, set[str]] = {}
        self._tag_id_by_name: dict[str, str] = {}
        self._links = TagLinks()

        self.generation = 0

    def _touch(self) -> None:
        self.generation += 1

    # -----------------------------
    # Internal helpers: indexing
    # -----------------------------

    def _add_to_bucket(self, bucket: dict, key: str | None, member_id: str) -> None:
        if key not in bucket:
            bucket[key] = set()
        bucket[key].add(member_id)

    def _remove_from_bucket(self, bucket: dict, key: str | None, member_id: str) -> None:
        s = bucket.get(key)
        if not s:
            return
        s.discard(member_id)
        if not s:
            bucket.pop(key, None)

    def _add_location(self, loc: Location) -> None:
        self._locations_by_id[str(loc.id)] = loc
        parent_key = str(loc.parent_id) if loc.parent_id is not None else None
        self._add_to_bucket(self._children_ids_by_parent_id, parent_key, str(loc.id))

    def _remove_location(self, loc: Location) -> None:
        self._locations_by_id.pop(str(loc.id), None)
        parent_key = str(loc.parent_id) if loc.parent_id is not None else None
        self._remove_from_bucket(self._children_ids_by_parent_id, parent_key, str(loc.id))
        self._children_ids_by_parent_id.pop(str(loc.id), None)
        self._items_by_location_id.pop(str(loc.id), None)

    def _index_item(self, item: Item) -> None:
        item_key = str(item.id)
        self._items_by_id[item_key] = item
        if item.location_id is not None:
            self._add_to_bucket(self._items_by_location_id, str(item.location_id), item_key)

    def _unindex_item(self, item: Item) -> None:
        item_key = str(item.id)
        if item.location_id is not None:
            self._remove_from_bucket(self._items_by_location_id, str(item.location_id), item_key)
        self._items_by_id.pop(item_key, None)

    def _replace_item(self, old: Item, new: Item) -> None:
        self._unindex_item(old)
        self._index_item(new)

    def _require_location(self, location_id: str | uuid.UUID) -> Location:
        loc = self._locations_by_id.get(_key(location_id))
        if loc is None:
            raise NotFoundError("location not found")
        return loc

    def _require_item(self, item_id: str | uuid.UUID) -> Item:
        item = self._items_by_id.get(_key(item_id))
        if item is None:
            raise NotFoundError("item not found")
        return item

    def _require_tag(self, tag_id: str | uuid.UUID) -> Tag:
        tag = self._tags_by_id.get(_key(tag_id))
        if tag is None:
            raise NotFoundError("tag not found")
        return tag

    def _resolve_tag_keys(self, tag_ids: Iterable[str | uuid.UUID]) -> set[str]:
        keys: set[str] = set()
        for tag_id in tag_ids:
            keys.add(str(self._require_tag(tag_id).id))
        return keys

    def _sorted_locations(self, keys: Iterable[str]) -> list[Location]:
        locs = [self._locations_by_id[k] for k in keys if k in self._locations_by_id]
        locs.sort(key=lambda loc: (normalize_text_for_sort(loc.name), str(loc.id)))
        return locs

    def _sorted_items(self, keys: Iterable[str]) -> list[Item]:
        items = [self._items_by_id[k] for k in keys if k in self._items_by_id]
        items.sort(key=lambda it: (normalize_text_for_sort(it.name), str(it.id)))
        return items

    # -----------------------------
    # Commit primitives (used by the move engine and backup restore)
    # -----------------------------

    def _commit_location_parent(self, location_key: str, parent_key: str | None) -> Location:
        """Reassign a location's parent without validation."""

        loc = self._locations_by_id[location_key]
        old_parent = str(loc.parent_id) if loc.parent_id is not None else None
        self._remove_from_bucket(self._children_ids_by_parent_id, old_parent, location_key)
        new_loc = replace(loc, parent_id=uuid.UUID(parent_key) if parent_key else None)
        self._locations_by_id[location_key] = new_loc
        self._add_to_bucket(self._children_ids_by_parent_id, parent_key, location_key)
        self._touch()
        return new_loc

    def _commit_item_location(self, item_key: str, location_key: str | None) -> Item:
        """Reassign an item's owning location without validation."""

        old = self._items_by_id[item_key]
        new = replace(old, location_id=uuid.UUID(location_key) if location_key else None)
        self._replace_item(old, new)
        self._touch()
        return new

    # -----------------------------
    # Public API: Location tree
    # -----------------------------

    def create_location(
        self, *, name: str, parent_id: str | uuid.UUID | None = None
    ) -> Location:
        name = validate_name(name)
        parent: Location | None = None
        if parent_id is not None:
            parent = self._locations_by_id.get(_key(parent_id))
            if parent is None:
                raise NotFoundError("parent_id must reference an existing location")
            if self.depth(parent.id) >= MAX_LOCATION_DEPTH:
                raise DepthExceededError(
                    f"cannot create a location deeper than {MAX_LOCATION_DEPTH} levels"
                )

        new_loc = Location(
            id=new_uuid4(),
            name=name,
            parent_id=parent.id if parent is not None else None,
        )
        self._add_location(new_loc)
        self._touch()
        LOGGER.debug(
            "Location created",
            extra={"domain": DOMAIN, "op": "create_location", "location_id": str(new_loc.id)},
        )
        return new_loc

    def get_location(self, location_id: str | uuid.UUID) -> Location:
        return self._require_location(location_id)

    def rename_location(self, location_id: str | uuid.UUID, name: str) -> Location:
        loc = self._require_location(location_id)
        new_loc = replace(loc, name=validate_name(name))
        self._locations_by_id[str(loc.id)] = new_loc
        self._touch()
        LOGGER.debug(
            "Location renamed",
            extra={"domain": DOMAIN, "op": "rename_location", "location_id": str(loc.id)},
        )
        return new_loc

    def delete_location(self, location_id: str | uuid.UUID) -> None:
        """Delete a location, its descendants and every item they hold.

        Review history entries that referenced a deleted location are kept as
        audit records with their location reference cleared.
        """

        doomed = self.collect_self_and_descendant_ids(location_id)
        doomed_items: set[str] = set()
        for loc_key in doomed:
            doomed_items.update(self._items_by_location_id.get(loc_key, set()))

        for item_key in doomed_items:
            self._links.drop_item(item_key)
            self._unindex_item(self._items_by_id[item_key])
        for loc_key in doomed:
            self._remove_location(self._locations_by_id[loc_key])
        self._history = [
            replace(entry, location_id=None)
            if entry.location_id is not None and str(entry.location_id) in doomed
            else entry
            for entry in self._history
        ]
        self._touch()
        LOGGER.debug(
            "Location deleted",
            extra={
                "domain": DOMAIN,
                "op": "delete_location",
                "location_id": _key(location_id),
                "locations_removed": len(doomed),
                "items_removed": len(doomed_items),
            },
        )

    def depth(self, location_id: str | uuid.UUID) -> int:
        """Return 1 for a root, otherwise 1 + depth(parent)."""

        loc = self._require_location(location_id)
        depth = 1
        cursor = loc.parent_id
        while cursor is not None:
            depth += 1
            if depth > LOCATION_GUARD_MAX_STEPS:  # pragma: no cover - degenerate cycles
                raise ValidationError("location graph too deep or cyclic")
            parent = self._locations_by_id.get(str(cursor))
            if parent is None:  # pragma: no cover - corrupted map
                raise ValidationError("location must reference an existing location chain")
            cursor = parent.parent_id
        return depth

    def deepest_subtree_distance(self, location_id: str | uuid.UUID) -> int:
        """Return the number of edges from a location to its deepest descendant."""

        key = str(self._require_location(location_id).id)
        children = self._children_ids_by_parent_id.get(key)
        if not children:
            return 0
        return 1 + max(self.deepest_subtree_distance(child) for child in children)

    def collect_self_and_descendant_ids(self, location_id: str | uuid.UUID) -> set[str]:
        root_key = str(self._require_location(location_id).id)
        result: set[str] = {root_key}
        queue: list[str] = [root_key]
        while queue:
            current = queue.pop(0)
            for child_id in self._children_ids_by_parent_id.get(current, set()):
                if child_id not in result:
                    result.add(child_id)
                    queue.append(child_id)
        return result

    def list_root_locations(self) -> list[Location]:
        return self._sorted_locations(self._children_ids_by_parent_id.get(None, set()))

    def list_children(self, location_id: str | uuid.UUID) -> list[Location]:
        key = str(self._require_location(location_id).id)
        return self._sorted_locations(self._children_ids_by_parent_id.get(key, set()))

    def list_locations(self) -> list[Location]:
        return self._sorted_locations(self._locations_by_id.keys())

    def items_in_location(self, location_id: str | uuid.UUID) -> list[Item]:
        key = str(self._require_location(location_id).id)
        return self._sorted_items(self._items_by_location_id.get(key, set()))

    def items_recursively(self, location_id: str | uuid.UUID) -> list[Item]:
        """Gather items depth-first: a location's own items, then each child by name."""

        result: list[Item] = []
        stack: list[Location] = [self._require_location(location_id)]
        while stack:
            loc = stack.pop()
            key = str(loc.id)
            result.extend(self._sorted_items(self._items_by_location_id.get(key, set())))
            children = self._sorted_locations(self._children_ids_by_parent_id.get(key, set()))
            stack.extend(reversed(children))
        return result

    def location_path(self, location_id: str | uuid.UUID) -> LocationPath:
        """Build the root->leaf path of a location by following parent links."""

        chain: list[Location] = []
        cursor: Location | None = self._require_location(location_id)
        guard = 0
        while cursor is not None:
            guard += 1
            if guard > LOCATION_GUARD_MAX_STEPS:  # pragma: no cover - degenerate cycles
                raise ValidationError("location graph too deep or cyclic")
            chain.append(cursor)
            parent_id = cursor.parent_id
            cursor = self._locations_by_id.get(str(parent_id)) if parent_id else None
        chain.reverse()
        return build_location_path(chain)

    def item_location_path(self, item_id: str | uuid.UUID) -> LocationPath:
        item = self._require_item(item_id)
        if item.location_id is None:
            return EMPTY_LOCATION_PATH
        return self.location_path(item.location_id)

    def validate_structure(self) -> None:
        """Raise ValidationError when parent links form a cycle or exceed the depth cap."""

        depth_by_key: dict[str, int] = {}
        for key in self._locations_by_id:
            chain: list[str] = []
            seen: set[str] = set()
            cursor: str | None = key
            base = 0
            while cursor is not None:
                if cursor in depth_by_key:
                    base = depth_by_key[cursor]
                    break
                if cursor in seen:
                    raise ValidationError("location parent links form a cycle")
                seen.add(cursor)
                chain.append(cursor)
                parent_id = self._locations_by_id[cursor].parent_id
                cursor = str(parent_id) if parent_id is not None else None
            for offset, node in enumerate(reversed(chain), start=1):
                depth_by_key[node] = base + offset
        deepest = max(depth_by_key.values(), default=0)
        if deepest > MAX_LOCATION_DEPTH:
            raise DepthExceededError(
                f"location tree is {deepest} levels deep; the limit is {MAX_LOCATION_DEPTH}"
            )

    # -----------------------------
    # Public API: Item operations
    # -----------------------------

    def create_item(
        self,
        *,
        name: str | None = None,
        location_id: str | uuid.UUID | None = None,
        book_title: str | None = None,
        book_author: str | None = None,
        tag_ids: Iterable[str | uuid.UUID] = (),
        plan: ItemPlan | str | None = None,
        move_destination: str | None = None,
    ) -> Item:
        """Create an item, either by name or in book form (title and author)."""

        is_book = book_title is not None or book_author is not None
        if is_book:
            book_title, book_author = validate_book_fields(book_title or "", book_author or "")
            name = book_display_name(book_title, book_author)
        else:
            name = validate_name(name or "")

        location: Location | None = None
        if location_id is not None:
            location = self._require_location(location_id)
        tag_keys = self._resolve_tag_keys(tag_ids)
        parsed_plan = parse_plan(plan)

        item = Item(
            id=new_uuid4(),
            name=name,
            location_id=location.id if location is not None else None,
            plan=parsed_plan,
            move_destination=_normalize_move_destination(parsed_plan, move_destination),
            is_book=is_book,
            book_title=book_title,
            book_author=book_author,
        )
        self._index_item(item)
        self._links.replace_item_tags(str(item.id), tag_keys)
        self._touch()
        LOGGER.debug(
            "Item created",
            extra={"domain": DOMAIN, "op": "create_item", "item_id": str(item.id)},
        )
        return item

    def get_item(self, item_id: str | uuid.UUID) -> Item:
        return self._require_item(item_id)

    def list_items(self) -> list[Item]:
        return self._sorted_items(self._items_by_id.keys())

    def rename_item(self, item_id: str | uuid.UUID, name: str) -> Item:
        current = self._require_item(item_id)
        if current.is_book:
            raise ValidationError("book items are named by title and author")
        updated = replace(current, name=validate_name(name))
        self._replace_item(current, updated)
        self._touch()
        return updated

    def set_book_info(self, item_id: str | uuid.UUID, title: str, author: str) -> Item:
        current = self._require_item(item_id)
        title, author = validate_book_fields(title, author)
        updated = replace(
            current,
            name=book_display_name(title, author),
            is_book=True,
            book_title=title,
            book_author=author,
        )
        self._replace_item(current, updated)
        self._touch()
        return updated

    def clear_book_info(self, item_id: str | uuid.UUID, name: str) -> Item:
        current = self._require_item(item_id)
        updated = replace(
            current, name=validate_name(name), is_book=False, book_title=None, book_author=None
        )
        self._replace_item(current, updated)
        self._touch()
        return updated

    def retag_item(
        self, item_id: str | uuid.UUID, tag_ids: Iterable[str | uuid.UUID]
    ) -> list[Tag]:
        """Replace the tag set of an item; both relation sides change together."""

        item = self._require_item(item_id)
        tag_keys = self._resolve_tag_keys(tag_ids)
        self._links.replace_item_tags(str(item.id), tag_keys)
        self._touch()
        LOGGER.debug(
            "Item retagged",
            extra={
                "domain": DOMAIN,
                "op": "retag_item",
                "item_id": str(item.id),
                "tag_count": len(tag_keys),
            },
        )
        return self.tags_for_item(item.id)

    def assign_plan(
        self,
        item_id: str | uuid.UUID,
        plan: ItemPlan | str | None,
        *,
        move_destination: str | None = None,
    ) -> Item:
        current = self._require_item(item_id)
        parsed = parse_plan(plan)
        if parsed is ItemPlan.MOVE and move_destination is None:
            move_destination = current.move_destination
        updated = replace(
            current,
            plan=parsed,
            move_destination=_normalize_move_destination(parsed, move_destination),
        )
        self._replace_item(current, updated)
        self._touch()
        LOGGER.debug(
            "Item plan assigned",
            extra={
                "domain": DOMAIN,
                "op": "assign_plan",
                "item_id": str(current.id),
                "plan": parsed.value if parsed is not None else None,
            },
        )
        return updated

    def delete_item(self, item_id: str | uuid.UUID) -> None:
        current = self._require_item(item_id)
        self._links.drop_item(str(current.id))
        self._unindex_item(current)
        self._touch()
        LOGGER.debug(
            "Item deleted",
            extra={"domain": DOMAIN, "op": "delete_item", "item_id": str(current.id)},
        )

    # -----------------------------
    # Public API: Item batches
    # -----------------------------

    def retag_items(
        self, item_ids: Iterable[str | uuid.UUID], tag_ids: Iterable[str | uuid.UUID]
    ) -> ItemBatchResult:
        """Give every listed item the same tag set.

        An unknown tag rejects the whole batch before any item changes.
        Unknown items are skipped and reported in the result.
        """

        tag_keys = self._resolve_tag_keys(tag_ids)
        return self._apply_to_items(
            "retag_items", item_ids, lambda item_key: self.retag_item(item_key, tag_keys)
        )

    def assign_plan_to_items(
        self,
        item_ids: Iterable[str | uuid.UUID],
        plan: ItemPlan | str | None,
        *,
        move_destination: str | None = None,
    ) -> ItemBatchResult:
        parsed = parse_plan(plan)
        return self._apply_to_items(
            "assign_plan_to_items",
            item_ids,
            lambda item_key: self.assign_plan(item_key, parsed, move_destination=move_destination),
        )

    def clear_plan_for_items(self, item_ids: Iterable[str | uuid.UUID]) -> ItemBatchResult:
        return self._apply_to_items(
            "clear_plan_for_items", item_ids, lambda item_key: self.assign_plan(item_key, None)
        )

    def delete_items(self, item_ids: Iterable[str | uuid.UUID]) -> ItemBatchResult:
        return self._apply_to_items("delete_items", item_ids, self.delete_item)

    def _apply_to_items(
        self,
        op: str,
        item_ids: Iterable[str | uuid.UUID],
        apply: Callable[[str], object],
    ) -> ItemBatchResult:
        result = ItemBatchResult()
        for item_key in dict.fromkeys(_key(item_id) for item_id in item_ids):
            try:
                apply(item_key)
            except CubbyError as exc:
                result.skipped[item_key] = exc
                continue
            result.applied.append(item_key)
        LOGGER.debug(
            "Item batch finished",
            extra={
                "domain": DOMAIN,
                "op": op,
                "applied": len(result.applied),
                "skipped": len(result.skipped),
            },
        )
        return result

    # -----------------------------
    # Public API: Tag registry
    # -----------------------------

    def create_tag(self, name: str, *, color: str = DEFAULT_TAG_COLOR) -> Tag:
        name = validate_name(name)
        folded = name.casefold()
        if folded in self._tag_id_by_name:
            raise ConflictError(f"a tag named '{name}' already exists")
        tag = Tag(id=new_uuid4(), name=name, color=color or DEFAULT_TAG_COLOR)
        self._tags_by_id[str(tag.id)] = tag
        self._tag_id_by_name[folded] = str(tag.id)
        self._touch()
        LOGGER.debug(
            "Tag created",
            extra={"domain": DOMAIN, "op": "create_tag", "tag_id": str(tag.id)},
        )
        return tag

    def get_tag(self, tag_id: str | uuid.UUID) -> Tag:
        return self._require_tag(tag_id)

    def find_tag_by_name(self, name: str) -> Tag | None:
        tag_key = self._tag_id_by_name.get((name or "").strip().casefold())
        return self._tags_by_id.get(tag_key) if tag_key else None

    def rename_tag(self, tag_id: str | uuid.UUID, name: str) -> Tag:
        tag = self._require_tag(tag_id)
        name = validate_name(name)
        folded = name.casefold()
        holder = self._tag_id_by_name.get(folded)
        if holder is not None and holder != str(tag.id):
            raise ConflictError(f"a tag named '{name}' already exists")
        self._tag_id_by_name.pop(tag.name.casefold(), None)
        renamed = replace(tag, name=name)
        self._tags_by_id[str(tag.id)] = renamed
        self._tag_id_by_name[folded] = str(tag.id)
        self._touch()
        return renamed

    def delete_tag(self, tag_id: str | uuid.UUID) -> None:
        tag = self._require_tag(tag_id)
        self._links.drop_tag(str(tag.id))
        self._tags_by_id.pop(str(tag.id), None)
        self._tag_id_by_name.pop(tag.name.casefold(), None)
        self._touch()
        LOGGER.debug(
            "Tag deleted",
            extra={"domain": DOMAIN, "op": "delete_tag", "tag_id": str(tag.id)},
        )

    def list_tags(self) -> list[Tag]:
        tags = list(self._tags_by_id.values())
        tags.sort(key=lambda t: (normalize_text_for_sort(t.name), str(t.id)))
        return tags

    def tags_for_item(self, item_id: str | uuid.UUID) -> list[Tag]:
        item = self._require_item(item_id)
        tags = [self._tags_by_id[k] for k in self._links.tags_of(str(item.id))]
        tags.sort(key=lambda t: (normalize_text_for_sort(t.name), str(t.id)))
        return tags

    def items_for_tag(self, tag_id: str | uuid.UUID) -> list[Item]:
        tag = self._require_tag(tag_id)
        return self._sorted_items(self._links.items_of(str(tag.id)))

    def tag_links_consistent(self) -> bool:
        return self._links.is_consistent()

    # -----------------------------
    # Public API: Review history
    # -----------------------------

    def record_review_change(
        self,
        location_id: str | uuid.UUID,
        *,
        reviewed: bool,
        at: str,
        is_automatic: bool,
    ) -> ReviewHistory:
        """Set a location's review state and append the matching history entry."""

        loc = self._require_location(location_id)
        updated = replace(
            loc, is_reviewed=reviewed, last_reviewed_at=at if reviewed else None
        )
        entry = ReviewHistory(
            id=new_uuid4(),
            action=ReviewAction.MARKED_REVIEWED if reviewed else ReviewAction.MARKED_UNREVIEWED,
            is_automatic=is_automatic,
            location_id=loc.id,
            created_at=at,
        )
        self._locations_by_id[str(loc.id)] = updated
        self._history.append(entry)
        self._touch()
        return entry

    def history_entries(self) -> list[ReviewHistory]:
        """Return every history entry in the order it was recorded."""

        return list(self._history)

    def review_history(self, location_id: str | uuid.UUID | None = None) -> list[ReviewHistory]:
        """Return history entries newest first, optionally for a single location."""

        entries = list(self._history)
        if location_id is not None:
            key = _key(location_id)
            entries = [e for e in entries if e.location_id is not None and str(e.location_id) == key]
        # Stable sort keeps later appends ahead of earlier ones within the same second
        entries.reverse()
        entries.sort(key=lambda e: e.created_at, reverse=True)
        return entries

    # -----------------------------
    # Public API: Counts
    # -----------------------------

    def get_counts(self) -> dict[str, int]:
        return {
            "locations_total": len(self._locations_by_id),
            "items_total": len(self._items_by_id),
            "tags_total": len(self._tags_by_id),
            "review_history_total": len(self._history),
            "reviewed_locations": sum(1 for loc in self._locations_by_id.values() if loc.is_reviewed),
        }

    # -----------------------------
    # Restore primitives (used by the backup codec)
    # -----------------------------

    def _restore_tag(self, tag: Tag) -> str:
        """Index a restored tag and return the id that now owns its name.

        A tag whose name folds onto an already restored tag is not stored;
        the caller remaps its links to the returned id.
        """
        folded = tag.name.casefold()
        holder = self._tag_id_by_name.get(folded)
        if holder is not None:
            return holder
        self._tags_by_id[str(tag.id)] = tag
        self._tag_id_by_name[folded] = str(tag.id)
        return str(tag.id)

    def _restore_location(self, loc: Location) -> None:
        self._add_location(loc)

    def _restore_item(self, item: Item, tag_keys: Iterable[str]) -> None:
        self._index_item(item)
        self._links.replace_item_tags(str(item.id), tag_keys)

    def _restore_history(self, entry: ReviewHistory) -> None:
        self._history.append(entry)

    def _has_location(self, location_key: str) -> bool:
        return location_key in self._locations_by_id

    def _has_tag(self, tag_key: str) -> bool:
        return tag_key in self._tags_by_id

    def _adopt(self, other: Repository) -> None:
        """Replace this repository's entire contents with ``other``'s, in one step."""

        self._locations_by_id = other._locations_by_id
        self._items_by_id = other._items_by_id
        self._tags_by_id = other._tags_by_id
        self._history = other._history
        self._children_ids_by_parent_id = other._children_ids_by_parent_id
        self._items_by_location_id = other._items_by_location_id
        self._tag_id_by_name = other._tag_id_by_name
        self._links = other._links
        self._touch()

    # -----------------------------
    # Introspection helpers for tests
    # -----------------------------

    def _debug_get_internal_indexes(self) -> dict[str, object]:
        return {
            "locations_by_id": self._locations_by_id,
            "items_by_id": self._items_by_id,
            "tags_by_id": self._tags_by_id,
            "children_ids_by_parent_id": self._children_ids_by_parent_id,
            "items_by_location_id": self._items_by_location_id,
            "tag_edges": self._links.edges(),
        }


def _normalize_move_destination(plan: ItemPlan | None, destination: str | None) -> str | None:
    if plan is not ItemPlan.MOVE or destination is None:
        return None
    trimmed = destination.strip()
    return trimmed or None

"""Tag/item relation manager for Cubby.

Items and tags form a many-to-many relation that must stay symmetric: an item
lists a tag iff the tag lists the item. ``TagLinks`` owns both directions and
only exposes paired mutations, so one side can never be edited alone.
"""

from __future__ import annotations

from collections.abc import Iterable


class TagLinks:
    """Symmetric item<->tag edge store keyed by string ids."""

    def __init__(self) -> None:
        self._tag_ids_by_item_id: dict[str, set[str]] = {}
        self._item_ids_by_tag_id: dict[str, set[str]] = {}

    def tags_of(self, item_id: str) -> frozenset[str]:
        return frozenset(self._tag_ids_by_item_id.get(item_id, ()))

    def items_of(self, tag_id: str) -> frozenset[str]:
        return frozenset(self._item_ids_by_tag_id.get(tag_id, ()))

    def replace_item_tags(self, item_id: str, tag_ids: Iterable[str]) -> None:
        """Replace the tag set of ``item_id``, updating both directions."""

        self.drop_item(item_id)
        new_tags = set(tag_ids)
        if not new_tags:
            return
        self._tag_ids_by_item_id[item_id] = new_tags
        for tag_id in new_tags:
            self._item_ids_by_tag_id.setdefault(tag_id, set()).add(item_id)

    def drop_item(self, item_id: str) -> None:
        for tag_id in self._tag_ids_by_item_id.pop(item_id, set()):
            members = self._item_ids_by_tag_id.get(tag_id)
            if members is None:
                continue
            members.discard(item_id)
            if not members:
                self._item_ids_by_tag_id.pop(tag_id, None)

    def drop_tag(self, tag_id: str) -> None:
        for item_id in self._item_ids_by_tag_id.pop(tag_id, set()):
            tags = self._tag_ids_by_item_id.get(item_id)
            if tags is None:
                continue
            tags.discard(tag_id)
            if not tags:
                self._tag_ids_by_item_id.pop(item_id, None)

    def edges(self) -> set[tuple[str, str]]:
        """Return every (item_id, tag_id) pair."""

        return {
            (item_id, tag_id)
            for item_id, tag_ids in self._tag_ids_by_item_id.items()
            for tag_id in tag_ids
        }

    def is_consistent(self) -> bool:
        reverse = {
            (item_id, tag_id)
            for tag_id, item_ids in self._item_ids_by_tag_id.items()
            for item_id in item_ids
        }
        return self.edges() == reverse

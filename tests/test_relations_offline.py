"""Offline tests for the TagLinks relation manager.

Scenarios:
- Replacing an item's tags updates both directions
- Dropping an item or a tag removes every edge that touches it
"""

from __future__ import annotations

from custom_components.cubby.relations import TagLinks


def test_replace_item_tags_is_symmetric() -> None:
    links = TagLinks()
    links.replace_item_tags("i1", ["t1", "t2"])
    links.replace_item_tags("i2", ["t2"])

    assert links.tags_of("i1") == {"t1", "t2"}
    assert links.items_of("t2") == {"i1", "i2"}
    assert links.is_consistent()

    # Replacing removes old back-references
    links.replace_item_tags("i1", ["t3"])
    assert links.tags_of("i1") == {"t3"}
    assert links.items_of("t1") == frozenset()
    assert links.items_of("t2") == {"i2"}
    assert links.edges() == {("i1", "t3"), ("i2", "t2")}
    assert links.is_consistent()


def test_replace_with_empty_set_clears_item() -> None:
    links = TagLinks()
    links.replace_item_tags("i1", ["t1"])
    links.replace_item_tags("i1", [])
    assert links.edges() == set()
    assert links.items_of("t1") == frozenset()


def test_drop_item_and_drop_tag() -> None:
    links = TagLinks()
    links.replace_item_tags("i1", ["t1", "t2"])
    links.replace_item_tags("i2", ["t1"])

    links.drop_tag("t1")
    assert links.edges() == {("i1", "t2")}
    assert links.tags_of("i2") == frozenset()

    links.drop_item("i1")
    assert links.edges() == set()
    assert links.is_consistent()

    # Dropping unknown ids is a no-op
    links.drop_item("missing")
    links.drop_tag("missing")

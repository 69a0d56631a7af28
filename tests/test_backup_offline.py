"""Offline tests for the backup codec.

Scenarios:
- Export encodes cross references as ids and uses the documented field names
- import(export(G)) reproduces every field and every relationship edge by id
- Locations listed child-before-parent restore correctly (two-pass parents)
- Dangling parent, location, tag and history references become "no relationship"
- Version 1 snapshots without book fields or tag colors import with defaults
- Malformed JSON, objects that are not snapshots, newer versions, schema
  violations, cycles and over-deep trees are rejected as corrupt and leave
  the target untouched
- Unknown plans import as unplanned; unknown history actions are dropped
- Duplicate ids are corrupt; case-duplicate tag names merge into the first tag
"""

from __future__ import annotations

import json
import logging
import uuid
from datetime import UTC, datetime

import pytest
from custom_components.cubby import backup, placement, review
from custom_components.cubby.const import DEFAULT_TAG_COLOR, MAX_LOCATION_DEPTH
from custom_components.cubby.exceptions import SnapshotCorruptError
from custom_components.cubby.models import ItemPlan
from custom_components.cubby.repository import Repository

NOW = datetime(2026, 2, 1, 8, 30, 0, tzinfo=UTC)


def _build_graph() -> Repository:
    repo = Repository()
    garage = repo.create_location(name="Garage")
    shelf = repo.create_location(name="Shelf", parent_id=garage.id)
    bin_ = repo.create_location(name="Bin", parent_id=shelf.id)
    attic = repo.create_location(name="Attic")
    tools = repo.create_tag("Tools", color="#FF8800")
    fragile = repo.create_tag("Fragile")

    repo.create_item(name="Hammer", location_id=shelf.id, tag_ids=[tools.id], plan="Keep")
    repo.create_item(
        name="Vase", location_id=attic.id, tag_ids=[fragile.id, tools.id], plan="Move",
        move_destination="New flat",
    )
    repo.create_item(book_title="Dune", book_author="Frank Herbert", location_id=bin_.id)
    repo.create_item(name="Loose")

    review.toggle_review(repo, garage.id, now=NOW)
    review.toggle_review(repo, attic.id, now=NOW)
    review.toggle_review(repo, attic.id, now=NOW)
    placement.move_location(repo, bin_.id, attic.id)
    return repo


def _graph_fingerprint(repo: Repository) -> dict:
    return {
        "locations": {
            str(loc.id): (
                loc.name,
                loc.created_at,
                str(loc.parent_id) if loc.parent_id else None,
                loc.is_reviewed,
                loc.last_reviewed_at,
            )
            for loc in repo.list_locations()
        },
        "items": {
            str(it.id): (
                it.name,
                it.created_at,
                str(it.location_id) if it.location_id else None,
                it.plan,
                it.move_destination,
                it.is_book,
                it.book_title,
                it.book_author,
                frozenset(str(t.id) for t in repo.tags_for_item(it.id)),
            )
            for it in repo.list_items()
        },
        "tags": {
            str(t.id): (t.name, t.color, t.created_at, frozenset(str(i.id) for i in repo.items_for_tag(t.id)))
            for t in repo.list_tags()
        },
        "history": [
            (str(e.id), e.created_at, e.action, e.is_automatic, str(e.location_id) if e.location_id else None)
            for e in repo.history_entries()
        ],
    }


def test_export_shape_uses_ids() -> None:
    repo = _build_graph()
    snap = backup.export_snapshot(repo, now=NOW)

    assert snap["version"] == backup.SNAPSHOT_VERSION
    assert snap["date"] == "2026-02-01T08:30:00Z"
    assert set(snap) == {"version", "date", "locations", "items", "tags", "reviewHistory"}
    assert set(snap["locations"][0]) == {
        "id", "name", "dateAdded", "parentID", "isReviewed", "lastReviewedDate",
    }
    assert set(snap["items"][0]) == {
        "id", "name", "dateAdded", "locationID", "tagIDs", "plan", "moveDestination",
        "isBook", "bookTitle", "bookAuthor",
    }
    assert set(snap["tags"][0]) == {"id", "name", "color", "dateAdded"}
    assert set(snap["reviewHistory"][0]) == {"id", "date", "action", "isAutomatic", "locationID"}

    vase = next(i for i in snap["items"] if i["name"] == "Vase")
    assert vase["plan"] == "Move"
    assert vase["moveDestination"] == "New flat"
    assert len(vase["tagIDs"]) == 2
    assert all(isinstance(t, str) for t in vase["tagIDs"])

    # JSON encodable
    assert json.loads(backup.dumps_snapshot(snap)) == snap


def test_round_trip_preserves_every_field_and_edge() -> None:
    original = _build_graph()
    text = backup.dumps_snapshot(backup.export_snapshot(original, now=NOW))

    restored = Repository()
    restored.create_location(name="Will be replaced")
    counts = backup.import_snapshot(restored, text)

    assert _graph_fingerprint(restored) == _graph_fingerprint(original)
    assert counts == original.get_counts()
    assert (
        restored._debug_get_internal_indexes()["tag_edges"]
        == original._debug_get_internal_indexes()["tag_edges"]
    )
    assert restored.tag_links_consistent()
    restored.validate_structure()


def test_round_trip_from_mapping_and_bytes() -> None:
    original = _build_graph()
    snap = backup.export_snapshot(original, now=NOW)

    from_dict = backup.repository_from_snapshot(snap)
    from_bytes = backup.repository_from_snapshot(backup.dumps_snapshot(snap).encode("utf-8"))
    assert _graph_fingerprint(from_dict) == _graph_fingerprint(original)
    assert _graph_fingerprint(from_bytes) == _graph_fingerprint(original)
    assert from_dict.generation == 0


def test_children_listed_before_parents_restore() -> None:
    original = _build_graph()
    snap = backup.export_snapshot(original, now=NOW)
    snap["locations"].reverse()

    restored = backup.repository_from_snapshot(snap)
    assert _graph_fingerprint(restored)["locations"] == _graph_fingerprint(original)["locations"]


def _minimal_snapshot(**overrides) -> dict:
    snap = {
        "version": 2,
        "date": "2026-01-01T00:00:00Z",
        "locations": [],
        "items": [],
        "tags": [],
        "reviewHistory": [],
    }
    snap.update(overrides)
    return snap


def test_dangling_references_become_no_relationship() -> None:
    loc_id = str(uuid.uuid4())
    missing = str(uuid.uuid4())
    tag_id = str(uuid.uuid4())
    item_id = str(uuid.uuid4())
    snap = _minimal_snapshot(
        locations=[
            {"id": loc_id, "name": "Orphan", "dateAdded": "2026-01-01T00:00:00Z", "parentID": missing},
        ],
        tags=[{"id": tag_id, "name": "Real", "dateAdded": "2026-01-01T00:00:00Z"}],
        items=[
            {
                "id": item_id,
                "name": "Thing",
                "dateAdded": "2026-01-01T00:00:00Z",
                "locationID": missing,
                "tagIDs": [tag_id, missing],
            }
        ],
        reviewHistory=[
            {
                "id": str(uuid.uuid4()),
                "date": "2026-01-01T00:00:00Z",
                "action": "Marked as Reviewed",
                "isAutomatic": False,
                "locationID": missing,
            }
        ],
    )

    repo = backup.repository_from_snapshot(snap)

    assert repo.get_location(loc_id).parent_id is None
    assert [loc.name for loc in repo.list_root_locations()] == ["Orphan"]
    item = repo.get_item(item_id)
    assert item.location_id is None
    assert [str(t.id) for t in repo.tags_for_item(item_id)] == [tag_id]
    assert repo.history_entries()[0].location_id is None


def test_version_one_snapshot_imports_with_defaults() -> None:
    tag_id = str(uuid.uuid4())
    item_id = str(uuid.uuid4())
    snap = {
        "version": 1,
        "date": "2025-06-01T10:00:00Z",
        "locations": [],
        "items": [
            {
                "id": item_id,
                "name": "Old thing",
                "dateAdded": "2025-06-01T10:00:00Z",
                "locationID": None,
                "tagIDs": [tag_id],
                "plan": "Sell",
            }
        ],
        "tags": [{"id": tag_id, "name": "Legacy", "dateAdded": "2025-06-01T10:00:00Z"}],
        "reviewHistory": [],
    }

    repo = backup.repository_from_snapshot(json.dumps(snap))
    item = repo.get_item(item_id)
    assert item.is_book is False
    assert item.book_title is None
    assert item.plan is ItemPlan.SELL
    assert item.move_destination is None
    assert repo.get_tag(tag_id).color == DEFAULT_TAG_COLOR


def test_timestamps_are_normalized() -> None:
    loc_id = str(uuid.uuid4())
    snap = _minimal_snapshot(
        locations=[
            {
                "id": loc_id,
                "name": "Box",
                "dateAdded": "2026-01-01T02:00:00.123456+02:00",
                "isReviewed": True,
                "lastReviewedDate": "2026-01-02T00:00:00",
            }
        ]
    )
    loc = backup.repository_from_snapshot(snap).get_location(loc_id)
    assert loc.created_at == "2026-01-01T00:00:00Z"
    assert loc.last_reviewed_at == "2026-01-02T00:00:00Z"


@pytest.mark.parametrize(
    "raw",
    [
        "{not json",
        b"\xff\xfe",
        "[]",
        json.dumps(_minimal_snapshot(version=99)),
        json.dumps(_minimal_snapshot(version="two")),
        json.dumps(_minimal_snapshot(locations=[{"id": "nope", "name": "X", "dateAdded": "2026-01-01T00:00:00Z"}])),
        json.dumps(_minimal_snapshot(items=[{"id": str(uuid.uuid4()), "name": "X", "dateAdded": "yesterday"}])),
        json.dumps(_minimal_snapshot(tags="not a list")),
        "{}",
        json.dumps({"foo": 1}),
        json.dumps({"version": 1}),
        json.dumps({k: v for k, v in _minimal_snapshot().items() if k != "version"}),
        json.dumps(_minimal_snapshot(version=1, tags="x")),
        json.dumps(_minimal_snapshot(version=1, reviewHistory=None)),
    ],
)
def test_corrupt_snapshots_are_rejected_without_mutation(raw) -> None:
    target = _build_graph()
    before = _graph_fingerprint(target)

    with pytest.raises(SnapshotCorruptError):
        backup.import_snapshot(target, raw)

    assert _graph_fingerprint(target) == before


def test_cyclic_snapshot_is_corrupt() -> None:
    a, b = str(uuid.uuid4()), str(uuid.uuid4())
    snap = _minimal_snapshot(
        locations=[
            {"id": a, "name": "A", "dateAdded": "2026-01-01T00:00:00Z", "parentID": b},
            {"id": b, "name": "B", "dateAdded": "2026-01-01T00:00:00Z", "parentID": a},
        ]
    )
    with pytest.raises(SnapshotCorruptError):
        backup.repository_from_snapshot(snap)


def test_over_deep_snapshot_is_corrupt() -> None:
    ids = [str(uuid.uuid4()) for _ in range(MAX_LOCATION_DEPTH + 1)]
    locations = [
        {
            "id": loc_id,
            "name": f"L{i}",
            "dateAdded": "2026-01-01T00:00:00Z",
            "parentID": ids[i - 1] if i else None,
        }
        for i, loc_id in enumerate(ids)
    ]
    with pytest.raises(SnapshotCorruptError):
        backup.repository_from_snapshot(_minimal_snapshot(locations=locations))

    # One level less is fine
    ok = backup.repository_from_snapshot(_minimal_snapshot(locations=locations[:-1]))
    assert ok.depth(ids[-2]) == MAX_LOCATION_DEPTH


def test_duplicate_ids_are_corrupt() -> None:
    loc_id = str(uuid.uuid4())
    dup_locations = [
        {"id": loc_id, "name": "A", "dateAdded": "2026-01-01T00:00:00Z"},
        {"id": loc_id, "name": "B", "dateAdded": "2026-01-01T00:00:00Z"},
    ]
    with pytest.raises(SnapshotCorruptError):
        backup.repository_from_snapshot(_minimal_snapshot(locations=dup_locations))

    tag_id = str(uuid.uuid4())
    dup_tags = [
        {"id": tag_id, "name": "Tools", "dateAdded": "2026-01-01T00:00:00Z"},
        {"id": tag_id, "name": "Garden", "dateAdded": "2026-01-01T00:00:00Z"},
    ]
    with pytest.raises(SnapshotCorruptError):
        backup.repository_from_snapshot(_minimal_snapshot(tags=dup_tags))


def test_case_duplicate_tag_names_merge_into_first_tag(caplog: pytest.LogCaptureFixture) -> None:
    first, second = str(uuid.uuid4()), str(uuid.uuid4())
    vase, cup, plate = (str(uuid.uuid4()) for _ in range(3))
    snap = _minimal_snapshot(
        tags=[
            {"id": first, "name": "Fragile", "color": "#FF0000", "dateAdded": "2026-01-01T00:00:00Z"},
            {"id": second, "name": "fragile", "dateAdded": "2026-01-01T00:00:00Z"},
        ],
        items=[
            {"id": vase, "name": "Vase", "dateAdded": "2026-01-01T00:00:00Z", "tagIDs": [first]},
            {"id": cup, "name": "Cup", "dateAdded": "2026-01-01T00:00:00Z", "tagIDs": [second]},
            {"id": plate, "name": "Plate", "dateAdded": "2026-01-01T00:00:00Z", "tagIDs": [first, second]},
        ],
    )
    target = Repository()
    target.create_location(name="Will be replaced")

    with caplog.at_level(logging.WARNING, logger="custom_components.cubby.backup"):
        counts = backup.import_snapshot(target, json.dumps(snap))

    assert counts["tags_total"] == 1
    assert counts["locations_total"] == 0
    [tag] = target.list_tags()
    assert str(tag.id) == first
    assert tag.name == "Fragile"
    assert tag.color == "#FF0000"
    assert {it.name for it in target.items_for_tag(first)} == {"Vase", "Cup", "Plate"}
    for item_id in (vase, cup, plate):
        assert [str(t.id) for t in target.tags_for_item(item_id)] == [first]
    assert target.tag_links_consistent()
    [record] = [r for r in caplog.records if getattr(r, "op", None) == "build_repository"]
    assert record.tag_id == second
    assert record.merged_into == first


def test_unknown_plan_and_action_are_tolerated() -> None:
    item_id = str(uuid.uuid4())
    snap = _minimal_snapshot(
        items=[
            {
                "id": item_id,
                "name": "Thing",
                "dateAdded": "2026-01-01T00:00:00Z",
                "plan": "Recycle",
                "moveDestination": "somewhere",
            }
        ],
        reviewHistory=[
            {
                "id": str(uuid.uuid4()),
                "date": "2026-01-01T00:00:00Z",
                "action": "Marked as Maybe",
            }
        ],
    )
    repo = backup.repository_from_snapshot(snap)
    item = repo.get_item(item_id)
    assert item.plan is None
    assert item.move_destination is None
    assert repo.history_entries() == []


def test_half_filled_book_fields_import_as_plain_item() -> None:
    item_id = str(uuid.uuid4())
    snap = _minimal_snapshot(
        items=[
            {
                "id": item_id,
                "name": "Mystery",
                "dateAdded": "2026-01-01T00:00:00Z",
                "isBook": True,
                "bookTitle": "Only a title",
                "bookAuthor": None,
            }
        ]
    )
    item = backup.repository_from_snapshot(snap).get_item(item_id)
    assert item.is_book is False
    assert item.book_title is None
    assert item.name == "Mystery"

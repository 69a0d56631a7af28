"""Offline tests for the move/placement engine.

Scenarios:
- Garage/Shelf/Storage Unit: subtree move succeeds, items stay, ancestor-into-descendant is rejected
- Every (subtree, destination in subtree) pair is rejected with CycleRejectedError
- Boundary: destination.depth + 1 + deepest == 15 succeeds; one more fails
- A leaf cannot move under a depth-15 node
- Rejected moves perform no mutation
- Randomized create/move sequences never produce a node deeper than 15
- Item moves accept any location or none
- Batch moves validate every target first and skip failing ones
- Move targets omit the subtree and flag over-deep destinations
"""

from __future__ import annotations

import random
import uuid

import pytest
from custom_components.cubby import placement
from custom_components.cubby.const import MAX_LOCATION_DEPTH
from custom_components.cubby.exceptions import (
    CubbyError,
    CycleRejectedError,
    DepthExceededError,
    NotFoundError,
    ValidationError,
)
from custom_components.cubby.placement import ItemMove, LocationMove
from custom_components.cubby.repository import Repository


def _chain(repo: Repository, length: int, *, parent=None, prefix: str = "L") -> list:
    locs = []
    for level in range(1, length + 1):
        loc = repo.create_location(name=f"{prefix}{level}", parent_id=parent)
        locs.append(loc)
        parent = loc.id
    return locs


def _max_depth(repo: Repository) -> int:
    return max((repo.depth(loc.id) for loc in repo.list_locations()), default=0)


def test_garage_shelf_storage_unit_scenario(repo: Repository) -> None:
    garage = repo.create_location(name="Garage")
    shelf = repo.create_location(name="Shelf", parent_id=garage.id)
    hammer = repo.create_item(name="Hammer", location_id=shelf.id)
    assert repo.depth(garage.id) == 1
    assert repo.depth(shelf.id) == 2

    storage = repo.create_location(name="Storage Unit")
    placement.move_location(repo, shelf.id, storage.id)

    assert repo.depth(shelf.id) == 2
    assert repo.get_location(shelf.id).parent_id == storage.id
    assert repo.get_item(hammer.id).location_id == shelf.id
    assert repo.list_children(garage.id) == []

    with pytest.raises(CycleRejectedError):
        placement.move_location(repo, storage.id, shelf.id)
    assert repo.get_location(storage.id).parent_id is None


def test_every_move_into_own_subtree_is_rejected(repo: Repository) -> None:
    root = repo.create_location(name="Root")
    a = repo.create_location(name="A", parent_id=root.id)
    b = repo.create_location(name="B", parent_id=root.id)
    a1 = repo.create_location(name="A1", parent_id=a.id)
    repo.create_location(name="A2", parent_id=a.id)
    repo.create_location(name="A11", parent_id=a1.id)
    repo.create_location(name="B1", parent_id=b.id)

    for loc in repo.list_locations():
        for dest_key in repo.collect_self_and_descendant_ids(loc.id):
            generation = repo.generation
            with pytest.raises(CycleRejectedError):
                placement.validate_location_move(repo, loc.id, dest_key)
            with pytest.raises(CycleRejectedError):
                placement.move_location(repo, loc.id, dest_key)
            assert repo.generation == generation


def test_subtree_depth_boundary(repo: Repository) -> None:
    # Subtree of height 3 (deepest distance 2)
    subtree = _chain(repo, 3, prefix="S")
    assert repo.deepest_subtree_distance(subtree[0].id) == 2

    # Destination at depth 12: 12 + 1 + 2 == 15 is allowed
    anchor = _chain(repo, 13, prefix="D")
    ok_dest = anchor[11]
    too_deep = anchor[12]
    assert repo.depth(ok_dest.id) + 1 + 2 == MAX_LOCATION_DEPTH

    with pytest.raises(DepthExceededError):
        placement.move_location(repo, subtree[0].id, too_deep.id)
    assert repo.get_location(subtree[0].id).parent_id is None

    placement.move_location(repo, subtree[0].id, ok_dest.id)
    assert repo.depth(subtree[-1].id) == MAX_LOCATION_DEPTH
    repo.validate_structure()


def test_leaf_cannot_move_under_depth_fifteen(repo: Repository) -> None:
    chain = _chain(repo, MAX_LOCATION_DEPTH)
    leaf = repo.create_location(name="Leaf")

    with pytest.raises(DepthExceededError):
        placement.move_location(repo, leaf.id, chain[-1].id)
    assert repo.get_location(leaf.id).parent_id is None

    placement.move_location(repo, leaf.id, chain[-2].id)
    assert repo.depth(leaf.id) == MAX_LOCATION_DEPTH


def test_location_move_to_none_or_missing_is_rejected(repo: Repository) -> None:
    loc = repo.create_location(name="Box")
    with pytest.raises(ValidationError):
        placement.validate_location_move(repo, loc.id, None)
    with pytest.raises(NotFoundError):
        placement.validate_location_move(repo, loc.id, uuid.uuid4())
    with pytest.raises(NotFoundError):
        placement.validate_location_move(repo, uuid.uuid4(), loc.id)


def test_validate_returns_plan_without_mutation(repo: Repository) -> None:
    a = repo.create_location(name="A")
    b = repo.create_location(name="B")
    generation = repo.generation

    plan = placement.validate_location_move(repo, a.id, b.id)
    assert plan == LocationMove(location_id=str(a.id), destination_id=str(b.id))
    assert repo.generation == generation
    assert repo.get_location(a.id).parent_id is None

    moved = placement.commit(repo, plan)
    assert moved.parent_id == b.id


def test_randomized_sequences_never_exceed_depth(repo: Repository) -> None:
    rng = random.Random(20240615)
    for _ in range(400):
        locations = repo.list_locations()
        if not locations or rng.random() < 0.45:
            parent = rng.choice(locations) if locations and rng.random() < 0.85 else None
            try:
                repo.create_location(
                    name=f"N{rng.randrange(10_000)}",
                    parent_id=parent.id if parent is not None else None,
                )
            except DepthExceededError:
                assert parent is not None and repo.depth(parent.id) >= MAX_LOCATION_DEPTH
        else:
            target = rng.choice(locations)
            dest = rng.choice(locations)
            try:
                placement.move_location(repo, target.id, dest.id)
            except (CycleRejectedError, DepthExceededError):
                pass
        assert _max_depth(repo) <= MAX_LOCATION_DEPTH
        for loc in repo.list_locations():
            expected = 1 if loc.parent_id is None else 1 + repo.depth(loc.parent_id)
            assert repo.depth(loc.id) == expected
    repo.validate_structure()


def test_item_moves(repo: Repository) -> None:
    chain = _chain(repo, MAX_LOCATION_DEPTH)
    item = repo.create_item(name="Key", location_id=chain[0].id)

    # Items have no depth constraint
    assert placement.move_item(repo, item.id, chain[-1].id).location_id == chain[-1].id
    assert repo.items_in_location(chain[0].id) == []

    plan = placement.validate_item_move(repo, item.id, None)
    assert plan == ItemMove(item_id=str(item.id), destination_id=None)
    assert placement.commit(repo, plan).location_id is None
    assert repo.items_in_location(chain[-1].id) == []

    with pytest.raises(NotFoundError):
        placement.move_item(repo, item.id, uuid.uuid4())


def test_move_batch_partial_success(repo: Repository) -> None:
    chain = _chain(repo, 14)
    dest = chain[-1]  # depth 14
    shallow = repo.create_location(name="Shallow")
    deep_root = repo.create_location(name="Deep")
    repo.create_location(name="Deep child", parent_id=deep_root.id)
    item_a = repo.create_item(name="A")
    item_b = repo.create_item(name="B", location_id=shallow.id)
    missing = uuid.uuid4()

    result = placement.move_batch(
        repo,
        dest.id,
        item_ids=[item_a.id, item_b.id, missing],
        location_ids=[shallow.id, deep_root.id, chain[0].id],
    )

    assert set(result.moved_items) == {str(item_a.id), str(item_b.id)}
    assert result.moved_locations == [str(shallow.id)]
    assert isinstance(result.skipped[str(missing)], NotFoundError)
    assert isinstance(result.skipped[str(deep_root.id)], DepthExceededError)
    assert isinstance(result.skipped[str(chain[0].id)], CycleRejectedError)
    assert all(isinstance(exc, CubbyError) for exc in result.skipped.values())

    assert repo.get_location(shallow.id).parent_id == dest.id
    assert repo.get_location(deep_root.id).parent_id is None
    assert repo.get_item(item_b.id).location_id == dest.id
    assert _max_depth(repo) <= MAX_LOCATION_DEPTH


def test_move_batch_to_none_moves_items_only(repo: Repository) -> None:
    loc = repo.create_location(name="Box")
    other = repo.create_location(name="Other")
    item = repo.create_item(name="Thing", location_id=loc.id)

    result = placement.move_batch(repo, None, item_ids=[item.id], location_ids=[other.id])
    assert result.moved_items == [str(item.id)]
    assert isinstance(result.skipped[str(other.id)], ValidationError)
    assert repo.get_item(item.id).location_id is None


def test_move_targets(repo: Repository) -> None:
    chain = _chain(repo, 14)
    mover = repo.create_location(name="Mover")
    repo.create_location(name="Mover child", parent_id=mover.id)

    targets = placement.move_targets(repo, mover.id)
    ids = {str(t.location.id) for t in targets}
    assert str(mover.id) not in ids
    by_id = {str(t.location.id): t for t in targets}
    # Depth 13 + 1 + 1 == 15 is allowed; depth 14 is not
    assert by_id[str(chain[12].id)].allowed is True
    assert by_id[str(chain[13].id)].allowed is False
    assert by_id[str(chain[13].id)].depth == 14

    # For items every location is a valid target
    item_targets = placement.move_targets(repo)
    assert len(item_targets) == len(repo.list_locations())
    assert all(t.allowed for t in item_targets)

    assert placement.forbidden_destination_ids(repo, None) == set()
    assert placement.forbidden_destination_ids(repo, mover.id) == repo.collect_self_and_descendant_ids(
        mover.id
    )

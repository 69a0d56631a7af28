"""Move/placement engine for Cubby.

All re-parenting goes through a two-phase protocol: ``validate_*`` inspects
the repository and returns an immutable move plan (or raises), and ``commit``
applies exactly one reference change. Nothing is mutated when validation
fails.

Depth validation for a location move looks at the deepest leaf of the moving
subtree, not just the moved node: re-parenting a shallow node with deep
descendants must not push any descendant past ``MAX_LOCATION_DEPTH``.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Iterable
from dataclasses import dataclass, field

from .const import DOMAIN, MAX_LOCATION_DEPTH
from .exceptions import CubbyError, CycleRejectedError, DepthExceededError, ValidationError
from .models import Item, Location
from .repository import Repository

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class ItemMove:
    """Validated plan to place an item in a location (or in none)."""

    item_id: str
    destination_id: str | None


@dataclass(frozen=True)
class LocationMove:
    """Validated plan to re-parent a location subtree."""

    location_id: str
    destination_id: str


MovePlan = ItemMove | LocationMove


@dataclass
class BatchMoveResult:
    """Outcome of moving several targets to one destination."""

    moved_items: list[str] = field(default_factory=list)
    moved_locations: list[str] = field(default_factory=list)
    skipped: dict[str, CubbyError] = field(default_factory=dict)


@dataclass(frozen=True)
class MoveTarget:
    """A candidate destination for the destination picker."""

    location: Location
    depth: int
    allowed: bool


# -----------------------------
# Validate
# -----------------------------


def validate_item_move(
    repo: Repository, item_id: str | uuid.UUID, destination_id: str | uuid.UUID | None
) -> ItemMove:
    """Items have no depth constraint; the destination may be any location or none."""

    item = repo.get_item(item_id)
    destination_key: str | None = None
    if destination_id is not None:
        destination_key = str(repo.get_location(destination_id).id)
    return ItemMove(item_id=str(item.id), destination_id=destination_key)


def validate_location_move(
    repo: Repository, location_id: str | uuid.UUID, destination_id: str | uuid.UUID | None
) -> LocationMove:
    """Check cycle and depth rules for moving a subtree under ``destination_id``."""

    location = repo.get_location(location_id)
    if destination_id is None:
        raise ValidationError("a location can only be moved under another location")
    destination = repo.get_location(destination_id)

    subtree = repo.collect_self_and_descendant_ids(location.id)
    if str(destination.id) in subtree:
        raise CycleRejectedError("cannot move a location into itself or one of its descendants")

    resulting_depth = (
        repo.depth(destination.id) + 1 + repo.deepest_subtree_distance(location.id)
    )
    if resulting_depth > MAX_LOCATION_DEPTH:
        raise DepthExceededError(
            f"moving here would exceed the {MAX_LOCATION_DEPTH}-level limit"
        )
    return LocationMove(location_id=str(location.id), destination_id=str(destination.id))


# -----------------------------
# Commit
# -----------------------------


def commit(repo: Repository, plan: MovePlan) -> Item | Location:
    """Apply a validated plan. This is the only mutation a move performs."""

    if isinstance(plan, ItemMove):
        result: Item | Location = repo._commit_item_location(plan.item_id, plan.destination_id)
        target_id = plan.item_id
        kind = "item"
    else:
        result = repo._commit_location_parent(plan.location_id, plan.destination_id)
        target_id = plan.location_id
        kind = "location"
    LOGGER.debug(
        "Move committed",
        extra={
            "domain": DOMAIN,
            "op": "move_commit",
            "kind": kind,
            "target_id": target_id,
            "destination_id": plan.destination_id,
        },
    )
    return result


def move_item(
    repo: Repository, item_id: str | uuid.UUID, destination_id: str | uuid.UUID | None
) -> Item:
    return commit(repo, validate_item_move(repo, item_id, destination_id))  # type: ignore[return-value]


def move_location(
    repo: Repository, location_id: str | uuid.UUID, destination_id: str | uuid.UUID
) -> Location:
    return commit(repo, validate_location_move(repo, location_id, destination_id))  # type: ignore[return-value]


def move_batch(
    repo: Repository,
    destination_id: str | uuid.UUID | None,
    *,
    item_ids: Iterable[str | uuid.UUID] = (),
    location_ids: Iterable[str | uuid.UUID] = (),
) -> BatchMoveResult:
    """Move several items and/or subtrees to one destination.

    Every target is validated against the state before any commit. Targets
    that fail are skipped and reported; the others still move. Committing a
    valid subtree never invalidates another valid one: the destination lies
    outside every accepted subtree, so its depth cannot change.
    """

    result = BatchMoveResult()
    plans: list[MovePlan] = []
    for item_id in item_ids:
        try:
            plans.append(validate_item_move(repo, item_id, destination_id))
        except CubbyError as exc:
            result.skipped[str(item_id)] = exc
    for location_id in location_ids:
        try:
            plans.append(validate_location_move(repo, location_id, destination_id))
        except CubbyError as exc:
            result.skipped[str(location_id)] = exc

    for plan in plans:
        commit(repo, plan)
        if isinstance(plan, ItemMove):
            result.moved_items.append(plan.item_id)
        else:
            result.moved_locations.append(plan.location_id)

    LOGGER.debug(
        "Batch move finished",
        extra={
            "domain": DOMAIN,
            "op": "move_batch",
            "destination_id": str(destination_id) if destination_id is not None else None,
            "moved": len(plans),
            "skipped": len(result.skipped),
        },
    )
    return result


# -----------------------------
# Destination picker support
# -----------------------------


def forbidden_destination_ids(repo: Repository, location_id: str | uuid.UUID | None) -> set[str]:
    """Ids a target may never be moved into: self and descendants for a location."""

    if location_id is None:
        return set()
    return repo.collect_self_and_descendant_ids(location_id)


def move_targets(repo: Repository, location_id: str | uuid.UUID | None = None) -> list[MoveTarget]:
    """List candidate destinations in name-path order.

    For an item (``location_id`` is None) every location is allowed. For a
    location subtree, forbidden ids are omitted and destinations that would
    break the depth cap are marked not allowed.
    """

    forbidden = forbidden_destination_ids(repo, location_id)
    extra_depth = repo.deepest_subtree_distance(location_id) if location_id is not None else 0
    targets: list[MoveTarget] = []
    for loc in repo.list_locations():
        if str(loc.id) in forbidden:
            continue
        depth = repo.depth(loc.id)
        allowed = location_id is None or depth + 1 + extra_depth <= MAX_LOCATION_DEPTH
        targets.append(MoveTarget(location=loc, depth=depth, allowed=allowed))
    targets.sort(key=lambda t: repo.location_path(t.location.id).sort_key)
    return targets

"""Read-only queries over the Cubby repository.

These helpers shape repository data for display: recursive listings with
paths, grouping by plan, the book catalogue, free-text search, triage lists
and duplicate detection. They never mutate the repository.
"""

from __future__ import annotations

import uuid
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Literal

from .const import DUPLICATE_SIMILARITY_THRESHOLD
from .exceptions import ValidationError
from .models import Item, ItemPlan, name_similarity, normalize_text_for_sort
from .repository import Repository

BookSort = Literal["title", "author", "date_added", "location"]
BookGroup = Literal["none", "author", "location"]

UNKNOWN_AUTHOR = "Unknown Author"
UNKNOWN_LOCATION = "Unknown Location"


@dataclass(frozen=True)
class ItemListing:
    """An item paired with the display path of its location."""

    item: Item
    path: str


@dataclass(frozen=True)
class DuplicateCandidate:
    item: Item
    path: str
    similarity: float


def with_paths(repo: Repository, items: Iterable[Item]) -> list[ItemListing]:
    return [
        ItemListing(item=item, path=repo.item_location_path(item.id).display_path)
        for item in items
    ]


def recursive_items_with_paths(repo: Repository, location_id: str | uuid.UUID) -> list[ItemListing]:
    """Items under a location's subtree, each with its root-to-leaf path."""

    return with_paths(repo, repo.items_recursively(location_id))


def items_by_plan(repo: Repository) -> list[tuple[ItemPlan, list[Item]]]:
    """Group planned items under every plan value, in plan order, empty groups included."""

    grouped: dict[ItemPlan, list[Item]] = {plan: [] for plan in ItemPlan}
    for item in repo.list_items():
        if item.plan is not None:
            grouped[item.plan].append(item)
    return [(plan, grouped[plan]) for plan in ItemPlan]


def search_items(repo: Repository, query: str) -> list[ItemListing]:
    """Case-insensitive substring match on item names."""

    needle = normalize_text_for_sort(query or "")
    if not needle:
        return []
    matches = [it for it in repo.list_items() if needle in normalize_text_for_sort(it.name)]
    return with_paths(repo, matches)


def unplanned_items(
    repo: Repository,
    *,
    location_id: str | uuid.UUID | None = None,
    include_books: bool = True,
) -> list[Item]:
    """Items without a plan, for triage; optionally limited to a subtree."""

    source = repo.items_recursively(location_id) if location_id is not None else repo.list_items()
    result = [it for it in source if it.plan is None and (include_books or not it.is_book)]
    result.sort(key=lambda it: (normalize_text_for_sort(it.display_name), str(it.id)))
    return result


def _location_name(repo: Repository, item: Item) -> str:
    if item.location_id is None:
        return ""
    return repo.get_location(item.location_id).name


def list_books(
    repo: Repository,
    *,
    search: str | None = None,
    sort_by: BookSort = "title",
    group_by: BookGroup = "none",
) -> list[tuple[str, list[Item]]]:
    """Return the book catalogue as (group key, books) pairs.

    Without grouping a single group with an empty key is returned. Groups are
    ordered by key; books inside a group follow ``sort_by``.
    """

    if sort_by not in ("title", "author", "date_added", "location"):
        raise ValidationError("sort_by must be one of: title, author, date_added, location")
    if group_by not in ("none", "author", "location"):
        raise ValidationError("group_by must be one of: none, author, location")

    books = [it for it in repo.list_items() if it.is_book]
    needle = (search or "").strip().casefold()
    if needle:
        books = [
            b
            for b in books
            if needle in (b.book_title or "").casefold() or needle in (b.book_author or "").casefold()
        ]

    books.sort(key=lambda b: str(b.id))
    if sort_by == "date_added":
        books.sort(key=lambda b: b.created_at, reverse=True)
    elif sort_by == "author":
        books.sort(key=lambda b: normalize_text_for_sort(b.book_author or ""))
    elif sort_by == "location":
        books.sort(key=lambda b: normalize_text_for_sort(_location_name(repo, b)))
    else:
        books.sort(key=lambda b: normalize_text_for_sort(b.book_title or ""))

    if group_by == "none":
        return [("", books)]

    groups: dict[str, list[Item]] = {}
    for book in books:
        if group_by == "author":
            key = book.book_author or UNKNOWN_AUTHOR
        else:
            key = _location_name(repo, book) or UNKNOWN_LOCATION
        groups.setdefault(key, []).append(book)
    return sorted(groups.items(), key=lambda pair: pair[0])


def find_possible_duplicates(
    repo: Repository,
    name: str,
    *,
    exclude_item_id: str | uuid.UUID | None = None,
    threshold: float = DUPLICATE_SIMILARITY_THRESHOLD,
) -> list[DuplicateCandidate]:
    """Existing items whose names are at least ``threshold`` similar to ``name``."""

    excluded = str(exclude_item_id) if exclude_item_id is not None else None
    candidates: list[DuplicateCandidate] = []
    for item in repo.list_items():
        if str(item.id) == excluded:
            continue
        score = name_similarity(name, item.name)
        if score >= threshold:
            path = repo.item_location_path(item.id).display_path
            candidates.append(DuplicateCandidate(item=item, path=path, similarity=score))
    candidates.sort(key=lambda c: (-c.similarity, normalize_text_for_sort(c.item.name)))
    return candidates

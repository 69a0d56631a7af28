"""Typed models and validation helpers for Cubby.

This module defines the persisted shapes for Location, Item, Tag and
ReviewHistory, the disposition and review enums, and small helpers for names,
timestamps, sort keys, book display names and duplicate detection.

The intent is to keep these models framework-agnostic and free of I/O. Higher
layers (repository, backup codec, services) are expected to compose these
helpers.
"""

from __future__ import annotations

import unicodedata
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Final

from .const import DEFAULT_TAG_COLOR, PATH_SEPARATOR
from .exceptions import CubbyError, InvalidNameError, ValidationError

NAME_MAX_LENGTH = 120


class ItemPlan(StrEnum):
    """Intended next action for an item. Declaration order is display order."""

    KEEP = "Keep"
    THROW_AWAY = "Throw Away"
    SELL = "Sell"
    CHARITY = "Charity"
    MOVE = "Move"
    FIX = "Fix"


class ReviewAction(StrEnum):
    """Review state transition recorded in the review ledger."""

    MARKED_REVIEWED = "Marked as Reviewed"
    MARKED_UNREVIEWED = "Marked as Unreviewed"


@dataclass(frozen=True)
class LocationPath:
    """Path data for a location or item.

    Attributes:
        id_path: Ordered list of location ids from root to leaf.
        name_path: Ordered list of names from root to leaf.
        display_path: Human-readable path (e.g., "Garage › Shelf A › Bin 3").
        sort_key: Case-insensitive key suitable for lexicographic sorting.
    """

    id_path: list[uuid.UUID]
    name_path: list[str]
    display_path: str
    sort_key: str


EMPTY_LOCATION_PATH = LocationPath(id_path=[], name_path=[], display_path="", sort_key="")


@dataclass
class Location:
    """Persisted shape for a location node."""

    id: uuid.UUID
    name: str
    parent_id: uuid.UUID | None = None
    created_at: str = field(default_factory=lambda: iso_utc_now())
    is_reviewed: bool = False
    last_reviewed_at: str | None = None


@dataclass
class Item:
    """Persisted shape for an inventory item.

    Tags are not stored here; the repository's relation manager owns the
    item/tag edges in both directions.
    """

    id: uuid.UUID
    name: str
    location_id: uuid.UUID | None = None
    created_at: str = field(default_factory=lambda: iso_utc_now())
    plan: ItemPlan | None = None
    move_destination: str | None = None
    is_book: bool = False
    book_title: str | None = None
    book_author: str | None = None

    @property
    def display_name(self) -> str:
        if self.is_book and self.book_title and self.book_author:
            return book_display_name(self.book_title, self.book_author)
        return self.name


@dataclass
class Tag:
    """Persisted shape for a user-defined label."""

    id: uuid.UUID
    name: str
    color: str = DEFAULT_TAG_COLOR
    created_at: str = field(default_factory=lambda: iso_utc_now())


@dataclass
class ReviewHistory:
    """Append-only record of a review state change on a location."""

    id: uuid.UUID
    action: ReviewAction
    is_automatic: bool = False
    location_id: uuid.UUID | None = None
    created_at: str = field(default_factory=lambda: iso_utc_now())


@dataclass
class ItemBatchResult:
    """Outcome of applying one change to several items."""

    applied: list[str] = field(default_factory=list)
    skipped: dict[str, CubbyError] = field(default_factory=dict)


# -----------------------------
# Utility helpers
# -----------------------------


def parse_uuid(value: str | uuid.UUID, *, field_name: str = "id") -> uuid.UUID:
    """Parse a UUID value.

    Accepts an existing uuid.UUID and returns it unchanged.
    Raises ValidationError when parsing fails.
    """

    if isinstance(value, uuid.UUID):
        return value
    if not isinstance(value, str):
        raise ValidationError(f"{field_name} must be a UUID string")
    try:
        return uuid.UUID(value)
    except ValueError as exc:
        raise ValidationError(f"{field_name} must be a UUID string") from exc


def new_uuid4() -> uuid.UUID:
    """Generate a UUID v4 object."""

    return uuid.uuid4()


def format_iso_utc(moment: datetime) -> str:
    """Format a datetime as an ISO-8601 UTC string with 'Z' and no microseconds."""

    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    moment = moment.astimezone(UTC).replace(microsecond=0)
    return moment.isoformat().replace("+00:00", "Z")


def iso_utc_now() -> str:
    """Return ISO-8601 UTC timestamp string with 'Z'."""

    return format_iso_utc(datetime.now(tz=UTC))


def parse_iso_utc(ts: str, *, field_name: str = "timestamp") -> datetime:
    """Parse an ISO-8601 timestamp into an aware UTC datetime.

    Accepts a trailing 'Z' or an explicit offset, with or without fractional
    seconds. Naive values are treated as UTC. Raises ValidationError on bad
    format.
    """

    if not isinstance(ts, str) or not ts:
        raise ValidationError(f"{field_name} must be an ISO-8601 timestamp")
    text = ts[:-1] + "+00:00" if ts.endswith("Z") else ts
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError as exc:
        raise ValidationError(f"{field_name} must be an ISO-8601 timestamp") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def normalize_text_for_sort(text: str) -> str:
    """Return a case-insensitive, accent-folded string for lexicographic sorting."""

    if not text:
        return ""
    nfkd = unicodedata.normalize("NFKD", text)
    ascii_text = nfkd.encode("ascii", "ignore").decode("ascii")
    collapsed = " ".join(ascii_text.split())
    return collapsed.casefold()


def validate_name(name: str, *, field_name: str = "name") -> str:
    """Validate a location/item/tag name and return a trimmed value."""

    if not isinstance(name, str):
        raise InvalidNameError(f"{field_name} is required and must be a non-empty string")
    trimmed = name.strip()
    if len(trimmed) == 0:
        raise InvalidNameError(f"{field_name} is required and must be a non-empty string")
    if len(trimmed) > NAME_MAX_LENGTH:
        raise ValidationError(f"{field_name} must be at most {NAME_MAX_LENGTH} characters")
    return trimmed


def book_display_name(title: str, author: str) -> str:
    return f"{title} by {author}"


def validate_book_fields(title: str, author: str) -> tuple[str, str]:
    """Validate both book fields are present and return trimmed values."""

    return (
        validate_name(title, field_name="book_title"),
        validate_name(author, field_name="book_author"),
    )


def parse_plan(value: str | ItemPlan | None) -> ItemPlan | None:
    """Parse a plan by value ("Throw Away") or by member name ("throw_away")."""

    if value is None or isinstance(value, ItemPlan):
        return value
    try:
        return ItemPlan(value)
    except ValueError:
        pass
    try:
        return ItemPlan[str(value).strip().upper()]
    except KeyError as exc:
        raise ValidationError(f"unknown plan: {value}") from exc


def build_location_path(location_chain: list[Location]) -> LocationPath:
    """Build a LocationPath from a chain ordered root->leaf."""

    if not location_chain:
        return EMPTY_LOCATION_PATH
    id_path = [loc.id for loc in location_chain]
    name_path = [loc.name for loc in location_chain]
    display = PATH_SEPARATOR.join(name_path)
    sort_key = normalize_text_for_sort(display)
    return LocationPath(
        id_path=id_path, name_path=name_path, display_path=display, sort_key=sort_key
    )


# -----------------------------
# Duplicate detection
# -----------------------------

_EMPTY_SIMILARITY: Final[float] = 1.0


def levenshtein(a: str, b: str) -> int:
    """Return the edit distance between two strings (insert/delete/substitute)."""

    if len(a) < len(b):
        a, b = b, a
    previous = list(range(len(b) + 1))
    for i, char_a in enumerate(a, start=1):
        current = [i]
        for j, char_b in enumerate(b, start=1):
            cost = 0 if char_a == char_b else 1
            current.append(min(previous[j] + 1, current[j - 1] + 1, previous[j - 1] + cost))
        previous = current
    return previous[-1]


def name_similarity(a: str, b: str) -> float:
    """Case-insensitive normalized similarity: 1 - distance / longest length."""

    left = (a or "").casefold()
    right = (b or "").casefold()
    longest = max(len(left), len(right))
    if longest == 0:
        return _EMPTY_SIMILARITY
    return 1.0 - levenshtein(left, right) / longest

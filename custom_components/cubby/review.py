"""Review ledger for Cubby.

Locations carry a reviewed flag that users toggle and that expires after a
configurable number of days. Every change, manual or automatic, appends a
``ReviewHistory`` entry through the repository.

The expiry sweep is a pure function of ``now``; scheduling it is left to the
integration bootstrap.
"""

from __future__ import annotations

import logging
import uuid
from datetime import UTC, datetime, timedelta

from .const import DOMAIN
from .exceptions import ValidationError
from .models import ReviewHistory, format_iso_utc, parse_iso_utc
from .repository import Repository

LOGGER = logging.getLogger(__name__)


def toggle_review(
    repo: Repository, location_id: str | uuid.UUID, *, now: datetime | None = None
) -> ReviewHistory:
    """Flip a location's reviewed flag and record a manual history entry."""

    loc = repo.get_location(location_id)
    at = format_iso_utc(now or datetime.now(tz=UTC))
    entry = repo.record_review_change(
        loc.id, reviewed=not loc.is_reviewed, at=at, is_automatic=False
    )
    LOGGER.debug(
        "Review toggled",
        extra={
            "domain": DOMAIN,
            "op": "toggle_review",
            "location_id": str(loc.id),
            "action": entry.action.value,
        },
    )
    return entry


def is_review_expired(last_reviewed_at: str | None, *, now: datetime, threshold_days: int) -> bool:
    if threshold_days <= 0 or not last_reviewed_at:
        return False
    try:
        reviewed_at = parse_iso_utc(last_reviewed_at, field_name="last_reviewed_at")
    except ValidationError:
        LOGGER.warning(
            "Ignoring unparseable review timestamp",
            extra={"domain": DOMAIN, "op": "sweep_expired", "value": last_reviewed_at},
        )
        return False
    return now - reviewed_at > timedelta(days=threshold_days)


def sweep_expired(
    repo: Repository, *, now: datetime, threshold_days: int
) -> list[ReviewHistory]:
    """Unmark reviewed locations older than ``threshold_days``.

    ``threshold_days <= 0`` disables the sweep. Returns the automatic history
    entries that were appended.
    """

    if threshold_days <= 0:
        return []
    if now.tzinfo is None:
        now = now.replace(tzinfo=UTC)

    at = format_iso_utc(now)
    entries: list[ReviewHistory] = []
    for loc in repo.list_locations():
        if not loc.is_reviewed:
            continue
        if is_review_expired(loc.last_reviewed_at, now=now, threshold_days=threshold_days):
            entries.append(
                repo.record_review_change(loc.id, reviewed=False, at=at, is_automatic=True)
            )

    if entries:
        LOGGER.debug(
            "Expired reviews cleared",
            extra={
                "domain": DOMAIN,
                "op": "sweep_expired",
                "threshold_days": threshold_days,
                "expired_count": len(entries),
            },
        )
    return entries

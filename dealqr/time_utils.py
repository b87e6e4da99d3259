from __future__ import annotations

from datetime import datetime, timezone

# Stored timestamps are naive UTC. Deal windows, claim expiry and scan times
# are all compared in that form.


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def parse_iso_datetime(value: str | None) -> datetime | None:
    """Read a deal-window timestamp from the admin feed as naive UTC.

    Offsets are honoured; a value without one is taken to be UTC already.
    Empty input gives None.
    """
    if not value or not value.strip():
        return None
    parsed = datetime.fromisoformat(value.strip().replace('Z', '+00:00'))
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def to_utc_z(moment: datetime | None) -> str | None:
    """Whole-second ISO string with a ``Z`` suffix, as the clients expect."""
    if moment is None:
        return None
    if moment.tzinfo is not None:
        moment = moment.astimezone(timezone.utc).replace(tzinfo=None)
    return moment.replace(microsecond=0).isoformat() + 'Z'

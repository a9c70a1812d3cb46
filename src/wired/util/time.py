from __future__ import annotations

from datetime import datetime, timezone


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def seconds_until_boundary(now: datetime, *, period_minutes: int, offset_minutes: int = 0) -> float:
    """Seconds from `now` until the next wall-clock mark where minute % period == offset.

    A mark that falls exactly on `now` counts as the next one a full period away.
    """
    period = max(1, int(period_minutes))
    offset = int(offset_minutes) % period
    into = (now.minute - offset) % period
    remaining_min = period - into
    return float(remaining_min * 60 - now.second) - now.microsecond / 1_000_000


def format_uptime(seconds: float) -> str:
    s = max(0, int(seconds))
    return f"{s // 3600}h {(s % 3600) // 60}m"

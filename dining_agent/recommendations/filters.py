from __future__ import annotations

import logging
import re
from datetime import datetime, timedelta

import numpy as np
import pandas as pd

from .data_store import CandidateStore
from .errors import ValidationError
from .models import Candidate, FunnelQuery, LocationMode, UserLocation

logger = logging.getLogger(__name__)

EARTH_RADIUS_M = 6_371_000.0

BUDGET_LEVELS: dict[str, int] = {
    "cheap": 1,
    "moderate": 2,
    "expensive": 3,
}

# Google opening-hours periods number days from Sunday = 0.
_FRIDAY = 5
_SATURDAY = 6

# "9:00 AM - 10:00 PM", "18:00-02:00", "9 am - 5 pm"; Google uses an en dash
_RANGE_RE = re.compile(
    r"(\d{1,2})(?::(\d{2}))?\s*([AaPp][Mm])?\s*[\u2013\u2014-]\s*"
    r"(\d{1,2})(?::(\d{2}))?\s*([AaPp][Mm])?"
)


# ---------------------------------------------------------------------------
# Geometry
# ---------------------------------------------------------------------------


def haversine_meters(lat: float, lng: float, lats: np.ndarray, lngs: np.ndarray) -> np.ndarray:
    """Great-circle distance from one point to arrays of points, in metres."""
    lat1 = np.radians(lat)
    lat2 = np.radians(lats.astype(float))
    dlat = lat2 - lat1
    dlng = np.radians(lngs.astype(float) - lng)
    a = np.sin(dlat / 2) ** 2 + np.cos(lat1) * np.cos(lat2) * np.sin(dlng / 2) ** 2
    return EARTH_RADIUS_M * 2 * np.arctan2(np.sqrt(a), np.sqrt(1 - a))


# ---------------------------------------------------------------------------
# Opening hours
# ---------------------------------------------------------------------------


def _google_day(moment: datetime) -> int:
    return (moment.weekday() + 1) % 7


def parse_time_to_minutes(value: str) -> int:
    """``"1930"`` or ``"19:30"`` -> minutes since midnight."""
    value = (value or "").strip()
    if ":" in value:
        hours, _, minutes = value.partition(":")
    elif len(value) == 4:
        hours, minutes = value[:2], value[2:]
    else:
        return 0
    try:
        return int(hours) * 60 + int(minutes)
    except ValueError:
        return 0


def _clock_minutes(hour: str, minute: str | None, meridiem: str | None) -> int:
    h, m = int(hour), int(minute or 0)
    if meridiem:
        meridiem = meridiem.upper()
        if meridiem == "PM" and h != 12:
            h += 12
        elif meridiem == "AM" and h == 12:
            h = 0
    return h * 60 + m


def is_open_from_weekday_text(lines: list[str], day: int, minutes: int) -> bool:
    """Check Google ``weekday_text`` lines (Monday first) for *day* (Sunday = 0).

    Understands "Closed", "Open 24 hours", 12- and 24-hour ranges, several
    ranges per day and ranges that run past midnight. Unparseable days
    count as open.
    """
    index = (day + 6) % 7
    if index >= len(lines):
        return True
    text = str(lines[index])
    lower = text.lower()
    if "closed" in lower or "סגור" in text:
        return False
    if "24 hours" in lower or "24 שעות" in text:
        return True

    ranges = list(_RANGE_RE.finditer(text))
    if not ranges:
        return True

    for match in ranges:
        open_h, open_m, open_mer, close_h, close_m, close_mer = match.groups()
        # "6:00 - 11:00 PM" shares the closing meridiem
        if open_mer is None and close_mer and close_mer.upper() == "PM" and int(open_h) < 12:
            if _clock_minutes(open_h, open_m, "PM") <= _clock_minutes(close_h, close_m, close_mer):
                open_mer = "PM"
        open_at = _clock_minutes(open_h, open_m, open_mer)
        close_at = _clock_minutes(close_h, close_m, close_mer)
        if close_at < open_at:
            if minutes >= open_at or minutes <= close_at:
                return True
        elif open_at <= minutes <= close_at:
            return True
    return False


def is_open_at(hours: dict | None, day: int, minutes: int) -> bool:
    """Check Google-style ``periods`` for *day* (Sunday = 0) at *minutes*.

    Falls back to ``weekday_text`` when there are no periods. Missing or
    empty hours count as open.
    """
    hours = hours or {}
    periods = hours.get("periods") or []
    if not periods:
        weekday_text = hours.get("weekday_text") or []
        if weekday_text:
            return is_open_from_weekday_text(weekday_text, day, minutes)
        return True

    for period in periods:
        opening = period.get("open") or {}
        if opening.get("day") != day:
            continue
        closing = period.get("close")
        if not closing:
            # No close time means open around the clock
            return True
        open_at = parse_time_to_minutes(opening.get("time", ""))
        close_at = parse_time_to_minutes(closing.get("time", ""))
        if closing.get("day") != opening.get("day"):
            if minutes >= open_at:
                return True
        elif open_at <= minutes <= close_at:
            return True

    # A period opened yesterday may run past midnight into today
    previous = (day + 6) % 7
    for period in periods:
        opening = period.get("open") or {}
        closing = period.get("close")
        if opening.get("day") != previous or not closing:
            continue
        if closing.get("day") == day and minutes <= parse_time_to_minutes(closing.get("time", "")):
            return True

    return False


def resolve_timing(timing: str | None, reference: datetime) -> datetime | None:
    """Map a timing slot onto the moment the restaurant must be open."""
    if not timing:
        return None
    timing = timing.lower()
    evening = reference.replace(hour=20, minute=0, second=0, microsecond=0)
    if timing == "now":
        return reference
    if timing == "tonight":
        return evening
    if timing == "tomorrow":
        return evening + timedelta(days=1)
    if timing == "lunch":
        return reference.replace(hour=13, minute=0, second=0, microsecond=0)
    if timing == "weekend":
        today = _google_day(reference)
        if today in (_FRIDAY, _SATURDAY):
            return evening
        return evening + timedelta(days=(_FRIDAY - today) % 7)
    return None


# ---------------------------------------------------------------------------
# Candidate generation
# ---------------------------------------------------------------------------


def _optional(value, cast):
    if value is None or pd.isna(value):
        return None
    return cast(value)


def _row_to_candidate(row: pd.Series, distance: float | None) -> Candidate:
    return Candidate(
        id=row["id"],
        name=str(row["name"]),
        city=_optional(row["city"], str),
        categories=list(row["categories_list"]),
        price_level=_optional(row["price_level"], int),
        summary=_optional(row["summary"], str),
        distance_meters=None if distance is None or np.isnan(distance) else round(float(distance), 1),
        friends_who_visited=list(row["friends_list"]),
        google_rating=_optional(row["google_rating"], float),
        review_count=_optional(row["review_count"], int),
    )


class CandidateGenerator:
    """Stage 1: deterministic hard filters over the whole corpus."""

    def __init__(self, store: CandidateStore) -> None:
        self.store = store

    def filter(
        self,
        query: FunnelQuery,
        location: UserLocation | None,
        now: datetime | None = None,
    ) -> tuple[int, list[Candidate]]:
        df = self.store.snapshot()
        total_in_db = len(df)

        distances: pd.Series | None = None
        if location is not None:
            distances = pd.Series(
                haversine_meters(location.lat, location.lng, df["latitude"].to_numpy(), df["longitude"].to_numpy()),
                index=df.index,
            )

        # --- Location mode ---
        mode = query.location_mode
        if mode in (LocationMode.walking, LocationMode.nearby):
            if distances is None:
                raise ValidationError(
                    f"userLocation is required for '{mode.value}' searches", slot="location",
                )
            if not query.max_distance_meters:
                raise ValidationError(
                    f"maxDistanceMeters is required for '{mode.value}' searches", slot="location",
                )
            mask = distances.notna() & (distances <= query.max_distance_meters)
        elif mode == LocationMode.city and query.city:
            mask = df["city_lower"].str.contains(query.city.strip().lower(), regex=False)
        else:
            mask = pd.Series(True, index=df.index)

        # --- Occasion / purpose ---
        occasion = (query.occasion or "").strip().lower()
        if occasion:
            mask = mask & df["occasions_lower"].apply(
                lambda tags: not tags or any(occasion in t or t in occasion for t in tags)
            )

        # --- Cuisine ---
        if query.cuisines:
            wanted = [c.strip().lower() for c in query.cuisines if c.strip()]
            mask = mask & df["categories_lower"].apply(
                lambda cats: any(w in c for w in wanted for c in cats)
            )

        # --- Budget ---
        expected = BUDGET_LEVELS.get((query.budget or "").lower())
        if expected is not None:
            mask = mask & (df["price_level"].isna() | ((df["price_level"] - expected).abs() <= 1))

        # --- Timing ---
        moment = resolve_timing(query.timing, now or datetime.now())
        if moment is not None:
            day, minutes = _google_day(moment), moment.hour * 60 + moment.minute
            mask = mask & df["hours"].apply(lambda h: is_open_at(h, day, minutes))

        filtered = df.loc[mask].sort_values("id", kind="mergesort")
        candidates = [
            _row_to_candidate(row, None if distances is None else distances[idx])
            for idx, row in filtered.iterrows()
        ]

        logger.info(
            "Hard filters kept %d of %d restaurants (mode=%s, occasion=%s, cuisines=%s)",
            len(candidates), total_in_db, mode.value, occasion or "-", query.cuisines or "-",
        )
        return total_in_db, candidates

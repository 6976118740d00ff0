"""Summary: Deterministic natural-language deadline parser.

Importance: Resolves due times when the AI path is unavailable or returns an invalid timestamp.
Alternatives: Use dateparser or a full NLP date library.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, time, timedelta, timezone


logger = logging.getLogger(__name__)

WEEKDAYS = {
    "monday": 0,
    "mon": 0,
    "tuesday": 1,
    "tues": 1,
    "tue": 1,
    "wednesday": 2,
    "wed": 2,
    "thursday": 3,
    "thurs": 3,
    "thu": 3,
    "friday": 4,
    "fri": 4,
    "saturday": 5,
    "sat": 5,
    "sunday": 6,
    "sun": 6,
}

_MINUTES = re.compile(r"(?:in\s+)?(\d+)\s*(?:m|min|mins|minutes?)\b")
_HOURS = re.compile(r"(?:in\s+)?(\d+)\s*(?:h|hr|hrs|hours?)\b")
_DAYS = re.compile(r"(?:in\s+)?(\d+)\s*days?\b")
_CLOCK = re.compile(r"\b(\d{1,2})(?::(\d{2}))?\s*(a\.m\.|p\.m\.|am|pm)")
_WEEKDAY = re.compile(
    r"\b(next\s+)?(" + "|".join(sorted(WEEKDAYS, key=len, reverse=True)) + r")\b"
)
_URGENT = ("asap", "urgent", "right now", "immediately")


@dataclass(frozen=True)
class TimeParser:
    """Summary: Parses relative and named deadlines against a reference time.

    Importance: Gives the fallback classifier the same due-time rules as the AI prompt.
    Alternatives: Ask the AI for every deadline.
    """

    utc_offset_minutes: int = 330

    @property
    def local_zone(self) -> timezone:
        return timezone(timedelta(minutes=self.utc_offset_minutes))

    def parse(self, text: str, now: datetime) -> datetime | None:
        """Summary: Return the first deadline found in the text, in UTC.

        Importance: Relative offsets win over named days, which win over urgency words.
        Alternatives: Collect every candidate and pick the earliest.

        Example:
            >>> TimeParser().parse("finish in 30 mins", now)  # now + 30 minutes
        """

        if not text:
            return None
        lowered = text.lower().strip()
        local_now = now.astimezone(self.local_zone)

        match = _MINUTES.search(lowered)
        if match:
            return now + timedelta(minutes=int(match.group(1)))
        match = _HOURS.search(lowered)
        if match:
            return now + timedelta(hours=int(match.group(1)))
        match = _DAYS.search(lowered)
        if match:
            return now + timedelta(days=int(match.group(1)))

        if "tomorrow" in lowered or "tommorow" in lowered:
            return self._at(local_now.date() + timedelta(days=1), time(9, 0))

        if "today" in lowered or "tonight" in lowered:
            clock = _CLOCK.search(lowered)
            if clock:
                return self._at(local_now.date(), _clock_time(clock))
            return self._at(local_now.date(), time(17, 0))

        match = _WEEKDAY.search(lowered)
        if match:
            return self._weekday(local_now, WEEKDAYS[match.group(2)], bool(match.group(1)))

        if "next week" in lowered:
            return self._at(local_now.date() + timedelta(days=7), time(9, 0))

        if "this week" in lowered:
            days_until = (4 - local_now.weekday()) % 7
            if days_until == 0 and local_now.hour >= 17:
                days_until = 7
            return self._at(local_now.date() + timedelta(days=days_until), time(17, 0))

        if any(word in lowered for word in _URGENT):
            return now + timedelta(minutes=5)

        logger.debug("No time reference found in %r", lowered[:80])
        return None

    def _weekday(self, local_now: datetime, target: int, next_prefix: bool) -> datetime:
        days_until = (target - local_now.weekday()) % 7
        if days_until == 0:
            if not next_prefix and local_now.hour < 12:
                return self._at(local_now.date(), time(17, 0))
            days_until = 7
        return self._at(local_now.date() + timedelta(days=days_until), time(9, 0))

    def _at(self, day, at: time) -> datetime:
        local = datetime.combine(day, at, tzinfo=self.local_zone)
        return local.astimezone(timezone.utc)


def _clock_time(match: re.Match[str]) -> time:
    hour = int(match.group(1)) % 24
    minute = int(match.group(2) or 0) % 60
    period = match.group(3).replace(".", "")
    if period == "pm" and hour < 12:
        hour += 12
    elif period == "am" and hour == 12:
        hour = 0
    return time(hour, minute)

"""Natural language time parsing for reminders.

Turns sentences such as "remind me in 2 minutes to call mom" or
"remind me on Dec 25th at 8am to call grandma" into an absolute due time plus
the remaining task text.

Rules are kept in an ordered table and evaluated first-match-wins:

    1. relative_offset  "in 20 minutes", "in 2 hrs", "in 3 days"
    2. clock_time       "at 3pm", "today at 14:30" (rolls to tomorrow if passed)
    3. tomorrow_at      "tomorrow at 9am"
    4. month_day        "on December 25th [at 8am]" (rolls to next year if passed)
    5. numeric_date     "on 12/25[/2025] [at 8am]" (A <= 12 means month/day)
    6. weekday          "[next|this] friday [at 3pm]"
    7. tomorrow, later, now

Later rules are more general than earlier ones. The clock_time rule refuses
an "at" clause that belongs to a tomorrow, dated or weekday phrase so that it
never shadows rules 3-6.
"""

import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from re import Match, Pattern
from typing import Callable, List, Optional, Tuple

from dateutil.relativedelta import relativedelta

from nudge.models.reminder import clamp_repeat_count
from nudge.utils.logger import log_debug


DEFAULT_HOUR = 9
LATER_OFFSET = timedelta(hours=2)
NOW_OFFSET = timedelta(seconds=30)

_TIME = r"(\d{1,2})(?::(\d{2}))?\s*(am|pm)?"

_MONTHS = {
    "jan": 1, "january": 1, "feb": 2, "february": 2, "mar": 3, "march": 3,
    "apr": 4, "april": 4, "may": 5, "jun": 6, "june": 6, "jul": 7, "july": 7,
    "aug": 8, "august": 8, "sep": 9, "sept": 9, "september": 9,
    "oct": 10, "october": 10, "nov": 11, "november": 11, "dec": 12, "december": 12,
}
_MONTH_NAMES = (
    r"(jan(?:uary)?|feb(?:ruary)?|mar(?:ch)?|apr(?:il)?|may|june?|july?|"
    r"aug(?:ust)?|sep(?:t(?:ember)?)?|oct(?:ober)?|nov(?:ember)?|dec(?:ember)?)"
)

_WEEKDAYS = ["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]
_WEEKDAY_NAMES = "(" + "|".join(_WEEKDAYS) + ")"

_UNIT_SECONDS = {
    "sec": 1,
    "min": 60,
    "hour": 3600,
    "hr": 3600,
    "day": 86400,
    "week": 604800,
}

_REPEAT_PATTERN = re.compile(r"\b(\d+)\s+times?\b", re.IGNORECASE)
_FILLER_PATTERN = re.compile(r"^(?:please|remind\s+me|to|that|about)\b[\s,]*", re.IGNORECASE)
_EDGE_PUNCTUATION = re.compile(r"^[\s,.;:!?-]+|[\s,.;:!?-]+$")

# An "at" clause directly after one of these belongs to a more specific rule
_OWNED_AT_PREFIX = re.compile(
    r"(?:\btomorrow|\b" + _MONTH_NAMES + r"\s+\d{1,2}(?:st|nd|rd|th)?"
    r"|\b\d{1,2}/\d{1,2}(?:/\d{2,4})?|\b" + _WEEKDAY_NAMES + r")\s*$",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class ParseResult:
    """Outcome of a successful parse."""
    due_at: datetime
    residual_text: str
    matched_rule: str
    matched_phrase: str
    repeat_count: int = 1


@dataclass(frozen=True)
class TimeRule:
    """One entry of the ordered rule table.

    ``build`` returns None when the match is not a valid time (for example
    "at 25:00" or "on 02/31"); evaluation then moves on.
    """
    name: str
    pattern: Pattern
    build: Callable[[Match, datetime], Optional[datetime]]
    accepts: Optional[Callable[[str, Match], bool]] = None


def _clock(hour_str: str, minute_str: Optional[str], meridiem: Optional[str]) -> Optional[Tuple[int, int]]:
    """Validate and convert a clock reading to 24-hour (hour, minute)."""
    hour = int(hour_str)
    minute = int(minute_str) if minute_str else 0
    if minute > 59:
        return None

    if meridiem:
        meridiem = meridiem.lower()
        if hour < 1 or hour > 12:
            return None
        if meridiem == "pm" and hour != 12:
            hour += 12
        if meridiem == "am" and hour == 12:
            hour = 0
    elif hour > 23:
        return None

    return hour, minute


def _optional_clock(match: Match, first_group: int) -> Optional[Tuple[int, int]]:
    """Clock from an optional trailing "at <time>" clause, 09:00 when absent."""
    if match.group(first_group) is None:
        return DEFAULT_HOUR, 0
    return _clock(match.group(first_group), match.group(first_group + 1), match.group(first_group + 2))


def _at(day: datetime, clock: Tuple[int, int]) -> datetime:
    return day.replace(hour=clock[0], minute=clock[1], second=0, microsecond=0)


def _calendar_date(now: datetime, year: int, month: int, day: int,
                   clock: Tuple[int, int]) -> Optional[datetime]:
    """Build a date, rolling forward a year if it is not in the future."""
    try:
        result = now.replace(year=year, month=month, day=day, hour=clock[0],
                             minute=clock[1], second=0, microsecond=0)
    except ValueError:
        return None

    if result <= now:
        result += relativedelta(years=1)
    return result


def _relative_offset(match: Match, now: datetime) -> Optional[datetime]:
    amount = int(match.group(1))
    unit = match.group(2).lower()
    for prefix, seconds in _UNIT_SECONDS.items():
        if unit.startswith(prefix):
            return now + timedelta(seconds=amount * seconds)
    return None


def _clock_time(match: Match, now: datetime) -> Optional[datetime]:
    clock = _clock(match.group(1), match.group(2), match.group(3))
    if clock is None:
        return None

    result = _at(now, clock)
    if result <= now:
        result += timedelta(days=1)
    return result


def _clock_time_accepts(text: str, match: Match) -> bool:
    return _OWNED_AT_PREFIX.search(text[:match.start()]) is None


def _tomorrow_at(match: Match, now: datetime) -> Optional[datetime]:
    clock = _clock(match.group(1), match.group(2), match.group(3))
    if clock is None:
        return None
    return _at(now + timedelta(days=1), clock)


def _month_day(match: Match, now: datetime) -> Optional[datetime]:
    month = _MONTHS[match.group(1).lower()]
    clock = _optional_clock(match, 3)
    if clock is None:
        return None
    return _calendar_date(now, now.year, month, int(match.group(2)), clock)


def _numeric_date(match: Match, now: datetime) -> Optional[datetime]:
    first, second = int(match.group(1)), int(match.group(2))
    # Ambiguity is settled by magnitude, never by locale
    if first <= 12:
        month, day = first, second
    else:
        day, month = first, second

    year = now.year
    if match.group(3):
        year = int(match.group(3))
        if year < 100:
            year += 2000

    clock = _optional_clock(match, 4)
    if clock is None:
        return None
    return _calendar_date(now, year, month, day, clock)


def _weekday(match: Match, now: datetime) -> Optional[datetime]:
    modifier = (match.group(1) or "").lower()
    target = _WEEKDAYS.index(match.group(2).lower())
    clock = _optional_clock(match, 3)
    if clock is None:
        return None

    days_ahead = target - now.weekday()
    if modifier == "next" or days_ahead <= 0:
        days_ahead += 7
    return _at(now + timedelta(days=days_ahead), clock)


def _tomorrow(match: Match, now: datetime) -> Optional[datetime]:
    return _at(now + timedelta(days=1), (DEFAULT_HOUR, 0))


def _later(match: Match, now: datetime) -> Optional[datetime]:
    return now + LATER_OFFSET


def _now(match: Match, now: datetime) -> Optional[datetime]:
    # Never exactly "now": the monitor must still see it pending first
    return now + NOW_OFFSET


def _rule(name: str, pattern: str, build, accepts=None) -> TimeRule:
    return TimeRule(name, re.compile(pattern, re.IGNORECASE), build, accepts)


RULES: List[TimeRule] = [
    _rule("relative_offset",
          r"\bin\s+(\d+)\s*(seconds?|secs?|minutes?|mins?|hours?|hrs?|days?|weeks?)\b",
          _relative_offset),
    _rule("clock_time", r"\b(?:today\s+)?at\s+" + _TIME + r"\b", _clock_time, _clock_time_accepts),
    _rule("tomorrow_at", r"\btomorrow\s+at\s+" + _TIME + r"\b", _tomorrow_at),
    _rule("month_day",
          r"\bon\s+" + _MONTH_NAMES + r"\s+(\d{1,2})(?:st|nd|rd|th)?(?:\s+at\s+" + _TIME + r")?\b",
          _month_day),
    _rule("numeric_date",
          r"\bon\s+(\d{1,2})/(\d{1,2})(?:/(\d{2,4}))?(?:\s+at\s+" + _TIME + r")?\b",
          _numeric_date),
    _rule("weekday",
          r"\b(?:(next|this)\s+)?" + _WEEKDAY_NAMES + r"(?:\s+at\s+" + _TIME + r")?\b",
          _weekday),
    _rule("tomorrow", r"\btomorrow\b", _tomorrow),
    _rule("later", r"\blater(?:\s+today)?\b", _later),
    _rule("now", r"\b(?:right\s+)?now\b", _now),
]


def extract_repeat_count(text: str) -> int:
    """Read "<N> times" from the sentence, clamped to [1, 10].

    Args:
        text: The original user input

    Returns:
        Announcement repeat count (1 when not mentioned)
    """
    match = _REPEAT_PATTERN.search(text)
    if not match:
        return 1
    return clamp_repeat_count(int(match.group(1)))


def extract_task_text(text: str, time_span: Tuple[int, int]) -> str:
    """Strip the time phrase, the repeat phrase and leading filler words.

    Args:
        text: The original user input
        time_span: (start, end) of the matched time phrase

    Returns:
        The remaining task description (may be empty)
    """
    start, end = time_span
    remainder = f"{text[:start]} {text[end:]}"
    remainder = _REPEAT_PATTERN.sub(" ", remainder)
    remainder = " ".join(remainder.split())

    previous = None
    while previous != remainder:
        previous = remainder
        remainder = _EDGE_PUNCTUATION.sub("", remainder)
        remainder = _FILLER_PATTERN.sub("", remainder)

    return remainder


def match_rule(text: str, now: datetime) -> Optional[Tuple[TimeRule, Match, datetime]]:
    """Find the first rule (in table order) that yields a valid time."""
    for rule in RULES:
        for match in rule.pattern.finditer(text):
            if rule.accepts and not rule.accepts(text, match):
                continue
            due_at = rule.build(match, now)
            if due_at is not None:
                return rule, match, due_at
    return None


def parse(text: str, now: datetime) -> Optional[ParseResult]:
    """Parse a reminder sentence into a due time and task text.

    Pure function: the result depends only on ``text`` and ``now``.

    Args:
        text: What the user typed or said
        now: Reference time for relative expressions

    Returns:
        ParseResult, or None when no rule matches or nothing is left to
        remind about once the time phrase is removed
    """
    if not text or not text.strip():
        return None

    found = match_rule(text, now)
    if found is None:
        log_debug(f"No time pattern matched in '{text}'")
        return None

    rule, match, due_at = found
    residual = extract_task_text(text, match.span())
    if not residual:
        log_debug(f"Matched {rule.name} in '{text}' but no task text remains")
        return None

    result = ParseResult(
        due_at=due_at,
        residual_text=residual,
        matched_rule=rule.name,
        matched_phrase=match.group(0),
        repeat_count=extract_repeat_count(text),
    )
    log_debug(f"Parsed '{text}' via {rule.name}: '{residual}' at {due_at.isoformat()}")
    return result


def format_time_until(due_at: datetime, now: datetime) -> str:
    """Describe how far away a due time is ("in 3 hours", "Overdue").

    Args:
        due_at: When the reminder fires
        now: Reference time

    Returns:
        Short human readable description
    """
    seconds = (due_at - now).total_seconds()
    if seconds < 0:
        return "Overdue"

    minutes = int(seconds // 60)
    hours = minutes // 60
    days = hours // 24

    if days > 0:
        return f"in {days} day{'s' if days > 1 else ''}"
    if hours > 0:
        return f"in {hours} hour{'s' if hours > 1 else ''}"
    if minutes > 0:
        return f"in {minutes} minute{'s' if minutes > 1 else ''}"
    return "Due now"

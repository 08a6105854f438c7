"""Spaced-repetition scheduling of individual words.

Every function here is pure: state goes in, a new state comes out. Word state
is never mutated in place and nothing here raises on bad stored data. Use
``validate_state`` to audit persisted state instead. The rating passed to
``update`` is part of the caller's contract: a value outside ``Rating``
raises ``ValueError``.
"""
import logging
import math
from dataclasses import dataclass, replace
from datetime import UTC, datetime, time, timedelta
from typing import Any, Dict, List, Optional, Union

from lexireview.models.review_models import Rating, WordState

logger = logging.getLogger(__name__)

# Days until the next review, indexed by familiarity
INTERVALS = (1, 3, 7, 14, 30, 60)

FAMILIARITY_MIN = 0
FAMILIARITY_MAX = 5

NEW_WORD_PRIORITY = 1000.0
INITIAL_DIFFICULTY = 2.5

Timestamp = Union[str, datetime]


@dataclass(frozen=True)
class UpdateResult:
    """Outcome of a single review."""
    next: WordState
    interval_days: int


@dataclass(frozen=True)
class ReviewStats:
    total_reviews: int
    success_rate: float
    current_interval: int


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def parse_timestamp(value: Optional[Timestamp]) -> Optional[datetime]:
    """Parse an ISO timestamp, assuming UTC when no offset is given."""
    if value is None or value == "":
        return None
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    if not isinstance(value, datetime):
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value


def _clamp_familiarity(value: Any) -> int:
    """Familiarity as a ladder index. Stored floats are rounded, anything else counts as 0."""
    if not _is_number(value):
        return FAMILIARITY_MIN
    return max(FAMILIARITY_MIN, min(FAMILIARITY_MAX, int(round(value))))


def _count(value: Any) -> int:
    return max(0, int(round(value))) if _is_number(value) else 0


def _interval_for(familiarity: int) -> int:
    return INTERVALS[_clamp_familiarity(familiarity)]


def _scheduled_interval(state: WordState) -> Optional[int]:
    """Number of whole days between the last review and the due date."""
    last_seen = parse_timestamp(state.last_seen_at)
    due = parse_timestamp(state.next_due_at)
    if last_seen is None or due is None or due <= last_seen:
        return None
    return round((due - last_seen) / timedelta(days=1))


def initialize(now: datetime) -> WordState:
    """State of a word seen for the first time, due again after one day."""
    return WordState(
        familiarity=FAMILIARITY_MIN,
        difficulty=INITIAL_DIFFICULTY,
        successes=0,
        lapses=0,
        last_seen_at=now.isoformat(),
        next_due_at=(now + timedelta(days=INTERVALS[0])).isoformat(),
    )


def update(prev: Optional[WordState], rating: Union[Rating, str], now: datetime) -> UpdateResult:
    """Apply one review rating and schedule the next review.

    Raises ValueError when ``rating`` is not a ``Rating`` value.
    """
    prev = prev or WordState()
    rating = Rating(rating)

    familiarity = _clamp_familiarity(prev.familiarity)
    successes = _count(prev.successes)
    lapses = _count(prev.lapses)

    if rating is Rating.AGAIN:
        familiarity -= 1
        lapses += 1
    elif rating is Rating.UNKNOWN:
        familiarity = FAMILIARITY_MIN
        lapses += 1
    elif rating in (Rating.GOOD, Rating.EASY):
        familiarity += 1
        successes += 1
    familiarity = _clamp_familiarity(familiarity)

    interval_days = _interval_for(familiarity)
    if rating is Rating.EASY:
        # easy never shortens the gap that was already scheduled
        previous = _scheduled_interval(prev)
        if previous is not None:
            interval_days = max(interval_days, previous)

    next_state = replace(
        prev,
        familiarity=familiarity,
        difficulty=INITIAL_DIFFICULTY if prev.difficulty is None else prev.difficulty,
        successes=successes,
        lapses=lapses,
        last_seen_at=now.isoformat(),
        next_due_at=(now + timedelta(days=interval_days)).isoformat(),
    )
    logger.debug(
        f"Rated {rating.value}: familiarity {prev.familiarity} -> {familiarity}, "
        f"next review in {interval_days} days"
    )
    return UpdateResult(next=next_state, interval_days=interval_days)


def is_due_today(state: WordState, now: datetime) -> bool:
    """Whether the word is due at any point before the end of ``now``'s day."""
    due = parse_timestamp(state.next_due_at)
    if due is None:
        return True
    now = parse_timestamp(now)
    end_of_day = datetime.combine(now.date(), time.max, tzinfo=now.tzinfo)
    return due <= end_of_day


def priority(state: WordState, now: datetime) -> float:
    """Review priority, higher first. New words always come first."""
    due = parse_timestamp(state.next_due_at)
    if due is None:
        return NEW_WORD_PRIORITY
    now = parse_timestamp(now)
    overdue_days = max(0.0, (now - due) / timedelta(days=1))
    familiarity = _clamp_familiarity(state.familiarity)
    return overdue_days * 10 + (FAMILIARITY_MAX - familiarity) * 2


def validate_state(state: WordState) -> List[str]:
    """Return human-readable problems with a stored state. Empty means valid."""
    errors = []
    familiarity = state.familiarity
    if not isinstance(familiarity, int) or not FAMILIARITY_MIN <= familiarity <= FAMILIARITY_MAX:
        errors.append(
            f"familiarity must be an integer between {FAMILIARITY_MIN} and {FAMILIARITY_MAX}, "
            f"got {familiarity!r}"
        )
    for name in ("successes", "lapses"):
        value = getattr(state, name)
        if value is None:
            continue
        if not isinstance(value, int) or value < 0:
            errors.append(f"{name} must be a non-negative integer, got {value!r}")
    for name in ("last_seen_at", "next_due_at"):
        value = getattr(state, name)
        if value and parse_timestamp(value) is None:
            errors.append(f"{name} is not a valid ISO-8601 timestamp: {value!r}")
    return errors


def get_review_stats(state: WordState) -> ReviewStats:
    successes = _count(state.successes)
    total = successes + _count(state.lapses)
    return ReviewStats(
        total_reviews=total,
        success_rate=successes / total if total else 0.0,
        current_interval=_interval_for(state.familiarity),
    )


def get_intervals() -> tuple:
    return INTERVALS


def get_familiarity_range() -> Dict[str, int]:
    return {"min": FAMILIARITY_MIN, "max": FAMILIARITY_MAX}


def _plural(count: int, unit: str) -> str:
    return f"{count} {unit}" if count == 1 else f"{count} {unit}s"


def format_interval(days: int) -> str:
    """Render an interval as text, e.g. ``2 weeks`` or ``1 month 15 days``."""
    if days < 7:
        return _plural(days, "day")
    if days < 30:
        weeks, rest = divmod(days, 7)
        unit, remainder = _plural(weeks, "week"), rest
    else:
        months, rest = divmod(days, 30)
        unit, remainder = _plural(months, "month"), rest
    if remainder:
        return f"{unit} {_plural(remainder, 'day')}"
    return unit

"""
Fixed-ladder spaced repetition.

Ratings:
again - Forgot it. Level resets to 0, card is due again today
hard  - Recalled with difficulty. Level unchanged, short interval
good  - Recalled. Level + 1
easy  - Recalled instantly. Level + 1, longest interval

The interval is looked up from the card's level *before* the rating is applied.
Levels past the end of a ladder reuse its last entry, so intervals plateau.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional


class Rating(str, Enum):
    """Recall rating a learner gives after seeing the answer."""
    AGAIN = "again"
    HARD = "hard"
    GOOD = "good"
    EASY = "easy"


# Days until next review, indexed by min(srs_level, 5)
INTERVAL_LADDERS = {
    Rating.HARD: (0, 1, 2, 3, 5, 8),
    Rating.GOOD: (1, 2, 4, 8, 16, 32),
    Rating.EASY: (2, 4, 8, 16, 32, 64),
}


@dataclass(frozen=True)
class ReviewTransition:
    new_srs_level: int
    new_next_review_date: datetime
    interval: int


def utcnow() -> datetime:
    """Naive UTC timestamp, the format stored in the database."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def get_interval(srs_level: int, rating: Rating) -> int:
    """Days to add to "now" for a card at `srs_level` rated `rating`."""
    rating = Rating(rating)
    if rating is Rating.AGAIN:
        return 0
    ladder = INTERVAL_LADDERS[rating]
    return ladder[min(srs_level, len(ladder) - 1)]


def next_level(srs_level: int, rating: Rating) -> int:
    rating = Rating(rating)
    if rating is Rating.AGAIN:
        return 0
    if rating is Rating.HARD:
        return srs_level
    return srs_level + 1


def compute_review_transition(
    srs_level: int, rating: Rating, now: Optional[datetime] = None
) -> ReviewTransition:
    """
    Compute a card's new review state after a rating.

    Args:
        srs_level: Current level of the card (>= 0)
        rating: One of again/hard/good/easy (enum member or its value)
        now: Evaluation instant, defaults to the current UTC time

    Returns:
        ReviewTransition with the new level, due date and interval in days

    Raises:
        ValueError: unknown rating or negative level
    """
    if srs_level < 0:
        raise ValueError(f"srs_level must be >= 0, got {srs_level}")
    rating = Rating(rating)
    if now is None:
        now = utcnow()

    interval = get_interval(srs_level, rating)
    return ReviewTransition(
        new_srs_level=next_level(srs_level, rating),
        new_next_review_date=now + timedelta(days=interval),
        interval=interval,
    )


"""
Study sessions.

A session takes a deck's due cards, least mature first, and works through them
one rating at a time. Cards rated "again" go to the back of the queue and come
up again in the same sitting; any other rating removes the card for the rest of
the session. Every rating is written to the store as soon as it is given, so a
session can be abandoned at any point without losing progress.
"""

import logging
import uuid
from collections import deque
from datetime import datetime
from typing import Optional

from models import CardResponse
from spaced_rep import Rating, ReviewTransition, compute_review_transition, utcnow

logger = logging.getLogger(__name__)


def is_due(card, now: Optional[datetime] = None) -> bool:
    """True if the card's review date is today or earlier (time of day ignored)."""
    now = now or utcnow()
    return card.next_review_date.date() <= now.date()


def select_due_cards(cards, now: Optional[datetime] = None) -> list:
    """Due cards sorted by srs_level; equal levels keep their input order."""
    now = now or utcnow()
    return sorted(
        (card for card in cards if is_due(card, now)),
        key=lambda card: card.srs_level,
    )


def _take(queue: deque, card_id):
    """Remove and return the queued card with `card_id`, or None."""
    if queue and queue[0].id == card_id:
        return queue.popleft()
    for index, card in enumerate(queue):
        if card.id == card_id:
            del queue[index]
            return card
    return None


def _advance(queue: deque, card_id, rating: Rating) -> bool:
    card = _take(queue, card_id)
    if card is None:
        return False
    if rating is Rating.AGAIN:
        queue.append(card)
    return True


def advance_session(queue, card_id, rating: Rating) -> list:
    """
    Return the queue after rating `card_id`.

    "again" moves the card to the tail, other ratings drop it. A card that is
    not queued leaves the queue unchanged.
    """
    rating = Rating(rating)
    new_queue = deque(queue)
    _advance(new_queue, card_id, rating)
    return list(new_queue)


class StudySession:
    def __init__(self, deck_id: int, cards, now: Optional[datetime] = None):
        self.id = uuid.uuid4().hex
        self.deck_id = deck_id
        self.queue = deque(
            CardResponse.model_validate(card) for card in select_due_cards(cards, now)
        )
        self.total_due_at_start = len(self.queue)
        self.reviews = 0  # every rating, including "again"

    def __contains__(self, card_id) -> bool:
        return any(card.id == card_id for card in self.queue)

    @property
    def current(self) -> Optional[CardResponse]:
        return self.queue[0] if self.queue else None

    @property
    def remaining(self) -> int:
        return len(self.queue)

    @property
    def completed_count(self) -> int:
        """Cards passed this sitting. "again" never shrinks the queue, so this
        counts each card once no matter how often it was requeued."""
        return self.total_due_at_start - len(self.queue)

    @property
    def finished(self) -> bool:
        return not self.queue

    @property
    def progress(self) -> float:
        if not self.total_due_at_start:
            return 0.0
        return self.completed_count / self.total_due_at_start * 100

    def advance(self, card_id, rating: Rating) -> bool:
        """Move the queue on without touching the store. False if not queued."""
        return _advance(self.queue, card_id, Rating(rating))

    def rate(
        self, card_id, rating: Rating, store, now: Optional[datetime] = None
    ) -> Optional[ReviewTransition]:
        """
        Rate a queued card, persist its new review state and advance the queue.

        Args:
            card_id: Card being rated
            rating: again/hard/good/easy
            store: Anything with get_deck/get_card/update_card (see CardStore)
            now: Evaluation instant, defaults to the current UTC time

        Returns:
            The transition that was written, or None when nothing happened
            (card not queued, deck gone, or card deleted meanwhile)

        Errors raised by the store propagate after the queue has advanced.
        """
        rating = Rating(rating)
        if card_id not in self:
            logger.debug("Card %s not queued in session %s, ignoring", card_id, self.id)
            return None
        if store.get_deck(self.deck_id) is None:
            logger.info("Deck %s is gone, ignoring rating in session %s", self.deck_id, self.id)
            return None

        stored = store.get_card(card_id)
        if stored is None:
            logger.info("Card %s was deleted, dropping it from session %s", card_id, self.id)
            _take(self.queue, card_id)
            return None

        transition = compute_review_transition(stored.srs_level, rating, now)
        self.reviews += 1
        try:
            updated = store.update_card(
                card_id,
                srs_level=transition.new_srs_level,
                next_review_date=transition.new_next_review_date,
            )
            if updated is not None:
                self._replace(CardResponse.model_validate(updated))
        finally:
            self.advance(card_id, rating)
        return transition

    def _replace(self, snapshot: CardResponse):
        for index, card in enumerate(self.queue):
            if card.id == snapshot.id:
                self.queue[index] = snapshot
                return


class SessionRegistry:
    """
    In-memory study sessions by id. Nothing here is persisted.

    A deck has at most one open session: starting a new one replaces the old.
    Past `max_sessions` the oldest session is dropped. Its ratings are already
    saved, so only the queue position is lost.
    """

    def __init__(self, max_sessions: int = 100):
        if max_sessions < 1:
            raise ValueError("max_sessions must be at least 1")
        self.max_sessions = max_sessions
        self._sessions: dict[str, StudySession] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def start(self, deck_id: int, cards, now: Optional[datetime] = None) -> Optional[StudySession]:
        """Open a session over the deck's due cards; None when nothing is due."""
        session = StudySession(deck_id, cards, now)
        if session.finished:
            logger.info("No cards due in deck %s, not starting a session", deck_id)
            return None
        replaced = self.discard_deck(deck_id)
        if replaced:
            logger.info("Replacing open session for deck %s", deck_id)
        while len(self._sessions) >= self.max_sessions:
            oldest = next(iter(self._sessions))
            del self._sessions[oldest]
            logger.info("Evicted session %s, registry full", oldest)
        self._sessions[session.id] = session
        logger.info(
            "Started session %s for deck %s with %d due cards",
            session.id, deck_id, session.total_due_at_start,
        )
        return session

    def get(self, session_id: str) -> Optional[StudySession]:
        return self._sessions.get(session_id)

    def discard(self, session_id: str) -> bool:
        return self._sessions.pop(session_id, None) is not None

    def discard_deck(self, deck_id: int) -> int:
        stale = [sid for sid, s in self._sessions.items() if s.deck_id == deck_id]
        for sid in stale:
            del self._sessions[sid]
        return len(stale)

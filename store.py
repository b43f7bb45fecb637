"""
Card store: deck, card and quiz-history persistence over a SQLAlchemy session.
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from config import settings
from models import CardCreate, CardDB, DeckDB, Language, QuizAttemptCreate, QuizAttemptDB
from spaced_rep import utcnow

logger = logging.getLogger(__name__)

# Fields update_card accepts
CONTENT_FIELDS = ("front", "back", "image_url")
REVIEW_FIELDS = ("srs_level", "next_review_date")


class CardStore:
    def __init__(self, db: Session, history_limit: Optional[int] = None):
        self.db = db
        self.history_limit = settings.quiz_history_limit if history_limit is None else history_limit

    # --- Decks ---

    def list_decks(self) -> list[DeckDB]:
        return self.db.query(DeckDB).order_by(DeckDB.created_at.desc(), DeckDB.id.desc()).all()

    def get_deck(self, deck_id: int) -> Optional[DeckDB]:
        return self.db.query(DeckDB).filter(DeckDB.id == deck_id).first()

    def create_deck(
        self,
        title: str,
        language: Language = Language.ENGLISH,
        cards: Optional[list[CardCreate]] = None,
        now: Optional[datetime] = None,
    ) -> DeckDB:
        """Create a deck, optionally seeded with new (immediately due) cards."""
        now = now or utcnow()
        deck = DeckDB(title=title, language=Language(language).value, created_at=now)
        self.db.add(deck)
        self.db.flush()
        for card in cards or []:
            self.db.add(self._new_card(deck.id, card, now))
        self.db.commit()
        self.db.refresh(deck)
        logger.info("Created deck %s (%r) with %d cards", deck.id, title, len(cards or []))
        return deck

    def rename_deck(self, deck_id: int, title: str) -> Optional[DeckDB]:
        deck = self.get_deck(deck_id)
        if deck is None:
            return None
        deck.title = title
        self.db.commit()
        self.db.refresh(deck)
        return deck

    def delete_deck(self, deck_id: int) -> bool:
        deck = self.get_deck(deck_id)
        if deck is None:
            return False
        self.db.delete(deck)
        self.db.commit()
        logger.info("Deleted deck %s", deck_id)
        return True

    # --- Cards ---

    def _new_card(self, deck_id: int, card: CardCreate, now: datetime) -> CardDB:
        return CardDB(
            deck_id=deck_id,
            front=card.front,
            back=card.back,
            image_url=card.image_url,
            srs_level=0,
            next_review_date=now,
            created_at=now,
            updated_at=now,
        )

    def add_cards(
        self, deck_id: int, cards: list[CardCreate], now: Optional[datetime] = None
    ) -> list[CardDB]:
        """Add cards to a deck. New cards start at level 0 and are due at `now`."""
        now = now or utcnow()
        created = [self._new_card(deck_id, card, now) for card in cards]
        self.db.add_all(created)
        self.db.commit()
        for card in created:
            self.db.refresh(card)
        return created

    def get_card(self, card_id: int) -> Optional[CardDB]:
        return self.db.query(CardDB).filter(CardDB.id == card_id).first()

    def cards_for_deck(self, deck_id: int) -> list[CardDB]:
        """All cards of a deck in insertion order."""
        return self.db.query(CardDB).filter(CardDB.deck_id == deck_id).order_by(CardDB.id).all()

    def all_cards(self) -> list[CardDB]:
        return self.db.query(CardDB).order_by(CardDB.id).all()

    def update_card(self, card_id: int, **fields) -> Optional[CardDB]:
        """
        Merge-update a card: only the supplied fields change.

        Returns the updated card, or None when it no longer exists.
        """
        unknown = set(fields) - set(CONTENT_FIELDS) - set(REVIEW_FIELDS)
        if unknown:
            raise ValueError(f"Unknown card fields: {sorted(unknown)}")
        if fields.get("srs_level", 0) < 0:
            raise ValueError("srs_level must be >= 0")

        card = self.get_card(card_id)
        if card is None:
            return None
        for name, value in fields.items():
            setattr(card, name, value)
        self.db.commit()
        self.db.refresh(card)
        return card

    def delete_card(self, card_id: int) -> bool:
        card = self.get_card(card_id)
        if card is None:
            return False
        self.db.delete(card)
        self.db.commit()
        return True

    # --- Quiz history ---

    def quiz_history(self, deck_id: int) -> list[QuizAttemptDB]:
        """Most recently recorded first."""
        return (
            self.db.query(QuizAttemptDB)
            .filter(QuizAttemptDB.deck_id == deck_id)
            .order_by(QuizAttemptDB.id.desc())
            .all()
        )

    def add_quiz_attempt(self, deck_id: int, attempt: QuizAttemptCreate) -> list[QuizAttemptDB]:
        """Prepend an attempt and keep only the newest `history_limit` entries."""
        row = QuizAttemptDB(
            deck_id=deck_id,
            date=attempt.date or utcnow(),
            score=attempt.score,
            total_questions=attempt.total_questions,
            incorrect_flashcard_ids=list(attempt.incorrect_flashcard_ids),
        )
        self.db.add(row)
        self.db.flush()

        for stale in self.quiz_history(deck_id)[self.history_limit:]:
            self.db.delete(stale)
        self.db.commit()
        return self.quiz_history(deck_id)

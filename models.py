"""
Pydantic & SQLAlchemy models for the flashcard app.
Holds the review-state fields (srs_level, next_review_date) used by the scheduler.
"""

from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field, HttpUrl
from sqlalchemy import Column, Integer, String, DateTime, Text, JSON, create_engine, ForeignKey
from sqlalchemy.orm import declarative_base, sessionmaker, relationship

from spaced_rep import Rating, utcnow

Base = declarative_base()


class Language(str, Enum):
    ENGLISH = "English"
    GERMAN = "German"


# SQLAlchemy ORM Models
class DeckDB(Base):
    __tablename__ = "decks"

    id = Column(Integer, primary_key=True, autoincrement=True)
    title = Column(String(255), nullable=False)
    language = Column(String(32), nullable=False, default=Language.ENGLISH.value)
    created_at = Column(DateTime, default=utcnow)

    cards = relationship(
        "CardDB", back_populates="deck", cascade="all, delete-orphan", order_by="CardDB.id"
    )
    quiz_attempts = relationship(
        "QuizAttemptDB",
        back_populates="deck",
        cascade="all, delete-orphan",
        order_by="QuizAttemptDB.id.desc()",
    )

    @property
    def card_count(self) -> int:
        return len(self.cards)


class CardDB(Base):
    __tablename__ = "cards"

    id = Column(Integer, primary_key=True, autoincrement=True)
    deck_id = Column(Integer, ForeignKey("decks.id"), nullable=False, index=True)
    front = Column(Text, nullable=False)
    back = Column(Text, nullable=False)
    image_url = Column(String(500), nullable=True)

    # Review state, only changed by a rating transition
    srs_level = Column(Integer, nullable=False, default=0)
    next_review_date = Column(DateTime, nullable=False, default=utcnow)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    deck = relationship("DeckDB", back_populates="cards")


class QuizAttemptDB(Base):
    __tablename__ = "quiz_attempts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    deck_id = Column(Integer, ForeignKey("decks.id"), nullable=False, index=True)
    date = Column(DateTime, nullable=False, default=utcnow)
    score = Column(Integer, nullable=False)
    total_questions = Column(Integer, nullable=False)
    incorrect_flashcard_ids = Column(JSON, nullable=False, default=list)

    deck = relationship("DeckDB", back_populates="quiz_attempts")


# Pydantic models for API
class CardCreate(BaseModel):
    front: str = Field(..., min_length=1)
    back: str = Field(..., min_length=1)
    image_url: Optional[str] = None


class CardUpdate(BaseModel):
    front: Optional[str] = Field(None, min_length=1)
    back: Optional[str] = Field(None, min_length=1)
    image_url: Optional[str] = None


class CardResponse(BaseModel):
    id: int
    deck_id: int
    front: str
    back: str
    image_url: Optional[str] = None
    srs_level: int
    next_review_date: datetime

    class Config:
        from_attributes = True


class DeckCreate(BaseModel):
    title: str = Field(..., min_length=1)
    language: Language = Language.ENGLISH
    cards: list[CardCreate] = []


class DeckUpdate(BaseModel):
    title: str = Field(..., min_length=1)


class DeckResponse(BaseModel):
    id: int
    title: str
    language: Language
    created_at: datetime
    card_count: int

    class Config:
        from_attributes = True


class DeckDetailResponse(DeckResponse):
    """Deck with all of its cards."""
    cards: list[CardResponse] = []


class ReviewRequest(BaseModel):
    rating: Rating


class ReviewResult(BaseModel):
    card_id: int
    srs_level: int
    next_review_date: datetime
    interval: int  # days added to "now"


class SessionReviewRequest(BaseModel):
    card_id: int
    rating: Rating


class SessionResponse(BaseModel):
    session_id: Optional[str] = None
    deck_id: int
    total_due: int
    remaining: int
    completed: int
    reviews: int
    progress: float
    finished: bool
    current: Optional[CardResponse] = None
    last_review: Optional[ReviewResult] = None


class QuizAttemptCreate(BaseModel):
    date: Optional[datetime] = None
    score: int = Field(..., ge=0)
    total_questions: int = Field(..., ge=0)
    incorrect_flashcard_ids: list[int] = []


class QuizAttemptResponse(BaseModel):
    id: int
    date: datetime
    score: int
    total_questions: int
    incorrect_flashcard_ids: list[int]

    class Config:
        from_attributes = True


class GenerateRequest(BaseModel):
    topic: str = Field(..., min_length=1)
    count: int = Field(10, ge=1, le=50)
    language: Language = Language.ENGLISH
    title: Optional[str] = None


class GenerateFromUrlRequest(BaseModel):
    title: str = Field(..., min_length=1)
    url: HttpUrl
    count: int = Field(10, ge=1, le=50)
    language: Language = Language.ENGLISH


class BuddyRequest(BaseModel):
    message: str = Field(..., min_length=1)


class BuddyResponse(BaseModel):
    response: str


class QuizQuestion(BaseModel):
    question_text: str
    options: list[str]
    correct_answer: str
    flashcard_id: int


class QuizResponse(BaseModel):
    deck_id: int
    questions: list[QuizQuestion]


# Database setup
def get_engine(db_path: str = "flashdeck.db", **kwargs):
    return create_engine(f"sqlite:///{db_path}", echo=False, **kwargs)


def init_db(engine):
    Base.metadata.create_all(engine)


def get_session(engine):
    Session = sessionmaker(bind=engine)
    return Session()

"""
FastAPI backend for the flashdeck flashcard app.
Decks and cards in SQLite, fixed-ladder spaced repetition, study sessions,
quiz history, AI deck/quiz generation and a study-buddy chat via copilot.py.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Depends
from sqlalchemy.exc import SQLAlchemyError

from config import settings
from copilot import CopilotClient, CopilotError
from generator import (
    GenerationError, chat_with_buddy, generate_cards, generate_cards_from_url, generate_quiz,
)
from models import (
    BuddyRequest, BuddyResponse, CardCreate, CardResponse, CardUpdate, DeckCreate,
    DeckDetailResponse, DeckResponse, DeckUpdate, GenerateFromUrlRequest, GenerateRequest,
    QuizAttemptCreate, QuizAttemptResponse, QuizResponse,
    ReviewRequest, ReviewResult, SessionResponse, SessionReviewRequest,
    get_engine, init_db, get_session,
)
from session import SessionRegistry, StudySession, select_due_cards
from spaced_rep import compute_review_transition, utcnow
from store import CardStore

logger = logging.getLogger(__name__)

# Database setup
engine = get_engine(str(settings.db_path), connect_args={"check_same_thread": False})


@asynccontextmanager
async def lifespan(app: FastAPI):
    logging.basicConfig(level=settings.log_level)
    init_db(engine)
    logger.info("Database initialized at %s", settings.db_path)
    yield


app = FastAPI(
    title="Flashdeck API",
    description="Flashcard decks with spaced repetition study sessions and AI generation",
    version="1.0.0",
    lifespan=lifespan,
)


# --- Dependencies ---

def get_db():
    session = get_session(engine)
    try:
        yield session
    finally:
        session.close()


def get_store(db=Depends(get_db)) -> CardStore:
    return CardStore(db)


def get_clock():
    return utcnow


_sessions = SessionRegistry(settings.max_sessions)


def get_sessions() -> SessionRegistry:
    return _sessions


# Copilot client (lazy loaded)
_copilot_client = None


def get_copilot():
    global _copilot_client
    if _copilot_client is None:
        _copilot_client = CopilotClient()
    return _copilot_client


def _require_deck(store: CardStore, deck_id: int):
    deck = store.get_deck(deck_id)
    if deck is None:
        raise HTTPException(status_code=404, detail="Deck not found")
    return deck


def _require_card(store: CardStore, card_id: int):
    card = store.get_card(card_id)
    if card is None:
        raise HTTPException(status_code=404, detail="Card not found")
    return card


def _session_response(session: StudySession, last_review=None) -> SessionResponse:
    return SessionResponse(
        session_id=session.id,
        deck_id=session.deck_id,
        total_due=session.total_due_at_start,
        remaining=session.remaining,
        completed=session.completed_count,
        reviews=session.reviews,
        progress=session.progress,
        finished=session.finished,
        current=session.current,
        last_review=last_review,
    )


# --- Decks ---

@app.get("/api/decks", response_model=list[DeckResponse])
async def list_decks(store: CardStore = Depends(get_store)):
    """List all decks, newest first."""
    return store.list_decks()


@app.post("/api/decks", response_model=DeckDetailResponse)
async def create_deck(deck: DeckCreate, store: CardStore = Depends(get_store), clock=Depends(get_clock)):
    """Create a deck, optionally with an initial set of cards."""
    return store.create_deck(deck.title, deck.language, deck.cards, now=clock())


@app.get("/api/decks/{deck_id}", response_model=DeckDetailResponse)
async def get_deck(deck_id: int, store: CardStore = Depends(get_store)):
    return _require_deck(store, deck_id)


@app.patch("/api/decks/{deck_id}", response_model=DeckResponse)
async def rename_deck(deck_id: int, update: DeckUpdate, store: CardStore = Depends(get_store)):
    deck = store.rename_deck(deck_id, update.title)
    if deck is None:
        raise HTTPException(status_code=404, detail="Deck not found")
    return deck


@app.delete("/api/decks/{deck_id}")
async def delete_deck(
    deck_id: int,
    store: CardStore = Depends(get_store),
    sessions: SessionRegistry = Depends(get_sessions),
):
    """Delete a deck with its cards and quiz history. Open sessions on it are dropped."""
    if not store.delete_deck(deck_id):
        raise HTTPException(status_code=404, detail="Deck not found")
    sessions.discard_deck(deck_id)
    return {"message": "Deck deleted"}


# --- Cards ---

@app.get("/api/decks/{deck_id}/cards", response_model=list[CardResponse])
async def list_cards(deck_id: int, store: CardStore = Depends(get_store)):
    _require_deck(store, deck_id)
    return store.cards_for_deck(deck_id)


@app.post("/api/decks/{deck_id}/cards", response_model=list[CardResponse])
async def add_cards(
    deck_id: int,
    cards: list[CardCreate],
    store: CardStore = Depends(get_store),
    clock=Depends(get_clock),
):
    """Add one or more cards. New cards are due immediately."""
    _require_deck(store, deck_id)
    return store.add_cards(deck_id, cards, now=clock())


@app.get("/api/cards/{card_id}", response_model=CardResponse)
async def get_card(card_id: int, store: CardStore = Depends(get_store)):
    return _require_card(store, card_id)


@app.patch("/api/cards/{card_id}", response_model=CardResponse)
async def update_card(card_id: int, update: CardUpdate, store: CardStore = Depends(get_store)):
    """Edit card content. Review state is left alone."""
    card = store.update_card(card_id, **update.model_dump(exclude_unset=True, exclude_none=True))
    if card is None:
        raise HTTPException(status_code=404, detail="Card not found")
    return card


@app.delete("/api/cards/{card_id}")
async def delete_card(card_id: int, store: CardStore = Depends(get_store)):
    if not store.delete_card(card_id):
        raise HTTPException(status_code=404, detail="Card not found")
    return {"message": "Card deleted"}


@app.post("/api/cards/{card_id}/review", response_model=ReviewResult)
async def review_card(
    card_id: int,
    review: ReviewRequest,
    store: CardStore = Depends(get_store),
    clock=Depends(get_clock),
):
    """Rate a single card outside of a study session."""
    card = _require_card(store, card_id)
    transition = compute_review_transition(card.srs_level, review.rating, clock())
    try:
        store.update_card(
            card_id,
            srs_level=transition.new_srs_level,
            next_review_date=transition.new_next_review_date,
        )
    except SQLAlchemyError:
        store.db.rollback()
        logger.exception("Failed to save review of card %s", card_id)
        raise HTTPException(status_code=503, detail="Failed to save review")
    return ReviewResult(
        card_id=card_id,
        srs_level=transition.new_srs_level,
        next_review_date=transition.new_next_review_date,
        interval=transition.interval,
    )


# --- Study sessions ---

@app.get("/api/decks/{deck_id}/due", response_model=list[CardResponse])
async def get_due_cards(deck_id: int, store: CardStore = Depends(get_store), clock=Depends(get_clock)):
    """Cards due today or earlier, least mature first."""
    _require_deck(store, deck_id)
    return select_due_cards(store.cards_for_deck(deck_id), clock())


@app.post("/api/decks/{deck_id}/study", response_model=SessionResponse)
async def start_session(
    deck_id: int,
    store: CardStore = Depends(get_store),
    sessions: SessionRegistry = Depends(get_sessions),
    clock=Depends(get_clock),
):
    """Start a study session over the deck's due cards."""
    _require_deck(store, deck_id)
    session = sessions.start(deck_id, store.cards_for_deck(deck_id), clock())
    if session is None:
        return SessionResponse(
            deck_id=deck_id, total_due=0, remaining=0, completed=0,
            reviews=0, progress=0.0, finished=True,
        )
    return _session_response(session)


@app.get("/api/sessions/{session_id}", response_model=SessionResponse)
async def get_study_session(session_id: str, sessions: SessionRegistry = Depends(get_sessions)):
    session = sessions.get(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return _session_response(session)


@app.post("/api/sessions/{session_id}/review", response_model=SessionResponse)
async def review_in_session(
    session_id: str,
    review: SessionReviewRequest,
    store: CardStore = Depends(get_store),
    sessions: SessionRegistry = Depends(get_sessions),
    clock=Depends(get_clock),
):
    """
    Rate a card in a session. The queue moves on even if saving fails;
    in that case the error is reported with a 503.
    """
    session = sessions.get(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found")

    try:
        transition = session.rate(review.card_id, review.rating, store, now=clock())
    except SQLAlchemyError:
        store.db.rollback()
        logger.exception("Failed to save review of card %s in session %s", review.card_id, session_id)
        raise HTTPException(status_code=503, detail="Failed to save review")
    finally:
        if session.finished:
            sessions.discard(session_id)
            logger.info(
                "Session %s finished: %d cards, %d reviews",
                session_id, session.completed_count, session.reviews,
            )

    last_review = None
    if transition is not None:
        last_review = ReviewResult(
            card_id=review.card_id,
            srs_level=transition.new_srs_level,
            next_review_date=transition.new_next_review_date,
            interval=transition.interval,
        )
    return _session_response(session, last_review)


@app.delete("/api/sessions/{session_id}")
async def end_session(session_id: str, sessions: SessionRegistry = Depends(get_sessions)):
    """Abandon a session. Ratings given so far are already saved."""
    if not sessions.discard(session_id):
        raise HTTPException(status_code=404, detail="Session not found")
    return {"message": "Session ended"}


# --- Quizzes ---

@app.get("/api/decks/{deck_id}/quiz-attempts", response_model=list[QuizAttemptResponse])
async def list_quiz_attempts(deck_id: int, store: CardStore = Depends(get_store)):
    _require_deck(store, deck_id)
    return store.quiz_history(deck_id)


@app.post("/api/decks/{deck_id}/quiz-attempts", response_model=list[QuizAttemptResponse])
async def add_quiz_attempt(deck_id: int, attempt: QuizAttemptCreate, store: CardStore = Depends(get_store)):
    """Record a quiz result. Only the most recent attempts are kept."""
    _require_deck(store, deck_id)
    return store.add_quiz_attempt(deck_id, attempt)


@app.post("/api/decks/{deck_id}/quiz", response_model=QuizResponse)
async def create_quiz(
    deck_id: int,
    store: CardStore = Depends(get_store),
    copilot=Depends(get_copilot),
):
    """Generate a multiple-choice quiz, weighted towards previously missed cards."""
    deck = _require_deck(store, deck_id)
    cards = store.cards_for_deck(deck_id)
    if not cards:
        raise HTTPException(status_code=400, detail="Deck has no cards")

    try:
        questions = generate_quiz(copilot, cards, store.quiz_history(deck_id), deck.language)
    except (CopilotError, GenerationError) as e:
        logger.warning("Quiz generation for deck %s failed: %s", deck_id, e)
        raise HTTPException(status_code=502, detail=f"Quiz generation failed: {e}")
    return QuizResponse(deck_id=deck_id, questions=questions)


@app.post("/api/decks/{deck_id}/buddy", response_model=BuddyResponse)
async def ask_buddy(
    deck_id: int,
    request: BuddyRequest,
    store: CardStore = Depends(get_store),
    copilot=Depends(get_copilot),
):
    """Ask the study buddy about the deck's material."""
    deck = _require_deck(store, deck_id)
    try:
        reply = chat_with_buddy(
            copilot, deck.title, store.cards_for_deck(deck_id), request.message, deck.language
        )
    except (CopilotError, GenerationError) as e:
        logger.warning("Study buddy for deck %s failed: %s", deck_id, e)
        raise HTTPException(status_code=502, detail=f"Study buddy failed: {e}")
    return BuddyResponse(response=reply)


# --- Generation ---

@app.post("/api/generate", response_model=DeckDetailResponse)
async def generate_deck(
    request: GenerateRequest,
    store: CardStore = Depends(get_store),
    copilot=Depends(get_copilot),
    clock=Depends(get_clock),
):
    """Generate a new deck on a topic with the AI model."""
    try:
        cards = generate_cards(copilot, request.topic, request.count, request.language.value)
    except (CopilotError, GenerationError) as e:
        logger.warning("Deck generation for %r failed: %s", request.topic, e)
        raise HTTPException(status_code=502, detail=f"Generation failed: {e}")
    return store.create_deck(request.title or request.topic, request.language, cards, now=clock())


@app.post("/api/generate/url", response_model=DeckDetailResponse)
async def generate_deck_from_url(
    request: GenerateFromUrlRequest,
    store: CardStore = Depends(get_store),
    copilot=Depends(get_copilot),
    clock=Depends(get_clock),
):
    """Generate a new deck from the content of a web page."""
    url = str(request.url)
    try:
        cards = generate_cards_from_url(
            copilot, request.title, url, request.count, request.language.value
        )
    except (CopilotError, GenerationError) as e:
        logger.warning("Deck generation from %s failed: %s", url, e)
        raise HTTPException(status_code=502, detail=f"Generation failed: {e}")
    return store.create_deck(request.title, request.language, cards, now=clock())


@app.get("/api/stats")
async def get_stats(store: CardStore = Depends(get_store), clock=Depends(get_clock)):
    """Get learning statistics."""
    cards = store.all_cards()
    return {
        "decks": len(store.list_decks()),
        "total": len(cards),
        "due": len(select_due_cards(cards, clock())),
        "new": sum(1 for c in cards if c.srs_level == 0),
        "learning": sum(1 for c in cards if 0 < c.srs_level < 5),
        "mature": sum(1 for c in cards if c.srs_level >= 5),
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)

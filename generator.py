"""
Prompt templates and response parsing for AI-generated decks, quizzes and
study-buddy replies.

`client` is anything with a `chat(message=...)` method returning
{"content": "..."} (see CopilotClient).
"""

import json
import logging
import random
from html.parser import HTMLParser

import requests
from pydantic import BaseModel, ValidationError

from models import CardCreate, QuizQuestion

logger = logging.getLogger(__name__)

PAGE_TIMEOUT = 20
PAGE_TEXT_LIMIT = 12000


class GenerationError(Exception):
    """The model answered with something we could not use."""


class GeneratedCard(BaseModel):
    front: str = ""
    back: str = ""


class GeneratedQuestion(BaseModel):
    question_text: str = ""
    options: list[str] = []
    correct_answer: str = ""
    flashcard_id: int


class DeckPayload(BaseModel):
    flashcards: list[dict]


class QuizPayload(BaseModel):
    questions: list[dict]


DECK_PROMPT = """You are an expert in creating educational materials. Generate a set of high-quality flashcards for the given topic.

Each flashcard has a clear "front" (a question, term, or concept) and a matching "back" (the answer, definition, or explanation).
The flashcards must be written in {language}.

Topic: {topic}

Generate exactly {count} flashcards. Keep them accurate, concise and suitable for learning.

Answer ONLY with this JSON (no other text):
{{
    "flashcards": [
        {{"front": "question or term", "back": "answer or definition"}}
    ]
}}"""

QUIZ_PROMPT = """You are an expert in creating educational quizzes. Build a multiple-choice quiz from the flashcards below.
The quiz must be written in {language}.

For each flashcard create one question. The card's front is the basis of the question and its back is the correct answer.
Add three plausible but incorrect "distractor" answers per question.

{history}

Flashcards:
{cards}

Answer ONLY with this JSON (no other text):
{{
    "questions": [
        {{
            "question_text": "question",
            "options": ["wrong 1", "wrong 2", "wrong 3"],
            "correct_answer": "correct answer",
            "flashcard_id": 1
        }}
    ]
}}"""

URL_DECK_PROMPT = """You are an expert in creating educational materials from web content. Generate a set of high-quality flashcards from the web page below.

Use the main content of the page. Each flashcard has a clear "front" (a question, term, or concept) and a matching "back" (the answer, definition, or explanation).
The flashcards must be written in {language}.

Deck topic: {title}
Website URL: {url}

Page text:
{page}

Generate exactly {count} flashcards about the page's content.

Answer ONLY with this JSON (no other text):
{{
    "flashcards": [
        {{"front": "question or term", "back": "answer or definition"}}
    ]
}}"""

BUDDY_PROMPT = """You are an expert, friendly and encouraging study buddy. Your goal is to help the user understand the topics in their flashcard deck.

The user is studying a deck titled "{title}". The deck is in {language}; hold this conversation in {language}.

Deck content:
{cards}

The user sent you this message:
"{message}"

Answer in a helpful, conversational way and keep it short. Answer questions from the flashcards or your general knowledge of the topic. If the user seems confused, offer a simpler explanation. Stay positive."""

FIRST_QUIZ = "This is the user's first quiz for this deck. Cover all topics evenly."

HISTORY_HEADER = """This user has taken quizzes on this deck before:
{attempts}

Focus the new quiz on the cards the user struggled with, but include some other cards for variety."""


def extract_json(content: str) -> dict:
    """Parse the outermost {...} block of a model reply."""
    start = content.find("{")
    end = content.rfind("}") + 1
    if start < 0 or end <= start:
        raise GenerationError("Could not parse AI response")
    try:
        return json.loads(content[start:end])
    except json.JSONDecodeError as e:
        raise GenerationError(f"JSON parse error: {e}") from e


def _ask(client, prompt: str) -> dict:
    response = client.chat(message=prompt)
    return extract_json(response.get("content") or "")


def _validate(model, data):
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise GenerationError(f"Unexpected AI response shape ({e.error_count()} errors)") from e


def _parse_cards(data: dict) -> list[CardCreate]:
    cards = []
    for item in _validate(DeckPayload, data).flashcards:
        try:
            card = GeneratedCard.model_validate(item)
        except ValidationError:
            logger.debug("Dropping malformed flashcard %r", item)
            continue
        front, back = card.front.strip(), card.back.strip()
        if front and back:
            cards.append(CardCreate(front=front, back=back))
    return cards


def _check_count(cards: list[CardCreate], count: int, source: str) -> list[CardCreate]:
    if not cards:
        raise GenerationError("The AI model returned no flashcards")
    if len(cards) != count:
        logger.warning("Asked for %d flashcards from %r, got %d", count, source, len(cards))
    return cards[:count]


def generate_cards(client, topic: str, count: int, language: str = "English") -> list[CardCreate]:
    """Ask the model for `count` flashcards on `topic`. Extra cards are dropped."""
    data = _ask(client, DECK_PROMPT.format(topic=topic, count=count, language=language))
    return _check_count(_parse_cards(data), count, topic)


class _TextExtractor(HTMLParser):
    SKIP = {"script", "style", "noscript", "head", "svg"}

    def __init__(self):
        super().__init__()
        self.parts = []
        self._skipping = 0

    def handle_starttag(self, tag, attrs):
        if tag in self.SKIP:
            self._skipping += 1

    def handle_endtag(self, tag):
        if tag in self.SKIP and self._skipping:
            self._skipping -= 1

    def handle_data(self, data):
        if not self._skipping and data.strip():
            self.parts.append(data.strip())


def page_text(html: str, limit: int = PAGE_TEXT_LIMIT) -> str:
    """Visible text of an HTML page, whitespace collapsed and cut to `limit` characters."""
    parser = _TextExtractor()
    parser.feed(html)
    parser.close()
    return " ".join(" ".join(parser.parts).split())[:limit]


def fetch_page(url: str) -> str:
    try:
        response = requests.get(url, timeout=PAGE_TIMEOUT)
    except requests.exceptions.RequestException as e:
        raise GenerationError(f"Could not fetch {url}: {e}") from e
    if not response.ok:
        raise GenerationError(f"Could not fetch {url}: HTTP {response.status_code}")
    text = page_text(response.text)
    if not text:
        raise GenerationError(f"No readable text at {url}")
    return text


def generate_cards_from_url(
    client, title: str, url: str, count: int, language: str = "English"
) -> list[CardCreate]:
    """Fetch a web page and ask the model for `count` flashcards about it."""
    page = fetch_page(url)
    prompt = URL_DECK_PROMPT.format(title=title, url=url, page=page, count=count, language=language)
    return _check_count(_parse_cards(_ask(client, prompt)), count, url)


def chat_with_buddy(client, title: str, cards, message: str, language: str = "English") -> str:
    """Answer a user's question about a deck in the study-buddy voice."""
    card_lines = "\n".join(f'- Front: "{card.front}" / Back: "{card.back}"' for card in cards)
    prompt = BUDDY_PROMPT.format(
        title=title, language=language, cards=card_lines or "(no cards yet)", message=message
    )
    reply = (client.chat(message=prompt).get("content") or "").strip()
    if not reply:
        raise GenerationError("The AI model failed to generate a response")
    return reply


def format_history(history) -> str:
    if not history:
        return FIRST_QUIZ
    attempts = "\n".join(
        f"- On {attempt.date:%Y-%m-%d}, they scored {attempt.score} out of "
        f"{attempt.total_questions}. Missed cards: "
        f"{', '.join(str(i) for i in attempt.incorrect_flashcard_ids) or 'none'}."
        for attempt in history
    )
    return HISTORY_HEADER.format(attempts=attempts)


def generate_quiz(client, cards, history=None, language: str = "English", rng=None) -> list[QuizQuestion]:
    """
    Build a multiple-choice quiz from a deck's cards.

    Questions naming an unknown flashcard id are dropped. The correct answer
    is shuffled in among the distractors.
    """
    if not cards:
        raise GenerationError("Cannot build a quiz from an empty deck")
    rng = rng or random.Random()

    card_lines = "\n".join(
        f"- (ID: {card.id}) Front: {card.front}, Back: {card.back} (Correct Answer)"
        for card in cards
    )
    prompt = QUIZ_PROMPT.format(
        language=language, history=format_history(history), cards=card_lines
    )
    data = _ask(client, prompt)

    known_ids = {card.id for card in cards}
    questions = []
    for item in _validate(QuizPayload, data).questions:
        try:
            question = GeneratedQuestion.model_validate(item)
        except ValidationError:
            logger.debug("Dropping malformed quiz question %r", item)
            continue
        if question.flashcard_id not in known_ids:
            logger.debug("Dropping quiz question for unknown card %s", question.flashcard_id)
            continue
        options = question.options + [question.correct_answer]
        rng.shuffle(options)
        questions.append(
            QuizQuestion(
                question_text=question.question_text,
                options=options,
                correct_answer=question.correct_answer,
                flashcard_id=question.flashcard_id,
            )
        )
    if not questions:
        raise GenerationError("The AI model failed to generate a quiz")
    return questions

from datetime import datetime, timedelta
from types import SimpleNamespace

import pytest
from sqlalchemy.exc import OperationalError

from conftest import NOW, make_card
from session import SessionRegistry, StudySession, advance_session, is_due, select_due_cards
from spaced_rep import Rating


def card(card_id, level=0, due=NOW):
    return SimpleNamespace(id=card_id, srs_level=level, next_review_date=due)


class FakeStore:
    def __init__(self, cards, deck_ids=(1,)):
        self.cards = {c.id: c for c in cards}
        self.deck_ids = set(deck_ids)
        self.updates = []
        self.fail = False

    def get_deck(self, deck_id):
        return deck_id if deck_id in self.deck_ids else None

    def get_card(self, card_id):
        return self.cards.get(card_id)

    def update_card(self, card_id, **fields):
        if self.fail:
            raise OperationalError("UPDATE cards", {}, Exception("database is locked"))
        if card_id not in self.cards:
            return None
        self.cards[card_id] = self.cards[card_id].model_copy(update=fields)
        self.updates.append((card_id, fields))
        return self.cards[card_id]


# --- due selection ---

def test_due_check_ignores_time_of_day():
    later_today = NOW.replace(hour=23, minute=59)
    assert is_due(card(1, due=later_today), NOW)
    assert is_due(card(1, due=NOW - timedelta(days=3)), NOW)


def test_tomorrow_is_not_due():
    midnight = datetime(NOW.year, NOW.month, NOW.day) + timedelta(days=1)
    assert not is_due(card(1, due=midnight), NOW)


def test_select_due_cards_orders_by_level():
    cards = [card("a", 2), card("b", 0), card("c", 1)]
    assert [c.srs_level for c in select_due_cards(cards, NOW)] == [0, 1, 2]


def test_select_due_cards_is_stable_and_filters_future():
    cards = [
        card("x", 1),
        card("future", 0, NOW + timedelta(days=2)),
        card("y", 0),
        card("z", 1),
        card("w", 0, NOW - timedelta(days=10)),
    ]
    assert [c.id for c in select_due_cards(cards, NOW)] == ["y", "w", "x", "z"]


def test_select_due_cards_empty():
    assert select_due_cards([], NOW) == []


# --- queue transitions ---

def test_again_rotates_card_to_tail():
    a, b, c = card("A"), card("B"), card("C")
    queue = advance_session([a, b, c], "A", Rating.AGAIN)
    assert [x.id for x in queue] == ["B", "C", "A"]
    queue = advance_session(queue, "B", Rating.GOOD)
    assert [x.id for x in queue] == ["C", "A"]


@pytest.mark.parametrize("rating", [Rating.HARD, Rating.GOOD, Rating.EASY])
def test_pass_ratings_shrink_queue_by_one(rating):
    queue = [card("A"), card("B")]
    assert [x.id for x in advance_session(queue, "A", rating)] == ["B"]


def test_unknown_card_leaves_queue_unchanged():
    queue = [card("A"), card("B")]
    new_queue = advance_session(queue, "nope", Rating.GOOD)
    assert new_queue == queue
    assert new_queue is not queue


def test_advance_session_does_not_mutate_input():
    queue = [card("A"), card("B")]
    advance_session(queue, "A", Rating.AGAIN)
    assert [x.id for x in queue] == ["A", "B"]


def test_queue_length_is_stable_under_again():
    queue = [card("A"), card("B"), card("C")]
    for _ in range(5):
        head = queue[0].id
        queue = advance_session(queue, head, Rating.AGAIN)
        assert len(queue) == 3


def test_invalid_rating_fails_fast():
    with pytest.raises(ValueError):
        advance_session([card("A")], "A", "sometimes")


# --- StudySession ---

def test_session_starts_with_sorted_due_cards():
    cards = [make_card(1, 2), make_card(2, 0), make_card(3, 1), make_card(4, 0, NOW + timedelta(days=1))]
    session = StudySession(1, cards, NOW)
    assert [c.id for c in session.queue] == [2, 3, 1]
    assert session.total_due_at_start == 3
    assert session.current.id == 2
    assert session.progress == 0.0


def test_rate_persists_and_advances():
    cards = [make_card(1, 2), make_card(2, 0)]
    store = FakeStore(cards)
    session = StudySession(1, cards, NOW)

    transition = session.rate(2, Rating.GOOD, store, NOW)

    assert transition.new_srs_level == 1
    assert store.updates == [
        (2, {"srs_level": 1, "next_review_date": NOW + timedelta(days=1)})
    ]
    assert [c.id for c in session.queue] == [1]
    assert session.completed_count == 1
    assert session.reviews == 1
    assert session.progress == 50.0


def test_again_persists_reset_and_requeues():
    cards = [make_card(1, 3), make_card(2, 4)]
    store = FakeStore(cards)
    session = StudySession(1, cards, NOW)

    session.rate(1, Rating.AGAIN, store, NOW)

    assert store.cards[1].srs_level == 0
    assert store.cards[1].next_review_date == NOW
    assert [c.id for c in session.queue] == [2, 1]
    # requeued snapshot reflects the saved state
    assert session.queue[-1].srs_level == 0
    assert session.completed_count == 0


def test_completed_counts_cards_not_reviews():
    cards = [make_card(1), make_card(2)]
    store = FakeStore(cards)
    session = StudySession(1, cards, NOW)

    session.rate(1, Rating.AGAIN, store, NOW)
    session.rate(2, Rating.GOOD, store, NOW)
    session.rate(1, Rating.AGAIN, store, NOW)
    session.rate(1, Rating.HARD, store, NOW)

    assert session.finished
    assert session.reviews == 4
    assert session.completed_count == 2
    assert session.progress == 100.0
    assert session.current is None


def test_rating_card_not_in_queue_is_noop():
    cards = [make_card(1)]
    store = FakeStore(cards + [make_card(9)])
    session = StudySession(1, cards, NOW)

    assert session.rate(9, Rating.GOOD, store, NOW) is None
    assert store.updates == []
    assert [c.id for c in session.queue] == [1]
    assert session.reviews == 0


def test_rating_after_deck_deleted_is_noop():
    cards = [make_card(1)]
    store = FakeStore(cards, deck_ids=())
    session = StudySession(1, cards, NOW)

    assert session.rate(1, Rating.GOOD, store, NOW) is None
    assert store.updates == []
    assert session.remaining == 1


def test_deleted_card_is_dropped_without_writing():
    cards = [make_card(1), make_card(2)]
    store = FakeStore([cards[1]])
    session = StudySession(1, cards, NOW)

    assert session.rate(1, Rating.AGAIN, store, NOW) is None
    assert [c.id for c in session.queue] == [2]
    assert store.updates == []


def test_persistence_failure_still_advances_queue():
    cards = [make_card(1), make_card(2)]
    store = FakeStore(cards)
    store.fail = True
    session = StudySession(1, cards, NOW)

    with pytest.raises(OperationalError):
        session.rate(1, Rating.EASY, store, NOW)

    assert [c.id for c in session.queue] == [2]
    assert store.cards[1].srs_level == 0


def test_rate_uses_stored_level_not_snapshot():
    cards = [make_card(1, 0)]
    store = FakeStore([make_card(1, 4)])
    session = StudySession(1, cards, NOW)

    transition = session.rate(1, Rating.GOOD, store, NOW)

    assert transition.new_srs_level == 5
    assert transition.interval == 16


# --- registry ---

def test_registry_does_not_start_empty_sessions():
    registry = SessionRegistry()
    assert registry.start(1, [make_card(1, 0, NOW + timedelta(days=3))], NOW) is None
    assert len(registry) == 0


def test_registry_tracks_and_discards_sessions():
    registry = SessionRegistry()
    first = registry.start(1, [make_card(1)], NOW)
    second = registry.start(2, [make_card(2, deck_id=2)], NOW)

    assert registry.get(first.id) is first
    assert registry.discard_deck(1) == 1
    assert registry.get(first.id) is None
    assert registry.discard(second.id)
    assert not registry.discard(second.id)


def test_registry_replaces_open_session_for_same_deck():
    registry = SessionRegistry()
    first = registry.start(1, [make_card(1)], NOW)
    second = registry.start(1, [make_card(1)], NOW)

    assert registry.get(first.id) is None
    assert registry.get(second.id) is second
    assert len(registry) == 1


def test_registry_evicts_oldest_when_full():
    registry = SessionRegistry(max_sessions=2)
    sessions = [registry.start(deck_id, [make_card(deck_id, deck_id=deck_id)], NOW) for deck_id in (1, 2, 3)]

    assert len(registry) == 2
    assert registry.get(sessions[0].id) is None
    assert [registry.get(s.id) for s in sessions[1:]] == sessions[1:]


def test_registry_needs_room_for_a_session():
    with pytest.raises(ValueError):
        SessionRegistry(max_sessions=0)

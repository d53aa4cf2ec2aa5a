"""
Unit tests for the conversation store.
"""
import asyncio
from decimal import Decimal

import pytest

from core.exceptions import NotFoundError
from core.schema import Actor, CandidateTransaction, FieldValue, SessionState, Turn
from services.conversation_store import ConversationStore, merge_field


@pytest.fixture
def store(clock):
    return ConversationStore(ttl_seconds=60, clock=clock)


def _fv(value, confidence, turn_index=0, corrected=False):
    return FieldValue(value=value, confidence=confidence, turn_index=turn_index, corrected=corrected)


def test_create_and_get(store):
    key = store.create()
    session = store.get_session(key)
    assert session.key == key
    assert session.state == SessionState.IDLE
    assert session.candidate.is_empty()


def test_unknown_session_raises(store):
    with pytest.raises(NotFoundError):
        store.get_session("missing")
    with pytest.raises(NotFoundError):
        store.append_turn("missing", Turn(actor=Actor.CALLER, text="hi"))


def test_get_session_returns_copy(store):
    key = store.create()
    copy = store.get_session(key)
    copy.turns.append(Turn(actor=Actor.CALLER, text="sneaky"))
    assert store.get_session(key).turns == []


def test_append_turn_returns_index(store):
    key = store.create()
    assert store.append_turn(key, Turn(actor=Actor.CALLER, text="one")) == 0
    assert store.append_turn(key, Turn(actor=Actor.SYSTEM, text="two")) == 1


def test_lower_confidence_never_overwrites():
    existing = _fv("4512", 0.9, turn_index=0)
    assert merge_field(existing, _fv("4513", 0.5, turn_index=3)) is existing


def test_higher_confidence_overwrites():
    incoming = _fv("4513", 0.95, turn_index=1)
    assert merge_field(_fv("4512", 0.9), incoming) is incoming


def test_equal_confidence_prefers_later_turn():
    later = _fv("4513", 0.9, turn_index=2)
    assert merge_field(_fv("4512", 0.9, turn_index=1), later) is later
    earlier = _fv("4511", 0.9, turn_index=0)
    assert merge_field(later, earlier) is later


def test_corrections_win_and_stick():
    correction = _fv("4512", 1.0, turn_index=1, corrected=True)
    assert merge_field(_fv("4S12", 0.99), correction) is correction
    assert merge_field(correction, _fv("9999", 1.0, turn_index=5)) is correction
    newer = _fv("4600", 1.0, turn_index=6, corrected=True)
    assert merge_field(correction, newer) is newer


def test_merge_candidate_is_field_by_field(store):
    key = store.create()
    store.merge_candidate(key, CandidateTransaction(
        cheque_number=_fv("4512", 0.95),
        amount=_fv(Decimal("1000.00"), 0.6),
    ))
    merged = store.merge_candidate(key, CandidateTransaction(
        cheque_number=_fv("4513", 0.4, turn_index=1),
        amount=_fv(Decimal("100.00"), 0.9, turn_index=1),
    ))
    assert merged.value_of("cheque_number") == "4512"
    assert merged.value_of("amount") == Decimal("100.00")


def test_rerunning_lower_confidence_merge_is_idempotent(store):
    key = store.create()
    store.merge_candidate(key, CandidateTransaction(date=_fv("2024-03-01", 0.9)))
    low = CandidateTransaction(date=_fv("2024-03-02", 0.3, turn_index=1))
    first = store.merge_candidate(key, low)
    second = store.merge_candidate(key, low)
    assert first == second
    assert second.value_of("date") == "2024-03-01"


def test_close_leaves_tombstone(store):
    key = store.create()
    store.append_turn(key, Turn(actor=Actor.CALLER, text="hi"))
    tombstone = store.close(key, SessionState.CANCELLED)
    assert not store.exists(key)
    assert store.closed_state(key) == tombstone
    assert len(tombstone.turns) == 1
    with pytest.raises(NotFoundError) as exc_info:
        store.get_session(key)
    assert exc_info.value.details["closed_state"] == "cancelled"


def test_tombstones_are_bounded(clock):
    store = ConversationStore(ttl_seconds=60, max_tombstones=2, clock=clock)
    keys = [store.create() for _ in range(3)]
    for key in keys:
        store.close(key, SessionState.CANCELLED)
    assert store.closed_state(keys[0]) is None
    assert store.closed_state(keys[2]) is not None


def test_idle_keys_respect_ttl(store, clock):
    old = store.create()
    clock.advance(30)
    fresh = store.create()
    clock.advance(30)
    assert store.idle_keys() == [old]
    store.append_turn(old, Turn(actor=Actor.CALLER, text="still here"))
    assert store.idle_keys() == []
    assert store.is_idle(fresh) is False


@pytest.mark.asyncio
async def test_lock_serializes_work_per_session(store):
    key = store.create()
    order = []

    async def worker(name):
        async with store.lock(key):
            order.append(f"{name}-start")
            await asyncio.sleep(0.01)
            order.append(f"{name}-end")

    await asyncio.gather(worker("a"), worker("b"))
    assert order == ["a-start", "a-end", "b-start", "b-end"]
    assert store.is_busy(key) is False


@pytest.mark.asyncio
async def test_is_busy_while_locked(store):
    key = store.create()
    async with store.lock(key):
        assert store.is_busy(key) is True
    assert store.is_busy(key) is False

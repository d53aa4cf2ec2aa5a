"""
In-memory conversation store.

Owns every session's turn history, lifecycle state and accumulating candidate
transaction. Callers receive deep copies; all mutation goes through this API.
"""
import uuid
from collections import OrderedDict
from datetime import datetime, timedelta
from typing import AsyncContextManager, Callable, Dict, List, Optional

from pydantic import BaseModel, Field

from core.config import get_settings
from core.exceptions import NotFoundError
from core.logger import setup_logger
from core.schema import (
    CANDIDATE_FIELDS,
    CandidateTransaction,
    FieldValue,
    ReconciliationResult,
    Session,
    SessionState,
    Turn,
    utc_now,
)
from services.locks import KeyedLocks

logger = setup_logger(__name__)


class ClosedSession(BaseModel):
    """Tombstone left behind by a cancelled or committed session."""
    key: str
    state: SessionState
    transaction_id: Optional[int] = None
    turns: List[Turn] = Field(default_factory=list)
    closed_at: datetime


def merge_field(existing: Optional[FieldValue], incoming: FieldValue) -> FieldValue:
    """
    Decide which of two values for the same field survives.

    Caller corrections always win and are only displaced by another
    correction. Otherwise higher confidence wins; on equal confidence the
    later turn wins. A lower-confidence read never replaces a set value.
    """
    if existing is None:
        return incoming
    if incoming.corrected:
        return incoming
    if existing.corrected:
        return existing
    if incoming.confidence > existing.confidence:
        return incoming
    if incoming.confidence == existing.confidence and incoming.turn_index >= existing.turn_index:
        return incoming
    return existing


def merge_candidates(current: CandidateTransaction, updates: CandidateTransaction) -> CandidateTransaction:
    merged = {}
    for name in CANDIDATE_FIELDS:
        incoming = getattr(updates, name)
        existing = getattr(current, name)
        merged[name] = merge_field(existing, incoming) if incoming is not None else existing
    return CandidateTransaction(**merged)


class ConversationStore:
    """Keyed session container with per-session exclusion and idle eviction."""

    def __init__(
        self,
        ttl_seconds: Optional[int] = None,
        max_tombstones: int = 1000,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.ttl = timedelta(seconds=ttl_seconds if ttl_seconds is not None else get_settings().session_ttl_seconds)
        self.max_tombstones = max_tombstones
        self.clock = clock
        self._sessions: Dict[str, Session] = {}
        self._closed: "OrderedDict[str, ClosedSession]" = OrderedDict()
        self._locks = KeyedLocks()

    def __len__(self) -> int:
        return len(self._sessions)

    def create(self) -> str:
        key = uuid.uuid4().hex
        now = self.clock()
        self._sessions[key] = Session(key=key, created_at=now, last_activity=now)
        logger.info(f"Session {key} created")
        return key

    def _get(self, key: str) -> Session:
        session = self._sessions.get(key)
        if session is None:
            closed = self._closed.get(key)
            raise NotFoundError(
                f"Session {key} not found",
                details={"session_key": key, "closed_state": closed.state.value if closed else None},
            )
        return session

    def _touch(self, session: Session) -> None:
        session.last_activity = self.clock()

    def exists(self, key: str) -> bool:
        return key in self._sessions

    def get_session(self, key: str) -> Session:
        return self._get(key).model_copy(deep=True)

    def get_state(self, key: str) -> SessionState:
        return self._get(key).state

    def append_turn(self, key: str, turn: Turn) -> int:
        """Append an immutable turn; returns its index."""
        session = self._get(key)
        session.turns.append(turn)
        self._touch(session)
        return len(session.turns) - 1

    def merge_candidate(self, key: str, updates: CandidateTransaction) -> CandidateTransaction:
        """Merge partial fields into the session candidate, field by field."""
        session = self._get(key)
        before = session.candidate.set_fields()
        session.candidate = merge_candidates(session.candidate, updates)
        self._touch(session)

        changed = [
            name for name, field in session.candidate.set_fields().items()
            if before.get(name) != field
        ]
        kept = [
            name for name in updates.set_fields()
            if name not in changed
        ]
        if changed:
            logger.info(f"Session {key} candidate updated: {', '.join(changed)}")
        if kept:
            logger.debug(f"Session {key} kept existing values for: {', '.join(kept)}")
        return session.candidate.model_copy(deep=True)

    def set_state(self, key: str, state: SessionState) -> None:
        session = self._get(key)
        if session.state != state:
            logger.info(f"Session {key}: {session.state.value} -> {state.value}")
        session.state = state
        self._touch(session)

    def set_reconciliation(self, key: str, result: Optional[ReconciliationResult]) -> None:
        session = self._get(key)
        session.reconciliation = result
        self._touch(session)

    def set_message(self, key: str, message: Optional[str]) -> None:
        session = self._get(key)
        session.last_message = message

    def close(self, key: str, final_state: SessionState, transaction_id: Optional[int] = None) -> ClosedSession:
        """Destroy a session, keeping a tombstone of its final state."""
        session = self._get(key)
        del self._sessions[key]
        tombstone = ClosedSession(
            key=key,
            state=final_state,
            transaction_id=transaction_id,
            turns=list(session.turns),
            closed_at=self.clock(),
        )
        self._closed[key] = tombstone
        while len(self._closed) > self.max_tombstones:
            self._closed.popitem(last=False)
        logger.info(f"Session {key} closed as {final_state.value}")
        return tombstone

    def closed_state(self, key: str) -> Optional[ClosedSession]:
        return self._closed.get(key)

    def lock(self, key: str) -> AsyncContextManager[None]:
        """Per-session exclusion shared by turns, confirm, cancel and eviction."""
        return self._locks.acquire(key)

    def is_busy(self, key: str) -> bool:
        return self._locks.locked(key)

    def is_idle(self, key: str, now: Optional[datetime] = None) -> bool:
        session = self._sessions.get(key)
        if session is None:
            return False
        return (now or self.clock()) - session.last_activity >= self.ttl

    def idle_keys(self, now: Optional[datetime] = None) -> List[str]:
        """Sessions untouched for at least the TTL."""
        now = now or self.clock()
        return [key for key in list(self._sessions) if self.is_idle(key, now)]

"""
Session orchestrator.

Drives each intake session through an explicit state machine:

    idle -> awaiting_material -> extracting -> awaiting_confirmation -> committed
                   ^                  |                  |
                   +------------------+   (corrections)  +--> extracting

with cancelled reachable from every non-terminal state and failed reachable
on unrecoverable errors. Work for one session is serialized by the
conversation store's per-session lock; normalization and extraction run in
the default executor behind a shared semaphore.
"""
import asyncio
import functools
import hashlib
import sqlite3
import threading
from typing import Any, Callable, Dict, List, Optional

from core.config import Settings, get_settings
from core.db import Database, get_db
from core.documents import DocumentNormalizer
from core.exceptions import (
    ChequeIntakeException,
    ConversionError,
    ExtractionError,
    InvalidTransition,
    PersistenceError,
    ValidationError,
)
from core.logger import setup_logger
from core.normalize import clean_field, field_for_label, parse_field_directives
from core.schema import (
    Actor,
    CandidateTransaction,
    FieldValue,
    ReconciliationOutcome,
    ReconciliationResult,
    SessionState,
    Transaction,
    TransactionDraft,
    Turn,
    TurnResponse,
)
from llm.extract import ExtractionAdapter
from services.committer import TransactionCommitter
from services.conversation_store import ClosedSession, ConversationStore
from services.reconciliation import CounterpartyDirectory, ReconciliationContext, ReconciliationEngine

logger = setup_logger(__name__)

ALLOWED_TRANSITIONS = {
    SessionState.IDLE: frozenset({SessionState.AWAITING_MATERIAL, SessionState.CANCELLED}),
    SessionState.AWAITING_MATERIAL: frozenset({
        SessionState.EXTRACTING,
        SessionState.CANCELLED,
        SessionState.FAILED,
    }),
    SessionState.EXTRACTING: frozenset({
        SessionState.AWAITING_CONFIRMATION,
        SessionState.AWAITING_MATERIAL,
        SessionState.FAILED,
        SessionState.CANCELLED,
    }),
    SessionState.AWAITING_CONFIRMATION: frozenset({
        SessionState.EXTRACTING,
        SessionState.COMMITTED,
        SessionState.FAILED,
        SessionState.CANCELLED,
    }),
    SessionState.FAILED: frozenset({
        SessionState.AWAITING_MATERIAL,
        SessionState.AWAITING_CONFIRMATION,
        SessionState.CANCELLED,
    }),
}

CONFIRM_WORDS = frozenset({"confirm", "yes"})
CANCEL_WORDS = frozenset({"cancel"})

FIELD_LABELS = {
    "cheque_number": "cheque number",
    "date": "cheque date",
    "amount": "amount",
    "customer": "customer",
    "vendor": "vendor",
    "customer_name": "customer name",
    "vendor_name": "vendor name",
    "customer_id": "customer id",
    "vendor_id": "vendor id",
    "bank_name": "bank",
}


def can_transition(current: SessionState, new_state: SessionState) -> bool:
    return new_state in ALLOWED_TRANSITIONS.get(current, frozenset())


def _join_labels(names: List[str]) -> str:
    return ", ".join(FIELD_LABELS.get(name, name) for name in names)


def build_prompt_message(result: ReconciliationResult) -> str:
    """Assistant-facing reply for a reconciliation outcome."""
    if result.outcome == ReconciliationOutcome.AMBIGUOUS:
        parts = []
        for kind, candidates in sorted(result.ambiguities.items()):
            options = "; ".join(f"{c.name} (id {c.id})" for c in candidates)
            parts.append(f"Several {kind}s match: {options}. Reply with '{kind} id: <id>' to choose one.")
        if result.missing_fields:
            parts.append(f"Still missing: {_join_labels(result.missing_fields)}.")
        return " ".join(parts)

    if result.outcome == ReconciliationOutcome.NEEDS_INPUT:
        return (
            f"Please provide the {_join_labels(result.missing_fields)}. "
            "You can type it as 'field: value', for example 'amount: 250.50'."
        )

    draft = result.draft
    message = (
        f"Please confirm: cheque {draft.cheque_number} dated {draft.date.isoformat()} "
        f"for {draft.cheque_amount}, customer {draft.customer_name} ({draft.customer_id}), "
        f"vendor {draft.vendor_name} ({draft.vendor_id}). "
        f"Customer fee {draft.customer_fee}, net payable {draft.net_payable_to_customer}, "
        f"profit {draft.profit}. Reply 'confirm' to save, or send corrections."
    )
    if result.low_confidence_fields:
        message += f" Please double-check: {_join_labels(result.low_confidence_fields)}."
    if draft.requires_review:
        message += " Review required before saving: " + "; ".join(draft.review_reasons) + "."
    return message


def build_commit_message(transaction: Transaction, duplicate: bool) -> str:
    if duplicate:
        return (
            f"Cheque {transaction.cheque_number} was already recorded as transaction "
            f"{transaction.transaction_id}."
        )
    return f"Saved as transaction {transaction.transaction_id} with status {transaction.status.value}."


class SessionOrchestrator:
    """Coordinates store, normalizer, extraction, reconciliation and commit per session."""

    def __init__(
        self,
        store: Optional[ConversationStore] = None,
        normalizer: Optional[DocumentNormalizer] = None,
        extractor: Optional[ExtractionAdapter] = None,
        reconciler: Optional[ReconciliationEngine] = None,
        committer: Optional[TransactionCommitter] = None,
        directory: Optional[CounterpartyDirectory] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.store = store or ConversationStore(ttl_seconds=self.settings.session_ttl_seconds)
        self.normalizer = normalizer or DocumentNormalizer(self.settings)
        self.extractor = extractor or ExtractionAdapter(settings=self.settings)
        self.reconciler = reconciler or ReconciliationEngine(self.settings)
        self.committer = committer or TransactionCommitter()
        self._directory = directory

        self._semaphore = asyncio.Semaphore(self.settings.max_concurrent_extractions)
        self._inflight: Dict[str, asyncio.Task] = {}
        self._cancel_requested = set()

    @property
    def directory(self) -> CounterpartyDirectory:
        if self._directory is None:
            self._directory = self.committer.db
        return self._directory

    # State machine

    def _transition(self, key: str, new_state: SessionState) -> None:
        current = self.store.get_state(key)
        if not can_transition(current, new_state):
            raise InvalidTransition(
                f"Cannot move session from {current.value} to {new_state.value}",
                details={"session_key": key, "from": current.value, "to": new_state.value},
            )
        self.store.set_state(key, new_state)

    def _ensure_open(self, key: str) -> None:
        tombstone = self.store.closed_state(key)
        if tombstone is not None:
            raise InvalidTransition(
                f"Session {key} is already {tombstone.state.value}",
                details={"session_key": key, "state": tombstone.state.value},
            )
        self.store.get_state(key)

    def _reply(self, key: str, message: str) -> None:
        self.store.append_turn(key, Turn(actor=Actor.SYSTEM, text=message))
        self.store.set_message(key, message)

    # External calls

    def _release_slot(self, future: asyncio.Future) -> None:
        self._semaphore.release()
        # Consume the outcome of calls nobody waits for any more
        if not future.cancelled():
            future.exception()

    async def _run_bounded(
        self,
        func: Callable,
        *args: Any,
        timeout: float,
        timeout_error: ChequeIntakeException,
        abandoned: Optional[threading.Event] = None,
    ):
        """
        Run a blocking call in the default executor.

        The concurrency slot is held until the worker thread returns, even
        when the caller stops waiting because of the deadline or a cancel.
        """
        await self._semaphore.acquire()
        loop = asyncio.get_running_loop()
        try:
            future = loop.run_in_executor(None, functools.partial(func, *args))
        except BaseException:
            self._semaphore.release()
            raise
        future.add_done_callback(self._release_slot)

        try:
            return await asyncio.wait_for(asyncio.shield(future), timeout=timeout)
        except asyncio.TimeoutError:
            if abandoned is not None:
                abandoned.set()
            raise timeout_error from None
        except asyncio.CancelledError:
            if abandoned is not None:
                abandoned.set()
            raise

    async def _call_external(
        self,
        key: str,
        func: Callable,
        *args: Any,
        timeout: float,
        timeout_error: ChequeIntakeException,
        abandoned: Optional[threading.Event] = None,
    ):
        """Run a blocking call as a task that cancel() can interrupt."""
        task = asyncio.ensure_future(
            self._run_bounded(func, *args, timeout=timeout, timeout_error=timeout_error, abandoned=abandoned)
        )
        self._inflight[key] = task
        try:
            return await task
        except asyncio.CancelledError:
            if key in self._cancel_requested:
                logger.info(f"Session {key}: outstanding call interrupted by cancel")
                raise InvalidTransition("cancelled", details={"session_key": key}) from None
            raise
        finally:
            if self._inflight.get(key) is task:
                del self._inflight[key]

    def _context(self) -> ReconciliationContext:
        return ReconciliationContext.from_directory(self.directory)

    async def _reconcile(self, key: str) -> ReconciliationResult:
        candidate = self.store.get_session(key).candidate
        loop = asyncio.get_running_loop()
        try:
            context = await loop.run_in_executor(None, self._context)
        except sqlite3.Error as e:
            raise PersistenceError(
                "Counterparty directory unavailable",
                details={"session_key": key, "error": str(e)},
            )
        result = self.reconciler.reconcile(candidate, context)
        self.store.set_reconciliation(key, result)
        return result

    def _route(self, key: str, result: ReconciliationResult) -> None:
        if result.outcome == ReconciliationOutcome.RESOLVED:
            self._transition(key, SessionState.AWAITING_CONFIRMATION)
        else:
            self._transition(key, SessionState.AWAITING_MATERIAL)

    # Responses

    def _response(self, key: str, include_confidence: bool = False, transaction: Optional[Transaction] = None) -> TurnResponse:
        session = self.store.get_session(key)
        result = session.reconciliation
        draft = result.draft if result else None
        return TurnResponse(
            session_key=key,
            state=session.state,
            message=session.last_message,
            candidate=session.candidate.detailed() if include_confidence else session.candidate.redacted(),
            draft=draft,
            missing_fields=result.missing_fields if result else [],
            ambiguities=result.ambiguities if result else {},
            requires_review=bool(draft and draft.requires_review),
            transaction=transaction,
        )

    @staticmethod
    def _closed_response(tombstone: ClosedSession) -> TurnResponse:
        if tombstone.state == SessionState.COMMITTED:
            message = f"Session committed as transaction {tombstone.transaction_id}."
        else:
            message = "Session cancelled."
        return TurnResponse(session_key=tombstone.key, state=tombstone.state, message=message)

    # Turns

    async def handle_turn(
        self,
        session_key: Optional[str] = None,
        artifact: Optional[bytes] = None,
        mime_type: Optional[str] = None,
        text: Optional[str] = None,
        include_confidence: bool = False,
    ) -> TurnResponse:
        """
        Process one caller turn: an upload, a text message, or both.

        A missing session key creates a new session. Text in "field: value"
        form is applied locally as a correction; an upload or any remaining
        free text is sent for extraction.

        Raises:
            ValidationError: No material, or an unacceptable upload
            ConversionError: The upload could not be rasterized
            ExtractionError: The recognition call failed; the session is failed
            InvalidTransition: Closed session, or cancelled mid-turn
            NotFoundError: Unknown session key
        """
        text = text.strip() if text else None
        if artifact is None and not text:
            raise ValidationError("An upload or a text message is required")
        if artifact is not None:
            self.normalizer.validate(artifact, mime_type)

        if session_key is None:
            key = self.store.create()
            self._transition(key, SessionState.AWAITING_MATERIAL)
        else:
            key = session_key
            self._ensure_open(key)

        async with self.store.lock(key):
            self._ensure_open(key)
            state = self.store.get_state(key)
            command = text.lower() if text and artifact is None else None

            if command in CANCEL_WORDS:
                self.store.append_turn(key, Turn(actor=Actor.CALLER, text=text))
                return self._close_cancelled(key)
            if command in CONFIRM_WORDS and state == SessionState.AWAITING_CONFIRMATION:
                return await self._confirm_locked(key, {}, False, include_confidence, text)

            image_ref = hashlib.sha256(artifact).hexdigest() if artifact is not None else None
            turn_index = self.store.append_turn(key, Turn(actor=Actor.CALLER, text=text, image_ref=image_ref))

            if state == SessionState.FAILED:
                self._transition(key, SessionState.AWAITING_MATERIAL)
            self._transition(key, SessionState.EXTRACTING)

            directives, residual = parse_field_directives(text)
            if directives:
                self.store.merge_candidate(key, self._corrections(directives, turn_index))

            try:
                try:
                    await self._extract(key, artifact, mime_type, residual, turn_index)
                except ConversionError as e:
                    self._route(key, await self._reconcile(key))
                    self._reply(
                        key, f"The upload could not be read: {e.message}. Please upload a clearer image or PDF."
                    )
                    e.details.update(session_key=key, state=self.store.get_state(key).value)
                    raise

                result = await self._reconcile(key)
                self._route(key, result)
            except (ConversionError, InvalidTransition):
                raise
            except ExtractionError as e:
                logger.warning(f"Session {key}: extraction failed (retryable={e.retryable}): {e.message}")
                await self._fail(
                    key,
                    "The cheque could not be read right now. Send it again, or type the fields as 'field: value'.",
                    refresh=bool(directives),
                )
                e.details.update(session_key=key, state=SessionState.FAILED.value)
                raise
            except Exception as e:
                logger.error(f"Session {key}: unexpected error while processing turn: {e}", exc_info=True)
                await self._fail(
                    key, "Something went wrong while reading the cheque. Please try again.", refresh=bool(directives)
                )
                if isinstance(e, ChequeIntakeException):
                    e.details.update(session_key=key, state=SessionState.FAILED.value)
                raise

            self._reply(key, build_prompt_message(result))
            return self._response(key, include_confidence)

    async def _fail(self, key: str, message: str, refresh: bool = False) -> None:
        """
        Move a session to failed, keeping its candidate.

        With refresh, the stored reconciliation is recomputed so that a draft
        kept for a later confirm reflects corrections merged this turn. If
        that is not possible the draft is dropped rather than left stale.
        """
        self._transition(key, SessionState.FAILED)
        if refresh:
            try:
                await self._reconcile(key)
            except PersistenceError as e:
                logger.warning(f"Session {key}: could not refresh draft after failure: {e.message}")
                self.store.set_reconciliation(key, None)
        self._reply(key, message)

    async def _extract(
        self,
        key: str,
        artifact: Optional[bytes],
        mime_type: Optional[str],
        residual: str,
        turn_index: int,
    ) -> None:
        image = None
        if artifact is not None:
            image = await self._call_external(
                key,
                self.normalizer.normalize,
                artifact,
                mime_type,
                timeout=self.settings.normalize_timeout,
                timeout_error=ConversionError(
                    "Document conversion timed out", details={"timeout": self.settings.normalize_timeout}
                ),
            )

        if image is None and not residual:
            logger.debug(f"Session {key}: no new material, skipping extraction")
            return

        prior = self.store.get_session(key).candidate
        abandoned = threading.Event()
        extracted = await self._call_external(
            key,
            functools.partial(self.extractor.extract, abandoned=abandoned),
            image,
            residual or None,
            prior,
            turn_index,
            timeout=self.settings.extraction_call_timeout,
            timeout_error=ExtractionError(
                "Extraction timed out",
                details={"timeout": self.settings.extraction_call_timeout},
                retryable=True,
            ),
            abandoned=abandoned,
        )
        self.store.merge_candidate(key, extracted)

    @staticmethod
    def _corrections(values: Dict[str, Any], turn_index: int) -> CandidateTransaction:
        return CandidateTransaction(**{
            name: FieldValue(value=value, confidence=1.0, turn_index=turn_index, corrected=True)
            for name, value in values.items()
        })

    @staticmethod
    def _parse_corrections(corrections: Dict[str, str]) -> Dict[str, Any]:
        cleaned = {}
        for label, raw in corrections.items():
            name = field_for_label(label)
            if name is None:
                raise ValidationError(f"Unknown field '{label}'", details={"field": label})
            value = clean_field(name, raw)
            if value is None:
                raise ValidationError(
                    f"Invalid value for {FIELD_LABELS.get(name, name)}",
                    details={"field": name, "value": raw},
                )
            cleaned[name] = value
        return cleaned

    # Confirm

    async def confirm(
        self,
        session_key: str,
        corrections: Optional[Dict[str, str]] = None,
        acknowledge_review: bool = False,
        include_confidence: bool = False,
    ) -> TurnResponse:
        """
        Confirm the presented draft, optionally with last-minute corrections.

        Corrections re-run reconciliation only. A draft flagged for review is
        committed only with acknowledge_review. A failed session holding a
        preserved draft retries the commit.

        Raises:
            ValidationError: Unknown correction field or invalid value
            InvalidTransition: Nothing to confirm in the current state
            PersistenceError: Commit failed; the session is failed, draft kept
            NotFoundError: Unknown session key
        """
        self._ensure_open(session_key)
        async with self.store.lock(session_key):
            self._ensure_open(session_key)
            return await self._confirm_locked(session_key, corrections or {}, acknowledge_review, include_confidence)

    async def _confirm_locked(
        self,
        key: str,
        corrections: Dict[str, str],
        acknowledge_review: bool,
        include_confidence: bool = False,
        text: Optional[str] = None,
    ) -> TurnResponse:
        session = self.store.get_session(key)
        state = session.state

        if state not in (SessionState.AWAITING_CONFIRMATION, SessionState.FAILED):
            raise InvalidTransition(
                f"Nothing to confirm in state {state.value}",
                details={"session_key": key, "state": state.value},
            )

        cleaned = self._parse_corrections(corrections)

        if state == SessionState.FAILED:
            # The kept draft is rebuilt from the candidate, which may hold corrections from the failed turn
            if (await self._reconcile(key)).outcome != ReconciliationOutcome.RESOLVED:
                raise InvalidTransition(
                    "Nothing to confirm: the session has no reconciled draft",
                    details={"session_key": key, "state": state.value},
                )

        if text is None:
            text = "confirm"
            if cleaned:
                text += " with corrections: " + ", ".join(f"{name}={cleaned[name]}" for name in sorted(cleaned))
        turn_index = self.store.append_turn(key, Turn(actor=Actor.CALLER, text=text))

        if state == SessionState.FAILED:
            logger.info(f"Session {key}: retrying commit of preserved draft")
            self._transition(key, SessionState.AWAITING_CONFIRMATION)

        result = self.store.get_session(key).reconciliation
        if cleaned:
            self._transition(key, SessionState.EXTRACTING)
            self.store.merge_candidate(key, self._corrections(cleaned, turn_index))
            try:
                result = await self._reconcile(key)
                self._route(key, result)
            except Exception as e:
                logger.error(f"Session {key}: could not apply corrections: {e}", exc_info=True)
                await self._fail(key, "The corrections could not be checked right now. Confirm again to retry.")
                if isinstance(e, ChequeIntakeException):
                    e.details.update(session_key=key, state=SessionState.FAILED.value)
                raise
            if result.outcome != ReconciliationOutcome.RESOLVED:
                self._reply(key, build_prompt_message(result))
                return self._response(key, include_confidence)

        draft = result.draft
        if draft.requires_review and not acknowledge_review:
            self._reply(
                key,
                "This cheque requires review before it can be saved: "
                + "; ".join(draft.review_reasons)
                + ". Confirm again with the review acknowledged.",
            )
            return self._response(key, include_confidence)

        return await self._commit(key, draft, include_confidence)

    async def _commit(self, key: str, draft: TransactionDraft, include_confidence: bool) -> TurnResponse:
        try:
            outcome = await self.committer.commit(draft)
        except PersistenceError as e:
            self._transition(key, SessionState.FAILED)
            self._reply(key, "The transaction could not be saved. Your details are kept; confirm again to retry.")
            e.details.update(session_key=key, state=SessionState.FAILED.value)
            raise

        transaction = outcome.transaction
        self._transition(key, SessionState.COMMITTED)
        self._reply(key, build_commit_message(transaction, outcome.duplicate))
        response = self._response(key, include_confidence, transaction=transaction)
        self.store.close(key, SessionState.COMMITTED, transaction.transaction_id)
        return response

    # Cancel

    def _close_cancelled(self, key: str) -> TurnResponse:
        self._transition(key, SessionState.CANCELLED)
        self._reply(key, "Session cancelled.")
        response = self._response(key)
        self.store.close(key, SessionState.CANCELLED)
        return response

    async def cancel(self, session_key: str) -> TurnResponse:
        """
        Cancel a session, interrupting any outstanding external call.

        Idempotent for cancelled sessions.

        Raises:
            InvalidTransition: The session is already committed
            NotFoundError: Unknown session key
        """
        tombstone = self.store.closed_state(session_key)
        if tombstone is None:
            self.store.get_state(session_key)

            self._cancel_requested.add(session_key)
            try:
                task = self._inflight.get(session_key)
                if task is not None and not task.done():
                    task.cancel()

                async with self.store.lock(session_key):
                    if self.store.exists(session_key):
                        return self._close_cancelled(session_key)
            finally:
                self._cancel_requested.discard(session_key)

            tombstone = self.store.closed_state(session_key)

        if tombstone.state == SessionState.COMMITTED:
            raise InvalidTransition(
                f"Session {session_key} is already committed",
                details={"session_key": session_key, "transaction_id": tombstone.transaction_id},
            )
        return self._closed_response(tombstone)

    # Queries

    def get_state(self, session_key: str, include_confidence: bool = False) -> TurnResponse:
        tombstone = self.store.closed_state(session_key)
        if tombstone is not None:
            return self._closed_response(tombstone)
        return self._response(session_key, include_confidence)

    def history(self, session_key: str) -> List[Turn]:
        tombstone = self.store.closed_state(session_key)
        if tombstone is not None:
            return list(tombstone.turns)
        return self.store.get_session(session_key).turns

    async def evict_idle_sessions(self) -> List[str]:
        """
        Cancel sessions idle beyond the TTL.

        Sessions with a turn in flight are skipped; idleness is re-checked
        under the session lock.
        """
        evicted = []
        for key in self.store.idle_keys():
            if self.store.is_busy(key):
                continue
            async with self.store.lock(key):
                if not self.store.is_idle(key):
                    continue
                self._transition(key, SessionState.CANCELLED)
                self.store.close(key, SessionState.CANCELLED)
                evicted.append(key)

        if evicted:
            logger.info(f"Evicted {len(evicted)} idle sessions")
        return evicted


def build_orchestrator(
    settings: Optional[Settings] = None,
    db: Optional[Database] = None,
    extractor: Optional[ExtractionAdapter] = None,
) -> SessionOrchestrator:
    settings = settings or get_settings()
    return SessionOrchestrator(
        extractor=extractor,
        committer=TransactionCommitter(db),
        settings=settings,
    )


_orchestrator: Optional[SessionOrchestrator] = None


def get_orchestrator() -> SessionOrchestrator:
    """
    Get orchestrator singleton backed by the default database.

    Returns:
        SessionOrchestrator instance
    """
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = build_orchestrator(db=get_db())
    return _orchestrator


def reset_orchestrator() -> None:
    global _orchestrator
    _orchestrator = None

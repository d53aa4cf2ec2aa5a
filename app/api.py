"""
FastAPI routes for conversational cheque intake.
Thin API layer over the session orchestrator and the transaction committer.
"""
import asyncio
from contextlib import asynccontextmanager, suppress
from typing import List, Optional

from fastapi import Depends, FastAPI, File, Form, HTTPException, UploadFile

from core.config import get_settings
from core.exceptions import (
    ChequeIntakeException,
    ConversionError,
    ExtractionError,
    InvalidTransition,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from core.logger import setup_logger
from core.schema import (
    BusinessSummary,
    ConfirmRequest,
    StatusChangeRequest,
    Transaction,
    Turn,
    TurnResponse,
)
from services.orchestrator import SessionOrchestrator, get_orchestrator

logger = setup_logger(__name__)
settings = get_settings()

STATUS_CODES = (
    (ValidationError, 400),
    (NotFoundError, 404),
    (InvalidTransition, 409),
    (ConversionError, 422),
    (PersistenceError, 500),
)


def to_http_exception(error: ChequeIntakeException) -> HTTPException:
    """
    Map a pipeline error to an HTTP error.

    Args:
        error: Raised pipeline exception

    Returns:
        HTTPException with {"error", "message", "details"} as detail
    """
    if isinstance(error, ExtractionError):
        status_code = 503 if error.retryable else 502
    else:
        status_code = next((code for cls, code in STATUS_CODES if isinstance(error, cls)), 500)

    if status_code >= 500:
        logger.error(f"{type(error).__name__}: {error.message} {error.details}")
    else:
        logger.warning(f"{type(error).__name__}: {error.message}")

    return HTTPException(
        status_code=status_code,
        detail={"error": type(error).__name__, "message": error.message, "details": error.details},
    )


async def sweep_idle_sessions(interval: float) -> None:
    """Periodically evict idle sessions."""
    while True:
        await asyncio.sleep(interval)
        try:
            await app.dependency_overrides.get(get_orchestrator, get_orchestrator)().evict_idle_sessions()
        except Exception as e:
            logger.error(f"Idle session sweep failed: {e}", exc_info=True)


@asynccontextmanager
async def lifespan(app: FastAPI):
    sweeper = asyncio.create_task(sweep_idle_sessions(settings.session_sweep_interval))
    logger.info(f"Idle session sweeper started (every {settings.session_sweep_interval}s)")
    yield
    sweeper.cancel()
    with suppress(asyncio.CancelledError):
        await sweeper


# Initialize FastAPI app
app = FastAPI(
    title="Cheque Intake Service",
    description="Conversational cheque upload, extraction, reconciliation and ledger commit",
    version="1.0.0",
    lifespan=lifespan,
)


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "service": "cheque_intake",
        "version": "1.0.0"
    }


@app.post("/sessions/turn", response_model=TurnResponse)
async def session_turn(
    session_key: Optional[str] = Form(None),
    text: Optional[str] = Form(None),
    file: Optional[UploadFile] = File(None),
    include_confidence: bool = Form(False),
    orchestrator: SessionOrchestrator = Depends(get_orchestrator),
):
    """
    Submit one turn: an upload, a text message, or both.
    A missing session_key starts a new session.
    """
    artifact = None
    mime_type = None
    if file is not None:
        # One byte past the ceiling is enough for validation to reject it
        artifact = await file.read(settings.max_upload_bytes + 1)
        mime_type = file.content_type
        logger.info(f"Received upload {file.filename} ({mime_type}) for session {session_key or '<new>'}")

    try:
        return await orchestrator.handle_turn(
            session_key=session_key or None,
            artifact=artifact,
            mime_type=mime_type,
            text=text,
            include_confidence=include_confidence,
        )
    except ChequeIntakeException as e:
        raise to_http_exception(e)


@app.post("/sessions/{session_key}/confirm", response_model=TurnResponse)
async def confirm_session(
    session_key: str,
    request: ConfirmRequest,
    include_confidence: bool = False,
    orchestrator: SessionOrchestrator = Depends(get_orchestrator),
):
    """Confirm the presented draft, optionally with corrections."""
    try:
        return await orchestrator.confirm(
            session_key,
            corrections=request.corrections,
            acknowledge_review=request.acknowledge_review,
            include_confidence=include_confidence,
        )
    except ChequeIntakeException as e:
        raise to_http_exception(e)


@app.post("/sessions/{session_key}/cancel", response_model=TurnResponse)
async def cancel_session(session_key: str, orchestrator: SessionOrchestrator = Depends(get_orchestrator)):
    """Cancel a session. Cancelling twice is not an error."""
    try:
        return await orchestrator.cancel(session_key)
    except ChequeIntakeException as e:
        raise to_http_exception(e)


@app.get("/sessions/{session_key}", response_model=TurnResponse)
async def get_session(
    session_key: str,
    include_confidence: bool = False,
    orchestrator: SessionOrchestrator = Depends(get_orchestrator),
):
    try:
        return orchestrator.get_state(session_key, include_confidence)
    except ChequeIntakeException as e:
        raise to_http_exception(e)


@app.get("/sessions/{session_key}/history", response_model=List[Turn])
async def get_session_history(session_key: str, orchestrator: SessionOrchestrator = Depends(get_orchestrator)):
    try:
        return orchestrator.history(session_key)
    except ChequeIntakeException as e:
        raise to_http_exception(e)


@app.post("/transactions/{transaction_id}/status", response_model=Transaction)
async def change_transaction_status(
    transaction_id: int,
    request: StatusChangeRequest,
    orchestrator: SessionOrchestrator = Depends(get_orchestrator),
):
    """Move a transaction from pending to completed, cancelled or bounced."""
    try:
        return await orchestrator.committer.transition(transaction_id, request.status)
    except ChequeIntakeException as e:
        raise to_http_exception(e)


@app.get("/transactions/{transaction_id}", response_model=Transaction)
async def get_transaction(transaction_id: int, orchestrator: SessionOrchestrator = Depends(get_orchestrator)):
    try:
        return await orchestrator.committer.get_transaction(transaction_id)
    except ChequeIntakeException as e:
        raise to_http_exception(e)


@app.get("/summary", response_model=BusinessSummary)
async def get_summary(orchestrator: SessionOrchestrator = Depends(get_orchestrator)):
    """Ledger aggregates recomputed on every commit and status change."""
    try:
        return await orchestrator.committer.summary()
    except ChequeIntakeException as e:
        raise to_http_exception(e)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=settings.host, port=settings.port)

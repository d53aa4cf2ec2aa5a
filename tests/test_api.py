"""
Tests for the FastAPI routes.
"""
import pytest
from fastapi.testclient import TestClient
from PIL import Image

from app.api import app
from core.documents import DocumentNormalizer
from core.exceptions import ExtractionError
from services.committer import TransactionCommitter
from services.orchestrator import SessionOrchestrator, get_orchestrator
from services.reconciliation import ReconciliationEngine

CLEAR_CHEQUE = {
    "cheque_number": {"value": "4512", "confidence": 0.97},
    "date": {"value": "2024-03-01", "confidence": 0.95},
    "amount": {"value": "1000.00", "confidence": 0.96},
    "customer_name": {"value": "Acme Co", "confidence": 0.93},
    "vendor_name": {"value": "Northline Clearing", "confidence": 0.9},
}


@pytest.fixture
def orchestrator(settings, seeded_db, fake_extractor):
    return SessionOrchestrator(
        normalizer=DocumentNormalizer(settings),
        extractor=fake_extractor,
        reconciler=ReconciliationEngine(settings),
        committer=TransactionCommitter(seeded_db),
        settings=settings,
    )


@pytest.fixture
def client(orchestrator):
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    yield TestClient(app)
    app.dependency_overrides.clear()


def _upload(client, png_bytes, **data):
    return client.post("/sessions/turn", data=data, files={"file": ("cheque.png", png_bytes, "image/png")})


def test_health_check(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


def test_upload_confirm_and_status_change(client, fake_extractor, png_bytes):
    fake_extractor.script = [CLEAR_CHEQUE]

    turn = _upload(client, png_bytes)
    assert turn.status_code == 200
    body = turn.json()
    assert body["state"] == "awaiting_confirmation"
    assert body["candidate"]["amount"] == "1000.00"
    assert body["draft"]["customer_fee"] == "25.00"
    assert body["draft"]["profit"] == "15.00"

    confirmed = client.post(f"/sessions/{body['session_key']}/confirm", json={})
    assert confirmed.status_code == 200
    transaction = confirmed.json()["transaction"]
    assert confirmed.json()["state"] == "committed"
    assert transaction["status"] == "pending"

    fetched = client.get(f"/transactions/{transaction['transaction_id']}")
    assert fetched.status_code == 200
    assert fetched.json()["cheque_number"] == "4512"

    bounced = client.post(f"/transactions/{transaction['transaction_id']}/status", json={"status": "bounced"})
    assert bounced.status_code == 200
    assert bounced.json()["profit"] == "-10.00"

    again = client.post(f"/transactions/{transaction['transaction_id']}/status", json={"status": "completed"})
    assert again.status_code == 409
    assert again.json()["detail"]["error"] == "InvalidTransition"

    summary = client.get("/summary").json()
    assert summary["total_transactions"] == 1
    assert summary["total_profit"] == "-10.00"
    assert summary["pending_transactions"] == 0


def test_text_turn_and_confidence(client, fake_extractor):
    fake_extractor.script = [{"cheque_number": {"value": "4512", "confidence": 0.7}}]

    response = client.post("/sessions/turn", data={"text": "cheque 4512 please", "include_confidence": "true"})

    assert response.status_code == 200
    body = response.json()
    assert body["state"] == "awaiting_material"
    assert body["candidate"]["cheque_number"]["confidence"] == 0.7
    assert "amount" in body["missing_fields"]


def test_turn_without_material(client):
    response = client.post("/sessions/turn", data={})
    assert response.status_code == 400
    assert response.json()["detail"]["error"] == "ValidationError"


def test_unsupported_upload(client):
    response = client.post("/sessions/turn", files={"file": ("cheque.gif", b"GIF89a....", "image/gif")})
    assert response.status_code == 400


def test_conversion_error(client, png_bytes):
    response = _upload(client, png_bytes[:8] + b"\x00" * 64)
    assert response.status_code == 422
    detail = response.json()["detail"]
    assert detail["error"] == "ConversionError"
    assert detail["details"]["state"] == "awaiting_material"


@pytest.mark.parametrize("retryable,status_code", [(True, 503), (False, 502)])
def test_extraction_errors(client, fake_extractor, png_bytes, retryable, status_code):
    fake_extractor.script = [ExtractionError("gateway down", retryable=retryable)]

    response = _upload(client, png_bytes)

    assert response.status_code == status_code
    detail = response.json()["detail"]
    assert detail["error"] == "ExtractionError"
    session = client.get(f"/sessions/{detail['details']['session_key']}")
    assert session.json()["state"] == "failed"


def test_unknown_session(client):
    assert client.get("/sessions/missing").status_code == 404
    assert client.post("/sessions/missing/cancel").status_code == 404
    assert client.get("/transactions/999").status_code == 404


def test_cancel_is_idempotent_and_history(client):
    key = client.post("/sessions/turn", data={"text": "cheque: 4512"}).json()["session_key"]

    first = client.post(f"/sessions/{key}/cancel")
    second = client.post(f"/sessions/{key}/cancel")
    assert first.status_code == second.status_code == 200
    assert second.json()["state"] == "cancelled"

    history = client.get(f"/sessions/{key}/history").json()
    assert [turn["actor"] for turn in history] == ["caller", "system", "system"]

    assert client.post("/sessions/turn", data={"session_key": key, "text": "amount: 5"}).status_code == 409


def test_confirm_not_ready(client):
    key = client.post("/sessions/turn", data={"text": "cheque: 4512"}).json()["session_key"]
    response = client.post(f"/sessions/{key}/confirm", json={"corrections": {}})
    assert response.status_code == 409


def test_confirm_with_bad_correction(client, fake_extractor, png_bytes):
    fake_extractor.script = [CLEAR_CHEQUE]
    key = _upload(client, png_bytes).json()["session_key"]

    response = client.post(f"/sessions/{key}/confirm", json={"corrections": {"amount": "zero"}})
    assert response.status_code == 400


def test_oversized_image_is_unprocessable(client, png_bytes, monkeypatch):
    monkeypatch.setattr(Image, "MAX_IMAGE_PIXELS", 1000)

    response = _upload(client, png_bytes)

    assert response.status_code == 422
    detail = response.json()["detail"]
    assert detail["error"] == "ConversionError"
    assert detail["details"]["state"] == "awaiting_material"

"""
Unit tests for the recognition client and extraction adapter.
"""
import json
import threading
from datetime import date
from decimal import Decimal
from unittest.mock import MagicMock, patch

import pytest
import requests

from core.exceptions import ExtractionError, ValidationError
from core.schema import CandidateTransaction, FieldValue, NormalizedImage
from llm.client import RecognitionClient, strip_code_fences
from llm.extract import ExtractionAdapter, create_response_schema, validate_extraction
from llm.prompts import build_user_content


def _completion(fields):
    body = {"choices": [{"message": {"content": json.dumps({"fields": fields})}}]}
    response = MagicMock()
    response.text = json.dumps(body)
    response.raise_for_status.return_value = None
    return response


def _http_error(status_code):
    response = MagicMock()
    response.status_code = status_code
    response.raise_for_status.side_effect = requests.exceptions.HTTPError(str(status_code), response=response)
    return response


@pytest.fixture
def client(settings):
    return RecognitionClient(settings)


@pytest.fixture
def image():
    return NormalizedImage(content=b"\x89PNG fake", width=10, height=10, source_mime_type="image/png", digest="0" * 64)


def _call(client):
    return client.call_with_structured_output("system", [{"type": "text", "text": "hi"}], create_response_schema())


def test_successful_call_returns_parsed_json(client):
    with patch("llm.client.requests.post", return_value=_completion({"amount": {"value": "10", "confidence": 0.9}})) as post:
        result = _call(client)
    assert result == {"fields": {"amount": {"value": "10", "confidence": 0.9}}}
    assert post.call_count == 1


def test_timeouts_are_retried_then_surface_as_retryable(client):
    with patch("llm.client.requests.post", side_effect=requests.exceptions.Timeout("slow")) as post:
        with pytest.raises(ExtractionError) as exc_info:
            _call(client)
    assert post.call_count == 3
    assert exc_info.value.retryable is True


def test_abandoned_call_stops_retrying(client):
    abandoned = threading.Event()
    abandoned.set()
    with patch("llm.client.requests.post", side_effect=requests.exceptions.Timeout("slow")) as post:
        with pytest.raises(ExtractionError) as exc_info:
            client.call_with_structured_output(
                "system", [{"type": "text", "text": "hi"}], create_response_schema(), abandoned=abandoned
            )
    assert post.call_count == 1
    assert exc_info.value.retryable is True


def test_server_error_then_success(client):
    responses = [_http_error(503), _completion({"cheque_number": {"value": "4512", "confidence": 0.95}})]
    with patch("llm.client.requests.post", side_effect=responses) as post:
        result = _call(client)
    assert post.call_count == 2
    assert result["fields"]["cheque_number"]["value"] == "4512"


def test_client_error_is_not_retried(client):
    with patch("llm.client.requests.post", return_value=_http_error(400)) as post:
        with pytest.raises(ExtractionError) as exc_info:
            _call(client)
    assert post.call_count == 1
    assert exc_info.value.retryable is False
    assert exc_info.value.details["status_code"] == 400


def test_malformed_body_is_not_retried(client):
    response = MagicMock()
    response.text = "not json at all"
    response.raise_for_status.return_value = None
    with patch("llm.client.requests.post", return_value=response) as post:
        with pytest.raises(ExtractionError) as exc_info:
            _call(client)
    assert post.call_count == 1
    assert exc_info.value.retryable is False


def test_strip_code_fences():
    assert strip_code_fences('```json\n{"a": 1}\n```') == '{"a": 1}'


def test_validate_extraction_keeps_valid_fields_only():
    raw = {
        "fields": {
            "cheque_number": {"value": "4512", "confidence": 0.97},
            "date": {"value": "2024-13-45", "confidence": 0.9},
            "amount": {"value": "-5.00", "confidence": 0.9},
            "customer_name": {"value": "Acme Co", "confidence": 1.5},
            "bank_name": "First Bank",
            "vendor_name": None,
        },
        "notes": "amount smudged",
    }
    candidate, discarded = validate_extraction(raw, turn_index=2, default_confidence=0.4)

    assert candidate.value_of("cheque_number") == "4512"
    assert candidate.cheque_number.turn_index == 2
    assert candidate.bank_name.confidence == 0.4
    assert candidate.date is None and candidate.amount is None and candidate.customer_name is None
    assert sorted(discarded) == ["amount", "customer_name", "date"]


def test_validate_extraction_parses_types():
    candidate, discarded = validate_extraction(
        {"fields": {"date": {"value": "2024-03-01", "confidence": 0.9}, "amount": {"value": 1000, "confidence": 0.9}}},
        turn_index=0,
    )
    assert discarded == []
    assert candidate.value_of("date") == date(2024, 3, 1)
    assert candidate.value_of("amount") == Decimal("1000.00")


def test_validate_extraction_non_object_fields():
    candidate, discarded = validate_extraction({"fields": ["nope"]}, turn_index=0)
    assert candidate.is_empty()
    assert discarded == []


def test_adapter_requires_material():
    gateway = MagicMock()
    adapter = ExtractionAdapter(client=gateway)
    with pytest.raises(ValidationError):
        adapter.extract(None, "   ", CandidateTransaction())
    gateway.call_with_structured_output.assert_not_called()


def test_adapter_extracts_partial_result(image):
    gateway = MagicMock()
    gateway.call_with_structured_output.return_value = {
        "fields": {
            "cheque_number": {"value": "4512", "confidence": 0.95},
            "amount": {"value": "illegible", "confidence": 0.2},
        }
    }
    adapter = ExtractionAdapter(client=gateway)

    candidate = adapter.extract(image, None, CandidateTransaction(), turn_index=1)

    assert candidate.value_of("cheque_number") == "4512"
    assert candidate.amount is None
    kwargs = gateway.call_with_structured_output.call_args.kwargs
    assert kwargs["user_content"][1]["type"] == "image_url"


def test_user_content_carries_known_fields_without_confidence():
    prior = CandidateTransaction(amount=FieldValue(value=Decimal("250.50"), confidence=0.9))
    parts = build_user_content(None, "amount is right", prior)
    assert len(parts) == 1
    assert '"amount": "250.50"' in parts[0]["text"]
    assert "0.9" not in parts[0]["text"]

"""Pytest configuration and fixtures."""
import io
import os
import tempfile
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

# Set test environment variables before importing settings
os.environ.setdefault("OPENAI_API_KEY", "test-key")
os.environ.setdefault("DATABASE_PATH", os.path.join(tempfile.gettempdir(), "cheque-intake-test.db"))
os.environ.setdefault("EXTRACTION_BACKOFF_MIN", "0")
os.environ.setdefault("EXTRACTION_BACKOFF_MAX", "0")

from PIL import Image

from core.config import Settings, reset_settings
from core.db import Database
from llm.extract import validate_extraction


@pytest.fixture(autouse=True)
def fresh_settings():
    reset_settings()
    yield
    reset_settings()


@pytest.fixture
def settings(tmp_path):
    """Settings isolated from any local .env file."""
    return Settings(
        _env_file=None,
        openai_api_key="test-key",
        extraction_backoff_min=0.0,
        extraction_backoff_max=0.0,
        database_path=str(tmp_path / "ledger.db"),
    )


@pytest.fixture
def db(tmp_path):
    database = Database(str(tmp_path / "ledger.db"))
    database.init_db()
    return database


@pytest.fixture
def seeded_db(db):
    """Ledger with one customer, one regular vendor and one high-risk vendor."""
    db.add_customer("Acme Co", Decimal("2.5"), customer_id=1)
    db.add_vendor("Northline Clearing", Decimal("1.0"))
    db.add_vendor("Risky Exchange", Decimal("1.5"), high_risk=True)
    return db


def _image_bytes(fmt: str) -> bytes:
    image = Image.new("RGB", (64, 32), color=(255, 255, 255))
    with io.BytesIO() as buf:
        image.save(buf, format=fmt)
        return buf.getvalue()


@pytest.fixture
def png_bytes():
    return _image_bytes("PNG")


@pytest.fixture
def jpeg_bytes():
    return _image_bytes("JPEG")


class FakeClock:
    def __init__(self):
        self.now = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def clock():
    return FakeClock()


class FakeExtractor:
    """
    Scripted stand-in for ExtractionAdapter.

    Each call consumes the next script entry: a dict of raw gateway fields
    is validated like a real response, an exception instance is raised.
    """

    def __init__(self, *script):
        self.script = list(script)
        self.calls = []
        self.on_call = None

    def extract(self, image, text, prior_candidate, turn_index=0, abandoned=None):
        self.calls.append({"image": image, "text": text, "prior": prior_candidate, "turn_index": turn_index})
        if self.on_call is not None:
            self.on_call(abandoned)
        entry = self.script.pop(0)
        if isinstance(entry, Exception):
            raise entry
        candidate, _ = validate_extraction({"fields": entry}, turn_index)
        return candidate


@pytest.fixture
def fake_extractor():
    return FakeExtractor()

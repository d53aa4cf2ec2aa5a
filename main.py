"""
Entry point for the cheque intake service.

Loads .env, prepares the ledger database and serves the API with uvicorn.
"""
import sqlite3
import sys
from pathlib import Path

from dotenv import load_dotenv

from core.config import Settings, get_settings
from core.exceptions import ConfigurationError
from core.logger import setup_logger

PROJECT_ROOT = Path(__file__).parent

load_dotenv(PROJECT_ROOT / ".env")

logger = setup_logger(__name__)


def prepare_ledger(settings: Settings) -> None:
    """Create the ledger schema if needed and report its current totals."""
    from core.db import get_db

    summary = get_db().get_business_summary()
    logger.info(
        f"Ledger {settings.database_path}: {summary.total_transactions} transactions, "
        f"{summary.pending_transactions} pending, outstanding {summary.outstanding_balance}"
    )


def main():
    try:
        settings = get_settings()
        prepare_ledger(settings)

        logger.info(
            f"{settings.app_name} using model {settings.openai_model}, "
            f"{settings.max_concurrent_extractions} concurrent extractions, "
            f"session TTL {settings.session_ttl_seconds}s"
        )

        import uvicorn
        from app.api import app

        uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level.lower())

    except ConfigurationError as e:
        logger.error(f"Configuration error: {e.message} {e.details or ''}")
        sys.exit(1)
    except sqlite3.Error as e:
        logger.error(f"Ledger unavailable: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()

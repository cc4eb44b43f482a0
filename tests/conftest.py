"""
Shared pytest fixtures: settings, a temporary SQLite store and a scripted
classifier standing in for the LLM.
"""
import pytest

from core.config import Settings
from core.db import Database
from core.schema import ClassificationResult, IngestRequest
from services.ingestion_service import IngestionService
from services.message_processor import MessageProcessor

SWIGGY_SMS = "Rs. 500.00 debited from your HDFC Bank account ending 1234 on 01-Jan-25 at SWIGGY"


class FakeClassifier:
    """Returns (or raises) scripted responses in order; the last one repeats."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    def classify(self, request):
        self.calls.append(request)
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, Exception):
            raise response
        return response


def swiggy_result(**overrides) -> ClassificationResult:
    data = {
        "isTransaction": True,
        "amount": 500.00,
        "transactionDate": "2025-01-01T10:15:00.000Z",
        "category": "Food & Dining",
        "note": "SWIGGY",
        "source": "HDFC Bank account",
        "confidence": 0.9,
    }
    data.update(overrides)
    return ClassificationResult.model_validate(data)


NOT_A_TRANSACTION = ClassificationResult(is_transaction=False)


@pytest.fixture()
def settings(tmp_path):
    return Settings(
        OPENROUTER_API_KEY="test-key",
        DATABASE_PATH=str(tmp_path / "test.db"),
        LLM_MAX_ATTEMPTS=1,
        TRIGGER_MAX_DELIVERIES=1,
        RECONCILE_ON_STARTUP=False,
    )


@pytest.fixture()
def db(settings):
    database = Database(settings.database_path, timeout=settings.database_timeout)
    database.init_db()
    return database


@pytest.fixture()
def ingestion(db, settings):
    return IngestionService(db, settings)


@pytest.fixture()
def stored_message(ingestion):
    """A freshly ingested SWIGGY debit SMS."""
    return ingestion.ingest(
        IngestRequest(sender="HDFC-Bank", message=SWIGGY_SMS, uid="user-1"),
        auth_uid="user-1",
    )


@pytest.fixture()
def make_processor(db, settings):
    def _make(*responses):
        classifier = FakeClassifier(*responses)
        return MessageProcessor(db, classifier, settings), classifier
    return _make

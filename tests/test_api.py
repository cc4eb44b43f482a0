"""
HTTP tests for ingestion, inspection and replay endpoints.
"""
import concurrent.futures
import logging

import pytest
from fastapi.testclient import TestClient

from conftest import NOT_A_TRANSACTION, SWIGGY_SMS, FakeClassifier, swiggy_result

from app import api
from app.api import app, get_classifier
from core.config import reset_settings
from core.db import reset_db
from core.exceptions import ClassifierTransportError

AUTH = {"X-Authenticated-Uid": "user-1"}


@pytest.fixture()
def classifier():
    return FakeClassifier(swiggy_result())


@pytest.fixture()
def client(tmp_path, monkeypatch, classifier):
    monkeypatch.setenv("OPENROUTER_API_KEY", "test-key")
    monkeypatch.setenv("DATABASE_PATH", str(tmp_path / "api.db"))
    monkeypatch.setenv("RECONCILE_ON_STARTUP", "false")
    monkeypatch.setenv("TRIGGER_MAX_DELIVERIES", "1")
    monkeypatch.setenv("RECONCILE_STALE_AFTER_SECONDS", "0")
    reset_settings()
    reset_db()
    app.dependency_overrides[get_classifier] = lambda: classifier

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()
    reset_db()
    reset_settings()


def _ingest(client, **payload):
    body = {"sender": "HDFC-Bank", "message": SWIGGY_SMS}
    body.update(payload)
    return client.post("/api/messages", json=body, headers=AUTH)


def test_health_check(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


def test_ingest_then_commit(client, classifier):
    response = _ingest(client, uid="user-1")

    assert response.status_code == 201
    body = response.json()
    assert body["userId"] == "user-1"
    assert body["processed"] is False
    assert body["state"] == "created"

    # The background delivery has run by the time the response is returned
    detail = client.get(f"/api/messages/{body['id']}", headers=AUTH).json()
    assert detail["processed"] is True
    assert detail["state"] == "committed"
    assert detail["expenseId"]

    expenses = client.get("/api/expenses", headers=AUTH).json()
    assert len(expenses) == 1
    assert expenses[0]["amount"] == 500.0
    assert expenses[0]["rawMessageId"] == body["id"]
    assert expenses[0]["source"] == "HDFC Bank account"
    assert len(classifier.calls) == 1


def test_ingest_requires_identity(client):
    response = client.post("/api/messages", json={"sender": "HDFC-Bank", "message": SWIGGY_SMS})
    assert response.status_code == 401
    assert response.json()["error"] == "AuthError"


def test_ingest_uid_mismatch(client):
    response = _ingest(client, uid="user-2")
    assert response.status_code == 403
    assert response.json()["error"] == "IdentityMismatchError"


def test_ingest_empty_message(client):
    response = _ingest(client, message="   ")
    assert response.status_code == 400
    assert response.json()["details"]["field"] == "message"


@pytest.mark.parametrize("classifier", [FakeClassifier(NOT_A_TRANSACTION)])
def test_non_transaction_is_gone(client, classifier):
    raw_id = _ingest(client).json()["id"]

    response = client.get(f"/api/messages/{raw_id}", headers=AUTH)

    assert response.status_code == 404
    assert client.get("/api/expenses", headers=AUTH).json() == []


@pytest.mark.parametrize(
    "classifier",
    [FakeClassifier(ClassifierTransportError("Classifier request timeout after 30s"), swiggy_result())],
)
def test_failed_message_can_be_replayed(client, classifier):
    raw_id = _ingest(client).json()["id"]

    failed = client.get("/api/messages", params={"state": "retryable_failed"}, headers=AUTH).json()
    assert [m["id"] for m in failed] == [raw_id]
    assert failed[0]["error"]["code"] == "PROCESSING_ERROR"

    response = client.post(f"/api/messages/{raw_id}/replay", headers=AUTH)

    assert response.status_code == 200
    assert response.json()["outcome"] == "committed"
    assert response.json()["expenseId"]
    assert client.get(f"/api/messages/{raw_id}", headers=AUTH).json()["error"] is None


def test_replay_of_committed_message_is_skipped(client, classifier):
    raw_id = _ingest(client).json()["id"]

    response = client.post(f"/api/messages/{raw_id}/replay", headers=AUTH)

    assert response.json()["outcome"] == "skipped"
    assert len(classifier.calls) == 1


def test_other_users_message_not_visible(client):
    raw_id = _ingest(client).json()["id"]

    response = client.get(f"/api/messages/{raw_id}", headers={"X-Authenticated-Uid": "user-2"})
    assert response.status_code == 404
    replay = client.post(f"/api/messages/{raw_id}/replay", headers={"X-Authenticated-Uid": "user-2"})
    assert replay.status_code == 404


@pytest.mark.parametrize(
    "classifier",
    [FakeClassifier(ClassifierTransportError("connection reset"), swiggy_result())],
)
def test_reconcile_redelivers_failed_message(client, classifier):
    raw_id = _ingest(client).json()["id"]

    response = client.post("/api/admin/reconcile", headers=AUTH)

    assert response.status_code == 202
    assert response.json() == {"repaired": 0, "scheduled": 1}
    # Redelivery runs as a background task before the client call returns
    assert client.get(f"/api/messages/{raw_id}", headers=AUTH).json()["state"] == "committed"


@pytest.mark.parametrize(
    "classifier",
    [FakeClassifier(ClassifierTransportError("connection reset"), swiggy_result())],
)
def test_reconcile_only_touches_callers_messages(client, classifier):
    raw_id = _ingest(client).json()["id"]

    response = client.post("/api/admin/reconcile", headers={"X-Authenticated-Uid": "user-2"})

    assert response.status_code == 202
    assert response.json() == {"repaired": 0, "scheduled": 0}
    assert raw_id not in response.text
    detail = client.get(f"/api/messages/{raw_id}", headers=AUTH).json()
    assert detail["state"] == "retryable_failed"
    assert len(classifier.calls) == 1


def test_listing_requires_identity(client):
    assert client.get("/api/messages").status_code == 401
    assert client.get("/api/expenses").status_code == 401


def test_startup_reconcile_logs_unexpected_errors(settings, db, monkeypatch, caplog):
    class BrokenReconciler:
        def __init__(self, *args):
            pass

        def run(self):
            raise RuntimeError("disk vanished")

    monkeypatch.setattr(api, "get_settings", lambda: settings)
    monkeypatch.setattr(api, "get_db", lambda s: db)
    monkeypatch.setattr(api, "get_classifier", lambda: FakeClassifier(swiggy_result()))
    monkeypatch.setattr(api, "Reconciler", BrokenReconciler)

    with caplog.at_level(logging.ERROR, logger="app.api"):
        api._startup_reconcile()

    assert "Startup reconciliation failed: disk vanished" in caplog.text


def test_crashed_startup_reconcile_is_logged(caplog):
    future = concurrent.futures.Future()
    future.set_exception(RuntimeError("worker died"))

    with caplog.at_level(logging.ERROR, logger="app.api"):
        api._log_reconcile_failure(future)

    assert "Startup reconciliation crashed" in caplog.text

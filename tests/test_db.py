"""
Tests for the SQLite message and expense store.
"""
import pytest
from pydantic import ValidationError as PydanticValidationError

from core.db import Database
from core.exceptions import StoreError
from core.schema import (
    INCOMPLETE_PARSE,
    PROCESSING_ERROR,
    ErrorInfo,
    Expense,
    MessageState,
    RawMessage,
    utc_now_iso,
)


def _raw(raw_id="raw-1", user_id="user-1"):
    return RawMessage(
        id=raw_id,
        user_id=user_id,
        sender="HDFC-Bank",
        message="Rs. 500.00 debited at SWIGGY",
        received_at=utc_now_iso(),
    )


def _expense(raw_message_id="raw-1", expense_id="exp-1"):
    return Expense(
        id=expense_id,
        user_id="user-1",
        amount=500.0,
        category="Food & Dining",
        note="SWIGGY",
        source="HDFC Bank account",
        date="2025-01-01T10:15:00+00:00",
        sender="HDFC-Bank",
        message="Rs. 500.00 debited at SWIGGY",
        received_at="2025-01-01T10:16:02.000000+00:00",
        raw_message_id=raw_message_id,
        created_at=utc_now_iso(),
    )


def _insert_expense_only(db, expense):
    conn = db.get_connection()
    try:
        conn.execute(
            """
            INSERT INTO expenses
                (id, user_id, amount, category, note, source, date, sender, message,
                 received_at, expense_type, raw_message_id, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (expense.id, expense.user_id, expense.amount, expense.category, expense.note,
             expense.source, expense.date, expense.sender, expense.message,
             expense.received_at, expense.expense_type, expense.raw_message_id,
             expense.created_at, expense.updated_at),
        )
    finally:
        conn.close()


def test_create_and_get_raw_message(db):
    stored = db.create_raw_message(_raw())

    loaded = db.get_raw_message("raw-1")

    assert loaded == stored
    assert loaded.processed is False
    assert loaded.expense_id is None
    assert loaded.state == MessageState.CREATED
    assert loaded.updated_at is not None


def test_get_missing_raw_message(db):
    assert db.get_raw_message("nope") is None


def test_list_raw_messages_filters_user_and_state(db):
    db.create_raw_message(_raw("a"))
    db.create_raw_message(_raw("b"))
    db.create_raw_message(_raw("c", user_id="user-2"))
    db.mark_retryable_failure("b", ErrorInfo(code=PROCESSING_ERROR, message="timeout"))

    assert {r.id for r in db.list_raw_messages("user-1")} == {"a", "b"}
    failed = db.list_raw_messages("user-1", state=MessageState.RETRYABLE_FAILED)
    assert [r.id for r in failed] == ["b"]
    assert failed[0].error.code == PROCESSING_ERROR


def test_retryable_failure_keeps_message_open(db):
    db.create_raw_message(_raw())

    assert db.mark_retryable_failure("raw-1", ErrorInfo(code=PROCESSING_ERROR, message="timeout"))

    raw = db.get_raw_message("raw-1")
    assert raw.processed is False
    assert raw.state == MessageState.RETRYABLE_FAILED
    assert db.mark_processing("raw-1") is True


def test_permanent_failure_closes_message(db):
    db.create_raw_message(_raw())

    assert db.mark_permanent_failure("raw-1", ErrorInfo(code=INCOMPLETE_PARSE, message="no source"))

    raw = db.get_raw_message("raw-1")
    assert raw.processed is True
    assert raw.expense_id is None
    assert db.mark_processing("raw-1") is False
    assert db.delete_raw_message("raw-1") is False
    assert db.commit_expense(_expense()) is None
    assert db.get_expense_by_raw_message_id("raw-1") is None


def test_commit_expense_links_raw_message(db):
    db.create_raw_message(_raw())
    db.mark_retryable_failure("raw-1", ErrorInfo(code=PROCESSING_ERROR, message="timeout"))

    expense, created = db.commit_expense(_expense())

    assert created is True
    assert expense.id == "exp-1"
    raw = db.get_raw_message("raw-1")
    assert raw.processed is True
    assert raw.expense_id == "exp-1"
    assert raw.state == MessageState.COMMITTED
    assert raw.error is None


def test_second_commit_returns_existing_expense(db):
    db.create_raw_message(_raw())
    db.commit_expense(_expense(expense_id="exp-1"))

    expense, created = db.commit_expense(_expense(expense_id="exp-2"))

    assert created is False
    assert expense.id == "exp-1"
    assert db.count_expenses_for_raw_message("raw-1") == 1
    assert db.get_expense("exp-2") is None


def test_commit_after_discard_is_rejected(db):
    db.create_raw_message(_raw())
    assert db.delete_raw_message("raw-1") is True

    assert db.commit_expense(_expense()) is None
    assert db.get_expense("exp-1") is None


def test_unlinked_expense_found_and_linked(db):
    db.create_raw_message(_raw())
    _insert_expense_only(db, _expense())

    assert [e.id for e in db.find_unlinked_expenses()] == ["exp-1"]
    assert db.link_expense("raw-1", "exp-1") is True
    assert db.find_unlinked_expenses() == []
    assert db.link_expense("raw-1", "exp-1") is False


def test_list_stale_raw_messages(db):
    db.create_raw_message(_raw("old"))
    db.create_raw_message(_raw("closed"))
    db.mark_permanent_failure("closed", ErrorInfo(code=INCOMPLETE_PARSE, message="no source"))

    assert db.list_stale_raw_messages("2000-01-01T00:00:00+00:00") == []
    stale = db.list_stale_raw_messages(utc_now_iso())
    assert [r.id for r in stale] == ["old"]


def test_list_expenses_by_user(db):
    db.create_raw_message(_raw())
    db.commit_expense(_expense())

    assert [e.id for e in db.list_expenses("user-1")] == ["exp-1"]
    assert db.list_expenses("user-2") == []


def test_unusable_path_raises_store_error(tmp_path):
    database = Database(str(tmp_path), timeout=1)

    with pytest.raises(StoreError):
        database.get_raw_message("raw-1")


def test_message_with_expense_cannot_be_deleted_or_failed(db):
    db.create_raw_message(_raw())
    _insert_expense_only(db, _expense())

    assert db.delete_raw_message("raw-1") is False
    assert db.mark_permanent_failure("raw-1", ErrorInfo(code=INCOMPLETE_PARSE, message="no source")) is False
    raw = db.get_raw_message("raw-1")
    assert raw is not None
    assert raw.processed is False


def test_repair_queries_scoped_by_user(db):
    db.create_raw_message(_raw("mine"))
    db.create_raw_message(_raw("theirs", user_id="user-2"))
    _insert_expense_only(db, _expense(raw_message_id="mine", expense_id="exp-mine"))
    now = utc_now_iso()

    assert [r.id for r in db.list_stale_raw_messages(now, user_id="user-2")] == ["theirs"]
    assert db.find_unlinked_expenses(user_id="user-2") == []
    assert [e.id for e in db.find_unlinked_expenses(user_id="user-1")] == ["exp-mine"]


def test_unknown_expense_type_rejected():
    data = _expense().model_dump()
    data["expense_type"] = "gifts"
    with pytest.raises(PydanticValidationError):
        Expense(**data)

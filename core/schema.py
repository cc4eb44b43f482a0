"""
Pydantic schemas for stored records, API payloads and classifier output.
Field aliases match the camelCase document shape exposed to clients.
"""
import re
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Dict, List, Optional

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, field_validator

from core.catalog import DEFAULT_EXPENSE_TYPE, EXPENSE_TYPES


class MessageState(str, Enum):
    """Pipeline state of a raw message."""
    CREATED = "created"
    PROCESSING = "processing"
    DISCARDED = "discarded"
    COMMITTED = "committed"
    PERMANENTLY_FAILED = "permanently_failed"
    RETRYABLE_FAILED = "retryable_failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({
    MessageState.DISCARDED,
    MessageState.COMMITTED,
    MessageState.PERMANENTLY_FAILED,
})


class ProcessingOutcome(str, Enum):
    """Result of a single processor invocation."""
    SKIPPED = "skipped"
    DISCARDED = "discarded"
    COMMITTED = "committed"
    PERMANENTLY_FAILED = "permanently_failed"
    RETRYABLE_FAILED = "retryable_failed"


# Error codes recorded on RawMessage.error
PROCESSING_ERROR = "PROCESSING_ERROR"
MALFORMED_RESPONSE = "MALFORMED_RESPONSE"
INCOMPLETE_PARSE = "INCOMPLETE_PARSE"

# Fields a transaction must carry before it can be committed
REQUIRED_TRANSACTION_FIELDS = ("amount", "category", "note", "source")


def utc_now_iso() -> str:
    """Current UTC time as an ISO8601 string."""
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


_AMOUNT_NOISE = re.compile(r"(?i)(rs\.?|inr|₹|,|\s)")


def normalize_amount(v):
    """Normalize amount - LLM may return a formatted string like 'Rs. 1,234.50'."""
    if v is None or v == "":
        return None
    if isinstance(v, bool):
        raise ValueError("amount must be a number, not a boolean")
    if isinstance(v, (int, float)):
        return float(v)
    if isinstance(v, str):
        cleaned = _AMOUNT_NOISE.sub("", v)
        try:
            return float(cleaned)
        except ValueError:
            raise ValueError(f"amount is not numeric: {v!r}")
    raise ValueError(f"amount has unsupported type: {type(v).__name__}")


def normalize_text(v):
    """Strip surrounding whitespace; blank strings become None."""
    if v is None:
        return None
    if not isinstance(v, str):
        v = str(v)
    v = v.strip()
    return v or None


def normalize_confidence(v):
    """Clamp confidence into [0, 1]; unusable values are dropped."""
    if v is None or isinstance(v, bool):
        return None
    try:
        value = float(v)
    except (TypeError, ValueError):
        return None
    if value != value:
        return None
    return min(max(value, 0.0), 1.0)


class ErrorInfo(BaseModel):
    """Failure annotation stored on a raw message."""
    code: str
    message: str


class RawMessage(BaseModel):
    """An inbound SMS awaiting (or done with) classification."""
    model_config = ConfigDict(populate_by_name=True)

    id: str
    user_id: str = Field(..., alias="userId")
    sender: str
    message: str
    received_at: str = Field(..., alias="receivedAt")
    processed: bool = False
    expense_id: Optional[str] = Field(None, alias="expenseId")
    error: Optional[ErrorInfo] = None
    state: MessageState = MessageState.CREATED
    updated_at: Optional[str] = Field(None, alias="updatedAt")


class Expense(BaseModel):
    """A committed expense, linked back to its source raw message."""
    model_config = ConfigDict(populate_by_name=True)

    id: str
    user_id: str = Field(..., alias="userId")
    amount: float = Field(..., gt=0)
    category: str
    note: str
    source: str
    date: str
    sender: str
    message: str
    received_at: str = Field(..., alias="receivedAt")
    expense_type: str = DEFAULT_EXPENSE_TYPE
    raw_message_id: str = Field(..., alias="rawMessageId")
    created_at: str = Field(..., alias="createdAt")
    updated_at: Optional[str] = Field(None, alias="updatedAt")

    @field_validator("expense_type")
    @classmethod
    def validate_expense_type(cls, v):
        if v not in EXPENSE_TYPES:
            raise ValueError(f"expense_type must be one of: {EXPENSE_TYPES}")
        return v


class IngestRequest(BaseModel):
    """Ingestion payload sent by the device."""
    sender: Optional[str] = None
    message: Optional[str] = None
    uid: Optional[str] = None


class ClassificationRequest(BaseModel):
    """Input to the classification client."""
    model_config = ConfigDict(populate_by_name=True)

    sender: str
    message: str
    received_at: str = Field(..., alias="receivedAt")
    user_id: str = Field(..., alias="userId")

    @classmethod
    def from_raw_message(cls, raw: RawMessage) -> "ClassificationRequest":
        return cls(
            sender=raw.sender,
            message=raw.message,
            received_at=raw.received_at,
            user_id=raw.user_id,
        )


class ClassificationResult(BaseModel):
    """
    Structured output of the classifier.
    Transaction fields are optional here; the processor validates them.
    """
    model_config = ConfigDict(populate_by_name=True)

    is_transaction: bool = Field(..., alias="isTransaction")
    amount: Annotated[Optional[float], BeforeValidator(normalize_amount)] = None
    transaction_date: Annotated[Optional[str], BeforeValidator(normalize_text)] = Field(
        None, alias="transactionDate"
    )
    category: Annotated[Optional[str], BeforeValidator(normalize_text)] = None
    note: Annotated[Optional[str], BeforeValidator(normalize_text)] = None
    source: Annotated[Optional[str], BeforeValidator(normalize_text)] = None
    confidence: Annotated[Optional[float], BeforeValidator(normalize_confidence)] = None


class ValidatedTransaction(BaseModel):
    """Transaction fields that passed validation and are ready to commit."""
    amount: float
    category: str
    note: str
    source: str
    date: str
    confidence: Optional[float] = None


class ProcessingReport(BaseModel):
    """What a processor invocation did to one raw message."""
    model_config = ConfigDict(populate_by_name=True)

    raw_message_id: str = Field(..., alias="rawMessageId")
    outcome: ProcessingOutcome
    state: Optional[MessageState] = None
    expense_id: Optional[str] = Field(None, alias="expenseId")
    error: Optional[ErrorInfo] = None


class ReconciliationReport(BaseModel):
    """Summary of a reconciliation sweep."""
    repaired: List[str] = Field(default_factory=list)
    redelivered: Dict[str, ProcessingOutcome] = Field(default_factory=dict)


class ReconciliationSummary(BaseModel):
    """Counts returned when a caller-scoped sweep is requested over HTTP."""
    repaired: int
    scheduled: int

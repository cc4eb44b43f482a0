"""
Validation of classifier output before an expense is committed.

Every failure raises ValidationError. The processor treats these as
permanent: the same classifier output would fail the same way again.
"""
import math
from datetime import datetime, timezone
from typing import Optional

import Levenshtein

from core.catalog import SOURCE_LABELS_BY_KEY, normalize_label
from core.config import Settings
from core.exceptions import ValidationError
from core.logger import setup_logger
from core.schema import REQUIRED_TRANSACTION_FIELDS, ClassificationResult, ValidatedTransaction

logger = setup_logger(__name__)


def validate_amount(amount: Optional[float], settings: Settings) -> float:
    """
    Validate the transaction amount.

    Args:
        amount: Normalized amount from the classifier
        settings: Provides AMOUNT_MIN / AMOUNT_MAX

    Returns:
        Amount rounded to paise

    Raises:
        ValidationError: If missing, not finite, or out of bounds
    """
    if amount is None:
        raise ValidationError("amount is required", details={"field": "amount"})
    if isinstance(amount, bool) or not isinstance(amount, (int, float)):
        raise ValidationError("amount must be a number", details={"field": "amount", "value": amount})
    if not math.isfinite(amount):
        raise ValidationError("amount must be finite", details={"field": "amount", "value": str(amount)})
    if amount <= 0:
        raise ValidationError("amount must be positive", details={"field": "amount", "value": amount})
    if not (settings.amount_min <= amount <= settings.amount_max):
        raise ValidationError(
            f"amount must be between {settings.amount_min} and {settings.amount_max}",
            details={"field": "amount", "value": amount},
        )
    return round(float(amount), 2)


def validate_text_field(name: str, value: Optional[str], max_length: int) -> str:
    """Require a non-empty string no longer than max_length."""
    if value is None or not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{name} is required", details={"field": name})
    value = value.strip()
    if len(value) > max_length:
        raise ValidationError(
            f"{name} exceeds {max_length} characters",
            details={"field": name, "length": len(value)},
        )
    return value


def resolve_source(source: Optional[str], threshold: float) -> str:
    """
    Map a classifier source label onto the allow-list.

    Exact matches ignore case and whitespace. Otherwise the closest label is
    accepted only when its Levenshtein ratio reaches the threshold.

    Args:
        source: Source label returned by the classifier
        threshold: Minimum similarity ratio for a near-miss

    Returns:
        Canonical source label

    Raises:
        ValidationError: If the source is missing or not recognized
    """
    key = normalize_label(source)
    if not key:
        raise ValidationError("source is required", details={"field": "source"})

    if key in SOURCE_LABELS_BY_KEY:
        return SOURCE_LABELS_BY_KEY[key]

    best_key = max(SOURCE_LABELS_BY_KEY, key=lambda k: Levenshtein.ratio(key, k))
    best_score = Levenshtein.ratio(key, best_key)
    if best_score >= threshold:
        canonical = SOURCE_LABELS_BY_KEY[best_key]
        logger.warning(f"Source '{source}' resolved to '{canonical}' (similarity {best_score:.2f})")
        return canonical

    raise ValidationError(
        f"Unrecognized payment source: {source}",
        details={"field": "source", "value": source, "closest": SOURCE_LABELS_BY_KEY[best_key]},
    )


def resolve_transaction_date(transaction_date: Optional[str], received_at: str) -> str:
    """
    Pick the expense date: the classifier date if it parses, else receivedAt.

    Naive timestamps are taken as UTC; all others are converted to UTC so
    stored dates sort chronologically as text.
    """
    if not transaction_date:
        return received_at

    try:
        parsed = datetime.fromisoformat(transaction_date.replace("Z", "+00:00"))
    except ValueError:
        logger.warning(f"Unparseable transactionDate '{transaction_date}', falling back to receivedAt")
        return received_at

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc).isoformat()


def validate_transaction(
    result: ClassificationResult,
    received_at: str,
    settings: Settings,
) -> ValidatedTransaction:
    """
    Validate all transaction fields of a classifier result.

    Args:
        result: Classifier output with is_transaction=True
        received_at: Fallback date from the raw message
        settings: Validation bounds

    Returns:
        ValidatedTransaction ready for commit

    Raises:
        ValidationError: On the first failing field
    """
    missing = [name for name in REQUIRED_TRANSACTION_FIELDS if getattr(result, name) in (None, "")]
    if missing:
        raise ValidationError(
            "Missing required transaction fields: " + ", ".join(missing),
            details={"missing": missing},
        )

    return ValidatedTransaction(
        amount=validate_amount(result.amount, settings),
        category=validate_text_field("category", result.category, settings.category_max_length),
        note=validate_text_field("note", result.note, settings.note_max_length),
        source=resolve_source(result.source, settings.source_match_threshold),
        date=resolve_transaction_date(result.transaction_date, received_at),
        confidence=result.confidence,
    )

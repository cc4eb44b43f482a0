"""
Payment sources, categories and expense types.

PAYMENT_SOURCES is the allow-list for the expense `source` field and the
single source of truth for the classifier system prompt.
"""
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel

SourceType = Literal["bank_account", "credit_card", "cash", "wallet", "upi", "other"]


class PaymentSource(BaseModel):
    """A payment instrument an expense can be attributed to."""
    id: str
    label: str
    type: SourceType
    description: Optional[str] = None


PAYMENT_SOURCES: List[PaymentSource] = [
    PaymentSource(id="hdfc-bank-account", label="HDFC Bank account", type="bank_account",
                  description="Primary savings account"),
    PaymentSource(id="hdfc-credit-card", label="HDFC Credit Card", type="credit_card",
                  description="Primary credit card"),
    PaymentSource(id="icici-bank-account", label="ICICI Bank Account", type="bank_account",
                  description="Secondary savings account"),
    PaymentSource(id="icici-credit-card", label="ICICI Credit card", type="credit_card",
                  description="Secondary credit card"),
    PaymentSource(id="cash", label="Cash", type="cash",
                  description="Physical cash payments"),
    PaymentSource(id="paytm-wallet", label="Paytm Wallet", type="wallet",
                  description="Digital wallet payments"),
    PaymentSource(id="phonepe", label="PhonePe", type="upi",
                  description="UPI payments via PhonePe"),
    PaymentSource(id="google-pay", label="Google Pay", type="upi",
                  description="UPI payments via Google Pay"),
]

EXPENSE_CATEGORIES: List[str] = [
    "Shopping",
    "Food & Dining",
    "Transportation",
    "UPI Payment",
    "Entertainment",
    "Utilities",
    "Healthcare",
    "Education",
    "Other",
]

EXPENSE_TYPES: List[str] = ["personal", "family", "shared", "money_lend", "business", "investment"]

DEFAULT_EXPENSE_TYPE = "personal"


def normalize_label(text: Optional[str]) -> str:
    """Lowercase, trim and collapse whitespace for label comparison."""
    if not text or not isinstance(text, str):
        return ""
    return " ".join(text.lower().strip().split())


# normalized label -> canonical label
SOURCE_LABELS_BY_KEY: Dict[str, str] = {
    normalize_label(source.label): source.label for source in PAYMENT_SOURCES
}


def get_source_labels() -> List[str]:
    """All canonical source labels in display order."""
    return [source.label for source in PAYMENT_SOURCES]


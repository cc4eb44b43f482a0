"""
System and user prompts for SMS transaction classification.
The payment source list is embedded from the catalog so the prompt and the
allow-list cannot drift apart.
"""
from core.catalog import EXPENSE_CATEGORIES, get_source_labels
from core.schema import ClassificationRequest


def build_system_prompt() -> str:
    """
    Build the fixed system instruction.

    Returns:
        Complete system prompt string
    """
    sources = "\n".join(f'- "{label}"' for label in get_source_labels())
    categories = ", ".join(f'"{category}"' for category in EXPENSE_CATEGORIES)

    prompt = f"""You are an expert at parsing Indian bank SMS messages.

Your task is to:
1. Determine if the SMS is about a financial transaction (money debited or spent).
2. If it is a transaction, extract key details in a structured format.

**SMS Format Examples:**
- Transaction: "Rs. 1,234.56 debited from your HDFC Bank account ending 1234 on 01-Jan-25 at MERCHANT NAME"
- OTP (not a transaction): "OTP is 123456 for your HDFC Bank transaction"
- Balance (not a transaction): "Your HDFC Bank account balance is Rs. 10,000.00"

**Transaction Sources (exactly one of these):**
{sources}

**Categories** should be descriptive, preferably one of: {categories}.

**Output Format** - respond with valid JSON only, in this exact shape:
{{
  "isTransaction": boolean,
  "amount": number (only if isTransaction is true),
  "transactionDate": "YYYY-MM-DDTHH:mm:ss.sssZ" (only if isTransaction is true),
  "category": "string" (only if isTransaction is true),
  "note": "string" (only if isTransaction is true, merchant or short description),
  "source": "string" (only if isTransaction is true, must be one of the sources above),
  "confidence": number between 0 and 1 (only if isTransaction is true)
}}

If isTransaction is false, only include "isTransaction": false.
"""
    return prompt


def build_user_message(request: ClassificationRequest) -> str:
    """
    Build the per-call user message with the SMS fields verbatim.

    Args:
        request: SMS to classify

    Returns:
        Formatted user message string
    """
    return (
        "Parse this SMS:\n"
        f"Sender: {request.sender}\n"
        f"Message: {request.message}\n"
        f"Received at: {request.received_at}"
    )

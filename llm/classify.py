"""
SMS classification using the LLM with structured JSON output.

`Classifier` is the one-operation interface the message processor depends
on; `LLMClassifier` is the production implementation.
"""
from typing import Any, Optional, Protocol

from pydantic import ValidationError

from core.exceptions import EmptyResponseError, SchemaParseError, SchemaValidationError
from core.logger import mask_sensitive, setup_logger
from core.schema import (
    REQUIRED_TRANSACTION_FIELDS,
    ClassificationRequest,
    ClassificationResult,
)
from llm.client import LLMClientWrapper
from llm.prompts import build_system_prompt, build_user_message

logger = setup_logger(__name__)


class Classifier(Protocol):
    """Decides whether an SMS is a transaction and extracts its fields."""

    def classify(self, request: ClassificationRequest) -> ClassificationResult:
        ...


def _is_missing(value: Any) -> bool:
    if value is None:
        return True
    return isinstance(value, str) and not value.strip()


def build_classification_result(data: Any) -> ClassificationResult:
    """
    Turn parsed classifier JSON into a ClassificationResult.

    Args:
        data: Parsed JSON value

    Returns:
        ClassificationResult

    Raises:
        SchemaParseError: If data is not an object with a boolean isTransaction
        SchemaValidationError: If a transaction lacks required fields or a
            field has an unusable value
    """
    if not isinstance(data, dict):
        raise SchemaParseError(
            "Classifier response is not a JSON object",
            details={"type": type(data).__name__},
        )

    is_transaction = data.get("isTransaction")
    if not isinstance(is_transaction, bool):
        raise SchemaParseError(
            "Classifier response lacks a boolean isTransaction",
            details={"isTransaction": repr(is_transaction)},
        )

    if not is_transaction:
        return ClassificationResult(is_transaction=False)

    missing = [name for name in REQUIRED_TRANSACTION_FIELDS if _is_missing(data.get(name))]
    if missing:
        raise SchemaValidationError(
            "Missing required transaction fields in classifier response",
            details={"missing": missing},
        )

    try:
        return ClassificationResult.model_validate(data)
    except ValidationError as e:
        raise SchemaValidationError(
            f"Classifier response failed validation: {e.error_count()} error(s)",
            details={"errors": [err["msg"] for err in e.errors()]},
        )


class LLMClassifier:
    """Classifier backed by the chat-completions API."""

    def __init__(self, client: LLMClientWrapper, max_parse_attempts: int = 2):
        """
        Args:
            client: REST client for the completions endpoint
            max_parse_attempts: How many times to re-ask on empty or
                unparseable content before giving up
        """
        self.client = client
        self.max_parse_attempts = max_parse_attempts
        self.system_prompt = build_system_prompt()

    def classify(self, request: ClassificationRequest) -> ClassificationResult:
        """
        Classify one SMS.

        Raises:
            ClassifierTransportError: Transport retries exhausted
            EmptyResponseError: No content on the final attempt
            SchemaParseError: Unparseable content on the final attempt
            SchemaValidationError: Transaction without required fields
        """
        user_message = build_user_message(request)
        logger.info(f"Classifying SMS from {request.sender}: {mask_sensitive(request.message)}")

        last_error: Optional[Exception] = None
        for attempt in range(self.max_parse_attempts):
            try:
                data = self.client.call_with_json_output(self.system_prompt, user_message)
                result = build_classification_result(data)
            except (EmptyResponseError, SchemaParseError) as e:
                last_error = e
                if attempt < self.max_parse_attempts - 1:
                    logger.warning(
                        f"Malformed classifier response (attempt {attempt + 1}/{self.max_parse_attempts}), "
                        f"retrying: {e.message}"
                    )
                continue

            logger.info(
                f"Classified SMS: isTransaction={result.is_transaction}, "
                f"confidence={result.confidence}"
            )
            return result

        raise last_error

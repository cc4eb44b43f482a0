"""
Trigger processor: turns one raw message into one terminal outcome.

State machine:

    created -> processing -> discarded           (terminal, row deleted)
                          -> committed           (terminal)
                          -> permanently_failed  (terminal)
                          -> retryable_failed    (re-enterable)

Delivery is at-least-once and invocations for the same id are not mutually
exclusive. Every invocation re-reads the message first and every write is
conditional on the message still being open, so late or duplicate
invocations no-op.
"""
import uuid
from typing import Optional

from core.catalog import DEFAULT_EXPENSE_TYPE
from core.config import Settings
from core.db import Database
from core.exceptions import (
    EmptyResponseError,
    LLMError,
    SchemaParseError,
    SchemaValidationError,
    StoreError,
    ValidationError,
)
from core.logger import setup_logger
from core.schema import (
    INCOMPLETE_PARSE,
    MALFORMED_RESPONSE,
    PROCESSING_ERROR,
    ClassificationRequest,
    ErrorInfo,
    Expense,
    MessageState,
    ProcessingOutcome,
    ProcessingReport,
    RawMessage,
    ValidatedTransaction,
    utc_now_iso,
)
from core.validation import validate_transaction
from llm.classify import Classifier

logger = setup_logger(__name__)


def build_expense(raw: RawMessage, transaction: ValidatedTransaction) -> Expense:
    """Assemble the expense document for a validated transaction."""
    return Expense(
        id=uuid.uuid4().hex,
        user_id=raw.user_id,
        amount=transaction.amount,
        category=transaction.category,
        note=transaction.note,
        source=transaction.source,
        date=transaction.date,
        sender=raw.sender,
        message=raw.message,
        received_at=raw.received_at,
        expense_type=DEFAULT_EXPENSE_TYPE,
        raw_message_id=raw.id,
        created_at=utc_now_iso(),
    )


class MessageProcessor:
    """Classifies a raw message and commits its terminal outcome."""

    def __init__(self, db: Database, classifier: Classifier, settings: Settings):
        self.db = db
        self.classifier = classifier
        self.settings = settings

    def process(self, raw_message_id: str) -> ProcessingReport:
        """
        Run the state machine for one raw message.

        Never raises for classifier or store failures; those are recorded on
        the raw message and reflected in the returned report.

        Args:
            raw_message_id: Id of the raw message to process

        Returns:
            ProcessingReport describing what this invocation did
        """
        try:
            raw = self.db.get_raw_message(raw_message_id)
        except StoreError as e:
            logger.error(f"Could not read raw message {raw_message_id}: {e.message}")
            return self._report(raw_message_id, ProcessingOutcome.RETRYABLE_FAILED,
                                error=ErrorInfo(code=PROCESSING_ERROR, message=e.message))

        skip_reason = self._skip_reason(raw)
        if skip_reason:
            logger.info(f"Skipping raw message {raw_message_id}: {skip_reason}")
            return self._report(raw_message_id, ProcessingOutcome.SKIPPED,
                                state=raw.state if raw else None,
                                expense_id=raw.expense_id if raw else None)

        try:
            existing = self.db.get_expense_by_raw_message_id(raw.id)
            if existing is not None:
                return self._complete_commit(raw, existing.id)
            if not self.db.mark_processing(raw.id):
                logger.info(f"Raw message {raw.id} closed by a concurrent invocation")
                return self._report(raw.id, ProcessingOutcome.SKIPPED)
            return self._run(raw)
        except StoreError as e:
            return self._fail_retryable(raw, PROCESSING_ERROR, e.message)
        except Exception as e:
            logger.error(f"Unexpected error processing raw message {raw.id}: {e}", exc_info=True)
            return self._fail_retryable(raw, PROCESSING_ERROR, str(e))

    @staticmethod
    def _skip_reason(raw: Optional[RawMessage]) -> Optional[str]:
        if raw is None:
            return "not found (already discarded or never stored)"
        if raw.processed or raw.state.is_terminal:
            return f"already processed ({raw.state.value})"
        if raw.expense_id:
            return f"already linked to expense {raw.expense_id}"
        return None

    def _complete_commit(self, raw: RawMessage, expense_id: str) -> ProcessingReport:
        # Expense landed on an earlier invocation but the raw mark did not
        self.db.link_expense(raw.id, expense_id)
        logger.warning(f"SMS {raw.id} already has expense {expense_id}; linked without reclassifying")
        return self._report(raw.id, ProcessingOutcome.COMMITTED,
                            state=MessageState.COMMITTED, expense_id=expense_id)

    def _run(self, raw: RawMessage) -> ProcessingReport:
        logger.info(f"Processing SMS {raw.id} from {raw.sender}")

        try:
            result = self.classifier.classify(ClassificationRequest.from_raw_message(raw))
        except SchemaValidationError as e:
            return self._fail_permanently(raw, e.message)
        except (EmptyResponseError, SchemaParseError) as e:
            return self._fail_retryable(raw, MALFORMED_RESPONSE, e.message)
        except LLMError as e:
            return self._fail_retryable(raw, PROCESSING_ERROR, e.message)

        if not result.is_transaction:
            return self._discard(raw)

        try:
            transaction = validate_transaction(result, raw.received_at, self.settings)
        except ValidationError as e:
            return self._fail_permanently(raw, e.message)

        return self._commit(raw, transaction)

    def _discard(self, raw: RawMessage) -> ProcessingReport:
        if self.db.delete_raw_message(raw.id):
            logger.info(f"Deleted non-transaction SMS {raw.id}")
            return self._report(raw.id, ProcessingOutcome.DISCARDED, state=MessageState.DISCARDED)
        logger.info(f"Raw message {raw.id} was closed before it could be discarded")
        return self._report(raw.id, ProcessingOutcome.SKIPPED)

    def _fail_permanently(self, raw: RawMessage, reason: str) -> ProcessingReport:
        error = ErrorInfo(code=INCOMPLETE_PARSE, message=reason)
        logger.error(f"Incomplete classifier result for SMS {raw.id}: {reason}")
        if self.db.mark_permanent_failure(raw.id, error):
            return self._report(raw.id, ProcessingOutcome.PERMANENTLY_FAILED,
                                state=MessageState.PERMANENTLY_FAILED, error=error)
        return self._report(raw.id, ProcessingOutcome.SKIPPED)

    def _fail_retryable(self, raw: RawMessage, code: str, reason: str) -> ProcessingReport:
        error = ErrorInfo(code=code, message=reason)
        logger.error(f"Retryable failure for SMS {raw.id} [{code}]: {reason}")
        try:
            if not self.db.mark_retryable_failure(raw.id, error):
                logger.info(f"Raw message {raw.id} was closed by a concurrent invocation")
                return self._report(raw.id, ProcessingOutcome.SKIPPED)
        except StoreError as e:
            logger.error(f"Failed to update SMS error status for {raw.id}: {e.message}")
        return self._report(raw.id, ProcessingOutcome.RETRYABLE_FAILED,
                            state=MessageState.RETRYABLE_FAILED, error=error)

    def _commit(self, raw: RawMessage, transaction: ValidatedTransaction) -> ProcessingReport:
        committed = self.db.commit_expense(build_expense(raw, transaction))
        if committed is None:
            return self._report(raw.id, ProcessingOutcome.SKIPPED)

        expense, created = committed
        if created:
            logger.info(
                f"Successfully processed SMS {raw.id} to expense {expense.id}: "
                f"amount={expense.amount}, category={expense.category}, "
                f"confidence={transaction.confidence}"
            )
        else:
            logger.info(f"SMS {raw.id} was already committed as expense {expense.id}")
        return self._report(raw.id, ProcessingOutcome.COMMITTED,
                            state=MessageState.COMMITTED, expense_id=expense.id)

    @staticmethod
    def _report(
        raw_message_id: str,
        outcome: ProcessingOutcome,
        state: Optional[MessageState] = None,
        expense_id: Optional[str] = None,
        error: Optional[ErrorInfo] = None,
    ) -> ProcessingReport:
        return ProcessingReport(
            raw_message_id=raw_message_id,
            outcome=outcome,
            state=state,
            expense_id=expense_id,
            error=error,
        )

"""
Delivery of raw-message creation events to the message processor.

Mirrors an at-least-once trigger runtime: a delivery that ends in a
retryable failure is redelivered with exponential backoff until it reaches
another outcome or the delivery budget runs out.
"""
from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_result,
    stop_after_attempt,
    wait_exponential,
)

from core.config import Settings
from core.logger import setup_logger
from core.schema import ProcessingOutcome, ProcessingReport
from services.message_processor import MessageProcessor

logger = setup_logger(__name__)


def _needs_redelivery(report: ProcessingReport) -> bool:
    return report.outcome == ProcessingOutcome.RETRYABLE_FAILED


def _last_report(retry_state: RetryCallState) -> ProcessingReport:
    return retry_state.outcome.result()


class TriggerDispatcher:
    """Invokes the processor for a raw message, redelivering on retryable failure."""

    def __init__(self, processor: MessageProcessor, settings: Settings, wait=None):
        self.processor = processor
        self.max_deliveries = settings.trigger_max_deliveries
        self.wait = wait or wait_exponential(multiplier=1, min=1, max=30)

    def deliver(self, raw_message_id: str) -> ProcessingReport:
        """
        Deliver one creation event.

        Args:
            raw_message_id: Id of the created raw message

        Returns:
            Report from the last processor invocation
        """
        retrying = Retrying(
            stop=stop_after_attempt(self.max_deliveries),
            wait=self.wait,
            retry=retry_if_result(_needs_redelivery),
            retry_error_callback=_last_report,
            before_sleep=lambda state: logger.warning(
                f"Redelivering raw message {raw_message_id} "
                f"(delivery {state.attempt_number}/{self.max_deliveries} was retryable)"
            ),
        )
        report = retrying(self.processor.process, raw_message_id)

        if report.outcome == ProcessingOutcome.RETRYABLE_FAILED:
            logger.error(
                f"Raw message {raw_message_id} still failing after {self.max_deliveries} deliveries; "
                "left for replay or reconciliation"
            )
        return report

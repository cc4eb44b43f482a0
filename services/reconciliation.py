"""
Reconciliation sweep for crash recovery.

Repairs expenses whose raw-message mark never landed, and redelivers raw
messages that have sat unprocessed past the staleness window (lost trigger
events, crashed invocations, exhausted redeliveries).
"""
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from core.config import Settings
from core.db import Database
from core.logger import setup_logger
from core.schema import ProcessingOutcome, RawMessage, ReconciliationReport
from services.trigger import TriggerDispatcher

logger = setup_logger(__name__)


class Reconciler:
    """Brings stored state back in line with the pipeline invariants."""

    def __init__(self, db: Database, dispatcher: TriggerDispatcher, settings: Settings):
        self.db = db
        self.dispatcher = dispatcher
        self.stale_after = timedelta(seconds=settings.reconcile_stale_after_seconds)

    def repair_unlinked_expenses(self, user_id: Optional[str] = None) -> list:
        """Mark processed every raw message that already has an expense."""
        repaired = []
        for expense in self.db.find_unlinked_expenses(user_id=user_id):
            if self.db.link_expense(expense.raw_message_id, expense.id):
                logger.warning(
                    f"Repaired raw message {expense.raw_message_id}: linked to existing expense {expense.id}"
                )
                repaired.append(expense.raw_message_id)
        return repaired

    def find_stale(self, user_id: Optional[str] = None, limit: int = 100) -> List[RawMessage]:
        """Open messages idle for longer than the staleness window."""
        cutoff = (datetime.now(timezone.utc) - self.stale_after).isoformat(timespec="microseconds")
        return self.db.list_stale_raw_messages(cutoff, limit=limit, user_id=user_id)

    def redeliver(self, raw_message_ids: List[str]) -> Dict[str, ProcessingOutcome]:
        """Hand each message back to the dispatcher; returns the final outcomes."""
        outcomes = {}
        for raw_message_id in raw_message_ids:
            outcomes[raw_message_id] = self.dispatcher.deliver(raw_message_id).outcome
        logger.info(f"Redelivered {len(outcomes)} stale raw message(s)")
        return outcomes

    def run(self, user_id: Optional[str] = None, limit: int = 100) -> ReconciliationReport:
        """
        Run one sweep synchronously.

        Args:
            user_id: Restrict the sweep to one user's records, None for all
            limit: Maximum number of stale messages to redeliver

        Returns:
            ReconciliationReport
        """
        report = ReconciliationReport(repaired=self.repair_unlinked_expenses(user_id))
        stale = self.find_stale(user_id, limit=limit)
        report.redelivered = self.redeliver([raw.id for raw in stale])

        logger.info(
            f"Reconciliation complete: {len(report.repaired)} repaired, "
            f"{len(report.redelivered)} redelivered"
        )
        return report

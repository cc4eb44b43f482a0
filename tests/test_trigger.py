"""
Tests for trigger delivery and redelivery.
"""
import pytest
from tenacity import wait_none

from conftest import FakeClassifier, swiggy_result

from core.exceptions import ClassifierTransportError
from core.schema import ProcessingOutcome
from services.message_processor import MessageProcessor
from services.trigger import TriggerDispatcher


@pytest.fixture()
def dispatch(db, settings):
    def _make(*responses, max_deliveries=3):
        classifier = FakeClassifier(*responses)
        processor = MessageProcessor(db, classifier, settings)
        delivery_settings = settings.model_copy(update={"trigger_max_deliveries": max_deliveries})
        return TriggerDispatcher(processor, delivery_settings, wait=wait_none()), classifier
    return _make


def test_delivery_commits_first_time(db, stored_message, dispatch):
    dispatcher, classifier = dispatch(swiggy_result())

    report = dispatcher.deliver(stored_message.id)

    assert report.outcome == ProcessingOutcome.COMMITTED
    assert len(classifier.calls) == 1


def test_retryable_failure_is_redelivered(db, stored_message, dispatch):
    timeout = ClassifierTransportError("Classifier request timeout after 30s")
    dispatcher, classifier = dispatch(timeout, timeout, swiggy_result())

    report = dispatcher.deliver(stored_message.id)

    assert report.outcome == ProcessingOutcome.COMMITTED
    assert len(classifier.calls) == 3
    assert db.count_expenses_for_raw_message(stored_message.id) == 1


def test_redelivery_stops_after_budget(db, stored_message, dispatch):
    dispatcher, classifier = dispatch(ClassifierTransportError("connection reset"), max_deliveries=2)

    report = dispatcher.deliver(stored_message.id)

    assert report.outcome == ProcessingOutcome.RETRYABLE_FAILED
    assert len(classifier.calls) == 2
    assert db.get_raw_message(stored_message.id).processed is False


def test_permanent_failure_not_redelivered(stored_message, dispatch):
    dispatcher, classifier = dispatch(swiggy_result(source=None))

    report = dispatcher.deliver(stored_message.id)

    assert report.outcome == ProcessingOutcome.PERMANENTLY_FAILED
    assert len(classifier.calls) == 1


def test_duplicate_delivery_skipped(stored_message, dispatch):
    dispatcher, classifier = dispatch(swiggy_result())

    dispatcher.deliver(stored_message.id)
    report = dispatcher.deliver(stored_message.id)

    assert report.outcome == ProcessingOutcome.SKIPPED
    assert len(classifier.calls) == 1

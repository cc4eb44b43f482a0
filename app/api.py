"""
FastAPI routes for SMS ingestion, operational inspection and replay.
Service objects are built through dependency functions so tests can
override any of them.
"""
import asyncio
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import BackgroundTasks, Depends, FastAPI, Query, Request
from fastapi.responses import JSONResponse

from core.config import Settings, get_settings
from core.db import Database, get_db
from core.exceptions import (
    AuthError,
    DataNotFoundError,
    ExpenseTrackerException,
    IdentityMismatchError,
    StoreError,
    ValidationError,
)
from core.logger import setup_logger
from core.schema import (
    Expense,
    IngestRequest,
    MessageState,
    ProcessingReport,
    RawMessage,
    ReconciliationSummary,
)
from llm.classify import Classifier, LLMClassifier
from llm.client import get_client
from services.ingestion_service import IngestionService
from services.message_processor import MessageProcessor
from services.reconciliation import Reconciler
from services.trigger import TriggerDispatcher

logger = setup_logger(__name__)

_classifier: Optional[Classifier] = None


def get_database() -> Database:
    return get_db()


def get_classifier() -> Classifier:
    global _classifier
    if _classifier is None:
        settings = get_settings()
        _classifier = LLMClassifier(get_client(settings), settings.llm_max_parse_attempts)
    return _classifier


def get_processor(
    db: Database = Depends(get_database),
    classifier: Classifier = Depends(get_classifier),
    settings: Settings = Depends(get_settings),
) -> MessageProcessor:
    return MessageProcessor(db, classifier, settings)


def get_dispatcher(
    processor: MessageProcessor = Depends(get_processor),
    settings: Settings = Depends(get_settings),
) -> TriggerDispatcher:
    return TriggerDispatcher(processor, settings)


def get_ingestion_service(
    db: Database = Depends(get_database),
    settings: Settings = Depends(get_settings),
) -> IngestionService:
    return IngestionService(db, settings)


def get_reconciler(
    db: Database = Depends(get_database),
    dispatcher: TriggerDispatcher = Depends(get_dispatcher),
    settings: Settings = Depends(get_settings),
) -> Reconciler:
    return Reconciler(db, dispatcher, settings)


def get_caller_identity(request: Request, settings: Settings = Depends(get_settings)) -> Optional[str]:
    """Identity attached by the fronting auth gateway, if any."""
    uid = request.headers.get(settings.auth_identity_header)
    return uid.strip() if uid and uid.strip() else None


def require_identity(uid: Optional[str] = Depends(get_caller_identity)) -> str:
    if not uid:
        raise AuthError("Authentication required")
    return uid


def _startup_reconcile() -> None:
    try:
        settings = get_settings()
        db = get_db(settings)
        processor = MessageProcessor(db, get_classifier(), settings)
        reconciler = Reconciler(db, TriggerDispatcher(processor, settings), settings)
        reconciler.run()
    except ExpenseTrackerException as e:
        logger.error(f"Startup reconciliation failed: {e.message}", exc_info=True)
    except Exception as e:
        logger.error(f"Startup reconciliation failed: {e}", exc_info=True)


def _log_reconcile_failure(future: "asyncio.Future") -> None:
    if future.cancelled():
        logger.warning("Startup reconciliation was cancelled")
    elif future.exception() is not None:
        logger.error("Startup reconciliation crashed", exc_info=future.exception())


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    get_db(settings)
    if settings.reconcile_on_startup:
        future = asyncio.get_running_loop().run_in_executor(None, _startup_reconcile)
        future.add_done_callback(_log_reconcile_failure)
        app.state.startup_reconcile = future
    yield
    logger.info("Shutting down")


app = FastAPI(
    title="SMS Expense Ingestion",
    description="Turn bank SMS notifications into validated expense records",
    version="1.0.0",
    lifespan=lifespan,
)


def _error_response(status_code: int, exc: ExpenseTrackerException) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": type(exc).__name__, "message": exc.message, "details": exc.details},
    )


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError):
    return _error_response(401, exc)


@app.exception_handler(IdentityMismatchError)
async def identity_mismatch_handler(request: Request, exc: IdentityMismatchError):
    return _error_response(403, exc)


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    return _error_response(400, exc)


@app.exception_handler(DataNotFoundError)
async def not_found_handler(request: Request, exc: DataNotFoundError):
    return _error_response(404, exc)


@app.exception_handler(StoreError)
async def store_error_handler(request: Request, exc: StoreError):
    logger.error(f"Store unavailable: {exc.message}")
    return _error_response(503, exc)


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "service": "sms_expense_ingestion",
        "version": "1.0.0"
    }


@app.post("/api/messages", response_model=RawMessage, status_code=201)
def ingest_message(
    payload: IngestRequest,
    background_tasks: BackgroundTasks,
    auth_uid: Optional[str] = Depends(get_caller_identity),
    service: IngestionService = Depends(get_ingestion_service),
    dispatcher: TriggerDispatcher = Depends(get_dispatcher),
):
    """
    Store a raw SMS and schedule its processing.

    The caller only learns about ingestion errors; classification and
    commit outcomes are recorded on the stored message.
    """
    raw = service.ingest(payload, auth_uid)
    background_tasks.add_task(dispatcher.deliver, raw.id)
    return raw


def _load_owned_message(db: Database, raw_message_id: str, uid: str) -> RawMessage:
    raw = db.get_raw_message(raw_message_id)
    if raw is None or raw.user_id != uid:
        raise DataNotFoundError("Raw message not found", details={"id": raw_message_id})
    return raw


@app.get("/api/messages", response_model=List[RawMessage])
def list_messages(
    state: Optional[MessageState] = Query(None),
    limit: int = Query(100, ge=1, le=500),
    uid: str = Depends(require_identity),
    db: Database = Depends(get_database),
):
    """List the caller's raw messages, optionally filtered by state."""
    return db.list_raw_messages(uid, state=state, limit=limit)


@app.get("/api/messages/{raw_message_id}", response_model=RawMessage)
def get_message(
    raw_message_id: str,
    uid: str = Depends(require_identity),
    db: Database = Depends(get_database),
):
    """Inspect one raw message, including its error annotation."""
    return _load_owned_message(db, raw_message_id, uid)


@app.post("/api/messages/{raw_message_id}/replay", response_model=ProcessingReport)
def replay_message(
    raw_message_id: str,
    uid: str = Depends(require_identity),
    db: Database = Depends(get_database),
    processor: MessageProcessor = Depends(get_processor),
):
    """Run the processor once more for a message (manual replay)."""
    _load_owned_message(db, raw_message_id, uid)
    logger.info(f"Manual replay requested for raw message {raw_message_id}")
    return processor.process(raw_message_id)


@app.get("/api/expenses", response_model=List[Expense])
def list_expenses(
    limit: int = Query(100, ge=1, le=500),
    uid: str = Depends(require_identity),
    db: Database = Depends(get_database),
):
    """List the caller's committed expenses."""
    return db.list_expenses(uid, limit=limit)


@app.post("/api/admin/reconcile", response_model=ReconciliationSummary, status_code=202)
def reconcile(
    background_tasks: BackgroundTasks,
    uid: str = Depends(require_identity),
    reconciler: Reconciler = Depends(get_reconciler),
):
    """
    Repair the caller's half-finished commits and queue redelivery of the
    caller's stale messages.
    """
    logger.info(f"Reconciliation requested by {uid}")
    repaired = reconciler.repair_unlinked_expenses(uid)
    stale = reconciler.find_stale(uid)
    if stale:
        background_tasks.add_task(reconciler.redeliver, [raw.id for raw in stale])
    return ReconciliationSummary(repaired=len(repaired), scheduled=len(stale))

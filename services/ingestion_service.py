"""
Ingestion of raw SMS messages from authenticated devices.
"""
import uuid
from typing import Optional

from core.config import Settings
from core.db import Database
from core.exceptions import AuthError, IdentityMismatchError, ValidationError
from core.logger import mask_sensitive, setup_logger
from core.schema import IngestRequest, MessageState, RawMessage, utc_now_iso

logger = setup_logger(__name__)


class IngestionService:
    """Validates an inbound SMS and stores it as a new raw message."""

    def __init__(self, db: Database, settings: Settings):
        self.db = db
        self.settings = settings

    def _require_text(self, name: str, value: Optional[str], max_length: int) -> str:
        if value is None or not isinstance(value, str) or not value.strip():
            raise ValidationError(f"{name} is required", details={"field": name})
        value = value.strip()
        if len(value) > max_length:
            raise ValidationError(
                f"{name} exceeds {max_length} characters",
                details={"field": name, "length": len(value)},
            )
        return value

    def ingest(self, request: IngestRequest, auth_uid: Optional[str]) -> RawMessage:
        """
        Store a raw SMS for the authenticated caller.

        The stored userId is always the verified identity, never the uid
        from the payload.

        Args:
            request: Sender, message and optional claimed uid
            auth_uid: Identity verified by the auth layer, None if anonymous

        Returns:
            The stored RawMessage including its id

        Raises:
            AuthError: No authenticated identity
            IdentityMismatchError: Claimed uid differs from auth_uid
            ValidationError: Empty or oversized sender/message
        """
        if not auth_uid:
            raise AuthError("Authentication required")

        if request.uid and request.uid != auth_uid:
            logger.warning("UID mismatch detected on ingestion")
            raise IdentityMismatchError(
                "UID validation failed",
                details={"reason": "claimed uid does not match authenticated identity"},
            )

        sender = self._require_text("sender", request.sender, self.settings.sender_max_length)
        message = self._require_text("message", request.message, self.settings.message_max_length)

        now = utc_now_iso()
        raw = RawMessage(
            id=uuid.uuid4().hex,
            user_id=auth_uid,
            sender=sender,
            message=message,
            received_at=now,
            processed=False,
            state=MessageState.CREATED,
            updated_at=now,
        )
        stored = self.db.create_raw_message(raw)

        logger.info(f"SMS stored: id={stored.id}, sender={sender}, message={mask_sensitive(message)}")
        return stored

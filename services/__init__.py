"""
Service layer for business logic.

This package contains the ingestion service, the message processor state
machine, the trigger dispatcher that delivers creation events to it, and the
reconciliation sweep used for crash recovery.
"""

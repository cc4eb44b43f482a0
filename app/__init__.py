"""
HTTP layer for the SMS expense ingestion service.
"""

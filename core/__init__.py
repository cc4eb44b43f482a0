"""
Core modules for the SMS expense pipeline.

This package contains:
- catalog: Payment sources, categories and expense types
- config: Application configuration and settings
- db: SQLite message and expense store
- exceptions: Custom exception classes
- logger: Logging configuration and message masking
- schema: Pydantic models for records and classifier output
- validation: Transaction field validation before commit
"""

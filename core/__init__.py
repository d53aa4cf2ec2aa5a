"""
Core modules for the cheque intake pipeline.

This package contains:
- config: Application configuration and settings
- db: SQLite ledger access layer
- documents: Upload validation and rasterization
- exceptions: Custom exception classes
- fees: Fee and profit arithmetic
- logger: Logging configuration
- matching: Counterparty fuzzy matching
- normalize: Field value normalization
- schema: Pydantic models for sessions and transactions
"""

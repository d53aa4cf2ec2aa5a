"""
Service layer for the conversational intake pipeline.

This package contains the conversation store, reconciliation engine,
transaction committer and the session orchestrator that drives them.
"""

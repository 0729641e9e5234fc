"""
Document stores for gigs, runs and error log entries.

Usage:
    from src.ingestion.storage import InMemoryDocumentStore, PostgresDocumentStore

    store = PostgresDocumentStore.connect(settings.database_dsn)
"""

from .base import DocumentStore, OperationKind, OperationOutcome, WriteOperation
from .memory import InMemoryDocumentStore
from .postgres import PostgresDocumentStore

__all__ = [
    "DocumentStore",
    "OperationKind",
    "OperationOutcome",
    "WriteOperation",
    "InMemoryDocumentStore",
    "PostgresDocumentStore",
]

"""
Database layer - Multi-backend persistence for the CRM engine.

Backends:
  - SQL (PostgreSQL or SQLite via SQLAlchemy async)
  - In-memory (dict-based, for development/testing)

Quick start:
  from database import create_store, get_store
  store = create_store({"store_backend": "memory"})
  lead = await store.get_lead("lead-1")
"""
from database.models import (
    Base, LeadRow, ProfileRow, OpportunityRow, StageLogRow, MessageTemplateRow,
    MessageLogRow, BookingRow, PostCallActionRow, TaskRow, InvoiceRow,
)
from database.session import get_engine, get_session, init_db, close_db, configure_engine
from database.store_base import CRMStore, StoreError
from database.store import SqlStore
from database.store_memory import InMemoryStore
from database.store_factory import create_store, get_store, reset_store

__all__ = [
    # ORM models
    "Base", "LeadRow", "ProfileRow", "OpportunityRow", "StageLogRow",
    "MessageTemplateRow", "MessageLogRow", "BookingRow", "PostCallActionRow",
    "TaskRow", "InvoiceRow",
    # Session management
    "get_engine", "get_session", "init_db", "close_db", "configure_engine",
    # Store interface
    "CRMStore", "StoreError",
    # Store backends
    "SqlStore", "InMemoryStore",
    # Factory
    "create_store", "get_store", "reset_store",
]

"""Database layer for notetriage.

This module provides SQLite database access with async operations.

Usage:
    from notetriage.db import DatabaseStore, Note

    store = DatabaseStore("data/notetriage.db")
    await store.initialize()

    await store.save_note(Note(id="n1", title="Storage", content="We decided ..."))
    baseline = await store.get_latest_inference("n1")
"""

from notetriage.db.models import (
    SCHEMA_VERSION,
    init_database,
    verify_schema,
)
from notetriage.db.store import (
    DatabaseStore,
    LLMResultRecord,
    Note,
    NoteInferenceRecord,
    PromotionNotificationRecord,
)

__all__ = [
    # Models
    "SCHEMA_VERSION",
    "init_database",
    "verify_schema",
    # Store
    "DatabaseStore",
    # Dataclasses
    "Note",
    "NoteInferenceRecord",
    "LLMResultRecord",
    "PromotionNotificationRecord",
]

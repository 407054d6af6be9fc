"""Database store with CRUD operations for all tables.

This module provides the DatabaseStore class that encapsulates all database
operations for notetriage. It uses aiosqlite for async access and provides
type-safe operations with dataclasses.

Usage:
    from notetriage.db.store import DatabaseStore, Note

    store = DatabaseStore("data/notetriage.db")
    await store.initialize()

    # Note operations
    await store.save_note(Note(id="n1", title="Storage", content="We decided ..."))

    # Baseline lineage
    inference_id = await store.insert_inference("n1", result, model="rule-v1")
    baseline = await store.get_latest_inference("n1")

    # Review workflow
    record = await store.approve_llm_result(result_id)
"""

from __future__ import annotations

import json
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Literal

import aiosqlite

from notetriage.classifier.taxonomy import ConfidenceDetail, InferenceResult, NoteType
from notetriage.core.errors import DatabaseError, InvalidActionError, ResultNotFoundError
from notetriage.core.logging import get_logger
from notetriage.db.models import init_database

logger = get_logger(__name__)

# Type aliases
LLMResultStatus = Literal[
    "pending",
    "auto_applied",
    "auto_applied_notified",
    "approved",
    "overridden",
    "error",
]
PromotionStatus = Literal["pending", "dismissed", "promoted"]
PromotionSource = Literal["realtime", "batch"]

# Only these states accept a human approve/override
ACTIONABLE_STATUSES: tuple[LLMResultStatus, ...] = ("pending", "auto_applied_notified")
AUTO_APPLY_STATUSES: tuple[LLMResultStatus, ...] = ("auto_applied", "auto_applied_notified")

OVERRIDE_MODEL_NAME = "user-override"
DELETED_NOTE_TITLE = "(deleted note)"

# Latest baseline row per note. Ties on created_at are broken by id.
_BASELINE_JOIN = """
    LEFT JOIN note_inferences b ON b.id = (
        SELECT x.id FROM note_inferences x
        WHERE x.note_id = n.id
        ORDER BY x.created_at DESC, x.id DESC
        LIMIT 1
    )
"""

_ANY_LLM_RESULT = """
    EXISTS (SELECT 1 FROM llm_inference_results r WHERE r.note_id = n.id)
"""

# Notes with a non-error LLM result are never candidates again: a reviewed,
# overridden or auto-applied note must not be re-sent by a scheduled batch.
_NON_ERROR_LLM_RESULT = """
    EXISTS (
        SELECT 1 FROM llm_inference_results r
        WHERE r.note_id = n.id AND r.status != 'error'
    )
"""


def _now() -> str:
    # Fixed precision keeps lexical order equal to chronological order
    return datetime.now().isoformat(timespec="microseconds")


def _parse_datetime(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None


def _load_json(value: str | None) -> dict[str, Any]:
    if not value:
        return {}
    try:
        data = json.loads(value)
    except json.JSONDecodeError:
        logger.warning("Invalid JSON column value", value=value[:100])
        return {}
    return data if isinstance(data, dict) else {}


# =============================================================================
# Records
# =============================================================================


@dataclass
class Note:
    """A note from the host application's note store."""

    id: str
    title: str = ""
    content: str = ""
    updated_at: datetime | None = None


@dataclass
class NoteInferenceRecord:
    """One row of the baseline lineage."""

    id: int
    note_id: str
    result: InferenceResult
    model: str
    created_at: datetime | None = None


@dataclass
class LLMResultRecord:
    """An LLM re-classification result and its review state."""

    id: int
    note_id: str
    result: InferenceResult
    model: str
    status: LLMResultStatus
    prompt_tokens: int = 0
    completion_tokens: int = 0
    context_truncated: bool = False
    fallback_used: bool = False
    inference_version: str | None = None
    seed: int | None = None
    resolved_at: datetime | None = None
    user_override_type: NoteType | None = None
    user_override_reason: str | None = None
    error_code: str | None = None
    error_message: str | None = None
    created_at: datetime | None = None
    # Populated by listing queries only
    note_title: str | None = None
    current_type: NoteType | None = None

    @property
    def baseline_model(self) -> str:
        """Model name recorded on baseline rows derived from this result."""
        return f"llm-{self.model}"


@dataclass
class PromotionNotificationRecord:
    """A suggestion to promote a scratch note to a stronger type."""

    id: int
    note_id: str
    trigger_type: str
    source: PromotionSource
    suggested_type: NoteType
    reason: str
    confidence: float
    status: PromotionStatus
    reason_detail: dict[str, Any] = field(default_factory=dict)
    created_at: datetime | None = None
    resolved_at: datetime | None = None
    note_title: str | None = None


class DatabaseStore:
    """Database store for all notetriage data.

    This class provides async CRUD operations for all database tables.
    It handles connection management, JSON serialization, and type conversion.

    Attributes:
        db_path: Path to the SQLite database file
        _initialized: Whether the database has been initialized
    """

    def __init__(self, db_path: str | Path):
        """Initialize the database store.

        Args:
            db_path: Path to the SQLite database file
        """
        self.db_path = Path(db_path)
        self._initialized = False

    async def initialize(self) -> None:
        """Initialize the database, creating tables if needed.

        This must be called before any other operations.
        """
        await init_database(self.db_path)
        self._initialized = True

    @asynccontextmanager
    async def _db(self) -> AsyncIterator[aiosqlite.Connection]:
        """Get a configured database connection.

        Sets all required PRAGMAs for reliability and performance:
        - busy_timeout: 10s to handle concurrent access from batch + web API
        - foreign_keys: ON to enforce referential integrity (cascade deletes)
        - synchronous: NORMAL (safe with WAL, faster writes)
        - cache_size: 64MB for better read performance
        - temp_store: MEMORY for faster temp operations

        Usage:
            async with self._db() as db:
                await db.execute(...)
        """
        async with aiosqlite.connect(self.db_path) as db:
            # Reliability PRAGMAs
            await db.execute("PRAGMA busy_timeout = 10000")
            await db.execute("PRAGMA foreign_keys = ON")

            # Performance PRAGMAs (safe with WAL mode)
            await db.execute("PRAGMA synchronous = NORMAL")
            await db.execute("PRAGMA cache_size = -64000")  # 64MB
            await db.execute("PRAGMA temp_store = MEMORY")

            db.row_factory = aiosqlite.Row
            yield db

    # =========================================================================
    # Note Operations
    # =========================================================================

    async def save_note(self, note: Note) -> None:
        """Insert or update a note.

        Args:
            note: Note to save; updated_at defaults to now
        """
        updated_at = (note.updated_at or datetime.now()).isoformat(timespec="microseconds")
        try:
            async with self._db() as db:
                await db.execute(
                    """
                    INSERT INTO notes (id, title, content, updated_at)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        title = excluded.title,
                        content = excluded.content,
                        updated_at = excluded.updated_at
                    """,
                    (note.id, note.title, note.content, updated_at),
                )
                await db.commit()

        except aiosqlite.Error as e:
            logger.error("Failed to save note", note_id=note.id, error=str(e))
            raise DatabaseError(f"Failed to save note: {e}") from e

    async def get_note(self, note_id: str) -> Note | None:
        try:
            async with self._db() as db:
                cursor = await db.execute("SELECT * FROM notes WHERE id = ?", (note_id,))
                row = await cursor.fetchone()
                return self._row_to_note(row) if row else None

        except aiosqlite.Error as e:
            logger.error("Failed to get note", note_id=note_id, error=str(e))
            raise DatabaseError(f"Failed to get note: {e}") from e

    async def delete_note(self, note_id: str) -> bool:
        """Delete a note. Inferences, LLM results and notifications cascade.

        Returns:
            True if the note existed
        """
        try:
            async with self._db() as db:
                cursor = await db.execute("DELETE FROM notes WHERE id = ?", (note_id,))
                await db.commit()
                deleted = cursor.rowcount > 0
                if deleted:
                    logger.info("Note deleted", note_id=note_id)
                return deleted

        except aiosqlite.Error as e:
            logger.error("Failed to delete note", note_id=note_id, error=str(e))
            raise DatabaseError(f"Failed to delete note: {e}") from e

    async def get_all_note_ids(self) -> list[str]:
        """Get all note IDs, most recently updated first."""
        try:
            async with self._db() as db:
                cursor = await db.execute("SELECT id FROM notes ORDER BY updated_at DESC")
                rows = await cursor.fetchall()
                return [row["id"] for row in rows]

        except aiosqlite.Error as e:
            logger.error("Failed to get note IDs", error=str(e))
            raise DatabaseError(f"Failed to get note IDs: {e}") from e

    def _row_to_note(self, row: aiosqlite.Row) -> Note:
        return Note(
            id=row["id"],
            title=row["title"] or "",
            content=row["content"] or "",
            updated_at=_parse_datetime(row["updated_at"]),
        )

    # =========================================================================
    # Baseline Lineage (note_inferences)
    # =========================================================================

    async def _insert_inference_row(
        self,
        db: aiosqlite.Connection,
        note_id: str,
        result: InferenceResult,
        model: str,
    ) -> int:
        cursor = await db.execute(
            """
            INSERT INTO note_inferences (
                note_id, type, intent, confidence, confidence_detail_json,
                decay_profile, reasoning, model, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                note_id,
                result.note_type,
                result.intent,
                result.confidence,
                json.dumps(result.confidence_detail.to_rule_dict()),
                result.decay_profile,
                result.reasoning,
                model,
                _now(),
            ),
        )
        return cursor.lastrowid or 0

    async def insert_inference(self, note_id: str, result: InferenceResult, model: str) -> int:
        """Append a baseline row for a note.

        Args:
            note_id: Note ID
            result: Classification to record
            model: Producer ('rule-v1', 'llm-<model>', 'user-override')

        Returns:
            The new row ID
        """
        try:
            async with self._db() as db:
                inference_id = await self._insert_inference_row(db, note_id, result, model)
                await db.commit()
                logger.debug(
                    "Baseline inserted",
                    note_id=note_id,
                    inference_id=inference_id,
                    note_type=result.note_type,
                    model=model,
                )
                return inference_id

        except aiosqlite.Error as e:
            logger.error("Failed to insert inference", note_id=note_id, error=str(e))
            raise DatabaseError(f"Failed to insert inference: {e}") from e

    async def get_inference_history(
        self, note_id: str, limit: int = 20
    ) -> list[NoteInferenceRecord]:
        """Get a note's baseline rows, newest first. The first row is the baseline."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    SELECT * FROM note_inferences
                    WHERE note_id = ?
                    ORDER BY created_at DESC, id DESC
                    LIMIT ?
                    """,
                    (note_id, limit),
                )
                rows = await cursor.fetchall()
                return [self._row_to_inference(row) for row in rows]

        except aiosqlite.Error as e:
            logger.error("Failed to get inference history", note_id=note_id, error=str(e))
            raise DatabaseError(f"Failed to get inference history: {e}") from e

    async def get_latest_inference(self, note_id: str) -> NoteInferenceRecord | None:
        rows = await self.get_inference_history(note_id, limit=1)
        return rows[0] if rows else None

    async def get_all_baselines(self) -> list[NoteInferenceRecord]:
        """Get the current baseline of every note that has one."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    f"""
                    SELECT b.* FROM notes n
                    {_BASELINE_JOIN}
                    WHERE b.id IS NOT NULL
                    ORDER BY n.updated_at DESC
                    """
                )
                rows = await cursor.fetchall()
                return [self._row_to_inference(row) for row in rows]

        except aiosqlite.Error as e:
            logger.error("Failed to get baselines", error=str(e))
            raise DatabaseError(f"Failed to get baselines: {e}") from e

    def _row_to_inference(self, row: aiosqlite.Row) -> NoteInferenceRecord:
        return NoteInferenceRecord(
            id=row["id"],
            note_id=row["note_id"],
            result=InferenceResult(
                note_type=row["type"],
                intent=row["intent"],
                confidence=row["confidence"],
                confidence_detail=ConfidenceDetail.from_dict(
                    _load_json(row["confidence_detail_json"])
                ),
                decay_profile=row["decay_profile"],
                reasoning=row["reasoning"] or "",
            ),
            model=row["model"],
            created_at=_parse_datetime(row["created_at"]),
        )

    # =========================================================================
    # LLM Inference Results
    # =========================================================================

    async def insert_llm_result(
        self,
        note_id: str,
        result: InferenceResult,
        model: str,
        status: LLMResultStatus,
        prompt_tokens: int = 0,
        completion_tokens: int = 0,
        context_truncated: bool = False,
        fallback_used: bool = False,
        inference_version: str | None = None,
        seed: int | None = None,
        error_code: str | None = None,
        error_message: str | None = None,
        apply_to_baseline: bool = False,
    ) -> int:
        """Store an LLM result, optionally applying it to the baseline.

        With apply_to_baseline the result row and a baseline row (model
        'llm-<model>') are written in one transaction.

        Returns:
            The new LLM result ID
        """
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    INSERT INTO llm_inference_results (
                        note_id, type, intent, confidence, confidence_detail_json,
                        decay_profile, reasoning, model, prompt_tokens, completion_tokens,
                        context_truncated, fallback_used, inference_version, seed,
                        status, error_code, error_message, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        note_id,
                        result.note_type,
                        result.intent,
                        result.confidence,
                        json.dumps(result.confidence_detail.to_llm_dict()),
                        result.decay_profile,
                        result.reasoning,
                        model,
                        prompt_tokens,
                        completion_tokens,
                        int(context_truncated),
                        int(fallback_used),
                        inference_version,
                        seed,
                        status,
                        error_code,
                        error_message,
                        _now(),
                    ),
                )
                result_id = cursor.lastrowid or 0

                if apply_to_baseline:
                    await self._insert_inference_row(db, note_id, result, f"llm-{model}")

                await db.commit()

                logger.debug(
                    "LLM result inserted",
                    result_id=result_id,
                    note_id=note_id,
                    status=status,
                    applied=apply_to_baseline,
                )
                return result_id

        except aiosqlite.Error as e:
            logger.error("Failed to insert LLM result", note_id=note_id, error=str(e))
            raise DatabaseError(f"Failed to insert LLM result: {e}") from e

    async def get_llm_result(self, result_id: int) -> LLMResultRecord | None:
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT * FROM llm_inference_results WHERE id = ?", (result_id,)
                )
                row = await cursor.fetchone()
                return self._row_to_llm_result(row) if row else None

        except aiosqlite.Error as e:
            logger.error("Failed to get LLM result", result_id=result_id, error=str(e))
            raise DatabaseError(f"Failed to get LLM result: {e}") from e

    async def get_llm_results_for_note(self, note_id: str) -> list[LLMResultRecord]:
        """Get all LLM results for a note, newest first."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    SELECT * FROM llm_inference_results
                    WHERE note_id = ?
                    ORDER BY created_at DESC, id DESC
                    """,
                    (note_id,),
                )
                rows = await cursor.fetchall()
                return [self._row_to_llm_result(row) for row in rows]

        except aiosqlite.Error as e:
            logger.error("Failed to get LLM results for note", note_id=note_id, error=str(e))
            raise DatabaseError(f"Failed to get LLM results for note: {e}") from e

    async def get_llm_results_by_status(
        self,
        status: LLMResultStatus,
        limit: int = 20,
        offset: int = 0,
        oldest_first: bool = False,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> list[LLMResultRecord]:
        """List LLM results in a status with note title and current baseline type.

        Args:
            status: Status to list
            limit: Page size
            offset: Page offset
            oldest_first: Order by created_at ascending instead of descending
            since: Optional inclusive lower bound on created_at
            until: Optional exclusive upper bound on created_at
        """
        direction = "ASC" if oldest_first else "DESC"
        clauses = ["r.status = ?"]
        params: list[Any] = [status]
        if since is not None:
            clauses.append("r.created_at >= ?")
            params.append(since.isoformat(timespec="microseconds"))
        if until is not None:
            clauses.append("r.created_at < ?")
            params.append(until.isoformat(timespec="microseconds"))
        params.extend([limit, offset])

        try:
            async with self._db() as db:
                cursor = await db.execute(
                    f"""
                    SELECT r.*, n.title AS note_title, b.type AS current_type
                    FROM llm_inference_results r
                    LEFT JOIN notes n ON n.id = r.note_id
                    {_BASELINE_JOIN}
                    WHERE {" AND ".join(clauses)}
                    ORDER BY r.created_at {direction}, r.id {direction}
                    LIMIT ? OFFSET ?
                    """,
                    params,
                )
                rows = await cursor.fetchall()
                return [self._row_to_llm_result(row) for row in rows]

        except aiosqlite.Error as e:
            logger.error("Failed to list LLM results", status=status, error=str(e))
            raise DatabaseError(f"Failed to list LLM results: {e}") from e

    async def count_llm_results_by_status(self, status: LLMResultStatus) -> int:
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT COUNT(*) FROM llm_inference_results WHERE status = ?", (status,)
                )
                row = await cursor.fetchone()
                return row[0] if row else 0

        except aiosqlite.Error as e:
            logger.error("Failed to count LLM results", status=status, error=str(e))
            raise DatabaseError(f"Failed to count LLM results: {e}") from e

    async def get_llm_status_counts(self, since: datetime, until: datetime) -> dict[str, int]:
        """Count LLM results per status created in [since, until)."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    SELECT status, COUNT(*) AS n
                    FROM llm_inference_results
                    WHERE created_at >= ? AND created_at < ?
                    GROUP BY status
                    """,
                    (
                        since.isoformat(timespec="microseconds"),
                        until.isoformat(timespec="microseconds"),
                    ),
                )
                rows = await cursor.fetchall()
                return {row["status"]: row["n"] for row in rows}

        except aiosqlite.Error as e:
            logger.error("Failed to count LLM results by status", error=str(e))
            raise DatabaseError(f"Failed to count LLM results by status: {e}") from e

    async def _get_actionable_in_txn(
        self, db: aiosqlite.Connection, result_id: int, action: str
    ) -> aiosqlite.Row:
        cursor = await db.execute(
            "SELECT * FROM llm_inference_results WHERE id = ?", (result_id,)
        )
        row = await cursor.fetchone()
        if row is None:
            raise ResultNotFoundError(f"LLM result {result_id} not found", target_id=result_id)
        if row["status"] not in ACTIONABLE_STATUSES:
            raise InvalidActionError(
                f"Cannot {action} LLM result {result_id} in status '{row['status']}'",
                target_id=result_id,
            )
        return row

    async def approve_llm_result(self, result_id: int) -> LLMResultRecord:
        """Approve a pending or auto_applied_notified result atomically.

        A pending result is also applied to the baseline (model 'llm-<model>');
        an auto_applied_notified result is already there.

        Returns:
            The record as it was before approval

        Raises:
            ResultNotFoundError: If no such result exists
            InvalidActionError: If the result is not in an actionable state
        """
        try:
            async with self._db() as db:
                await db.execute("BEGIN IMMEDIATE")
                try:
                    row = await self._get_actionable_in_txn(db, result_id, "approve")
                    record = self._row_to_llm_result(row)

                    cursor = await db.execute(
                        """
                        UPDATE llm_inference_results
                        SET status = 'approved', resolved_at = ?
                        WHERE id = ? AND status IN ('pending', 'auto_applied_notified')
                        """,
                        (_now(), result_id),
                    )
                    if cursor.rowcount == 0:
                        raise InvalidActionError(
                            f"LLM result {result_id} was resolved concurrently",
                            target_id=result_id,
                        )

                    if record.status == "pending":
                        await self._insert_inference_row(
                            db, record.note_id, record.result, record.baseline_model
                        )

                    await db.commit()
                except BaseException:
                    await db.rollback()
                    raise

                logger.info(
                    "LLM result approved",
                    result_id=result_id,
                    note_id=record.note_id,
                    previous_status=record.status,
                )
                return record

        except aiosqlite.Error as e:
            logger.error("Failed to approve LLM result", result_id=result_id, error=str(e))
            raise DatabaseError(f"Failed to approve LLM result: {e}") from e

    async def override_llm_result(
        self, result_id: int, note_type: NoteType, reason: str | None = None
    ) -> LLMResultRecord:
        """Override a pending or auto_applied_notified result atomically.

        For an auto_applied_notified result the most recent baseline row of
        the note (the auto-applied one) is deleted first. A baseline row
        with the user's type, confidence 1.0 and model 'user-override' is
        then inserted.

        Returns:
            The record as it was before the override

        Raises:
            ResultNotFoundError: If no such result exists
            InvalidActionError: If the result is not in an actionable state
        """
        try:
            async with self._db() as db:
                await db.execute("BEGIN IMMEDIATE")
                try:
                    row = await self._get_actionable_in_txn(db, result_id, "override")
                    record = self._row_to_llm_result(row)

                    cursor = await db.execute(
                        """
                        UPDATE llm_inference_results
                        SET status = 'overridden',
                            resolved_at = ?,
                            user_override_type = ?,
                            user_override_reason = ?
                        WHERE id = ? AND status IN ('pending', 'auto_applied_notified')
                        """,
                        (_now(), note_type, reason, result_id),
                    )
                    if cursor.rowcount == 0:
                        raise InvalidActionError(
                            f"LLM result {result_id} was resolved concurrently",
                            target_id=result_id,
                        )

                    if record.status == "auto_applied_notified":
                        await db.execute(
                            """
                            DELETE FROM note_inferences WHERE id = (
                                SELECT id FROM note_inferences
                                WHERE note_id = ?
                                ORDER BY created_at DESC, id DESC
                                LIMIT 1
                            )
                            """,
                            (record.note_id,),
                        )

                    override = InferenceResult(
                        note_type=note_type,
                        intent=record.result.intent,
                        confidence=1.0,
                        confidence_detail=record.result.confidence_detail,
                        decay_profile=record.result.decay_profile,
                        reasoning=f"User override: {reason}" if reason else "User override",
                    )
                    await self._insert_inference_row(
                        db, record.note_id, override, OVERRIDE_MODEL_NAME
                    )

                    await db.commit()
                except BaseException:
                    await db.rollback()
                    raise

                logger.info(
                    "LLM result overridden",
                    result_id=result_id,
                    note_id=record.note_id,
                    previous_status=record.status,
                    override_type=note_type,
                )
                return record

        except aiosqlite.Error as e:
            logger.error("Failed to override LLM result", result_id=result_id, error=str(e))
            raise DatabaseError(f"Failed to override LLM result: {e}") from e

    async def get_few_shot_candidates(
        self, note_type: NoteType, min_confidence: float, limit: int
    ) -> list[dict[str, Any]]:
        """Get recent approved results of a type joined with their note.

        Returns:
            List of dicts with note_type, title, content and reasoning
        """
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    SELECT r.type AS note_type, r.reasoning, n.title, n.content
                    FROM llm_inference_results r
                    JOIN notes n ON n.id = r.note_id
                    WHERE r.type = ?
                    AND r.status = 'approved'
                    AND r.confidence >= ?
                    ORDER BY r.resolved_at DESC, r.id DESC
                    LIMIT ?
                    """,
                    (note_type, min_confidence, limit),
                )
                rows = await cursor.fetchall()
                return [dict(row) for row in rows]

        except aiosqlite.Error as e:
            logger.error("Failed to get few-shot candidates", note_type=note_type, error=str(e))
            raise DatabaseError(f"Failed to get few-shot candidates: {e}") from e

    def _row_to_llm_result(self, row: aiosqlite.Row) -> LLMResultRecord:
        keys = row.keys()
        return LLMResultRecord(
            id=row["id"],
            note_id=row["note_id"],
            result=InferenceResult(
                note_type=row["type"],
                intent=row["intent"],
                confidence=row["confidence"],
                confidence_detail=ConfidenceDetail.from_dict(
                    _load_json(row["confidence_detail_json"])
                ),
                decay_profile=row["decay_profile"],
                reasoning=row["reasoning"] or "",
            ),
            model=row["model"],
            status=row["status"],
            prompt_tokens=row["prompt_tokens"] or 0,
            completion_tokens=row["completion_tokens"] or 0,
            context_truncated=bool(row["context_truncated"]),
            fallback_used=bool(row["fallback_used"]),
            inference_version=row["inference_version"],
            seed=row["seed"],
            resolved_at=_parse_datetime(row["resolved_at"]),
            user_override_type=row["user_override_type"],
            user_override_reason=row["user_override_reason"],
            error_code=row["error_code"],
            error_message=row["error_message"],
            created_at=_parse_datetime(row["created_at"]),
            note_title=row["note_title"] if "note_title" in keys else None,
            current_type=row["current_type"] if "current_type" in keys else None,
        )

    # =========================================================================
    # Candidate Pools
    # =========================================================================

    async def _fetch_candidate_rows(self, where: str, order_by: str, params: tuple) -> list[dict]:
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    f"""
                    SELECT n.id AS note_id, n.title, n.content,
                           b.type AS current_type, b.confidence AS current_confidence
                    FROM notes n
                    {_BASELINE_JOIN}
                    WHERE {where}
                    ORDER BY {order_by}
                    LIMIT ?
                    """,
                    params,
                )
                rows = await cursor.fetchall()
                return [dict(row) for row in rows]

        except aiosqlite.Error as e:
            logger.error("Failed to query candidate pool", error=str(e))
            raise DatabaseError(f"Failed to query candidate pool: {e}") from e

    async def get_notes_without_llm_result(self, limit: int) -> list[dict[str, Any]]:
        """Notes the LLM has never been asked about, newest first."""
        return await self._fetch_candidate_rows(
            f"NOT {_ANY_LLM_RESULT}",
            "n.updated_at DESC, n.id",
            (limit,),
        )

    async def get_low_confidence_notes(self, threshold: float, limit: int) -> list[dict[str, Any]]:
        """Unhandled notes whose baseline confidence is below threshold, lowest first.

        Only notes with no LLM result or only error results qualify.
        """
        return await self._fetch_candidate_rows(
            f"b.confidence < ? AND NOT {_NON_ERROR_LLM_RESULT}",
            "b.confidence ASC, n.updated_at DESC",
            (threshold, limit),
        )

    async def get_scratch_notes(self, limit: int) -> list[dict[str, Any]]:
        """Unhandled notes whose baseline type is scratch, newest first."""
        return await self._fetch_candidate_rows(
            f"b.type = 'scratch' AND NOT {_NON_ERROR_LLM_RESULT}",
            "n.updated_at DESC, n.id",
            (limit,),
        )

    async def get_notes_with_baseline(self, note_ids: list[str]) -> list[dict[str, Any]]:
        """Candidate rows for explicit note IDs, in the given order. Unknown IDs are skipped."""
        if not note_ids:
            return []
        placeholders = ",".join("?" * len(note_ids))
        rows = await self._fetch_candidate_rows(
            f"n.id IN ({placeholders})",
            "n.id",
            (*note_ids, len(note_ids)),
        )
        by_id = {row["note_id"]: row for row in rows}
        return [by_id[note_id] for note_id in dict.fromkeys(note_ids) if note_id in by_id]

    async def count_candidates(self, threshold: float) -> int:
        """Count notes that belong to at least one candidate pool."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    f"""
                    SELECT COUNT(*) FROM notes n
                    {_BASELINE_JOIN}
                    WHERE NOT {_ANY_LLM_RESULT}
                    OR (
                        (b.confidence < ? OR b.type = 'scratch')
                        AND NOT {_NON_ERROR_LLM_RESULT}
                    )
                    """,
                    (threshold,),
                )
                row = await cursor.fetchone()
                return row[0] if row else 0

        except aiosqlite.Error as e:
            logger.error("Failed to count candidates", error=str(e))
            raise DatabaseError(f"Failed to count candidates: {e}") from e

    # =========================================================================
    # Promotion Notifications
    # =========================================================================

    async def create_promotion_notification(
        self,
        note_id: str,
        trigger_type: str,
        source: PromotionSource,
        suggested_type: NoteType,
        reason: str,
        reason_detail: dict[str, Any],
        confidence: float,
    ) -> int | None:
        """Create a pending notification unless one is already pending.

        The existence check and the insert are a single statement, so two
        concurrent detections for the same (note, trigger) create one row.

        Returns:
            The new notification ID, or None if a pending one already exists
        """
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    INSERT INTO promotion_notifications (
                        note_id, trigger_type, source, suggested_type, reason,
                        reason_detail_json, confidence, status, created_at
                    )
                    SELECT ?, ?, ?, ?, ?, ?, ?, 'pending', ?
                    WHERE NOT EXISTS (
                        SELECT 1 FROM promotion_notifications
                        WHERE note_id = ? AND trigger_type = ? AND status = 'pending'
                    )
                    """,
                    (
                        note_id,
                        trigger_type,
                        source,
                        suggested_type,
                        reason,
                        json.dumps(reason_detail),
                        confidence,
                        _now(),
                        note_id,
                        trigger_type,
                    ),
                )
                await db.commit()
                if cursor.rowcount == 0:
                    return None
                return cursor.lastrowid

        except aiosqlite.Error as e:
            logger.error("Failed to create promotion notification", note_id=note_id, error=str(e))
            raise DatabaseError(f"Failed to create promotion notification: {e}") from e

    async def get_promotion_notification(
        self, notification_id: int
    ) -> PromotionNotificationRecord | None:
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT * FROM promotion_notifications WHERE id = ?", (notification_id,)
                )
                row = await cursor.fetchone()
                return self._row_to_promotion(row) if row else None

        except aiosqlite.Error as e:
            logger.error(
                "Failed to get promotion notification",
                notification_id=notification_id,
                error=str(e),
            )
            raise DatabaseError(f"Failed to get promotion notification: {e}") from e

    async def get_pending_promotions(self, limit: int = 20) -> list[PromotionNotificationRecord]:
        """Pending notifications with note titles, newest first."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    SELECT p.*, n.title AS note_title
                    FROM promotion_notifications p
                    LEFT JOIN notes n ON n.id = p.note_id
                    WHERE p.status = 'pending'
                    ORDER BY p.created_at DESC, p.id DESC
                    LIMIT ?
                    """,
                    (limit,),
                )
                rows = await cursor.fetchall()
                return [self._row_to_promotion(row) for row in rows]

        except aiosqlite.Error as e:
            logger.error("Failed to get pending promotions", error=str(e))
            raise DatabaseError(f"Failed to get pending promotions: {e}") from e

    async def resolve_promotion_notification(
        self, notification_id: int, status: Literal["dismissed", "promoted"]
    ) -> PromotionNotificationRecord | None:
        """Move a pending notification to dismissed/promoted.

        Returns:
            The updated record, or None if it was not pending (or not found)
        """
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    UPDATE promotion_notifications
                    SET status = ?, resolved_at = ?
                    WHERE id = ? AND status = 'pending'
                    RETURNING *
                    """,
                    (status, _now(), notification_id),
                )
                row = await cursor.fetchone()
                await db.commit()
                return self._row_to_promotion(row) if row else None

        except aiosqlite.Error as e:
            logger.error(
                "Failed to resolve promotion notification",
                notification_id=notification_id,
                error=str(e),
            )
            raise DatabaseError(f"Failed to resolve promotion notification: {e}") from e

    async def dismiss_pending_promotions(self, note_id: str) -> int:
        """Dismiss every pending notification for a note.

        Returns:
            Number of notifications dismissed
        """
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    UPDATE promotion_notifications
                    SET status = 'dismissed', resolved_at = ?
                    WHERE note_id = ? AND status = 'pending'
                    """,
                    (_now(), note_id),
                )
                await db.commit()
                return cursor.rowcount

        except aiosqlite.Error as e:
            logger.error("Failed to dismiss promotions", note_id=note_id, error=str(e))
            raise DatabaseError(f"Failed to dismiss promotions: {e}") from e

    def _row_to_promotion(self, row: aiosqlite.Row) -> PromotionNotificationRecord:
        return PromotionNotificationRecord(
            id=row["id"],
            note_id=row["note_id"],
            trigger_type=row["trigger_type"],
            source=row["source"],
            suggested_type=row["suggested_type"],
            reason=row["reason"] or "",
            reason_detail=_load_json(row["reason_detail_json"]),
            confidence=row["confidence"] or 0.0,
            status=row["status"],
            created_at=_parse_datetime(row["created_at"]),
            resolved_at=_parse_datetime(row["resolved_at"]),
            note_title=row["note_title"] if "note_title" in row.keys() else None,
        )

    # =========================================================================
    # Agent State Operations
    # =========================================================================

    async def get_state(self, key: str) -> str | None:
        """Get an agent state value.

        Args:
            key: State key

        Returns:
            State value or None if not found
        """
        try:
            async with self._db() as db:
                cursor = await db.execute("SELECT value FROM agent_state WHERE key = ?", (key,))
                row = await cursor.fetchone()
                return row["value"] if row else None

        except aiosqlite.Error as e:
            logger.error("Failed to get state", key=key, error=str(e))
            raise DatabaseError(f"Failed to get state: {e}") from e

    async def set_state(self, key: str, value: str) -> None:
        """Set an agent state value.

        Args:
            key: State key
            value: State value
        """
        try:
            async with self._db() as db:
                await db.execute(
                    """
                    INSERT INTO agent_state (key, value, updated_at)
                    VALUES (?, ?, ?)
                    ON CONFLICT(key) DO UPDATE SET
                        value = excluded.value,
                        updated_at = excluded.updated_at
                    """,
                    (key, value, datetime.now().isoformat()),
                )
                await db.commit()

        except aiosqlite.Error as e:
            logger.error("Failed to set state", key=key, error=str(e))
            raise DatabaseError(f"Failed to set state: {e}") from e

# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""SQLite-backed persistence layer for the CRM sync service.

This module provides the Persistence class that handles all database
operations for the sync pipeline, including:

- Submission storage (insert, find, patch, retry counter, listing)
- The append-only audit log
- Cached CRM field metadata per module
- Per-form configuration used by the field formatter

The persistence layer uses aiosqlite for async SQLite operations,
supporting both file-based databases and in-memory databases for testing.

Example:
    Basic usage of the persistence layer::

        persistence = Persistence("/data/crm_sync.db")
        await persistence.init_db()

        await persistence.insert_submission(
            Submission(id="sub-1", form_name="contact", payload={"email": "a@b.c"})
        )
        await persistence.update("sub-1", {"last_error": "timeout"})
        await persistence.increment_retry_count("sub-1")

Attributes:
    SUBMISSION_COLUMNS: Columns a patch passed to ``update`` may touch.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import aiosqlite

from .models import (
    AuditLogEntry,
    FieldMetadata,
    FormConfiguration,
    Submission,
    SyncStatus,
)

SUBMISSION_COLUMNS = frozenset(
    {
        "form_name",
        "target_module",
        "payload",
        "retry_count",
        "last_error",
        "last_retry_at",
        "next_retry_at",
        "last_sync_at",
        "sync_status",
        "processing_status",
        "external_id",
        "error_category",
    }
)


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _to_db(value: Any) -> Any:
    """Convert a Python value into something sqlite3 can bind."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    if isinstance(value, bool):
        return 1 if value else 0
    return value


def _rows_to_dicts(rows: Iterable[Tuple[Any, ...]], columns: Sequence[str]) -> List[Dict[str, Any]]:
    return [dict(zip(columns, row)) for row in rows]


class Persistence:
    """Async SQLite persistence layer for submission sync state.

    Serves as the submission repository, the audit sink, the field metadata
    store and the form configuration store. Each operation opens and closes
    its own connection, making it safe for concurrent use.

    Attributes:
        db_path: Path to the SQLite database file, or ":memory:" for
            an in-memory database.
    """

    def __init__(self, db_path: str = "/data/crm_sync.db"):
        """Initialize the persistence layer with a database path.

        Args:
            db_path: Path to the SQLite database file. Use ":memory:" for
                an in-memory database suitable for testing.
        """
        self.db_path = db_path or ":memory:"

    async def init_db(self) -> None:
        """Initialize the database schema with all required tables.

        This method is idempotent and safely handles schema migrations
        by adding new columns to existing tables when needed.
        """
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS submissions (
                    id TEXT PRIMARY KEY,
                    form_name TEXT NOT NULL,
                    target_module TEXT NOT NULL DEFAULT 'Leads',
                    payload TEXT NOT NULL,
                    retry_count INTEGER NOT NULL DEFAULT 0,
                    last_error TEXT,
                    last_retry_at TEXT,
                    last_sync_at TEXT,
                    sync_status TEXT NOT NULL DEFAULT 'pending',
                    processing_status TEXT NOT NULL DEFAULT 'pending',
                    external_id TEXT,
                    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
                    updated_at TEXT DEFAULT CURRENT_TIMESTAMP
                )
                """
            )
            # Migrations for existing databases
            try:
                await db.execute("ALTER TABLE submissions ADD COLUMN next_retry_at TEXT")
            except aiosqlite.OperationalError:
                pass
            try:
                await db.execute("ALTER TABLE submissions ADD COLUMN error_category TEXT")
            except aiosqlite.OperationalError:
                pass

            await db.execute(
                "CREATE INDEX IF NOT EXISTS idx_submissions_sync ON submissions(sync_status)"
            )

            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS audit_log (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    submission_id TEXT NOT NULL,
                    operation TEXT NOT NULL,
                    status TEXT NOT NULL,
                    details TEXT,
                    error_message TEXT,
                    duration_ms INTEGER,
                    retry_attempt INTEGER,
                    error_classification TEXT,
                    created_at TEXT NOT NULL
                )
                """
            )
            await db.execute(
                "CREATE INDEX IF NOT EXISTS idx_audit_submission ON audit_log(submission_id)"
            )

            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS field_metadata (
                    module TEXT NOT NULL,
                    api_name TEXT NOT NULL,
                    label TEXT,
                    data_type TEXT,
                    max_length INTEGER,
                    is_custom_field INTEGER DEFAULT 0,
                    synced_at TEXT,
                    PRIMARY KEY (module, api_name)
                )
                """
            )

            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS form_configurations (
                    form_name TEXT PRIMARY KEY,
                    target_module TEXT NOT NULL DEFAULT 'Leads',
                    lead_source_tag TEXT,
                    submit_fields TEXT,
                    field_mappings TEXT,
                    strict_mapping INTEGER DEFAULT 0,
                    active INTEGER DEFAULT 1,
                    updated_at TEXT DEFAULT CURRENT_TIMESTAMP
                )
                """
            )

            await db.commit()

    # Submissions --------------------------------------------------------------
    @staticmethod
    def _decode_submission(data: Dict[str, Any]) -> Submission:
        payload = data.get("payload")
        if payload is not None:
            try:
                data["payload"] = json.loads(payload)
            except json.JSONDecodeError:
                data["payload"] = {"raw_payload": payload}
        return Submission.model_validate(data)

    async def insert_submission(self, submission: Submission) -> None:
        """Store a new submission. Existing ids are left untouched."""
        now = _utc_now_iso()
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT OR IGNORE INTO submissions
                (id, form_name, target_module, payload, retry_count, last_error,
                 sync_status, processing_status, external_id, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    submission.id,
                    submission.form_name,
                    submission.target_module,
                    json.dumps(submission.payload),
                    submission.retry_count,
                    submission.last_error,
                    submission.sync_status.value,
                    submission.processing_status.value,
                    submission.external_id,
                    now,
                    now,
                ),
            )
            await db.commit()

    async def find(self, submission_id: str) -> Optional[Submission]:
        """Fetch a submission by id, or None if it does not exist."""
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute("SELECT * FROM submissions WHERE id=?", (submission_id,)) as cur:
                row = await cur.fetchone()
                if not row:
                    return None
                cols = [c[0] for c in cur.description]
        return self._decode_submission(dict(zip(cols, row)))

    async def update(self, submission_id: str, patch: Dict[str, Any]) -> bool:
        """Apply a partial update to a submission.

        Unknown keys are ignored. Setting ``external_id`` also marks the
        submission synced so the two never disagree.

        Returns:
            True if the submission was found and updated, False otherwise.
        """
        values_by_column = {key: value for key, value in patch.items() if key in SUBMISSION_COLUMNS}
        if values_by_column.get("external_id"):
            values_by_column["sync_status"] = SyncStatus.SYNCED
        if not values_by_column:
            return False

        set_parts = [f"{column} = ?" for column in values_by_column]
        values = [_to_db(value) for value in values_by_column.values()]
        set_parts.append("updated_at = ?")
        values.append(_utc_now_iso())
        values.append(submission_id)

        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                f"UPDATE submissions SET {', '.join(set_parts)} WHERE id = ?",
                tuple(values),
            )
            await db.commit()
            return cursor.rowcount > 0

    async def increment_retry_count(self, submission_id: str) -> int:
        """Add one to the submission's retry counter.

        Returns:
            The new retry count, or 0 if the submission does not exist.
        """
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                "UPDATE submissions SET retry_count = retry_count + 1, updated_at = ? WHERE id = ?",
                (_utc_now_iso(), submission_id),
            )
            await db.commit()
            async with db.execute("SELECT retry_count FROM submissions WHERE id=?", (submission_id,)) as cur:
                row = await cur.fetchone()
        return int(row[0]) if row else 0

    async def list_submissions(
        self,
        *,
        sync_status: Optional[str] = None,
        processing_status: Optional[str] = None,
        form_name: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Submission]:
        """Return submissions matching the given filters, oldest first."""
        clauses = []
        params: List[Any] = []
        if sync_status:
            clauses.append("sync_status = ?")
            params.append(_to_db(sync_status))
        if processing_status:
            clauses.append("processing_status = ?")
            params.append(_to_db(processing_status))
        if form_name:
            clauses.append("form_name = ?")
            params.append(form_name)
        query = "SELECT * FROM submissions"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY created_at, id"
        if limit:
            query += " LIMIT ?"
            params.append(int(limit))
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(query, tuple(params)) as cur:
                rows = await cur.fetchall()
                cols = [c[0] for c in cur.description]
        return [self._decode_submission(data) for data in _rows_to_dicts(rows, cols)]

    # Audit log ----------------------------------------------------------------
    async def append(self, entry: AuditLogEntry) -> int:
        """Append an audit entry and return its row id."""
        created_at = entry.created_at.isoformat() if entry.created_at else _utc_now_iso()
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                """
                INSERT INTO audit_log
                (submission_id, operation, status, details, error_message, duration_ms,
                 retry_attempt, error_classification, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    entry.submission_id,
                    entry.operation.value,
                    entry.status.value,
                    json.dumps(entry.details, default=str),
                    entry.error_message,
                    entry.duration_ms,
                    entry.retry_attempt,
                    entry.error_classification.value if entry.error_classification else None,
                    created_at,
                ),
            )
            await db.commit()
            return int(cursor.lastrowid)

    async def list_audit(self, submission_id: str) -> List[AuditLogEntry]:
        """Return the audit trail of a submission in creation order."""
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                "SELECT * FROM audit_log WHERE submission_id = ? ORDER BY id",
                (submission_id,),
            ) as cur:
                rows = await cur.fetchall()
                cols = [c[0] for c in cur.description]
        entries = []
        for data in _rows_to_dicts(rows, cols):
            data["details"] = json.loads(data["details"]) if data.get("details") else {}
            entries.append(AuditLogEntry.model_validate(data))
        return entries

    # Field metadata -----------------------------------------------------------
    async def replace_field_metadata(self, module: str, fields: Sequence[FieldMetadata]) -> int:
        """Replace the cached field metadata of ``module``."""
        now = _utc_now_iso()
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("DELETE FROM field_metadata WHERE module = ?", (module,))
            await db.executemany(
                """
                INSERT INTO field_metadata
                (module, api_name, label, data_type, max_length, is_custom_field, synced_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        module,
                        field.api_name,
                        field.label,
                        field.data_type,
                        field.max_length,
                        1 if field.is_custom_field else 0,
                        now,
                    )
                    for field in fields
                ],
            )
            await db.commit()
        return len(fields)

    async def get_field_metadata(self, module: str) -> List[FieldMetadata]:
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                """
                SELECT api_name, label, data_type, max_length, is_custom_field
                FROM field_metadata WHERE module = ? ORDER BY api_name
                """,
                (module,),
            ) as cur:
                rows = await cur.fetchall()
                cols = [c[0] for c in cur.description]
        result = []
        for data in _rows_to_dicts(rows, cols):
            data["label"] = data.get("label") or ""
            data["is_custom_field"] = bool(data.get("is_custom_field"))
            result.append(FieldMetadata.model_validate(data))
        return result

    # Form configurations ------------------------------------------------------
    async def upsert_form_configuration(self, config: FormConfiguration) -> None:
        """Insert or replace the configuration of one form."""
        submit_fields = {
            name: field.model_dump(mode="json", exclude_none=True) for name, field in config.submit_fields.items()
        }
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT OR REPLACE INTO form_configurations
                (form_name, target_module, lead_source_tag, submit_fields, field_mappings,
                 strict_mapping, active, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    config.form_name,
                    config.target_module,
                    config.lead_source_tag,
                    json.dumps(submit_fields),
                    json.dumps(config.field_mappings),
                    1 if config.strict_mapping else 0,
                    1 if config.active else 0,
                    _utc_now_iso(),
                ),
            )
            await db.commit()

    @staticmethod
    def _decode_form_configuration(data: Dict[str, Any]) -> FormConfiguration:
        data.pop("updated_at", None)
        for field in ("submit_fields", "field_mappings"):
            data[field] = json.loads(data[field]) if data.get(field) else {}
        data["strict_mapping"] = bool(data.get("strict_mapping"))
        data["active"] = bool(data.get("active", 1))
        return FormConfiguration.model_validate(data)

    async def get_form_configuration(self, form_name: str) -> Optional[FormConfiguration]:
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                "SELECT * FROM form_configurations WHERE form_name = ?", (form_name,)
            ) as cur:
                row = await cur.fetchone()
                if not row:
                    return None
                cols = [c[0] for c in cur.description]
        return self._decode_form_configuration(dict(zip(cols, row)))

    async def list_form_configurations(self, active_only: bool = False) -> List[FormConfiguration]:
        query = "SELECT * FROM form_configurations"
        if active_only:
            query += " WHERE active = 1"
        query += " ORDER BY form_name"
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(query) as cur:
                rows = await cur.fetchall()
                cols = [c[0] for c in cur.description]
        return [self._decode_form_configuration(data) for data in _rows_to_dicts(rows, cols)]

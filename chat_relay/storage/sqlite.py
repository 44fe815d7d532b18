"""SQLiteStore: primary storage backend using stdlib sqlite3."""

from __future__ import annotations

import json
import sqlite3
import threading
import time
import uuid
from pathlib import Path

from ..config import parse_client_config
from ..types import CallerMetadata, ClientConfig, TranscriptRecord
from .base import CONFIG_BACKUP_PREFIX, CONFIG_BACKUP_TTL_SECONDS, CONFIG_KEY, RelayStore

SCHEMA_SQL = """\
CREATE TABLE IF NOT EXISTS kv (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    expires_at INTEGER
);

CREATE TABLE IF NOT EXISTS transcripts (
    id TEXT PRIMARY KEY,
    question TEXT NOT NULL DEFAULT '',
    answer TEXT NOT NULL DEFAULT '',
    metadata_json TEXT NOT NULL DEFAULT '{}',
    finish_reason TEXT,
    created_at INTEGER NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_transcripts_created_at ON transcripts(created_at);
"""


def _row_to_transcript(row: sqlite3.Row) -> TranscriptRecord:
    return TranscriptRecord(
        id=row["id"],
        question=row["question"],
        answer=row["answer"],
        metadata=CallerMetadata.from_dict(json.loads(row["metadata_json"])),
        created_at=row["created_at"],
        finish_reason=row["finish_reason"],
    )


class SQLiteStore(RelayStore):
    """SQLite-backed key/value config storage plus a transcript table."""

    def __init__(self, db_path: str | Path) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.Lock()
        self._ensure_schema()

    def _get_conn(self) -> sqlite3.Connection:
        if self._conn is None:
            self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode=WAL")
        return self._conn

    def _ensure_schema(self) -> None:
        conn = self._get_conn()
        conn.executescript(SCHEMA_SQL)
        conn.commit()

    def _kv_get(self, key: str) -> str | None:
        conn = self._get_conn()
        row = conn.execute(
            "SELECT value, expires_at FROM kv WHERE key = ?", (key,),
        ).fetchone()
        if row is None:
            return None
        if row["expires_at"] is not None and row["expires_at"] <= int(time.time()):
            return None
        return row["value"]

    def _kv_put(self, key: str, value: str, expires_at: int | None = None) -> None:
        with self._lock:
            conn = self._get_conn()
            conn.execute(
                "INSERT OR REPLACE INTO kv (key, value, expires_at) VALUES (?, ?, ?)",
                (key, value, expires_at),
            )
            conn.commit()

    def get_client_config(self) -> ClientConfig | None:
        raw = self._kv_get(CONFIG_KEY)
        if raw is None:
            return None
        return parse_client_config(json.loads(raw))

    def put_client_config(self, config: ClientConfig) -> None:
        self._kv_put(CONFIG_KEY, json.dumps(config.to_dict(), ensure_ascii=False))

    def backup_client_config(
        self, config: ClientConfig, *, ttl_seconds: int = CONFIG_BACKUP_TTL_SECONDS,
    ) -> str:
        now_ms = int(time.time() * 1000)
        key = f"{CONFIG_BACKUP_PREFIX}{now_ms}-{uuid.uuid4().hex[:8]}"
        self._kv_put(
            key,
            json.dumps(config.to_dict(), ensure_ascii=False),
            expires_at=now_ms // 1000 + ttl_seconds,
        )
        return key

    def store_transcript(self, record: TranscriptRecord) -> str:
        with self._lock:
            conn = self._get_conn()
            conn.execute(
                """INSERT OR REPLACE INTO transcripts
                   (id, question, answer, metadata_json, finish_reason, created_at)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (
                    record.id,
                    record.question,
                    record.answer,
                    json.dumps(record.metadata.to_dict(), ensure_ascii=False),
                    record.finish_reason,
                    record.created_at,
                ),
            )
            conn.commit()
        return record.id

    def get_transcript(self, transcript_id: str) -> TranscriptRecord | None:
        conn = self._get_conn()
        row = conn.execute(
            "SELECT * FROM transcripts WHERE id = ?", (transcript_id,),
        ).fetchone()
        return _row_to_transcript(row) if row else None

    def list_transcripts(self, limit: int = 20) -> list[TranscriptRecord]:
        conn = self._get_conn()
        rows = conn.execute(
            "SELECT * FROM transcripts ORDER BY created_at DESC, id DESC LIMIT ?",
            (limit,),
        ).fetchall()
        return [_row_to_transcript(r) for r in rows]

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None

"""FilesystemStore: YAML config documents + one JSON file per transcript."""

from __future__ import annotations

import json
import time
import uuid
from pathlib import Path

import yaml

from ..config import parse_client_config
from ..types import ClientConfig, TranscriptRecord
from .base import CONFIG_BACKUP_PREFIX, CONFIG_BACKUP_TTL_SECONDS, CONFIG_KEY, RelayStore


class FilesystemStore(RelayStore):
    """Plain files under *root*; readable and editable by hand."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)
        self.config_dir = self.root / "config"
        self.transcript_dir = self.root / "transcripts"
        self.config_dir.mkdir(parents=True, exist_ok=True)
        self.transcript_dir.mkdir(parents=True, exist_ok=True)

    def _config_path(self, key: str) -> Path:
        return self.config_dir / f"{key}.yaml"

    def _transcript_path(self, transcript_id: str) -> Path:
        return self.transcript_dir / f"{transcript_id}.json"

    @staticmethod
    def _write_atomic(path: Path, text: str) -> None:
        """Write *text* to a sibling tmp file, then rename it over *path*."""
        tmp = path.with_name(f".{path.name}.{uuid.uuid4().hex[:8]}.tmp")
        try:
            tmp.write_text(text, encoding="utf-8")
            tmp.replace(path)
        except BaseException:
            tmp.unlink(missing_ok=True)
            raise

    def get_client_config(self) -> ClientConfig | None:
        path = self._config_path(CONFIG_KEY)
        if not path.is_file():
            return None
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
        if not raw:
            return None
        return parse_client_config(raw)

    def put_client_config(self, config: ClientConfig) -> None:
        self._write_atomic(
            self._config_path(CONFIG_KEY),
            yaml.safe_dump(config.to_dict(), allow_unicode=True, sort_keys=False),
        )

    def backup_client_config(
        self, config: ClientConfig, *, ttl_seconds: int = CONFIG_BACKUP_TTL_SECONDS,
    ) -> str:
        now = time.time()
        self._prune_backups(now)
        key = f"{CONFIG_BACKUP_PREFIX}{int(now * 1000)}-{uuid.uuid4().hex[:8]}"
        doc = config.to_dict()
        doc["expires_at"] = int(now) + ttl_seconds
        self._write_atomic(
            self._config_path(key),
            yaml.safe_dump(doc, allow_unicode=True, sort_keys=False),
        )
        return key

    def _prune_backups(self, now: float) -> None:
        for path in self.config_dir.glob(f"{CONFIG_BACKUP_PREFIX}*.yaml"):
            try:
                raw = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
            except yaml.YAMLError:
                continue
            expires_at = raw.get("expires_at")
            if expires_at is not None and expires_at <= now:
                path.unlink(missing_ok=True)

    def store_transcript(self, record: TranscriptRecord) -> str:
        self._write_atomic(
            self._transcript_path(record.id),
            json.dumps(record.to_dict(), ensure_ascii=False, indent=2),
        )
        return record.id

    def get_transcript(self, transcript_id: str) -> TranscriptRecord | None:
        path = self._transcript_path(transcript_id)
        if not path.is_file():
            return None
        return TranscriptRecord.from_dict(json.loads(path.read_text(encoding="utf-8")))

    def list_transcripts(self, limit: int = 20) -> list[TranscriptRecord]:
        records = [
            TranscriptRecord.from_dict(json.loads(p.read_text(encoding="utf-8")))
            for p in self.transcript_dir.glob("*.json")
        ]
        records.sort(key=lambda r: (r.created_at, r.id), reverse=True)
        return records[:limit]

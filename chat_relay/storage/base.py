"""RelayStore abstract base class for config documents and transcripts."""

from __future__ import annotations

from abc import ABC, abstractmethod

from ..types import ClientConfig, TranscriptRecord

CONFIG_KEY = "config"
CONFIG_BACKUP_PREFIX = "config_backup_"
CONFIG_BACKUP_TTL_SECONDS = 60 * 60 * 24 * 365


class RelayStore(ABC):
    """Pluggable storage backend for the relay."""

    @abstractmethod
    def get_client_config(self) -> ClientConfig | None:
        """Current client config. None if nothing has been stored yet."""

    @abstractmethod
    def put_client_config(self, config: ClientConfig) -> None:
        """Replace the current client config."""

    @abstractmethod
    def backup_client_config(
        self, config: ClientConfig, *, ttl_seconds: int = CONFIG_BACKUP_TTL_SECONDS,
    ) -> str:
        """Keep a timestamped copy of *config*. Returns the backup key."""

    @abstractmethod
    def store_transcript(self, record: TranscriptRecord) -> str:
        """Store a transcript. Idempotent on id (upsert). Returns id."""

    @abstractmethod
    def get_transcript(self, transcript_id: str) -> TranscriptRecord | None:
        """Retrieve a transcript by id. None if not found."""

    @abstractmethod
    def list_transcripts(self, limit: int = 20) -> list[TranscriptRecord]:
        """Most recent transcripts, newest first."""

    def close(self) -> None:
        """Release resources. Default is a no-op."""

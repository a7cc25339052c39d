"""
LifecycleManager — trash, restore, purge and retention-based auto-purge.

Trashing is a visibility flag: a trashed record stays fully encrypted and
decryptable. Only ``purge`` removes bytes, cascading to attachments. This
module never touches the cipher.
"""
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from ..data import Record, utcnow
from ..exceptions import AttachmentTooLarge, NotFound
from .config import VaultConfig
from .store import VaultStore

logger = logging.getLogger("aegis.vault")


class LifecycleManager:
    """Soft-delete lifecycle over VaultStore metadata."""

    def __init__(
        self,
        store: VaultStore,
        config: VaultConfig,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._store = store
        self._config = config
        self._clock = clock

    @property
    def retention(self) -> timedelta:
        return timedelta(days=self._config.trash_retention_days)

    def _require(self, record_id: str) -> Record:
        record = self._store.get_record(record_id)
        if record is None:
            raise NotFound("record", record_id)
        return record

    def admit_attachment(self, size: int) -> None:
        """Reject oversized attachments before any encryption work is done.

        Raises:
            AttachmentTooLarge: If ``size`` exceeds the configured cap.
        """
        if size > self._config.max_attachment_bytes:
            raise AttachmentTooLarge(size, self._config.max_attachment_bytes)

    def move_to_trash(self, record_id: str) -> None:
        record = self._require(record_id)
        record.deleted_at = self._clock()
        self._store.put_record(record)
        logger.debug("Record %s moved to trash", record_id)

    def restore(self, record_id: str) -> None:
        record = self._require(record_id)
        record.deleted_at = None
        self._store.put_record(record)
        logger.debug("Record %s restored", record_id)

    def purge(self, record_id: str) -> None:
        """Permanently delete a record and all its attachments. Irreversible."""
        if not self._store.delete_record(record_id):
            raise NotFound("record", record_id)
        logger.info("Record %s purged", record_id)

    def empty_trash(self) -> list[str]:
        """Purge every trashed record.

        Returns:
            Ids of the purged records.
        """
        purged = []
        with self._store.transaction():
            for record in self._store.list_records(trashed=True):
                self._store.delete_record(record.id)
                purged.append(record.id)
        logger.info("Emptied trash: %d record(s) purged", len(purged))
        return purged

    def auto_purge(self, now: Optional[datetime] = None) -> list[str]:
        """Purge trashed records whose ``deleted_at`` is older than the retention window.

        Returns:
            Ids of the purged records.
        """
        now = now or self._clock()
        cutoff = now - self.retention
        purged = []
        with self._store.transaction():
            for record in self._store.list_records(trashed=True):
                if record.deleted_at is not None and record.deleted_at < cutoff:
                    self._store.delete_record(record.id)
                    purged.append(record.id)
        if purged:
            logger.info("Auto-purged %d trashed record(s)", len(purged))
        return purged

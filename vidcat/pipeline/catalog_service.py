"""Catalog operations offered to the outer (API / CLI) layer."""

import logging
from typing import List, Optional
from vidcat.config.models import BrokerConfig
from vidcat.domain.errors import InvalidTransition, NotFound
from vidcat.domain.messages import ScanTrigger, TranscodeRequest
from vidcat.domain.models import CatalogEntry, EntryStatus
from vidcat.infrastructure.broker import BrokerClient
from vidcat.infrastructure.catalog_store import SQLiteCatalogStore


class CatalogService:
    def __init__(self, store: Optional[SQLiteCatalogStore], broker: Optional[BrokerClient], broker_config: BrokerConfig):
        self.store = store
        self.broker = broker
        self.broker_config = broker_config
        self.logger = logging.getLogger(__name__)

    def list_catalog(self, status: Optional[EntryStatus] = None) -> List[CatalogEntry]:
        return self.store.list_all(status)

    def find_by_id(self, entry_id: int) -> Optional[CatalogEntry]:
        return self.store.find_by_id(entry_id)

    def _get(self, entry_id: int) -> CatalogEntry:
        entry = self.store.find_by_id(entry_id)
        if entry is None:
            raise NotFound(f"No catalog entry with id {entry_id}")
        return entry

    def _publish(self, message) -> bool:
        if self.broker is None:
            raise RuntimeError("Broker is not configured for this service")
        return self.broker.publish(self.broker_config.transcode_queue, message.to_wire())

    def trigger_scan(self) -> bool:
        sent = self._publish(ScanTrigger())
        self.logger.info("Scan requested")
        return sent

    def request_stream(self, entry_id: int) -> TranscodeRequest:
        """On-demand transcode of an entry's source, not bound to the catalog row."""
        entry = self._get(entry_id)
        request = TranscodeRequest(db_id=None, original_path=entry.original_path)
        self._publish(request)
        self.logger.info(f"On-demand transcode requested for {entry.original_path}")
        return request

    def retry_entry(self, entry_id: int) -> CatalogEntry:
        """Resets a failed entry to pending and requests a new transcode.

        Rescans never do this: the path already exists in the catalog.
        """
        entry = self._get(entry_id)
        if entry.status != EntryStatus.FAILED:
            raise InvalidTransition(f"Entry {entry_id} is {entry.status.value}; only failed entries can be retried")

        entry.status = EntryStatus.PENDING
        entry.transcoded_path = ""
        entry.error_message = None
        self.store.update(entry)
        self._publish(TranscodeRequest(db_id=entry.id, original_path=entry.original_path))
        self.logger.info(f"Retry requested for entry {entry_id}")
        return entry

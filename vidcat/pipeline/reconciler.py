"""Catalog reconciler for the db-consumer process.

Applies ``db_queue`` messages to the catalog store, one at a time (prefetch 1).

Acknowledgement policy:
- duplicate create, update for a vanished id, malformed message: ack
- any other store failure: nack with requeue
"""

import logging
from typing import Callable, Dict, Any, Optional
from vidcat.domain.errors import ConstraintViolation, NotFound, StoreError
from vidcat.domain.events import EntryCreated, EntryUpdated
from vidcat.domain.messages import (
    CatalogCreateRequest,
    CatalogUpdate,
    CatalogUpdateRequest,
    TranscodeRequest,
    parse_message,
)
from vidcat.domain.models import CatalogEntry, EntryStatus, FileDescriptor
from vidcat.infrastructure.broker import Delivery
from vidcat.infrastructure.catalog_store import SQLiteCatalogStore
from vidcat.infrastructure.event_bus import EventBus

logger = logging.getLogger(__name__)


def chain_transcode_requests(event_bus: EventBus, publish: Callable[[str, Dict[str, Any]], Any], queue: str):
    """Turns every EntryCreated into a TranscodeRequest bound to the new entry id."""

    def _on_entry_created(event: EntryCreated):
        request = TranscodeRequest(db_id=event.entry.id, original_path=event.entry.original_path)
        publish(queue, request.to_wire())
        logger.info(f"Transcode requested for entry {event.entry.id}")

    event_bus.subscribe(EntryCreated, _on_entry_created)
    return _on_entry_created


class CatalogReconciler:
    """Creates and updates catalog entries from broker messages."""

    def __init__(self, store: SQLiteCatalogStore, event_bus: EventBus):
        self.store = store
        self.event_bus = event_bus

    def handle(self, delivery: Delivery):
        try:
            message = parse_message(delivery.json())
        except ValueError as e:
            logger.warning(f"Dropping malformed catalog message {delivery.body[:200]!r}: {e}")
            delivery.ack()
            return

        try:
            if isinstance(message, CatalogCreateRequest):
                self.create_entry(message.data)
            elif isinstance(message, CatalogUpdateRequest):
                self.apply_update(message.data)
            else:
                logger.warning(f"Dropping message not meant for the catalog: {delivery.body[:200]!r}")
        except StoreError as e:
            logger.error(f"Catalog store error, requeueing delivery {delivery.delivery_tag}: {e}")
            delivery.nack(requeue=True)
            return
        delivery.ack()

    def create_entry(self, descriptor: FileDescriptor) -> Optional[CatalogEntry]:
        """Persists a pending entry; returns None when the path is already cataloged."""
        if self.store.find_by_path(descriptor.original_path) is not None:
            logger.info(f"Already cataloged, skipping: {descriptor.original_path}")
            return None

        try:
            entry = self.store.insert(CatalogEntry.from_descriptor(descriptor))
        except ConstraintViolation:
            # Lost an insert race against another consumer
            logger.info(f"Already cataloged (concurrent insert), skipping: {descriptor.original_path}")
            return None

        logger.info(f"Cataloged {entry.original_path} with id {entry.id}")
        self.event_bus.publish(EntryCreated(entry=entry))
        return entry

    def apply_update(self, update: CatalogUpdate) -> Optional[CatalogEntry]:
        """Applies a status update; returns the stored entry or None if it does not exist."""
        entry = self.store.find_by_id(update.db_id)
        if entry is None:
            logger.warning(f"No catalog entry for id {update.db_id}, dropping update to {update.status.value}")
            return None

        if update.status == EntryStatus.PROCESSING and entry.status.is_terminal:
            logger.info(f"Ignoring late processing update for entry {entry.id} ({entry.status.value})")
            return entry

        entry.status = update.status
        entry.transcoded_path = update.transcoded_path or ""
        entry.error_message = update.error_message if update.status == EntryStatus.FAILED else None
        try:
            self.store.update(entry)
        except NotFound:
            logger.warning(f"Catalog entry {entry.id} vanished during update")
            return None

        logger.info(f"Entry {entry.id} -> {entry.status.value}")
        self.event_bus.publish(EntryUpdated(entry=entry))
        return entry

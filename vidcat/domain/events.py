"""Domain events for the catalog and transcoding pipeline.

Events flow through the in-process EventBus. They name the hand-offs between
pipeline stages so that, for example, "entry created" and "transcode requested"
are separate contracts that can be tested without a broker.

See `infrastructure/event_bus.py` for the pub/sub mechanism.
"""

from pathlib import Path
from pydantic import BaseModel
from .models import CatalogEntry
from .messages import TranscodeRequest


class Event(BaseModel):
    """Base class for all domain events."""

    pass


class EntryCreated(Event):
    """Emitted by the reconciler after a new pending entry is persisted.

    The declared output of the create stage: subscribers turn it into a
    TranscodeRequest.
    """

    entry: CatalogEntry


class EntryUpdated(Event):
    """Emitted after a status update has been persisted."""

    entry: CatalogEntry


class ScanFinished(Event):
    """Emitted after a directory walk; counts published create requests."""

    root: Path
    files_found: int


class JobEvent(Event):
    """Base class for events related to a single transcode request."""

    request: TranscodeRequest


class JobStarted(JobEvent):
    pass


class JobCompleted(JobEvent):
    output_path: Path


class JobFailed(JobEvent):
    error_message: str

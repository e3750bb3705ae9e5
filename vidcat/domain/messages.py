"""Broker message envelopes.

Every message carries a ``task`` discriminator. ``transcode_queue`` carries
ScanTrigger and TranscodeRequest, ``db_queue`` carries CatalogCreateRequest and
CatalogUpdateRequest. All are delivered at least once, so handlers must be
idempotent.
"""

from typing import Annotated, Any, Literal, Optional, Union
from pydantic import Field, TypeAdapter
from .models import EntryStatus, FileDescriptor, WireModel


class ScanTrigger(WireModel):
    task: Literal["process_directory"] = "process_directory"


class CatalogCreateRequest(WireModel):
    task: Literal["create_metadata"] = "create_metadata"
    data: FileDescriptor


class TranscodeRequest(WireModel):
    """Encode one file. ``db_id`` is None for on-demand requests not bound to an entry."""

    task: Literal["transcode_video"] = "transcode_video"
    db_id: Optional[int] = None
    original_path: str


class CatalogUpdate(WireModel):
    db_id: int
    status: EntryStatus
    transcoded_path: Optional[str] = None
    error_message: Optional[str] = None


class CatalogUpdateRequest(WireModel):
    task: Literal["update_metadata"] = "update_metadata"
    data: CatalogUpdate


Message = Annotated[
    Union[ScanTrigger, CatalogCreateRequest, TranscodeRequest, CatalogUpdateRequest],
    Field(discriminator="task"),
]

_message_adapter: TypeAdapter = TypeAdapter(Message)

KNOWN_TASKS = frozenset({"process_directory", "create_metadata", "transcode_video", "update_metadata"})


def parse_message(payload: Any) -> Optional[Message]:
    """Validates a decoded JSON payload.

    Returns None for an unrecognized ``task`` so callers can drop it; raises
    ValueError (pydantic.ValidationError included) for malformed payloads.
    """
    if not isinstance(payload, dict):
        raise ValueError(f"Message must be a JSON object, got {type(payload).__name__}")
    if payload.get("task") not in KNOWN_TASKS:
        return None
    return _message_adapter.validate_python(payload)

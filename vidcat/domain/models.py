from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class EntryStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (EntryStatus.COMPLETED, EntryStatus.FAILED)


class WireModel(BaseModel):
    """Base for models that travel as JSON: snake_case in Python, camelCase on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class FileDescriptor(WireModel):
    original_path: str
    filename: str
    file_type: str
    file_size: int
    file_date_time: datetime


class CatalogEntry(WireModel):
    id: Optional[int] = None
    original_path: str
    transcoded_path: str = ""
    filename: str
    file_type: str
    file_size: int
    file_date_time: datetime
    status: EntryStatus = EntryStatus.PENDING
    error_message: Optional[str] = None

    @classmethod
    def from_descriptor(cls, descriptor: FileDescriptor) -> "CatalogEntry":
        return cls(
            original_path=descriptor.original_path,
            filename=descriptor.filename,
            file_type=descriptor.file_type,
            file_size=descriptor.file_size,
            file_date_time=descriptor.file_date_time,
        )

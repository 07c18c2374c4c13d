"""Base event model for all events."""

from datetime import datetime, timezone
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from .types import EventType


class BaseEvent(BaseModel):
    """Base class for all events."""

    event_type: EventType
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class UploadFinishedEvent(BaseEvent):
    """Fired when the protocol layer reports that one part is fully received."""

    event_type: EventType = EventType.UPLOAD_FINISHED
    upload_id: str = Field(..., description="Protocol-assigned blob id")
    metadata: Dict[str, Optional[str]] = Field(
        default_factory=dict, description="Client metadata attached to the part"
    )


class UploadAssembledEvent(BaseEvent):
    """Fired when every part of a group has been concatenated into the anchor blob."""

    event_type: EventType = EventType.UPLOAD_ASSEMBLED
    group_id: str = Field(..., description="Client-supplied group identifier")
    anchor_id: str = Field(..., description="Blob id of part 1, now holding all bytes")
    total_parts: int = Field(..., description="Number of parts concatenated")
    size: int = Field(..., description="Size declared in the rewritten sidecar")


class AssemblyAbandonedEvent(BaseEvent):
    """Fired when assembly of a group failed and its parts were left in staging."""

    event_type: EventType = EventType.ASSEMBLY_ABANDONED
    group_id: str = Field(..., description="Client-supplied group identifier")
    reason: str = Field(..., description="Why the assembly was aborted")
    orphaned_ids: List[str] = Field(
        default_factory=list, description="Blob ids that may remain in staging"
    )


class UploadPlacedEvent(BaseEvent):
    """Fired when an upload reached its final path."""

    event_type: EventType = EventType.UPLOAD_PLACED
    upload_id: str = Field(..., description="Protocol-assigned blob id")
    final_name: str = Field(..., description="Name under the mount directory")
    destination: str = Field(..., description="Absolute destination path")
    sidecar_destination: Optional[str] = Field(
        default=None, description="Where the sidecar was kept, if it was"
    )


class UploadPlacementFailedEvent(BaseEvent):
    """Fired when an upload was received but could not be placed."""

    event_type: EventType = EventType.UPLOAD_PLACEMENT_FAILED
    upload_id: str = Field(..., description="Protocol-assigned blob id")
    reason: str = Field(..., description="Failure or conflict description")

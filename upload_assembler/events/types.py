"""Event type definitions."""

from enum import Enum


class EventType(str, Enum):
    """All event types in the system."""

    # Protocol layer
    UPLOAD_FINISHED = "upload.finished"

    # Multipart assembly
    UPLOAD_ASSEMBLED = "upload.assembled"
    ASSEMBLY_ABANDONED = "upload.assembly_abandoned"

    # Placement
    UPLOAD_PLACED = "upload.placed"
    UPLOAD_PLACEMENT_FAILED = "upload.placement_failed"

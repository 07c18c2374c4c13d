"""
Type definitions for upload finalization.
"""

from enum import Enum
from typing import Any, Dict, List, Literal, Mapping, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


class DuplicatePolicy(str, Enum):
    """What to do when the human-chosen name already exists at the destination"""

    PREVENT = "prevent"  # reject the upload
    NUMBER = "number"  # append (1), (2), ... before the extension
    KEEP = "keep"  # keep the machine-assigned name, which is always unique

    @classmethod
    def parse(cls, value: Any) -> "DuplicatePolicy":
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            return cls.KEEP


def _parse_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    try:
        return int(str(value).strip())
    except ValueError:
        return None


class PartMetadata(BaseModel):
    """Client metadata attached to one uploaded part.

    Every value arrives as a string. Malformed counts degrade to None so that
    a broken multipart header turns into single-part handling instead of an
    error. Keys this model does not know are kept as extras.
    """

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    group_id: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("groupId", "multipartId")
    )
    part_index: Optional[int] = Field(
        default=None, validation_alias=AliasChoices("partIndex")
    )
    total_parts: Optional[int] = Field(
        default=None, validation_alias=AliasChoices("totalParts")
    )
    original_filename: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("originalFilename", "filename")
    )
    original_file_size: Optional[int] = Field(
        default=None,
        validation_alias=AliasChoices("originalFileSizeBytes", "originalFileSize"),
    )
    use_original_filename: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("useOriginalFilename")
    )
    duplicate_policy: DuplicatePolicy = Field(
        default=DuplicatePolicy.KEEP,
        validation_alias=AliasChoices("duplicatePolicy", "onDuplicateFiles"),
    )

    @field_validator("group_id", "original_filename", "use_original_filename", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Optional[str]:
        if value is None:
            return None
        value = str(value)
        return value if value else None

    @field_validator("part_index", "total_parts", mode="before")
    @classmethod
    def _parse_count(cls, value: Any) -> Optional[int]:
        parsed = _parse_int(value)
        return parsed if parsed is not None and parsed >= 1 else None

    @field_validator("original_file_size", mode="before")
    @classmethod
    def _parse_size(cls, value: Any) -> Optional[int]:
        parsed = _parse_int(value)
        return parsed if parsed is not None and parsed >= 0 else None

    @field_validator("duplicate_policy", mode="before")
    @classmethod
    def _parse_policy(cls, value: Any) -> DuplicatePolicy:
        return DuplicatePolicy.parse(value)

    @classmethod
    def from_raw(cls, metadata: Optional[Mapping[str, Any]]) -> "PartMetadata":
        return cls.model_validate(dict(metadata or {}))

    @property
    def is_multipart(self) -> bool:
        return (
            self.group_id is not None
            and self.part_index is not None
            and self.total_parts is not None
        )

    @property
    def use_original(self) -> bool:
        return self.use_original_filename == "true" and self.original_filename is not None


# Assembly models
class AssemblyState(str, Enum):
    COLLECTING = "collecting"
    ABANDONED = "abandoned"


class AssemblyRecord(BaseModel):
    """Parts received so far for one multipart group, stored in memory"""

    group_id: str
    total_parts: int  # fixed by the first part seen
    parts: Dict[int, str] = Field(default_factory=dict)  # part index -> blob id
    metadata: PartMetadata  # first-seen part's metadata
    state: AssemblyState = AssemblyState.COLLECTING
    failure: Optional[str] = None
    created_at: float  # Unix timestamp
    updated_at: float  # Unix timestamp


class AssemblyResult(BaseModel):
    """Outcome of feeding one part into the tracker"""

    status: Literal["pending", "assembled", "ignored", "rejected", "failed"]
    group_id: str
    anchor_id: Optional[str] = None  # set when assembled
    metadata: Optional[PartMetadata] = None  # group metadata when assembled
    size: Optional[int] = None
    reason: Optional[str] = None


class AssemblySummary(BaseModel):
    """Operator view of an in-flight or abandoned group"""

    group_id: str
    state: AssemblyState
    received: List[int]
    total_parts: int
    failure: Optional[str] = None
    created_at: float
    updated_at: float


# Placement and pipeline results
class PlacementResult(BaseModel):
    success: bool
    destination: str
    used_copy_fallback: bool = False
    sidecar_destination: Optional[str] = None  # set when the sidecar was kept
    sidecar_error: Optional[str] = None  # primary file placed, sidecar step failed
    error: Optional[str] = None


class CreateDecision(BaseModel):
    """Answer to the upload-creation pre-check"""

    allowed: bool
    status_code: Optional[int] = None  # 409 for conflicts, 400 for bad part counts
    message: Optional[str] = None


class CompletionOutcome(BaseModel):
    status: Literal["placed", "pending", "conflict", "failed", "ignored"]
    upload_id: str
    final_name: Optional[str] = None
    destination: Optional[str] = None
    reason: Optional[str] = None

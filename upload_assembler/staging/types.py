"""
Staged upload sidecar model.
"""

from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


class StagedUpload(BaseModel):
    """Sidecar record the tus file store writes next to each blob"""

    model_config = ConfigDict(extra="allow")  # keep store-specific keys on rewrite

    id: str
    size: Optional[int] = None  # None while the upload length is deferred
    offset: int = 0
    metadata: Dict[str, Optional[str]] = Field(default_factory=dict)
    creation_date: Optional[str] = None

    @property
    def is_complete(self) -> bool:
        return self.size is not None and self.offset == self.size

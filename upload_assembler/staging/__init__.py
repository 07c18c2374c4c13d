"""
Staging area access.

The tus server owns this directory: each upload is an opaque blob named by its
protocol-assigned id plus a JSON sidecar. This package only reads, rewrites
and deletes those files.
"""

from .store import StagingStore
from .types import StagedUpload

__all__ = ["StagedUpload", "StagingStore"]

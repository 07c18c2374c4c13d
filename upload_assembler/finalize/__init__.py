"""
Upload finalization with organized components.

This module turns uploads the tus server reports as finished into files at
their final path:
- Filename sanitizing and duplicate policy handling
- Rename-or-copy placement across filesystems
- Multipart assembly of parts correlated by group id
- The completion pipeline tying the three together
"""

from .assembly import AssemblyStore, AssemblyTracker
from .errors import (
    AssemblyError,
    FinalizeError,
    NameConflictError,
    NameProbeExhaustedError,
    PlacementError,
)
from .naming import (
    check_create_conflict,
    find_numbered_name,
    resolve_destination_name,
    sanitize,
)
from .pipeline import CompletionPipeline
from .placement import move_file, place
from .types import (
    AssemblyRecord,
    AssemblyResult,
    AssemblyState,
    AssemblySummary,
    CompletionOutcome,
    CreateDecision,
    DuplicatePolicy,
    PartMetadata,
    PlacementResult,
)

__all__ = [
    # Types
    "AssemblyRecord",
    "AssemblyResult",
    "AssemblyState",
    "AssemblySummary",
    "CompletionOutcome",
    "CreateDecision",
    "DuplicatePolicy",
    "PartMetadata",
    "PlacementResult",
    # Errors
    "AssemblyError",
    "FinalizeError",
    "NameConflictError",
    "NameProbeExhaustedError",
    "PlacementError",
    # Naming
    "check_create_conflict",
    "find_numbered_name",
    "resolve_destination_name",
    "sanitize",
    # Placement
    "move_file",
    "place",
    # Assembly and pipeline
    "AssemblyStore",
    "AssemblyTracker",
    "CompletionPipeline",
]

"""
Filename sanitizing and collision handling for placed uploads.
"""

import os
import re
from pathlib import Path
from typing import AbstractSet, Optional

from aiofiles import os as aioos

from .errors import NameConflictError, NameProbeExhaustedError
from .types import DuplicatePolicy, PartMetadata

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]")

# Names that sanitize cleanly but would address a directory, not a file
_RESERVED_NAMES = {"", ".", ".."}


def sanitize(name: str) -> str:
    """Replace every character outside [A-Za-z0-9._-] with an underscore"""
    return _UNSAFE_CHARS.sub("_", name)


def is_usable_name(name: str) -> bool:
    return name not in _RESERVED_NAMES


def split_name(name: str) -> tuple[str, str]:
    """Split into base and extension the way numbering needs it ("a.tar.gz" -> "a.tar", ".gz")"""
    return os.path.splitext(name)


def numbered_name(base: str, ext: str, k: int) -> str:
    return f"{base}({k}){ext}"


async def _is_taken(
    destination_dir: Path, name: str, reserved: Optional[AbstractSet[str]]
) -> bool:
    """A name is taken if it exists on disk or another placement already claimed it"""
    if reserved is not None and name in reserved:
        return True
    return await aioos.path.exists(destination_dir / name)


async def find_numbered_name(
    candidate: str,
    destination_dir: Path,
    max_probes: Optional[int] = None,
    reserved: Optional[AbstractSet[str]] = None,
) -> str:
    """Return candidate if free, else the first free base(k)ext for k = 1, 2, ..."""
    if not await _is_taken(destination_dir, candidate, reserved):
        return candidate

    base, ext = split_name(candidate)
    k = 1
    while max_probes is None or k <= max_probes:
        name = numbered_name(base, ext, k)
        if not await _is_taken(destination_dir, name, reserved):
            return name
        k += 1

    raise NameProbeExhaustedError(candidate, max_probes)


async def resolve_destination_name(
    candidate: str,
    destination_dir: Path,
    policy: DuplicatePolicy,
    machine_name: str,
    max_probes: Optional[int] = None,
    reserved: Optional[AbstractSet[str]] = None,
) -> str:
    """
    Pick the final name for an upload under destination_dir.

    Args:
        candidate: Sanitized human-chosen name
        destination_dir: Directory the file will be placed in
        policy: Duplicate policy from the upload metadata
        machine_name: Protocol-assigned id, used when the policy keeps it
        max_probes: Upper bound on numbered candidates, None for unbounded
        reserved: Names claimed by placements still in progress, treated as existing

    Raises:
        NameConflictError: policy is prevent and the candidate exists
        NameProbeExhaustedError: policy is number and no free name was found
    """
    if policy == DuplicatePolicy.PREVENT:
        # Second half of check-then-recheck: the creation-time check can race
        # with another upload of the same name, the later move would overwrite.
        if await _is_taken(destination_dir, candidate, reserved):
            raise NameConflictError(candidate)
        return candidate

    if policy == DuplicatePolicy.NUMBER:
        return await find_numbered_name(candidate, destination_dir, max_probes, reserved)

    # Machine names are unique per upload, nothing can collide
    return machine_name


async def check_create_conflict(
    metadata: PartMetadata, destination_dir: Path
) -> Optional[str]:
    """Return a conflict message if the upload can already be rejected at creation time"""
    if not metadata.use_original or metadata.duplicate_policy != DuplicatePolicy.PREVENT:
        return None

    candidate = sanitize(metadata.original_filename or "")
    if not is_usable_name(candidate):
        return None

    if await aioos.path.exists(destination_dir / candidate):
        return str(NameConflictError(metadata.original_filename or candidate))
    return None

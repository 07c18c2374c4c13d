"""
Multipart assembly: correlating parts by group id and concatenating them.

Each group moves through absent -> collecting -> (assembled | abandoned).
A group is assembled exactly once, the moment its last part arrives. The
bytes of parts 2..N are appended onto the part 1 blob in index order, never
in arrival order, and each source part is deleted as soon as it has been
appended.
"""

import asyncio
import time
from typing import Dict, List, Optional

import aiofiles

from ..events.base import AssemblyAbandonedEvent, UploadAssembledEvent
from ..events.dispatcher import EventDispatcher
from ..logger import logger
from ..staging import StagedUpload, StagingStore
from .errors import AssemblyError
from .placement import DEFAULT_CHUNK_SIZE
from .types import (
    AssemblyRecord,
    AssemblyResult,
    AssemblyState,
    AssemblySummary,
    PartMetadata,
)


class AssemblyStore:
    """In-memory assembly records keyed by group id.

    Owns one asyncio.Lock per group so that events for the same group are
    serialized while different groups proceed independently. Finished group
    ids are kept for completed_ttl seconds so a redelivered completion event
    cannot open a fresh record. Records untouched for expire_after seconds are
    dropped; their blobs stay in staging.
    """

    def __init__(self, expire_after: float = 24 * 3600, completed_ttl: float = 3600):
        self.expire_after = expire_after
        self.completed_ttl = completed_ttl
        self._records: Dict[str, AssemblyRecord] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._completed: Dict[str, float] = {}  # group id -> completion timestamp

    def _cleanup_expired(self) -> None:
        current_time = time.time()

        expired_records = [
            group_id
            for group_id, record in self._records.items()
            if record.updated_at + self.expire_after < current_time
            and not self._is_locked(group_id)
        ]
        for group_id in expired_records:
            record = self._records.pop(group_id)
            self._locks.pop(group_id, None)
            logger.warning(
                f"Dropping {record.state.value} assembly of group {group_id} after "
                f"{self.expire_after}s without progress, orphaned parts: "
                f"{sorted(record.parts.values())}"
            )

        expired_completed = [
            group_id
            for group_id, completed_at in self._completed.items()
            if completed_at + self.completed_ttl < current_time
        ]
        for group_id in expired_completed:
            del self._completed[group_id]
            if group_id not in self._records and not self._is_locked(group_id):
                self._locks.pop(group_id, None)

    def _is_locked(self, group_id: str) -> bool:
        lock = self._locks.get(group_id)
        return lock is not None and lock.locked()

    def lock(self, group_id: str) -> asyncio.Lock:
        return self._locks.setdefault(group_id, asyncio.Lock())

    def get(self, group_id: str) -> Optional[AssemblyRecord]:
        self._cleanup_expired()
        return self._records.get(group_id)

    def set(self, record: AssemblyRecord) -> None:
        self._records[record.group_id] = record

    def remove(self, group_id: str) -> bool:
        """Remove a record, returns True if it existed"""
        return self._records.pop(group_id, None) is not None

    def mark_completed(self, group_id: str) -> None:
        self._completed[group_id] = time.time()

    def is_completed(self, group_id: str) -> bool:
        self._cleanup_expired()
        return group_id in self._completed

    def records(self) -> List[AssemblyRecord]:
        self._cleanup_expired()
        return list(self._records.values())

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, group_id: object) -> bool:
        return group_id in self._records


class AssemblyTracker:
    """Collects parts per group and assembles a group once all parts are in."""

    def __init__(
        self,
        staging: StagingStore,
        store: Optional[AssemblyStore] = None,
        dispatcher: Optional[EventDispatcher] = None,
        max_total_parts: Optional[int] = None,
        verify_size: bool = True,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ):
        self.staging = staging
        self.store = store if store is not None else AssemblyStore()
        self.dispatcher = dispatcher
        self.max_total_parts = max_total_parts
        self.verify_size = verify_size
        self.chunk_size = chunk_size

    def summaries(self) -> List[AssemblySummary]:
        return [
            AssemblySummary(
                group_id=record.group_id,
                state=record.state,
                received=sorted(record.parts),
                total_parts=record.total_parts,
                failure=record.failure,
                created_at=record.created_at,
                updated_at=record.updated_at,
            )
            for record in self.store.records()
        ]

    async def add_part(self, upload_id: str, metadata: PartMetadata) -> AssemblyResult:
        """
        Record one completed part and assemble its group if it was the last one.

        Args:
            upload_id: Blob id of the completed part
            metadata: Parsed part metadata, must be multipart

        Returns:
            AssemblyResult with status
            - pending: more parts are needed
            - assembled: anchor_id now holds the whole file
            - ignored: group already assembled or abandoned
            - rejected: part numbering is unusable, nothing was recorded
            - failed: assembly was attempted and the group is now abandoned
        """
        if not metadata.is_multipart:
            raise ValueError(f"Upload {upload_id} carries no multipart metadata")

        group_id: str = metadata.group_id  # type: ignore[assignment]
        part_index: int = metadata.part_index  # type: ignore[assignment]
        total_parts: int = metadata.total_parts  # type: ignore[assignment]

        if self.max_total_parts is not None and total_parts > self.max_total_parts:
            reason = f"totalParts {total_parts} exceeds limit of {self.max_total_parts}"
            logger.warning(f"Rejecting part {part_index} of group {group_id}: {reason}")
            return AssemblyResult(status="rejected", group_id=group_id, reason=reason)

        async with self.store.lock(group_id):
            if self.store.is_completed(group_id):
                logger.info(
                    f"Ignoring part {part_index} ({upload_id}) of already assembled group {group_id}"
                )
                return AssemblyResult(
                    status="ignored", group_id=group_id, reason="already assembled"
                )

            record = self.store.get(group_id)

            if record is not None and record.state == AssemblyState.ABANDONED:
                logger.warning(
                    f"Ignoring part {part_index} ({upload_id}) of abandoned group {group_id}"
                )
                return AssemblyResult(
                    status="ignored", group_id=group_id, reason="assembly abandoned"
                )

            expected_total = record.total_parts if record is not None else total_parts
            if part_index > expected_total:
                reason = f"partIndex {part_index} is outside 1..{expected_total}"
                logger.warning(f"Rejecting part {upload_id} of group {group_id}: {reason}")
                return AssemblyResult(status="rejected", group_id=group_id, reason=reason)

            current_time = time.time()
            if record is None:
                record = AssemblyRecord(
                    group_id=group_id,
                    total_parts=total_parts,
                    metadata=metadata,
                    created_at=current_time,
                    updated_at=current_time,
                )
                self.store.set(record)
                logger.info(f"Started collecting group {group_id} ({total_parts} parts)")
            elif total_parts != record.total_parts:
                logger.warning(
                    f"Part {part_index} of group {group_id} declares {total_parts} parts, "
                    f"keeping {record.total_parts} from the first part"
                )

            previous = record.parts.get(part_index)
            if previous is not None and previous != upload_id:
                logger.warning(
                    f"Part {part_index} of group {group_id} redelivered as {upload_id}, "
                    f"replacing {previous}"
                )
            record.parts[part_index] = upload_id
            record.updated_at = current_time

            logger.info(
                f"Group {group_id}: received part {part_index} ({len(record.parts)}/{record.total_parts})"
            )

            if len(record.parts) < record.total_parts:
                return AssemblyResult(status="pending", group_id=group_id)

            try:
                size = await self._assemble(record)
            except Exception as e:
                record.state = AssemblyState.ABANDONED
                record.failure = f"{type(e).__name__}: {e}"
                record.updated_at = time.time()
                logger.error(
                    f"Assembly of group {group_id} abandoned: {record.failure}",
                    exc_info=True,
                )
                if self.dispatcher is not None:
                    await self.dispatcher.dispatch_assembly_abandoned(
                        AssemblyAbandonedEvent(
                            group_id=group_id,
                            reason=record.failure,
                            orphaned_ids=[record.parts[i] for i in sorted(record.parts)],
                        )
                    )
                return AssemblyResult(
                    status="failed", group_id=group_id, reason=record.failure
                )

            # Consumed exactly once: forget the record, remember the group id
            self.store.remove(group_id)
            self.store.mark_completed(group_id)
            anchor_id = record.parts[1]
            logger.info(
                f"Assembled group {group_id} into {anchor_id} ({size} bytes, {record.total_parts} parts)"
            )

        if self.dispatcher is not None:
            await self.dispatcher.dispatch_upload_assembled(
                UploadAssembledEvent(
                    group_id=group_id,
                    anchor_id=anchor_id,
                    total_parts=record.total_parts,
                    size=size,
                )
            )

        return AssemblyResult(
            status="assembled",
            group_id=group_id,
            anchor_id=anchor_id,
            metadata=record.metadata,
            size=size,
        )

    async def _assemble(self, record: AssemblyRecord) -> int:
        """Concatenate all parts onto part 1 and rewrite its sidecar, returns the declared size"""
        ordered = sorted(record.parts.items())
        upload_ids = [upload_id for _, upload_id in ordered]
        if len(set(upload_ids)) != len(upload_ids):
            raise AssemblyError(
                f"Group {record.group_id} maps one blob to several part indices"
            )

        # Check every part before touching any bytes
        observed_size = 0
        for index, upload_id in ordered:
            try:
                observed_size += await self.staging.blob_size(upload_id)
            except FileNotFoundError:
                raise AssemblyError(
                    f"Part {index} ({upload_id}) of group {record.group_id} is missing from staging"
                )

        declared_size = record.metadata.original_file_size
        if (
            self.verify_size
            and declared_size is not None
            and declared_size != observed_size
        ):
            raise AssemblyError(
                f"Group {record.group_id} declares {declared_size} bytes "
                f"but its parts hold {observed_size}"
            )

        anchor_id = ordered[0][1]
        async with aiofiles.open(self.staging.blob_path(anchor_id), "ab") as anchor:
            for index, upload_id in ordered[1:]:
                async with aiofiles.open(self.staging.blob_path(upload_id), "rb") as part:
                    while chunk := await part.read(self.chunk_size):
                        await anchor.write(chunk)
                await anchor.flush()
                await self.staging.remove(upload_id)
                logger.debug(f"Group {record.group_id}: appended part {index} ({upload_id})")

        final_size = declared_size if declared_size is not None else observed_size
        try:
            sidecar = await self.staging.read_sidecar(anchor_id)
        except FileNotFoundError:
            logger.warning(f"Anchor {anchor_id} has no sidecar, writing a new one")
            sidecar = StagedUpload(
                id=anchor_id,
                metadata={
                    key: str(value)
                    for key, value in record.metadata.model_dump(
                        mode="json", exclude_none=True
                    ).items()
                },
            )
        sidecar.size = final_size
        sidecar.offset = final_size
        await self.staging.write_sidecar(sidecar)

        return final_size

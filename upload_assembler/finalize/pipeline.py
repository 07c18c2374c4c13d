"""
Completion pipeline: turns a finished upload into a placed file.

The only state kept between calls is the set of destination names claimed
by placements still in flight. Multipart parts are handed to the assembly tracker and
only continue once their group is whole; everything else goes straight to
naming and placement.
"""

import asyncio
from pathlib import Path
from typing import Any, Mapping, Optional, Set

from ..events.base import (
    UploadFinishedEvent,
    UploadPlacedEvent,
    UploadPlacementFailedEvent,
)
from ..events.dispatcher import EventDispatcher
from ..logger import logger
from ..staging import StagingStore
from .assembly import AssemblyTracker
from .errors import FinalizeError, NameConflictError
from .naming import check_create_conflict, is_usable_name, resolve_destination_name, sanitize
from .placement import DEFAULT_CHUNK_SIZE, place
from .types import CompletionOutcome, CreateDecision, PartMetadata


class CompletionPipeline:
    def __init__(
        self,
        staging: StagingStore,
        mount_path: Path,
        tracker: AssemblyTracker,
        dispatcher: Optional[EventDispatcher] = None,
        max_number_probes: Optional[int] = None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ):
        self.staging = staging
        self.mount_path = Path(mount_path)
        self.tracker = tracker
        self.dispatcher = dispatcher
        self.max_number_probes = max_number_probes
        self.chunk_size = chunk_size
        # Destination names claimed by placements that have not finished yet.
        # Resolving and claiming happen under one lock so two uploads can never
        # pick the same free name before either file exists.
        self._naming_lock = asyncio.Lock()
        self._reserved: Set[str] = set()

    def register(self, dispatcher: EventDispatcher) -> None:
        """Subscribe to part completion events"""
        self.dispatcher = dispatcher
        dispatcher.on_upload_finished(self.handle_finished_event)

    async def handle_finished_event(self, event: UploadFinishedEvent) -> None:
        await self.on_upload_complete(event.upload_id, event.metadata)

    async def on_upload_created(
        self, metadata: Optional[Mapping[str, Any]]
    ) -> CreateDecision:
        """Decide whether an upload may start before the client sends any bytes"""
        part = PartMetadata.from_raw(metadata)

        if part.is_multipart:
            max_total_parts = self.tracker.max_total_parts
            if max_total_parts is not None and part.total_parts > max_total_parts:  # type: ignore[operator]
                return CreateDecision(
                    allowed=False,
                    status_code=400,
                    message=f"totalParts {part.total_parts} exceeds limit of {max_total_parts}",
                )
            if part.part_index > part.total_parts:  # type: ignore[operator]
                return CreateDecision(
                    allowed=False,
                    status_code=400,
                    message=f"partIndex {part.part_index} is outside 1..{part.total_parts}",
                )

        conflict = await check_create_conflict(part, self.mount_path)
        if conflict:
            logger.info(f"Rejecting upload creation: {conflict}")
            return CreateDecision(allowed=False, status_code=409, message=conflict)

        return CreateDecision(allowed=True)

    async def on_upload_complete(
        self, upload_id: str, metadata: Optional[Mapping[str, Any]]
    ) -> CompletionOutcome:
        """
        Handle one "upload finished" notification.

        Never raises: every failure becomes a logged CompletionOutcome so a
        bad upload cannot take down the event loop.
        """
        try:
            self.staging.validate_id(upload_id)
            part = PartMetadata.from_raw(metadata)

            if part.is_multipart and part.total_parts != 1:
                result = await self.tracker.add_part(upload_id, part)
                if result.status == "assembled":
                    return await self._finalize(result.anchor_id, result.metadata)  # type: ignore[arg-type]
                if result.status == "pending":
                    return CompletionOutcome(status="pending", upload_id=upload_id)
                if result.status == "ignored":
                    return CompletionOutcome(
                        status="ignored", upload_id=upload_id, reason=result.reason
                    )
                return CompletionOutcome(
                    status="failed", upload_id=upload_id, reason=result.reason
                )

            return await self._finalize(upload_id, part)
        except Exception as e:
            logger.error(f"Completion of upload {upload_id} failed: {e}", exc_info=True)
            return CompletionOutcome(
                status="failed", upload_id=upload_id, reason=f"{type(e).__name__}: {e}"
            )

    async def _finalize(self, upload_id: str, metadata: PartMetadata) -> CompletionOutcome:
        use_original = metadata.use_original
        candidate = sanitize(metadata.original_filename or "") if use_original else ""

        if use_original and not is_usable_name(candidate):
            logger.warning(
                f"Upload {upload_id}: filename {metadata.original_filename!r} is unusable, "
                "keeping the machine name"
            )
            use_original = False

        try:
            final_name = await self._claim_name(
                upload_id, candidate if use_original else None, metadata
            )
        except NameConflictError as e:
            logger.warning(f"Upload {upload_id} left in staging: {e}")
            await self._placement_failed(upload_id, str(e))
            return CompletionOutcome(status="conflict", upload_id=upload_id, reason=str(e))
        except FinalizeError as e:
            logger.error(f"Upload {upload_id} left in staging: {e}")
            await self._placement_failed(upload_id, str(e))
            return CompletionOutcome(status="failed", upload_id=upload_id, reason=str(e))

        try:
            return await self._place(upload_id, final_name, use_original)
        finally:
            self._reserved.discard(final_name)

    async def _claim_name(
        self, upload_id: str, candidate: Optional[str], metadata: PartMetadata
    ) -> str:
        """Resolve the destination name and reserve it until placement is over"""
        async with self._naming_lock:
            if candidate is None:
                final_name = upload_id
            else:
                final_name = await resolve_destination_name(
                    candidate,
                    self.mount_path,
                    metadata.duplicate_policy,
                    machine_name=upload_id,
                    max_probes=self.max_number_probes,
                    reserved=self._reserved,
                )
            self._reserved.add(final_name)
            return final_name

    async def _place(
        self, upload_id: str, final_name: str, use_original: bool
    ) -> CompletionOutcome:
        destination = self.mount_path / final_name
        # The bookkeeping sidecar is only kept while the file still carries the
        # protocol id, so a lookup by that id keeps resolving.
        result = await place(
            self.staging.blob_path(upload_id),
            destination,
            self.staging.sidecar_path(upload_id),
            keep_sidecar=not use_original,
            sidecar_suffix=self.staging.sidecar_suffix,
            chunk_size=self.chunk_size,
        )

        if not result.success:
            await self._placement_failed(upload_id, result.error or "placement failed")
            return CompletionOutcome(
                status="failed",
                upload_id=upload_id,
                final_name=final_name,
                destination=result.destination,
                reason=result.error,
            )

        if self.dispatcher is not None:
            await self.dispatcher.dispatch_upload_placed(
                UploadPlacedEvent(
                    upload_id=upload_id,
                    final_name=final_name,
                    destination=result.destination,
                    sidecar_destination=result.sidecar_destination,
                )
            )

        return CompletionOutcome(
            status="placed",
            upload_id=upload_id,
            final_name=final_name,
            destination=result.destination,
            reason=result.sidecar_error,
        )

    async def _placement_failed(self, upload_id: str, reason: str) -> None:
        if self.dispatcher is not None:
            await self.dispatcher.dispatch_upload_placement_failed(
                UploadPlacementFailedEvent(upload_id=upload_id, reason=reason)
            )

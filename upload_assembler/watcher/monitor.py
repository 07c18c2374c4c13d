"""Staging directory monitoring using watchfiles.

Fallback completion detection for deployments where the tus server cannot
call the hook endpoint. A sidecar seen by watchfiles starts a poller that
reports the upload as finished only after it looked complete, with identical
offset, blob size and mtime, for `stable_intervals` consecutive polls.
"""

import asyncio
from pathlib import Path
from typing import Dict, NamedTuple, Optional, Set

from aiofiles import os as aioos
from watchfiles import Change, awatch

from ..events.base import UploadFinishedEvent
from ..events.dispatcher import EventDispatcher
from ..logger import log_exception, logger
from ..staging import StagingStore


class UploadSnapshot(NamedTuple):
    offset: int
    size: Optional[int]
    blob_size: Optional[int]
    blob_mtime_ns: Optional[int]

    @property
    def complete(self) -> bool:
        return (
            self.size is not None
            and self.offset == self.size
            and self.blob_size == self.size
        )


class SidecarWatcher:
    """Watches the staging directory and emits UploadFinishedEvent per upload."""

    def __init__(
        self,
        staging: StagingStore,
        event_dispatcher: EventDispatcher,
        poll_interval: float = 1.0,
        stable_intervals: int = 3,
    ):
        """Initialize sidecar watcher.

        Args:
            staging: Staging store describing directory and sidecar naming
            event_dispatcher: Dispatcher receiving UploadFinishedEvent
            poll_interval: Seconds between two polls of one upload
            stable_intervals: Consecutive identical complete polls required
        """
        self.staging = staging
        self.event_dispatcher = event_dispatcher
        self.poll_interval = poll_interval
        self.stable_intervals = max(1, stable_intervals)

        self._pollers: Dict[str, asyncio.Task] = {}
        self._reported: Set[str] = set()
        self._watch_task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None

    async def start(self) -> None:
        """Pick up sidecars already in staging, then follow new ones."""
        if self._watch_task is not None:
            logger.warning("Staging watcher already running")
            return

        for name in await aioos.listdir(self.staging.directory):
            path = self.staging.directory / name
            if self.staging.is_sidecar(path):
                self.track(self.staging.upload_id_for_sidecar(path))

        self._stop_event = asyncio.Event()
        self._watch_task = asyncio.create_task(self._watch_loop())
        logger.info(f"Started watching staging directory {self.staging.directory}")

    async def stop(self) -> None:
        if self._stop_event is not None:
            self._stop_event.set()

        tasks = list(self._pollers.values())
        if self._watch_task is not None:
            tasks.append(self._watch_task)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        self._pollers.clear()
        self._watch_task = None
        logger.info("Stopped watching staging directory")

    def track(self, upload_id: str) -> None:
        """Start polling an upload unless it is already polled or reported."""
        if upload_id in self._reported or upload_id in self._pollers:
            return

        task = asyncio.create_task(self._poll_until_stable(upload_id))
        self._pollers[upload_id] = task
        task.add_done_callback(lambda _: self._pollers.pop(upload_id, None))

    def forget(self, upload_id: str) -> None:
        """Drop a reported upload once its sidecar left staging, so a reused id is tracked again."""
        self._reported.discard(upload_id)

    async def _watch_loop(self) -> None:
        try:
            async for changes in awatch(self.staging.directory, stop_event=self._stop_event):
                for change_type, changed_path in changes:
                    path = Path(changed_path)
                    if not self.staging.is_sidecar(path):
                        continue
                    upload_id = self.staging.upload_id_for_sidecar(path)
                    if change_type == Change.deleted:
                        self.forget(upload_id)
                    else:
                        self.track(upload_id)
        except asyncio.CancelledError:
            logger.debug("Staging watch loop cancelled")
            raise
        except Exception as e:
            logger.error(f"Error in staging watch loop: {e}", exc_info=True)

    async def snapshot(self, upload_id: str) -> Optional[UploadSnapshot]:
        """Current progress of an upload, None once its sidecar is gone."""
        try:
            staged = await self.staging.read_sidecar(upload_id)
        except FileNotFoundError:
            return None
        except ValueError as e:
            # Caught mid-write by the tus server
            logger.debug(f"Sidecar of {upload_id} not readable yet: {e}")
            return UploadSnapshot(offset=0, size=None, blob_size=None, blob_mtime_ns=None)

        try:
            stat_result = await aioos.stat(self.staging.blob_path(upload_id))
            blob_size, blob_mtime_ns = stat_result.st_size, stat_result.st_mtime_ns
        except FileNotFoundError:
            blob_size, blob_mtime_ns = None, None

        return UploadSnapshot(staged.offset, staged.size, blob_size, blob_mtime_ns)

    @log_exception("Polling staged upload {upload_id}")
    async def _poll_until_stable(self, upload_id: str) -> None:
        stable = 0
        last: Optional[UploadSnapshot] = None

        while True:
            await asyncio.sleep(self.poll_interval)

            current = await self.snapshot(upload_id)
            if current is None:
                logger.debug(f"Sidecar of {upload_id} disappeared, stop polling")
                self.forget(upload_id)
                return

            if not current.complete:
                stable = 0
            elif current == last:
                stable += 1
            else:
                stable = 1
            last = current

            if stable >= self.stable_intervals:
                break

        self._reported.add(upload_id)
        staged = await self.staging.read_sidecar(upload_id)
        logger.info(f"Upload {upload_id} stable for {stable} polls, reporting as finished")
        await self.event_dispatcher.dispatch_upload_finished(
            UploadFinishedEvent(upload_id=upload_id, metadata=staged.metadata)
        )

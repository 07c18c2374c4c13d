"""Event dispatcher - dispatches typed events to registered handlers.

This is a simple event system without persistence.
Each event type has its own handler function with proper typing.
"""

import asyncio
import inspect
from typing import Awaitable, Callable, Dict, List, TypeVar, Union

from ..logger import logger
from .base import (
    AssemblyAbandonedEvent,
    BaseEvent,
    UploadAssembledEvent,
    UploadFinishedEvent,
    UploadPlacedEvent,
    UploadPlacementFailedEvent,
)
from .types import EventType

EventT = TypeVar("EventT", bound=BaseEvent)

# Handlers can be sync or async for any event type
EventHandler = Union[Callable[[EventT], None], Callable[[EventT], Awaitable[None]]]


class EventDispatcher:
    """Dispatches events to registered handlers.

    Handlers for one event run concurrently; a failing handler is logged and
    never affects the others or the caller.
    """

    def __init__(self):
        self._handlers: Dict[EventType, List[Callable]] = {
            event_type: [] for event_type in EventType
        }

    # Registration methods - one per event type for type safety

    def on_upload_finished(self, handler: EventHandler[UploadFinishedEvent]) -> None:
        """Register handler for part completion events."""
        self._handlers[EventType.UPLOAD_FINISHED].append(handler)

    def on_upload_assembled(
        self, handler: EventHandler[UploadAssembledEvent]
    ) -> None:
        """Register handler for multipart assembly events."""
        self._handlers[EventType.UPLOAD_ASSEMBLED].append(handler)

    def on_assembly_abandoned(
        self, handler: EventHandler[AssemblyAbandonedEvent]
    ) -> None:
        """Register handler for abandoned assembly events."""
        self._handlers[EventType.ASSEMBLY_ABANDONED].append(handler)

    def on_upload_placed(self, handler: EventHandler[UploadPlacedEvent]) -> None:
        """Register handler for placed upload events."""
        self._handlers[EventType.UPLOAD_PLACED].append(handler)

    def on_upload_placement_failed(
        self, handler: EventHandler[UploadPlacementFailedEvent]
    ) -> None:
        """Register handler for failed placement events."""
        self._handlers[EventType.UPLOAD_PLACEMENT_FAILED].append(handler)

    # Dispatch methods - one per event type for type safety

    async def dispatch_upload_finished(self, event: UploadFinishedEvent) -> None:
        await self._dispatch_event(event)

    async def dispatch_upload_assembled(self, event: UploadAssembledEvent) -> None:
        await self._dispatch_event(event)

    async def dispatch_assembly_abandoned(
        self, event: AssemblyAbandonedEvent
    ) -> None:
        await self._dispatch_event(event)

    async def dispatch_upload_placed(self, event: UploadPlacedEvent) -> None:
        await self._dispatch_event(event)

    async def dispatch_upload_placement_failed(
        self, event: UploadPlacementFailedEvent
    ) -> None:
        await self._dispatch_event(event)

    # Internal dispatch logic

    async def _dispatch_event(self, event: BaseEvent) -> None:
        """Dispatch event to all registered handlers and wait for them.

        Args:
            event: Event to dispatch
        """
        handlers = self._handlers.get(event.event_type, [])

        if not handlers:
            logger.debug(f"No handlers registered for event: {event.event_type}")
            return

        tasks = []
        scheduled = []
        for handler in handlers:
            try:
                if inspect.iscoroutinefunction(handler):
                    tasks.append(asyncio.create_task(handler(event)))
                else:
                    tasks.append(asyncio.create_task(asyncio.to_thread(handler, event)))
                scheduled.append(handler)
            except Exception as e:
                logger.error(
                    f"Error creating task for handler {handler.__name__}: {e}",
                    exc_info=True,
                )

        if tasks:
            results = await asyncio.gather(*tasks, return_exceptions=True)
            for i, result in enumerate(results):
                if isinstance(result, Exception):
                    handler_name = getattr(scheduled[i], "__name__", repr(scheduled[i]))
                    logger.error(
                        f"Handler {handler_name} failed for event {event.event_type}: {result}",
                        exc_info=result,
                    )

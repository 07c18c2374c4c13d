from contextlib import asynccontextmanager

from aiofiles import os as aioos
from fastapi import FastAPI

from .config import Settings, settings
from .events import EventDispatcher
from .finalize import AssemblyStore, AssemblyTracker, CompletionPipeline
from .logger import logger
from .routers import hooks, uploads
from .staging import StagingStore
from .watcher import SidecarWatcher


def build_pipeline(
    config: Settings, dispatcher: EventDispatcher
) -> CompletionPipeline:
    """Wire staging, tracker and pipeline from settings and subscribe to finish events"""
    staging = StagingStore(config.staging.directory, config.staging.sidecar_suffix)
    tracker = AssemblyTracker(
        staging,
        store=AssemblyStore(
            expire_after=config.assembly.expire_after,
            completed_ttl=config.assembly.completed_ttl,
        ),
        dispatcher=dispatcher,
        max_total_parts=config.limits.max_total_parts,
        verify_size=config.assembly.verify_size,
        chunk_size=config.assembly.copy_chunk_size,
    )
    pipeline = CompletionPipeline(
        staging,
        config.mount_path,
        tracker,
        max_number_probes=config.limits.max_number_probes,
        chunk_size=config.assembly.copy_chunk_size,
    )
    pipeline.register(dispatcher)
    return pipeline


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting upload assembler...")
    for name, path in (
        ("Staging", settings.staging.directory),
        ("Mount", settings.mount_path),
    ):
        if not await aioos.path.isdir(path):
            logger.warning(f"{name} directory {path} does not exist")

    dispatcher = EventDispatcher()
    pipeline = build_pipeline(settings, dispatcher)
    app.state.dispatcher = dispatcher
    app.state.pipeline = pipeline

    watcher = None
    if settings.completion_source == "watch":
        watcher = SidecarWatcher(
            pipeline.staging,
            dispatcher,
            poll_interval=settings.watch.poll_interval,
            stable_intervals=settings.watch.stable_intervals,
        )
        await watcher.start()

    logger.info(
        f"Startup complete. Staging: {settings.staging.directory}, "
        f"mount: {settings.mount_path}, completion source: {settings.completion_source}"
    )
    yield

    if watcher is not None:
        await watcher.stop()
    logger.info("Shutdown complete.")


app = FastAPI(lifespan=lifespan, title="Upload Assembler")

app.include_router(hooks.router)
app.include_router(uploads.router)

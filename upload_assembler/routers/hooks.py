"""
Receiver for tus server HTTP hooks.

Speaks the tusd v2 hook format: one POST per hook with the hook name in
`Type` and the upload in `Event.Upload`. pre-create may reject the upload,
post-finish starts the completion pipeline in the background.
"""

from typing import Dict, Optional

from fastapi import APIRouter, BackgroundTasks, Depends
from pydantic import BaseModel, ConfigDict, Field

from ..dependencies import get_dispatcher, get_pipeline, verify_hook_token
from ..events import EventDispatcher
from ..events.base import UploadFinishedEvent
from ..finalize import CompletionPipeline
from ..logger import logger

router = APIRouter(
    prefix="/hooks",
    tags=["hooks"],
    dependencies=[Depends(verify_hook_token)],
)


class HookUpload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    id: str = Field(default="", alias="ID")  # empty before the upload is created
    size: Optional[int] = Field(default=None, alias="Size")
    offset: int = Field(default=0, alias="Offset")
    metadata: Dict[str, Optional[str]] = Field(default_factory=dict, alias="MetaData")


class HookEvent(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    upload: HookUpload = Field(alias="Upload")


class HookRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    type: str = Field(alias="Type")
    event: HookEvent = Field(alias="Event")


class HookHTTPResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    status_code: Optional[int] = Field(default=None, alias="StatusCode")
    body: Optional[str] = Field(default=None, alias="Body")


class HookResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    reject_upload: Optional[bool] = Field(default=None, alias="RejectUpload")
    http_response: Optional[HookHTTPResponse] = Field(default=None, alias="HTTPResponse")


@router.post("", response_model=HookResponse, response_model_exclude_none=True)
async def handle_hook(
    hook: HookRequest,
    background_tasks: BackgroundTasks,
    pipeline: CompletionPipeline = Depends(get_pipeline),
    dispatcher: EventDispatcher = Depends(get_dispatcher),
):
    """Answer one tus server hook"""
    upload = hook.event.upload

    if hook.type == "pre-create":
        decision = await pipeline.on_upload_created(upload.metadata)
        if not decision.allowed:
            return HookResponse(
                reject_upload=True,
                http_response=HookHTTPResponse(
                    status_code=decision.status_code, body=decision.message
                ),
            )
        return HookResponse()

    if hook.type == "post-finish":
        if not upload.id:
            logger.warning("post-finish hook without upload id ignored")
            return HookResponse()
        logger.info(f"Upload {upload.id} finished ({upload.offset}/{upload.size} bytes)")
        background_tasks.add_task(
            dispatcher.dispatch_upload_finished,
            UploadFinishedEvent(upload_id=upload.id, metadata=upload.metadata),
        )
        return HookResponse()

    logger.debug(f"Ignoring {hook.type} hook for upload {upload.id or '<new>'}")
    return HookResponse()

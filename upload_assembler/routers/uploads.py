from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException

from ..dependencies import get_pipeline, verify_hook_token
from ..finalize import AssemblySummary, CompletionOutcome, CompletionPipeline

router = APIRouter(
    tags=["uploads"],
    dependencies=[Depends(verify_hook_token)],
)


@router.post("/uploads/check")
async def check_upload(
    metadata: Dict[str, Optional[str]],
    pipeline: CompletionPipeline = Depends(get_pipeline),
):
    """Check whether an upload with this metadata may be created"""
    decision = await pipeline.on_upload_created(metadata)
    if not decision.allowed:
        raise HTTPException(
            status_code=decision.status_code or 409, detail=decision.message
        )
    return {"allowed": True}


@router.post("/uploads/{upload_id}/complete", response_model=CompletionOutcome)
async def complete_upload(
    upload_id: str,
    metadata: Dict[str, Optional[str]],
    pipeline: CompletionPipeline = Depends(get_pipeline),
):
    """Run the completion pipeline for a finished upload and wait for the outcome"""
    return await pipeline.on_upload_complete(upload_id, metadata)


@router.get("/assemblies", response_model=List[AssemblySummary])
async def list_assemblies(pipeline: CompletionPipeline = Depends(get_pipeline)):
    """List multipart groups that are still collecting or were abandoned"""
    return pipeline.tracker.summaries()

import secrets
from typing import Annotated, Optional

from fastapi import Header, HTTPException, Request, status

from .config import settings
from .events import EventDispatcher
from .finalize import CompletionPipeline
from .logger import logger


def get_pipeline(request: Request) -> CompletionPipeline:
    return request.app.state.pipeline


def get_dispatcher(request: Request) -> EventDispatcher:
    return request.app.state.dispatcher


async def verify_hook_token(
    authorization: Annotated[Optional[str], Header()] = None,
) -> None:
    """Require `Authorization: Bearer <hook_token>` when a hook token is configured"""
    if not settings.hook_token:
        return

    expected = f"Bearer {settings.hook_token}"
    if authorization is None or not secrets.compare_digest(authorization, expected):
        logger.warning("Rejected hook request with missing or invalid token")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid hook token",
        )

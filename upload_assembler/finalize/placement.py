"""
Moving staged files to their destination.

A plain rename is atomic but only works within one filesystem. When staging
and destination live on different volumes the move degrades to copy then
delete. The copy goes to a hidden temporary name next to the destination and
is renamed into place, so the destination never shows a partial file. A crash
after that rename but before the source is deleted leaves the staging copy
behind; nothing here can make a cross-device move atomic.
"""

import errno
import shutil
import uuid
from pathlib import Path
from typing import Optional

import aiofiles
from aiofiles import os as aioos
from asyncer import asyncify

from ..logger import logger
from .errors import PlacementError
from .types import PlacementResult

DEFAULT_CHUNK_SIZE = 10 * 1024 * 1024  # 10MB


@asyncify
def _copystat_async(src: Path, dst: Path):
    """Asynchronously copy permission bits and timestamps."""
    shutil.copystat(src, dst)


async def copy_file(src: Path, dst: Path, chunk_size: int = DEFAULT_CHUNK_SIZE) -> None:
    """Stream src into dst through a temporary sibling of dst"""
    tmp_path = dst.with_name(f".{dst.name}.{uuid.uuid4().hex[:8]}.partial")
    try:
        async with aiofiles.open(src, "rb") as f_in:
            async with aiofiles.open(tmp_path, "wb") as f_out:
                while chunk := await f_in.read(chunk_size):
                    await f_out.write(chunk)
        try:
            await _copystat_async(src, tmp_path)
        except OSError as e:
            logger.warning(f"Could not copy file attributes of {src}: {e}")
        await aioos.rename(tmp_path, dst)
    except Exception:
        try:
            await aioos.remove(tmp_path)
        except FileNotFoundError:
            pass
        raise


async def move_file(src: Path, dst: Path, chunk_size: int = DEFAULT_CHUNK_SIZE) -> bool:
    """
    Move src to dst, falling back to copy and delete across filesystems.

    Returns:
        True when the copy fallback was used. A source that could not be
        removed after a complete copy is logged and left in place.

    Raises:
        PlacementError: the cross-device copy failed, src is left untouched
        OSError: the rename failed for any other reason
    """
    try:
        await aioos.rename(src, dst)
        return False
    except OSError as e:
        if e.errno != errno.EXDEV:
            raise

    logger.info(f"{src} and {dst} are on different devices, copying instead of renaming")
    try:
        await copy_file(src, dst, chunk_size)
    except Exception as e:
        raise PlacementError(f"Copy of {src} to {dst} failed: {e}") from e

    # Only reached once the destination is complete, a leftover source is
    # logged but does not make the move fail
    try:
        await aioos.remove(src)
    except OSError as e:
        logger.warning(f"Copied {src} to {dst} but could not remove the source: {e}")
    return True


async def place(
    staging_path: Path,
    destination_path: Path,
    sidecar_path: Optional[Path],
    keep_sidecar: bool,
    sidecar_suffix: str = ".json",
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> PlacementResult:
    """
    Move a staged blob to its destination and deal with its sidecar.

    The sidecar is moved next to the destination as <name><sidecar_suffix>
    when keep_sidecar is set, otherwise deleted. A failed sidecar step is
    logged and reported but never undoes the primary move: the client was
    already told the upload succeeded.
    """
    try:
        used_copy = await move_file(staging_path, destination_path, chunk_size)
    except Exception as e:
        logger.error(
            f"Failed to place {staging_path} at {destination_path}: {e}",
            exc_info=True,
        )
        return PlacementResult(
            success=False,
            destination=str(destination_path),
            error=f"{type(e).__name__}: {e}",
        )

    result = PlacementResult(
        success=True, destination=str(destination_path), used_copy_fallback=used_copy
    )
    logger.info(f"Placed {staging_path} at {destination_path}")

    if sidecar_path is None:
        return result

    try:
        if keep_sidecar:
            sidecar_destination = destination_path.with_name(
                destination_path.name + sidecar_suffix
            )
            await move_file(sidecar_path, sidecar_destination, chunk_size)
            result.sidecar_destination = str(sidecar_destination)
        else:
            await aioos.remove(sidecar_path)
    except FileNotFoundError:
        logger.warning(f"Sidecar {sidecar_path} was already gone")
    except Exception as e:
        logger.error(
            f"Placed {destination_path} but the sidecar step failed: {e}",
            exc_info=True,
        )
        result.sidecar_error = f"{type(e).__name__}: {e}"

    return result

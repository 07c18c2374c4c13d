"""
Filesystem access to the tus staging directory.
"""

import json
from pathlib import Path

import aiofiles
from aiofiles import os as aioos

from .types import StagedUpload


class StagingStore:
    """Resolves and manipulates `<id>` blobs and `<id><suffix>` sidecars."""

    def __init__(self, directory: Path, sidecar_suffix: str = ".json"):
        self.directory = Path(directory)
        self.sidecar_suffix = sidecar_suffix

    @staticmethod
    def validate_id(upload_id: str) -> str:
        """Reject ids that would escape the staging directory"""
        if (
            not upload_id
            or upload_id in (".", "..")
            or "/" in upload_id
            or "\\" in upload_id
            or "\x00" in upload_id
        ):
            raise ValueError(f"Invalid upload id: {upload_id!r}")
        return upload_id

    def blob_path(self, upload_id: str) -> Path:
        return self.directory / self.validate_id(upload_id)

    def sidecar_path(self, upload_id: str) -> Path:
        return self.directory / f"{self.validate_id(upload_id)}{self.sidecar_suffix}"

    def is_sidecar(self, path: Path) -> bool:
        return path.name.endswith(self.sidecar_suffix) and len(path.name) > len(
            self.sidecar_suffix
        )

    def upload_id_for_sidecar(self, path: Path) -> str:
        return path.name[: -len(self.sidecar_suffix)]

    async def read_sidecar(self, upload_id: str) -> StagedUpload:
        async with aiofiles.open(self.sidecar_path(upload_id), "r", encoding="utf-8") as f:
            content = await f.read()
        return StagedUpload.model_validate(json.loads(content))

    async def write_sidecar(self, staged: StagedUpload) -> None:
        """Rewrite a sidecar through a temporary file so readers never see half a document"""
        target = self.sidecar_path(staged.id)
        tmp_path = target.with_name(f".{target.name}.tmp")
        async with aiofiles.open(tmp_path, "w", encoding="utf-8") as f:
            await f.write(staged.model_dump_json(exclude_none=True))
        await aioos.replace(tmp_path, target)

    async def blob_size(self, upload_id: str) -> int:
        stat_result = await aioos.stat(self.blob_path(upload_id))
        return stat_result.st_size

    async def remove(self, upload_id: str) -> None:
        """Delete blob and sidecar, ignoring whichever is already gone"""
        for path in (self.blob_path(upload_id), self.sidecar_path(upload_id)):
            try:
                await aioos.remove(path)
            except FileNotFoundError:
                pass

"""
Shared fixtures: a temporary staging directory populated the way the tus
file store leaves it (blob + JSON sidecar) and an empty mount directory.
"""

import json
import tempfile
from pathlib import Path
from typing import Callable, Dict, Optional

import pytest

from upload_assembler.staging import StagingStore

StageUpload = Callable[..., Path]


@pytest.fixture
def temp_dir():
    """Create temporary directory for tests."""
    with tempfile.TemporaryDirectory(prefix="upload_assembler_test_") as temp_dir:
        yield Path(temp_dir)


@pytest.fixture
def staging_dir(temp_dir):
    path = temp_dir / "staging"
    path.mkdir()
    return path


@pytest.fixture
def mount_dir(temp_dir):
    path = temp_dir / "mount"
    path.mkdir()
    return path


@pytest.fixture
def staging(staging_dir):
    return StagingStore(staging_dir, ".json")


@pytest.fixture
def stage_upload(staging_dir) -> StageUpload:
    """Write a completed upload into staging, returns the blob path."""

    def _stage(
        upload_id: str,
        content: bytes,
        metadata: Optional[Dict[str, str]] = None,
        offset: Optional[int] = None,
    ) -> Path:
        blob_path = staging_dir / upload_id
        blob_path.write_bytes(content)
        sidecar = {
            "id": upload_id,
            "size": len(content),
            "offset": len(content) if offset is None else offset,
            "metadata": metadata or {},
            "creation_date": "2026-10-17T08:00:00.000Z",
        }
        (staging_dir / f"{upload_id}.json").write_text(json.dumps(sidecar))
        return blob_path

    return _stage

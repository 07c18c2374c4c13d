"""
Tests for the multipart assembly tracker.

Covers ordered concatenation independent of arrival order, exactly-once
consumption of a group, abandonment on missing parts and the per-group
bookkeeping rules (duplicates, limits, disagreeing part counts).
"""

import asyncio
import itertools
import json
import time

import pytest

from upload_assembler.events import EventDispatcher
from upload_assembler.finalize import (
    AssemblyState,
    AssemblyStore,
    AssemblyTracker,
    PartMetadata,
)

PARTS = [b"alpha-", b"bravo--", b"charlie---"]


def part_metadata(group_id: str, index: int, total: int, size=None, **extra) -> PartMetadata:
    raw = {
        "groupId": group_id,
        "partIndex": str(index),
        "totalParts": str(total),
        "originalFilename": "movie.mp4",
        "useOriginalFilename": "true",
        **extra,
    }
    if size is not None:
        raw["originalFileSizeBytes"] = str(size)
    return PartMetadata.from_raw(raw)


class TestAssemblyTracker:
    @pytest.fixture
    def tracker(self, staging):
        return AssemblyTracker(staging, store=AssemblyStore(), max_total_parts=8)

    def stage_group(self, stage_upload, group_id, parts=PARTS):
        """Stage every part as blob id <group>-p<index>."""
        total_size = sum(len(p) for p in parts)
        for index, content in enumerate(parts, start=1):
            stage_upload(
                f"{group_id}-p{index}",
                content,
                {"groupId": group_id, "partIndex": str(index), "totalParts": str(len(parts))},
            )
        return total_size

    @pytest.mark.asyncio
    @pytest.mark.parametrize("arrival", list(itertools.permutations([1, 2, 3])))
    async def test_order_independent_of_arrival(
        self, staging, stage_upload, staging_dir, arrival
    ):
        tracker = AssemblyTracker(staging, store=AssemblyStore())
        total_size = self.stage_group(stage_upload, "g1")

        results = []
        for index in arrival:
            results.append(
                await tracker.add_part(
                    f"g1-p{index}", part_metadata("g1", index, 3, size=total_size)
                )
            )

        assert [r.status for r in results] == ["pending", "pending", "assembled"]
        assembled = results[-1]
        assert assembled.anchor_id == "g1-p1"
        assert assembled.size == total_size
        assert (staging_dir / "g1-p1").read_bytes() == b"".join(PARTS)
        # Only the anchor and its sidecar remain
        assert sorted(p.name for p in staging_dir.iterdir()) == ["g1-p1", "g1-p1.json"]
        assert "g1" not in tracker.store

    @pytest.mark.asyncio
    async def test_anchor_sidecar_declares_full_size(self, tracker, stage_upload, staging_dir):
        total_size = self.stage_group(stage_upload, "g1")

        for index in (3, 1, 2):
            await tracker.add_part(f"g1-p{index}", part_metadata("g1", index, 3, size=total_size))

        sidecar = json.loads((staging_dir / "g1-p1.json").read_text())
        assert sidecar["size"] == total_size
        assert sidecar["offset"] == total_size
        assert sidecar["id"] == "g1-p1"
        assert sidecar["creation_date"] == "2026-10-17T08:00:00.000Z"

    @pytest.mark.asyncio
    async def test_undeclared_size_uses_observed_total(self, tracker, stage_upload, staging_dir):
        total_size = self.stage_group(stage_upload, "g1")

        for index in (1, 2, 3):
            result = await tracker.add_part(f"g1-p{index}", part_metadata("g1", index, 3))

        assert result.size == total_size
        assert json.loads((staging_dir / "g1-p1.json").read_text())["size"] == total_size

    @pytest.mark.asyncio
    async def test_duplicate_after_assembly_is_ignored(self, tracker, stage_upload, staging_dir):
        total_size = self.stage_group(stage_upload, "g1")
        for index in (2, 3, 1):
            await tracker.add_part(f"g1-p{index}", part_metadata("g1", index, 3, size=total_size))
        assembled_bytes = (staging_dir / "g1-p1").read_bytes()

        again = await tracker.add_part("g1-p3", part_metadata("g1", 3, 3, size=total_size))
        again_anchor = await tracker.add_part("g1-p1", part_metadata("g1", 1, 3, size=total_size))

        assert again.status == "ignored"
        assert again_anchor.status == "ignored"
        assert len(tracker.store) == 0
        assert (staging_dir / "g1-p1").read_bytes() == assembled_bytes

    @pytest.mark.asyncio
    async def test_redelivered_part_last_write_wins(self, tracker, stage_upload, staging_dir):
        stage_upload("g1-p1", b"first-")
        stage_upload("g1-p2-old", b"stale")
        stage_upload("g1-p2-new", b"fresh")

        await tracker.add_part("g1-p2-old", part_metadata("g1", 2, 2))
        pending = await tracker.add_part("g1-p2-new", part_metadata("g1", 2, 2))
        assert pending.status == "pending"
        assert tracker.store.get("g1").parts == {2: "g1-p2-new"}

        result = await tracker.add_part("g1-p1", part_metadata("g1", 1, 2))

        assert result.status == "assembled"
        assert (staging_dir / "g1-p1").read_bytes() == b"first-fresh"
        # The replaced blob is not ours to delete
        assert (staging_dir / "g1-p2-old").exists()

    @pytest.mark.asyncio
    async def test_missing_part_abandons_group(self, tracker, stage_upload, staging_dir):
        self.stage_group(stage_upload, "g1")
        (staging_dir / "g1-p2").unlink()

        await tracker.add_part("g1-p1", part_metadata("g1", 1, 3))
        await tracker.add_part("g1-p2", part_metadata("g1", 2, 3))
        result = await tracker.add_part("g1-p3", part_metadata("g1", 3, 3))

        assert result.status == "failed"
        assert "missing" in result.reason
        record = tracker.store.get("g1")
        assert record is not None
        assert record.state == AssemblyState.ABANDONED
        # Nothing was appended or deleted
        assert (staging_dir / "g1-p1").read_bytes() == PARTS[0]
        assert (staging_dir / "g1-p3").exists()

    @pytest.mark.asyncio
    async def test_abandoned_group_is_not_retried(self, tracker, stage_upload, staging_dir):
        self.stage_group(stage_upload, "g1", parts=[b"a", b"b"])
        (staging_dir / "g1-p2").unlink()
        await tracker.add_part("g1-p1", part_metadata("g1", 1, 2))
        await tracker.add_part("g1-p2", part_metadata("g1", 2, 2))

        stage_upload("g1-p2", b"b")
        result = await tracker.add_part("g1-p2", part_metadata("g1", 2, 2))

        assert result.status == "ignored"
        assert (staging_dir / "g1-p1").read_bytes() == b"a"

    @pytest.mark.asyncio
    async def test_size_mismatch_abandons_group(self, tracker, stage_upload, staging_dir):
        total_size = self.stage_group(stage_upload, "g1")

        for index in (1, 2):
            await tracker.add_part(f"g1-p{index}", part_metadata("g1", index, 3, size=total_size + 1))
        result = await tracker.add_part("g1-p3", part_metadata("g1", 3, 3, size=total_size + 1))

        assert result.status == "failed"
        assert "declares" in result.reason
        assert (staging_dir / "g1-p2").exists()

    @pytest.mark.asyncio
    async def test_size_mismatch_trusted_when_verification_disabled(
        self, staging, stage_upload, staging_dir
    ):
        tracker = AssemblyTracker(staging, verify_size=False)
        self.stage_group(stage_upload, "g1", parts=[b"ab", b"cd"])

        await tracker.add_part("g1-p1", part_metadata("g1", 1, 2, size=10))
        result = await tracker.add_part("g1-p2", part_metadata("g1", 2, 2, size=10))

        assert result.status == "assembled"
        assert json.loads((staging_dir / "g1-p1.json").read_text())["size"] == 10

    @pytest.mark.asyncio
    async def test_rejects_part_count_over_limit(self, tracker):
        result = await tracker.add_part("x", part_metadata("g1", 1, 9))

        assert result.status == "rejected"
        assert len(tracker.store) == 0

    @pytest.mark.asyncio
    async def test_rejects_index_outside_group(self, tracker):
        await tracker.add_part("g1-p1", part_metadata("g1", 1, 2))
        result = await tracker.add_part("g1-p5", part_metadata("g1", 5, 2))

        assert result.status == "rejected"
        assert tracker.store.get("g1").parts == {1: "g1-p1"}

    @pytest.mark.asyncio
    async def test_rejected_first_part_creates_no_record(self, tracker):
        result = await tracker.add_part("g1-p4", part_metadata("g1", 4, 3))

        assert result.status == "rejected"
        assert "g1" not in tracker.store

    @pytest.mark.asyncio
    async def test_first_part_fixes_total(self, tracker, stage_upload, caplog):
        self.stage_group(stage_upload, "g1", parts=[b"a", b"b"])

        await tracker.add_part("g1-p1", part_metadata("g1", 1, 2))
        result = await tracker.add_part("g1-p2", part_metadata("g1", 2, 4))

        assert result.status == "assembled"
        assert "keeping 2 from the first part" in caplog.text

    @pytest.mark.asyncio
    async def test_non_multipart_metadata_raises(self, tracker):
        with pytest.raises(ValueError):
            await tracker.add_part("x", PartMetadata.from_raw({"groupId": "g1"}))

    @pytest.mark.asyncio
    async def test_concurrent_groups(self, tracker, stage_upload, staging_dir):
        groups = {
            "ga": [b"1", b"22", b"333"],
            "gb": [b"xx", b"y"],
        }
        calls = []
        for group_id, parts in groups.items():
            self.stage_group(stage_upload, group_id, parts=parts)
            for index in range(len(parts), 0, -1):
                calls.append(
                    tracker.add_part(
                        f"{group_id}-p{index}", part_metadata(group_id, index, len(parts))
                    )
                )

        results = await asyncio.gather(*calls)

        assert sorted(r.group_id for r in results if r.status == "assembled") == ["ga", "gb"]
        assert (staging_dir / "ga-p1").read_bytes() == b"122333"
        assert (staging_dir / "gb-p1").read_bytes() == b"xxy"

    @pytest.mark.asyncio
    async def test_concurrent_redelivery_assembles_once(self, tracker, stage_upload, staging_dir):
        self.stage_group(stage_upload, "g1", parts=[b"a", b"b"])
        await tracker.add_part("g1-p1", part_metadata("g1", 1, 2))

        results = await asyncio.gather(
            tracker.add_part("g1-p2", part_metadata("g1", 2, 2)),
            tracker.add_part("g1-p2", part_metadata("g1", 2, 2)),
        )

        assert sorted(r.status for r in results) == ["assembled", "ignored"]
        assert (staging_dir / "g1-p1").read_bytes() == b"ab"

    @pytest.mark.asyncio
    async def test_dispatches_events(self, staging, stage_upload, staging_dir):
        dispatcher = EventDispatcher()
        assembled, abandoned = [], []
        dispatcher.on_upload_assembled(assembled.append)
        dispatcher.on_assembly_abandoned(abandoned.append)
        tracker = AssemblyTracker(staging, dispatcher=dispatcher)

        self.stage_group(stage_upload, "ok", parts=[b"a", b"b"])
        await tracker.add_part("ok-p1", part_metadata("ok", 1, 2))
        await tracker.add_part("ok-p2", part_metadata("ok", 2, 2))

        stage_upload("bad-p1", b"a")
        await tracker.add_part("bad-p1", part_metadata("bad", 1, 2))
        await tracker.add_part("bad-p2", part_metadata("bad", 2, 2))

        assert [e.anchor_id for e in assembled] == ["ok-p1"]
        assert [e.group_id for e in abandoned] == ["bad"]
        assert abandoned[0].orphaned_ids == ["bad-p1", "bad-p2"]

    @pytest.mark.asyncio
    async def test_summaries(self, tracker):
        await tracker.add_part("g1-p2", part_metadata("g1", 2, 3))

        summaries = tracker.summaries()

        assert len(summaries) == 1
        assert summaries[0].group_id == "g1"
        assert summaries[0].received == [2]
        assert summaries[0].state == AssemblyState.COLLECTING


class TestAssemblyStore:
    @pytest.mark.asyncio
    async def test_stale_records_expire(self, staging, caplog):
        store = AssemblyStore(expire_after=60)
        tracker = AssemblyTracker(staging, store=store)
        await tracker.add_part("g1-p1", part_metadata("g1", 1, 2))

        store.get("g1").updated_at = time.time() - 120

        assert store.get("g1") is None
        assert "orphaned parts: ['g1-p1']" in caplog.text

    def test_completed_groups_forgotten_after_ttl(self):
        store = AssemblyStore(completed_ttl=60)
        store.mark_completed("g1")
        assert store.is_completed("g1")

        store._completed["g1"] = time.time() - 120

        assert not store.is_completed("g1")

    def test_lock_is_per_group(self):
        store = AssemblyStore()

        assert store.lock("a") is store.lock("a")
        assert store.lock("a") is not store.lock("b")

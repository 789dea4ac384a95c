"""Tests for FileManager and TrackedFileManager over the local disk backend."""

from __future__ import annotations

from typing import Any

import pytest

from ledgerfs.fs.config import TrackingConfig
from ledgerfs.fs.exceptions import ErrorCode
from ledgerfs.fs.types import FolderItem, MoveOptions, UploadOptions
from ledgerfs.hashing import compute_file_hash
from ledgerfs.manager import (
    ExtractionProvider,
    FileManager,
    RefSpec,
    TrackedFileManager,
)
from ledgerfs.models.files import FileStatus
from ledgerfs.tracking.database import open_engine, sqlite_url
from ledgerfs.tracking.metadata import FindOrphanedOptions, MetadataService
from ledgerfs.tracking.refs import RemoveRefsCriteria


@pytest.fixture
async def manager(disk, async_engine) -> TrackedFileManager:
    mgr = TrackedFileManager(disk, async_engine, TrackingConfig(await_recording=True))
    await mgr.initialize()
    return mgr


class KeywordExtractor:
    def __init__(self) -> None:
        self.calls: list[tuple[str, str]] = []

    async def extract(self, data: bytes, *, filename: str, mime_type: str) -> dict[str, Any]:
        self.calls.append((filename, mime_type))
        return {"words": len(data.split()), "first": data.split()[0].decode()}


class BrokenExtractor:
    async def extract(self, data: bytes, *, filename: str, mime_type: str) -> dict[str, Any]:
        raise ValueError("unreadable")


# ---------------------------------------------------------------------------
# FileManager
# ---------------------------------------------------------------------------


class TestFileManager:
    async def test_context_manager(self, disk):
        async with FileManager(disk) as fm:
            assert fm.is_initialized
            assert fm.provider == "local"

    async def test_write_and_read_text(self, disk):
        fm = FileManager(disk)
        written = await fm.write_file("/notes/a.txt", "héllo")
        assert written.success
        assert written.data.size == len("héllo".encode())

        raw = await fm.read_file("/notes/a.txt")
        assert raw.data == "héllo".encode()
        text = await fm.read_file("/notes/a.txt", encoding="utf-8")
        assert text.data == "héllo"

    async def test_read_undecodable(self, disk):
        fm = FileManager(disk)
        await fm.write_file("/bin.dat", b"\xff\xfe\xfd")
        result = await fm.read_file("/bin.dat", encoding="utf-8")
        assert result.success is False
        assert "Cannot decode" in result.error

    async def test_copy_file(self, disk):
        fm = FileManager(disk)
        await fm.write_file("/a.txt", b"copy me")
        copied = await fm.copy_file("/a.txt", "/b/c.txt")
        assert copied.success
        assert (await fm.read_file("/b/c.txt")).data == b"copy me"
        assert await fm.exists("/a.txt")

    async def test_copy_missing(self, disk):
        result = await FileManager(disk).copy_file("/nope.txt", "/x.txt")
        assert result.success is False
        assert result.error_code is ErrorCode.FILE_NOT_FOUND

    async def test_ensure_directory(self, disk):
        fm = FileManager(disk)
        first = await fm.ensure_directory("/docs")
        second = await fm.ensure_directory("/docs")
        assert first.success and second.success
        assert isinstance(second.data, FolderItem)

    async def test_ensure_directory_over_file(self, disk):
        fm = FileManager(disk)
        await fm.write_file("/docs", b"x")
        result = await fm.ensure_directory("/docs")
        assert result.success is False


# ---------------------------------------------------------------------------
# Tracked mutations
# ---------------------------------------------------------------------------


class TestTrackedUpload:
    async def test_records_hash_size_and_type(self, manager):
        result = await manager.upload_file(b"hello", "/docs/a.txt")
        assert result.success
        record = await manager.metadata.find_by_path("/docs/a.txt")
        assert record.file_hash == compute_file_hash(b"hello")
        assert record.file_size == 5
        assert record.file_type == "text/plain"
        assert record.storage_type == "local"
        assert await manager.get_stored_hash("/docs/a.txt") == record.file_hash
        assert await manager.get_stored_size("/docs/a.txt") == 5

    async def test_skip_hash(self, manager):
        await manager.upload_file(b"hello", "/a.txt", skip_hash=True)
        assert await manager.get_stored_hash("/a.txt") is None
        assert await manager.get_stored_size("/a.txt") == 5

    async def test_path_source_hashed(self, manager, tmp_path):
        src = tmp_path / "src.bin"
        src.write_bytes(b"from disk")
        await manager.upload_file(src, "/copy.bin")
        assert await manager.get_stored_hash("/copy.bin") == compute_file_hash(b"from disk")
        assert await manager.get_stored_size("/copy.bin") == len(b"from disk")

    async def test_stream_source_size_from_item(self, manager):
        await manager.upload_file(iter([b"ab", b"cd"]), "/s.bin")
        assert await manager.get_stored_hash("/s.bin") is None
        assert await manager.get_stored_size("/s.bin") == 4

    async def test_upload_metadata_stored(self, manager):
        await manager.upload_file(b"x", "/m.txt", UploadOptions(metadata={"k": "v"}))
        record = await manager.metadata.find_by_path("/m.txt")
        assert record.file_data == '{"k": "v"}'

    async def test_failed_upload_not_recorded(self, manager):
        await manager.upload_file(b"one", "/a.txt")
        result = await manager.upload_file(b"two", "/a.txt")
        assert result.error_code is ErrorCode.FILE_EXISTS
        assert await manager.get_stored_hash("/a.txt") == compute_file_hash(b"one")

    async def test_overwrite_refreshes_hash(self, manager):
        await manager.upload_file(b"one", "/a.txt")
        await manager.upload_file(b"two", "/a.txt", UploadOptions(overwrite=True))
        assert await manager.get_stored_hash("/a.txt") == compute_file_hash(b"two")


class TestTrackedMutations:
    async def test_create_and_remove_directory(self, manager):
        await manager.create_directory("/docs")
        record = await manager.metadata.find_by_path("/docs")
        assert record.is_directory

        await manager.upload_file(b"x", "/docs/a.txt")
        await manager.remove_directory("/docs", recursive=True)
        assert await manager.metadata.find_by_storage_type() == []

    async def test_download_stamps_access(self, manager):
        await manager.upload_file(b"x", "/a.txt")
        before = await manager.metadata.find_by_path("/a.txt")
        result = await manager.download_file("/a.txt")
        assert result.data == b"x"
        after = await manager.metadata.find_by_path("/a.txt")
        assert after.changed_at >= before.changed_at

    async def test_move(self, manager):
        await manager.upload_file(b"x", "/a.txt")
        record = await manager.metadata.find_by_path("/a.txt")
        await manager.move_item("/a.txt", "/archive/b.txt")
        moved = await manager.get_file_by_id(record.id)
        assert moved.file_path == "/archive/b.txt"

    async def test_move_over_directory_forgets_its_contents(self, manager):
        await manager.upload_file(b"c", "/d/child.txt")
        await manager.upload_file(b"x", "/x.txt")
        result = await manager.move_item("/x.txt", "/d", MoveOptions(overwrite=True))
        assert result.success
        assert not await manager.exists("/d/child.txt")
        assert await manager.metadata.find_by_path("/d/child.txt") is None
        orphans = await manager.find_orphaned_files()
        assert [o.record.file_path for o in orphans] == ["/d"]

    async def test_rename_folder_moves_children(self, manager):
        await manager.create_directory("/docs")
        await manager.upload_file(b"x", "/docs/a.txt")
        await manager.rename_folder("/docs", "papers")
        assert await manager.metadata.find_by_path("/papers/a.txt") is not None
        assert await manager.metadata.find_by_path("/docs/a.txt") is None

    async def test_rename_file(self, manager):
        await manager.upload_file(b"x", "/a.txt")
        await manager.rename_file("/a.txt", "b.txt")
        assert await manager.metadata.find_by_path("/b.txt") is not None

    async def test_delete(self, manager):
        await manager.upload_file(b"x", "/a.txt")
        await manager.delete_file("/a.txt")
        assert await manager.metadata.find_by_path("/a.txt") is None

    async def test_failed_mutation_leaves_record(self, manager):
        await manager.upload_file(b"x", "/a.txt")
        result = await manager.move_item("/missing.txt", "/a.txt")
        assert result.success is False
        assert await manager.metadata.find_by_path("/a.txt") is not None


class TestChangeDetection:
    async def test_untracked(self, manager):
        assert await manager.has_file_changed("/nope.txt") is None

    async def test_unchanged_then_changed_externally(self, manager, disk):
        await manager.upload_file(b"v1", "/a.txt")
        assert await manager.has_file_changed("/a.txt") is False

        # bypass the manager so the record keeps the old hash
        await disk.upload_file(b"v2", "/a.txt", UploadOptions(overwrite=True))
        assert await manager.has_file_changed("/a.txt") is True

    async def test_no_stored_hash_counts_as_changed(self, manager):
        await manager.upload_file(b"v1", "/a.txt", skip_hash=True)
        assert await manager.has_file_changed("/a.txt") is True

    async def test_tracked_but_physically_gone(self, manager, disk):
        await manager.upload_file(b"v1", "/a.txt")
        await disk.delete_file("/a.txt")
        assert await manager.has_file_changed("/a.txt") is None


# ---------------------------------------------------------------------------
# References & orphans
# ---------------------------------------------------------------------------


class TestRefs:
    async def test_add_and_remove(self, manager):
        await manager.upload_file(b"x", "/a.txt")
        record = await manager.metadata.find_by_path("/a.txt")
        ref_id = await manager.add_ref(record.id, "post", "1", label="cover")
        assert ref_id.startswith("ref_")
        assert [r.label for r in await manager.get_refs(record.id)] == ["cover"]

        status = await manager.get_file_with_status(record.id)
        assert status.is_orphaned is False
        assert await manager.remove_ref(record.id, ref_id) == 0
        assert (await manager.get_file_with_status(record.id)).is_orphaned is True

    async def test_remove_by_criteria(self, manager):
        a = (await manager.upload_file_with_ref(b"a", "/a.txt", RefSpec("post", "1"))).data
        b = (await manager.upload_file_with_ref(b"b", "/b.txt", RefSpec("post", "1"))).data
        assert await manager.remove_refs_by_criteria(RemoveRefsCriteria(entity_id="1")) == 2
        files = await manager.get_files_by_ids([a.file_id, b.file_id])
        assert all(f.ref_count == 0 for f in files)

    async def test_soft_delete_file(self, manager):
        await manager.upload_file(b"x", "/a.txt")
        record = await manager.metadata.find_by_path("/a.txt")
        assert await manager.soft_delete_file(record.id) is True
        assert await manager.soft_delete_file("missing") is False
        assert await manager.find_orphaned_files() == []


class TestOrphanCleanup:
    async def test_cleanup_deletes_file_and_record(self, manager):
        await manager.upload_file(b"x", "/orphan.txt")
        kept = (await manager.upload_file_with_ref(b"y", "/kept.txt", RefSpec("post", "1"))).data

        result = await manager.cleanup_orphaned_files()
        assert result.cleaned == 1
        assert result.errors == []
        assert not await manager.exists("/orphan.txt")
        assert await manager.metadata.find_by_path("/orphan.txt") is None
        assert await manager.exists("/kept.txt")
        assert await manager.get_file_by_id(kept.file_id) is not None

    async def test_soft_delete_only(self, manager):
        await manager.upload_file(b"x", "/orphan.txt")
        result = await manager.cleanup_orphaned_files(soft_delete_only=True)
        assert result.cleaned == 1
        assert await manager.exists("/orphan.txt")
        record = await manager.metadata.find_by_path("/orphan.txt")
        assert record.status == FileStatus.SOFT_DELETED.value
        assert (await manager.cleanup_orphaned_files()).cleaned == 0

    async def test_keep_physical_files(self, manager):
        await manager.upload_file(b"x", "/orphan.txt")
        result = await manager.cleanup_orphaned_files(delete_physical_files=False)
        assert result.cleaned == 1
        assert await manager.exists("/orphan.txt")
        assert await manager.metadata.find_by_path("/orphan.txt") is None

    async def test_physical_file_already_gone(self, manager, disk):
        await manager.upload_file(b"x", "/orphan.txt")
        await disk.delete_file("/orphan.txt")
        result = await manager.cleanup_orphaned_files()
        assert result.cleaned == 1
        assert result.errors == []

    async def test_other_storage_type_leaves_backend_alone(self, manager, async_engine, disk):
        await disk.upload_file(b"local", "/shared.txt")
        drive_records = MetadataService(async_engine, "google_drive")
        await drive_records.record_upload("/shared.txt")

        result = await manager.cleanup_orphaned_files(
            FindOrphanedOptions(storage_type="google_drive")
        )
        assert result.cleaned == 1
        assert await disk.exists("/shared.txt")

    async def test_folders_only_when_asked(self, manager):
        await manager.create_directory("/empty")
        assert (await manager.cleanup_orphaned_files()).cleaned == 0
        result = await manager.cleanup_orphaned_files(FindOrphanedOptions(include_folders=True))
        assert result.cleaned == 1
        assert not await manager.exists("/empty")


class TestVerification:
    async def test_present(self, manager):
        await manager.upload_file(b"x", "/a.txt")
        record = await manager.metadata.find_by_path("/a.txt")
        assert await manager.verify_file_existence(record.id) is True
        assert (await manager.get_file_by_id(record.id)).storage_verified_at is not None

    async def test_missing(self, manager, disk):
        await manager.upload_file(b"x", "/a.txt")
        record = await manager.metadata.find_by_path("/a.txt")
        await disk.delete_file("/a.txt")
        assert await manager.verify_file_existence(record.id) is False
        assert (await manager.get_file_by_id(record.id)).status == FileStatus.MISSING.value

    async def test_unknown_record(self, manager):
        assert await manager.verify_file_existence("missing") is None


# ---------------------------------------------------------------------------
# Upload helpers
# ---------------------------------------------------------------------------


class TestUploadWithRef:
    async def test_attaches_ref(self, manager):
        result = await manager.upload_file_with_ref(
            b"x",
            "/uploads/photo.png",
            RefSpec("post", "42", visibility="public"),
            scope_id="tenant-1",
            uploaded_by="user-7",
        )
        assert result.success
        tracked = result.data
        assert tracked.item.name == "photo.png"
        assert tracked.ref_id is not None

        record = await manager.get_file_by_id(tracked.file_id)
        assert record.scope_id == "tenant-1"
        assert record.uploaded_by == "user-7"
        assert record.original_filename == "photo.png"
        refs = await manager.get_refs(tracked.file_id)
        assert refs[0].created_by == "user-7"
        assert refs[0].visibility == "public"

    async def test_without_ref(self, manager):
        result = await manager.upload_file_with_ref(b"x", "/a.txt", original_filename="A.TXT")
        assert result.data.ref_id is None
        record = await manager.get_file_by_id(result.data.file_id)
        assert record.original_filename == "A.TXT"

    async def test_upload_failure(self, manager):
        await manager.upload_file(b"x", "/a.txt")
        result = await manager.upload_file_with_ref(b"y", "/a.txt", RefSpec("post", "1"))
        assert result.success is False
        assert result.error_code is ErrorCode.FILE_EXISTS


class TestUploadAndExtract:
    async def test_extraction_stored(self, manager):
        extractor = KeywordExtractor()
        assert isinstance(extractor, ExtractionProvider)
        result = await manager.upload_and_extract(
            b"alpha beta gamma", "/doc.txt", provider=extractor
        )
        assert result.success
        assert extractor.calls == [("doc.txt", "text/plain")]
        extraction = result.data.extraction
        assert extraction.source == "KeywordExtractor"
        assert extraction.data == {"words": 3, "first": "alpha"}
        data = await manager.metadata.get_file_data("/doc.txt")
        assert data.merged_data == {"words": 3, "first": "alpha"}

    async def test_default_provider(self, disk, async_engine):
        mgr = TrackedFileManager(
            disk,
            async_engine,
            TrackingConfig(await_recording=True),
            extraction_provider=KeywordExtractor(),
        )
        result = await mgr.upload_and_extract(b"one two", "/d.txt", source="keywords")
        assert result.data.extraction.source == "keywords"

    async def test_failing_provider_keeps_upload(self, manager, caplog):
        result = await manager.upload_and_extract(b"x", "/d.txt", provider=BrokenExtractor())
        assert result.success
        assert result.data.extraction is None
        assert await manager.exists("/d.txt")
        assert "Extraction failed for /d.txt" in caplog.text

    async def test_manual_extractions(self, manager):
        await manager.upload_file(b"x", "/d.txt")
        first = await manager.add_extraction("/d.txt", {"a": 1}, source="manual")
        assert await manager.remove_extraction("/d.txt", first.id) is True
        assert await manager.remove_extraction("/d.txt", first.id) is False


# ---------------------------------------------------------------------------
# Recording modes
# ---------------------------------------------------------------------------


class TestRecordingModes:
    async def test_background_recording_drains(self, disk, async_engine):
        mgr = TrackedFileManager(disk, async_engine)
        await mgr.initialize()
        await mgr.upload_file(b"x", "/a.txt")
        await mgr.drain()
        assert mgr.recorder.pending == 0
        assert await mgr.metadata.find_by_path("/a.txt") is not None

    async def test_close_drains(self, disk, async_engine):
        mgr = TrackedFileManager(disk, async_engine)
        await mgr.initialize()
        await mgr.upload_file(b"x", "/a.txt")
        await mgr.close()
        assert await mgr.metadata.find_by_path("/a.txt") is not None

    async def test_per_call_override(self, disk, async_engine):
        mgr = TrackedFileManager(disk, async_engine)
        await mgr.upload_file(b"x", "/a.txt", await_recording=True)
        assert mgr.recorder.pending == 0
        assert await mgr.metadata.find_by_path("/a.txt") is not None

    async def test_tracking_disabled(self, disk, async_engine):
        mgr = TrackedFileManager(disk, async_engine, TrackingConfig(enabled=False))
        await mgr.initialize()
        uploaded = await mgr.upload_file_with_ref(b"x", "/a.txt", RefSpec("post", "1"))
        assert uploaded.success
        assert uploaded.data.file_id is None
        assert await mgr.exists("/a.txt")
        assert await mgr.metadata.find_by_path("/a.txt") is None

    async def test_downloads_not_tracked(self, disk, async_engine):
        mgr = TrackedFileManager(
            disk, async_engine, TrackingConfig(await_recording=True, track_downloads=False)
        )
        await mgr.upload_file(b"x", "/a.txt")
        before = await mgr.metadata.find_by_path("/a.txt")
        await mgr.download_file("/a.txt")
        after = await mgr.metadata.find_by_path("/a.txt")
        assert after.changed_at == before.changed_at

    async def test_metadata_failure_does_not_fail_operation(self, disk, empty_engine, caplog):
        mgr = TrackedFileManager(
            disk, empty_engine, TrackingConfig(await_recording=True, max_attempts=1)
        )
        mgr.metadata.auto_migrate = False
        result = await mgr.upload_file(b"x", "/a.txt")
        assert result.success
        assert mgr.recorder.failures == 1
        assert "Giving up on metadata write record_upload" in caplog.text

    async def test_unreachable_store_does_not_block_startup(self, disk, tmp_path, caplog):
        engine = open_engine(sqlite_url(tmp_path / "no" / "such" / "dir" / "meta.db"))
        try:
            async with TrackedFileManager(
                disk, engine, TrackingConfig(await_recording=True, max_attempts=1)
            ) as mgr:
                result = await mgr.upload_file(b"x", "/a.txt")
                assert result.success
                assert await mgr.exists("/a.txt")
        finally:
            await engine.dispose()
        assert "Metadata store unavailable" in caplog.text

import io
import os
import threading

import pytest

from clipstream.context import RequestContext
from clipstream.core.errors import (
    ArtifactExists,
    AssemblyFailure,
    ChunkTooLarge,
    ChunkWriteFailure,
    IncompleteUpload,
    InvalidChunkOrdinal,
    InvalidUploadRequest,
    SessionConflict,
    SizeMismatch,
    UploadSessionNotFound,
    UploadTooLarge,
)
from clipstream.config import SESSION_MANIFEST
from clipstream.core.uploads import SessionLocks, publish_exclusive, session_name_for
from clipstream.models.upload import UploadSession

from conftest import pattern_bytes


def split(data: bytes, chunk_size: int):
    return [data[i:i + chunk_size] for i in range(0, len(data), chunk_size)] or [b""]


def send_chunk(manager, ctx, data, n, total, filename="movie.mp4", size=None):
    return manager.receiver.receive(io.BytesIO(data), n, total, filename, size, ctx)


def upload_all(manager, ctx, data, chunk_size=1000, filename="movie.mp4", order=None):
    chunks = split(data, chunk_size)
    order = order or range(1, len(chunks) + 1)
    for n in order:
        send_chunk(manager, ctx, chunks[n - 1], n, len(chunks), filename, len(data))
    return len(chunks)


def published(cfg):
    return sorted(
        name for name in os.listdir(cfg.data_dir)
        if not name.startswith(".") and name != "thumbnails"
    )


class TestChunkReceiver:
    def test_first_chunk_creates_session(self, manager, ctx):
        receipt = send_chunk(manager, ctx, b"a" * 10, 1, 3, size=30)
        assert receipt.success
        assert receipt.filename == "movie.mp4"
        assert receipt.size == 10
        assert receipt.received_count == 1

        session = manager.store.load_session("movie.mp4")
        assert session.total_chunks == 3
        assert session.declared_file_size == 30
        assert session.storage_name.endswith("_movie.mp4")

    def test_receipt_serializes_with_client_field_names(self, manager, ctx):
        receipt = send_chunk(manager, ctx, b"a", 1, 1, size=1)
        payload = receipt.model_dump(by_alias=True)
        assert payload["chunkNumber"] == 1
        assert payload["totalChunks"] == 1
        assert payload["receivedCount"] == 1

    def test_resending_a_chunk_replaces_it(self, manager, ctx):
        send_chunk(manager, ctx, b"old-bytes!", 2, 3, size=30)
        receipt = send_chunk(manager, ctx, b"new-bytes!", 2, 3, size=30)
        assert receipt.received_count == 1

        with open(manager.store.chunk_path("movie.mp4", 2), "rb") as f:
            assert f.read() == b"new-bytes!"

    @pytest.mark.parametrize("n", [0, 4, -1])
    def test_ordinal_out_of_range(self, manager, ctx, n):
        with pytest.raises(InvalidChunkOrdinal):
            send_chunk(manager, ctx, b"x", n, 3, size=3)
        assert manager.store.list_sessions() == []

    def test_total_chunks_must_be_positive(self, manager, ctx):
        with pytest.raises(InvalidUploadRequest):
            send_chunk(manager, ctx, b"x", 1, 0, size=1)

    def test_negative_size_rejected(self, manager, ctx):
        with pytest.raises(InvalidUploadRequest):
            send_chunk(manager, ctx, b"x", 1, 1, size=-1)

    def test_declared_size_over_limit(self, manager, ctx, cfg):
        with pytest.raises(UploadTooLarge):
            send_chunk(manager, ctx, b"x", 1, 1, size=cfg.max_upload_bytes + 1)

    def test_chunk_over_limit_is_not_stored(self, manager, ctx, cfg):
        data = b"x" * (cfg.max_chunk_bytes + 1)
        with pytest.raises(ChunkTooLarge) as exc:
            send_chunk(manager, ctx, data, 1, 1, size=len(data))
        assert exc.value.status_code == 413
        assert manager.store.received_chunks("movie.mp4") == []
        session_dir = manager.store.session_dir("movie.mp4")
        assert [e for e in os.listdir(session_dir) if e.startswith(".chunk_tmp_")] == []

    def test_mismatched_total_chunks_conflicts(self, manager, ctx):
        send_chunk(manager, ctx, b"a", 1, 3, size=3)
        with pytest.raises(SessionConflict) as exc:
            send_chunk(manager, ctx, b"b", 2, 4, size=3)
        assert exc.value.details["field"] == "totalChunks"

    def test_mismatched_file_size_conflicts(self, manager, ctx):
        send_chunk(manager, ctx, b"a", 1, 3, size=3)
        with pytest.raises(SessionConflict) as exc:
            send_chunk(manager, ctx, b"b", 2, 3, size=4)
        assert exc.value.details["field"] == "fileSize"

    def test_unsafe_name_maps_to_sanitized_session(self, manager, ctx):
        receipt = send_chunk(manager, ctx, b"a", 1, 1, filename="my clip (1).mp4", size=1)
        assert receipt.filename == "my_clip__1_.mp4"
        assert session_name_for("my clip (1).mp4") == "my_clip__1_.mp4"

    def test_status_reports_missing(self, manager, ctx):
        send_chunk(manager, ctx, b"a", 1, 3, size=3)
        send_chunk(manager, ctx, b"c", 3, 3, size=3)
        status = manager.receiver.status("movie.mp4")
        assert status.received_chunks == [1, 3]
        assert status.missing_chunks == [2]
        assert not status.complete

    def test_status_unknown_session(self, manager):
        with pytest.raises(UploadSessionNotFound):
            manager.receiver.status("nothing.mp4")

    def test_concurrent_chunks_share_one_session(self, manager, cfg):
        data = pattern_bytes(8000, seed=4)
        chunks = split(data, 1000)
        total = len(chunks)
        receipts, errors = [], []
        barrier = threading.Barrier(total)

        def worker(n):
            barrier.wait()
            try:
                receipts.append(send_chunk(manager, RequestContext(f"c{n}"), chunks[n - 1], n, total, size=len(data)))
            except Exception as e:  # noqa: BLE001
                errors.append(e)

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(1, total + 1)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert len(receipts) == total
        session_dir = manager.store.session_dir("movie.mp4")
        entries = os.listdir(session_dir)
        assert entries.count(SESSION_MANIFEST) == 1
        assert [e for e in entries if e.startswith(".")] == []
        assert manager.store.received_chunks("movie.mp4") == list(range(1, total + 1))

        result = manager.finalizer.finalize("movie.mp4", total, len(data), RequestContext("fin"))
        with open(os.path.join(cfg.data_dir, result.filename), "rb") as f:
            assert f.read() == data

    def test_second_manifest_yields_to_the_first(self, manager):
        first = UploadSession(
            session_name="movie.mp4", client_filename="movie.mp4",
            storage_name="1_movie.mp4", total_chunks=2, declared_file_size=10,
        )
        late = first.model_copy(update={"storage_name": "2_movie.mp4"})

        assert manager.store.create_session(first).storage_name == "1_movie.mp4"
        assert manager.store.create_session(late).storage_name == "1_movie.mp4"
        assert manager.store.load_session("movie.mp4").storage_name == "1_movie.mp4"
        assert os.listdir(manager.store.session_dir("movie.mp4")) == [SESSION_MANIFEST]

    def test_unusable_chunk_dir_is_a_write_failure(self, manager, ctx, cfg):
        os.rmdir(cfg.chunk_dir)
        with open(cfg.chunk_dir, "wb") as f:
            f.write(b"not a directory")

        with pytest.raises(ChunkWriteFailure) as exc:
            send_chunk(manager, ctx, b"abc", 1, 1, size=3)
        assert exc.value.status_code == 500
        assert exc.value.details == {"filename": "movie.mp4", "chunkNumber": 1}
        assert published(cfg) == []

    def test_failed_chunk_write_keeps_earlier_chunks(self, manager, ctx, monkeypatch):
        send_chunk(manager, ctx, b"first", 1, 2, size=10)

        def broken_fsync(fd):
            raise OSError(28, "No space left on device")

        monkeypatch.setattr(os, "fsync", broken_fsync)
        with pytest.raises(ChunkWriteFailure):
            send_chunk(manager, ctx, b"secnd", 2, 2, size=10)
        monkeypatch.undo()

        session_dir = manager.store.session_dir("movie.mp4")
        assert manager.store.received_chunks("movie.mp4") == [1]
        assert [e for e in os.listdir(session_dir) if e.startswith(".chunk_tmp_")] == []
        with open(manager.store.chunk_path("movie.mp4", 1), "rb") as f:
            assert f.read() == b"first"


class TestUploadFinalizer:
    def test_roundtrip_is_byte_exact(self, manager, ctx, cfg):
        data = pattern_bytes(4500)
        total = upload_all(manager, ctx, data, chunk_size=1000)
        assert total == 5

        result = manager.finalizer.finalize("movie.mp4", total, len(data), ctx)
        assert result.success
        assert result.size == 4500
        assert result.filename.endswith("_movie.mp4")

        with open(os.path.join(cfg.data_dir, result.filename), "rb") as f:
            assert f.read() == data
        assert manager.store.list_sessions() == []
        assert published(cfg) == [result.filename]

    def test_out_of_order_arrival(self, manager, ctx, cfg):
        data = pattern_bytes(5000, seed=9)
        total = upload_all(manager, ctx, data, chunk_size=1000, order=[5, 3, 1, 4, 2])
        result = manager.finalizer.finalize("movie.mp4", total, len(data), ctx)
        with open(os.path.join(cfg.data_dir, result.filename), "rb") as f:
            assert f.read() == data

    def test_single_chunk(self, manager, ctx, cfg):
        send_chunk(manager, ctx, b"tiny", 1, 1, size=4)
        result = manager.finalizer.finalize("movie.mp4", 1, 4, ctx)
        assert result.size == 4

    def test_missing_chunk_is_reported_and_nothing_published(self, manager, ctx, cfg):
        data = pattern_bytes(3000)
        chunks = split(data, 1000)
        send_chunk(manager, ctx, chunks[0], 1, 3, size=3000)
        send_chunk(manager, ctx, chunks[2], 3, 3, size=3000)

        with pytest.raises(IncompleteUpload) as exc:
            manager.finalizer.finalize("movie.mp4", 3, 3000, ctx)
        assert exc.value.missing == [2]
        assert exc.value.details["missingCount"] == 1
        assert published(cfg) == []

        # Chunks survive for a retry
        send_chunk(manager, ctx, chunks[1], 2, 3, size=3000)
        result = manager.finalizer.finalize("movie.mp4", 3, 3000, ctx)
        with open(os.path.join(cfg.data_dir, result.filename), "rb") as f:
            assert f.read() == data

    def test_size_mismatch_keeps_chunks(self, manager, ctx, cfg):
        send_chunk(manager, ctx, b"abc", 1, 2, size=10)
        send_chunk(manager, ctx, b"def", 2, 2, size=10)

        with pytest.raises(SizeMismatch) as exc:
            manager.finalizer.finalize("movie.mp4", 2, 10, ctx)
        assert exc.value.details == {"filename": "movie.mp4", "expected": 10, "actual": 6}
        assert published(cfg) == []
        assert manager.store.received_chunks("movie.mp4") == [1, 2]
        assert [e for e in os.listdir(cfg.data_dir) if e.startswith(".assemble_")] == []

    def test_finalize_parameters_must_match_session(self, manager, ctx):
        send_chunk(manager, ctx, b"a", 1, 1, size=1)
        with pytest.raises(SessionConflict):
            manager.finalizer.finalize("movie.mp4", 2, 1, ctx)
        with pytest.raises(SessionConflict):
            manager.finalizer.finalize("movie.mp4", 1, 2, ctx)

    def test_unknown_session(self, manager, ctx):
        with pytest.raises(UploadSessionNotFound):
            manager.finalizer.finalize("never-started.mp4", 1, 1, ctx)

    def test_finalize_twice(self, manager, ctx):
        send_chunk(manager, ctx, b"a", 1, 1, size=1)
        manager.finalizer.finalize("movie.mp4", 1, 1, ctx)
        with pytest.raises(UploadSessionNotFound):
            manager.finalizer.finalize("movie.mp4", 1, 1, ctx)

    def test_io_error_during_assembly(self, manager, ctx, cfg, monkeypatch):
        data = pattern_bytes(3000)
        total = upload_all(manager, ctx, data, chunk_size=1000)

        def broken_fsync(fd):
            raise OSError(5, "Input/output error")

        monkeypatch.setattr(os, "fsync", broken_fsync)
        with pytest.raises(AssemblyFailure) as exc:
            manager.finalizer.finalize("movie.mp4", total, len(data), ctx)
        monkeypatch.undo()

        assert exc.value.status_code == 500
        assert published(cfg) == []
        assert [e for e in os.listdir(cfg.data_dir) if e.startswith(".assemble_")] == []
        assert manager.store.received_chunks("movie.mp4") == [1, 2, 3]
        assert not manager.locks.is_held("movie.mp4")

        # Retry succeeds once the disk recovers
        result = manager.finalizer.finalize("movie.mp4", total, len(data), ctx)
        with open(os.path.join(cfg.data_dir, result.filename), "rb") as f:
            assert f.read() == data

    def test_existing_artifact_is_never_overwritten(self, manager, ctx, cfg):
        send_chunk(manager, ctx, b"new", 1, 1, size=3)
        storage_name = manager.store.load_session("movie.mp4").storage_name
        existing = os.path.join(cfg.data_dir, storage_name)
        with open(existing, "wb") as f:
            f.write(b"original")

        with pytest.raises(ArtifactExists):
            manager.finalizer.finalize("movie.mp4", 1, 3, ctx)
        with open(existing, "rb") as f:
            assert f.read() == b"original"

    def test_concurrent_finalize_publishes_once(self, manager, cfg):
        data = pattern_bytes(8000)
        total = upload_all(manager, RequestContext("setup"), data, chunk_size=1000)

        results, errors = [], []
        barrier = threading.Barrier(4)

        def worker(i):
            barrier.wait()
            try:
                results.append(manager.finalizer.finalize("movie.mp4", total, len(data), RequestContext(f"w{i}")))
            except (UploadSessionNotFound, ArtifactExists) as e:
                errors.append(e)

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(results) == 1
        assert len(errors) == 3
        assert published(cfg) == [results[0].filename]
        with open(os.path.join(cfg.data_dir, results[0].filename), "rb") as f:
            assert f.read() == data
        assert not manager.locks.is_held("movie.mp4")


class TestDirectUploader:
    def test_save(self, manager, ctx, cfg):
        data = pattern_bytes(3000)
        result = manager.direct_uploader.save(io.BytesIO(data), "holiday.mp4", ctx)
        assert result.filename.endswith("_holiday.mp4")
        assert result.size == 3000
        with open(os.path.join(cfg.data_dir, result.filename), "rb") as f:
            assert f.read() == data

    def test_too_large_leaves_nothing(self, cfg, ctx):
        from clipstream.core.uploads import DirectUploader

        uploader = DirectUploader(cfg.data_dir, max_upload_bytes=100)
        with pytest.raises(UploadTooLarge):
            uploader.save(io.BytesIO(b"x" * 101), "big.mp4", ctx)
        assert [e for e in os.listdir(cfg.data_dir) if e.endswith(".mp4") or e.endswith(".tmp")] == []


class TestPublishExclusive:
    def test_refuses_existing_target(self, tmp_path):
        src = tmp_path / "src"
        dst = tmp_path / "dst"
        src.write_bytes(b"new")
        dst.write_bytes(b"old")
        with pytest.raises(FileExistsError):
            publish_exclusive(str(src), str(dst))
        assert dst.read_bytes() == b"old"

    def test_publishes(self, tmp_path):
        src = tmp_path / "src"
        dst = tmp_path / "dst"
        src.write_bytes(b"data")
        publish_exclusive(str(src), str(dst))
        assert dst.read_bytes() == b"data"


def test_session_locks_are_dropped_when_released():
    locks = SessionLocks()
    with locks.hold("a"):
        assert locks.is_held("a")
        with locks.hold("b"):
            assert locks.is_held("b")
    assert not locks.is_held("a")
    assert not locks.is_held("b")

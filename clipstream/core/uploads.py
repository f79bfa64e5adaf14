"""
Chunked uploads: receive numbered chunks, then reassemble them into one video.

Layout under the chunk dir (hidden inside the data dir):

    .chunks/<session name>/session.json
    .chunks/<session name>/chunk_000001.part
    ...

Chunks are written to a temp file and renamed into place, so an ordinal is
either absent or complete. The final video is assembled into a hidden temp file
in the data dir and published with an exclusive link, so the library never sees
a partial file under the final name.
"""

import os
import re
import shutil
import tempfile
import threading
import time
from contextlib import contextmanager, suppress
from typing import BinaryIO, Dict, Iterator, List, Optional

from clipstream.config import ASSEMBLY_PREFIX, SESSION_MANIFEST, UPLOAD_TMP_PREFIX
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
from clipstream.core.library import format_bytes
from clipstream.models.upload import ChunkReceipt, FinalizeResult, UploadSession, UploadStatus
from clipstream.security import sanitize_filename

COPY_BUFFER = 1024 * 1024
_CHUNK_FILE_RE = re.compile(r"chunk_(\d{6})\.part")

# Serializes the existence check + replace when hard links are unavailable
_PUBLISH_LOCK = threading.Lock()


def session_name_for(filename: str) -> str:
    return sanitize_filename(filename)


def make_storage_name(filename: str) -> str:
    return f"{int(time.time() * 1000)}_{sanitize_filename(filename)}"


def publish_exclusive(temp_path: str, final_path: str) -> None:
    """
    Makes temp_path visible as final_path without ever overwriting.

    Raises:
        FileExistsError: If final_path already exists
    """
    try:
        os.link(temp_path, final_path)
        return
    except FileExistsError:
        raise
    except OSError:
        # Filesystem without hard links
        pass

    with _PUBLISH_LOCK:
        if os.path.exists(final_path):
            raise FileExistsError(final_path)
        os.replace(temp_path, final_path)


class SessionLocks:
    """
    One lock per session name, created on demand and dropped when unused.
    Finalize and pruning hold it; chunk writes do not.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, list] = {}

    @contextmanager
    def hold(self, name: str) -> Iterator[None]:
        with self._guard:
            entry = self._locks.setdefault(name, [threading.Lock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[name]

    def is_held(self, name: str) -> bool:
        with self._guard:
            return name in self._locks


class ChunkStore:
    """Filesystem layout of in-progress upload sessions."""

    def __init__(self, chunk_dir: str):
        self.chunk_dir = chunk_dir

    def session_dir(self, name: str) -> str:
        return os.path.join(self.chunk_dir, name)

    def manifest_path(self, name: str) -> str:
        return os.path.join(self.session_dir(name), SESSION_MANIFEST)

    def chunk_path(self, name: str, chunk_number: int) -> str:
        return os.path.join(self.session_dir(name), f"chunk_{chunk_number:06d}.part")

    def load_session(self, name: str) -> Optional[UploadSession]:
        try:
            with open(self.manifest_path(name), "r", encoding="utf-8") as f:
                return UploadSession.model_validate_json(f.read())
        except FileNotFoundError:
            return None

    def create_session(self, session: UploadSession) -> UploadSession:
        """
        Writes the manifest unless one exists already.
        Returns whichever manifest won when two first chunks race.
        """
        session_dir = self.session_dir(session.session_name)
        os.makedirs(session_dir, exist_ok=True)

        fd, tmp = tempfile.mkstemp(prefix=".session_tmp_", suffix=".json", dir=session_dir)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(session.model_dump_json(indent=2))
            try:
                publish_exclusive(tmp, self.manifest_path(session.session_name))
            except FileExistsError:
                existing = self.load_session(session.session_name)
                if existing is not None:
                    return existing
                raise
            return session
        finally:
            with suppress(FileNotFoundError):
                os.remove(tmp)

    def touch(self, name: str) -> None:
        with suppress(FileNotFoundError):
            os.utime(self.manifest_path(name))

    def received_chunks(self, name: str) -> List[int]:
        try:
            entries = os.listdir(self.session_dir(name))
        except FileNotFoundError:
            return []
        received = []
        for entry in entries:
            match = _CHUNK_FILE_RE.fullmatch(entry)
            if match:
                received.append(int(match.group(1)))
        return sorted(received)

    def list_sessions(self) -> List[str]:
        if not os.path.isdir(self.chunk_dir):
            return []
        return sorted(e.name for e in os.scandir(self.chunk_dir) if e.is_dir())

    def last_activity(self, name: str) -> float:
        """Most recent mtime of the session dir or anything inside it."""
        session_dir = self.session_dir(name)
        latest = os.stat(session_dir).st_mtime
        for entry in os.scandir(session_dir):
            with suppress(FileNotFoundError):
                latest = max(latest, entry.stat().st_mtime)
        return latest

    def remove_session(self, name: str) -> None:
        shutil.rmtree(self.session_dir(name))


class ChunkReceiver:
    """
    Persists one chunk per call. Sessions are created by their first chunk.

    A session is keyed by the sanitized client filename alone. Two clients
    uploading the same name with the same totalChunks/fileSize at the same
    time share one session and their chunks overwrite each other without an
    error. Clients are expected to make names unique (the browser client
    prefixes a timestamp).
    """

    def __init__(self, store: ChunkStore, max_chunk_bytes: int, max_upload_bytes: int):
        self.store = store
        self.max_chunk_bytes = max_chunk_bytes
        self.max_upload_bytes = max_upload_bytes

    def _validate(self, chunk_number: int, total_chunks: int, filename: str, declared_file_size: int) -> None:
        if total_chunks < 1:
            raise InvalidUploadRequest(
                f"totalChunks must be at least 1, got {total_chunks}",
                filename=filename, totalChunks=total_chunks,
            )
        if declared_file_size < 0:
            raise InvalidUploadRequest(
                f"fileSize must not be negative, got {declared_file_size}",
                filename=filename, fileSize=declared_file_size,
            )
        if declared_file_size > self.max_upload_bytes:
            raise UploadTooLarge(filename, declared_file_size, self.max_upload_bytes)
        if not 1 <= chunk_number <= total_chunks:
            raise InvalidChunkOrdinal(chunk_number, total_chunks)

    def _establish(self, filename: str, total_chunks: int, declared_file_size: int, ctx: RequestContext) -> UploadSession:
        name = session_name_for(filename)
        session = self.store.load_session(name)
        if session is None:
            session = self.store.create_session(UploadSession(
                session_name=name,
                client_filename=filename,
                storage_name=make_storage_name(filename),
                total_chunks=total_chunks,
                declared_file_size=declared_file_size,
            ))
            ctx.log(
                f"📦 Upload session {name} -> {session.storage_name} "
                f"({session.total_chunks} chunks, {format_bytes(session.declared_file_size)})"
            )

        if session.total_chunks != total_chunks:
            raise SessionConflict(filename, "totalChunks", session.total_chunks, total_chunks)
        if session.declared_file_size != declared_file_size:
            raise SessionConflict(filename, "fileSize", session.declared_file_size, declared_file_size)
        return session

    def receive(
        self,
        source: BinaryIO,
        chunk_number: int,
        total_chunks: int,
        filename: str,
        declared_file_size: int,
        ctx: RequestContext,
    ) -> ChunkReceipt:
        self._validate(chunk_number, total_chunks, filename, declared_file_size)

        try:
            session = self._establish(filename, total_chunks, declared_file_size, ctx)
            session_dir = self.store.session_dir(session.session_name)
            fd, tmp = tempfile.mkstemp(prefix=".chunk_tmp_", dir=session_dir)
        except OSError as e:
            raise ChunkWriteFailure(filename, chunk_number, str(e)) from e

        written = 0
        try:
            with os.fdopen(fd, "wb") as out:
                while True:
                    block = source.read(COPY_BUFFER)
                    if not block:
                        break
                    written += len(block)
                    if written > self.max_chunk_bytes:
                        raise ChunkTooLarge(chunk_number, self.max_chunk_bytes)
                    out.write(block)
                out.flush()
                os.fsync(out.fileno())
            # Re-uploading an ordinal replaces it
            os.replace(tmp, self.store.chunk_path(session.session_name, chunk_number))
        except OSError as e:
            raise ChunkWriteFailure(filename, chunk_number, str(e)) from e
        finally:
            with suppress(FileNotFoundError):
                os.remove(tmp)

        self.store.touch(session.session_name)
        received = self.store.received_chunks(session.session_name)
        ctx.log(
            f"📥 Chunk {chunk_number}/{total_chunks} of {session.session_name} stored "
            f"({format_bytes(written)}, {len(received)} received)"
        )
        return ChunkReceipt(
            filename=session.session_name,
            chunk_number=chunk_number,
            total_chunks=total_chunks,
            size=written,
            received_count=len(received),
        )

    def status(self, filename: str) -> UploadStatus:
        name = session_name_for(filename)
        session = self.store.load_session(name)
        if session is None:
            raise UploadSessionNotFound(filename)

        received = self.store.received_chunks(name)
        received_set = set(received)
        return UploadStatus(
            filename=name,
            storage_name=session.storage_name,
            total_chunks=session.total_chunks,
            declared_file_size=session.declared_file_size,
            received_chunks=[n for n in received if n <= session.total_chunks],
            missing_chunks=[n for n in range(1, session.total_chunks + 1) if n not in received_set],
        )


class UploadFinalizer:
    """
    Turns a complete session into a published video.
    At most one finalize runs per session; failures leave the chunks in place.
    """

    def __init__(self, store: ChunkStore, data_dir: str, locks: SessionLocks):
        self.store = store
        self.data_dir = data_dir
        self.locks = locks

    def finalize(self, filename: str, total_chunks: int, declared_file_size: int, ctx: RequestContext) -> FinalizeResult:
        name = session_name_for(filename)
        with self.locks.hold(name):
            session = self.store.load_session(name)
            if session is None:
                raise UploadSessionNotFound(filename)
            if session.total_chunks != total_chunks:
                raise SessionConflict(filename, "totalChunks", session.total_chunks, total_chunks)
            if session.declared_file_size != declared_file_size:
                raise SessionConflict(filename, "fileSize", session.declared_file_size, declared_file_size)

            received = set(self.store.received_chunks(name))
            missing = [n for n in range(1, total_chunks + 1) if n not in received]
            if missing:
                ctx.log(f"⚠️ Finalize of {name} refused, missing chunks {missing}")
                raise IncompleteUpload(name, missing, total_chunks)

            final_path = os.path.join(self.data_dir, session.storage_name)
            if os.path.exists(final_path):
                raise ArtifactExists(session.storage_name)

            ctx.log(f"🔧 Assembling {total_chunks} chunks of {name} into {session.storage_name}...")
            size = self._assemble_and_publish(session, final_path, ctx)

            try:
                self.store.remove_session(name)
            except OSError as e:
                # Video is already published; the leftovers are swept by maintenance
                ctx.log(f"⚠️ Could not remove chunks of {name}: {e}")

        ctx.log(f"✅ Upload finalized: {session.storage_name} ({format_bytes(size)}) in {ctx.elapsed_ms}ms")
        return FinalizeResult(
            filename=session.storage_name,
            size=size,
            size_formatted=format_bytes(size),
        )

    def _assemble_and_publish(self, session: UploadSession, final_path: str, ctx: RequestContext) -> int:
        name = session.session_name
        try:
            fd, tmp = tempfile.mkstemp(prefix=ASSEMBLY_PREFIX, suffix=".tmp", dir=self.data_dir)
        except OSError as e:
            raise AssemblyFailure(name, str(e)) from e

        try:
            with os.fdopen(fd, "wb") as out:
                for chunk_number in range(1, session.total_chunks + 1):
                    try:
                        part = open(self.store.chunk_path(name, chunk_number), "rb")
                    except FileNotFoundError:
                        raise IncompleteUpload(name, [chunk_number], session.total_chunks)
                    with part:
                        shutil.copyfileobj(part, out, COPY_BUFFER)
                out.flush()
                os.fsync(out.fileno())
                size = out.tell()

            if size != session.declared_file_size:
                ctx.log(f"❌ Size mismatch for {name}: expected {session.declared_file_size}, got {size}")
                raise SizeMismatch(name, session.declared_file_size, size)

            try:
                publish_exclusive(tmp, final_path)
            except FileExistsError:
                raise ArtifactExists(session.storage_name)
            return size
        except OSError as e:
            raise AssemblyFailure(name, str(e)) from e
        finally:
            with suppress(FileNotFoundError):
                os.remove(tmp)


class DirectUploader:
    """Single-request upload of a whole video, published the same way as a finalized one."""

    def __init__(self, data_dir: str, max_upload_bytes: int):
        self.data_dir = data_dir
        self.max_upload_bytes = max_upload_bytes

    def save(self, source: BinaryIO, filename: str, ctx: RequestContext) -> FinalizeResult:
        storage_name = make_storage_name(filename)
        final_path = os.path.join(self.data_dir, storage_name)
        ctx.log(f"📤 Starting video upload: {filename}")

        try:
            fd, tmp = tempfile.mkstemp(prefix=UPLOAD_TMP_PREFIX, suffix=".tmp", dir=self.data_dir)
        except OSError as e:
            raise AssemblyFailure(filename, str(e)) from e

        written = 0
        try:
            with os.fdopen(fd, "wb") as out:
                while True:
                    block = source.read(COPY_BUFFER)
                    if not block:
                        break
                    written += len(block)
                    if written > self.max_upload_bytes:
                        raise UploadTooLarge(filename, written, self.max_upload_bytes)
                    out.write(block)
                out.flush()
                os.fsync(out.fileno())
            try:
                publish_exclusive(tmp, final_path)
            except FileExistsError:
                raise ArtifactExists(storage_name)
        except OSError as e:
            raise AssemblyFailure(filename, str(e)) from e
        finally:
            with suppress(FileNotFoundError):
                os.remove(tmp)

        ctx.log(f"✅ Video uploaded successfully: {storage_name}")
        return FinalizeResult(filename=storage_name, size=written, size_formatted=format_bytes(written))

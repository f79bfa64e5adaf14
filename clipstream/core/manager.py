from typing import Optional

from clipstream.config import ConfigManager, config
from clipstream.core.library import VideoLibrary
from clipstream.core.maintenance import run_sweep
from clipstream.core.thumbnails import ThumbnailGenerator
from clipstream.core.uploads import ChunkReceiver, ChunkStore, DirectUploader, SessionLocks, UploadFinalizer


class MediaManager:
    """
    Wires the streaming/upload services to one data directory:
    1. Library (listing + info)
    2. Chunk receiving and finalization (shared session store + locks)
    3. Thumbnails
    4. Maintenance sweeps
    """

    def __init__(self, cfg: ConfigManager):
        self.config = cfg
        self.locks = SessionLocks()
        self.store = ChunkStore(cfg.chunk_dir)
        self.receiver = ChunkReceiver(self.store, cfg.max_chunk_bytes, cfg.max_upload_bytes)
        self.finalizer = UploadFinalizer(self.store, cfg.data_dir, self.locks)
        self.direct_uploader = DirectUploader(cfg.data_dir, cfg.max_upload_bytes)
        self.library = VideoLibrary(cfg.data_dir)
        self.thumbnails = ThumbnailGenerator(cfg.data_dir, cfg.thumb_dir, cfg.settings.thumbnail_command)

    def prepare(self) -> None:
        self.config.ensure_directories()

    def sweep(self) -> int:
        return run_sweep(self.store, self.locks, self.config.data_dir, self.config.session_ttl_seconds)


_manager: Optional[MediaManager] = None


def get_media_manager() -> MediaManager:
    global _manager
    if _manager is None:
        _manager = MediaManager(config)
    return _manager

import os
import json
import socket
from typing import List, Dict, Any
from pydantic import Field
from pydantic_settings import BaseSettings

# ==============================================================================
# CONSTANTS & PATHS
# ==============================================================================

PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
DEFAULT_DATA_DIR = os.path.join(PROJECT_ROOT, "data")
PORT = 5001

def find_free_port(start_port: int) -> int:
    """Finds the next available port starting from start_port."""
    port = start_port
    while port < 65535:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            if sock.connect_ex(("localhost", port)) != 0:
                return port
            port += 1
    return start_port

# Storage layout (relative to data_dir)
CHUNK_DIR_NAME = ".chunks"
THUMB_DIR_NAME = "thumbnails"
SETTINGS_FILE_NAME = "settings.json"
SESSION_MANIFEST = "session.json"
ASSEMBLY_PREFIX = ".assemble_"
UPLOAD_TMP_PREFIX = ".upload_tmp_"

# Upload rules
ALLOWED_VIDEO_EXTENSIONS = ['.mp4', '.avi', '.mov', '.mkv', '.webm']
MULTIPART_OVERHEAD = 64 * 1024  # boundaries + form fields around a chunk

# ==============================================================================
# SETTINGS MODEL
# ==============================================================================

class AppSettings(BaseSettings):
    """
    Pydantic model for server settings.
    Loads from env vars (CLIPSTREAM_*), then settings.json in the data dir, then defaults.
    """
    data_dir: str = Field(DEFAULT_DATA_DIR)

    host: str = Field("")
    port: int = Field(PORT)

    max_upload_size_mb: int = Field(500)
    max_chunk_size_mb: int = Field(2)
    max_request_size_kb: int = Field(1024)
    stream_buffer_kb: int = Field(64)

    session_ttl_hours: float = Field(24.0)
    sweep_interval_minutes: float = Field(30.0)

    cors_origin: str = Field("http://localhost:3001")
    thumbnail_command: str = Field("ffmpegthumbnailer")
    content_type: str = Field("video/mp4")

    class Config:
        env_prefix = "CLIPSTREAM_"
        extra = "ignore"

# ==============================================================================
# CONFIG MANAGER
# ==============================================================================

class ConfigManager:
    def __init__(self, settings: AppSettings = None):
        self.settings = settings or self._load_settings()

    def _load_settings(self) -> AppSettings:
        base = AppSettings()
        settings_file = os.path.join(base.data_dir, SETTINGS_FILE_NAME)

        file_data = {}
        if os.path.exists(settings_file):
            try:
                with open(settings_file, "r", encoding="utf-8") as f:
                    file_data = json.load(f)
            except (OSError, ValueError) as e:
                print(f"⚠️ Warning: Could not read {settings_file}: {e}")

        if not isinstance(file_data, dict) or not file_data:
            return base

        # Env vars win over the file, the file wins over defaults
        env_keys = {
            name for name in AppSettings.model_fields
            if f"CLIPSTREAM_{name.upper()}" in os.environ
        }
        merged: Dict[str, Any] = {k: v for k, v in file_data.items() if k not in env_keys}
        merged.update({k: getattr(base, k) for k in env_keys})
        return AppSettings(**merged)

    def ensure_directories(self) -> None:
        for d in [self.data_dir, self.chunk_dir, self.thumb_dir]:
            os.makedirs(d, exist_ok=True)

    @property
    def data_dir(self) -> str:
        return os.path.abspath(self.settings.data_dir)

    @property
    def chunk_dir(self) -> str:
        return os.path.join(self.data_dir, CHUNK_DIR_NAME)

    @property
    def thumb_dir(self) -> str:
        return os.path.join(self.data_dir, THUMB_DIR_NAME)

    @property
    def max_upload_bytes(self) -> int:
        return self.settings.max_upload_size_mb * 1024 * 1024

    @property
    def max_chunk_bytes(self) -> int:
        return self.settings.max_chunk_size_mb * 1024 * 1024

    @property
    def max_request_bytes(self) -> int:
        return self.settings.max_request_size_kb * 1024

    @property
    def stream_buffer_bytes(self) -> int:
        return max(1, self.settings.stream_buffer_kb) * 1024

    @property
    def session_ttl_seconds(self) -> float:
        return self.settings.session_ttl_hours * 3600

    @property
    def allowed_extensions(self) -> List[str]:
        return ALLOWED_VIDEO_EXTENSIONS

# Global Instance
config = ConfigManager()

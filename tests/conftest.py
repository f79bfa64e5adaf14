import io
import os

import pytest

from clipstream.config import AppSettings, ConfigManager
from clipstream.context import RequestContext
from clipstream.core.manager import MediaManager
from clipstream.server.web_server import start_server, stop_server


def pattern_bytes(size: int, seed: int = 0) -> bytes:
    """Deterministic, non-repeating-at-small-offsets payload."""
    block = bytes((i * 7 + seed) % 256 for i in range(251))
    return (block * (size // len(block) + 1))[:size]


class FakeHandler:
    """Minimal stand-in for BaseHTTPRequestHandler's response side."""

    def __init__(self, wfile=None):
        self.wfile = wfile if wfile is not None else io.BytesIO()
        self.status = None
        self.headers = {}
        self.status_calls = 0
        self.headers_ended = False
        self.close_connection = False

    def send_response(self, code, message=None):
        self.status_calls += 1
        self.status = code

    def send_header(self, key, value):
        self.headers[key] = value

    def end_headers(self):
        self.headers_ended = True

    @property
    def body(self) -> bytes:
        return self.wfile.getvalue()


class DisconnectingWriter(io.BytesIO):
    """Accepts `allow` writes, then behaves like a socket whose peer went away."""

    def __init__(self, allow: int = 1):
        super().__init__()
        self.allow = allow

    def write(self, data):
        if self.allow <= 0:
            raise BrokenPipeError(32, "Broken pipe")
        self.allow -= 1
        return super().write(data)


@pytest.fixture
def settings(tmp_path):
    return AppSettings(
        data_dir=str(tmp_path / "data"),
        host="127.0.0.1",
        port=0,
        max_upload_size_mb=50,
        max_chunk_size_mb=2,
        stream_buffer_kb=4,
        sweep_interval_minutes=0,
        thumbnail_command="clipstream-test-no-such-thumbnailer",
    )


@pytest.fixture
def cfg(settings):
    manager_config = ConfigManager(settings)
    manager_config.ensure_directories()
    return manager_config


@pytest.fixture
def manager(cfg):
    return MediaManager(cfg)


@pytest.fixture
def ctx():
    return RequestContext(request_id="test")


@pytest.fixture
def make_video(cfg):
    def _make(name: str = "clip.mp4", size: int = 1000, seed: int = 0):
        data = pattern_bytes(size, seed)
        path = os.path.join(cfg.data_dir, name)
        with open(path, "wb") as f:
            f.write(data)
        return path, data
    return _make


@pytest.fixture
def live_server(manager):
    server, port = start_server(manager, port=0, sweep=False)
    yield f"http://127.0.0.1:{port}"
    stop_server(server)

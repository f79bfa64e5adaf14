import os
from enum import Enum

from clipstream.context import RequestContext
from clipstream.core.errors import SourceNotFound, StreamIOFailure
from clipstream.core.library import format_bytes
from clipstream.models.stream_plan import StreamPlan

CLIENT_GONE = (BrokenPipeError, ConnectionResetError, ConnectionAbortedError)


class StreamState(str, Enum):
    IDLE = "idle"
    HEADERS_SENT = "headers_sent"
    STREAMING = "streaming"
    COMPLETED = "completed"
    ABORTED = "aborted"
    FAILED = "failed"


class MediaStreamer:
    """
    Sends one planned byte window of a file to a BaseHTTPRequestHandler.

    Lifecycle: IDLE -> HEADERS_SENT -> STREAMING -> COMPLETED | ABORTED.
    Errors before the status line raise (FAILED) so the caller can answer with
    a proper error response. Once headers are out the only remedy left is
    dropping the connection, so later errors end in ABORTED and never raise.
    """

    def __init__(self, handler, plan: StreamPlan, file_path: str, ctx: RequestContext,
                 content_type: str = "video/mp4", buffer_size: int = 65536):
        self.handler = handler
        self.plan = plan
        self.file_path = file_path
        self.ctx = ctx
        self.content_type = content_type
        self.buffer_size = buffer_size
        self.state = StreamState.IDLE
        self.bytes_sent = 0

    @property
    def filename(self) -> str:
        return os.path.basename(self.file_path)

    @property
    def headers_sent(self) -> bool:
        return self.state not in (StreamState.IDLE, StreamState.FAILED)

    def _open(self):
        try:
            source = open(self.file_path, "rb")
        except FileNotFoundError:
            self.state = StreamState.FAILED
            raise SourceNotFound(self.filename)
        except OSError as e:
            self.state = StreamState.FAILED
            raise StreamIOFailure(self.filename, str(e))

        try:
            source.seek(self.plan.start)
        except OSError as e:
            source.close()
            self.state = StreamState.FAILED
            raise StreamIOFailure(self.filename, str(e))
        return source

    def _send_headers(self) -> None:
        headers = self.plan.headers(self.content_type)
        self.ctx.log(f"📤 {self.plan.status_code} headers: {headers}")

        self.handler.send_response(self.plan.status_code)
        for key, value in headers.items():
            self.handler.send_header(key, value)
        self.state = StreamState.HEADERS_SENT
        self.handler.end_headers()

    def _abort(self, reason: str, client_gone: bool = False) -> StreamState:
        self.state = StreamState.ABORTED
        # Body is shorter than Content-Length, the connection cannot be reused
        self.handler.close_connection = True
        if client_gone:
            self.ctx.log(f"🔌 Client disconnected after {format_bytes(self.bytes_sent)} of {self.filename}")
        else:
            self.ctx.log(f"❌ Stream of {self.filename} aborted after {format_bytes(self.bytes_sent)}: {reason}")
        return self.state

    def stream(self, send_body: bool = True) -> StreamState:
        kind = "Range" if self.plan.is_partial else "Full file"
        self.ctx.log(f"🔧 Opening {self.filename} for bytes {self.plan.start}-{self.plan.end}...")
        source = self._open()

        with source:
            try:
                self._send_headers()
            except CLIENT_GONE as e:
                return self._abort(str(e), client_gone=True)

            if not send_body or self.plan.chunk_size == 0:
                self.state = StreamState.COMPLETED
                return self.state

            self.state = StreamState.STREAMING
            remaining = self.plan.chunk_size
            while remaining > 0:
                try:
                    data = source.read(min(self.buffer_size, remaining))
                except OSError as e:
                    return self._abort(f"read error: {e}")
                if not data:
                    return self._abort(f"file ended {remaining} bytes early")

                try:
                    self.handler.wfile.write(data)
                except CLIENT_GONE as e:
                    return self._abort(str(e), client_gone=True)

                remaining -= len(data)
                self.bytes_sent += len(data)

        self.state = StreamState.COMPLETED
        duration_ms = max(self.ctx.elapsed_ms, 1)
        self.ctx.log(
            f"✅ {kind} streaming completed in {duration_ms}ms "
            f"({format_bytes(self.bytes_sent)}, {format_bytes(self.bytes_sent * 1000 / duration_ms)}/s)"
        )
        return self.state

import http.server
import io
import json
import os
import threading
from typing import Any, Dict, Optional, Tuple
from urllib.parse import unquote, urlparse

from pydantic import ValidationError
from python_multipart import parse_form
from python_multipart.exceptions import FormParserError

from clipstream.config import MULTIPART_OVERHEAD
from clipstream.context import RequestContext
from clipstream.core.errors import (
    ClipstreamError,
    InvalidUploadRequest,
    SourceNotFound,
    StreamIOFailure,
    UnsatisfiableRange,
    UploadTooLarge,
)
from clipstream.core.ranges import parse_byte_range, plan_stream
from clipstream.models.upload import FinalizeRequest
from clipstream.security import check_video_filename, resolve_in_dir
from clipstream.server.streaming_util import CLIENT_GONE, MediaStreamer

API_PREFIX = "/videos"


class VideoHandler(http.server.BaseHTTPRequestHandler):
    server_version = "clipstream/1.0"

    ctx: Optional[RequestContext] = None
    response_started = False

    # The default access log is replaced by request-scoped lines
    def log_message(self, format, *args):  # noqa: A002
        return

    @property
    def manager(self):
        return self.server.manager

    # ------------------------------------------------------------------
    # Response plumbing
    # ------------------------------------------------------------------

    def send_response(self, code, message=None):
        self.response_started = True
        super().send_response(code, message)

    def end_headers(self):
        origin = self.manager.config.settings.cors_origin
        if origin:
            self.send_header("Access-Control-Allow-Origin", origin)
            self.send_header("Access-Control-Allow-Credentials", "true")
            self.send_header("Access-Control-Expose-Headers", "Content-Range, Content-Length, Accept-Ranges, X-Request-ID")
        if self.ctx is not None:
            self.send_header("X-Request-ID", self.ctx.request_id)
        super().end_headers()

    def _send_bytes(self, status: int, body: bytes, content_type: str,
                    headers: Optional[Dict[str, str]] = None) -> None:
        self.send_response(status)
        self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(body)))
        for key, value in (headers or {}).items():
            self.send_header(key, value)
        self.end_headers()
        if self.command == "HEAD":
            return
        try:
            self.wfile.write(body)
        except CLIENT_GONE:
            self.ctx.log("🔌 Client disconnected before the response was written")

    def _send_json(self, status: int, payload: Any, headers: Optional[Dict[str, str]] = None) -> None:
        body = json.dumps(payload, ensure_ascii=False).encode("utf-8")
        merged = {"Cache-Control": "no-store"}
        merged.update(headers or {})
        self._send_bytes(status, body, "application/json; charset=utf-8", merged)

    def _send_error(self, error: ClipstreamError) -> None:
        if self.response_started:
            # Status line is gone already; the only thing left is to hang up
            self.ctx.log(f"❌ {error.error} after response started: {error.message}")
            self.close_connection = True
            return

        marker = "⚠️" if error.status_code < 500 else "❌"
        self.ctx.log(f"{marker} {error.status_code} {error.error}: {error.message}")
        headers = {}
        if isinstance(error, UnsatisfiableRange):
            headers["Content-Range"] = f"bytes */{error.file_size}"
        self._send_json(error.status_code, error.to_payload(self.ctx.request_id), headers)

    def _dispatch(self, routes) -> None:
        self.ctx = RequestContext()
        self.response_started = False
        path = unquote(urlparse(self.path).path)
        try:
            for prefix, exact, handler in routes:
                if (exact and path.rstrip("/") == prefix) or (not exact and path.startswith(prefix)):
                    handler(path[len(prefix):])
                    return
            self._send_json(404, {"success": False, "error": "not_found", "path": path})
        except ClipstreamError as e:
            self._send_error(e)
        except CLIENT_GONE:
            self.ctx.log("🔌 Client disconnected")
            self.close_connection = True
        except Exception as e:
            self.ctx.log(f"❌ Unhandled error on {self.command} {path}: {e!r}")
            self._send_error(ClipstreamError(f"Internal error: {e}", path=path))

    # ------------------------------------------------------------------
    # Request body parsing
    # ------------------------------------------------------------------

    def _content_length(self, max_bytes: int) -> int:
        try:
            length = int(self.headers.get("Content-Length", "0") or "0")
        except ValueError:
            raise InvalidUploadRequest("Invalid Content-Length header")
        if length < 0:
            raise InvalidUploadRequest("Invalid Content-Length header")
        if length > max_bytes:
            # Body stays unread, the connection cannot be reused
            self.close_connection = True
            raise UploadTooLarge("request body", length, max_bytes)
        return length

    def _read_json(self) -> Dict[str, Any]:
        length = self._content_length(self.manager.config.max_request_bytes)
        if length == 0:
            raise InvalidUploadRequest("Empty request body")
        body = self.rfile.read(length)
        try:
            data = json.loads(body.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise InvalidUploadRequest(f"Invalid JSON: {e}")
        if not isinstance(data, dict):
            raise InvalidUploadRequest("Expected a JSON object")
        return data

    def _read_multipart(self, max_bytes: int) -> Tuple[Dict[str, bytes], Dict[str, Any]]:
        """Returns (form fields, uploaded files). Files must be closed by the caller."""
        content_type = self.headers.get("Content-Type", "")
        if not content_type.startswith("multipart/form-data"):
            raise InvalidUploadRequest(f"Expected multipart/form-data, got '{content_type}'")
        length = self._content_length(max_bytes)

        fields: Dict[str, bytes] = {}
        files: Dict[str, Any] = {}

        def on_field(field):
            fields[field.field_name.decode("utf-8")] = field.value or b""

        def on_file(file):
            files[file.field_name.decode("utf-8")] = file

        try:
            parse_form(
                {"Content-Type": content_type, "Content-Length": str(length)},
                self.rfile, on_field, on_file,
            )
        except FormParserError as e:
            for f in files.values():
                f.close()
            raise InvalidUploadRequest(f"Invalid multipart body: {e}")

        for f in files.values():
            f.file_object.seek(0)
        return fields, files

    @staticmethod
    def _text_field(fields: Dict[str, bytes], name: str) -> str:
        if name not in fields:
            raise InvalidUploadRequest(f"Missing form field '{name}'", field=name)
        return fields[name].decode("utf-8", errors="replace").strip()

    @classmethod
    def _int_field(cls, fields: Dict[str, bytes], name: str) -> int:
        raw = cls._text_field(fields, name)
        try:
            return int(raw)
        except ValueError:
            raise InvalidUploadRequest(f"Form field '{name}' must be an integer, got '{raw}'", field=name)

    # ------------------------------------------------------------------
    # Verbs
    # ------------------------------------------------------------------

    def do_OPTIONS(self):
        self.ctx = RequestContext()
        self.send_response(204)
        self.send_header("Access-Control-Allow-Methods", "GET, HEAD, POST, OPTIONS")
        self.send_header("Access-Control-Allow-Headers", "Content-Type, Range")
        self.send_header("Access-Control-Max-Age", "600")
        self.send_header("Content-Length", "0")
        self.end_headers()

    def do_HEAD(self):
        self._dispatch([
            (f"{API_PREFIX}/stream/", False, lambda name: self._handle_stream(name, send_body=False)),
        ])

    def do_GET(self):
        self._dispatch([
            (API_PREFIX, True, lambda _: self._handle_list()),
            (f"{API_PREFIX}/stream/", False, self._handle_stream),
            (f"{API_PREFIX}/thumbnail/", False, self._handle_thumbnail),
            (f"{API_PREFIX}/upload-status/", False, self._handle_upload_status),
            (f"{API_PREFIX}/", False, self._handle_info),
        ])

    def do_POST(self):
        self._dispatch([
            (f"{API_PREFIX}/upload-chunk", True, lambda _: self._handle_upload_chunk()),
            (f"{API_PREFIX}/finalize-upload", True, lambda _: self._handle_finalize()),
            (f"{API_PREFIX}/upload", True, lambda _: self._handle_upload()),
        ])

    # ------------------------------------------------------------------
    # Library
    # ------------------------------------------------------------------

    def _handle_list(self) -> None:
        videos = self.manager.library.list_videos()
        self.ctx.log(f"📚 Listing {len(videos)} videos")
        self._send_json(200, [v.model_dump(by_alias=True) for v in videos])

    def _handle_info(self, filename: str) -> None:
        info = self.manager.library.get_video_info(filename)
        if info is None:
            raise SourceNotFound(filename)
        self._send_json(200, info.model_dump(by_alias=True))

    def _handle_thumbnail(self, filename: str) -> None:
        check_video_filename(filename, self.manager.config.allowed_extensions)
        self.ctx.log(f"🖼️ Thumbnail requested for: {filename}")
        result = self.manager.thumbnails.get_or_create(filename, self.ctx)
        if result is None:
            raise SourceNotFound(filename)

        path, content_type = result
        with open(path, "rb") as f:
            body = f.read()
        self._send_bytes(200, body, content_type, {"Cache-Control": "public, max-age=3600"})

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------

    def _handle_stream(self, filename: str, send_body: bool = True) -> None:
        cfg = self.manager.config
        path = resolve_in_dir(cfg.data_dir, filename, cfg.allowed_extensions)
        range_header = self.headers.get("Range")
        self.ctx.log(f"🎬 Starting video stream for: {filename} (Range: {range_header or 'None'})")

        try:
            st = os.stat(path)
        except FileNotFoundError:
            raise SourceNotFound(filename)
        except OSError as e:
            raise StreamIOFailure(filename, str(e))
        if not os.path.isfile(path):
            raise SourceNotFound(filename)

        plan = plan_stream(st.st_size, parse_byte_range(range_header, st.st_size))
        streamer = MediaStreamer(
            self, plan, path, self.ctx,
            content_type=cfg.settings.content_type,
            buffer_size=cfg.stream_buffer_bytes,
        )
        streamer.stream(send_body=send_body)

    # ------------------------------------------------------------------
    # Uploads
    # ------------------------------------------------------------------

    def _handle_upload_chunk(self) -> None:
        cfg = self.manager.config
        fields, files = self._read_multipart(cfg.max_chunk_bytes + MULTIPART_OVERHEAD)
        try:
            filename = check_video_filename(self._text_field(fields, "filename"), cfg.allowed_extensions)
            chunk_number = self._int_field(fields, "chunkNumber")
            total_chunks = self._int_field(fields, "totalChunks")
            file_size = self._int_field(fields, "fileSize")

            if "chunk" in files:
                source = files["chunk"].file_object
            elif "chunk" in fields:
                source = io.BytesIO(fields["chunk"])
            else:
                raise InvalidUploadRequest("Missing form field 'chunk'", field="chunk")

            receipt = self.manager.receiver.receive(
                source, chunk_number, total_chunks, filename, file_size, self.ctx,
            )
        finally:
            for f in files.values():
                f.close()

        self._send_json(200, receipt.model_dump(by_alias=True))

    def _handle_finalize(self) -> None:
        try:
            req = FinalizeRequest(**self._read_json())
        except ValidationError as e:
            raise InvalidUploadRequest(f"Invalid finalize request: {e.errors()}")

        self.ctx.log(f"🎉 Finalizing {req.filename} ({req.total_chunks} chunks, {req.file_size} bytes)")
        result = self.manager.finalizer.finalize(req.filename, req.total_chunks, req.file_size, self.ctx)
        self._generate_thumbnail_in_background(result.filename)
        self._send_json(200, result.model_dump(by_alias=True))

    def _handle_upload(self) -> None:
        cfg = self.manager.config
        fields, files = self._read_multipart(cfg.max_upload_bytes + MULTIPART_OVERHEAD)
        try:
            video = files.get("video")
            if video is None or not video.file_name:
                raise InvalidUploadRequest("Missing file field 'video'", field="video")
            filename = check_video_filename(video.file_name.decode("utf-8", errors="replace"), cfg.allowed_extensions)
            result = self.manager.direct_uploader.save(video.file_object, filename, self.ctx)
        finally:
            for f in files.values():
                f.close()

        self._generate_thumbnail_in_background(result.filename)
        self._send_json(200, result.model_dump(by_alias=True))

    def _handle_upload_status(self, filename: str) -> None:
        status = self.manager.receiver.status(filename)
        self._send_json(200, status.model_dump(by_alias=True))

    def _generate_thumbnail_in_background(self, filename: str) -> None:
        ctx = self.ctx

        def worker():
            try:
                self.manager.thumbnails.get_or_create(filename, ctx)
            except OSError as e:
                ctx.log(f"❌ Thumbnail generation failed for {filename}: {e}")

        threading.Thread(target=worker, daemon=True).start()

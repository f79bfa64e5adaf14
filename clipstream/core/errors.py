"""
Error taxonomy for streaming and chunked uploads.

Every error knows the HTTP status it maps to and carries the details a client
needs to diagnose the failure without server-side log access.
"""

from typing import Any, Dict, List, Optional


class ClipstreamError(Exception):
    """Base class for errors that translate into a structured HTTP response."""
    status_code = 500
    error = "internal_error"

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_payload(self, request_id: Optional[str] = None) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "success": False,
            "error": self.error,
            "message": self.message,
        }
        if request_id:
            payload["requestId"] = request_id
        payload.update(self.details)
        return payload


# --- Streaming ---------------------------------------------------------------

class MalformedRange(ClipstreamError):
    status_code = 400
    error = "malformed_range"

    def __init__(self, range_header: str, reason: str):
        super().__init__(f"Malformed range '{range_header}': {reason}", range=range_header)


class UnsatisfiableRange(ClipstreamError):
    status_code = 416
    error = "range_not_satisfiable"

    def __init__(self, start: int, end: int, file_size: int):
        super().__init__(
            f"Range {start}-{end} is not satisfiable for file size {file_size}",
            start=start, end=end, fileSize=file_size,
        )
        self.file_size = file_size


class SourceNotFound(ClipstreamError):
    status_code = 404
    error = "video_not_found"

    def __init__(self, filename: str):
        super().__init__(f"Video not found: {filename}", filename=filename)


class StreamIOFailure(ClipstreamError):
    status_code = 500
    error = "streaming_error"

    def __init__(self, filename: str, reason: str):
        super().__init__(f"Could not read {filename}: {reason}", filename=filename)


# --- Uploads -----------------------------------------------------------------

class InvalidUploadRequest(ClipstreamError):
    status_code = 400
    error = "invalid_upload_request"


class InvalidChunkOrdinal(ClipstreamError):
    status_code = 400
    error = "invalid_chunk_ordinal"

    def __init__(self, chunk_number: int, total_chunks: int):
        super().__init__(
            f"Chunk number {chunk_number} must be between 1 and {total_chunks}",
            chunkNumber=chunk_number, totalChunks=total_chunks,
        )


class ChunkTooLarge(ClipstreamError):
    status_code = 413
    error = "chunk_too_large"

    def __init__(self, chunk_number: int, limit: int):
        super().__init__(
            f"Chunk {chunk_number} exceeds the per-chunk limit of {limit} bytes",
            chunkNumber=chunk_number, limit=limit,
        )


class ChunkWriteFailure(ClipstreamError):
    status_code = 500
    error = "chunk_write_failed"

    def __init__(self, filename: str, chunk_number: int, reason: str):
        super().__init__(
            f"Failed to store chunk {chunk_number} of {filename}: {reason}",
            filename=filename, chunkNumber=chunk_number,
        )


class SessionConflict(ClipstreamError):
    status_code = 409
    error = "session_conflict"

    def __init__(self, filename: str, field: str, expected: int, actual: int):
        super().__init__(
            f"Upload session {filename} was started with {field}={expected}, got {actual}",
            filename=filename, field=field, expected=expected, actual=actual,
        )


class UploadSessionNotFound(ClipstreamError):
    status_code = 404
    error = "upload_session_not_found"

    def __init__(self, filename: str):
        super().__init__(f"No upload in progress for {filename}", filename=filename)


class IncompleteUpload(ClipstreamError):
    status_code = 409
    error = "incomplete_upload"

    def __init__(self, filename: str, missing: List[int], total_chunks: int):
        super().__init__(
            f"Upload {filename} is missing {len(missing)} of {total_chunks} chunks",
            filename=filename, missingChunks=missing,
            missingCount=len(missing), totalChunks=total_chunks,
        )
        self.missing = missing


class SizeMismatch(ClipstreamError):
    status_code = 422
    error = "size_mismatch"

    def __init__(self, filename: str, expected: int, actual: int):
        super().__init__(
            f"Reassembled {filename} is {actual} bytes, expected {expected}",
            filename=filename, expected=expected, actual=actual,
        )


class ArtifactExists(ClipstreamError):
    status_code = 409
    error = "artifact_exists"

    def __init__(self, filename: str):
        super().__init__(f"A video named {filename} already exists", filename=filename)


class UploadTooLarge(ClipstreamError):
    status_code = 413
    error = "upload_too_large"

    def __init__(self, filename: str, size: int, limit: int):
        super().__init__(
            f"{filename} is {size} bytes, the limit is {limit} bytes",
            filename=filename, size=size, limit=limit,
        )


class AssemblyFailure(ClipstreamError):
    status_code = 500
    error = "assembly_failed"

    def __init__(self, filename: str, reason: str):
        super().__init__(f"Could not assemble {filename}: {reason}", filename=filename)

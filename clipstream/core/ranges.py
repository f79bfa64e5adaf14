import re
from typing import Optional

from clipstream.core.errors import MalformedRange, UnsatisfiableRange
from clipstream.models.stream_plan import RangeSpec, StreamPlan

_RANGE_RE = re.compile(r"bytes=(\d+)-(\d*)")


def parse_byte_range(range_header: Optional[str], file_size: int) -> Optional[RangeSpec]:
    """
    Parses a `Range: bytes=<start>-<end>` header against a known file size.

    Returns None when no range was requested. Only single ranges with an
    explicit start are supported; suffix ranges and range lists are rejected
    as malformed rather than silently served in full.
    """
    if range_header is None or not range_header.strip():
        return None

    raw = range_header.strip()
    match = _RANGE_RE.fullmatch(raw)
    if not match:
        raise MalformedRange(raw, "expected bytes=<start>-<end>")

    start = int(match.group(1))
    if match.group(2):
        end = int(match.group(2))
        if start > end:
            raise MalformedRange(raw, f"start {start} is after end {end}")
    else:
        end = file_size - 1

    if start >= file_size or end >= file_size:
        raise UnsatisfiableRange(start, end, file_size)

    return RangeSpec(start=start, end=end)


def plan_stream(file_size: int, byte_range: Optional[RangeSpec] = None) -> StreamPlan:
    """Chooses between a full (200) and a partial (206) response."""
    if byte_range is None:
        return StreamPlan(
            status_code=200,
            is_partial=False,
            start=0,
            end=file_size - 1,
            chunk_size=file_size,
            total_size=file_size,
        )

    if byte_range.end >= file_size:
        raise UnsatisfiableRange(byte_range.start, byte_range.end, file_size)

    return StreamPlan(
        status_code=206,
        is_partial=True,
        start=byte_range.start,
        end=byte_range.end,
        chunk_size=byte_range.length,
        total_size=file_size,
    )

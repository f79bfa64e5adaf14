"""
Filename validation and sanitization utilities.

Provides security checks to prevent:
- Path traversal out of the data directory
- Uploads with extensions outside the video allowlist
- Access to hidden files (chunk storage, assembly temp files)
"""

import os
import re
from typing import Iterable, Optional

from clipstream.core.errors import ClipstreamError

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]")


class SecurityError(Exception):
    """Raised when a security violation is detected."""
    pass


class InvalidFilename(SecurityError, ClipstreamError):
    """A client-supplied filename that must not reach the filesystem."""
    status_code = 400
    error = "invalid_filename"

    def __init__(self, filename: str, reason: str):
        ClipstreamError.__init__(self, f"Invalid filename '{filename}': {reason}", filename=filename)


def sanitize_filename(filename: str) -> str:
    """
    Replaces every character outside [A-Za-z0-9._-] with '_'.

    Leading dots are replaced too so a sanitized name can never be hidden,
    nor be '.' or '..'.

    Args:
        filename: Client-supplied name

    Returns:
        Name safe to use as a single path component
    """
    safe = _UNSAFE_CHARS.sub("_", filename)
    stripped = safe.lstrip(".")
    safe = "_" * (len(safe) - len(stripped)) + stripped
    return safe or "_"


def validate_filename(filename: str, prefix: str = "", suffix: str = "") -> bool:
    """
    Validate a filename matches expected pattern.

    Args:
        filename: Filename to validate
        prefix: Required prefix (e.g., "thumb_")
        suffix: Required suffix (e.g., ".jpg")

    Returns:
        True if filename is valid, False otherwise
    """
    if not filename:
        return False

    # No path separators
    if '/' in filename or '\\' in filename:
        return False

    # No parent directory references or hidden files
    if '..' in filename or filename.startswith('.'):
        return False

    if '\x00' in filename:
        return False

    # Check prefix/suffix if specified
    if prefix and not filename.startswith(prefix):
        return False

    if suffix and not filename.endswith(suffix):
        return False

    return True


def has_allowed_extension(filename: str, allowed: Iterable[str]) -> bool:
    _, ext = os.path.splitext(filename)
    return ext.lower() in {e.lower() for e in allowed}


def check_video_filename(filename: str, allowed: Optional[Iterable[str]] = None) -> str:
    """
    Rejects names that could escape the data dir or that are not videos.

    Raises:
        InvalidFilename: If the name fails any check

    Returns:
        The filename unchanged
    """
    if not validate_filename(filename):
        raise InvalidFilename(filename, "path separators, '..' and hidden names are not allowed")

    if allowed is not None and not has_allowed_extension(filename, allowed):
        raise InvalidFilename(filename, f"allowed types: {', '.join(allowed)}")

    return filename


def is_safe_directory_traversal(base_dir: str, target_path: str) -> bool:
    """
    Check if target_path stays within base_dir (prevents directory traversal).

    Args:
        base_dir: Base directory that should contain the target
        target_path: Path to check

    Returns:
        True if target is within base, False otherwise
    """
    try:
        base_abs = os.path.realpath(os.path.abspath(base_dir))
        target_abs = os.path.realpath(os.path.abspath(target_path))
        return os.path.commonpath([base_abs, target_abs]) == base_abs
    except (ValueError, OSError):
        return False


def resolve_in_dir(base_dir: str, filename: str, allowed: Optional[Iterable[str]] = None) -> str:
    """
    Joins a validated filename onto base_dir.

    Raises:
        InvalidFilename: If the name is rejected or the result would leave base_dir
    """
    check_video_filename(filename, allowed)
    path = os.path.join(base_dir, filename)
    if not is_safe_directory_traversal(base_dir, path):
        raise InvalidFilename(filename, "resolves outside the data directory")
    return path

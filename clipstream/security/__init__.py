"""
Security utilities for clipstream.

This module provides filename validation, sanitization, and traversal checks
applied before any client-supplied name touches the filesystem.
"""

from .validators import (
    sanitize_filename,
    validate_filename,
    has_allowed_extension,
    check_video_filename,
    is_safe_directory_traversal,
    resolve_in_dir,
    InvalidFilename,
    SecurityError
)

__all__ = [
    'sanitize_filename',
    'validate_filename',
    'has_allowed_extension',
    'check_video_filename',
    'is_safe_directory_traversal',
    'resolve_in_dir',
    'InvalidFilename',
    'SecurityError'
]

import os
from typing import List, Optional
from urllib.parse import quote

from clipstream.config import ALLOWED_VIDEO_EXTENSIONS
from clipstream.models.video import VideoInfo
from clipstream.security import has_allowed_extension, validate_filename

_SIZE_UNITS = ["Bytes", "KB", "MB", "GB"]


def format_bytes(num_bytes: float) -> str:
    """1536 -> '1.5 KB'. Two decimals at most, trailing zeros dropped."""
    if num_bytes <= 0:
        return "0 Bytes"
    value = float(num_bytes)
    i = 0
    while value >= 1024 and i < len(_SIZE_UNITS) - 1:
        value /= 1024
        i += 1
    return f"{round(value, 2):g} {_SIZE_UNITS[i]}"


class VideoLibrary:
    """
    Read-only view of the published videos in the data directory.
    Hidden entries (chunk storage, assembly temp files) are never listed.
    """

    def __init__(self, data_dir: str):
        self.data_dir = data_dir

    def _is_listable(self, filename: str) -> bool:
        return validate_filename(filename) and has_allowed_extension(filename, ALLOWED_VIDEO_EXTENSIONS)

    def _info(self, filename: str, path: str) -> VideoInfo:
        st = os.stat(path)
        return VideoInfo(
            filename=filename,
            size=st.st_size,
            size_formatted=format_bytes(st.st_size),
            thumbnail_url=f"/videos/thumbnail/{quote(filename)}",
            mtime=int(st.st_mtime),
        )

    def list_videos(self) -> List[VideoInfo]:
        if not os.path.isdir(self.data_dir):
            return []

        videos = []
        for entry in sorted(os.scandir(self.data_dir), key=lambda e: e.name):
            if not entry.is_file() or not self._is_listable(entry.name):
                continue
            try:
                videos.append(self._info(entry.name, entry.path))
            except FileNotFoundError:
                # Deleted between scandir and stat
                continue
        return videos

    def get_video_info(self, filename: str) -> Optional[VideoInfo]:
        if not self._is_listable(filename):
            return None
        path = os.path.join(self.data_dir, filename)
        if not os.path.isfile(path):
            return None
        return self._info(filename, path)

import html
import os
import subprocess
import tempfile
from contextlib import suppress
from typing import Optional, Tuple

from clipstream.context import RequestContext
from clipstream.core.library import format_bytes

JPEG = "image/jpeg"
SVG = "image/svg+xml"
THUMB_TMP_PREFIX = ".thumb_tmp_"

_SVG_TEMPLATE = """<svg width="320" height="240" xmlns="http://www.w3.org/2000/svg">
  <defs>
    <linearGradient id="grad1" x1="0%" y1="0%" x2="100%" y2="100%">
      <stop offset="0%" style="stop-color:#667eea;stop-opacity:1" />
      <stop offset="100%" style="stop-color:#764ba2;stop-opacity:1" />
    </linearGradient>
  </defs>
  <rect width="320" height="240" fill="url(#grad1)"/>
  <circle cx="160" cy="100" r="40" fill="rgba(255,255,255,0.2)"/>
  <polygon points="150,80 150,120 180,100" fill="white"/>
  <text x="160" y="160" text-anchor="middle" fill="white" font-family="Arial, sans-serif" font-size="14" font-weight="bold">{name}</text>
  <text x="160" y="180" text-anchor="middle" fill="white" font-family="Arial, sans-serif" font-size="12">{size}</text>
  <text x="160" y="200" text-anchor="middle" fill="white" font-family="Arial, sans-serif" font-size="10">Click to play</text>
</svg>
"""


def render_svg_placeholder(filename: str, size: int) -> str:
    name = os.path.splitext(filename)[0]
    return _SVG_TEMPLATE.format(name=html.escape(name), size=format_bytes(size))


class ThumbnailGenerator:
    """
    Creates one cached thumbnail per video: a JPEG from the external thumbnailer,
    or an SVG placeholder when the tool is missing or fails.
    """

    def __init__(self, data_dir: str, thumb_dir: str, command: str = "ffmpegthumbnailer", timeout: int = 30):
        self.data_dir = data_dir
        self.thumb_dir = thumb_dir
        self.command = command
        self.timeout = timeout

    def _paths(self, filename: str) -> Tuple[str, str]:
        return (
            os.path.join(self.thumb_dir, f"{filename}.jpg"),
            os.path.join(self.thumb_dir, f"{filename}.svg"),
        )

    def cached(self, filename: str) -> Optional[Tuple[str, str]]:
        jpg_path, svg_path = self._paths(filename)
        if os.path.exists(jpg_path) and os.path.getsize(jpg_path) > 0:
            return jpg_path, JPEG
        if os.path.exists(svg_path):
            return svg_path, SVG
        return None

    def _run_thumbnailer(self, video_path: str, jpg_path: str) -> bool:
        cmd = [self.command, "-i", video_path, "-o", jpg_path, "-s", "320", "-t", "50%", "-q", "8"]
        try:
            subprocess.run(
                cmd, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL,
                check=True, timeout=self.timeout,
            )
        except (OSError, subprocess.CalledProcessError, subprocess.TimeoutExpired):
            return False
        return os.path.exists(jpg_path) and os.path.getsize(jpg_path) > 0

    def _write_atomic(self, final_path: str, suffix: str, produce) -> bool:
        """Runs produce(tmp_path) and moves the result into place only if it returns True."""
        fd, tmp = tempfile.mkstemp(prefix=THUMB_TMP_PREFIX, suffix=suffix, dir=self.thumb_dir)
        os.close(fd)
        try:
            if not produce(tmp):
                return False
            os.replace(tmp, final_path)
            return True
        finally:
            with suppress(FileNotFoundError):
                os.remove(tmp)

    def get_or_create(self, filename: str, ctx: RequestContext) -> Optional[Tuple[str, str]]:
        """
        Returns (path, content type), or None if the video does not exist.
        Thumbnails only ever appear complete under their final name.
        """
        video_path = os.path.join(self.data_dir, filename)
        if not os.path.isfile(video_path):
            return None

        hit = self.cached(filename)
        if hit:
            ctx.log(f"✅ Thumbnail for {filename} served from cache")
            return hit

        os.makedirs(self.thumb_dir, exist_ok=True)
        jpg_path, svg_path = self._paths(filename)

        ctx.log(f"🔧 Generating thumbnail for {filename}...")
        if self._write_atomic(jpg_path, ".jpg", lambda tmp: self._run_thumbnailer(video_path, tmp)):
            ctx.log(f"✅ Thumbnail generated for {filename}")
            return jpg_path, JPEG

        ctx.log(f"🔄 {self.command} unavailable or failed, falling back to SVG thumbnail")
        svg = render_svg_placeholder(filename, os.path.getsize(video_path))

        def write_svg(tmp: str) -> bool:
            with open(tmp, "w", encoding="utf-8") as f:
                f.write(svg)
            return True

        self._write_atomic(svg_path, ".svg", write_svg)
        return svg_path, SVG

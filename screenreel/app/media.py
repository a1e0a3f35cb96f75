"""Media blobs and ffmpeg-based probing.

``probe_media`` reads what ffmpeg prints about an input: dimensions,
frame rate, codecs and duration.  Live-encoded WebM carries no duration
in its header, so the duration is then measured by decoding the file
once.
"""

import logging
import os
import re
import subprocess
import tempfile
from dataclasses import dataclass
from typing import Optional

from .utils import ffmpeg_exe, subprocess_kwargs

logger = logging.getLogger(__name__)

MIME_BY_FORMAT = {
    "webm": "video/webm",
    "mp4": "video/mp4",
    "gif": "image/gif",
}

EXTENSION_BY_MIME = {v: k for k, v in MIME_BY_FORMAT.items()}

# Video codecs each container can carry unchanged
CONTAINER_CODECS = {
    "webm": {"vp8", "vp9", "av1"},
    "mp4": {"h264", "hevc", "av1", "mpeg4"},
    "gif": {"gif"},
}

_DURATION_RE = re.compile(r"Duration:\s*(\d+):(\d+):(\d+(?:\.\d+)?)")
_INPUT_RE = re.compile(r"Input #0,\s*([^,]+(?:,[^,\s]+)*?),\s*from")
_VIDEO_RE = re.compile(r"Stream #0:\d+.*?: Video: (\w+)[^\n]*?, (\d{2,5})x(\d{2,5})")
_FPS_RE = re.compile(r"(\d+(?:\.\d+)?) (?:fps|tbr)")
_AUDIO_RE = re.compile(r"Stream #0:\d+.*?: Audio: (\w+)")
_TIME_RE = re.compile(r"time=\s*(\d+):(\d+):(\d+(?:\.\d+)?)")


@dataclass(frozen=True)
class MediaAsset:
    """An in-memory media blob with its MIME type."""
    data: bytes
    mime_type: str = "video/webm"

    @property
    def size(self) -> int:
        return len(self.data)

    @property
    def is_empty(self) -> bool:
        return not self.data

    @property
    def format(self) -> str:
        return format_for_mime(self.mime_type)


@dataclass(frozen=True)
class MediaInfo:
    width: int = 0
    height: int = 0
    duration: float = 0.0
    fps: float = 0.0
    has_audio: bool = False
    container: str = ""
    video_codec: str = ""
    audio_codec: str = ""


def format_for_mime(mime: str) -> str:
    """``video/webm;codecs=vp9`` → ``webm``."""
    base = mime.split(";", 1)[0].strip().lower()
    return EXTENSION_BY_MIME.get(base, base.rsplit("/", 1)[-1])


def mime_for(info: MediaInfo) -> str:
    """Container MIME type for a probed file."""
    if "webm" in info.container or "matroska" in info.container:
        return "video/webm"
    if "mp4" in info.container or "mov" in info.container:
        return "video/mp4"
    if "gif" in info.container:
        return "image/gif"
    return "application/octet-stream"


def _hms(match: "re.Match") -> float:
    h, m, s = match.groups()
    return int(h) * 3600 + int(m) * 60 + float(s)


def parse_probe_output(text: str) -> MediaInfo:
    """Build a :class:`MediaInfo` from ffmpeg's ``-i`` banner."""
    duration = 0.0
    m = _DURATION_RE.search(text)
    if m:
        duration = _hms(m)
    container = ""
    m = _INPUT_RE.search(text)
    if m:
        container = m.group(1).strip()
    width = height = 0
    video_codec = ""
    fps = 0.0
    m = _VIDEO_RE.search(text)
    if m:
        video_codec = m.group(1)
        width, height = int(m.group(2)), int(m.group(3))
        line_end = text.find("\n", m.start())
        line = text[m.start():line_end if line_end >= 0 else None]
        f = _FPS_RE.search(line)
        if f:
            fps = float(f.group(1))
    audio_codec = ""
    m = _AUDIO_RE.search(text)
    if m:
        audio_codec = m.group(1)
    return MediaInfo(
        width=width, height=height, duration=duration, fps=fps,
        has_audio=bool(audio_codec), container=container,
        video_codec=video_codec, audio_codec=audio_codec,
    )


def measure_duration(path: str) -> float:
    """Decode *path* fully and return the last reported timestamp."""
    result = subprocess.run(
        [ffmpeg_exe(), "-hide_banner", "-stats",
         "-i", path, "-map", "0:v:0", "-f", "null", "-"],
        capture_output=True, timeout=600,
        **subprocess_kwargs(),
    )
    times = _TIME_RE.findall(result.stderr.decode(errors="replace"))
    if not times:
        return 0.0
    h, m, s = times[-1]
    return int(h) * 3600 + int(m) * 60 + float(s)


def probe_media(path: str) -> MediaInfo:
    """Inspect a media file with ffmpeg."""
    # ffmpeg exits non-zero when given no output; the banner is what we need
    result = subprocess.run(
        [ffmpeg_exe(), "-hide_banner", "-i", path],
        capture_output=True, timeout=30,
        **subprocess_kwargs(),
    )
    text = result.stderr.decode(errors="replace")
    info = parse_probe_output(text)
    if info.width == 0 and not info.has_audio:
        logger.warning("ffmpeg could not read %s: %s", path, text.strip()[-200:])
        return info
    if info.duration <= 0 and info.width > 0:
        measured = measure_duration(path)
        logger.debug("Header had no duration; measured %.2fs", measured)
        info = MediaInfo(
            width=info.width, height=info.height, duration=measured, fps=info.fps,
            has_audio=info.has_audio, container=info.container,
            video_codec=info.video_codec, audio_codec=info.audio_codec,
        )
    return info


def write_temp(data: bytes, suffix: str, directory: Optional[str] = None) -> str:
    """Write *data* to a new temp file and return its path."""
    fd, path = tempfile.mkstemp(suffix=suffix, prefix="screenreel_", dir=directory)
    with os.fdopen(fd, "wb") as f:
        f.write(data)
    return path


def probe_bytes(asset: MediaAsset) -> MediaInfo:
    """Probe an in-memory blob via a temporary file."""
    path = write_temp(asset.data, "." + (asset.format or "bin"))
    try:
        return probe_media(path)
    finally:
        try:
            os.remove(path)
        except OSError:
            pass

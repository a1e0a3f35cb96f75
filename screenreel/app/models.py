"""Core data models for ScreenReel.

Defines the dataclasses shared by capture, editing and export: capture
options, timeline segments, attached assets, and the editor state that
parameterises a render.  Models support JSON serialization via
``to_dict()`` / ``from_dict()``.
"""

import base64
import dataclasses
import math
import time
import uuid
from dataclasses import dataclass
from typing import Optional, Tuple

# ── Defaults and bounds ─────────────────────────────────────────────

DEFAULT_FPS = 30
MIN_SEGMENT_WIDTH = 0.1  # seconds; trim never makes a segment narrower
MIN_SPEED = 0.5
MAX_SPEED = 2.0
MIN_ZOOM = 1.0
MAX_ZOOM = 3.0
DEFAULT_VIDEO_VOLUME = 1.0
DEFAULT_MUSIC_VOLUME = 0.5
DEFAULT_BACKGROUND_COLOR = "#000000"
IDENTITY_DURATION_TOLERANCE = 0.5  # seconds

OUTPUT_FORMATS = ("webm", "mp4", "gif")

# Named target resolutions for export
RESOLUTION_PRESETS = {
    "4k": (3840, 2160),
    "1080p": (1920, 1080),
    "720p": (1280, 720),
    "480p": (854, 480),
}


def _clamp(value: float, lo: float, hi: float) -> float:
    if value != value:  # NaN
        return lo
    return max(lo, min(hi, float(value)))


@dataclass(frozen=True)
class CaptureOptions:
    """What a capture session should acquire and how to present it."""
    audio: bool = True
    camera: bool = False
    picture_in_picture: bool = False
    audio_mixing: bool = False
    background_color: Optional[str] = None
    background_image_url: Optional[str] = None

    @property
    def wants_background(self) -> bool:
        """True when the recording goes through the background compositor."""
        return bool(self.background_color or self.background_image_url)

    def to_dict(self) -> dict:
        return {
            "audio": self.audio,
            "camera": self.camera,
            "pictureInPicture": self.picture_in_picture,
            "audioMixing": self.audio_mixing,
            "backgroundColor": self.background_color,
            "backgroundImageUrl": self.background_image_url,
        }

    @staticmethod
    def from_dict(d: dict) -> "CaptureOptions":
        return CaptureOptions(
            audio=bool(d.get("audio", True)),
            camera=bool(d.get("camera", False)),
            picture_in_picture=bool(d.get("pictureInPicture", False)),
            audio_mixing=bool(d.get("audioMixing", False)),
            background_color=d.get("backgroundColor"),
            background_image_url=d.get("backgroundImageUrl"),
        )


@dataclass(frozen=True)
class Segment:
    """A kept ``[start, end)`` span of the source recording, in seconds."""
    id: str
    start: float
    end: float

    @property
    def duration(self) -> float:
        return self.end - self.start

    def contains(self, t: float) -> bool:
        """Half-open membership: the end instant belongs to the next span."""
        return self.start <= t < self.end

    @staticmethod
    def create(start: float, end: float) -> "Segment":
        """Factory that generates a fresh ``seg-`` id."""
        return Segment(id=f"seg-{int(time.time() * 1000)}-{uuid.uuid4().hex[:6]}",
                       start=start, end=end)

    def to_dict(self) -> dict:
        return {"id": self.id, "start": self.start, "end": self.end}

    @staticmethod
    def from_dict(d: dict) -> "Segment":
        return Segment(id=str(d["id"]), start=float(d["start"]), end=float(d["end"]))


@dataclass(frozen=True)
class Asset:
    """A user-attached asset: either raw bytes, a URL, or both.

    Used for the secondary (music) track and the background image.
    """
    name: str
    data: Optional[bytes] = None
    url: Optional[str] = None
    mime_type: str = ""

    def __post_init__(self) -> None:
        if self.data is None and not self.url:
            raise ValueError("an asset needs data or a url")

    def to_dict(self) -> dict:
        d = {"name": self.name, "mimeType": self.mime_type}
        if self.url:
            d["url"] = self.url
        if self.data is not None:
            d["data"] = base64.b64encode(self.data).decode("ascii")
        return d

    @staticmethod
    def from_dict(d: dict) -> "Asset":
        data = d.get("data")
        return Asset(
            name=d.get("name", ""),
            data=base64.b64decode(data) if data is not None else None,
            url=d.get("url"),
            mime_type=d.get("mimeType", ""),
        )


@dataclass(frozen=True)
class EditorState:
    """Everything an export needs besides the source recording.

    Instances are immutable; ``update()`` returns a validated copy with
    gains, speed, zoom and pan clamped into range and segments sorted.
    """

    segments: Tuple[Segment, ...] = ()
    video_volume: float = DEFAULT_VIDEO_VOLUME
    music_volume: float = DEFAULT_MUSIC_VOLUME
    playback_speed: float = 1.0
    zoom: float = 1.0
    pan_x: float = 0.0  # -1 (left) .. 1 (right)
    pan_y: float = 0.0
    added_audio: Optional[Asset] = None
    background_color: str = DEFAULT_BACKGROUND_COLOR
    background_image: Optional[Asset] = None
    output_format: str = "webm"
    resolution: str = "1080p"

    def __post_init__(self) -> None:
        set_ = object.__setattr__
        set_(self, "segments", tuple(sorted(self.segments, key=lambda s: s.start)))
        set_(self, "video_volume", _clamp(self.video_volume, 0.0, 1.0))
        set_(self, "music_volume", _clamp(self.music_volume, 0.0, 1.0))
        set_(self, "playback_speed", _clamp(self.playback_speed, MIN_SPEED, MAX_SPEED))
        set_(self, "zoom", _clamp(self.zoom, MIN_ZOOM, MAX_ZOOM))
        set_(self, "pan_x", _clamp(self.pan_x, -1.0, 1.0))
        set_(self, "pan_y", _clamp(self.pan_y, -1.0, 1.0))
        if self.output_format not in OUTPUT_FORMATS:
            raise ValueError(f"unknown output format: {self.output_format!r}")
        if self.resolution not in RESOLUTION_PRESETS:
            raise ValueError(f"unknown resolution preset: {self.resolution!r}")

    @staticmethod
    def initial(duration: float) -> "EditorState":
        """Fresh state for a recording of *duration* seconds: one full segment."""
        if not math.isfinite(duration) or duration <= 0:
            return EditorState()
        return EditorState(segments=(Segment.create(0.0, duration),))

    def update(self, **changes) -> "EditorState":
        """Return a copy with *changes* applied and re-validated."""
        return dataclasses.replace(self, **changes)

    @property
    def target_size(self) -> Tuple[int, int]:
        return RESOLUTION_PRESETS[self.resolution]

    @property
    def has_background(self) -> bool:
        return (self.background_image is not None
                or self.background_color.lower() != DEFAULT_BACKGROUND_COLOR)

    def edited_duration(self) -> float:
        """Output length in seconds: kept span total scaled by speed."""
        total = sum(s.duration for s in self.segments)
        return total / self.playback_speed

    def is_identity(self, duration: float) -> bool:
        """True when rendering would reproduce the source unchanged.

        Requires a single segment spanning the whole recording (within
        half a second at the end) and neutral gains, speed, zoom and pan
        with nothing added.
        """
        if len(self.segments) != 1:
            return False
        seg = self.segments[0]
        return (
            seg.start <= 1e-3
            and abs(seg.end - duration) < IDENTITY_DURATION_TOLERANCE
            and self.video_volume == 1.0
            and self.playback_speed == 1.0
            and self.zoom == 1.0
            and self.pan_x == 0.0
            and self.pan_y == 0.0
            and self.added_audio is None
            and not self.has_background
        )

    def to_dict(self) -> dict:
        """Serialize to a plain dict for JSON storage."""
        d = {
            "segments": [s.to_dict() for s in self.segments],
            "videoVolume": self.video_volume,
            "musicVolume": self.music_volume,
            "playbackSpeed": self.playback_speed,
            "zoom": self.zoom,
            "panX": self.pan_x,
            "panY": self.pan_y,
            "backgroundColor": self.background_color,
            "outputFormat": self.output_format,
            "resolution": self.resolution,
        }
        if self.added_audio is not None:
            d["addedAudio"] = self.added_audio.to_dict()
        if self.background_image is not None:
            d["backgroundImage"] = self.background_image.to_dict()
        return d

    @staticmethod
    def from_dict(d: dict) -> "EditorState":
        """Reconstruct from a dict, falling back to defaults for missing keys."""
        added = d.get("addedAudio")
        image = d.get("backgroundImage")
        return EditorState(
            segments=tuple(Segment.from_dict(s) for s in d.get("segments", [])),
            video_volume=d.get("videoVolume", DEFAULT_VIDEO_VOLUME),
            music_volume=d.get("musicVolume", DEFAULT_MUSIC_VOLUME),
            playback_speed=d.get("playbackSpeed", 1.0),
            zoom=d.get("zoom", 1.0),
            pan_x=d.get("panX", 0.0),
            pan_y=d.get("panY", 0.0),
            added_audio=Asset.from_dict(added) if added else None,
            background_color=d.get("backgroundColor", DEFAULT_BACKGROUND_COLOR),
            background_image=Asset.from_dict(image) if image else None,
            output_format=d.get("outputFormat", "webm"),
            resolution=d.get("resolution", "1080p"),
        )


@dataclass
class LibraryItem:
    """Metadata for a recording saved in the library."""
    id: str
    name: str
    timestamp: float  # ms since epoch
    size: int
    mime_type: str = "video/webm"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "timestamp": self.timestamp,
            "size": self.size,
            "mimeType": self.mime_type,
        }

    @staticmethod
    def from_dict(d: dict) -> "LibraryItem":
        return LibraryItem(
            id=d["id"],
            name=d.get("name", ""),
            timestamp=float(d.get("timestamp", 0)),
            size=int(d.get("size", 0)),
            mime_type=d.get("mimeType", "video/webm"),
        )

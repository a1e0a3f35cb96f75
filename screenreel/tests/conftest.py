"""Shared pytest fixtures for ScreenReel tests.

Everything here is synthetic: tracks produce generated frames and
samples, devices hand out those tracks, and the encoder sink and player
stand-ins never touch ffmpeg or a display.
"""

from typing import List, Optional

import numpy as np
import pytest
from PySide6.QtCore import QObject, Signal

from app.media import MediaInfo
from app.models import Segment
from app.streams import AudioTrack, MediaStream, VideoTrack


# ── Tracks ──────────────────────────────────────────────────────────


class FakeVideoTrack(VideoTrack):
    """Solid-colour frames of a fixed size."""

    def __init__(self, width: int = 320, height: int = 240,
                 color: tuple = (40, 80, 120), label: str = "fake-video") -> None:
        super().__init__(label)
        self.frame = np.full((height, width, 3), color, dtype=np.uint8)
        self.released = False

    def read_frame(self) -> Optional[np.ndarray]:
        return self.frame if self.is_live else None

    @property
    def size(self):
        h, w = self.frame.shape[:2]
        return (w, h)

    def finish(self) -> None:
        """Simulate the source going away (e.g. sharing stopped)."""
        self._end()

    def _release(self) -> None:
        self.released = True


class FakeAudioTrack(AudioTrack):
    """Constant-level stereo samples."""

    def __init__(self, level: float = 0.25, label: str = "fake-audio") -> None:
        super().__init__(label)
        self.level = level
        self.released = False

    def read(self, frames: int) -> np.ndarray:
        return np.full((frames, self.channels), self.level, dtype=np.float32)

    def _release(self) -> None:
        self.released = True


# ── Devices ─────────────────────────────────────────────────────────


class FakeDevices:
    """Device provider whose failures are configured per test.

    *audio_error* is raised whenever a primary stream is requested with
    audio; *mic_error* when the microphone is requested on its own.
    """

    def __init__(self, display_error: Optional[Exception] = None,
                 audio_error: Optional[Exception] = None,
                 mic_error: Optional[Exception] = None,
                 with_system_audio: bool = True) -> None:
        self.display_error = display_error
        self.audio_error = audio_error
        self.mic_error = mic_error
        self.with_system_audio = with_system_audio
        self.calls: List[tuple] = []
        self.video_tracks: List[FakeVideoTrack] = []
        self.audio_tracks: List[FakeAudioTrack] = []

    def _video(self) -> FakeVideoTrack:
        track = FakeVideoTrack()
        self.video_tracks.append(track)
        return track

    def _audio(self, label: str) -> FakeAudioTrack:
        track = FakeAudioTrack(label=label)
        self.audio_tracks.append(track)
        return track

    def get_display_media(self, video: bool = True, audio: bool = False) -> MediaStream:
        self.calls.append(("display", video, audio))
        if self.display_error is not None:
            raise self.display_error
        if audio and self.audio_error is not None:
            raise self.audio_error
        tracks = [self._video()]
        if audio and self.with_system_audio:
            tracks.append(self._audio("system"))
        return MediaStream(tracks)

    def get_user_media(self, video: bool = False, audio: bool = False) -> MediaStream:
        self.calls.append(("user", video, audio))
        if not video:
            if self.mic_error is not None:
                raise self.mic_error
            return MediaStream([self._audio("microphone")])
        if self.display_error is not None:
            raise self.display_error
        if audio and self.audio_error is not None:
            raise self.audio_error
        tracks = [self._video()]
        if audio:
            tracks.append(self._audio("camera-mic"))
        return MediaStream(tracks)


# ── Encoder sink ────────────────────────────────────────────────────


class FakeSink(QObject):
    """Encoder sink that emits scripted chunks when stopped."""

    data_available = Signal(bytes)
    stopped = Signal()
    error = Signal(object)

    def __init__(self, stream: MediaStream, mime_type: str,
                 chunks: Optional[List[bytes]] = None,
                 start_error: Optional[Exception] = None,
                 stop_error: Optional[Exception] = None) -> None:
        super().__init__()
        self.stream = stream
        self.mime_type = mime_type
        self.chunks = [b"chunk-1", b"chunk-2"] if chunks is None else chunks
        self.start_error = start_error
        self.stop_error = stop_error
        self.state = "inactive"
        self.timeslice_ms = None
        self.events: List[str] = []
        self.stop_calls = 0

    def start(self, timeslice_ms: int = 1000) -> None:
        if self.start_error is not None:
            raise self.start_error
        self.timeslice_ms = timeslice_ms
        self.state = "recording"
        self.events.append("start")

    def pause(self) -> None:
        if self.state == "recording":
            self.state = "paused"
        self.events.append("pause")

    def resume(self) -> None:
        if self.state == "paused":
            self.state = "recording"
        self.events.append("resume")

    def stop(self) -> None:
        self.stop_calls += 1
        if self.state == "inactive":
            return
        self.state = "inactive"
        self.events.append("stop")
        for chunk in self.chunks:
            self.data_available.emit(chunk)
        if self.stop_error is not None:
            self.error.emit(self.stop_error)
        self.stopped.emit()


class SinkFactory:
    """Callable building ``FakeSink`` objects and remembering them."""

    def __init__(self, **kwargs) -> None:
        self.kwargs = kwargs
        self.created: List[FakeSink] = []

    def __call__(self, stream: MediaStream, mime_type: str) -> FakeSink:
        sink = FakeSink(stream, mime_type, **self.kwargs)
        self.created.append(sink)
        return sink

    @property
    def last(self) -> FakeSink:
        return self.created[-1]


# ── Player ──────────────────────────────────────────────────────────


class FakePlayer:
    """Transport stand-in whose clock advances a fixed step per poll."""

    instances: List["FakePlayer"] = []

    def __init__(self, path: str, rate: float = 1.0, video: bool = True,
                 audio: bool = True, loop: bool = False, step: float = 0.5,
                 duration: float = 10.0) -> None:
        self.path = path
        self.rate = rate
        self.loop = loop
        self.step = step
        self.duration = duration
        self._t = 0.0
        self._playing = False
        self.seeks: List[float] = []
        self.released = False
        self.video_track = FakeVideoTrack() if video else None
        self.audio_track = FakeAudioTrack() if audio else None
        FakePlayer.instances.append(self)

    @property
    def current_time(self) -> float:
        if self._playing:
            self._t = min(self._t + self.step * self.rate, self.duration)
        return self._t

    @property
    def paused(self) -> bool:
        return not self._playing

    @property
    def ended(self) -> bool:
        return not self.loop and self._t >= self.duration

    def play(self) -> None:
        self._playing = True

    def pause(self) -> None:
        self._playing = False

    def seek(self, t: float) -> None:
        self.seeks.append(t)
        self._t = t

    def wait_seeked(self, timeout: float = 5.0) -> bool:
        return True

    def release(self) -> None:
        self.released = True
        self._playing = False


# ── Fixtures ────────────────────────────────────────────────────────


@pytest.fixture
def fake_devices() -> FakeDevices:
    return FakeDevices()


@pytest.fixture
def sink_factory() -> SinkFactory:
    return SinkFactory()


@pytest.fixture
def fake_player_factory():
    FakePlayer.instances = []
    yield FakePlayer
    FakePlayer.instances = []


@pytest.fixture
def three_segments() -> List[Segment]:
    """Kept ranges [0,2], [2,5] and [7,9] of a 10 s recording (7 s total)."""
    return [
        Segment(id="seg-a", start=0.0, end=2.0),
        Segment(id="seg-b", start=2.0, end=5.0),
        Segment(id="seg-c", start=7.0, end=9.0),
    ]


@pytest.fixture
def webm_info() -> MediaInfo:
    """Probe result for a 10 s 1080p VP9/Opus WebM."""
    return MediaInfo(width=1920, height=1080, duration=10.0, fps=30.0,
                     has_audio=True, container="webm",
                     video_codec="vp9", audio_codec="opus")


@pytest.fixture
def silent_info() -> MediaInfo:
    """Probe result for a 10 s 1080p WebM without audio."""
    return MediaInfo(width=1920, height=1080, duration=10.0, fps=30.0,
                     has_audio=False, container="webm", video_codec="vp8")
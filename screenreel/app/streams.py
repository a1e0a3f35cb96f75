"""Media tracks and streams.

A *track* is one live source of video frames or audio samples.  Tracks
start ``live`` and become ``ended`` either when stopped by their owner
(``stop()``, no callbacks) or when the source goes away on its own
(ended callbacks fire, e.g. the user closed the shared window).

Video tracks hand out their most recent BGR ``uint8`` frame.  Audio
tracks hand out float32 PCM blocks shaped ``(frames, channels)`` and
zero-fill when the source has not produced enough yet.
"""

import logging
import threading
import uuid
from collections import deque
from typing import Callable, Deque, List, Optional, Tuple

import numpy as np

logger = logging.getLogger(__name__)

LIVE = "live"
ENDED = "ended"

AUDIO_SAMPLE_RATE = 48000
AUDIO_CHANNELS = 2


class MediaTrack:
    """Base class for audio and video tracks."""

    kind = ""

    def __init__(self, label: str = "") -> None:
        self.id = uuid.uuid4().hex
        self.label = label
        self._ready_state = LIVE
        self._ended_callbacks: List[Callable[["MediaTrack"], None]] = []
        self._state_lock = threading.Lock()

    @property
    def ready_state(self) -> str:
        return self._ready_state

    @property
    def is_live(self) -> bool:
        return self._ready_state == LIVE

    def add_ended_callback(self, callback: Callable[["MediaTrack"], None]) -> None:
        """Call *callback* when the source ends by itself."""
        self._ended_callbacks.append(callback)

    def stop(self) -> None:
        """Stop the track and release its source.  Idempotent."""
        with self._state_lock:
            if self._ready_state == ENDED:
                return
            self._ready_state = ENDED
        self._release()

    def _end(self) -> None:
        """Mark the track ended because the source went away; notify listeners."""
        with self._state_lock:
            if self._ready_state == ENDED:
                return
            self._ready_state = ENDED
        logger.info("%s track '%s' ended", self.kind or "media", self.label)
        for cb in list(self._ended_callbacks):
            try:
                cb(self)
            except Exception:
                logger.exception("Track ended callback failed")
        self._release()

    def _release(self) -> None:
        """Free device resources.  Overridden by concrete tracks."""


class VideoTrack(MediaTrack):
    """A source of BGR frames."""

    kind = "video"

    def read_frame(self) -> Optional[np.ndarray]:
        """Return the latest frame, or None if nothing has arrived yet."""
        raise NotImplementedError

    @property
    def size(self) -> Tuple[int, int]:
        """``(width, height)`` of the frames, ``(0, 0)`` until known."""
        return (0, 0)


class AudioTrack(MediaTrack):
    """A source of float32 PCM."""

    kind = "audio"
    sample_rate = AUDIO_SAMPLE_RATE
    channels = AUDIO_CHANNELS

    def read(self, frames: int) -> np.ndarray:
        """Return exactly *frames* samples, zero-filled on underrun."""
        raise NotImplementedError


class FrameBufferVideoTrack(VideoTrack):
    """Video track backed by a latest-frame buffer that a producer updates."""

    def __init__(self, label: str = "", on_release: Optional[Callable[[], None]] = None) -> None:
        super().__init__(label)
        self._frame: Optional[np.ndarray] = None
        self._frame_lock = threading.Lock()
        self._on_release = on_release
        self.frames_pushed = 0

    def push_frame(self, frame: np.ndarray) -> None:
        with self._frame_lock:
            self._frame = frame
            self.frames_pushed += 1

    def read_frame(self) -> Optional[np.ndarray]:
        with self._frame_lock:
            return self._frame

    @property
    def size(self) -> Tuple[int, int]:
        with self._frame_lock:
            if self._frame is None:
                return (0, 0)
            h, w = self._frame.shape[:2]
            return (w, h)

    def end(self) -> None:
        """Producer-side end of stream."""
        self._end()

    def _release(self) -> None:
        if self._on_release is not None:
            self._on_release()


def to_channels(block: np.ndarray, channels: int) -> np.ndarray:
    """Reshape/convert a PCM block to ``(frames, channels)`` float32."""
    block = np.asarray(block, dtype=np.float32)
    if block.ndim == 1:
        block = block.reshape(-1, 1)
    have = block.shape[1]
    if have == channels:
        return block
    if have == 1:
        return np.repeat(block, channels, axis=1)
    if channels == 1:
        return block.mean(axis=1, keepdims=True)
    return block[:, :channels]


class BufferedAudioTrack(AudioTrack):
    """Audio track fed by a producer (device callback, decoder) through a FIFO.

    The buffer holds at most *max_seconds* of audio; older samples are
    dropped when a slow consumer falls behind.
    """

    def __init__(self, label: str = "", sample_rate: int = AUDIO_SAMPLE_RATE,
                 channels: int = AUDIO_CHANNELS, max_seconds: float = 2.0,
                 on_release: Optional[Callable[[], None]] = None) -> None:
        super().__init__(label)
        self.sample_rate = sample_rate
        self.channels = channels
        self._blocks: Deque[np.ndarray] = deque()
        self._buffered = 0
        self._max_frames = int(sample_rate * max_seconds)
        self._buf_lock = threading.Lock()
        self._on_release = on_release

    @property
    def buffered_frames(self) -> int:
        return self._buffered

    def push(self, block: np.ndarray) -> None:
        block = to_channels(block, self.channels).copy()
        with self._buf_lock:
            self._blocks.append(block)
            self._buffered += len(block)
            while self._buffered > self._max_frames and self._blocks:
                dropped = self._blocks.popleft()
                self._buffered -= len(dropped)

    def read(self, frames: int) -> np.ndarray:
        out = np.zeros((frames, self.channels), dtype=np.float32)
        filled = 0
        with self._buf_lock:
            while filled < frames and self._blocks:
                block = self._blocks[0]
                take = min(frames - filled, len(block))
                out[filled:filled + take] = block[:take]
                filled += take
                if take == len(block):
                    self._blocks.popleft()
                else:
                    self._blocks[0] = block[take:]
                self._buffered -= take
        return out

    def end(self) -> None:
        self._end()

    def _release(self) -> None:
        if self._on_release is not None:
            self._on_release()


class MediaStream:
    """An ordered set of tracks captured or composed together."""

    def __init__(self, tracks: Optional[List[MediaTrack]] = None) -> None:
        self.id = uuid.uuid4().hex
        self._tracks: List[MediaTrack] = list(tracks or [])

    @property
    def tracks(self) -> List[MediaTrack]:
        return list(self._tracks)

    def video_tracks(self) -> List[VideoTrack]:
        return [t for t in self._tracks if t.kind == "video"]

    def audio_tracks(self) -> List[AudioTrack]:
        return [t for t in self._tracks if t.kind == "audio"]

    def add_track(self, track: MediaTrack) -> None:
        if track not in self._tracks:
            self._tracks.append(track)

    def remove_track(self, track: MediaTrack) -> None:
        if track in self._tracks:
            self._tracks.remove(track)

    @property
    def active(self) -> bool:
        return any(t.is_live for t in self._tracks)

    def stop(self) -> None:
        """Stop every track in the stream."""
        for track in self._tracks:
            track.stop()

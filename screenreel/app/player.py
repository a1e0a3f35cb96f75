"""Seekable playback of a media file as live tracks.

``SourcePlayer`` plays a file in real time at a given rate: its video
track hands out the frame at the current playback position and its
audio track hands out PCM from the same position.  The re-capture
renderer drives it with ``seek``/``play``/``pause`` like a transport.
"""

import logging
import subprocess
import threading
import time
from typing import Optional

import cv2
import numpy as np

from .errors import RenderFailed
from .streams import AUDIO_CHANNELS, AUDIO_SAMPLE_RATE, AudioTrack, VideoTrack
from .utils import ffmpeg_exe, subprocess_kwargs

logger = logging.getLogger(__name__)

RESYNC_TOLERANCE = 0.1  # seconds of audio/clock drift before the audio cursor jumps


def decode_pcm(path: str, sample_rate: int = AUDIO_SAMPLE_RATE,
               channels: int = AUDIO_CHANNELS) -> np.ndarray:
    """Decode the first audio stream of *path* to float32 ``(frames, channels)``."""
    result = subprocess.run(
        [ffmpeg_exe(), "-hide_banner", "-loglevel", "error", "-i", path,
         "-vn", "-f", "f32le", "-ac", str(channels), "-ar", str(sample_rate), "pipe:1"],
        capture_output=True, timeout=600,
        **subprocess_kwargs(),
    )
    if result.returncode != 0:
        raise RenderFailed(f"Could not decode audio from {path}: "
                           f"{result.stderr.decode(errors='replace')[-200:]}")
    pcm = np.frombuffer(result.stdout, dtype=np.float32)
    usable = len(pcm) - len(pcm) % channels
    return pcm[:usable].reshape(-1, channels)


class _PlayerVideoTrack(VideoTrack):
    def __init__(self, player: "SourcePlayer") -> None:
        super().__init__(label=f"player:{player.path}")
        self._player = player

    def read_frame(self) -> Optional[np.ndarray]:
        return self._player.frame_at_position()

    @property
    def size(self):
        return self._player.frame_size


class _PlayerAudioTrack(AudioTrack):
    def __init__(self, player: "SourcePlayer") -> None:
        super().__init__(label=f"player-audio:{player.path}")
        self._player = player

    def read(self, frames: int) -> np.ndarray:
        return self._player.read_audio(frames)


class SourcePlayer:
    """Real-time player for one file, exposing live video/audio tracks."""

    def __init__(self, path: str, rate: float = 1.0, video: bool = True,
                 audio: bool = True, loop: bool = False) -> None:
        self.path = path
        self.rate = rate
        self.loop = loop
        self._lock = threading.Lock()
        self._seeked = threading.Event()
        self._playing = False
        self._base_time = 0.0
        self._base_wall = 0.0
        self._frame: Optional[np.ndarray] = None
        self._next_pts = 0.0
        self._cap: Optional[cv2.VideoCapture] = None
        self._pcm: Optional[np.ndarray] = None
        self._cursor = 0.0  # audio position in frames
        self.duration = 0.0
        self.frame_size = (0, 0)

        if video:
            cap = cv2.VideoCapture(path)
            if not cap.isOpened():
                raise RenderFailed(f"Could not open {path} for playback")
            self._cap = cap
            self.frame_size = (int(cap.get(cv2.CAP_PROP_FRAME_WIDTH)),
                               int(cap.get(cv2.CAP_PROP_FRAME_HEIGHT)))
            fps = cap.get(cv2.CAP_PROP_FPS) or 0.0
            count = cap.get(cv2.CAP_PROP_FRAME_COUNT) or 0.0
            if fps > 0 and count > 0:
                self.duration = count / fps
        if audio:
            pcm = decode_pcm(path)
            if len(pcm):
                self._pcm = pcm
                self.duration = max(self.duration, len(pcm) / AUDIO_SAMPLE_RATE)

        self.video_track: Optional[VideoTrack] = _PlayerVideoTrack(self) if video else None
        self.audio_track: Optional[AudioTrack] = _PlayerAudioTrack(self) if self._pcm is not None else None
        self._seeked.set()

    # ── clock ───────────────────────────────────────────────────────

    @property
    def current_time(self) -> float:
        with self._lock:
            return self._position()

    def _position(self) -> float:
        t = self._base_time
        if self._playing:
            t += (time.monotonic() - self._base_wall) * self.rate
        if self.duration > 0:
            if self.loop:
                t %= self.duration
            else:
                t = min(t, self.duration)
        return t

    @property
    def paused(self) -> bool:
        return not self._playing

    @property
    def ended(self) -> bool:
        with self._lock:
            return (not self.loop and self.duration > 0
                    and self._position() >= self.duration)

    # ── transport ───────────────────────────────────────────────────

    def play(self) -> None:
        with self._lock:
            if self._playing:
                return
            self._base_wall = time.monotonic()
            self._playing = True
            self._cursor = self._base_time * AUDIO_SAMPLE_RATE

    def pause(self) -> None:
        with self._lock:
            if not self._playing:
                return
            self._base_time = self._position()
            self._playing = False

    def seek(self, t: float) -> None:
        """Move to *t* seconds; ``wait_seeked`` returns once a frame is ready."""
        self._seeked.clear()
        with self._lock:
            t = max(0.0, min(t, self.duration)) if self.duration > 0 else max(0.0, t)
            self._base_time = t
            self._base_wall = time.monotonic()
            self._cursor = t * AUDIO_SAMPLE_RATE
            if self._cap is not None:
                self._cap.set(cv2.CAP_PROP_POS_MSEC, t * 1000.0)
                ok, frame = self._cap.read()
                if ok:
                    self._frame = frame
                self._next_pts = self._cap.get(cv2.CAP_PROP_POS_MSEC) / 1000.0
        self._seeked.set()

    def wait_seeked(self, timeout: float = 5.0) -> bool:
        return self._seeked.wait(timeout)

    def release(self) -> None:
        with self._lock:
            self._playing = False
            if self._cap is not None:
                self._cap.release()
                self._cap = None
        for track in (self.video_track, self.audio_track):
            if track is not None:
                track.stop()

    # ── media access ────────────────────────────────────────────────

    def frame_at_position(self) -> Optional[np.ndarray]:
        """Decode forward to the current position and return that frame."""
        with self._lock:
            if self._cap is None:
                return self._frame
            target = self._position()
            while self._next_pts <= target:
                ok, frame = self._cap.read()
                if not ok:
                    break
                self._frame = frame
                self._next_pts = self._cap.get(cv2.CAP_PROP_POS_MSEC) / 1000.0
            return self._frame

    def read_audio(self, frames: int) -> np.ndarray:
        out = np.zeros((frames, AUDIO_CHANNELS), dtype=np.float32)
        with self._lock:
            pcm = self._pcm
            if pcm is None or not self._playing or not len(pcm):
                return out
            clock = self._position() * AUDIO_SAMPLE_RATE
            if abs(self._cursor - clock) > RESYNC_TOLERANCE * AUDIO_SAMPLE_RATE:
                self._cursor = clock
            positions = self._cursor + np.arange(frames) * self.rate
            self._cursor += frames * self.rate
        total = len(pcm)
        if self.loop:
            positions = np.mod(positions, total)
        idx = positions.astype(np.int64)
        valid = idx < total
        if self.rate == 1.0:
            out[valid] = pcm[idx[valid]]
        else:
            base = np.arange(total)
            for ch in range(AUDIO_CHANNELS):
                out[valid, ch] = np.interp(positions[valid], base, pcm[:, ch])
        return out

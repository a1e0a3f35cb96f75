"""Encoder sink: turns a live media stream into ordered WebM chunks.

Video frames are pumped to an ffmpeg subprocess as raw BGR at a fixed
frame rate (the latest frame is repeated when the source is idle), audio
goes over a loopback TCP socket as float32 PCM, and the encoded WebM is
read back from ffmpeg's stdout and delivered in timeslice-sized chunks
through ``data_available``.
"""

import logging
import socket
import subprocess
import threading
import time
from collections import deque
from typing import Deque, List, Optional, Tuple

import numpy as np
from PySide6.QtCore import QObject, Signal

from .errors import EncodingError
from .models import DEFAULT_FPS
from .streams import MediaStream
from .utils import ffmpeg_encoder_listing, ffmpeg_exe, join_thread, precise_sleep, subprocess_kwargs

logger = logging.getLogger(__name__)

RECORDER_TIMESLICE_MS = 1000
FIRST_FRAME_TIMEOUT = 2.0
AUDIO_BLOCK_SECONDS = 0.02

# Descending preference; the first supported entry wins.
MIME_PREFERENCES = [
    "video/webm;codecs=vp9,opus",
    "video/webm;codecs=vp8,opus",
    "video/webm;codecs=vp9",
    "video/webm;codecs=vp8",
    "video/webm",
]

# Codec name in a MIME string → ffmpeg encoder
CODEC_ENCODERS = {
    "vp9": "libvpx-vp9",
    "vp8": "libvpx",
    "opus": "libopus",
    "vorbis": "libvorbis",
}

AUDIO_CODECS = ("opus", "vorbis")

# Codecs used for a bare "video/webm"
DEFAULT_VIDEO_CODEC = "vp8"
DEFAULT_AUDIO_CODEC = "opus"

# Cached so ffmpeg is probed once per process
_supported_mime_types: List[str] | None = None


def parse_mime(mime: str) -> Tuple[str, Optional[str], Optional[str]]:
    """Split ``video/webm;codecs=vp9,opus`` into ``(container, video, audio)``."""
    container, _, params = mime.partition(";")
    video = audio = None
    params = params.strip()
    if params.startswith("codecs="):
        for codec in params[len("codecs="):].strip('"').split(","):
            codec = codec.strip().lower()
            if codec in AUDIO_CODECS:
                audio = codec
            elif codec:
                video = codec
    return container.strip().lower(), video, audio


def supported_mime_types() -> List[str]:
    """Preference entries whose encoders the bundled ffmpeg provides."""
    global _supported_mime_types
    if _supported_mime_types is not None:
        return _supported_mime_types

    listing = ffmpeg_encoder_listing()
    supported: List[str] = []
    for mime in MIME_PREFERENCES:
        _, video, audio = parse_mime(mime)
        needed = [CODEC_ENCODERS[c] for c in (video, audio) if c]
        if all(f" {enc} " in listing for enc in needed):
            supported.append(mime)
    if "video/webm" not in supported:
        # The container default is always usable
        supported.append("video/webm")
    _supported_mime_types = supported
    logger.info("Supported recording formats: %s", ", ".join(supported))
    return supported


def choose_mime_type(has_audio: bool, supported: Optional[List[str]] = None) -> str:
    """Pick the best recording MIME type for a stream.

    Streams with audio prefer codec pairs that carry audio; video-only
    streams prefer video-only entries.  Falls back to plain ``video/webm``.
    """
    if supported is None:
        supported = supported_mime_types()
    with_audio = [m for m in MIME_PREFERENCES if parse_mime(m)[2]]
    video_only = [m for m in MIME_PREFERENCES if not parse_mime(m)[2] and parse_mime(m)[1]]
    order = (with_audio + video_only) if has_audio else video_only
    for mime in order:
        if mime in supported:
            return mime
    return "video/webm"


def build_encoder_command(mime: str, width: int, height: int, fps: int,
                          audio_url: Optional[str] = None,
                          timeslice_ms: int = RECORDER_TIMESLICE_MS) -> List[str]:
    """ffmpeg command reading raw BGR video (and optional PCM) → WebM on stdout."""
    _, video, audio = parse_mime(mime)
    vcodec = CODEC_ENCODERS[video or DEFAULT_VIDEO_CODEC]
    cmd = [
        ffmpeg_exe(), "-hide_banner", "-loglevel", "error",
        "-f", "rawvideo",
        "-pix_fmt", "bgr24",
        "-s", f"{width}x{height}",
        "-r", str(fps),
        "-i", "pipe:0",
    ]
    if audio_url:
        cmd += ["-f", "f32le", "-ar", "48000", "-ac", "2", "-i", audio_url]
    cmd += ["-map", "0:v"]
    if audio_url:
        cmd += ["-map", "1:a"]
    cmd += ["-c:v", vcodec, "-deadline", "realtime", "-cpu-used", "8",
            "-b:v", "4M", "-pix_fmt", "yuv420p"]
    if vcodec == "libvpx-vp9":
        cmd += ["-row-mt", "1"]
    if audio_url:
        cmd += ["-c:a", CODEC_ENCODERS[audio or DEFAULT_AUDIO_CODEC], "-b:a", "128k"]
    cmd += [
        "-f", "webm",
        "-live", "1",
        "-cluster_time_limit", str(timeslice_ms),
        "-flush_packets", "1",
        "pipe:1",
    ]
    return cmd


class EncoderSink(QObject):
    """Encodes a :class:`MediaStream` to WebM and emits the bytes in chunks.

    States are ``inactive``, ``recording`` and ``paused``.  ``stop()``
    flushes the encoder; the final ``data_available`` is emitted before
    ``stopped``.  If ffmpeg fails, ``error`` is emitted before ``stopped``.
    """

    data_available = Signal(bytes)
    stopped = Signal()
    error = Signal(object)

    def __init__(self, stream: MediaStream, mime_type: str, fps: int = DEFAULT_FPS,
                 parent: QObject | None = None) -> None:
        super().__init__(parent)
        self.stream = stream
        self.mime_type = mime_type
        self.fps = fps
        self.state = "inactive"
        self.last_error: Optional[Exception] = None
        self._proc: Optional[subprocess.Popen] = None
        self._listener: Optional[socket.socket] = None
        self._audio_conn: Optional[socket.socket] = None
        self._running = False
        self._paused = False
        self._stop_requested = False
        self._timeslice = RECORDER_TIMESLICE_MS / 1000.0
        self._stderr_tail: Deque[str] = deque(maxlen=20)
        self._threads: List[threading.Thread] = []
        self._reader: Optional[threading.Thread] = None
        self._lock = threading.Lock()

    # ── public API ──────────────────────────────────────────────────

    def start(self, timeslice_ms: int = RECORDER_TIMESLICE_MS) -> None:
        if self.state != "inactive":
            raise EncodingError(f"Encoder already {self.state}")
        videos = self.stream.video_tracks()
        if not videos:
            raise EncodingError("Stream has no video track to encode")
        video = videos[0]
        width, height = self._wait_for_size(video)
        width -= width % 2
        height -= height % 2
        self._timeslice = max(timeslice_ms, 1) / 1000.0

        audio_url = None
        audio_tracks = self.stream.audio_tracks()
        carries_audio = parse_mime(self.mime_type)[2] is not None or ";" not in self.mime_type
        if audio_tracks and carries_audio:
            self._listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
            self._listener.bind(("127.0.0.1", 0))
            self._listener.listen(1)
            self._listener.settimeout(10.0)
            audio_url = f"tcp://127.0.0.1:{self._listener.getsockname()[1]}"

        cmd = build_encoder_command(self.mime_type, width, height, self.fps,
                                    audio_url, int(self._timeslice * 1000))
        try:
            self._proc = subprocess.Popen(
                cmd,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                **subprocess_kwargs(),
            )
        except OSError as exc:
            self._close_sockets()
            raise EncodingError("Could not launch the encoder", exc) from exc

        # Give ffmpeg a moment to fail on bad args
        time.sleep(0.05)
        if self._proc.poll() is not None:
            stderr = self._proc.stderr.read().decode(errors="replace") if self._proc.stderr else ""
            self._close_sockets()
            logger.error("ffmpeg exited immediately: %s", stderr[:300])
            raise EncodingError(f"Encoder exited immediately: {stderr[:200].strip()}")

        self._running = True
        self.state = "recording"
        self._spawn(self._pump_video, "encoder-video", video, (width, height))
        if audio_url and audio_tracks:
            self._spawn(self._pump_audio, "encoder-audio", audio_tracks[0])
        self._spawn(self._drain_stderr, "encoder-stderr")
        self._reader = threading.Thread(target=self._read_output, name="encoder-reader", daemon=True)
        self._reader.start()
        logger.info("Encoder started: %s %dx%d@%d", self.mime_type, width, height, self.fps)

    def pause(self) -> None:
        if self.state == "recording":
            self._paused = True
            self.state = "paused"

    def resume(self) -> None:
        if self.state == "paused":
            self._paused = False
            self.state = "recording"

    def stop(self) -> None:
        """Flush and finish.  Returns after ``stopped`` has been emitted."""
        with self._lock:
            if self.state == "inactive" or self._stop_requested:
                return
            self._stop_requested = True
        self._shutdown_inputs()
        join_thread(self._reader, 20.0)

    # ── worker threads ──────────────────────────────────────────────

    def _spawn(self, target, name: str, *args) -> None:
        t = threading.Thread(target=target, args=args, name=name, daemon=True)
        self._threads.append(t)
        t.start()

    def _wait_for_size(self, video) -> Tuple[int, int]:
        deadline = time.monotonic() + FIRST_FRAME_TIMEOUT
        while time.monotonic() < deadline:
            frame = video.read_frame()
            if frame is not None:
                h, w = frame.shape[:2]
                return w, h
            time.sleep(0.01)
        raise EncodingError("Video track delivered no frames")

    def _pump_video(self, video, size: Tuple[int, int]) -> None:
        w, h = size
        interval = 1.0 / self.fps
        last: Optional[bytes] = None
        next_at = time.perf_counter()
        while self._running:
            if not self._paused:
                frame = video.read_frame()
                if frame is not None:
                    if frame.shape[1] != w or frame.shape[0] != h:
                        frame = np.ascontiguousarray(frame[:h, :w])
                    last = frame.tobytes()
                if last is not None and len(last) == w * h * 3:
                    try:
                        self._proc.stdin.write(last)
                    except (BrokenPipeError, OSError, ValueError):
                        break
            next_at += interval
            precise_sleep(next_at - time.perf_counter())

    def _pump_audio(self, track) -> None:
        try:
            conn, _ = self._listener.accept()
        except OSError as exc:
            logger.error("Encoder never connected for audio: %s", exc)
            return
        self._audio_conn = conn
        block = int(track.sample_rate * AUDIO_BLOCK_SECONDS)
        next_at = time.perf_counter()
        while self._running:
            samples = track.read(block)
            if not self._paused:
                try:
                    conn.sendall(np.ascontiguousarray(samples, dtype=np.float32).tobytes())
                except OSError:
                    break
            next_at += AUDIO_BLOCK_SECONDS
            precise_sleep(next_at - time.perf_counter())

    def _drain_stderr(self) -> None:
        for line in iter(self._proc.stderr.readline, b""):
            text = line.decode(errors="replace").strip()
            if text:
                self._stderr_tail.append(text)

    def _read_output(self) -> None:
        pending = bytearray()
        last_emit = time.monotonic()
        out = self._proc.stdout
        try:
            while True:
                data = out.read1(65536)
                if not data:
                    break
                pending += data
                if time.monotonic() - last_emit >= self._timeslice:
                    self.data_available.emit(bytes(pending))
                    pending.clear()
                    last_emit = time.monotonic()
        except (OSError, ValueError) as exc:
            logger.error("Encoder output read failed: %s", exc)
        if pending:
            self.data_available.emit(bytes(pending))
        self._finish()

    def _finish(self) -> None:
        self._shutdown_inputs()
        proc = self._proc
        try:
            rc = proc.wait(timeout=15)
        except subprocess.TimeoutExpired:
            proc.kill()
            rc = proc.wait()
        for t in self._threads:
            join_thread(t, 2.0)
        err: Optional[Exception] = None
        tail = " | ".join(self._stderr_tail)
        if rc != 0:
            err = EncodingError(f"Encoder failed with exit code {rc}: {tail[-300:]}")
        elif not self._stop_requested:
            err = EncodingError("Encoder ended unexpectedly")
        self.state = "inactive"
        if err is not None:
            logger.error("%s", err)
            self.last_error = err
            self.error.emit(err)
        self.stopped.emit()

    def _shutdown_inputs(self) -> None:
        self._running = False
        for t in self._threads:
            if t.name in ("encoder-video", "encoder-audio"):
                join_thread(t, 2.0)
        proc = self._proc
        if proc is not None and proc.stdin and not proc.stdin.closed:
            try:
                proc.stdin.close()
            except OSError:
                pass
        self._close_sockets()

    def _close_sockets(self) -> None:
        for sock in (self._audio_conn, self._listener):
            if sock is not None:
                try:
                    sock.close()
                except OSError:
                    pass
        self._audio_conn = None
        self._listener = None

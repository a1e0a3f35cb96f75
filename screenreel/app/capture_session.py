"""Capture session controller.

Runs one recording at a time through ``idle → starting → recording →
recorded``.  A session acquires the screen or camera (with audio when
possible), optionally mixes in the microphone, optionally routes video
through the background compositor, and feeds an encoder sink whose
chunks are assembled into the final recording when the sink stops.

Every failure tears the session down completely and returns to ``idle``
with the error reported through the ``error`` signal.
"""

import logging
import threading
from typing import Callable, List, Optional

import numpy as np
from PySide6.QtCore import QObject, Qt, Signal

from .assets import load_background_image
from .audio_mixer import AudioMixGraph
from .compositor import COMPOSITOR_SIZE, WARMUP_MS, Compositor
from .devices import DeviceProvider
from .encoder import RECORDER_TIMESLICE_MS, EncoderSink, choose_mime_type, parse_mime, supported_mime_types
from .errors import (
    RECOVERABLE_AUDIO_ERRORS,
    CaptureFailed,
    CompositorInitFailed,
    EmptyResult,
    EncodingError,
    InvalidCaptureState,
    NoDataCaptured,
    RemoteAssetFailed,
    ScreenReelError,
)
from .media import MediaAsset
from .models import CaptureOptions
from .streams import MediaStream

logger = logging.getLogger(__name__)

IDLE = "idle"
STARTING = "starting"
RECORDING = "recording"
RECORDED = "recorded"

SinkFactory = Callable[[MediaStream, str], EncoderSink]


class RecorderSession:
    """Everything one capture owns.  ``release()`` frees all of it together."""

    def __init__(self, options: CaptureOptions) -> None:
        self.options = options
        self.stream: Optional[MediaStream] = None  # raw capture, used for preview
        self.record_stream: Optional[MediaStream] = None  # what the sink encodes
        self.compositor: Optional[Compositor] = None
        self.mix_graph: Optional[AudioMixGraph] = None
        self.mic_stream: Optional[MediaStream] = None
        self.sink: Optional[EncoderSink] = None
        self.mime_type = ""
        self.chunks: List[bytes] = []
        self.sink_error: Optional[Exception] = None
        self.stopping = False
        self.finished_early = False
        self.source_ended = False
        self.discarded = False  # reset() ran while the session was live

    @property
    def data_size(self) -> int:
        return sum(len(c) for c in self.chunks)

    def release(self) -> None:
        """Stop the sink, compositor, mix graph and every device track.

        Safe to call again: anything attached since the last call is
        stopped too, everything else is already inactive.
        """
        if self.sink is not None and self.sink.state != "inactive":
            self.sink.stop()
        if self.compositor is not None:
            self.compositor.stop()
        if self.mix_graph is not None:
            self.mix_graph.close()
        for stream in (self.mic_stream, self.stream, self.record_stream):
            if stream is not None:
                stream.stop()
        logger.debug("Capture session released")


class CaptureSessionController(QObject):
    """Owns at most one capture session and the last finished recording."""

    status_changed = Signal(str)
    error = Signal(object)  # ScreenReelError
    recording_finished = Signal(object)  # MediaAsset

    def __init__(self, devices: Optional[DeviceProvider] = None,
                 sink_factory: Optional[SinkFactory] = None,
                 background_loader: Callable[[str], np.ndarray] = load_background_image,
                 compositor_factory: Callable[..., Compositor] = Compositor,
                 mime_types: Optional[Callable[[], List[str]]] = None,
                 warmup_ms: int = WARMUP_MS,
                 timeslice_ms: int = RECORDER_TIMESLICE_MS,
                 parent: QObject | None = None) -> None:
        super().__init__(parent)
        self._devices = devices or DeviceProvider()
        self._sink_factory = sink_factory or EncoderSink
        self._background_loader = background_loader
        self._compositor_factory = compositor_factory
        self._mime_types = mime_types or supported_mime_types
        self._warmup_ms = warmup_ms
        self._timeslice_ms = timeslice_ms
        self._lock = threading.RLock()
        self._session: Optional[RecorderSession] = None
        self._status = IDLE
        self._recorded: Optional[MediaAsset] = None
        self.last_error: Optional[ScreenReelError] = None

    # ── properties ──────────────────────────────────────────────────

    @property
    def status(self) -> str:
        return self._status

    @property
    def recorded(self) -> Optional[MediaAsset]:
        return self._recorded

    @property
    def preview_stream(self) -> Optional[MediaStream]:
        """The raw capture stream of the active session, if any."""
        session = self._session
        return session.stream if session is not None else None

    @property
    def is_busy(self) -> bool:
        return self._session is not None

    # ── public API ──────────────────────────────────────────────────

    def start(self, options: Optional[CaptureOptions] = None) -> bool:
        """Begin a capture.  Returns False if one is pending or active, or it failed."""
        options = options or CaptureOptions()
        with self._lock:
            if self._session is not None:
                logger.info("Start ignored: a capture is already %s", self._status)
                return False
            session = RecorderSession(options)
            self._session = session
            self._recorded = None
            self.last_error = None
            self._set_status(STARTING)

        try:
            self._open(session)
        except Exception as exc:
            self._fail(session, exc)
            return False

        with self._lock:
            discarded = session.discarded
        if discarded:
            # Reset while starting
            session.release()
            return False
        return True

    def stop(self) -> None:
        """Finish the active recording.  Idempotent."""
        with self._lock:
            session = self._session
            if session is None or self._status != RECORDING or session.stopping:
                return
            session.stopping = True
        logger.info("Stopping capture")
        session.sink.stop()

    def reset(self) -> None:
        """Discard the active session and any finished recording."""
        with self._lock:
            session, self._session = self._session, None
            self._recorded = None
            if session is not None:
                session.discarded = True
        if session is not None:
            session.release()
        self._set_status(IDLE)

    def load(self, media: MediaAsset) -> None:
        """Adopt an existing recording (e.g. from the library) for editing."""
        if media.is_empty:
            raise EmptyResult("Cannot load an empty recording")
        self.reset()
        with self._lock:
            self._recorded = media
        self._set_status(RECORDED)

    # ── session setup ───────────────────────────────────────────────

    def _open(self, session: RecorderSession) -> None:
        options = session.options
        stream = self._acquire(options)
        session.stream = stream
        for track in stream.video_tracks():
            track.add_ended_callback(lambda _t: self._on_source_ended(session))

        if options.audio_mixing and options.audio and not options.camera:
            self._mix_microphone(session, stream)

        record_stream = stream
        if options.wants_background:
            record_stream = self._composite(session, stream)
        session.record_stream = record_stream

        self._ensure_current(session)
        mime = choose_mime_type(bool(record_stream.audio_tracks()), self._mime_types())
        session.mime_type = mime
        sink = self._sink_factory(record_stream, mime)
        session.sink = sink
        direct = Qt.ConnectionType.DirectConnection
        sink.data_available.connect(lambda chunk: self._on_data(session, chunk), direct)
        sink.error.connect(lambda exc: self._on_sink_error(session, exc), direct)
        sink.stopped.connect(lambda: self._on_sink_stopped(session), direct)

        self._ensure_current(session)
        sink.start(self._timeslice_ms)
        with self._lock:
            if self._session is session:
                self._set_status(RECORDING)
        logger.info("Recording started (%s)", mime)
        if session.finished_early:
            self._on_sink_stopped(session)
        elif session.source_ended or not all(t.is_live for t in stream.video_tracks()):
            logger.info("Capture source ended during start-up")
            self.stop()

    def _ensure_current(self, session: RecorderSession) -> None:
        with self._lock:
            if session.discarded:
                raise InvalidCaptureState("Capture was reset while starting")

    def _acquire(self, options: CaptureOptions) -> MediaStream:
        """Open the primary stream, degrading to video-only if audio fails."""
        def open_stream(audio: bool) -> MediaStream:
            if options.camera:
                return self._devices.get_user_media(video=True, audio=audio)
            return self._devices.get_display_media(video=True, audio=audio)

        if not options.audio:
            return open_stream(False)
        try:
            return open_stream(True)
        except RECOVERABLE_AUDIO_ERRORS as exc:
            logger.warning("Audio capture unavailable (%s); recording video only", exc)
            return open_stream(False)

    def _mix_microphone(self, session: RecorderSession, stream: MediaStream) -> None:
        """Replace the stream's audio with system audio + microphone.

        Failures leave the stream unmixed.
        """
        mic: Optional[MediaStream] = None
        graph: Optional[AudioMixGraph] = None
        try:
            mic = self._devices.get_user_media(audio=True)
            mic_tracks = mic.audio_tracks()
            if not mic_tracks:
                raise CaptureFailed("Microphone stream has no audio track")
            graph = AudioMixGraph()
            originals = stream.audio_tracks()
            for track in originals:
                graph.add_source(track, owned=True)
            graph.add_source(mic_tracks[0], owned=True)
            for track in originals:
                stream.remove_track(track)
            stream.add_track(graph.destination)
        except Exception as exc:
            logger.error("Audio mixing failed, keeping unmixed audio: %s", exc)
            if graph is not None:
                graph.close()
            if mic is not None:
                mic.stop()
            return
        session.mic_stream = mic
        session.mix_graph = graph
        logger.info("Microphone mixed into recording audio")

    def _composite(self, session: RecorderSession, stream: MediaStream) -> MediaStream:
        """Route video through the background compositor.

        Background asset and warm-up failures abort the session; other
        compositor errors fall back to recording the raw stream.
        """
        options = session.options
        image = None
        if options.background_image_url:
            try:
                image = self._background_loader(options.background_image_url)
            except RemoteAssetFailed as exc:
                raise CompositorInitFailed("Background image unavailable", exc) from exc

        videos = stream.video_tracks()
        try:
            compositor = self._compositor_factory(
                videos[0],
                size=COMPOSITOR_SIZE,
                background_color=options.background_color,
                background_image=image,
            )
            compositor.start()
        except ScreenReelError:
            raise
        except Exception as exc:
            logger.warning("Compositor unavailable (%s); recording without background", exc)
            return stream

        session.compositor = compositor
        composed = compositor.capture_stream(stream.audio_tracks())
        compositor.wait_until_live(self._warmup_ms)
        return composed

    # ── sink callbacks (may run on worker threads) ──────────────────

    def _on_data(self, session: RecorderSession, chunk: bytes) -> None:
        if not chunk:
            return
        with self._lock:
            if self._session is session:
                session.chunks.append(bytes(chunk))

    def _on_sink_error(self, session: RecorderSession, exc: Exception) -> None:
        logger.error("Encoder error: %s", exc)
        if not isinstance(exc, ScreenReelError):
            exc = EncodingError("Recording encoder failed", exc)
        session.sink_error = exc

    def _on_source_ended(self, session: RecorderSession) -> None:
        with self._lock:
            if self._session is not session:
                return
            # Picked up by _open when the source ends before recording begins
            session.source_ended = True
        logger.info("Capture source ended; stopping recording")
        self.stop()

    def _on_sink_stopped(self, session: RecorderSession) -> None:
        with self._lock:
            if self._session is not session:
                return
            if self._status != RECORDING:
                # Sink finished before start-up completed
                session.finished_early = True
                return
            self._session = None
            chunks = list(session.chunks)
            sink_error = session.sink_error
        session.release()

        if sink_error is not None:
            self._report(sink_error)
            return
        if not chunks:
            self._report(NoDataCaptured("No data was captured"))
            return
        blob = b"".join(chunks)
        if not blob:
            self._report(EmptyResult("Recording is empty"))
            return
        container = parse_mime(session.mime_type)[0] or "video/webm"
        media = MediaAsset(data=blob, mime_type=container)
        with self._lock:
            self._recorded = media
        self._set_status(RECORDED)
        logger.info("Recording finished: %d chunks, %d bytes", len(chunks), len(blob))
        self.recording_finished.emit(media)

    # ── failure handling ────────────────────────────────────────────

    def _fail(self, session: RecorderSession, exc: Exception) -> None:
        with self._lock:
            owned = self._session is session
            if owned:
                self._session = None
        session.release()
        if owned:
            self._report(exc)
        else:
            logger.info("Discarded failed start after reset: %s", exc)

    def _report(self, exc: Exception) -> None:
        if not isinstance(exc, ScreenReelError):
            exc = CaptureFailed("Capture failed", exc)
        logger.error("Capture failed: %s", exc)
        self.last_error = exc
        self._set_status(IDLE)
        self.error.emit(exc)

    def _set_status(self, status: str) -> None:
        if status == self._status:
            return
        self._status = status
        self.status_changed.emit(status)

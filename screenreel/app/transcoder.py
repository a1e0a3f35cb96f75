"""Export: render an edited recording to WebM, MP4 or GIF.

``TranscodeEngine.render`` validates the edit, returns the source bytes
untouched for an identity edit, and otherwise hands a prepared job to
one of two interchangeable renderers:

* ``FilterGraphRenderer`` builds a single ffmpeg filter graph for the
  whole edit (fast, exact timing).
* ``RecaptureRenderer`` plays each segment through the compositor in
  real time and re-encodes what it draws (works with any ffmpeg build
  that can encode WebM), then converts to GIF or MP4 if asked.

The renderer is chosen by capability (does ffmpeg have every filter the
graph needs?) or by explicit preference.  ``ExportJob`` runs a render on
a worker thread and reports through Qt signals.
"""

import logging
import os
import subprocess
import tempfile
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, List, Optional

from PySide6.QtCore import QObject, Qt, Signal

from .assets import asset_bytes, decode_image, load_music
from .audio_mixer import AudioMixGraph
from .compositor import COMPOSITOR_PADDING, Compositor
from .encoder import EncoderSink, choose_mime_type
from .errors import NoSegments, RemoteAssetFailed, RenderFailed, TranscodeError
from .filter_graph import build_render_plan
from .gif_encoder import encode_gif
from .layout import Layout, Size, compute_layout, scale_layout
from .media import CONTAINER_CODECS, MIME_BY_FORMAT, MediaAsset, MediaInfo, format_for_mime, probe_media, write_temp
from .models import EditorState, Segment
from .player import SourcePlayer
from .progress import PhaseProgress, ProgressReporter
from .utils import (
    build_encoder_args,
    encoder_fallback_chain,
    ffmpeg_exe,
    run_ffmpeg_progress,
    subprocess_kwargs,
)

logger = logging.getLogger(__name__)

RENDERER_AUTO = "auto"
RENDERER_FILTER_GRAPH = "filter_graph"
RENDERER_RECAPTURE = "recapture"
RENDERER_CHOICES = (RENDERER_AUTO, RENDERER_FILTER_GRAPH, RENDERER_RECAPTURE)

# Filters the single-graph renderer depends on
REQUIRED_FILTERS = (
    "trim", "atrim", "setpts", "asetpts", "concat", "crop", "scale", "pad",
    "overlay", "volume", "amix", "atempo", "fps", "split", "palettegen", "paletteuse",
)

_filter_graph_supported: bool | None = None


def filter_graph_supported() -> bool:
    """True if the bundled ffmpeg provides every filter the graph uses (cached)."""
    global _filter_graph_supported
    if _filter_graph_supported is not None:
        return _filter_graph_supported
    try:
        result = subprocess.run(
            [ffmpeg_exe(), "-hide_banner", "-filters"],
            capture_output=True, timeout=10,
            **subprocess_kwargs(),
        )
        names = set()
        for line in result.stdout.decode(errors="replace").splitlines():
            parts = line.split()
            if len(parts) >= 2 and "->" in line:
                names.add(parts[1])
        missing = [f for f in REQUIRED_FILTERS if f not in names]
        if missing:
            logger.info("ffmpeg lacks filters %s; using re-capture export", ", ".join(missing))
        _filter_graph_supported = not missing
    except Exception as exc:
        logger.warning("Filter probe failed: %s", exc)
        _filter_graph_supported = False
    return _filter_graph_supported


@dataclass
class RenderRequest:
    """One export: the source recording, the edit, and output settings.

    *target* and *output_format* default to the editor state's choices;
    *layout* defaults to one computed from the state's zoom and pan.
    """
    source: MediaAsset
    state: EditorState
    layout: Optional[Layout] = None
    target: Optional[Size] = None
    output_format: Optional[str] = None
    encoder_id: str = "libx264"

    @property
    def segments(self) -> List[Segment]:
        return list(self.state.segments)

    @property
    def format(self) -> str:
        return self.output_format or self.state.output_format

    @property
    def target_size(self) -> Size:
        if self.target is not None:
            return self.target
        w, h = self.state.target_size
        return Size(w, h)


@dataclass
class PreparedRender:
    """A validated request with its inputs materialised on disk."""
    source_path: str
    info: MediaInfo
    state: EditorState
    layout: Layout
    target: Size
    output_format: str
    workdir: str
    music_path: Optional[str] = None
    background_path: Optional[str] = None
    encoder_id: str = "libx264"

    @property
    def segments(self) -> List[Segment]:
        return list(self.state.segments)


def validate_segments(segments: List[Segment]) -> List[Segment]:
    """Reject empty or zero-length edits before any work starts."""
    if not segments:
        raise NoSegments("No video segments selected for export")
    if sum(max(s.end - s.start, 0.0) for s in segments) <= 0:
        raise NoSegments("Selected segments have zero total duration")
    return sorted((s for s in segments if s.end > s.start), key=lambda s: s.start)


def is_fast_path(request: RenderRequest, info: MediaInfo) -> bool:
    """Identity edit whose requested output already matches the source."""
    fmt = request.format
    if format_for_mime(request.source.mime_type) != fmt:
        return False
    if info.video_codec and info.video_codec not in CONTAINER_CODECS.get(fmt, set()):
        return False
    target = request.target_size
    if (target.width, target.height) != (info.width, info.height):
        return False
    return request.state.is_identity(info.duration)


class Renderer(ABC):
    """Turns a prepared render into output bytes."""

    name = ""

    @abstractmethod
    def render(self, job: PreparedRender, progress: Callable[[float], None]) -> bytes:
        ...


# ── Filter-graph renderer ───────────────────────────────────────────


class FilterGraphRenderer(Renderer):
    """Single-pass ffmpeg render; MP4 walks the H.264 encoder fallback chain."""

    name = RENDERER_FILTER_GRAPH

    def __init__(self, runner=run_ffmpeg_progress) -> None:
        self._runner = runner

    def render(self, job: PreparedRender, progress: Callable[[float], None]) -> bytes:
        plan = build_render_plan(
            job.source_path, job.info, job.state, job.layout, job.target,
            job.output_format, job.music_path, job.background_path,
        )
        out_path = os.path.join(job.workdir, f"output.{job.output_format}")
        encoders = [job.encoder_id]
        if job.output_format == "mp4":
            encoders += encoder_fallback_chain(job.encoder_id)

        last_error = ""
        for enc_id in encoders:
            args = plan.command_args(out_path, enc_id)
            rc, tail = self._runner(args, plan.duration, progress)
            if rc == 0:
                break
            last_error = tail[-300:]
            if job.output_format == "mp4":
                logger.warning("Encoder %s failed, trying next: %s", enc_id, last_error)
            else:
                break
        else:
            rc = -1
        if rc != 0:
            raise RenderFailed(f"ffmpeg export failed: {last_error}")

        with open(out_path, "rb") as f:
            data = f.read()
        if not data:
            raise RenderFailed("ffmpeg produced an empty file")
        return data


# ── Re-capture renderer ─────────────────────────────────────────────


class RecaptureRenderer(Renderer):
    """Plays each kept segment through the compositor and re-encodes it live.

    The sink is paused while seeking between segments, so the output
    contains only kept content.  GIF output spends the first half of the
    progress range on playback and the second half on the palette passes.
    """

    name = RENDERER_RECAPTURE

    def __init__(self, player_factory=SourcePlayer, sink_factory=EncoderSink,
                 gif_encoder=encode_gif, converter=run_ffmpeg_progress,
                 fps: int = 30, poll_interval: float = 1 / 60,
                 timeslice_ms: int = 250) -> None:
        self._player_factory = player_factory
        self._sink_factory = sink_factory
        self._gif_encoder = gif_encoder
        self._converter = converter
        self.fps = fps
        self.poll_interval = poll_interval
        self.timeslice_ms = timeslice_ms

    def render(self, job: PreparedRender, progress: Callable[[float], None]) -> bytes:
        fmt = job.output_format
        playback_progress = progress if fmt == "webm" else PhaseProgress(progress, 0.0, 0.5)
        webm = self._capture(job, playback_progress)
        if fmt == "webm":
            return webm

        intermediate = write_temp(webm, ".webm", job.workdir)
        out_path = os.path.join(job.workdir, f"output.{fmt}")
        duration = sum(s.duration for s in job.segments) / job.state.playback_speed
        convert_progress = PhaseProgress(progress, 0.5, 1.0)
        if fmt == "gif":
            self._gif_encoder(intermediate, out_path, duration,
                              width=job.target.width, on_progress=convert_progress)
        else:
            args = ["-i", intermediate] + build_encoder_args(job.encoder_id)
            args += ["-c:a", "aac", "-b:a", "192k", "-movflags", "+faststart", out_path]
            rc, tail = self._converter(args, duration, convert_progress)
            if rc != 0:
                raise RenderFailed(f"MP4 conversion failed: {tail[-300:]}")
        with open(out_path, "rb") as f:
            return f.read()

    def _capture(self, job: PreparedRender, progress: Callable[[float], None]) -> bytes:
        state = job.state
        segments = job.segments
        total = sum(s.duration for s in segments)
        layout = scale_layout(job.layout, job.target)

        background = None
        if job.background_path:
            with open(job.background_path, "rb") as f:
                background = decode_image(f.read(), "background image")

        player = self._player_factory(job.source_path, rate=state.playback_speed)
        music = None
        compositor = None
        sink = None
        graph = AudioMixGraph()
        chunks: List[bytes] = []
        errors: List[Exception] = []
        done = threading.Event()
        try:
            if job.music_path and state.music_volume > 0:
                music = self._player_factory(job.music_path, video=False, loop=True)
            compositor = Compositor(
                player.video_track,
                background_color=state.background_color,
                background_image=background,
                layout=layout,
                corner_radius=0,
            )
            if player.audio_track is not None and state.video_volume > 0:
                graph.add_source(player.audio_track, state.video_volume)
            if music is not None and music.audio_track is not None:
                graph.add_source(music.audio_track, state.music_volume)
            audio = [graph.destination] if graph.nodes else []
            stream = compositor.capture_stream(audio)
            sink = self._sink_factory(stream, choose_mime_type(bool(audio)))
            direct = Qt.ConnectionType.DirectConnection
            sink.data_available.connect(lambda chunk: chunks.append(bytes(chunk)) if chunk else None, direct)
            sink.error.connect(errors.append, direct)
            sink.stopped.connect(done.set, direct)

            compositor.start()
            processed = 0.0
            for i, seg in enumerate(segments):
                if i:
                    sink.pause()
                compositor.pause()
                if music is not None:
                    music.pause()
                player.seek(seg.start)
                if not player.wait_seeked():
                    raise RenderFailed(f"Seeking to {seg.start:.2f}s timed out")
                compositor.draw()
                compositor.resume()
                if i:
                    sink.resume()
                else:
                    # Encoding begins on the first settled frame
                    sink.start(self.timeslice_ms)
                if music is not None:
                    music.play()
                player.play()
                while True:
                    t = player.current_time
                    progress((processed + max(0.0, min(t, seg.end) - seg.start)) / total)
                    if t >= seg.end or player.ended or player.paused:
                        break
                    time.sleep(self.poll_interval)
                player.pause()
                processed += seg.duration
                logger.debug("Re-captured segment %s (%.2f-%.2f)", seg.id, seg.start, seg.end)

            if music is not None:
                music.pause()
            sink.stop()
            done.wait(30.0)
        finally:
            if sink is not None and sink.state != "inactive":
                sink.stop()
            if compositor is not None:
                compositor.stop()
            graph.close()
            player.release()
            if music is not None:
                music.release()

        if errors:
            raise RenderFailed("Re-capture encoding failed", errors[0])
        data = b"".join(chunks)
        if not data:
            raise RenderFailed("Re-capture produced no data")
        return data


# ── Engine ──────────────────────────────────────────────────────────


class TranscodeEngine:
    """Validates, prepares and dispatches renders."""

    def __init__(self, preference: str = RENDERER_AUTO,
                 filter_graph_renderer: Optional[Renderer] = None,
                 recapture_renderer: Optional[Renderer] = None,
                 capability_probe: Callable[[], bool] = filter_graph_supported,
                 probe: Callable[[str], MediaInfo] = probe_media,
                 music_loader=load_music) -> None:
        if preference not in RENDERER_CHOICES:
            raise ValueError(f"unknown renderer preference: {preference!r}")
        self.preference = preference
        self._filter_graph = filter_graph_renderer or FilterGraphRenderer()
        self._recapture = recapture_renderer or RecaptureRenderer()
        self._capability_probe = capability_probe
        self._probe = probe
        self._music_loader = music_loader

    def select_renderer(self) -> Renderer:
        if self.preference == RENDERER_FILTER_GRAPH:
            return self._filter_graph
        if self.preference == RENDERER_RECAPTURE:
            return self._recapture
        return self._filter_graph if self._capability_probe() else self._recapture

    def render(self, request: RenderRequest,
               on_progress: Optional[Callable[[float], None]] = None) -> MediaAsset:
        """Render *request*; progress goes 0 → … → exactly one 1.0 on success."""
        fmt = request.format
        if fmt not in MIME_BY_FORMAT:
            raise RenderFailed(f"Unsupported output format: {fmt}")
        segments = validate_segments(request.segments)
        if request.source.is_empty:
            raise RenderFailed("Source recording is empty")

        reporter = ProgressReporter(on_progress)
        reporter.start()
        state = request.state.update(segments=tuple(segments))

        with tempfile.TemporaryDirectory(prefix="screenreel_render_") as workdir:
            source_path = write_temp(request.source.data, "." + (request.source.format or "webm"), workdir)
            info = self._probe(source_path)
            if info.width <= 0 or info.height <= 0:
                raise RenderFailed("Source recording has no readable video stream")

            if is_fast_path(request, info):
                logger.info("Identity edit; returning source unchanged")
                reporter.finish()
                return request.source

            music_path = None
            music = self._music_loader(state.added_audio)
            if music:
                music_path = write_temp(music, ".audio", workdir)

            background_path = None
            if state.background_image is not None:
                try:
                    image = asset_bytes(state.background_image)
                except RemoteAssetFailed as exc:
                    raise RenderFailed("Background image unavailable", exc) from exc
                background_path = write_temp(image, ".img", workdir)

            layout = request.layout or compute_layout(
                Size(info.width, info.height), state.zoom, state.pan_x, state.pan_y,
                padding=COMPOSITOR_PADDING if state.has_background else 0.0,
            )
            job = PreparedRender(
                source_path=source_path,
                info=info,
                state=state,
                layout=layout,
                target=request.target_size,
                output_format=fmt,
                workdir=workdir,
                music_path=music_path,
                background_path=background_path,
                encoder_id=request.encoder_id,
            )
            renderer = self.select_renderer()
            logger.info("Rendering %d segment(s) to %s with %s", len(segments), fmt, renderer.name)
            try:
                data = renderer.render(job, reporter)
            except TranscodeError:
                raise
            except Exception as exc:
                raise RenderFailed(f"{renderer.name} render failed", exc) from exc

        reporter.finish()
        return MediaAsset(data=data, mime_type=MIME_BY_FORMAT[fmt])


class ExportJob(QObject):
    """Runs one render on a worker thread."""

    progress = Signal(float)  # 0.0 – 1.0
    finished = Signal(object)  # MediaAsset
    error = Signal(object)  # TranscodeError
    status = Signal(str)

    def __init__(self, engine: Optional[TranscodeEngine] = None,
                 parent: QObject | None = None) -> None:
        super().__init__(parent)
        self.engine = engine or TranscodeEngine()
        self._thread: Optional[threading.Thread] = None
        self.result: Optional[MediaAsset] = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self, request: RenderRequest) -> None:
        if self.is_running:
            raise RuntimeError("an export is already running")
        self.result = None
        self._thread = threading.Thread(target=self._run, args=(request,),
                                        name="export", daemon=True)
        self._thread.start()

    def wait(self, timeout: Optional[float] = None) -> bool:
        if self._thread is None:
            return True
        self._thread.join(timeout)
        return not self._thread.is_alive()

    def _run(self, request: RenderRequest) -> None:
        try:
            self.status.emit(f"Exporting {request.format.upper()}…")
            result = self.engine.render(request, self.progress.emit)
            self.result = result
            self.status.emit("Export complete")
            self.finished.emit(result)
        except Exception as exc:
            logger.error("Export failed: %s", exc, exc_info=True)
            if not isinstance(exc, TranscodeError):
                exc = RenderFailed("Export failed", exc)
            self.error.emit(exc)

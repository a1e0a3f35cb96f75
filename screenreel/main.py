"""ScreenReel — screen recorder with a non-destructive editor and exporter."""

import argparse
import logging
import os
import signal
import sys
import threading
import time
from typing import List, Optional

from PySide6.QtCore import Qt

from app.assets import MUSIC_PRESETS
from app.backgrounds import find_preset
from app.capture_session import CaptureSessionController
from app.devices import DeviceProvider
from app.errors import ScreenReelError, user_message
from app.library import LocalLibraryStore
from app.media import MIME_BY_FORMAT, MediaAsset, probe_bytes
from app.models import OUTPUT_FORMATS, RESOLUTION_PRESETS, Asset, CaptureOptions, EditorState, Segment
from app.settings import Settings
from app.transcoder import RENDERER_CHOICES, ExportJob, RenderRequest, TranscodeEngine
from app.utils import ENCODER_PROFILES, best_hw_encoder, encoder_display_name, fmt_time
from app.version import __version__

logging.basicConfig(
    level=logging.INFO,
    format="%(name)s | %(levelname)s | %(message)s",
)

_logger = logging.getLogger(__name__)


def _global_exception_handler(exc_type, exc_value, exc_tb):
    """Log unhandled exceptions instead of crashing silently."""
    if issubclass(exc_type, KeyboardInterrupt):
        sys.__excepthook__(exc_type, exc_value, exc_tb)
        return
    _logger.critical("Unhandled exception", exc_info=(exc_type, exc_value, exc_tb))


def parse_segments(text: str) -> List[Segment]:
    """``"0-2,2-5,7-9"`` → three segments."""
    segments = []
    for part in text.split(","):
        part = part.strip()
        if not part:
            continue
        start, sep, end = part.partition("-")
        if not sep:
            raise argparse.ArgumentTypeError(f"segment {part!r} is not START-END")
        try:
            s, e = float(start), float(end)
        except ValueError:
            raise argparse.ArgumentTypeError(f"segment {part!r} is not numeric") from None
        if e <= s:
            raise argparse.ArgumentTypeError(f"segment {part!r} ends before it starts")
        segments.append(Segment.create(s, e))
    return segments


def _mime_for_path(path: str) -> str:
    ext = os.path.splitext(path)[1].lstrip(".").lower()
    return MIME_BY_FORMAT.get(ext, "video/webm")


def _music_asset(value: Optional[str]) -> Optional[Asset]:
    if not value:
        return None
    for preset in MUSIC_PRESETS:
        if value == preset.id:
            return preset.to_asset()
    if os.path.isfile(value):
        with open(value, "rb") as f:
            return Asset(name=os.path.basename(value), data=f.read())
    return Asset(name=value.rsplit("/", 1)[-1], url=value)


# ── record ──────────────────────────────────────────────────────────


def cmd_record(args: argparse.Namespace, settings: Settings) -> int:
    background_url = args.background_image
    background_color = args.background_color
    if args.background_preset:
        preset = find_preset(args.background_preset)
        if preset is None:
            _logger.error("Unknown background preset: %s", args.background_preset)
            return 2
        if preset.kind == "image":
            background_url = preset.url
        else:
            background_color = preset.color

    options = CaptureOptions(
        audio=not args.no_audio,
        camera=args.camera,
        audio_mixing=args.mic,
        background_color=background_color,
        background_image_url=background_url,
    )
    devices = DeviceProvider(monitor_index=args.monitor, fps=args.fps)
    controller = CaptureSessionController(
        devices=devices,
        warmup_ms=settings.warmup_ms,
        timeslice_ms=settings.timeslice_ms,
    )
    done = threading.Event()
    direct = Qt.ConnectionType.DirectConnection
    controller.recording_finished.connect(lambda _m: done.set(), direct)
    controller.error.connect(lambda _e: done.set(), direct)
    controller.status_changed.connect(lambda s: _logger.info("Status: %s", s), direct)

    if not controller.start(options):
        _logger.error(user_message(controller.last_error) if controller.last_error else "Could not start")
        return 1

    stop_requested = threading.Event()
    previous = signal.signal(signal.SIGINT, lambda *_: stop_requested.set())
    try:
        began = time.monotonic()
        while not done.is_set() and not stop_requested.is_set():
            if args.duration and time.monotonic() - began >= args.duration:
                break
            time.sleep(0.1)
        controller.stop()
        done.wait(30.0)
    finally:
        signal.signal(signal.SIGINT, previous)

    media = controller.recorded
    if media is None:
        err = controller.last_error
        _logger.error(user_message(err) if err else "Recording did not finish")
        return 1

    output = args.output or f"recording.{media.format or 'webm'}"
    with open(output, "wb") as f:
        f.write(media.data)
    _logger.info("Saved %s (%d bytes)", output, media.size)
    if args.library:
        LocalLibraryStore(args.library).save(media, args.name)
    return 0


# ── export ──────────────────────────────────────────────────────────


def cmd_export(args: argparse.Namespace, settings: Settings) -> int:
    with open(args.input, "rb") as f:
        source = MediaAsset(data=f.read(), mime_type=_mime_for_path(args.input))

    fmt = args.format or settings.export_format
    resolution = args.resolution or settings.export_resolution
    if args.segments:
        segments = args.segments
    else:
        info = probe_bytes(source)
        segments = [Segment.create(0.0, info.duration)] if info.duration > 0 else []

    state = EditorState(
        segments=tuple(segments),
        video_volume=args.volume,
        music_volume=args.music_volume,
        playback_speed=args.speed,
        zoom=args.zoom,
        pan_x=args.pan_x,
        pan_y=args.pan_y,
        added_audio=_music_asset(args.music),
        background_color=args.background_color,
        background_image=Asset(name="background", url=args.background_image) if args.background_image else None,
        output_format=fmt,
        resolution=resolution,
    )
    _logger.info("Exporting %s of edited video (%d segment(s))",
                 fmt_time(state.edited_duration()), len(state.segments))

    encoder_id = args.encoder or settings.encoder_id
    if encoder_id == "auto":
        encoder_id = best_hw_encoder()
    if fmt == "mp4":
        _logger.info("H.264 encoder: %s", encoder_display_name(encoder_id))

    engine = TranscodeEngine(preference=args.renderer or settings.renderer)
    job = ExportJob(engine)
    last = [-1]

    def _on_progress(value: float) -> None:
        pct = int(value * 100)
        if pct >= last[0] + 10 or value >= 1.0:
            last[0] = pct
            _logger.info("Export progress: %d%%", pct)

    direct = Qt.ConnectionType.DirectConnection
    job.progress.connect(_on_progress, direct)
    job.error.connect(lambda exc: _logger.error(user_message(exc)), direct)
    job.start(RenderRequest(source=source, state=state, encoder_id=encoder_id))
    job.wait()
    if job.result is None:
        return 1

    output = args.output or os.path.splitext(args.input)[0] + f"_edited.{fmt}"
    with open(output, "wb") as f:
        f.write(job.result.data)
    settings.last_export_dir = os.path.dirname(os.path.abspath(output))
    _logger.info("Exported %s (%d bytes)", output, job.result.size)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="screenreel", description=__doc__)
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--settings", help="INI file to use instead of the platform settings store")
    sub = parser.add_subparsers(dest="command", required=True)

    rec = sub.add_parser("record", help="capture the screen or camera")
    rec.add_argument("-o", "--output", help="output file (default recording.webm)")
    rec.add_argument("-d", "--duration", type=float, default=0.0,
                     help="stop after this many seconds (default: until Ctrl+C)")
    rec.add_argument("--camera", action="store_true", help="record the camera instead of the screen")
    rec.add_argument("--monitor", type=int, default=1, help="mss monitor index (1 = primary)")
    rec.add_argument("--fps", type=int, default=30)
    rec.add_argument("--no-audio", action="store_true", help="record video only")
    rec.add_argument("--mic", action="store_true", help="mix the microphone into system audio")
    rec.add_argument("--background-color", help="hex colour behind the padded video")
    rec.add_argument("--background-image", help="image URL or path behind the padded video")
    rec.add_argument("--background-preset", help="named background preset")
    rec.add_argument("--library", help="also save the recording into this library directory")
    rec.add_argument("--name", help="library name for the recording")
    rec.set_defaults(func=cmd_record)

    exp = sub.add_parser("export", help="render an edited recording")
    exp.add_argument("input")
    exp.add_argument("-o", "--output")
    exp.add_argument("-f", "--format", choices=OUTPUT_FORMATS)
    exp.add_argument("-r", "--resolution", choices=sorted(RESOLUTION_PRESETS))
    exp.add_argument("-s", "--segments", type=parse_segments,
                     help="kept ranges in seconds, e.g. 0-2,2-5,7-9")
    exp.add_argument("--volume", type=float, default=1.0, help="clip audio gain 0..1")
    exp.add_argument("--music", help="music preset id, file path or URL")
    exp.add_argument("--music-volume", type=float, default=0.5)
    exp.add_argument("--speed", type=float, default=1.0, help="0.5..2.0")
    exp.add_argument("--zoom", type=float, default=1.0, help="1..3")
    exp.add_argument("--pan-x", type=float, default=0.0)
    exp.add_argument("--pan-y", type=float, default=0.0)
    exp.add_argument("--background-color", default="#000000")
    exp.add_argument("--background-image")
    exp.add_argument("--renderer", choices=RENDERER_CHOICES)
    exp.add_argument("--encoder", choices=["auto"] + sorted(ENCODER_PROFILES),
                     help="H.264 encoder for MP4 output (auto picks hardware when present)")
    exp.set_defaults(func=cmd_export)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Application entry point — parses the command line and runs one command."""
    sys.excepthook = _global_exception_handler
    args = build_parser().parse_args(argv)
    settings = Settings(args.settings)
    try:
        return args.func(args, settings)
    except ScreenReelError as exc:
        _logger.error(user_message(exc))
        return 1


if __name__ == "__main__":
    sys.exit(main())

"""Shared utilities used by multiple modules."""

import logging
import subprocess
import sys
import threading
import time
from typing import Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)


def ffmpeg_exe() -> str:
    """Return path to the ffmpeg binary bundled via imageio-ffmpeg."""
    import imageio_ffmpeg
    return imageio_ffmpeg.get_ffmpeg_exe()


def subprocess_kwargs() -> dict:
    """Extra kwargs to hide the console window on Windows."""
    kw: dict = {}
    if sys.platform == "win32":
        si = subprocess.STARTUPINFO()
        si.dwFlags |= subprocess.STARTF_USESHOWWINDOW
        kw["startupinfo"] = si
        kw["creationflags"] = subprocess.CREATE_NO_WINDOW
    return kw


def fmt_time(seconds: float) -> str:
    """Format seconds as m:ss.d (tenths), the timeline's clock format."""
    if seconds is None or seconds != seconds or seconds < 0 or seconds == float("inf"):
        seconds = 0.0
    mins = int(seconds // 60)
    secs = int(seconds % 60)
    tenths = int((seconds % 1) * 10)
    return f"{mins}:{secs:02d}.{tenths}"


def precise_sleep(seconds: float) -> None:
    """Hybrid sleep: coarse sleep then spin-wait for sub-ms accuracy."""
    if seconds <= 0:
        return
    # Sleep most of the time (leave 2ms for spin-wait)
    coarse = seconds - 0.002
    if coarse > 0:
        time.sleep(coarse)
    target = time.perf_counter() + (seconds - max(coarse, 0))
    while time.perf_counter() < target:
        pass


def join_thread(thread: Optional[threading.Thread], timeout: float = 5.0) -> None:
    """Join *thread* unless it never started or is the calling thread (teardown from a callback)."""
    if thread is None or thread.ident is None or thread is threading.current_thread():
        return
    thread.join(timeout)
    if thread.is_alive():
        logger.warning("Thread %s did not exit within %.1fs", thread.name, timeout)


# ── Hardware-accelerated encoder support ────────────────────────────

# Encoder ID → (display name, ffmpeg codec name, quality args)
# Quality args approximate CRF 18 equivalent for each encoder.
ENCODER_PROFILES: Dict[str, Tuple[str, str, List[str]]] = {
    "h264_nvenc":  ("NVIDIA NVENC",   "h264_nvenc",  ["-preset", "p4", "-cq", "18", "-b:v", "0"]),
    "h264_qsv":    ("Intel QuickSync", "h264_qsv",   ["-preset", "medium", "-global_quality", "18"]),
    "h264_amf":    ("AMD AMF",         "h264_amf",    ["-quality", "quality", "-qp_i", "18", "-qp_p", "18"]),
    "libx264":     ("Software (x264)", "libx264",     ["-preset", "medium", "-crf", "18"]),
}

# Order of preference for auto-detection
_HW_ENCODER_ORDER = ["h264_nvenc", "h264_qsv", "h264_amf"]

# Cached results so we only probe once per process
_available_encoders: List[str] | None = None
_encoder_listing: str | None = None


def ffmpeg_encoder_listing() -> str:
    """Return the raw ``ffmpeg -encoders`` output (cached, empty on failure)."""
    global _encoder_listing
    if _encoder_listing is not None:
        return _encoder_listing
    try:
        result = subprocess.run(
            [ffmpeg_exe(), "-hide_banner", "-encoders"],
            capture_output=True, timeout=10,
            **subprocess_kwargs(),
        )
        _encoder_listing = result.stdout.decode(errors="replace")
    except Exception as exc:
        logger.warning("Encoder probe failed: %s", exc)
        _encoder_listing = ""
    return _encoder_listing


def detect_available_encoders() -> List[str]:
    """Probe ffmpeg for available H.264 encoders.

    Returns a list of encoder IDs (e.g. ``["h264_nvenc", "libx264"]``)
    in preference order.  The software fallback ``libx264`` is always
    included last.  Results are cached after the first call.
    """
    global _available_encoders
    if _available_encoders is not None:
        return _available_encoders

    available: List[str] = []
    output = ffmpeg_encoder_listing()
    for enc_id in _HW_ENCODER_ORDER:
        if enc_id in output:
            available.append(enc_id)

    # Software encoder is always available
    available.append("libx264")
    _available_encoders = available
    return available


def best_hw_encoder() -> str:
    """Return the best available encoder ID, preferring HW acceleration."""
    encoders = detect_available_encoders()
    return encoders[0] if encoders else "libx264"


def encoder_display_name(enc_id: str) -> str:
    """Human-readable name for an encoder ID."""
    profile = ENCODER_PROFILES.get(enc_id)
    return profile[0] if profile else enc_id


def build_encoder_args(enc_id: str) -> List[str]:
    """Return ffmpeg arguments for the given H.264 encoder ID.

    Returns ``["-c:v", "<codec>", ...quality_args..., "-pix_fmt", "yuv420p"]``.
    """
    profile = ENCODER_PROFILES.get(enc_id)
    if profile is None:
        profile = ENCODER_PROFILES["libx264"]
    _, codec, quality_args = profile
    args = ["-c:v", codec] + quality_args + ["-pix_fmt", "yuv420p"]
    return args


def encoder_fallback_chain(encoder_id: str) -> List[str]:
    """Encoders to try after *encoder_id* fails, ending with ``libx264``."""
    available = detect_available_encoders()
    chain: List[str] = []
    if encoder_id in available:
        idx = available.index(encoder_id)
        chain = available[idx + 1:]
    elif encoder_id != "libx264":
        chain = [e for e in available if e != encoder_id]
    if "libx264" not in chain and encoder_id != "libx264":
        chain.append("libx264")
    return chain


def run_ffmpeg_progress(args: List[str], duration: float,
                        on_progress=None, timeout: Optional[float] = None) -> Tuple[int, str]:
    """Run ffmpeg reporting ``out_time / duration`` through *on_progress*.

    Uses ``-progress pipe:1``; stderr is collected and returned with the
    exit code as ``(returncode, stderr_tail)``.
    """
    cmd = [ffmpeg_exe(), "-hide_banner", "-y", "-nostats", "-progress", "pipe:1"] + list(args)
    logger.debug("Running ffmpeg: %s", " ".join(cmd))
    proc = subprocess.Popen(
        cmd,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        **subprocess_kwargs(),
    )
    tail: List[str] = []

    def _drain() -> None:
        for raw in iter(proc.stderr.readline, b""):
            tail.append(raw.decode(errors="replace").rstrip())
            if len(tail) > 40:
                del tail[0]

    drain = threading.Thread(target=_drain, name="ffmpeg-stderr", daemon=True)
    drain.start()
    started = time.monotonic()
    for raw in iter(proc.stdout.readline, b""):
        key, _, value = raw.decode(errors="replace").strip().partition("=")
        if key in ("out_time_us", "out_time_ms") and on_progress and duration > 0:
            try:
                seconds = int(value) / 1_000_000
            except ValueError:
                continue
            on_progress(min(seconds / duration, 1.0))
        if timeout is not None and time.monotonic() - started > timeout:
            proc.kill()
            break
    rc = proc.wait()
    drain.join(5.0)
    return rc, "\n".join(tail)

"""Compositor — draws the live capture onto a background surface.

The capture is scaled into the padded centre of a fixed-size surface
with rounded corners, over a solid colour or a cover-fitted image.  A
heartbeat thread redraws at a fixed rate whether or not the source
produced a new frame, so a static screen still yields a continuous
output stream.  The same draw loop, given an explicit :class:`Layout`,
renders the crop/placement used by the re-capture export path.
"""

import logging
import threading
import time
from typing import Dict, List, Optional, Tuple

import cv2
import numpy as np

from .backgrounds import build_background
from .errors import CompositorInitFailed
from .layout import Layout, fit_rect
from .streams import AudioTrack, FrameBufferVideoTrack, MediaStream, VideoTrack
from .utils import join_thread, precise_sleep

logger = logging.getLogger(__name__)

# ── Visual constants ────────────────────────────────────────────────

COMPOSITOR_SIZE = (1920, 1080)
COMPOSITOR_PADDING = 0.10  # fraction of the surface left free on each side
CORNER_RADIUS = 24  # px, on the 1080p surface
REFRESH_HZ = 60
WARMUP_MS = 300


def _rounded_rect_contour(x: int, y: int, w: int, h: int, r: int) -> np.ndarray:
    """Return contour points for a rounded rectangle."""
    r = min(r, w // 2, h // 2)
    pts = []
    # Generate arc points for each corner (16 segments per corner)
    for cx, cy, a_start in [
        (x + r, y + r, 180),           # top-left
        (x + w - r, y + r, 270),       # top-right
        (x + w - r, y + h - r, 0),     # bottom-right
        (x + r, y + h - r, 90),        # bottom-left
    ]:
        for j in range(17):
            angle = np.radians(a_start + j * 90 / 16)
            pts.append([int(cx + r * np.cos(angle)), int(cy + r * np.sin(angle))])
    return np.array(pts, dtype=np.int32)


def rounded_mask(w: int, h: int, r: int) -> np.ndarray:
    """``h x w`` uint8 mask, 255 inside a rounded rect covering the whole area."""
    mask = np.zeros((h, w), dtype=np.uint8)
    if r <= 0:
        mask[:] = 255
        return mask
    cv2.fillPoly(mask, [_rounded_rect_contour(0, 0, w - 1, h - 1, r)], 255)
    return mask


def video_rect(src_w: int, src_h: int, canvas_w: int, canvas_h: int,
               padding: float = COMPOSITOR_PADDING) -> Tuple[int, int, int, int]:
    """Integer placement of a ``src_w x src_h`` frame on the padded canvas."""
    r = fit_rect(src_w, src_h, canvas_w, canvas_h, padding)
    x, y, w, h = r.as_ints()
    return x, y, max(w, 1), max(h, 1)


def compose_frame(base: np.ndarray, frame: np.ndarray,
                  rect: Tuple[int, int, int, int],
                  mask: Optional[np.ndarray] = None,
                  crop: Optional[Tuple[int, int, int, int]] = None) -> np.ndarray:
    """Copy *base* and paint *frame* (optionally cropped) into *rect*."""
    canvas = base.copy()
    x, y, w, h = rect
    if crop is not None:
        cx, cy, cw, ch = crop
        frame = frame[cy:cy + ch, cx:cx + cw]
    if frame.size == 0 or w <= 0 or h <= 0:
        return canvas
    if frame.ndim == 3 and frame.shape[2] == 4:
        frame = cv2.cvtColor(frame, cv2.COLOR_BGRA2BGR)
    fh, fw = frame.shape[:2]
    interp = cv2.INTER_AREA if (fw > w or fh > h) else cv2.INTER_LINEAR
    resized = frame if (fw, fh) == (w, h) else cv2.resize(frame, (w, h), interpolation=interp)

    # Clip the destination to the canvas
    ch_, cw_ = canvas.shape[:2]
    x0, y0 = max(x, 0), max(y, 0)
    x1, y1 = min(x + w, cw_), min(y + h, ch_)
    if x1 <= x0 or y1 <= y0:
        return canvas
    src = resized[y0 - y:y1 - y, x0 - x:x1 - x]
    roi = canvas[y0:y1, x0:x1]
    if mask is None:
        roi[:] = src
    else:
        m = mask[y0 - y:y1 - y, x0 - x:x1 - x]
        np.copyto(roi, src, where=m[:, :, np.newaxis] > 0)
    return canvas


class Compositor:
    """Heartbeat-driven drawing surface with a capturable output track."""

    def __init__(self, source: VideoTrack,
                 size: Tuple[int, int] = COMPOSITOR_SIZE,
                 background_color: Optional[str] = None,
                 background_image: Optional[np.ndarray] = None,
                 padding: float = COMPOSITOR_PADDING,
                 corner_radius: int = CORNER_RADIUS,
                 layout: Optional[Layout] = None,
                 refresh_hz: int = REFRESH_HZ) -> None:
        if layout is not None:
            size = (layout.canvas.width, layout.canvas.height)
        w, h = size
        if w < 2 or h < 2:
            raise CompositorInitFailed(f"Compositor surface too small: {w}x{h}")
        self.source = source
        self.size = (w, h)
        self.padding = padding
        self.corner_radius = corner_radius
        self.layout = layout
        self.refresh_hz = refresh_hz
        self._base = build_background(w, h, background_color, background_image)
        self.output = FrameBufferVideoTrack(label="compositor")
        self.frame_count = 0
        self._placement: Optional[Tuple[int, int, int, int]] = None
        self._placement_key: Optional[Tuple[int, int]] = None
        self._masks: Dict[Tuple[int, int], np.ndarray] = {}
        self._running = False
        self._paused = False
        self._thread: Optional[threading.Thread] = None

    # ── lifecycle ───────────────────────────────────────────────────

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        self.draw()  # first surface is available immediately
        self._thread = threading.Thread(target=self._heartbeat, name="compositor", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._running = False
        join_thread(self._thread, 2.0)
        self._thread = None
        self.output.stop()

    def pause(self) -> None:
        self._paused = True

    def resume(self) -> None:
        self._paused = False

    @property
    def is_running(self) -> bool:
        return self._running

    def capture_stream(self, audio_tracks: Optional[List[AudioTrack]] = None) -> MediaStream:
        """The composed video plus any audio tracks to carry alongside."""
        return MediaStream([self.output] + list(audio_tracks or []))

    def wait_until_live(self, warmup_ms: int = WARMUP_MS) -> None:
        """Give the surface *warmup_ms* to produce frames, then verify it is live."""
        deadline = time.monotonic() + warmup_ms / 1000.0
        while time.monotonic() < deadline:
            time.sleep(0.01)
        if not self.output.is_live or self.frame_count == 0 or not self._running:
            raise CompositorInitFailed(
                f"Compositor output not live after {warmup_ms} ms warm-up")

    # ── drawing ─────────────────────────────────────────────────────

    def _heartbeat(self) -> None:
        interval = 1.0 / self.refresh_hz
        next_at = time.perf_counter()
        while self._running:
            if not self._paused:
                try:
                    self.draw()
                except cv2.error as exc:
                    logger.error("Compositor draw failed: %s", exc)
            next_at += interval
            precise_sleep(next_at - time.perf_counter())

    def draw(self) -> np.ndarray:
        """Render one surface from the source's latest frame and publish it."""
        frame = self.source.read_frame()
        if frame is None:
            canvas = self._base.copy()
        elif self.layout is not None:
            canvas = self._draw_layout(frame)
        else:
            canvas = self._draw_padded(frame)
        self.output.push_frame(canvas)
        self.frame_count += 1
        return canvas

    def _draw_padded(self, frame: np.ndarray) -> np.ndarray:
        fh, fw = frame.shape[:2]
        if self._placement_key != (fw, fh):
            self._placement = video_rect(fw, fh, self.size[0], self.size[1], self.padding)
            self._placement_key = (fw, fh)
        rect = self._placement
        return compose_frame(self._base, frame, rect, self._mask_for(rect[2], rect[3]))

    def _draw_layout(self, frame: np.ndarray) -> np.ndarray:
        fh, fw = frame.shape[:2]
        src = self.layout.source_rect
        cx = int(min(max(round(src.x), 0), fw - 1))
        cy = int(min(max(round(src.y), 0), fh - 1))
        cw = int(min(max(round(src.width), 1), fw - cx))
        ch = int(min(max(round(src.height), 1), fh - cy))
        rect = self.layout.dest_rect.as_ints()
        mask = self._mask_for(rect[2], rect[3]) if self.corner_radius > 0 else None
        return compose_frame(self._base, frame, rect, mask, crop=(cx, cy, cw, ch))

    def _mask_for(self, w: int, h: int) -> np.ndarray:
        key = (w, h)
        mask = self._masks.get(key)
        if mask is None:
            scale = self.size[1] / COMPOSITOR_SIZE[1]
            mask = rounded_mask(w, h, int(self.corner_radius * scale))
            self._masks[key] = mask
        return mask

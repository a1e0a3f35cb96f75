"""Geometry for export: crop window, destination rectangle, canvas.

``compute_layout`` turns zoom/pan into a source crop window and places the
cropped frame on an output canvas.  All rectangles are in pixels.  Pan is
normalised to ``[-1, 1]``; positive pan moves the crop window left/up,
matching the editor's drag direction.
"""

from dataclasses import dataclass
from typing import Tuple


@dataclass(frozen=True)
class Size:
    width: int
    height: int

    def even(self) -> "Size":
        """Round both dimensions down to even values (min 2)."""
        return Size(_even(self.width), _even(self.height))


@dataclass(frozen=True)
class Rect:
    x: float
    y: float
    width: float
    height: float

    @property
    def right(self) -> float:
        return self.x + self.width

    @property
    def bottom(self) -> float:
        return self.y + self.height

    def as_ints(self) -> Tuple[int, int, int, int]:
        return int(round(self.x)), int(round(self.y)), int(round(self.width)), int(round(self.height))


@dataclass(frozen=True)
class Layout:
    """Where the source crop goes on the output canvas."""
    canvas: Size
    source_rect: Rect
    dest_rect: Rect


def _even(n: float) -> int:
    n = int(n)
    return max(2, n - n % 2)


def fit_rect(src_w: float, src_h: float, canvas_w: float, canvas_h: float,
             padding: float = 0.0) -> Rect:
    """Largest rect with the source aspect that fits the padded canvas, centred.

    *padding* is a fraction of each canvas dimension left free on every
    side (0.10 leaves a 10% margin).
    """
    if src_w <= 0 or src_h <= 0:
        raise ValueError("source size must be positive")
    avail_w = canvas_w * (1.0 - 2 * padding)
    avail_h = canvas_h * (1.0 - 2 * padding)
    scale = min(avail_w / src_w, avail_h / src_h)
    w = src_w * scale
    h = src_h * scale
    return Rect((canvas_w - w) / 2, (canvas_h - h) / 2, w, h)


def clamp_rect(rect: Rect, bound_w: float, bound_h: float) -> Rect:
    """Shrink and shift *rect* so it lies inside ``[0, bound_w] x [0, bound_h]``."""
    w = min(max(rect.width, 0.0), bound_w)
    h = min(max(rect.height, 0.0), bound_h)
    x = min(max(rect.x, 0.0), bound_w - w)
    y = min(max(rect.y, 0.0), bound_h - h)
    return Rect(x, y, w, h)


def even_crop(rect: Rect, frame_w: int, frame_h: int) -> Tuple[int, int, int, int]:
    """Integer crop ``(x, y, w, h)`` with even size and position, inside the frame.

    Encoders using 4:2:0 chroma need even dimensions; the offset is
    rounded down to even as well so the crop never starts mid chroma
    block.  Degenerate input collapses to the smallest valid 2x2 crop;
    a frame smaller than 2x2 has no such crop and is rejected.
    """
    if frame_w < 2 or frame_h < 2:
        raise ValueError(f"frame too small for an even crop: {frame_w}x{frame_h}")
    w = min(_even(rect.width), _even(frame_w))
    h = min(_even(rect.height), _even(frame_h))
    x = int(min(max(round(rect.x), 0), frame_w - w))
    y = int(min(max(round(rect.y), 0), frame_h - h))
    x -= x % 2
    y -= y % 2
    return max(x, 0), max(y, 0), w, h


def crop_window(video_w: float, video_h: float, zoom: float,
                pan_x: float, pan_y: float) -> Rect:
    """The part of the source frame visible at *zoom* with *pan*."""
    zoom = max(zoom, 1.0)
    crop_w = video_w / zoom
    crop_h = video_h / zoom
    max_shift_x = (video_w - crop_w) / 2
    max_shift_y = (video_h - crop_h) / 2
    x = (video_w - crop_w) / 2 - pan_x * max_shift_x
    y = (video_h - crop_h) / 2 - pan_y * max_shift_y
    return clamp_rect(Rect(x, y, crop_w, crop_h), video_w, video_h)


def compute_layout(video_size: Size, zoom: float = 1.0, pan_x: float = 0.0,
                   pan_y: float = 0.0, target: Size | None = None,
                   padding: float = 0.0) -> Layout:
    """Crop window, canvas and placement for one export.

    The canvas is *target* when given, otherwise the (even) source size.
    The crop is scaled to the largest aspect-preserving rect inside the
    canvas (minus *padding*) and centred, letterboxing as needed.
    """
    if video_size.width <= 0 or video_size.height <= 0:
        raise ValueError("video size must be positive")
    canvas = (target or video_size).even()
    source = crop_window(video_size.width, video_size.height, zoom, pan_x, pan_y)
    dest = fit_rect(source.width, source.height, canvas.width, canvas.height, padding)
    return Layout(canvas=canvas, source_rect=source, dest_rect=dest)


def scale_layout(layout: Layout, target: Size) -> Layout:
    """Map *layout* onto a *target* canvas with fit-and-pad semantics.

    Equivalent to scaling the whole canvas to fit *target* (aspect kept)
    and centring it, which is what the final export scale does.
    """
    target = target.even()
    placed = fit_rect(layout.canvas.width, layout.canvas.height, target.width, target.height)
    s = placed.width / layout.canvas.width
    d = layout.dest_rect
    dest = Rect(placed.x + d.x * s, placed.y + d.y * s, d.width * s, d.height * s)
    return Layout(canvas=target, source_rect=layout.source_rect, dest_rect=dest)

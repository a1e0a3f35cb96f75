"""Background presets and background surface rendering.

A background is either a solid hex colour or an image.  Images are
scaled to cover the surface and centre-cropped; the surface never shows
letterbox bars of its own.
"""

from dataclasses import dataclass
from typing import List, Optional, Tuple

import cv2
import numpy as np


@dataclass
class BackgroundPreset:
    """A named background preset."""
    name: str
    kind: str  # "color" or "image"
    color: str = ""  # "#rrggbb" for colour presets
    url: str = ""  # image URL for image presets

    @property
    def is_image(self) -> bool:
        return self.kind == "image"

    def to_dict(self) -> dict:
        d = {"name": self.name, "kind": self.kind}
        if self.color:
            d["color"] = self.color
        if self.url:
            d["url"] = self.url
        return d

    @staticmethod
    def from_dict(d: dict) -> "BackgroundPreset":
        return BackgroundPreset(
            name=d["name"],
            kind=d["kind"],
            color=d.get("color", ""),
            url=d.get("url", ""),
        )


# ── Built-in presets ────────────────────────────────────────────────

COLOR_PRESETS: List[BackgroundPreset] = [
    BackgroundPreset("Black",      "color", color="#000000"),
    BackgroundPreset("Forest",     "color", color="#344E41"),
    BackgroundPreset("Night",      "color", color="#1a1a2e"),
    BackgroundPreset("Ink",        "color", color="#0f0e17"),
    BackgroundPreset("Navy",       "color", color="#16213e"),
    BackgroundPreset("Slate",      "color", color="#1b262c"),
]

IMAGE_PRESETS: List[BackgroundPreset] = [
    BackgroundPreset(
        "Magic Purple", "image",
        url="https://images.unsplash.com/photo-1618005182384-a83a8bd57fbe?auto=format&fit=crop&w=1920&q=80",
    ),
    BackgroundPreset(
        "Dark Flow", "image",
        url="https://images.unsplash.com/photo-1579546929518-9e396f3cc809?auto=format&fit=crop&w=1920&q=80",
    ),
    BackgroundPreset(
        "Deep Space", "image",
        url="https://images.unsplash.com/photo-1451187580459-43490279c0fa?auto=format&fit=crop&w=1920&q=80",
    ),
]

PRESETS: List[BackgroundPreset] = COLOR_PRESETS + IMAGE_PRESETS

DEFAULT_PRESET = PRESETS[0]  # "Black"


def find_preset(name: str) -> Optional[BackgroundPreset]:
    """Look up a preset by case-insensitive name."""
    for p in PRESETS:
        if p.name.lower() == name.lower():
            return p
    return None


# ── Colour helpers ──────────────────────────────────────────────────


def parse_hex_color(value: str) -> Tuple[int, int, int]:
    """Parse ``#rgb`` / ``#rrggbb`` into an ``(R, G, B)`` tuple."""
    s = value.strip().lstrip("#")
    if len(s) == 3:
        s = "".join(c * 2 for c in s)
    if len(s) != 6:
        raise ValueError(f"not a hex colour: {value!r}")
    try:
        return int(s[0:2], 16), int(s[2:4], 16), int(s[4:6], 16)
    except ValueError:
        raise ValueError(f"not a hex colour: {value!r}") from None


def hex_to_bgr(value: str) -> np.ndarray:
    r, g, b = parse_hex_color(value)
    return np.array([b, g, r], dtype=np.uint8)


def ffmpeg_color(value: str) -> str:
    """Colour in ffmpeg's ``0xRRGGBB`` notation."""
    r, g, b = parse_hex_color(value)
    return f"0x{r:02X}{g:02X}{b:02X}"


# ── Surfaces ────────────────────────────────────────────────────────


def cover_image(image: np.ndarray, w: int, h: int) -> np.ndarray:
    """Scale *image* to cover ``w x h`` and centre-crop the overflow."""
    ih, iw = image.shape[:2]
    if iw <= 0 or ih <= 0:
        raise ValueError("empty image")
    scale = max(w / iw, h / ih)
    sw = max(w, int(np.ceil(iw * scale)))
    sh = max(h, int(np.ceil(ih * scale)))
    interp = cv2.INTER_AREA if scale < 1 else cv2.INTER_LINEAR
    scaled = cv2.resize(image, (sw, sh), interpolation=interp)
    x = (sw - w) // 2
    y = (sh - h) // 2
    return np.ascontiguousarray(scaled[y:y + h, x:x + w])


def build_background(w: int, h: int, color: Optional[str] = None,
                     image: Optional[np.ndarray] = None) -> np.ndarray:
    """Create the ``h x w`` BGR background surface.

    An image takes precedence over a colour; with neither the surface is
    black.
    """
    if image is not None:
        if image.ndim == 2:
            image = cv2.cvtColor(image, cv2.COLOR_GRAY2BGR)
        elif image.shape[2] == 4:
            image = cv2.cvtColor(image, cv2.COLOR_BGRA2BGR)
        return cover_image(image, w, h)
    bg = np.zeros((h, w, 3), dtype=np.uint8)
    if color:
        bg[:] = hex_to_bgr(color)
    return bg

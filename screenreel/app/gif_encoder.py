"""Two-pass palette GIF encoding.

Pass one builds a 256-colour palette from the whole clip; pass two maps
every frame onto it.  Frames are resampled to a fixed rate by timestamp,
so the GIF's timing does not depend on how regularly the source frames
were produced.
"""

import logging
import os
import tempfile
from typing import Callable, List, Optional

from .errors import RenderFailed
from .utils import run_ffmpeg_progress

logger = logging.getLogger(__name__)

# Default frames per second for GIF output (balances quality and file size)
GIF_FPS: int = 15

# Maximum GIF width; narrower sources are never upscaled.
GIF_MAX_WIDTH: int = 1920


def _scale_filter(width: int, fps: int) -> str:
    return f"fps={fps},scale='min(iw,{width})':-2:flags=lanczos"


def palette_args(input_path: str, palette_path: str, width: int,
                 fps: int = GIF_FPS) -> List[str]:
    """ffmpeg arguments for the palette-generation pass."""
    return [
        "-i", input_path,
        "-vf", _scale_filter(width, fps) + ",palettegen=max_colors=256:stats_mode=diff",
        palette_path,
    ]


def paletteuse_args(input_path: str, palette_path: str, output_path: str,
                    width: int, fps: int = GIF_FPS) -> List[str]:
    """ffmpeg arguments for the palette-application pass."""
    return [
        "-i", input_path,
        "-i", palette_path,
        "-filter_complex",
        f"[0:v]{_scale_filter(width, fps)}[x];"
        "[x][1:v]paletteuse=dither=bayer:bayer_scale=5:diff_mode=rectangle",
        "-loop", "0",
        output_path,
    ]


def encode_gif(input_path: str, output_path: str, duration: float,
               width: int = GIF_MAX_WIDTH, fps: int = GIF_FPS,
               on_progress: Optional[Callable[[float], None]] = None) -> None:
    """Convert *input_path* to an animated GIF at *output_path*.

    Progress covers both passes: palette generation maps to the first
    40%, palette application to the rest.
    """
    width = min(width, GIF_MAX_WIDTH)
    fd, palette = tempfile.mkstemp(suffix=".png", prefix="screenreel_palette_")
    os.close(fd)
    try:
        def _pass1(p: float) -> None:
            if on_progress:
                on_progress(0.4 * p)

        def _pass2(p: float) -> None:
            if on_progress:
                on_progress(0.4 + 0.6 * p)

        rc, tail = run_ffmpeg_progress(palette_args(input_path, palette, width, fps), duration, _pass1)
        if rc != 0:
            raise RenderFailed(f"GIF palette generation failed: {tail[-300:]}")
        rc, tail = run_ffmpeg_progress(
            paletteuse_args(input_path, palette, output_path, width, fps), duration, _pass2)
        if rc != 0:
            raise RenderFailed(f"GIF encoding failed: {tail[-300:]}")
        logger.info("GIF written: %s", output_path)
    finally:
        try:
            os.remove(palette)
        except OSError:
            pass

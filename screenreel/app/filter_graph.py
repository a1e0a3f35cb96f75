"""Declarative ffmpeg filter graphs for export.

The graph is assembled from small nodes (labelled inputs, a filter
chain, labelled outputs) and rendered to a ``-filter_complex`` string.
One render plan covers the whole edit: per-segment trims with speed
change, concatenation, even crop, scale into the destination rectangle,
composition over the background canvas, the final fit-and-pad to the
target resolution, audio gain and music mixing, and the in-graph GIF
palette pass.
"""

from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from .backgrounds import ffmpeg_color
from .gif_encoder import GIF_FPS
from .layout import Layout, Size, even_crop
from .media import MediaInfo
from .models import EditorState, Segment
from .utils import build_encoder_args


@dataclass
class FilterNode:
    """``[in0][in1]filter1,filter2[out0]``"""
    inputs: List[str]
    filters: List[str]
    outputs: List[str]

    @property
    def name(self) -> str:
        return self.filters[0].split("=", 1)[0] if self.filters else ""

    def render(self) -> str:
        ins = "".join(f"[{label}]" for label in self.inputs)
        outs = "".join(f"[{label}]" for label in self.outputs)
        return f"{ins}{','.join(self.filters)}{outs}"


class FilterGraph:
    """An ordered collection of filter nodes."""

    def __init__(self) -> None:
        self.nodes: List[FilterNode] = []

    def add(self, inputs: Sequence[str], filters: Sequence[str],
            outputs: Sequence[str]) -> FilterNode:
        node = FilterNode(list(inputs), list(filters), list(outputs))
        self.nodes.append(node)
        return node

    def find(self, name: str) -> List[FilterNode]:
        """Nodes whose chain contains a filter called *name*."""
        return [n for n in self.nodes
                if any(f.split("=", 1)[0] == name for f in n.filters)]

    def producer(self, label: str) -> Optional[FilterNode]:
        for node in self.nodes:
            if label in node.outputs:
                return node
        return None

    def render(self) -> str:
        return ";".join(node.render() for node in self.nodes)


@dataclass
class RenderPlan:
    """Everything needed to run one filter-graph export with ffmpeg."""
    graph: FilterGraph
    inputs: List[List[str]]
    video_label: str
    audio_label: Optional[str]
    duration: float
    output_format: str
    extra_output_args: List[str] = field(default_factory=list)

    def input_args(self) -> List[str]:
        args: List[str] = []
        for entry in self.inputs:
            args += entry
        return args

    def codec_args(self, encoder_id: str = "libx264") -> List[str]:
        if self.output_format == "gif":
            return ["-loop", "0", "-f", "gif"]
        if self.output_format == "mp4":
            args = build_encoder_args(encoder_id)
            if self.audio_label:
                args += ["-c:a", "aac", "-b:a", "192k"]
            return args + ["-movflags", "+faststart", "-f", "mp4"]
        args = ["-c:v", "libvpx-vp9", "-b:v", "0", "-crf", "32",
                "-deadline", "good", "-row-mt", "1", "-pix_fmt", "yuv420p"]
        if self.audio_label:
            args += ["-c:a", "libopus", "-b:a", "128k"]
        return args + ["-f", "webm"]

    def command_args(self, output_path: str, encoder_id: str = "libx264") -> List[str]:
        """Complete ffmpeg argument list (without the binary)."""
        args = self.input_args()
        args += ["-filter_complex", self.graph.render(), "-map", f"[{self.video_label}]"]
        if self.audio_label:
            args += ["-map", f"[{self.audio_label}]"]
        args += self.codec_args(encoder_id)
        args += ["-t", f"{self.duration:.3f}"] + self.extra_output_args
        args.append(output_path)
        return args


def _even(n: float) -> int:
    n = int(round(n))
    return max(2, n - n % 2)


def _num(value: float) -> str:
    """Compact decimal for filter arguments."""
    text = f"{value:.3f}".rstrip("0").rstrip(".")
    return text or "0"


def edited_duration(segments: Sequence[Segment], speed: float) -> float:
    return sum(s.duration for s in segments) / speed


def build_render_plan(source_path: str, info: MediaInfo, state: EditorState,
                      layout: Layout, target: Size, output_format: str,
                      music_path: Optional[str] = None,
                      background_path: Optional[str] = None) -> RenderPlan:
    """Translate an edit into one ffmpeg filter graph.

    Clip audio is dropped entirely at zero gain; with music present the
    music then becomes the only audio, trimmed to the edited duration.
    GIF output carries no audio.
    """
    segments = list(state.segments)
    speed = state.playback_speed
    is_gif = output_format == "gif"
    total = edited_duration(segments, speed)
    fps = int(round(info.fps)) if info.fps > 0 else 30

    inputs: List[List[str]] = [["-i", source_path]]
    music_idx = bg_idx = None
    if music_path and not is_gif and state.music_volume > 0:
        music_idx = len(inputs)
        inputs.append(["-stream_loop", "-1", "-i", music_path])
    if background_path:
        bg_idx = len(inputs)
        inputs.append(["-loop", "1", "-framerate", str(fps), "-i", background_path])

    g = FilterGraph()
    clip_audio = info.has_audio and state.video_volume > 0 and not is_gif

    # ── segments ────────────────────────────────────────────────────
    concat_inputs: List[str] = []
    for i, seg in enumerate(segments):
        g.add(["0:v"], [f"trim=start={_num(seg.start)}:end={_num(seg.end)}",
                        f"setpts=(PTS-STARTPTS)/{_num(speed)}"], [f"v{i}"])
        concat_inputs.append(f"v{i}")
        if clip_audio:
            chain = [f"atrim=start={_num(seg.start)}:end={_num(seg.end)}", "asetpts=PTS-STARTPTS"]
            if speed != 1.0:
                chain.append(f"atempo={_num(speed)}")
            g.add(["0:a"], chain, [f"a{i}"])
            concat_inputs.append(f"a{i}")
    concat_out = ["vcat"] + (["acat"] if clip_audio else [])
    g.add(concat_inputs, [f"concat=n={len(segments)}:v=1:a={1 if clip_audio else 0}"], concat_out)

    # ── geometry ────────────────────────────────────────────────────
    cx, cy, cw, ch = even_crop(layout.source_rect, info.width, info.height)
    g.add(["vcat"], [f"crop={cw}:{ch}:{cx}:{cy}"], ["vcrop"])

    canvas_w, canvas_h = layout.canvas.width, layout.canvas.height
    dw = min(_even(layout.dest_rect.width), canvas_w)
    dh = min(_even(layout.dest_rect.height), canvas_h)
    dx = min(max(int(round(layout.dest_rect.x)), 0), canvas_w - dw)
    dy = min(max(int(round(layout.dest_rect.y)), 0), canvas_h - dh)
    g.add(["vcrop"], [f"scale={dw}:{dh}", "setsar=1"], ["vfit"])

    color = ffmpeg_color(state.background_color)
    if bg_idx is not None:
        g.add([f"{bg_idx}:v"], [
            f"scale={canvas_w}:{canvas_h}:force_original_aspect_ratio=increase",
            f"crop={canvas_w}:{canvas_h}",
            "setsar=1",
        ], ["bg"])
        g.add(["bg", "vfit"], [f"overlay={dx}:{dy}:shortest=1"], ["vcomp"])
    else:
        g.add(["vfit"], [f"pad={canvas_w}:{canvas_h}:{dx}:{dy}:color={color}"], ["vcomp"])

    tw, th = target.even().width, target.even().height
    final = [
        f"scale={tw}:{th}:force_original_aspect_ratio=decrease",
        f"pad={tw}:{th}:(ow-iw)/2:(oh-ih)/2:color={color}",
        "setsar=1",
    ]
    if not is_gif:
        final.append("format=yuv420p")
    g.add(["vcomp"], final, ["vout"])

    video_label = "vout"
    if is_gif:
        g.add(["vout"], [f"fps={GIF_FPS}", "split"], ["g0", "g1"])
        g.add(["g0"], ["palettegen=max_colors=256:stats_mode=diff"], ["pal"])
        g.add(["g1", "pal"], ["paletteuse=dither=bayer:bayer_scale=5:diff_mode=rectangle"], ["vgif"])
        video_label = "vgif"

    # ── audio ───────────────────────────────────────────────────────
    audio_label: Optional[str] = None
    if clip_audio:
        audio_label = "acat"
        if state.video_volume != 1.0:
            g.add(["acat"], [f"volume={_num(state.video_volume)}"], ["aclip"])
            audio_label = "aclip"
        if music_idx is not None:
            g.add([f"{music_idx}:a"], [f"volume={_num(state.music_volume)}",
                                        "aresample=48000"], ["amus"])
            g.add([audio_label, "amus"],
                  ["amix=inputs=2:duration=shortest:dropout_transition=0:normalize=0"], ["aout"])
            audio_label = "aout"
    elif music_idx is not None:
        g.add([f"{music_idx}:a"], [f"atrim=start=0:end={_num(total)}",
                                    "asetpts=PTS-STARTPTS",
                                    f"volume={_num(state.music_volume)}"], ["aout"])
        audio_label = "aout"

    return RenderPlan(
        graph=g,
        inputs=inputs,
        video_label=video_label,
        audio_label=audio_label,
        duration=total,
        output_format=output_format,
    )

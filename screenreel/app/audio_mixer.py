"""Audio mixing graph: gain nodes summed into one destination track.

Used at capture time to merge system audio with the microphone, and by
the re-capture renderer to merge clip audio with the music track.
"""

import logging
import threading
from dataclasses import dataclass
from typing import List

import numpy as np

from .streams import AUDIO_CHANNELS, AUDIO_SAMPLE_RATE, AudioTrack, to_channels

logger = logging.getLogger(__name__)


@dataclass
class MixNode:
    """One source feeding the graph through a gain."""
    track: AudioTrack
    gain: float = 1.0
    owned: bool = False


class MixedAudioTrack(AudioTrack):
    """Destination of an :class:`AudioMixGraph`; reading pulls every source."""

    def __init__(self, graph: "AudioMixGraph") -> None:
        super().__init__(label="mix")
        self.sample_rate = graph.sample_rate
        self.channels = graph.channels
        self._graph = graph

    def read(self, frames: int) -> np.ndarray:
        return self._graph.render(frames)


class AudioMixGraph:
    """Sums any number of gain-scaled sources into one track.

    Sources that have ended contribute silence; the output is clipped to
    ``[-1, 1]``.  ``close()`` stops only the sources added with
    ``owned=True``.
    """

    def __init__(self, sample_rate: int = AUDIO_SAMPLE_RATE, channels: int = AUDIO_CHANNELS) -> None:
        self.sample_rate = sample_rate
        self.channels = channels
        self._nodes: List[MixNode] = []
        self._lock = threading.Lock()
        self._closed = False
        self.destination = MixedAudioTrack(self)

    @property
    def nodes(self) -> List[MixNode]:
        with self._lock:
            return list(self._nodes)

    def add_source(self, track: AudioTrack, gain: float = 1.0, owned: bool = False) -> MixNode:
        if self._closed:
            raise RuntimeError("mix graph is closed")
        if track.sample_rate != self.sample_rate:
            logger.warning("Mixing %s at %d Hz into a %d Hz graph",
                           track.label, track.sample_rate, self.sample_rate)
        node = MixNode(track=track, gain=float(gain), owned=owned)
        with self._lock:
            self._nodes.append(node)
        return node

    def set_gain(self, node: MixNode, gain: float) -> None:
        with self._lock:
            node.gain = float(gain)

    def render(self, frames: int) -> np.ndarray:
        """Pull *frames* samples from every live source and mix them."""
        out = np.zeros((frames, self.channels), dtype=np.float32)
        for node in self.nodes:
            if not node.track.is_live:
                continue
            block = to_channels(node.track.read(frames), self.channels)
            n = min(len(block), frames)
            if node.gain != 0.0 and n:
                out[:n] += block[:n] * node.gain
        np.clip(out, -1.0, 1.0, out=out)
        return out

    def close(self) -> None:
        """Detach all sources and end the destination track."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            nodes, self._nodes = self._nodes, []
        for node in nodes:
            if node.owned:
                node.track.stop()
        self.destination.stop()

"""Timeline engine — the ordered list of kept segments and its edits.

The timeline owns the segments of one recording.  Segments are always
sorted by start, never overlap, stay inside ``[0, duration]`` and keep
``start < end``.  ``split``, ``trim`` and ``delete`` each push an undo
snapshot (deep-copy, max 50 entries) before mutating, mirroring the
editor's undo/redo.
"""

import copy
import logging
import math
from typing import List, Optional

from .models import MIN_SEGMENT_WIDTH, Segment

logger = logging.getLogger(__name__)

MAX_UNDO = 50  # maximum undo history depth


class Timeline:
    """Segment list editor with seek clamping and undo/redo."""

    def __init__(self, duration: float = 0.0, segments: Optional[List[Segment]] = None) -> None:
        self.duration: float = 0.0
        self._segments: List[Segment] = []
        self._undo_stack: List[List[Segment]] = []
        self._redo_stack: List[List[Segment]] = []
        self.reset(duration)
        if segments is not None:
            self._segments = self._validated(segments)

    def _validated(self, segments: List[Segment]) -> List[Segment]:
        """Sorted copy of *segments*; ValueError unless they form a valid timeline."""
        ordered = sorted(segments, key=lambda s: s.start)
        prev_end = 0.0
        for seg in ordered:
            if not (math.isfinite(seg.start) and math.isfinite(seg.end)) or seg.start >= seg.end:
                raise ValueError(f"segment {seg.id} is empty or inverted: {seg.start}-{seg.end}")
            if seg.start < prev_end:
                raise ValueError(f"segment {seg.id} overlaps its predecessor or starts before 0")
            if self.duration > 0 and seg.end > self.duration:
                raise ValueError(f"segment {seg.id} ends after the recording ({self.duration:.3f}s)")
            prev_end = seg.end
        return ordered

    # ── state ───────────────────────────────────────────────────────

    @property
    def segments(self) -> List[Segment]:
        """A copy of the segments in start order."""
        return list(self._segments)

    def reset(self, duration: float) -> None:
        """Replace everything with one segment spanning ``[0, duration]``.

        A non-finite or non-positive duration leaves the timeline empty
        until a usable duration is known.
        """
        if not math.isfinite(duration) or duration <= 0:
            self.duration = 0.0
            self._segments = []
        else:
            self.duration = float(duration)
            self._segments = [Segment.create(0.0, self.duration)]
        self.clear_history()

    def segment_at(self, t: float) -> Optional[Segment]:
        """The segment containing *t* (half-open), or None."""
        for seg in self._segments:
            if seg.contains(t):
                return seg
        return None

    def index_of(self, segment_id: str) -> int:
        for i, seg in enumerate(self._segments):
            if seg.id == segment_id:
                return i
        return -1

    @property
    def total_duration(self) -> float:
        """Sum of kept segment lengths in source seconds."""
        return sum(s.duration for s in self._segments)

    def edited_duration(self, speed: float = 1.0) -> float:
        """Length of the exported output at playback *speed*."""
        if speed <= 0:
            raise ValueError("speed must be positive")
        return self.total_duration / speed

    # ── snapshot helpers ────────────────────────────────────────────

    def _snapshot(self) -> List[Segment]:
        return copy.deepcopy(self._segments)

    def push_undo(self) -> None:
        """Save the current state; clears the redo branch."""
        self._undo_stack.append(self._snapshot())
        if len(self._undo_stack) > MAX_UNDO:
            self._undo_stack.pop(0)
        self._redo_stack.clear()

    def undo(self) -> bool:
        """Restore the previous segment list.  Returns True if successful."""
        if not self._undo_stack:
            return False
        self._redo_stack.append(self._snapshot())
        self._segments = self._undo_stack.pop()
        return True

    def redo(self) -> bool:
        """Re-apply the last undone change.  Returns True if successful."""
        if not self._redo_stack:
            return False
        self._undo_stack.append(self._snapshot())
        self._segments = self._redo_stack.pop()
        return True

    @property
    def can_undo(self) -> bool:
        return len(self._undo_stack) > 0

    @property
    def can_redo(self) -> bool:
        return len(self._redo_stack) > 0

    def clear_history(self) -> None:
        self._undo_stack.clear()
        self._redo_stack.clear()

    # ── edits ───────────────────────────────────────────────────────

    def split(self, at: float) -> bool:
        """Split the segment strictly containing *at* into two.

        The first half keeps the original id; the second gets a new one.
        Returns False (no change) when *at* is outside every segment or
        sits exactly on a boundary.
        """
        for i, seg in enumerate(self._segments):
            if seg.start < at < seg.end:
                self.push_undo()
                first = Segment(id=seg.id, start=seg.start, end=at)
                second = Segment.create(at, seg.end)
                self._segments[i:i + 1] = [first, second]
                logger.debug("Split %s at %.3f", seg.id, at)
                return True
        return False

    def trim(self, segment_id: str, new_start: float, new_end: float) -> Optional[Segment]:
        """Move one segment's edges, clamped to stay valid.

        The segment keeps at least ``MIN_SEGMENT_WIDTH`` (or whatever room
        its neighbours leave), never leaves ``[0, duration]`` and never
        crosses a neighbour.  Returns the updated segment, or None if the
        id is unknown.
        """
        idx = self.index_of(segment_id)
        if idx < 0:
            return None
        seg = self._segments[idx]
        lo = self._segments[idx - 1].end if idx > 0 else 0.0
        hi = self._segments[idx + 1].start if idx + 1 < len(self._segments) else self.duration
        min_width = min(MIN_SEGMENT_WIDTH, hi - lo)

        start = max(lo, min(new_start, hi - min_width))
        end = min(hi, max(new_end, start + min_width))
        if start == seg.start and end == seg.end:
            return seg

        self.push_undo()
        updated = Segment(id=seg.id, start=start, end=end)
        self._segments[idx] = updated
        return updated

    def delete(self, segment_id: str) -> bool:
        """Remove a segment unless it is the last one left."""
        if len(self._segments) <= 1:
            return False
        idx = self.index_of(segment_id)
        if idx < 0:
            return False
        self.push_undo()
        del self._segments[idx]
        return True

    def seek_clamp(self, t: float) -> float:
        """Map a playback position onto kept content.

        Positions inside a segment are returned unchanged; positions in a
        gap jump to the next segment's start; positions past the last
        segment wrap to the first segment's start.
        """
        if not self._segments:
            return t
        for seg in self._segments:
            if seg.contains(t):
                return t
        for seg in self._segments:
            if seg.start > t:
                return seg.start
        return self._segments[0].start

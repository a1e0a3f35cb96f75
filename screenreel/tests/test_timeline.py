"""Tests for app.timeline — split / trim / delete, seek clamping and undo."""

import math

import pytest

from app.models import MIN_SEGMENT_WIDTH, Segment
from app.timeline import MAX_UNDO, Timeline


def _assert_valid(tl: Timeline) -> None:
    segs = tl.segments
    for seg in segs:
        assert 0.0 <= seg.start < seg.end <= tl.duration
    for a, b in zip(segs, segs[1:]):
        assert a.end <= b.start


class TestReset:
    def test_single_full_segment(self) -> None:
        tl = Timeline(12.5)
        assert len(tl.segments) == 1
        assert tl.segments[0].start == 0.0
        assert tl.segments[0].end == 12.5

    @pytest.mark.parametrize("duration", [0.0, -3.0, math.inf, math.nan])
    def test_unusable_duration_leaves_empty(self, duration: float) -> None:
        tl = Timeline(duration)
        assert tl.segments == []
        assert tl.duration == 0.0

    def test_reset_clears_history(self) -> None:
        tl = Timeline(10.0)
        tl.split(5.0)
        tl.reset(8.0)
        assert not tl.can_undo
        assert tl.total_duration == 8.0

    def test_given_segments_are_sorted(self, three_segments) -> None:
        tl = Timeline(10.0, list(reversed(three_segments)))
        assert [s.id for s in tl.segments] == ["seg-a", "seg-b", "seg-c"]

    @pytest.mark.parametrize("spans", [
        [(0.0, 4.0), (3.0, 6.0)],  # overlap
        [(2.0, 2.0)],  # empty
        [(5.0, 1.0)],  # inverted
        [(-1.0, 2.0)],
        [(8.0, 10.5)],  # past the end
        [(0.0, math.nan)],
    ])
    def test_invalid_segments_rejected(self, spans: list) -> None:
        segments = [Segment(id=f"s{i}", start=a, end=b) for i, (a, b) in enumerate(spans)]
        with pytest.raises(ValueError):
            Timeline(10.0, segments)


class TestSplit:
    def test_split_inside(self) -> None:
        tl = Timeline(10.0)
        original_id = tl.segments[0].id
        assert tl.split(4.0)
        first, second = tl.segments
        assert (first.start, first.end) == (0.0, 4.0)
        assert (second.start, second.end) == (4.0, 10.0)
        assert first.id == original_id
        assert second.id != original_id

    def test_split_in_gap_is_noop(self, three_segments: list[Segment]) -> None:
        tl = Timeline(10.0, three_segments)
        assert not tl.split(6.0)
        assert tl.segments == three_segments
        assert not tl.can_undo

    def test_split_on_boundary_is_noop(self, three_segments: list[Segment]) -> None:
        tl = Timeline(10.0, three_segments)
        assert not tl.split(2.0)
        assert not tl.split(0.0)
        assert len(tl.segments) == 3

    def test_split_keeps_total(self) -> None:
        tl = Timeline(10.0)
        tl.split(3.0)
        tl.split(7.5)
        assert tl.total_duration == pytest.approx(10.0)
        _assert_valid(tl)


class TestTrim:
    def test_trim_clamps_to_neighbours(self, three_segments: list[Segment]) -> None:
        tl = Timeline(10.0, three_segments)
        updated = tl.trim("seg-c", 3.0, 9.5)
        assert updated.start == 5.0  # previous segment ends at 5
        assert updated.end == 9.5
        _assert_valid(tl)

    def test_trim_clamps_to_duration(self) -> None:
        tl = Timeline(10.0)
        seg = tl.segments[0]
        updated = tl.trim(seg.id, -2.0, 14.0)
        assert (updated.start, updated.end) == (0.0, 10.0)

    def test_trim_keeps_min_width(self) -> None:
        tl = Timeline(10.0)
        seg = tl.segments[0]
        updated = tl.trim(seg.id, 6.0, 6.0)
        assert updated.end - updated.start == pytest.approx(MIN_SEGMENT_WIDTH)

    def test_trim_unknown_id(self) -> None:
        assert Timeline(10.0).trim("missing", 1.0, 2.0) is None

    def test_trim_pushes_undo(self) -> None:
        tl = Timeline(10.0)
        seg = tl.segments[0]
        tl.trim(seg.id, 1.0, 9.0)
        assert tl.undo()
        assert (tl.segments[0].start, tl.segments[0].end) == (0.0, 10.0)


class TestDelete:
    def test_delete(self, three_segments: list[Segment]) -> None:
        tl = Timeline(10.0, three_segments)
        assert tl.delete("seg-b")
        assert [s.id for s in tl.segments] == ["seg-a", "seg-c"]
        assert tl.total_duration == pytest.approx(4.0)

    def test_delete_last_segment_is_noop(self) -> None:
        tl = Timeline(10.0)
        seg = tl.segments[0]
        assert not tl.delete(seg.id)
        assert tl.segments == [seg]
        assert not tl.can_undo

    def test_delete_unknown(self, three_segments: list[Segment]) -> None:
        tl = Timeline(10.0, three_segments)
        assert not tl.delete("nope")
        assert len(tl.segments) == 3


class TestQueries:
    def test_segment_at_half_open(self, three_segments: list[Segment]) -> None:
        tl = Timeline(10.0, three_segments)
        assert tl.segment_at(0.0).id == "seg-a"
        assert tl.segment_at(2.0).id == "seg-b"
        assert tl.segment_at(6.0) is None
        assert tl.segment_at(9.0) is None

    def test_edited_duration(self, three_segments: list[Segment]) -> None:
        tl = Timeline(10.0, three_segments)
        assert tl.total_duration == pytest.approx(7.0)
        assert tl.edited_duration(2.0) == pytest.approx(3.5)
        with pytest.raises(ValueError):
            tl.edited_duration(0.0)

    def test_seek_clamp(self, three_segments: list[Segment]) -> None:
        tl = Timeline(10.0, three_segments)
        assert tl.seek_clamp(3.0) == 3.0
        assert tl.seek_clamp(6.0) == 7.0  # gap → next segment
        assert tl.seek_clamp(9.5) == 0.0  # past the end → wrap


class TestUndoRedo:
    def test_undo_then_redo(self) -> None:
        tl = Timeline(10.0)
        tl.split(5.0)
        assert tl.undo()
        assert len(tl.segments) == 1
        assert tl.redo()
        assert len(tl.segments) == 2

    def test_new_edit_clears_redo(self) -> None:
        tl = Timeline(10.0)
        tl.split(5.0)
        tl.undo()
        tl.split(3.0)
        assert not tl.can_redo

    def test_history_is_bounded(self) -> None:
        tl = Timeline(1000.0)
        for i in range(MAX_UNDO + 10):
            tl.split(float(i + 1))
        undone = 0
        while tl.undo():
            undone += 1
        assert undone == MAX_UNDO

    def test_nothing_to_undo(self) -> None:
        tl = Timeline(10.0)
        assert not tl.undo()
        assert not tl.redo()

    def test_random_edits_stay_valid(self) -> None:
        tl = Timeline(20.0)
        for t in (3.3, 7.1, 12.9, 15.0):
            tl.split(t)
        ids = [s.id for s in tl.segments]
        tl.trim(ids[1], 2.0, 8.0)
        tl.delete(ids[2])
        tl.trim(ids[3], 0.0, 30.0)
        _assert_valid(tl)

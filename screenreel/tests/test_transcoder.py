"""Tests for app.transcoder — validation, fast path, renderer selection."""

import os
from typing import List

import pytest
from PySide6.QtCore import Qt

from app.errors import NoSegments, RenderFailed
from app.layout import Size, compute_layout
from app.media import MediaAsset, MediaInfo
from app.models import Asset, EditorState, Segment
from app.transcoder import (
    RENDERER_FILTER_GRAPH,
    RENDERER_RECAPTURE,
    ExportJob,
    FilterGraphRenderer,
    PreparedRender,
    RecaptureRenderer,
    RenderRequest,
    TranscodeEngine,
    is_fast_path,
    validate_segments,
)

from conftest import FakePlayer, SinkFactory


SOURCE = MediaAsset(data=b"\x1aE\xdf\xa3webm-bytes", mime_type="video/webm")


class RecordingRenderer:
    """Renderer stand-in that records the jobs it gets."""

    def __init__(self, name: str, data: bytes = b"rendered", error: Exception | None = None) -> None:
        self.name = name
        self.data = data
        self.error = error
        self.jobs: List[PreparedRender] = []

    def render(self, job: PreparedRender, progress) -> bytes:
        self.jobs.append(job)
        progress(0.5)
        if self.error is not None:
            raise self.error
        return self.data


def _engine(info: MediaInfo, capable: bool = True, preference: str = "auto",
            music: bytes | None = None, error: Exception | None = None):
    graph = RecordingRenderer(RENDERER_FILTER_GRAPH, error=error)
    recap = RecordingRenderer(RENDERER_RECAPTURE, error=error)
    probes: List[str] = []

    def probe(path: str) -> MediaInfo:
        probes.append(path)
        return info

    engine = TranscodeEngine(
        preference=preference,
        filter_graph_renderer=graph,
        recapture_renderer=recap,
        capability_probe=lambda: capable,
        probe=probe,
        music_loader=lambda asset: music if asset is not None else None,
    )
    return engine, graph, recap, probes


class TestValidation:
    def test_empty_segments(self) -> None:
        with pytest.raises(NoSegments):
            validate_segments([])

    def test_zero_length_segments(self) -> None:
        with pytest.raises(NoSegments):
            validate_segments([Segment(id="z", start=3.0, end=3.0)])

    def test_no_segments_fails_before_any_work(self, webm_info) -> None:
        engine, graph, recap, probes = _engine(webm_info)
        with pytest.raises(NoSegments):
            engine.render(RenderRequest(source=SOURCE, state=EditorState()))
        assert probes == []
        assert graph.jobs == [] and recap.jobs == []


class TestFastPath:
    def test_identity_returns_source_bytes(self, webm_info) -> None:
        engine, graph, recap, _ = _engine(webm_info)
        seen: List[float] = []
        result = engine.render(RenderRequest(source=SOURCE, state=EditorState.initial(10.0)),
                               seen.append)
        assert result.data == SOURCE.data
        assert graph.jobs == [] and recap.jobs == []
        assert seen == [0.0, 1.0]

    def test_other_format_is_not_fast(self, webm_info) -> None:
        request = RenderRequest(source=SOURCE, state=EditorState.initial(10.0), output_format="mp4")
        assert not is_fast_path(request, webm_info)

    def test_other_resolution_is_not_fast(self, webm_info) -> None:
        request = RenderRequest(source=SOURCE, state=EditorState.initial(10.0), target=Size(1280, 720))
        assert not is_fast_path(request, webm_info)

    def test_codec_mismatch_is_not_fast(self) -> None:
        info = MediaInfo(width=1920, height=1080, duration=10.0, video_codec="h264")
        request = RenderRequest(source=SOURCE, state=EditorState.initial(10.0))
        assert not is_fast_path(request, info)


class TestRendering:
    def test_selects_filter_graph_when_capable(self, webm_info, three_segments) -> None:
        engine, graph, recap, _ = _engine(webm_info, capable=True)
        state = EditorState(segments=tuple(three_segments))
        result = engine.render(RenderRequest(source=SOURCE, state=state))
        assert result.data == b"rendered"
        assert result.mime_type == "video/webm"
        assert len(graph.jobs) == 1 and recap.jobs == []

    def test_falls_back_to_recapture(self, webm_info, three_segments) -> None:
        engine, graph, recap, _ = _engine(webm_info, capable=False)
        engine.render(RenderRequest(source=SOURCE, state=EditorState(segments=tuple(three_segments))))
        assert graph.jobs == [] and len(recap.jobs) == 1

    def test_explicit_preference_wins(self, webm_info, three_segments) -> None:
        engine, graph, recap, _ = _engine(webm_info, capable=True, preference="recapture")
        engine.render(RenderRequest(source=SOURCE, state=EditorState(segments=tuple(three_segments))))
        assert len(recap.jobs) == 1

    def test_unknown_preference(self) -> None:
        with pytest.raises(ValueError):
            TranscodeEngine(preference="fastest")

    def test_job_carries_edit(self, webm_info, three_segments) -> None:
        engine, graph, _, _ = _engine(webm_info, music=b"ID3music")
        state = EditorState(segments=tuple(three_segments), video_volume=0.0,
                            added_audio=Asset(name="m", url="https://example.com/m.mp3"),
                            output_format="mp4", resolution="720p")
        result = engine.render(RenderRequest(source=SOURCE, state=state))
        job = graph.jobs[0]
        assert result.mime_type == "video/mp4"
        assert job.output_format == "mp4"
        assert job.target == Size(1280, 720)
        assert job.music_path is not None
        assert [s.id for s in job.segments] == ["seg-a", "seg-b", "seg-c"]
        assert not os.path.exists(job.workdir)  # cleaned up after render

    def test_unavailable_music_is_not_fatal(self, webm_info, three_segments) -> None:
        engine, graph, _, _ = _engine(webm_info, music=None)
        state = EditorState(segments=tuple(three_segments),
                            added_audio=Asset(name="m", url="https://example.com/gone.mp3"))
        engine.render(RenderRequest(source=SOURCE, state=state))
        assert graph.jobs[0].music_path is None

    def test_progress_monotonic_single_final_one(self, webm_info, three_segments) -> None:
        engine, _, _, _ = _engine(webm_info)
        seen: List[float] = []
        engine.render(RenderRequest(source=SOURCE, state=EditorState(segments=tuple(three_segments))),
                      seen.append)
        assert seen[0] == 0.0
        assert seen == sorted(seen)
        assert seen.count(1.0) == 1 and seen[-1] == 1.0

    def test_renderer_errors_become_render_failed(self, webm_info, three_segments) -> None:
        engine, _, _, _ = _engine(webm_info, error=OSError("disk full"))
        with pytest.raises(RenderFailed) as info:
            engine.render(RenderRequest(source=SOURCE, state=EditorState(segments=tuple(three_segments))))
        assert isinstance(info.value.cause, OSError)

    def test_unreadable_source(self, three_segments) -> None:
        engine, _, _, _ = _engine(MediaInfo())
        with pytest.raises(RenderFailed):
            engine.render(RenderRequest(source=SOURCE, state=EditorState(segments=tuple(three_segments))))


def _prepared(tmp_path, info, state, fmt="webm", encoder_id="libx264") -> PreparedRender:
    src = tmp_path / "src.webm"
    src.write_bytes(SOURCE.data)
    return PreparedRender(
        source_path=str(src),
        info=info,
        state=state,
        layout=compute_layout(Size(info.width, info.height)),
        target=Size(info.width, info.height),
        output_format=fmt,
        workdir=str(tmp_path),
        encoder_id=encoder_id,
    )


class TestFilterGraphRenderer:
    def test_mp4_walks_encoder_chain(self, tmp_path, webm_info, three_segments, monkeypatch) -> None:
        monkeypatch.setattr("app.transcoder.encoder_fallback_chain",
                            lambda enc: ["h264_qsv", "libx264"])
        tried: List[str] = []

        def runner(args, duration, progress):
            enc = args[args.index("-c:v") + 1]
            tried.append(enc)
            if enc != "libx264":
                return 1, "no device"
            with open(args[-1], "wb") as f:
                f.write(b"mp4-bytes")
            return 0, ""

        job = _prepared(tmp_path, webm_info, EditorState(segments=tuple(three_segments)),
                        fmt="mp4", encoder_id="h264_nvenc")
        data = FilterGraphRenderer(runner=runner).render(job, lambda p: None)
        assert data == b"mp4-bytes"
        assert tried == ["h264_nvenc", "h264_qsv", "libx264"]

    def test_webm_failure_raises(self, tmp_path, webm_info, three_segments) -> None:
        job = _prepared(tmp_path, webm_info, EditorState(segments=tuple(three_segments)))
        renderer = FilterGraphRenderer(runner=lambda args, d, p: (1, "Invalid argument"))
        with pytest.raises(RenderFailed):
            renderer.render(job, lambda p: None)

    def test_progress_forwarded(self, tmp_path, webm_info, three_segments) -> None:
        seen: List[float] = []

        def runner(args, duration, progress):
            assert duration == pytest.approx(7.0)
            progress(0.25)
            with open(args[-1], "wb") as f:
                f.write(b"webm")
            return 0, ""

        job = _prepared(tmp_path, webm_info, EditorState(segments=tuple(three_segments)))
        FilterGraphRenderer(runner=runner).render(job, seen.append)
        assert seen == [0.25]


class TestRecaptureRenderer:
    def test_plays_only_kept_segments(self, tmp_path, three_segments, fake_player_factory) -> None:
        info = MediaInfo(width=320, height=240, duration=10.0, fps=30.0, has_audio=True)
        sinks = SinkFactory(chunks=[b"cluster-1", b"cluster-2"])
        renderer = RecaptureRenderer(player_factory=fake_player_factory, sink_factory=sinks,
                                     poll_interval=0.0)
        seen: List[float] = []
        job = _prepared(tmp_path, info, EditorState(segments=tuple(three_segments)))
        data = renderer.render(job, seen.append)

        assert data == b"cluster-1cluster-2"
        player = FakePlayer.instances[0]
        assert player.seeks == [0.0, 2.0, 7.0]
        assert player.released
        sink = sinks.last
        assert sink.events == ["start", "pause", "resume", "pause", "resume", "stop"]
        assert seen == sorted(seen)
        assert max(seen) == pytest.approx(1.0)

    def test_speed_sets_playback_rate(self, tmp_path, three_segments, fake_player_factory) -> None:
        info = MediaInfo(width=320, height=240, duration=10.0, fps=30.0)
        renderer = RecaptureRenderer(player_factory=fake_player_factory,
                                     sink_factory=SinkFactory(), poll_interval=0.0)
        job = _prepared(tmp_path, info, EditorState(segments=tuple(three_segments), playback_speed=2.0))
        renderer.render(job, lambda p: None)
        assert FakePlayer.instances[0].rate == 2.0

    def test_music_player_loops(self, tmp_path, three_segments, fake_player_factory) -> None:
        info = MediaInfo(width=320, height=240, duration=10.0, fps=30.0)
        music = tmp_path / "music.mp3"
        music.write_bytes(b"ID3")
        job = _prepared(tmp_path, info, EditorState(segments=tuple(three_segments), music_volume=0.4))
        job.music_path = str(music)
        renderer = RecaptureRenderer(player_factory=fake_player_factory,
                                     sink_factory=SinkFactory(), poll_interval=0.0)
        renderer.render(job, lambda p: None)
        source, track = FakePlayer.instances
        assert track.loop and track.video_track is None
        assert track.released

    def test_encoder_error_fails_render(self, tmp_path, three_segments, fake_player_factory) -> None:
        info = MediaInfo(width=320, height=240, duration=10.0, fps=30.0)
        sinks = SinkFactory(stop_error=RuntimeError("ffmpeg died"))
        renderer = RecaptureRenderer(player_factory=fake_player_factory, sink_factory=sinks,
                                     poll_interval=0.0)
        with pytest.raises(RenderFailed):
            renderer.render(_prepared(tmp_path, info, EditorState(segments=tuple(three_segments))),
                            lambda p: None)

    def test_seek_timeout_stops_sink(self, tmp_path, three_segments, fake_player_factory) -> None:
        class StuckPlayer(FakePlayer):
            def wait_seeked(self, timeout: float = 5.0) -> bool:
                return len(self.seeks) < 2

        info = MediaInfo(width=320, height=240, duration=10.0, fps=30.0)
        sinks = SinkFactory()
        renderer = RecaptureRenderer(player_factory=StuckPlayer, sink_factory=sinks, poll_interval=0.0)
        with pytest.raises(RenderFailed, match="timed out"):
            renderer.render(_prepared(tmp_path, info, EditorState(segments=tuple(three_segments))),
                            lambda p: None)
        assert sinks.last.events == ["start", "pause", "stop"]
        assert FakePlayer.instances[0].released

    def test_no_data_fails_render(self, tmp_path, three_segments, fake_player_factory) -> None:
        info = MediaInfo(width=320, height=240, duration=10.0, fps=30.0)
        renderer = RecaptureRenderer(player_factory=fake_player_factory,
                                     sink_factory=SinkFactory(chunks=[]), poll_interval=0.0)
        with pytest.raises(RenderFailed):
            renderer.render(_prepared(tmp_path, info, EditorState(segments=tuple(three_segments))),
                            lambda p: None)

    def test_gif_converts_after_capture(self, tmp_path, three_segments, fake_player_factory) -> None:
        info = MediaInfo(width=320, height=240, duration=10.0, fps=30.0)
        calls = []

        def gif_encoder(src, out, duration, width, on_progress):
            calls.append((duration, width))
            on_progress(1.0)
            with open(out, "wb") as f:
                f.write(b"GIF89a")

        renderer = RecaptureRenderer(player_factory=fake_player_factory, sink_factory=SinkFactory(),
                                     gif_encoder=gif_encoder, poll_interval=0.0)
        seen: List[float] = []
        job = _prepared(tmp_path, info, EditorState(segments=tuple(three_segments)), fmt="gif")
        assert renderer.render(job, seen.append) == b"GIF89a"
        assert calls == [(pytest.approx(7.0), 320)]
        assert max(p for p in seen if p <= 0.5) == pytest.approx(0.5)


class TestExportJob:
    def test_finished_signal(self, webm_info, three_segments) -> None:
        engine, _, _, _ = _engine(webm_info)
        job = ExportJob(engine)
        results: List[MediaAsset] = []
        progress: List[float] = []
        job.finished.connect(results.append, Qt.ConnectionType.DirectConnection)
        job.progress.connect(progress.append, Qt.ConnectionType.DirectConnection)
        job.start(RenderRequest(source=SOURCE, state=EditorState(segments=tuple(three_segments))))
        assert job.wait(10.0)
        assert job.result is not None
        assert job.result.data == b"rendered"
        assert progress[-1] == 1.0
        assert results == [job.result]

    def test_error_signal(self, webm_info) -> None:
        engine, _, _, _ = _engine(webm_info)
        job = ExportJob(engine)
        errors: List[Exception] = []
        job.error.connect(errors.append, Qt.ConnectionType.DirectConnection)
        job.start(RenderRequest(source=SOURCE, state=EditorState()))
        assert job.wait(10.0)
        assert job.result is None
        assert len(errors) == 1 and isinstance(errors[0], NoSegments)

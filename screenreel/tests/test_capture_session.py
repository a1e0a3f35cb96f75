"""Tests for app.capture_session — the recorder state machine."""

import threading
from typing import List

import pytest
from PySide6.QtCore import Qt

from app.audio_mixer import MixedAudioTrack
from app.capture_session import IDLE, RECORDED, RECORDING, STARTING, CaptureSessionController
from app.compositor import Compositor
from app.errors import (
    CompositorInitFailed,
    DeviceNotFound,
    EmptyResult,
    EncodingError,
    NoDataCaptured,
    PermissionDenied,
    RemoteAssetFailed,
    user_message,
)
from app.media import MediaAsset
from app.models import CaptureOptions

from conftest import FakeDevices, SinkFactory

MIME_TYPES = ["video/webm;codecs=vp9,opus", "video/webm;codecs=vp9", "video/webm"]


class Harness:
    """Controller wired to fakes, with its signals recorded."""

    def __init__(self, devices: FakeDevices | None = None, sinks: SinkFactory | None = None,
                 **kwargs) -> None:
        self.devices = devices or FakeDevices()
        self.sinks = sinks or SinkFactory()
        self.controller = CaptureSessionController(
            devices=self.devices,
            sink_factory=self.sinks,
            mime_types=lambda: MIME_TYPES,
            warmup_ms=0,
            timeslice_ms=100,
            **kwargs,
        )
        self.statuses: List[str] = []
        self.errors: List[Exception] = []
        self.finished: List[MediaAsset] = []
        direct = Qt.ConnectionType.DirectConnection
        self.controller.status_changed.connect(self.statuses.append, direct)
        self.controller.error.connect(self.errors.append, direct)
        self.controller.recording_finished.connect(self.finished.append, direct)


class GatedDevices(FakeDevices):
    """Screen capture that blocks until the test opens the gate."""

    def __init__(self) -> None:
        super().__init__()
        self.entered = threading.Event()
        self.gate = threading.Event()

    def get_display_media(self, video: bool = True, audio: bool = False):
        self.entered.set()
        self.gate.wait(5.0)
        return super().get_display_media(video, audio)


def _compositor_with_warmup(warmup):
    """Compositor factory whose warm-up runs *warmup* instead of waiting."""
    def factory(*args, **kwargs) -> Compositor:
        compositor = Compositor(*args, **kwargs)
        compositor.wait_until_live = lambda warmup_ms: warmup()
        return compositor
    return factory


class TestLifecycle:
    def test_record_and_stop(self) -> None:
        h = Harness()
        assert h.controller.start(CaptureOptions())
        assert h.controller.status == RECORDING
        assert h.sinks.last.timeslice_ms == 100
        assert h.sinks.last.mime_type == "video/webm;codecs=vp9,opus"

        h.controller.stop()
        assert h.controller.status == RECORDED
        assert len(h.finished) == 1
        media = h.finished[0]
        assert media.data == b"chunk-1chunk-2"
        assert media.mime_type == "video/webm"
        assert h.controller.recorded is media
        assert h.statuses == ["starting", "recording", "recorded"]
        assert all(t.released for t in h.devices.video_tracks + h.devices.audio_tracks)

    def test_double_start_yields_one_session(self) -> None:
        h = Harness()
        assert h.controller.start(CaptureOptions())
        assert not h.controller.start(CaptureOptions())
        assert len(h.sinks.created) == 1
        assert len(h.devices.calls) == 1
        h.controller.stop()
        assert len(h.finished) == 1

    def test_start_while_first_is_pending(self) -> None:
        devices = GatedDevices()
        h = Harness(devices=devices)
        results: List[bool] = []
        first = threading.Thread(target=lambda: results.append(h.controller.start(CaptureOptions())))
        first.start()
        try:
            assert devices.entered.wait(5.0)
            assert h.controller.status == STARTING
            assert not h.controller.start(CaptureOptions())
        finally:
            devices.gate.set()
            first.join(5.0)
        assert results == [True]
        assert len(devices.calls) == 1
        assert len(h.sinks.created) == 1
        assert h.controller.status == RECORDING
        h.controller.stop()
        assert len(h.finished) == 1

    def test_stop_is_idempotent(self) -> None:
        h = Harness()
        h.controller.start(CaptureOptions())
        h.controller.stop()
        h.controller.stop()
        assert len(h.finished) == 1
        assert h.sinks.last.events.count("stop") == 1

    def test_stop_without_session(self) -> None:
        h = Harness()
        h.controller.stop()
        assert h.controller.status == IDLE
        assert h.statuses == []

    def test_reset_discards_recording(self) -> None:
        h = Harness()
        h.controller.start(CaptureOptions())
        h.controller.reset()
        assert h.controller.status == IDLE
        assert h.controller.recorded is None
        assert h.finished == []
        assert all(t.released for t in h.devices.video_tracks)

    def test_source_ending_stops_recording(self) -> None:
        h = Harness()
        h.controller.start(CaptureOptions())
        h.devices.video_tracks[0].finish()
        assert h.controller.status == RECORDED
        assert len(h.finished) == 1

    def test_load_existing(self) -> None:
        h = Harness()
        media = MediaAsset(data=b"webm", mime_type="video/webm")
        h.controller.load(media)
        assert h.controller.status == RECORDED
        assert h.controller.recorded is media

    def test_load_empty(self) -> None:
        with pytest.raises(EmptyResult):
            Harness().controller.load(MediaAsset(data=b""))


class TestFailures:
    def test_no_chunks(self) -> None:
        h = Harness(sinks=SinkFactory(chunks=[]))
        h.controller.start(CaptureOptions())
        h.controller.stop()
        assert h.controller.status == IDLE
        assert len(h.errors) == 1 and isinstance(h.errors[0], NoDataCaptured)
        assert h.finished == []
        assert all(t.released for t in h.devices.video_tracks)

    def test_empty_chunks_count_as_no_data(self) -> None:
        h = Harness(sinks=SinkFactory(chunks=[b"", b""]))
        h.controller.start(CaptureOptions())
        h.controller.stop()
        assert isinstance(h.errors[0], NoDataCaptured)

    def test_permission_denied(self) -> None:
        h = Harness(devices=FakeDevices(display_error=PermissionDenied("denied")))
        assert not h.controller.start(CaptureOptions())
        assert h.controller.status == IDLE
        assert isinstance(h.errors[0], PermissionDenied)
        assert user_message(h.errors[0]) == "Permission denied. Please allow access to record."
        assert h.sinks.created == []

    def test_encoder_error(self) -> None:
        h = Harness(sinks=SinkFactory(stop_error=RuntimeError("pipe closed")))
        h.controller.start(CaptureOptions())
        h.controller.stop()
        assert h.controller.status == IDLE
        assert isinstance(h.errors[0], EncodingError)

    def test_sink_start_failure_releases_devices(self) -> None:
        h = Harness(sinks=SinkFactory(start_error=EncodingError("ffmpeg exited")))
        assert not h.controller.start(CaptureOptions())
        assert h.controller.status == IDLE
        assert isinstance(h.errors[0], EncodingError)
        assert all(t.released for t in h.devices.video_tracks + h.devices.audio_tracks)

    def test_can_record_again_after_failure(self) -> None:
        h = Harness(sinks=SinkFactory(chunks=[]))
        h.controller.start(CaptureOptions())
        h.controller.stop()
        h.sinks.kwargs = {}
        assert h.controller.start(CaptureOptions())
        h.controller.stop()
        assert h.controller.status == RECORDED


class TestAudio:
    def test_audio_falls_back_to_video_only(self) -> None:
        h = Harness(devices=FakeDevices(audio_error=DeviceNotFound("no loopback")))
        assert h.controller.start(CaptureOptions(audio=True))
        assert h.devices.calls == [("display", True, True), ("display", True, False)]
        assert h.sinks.last.stream.audio_tracks() == []
        assert h.sinks.last.mime_type == "video/webm;codecs=vp9"

    def test_denied_audio_is_fatal(self) -> None:
        h = Harness(devices=FakeDevices(audio_error=PermissionDenied("no")))
        assert not h.controller.start(CaptureOptions(audio=True))
        assert isinstance(h.errors[0], PermissionDenied)

    def test_no_audio_requested(self) -> None:
        h = Harness()
        h.controller.start(CaptureOptions(audio=False))
        assert h.devices.calls == [("display", True, False)]

    def test_camera_capture(self) -> None:
        h = Harness()
        h.controller.start(CaptureOptions(camera=True))
        assert h.devices.calls == [("user", True, True)]

    def test_microphone_mixed(self) -> None:
        h = Harness()
        h.controller.start(CaptureOptions(audio=True, audio_mixing=True))
        tracks = h.sinks.last.stream.audio_tracks()
        assert len(tracks) == 1
        assert isinstance(tracks[0], MixedAudioTrack)
        h.controller.stop()
        assert all(t.released for t in h.devices.audio_tracks)

    def test_microphone_failure_is_not_fatal(self) -> None:
        h = Harness(devices=FakeDevices(mic_error=DeviceNotFound("no mic")))
        assert h.controller.start(CaptureOptions(audio=True, audio_mixing=True))
        tracks = h.sinks.last.stream.audio_tracks()
        assert [t.label for t in tracks] == ["system"]


class TestBackground:
    def test_colour_background_records_compositor(self) -> None:
        h = Harness()
        assert h.controller.start(CaptureOptions(background_color="#344E41"))
        videos = h.sinks.last.stream.video_tracks()
        assert videos[0].label == "compositor"
        frame = videos[0].read_frame()
        assert frame.shape == (1080, 1920, 3)
        assert tuple(frame[5, 5]) == (0x41, 0x4E, 0x34)  # BGR
        h.controller.stop()
        assert not videos[0].is_live

    def test_background_image_failure_is_fatal(self) -> None:
        def loader(url: str):
            raise RemoteAssetFailed("HTTP 404")

        h = Harness(background_loader=loader)
        assert not h.controller.start(CaptureOptions(background_image_url="https://x/bg.jpg"))
        assert isinstance(h.errors[0], CompositorInitFailed)
        assert all(t.released for t in h.devices.video_tracks)

    def test_compositor_error_falls_back_to_raw_stream(self) -> None:
        def broken(*args, **kwargs):
            raise RuntimeError("no GPU")

        h = Harness(compositor_factory=broken)
        assert h.controller.start(CaptureOptions(background_color="#16213e"))
        assert h.sinks.last.stream.video_tracks()[0] is h.devices.video_tracks[0]


class TestStartWindow:
    def test_reset_during_warmup_abandons_start(self) -> None:
        controllers: List[CaptureSessionController] = []
        h = Harness(compositor_factory=_compositor_with_warmup(lambda: controllers[0].reset()))
        controllers.append(h.controller)
        assert not h.controller.start(CaptureOptions(background_color="#ff0000"))
        assert h.controller.status == IDLE
        assert not h.controller.is_busy
        assert h.sinks.created == []
        assert h.errors == []
        assert all(t.released for t in h.devices.video_tracks + h.devices.audio_tracks)

    def test_reset_during_sink_start_stops_sink(self) -> None:
        controllers: List[CaptureSessionController] = []

        class ResettingSinks(SinkFactory):
            def __call__(self, stream, mime_type):
                sink = super().__call__(stream, mime_type)
                start = sink.start

                def start_then_reset(timeslice_ms: int = 1000) -> None:
                    start(timeslice_ms)
                    controllers[0].reset()

                sink.start = start_then_reset
                return sink

        h = Harness(sinks=ResettingSinks())
        controllers.append(h.controller)
        assert not h.controller.start(CaptureOptions())
        assert h.controller.status == IDLE
        assert h.sinks.last.state == "inactive"
        assert h.finished == [] and h.errors == []
        assert all(t.released for t in h.devices.video_tracks)

    def test_source_ending_during_warmup_stops_recording(self) -> None:
        devices = FakeDevices()
        h = Harness(devices=devices,
                    compositor_factory=_compositor_with_warmup(lambda: devices.video_tracks[0].finish()))
        assert h.controller.start(CaptureOptions(background_color="#16213e"))
        assert h.controller.status == RECORDED
        assert h.sinks.last.state == "inactive"
        assert len(h.finished) == 1
        assert h.statuses == ["starting", "recording", "recorded"]

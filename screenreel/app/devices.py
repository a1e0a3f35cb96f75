"""Capture device access: screen, camera, microphone and system audio.

``DeviceProvider`` hands out ``MediaStream`` objects whose tracks are
backed by background grab threads (mss for the screen, OpenCV for the
camera) or sounddevice callbacks (audio).  Device failures are mapped to
the capture error taxonomy so callers can decide whether to degrade.
"""

import logging
import threading
import time
from typing import List, Optional

import cv2
import mss
import mss.exception
import numpy as np

from .errors import (
    CaptureFailed,
    DeviceNotFound,
    InvalidCaptureState,
    PermissionDenied,
    UnsupportedCaptureConfig,
)
from .models import DEFAULT_FPS
from .streams import (
    AUDIO_CHANNELS,
    AUDIO_SAMPLE_RATE,
    BufferedAudioTrack,
    FrameBufferVideoTrack,
    MediaStream,
)
from .utils import join_thread, precise_sleep

logger = logging.getLogger(__name__)

FIRST_FRAME_TIMEOUT = 3.0  # seconds to wait for a device's first frame
MAX_GRAB_FAILURES = 30  # consecutive failed grabs before a track ends

# Input device names that expose system playback as a capture source
LOOPBACK_HINTS = ("monitor", "loopback", "stereo mix", "what u hear", "blackhole")


def _wait_first_frame(track: FrameBufferVideoTrack, timeout: float) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if track.frames_pushed > 0:
            return True
        if not track.is_live:
            return False
        time.sleep(0.01)
    return track.frames_pushed > 0


def _sounddevice():
    """The sounddevice module, imported on first use (it loads PortAudio)."""
    try:
        import sounddevice as sd
    except OSError as exc:
        raise DeviceNotFound("PortAudio is not available for audio capture", exc) from exc
    return sd


# ── Screen ──────────────────────────────────────────────────────────


class ScreenVideoTrack(FrameBufferVideoTrack):
    """Grabs one monitor with mss at a capped frame rate."""

    def __init__(self, monitor_index: int = 1, fps: int = DEFAULT_FPS) -> None:
        super().__init__(label=f"screen:{monitor_index}")
        self._monitor_index = monitor_index
        self._fps = fps
        self._running = True
        self._error: Optional[Exception] = None
        self._thread = threading.Thread(target=self._grab_loop, name="screen-grab", daemon=True)

    def start(self) -> None:
        self._thread.start()
        if not _wait_first_frame(self, FIRST_FRAME_TIMEOUT):
            self.stop()
            err = self._error
            if isinstance(err, (PermissionDenied, DeviceNotFound)):
                raise err
            raise CaptureFailed("Screen capture produced no frames", err)

    def _grab_loop(self) -> None:
        failures = 0
        try:
            # mss handles are per-thread
            with mss.mss() as sct:
                if self._monitor_index >= len(sct.monitors):
                    self._error = DeviceNotFound(f"Display {self._monitor_index} does not exist")
                    return
                monitor = sct.monitors[self._monitor_index]
                while self._running:
                    t0 = time.perf_counter()
                    try:
                        img = sct.grab(monitor)
                        frame = np.asarray(img)
                        self.push_frame(cv2.cvtColor(frame, cv2.COLOR_BGRA2BGR))
                        failures = 0
                    except mss.exception.ScreenShotError as exc:
                        failures += 1
                        self._error = _map_screen_error(exc)
                        if failures >= MAX_GRAB_FAILURES:
                            logger.warning("Screen grab failing repeatedly: %s", exc)
                            break
                    elapsed = time.perf_counter() - t0
                    precise_sleep(max(0.0, 1.0 / self._fps - elapsed))
        except Exception as exc:
            logger.error("Screen capture error: %s", exc)
            self._error = _map_screen_error(exc)
        if self._running:
            # The source went away on its own
            self._end()

    def _release(self) -> None:
        self._running = False
        join_thread(self._thread, 2.0)


def _map_screen_error(exc: Exception) -> Exception:
    text = str(exc).lower()
    if "permission" in text or "denied" in text or "not authorized" in text:
        return PermissionDenied("Screen recording permission denied", exc)
    if "display" in text and ("open" in text or "connect" in text):
        return DeviceNotFound("No display available for capture", exc)
    return CaptureFailed("Screen capture failed", exc)


# ── Camera ──────────────────────────────────────────────────────────


class CameraVideoTrack(FrameBufferVideoTrack):
    """Reads frames from a camera through ``cv2.VideoCapture``."""

    def __init__(self, index: int = 0, fps: int = DEFAULT_FPS) -> None:
        super().__init__(label=f"camera:{index}")
        self._index = index
        self._fps = fps
        self._cap: Optional[cv2.VideoCapture] = None
        self._running = True
        self._thread = threading.Thread(target=self._read_loop, name="camera-read", daemon=True)

    def start(self) -> None:
        cap = cv2.VideoCapture(self._index)
        if not cap.isOpened():
            cap.release()
            self.stop()
            raise DeviceNotFound(f"Camera {self._index} could not be opened")
        self._cap = cap
        self._thread.start()
        if not _wait_first_frame(self, FIRST_FRAME_TIMEOUT):
            self.stop()
            raise InvalidCaptureState(f"Camera {self._index} is busy or delivered no frames")

    def _read_loop(self) -> None:
        failures = 0
        while self._running and self._cap is not None:
            t0 = time.perf_counter()
            ok, frame = self._cap.read()
            if ok and frame is not None:
                self.push_frame(frame)
                failures = 0
            else:
                failures += 1
                if failures >= MAX_GRAB_FAILURES:
                    logger.warning("Camera %d stopped delivering frames", self._index)
                    break
            elapsed = time.perf_counter() - t0
            precise_sleep(max(0.0, 1.0 / self._fps - elapsed))
        if self._running:
            self._end()

    def _release(self) -> None:
        self._running = False
        join_thread(self._thread, 2.0)
        if self._cap is not None:
            self._cap.release()
            self._cap = None


# ── Audio ───────────────────────────────────────────────────────────


class SoundDeviceAudioTrack(BufferedAudioTrack):
    """Captures an input device with a sounddevice callback stream."""

    def __init__(self, device: Optional[int] = None, label: str = "microphone",
                 sample_rate: int = AUDIO_SAMPLE_RATE, channels: int = AUDIO_CHANNELS) -> None:
        super().__init__(label=label, sample_rate=sample_rate, channels=channels)
        self._device = device
        self._stream = None

    def start(self) -> None:
        def _callback(indata, frames, time_info, status) -> None:
            del frames, time_info
            if status:
                logger.debug("Audio callback status: %s", status)
            self.push(indata)

        try:
            sd = _sounddevice()
        except DeviceNotFound:
            self.stop()
            raise
        try:
            info = sd.query_devices(self._device, "input")
            channels = min(self.channels, int(info["max_input_channels"])) or 1
            self._stream = sd.InputStream(
                samplerate=self.sample_rate,
                channels=channels,
                dtype="float32",
                device=self._device,
                callback=_callback,
                finished_callback=self._on_stream_finished,
            )
            self._stream.start()
        except ValueError as exc:
            self.stop()
            raise DeviceNotFound(f"Audio device {self._device!r} not found", exc) from exc
        except sd.PortAudioError as exc:
            self.stop()
            raise _map_audio_error(exc) from exc
        logger.info("Audio capture started on %s", self.label)

    def _on_stream_finished(self) -> None:
        if self.is_live:
            self._end()

    def _release(self) -> None:
        stream, self._stream = self._stream, None
        if stream is not None:
            sd = _sounddevice()
            try:
                stream.stop()
                stream.close()
            except sd.PortAudioError as exc:
                logger.error("Error stopping audio stream: %s", exc)


def _map_audio_error(exc: Exception) -> Exception:
    text = str(exc).lower()
    if "permission" in text or "denied" in text:
        return PermissionDenied("Microphone permission denied", exc)
    if "invalid sample rate" in text or "invalid number of channels" in text:
        return UnsupportedCaptureConfig("Audio device does not support 48 kHz capture", exc)
    if "unanticipated host error" in text or "device unavailable" in text or "busy" in text:
        return InvalidCaptureState("Audio device is busy", exc)
    return DeviceNotFound("Audio device unavailable", exc)


def find_loopback_device() -> Optional[int]:
    """Index of an input device that captures system playback, if any."""
    sd = _sounddevice()
    try:
        devices = sd.query_devices()
    except sd.PortAudioError as exc:
        raise _map_audio_error(exc) from exc
    for idx, dev in enumerate(devices):
        name = str(dev.get("name", "")).lower()
        if dev.get("max_input_channels", 0) > 0 and any(h in name for h in LOOPBACK_HINTS):
            return idx
    return None


# ── Provider ────────────────────────────────────────────────────────


class DeviceProvider:
    """Opens capture devices and returns them as media streams."""

    def __init__(self, monitor_index: int = 1, camera_index: int = 0,
                 microphone: Optional[int] = None, system_audio: Optional[int] = None,
                 fps: int = DEFAULT_FPS) -> None:
        self.monitor_index = monitor_index
        self.camera_index = camera_index
        self.microphone = microphone
        self.system_audio = system_audio
        self.fps = fps

    @staticmethod
    def list_monitors() -> List[dict]:
        """Available monitors with dimensions and positions."""
        with mss.mss() as sct:
            return [
                {"index": i, "width": m["width"], "height": m["height"],
                 "left": m["left"], "top": m["top"]}
                for i, m in enumerate(sct.monitors) if i > 0
            ]

    def get_display_media(self, video: bool = True, audio: bool = False) -> MediaStream:
        """Screen capture, optionally with system audio.

        Raises a capture error if any requested track cannot be opened;
        nothing stays open on failure.
        """
        if not video:
            raise UnsupportedCaptureConfig("Display capture requires video")
        screen = ScreenVideoTrack(self.monitor_index, self.fps)
        screen.start()
        stream = MediaStream([screen])
        if audio:
            try:
                device = self.system_audio
                if device is None:
                    device = find_loopback_device()
                if device is None:
                    raise DeviceNotFound("No system audio capture device found")
                track = SoundDeviceAudioTrack(device, label="system-audio")
                track.start()
                stream.add_track(track)
            except Exception:
                stream.stop()
                raise
        return stream

    def get_user_media(self, video: bool = False, audio: bool = False) -> MediaStream:
        """Camera and/or microphone capture."""
        if not video and not audio:
            raise UnsupportedCaptureConfig("Request at least one of video or audio")
        stream = MediaStream()
        try:
            if video:
                camera = CameraVideoTrack(self.camera_index, self.fps)
                camera.start()
                stream.add_track(camera)
            if audio:
                mic = SoundDeviceAudioTrack(self.microphone, label="microphone")
                mic.start()
                stream.add_track(mic)
        except Exception:
            stream.stop()
            raise
        return stream

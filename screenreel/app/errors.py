"""Error taxonomy for capture and transcoding.

Capture errors always reset the recorder to ``idle``; transcode errors end a
render with no partial output.  ``user_message()`` turns any exception into
the text shown at the UI boundary.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(eq=False)
class ScreenReelError(Exception):
    """Base error for every failure the core reports."""

    message: str
    cause: Exception | None = None

    def __str__(self) -> str:
        if self.cause is None:
            return self.message
        return f"{self.message} (cause: {self.cause})"


# ── capture ─────────────────────────────────────────────────────────


class CaptureError(ScreenReelError):
    """Anything that aborts or invalidates a capture session."""


class PermissionDenied(CaptureError):
    """The user or the OS refused access to the screen, camera or microphone."""


CaptureDenied = PermissionDenied


class DeviceNotFound(CaptureError):
    """The requested capture device does not exist."""


class CaptureFailed(CaptureError):
    """Generic device or stream failure."""


class UnsupportedCaptureConfig(CaptureFailed):
    """The device exists but cannot deliver the requested configuration."""


class InvalidCaptureState(CaptureFailed):
    """The device is busy or in a state that cannot start capturing."""


class CompositorInitFailed(CaptureError):
    """The background surface never went live, or its asset was disallowed."""


class EncodingError(CaptureError):
    """The encoder sink reported a failure."""


class NoDataCaptured(CaptureError):
    """The session finished without delivering a single chunk."""


class EmptyResult(CaptureError):
    """The assembled recording has zero length."""


# ── transcoding ─────────────────────────────────────────────────────


class TranscodeError(ScreenReelError):
    """A render could not produce output."""


class NoSegments(TranscodeError):
    """The edit timeline has nothing to render."""


class RenderFailed(TranscodeError):
    """The render pipeline failed."""


# ── assets ──────────────────────────────────────────────────────────


class RemoteAssetFailed(ScreenReelError):
    """A music or background asset could not be fetched or decoded."""


#: Causes for which audio-inclusive capture degrades to video-only.
RECOVERABLE_AUDIO_ERRORS = (DeviceNotFound, UnsupportedCaptureConfig, InvalidCaptureState)


def user_message(exc: BaseException) -> str:
    """Map *exc* to the message surfaced to the user."""
    if isinstance(exc, PermissionDenied):
        return "Permission denied. Please allow access to record."
    if isinstance(exc, DeviceNotFound):
        return "Requested device not found. Ensure a display or camera is available."
    if isinstance(exc, NoDataCaptured):
        return "No data was captured. Please try recording again."
    if isinstance(exc, EmptyResult):
        return "The recording is empty. Please try recording again."
    if isinstance(exc, NoSegments):
        return "No video segments selected for export."
    if isinstance(exc, ScreenReelError):
        return exc.message
    return str(exc) or "An unexpected error occurred."

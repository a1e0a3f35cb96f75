"""Remote and local asset loading for backgrounds and music.

Background images requested for a capture are fatal when they cannot be
fetched, decoded, or come from an origin the policy forbids.  Music for
an export degrades to no music with a warning.
"""

import logging
import os
from dataclasses import dataclass
from typing import Optional, Set
from urllib.parse import urlparse

import cv2
import numpy as np
import requests

from .errors import CompositorInitFailed, RemoteAssetFailed
from .models import Asset

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 15  # seconds
MAX_ASSET_BYTES = 64 * 1024 * 1024


@dataclass
class OriginPolicy:
    """Which remote origins may supply pixels to the compositor.

    ``allowed_origins`` of None allows every origin; an empty set allows
    only local files.  Origins are ``scheme://host[:port]``.
    """
    allowed_origins: Optional[Set[str]] = None
    local_files: bool = True

    def check(self, url: str) -> None:
        parsed = urlparse(url)
        if parsed.scheme in ("", "file"):
            if not self.local_files:
                raise CompositorInitFailed(f"Local background files are not allowed: {url}")
            return
        if self.allowed_origins is None:
            return
        origin = f"{parsed.scheme}://{parsed.netloc}".lower()
        if origin not in {o.lower().rstrip("/") for o in self.allowed_origins}:
            raise CompositorInitFailed(f"Background from {origin} is not an allowed origin")


DEFAULT_POLICY = OriginPolicy()


def _local_path(url: str) -> Optional[str]:
    parsed = urlparse(url)
    if parsed.scheme == "file":
        return parsed.path
    if parsed.scheme == "" or (len(parsed.scheme) == 1 and os.name == "nt"):
        return url
    return None


def fetch_bytes(url: str, timeout: float = DEFAULT_TIMEOUT) -> bytes:
    """Download *url* (or read a local path) and return the body."""
    path = _local_path(url)
    if path is not None:
        try:
            with open(path, "rb") as f:
                return f.read()
        except OSError as exc:
            raise RemoteAssetFailed(f"Could not read {path}", exc) from exc

    try:
        response = requests.get(url, timeout=timeout)
    except requests.RequestException as exc:
        raise RemoteAssetFailed(f"Could not fetch {url}", exc) from exc
    if response.status_code != 200:
        raise RemoteAssetFailed(f"Fetching {url} failed with HTTP {response.status_code}")
    data = response.content
    if len(data) > MAX_ASSET_BYTES:
        raise RemoteAssetFailed(f"{url} is larger than {MAX_ASSET_BYTES // (1024 * 1024)} MB")
    return data


def decode_image(data: bytes, source: str = "image") -> np.ndarray:
    """Decode image bytes to a BGR array."""
    buf = np.frombuffer(data, dtype=np.uint8)
    image = cv2.imdecode(buf, cv2.IMREAD_COLOR) if buf.size else None
    if image is None:
        raise RemoteAssetFailed(f"Could not decode {source}")
    return image


def load_background_image(url: str, policy: OriginPolicy = DEFAULT_POLICY,
                          timeout: float = DEFAULT_TIMEOUT) -> np.ndarray:
    """Fetch and decode a compositor background.  Every failure is fatal."""
    policy.check(url)
    data = fetch_bytes(url, timeout)
    image = decode_image(data, url)
    logger.info("Loaded background %s (%dx%d)", url, image.shape[1], image.shape[0])
    return image


def asset_bytes(asset: Asset, timeout: float = DEFAULT_TIMEOUT) -> bytes:
    """Bytes of an attached asset, fetching by URL when needed."""
    if asset.data is not None:
        return asset.data
    return fetch_bytes(asset.url, timeout)


def load_music(asset: Optional[Asset], timeout: float = DEFAULT_TIMEOUT) -> Optional[bytes]:
    """Resolve the secondary audio track, or None if it is unavailable."""
    if asset is None:
        return None
    try:
        data = asset_bytes(asset, timeout)
    except RemoteAssetFailed as exc:
        logger.warning("Music '%s' unavailable, exporting without it: %s", asset.name, exc)
        return None
    if not data:
        logger.warning("Music '%s' is empty, exporting without it", asset.name)
        return None
    return data


@dataclass
class MusicPreset:
    id: str
    name: str
    url: str

    def to_asset(self) -> Asset:
        return Asset(name=self.name, url=self.url, mime_type="audio/mpeg")


MUSIC_PRESETS = [
    MusicPreset("lofi-1", "Chill Lofi", "https://www.soundhelix.com/examples/mp3/SoundHelix-Song-1.mp3"),
    MusicPreset("cinematic-1", "Cinematic Pulse", "https://www.soundhelix.com/examples/mp3/SoundHelix-Song-2.mp3"),
    MusicPreset("upbeat-1", "Modern Upbeat", "https://www.soundhelix.com/examples/mp3/SoundHelix-Song-3.mp3"),
]

"""Recording library: local persistence plus the cloud-upload boundary.

``LocalLibraryStore`` keeps each recording as a file in one directory
and the metadata for all of them in ``index.json`` (newest first).
"""

import json
import logging
import os
import threading
import time
import uuid
from datetime import datetime
from typing import Callable, List, Optional, Protocol

from .media import EXTENSION_BY_MIME, MediaAsset
from .models import LibraryItem

logger = logging.getLogger(__name__)

INDEX_NAME = "index.json"


class LibraryStore(Protocol):
    def save(self, asset: MediaAsset, name: Optional[str] = None) -> LibraryItem: ...

    def get(self, item_id: str) -> MediaAsset: ...

    def delete(self, item_id: str) -> None: ...

    def list(self) -> List[LibraryItem]: ...

    def rename(self, item_id: str, name: str) -> None: ...


class CloudUploader(Protocol):
    """A remote destination for finished recordings (Drive, YouTube, ...)."""

    def authenticate(self) -> str: ...

    def upload(self, asset: MediaAsset, title: str, token: str,
               on_progress: Optional[Callable[[float], None]] = None) -> str: ...


def default_name(timestamp_ms: float) -> str:
    when = datetime.fromtimestamp(timestamp_ms / 1000)
    return f"Recording {when.strftime('%Y-%m-%d %H:%M:%S')}"


class LocalLibraryStore:
    """Directory-backed ``LibraryStore``."""

    def __init__(self, root: str) -> None:
        self.root = root
        self._lock = threading.Lock()
        os.makedirs(root, exist_ok=True)

    # ── index ───────────────────────────────────────────────────────

    @property
    def _index_path(self) -> str:
        return os.path.join(self.root, INDEX_NAME)

    def _read_index(self) -> List[LibraryItem]:
        if not os.path.isfile(self._index_path):
            return []
        try:
            with open(self._index_path, "r", encoding="utf-8") as f:
                return [LibraryItem.from_dict(d) for d in json.load(f)]
        except (OSError, ValueError, KeyError) as exc:
            logger.error("Library index unreadable, starting empty: %s", exc)
            return []

    def _write_index(self, items: List[LibraryItem]) -> None:
        tmp = self._index_path + ".tmp"
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump([item.to_dict() for item in items], f, indent=2)
        os.replace(tmp, self._index_path)

    def _blob_path(self, item: LibraryItem) -> str:
        ext = EXTENSION_BY_MIME.get(item.mime_type.split(";", 1)[0].strip().lower(), "bin")
        return os.path.join(self.root, f"{item.id}.{ext}")

    def _find(self, items: List[LibraryItem], item_id: str) -> LibraryItem:
        for item in items:
            if item.id == item_id:
                return item
        raise KeyError(f"Recording not found: {item_id}")

    # ── operations ──────────────────────────────────────────────────

    def save(self, asset: MediaAsset, name: Optional[str] = None) -> LibraryItem:
        if asset.is_empty:
            raise ValueError("Cannot save an empty recording")
        timestamp = time.time() * 1000
        item = LibraryItem(
            id=str(uuid.uuid4()),
            name=name or default_name(timestamp),
            timestamp=timestamp,
            size=asset.size,
            mime_type=asset.mime_type,
        )
        with self._lock:
            with open(self._blob_path(item), "wb") as f:
                f.write(asset.data)
            items = self._read_index()
            items.insert(0, item)
            self._write_index(items)
        logger.info("Saved %s to library (%d bytes)", item.name, item.size)
        return item

    def get(self, item_id: str) -> MediaAsset:
        with self._lock:
            item = self._find(self._read_index(), item_id)
            path = self._blob_path(item)
            if not os.path.isfile(path):
                raise KeyError(f"Recording data missing: {item_id}")
            with open(path, "rb") as f:
                data = f.read()
        return MediaAsset(data=data, mime_type=item.mime_type)

    def delete(self, item_id: str) -> None:
        with self._lock:
            items = self._read_index()
            item = self._find(items, item_id)
            try:
                os.remove(self._blob_path(item))
            except FileNotFoundError:
                logger.warning("Recording %s had no data file", item_id)
            self._write_index([i for i in items if i.id != item_id])

    def list(self) -> List[LibraryItem]:
        with self._lock:
            items = self._read_index()
        return sorted(items, key=lambda i: i.timestamp, reverse=True)

    def rename(self, item_id: str, name: str) -> None:
        name = name.strip()
        if not name:
            raise ValueError("Name must not be empty")
        with self._lock:
            items = self._read_index()
            item = self._find(items, item_id)
            item.name = name
            self._write_index(items)

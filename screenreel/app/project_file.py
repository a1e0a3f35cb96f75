"""Project file management — save / load .srproj bundles.

A .srproj file is a ZIP archive containing:
  - project.json     — editor state plus source metadata
  - recording.<ext>  — the source recording, byte for byte

This lets users save an edit and come back to it later.
"""

import json
import logging
import time
import zipfile
from dataclasses import dataclass, field
from typing import Optional

from .media import EXTENSION_BY_MIME, MediaAsset
from .models import EditorState
from .version import __version__

logger = logging.getLogger(__name__)

PROJ_EXT = ".srproj"
_JSON_NAME = "project.json"
_VIDEO_STEM = "recording"
FORMAT_VERSION = 1


@dataclass
class Project:
    """A recording together with its edit."""
    source: MediaAsset
    state: EditorState
    name: str = ""
    duration: float = 0.0
    created: float = field(default_factory=lambda: time.time() * 1000)


def _video_name(mime_type: str) -> str:
    ext = EXTENSION_BY_MIME.get(mime_type.split(";", 1)[0].strip().lower(), "bin")
    return f"{_VIDEO_STEM}.{ext}"


def save_project(output_path: str, project: Project) -> str:
    """Bundle the recording and its edit into a .srproj ZIP file.

    Returns the final output path.
    """
    if not output_path.lower().endswith(PROJ_EXT):
        output_path += PROJ_EXT

    video_name = _video_name(project.source.mime_type)
    data = {
        "formatVersion": FORMAT_VERSION,
        "appVersion": __version__,
        "name": project.name,
        "created": project.created,
        "source": {
            "file": video_name,
            "mimeType": project.source.mime_type,
            "size": project.source.size,
            "duration": project.duration,
        },
        "editor": project.state.to_dict(),
    }

    # Recordings are already compressed
    with zipfile.ZipFile(output_path, "w", zipfile.ZIP_STORED) as zf:
        zf.writestr(_JSON_NAME, json.dumps(data, indent=2))
        zf.writestr(video_name, project.source.data)

    logger.info("Project saved: %s", output_path)
    return output_path


def load_project(input_path: str) -> Project:
    """Read a .srproj ZIP back into a ``Project``."""
    if not zipfile.is_zipfile(input_path):
        raise ValueError(f"Not a valid project file: {input_path}")

    with zipfile.ZipFile(input_path, "r") as zf:
        names = set(zf.namelist())
        if _JSON_NAME not in names:
            raise ValueError(f"Project file missing {_JSON_NAME}")
        data = json.loads(zf.read(_JSON_NAME).decode("utf-8"))

        version = data.get("formatVersion", 1)
        if version > FORMAT_VERSION:
            raise ValueError(f"Project format {version} is newer than supported ({FORMAT_VERSION})")

        source_meta = data.get("source", {})
        video_name: Optional[str] = source_meta.get("file")
        if not video_name or video_name not in names:
            raise ValueError("Project file missing its recording")
        video = zf.read(video_name)

    state = EditorState.from_dict(data.get("editor", {}))
    return Project(
        source=MediaAsset(data=video, mime_type=source_meta.get("mimeType", "video/webm")),
        state=state,
        name=data.get("name", ""),
        duration=float(source_meta.get("duration", 0.0)),
        created=float(data.get("created", 0.0)),
    )

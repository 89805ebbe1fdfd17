"""
Public storage layout for finished videos.

    <media_root>/videos/<automation>/<title>-<video id>/video.mp4

``Video.video_url`` stores the path relative to ``media_root`` with a
leading slash, which is also the URL path the API serves it under.
"""
from __future__ import annotations

import re
import shutil
from pathlib import Path

from reelsmith.settings import get_settings

_UNSAFE_RE = re.compile(r"[^a-zA-Z0-9_-]")
_UNDERSCORES_RE = re.compile(r"_+")


def safe_name(value: str | None, max_len: int = 80, default: str = "untitled") -> str:
    cleaned = _UNDERSCORES_RE.sub("_", _UNSAFE_RE.sub("_", value or "")).strip("_")[:max_len]
    return cleaned or default


def video_rel_dir(video_id: int, title: str | None, automation_name: str | None = None) -> str:
    return "/".join([
        "videos",
        safe_name(automation_name, default="manual"),
        f"{safe_name(title)}-{video_id}",
    ])


def resolve_video_file(video_url: str) -> Path:
    return Path(get_settings().media_root) / video_url.lstrip("/")


def public_url(video_url: str) -> str:
    return f"{get_settings().public_base_url.rstrip('/')}/{video_url.lstrip('/')}"


def store_video(local_path: Path, video_id: int, title: str | None, automation_name: str | None = None) -> str:
    """Move a rendered file into public storage and return its ``video_url``.

    Re-running for the same video overwrites the previous file in place.
    """
    rel_dir = video_rel_dir(video_id, title, automation_name)
    target_dir = Path(get_settings().media_root) / rel_dir
    target_dir.mkdir(parents=True, exist_ok=True)
    target = target_dir / "video.mp4"
    shutil.move(str(local_path), str(target))
    return f"/{rel_dir}/video.mp4"

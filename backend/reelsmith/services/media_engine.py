"""
Thin async wrapper around the ffmpeg / ffprobe binaries.
"""
from __future__ import annotations

import asyncio
import json
import logging
import re
from pathlib import Path

from reelsmith.errors import MediaEngineError
from reelsmith.settings import get_settings

logger = logging.getLogger(__name__)

ERROR_RE = re.compile(
    r"error|invalid|failed|no such file|not found|cannot|unable|unknown|does not contain|too many|out of memory",
    re.IGNORECASE,
)
MAX_ERROR_LINES = 12


def extract_error_lines(stderr: str, limit: int = MAX_ERROR_LINES) -> str:
    """Keep only the engine lines that look like errors (last ``limit`` of them)."""
    lines = [ln.strip() for ln in stderr.splitlines() if ln.strip()]
    matching = [ln for ln in lines if ERROR_RE.search(ln)]
    picked = (matching or lines)[-limit:]
    return "\n".join(picked)


async def _run(binary: str, args: list[str], timeout: float | None) -> tuple[str, str]:
    proc = await asyncio.create_subprocess_exec(
        binary,
        *args,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        raise MediaEngineError(f"{Path(binary).name} timed out after {timeout:.0f}s")
    stdout_dec = stdout.decode(errors="ignore") if stdout else ""
    stderr_dec = stderr.decode(errors="ignore") if stderr else ""
    if proc.returncode != 0:
        raise MediaEngineError(
            f"{Path(binary).name} exited with code {proc.returncode}:\n{extract_error_lines(stderr_dec)}"
        )
    return stdout_dec, stderr_dec


async def run_ffmpeg(args: list[str], *, timeout: float | None = None) -> str:
    settings = get_settings()
    logger.debug(f"[ffmpeg] {' '.join(args[:12])}{' ...' if len(args) > 12 else ''}")
    _, stderr = await _run(settings.ffmpeg_bin, ["-hide_banner", "-nostdin", *args], timeout or settings.ffmpeg_timeout_sec)
    return stderr


async def probe(path: str | Path) -> dict:
    settings = get_settings()
    stdout, _ = await _run(
        settings.ffprobe_bin,
        ["-v", "error", "-print_format", "json", "-show_streams", "-show_format", str(path)],
        60,
    )
    return json.loads(stdout) if stdout else {}


async def probe_audio_stream_count(path: str | Path) -> int:
    data = await probe(path)
    return sum(1 for s in data.get("streams", []) if s.get("codec_type") == "audio")

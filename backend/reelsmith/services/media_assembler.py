"""
Media Assembler: renders timed scene stills + narration into a 9:16 video.

Everything happens in one ffmpeg invocation with a single filter graph:

    per scene:  scale/crop -> zoompan (Ken Burns) -> trim
    scenes:     xfade chain
    captions:   ass burn-in
    audio:      narration [+ looped, ducked music bed]

No intermediate per-scene files are written.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Sequence

from reelsmith.errors import AssemblyError, MediaEngineError
from reelsmith.services.captions import build_ass_file, build_caption_cues, select_caption_style, tone_category
from reelsmith.services.media_engine import probe_audio_stream_count, run_ffmpeg
from reelsmith.settings import get_settings

logger = logging.getLogger(__name__)

WIDTH = 1080
HEIGHT = 1920
FPS = 30
CROSSFADE_MS = 180
MIN_SCENE_MS = 200

MUSIC_VOLUME: dict[str, float] = {
    "horror": 0.18,
    "energetic": 0.22,
    "calm": 0.12,
    "neutral": 0.15,
}


@dataclass(frozen=True)
class MotionProfile:
    name: str
    zoom: str
    x: str
    y: str


# P is replaced with the per-clip progress expression (0 -> 1).
_CENTER_X = "iw/2-(iw/zoom/2)"
_CENTER_Y = "ih/2-(ih/zoom/2)"

HOOK_PUSH_IN = MotionProfile("hook_push_in", "1.0+0.18*P", _CENTER_X, _CENTER_Y)
RESOLVE_PULL_OUT = MotionProfile("resolve_pull_out", "1.18-0.18*P", _CENTER_X, _CENTER_Y)
INTERIOR_PROFILES: tuple[MotionProfile, ...] = (
    MotionProfile("pan_right", "1.12", "(iw-iw/zoom)*P", _CENTER_Y),
    MotionProfile("drift_up", "1.10+0.04*P", _CENTER_X, "(ih-ih/zoom)*(1-P)"),
    MotionProfile("pan_left", "1.12", "(iw-iw/zoom)*(1-P)", _CENTER_Y),
    MotionProfile("slow_push_in", "1.05+0.08*P", _CENTER_X, _CENTER_Y),
)


def motion_profile_for(index: int, count: int) -> MotionProfile:
    if index == 0:
        return HOOK_PUSH_IN
    if index == count - 1:
        return RESOLVE_PULL_OUT
    return INTERIOR_PROFILES[(index - 1) % len(INTERIOR_PROFILES)]


def scene_durations(timings: Sequence) -> list[int]:
    """On-screen length of each scene.

    A scene stays up until the next one starts. The first scene also covers
    any lead-in before its start.
    """
    durations = []
    for i, t in enumerate(timings):
        start = 0 if i == 0 else int(t.start_ms)
        end = int(timings[i + 1].start_ms) if i + 1 < len(timings) else int(t.end_ms)
        durations.append(max(MIN_SCENE_MS, end - start))
    return durations


def crossfade_durations(durations: Sequence[int]) -> list[int]:
    """Fade between scene i and i+1; the last scene has none."""
    fades = [
        min(CROSSFADE_MS, min(durations[i], durations[i + 1]) // 4)
        for i in range(len(durations) - 1)
    ]
    return fades + [0] if durations else []


def _seconds(ms: int) -> str:
    return f"{ms / 1000:.3f}"


def _escape_filter_path(path: str | Path) -> str:
    return str(path).replace("\\", "/").replace(":", "\\:").replace("'", "\\'")


def build_filter_graph(
    durations: Sequence[int],
    *,
    captions_path: str | Path | None = None,
    music_volume: float | None = None,
    fonts_dir: str | None = None,
) -> str:
    """Full ``-filter_complex`` graph for N image inputs, narration at input N
    and (when ``music_volume`` is given) music at input N+1.

    Outputs are labelled ``[vout]`` and ``[aout]``.
    """
    count = len(durations)
    if count == 0:
        raise AssemblyError("No scenes to assemble")
    fades = crossfade_durations(durations)
    parts: list[str] = []

    for i, dur in enumerate(durations):
        clip_ms = dur + fades[i]
        frames = max(1, round(clip_ms / 1000 * FPS))
        progress = f"(on/{max(frames - 1, 1)})"
        profile = motion_profile_for(i, count)
        zoom, x, y = (expr.replace("P", progress) for expr in (profile.zoom, profile.x, profile.y))
        parts.append(
            f"[{i}:v]scale={WIDTH * 2}:{HEIGHT * 2}:force_original_aspect_ratio=increase,"
            f"crop={WIDTH * 2}:{HEIGHT * 2},"
            f"zoompan=z='{zoom}':x='{x}':y='{y}':d={frames}:s={WIDTH}x{HEIGHT}:fps={FPS},"
            f"trim=duration={_seconds(clip_ms)},setpts=PTS-STARTPTS,setsar=1,format=yuv420p[v{i}]"
        )

    last = "v0"
    offset = 0
    for i in range(1, count):
        offset += durations[i - 1]
        out = f"x{i}"
        parts.append(
            f"[{last}][v{i}]xfade=transition=fade:duration={_seconds(fades[i - 1])}:offset={_seconds(offset)}[{out}]"
        )
        last = out

    if captions_path:
        ass = f"ass=filename='{_escape_filter_path(captions_path)}'"
        if fonts_dir:
            ass += f":fontsdir='{_escape_filter_path(fonts_dir)}'"
        parts.append(f"[{last}]{ass}[vout]")
    else:
        parts.append(f"[{last}]null[vout]")

    narration = f"[{count}:a]aresample=44100,aformat=channel_layouts=stereo"
    if music_volume is None:
        parts.append(f"{narration}[aout]")
    else:
        parts.append(f"{narration},asplit=2[narr][sc]")
        parts.append(
            f"[{count + 1}:a]aresample=44100,aformat=channel_layouts=stereo,"
            f"volume={music_volume},afade=t=in:st=0:d=1.5[mus]"
        )
        parts.append("[mus][sc]sidechaincompress=threshold=0.05:ratio=8:attack=20:release=400[ducked]")
        parts.append("[narr][ducked]amix=inputs=2:duration=first:normalize=0[aout]")

    return ";".join(parts)


@dataclass
class AssemblyRequest:
    image_paths: list[Path]
    audio_path: Path
    timings: list  # SceneTiming
    scene_texts: list[str]
    output_path: Path
    niche: str | None = None
    tone: str | None = None
    music_path: Path | None = None


@dataclass
class AssemblyResult:
    output_path: Path
    duration_ms: int
    music_used: bool


async def _usable_music(music_path: Path | None, tag: str) -> bool:
    if not music_path:
        return False
    if not Path(music_path).is_file():
        logger.warning(f"{tag} Music file {music_path} not found, narration only")
        return False
    try:
        streams = await probe_audio_stream_count(music_path)
    except MediaEngineError as exc:
        logger.warning(f"{tag} Music probe failed ({exc}), narration only")
        return False
    if streams == 0:
        logger.warning(f"{tag} Music file {music_path} has no audio stream, skipping music")
        return False
    return True


async def assemble_video(request: AssemblyRequest, *, tag: str = "[assembler]") -> AssemblyResult:
    settings = get_settings()
    count = len(request.image_paths)
    if count == 0:
        raise AssemblyError("No images supplied")
    if count != len(request.timings):
        raise AssemblyError(f"Image/timing mismatch: {count} images vs {len(request.timings)} timings")
    if len(request.scene_texts) != count:
        raise AssemblyError(f"Scene text/timing mismatch: {len(request.scene_texts)} texts vs {count} timings")
    if not Path(request.audio_path).is_file():
        raise AssemblyError(f"Narration audio missing: {request.audio_path}")

    durations = scene_durations(request.timings)
    total_ms = max(int(request.timings[-1].end_ms), sum(durations))
    category = tone_category(request.niche, request.tone)

    request.output_path.parent.mkdir(parents=True, exist_ok=True)
    captions_path = request.output_path.parent / "captions.ass"
    cues = build_caption_cues(request.scene_texts, request.timings)
    style = select_caption_style(request.niche, request.tone, " ".join(request.scene_texts))
    captions_path.write_text(build_ass_file(cues, style), encoding="utf-8")

    music_used = await _usable_music(request.music_path, tag)
    graph = build_filter_graph(
        durations,
        captions_path=captions_path,
        music_volume=MUSIC_VOLUME[category] if music_used else None,
        fonts_dir=settings.caption_fonts_dir,
    )

    args: list[str] = ["-y"]
    for image in request.image_paths:
        args += ["-i", str(image)]
    args += ["-i", str(request.audio_path)]
    if music_used:
        args += ["-stream_loop", "-1", "-i", str(request.music_path)]
    args += [
        "-filter_complex", graph,
        "-map", "[vout]", "-map", "[aout]",
        "-c:v", "libx264", "-preset", settings.ffmpeg_preset, "-crf", "20",
        "-pix_fmt", "yuv420p", "-r", str(FPS),
        "-c:a", "aac", "-b:a", "192k",
        "-movflags", "+faststart",
        "-t", _seconds(total_ms),
        str(request.output_path),
    ]

    logger.info(
        f"{tag} Rendering {count} scenes, {total_ms} ms, style={style.font}/{category}, music={music_used}"
    )
    await run_ffmpeg(args)
    if not request.output_path.is_file():
        raise AssemblyError(f"ffmpeg reported success but {request.output_path} is missing")
    return AssemblyResult(output_path=request.output_path, duration_ms=total_ms, music_used=music_used)

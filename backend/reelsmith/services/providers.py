"""
Provider layer: script, speech and image generation backends.

Concrete adapters (LLM vendors, TTS engines, image APIs) plug in through
`register_*_provider`. The built-in ``stub`` / ``silent`` / ``placeholder``
providers are deterministic and need nothing but ffmpeg, so the whole
pipeline can run without external APIs.
"""
from __future__ import annotations

import asyncio
import logging
import shutil
import tempfile
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from reelsmith.errors import (
    GenerationError,
    ImageGenerationError,
    ProviderNotFoundError,
    SpeechGenerationError,
)
from reelsmith.services.media_engine import run_ffmpeg
from reelsmith.settings import get_settings

logger = logging.getLogger(__name__)


# ── Results ──────────────────────────────────────────────────

@dataclass
class ScriptScene:
    text: str
    visual_description: str

    def to_dict(self) -> dict[str, str]:
        return {"text": self.text, "visualDescription": self.visual_description}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ScriptScene":
        return cls(
            text=str(data.get("text") or "").strip(),
            visual_description=str(data.get("visualDescription") or data.get("visual_description") or "").strip(),
        )


@dataclass
class GeneratedScript:
    title: str
    description: str
    hashtags: list[str]
    scenes: list[ScriptScene]

    @property
    def script_text(self) -> str:
        return " ".join(s.text for s in self.scenes)


@dataclass
class SceneTiming:
    start_ms: int
    end_ms: int

    @property
    def duration_ms(self) -> int:
        return self.end_ms - self.start_ms

    def to_dict(self) -> dict[str, int]:
        return {"startMs": self.start_ms, "endMs": self.end_ms}


@dataclass
class SpeechResult:
    audio_path: Path
    duration_ms: int
    scene_timings: list[SceneTiming]
    tmp_dir: Path | None = None


@dataclass
class ImageSet:
    image_paths: list[Path]
    tmp_dir: Path


@dataclass
class ScriptRequest:
    niche: str
    tone: str
    language: str
    duration: int
    art_style: str
    topic: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)


def estimate_scene_timings(scene_texts: list[str], total_ms: int) -> list[SceneTiming]:
    """Split ``total_ms`` across scenes proportionally to their character count.

    The last scene always ends exactly at ``total_ms``.
    """
    if not scene_texts:
        return []
    weights = [max(len(t.strip()), 1) for t in scene_texts]
    total_weight = sum(weights)
    timings: list[SceneTiming] = []
    cursor = 0
    for i, weight in enumerate(weights):
        if i == len(weights) - 1:
            end = total_ms
        else:
            end = cursor + round(total_ms * weight / total_weight)
        timings.append(SceneTiming(start_ms=cursor, end_ms=end))
        cursor = end
    return timings


# ── Interfaces ───────────────────────────────────────────────

class ScriptProvider(ABC):
    name: str = "unknown"

    @abstractmethod
    async def generate_script(self, request: ScriptRequest) -> GeneratedScript:
        ...


class SpeechProvider(ABC):
    name: str = "unknown"

    @abstractmethod
    async def generate_speech(
        self,
        script: str,
        voice_id: str | None,
        scenes: list[ScriptScene],
        *,
        language: str = "en",
    ) -> SpeechResult:
        ...


class ImageProvider(ABC):
    """Generates one image per scene.

    Subclasses implement `generate_one`; `generate_images` owns the per-scene
    retry loop and the temp directory, and aborts on the first scene that
    exhausts its attempts.
    """

    name: str = "unknown"

    @abstractmethod
    async def generate_one(self, prompt: str, negative_prompt: str | None, out_path: Path) -> Path:
        ...

    async def generate_images(
        self,
        prompts: list[str],
        style_prompt: str,
        *,
        negative_prompt: str | None = None,
    ) -> ImageSet:
        settings = get_settings()
        tmp_dir = Path(tempfile.mkdtemp(prefix="reelsmith-img-"))
        paths: list[Path] = []
        try:
            for idx, prompt in enumerate(prompts):
                full_prompt = f"{prompt}, {style_prompt}" if style_prompt else prompt
                out_path = tmp_dir / f"scene_{idx:03d}.png"
                last_exc: Exception | None = None
                for attempt in range(1, settings.image_max_attempts + 1):
                    try:
                        paths.append(await self.generate_one(full_prompt, negative_prompt, out_path))
                        last_exc = None
                        break
                    except Exception as exc:
                        last_exc = exc
                        logger.warning(
                            f"[images][{self.name}] scene {idx} attempt {attempt}/{settings.image_max_attempts} failed: {exc}"
                        )
                        if attempt < settings.image_max_attempts:
                            await asyncio.sleep(settings.image_retry_delay_sec)
                if last_exc is not None:
                    raise ImageGenerationError(
                        f"Image for scene {idx + 1} failed after {settings.image_max_attempts} attempts: {last_exc}"
                    ) from last_exc
        except BaseException:
            shutil.rmtree(tmp_dir, ignore_errors=True)
            raise
        return ImageSet(image_paths=paths, tmp_dir=tmp_dir)


# ── Built-in deterministic providers ─────────────────────────

class StubScriptProvider(ScriptProvider):
    """Deterministic script built from the niche and tone."""

    name = "stub"

    async def generate_script(self, request: ScriptRequest) -> GeneratedScript:
        topic = request.topic or request.niche.replace("-", " ")
        count = max(4, round(request.duration / 7))
        scenes = [
            ScriptScene(
                text=(
                    f"Wait. Something about {topic} is not what it seems."
                    if i == 0
                    else f"Part {i + 1} of the {topic} story keeps the {request.tone} mood going."
                ),
                visual_description=f"{topic}, scene {i + 1}, {request.tone} atmosphere",
            )
            for i in range(count)
        ]
        return GeneratedScript(
            title=f"The truth about {topic}",
            description=f"A short {request.tone} story about {topic}.",
            hashtags=[f"#{request.niche.replace('-', '')}", "#shorts"],
            scenes=scenes,
        )


class SilentSpeechProvider(SpeechProvider):
    """Silent narration track sized to roughly 15 characters per second."""

    name = "silent"
    CHARS_PER_SEC = 15

    async def generate_speech(self, script, voice_id, scenes, *, language="en") -> SpeechResult:
        if not scenes:
            raise SpeechGenerationError("No scenes to narrate")
        total_ms = max(1000, round(len(script) / self.CHARS_PER_SEC * 1000))
        tmp_dir = Path(tempfile.mkdtemp(prefix="reelsmith-tts-"))
        audio_path = tmp_dir / "narration.m4a"
        try:
            await run_ffmpeg([
                "-y", "-f", "lavfi", "-i", "anullsrc=r=44100:cl=stereo",
                "-t", f"{total_ms / 1000:.3f}", "-c:a", "aac", str(audio_path),
            ])
        except Exception:
            shutil.rmtree(tmp_dir, ignore_errors=True)
            raise
        return SpeechResult(
            audio_path=audio_path,
            duration_ms=total_ms,
            scene_timings=estimate_scene_timings([s.text for s in scenes], total_ms),
            tmp_dir=tmp_dir,
        )


class PlaceholderImageProvider(ImageProvider):
    """Solid-colour 1080x1920 frames, one hue per prompt."""

    name = "placeholder"
    COLORS = ("0x1f2937", "0x7c2d12", "0x14532d", "0x1e3a8a", "0x581c87", "0x713f12")

    async def generate_one(self, prompt, negative_prompt, out_path) -> Path:
        color = self.COLORS[sum(map(ord, prompt)) % len(self.COLORS)]
        await run_ffmpeg([
            "-y", "-f", "lavfi", "-i", f"color=c={color}:s=1080x1920",
            "-frames:v", "1", str(out_path),
        ])
        return out_path


# ── Registry ─────────────────────────────────────────────────

_SCRIPT_PROVIDERS: dict[str, ScriptProvider] = {"stub": StubScriptProvider()}
_SPEECH_PROVIDERS: dict[str, SpeechProvider] = {"silent": SilentSpeechProvider()}
_IMAGE_PROVIDERS: dict[str, ImageProvider] = {"placeholder": PlaceholderImageProvider()}


def register_script_provider(provider: ScriptProvider) -> None:
    _SCRIPT_PROVIDERS[provider.name] = provider


def register_speech_provider(provider: SpeechProvider) -> None:
    _SPEECH_PROVIDERS[provider.name] = provider


def register_image_provider(provider: ImageProvider) -> None:
    _IMAGE_PROVIDERS[provider.name] = provider


def _lookup(registry: dict, kind: str, name: str | None):
    provider = registry.get((name or "").strip())
    if provider is None:
        raise ProviderNotFoundError(f"Unknown {kind} provider: {name!r}")
    return provider


def get_script_provider(name: str | None) -> ScriptProvider:
    return _lookup(_SCRIPT_PROVIDERS, "script", name)


def get_speech_provider(name: str | None) -> SpeechProvider:
    return _lookup(_SPEECH_PROVIDERS, "speech", name)


def get_image_provider(name: str | None) -> ImageProvider:
    return _lookup(_IMAGE_PROVIDERS, "image", name)


@dataclass
class ProviderChoice:
    llm: str
    tts: str
    image: str


def resolve_providers(automation: Any, user: Any = None) -> ProviderChoice:
    """Automation override, then the user's default, then the platform default."""
    settings = get_settings()

    def pick(attr: str, user_attr: str, fallback: str) -> str:
        return (
            getattr(automation, attr, None)
            or (getattr(user, user_attr, None) if user is not None else None)
            or fallback
        )

    return ProviderChoice(
        llm=pick("llm_provider", "default_llm_provider", settings.default_llm_provider),
        tts=pick("tts_provider", "default_tts_provider", settings.default_tts_provider),
        image=pick("image_provider", "default_image_provider", settings.default_image_provider),
    )


def validate_script(script: GeneratedScript) -> GeneratedScript:
    if not script.scenes:
        raise GenerationError("Script provider returned no scenes")
    empty = [i + 1 for i, s in enumerate(script.scenes) if not s.text]
    if empty:
        raise GenerationError(f"Script provider returned empty narration for scenes {empty}")
    if not script.title:
        script.title = script.scenes[0].text[:80]
    return script

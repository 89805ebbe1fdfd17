import shutil
from pathlib import Path
from unittest.mock import patch

import pytest

from reelsmith.errors import GenerationError, ImageGenerationError, ProviderNotFoundError
from reelsmith.services.providers import (
    GeneratedScript,
    ImageProvider,
    ScriptRequest,
    ScriptScene,
    StubScriptProvider,
    estimate_scene_timings,
    get_script_provider,
    resolve_providers,
    validate_script,
)


class FlakyImages(ImageProvider):
    name = "flaky"

    def __init__(self, failures: dict[int, int]):
        self.failures = failures
        self.calls: list[str] = []

    async def generate_one(self, prompt, negative_prompt, out_path: Path) -> Path:
        self.calls.append(prompt)
        scene = int(out_path.stem.split("_")[1])
        if self.failures.get(scene, 0) > 0:
            self.failures[scene] -= 1
            raise RuntimeError("upstream 503")
        out_path.write_bytes(b"png")
        return out_path


def test_scene_timings_are_contiguous_and_end_at_total():
    timings = estimate_scene_timings(["short", "a much longer sentence here", "end"], 10_000)
    assert timings[0].start_ms == 0
    assert all(a.end_ms == b.start_ms for a, b in zip(timings, timings[1:]))
    assert timings[-1].end_ms == 10_000
    assert timings[1].duration_ms > timings[0].duration_ms


@pytest.mark.anyio
async def test_stub_script_scales_with_duration():
    script = await StubScriptProvider().generate_script(
        ScriptRequest(niche="scary-stories", tone="dark", language="en", duration=60, art_style="noir")
    )
    assert len(script.scenes) == 9
    assert script.scenes[0].text.startswith("Wait.")
    assert script.script_text.startswith("Wait. Something about scary stories")


@pytest.mark.anyio
async def test_image_retries_then_succeeds():
    provider = FlakyImages({1: 2})
    images = await provider.generate_images(["first", "second"], "noir style")
    try:
        assert len(images.image_paths) == 2
        assert provider.calls.count("second, noir style") == 3
    finally:
        shutil.rmtree(images.tmp_dir, ignore_errors=True)


@pytest.mark.anyio
async def test_image_failure_aborts_and_cleans_up(tmp_path):
    provider = FlakyImages({0: 10})
    tmp = tmp_path / "images"
    tmp.mkdir()
    with patch("reelsmith.services.providers.tempfile.mkdtemp", return_value=str(tmp)), \
            pytest.raises(ImageGenerationError):
        await provider.generate_images(["first", "second"], "")
    assert not tmp.exists()
    assert provider.calls == ["first"] * 3


def test_validate_script():
    with pytest.raises(GenerationError):
        validate_script(GeneratedScript(title="t", description="", hashtags=[], scenes=[]))
    with pytest.raises(GenerationError):
        validate_script(GeneratedScript(title="t", description="", hashtags=[], scenes=[ScriptScene("", "x")]))
    script = validate_script(GeneratedScript(title="", description="", hashtags=[], scenes=[ScriptScene("Hello", "x")]))
    assert script.title == "Hello"


def test_provider_resolution_order():
    class Obj:
        def __init__(self, **kw):
            self.__dict__.update(kw)

    automation = Obj(llm_provider="gpt", tts_provider=None, image_provider=None)
    user = Obj(default_llm_provider="claude", default_tts_provider="eleven", default_image_provider=None)
    choice = resolve_providers(automation, user)
    assert (choice.llm, choice.tts, choice.image) == ("gpt", "eleven", "placeholder")


def test_unknown_provider():
    with pytest.raises(ProviderNotFoundError):
        get_script_provider("nope")

"""
Burned-in caption planning and ASS rendering.

Scene narration is cut into short phrases (punctuation first, then a word
cap), each phrase gets screen time proportional to its length, and the
resulting cues are rendered to an ASS file that ffmpeg's ``ass`` filter
burns into the video.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, replace
from typing import Sequence

MIN_CHUNK_MS = 500
MAX_CHUNK_MS = 4500
MAX_WORDS_LATIN = 6
MAX_WORDS_OTHER = 5
MAX_CHARS_UNSPACED = 10

_PHRASE_RE = re.compile(r".+?(?:[.!?;:,…]+(?=\s|$)|[。！？；：，、।॥]+|$)", re.S)

# (script, first, last) code point ranges
_SCRIPT_RANGES: tuple[tuple[str, int, int], ...] = (
    ("devanagari", 0x0900, 0x097F),
    ("arabic", 0x0600, 0x06FF),
    ("cyrillic", 0x0400, 0x04FF),
    ("thai", 0x0E00, 0x0E7F),
    ("cjk", 0x3040, 0x30FF),
    ("cjk", 0x4E00, 0x9FFF),
    ("hangul", 0xAC00, 0xD7AF),
)
_UNSPACED_SCRIPTS = {"cjk", "thai"}


def detect_script(text: str) -> str:
    """Dominant writing system of ``text``; ``latin`` when nothing else wins."""
    counts: dict[str, int] = {}
    latin = 0
    for ch in text:
        cp = ord(ch)
        if ch.isascii():
            if ch.isalpha():
                latin += 1
            continue
        for name, lo, hi in _SCRIPT_RANGES:
            if lo <= cp <= hi:
                counts[name] = counts.get(name, 0) + 1
                break
        else:
            if ch.isalpha():
                latin += 1
    if not counts:
        return "latin"
    best, best_count = max(counts.items(), key=lambda kv: kv[1])
    return best if best_count >= latin else "latin"


def split_phrases(text: str) -> list[str]:
    """Split on punctuation boundaries, keeping the punctuation."""
    text = " ".join(text.split())
    return [m.group(0).strip() for m in _PHRASE_RE.finditer(text) if m.group(0).strip()]


def chunk_caption_text(text: str, script: str | None = None) -> list[str]:
    script = script or detect_script(text)
    chunks: list[str] = []
    for phrase in split_phrases(text):
        if script in _UNSPACED_SCRIPTS and " " not in phrase:
            chunks.extend(phrase[i:i + MAX_CHARS_UNSPACED] for i in range(0, len(phrase), MAX_CHARS_UNSPACED))
            continue
        max_words = MAX_WORDS_LATIN if script == "latin" else MAX_WORDS_OTHER
        words = phrase.split()
        chunks.extend(" ".join(words[i:i + max_words]) for i in range(0, len(words), max_words))
    return chunks


def merge_chunks(chunks: Sequence[str], max_count: int, separator: str = " ") -> list[str]:
    """Join the shortest neighbouring chunks until at most ``max_count`` remain."""
    merged = list(chunks)
    while len(merged) > max(max_count, 1):
        i = min(range(len(merged) - 1), key=lambda k: len(merged[k]) + len(merged[k + 1]))
        merged[i:i + 2] = [merged[i] + separator + merged[i + 1]]
    return merged


def _fit_durations(durations: list[int], scene_ms: int) -> list[int]:
    """Shrink clamped durations so they sum to at most ``scene_ms``.

    Time above MIN_CHUNK_MS is taken back first; only when that is not
    enough is everything scaled down.
    """
    total = sum(durations)
    if total <= scene_ms or not durations:
        return durations
    excess = total - scene_ms
    slack = [d - MIN_CHUNK_MS for d in durations]
    total_slack = sum(slack)
    if total_slack >= excess:
        fitted = [d - round(excess * s / total_slack) for d, s in zip(durations, slack)]
    else:
        fitted = [max(1, scene_ms * d // total) for d in durations]
    fitted[-1] = max(1, fitted[-1] + scene_ms - sum(fitted))
    return fitted


def allocate_chunk_durations(chunks: Sequence[str], scene_ms: int) -> list[int]:
    """Character-proportional share of ``scene_ms`` per chunk, clamped per chunk.

    The result never adds up to more than ``scene_ms``.
    """
    if not chunks:
        return []
    total_chars = sum(max(len(c), 1) for c in chunks)
    durations = [
        min(MAX_CHUNK_MS, max(MIN_CHUNK_MS, round(scene_ms * max(len(c), 1) / total_chars)))
        for c in chunks
    ]
    return _fit_durations(durations, scene_ms)


@dataclass
class CaptionCue:
    start_ms: int
    end_ms: int
    text: str


def build_caption_cues(scene_texts: Sequence[str], timings: Sequence) -> list[CaptionCue]:
    """Lay out caption cues scene by scene.

    No cue crosses its scene's end and every word of the narration is shown;
    a scene too short for all its chunks gets them merged.
    """
    cues: list[CaptionCue] = []
    for text, timing in zip(scene_texts, timings):
        start, end = int(timing.start_ms), int(timing.end_ms)
        if end <= start:
            continue
        script = detect_script(text or "")
        chunks = merge_chunks(
            chunk_caption_text(text or "", script),
            (end - start) // MIN_CHUNK_MS,
            separator="" if script in _UNSPACED_SCRIPTS else " ",
        )
        cursor = start
        for chunk, dur in zip(chunks, allocate_chunk_durations(chunks, end - start)):
            cues.append(CaptionCue(start_ms=cursor, end_ms=min(cursor + dur, end), text=chunk))
            cursor += dur
    return cues


# ── Styles ───────────────────────────────────────────────────

_HORROR_WORDS = ("horror", "scary", "creepy", "dark", "crime", "mystery", "paranormal", "eerie", "suspense")
_ENERGETIC_WORDS = ("motivat", "energetic", "hype", "sport", "fun", "exciting", "comedy", "upbeat")
_CALM_WORDS = ("calm", "relax", "meditat", "nature", "sleep", "peaceful", "gentle", "asmr")


def tone_category(niche: str | None, tone: str | None) -> str:
    haystack = f"{niche or ''} {tone or ''}".lower()
    for category, words in (("horror", _HORROR_WORDS), ("energetic", _ENERGETIC_WORDS), ("calm", _CALM_WORDS)):
        if any(w in haystack for w in words):
            return category
    return "neutral"


@dataclass(frozen=True)
class CaptionStyle:
    font: str
    font_size: int
    outline: int
    shadow: int
    border_style: int  # 1 = outline + shadow, 3 = opaque box
    primary: str
    outline_colour: str
    back_colour: str
    bold: int = 1
    margin_v: int = 420


CATEGORY_STYLES: dict[str, CaptionStyle] = {
    "horror": CaptionStyle("Creepster", 84, 5, 2, 1, "&H00E6E6E6", "&H00000000", "&H80000000"),
    "energetic": CaptionStyle("Montserrat Black", 88, 6, 0, 1, "&H0000FFFF", "&H00000000", "&H00000000"),
    "calm": CaptionStyle("Lora", 72, 0, 0, 3, "&H00FFFFFF", "&H64000000", "&H64000000", bold=0),
    "neutral": CaptionStyle("Montserrat", 80, 4, 1, 1, "&H00FFFFFF", "&H00000000", "&H80000000"),
}

# Latin display fonts lack these glyphs.
SCRIPT_FONTS: dict[str, str] = {
    "devanagari": "Noto Sans Devanagari",
    "arabic": "Noto Naskh Arabic",
    "cyrillic": "Noto Sans",
    "thai": "Noto Sans Thai",
    "cjk": "Noto Sans CJK SC",
    "hangul": "Noto Sans CJK KR",
}


def select_caption_style(niche: str | None, tone: str | None, text: str) -> CaptionStyle:
    style = CATEGORY_STYLES[tone_category(niche, tone)]
    font = SCRIPT_FONTS.get(detect_script(text))
    if font:
        style = replace(style, font=font)
    return style


# ── ASS rendering ────────────────────────────────────────────

def _format_ass_time(ms: int) -> str:
    """Format milliseconds as ASS time (H:MM:SS.cc)."""
    centis_total = max(0, ms) // 10
    hours, rem = divmod(centis_total, 360000)
    minutes, rem = divmod(rem, 6000)
    secs, centis = divmod(rem, 100)
    return f"{hours}:{minutes:02d}:{secs:02d}.{centis:02d}"


def _escape_ass(text: str) -> str:
    return text.replace("\\", "\\\\").replace("{", "(").replace("}", ")").replace("\n", "\\N")


def build_ass_file(cues: Sequence[CaptionCue], style: CaptionStyle, *, width: int = 1080, height: int = 1920) -> str:
    header = f"""[Script Info]
Title: Captions
ScriptType: v4.00+
WrapStyle: 0
PlayResX: {width}
PlayResY: {height}

[V4+ Styles]
Format: Name, Fontname, Fontsize, PrimaryColour, SecondaryColour, OutlineColour, BackColour, Bold, Italic, Underline, StrikeOut, ScaleX, ScaleY, Spacing, Angle, BorderStyle, Outline, Shadow, Alignment, MarginL, MarginR, MarginV, Encoding
Style: Default,{style.font},{style.font_size},{style.primary},&H000000FF,{style.outline_colour},{style.back_colour},{style.bold},0,0,0,100,100,0,0,{style.border_style},{style.outline},{style.shadow},2,60,60,{style.margin_v},1

[Events]
Format: Layer, Start, End, Style, Name, MarginL, MarginR, MarginV, Effect, Text
"""
    events = [
        f"Dialogue: 0,{_format_ass_time(c.start_ms)},{_format_ass_time(c.end_ms)},Default,,0,0,0,,{_escape_ass(c.text)}"
        for c in cues
    ]
    return header + "\n".join(events) + "\n"

"""
Per-platform publish metadata (title, description/caption, tags, first comment).

Phrasing is picked from per-niche pools with a RNG seeded by the video id,
so the same video always gets the same metadata across retries.
"""
from __future__ import annotations

import random
import re
from dataclasses import dataclass, field


@dataclass(frozen=True)
class NicheSEO:
    tags: tuple[str, ...]
    hashtags: tuple[str, ...]
    category_id: str
    ctas: tuple[str, ...]
    hooks: tuple[str, ...]
    engagements: tuple[str, ...]


NICHE_SEO: dict[str, NicheSEO] = {
    "scary-stories": NicheSEO(
        tags=("scary stories", "horror stories", "creepy", "horror", "creepypasta", "ghost stories"),
        hashtags=("#ScaryStories", "#Horror", "#Creepy", "#Creepypasta", "#GhostStories"),
        category_id="24",
        ctas=("Follow for stories that'll keep you up at night", "New horror stories dropping regularly"),
        hooks=("Wait for the ending...", "This one gave me chills", "Don't watch this alone."),
        engagements=("Has anything like this happened to you?", "What would you do?", "Rate this story 1-10"),
    ),
    "mythology": NicheSEO(
        tags=("mythology", "greek mythology", "myths", "ancient myths", "gods and legends"),
        hashtags=("#Mythology", "#GreekMythology", "#Myths", "#AncientHistory", "#GodsAndLegends"),
        category_id="27",
        ctas=("More mythology every week", "Follow for stories of gods and legends"),
        hooks=("The gods were not kind", "Most people never hear this part", "This myth is darker than you think"),
        engagements=("Which myth should I cover next?", "Did you know this one?"),
    ),
    "history": NicheSEO(
        tags=("history", "history facts", "world history", "untold history", "history stories"),
        hashtags=("#History", "#HistoryFacts", "#WorldHistory", "#DidYouKnow"),
        category_id="27",
        ctas=("Follow for more history you weren't taught", "New history stories every week"),
        hooks=("They don't teach this in school", "This actually happened", "History is stranger than fiction"),
        engagements=("Did you know this?", "Which era should I cover next?"),
    ),
    "motivation": NicheSEO(
        tags=("motivation", "motivational", "self improvement", "discipline", "mindset"),
        hashtags=("#Motivation", "#Mindset", "#Discipline", "#SelfImprovement"),
        category_id="22",
        ctas=("Follow for daily motivation", "Save this for when you need it"),
        hooks=("You needed to hear this today", "Watch this before you give up", "This changed how I think"),
        engagements=("What's your goal this week?", "Who needs to hear this?"),
    ),
    "heists": NicheSEO(
        tags=("heist", "heist stories", "robbery", "bank robbery", "crime stories"),
        hashtags=("#Heist", "#Robbery", "#CrimeStory", "#BiggestHeists"),
        category_id="24",
        ctas=("Follow for more insane heist stories", "You can't make this stuff up"),
        hooks=("They almost got away with it", "The plan was actually genius", "Nobody saw it coming"),
        engagements=("Could you pull this off?", "Movie-worthy or what?"),
    ),
}

FALLBACK = NicheSEO(
    tags=("shorts", "viral", "trending", "story time"),
    hashtags=("#Shorts", "#Viral", "#Trending", "#StoryTime"),
    category_id="22",
    ctas=("Follow for more content like this", "New videos every week"),
    hooks=("You need to see this", "Wait for it", "Didn't expect that"),
    engagements=("What do you think?", "Did you see that coming?"),
)

AI_HASHTAG = "#AIGenerated"
AI_NOTICE = "Made with AI"
_SENTENCE_RE = re.compile(r"[.!?]")
_WORD_RE = re.compile(r"[^a-z0-9\s]")


def extract_hook(script_text: str | None, limit: int = 150) -> str:
    if not script_text:
        return ""
    return _SENTENCE_RE.split(script_text, maxsplit=1)[0].strip()[:limit]


def _normalize_hashtag(tag: str) -> str:
    tag = tag.strip().replace(" ", "")
    return tag if tag.startswith("#") else f"#{tag}"


@dataclass
class PlatformMetadata:
    title: str
    description: str
    tags: list[str] = field(default_factory=list)
    category_id: str | None = None
    first_comment: str | None = None

    def to_dict(self) -> dict:
        return {
            "title": self.title,
            "description": self.description,
            "tags": self.tags,
            "category_id": self.category_id,
        }


def build_metadata(
    platform: str,
    *,
    video_id: int,
    title: str | None,
    niche: str | None,
    script_text: str | None = None,
    description: str | None = None,
    hashtags: list[str] | None = None,
    include_ai_tags: bool = True,
) -> PlatformMetadata:
    """Metadata for one platform. Deterministic for a given ``video_id``."""
    rng = random.Random(f"{video_id}:{platform}")
    cfg = NICHE_SEO.get(niche or "", FALLBACK)
    title = (title or "").strip() or "Check this out!"
    hook = extract_hook(script_text)
    opener = rng.choice(cfg.hooks)
    engagement = rng.choice(cfg.engagements)
    cta = rng.choice(cfg.ctas)

    tag_line: list[str] = []
    for tag in [*(hashtags or []), *rng.sample(cfg.hashtags, min(3, len(cfg.hashtags)))]:
        tag = _normalize_hashtag(tag)
        if tag not in tag_line:
            tag_line.append(tag)
    if include_ai_tags and AI_HASHTAG not in tag_line:
        tag_line.append(AI_HASHTAG)

    lead = f"{opener}\n\n{hook}..." if hook else opener
    platform = platform.upper()

    if platform == "YOUTUBE":
        parts = [lead, "", description or engagement, "", cta, "", " ".join(tag_line + ["#Shorts"])]
        if include_ai_tags:
            parts += ["", AI_NOTICE]
        title_words = [w for w in _WORD_RE.sub("", title.lower()).split() if len(w) > 3]
        tags = list(dict.fromkeys([*cfg.tags, *title_words[:3], "shorts"]))
        if include_ai_tags:
            tags.append("ai generated")
        return PlatformMetadata(
            title=title[:100],
            description="\n".join(parts)[:5000],
            tags=tags[:15],
            category_id=cfg.category_id,
            first_comment=f"{engagement} 👇",
        )

    if platform == "INSTAGRAM":
        parts = [lead, "", f"💬 {engagement}", "", cta, "", ".", ".", " ".join(tag_line + ["#Reels"])]
        return PlatformMetadata(
            title=title[:100],
            description="\n".join(parts)[:2200],
            first_comment=engagement,
        )

    # FACEBOOK and anything else: short and conversational
    parts = [lead, "", engagement, "", " ".join(tag_line[:5])]
    return PlatformMetadata(
        title=title[:100],
        description="\n".join(parts)[:5000],
        first_comment=cta,
    )

"""
Exception hierarchy shared by the scheduler, worker, assembler and poster.
"""
from __future__ import annotations


class ReelsmithError(Exception):
    """Base class for all domain errors."""


class ProviderError(ReelsmithError):
    """A script / speech / image provider failed."""


class ProviderNotFoundError(ProviderError):
    pass


class SpeechGenerationError(ProviderError):
    pass


class ImageGenerationError(ProviderError):
    pass


class GenerationError(ReelsmithError):
    """Malformed or inconsistent provider output detected by the worker."""


class MediaEngineError(ReelsmithError):
    """ffmpeg / ffprobe exited abnormally."""


class AssemblyError(MediaEngineError):
    """Inputs to the media assembler are unusable."""


class EnqueueError(ReelsmithError):
    pass


class PublishError(ReelsmithError):
    pass


def truncate_error(exc: BaseException | str, limit: int = 500) -> str:
    """Render an exception as a bounded, non-empty message."""
    if isinstance(exc, BaseException):
        text = str(exc).strip() or exc.__class__.__name__
    else:
        text = (exc or "").strip() or "Unknown error"
    if len(text) <= limit:
        return text
    return text[: limit - 1] + "…"

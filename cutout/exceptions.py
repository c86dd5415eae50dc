"""
Error taxonomy for the background removal pipeline.

Provider errors are recoverable (the fallback chain absorbs them); decode,
fast-tier and compositing errors fail the image they belong to.
"""

from __future__ import annotations

from typing import Optional


class CutoutError(Exception):
    """Base class for every error raised by the pipeline."""


class DecodeError(CutoutError):
    """Unreadable, oversized or unsupported input. Never retried."""

    def __init__(self, message: str, source_name: Optional[str] = None):
        super().__init__(message)
        self.source_name = source_name


class ProviderUnavailable(CutoutError):
    """An external mask provider failed to load or to run."""

    def __init__(self, message: str, provider: str = ""):
        super().__init__(message)
        self.provider = provider


class SegmentationTimeout(ProviderUnavailable):
    """A provider did not answer in time."""


class NoSubjectDetected(ProviderUnavailable):
    """A provider ran but found no person or subject in the image."""


class SegmentationError(CutoutError):
    """The terminal fast tier could not segment the image."""


class CompositingError(CutoutError):
    """The mask could not be applied to the image."""

"""
Ordered mask strategies, one per tier.

Each strategy answers `Ok(mask)` or `Degrade(reason)`. The chain walks from the
requested tier towards `fast`, which never degrades: it either returns a mask or
raises SegmentationError for the caller.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple, Union

from .contracts import TIER_ORDER, Tier
from .exceptions import ProviderUnavailable, SegmentationError
from .fast_segmenter import FastSegmenter
from .logging_setup import get_logger
from .postprocess import confidence_to_alpha
from .providers import MaskProvider, request_mask
from .raster import AlphaMask, Image

logger = get_logger(__name__)


@dataclass(frozen=True)
class Ok:
    mask: AlphaMask


@dataclass(frozen=True)
class Degrade:
    reason: str


TryResult = Union[Ok, Degrade]


@dataclass(frozen=True)
class Attempt:
    tier: Tier
    outcome: str  # "ok" or the degradation reason


class MaskStrategy:
    tier: Tier

    async def attempt(self, image: Image) -> TryResult:
        raise NotImplementedError


class ProviderStrategy(MaskStrategy):
    """Wrap a MaskProvider; provider errors and timeouts become Degrade."""

    def __init__(
        self,
        tier: Tier,
        provider: MaskProvider,
        load_timeout_s: Optional[float] = None,
        infer_timeout_s: Optional[float] = None,
    ):
        self.tier = tier
        self.provider = provider
        self.load_timeout_s = load_timeout_s
        self.infer_timeout_s = infer_timeout_s

    async def attempt(self, image: Image) -> TryResult:
        try:
            confidence = await request_mask(
                self.provider,
                image,
                load_timeout_s=self.load_timeout_s,
                infer_timeout_s=self.infer_timeout_s,
            )
        except ProviderUnavailable as e:
            return Degrade(f"{type(e).__name__}: {e}")
        try:
            alpha = await asyncio.to_thread(confidence_to_alpha, confidence)
        except (ValueError, TypeError) as e:
            return Degrade(f"{self.provider.name}: unusable confidence map ({type(e).__name__}: {e})")
        return Ok(AlphaMask(values=alpha))


class FastStrategy(MaskStrategy):
    """Self-contained segmentation; the terminal link of every chain."""

    tier = Tier.FAST

    def __init__(self, segmenter=None):
        self.segmenter = segmenter or FastSegmenter()

    async def attempt(self, image: Image) -> TryResult:
        try:
            mask = await asyncio.to_thread(self.segmenter.segment, image)
        except SegmentationError:
            raise
        except Exception as e:  # noqa: BLE001 - degenerate pixel data surfaces as numpy/cv2 errors
            raise SegmentationError(f"Fast segmentation failed ({type(e).__name__}: {e})") from e
        if not mask.matches(image):
            raise SegmentationError(
                f"Fast segmenter returned {mask.values.shape} for a {image.width}x{image.height} image"
            )
        return Ok(mask)


@dataclass
class ChainOutcome:
    mask: AlphaMask
    tier: Tier
    attempts: List[Attempt] = field(default_factory=list)

    @property
    def degradations(self) -> List[str]:
        return [f"{a.tier.value}: {a.outcome}" for a in self.attempts if a.outcome != "ok"]


class FallbackChain:
    def __init__(self, strategies: Sequence[MaskStrategy]):
        ordered = sorted(strategies, key=lambda s: TIER_ORDER.index(s.tier))
        if not ordered or ordered[-1].tier != Tier.FAST:
            raise ValueError("A fallback chain must end with the fast tier")
        self.strategies: Tuple[MaskStrategy, ...] = tuple(ordered)

    def links_from(self, tier: Tier) -> Tuple[MaskStrategy, ...]:
        start = TIER_ORDER.index(tier)
        return tuple(s for s in self.strategies if TIER_ORDER.index(s.tier) >= start)

    async def run(self, image: Image, tier: Tier, label: str = "") -> ChainOutcome:
        attempts: List[Attempt] = []
        for strategy in self.links_from(tier):
            result = await strategy.attempt(image)
            if isinstance(result, Ok):
                attempts.append(Attempt(strategy.tier, "ok"))
                return ChainOutcome(mask=result.mask, tier=strategy.tier, attempts=attempts)
            attempts.append(Attempt(strategy.tier, result.reason))
            logger.warning("%s: %s tier degraded (%s)", label or "image", strategy.tier.value, result.reason)
        raise SegmentationError(f"No strategy produced a mask starting from {tier.value}")

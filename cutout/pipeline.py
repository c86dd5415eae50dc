from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence

from .analyzer import analyze_and_recommend
from .composite import composite
from .config import get_fast_variant, get_max_workers, get_remote_endpoint
from .contracts import FeatureVector, Recommendation, Tier
from .exceptions import CutoutError, DecodeError
from .fallback import Attempt, FallbackChain, FastStrategy, MaskStrategy, ProviderStrategy
from .fast_segmenter import get_segmenter
from .io import decode_image, encode_png, load_image, mime_type_for_path, output_filename
from .logging_setup import get_logger
from .postprocess import TIER_REFINE_PARAMS, RefineParams, refine
from .providers import DeepMatteProvider, PersonSegmentationProvider, RemoteMaskProvider
from .raster import Image

logger = get_logger(__name__)


class PipelineState(str, Enum):
    IDLE = "idle"
    ACQUIRING_MASK = "acquiring_mask"
    FAILED = "failed"
    REFINING = "refining"
    COMPOSITING = "compositing"
    DONE = "done"


@dataclass(frozen=True)
class TierDecision:
    tier: Tier
    features: Optional[FeatureVector] = None  # set only when auto-selected
    reason: str = ""

    @classmethod
    def manual(cls, tier) -> "TierDecision":
        return cls(tier=Tier(tier))

    @classmethod
    def from_recommendation(cls, rec: Recommendation) -> "TierDecision":
        return cls(tier=rec.tier, features=rec.features, reason=rec.reason)


@dataclass
class ProcessingResult:
    image: Image
    decision: TierDecision
    source_name: str
    requested: TierDecision
    attempts: List[Attempt] = field(default_factory=list)

    @property
    def tier_used(self) -> Tier:
        return self.decision.tier

    @property
    def degradations(self) -> List[str]:
        return [f"{a.tier.value}: {a.outcome}" for a in self.attempts if a.outcome != "ok"]

    @property
    def output_filename(self) -> str:
        return output_filename(self.source_name)

    def to_png_bytes(self) -> bytes:
        return encode_png(self.image)


@dataclass(frozen=True)
class BatchInput:
    """An in-memory blob, or a path that is only read once a worker picks it up."""

    source_name: str
    mime_type: str = ""
    blob: Optional[bytes] = None
    declared_size: Optional[int] = None
    path: Optional[str] = None

    @classmethod
    def from_path(cls, path, source_name: Optional[str] = None) -> "BatchInput":
        p = Path(path)
        return cls(source_name=source_name or p.name, mime_type=mime_type_for_path(str(p)), path=str(p))

    @property
    def size_hint(self) -> Optional[int]:
        if self.declared_size is not None:
            return self.declared_size
        return len(self.blob) if self.blob is not None else None


@dataclass
class BatchItem:
    source_name: str
    result: Optional[ProcessingResult] = None
    error: Optional[CutoutError] = None

    @property
    def ok(self) -> bool:
        return self.result is not None


def build_default_strategies(fast_variant: Optional[str] = None) -> List[MaskStrategy]:
    """precise -> balanced -> fast, configured from the environment."""
    endpoint = get_remote_endpoint()
    precise_provider = RemoteMaskProvider(endpoint=endpoint) if endpoint else DeepMatteProvider()
    return [
        ProviderStrategy(Tier.PRECISE, precise_provider),
        ProviderStrategy(Tier.BALANCED, PersonSegmentationProvider()),
        FastStrategy(get_segmenter(fast_variant or get_fast_variant())),
    ]


class TierPipeline:
    """
    Per image:
      1) Decide tier (given, or analyzed)
      2) Acquire a raw mask through the fallback chain
      3) Refine it with the parameters of the tier that produced it
      4) Composite onto the source image
    """

    def __init__(
        self,
        strategies: Optional[Sequence[MaskStrategy]] = None,
        refine_params: Optional[Dict[Tier, RefineParams]] = None,
        crop: bool = False,
        max_workers: Optional[int] = None,
    ):
        self.chain = FallbackChain(strategies if strategies is not None else build_default_strategies())
        self.refine_params = dict(TIER_REFINE_PARAMS)
        if refine_params:
            self.refine_params.update(refine_params)
        self.crop = crop
        self.max_workers = max_workers or get_max_workers()

    @staticmethod
    def _transition(label: str, state: PipelineState, tier: Optional[Tier] = None) -> None:
        suffix = f" ({tier.value})" if tier else ""
        logger.debug("%s -> %s%s", label, state.value, suffix)

    async def decide(self, image: Image, file_size: Optional[int] = None) -> TierDecision:
        try:
            rec = await asyncio.to_thread(analyze_and_recommend, image, file_size)
        except Exception as e:  # noqa: BLE001 - analysis is advisory only
            logger.warning("Image analysis failed (%s); using balanced mode", e)
            return TierDecision(tier=Tier.BALANCED, reason="analysis failed")
        logger.info("%s", rec.reason)
        return TierDecision.from_recommendation(rec)

    async def process(
        self,
        image: Image,
        decision: Optional[TierDecision] = None,
        source_name: str = "image.png",
    ) -> ProcessingResult:
        self._transition(source_name, PipelineState.IDLE)
        if decision is None:
            decision = await self.decide(image)

        self._transition(source_name, PipelineState.ACQUIRING_MASK, decision.tier)
        outcome = await self.chain.run(image, decision.tier, label=source_name)
        for attempt in outcome.attempts:
            if attempt.outcome != "ok":
                self._transition(source_name, PipelineState.FAILED, attempt.tier)

        self._transition(source_name, PipelineState.REFINING, outcome.tier)
        alpha = await asyncio.to_thread(
            refine, outcome.mask.values, image.width, image.height, self.refine_params[outcome.tier]
        )

        self._transition(source_name, PipelineState.COMPOSITING, outcome.tier)
        out = await asyncio.to_thread(composite, image, alpha, self.crop)

        self._transition(source_name, PipelineState.DONE, outcome.tier)
        used = decision if outcome.tier == decision.tier else TierDecision(tier=outcome.tier)
        return ProcessingResult(
            image=out,
            decision=used,
            source_name=source_name,
            requested=decision,
            attempts=outcome.attempts,
        )

    async def process_bytes(
        self,
        blob: bytes,
        mime_type: str,
        source_name: str,
        decision: Optional[TierDecision] = None,
        declared_size: Optional[int] = None,
    ) -> ProcessingResult:
        image = await asyncio.to_thread(decode_image, blob, declared_size, mime_type, source_name)
        return await self.process(image, decision=decision, source_name=source_name)

    async def process_batch(
        self,
        items: Sequence[BatchInput],
        decision: Optional[TierDecision] = None,
        on_done: Optional[Callable[[BatchItem], None]] = None,
    ) -> List[BatchItem]:
        """
        Process independent images concurrently, at most max_workers at a time.

        Inputs are read and decoded inside the worker bound, so at most
        max_workers images are held in memory. Without a decision, items are
        decoded one by one until the first decodable image, which picks the tier
        for the whole batch. Every per-image failure is reported in the returned
        items (and to on_done); the rest of the batch keeps going.
        """
        out: List[Optional[BatchItem]] = [None] * len(items)
        start, first_image = 0, None

        if decision is None:
            for start, item in enumerate(items):
                try:
                    first_image = await self._load(item)
                except CutoutError as e:
                    logger.error("%s rejected: %s", item.source_name, e)
                    out[start] = self._report(BatchItem(source_name=item.source_name, error=e), on_done)
                    continue
                decision = await self.decide(first_image, file_size=item.size_hint)
                break
            else:
                return list(out)

        semaphore = asyncio.Semaphore(self.max_workers)

        async def _one(idx: int, image: Optional[Image]) -> None:
            item = items[idx]
            async with semaphore:
                try:
                    if image is None:
                        image = await self._load(item)
                    result = await self.process(image, decision=decision, source_name=item.source_name)
                    done = BatchItem(source_name=item.source_name, result=result)
                except CutoutError as e:
                    logger.error("%s failed: %s", item.source_name, e)
                    done = BatchItem(source_name=item.source_name, error=e)
                except Exception as e:  # noqa: BLE001 - one image never aborts the batch
                    logger.exception("%s failed unexpectedly", item.source_name)
                    error = CutoutError(f"Unexpected {type(e).__name__}: {e}")
                    error.__cause__ = e
                    done = BatchItem(source_name=item.source_name, error=error)
            out[idx] = self._report(done, on_done)

        jobs = [_one(i, first_image if i == start else None) for i in range(start, len(items))]
        first_image = None
        await asyncio.gather(*jobs)
        return list(out)

    async def _load(self, item: BatchInput) -> Image:
        if item.path is not None:
            return await asyncio.to_thread(load_image, item.path, item.source_name)
        if item.blob is None:
            raise DecodeError("Batch item has neither a blob nor a path", item.source_name)
        return await asyncio.to_thread(
            decode_image, item.blob, item.declared_size, item.mime_type, item.source_name
        )

    @staticmethod
    def _report(item: BatchItem, on_done: Optional[Callable[[BatchItem], None]]) -> BatchItem:
        if on_done is not None:
            try:
                on_done(item)
            except Exception:  # noqa: BLE001 - a reporting failure must not stop the batch
                logger.exception("on_done failed for %s", item.source_name)
        return item


def remove_background(
    blob: bytes,
    mime_type: str,
    source_name: str,
    tier: Optional[str] = None,
    pipeline: Optional[TierPipeline] = None,
) -> ProcessingResult:
    """Blocking one-shot helper for scripts and headless callers."""
    pipeline = pipeline or TierPipeline()
    decision = TierDecision.manual(tier) if tier else None
    return asyncio.run(pipeline.process_bytes(blob, mime_type, source_name, decision=decision, declared_size=len(blob)))

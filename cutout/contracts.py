from __future__ import annotations

from enum import Enum
from typing import List, Literal, Optional

from pydantic import BaseModel, Field

from .config import SKIN_RATIO_THRESHOLD


class Tier(str, Enum):
    FAST = "fast"
    BALANCED = "balanced"
    PRECISE = "precise"


# Highest quality first; the fallback chain only walks to the right.
TIER_ORDER = (Tier.PRECISE, Tier.BALANCED, Tier.FAST)


class ImageSize(BaseModel):
    width: int
    height: int
    file_size: Optional[int] = None


class FeatureVector(BaseModel):
    skin_ratio: float = Field(ge=0.0, le=1.0)
    color_variance: float = Field(ge=0.0, le=1.0)
    edge_density: float = Field(ge=0.0, le=1.0)
    texture_complexity: float = Field(ge=0.0, le=1.0)
    complexity: float = Field(ge=0.0, le=1.0)
    brightness: float = 0.0
    contrast: float = 0.0
    size: Optional[ImageSize] = None

    @property
    def has_human(self) -> bool:
        return self.skin_ratio > SKIN_RATIO_THRESHOLD


class Recommendation(BaseModel):
    features: FeatureVector
    tier: Tier
    reason: str


class ManifestRecord(BaseModel):
    """One line of the batch manifest."""

    source_image: str
    output_image: str = ""
    requested_tier: Optional[Tier] = None
    tier_used: Optional[Tier] = None
    status: Literal["done", "failed"]
    error: str = ""
    degradations: List[str] = Field(default_factory=list)

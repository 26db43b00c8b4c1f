"""
config.py - Compression settings, named presets and document size classes.

Presets are frozen values consumed by the encoder and never mutated.
Size categories are derived purely from page count and decide how many
pages are held in memory at once.
"""

import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Dict, Optional, Tuple

logger = logging.getLogger(__name__)

# Clamping ranges for CompressionConfig
MIN_QUALITY = 0.1
MAX_QUALITY = 1.0
MIN_TARGET_DPI = 48
MAX_TARGET_DPI = 600
MIN_IMAGE_DPI_FLOOR = 36

# Page-count boundaries between size categories
MEDIUM_PAGE_THRESHOLD = 20
LARGE_PAGE_THRESHOLD = 50
MASSIVE_PAGE_THRESHOLD = 200


@dataclass(frozen=True)
class CompressionConfig:
    """Immutable compression settings."""
    quality: float                  # 0.1 - 1.0, mapped onto JPEG quality
    target_resolution_dpi: int      # Render DPI for raster pages
    aggressive_mode: bool = False   # Stronger background blur
    use_layer_separation: bool = True
    min_image_dpi: int = 72         # Background is never scaled below this
    adaptive_background: bool = False
    name: str = "custom"

    def __post_init__(self):
        object.__setattr__(self, "quality", max(MIN_QUALITY, min(MAX_QUALITY, float(self.quality))))
        object.__setattr__(
            self,
            "target_resolution_dpi",
            int(max(MIN_TARGET_DPI, min(MAX_TARGET_DPI, self.target_resolution_dpi)))
        )
        object.__setattr__(self, "min_image_dpi", int(max(MIN_IMAGE_DPI_FLOOR, self.min_image_dpi)))

    @property
    def jpeg_quality(self) -> int:
        """Quality as a Pillow JPEG quality value (1-95)."""
        return max(1, min(95, int(round(self.quality * 100))))

    @property
    def cost(self) -> Tuple[float, int]:
        return self.quality, self.target_resolution_dpi

    @property
    def degraded(self) -> "CompressionConfig":
        return degraded(self)

    def with_overrides(self, **changes) -> "CompressionConfig":
        """Copy with some fields changed; the copy is no longer a named preset."""
        if "name" not in changes:
            changes["name"] = "custom"
        return replace(self, **changes)


# Named presets. Values are fixed; do not derive them.
ID_CARD = CompressionConfig(
    quality=0.7,
    target_resolution_dpi=200,
    aggressive_mode=False,
    use_layer_separation=False,  # Photos are not split into layers
    min_image_dpi=150,
    adaptive_background=False,
    name="id",
)

SMART = CompressionConfig(
    quality=0.6,
    target_resolution_dpi=150,
    aggressive_mode=False,
    use_layer_separation=True,
    min_image_dpi=100,
    adaptive_background=True,
    name="smart",
)

DOCUMENT = CompressionConfig(
    quality=0.5,
    target_resolution_dpi=150,
    aggressive_mode=False,
    use_layer_separation=True,
    min_image_dpi=100,
    adaptive_background=False,
    name="document",
)

RECEIPT = CompressionConfig(
    quality=0.4,
    target_resolution_dpi=100,
    aggressive_mode=True,
    use_layer_separation=True,
    min_image_dpi=72,
    adaptive_background=True,
    name="receipt",
)

ARCHIVE = CompressionConfig(
    quality=0.3,
    target_resolution_dpi=72,
    aggressive_mode=True,
    use_layer_separation=True,
    min_image_dpi=48,
    adaptive_background=True,
    name="archive",
)

PRESETS: Dict[str, CompressionConfig] = {
    preset.name: preset
    for preset in (ID_CARD, SMART, DOCUMENT, RECEIPT, ARCHIVE)
}

CHEAPEST_PRESET = ARCHIVE


def get_preset(name: str) -> CompressionConfig:
    """Look up a preset by name (case-insensitive)."""
    try:
        return PRESETS[name.lower()]
    except KeyError:
        raise ValueError(
            f"Unknown preset '{name}'. Available: {', '.join(PRESETS)}"
        ) from None


def _strictly_cheaper(candidate: CompressionConfig, config: CompressionConfig) -> bool:
    return (
        candidate.quality <= config.quality
        and candidate.target_resolution_dpi <= config.target_resolution_dpi
        and candidate.cost != config.cost
    )


def degraded(config: CompressionConfig) -> CompressionConfig:
    """
    Next cheaper preset for a retry after resource exhaustion.

    Picks the most expensive preset that is strictly cheaper than `config`
    in both quality and resolution. Repeated calls walk down to the
    cheapest preset, which degrades to itself.
    """
    cheaper = [p for p in PRESETS.values() if _strictly_cheaper(p, config)]
    if not cheaper:
        if config.cost != CHEAPEST_PRESET.cost:
            logger.debug(f"No preset cheaper than {config.name}; keeping it")
        return config
    return max(cheaper, key=lambda p: p.cost)


@dataclass(frozen=True)
class ProcessingStrategy:
    """How many pages may be held in memory at once."""
    kind: str
    size: Optional[int] = None

    IN_MEMORY = "in_memory"
    BATCHED = "batched"
    STREAMING = "streaming"

    def batch_size_for(self, page_count: int) -> int:
        if self.kind == self.IN_MEMORY:
            return max(1, page_count)
        if self.kind == self.STREAMING:
            return 1
        return self.size


class SizeCategory(Enum):
    SMALL = "small"      # < 20 pages - full preview
    MEDIUM = "medium"    # 20-49 pages - limited preview
    LARGE = "large"      # 50-199 pages - no preview, batched
    MASSIVE = "massive"  # 200+ pages - streaming only

    @classmethod
    def from_page_count(cls, page_count: int) -> "SizeCategory":
        if page_count < MEDIUM_PAGE_THRESHOLD:
            return cls.SMALL
        if page_count < LARGE_PAGE_THRESHOLD:
            return cls.MEDIUM
        if page_count < MASSIVE_PAGE_THRESHOLD:
            return cls.LARGE
        return cls.MASSIVE

    @property
    def processing_strategy(self) -> ProcessingStrategy:
        return _STRATEGIES[self]

    @property
    def thumbnail_limit(self) -> int:
        return _THUMBNAIL_LIMITS[self]

    @property
    def should_generate_thumbnails(self) -> bool:
        return self.thumbnail_limit > 0

    @property
    def status_message(self) -> str:
        return _STATUS_MESSAGES[self]

    @property
    def recommended_preset(self) -> CompressionConfig:
        """Preset to suggest before compressing; massive documents trade quality for speed."""
        return DOCUMENT if self is SizeCategory.MASSIVE else SMART


_STRATEGIES = {
    SizeCategory.SMALL: ProcessingStrategy(ProcessingStrategy.IN_MEMORY),
    SizeCategory.MEDIUM: ProcessingStrategy(ProcessingStrategy.BATCHED, 20),
    SizeCategory.LARGE: ProcessingStrategy(ProcessingStrategy.BATCHED, 10),
    SizeCategory.MASSIVE: ProcessingStrategy(ProcessingStrategy.STREAMING, 1),
}

_THUMBNAIL_LIMITS = {
    SizeCategory.SMALL: 50,
    SizeCategory.MEDIUM: 20,
    SizeCategory.LARGE: 0,
    SizeCategory.MASSIVE: 0,
}

_STATUS_MESSAGES = {
    SizeCategory.SMALL: "Processing...",
    SizeCategory.MEDIUM: "Medium document, optimizing...",
    SizeCategory.LARGE: "Large document, processing in memory-safe batches...",
    SizeCategory.MASSIVE: "Very large document, streaming page by page...",
}

"""
segmentation.py - Foreground/background layer separation for MRC compression.

Pipeline per page:
- Denoise to remove scanner speckle
- Text mask: grayscale -> unsharp mask -> local contrast -> fixed
  high-contrast binarization
- Background: strong Gaussian blur of the denoised page (text detail gone,
  colors kept)
- Mask clean-up: contrast + luminance sharpen
- Text coverage: sampled dark-pixel ratio of the mask

Output:
- Foreground mask: grayscale, dark = text, white = background
- Background: blurred page, same extent as the input
- text_coverage: fraction of sampled mask pixels below the dark cutoff

Never raises for transform problems: a missing or failing transform is
replaced by identity and reported in `fallback_steps`.
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Tuple

import numpy as np
import cv2

from .config import CompressionConfig
from .filters import FilterCache, identity
from .rasterize import Page

logger = logging.getLogger(__name__)

# Denoise
DENOISE_KERNEL = 3

# Text mask extraction
UNSHARP_AMOUNT = 1.5
UNSHARP_RADIUS = 2.0
BINARIZE_CONTRAST = 4.0
BINARIZE_BRIGHTNESS = -0.1

# Background blur radius
STANDARD_BLUR_RADIUS = 10.0
AGGRESSIVE_BLUR_RADIUS = 15.0

# Mask enhancement
MASK_CONTRAST = 1.8
MASK_SHARPNESS = 0.8

# Coverage sampling
MAX_COVERAGE_SAMPLES = 10_000
DARK_PIXEL_CUTOFF = 128

# Below this coverage the mask layer is dropped
SIGNIFICANT_TEXT_COVERAGE = 0.05

# Color detection
COLOR_CHROMA_THRESHOLD = 15     # Minimum chroma to be considered "color"
COLOR_PIXEL_THRESHOLD = 0.005   # 0.5% of pixels must have color


@dataclass
class LayerSet:
    """Layers of a single page, released once the page is encoded."""
    page_index: int
    foreground: np.ndarray          # Grayscale mask (0=text, 255=background)
    background: np.ndarray          # Blurred RGB or grayscale layer
    text_coverage: float            # Sampled dark-pixel ratio of the mask
    is_color: bool = True           # False if the background can be stored gray
    fallback_steps: Tuple[str, ...] = field(default_factory=tuple)
    dpi: float = 200.0              # Resolution of the foreground raster
    width_pts: Optional[float] = None
    height_pts: Optional[float] = None

    @property
    def page_size_pts(self) -> Tuple[float, float]:
        """Page bounds in points, derived from the raster if not given."""
        if self.width_pts is not None and self.height_pts is not None:
            return self.width_pts, self.height_pts
        height, width = self.foreground.shape[:2]
        return width * 72.0 / self.dpi, height * 72.0 / self.dpi

    @property
    def has_significant_text(self) -> bool:
        return self.text_coverage > SIGNIFICANT_TEXT_COVERAGE

    @property
    def degraded(self) -> bool:
        """True if any transform was replaced by identity for this page."""
        return bool(self.fallback_steps)


def _as_gray(image: np.ndarray) -> np.ndarray:
    # numpy-only so it still works when every cv2 transform has fallen back
    if image.ndim == 2:
        return image
    return image[..., :3].mean(axis=2).astype(np.uint8)


def sample_text_coverage(mask: np.ndarray) -> float:
    """
    Estimate the fraction of dark (text) pixels in a mask.

    Samples at most MAX_COVERAGE_SAMPLES pixels at a fixed stride instead of
    scanning the whole image. For multi-channel input only the first
    channel is read.
    """
    if mask.ndim == 3:
        mask = mask[..., 0]
    flat = mask.reshape(-1)
    total = flat.size
    if total == 0:
        return 0.0

    step = -(-total // MAX_COVERAGE_SAMPLES)  # ceil
    samples = flat[::step]
    dark = np.count_nonzero(samples < DARK_PIXEL_CUTOFF)
    return float(dark) / float(samples.size)


def detect_color(image: np.ndarray) -> bool:
    """
    Detect if image contains meaningful color.

    Rule: >0.5% of pixels must have chroma value above threshold.
    This catches colored logos, stamps, highlights, etc.
    """
    if image.ndim != 3 or image.shape[2] != 3:
        return False

    lab = cv2.cvtColor(image, cv2.COLOR_RGB2LAB)

    # a,b are centered at 128 in OpenCV's 8-bit LAB
    a = lab[:, :, 1].astype(np.float32) - 128
    b = lab[:, :, 2].astype(np.float32) - 128
    chroma = np.sqrt(a**2 + b**2)

    color_ratio = np.count_nonzero(chroma > COLOR_CHROMA_THRESHOLD) / (image.shape[0] * image.shape[1])
    is_color = color_ratio > COLOR_PIXEL_THRESHOLD
    logger.debug(f"Color detection: {color_ratio*100:.2f}% chromatic pixels, is_color={is_color}")
    return is_color


class LayerSeparator:
    """
    Splits a page raster into a text mask and a blurred background.

    Args:
        filters: Transform cache; a private one is created if omitted
        unsharp_amount: Edge-enhancing sharpen intensity for mask extraction
        unsharp_radius: Edge-enhancing sharpen radius for mask extraction
        on_fallback: Called with the transform name whenever a step runs
            as identity
    """

    def __init__(
        self,
        filters: Optional[FilterCache] = None,
        unsharp_amount: float = UNSHARP_AMOUNT,
        unsharp_radius: float = UNSHARP_RADIUS,
        on_fallback: Optional[Callable[[str], None]] = None
    ):
        self.filters = filters if filters is not None else FilterCache()
        self.unsharp_amount = unsharp_amount
        self.unsharp_radius = unsharp_radius
        self.on_fallback = on_fallback

    def separate(self, page: Page, config: CompressionConfig) -> LayerSet:
        fallbacks: List[str] = []

        clean = self._run("median_denoise", page.image, fallbacks, ksize=DENOISE_KERNEL)

        mask = self.extract_text_mask(clean, fallbacks)

        radius = AGGRESSIVE_BLUR_RADIUS if config.aggressive_mode else STANDARD_BLUR_RADIUS
        background = self._run("gaussian_blur", clean, fallbacks, radius=radius)

        foreground = _as_gray(self.enhance_text_mask(mask, fallbacks))
        coverage = sample_text_coverage(foreground)

        try:
            is_color = detect_color(clean)
        except Exception as e:
            logger.warning(f"Page {page.index}: color detection failed ({e}), keeping color")
            is_color = clean.ndim == 3

        if fallbacks:
            logger.warning(f"Page {page.index}: ran without {', '.join(fallbacks)}")

        logger.debug(
            f"Page {page.index}: coverage={coverage*100:.1f}%, "
            f"is_color={is_color}, blur={radius}"
        )

        return LayerSet(
            page_index=page.index,
            foreground=foreground,
            background=background,
            text_coverage=coverage,
            is_color=is_color,
            fallback_steps=tuple(fallbacks),
            dpi=page.dpi,
            width_pts=page.width_pts,
            height_pts=page.height_pts
        )

    def extract_text_mask(self, image: np.ndarray, fallbacks: List[str]) -> np.ndarray:
        gray = self._run("grayscale", image, fallbacks)
        sharpened = self._run(
            "unsharp_mask", gray, fallbacks,
            amount=self.unsharp_amount, radius=self.unsharp_radius
        )
        enhanced = self._run("local_contrast", sharpened, fallbacks)
        return self.binarize(enhanced, fallbacks)

    def binarize(self, image: np.ndarray, fallbacks: List[str]) -> np.ndarray:
        # Fixed contrast stretch + brightness shift; approximates a global threshold
        high_contrast = self._run(
            "color_controls", image, fallbacks,
            contrast=BINARIZE_CONTRAST, brightness=BINARIZE_BRIGHTNESS
        )
        return self._run("monochrome", high_contrast, fallbacks)

    def enhance_text_mask(self, mask: np.ndarray, fallbacks: List[str]) -> np.ndarray:
        contrasted = self._run("color_controls", mask, fallbacks, contrast=MASK_CONTRAST, brightness=0.0)
        return self._run("sharpen_luminance", contrasted, fallbacks, sharpness=MASK_SHARPNESS)

    def _run(self, name: str, image: np.ndarray, fallbacks: List[str], **params) -> np.ndarray:
        if self.filters.get(name) is identity:
            self._record_fallback(name, fallbacks)
            return image
        try:
            return self.filters.apply(name, image, **params)
        except Exception as e:
            logger.warning(f"Transform '{name}' failed: {e}; passing image through")
            self._record_fallback(name, fallbacks)
            return image

    def _record_fallback(self, name: str, fallbacks: List[str]):
        if name in fallbacks:
            return
        fallbacks.append(name)
        if self.on_fallback is not None:
            self.on_fallback(name)

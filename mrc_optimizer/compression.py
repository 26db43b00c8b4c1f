"""
compression.py - Per-layer page encoding.

Supports:
- Lossless 8-bit grayscale (Flate) for the text mask
- CCITT G4 (1-bit) for the text mask when requested
- JPEG for the background, with scale/quality picked from text coverage
- Single flattened JPEG (mask multiplied over background)
- Single-layer JPEG for pages that skip layer separation
"""

import io
import logging
import zlib
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import numpy as np
from PIL import Image
import cv2

from .config import CompressionConfig
from .rasterize import Page
from .segmentation import LayerSet

logger = logging.getLogger(__name__)

# Saturation threshold for grayscale conversion
# Only convert to grayscale if mean saturation is below this
GRAYSCALE_SATURATION_THRESHOLD = 10  # Out of 255

# Coverage tiers for the adaptive background
HIGH_COVERAGE_THRESHOLD = 0.3
LOW_COVERAGE_THRESHOLD = 0.1

# Background scale when not adaptive
FIXED_BACKGROUND_SCALE = 0.5

FLATE_LEVEL = 9


@dataclass(frozen=True)
class BackgroundSettings:
    """Downscale factor and quality (0-1) for the background JPEG."""
    scale: float
    quality: float

    @property
    def jpeg_quality(self) -> int:
        return max(1, min(95, int(round(self.quality * 100))))


# Text-dominated pages tolerate a much smaller, blurrier background
TEXT_HEAVY_BACKGROUND = BackgroundSettings(scale=0.35, quality=0.20)
MIXED_BACKGROUND = BackgroundSettings(scale=0.50, quality=0.30)
IMAGE_HEAVY_BACKGROUND = BackgroundSettings(scale=0.65, quality=0.40)


@dataclass
class EncodedLayer:
    """One encoded image stream, ready for PDF embedding."""
    data: bytes
    width: int
    height: int
    filter: str                     # DCTDecode, FlateDecode or CCITTFaxDecode
    colorspace: str                 # DeviceGray or DeviceRGB
    bits_per_component: int = 8
    decode_parms: Optional[Dict[str, Any]] = None
    decode: Optional[List[int]] = None

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass
class EncodedPage:
    """Encoded page: either foreground + background layers or one composite."""
    page_index: int
    width_pts: float
    height_pts: float
    foreground: Optional[EncodedLayer] = None
    background: Optional[EncodedLayer] = None
    composite: Optional[EncodedLayer] = None
    text_coverage: float = 0.0
    fallback_steps: Tuple[str, ...] = field(default_factory=tuple)

    @property
    def layered(self) -> bool:
        """Background layer present; the foreground is absent on text-free pages."""
        return self.background is not None

    @property
    def total_size(self) -> int:
        return sum(
            layer.size for layer in (self.foreground, self.background, self.composite)
            if layer is not None
        )


def select_background_settings(coverage: float, config: CompressionConfig) -> BackgroundSettings:
    """
    Pick background scale and quality.

    With `adaptive_background` the choice follows text coverage:
    > 0.3 most aggressive, 0.1-0.3 medium, < 0.1 mildest.
    Otherwise the config's quality is used at a fixed half scale.
    """
    if not config.adaptive_background:
        return BackgroundSettings(scale=FIXED_BACKGROUND_SCALE, quality=config.quality)
    if coverage > HIGH_COVERAGE_THRESHOLD:
        return TEXT_HEAVY_BACKGROUND
    if coverage >= LOW_COVERAGE_THRESHOLD:
        return MIXED_BACKGROUND
    return IMAGE_HEAVY_BACKGROUND


def floor_background_scale(scale: float, floor: float, adaptive: bool = True) -> float:
    """
    Keep a background scale at or above `floor` (the minimum-DPI ratio).

    A fixed scale is simply raised to the floor. Adaptive tier scales are
    remapped from [smallest tier, 1] onto [floor, 1] when the floor is above
    the smallest tier, so text-heavy pages still get the smaller background.
    """
    floor = min(1.0, floor)
    lowest = TEXT_HEAVY_BACKGROUND.scale
    if not adaptive or floor <= lowest:
        return min(1.0, max(scale, floor))
    return min(1.0, floor + (scale - lowest) * (1.0 - floor) / (1.0 - lowest))


def is_grayscale_image(image: np.ndarray) -> bool:
    """
    Check if image is effectively grayscale based on saturation.

    Only returns True if the entire page has very low saturation.
    Does NOT try to detect "color regions" or "photos".
    """
    if len(image.shape) != 3 or image.shape[2] != 3:
        return True  # Already grayscale

    hsv = cv2.cvtColor(image, cv2.COLOR_RGB2HSV)
    mean_saturation = np.mean(hsv[:, :, 1])

    is_gray = mean_saturation < GRAYSCALE_SATURATION_THRESHOLD
    logger.debug(f"Mean saturation: {mean_saturation:.1f}, is_grayscale: {is_gray}")

    return is_gray


def resize(image: np.ndarray, scale: float) -> np.ndarray:
    if scale >= 1.0:
        return image
    new_width = max(1, int(image.shape[1] * scale))
    new_height = max(1, int(image.shape[0] * scale))
    return cv2.resize(image, (new_width, new_height), interpolation=cv2.INTER_AREA)


def compress_lossless_gray(image: np.ndarray) -> EncodedLayer:
    """8-bit grayscale, Flate compressed. No chroma."""
    if image.ndim == 3:
        image = cv2.cvtColor(image, cv2.COLOR_RGB2GRAY)
    gray = np.ascontiguousarray(image, dtype=np.uint8)
    height, width = gray.shape

    return EncodedLayer(
        data=zlib.compress(gray.tobytes(), FLATE_LEVEL),
        width=width,
        height=height,
        filter="FlateDecode",
        colorspace="DeviceGray",
        bits_per_component=8
    )


def compress_1bit(image: np.ndarray) -> EncodedLayer:
    """
    Compress image as 1-bit black/white using CCITT G4 via img2pdf.

    Thresholds to B&W using Otsu's method, then uses img2pdf for
    proper CCITT G4 fax encoding. Falls back to packed bits + Flate.
    """
    if len(image.shape) == 3:
        gray = cv2.cvtColor(image, cv2.COLOR_RGB2GRAY)
    else:
        gray = np.ascontiguousarray(image)

    height, width = gray.shape
    logger.debug(f"compress_1bit: image size {width}x{height}")

    # Threshold to 1-bit using Otsu (0=black, 255=white)
    _, binary = cv2.threshold(gray, 0, 255, cv2.THRESH_BINARY + cv2.THRESH_OTSU)

    pil_img = Image.fromarray(binary).convert("1")

    try:
        import img2pdf
        import pikepdf

        tiff_buffer = io.BytesIO()
        pil_img.save(tiff_buffer, format="TIFF", compression="group4")
        pdf_bytes = img2pdf.convert(tiff_buffer.getvalue())

        # Pull the raw G4 stream and its decode parameters back out
        with pikepdf.open(io.BytesIO(pdf_bytes)) as temp_pdf:
            page = temp_pdf.pages[0]
            for _name, xobj in page.Resources.XObject.items():
                parms = xobj.get("/DecodeParms")
                decode = xobj.get("/Decode")
                return EncodedLayer(
                    data=xobj.read_raw_bytes(),
                    width=width,
                    height=height,
                    filter="CCITTFaxDecode",
                    colorspace="DeviceGray",
                    bits_per_component=1,
                    decode_parms={str(k): v for k, v in parms.items()} if parms is not None else None,
                    decode=[int(v) for v in decode] if decode is not None else None
                )
            logger.debug("compress_1bit: No XObject found in img2pdf output")
    except Exception as e:
        logger.warning(f"img2pdf G4 encoding failed: {e}")

    # Packed bits, 1=white; FlateDecode in the PDF
    packed = np.packbits(binary > 127, axis=1)
    return EncodedLayer(
        data=zlib.compress(packed.tobytes(), FLATE_LEVEL),
        width=width,
        height=height,
        filter="FlateDecode",
        colorspace="DeviceGray",
        bits_per_component=1
    )


def compress_jpeg(image: np.ndarray, quality: int = 15, force_gray: bool = False) -> EncodedLayer:
    """
    Compress image as JPEG.

    Args:
        image: RGB or grayscale numpy array
        quality: JPEG quality (1-95, lower = smaller)
        force_gray: Drop chroma even if the image has some color

    Returns:
        EncodedLayer with DCTDecode data
    """
    is_color = not force_gray and not is_grayscale_image(image)

    if len(image.shape) == 2:
        img = Image.fromarray(image)
        is_color = False
    elif not is_color:
        # Convert to grayscale since it's effectively gray anyway
        gray = cv2.cvtColor(image[:, :, :3], cv2.COLOR_RGB2GRAY)
        img = Image.fromarray(gray)
    else:
        img = Image.fromarray(np.ascontiguousarray(image[:, :, :3]))

    buffer = io.BytesIO()
    img.save(
        buffer,
        format="JPEG",
        quality=quality,
        optimize=True,
        subsampling=2  # 4:2:0 chroma subsampling
    )

    width, height = img.size
    return EncodedLayer(
        data=buffer.getvalue(),
        width=width,
        height=height,
        filter="DCTDecode",
        colorspace="DeviceRGB" if is_color else "DeviceGray",
        bits_per_component=8
    )


def multiply_blend(foreground: np.ndarray, background: np.ndarray) -> np.ndarray:
    """Dark mask pixels darken the background; white mask pixels leave it alone."""
    height, width = foreground.shape[:2]
    if background.shape[:2] != (height, width):
        background = cv2.resize(background, (width, height), interpolation=cv2.INTER_LINEAR)

    mask = foreground.astype(np.float32) / 255.0
    if mask.ndim == 3:
        mask = mask[..., :3].mean(axis=2)
    if background.ndim == 3:
        mask = mask[..., np.newaxis]

    return (background.astype(np.float32) * mask + 0.5).astype(np.uint8)


class AdaptiveEncoder:
    """
    Encodes separated layers.

    Args:
        use_g4: Binarize the text mask and encode it as CCITT G4
    """

    def __init__(self, use_g4: bool = False):
        self.use_g4 = use_g4

    def background_scale(self, layers: LayerSet, config: CompressionConfig) -> BackgroundSettings:
        settings = select_background_settings(layers.text_coverage, config)

        # Never go below the config's minimum image DPI
        floor = config.min_image_dpi / layers.dpi if layers.dpi > 0 else 1.0
        scale = floor_background_scale(settings.scale, floor, adaptive=config.adaptive_background)
        return BackgroundSettings(scale=scale, quality=settings.quality)

    def encode(self, layers: LayerSet, config: CompressionConfig) -> EncodedPage:
        # Pages without meaningful text ship the background alone
        foreground = None
        if layers.has_significant_text:
            if self.use_g4:
                foreground = compress_1bit(layers.foreground)
            else:
                foreground = compress_lossless_gray(layers.foreground)

        settings = self.background_scale(layers, config)
        background = compress_jpeg(
            resize(layers.background, settings.scale),
            quality=settings.jpeg_quality,
            force_gray=not layers.is_color
        )

        fg_info = f"{foreground.size:,} bytes ({foreground.filter})" if foreground else "skipped"
        logger.info(
            f"Page {layers.page_index}: fg {fg_info} | "
            f"bg {background.size:,} bytes @ {settings.scale:.2f}x q={settings.jpeg_quality} | "
            f"coverage={layers.text_coverage*100:.1f}%"
        )

        width_pts, height_pts = layers.page_size_pts
        return EncodedPage(
            page_index=layers.page_index,
            width_pts=width_pts,
            height_pts=height_pts,
            foreground=foreground,
            background=background,
            text_coverage=layers.text_coverage,
            fallback_steps=layers.fallback_steps
        )

    def recompose(self, layers: LayerSet, config: CompressionConfig) -> bytes:
        """Flatten the layers into one JPEG."""
        blended = multiply_blend(layers.foreground, layers.background)
        return compress_jpeg(blended, quality=config.jpeg_quality).data

    def recompose_page(self, layers: LayerSet, config: CompressionConfig) -> EncodedPage:
        blended = multiply_blend(layers.foreground, layers.background)
        composite = compress_jpeg(blended, quality=config.jpeg_quality)
        width_pts, height_pts = layers.page_size_pts
        return EncodedPage(
            page_index=layers.page_index,
            width_pts=width_pts,
            height_pts=height_pts,
            composite=composite,
            text_coverage=layers.text_coverage,
            fallback_steps=layers.fallback_steps
        )

    def encode_single(self, page: Page, config: CompressionConfig) -> EncodedPage:
        """Whole-page JPEG, for configs that skip layer separation."""
        scale = 1.0
        if page.dpi > config.target_resolution_dpi:
            scale = max(config.target_resolution_dpi, config.min_image_dpi) / page.dpi

        composite = compress_jpeg(resize(page.image, scale), quality=config.jpeg_quality)

        logger.info(
            f"Page {page.index}: {composite.size:,} bytes | "
            f"{composite.width}x{composite.height} | {composite.colorspace} | q={config.jpeg_quality}"
        )

        return EncodedPage(
            page_index=page.index,
            width_pts=page.width_pts,
            height_pts=page.height_pts,
            composite=composite
        )

"""
rasterize.py - Page sources: PDF pages via PyMuPDF, raster images via Pillow.

Sources follow an acquire/read/release pattern: pages can only be read
inside `with source.open():`, and each page is rendered on demand so only
the pages of the current batch are held in memory.
"""

import logging
import math
import os
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, List, Optional

import numpy as np
from PIL import Image, UnidentifiedImageError
try:
    import fitz  # pip install pymupdf
except ImportError:
    import pymupdf as fitz  # apt install python3-pymupdf

from .errors import AccessDeniedError, EncryptedInputError, InvalidInputError

logger = logging.getLogger(__name__)

PDF_SUFFIXES = {".pdf"}
IMAGE_SUFFIXES = {".jpg", ".jpeg", ".png", ".tif", ".tiff", ".bmp", ".webp"}

MIN_RENDER_DPI = 36
MAX_RENDER_DPI = 600
MAX_PAGE_MEGAPIXELS = 80   # Caps render DPI for oversized pages
DEFAULT_IMAGE_DPI = 200    # Assumed when an image carries no DPI metadata


@dataclass(frozen=True)
class Page:
    """A rasterized source page. The pixel buffer is read-only."""
    index: int
    image: np.ndarray       # RGB or grayscale uint8
    width_pts: float        # Page bounds in PDF points (1/72 inch)
    height_pts: float
    dpi: float              # Resolution the raster was produced at
    source_path: Optional[Path] = None

    def __post_init__(self):
        self.image.flags.writeable = False

    @property
    def pixel_count(self) -> int:
        return int(self.image.shape[0] * self.image.shape[1])


def check_readable(path: Path):
    if not path.exists():
        raise InvalidInputError(f"File not found: {path}", reason="missing")
    if not os.access(path, os.R_OK):
        raise AccessDeniedError(f"Cannot read {path}")
    if path.stat().st_size == 0:
        raise InvalidInputError(f"File is empty: {path}", reason="empty")


def cap_dpi_for_page(width_pts: float, height_pts: float, dpi: float,
                     max_megapixels: int = MAX_PAGE_MEGAPIXELS) -> float:
    """Lower the DPI so a page never renders above `max_megapixels`."""
    px = (width_pts * dpi / 72.0) * (height_pts * dpi / 72.0)
    max_px = max_megapixels * 1_000_000
    if px <= max_px:
        return dpi
    scale = math.sqrt(max_px / px)
    return max(MIN_RENDER_DPI, int(dpi * scale))


class PdfSource:
    """
    Renders PDF pages on demand.

    Args:
        path: PDF to read
        dpi: Target render DPI (clamped to 36-600, capped for huge pages)
        password: Used when the PDF is encrypted
    """

    kind = "pdf"

    def __init__(self, path: Path, dpi: float = 200, password: Optional[str] = None):
        self.path = Path(path)
        self.dpi = max(MIN_RENDER_DPI, min(dpi, MAX_RENDER_DPI))
        self.password = password
        self._doc = None

    @contextmanager
    def open(self) -> Iterator["PdfSource"]:
        check_readable(self.path)
        try:
            doc = fitz.open(self.path)
        except PermissionError as e:
            raise AccessDeniedError(f"Cannot open {self.path}: {e}") from e
        except Exception as e:
            raise InvalidInputError(f"Not a readable PDF: {self.path} ({e})") from e

        try:
            if doc.needs_pass and not (self.password and doc.authenticate(self.password)):
                raise EncryptedInputError(f"{self.path.name} is password protected")
            if len(doc) == 0:
                raise InvalidInputError(f"{self.path.name} has no pages", reason="empty")

            self._doc = doc
            logger.debug(f"Opened {self.path.name}: {len(doc)} pages")
            yield self
        finally:
            self._doc = None
            doc.close()

    def _require_open(self):
        if self._doc is None:
            raise RuntimeError("Source is not open; use 'with source.open():'")
        return self._doc

    def page_count(self) -> int:
        return len(self._require_open())

    def page(self, index: int) -> Page:
        """
        Rasterize a single PDF page to an RGB image.

        Args:
            index: 0-indexed page number

        Returns:
            Page holding the RGB raster and the page bounds in points
        """
        doc = self._require_open()
        pdf_page = doc[index]

        rect = pdf_page.rect
        dpi = cap_dpi_for_page(rect.width, rect.height, self.dpi)

        # 72 DPI is PDF default
        zoom = dpi / 72.0
        pixmap = pdf_page.get_pixmap(matrix=fitz.Matrix(zoom, zoom), alpha=False)

        image = np.frombuffer(pixmap.samples, dtype=np.uint8).reshape(
            pixmap.height, pixmap.width, pixmap.n
        ).copy()  # Copy to own the memory
        if pixmap.n == 1:
            image = image[:, :, 0]

        logger.debug(f"Rasterized page {index}: {pixmap.width}x{pixmap.height} @ {dpi} DPI")

        return Page(
            index=index,
            image=image,
            width_pts=rect.width,
            height_pts=rect.height,
            dpi=dpi,
            source_path=self.path
        )


class ImageSource:
    """Reads a raster image; multi-frame TIFFs are treated as pages."""

    kind = "image"

    def __init__(self, path: Path, default_dpi: float = DEFAULT_IMAGE_DPI):
        self.path = Path(path)
        self.default_dpi = default_dpi
        self._image = None
        self._frames = 0

    @contextmanager
    def open(self) -> Iterator["ImageSource"]:
        check_readable(self.path)
        try:
            img = Image.open(self.path)
        except PermissionError as e:
            raise AccessDeniedError(f"Cannot open {self.path}: {e}") from e
        except UnidentifiedImageError as e:
            raise InvalidInputError(f"Unsupported image: {self.path}", reason="unsupported") from e
        except OSError as e:
            raise InvalidInputError(f"Not a readable image: {self.path} ({e})") from e

        try:
            self._image = img
            self._frames = getattr(img, "n_frames", 1)
            yield self
        finally:
            self._image = None
            img.close()

    def page_count(self) -> int:
        if self._image is None:
            raise RuntimeError("Source is not open; use 'with source.open():'")
        return self._frames

    def page(self, index: int) -> Page:
        if self._image is None:
            raise RuntimeError("Source is not open; use 'with source.open():'")
        if not 0 <= index < self._frames:
            raise IndexError(f"Page {index} out of range")

        self._image.seek(index)
        frame = self._image
        dpi = float(frame.info.get("dpi", (self.default_dpi,))[0] or self.default_dpi)

        if frame.mode in ("1", "L", "I;16", "I"):
            converted = frame.convert("L")
        else:
            converted = frame.convert("RGB")
        image = np.array(converted)

        width, height = converted.size
        return Page(
            index=index,
            image=image,
            width_pts=width * 72.0 / dpi,
            height_pts=height * 72.0 / dpi,
            dpi=dpi,
            source_path=self.path
        )


def open_source(path: Path, dpi: float = 200, password: Optional[str] = None):
    """Pick a page source by file suffix."""
    path = Path(path)
    suffix = path.suffix.lower()
    if suffix in PDF_SUFFIXES:
        return PdfSource(path, dpi=dpi, password=password)
    if suffix in IMAGE_SUFFIXES:
        return ImageSource(path)
    raise InvalidInputError(f"Unsupported file type: {path.suffix}", reason="unsupported")


def get_page_count(path: Path) -> int:
    """Get total page count."""
    source = open_source(path)
    with source.open():
        return source.page_count()


def generate_thumbnails(path: Path, limit: int, max_size: int = 150) -> List[Image.Image]:
    """
    Render small previews for the first `limit` pages.

    Pages are rendered one at a time, so memory stays bounded by `limit`.
    """
    path = Path(path)
    if limit <= 0:
        return []

    thumbnails = []
    if path.suffix.lower() in PDF_SUFFIXES:
        check_readable(path)
        with fitz.open(path) as doc:
            for index in range(min(len(doc), limit)):
                page = doc[index]
                rect = page.rect
                zoom = min(max_size / rect.width, max_size / rect.height)
                pix = page.get_pixmap(matrix=fitz.Matrix(zoom, zoom), alpha=False)
                thumb = Image.frombytes("RGB", (pix.width, pix.height), pix.samples)
                # Pixmap sizes round outward; trim to the box
                thumb.thumbnail((max_size, max_size))
                thumbnails.append(thumb)
    else:
        source = ImageSource(path)
        with source.open():
            for index in range(min(source.page_count(), limit)):
                thumb = Image.fromarray(source.page(index).image).convert("RGB")
                thumb.thumbnail((max_size, max_size))
                thumbnails.append(thumb)

    logger.debug(f"Generated {len(thumbnails)} thumbnails for {path.name}")
    return thumbnails

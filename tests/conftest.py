import io
from contextlib import contextmanager
from pathlib import Path

import cv2
import numpy as np
import pytest
from PIL import Image

try:
    import fitz
except ImportError:
    import pymupdf as fitz

from mrc_optimizer.rasterize import Page


def make_scan_image(width: int = 425, height: int = 550, seed: int = 0) -> np.ndarray:
    """Off-white page with dark text lines, a dark red stamp and scanner noise.

    Text covers roughly a tenth of the page, well above the level where the
    mask layer is dropped.
    """
    rng = np.random.default_rng(seed)
    img = np.full((height, width, 3), 245, np.uint8)
    cv2.rectangle(img, (20, 20), (200, 100), (120, 20, 20), -1)
    for row in range(8):
        cv2.putText(
            img, f"Invoice line {row} total 12.{row}0", (20, 140 + row * 50),
            cv2.FONT_HERSHEY_SIMPLEX, 0.8, (20, 20, 20), 2
        )
    noise = rng.normal(0, 6, img.shape)
    return np.clip(img.astype(np.float64) + noise, 0, 255).astype(np.uint8)


def make_page(image: np.ndarray, index: int = 0, dpi: float = 100.0) -> Page:
    height, width = image.shape[:2]
    return Page(
        index=index,
        image=image,
        width_pts=width * 72.0 / dpi,
        height_pts=height * 72.0 / dpi,
        dpi=dpi
    )


def write_scan_pdf(path: Path, pages: int = 3, text: str = None, **save_kwargs) -> Path:
    """PDF whose pages are each one embedded scan image (plus optional real text)."""
    doc = fitz.open()
    for i in range(pages):
        page = doc.new_page(width=612, height=792)
        buf = io.BytesIO()
        Image.fromarray(make_scan_image(seed=i)).save(buf, format="PNG")
        page.insert_image(page.rect, stream=buf.getvalue())
        if text:
            page.insert_text((72, 72), text, fontsize=14)
    doc.save(path, **save_kwargs)
    doc.close()
    return path


def write_text_pdf(path: Path, pages: int = 1) -> Path:
    """Tiny vector-only PDF; rasterizing it can only make it bigger."""
    doc = fitz.open()
    for i in range(pages):
        page = doc.new_page(width=612, height=792)
        page.insert_text((72, 72), f"Page {i}", fontsize=12)
    doc.save(path, garbage=4, deflate=True)
    doc.close()
    return path


class FakeSource:
    """In-memory page source; pages are small gray rasters filled with their index."""

    kind = "fake"

    def __init__(self, pages: int, unreadable=(), size=(30, 40)):
        self.pages = pages
        self.unreadable = set(unreadable)
        self.size = size
        self.is_open = False
        self.read = []

    @contextmanager
    def open(self):
        self.is_open = True
        try:
            yield self
        finally:
            self.is_open = False

    def page_count(self) -> int:
        assert self.is_open
        return self.pages

    def page(self, index: int) -> Page:
        assert self.is_open
        self.read.append(index)
        if index in self.unreadable:
            raise OSError(f"cannot decode page {index}")
        image = np.full(self.size, index % 256, np.uint8)
        return make_page(image, index=index, dpi=72.0)


class RecordingSink:
    """Records what the scheduler appends, in order."""

    def __init__(self, flattened: bool = False):
        self.flattened = flattened
        self.entries = []

    def append_page(self, encoded):
        self.entries.append(("encoded", encoded.page_index))

    def append_original(self, page):
        self.entries.append(("original", page.index))

    def append_source_page(self, index):
        self.entries.append(("source", index))

    def to_bytes(self) -> bytes:
        return b""

    def close(self):
        pass


class FakeClock:
    """Monotonic clock whose sleep just advances time."""

    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float):
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def scan_image():
    return make_scan_image()


@pytest.fixture
def scan_page(scan_image):
    return make_page(scan_image, dpi=100.0)


@pytest.fixture
def scan_pdf(tmp_path):
    return write_scan_pdf(tmp_path / "scan.pdf", pages=3)


@pytest.fixture
def fake_clock():
    return FakeClock()

"""
pdf_writer.py - Output assembly from encoded pages.

Supports:
- MRC pages: JPEG background + mask image multiplied over it
- Single-image pages (JPEG, Flate, CCITT G4)
- Unmodified source pages copied over when a page could not be compressed
- OCR text layer extraction and re-rendering with standard fonts
- Flattened raster output (JPEG/PNG/TIFF) for image inputs

Sinks only produce bytes; writing them to disk is the AtomicFileWriter's job.
"""

import io
import logging
import os
import tempfile
import zlib
from pathlib import Path
from typing import List, Optional, Tuple

import numpy as np
import pikepdf
from pikepdf import Pdf, Stream, Dictionary, Name, Array
from PIL import Image

try:
    import fitz  # PyMuPDF
except ImportError:
    import pymupdf as fitz

from .compression import EncodedLayer, EncodedPage
from .errors import AccessDeniedError, InvalidInputError, PageFailureError
from .rasterize import Page, PDF_SUFFIXES

logger = logging.getLogger(__name__)

IMAGE_FORMATS = {
    ".jpg": "JPEG",
    ".jpeg": "JPEG",
    ".png": "PNG",
    ".tif": "TIFF",
    ".tiff": "TIFF",
}


class PdfSink:
    """
    Assembles encoded pages into a PDF.

    Optionally copies untouched pages from, and extracts OCR text out of,
    the original PDF.
    """

    flattened = False

    def __init__(
        self,
        original_pdf: Optional[Path] = None,
        preserve_text: bool = True,
        password: Optional[str] = None
    ):
        """
        Args:
            original_pdf: Source PDF for page substitution and OCR text
            preserve_text: Re-render the source's text as an invisible layer
            password: Unlocks an encrypted original
        """
        self.pdf = Pdf.new()
        self.original_pdf_path = None
        self.preserve_text = False
        self._fitz_doc = None
        self._source_pdf = None
        self.password = password

        if original_pdf is not None and Path(original_pdf).suffix.lower() in PDF_SUFFIXES:
            self.original_pdf_path = Path(original_pdf)
            if preserve_text:
                try:
                    self._fitz_doc = fitz.open(self.original_pdf_path)
                    if self._fitz_doc.needs_pass and password:
                        self._fitz_doc.authenticate(password)
                    self.preserve_text = True
                    logger.debug(f"Opened original PDF for OCR extraction: {original_pdf}")
                except Exception as e:
                    logger.warning(f"Could not open original PDF for OCR: {e}")

    @property
    def page_count(self) -> int:
        return len(self.pdf.pages)

    def _image_stream(self, layer: EncodedLayer) -> Stream:
        image_dict = Dictionary({
            '/Type': Name.XObject,
            '/Subtype': Name.Image,
            '/Width': layer.width,
            '/Height': layer.height,
            '/ColorSpace': Name('/' + layer.colorspace),
            '/BitsPerComponent': layer.bits_per_component,
            '/Filter': Name('/' + layer.filter),
        })
        if layer.decode_parms:
            image_dict['/DecodeParms'] = Dictionary(layer.decode_parms)
        if layer.decode:
            image_dict['/Decode'] = Array(layer.decode)
        return self.pdf.make_indirect(Stream(self.pdf, layer.data, image_dict))

    def append_page(self, encoded: EncodedPage):
        """Add an encoded page, optionally preserving OCR."""
        self.pdf.add_blank_page(page_size=(encoded.width_pts, encoded.height_pts))
        page = self.pdf.pages[-1]

        w, h = encoded.width_pts, encoded.height_pts
        xobjects = Dictionary({})
        resources = Dictionary({'/XObject': xobjects})

        if encoded.layered:
            xobjects['/Im0'] = self._image_stream(encoded.background)
            image_content = f"q\n{w:.4f} 0 0 {h:.4f} 0 0 cm\n/Im0 Do\nQ"
            if encoded.foreground is not None:
                xobjects['/Im1'] = self._image_stream(encoded.foreground)
                # Mask is multiplied over the background: dark text shows, white vanishes
                resources['/ExtGState'] = Dictionary({
                    '/GS0': Dictionary({'/Type': Name.ExtGState, '/BM': Name.Multiply})
                })
                image_content += f"\nq\n/GS0 gs\n{w:.4f} 0 0 {h:.4f} 0 0 cm\n/Im1 Do\nQ"
        elif encoded.composite is not None:
            xobjects['/Im0'] = self._image_stream(encoded.composite)
            image_content = f"q\n{w:.4f} 0 0 {h:.4f} 0 0 cm\n/Im0 Do\nQ"
        else:
            raise ValueError(f"Page {encoded.page_index} has no image data")

        ocr_content = ""
        if self.preserve_text and self._fitz_doc is not None:
            try:
                if encoded.page_index < len(self._fitz_doc):
                    ocr_content = self._extract_text_as_helvetica(encoded.page_index, w, h)
            except Exception as e:
                logger.debug(f"Could not extract OCR from page {encoded.page_index}: {e}")

        if ocr_content:
            # Use built-in Helvetica (no embedding needed)
            resources['/Font'] = Dictionary({
                '/F1': Dictionary({
                    '/Type': Name.Font,
                    '/Subtype': Name.Type1,
                    '/BaseFont': Name.Helvetica,
                    '/Encoding': Name.WinAnsiEncoding,
                })
            })
        page.Resources = resources

        full_content = image_content
        if ocr_content:
            full_content = full_content + "\n" + ocr_content

        page.Contents = self.pdf.make_indirect(
            Stream(self.pdf, full_content.encode("latin-1", errors="replace"))
        )

        mode = "MRC" if encoded.layered else encoded.composite.colorspace
        ocr_status = "+OCR" if ocr_content else ""
        logger.debug(
            f"Added page {encoded.page_index}: "
            f"{encoded.total_size:,} bytes ({mode}{ocr_status})"
        )

    def _open_source_pdf(self):
        if self._source_pdf is None:
            if self.original_pdf_path is None:
                return None
            self._source_pdf = pikepdf.open(self.original_pdf_path, password=self.password or "")
        return self._source_pdf

    def append_source_page(self, index: int):
        """Copy page `index` of the original PDF unchanged."""
        source = self._open_source_pdf()
        if source is None:
            raise PageFailureError(index, f"No original document to copy page {index} from")
        self.pdf.pages.append(source.pages[index])
        logger.debug(f"Copied original page {index}")

    def append_original(self, page: Page):
        """Substitute the unmodified page for a failed one."""
        if self.original_pdf_path is not None:
            self.append_source_page(page.index)
            return

        # Image input: embed the raster losslessly
        image = np.ascontiguousarray(page.image)
        if image.ndim == 3:
            colorspace, height, width = "DeviceRGB", image.shape[0], image.shape[1]
        else:
            colorspace, (height, width) = "DeviceGray", image.shape
        raw = EncodedLayer(
            data=zlib.compress(image.tobytes(), 6),
            width=width,
            height=height,
            filter="FlateDecode",
            colorspace=colorspace
        )
        self.append_page(EncodedPage(
            page_index=page.index,
            width_pts=page.width_pts,
            height_pts=page.height_pts,
            composite=raw
        ))

    def _extract_text_as_helvetica(
        self,
        page_num: int,
        page_width: float,
        page_height: float
    ) -> str:
        """
        Extract text from original PDF and generate invisible Helvetica text layer.

        Uses PyMuPDF to get text with positions, then creates PDF content
        stream with invisible text (render mode 3) using Helvetica font.
        """
        fitz_page = self._fitz_doc[page_num]
        text_dict = fitz_page.get_text("dict", flags=fitz.TEXT_PRESERVE_WHITESPACE)

        content_parts = ["BT", "3 Tr", "/F1 1 Tf"]  # Invisible, size set via Tm

        orig_rect = fitz_page.rect
        scale_x = page_width / orig_rect.width if orig_rect.width > 0 else 1
        scale_y = page_height / orig_rect.height if orig_rect.height > 0 else 1

        span_count = 0
        for block in text_dict.get("blocks", []):
            if block.get("type") != 0:  # Skip non-text blocks
                continue

            for line in block.get("lines", []):
                for span in line.get("spans", []):
                    text = span.get("text", "").strip()
                    if not text:
                        continue

                    bbox = span.get("bbox", [0, 0, 0, 0])
                    x = bbox[0] * scale_x
                    # PDF y-origin is bottom, fitz is top
                    y = page_height - (bbox[3] * scale_y)
                    size = span.get("size", 10) * scale_y

                    content_parts.append(
                        f"{size:.1f} 0 0 {size:.1f} {x:.1f} {y:.1f} Tm ({escape_pdf_text(text)}) Tj"
                    )
                    span_count += 1

        content_parts.append("ET")

        if span_count == 0:
            return ""

        logger.debug(f"Page {page_num}: extracted {span_count} text spans")
        return "\n".join(content_parts)

    def close(self):
        if self._fitz_doc is not None:
            self._fitz_doc.close()
            self._fitz_doc = None
        if self._source_pdf is not None:
            self._source_pdf.close()
            self._source_pdf = None

    def to_bytes(self) -> bytes:
        """Serialize the PDF. Releases the source documents."""
        buffer = io.BytesIO()
        self.pdf.save(
            buffer,
            compress_streams=True,
            object_stream_mode=pikepdf.ObjectStreamMode.generate,
            deterministic_id=True
        )
        self.close()
        logger.info(f"Assembled {self.page_count} pages, {buffer.tell():,} bytes")
        return buffer.getvalue()


def escape_pdf_text(text: str) -> str:
    """Escape special characters for PDF string literal."""
    result = text.replace("\\", "\\\\").replace("(", "\\(").replace(")", "\\)")
    # Replace characters outside WinAnsiEncoding with space
    return "".join(c if ord(c) < 256 else " " for c in result)


class ImageSink:
    """
    Collects flattened pages for raster output.

    A single page is written in the requested format; several pages need
    TIFF.
    """

    flattened = True

    def __init__(self, image_format: str = "JPEG", quality: int = 75):
        self.image_format = image_format.upper()
        self.quality = quality
        self._pages: List[Tuple[str, bytes]] = []   # (PIL format, encoded bytes)

    @classmethod
    def for_path(cls, destination: Path, quality: int = 75) -> "ImageSink":
        try:
            image_format = IMAGE_FORMATS[Path(destination).suffix.lower()]
        except KeyError:
            raise InvalidInputError(
                f"Unsupported output type: {Path(destination).suffix}", reason="unsupported"
            ) from None
        return cls(image_format, quality=quality)

    @property
    def page_count(self) -> int:
        return len(self._pages)

    def append_page(self, encoded: EncodedPage):
        if encoded.composite is None or encoded.composite.filter != "DCTDecode":
            raise ValueError(f"Page {encoded.page_index} is not a flattened JPEG page")
        self._pages.append(("JPEG", encoded.composite.data))

    def append_original(self, page: Page):
        buffer = io.BytesIO()
        Image.fromarray(np.ascontiguousarray(page.image)).save(buffer, format="PNG")
        self._pages.append(("PNG", buffer.getvalue()))

    def append_source_page(self, index: int):
        raise PageFailureError(index, f"Page {index} could not be read from the source image")

    def close(self):
        self._pages.clear()

    def to_bytes(self) -> bytes:
        if not self._pages:
            raise ValueError("No pages to write")

        if len(self._pages) == 1:
            kind, data = self._pages[0]
            if kind == self.image_format:
                return data
            img = Image.open(io.BytesIO(data))
            buffer = io.BytesIO()
            if self.image_format == "JPEG":
                img.convert("RGB" if img.mode not in ("L", "RGB") else img.mode).save(
                    buffer, format="JPEG", quality=self.quality, optimize=True
                )
            else:
                img.save(buffer, format=self.image_format)
            return buffer.getvalue()

        if self.image_format != "TIFF":
            raise InvalidInputError(
                f"{len(self._pages)} pages cannot be written as {self.image_format}; use .tif or .pdf",
                reason="unsupported"
            )

        frames = [Image.open(io.BytesIO(data)) for _, data in self._pages]
        buffer = io.BytesIO()
        frames[0].save(
            buffer,
            format="TIFF",
            save_all=True,
            append_images=frames[1:],
            compression="tiff_deflate"
        )
        return buffer.getvalue()


class AtomicFileWriter:
    """
    Writes finished bytes to a destination all-or-nothing.

    Data goes to a temp file in the destination directory, is size-checked,
    then renamed over the destination. On any failure the temp file is
    removed and the error propagates.
    """

    def write(self, data: bytes, destination: Path) -> Path:
        destination = Path(destination)
        directory = destination.parent
        directory.mkdir(parents=True, exist_ok=True)

        try:
            fd, tmp_name = tempfile.mkstemp(prefix=f".{destination.name}.", suffix=".tmp", dir=directory)
        except PermissionError as e:
            raise AccessDeniedError(f"Cannot write to {directory}: {e}") from e

        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())

            written = tmp_path.stat().st_size
            if written != len(data):
                raise OSError(f"Short write: {written} of {len(data)} bytes")

            os.replace(tmp_path, destination)
        except PermissionError as e:
            tmp_path.unlink(missing_ok=True)
            raise AccessDeniedError(f"Cannot write {destination}: {e}") from e
        except BaseException:
            tmp_path.unlink(missing_ok=True)
            raise

        logger.debug(f"Wrote {len(data):,} bytes to {destination}")
        return destination

"""
service.py - Caller-facing operations: compress, analyze, preview.

compress() never writes partial output: pages are assembled in memory,
handed to the atomic writer, and the finished file is verified against
the original before it is returned.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from PIL import Image

from .config import DOCUMENT, CompressionConfig, SizeCategory
from .compression import AdaptiveEncoder
from .errors import (
    AccessDeniedError,
    InvalidInputError,
    OptimizerError,
    ResourceExhaustedError,
    ResourceKind,
    UnknownError,
)
from .guarantee import GuaranteeResult, QualityGuarantee
from .memory import CancellationToken
from .pdf_writer import AtomicFileWriter, ImageSink, PdfSink
from .pipeline import PageBatchScheduler, ProcessingResult, ProgressCallback
from .rasterize import (
    IMAGE_SUFFIXES,
    PDF_SUFFIXES,
    check_readable,
    generate_thumbnails,
    get_page_count,
    open_source,
)

logger = logging.getLogger(__name__)

SECONDS_PER_PAGE = 0.1
BYTES_PER_SECOND = 10_000_000


@dataclass(frozen=True)
class DocumentAnalysis:
    page_count: int
    size_category: SizeCategory
    estimated_time: float       # seconds
    file_size: int
    can_show_preview: bool
    recommended_preset: CompressionConfig


def default_output_path(source: Path) -> Path:
    source = Path(source)
    return source.with_name(f"{source.stem}_compressed{source.suffix}")


def validate_source(source: Path, max_file_size: Optional[int] = None) -> int:
    """
    Check that `source` can be compressed. Returns its size in bytes.

    Raises:
        InvalidInputError: missing, empty or unsupported
        AccessDeniedError: not readable
        ResourceExhaustedError: larger than `max_file_size`
    """
    source = Path(source)
    check_readable(source)

    suffix = source.suffix.lower()
    if suffix not in PDF_SUFFIXES and suffix not in IMAGE_SUFFIXES:
        raise InvalidInputError(f"Unsupported file type: {source.suffix}", reason="unsupported")

    size = source.stat().st_size
    if max_file_size is not None and size > max_file_size:
        raise ResourceExhaustedError(
            ResourceKind.FILE_TOO_LARGE,
            f"{source.name} is {size:,} bytes (limit {max_file_size:,})"
        )
    return size


class CompressionService:
    """
    Compresses documents and reports on them.

    Args:
        scheduler: Page scheduler (a default single-worker one if omitted)
        guarantee: Post-write verification
        writer: Atomic destination writer
        max_file_size: Inputs above this many bytes are refused
        preserve_text: Carry the source PDF's text over as an invisible layer
    """

    def __init__(
        self,
        scheduler: Optional[PageBatchScheduler] = None,
        guarantee: Optional[QualityGuarantee] = None,
        writer: Optional[AtomicFileWriter] = None,
        max_file_size: Optional[int] = None,
        preserve_text: bool = True
    ):
        self.scheduler = scheduler or PageBatchScheduler()
        self.guarantee = guarantee or QualityGuarantee()
        self.writer = writer or AtomicFileWriter()
        self.max_file_size = max_file_size
        self.preserve_text = preserve_text
        self.last_result: Optional[ProcessingResult] = None

    def _make_sink(self, source: Path, destination: Path, config: CompressionConfig,
                   password: Optional[str] = None):
        if destination.suffix.lower() in PDF_SUFFIXES:
            original = source if source.suffix.lower() in PDF_SUFFIXES else None
            return PdfSink(original_pdf=original, preserve_text=self.preserve_text, password=password)
        return ImageSink.for_path(destination, quality=config.jpeg_quality)

    def compress(
        self,
        source: Path,
        destination: Optional[Path] = None,
        config: CompressionConfig = DOCUMENT,
        progress_callback: Optional[ProgressCallback] = None,
        cancel_token: Optional[CancellationToken] = None,
        batch_size: Optional[int] = None,
        timeout: Optional[float] = None,
        password: Optional[str] = None
    ) -> GuaranteeResult:
        """
        Compress `source` into `destination` and verify the result.

        Args:
            source: Input PDF or image
            destination: Output path (default: <stem>_compressed<suffix>)
            config: Compression settings
            progress_callback: Optional callback(pages_done, pages_total, message)
            cancel_token: Cooperative cancellation
            batch_size: Overrides the size category's batch size
            timeout: Seconds before giving up
            password: For encrypted PDFs

        Returns:
            GuaranteeResult naming the file the caller should use

        Raises:
            OptimizerError subclasses for document-level failures
        """
        source = Path(source)
        destination = Path(destination) if destination else default_output_path(source)

        validate_source(source, self.max_file_size)
        if destination.resolve() == source.resolve():
            raise InvalidInputError("Output would overwrite the input", reason="unsupported")

        logger.info(f"Compressing {source.name} -> {destination.name} ({config.name})")
        self.last_result = None

        sink = None
        try:
            page_source = open_source(source, dpi=config.target_resolution_dpi, password=password)
            sink = self._make_sink(source, destination, config, password)

            self.last_result = self.scheduler.process(
                page_source,
                sink,
                config,
                progress_callback=progress_callback,
                cancel_token=cancel_token,
                batch_size=batch_size,
                timeout=timeout
            )

            data = sink.to_bytes()
            self.writer.write(data, destination)
            del data

        except OptimizerError:
            raise
        except MemoryError as e:
            raise ResourceExhaustedError(ResourceKind.MEMORY, "Out of memory") from e
        except PermissionError as e:
            raise AccessDeniedError(str(e)) from e
        except Exception as e:
            logger.error(f"Compression failed: {e}")
            raise UnknownError(e) from e
        finally:
            if sink is not None:
                sink.close()

        return self.guarantee.verify(source, destination, config)

    def analyze(self, source: Path) -> DocumentAnalysis:
        """Page count, size class and a rough time estimate."""
        source = Path(source)
        file_size = validate_source(source)
        page_count = get_page_count(source)
        category = SizeCategory.from_page_count(page_count)

        analysis = DocumentAnalysis(
            page_count=page_count,
            size_category=category,
            estimated_time=page_count * SECONDS_PER_PAGE + file_size / BYTES_PER_SECOND,
            file_size=file_size,
            can_show_preview=category.should_generate_thumbnails,
            recommended_preset=category.recommended_preset
        )
        logger.debug(f"Analyzed {source.name}: {analysis}")
        return analysis

    def preview(self, source: Path, max_size: int = 150) -> List[Image.Image]:
        """Thumbnails of the first pages, capped by the size category."""
        analysis = self.analyze(source)
        if not analysis.can_show_preview:
            logger.info(f"{Path(source).name}: {analysis.page_count} pages, no preview")
            return []
        return generate_thumbnails(source, analysis.size_category.thumbnail_limit, max_size)


def compress(
    source: Path,
    destination: Optional[Path] = None,
    config: CompressionConfig = DOCUMENT,
    max_workers: int = 1,
    use_g4: bool = False,
    **kwargs
) -> GuaranteeResult:
    """Compress with a one-off service. See CompressionService.compress."""
    scheduler = PageBatchScheduler(encoder=AdaptiveEncoder(use_g4=use_g4), max_workers=max_workers)
    return CompressionService(scheduler=scheduler).compress(source, destination, config, **kwargs)


def analyze(source: Path) -> DocumentAnalysis:
    return CompressionService().analyze(source)

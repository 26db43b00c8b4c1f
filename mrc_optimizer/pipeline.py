"""
pipeline.py - Memory-bounded page scheduling.

Pipeline per document:
1. Classify by page count -> batch size (all / 20 / 10 / 1)
2. For each batch, read only that batch's pages
3. Separate layers + encode (or flatten, or single JPEG) per page
4. Append to the sink in source order; failed pages keep the original
5. Collect garbage and apply memory backpressure between batches

Peak memory is bounded by the batch size, not the page count.
"""

import gc
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Tuple
from concurrent.futures import ThreadPoolExecutor

from .config import CompressionConfig, SizeCategory
from .compression import AdaptiveEncoder, EncodedPage
from .errors import CompressionCancelled, ResourceExhaustedError, ResourceKind
from .memory import CancellationToken, MemoryPressureLevel, MemoryPressureMonitor
from .rasterize import Page
from .segmentation import LayerSeparator

logger = logging.getLogger(__name__)

BACKPRESSURE_PAUSE = 0.1    # seconds, at WARNING pressure
RELIEF_TIMEOUT = 30.0       # seconds, at CRITICAL pressure

ProgressCallback = Callable[[int, int, str], None]


@dataclass
class PageStats:
    """Statistics for a processed page."""
    page_index: int
    success: bool
    error: Optional[str] = None
    process_time: float = 0.0
    compressed_size: int = 0
    text_coverage: float = 0.0
    fallback_steps: Tuple[str, ...] = ()


@dataclass
class ProcessingResult:
    """Outcome of scheduling one document."""
    page_count: int
    category: SizeCategory
    batch_size: int
    total_time: float = 0.0
    page_stats: List[PageStats] = field(default_factory=list)

    @property
    def pages_ok(self) -> int:
        return sum(1 for s in self.page_stats if s.success)

    @property
    def pages_failed(self) -> int:
        return sum(1 for s in self.page_stats if not s.success)

    @property
    def degraded_pages(self) -> List[int]:
        """Pages where some transform ran as identity."""
        return [s.page_index for s in self.page_stats if s.fallback_steps]

    def summary(self) -> str:
        return (
            f"Pages: {self.pages_ok}/{self.page_count} "
            f"({self.category.value}, batch {self.batch_size})\n"
            f"Substituted originals: {self.pages_failed}\n"
            f"Time: {self.total_time:.1f}s"
        )


class PageBatchScheduler:
    """
    Drives a source through layer separation and encoding into a sink.

    Args:
        separator: LayerSeparator to use (a default one if omitted)
        encoder: AdaptiveEncoder to use (a default one if omitted)
        monitor: Memory-pressure signal polled between batches
        max_workers: Pages encoded concurrently within a batch
        relief_timeout: Longest wait for memory relief before giving up
        sleep: Sleep function for the backpressure pause
        clock: Monotonic clock for timings and the optional timeout
    """

    def __init__(
        self,
        separator: Optional[LayerSeparator] = None,
        encoder: Optional[AdaptiveEncoder] = None,
        monitor: Optional[MemoryPressureMonitor] = None,
        max_workers: int = 1,
        relief_timeout: float = RELIEF_TIMEOUT,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic
    ):
        self.separator = separator or LayerSeparator()
        self.encoder = encoder or AdaptiveEncoder()
        self.monitor = monitor or MemoryPressureMonitor()
        self.max_workers = max(1, max_workers)
        self.relief_timeout = relief_timeout
        self.sleep = sleep
        self.clock = clock

    def process(
        self,
        source,
        sink,
        config: CompressionConfig,
        progress_callback: Optional[ProgressCallback] = None,
        cancel_token: Optional[CancellationToken] = None,
        batch_size: Optional[int] = None,
        timeout: Optional[float] = None
    ) -> ProcessingResult:
        """
        Process every page of `source` into `sink`.

        Args:
            source: Page source (PdfSource / ImageSource)
            sink: Output sink (PdfSink / ImageSink)
            config: Compression settings
            progress_callback: Optional callback(pages_done, pages_total, message)
            cancel_token: Checked before each page
            batch_size: Overrides the category's batch size
            timeout: Seconds before ResourceExhaustedError(TIMEOUT)

        Returns:
            ProcessingResult with per-page statistics
        """
        start_time = self.clock()
        deadline = start_time + timeout if timeout else None

        with source.open():
            total = source.page_count()
            category = SizeCategory.from_page_count(total)
            size = batch_size or category.processing_strategy.batch_size_for(total)
            size = max(1, size)

            result = ProcessingResult(page_count=total, category=category, batch_size=size)

            logger.info(
                f"Processing {total} pages ({category.value}), batch size {size}, "
                f"preset {config.name}, {self.max_workers} worker(s)"
            )

            done = 0
            for batch_start in range(0, total, size):
                indices = range(batch_start, min(batch_start + size, total))

                if self.max_workers == 1:
                    for index in indices:
                        self._check_interrupt(cancel_token, deadline)
                        stats, page = self._read_page(source, index)
                        encoded = self._encode_page(stats, page, config, sink.flattened)
                        self._emit(sink, stats, encoded, page, result)
                        del encoded, page
                        done += 1
                        self._report(progress_callback, done, total, category)
                else:
                    # Sources are not thread-safe: read serially, encode in parallel
                    reads = []
                    for index in indices:
                        self._check_interrupt(cancel_token, deadline)
                        reads.append(self._read_page(source, index))
                    with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
                        # map() yields in submission order
                        encodeds = list(executor.map(
                            lambda read: self._encode_page(read[0], read[1], config, sink.flattened),
                            reads
                        ))
                    for (stats, page), encoded in zip(reads, encodeds):
                        self._emit(sink, stats, encoded, page, result)
                        done += 1
                        self._report(progress_callback, done, total, category)
                    del reads, encodeds

                self._after_batch(batch_start // size + 1)

        result.total_time = self.clock() - start_time
        logger.info(f"\n{result.summary()}")
        return result

    def _read_page(self, source, index: int) -> Tuple[PageStats, Optional[Page]]:
        """Read one page. Never raises: an unreadable page is returned as None."""
        stats = PageStats(page_index=index, success=False)
        start = self.clock()
        try:
            page = source.page(index)
        except Exception as e:
            logger.error(f"Page {index} could not be read: {e}")
            stats.error = str(e)
            page = None
        stats.process_time = self.clock() - start
        return stats, page

    def _encode_page(
        self,
        stats: PageStats,
        page: Optional[Page],
        config: CompressionConfig,
        flattened: bool
    ) -> Optional[EncodedPage]:
        """
        Separate and encode a read page.

        Never raises: failures are recorded in the stats and None is returned
        so the original page can be substituted.
        """
        if page is None:
            return None

        start = self.clock()
        try:
            if not config.use_layer_separation:
                encoded = self.encoder.encode_single(page, config)
            else:
                layers = self.separator.separate(page, config)
                if flattened:
                    encoded = self.encoder.recompose_page(layers, config)
                else:
                    encoded = self.encoder.encode(layers, config)
                stats.text_coverage = layers.text_coverage
                stats.fallback_steps = layers.fallback_steps
                del layers

            stats.compressed_size = encoded.total_size
            stats.success = True
            return encoded

        except Exception as e:
            logger.error(f"Page {stats.page_index} failed: {e}")
            stats.error = str(e)
            return None

        finally:
            stats.process_time += self.clock() - start

    def _emit(self, sink, stats: PageStats, encoded, page, result: ProcessingResult):
        if encoded is not None:
            sink.append_page(encoded)
        elif page is not None:
            logger.warning(f"Page {stats.page_index}: keeping original")
            sink.append_original(page)
        else:
            logger.warning(f"Page {stats.page_index}: unreadable, copying source page")
            sink.append_source_page(stats.page_index)
        result.page_stats.append(stats)

    def _check_interrupt(self, cancel_token: Optional[CancellationToken], deadline: Optional[float]):
        if cancel_token is not None and cancel_token.cancelled:
            logger.info("Cancellation requested, stopping")
            raise CompressionCancelled("Compression cancelled")
        if deadline is not None and self.clock() > deadline:
            raise ResourceExhaustedError(ResourceKind.TIMEOUT, "Processing timed out")

    def _report(self, progress_callback, done: int, total: int, category: SizeCategory):
        if not progress_callback:
            return
        if category is SizeCategory.MASSIVE:
            message = f"Processing page {done}/{total}"
        else:
            message = category.status_message
        progress_callback(done, total, message)

    def _after_batch(self, batch_number: int):
        gc.collect()

        level = self.monitor.current_level()
        if level >= MemoryPressureLevel.CRITICAL:
            logger.warning(f"Batch {batch_number}: memory pressure {level.name}, waiting for relief")
            if not self.monitor.wait_for_relief(self.relief_timeout):
                raise ResourceExhaustedError(
                    ResourceKind.MEMORY,
                    f"Memory pressure stayed {level.name} for {self.relief_timeout:.0f}s"
                )
        elif level >= MemoryPressureLevel.WARNING:
            logger.debug(f"Batch {batch_number}: memory pressure {level.name}, pausing")
            self.sleep(BACKPRESSURE_PAUSE)

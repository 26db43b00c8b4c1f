"""
guarantee.py - Post-compression verification.

Decides, once per finished artifact, whether the caller gets the candidate
or the original:
1. Candidate not smaller -> candidate deleted, original returned
2. Less than 5% saved -> candidate kept, minimal-gain warning
3. Lost more than half of the pixels -> candidate kept, quality warning
4. Otherwise success

Size regressions are rolled back; quality regressions only warn.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Dict, Optional, Tuple, Union

import pikepdf
from PIL import Image

from .config import CompressionConfig
from .rasterize import IMAGE_SUFFIXES, PDF_SUFFIXES

logger = logging.getLogger(__name__)

MINIMAL_GAIN_PERCENT = 5
MIN_PIXEL_RATIO = 0.5


class NoImprovementReason(Enum):
    FILE_BECAME_LARGER = "file_became_larger"
    CANDIDATE_MISSING = "candidate_missing"


class GuaranteeWarning(Enum):
    MINIMAL_GAIN = "minimal_gain"
    HIGH_COMPRESSION = "high_compression"


@dataclass(frozen=True)
class Improvement:
    original_size: int
    compressed_size: int

    @property
    def bytes_saved(self) -> int:
        return self.original_size - self.compressed_size

    @property
    def percentage_reduction(self) -> int:
        """Whole percent saved, truncated."""
        if self.original_size <= 0:
            return 0
        return self.bytes_saved * 100 // self.original_size


@dataclass(frozen=True)
class Success:
    artifact: Path
    improvement: Improvement


@dataclass(frozen=True)
class NoImprovement:
    original: Path
    reason: NoImprovementReason


@dataclass(frozen=True)
class PartialSuccess:
    artifact: Path
    warning: GuaranteeWarning
    improvement: Improvement


@dataclass(frozen=True)
class QualityCompromised:
    artifact: Path
    warning: GuaranteeWarning
    improvement: Improvement


GuaranteeResult = Union[Success, NoImprovement, PartialSuccess, QualityCompromised]


def _image_pixels(path: Path) -> Optional[int]:
    with Image.open(path) as img:
        width, height = img.size
    return width * height


def _pdf_pixels(path: Path) -> Optional[int]:
    """Sum over pages of the largest embedded image's pixel count."""
    total = 0
    with pikepdf.open(path) as pdf:
        for page in pdf.pages:
            largest = 0
            for _name, xobj in page.images.items():
                largest = max(largest, int(xobj.Width) * int(xobj.Height))
            total += largest
    return total


def pixel_count(path: Path) -> Optional[int]:
    """Decoded pixel count, or None when the file can't be measured."""
    suffix = path.suffix.lower()
    try:
        if suffix in IMAGE_SUFFIXES:
            return _image_pixels(path)
        if suffix in PDF_SUFFIXES:
            return _pdf_pixels(path)
    except Exception as e:
        logger.debug(f"Could not measure pixels of {path.name}: {e}")
    return None


class QualityGuarantee:
    """
    Verifies a finished artifact against its original. Never raises.

    Rolled-back candidates are remembered so that verifying the same pair
    again gives the same answer while the original is unchanged.
    """

    def __init__(self):
        self._rolled_back: Dict[Tuple[Path, Path], int] = {}

    def verify(
        self,
        original: Path,
        candidate: Path,
        config: Optional[CompressionConfig] = None
    ) -> GuaranteeResult:
        original = Path(original)
        candidate = Path(candidate)
        key = (original.resolve(), candidate.resolve())

        try:
            original_size = original.stat().st_size
            candidate_size = candidate.stat().st_size
        except OSError as e:
            rolled_back_size = self._rolled_back.get(key)
            if rolled_back_size is not None and self._size_or_none(original) == rolled_back_size:
                logger.debug(f"{candidate.name}: already rolled back")
                return NoImprovement(original, NoImprovementReason.FILE_BECAME_LARGER)
            logger.error(f"Cannot verify {candidate.name}: {e}")
            return NoImprovement(original, NoImprovementReason.CANDIDATE_MISSING)

        self._rolled_back.pop(key, None)

        if candidate_size >= original_size:
            logger.info(
                f"{candidate.name}: {candidate_size:,} >= {original_size:,} bytes, keeping original"
            )
            self._discard(candidate)
            self._rolled_back[key] = original_size
            return NoImprovement(original, NoImprovementReason.FILE_BECAME_LARGER)

        improvement = Improvement(original_size, candidate_size)

        if improvement.bytes_saved * 100 < original_size * MINIMAL_GAIN_PERCENT:
            logger.info(f"{candidate.name}: only {improvement.percentage_reduction}% smaller")
            return PartialSuccess(candidate, GuaranteeWarning.MINIMAL_GAIN, improvement)

        original_pixels = pixel_count(original)
        candidate_pixels = pixel_count(candidate)
        if original_pixels and candidate_pixels is not None:
            ratio = candidate_pixels / original_pixels
            if ratio < MIN_PIXEL_RATIO:
                preset = f" ({config.name})" if config is not None else ""
                logger.warning(
                    f"{candidate.name}: kept {ratio*100:.0f}% of original pixels{preset}"
                )
                return QualityCompromised(candidate, GuaranteeWarning.HIGH_COMPRESSION, improvement)

        logger.info(
            f"{candidate.name}: {improvement.percentage_reduction}% smaller "
            f"({improvement.bytes_saved:,} bytes saved)"
        )
        return Success(candidate, improvement)

    @staticmethod
    def _size_or_none(path: Path) -> Optional[int]:
        try:
            return path.stat().st_size
        except OSError:
            return None

    def _discard(self, candidate: Path):
        try:
            candidate.unlink(missing_ok=True)
        except OSError as e:
            logger.warning(f"Could not delete {candidate}: {e}")

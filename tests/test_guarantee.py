import numpy as np
import pytest
from PIL import Image

from conftest import write_scan_pdf
from mrc_optimizer.guarantee import (
    GuaranteeWarning,
    Improvement,
    NoImprovement,
    NoImprovementReason,
    PartialSuccess,
    QualityCompromised,
    QualityGuarantee,
    Success,
    pixel_count,
)


def sized_file(path, size, fill=b"\x01"):
    path.write_bytes(fill * size)
    return path


@pytest.fixture
def guarantee():
    return QualityGuarantee()


@pytest.mark.parametrize("candidate_size", [1_000_000, 1_000_001, 2_000_000])
def test_not_smaller_rolls_back(tmp_path, guarantee, candidate_size):
    original = sized_file(tmp_path / "in.bin", 1_000_000, b"\x07")
    candidate = sized_file(tmp_path / "out.bin", candidate_size)
    before = original.read_bytes()

    result = guarantee.verify(original, candidate)

    assert result == NoImprovement(original, NoImprovementReason.FILE_BECAME_LARGER)
    assert not candidate.exists()
    assert original.read_bytes() == before


def test_minimal_gain_boundary(tmp_path, guarantee):
    original = sized_file(tmp_path / "in.bin", 1_000_000)

    below = guarantee.verify(original, sized_file(tmp_path / "a.bin", 960_001))
    assert isinstance(below, PartialSuccess)
    assert below.warning is GuaranteeWarning.MINIMAL_GAIN
    assert below.artifact.exists()
    assert below.improvement.percentage_reduction == 3

    at = guarantee.verify(original, sized_file(tmp_path / "b.bin", 950_000))
    assert isinstance(at, Success)
    assert at.improvement.percentage_reduction == 5
    assert at.improvement.bytes_saved == 50_000


def test_verify_is_idempotent(tmp_path, guarantee):
    original = sized_file(tmp_path / "in.bin", 10_000)
    for size in (9_900, 5_000, 10_000, 20_000):
        candidate = sized_file(tmp_path / f"c{size}.bin", size)
        first = guarantee.verify(original, candidate)
        second = guarantee.verify(original, candidate)
        assert first == second


def test_rolled_back_candidate_keeps_its_reason(tmp_path, guarantee):
    original = sized_file(tmp_path / "in.bin", 100)
    candidate = sized_file(tmp_path / "out.bin", 200)

    results = [guarantee.verify(original, candidate) for _ in range(3)]

    assert results == [NoImprovement(original, NoImprovementReason.FILE_BECAME_LARGER)] * 3
    assert not candidate.exists()


def test_rollback_memory_ends_when_original_changes(tmp_path, guarantee):
    original = sized_file(tmp_path / "in.bin", 100)
    candidate = sized_file(tmp_path / "out.bin", 200)
    guarantee.verify(original, candidate)

    sized_file(original, 150)
    result = guarantee.verify(original, candidate)
    assert result.reason is NoImprovementReason.CANDIDATE_MISSING


def test_percentage_is_truncated():
    assert Improvement(1000, 333).percentage_reduction == 66
    assert Improvement(3, 1).percentage_reduction == 66
    assert Improvement(0, 0).percentage_reduction == 0


def test_missing_candidate(tmp_path, guarantee):
    original = sized_file(tmp_path / "in.bin", 100)
    result = guarantee.verify(original, tmp_path / "nope.bin")
    assert result == NoImprovement(original, NoImprovementReason.CANDIDATE_MISSING)


def _noisy_png(path, width, height, seed=0):
    pixels = np.random.default_rng(seed).integers(0, 256, (height, width, 3), dtype=np.uint8)
    Image.fromarray(pixels).save(path)
    return path


def test_pixel_loss_over_half_warns_but_keeps(tmp_path, guarantee):
    original = _noisy_png(tmp_path / "in.png", 200, 200)
    candidate = _noisy_png(tmp_path / "out.png", 90, 90)

    result = guarantee.verify(original, candidate)

    assert isinstance(result, QualityCompromised)
    assert result.warning is GuaranteeWarning.HIGH_COMPRESSION
    assert candidate.exists()


def test_half_the_pixels_is_still_success(tmp_path, guarantee):
    original = _noisy_png(tmp_path / "in.png", 200, 200)
    candidate = tmp_path / "out.jpg"
    Image.open(original).resize((200, 100)).save(candidate, quality=60)

    assert isinstance(guarantee.verify(original, candidate), Success)


def test_undecodable_candidate_treated_as_ok(tmp_path, guarantee):
    original = _noisy_png(tmp_path / "in.png", 100, 100)
    candidate = sized_file(tmp_path / "out.png", 100)
    assert pixel_count(candidate) is None
    assert isinstance(guarantee.verify(original, candidate), Success)


def test_pdf_pixel_count_sums_largest_image_per_page(tmp_path):
    pdf = write_scan_pdf(tmp_path / "scan.pdf", pages=2)
    assert pixel_count(pdf) == 2 * 425 * 550


def test_pixel_count_unknown_format(tmp_path):
    assert pixel_count(sized_file(tmp_path / "data.bin", 10)) is None

import os

import pytest
from PIL import Image

try:
    import fitz
except ImportError:
    import pymupdf as fitz

from conftest import make_scan_image, write_scan_pdf, write_text_pdf
from mrc_optimizer.config import ARCHIVE, DOCUMENT, SMART, SizeCategory
from mrc_optimizer.errors import (
    AccessDeniedError,
    CompressionCancelled,
    EncryptedInputError,
    InvalidInputError,
    ResourceExhaustedError,
    ResourceKind,
)
from mrc_optimizer.guarantee import NoImprovement, NoImprovementReason, PartialSuccess, QualityCompromised, Success
from mrc_optimizer.memory import CancellationToken
from mrc_optimizer.service import CompressionService, analyze, compress, default_output_path, validate_source


def page_count(path):
    with fitz.open(path) as doc:
        return len(doc)


def test_compress_scan_pdf(scan_pdf, tmp_path):
    out = tmp_path / "out.pdf"
    service = CompressionService()

    result = service.compress(scan_pdf, out, ARCHIVE)

    assert isinstance(result, (Success, PartialSuccess, QualityCompromised))
    assert result.artifact == out
    assert out.stat().st_size < scan_pdf.stat().st_size
    assert page_count(out) == 3
    assert service.last_result.pages_ok == 3


def test_compress_is_idempotent(scan_pdf, tmp_path):
    first = compress(scan_pdf, tmp_path / "a.pdf", ARCHIVE)
    second = compress(scan_pdf, tmp_path / "b.pdf", ARCHIVE)
    assert type(first) is type(second)
    assert (tmp_path / "a.pdf").read_bytes() == (tmp_path / "b.pdf").read_bytes()
    assert first.improvement == second.improvement


def test_default_output_path(tmp_path):
    assert default_output_path(tmp_path / "scan.pdf") == tmp_path / "scan_compressed.pdf"


def test_compress_never_returns_larger_output(tmp_path):
    source = write_text_pdf(tmp_path / "tiny.pdf")
    before = source.read_bytes()
    out = tmp_path / "tiny_out.pdf"

    result = CompressionService().compress(source, out, DOCUMENT)

    assert result == NoImprovement(source, NoImprovementReason.FILE_BECAME_LARGER)
    assert not out.exists()
    assert source.read_bytes() == before


def test_compress_image_to_jpeg(tmp_path):
    source = tmp_path / "receipt.png"
    Image.fromarray(make_scan_image(850, 1100)).save(source)
    out = tmp_path / "receipt.jpg"

    result = CompressionService().compress(source, out, DOCUMENT)

    assert not isinstance(result, NoImprovement)
    with Image.open(out) as img:
        assert img.format == "JPEG"
        assert img.size == (850, 1100)


def test_compress_image_to_pdf(tmp_path):
    source = tmp_path / "scan.png"
    Image.fromarray(make_scan_image(850, 1100)).save(source, dpi=(200, 200))
    out = tmp_path / "scan.pdf"

    result = CompressionService().compress(source, out, DOCUMENT)

    assert not isinstance(result, NoImprovement)
    with fitz.open(out) as doc:
        assert len(doc) == 1
        assert doc[0].rect.width == pytest.approx(850 * 72 / 200, rel=1e-3)


def test_cancel_writes_nothing(scan_pdf, tmp_path):
    token = CancellationToken()
    token.cancel()
    out = tmp_path / "out.pdf"
    with pytest.raises(CompressionCancelled):
        CompressionService().compress(scan_pdf, out, ARCHIVE, cancel_token=token)
    assert not out.exists()
    assert os.listdir(tmp_path) == ["scan.pdf"]


def test_progress_callback(scan_pdf, tmp_path):
    calls = []
    CompressionService().compress(
        scan_pdf, tmp_path / "out.pdf", ARCHIVE, progress_callback=lambda *a: calls.append(a)
    )
    assert [c[0] for c in calls] == [1, 2, 3]
    assert all(c[1] == 3 for c in calls)


def test_missing_input(tmp_path):
    with pytest.raises(InvalidInputError) as excinfo:
        CompressionService().compress(tmp_path / "nope.pdf")
    assert excinfo.value.reason == "missing"


def test_empty_input(tmp_path):
    empty = tmp_path / "empty.pdf"
    empty.write_bytes(b"")
    with pytest.raises(InvalidInputError) as excinfo:
        validate_source(empty)
    assert excinfo.value.reason == "empty"


def test_unsupported_input(tmp_path):
    doc = tmp_path / "notes.txt"
    doc.write_text("hello")
    with pytest.raises(InvalidInputError) as excinfo:
        CompressionService().compress(doc)
    assert excinfo.value.reason == "unsupported"


def test_corrupt_pdf(tmp_path):
    bad = tmp_path / "bad.pdf"
    bad.write_bytes(b"this is not a pdf at all" * 10)
    with pytest.raises(InvalidInputError):
        CompressionService().compress(bad, tmp_path / "out.pdf")


@pytest.mark.skipif(os.name == "nt" or os.geteuid() == 0, reason="needs POSIX permissions as non-root")
def test_unreadable_input(scan_pdf):
    scan_pdf.chmod(0)
    try:
        with pytest.raises(AccessDeniedError):
            validate_source(scan_pdf)
    finally:
        scan_pdf.chmod(0o644)


def test_size_limit(scan_pdf, tmp_path):
    service = CompressionService(max_file_size=1000)
    with pytest.raises(ResourceExhaustedError) as excinfo:
        service.compress(scan_pdf, tmp_path / "out.pdf")
    assert excinfo.value.kind is ResourceKind.FILE_TOO_LARGE


def test_refuses_to_overwrite_input(scan_pdf):
    with pytest.raises(InvalidInputError):
        CompressionService().compress(scan_pdf, scan_pdf)


def test_encrypted_pdf(tmp_path):
    locked = write_scan_pdf(
        tmp_path / "locked.pdf",
        pages=1,
        encryption=fitz.PDF_ENCRYPT_AES_256,
        owner_pw="owner",
        user_pw="secret"
    )
    with pytest.raises(EncryptedInputError):
        CompressionService().compress(locked, tmp_path / "out.pdf", ARCHIVE)

    result = CompressionService().compress(locked, tmp_path / "out.pdf", ARCHIVE, password="secret")
    assert isinstance(result, (Success, PartialSuccess, QualityCompromised))


def test_analyze(scan_pdf):
    analysis = analyze(scan_pdf)
    size = scan_pdf.stat().st_size
    assert analysis.page_count == 3
    assert analysis.size_category is SizeCategory.SMALL
    assert analysis.file_size == size
    assert analysis.estimated_time == pytest.approx(3 * 0.1 + size / 10_000_000)
    assert analysis.can_show_preview
    assert analysis.recommended_preset is SMART


def test_analyze_large_document_has_no_preview(tmp_path):
    big = write_text_pdf(tmp_path / "big.pdf", pages=60)
    service = CompressionService()
    analysis = service.analyze(big)
    assert analysis.size_category is SizeCategory.LARGE
    assert not analysis.can_show_preview
    assert service.preview(big) == []


def test_preview_thumbnails(scan_pdf):
    thumbs = CompressionService().preview(scan_pdf, max_size=100)
    assert len(thumbs) == 3
    assert all(max(t.size) <= 100 for t in thumbs)


def test_preview_capped_for_medium_documents(tmp_path):
    medium = write_text_pdf(tmp_path / "medium.pdf", pages=25)
    thumbs = CompressionService().preview(medium, max_size=40)
    assert len(thumbs) == SizeCategory.MEDIUM.thumbnail_limit


def test_multipage_tiff_round_trip(tmp_path):
    frames = [Image.fromarray(make_scan_image(seed=i)) for i in range(3)]
    source = tmp_path / "pages.tif"
    frames[0].save(source, save_all=True, append_images=frames[1:])
    out = tmp_path / "pages_out.tif"

    result = CompressionService().compress(source, out, DOCUMENT)

    assert not isinstance(result, NoImprovement)
    with Image.open(out) as img:
        assert img.n_frames == 3

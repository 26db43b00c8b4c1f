import numpy as np
import pytest
from PIL import Image

from conftest import make_scan_image, write_scan_pdf
from mrc_optimizer.errors import InvalidInputError
from mrc_optimizer.rasterize import (
    ImageSource,
    PdfSource,
    cap_dpi_for_page,
    generate_thumbnails,
    get_page_count,
    open_source,
)


def test_pdf_source_renders_at_dpi(scan_pdf):
    source = PdfSource(scan_pdf, dpi=100)
    with source.open():
        assert source.page_count() == 3
        page = source.page(1)

    assert page.index == 1
    assert (page.width_pts, page.height_pts) == (612, 792)
    height, width = page.image.shape[:2]
    assert abs(height - 1100) <= 1 and abs(width - 850) <= 1
    assert page.dpi == 100
    assert not page.image.flags.writeable
    assert page.pixel_count == height * width


def test_pages_only_readable_while_open(scan_pdf):
    source = PdfSource(scan_pdf)
    with pytest.raises(RuntimeError):
        source.page(0)
    with source.open():
        pass
    with pytest.raises(RuntimeError):
        source.page_count()


def test_render_dpi_is_clamped(scan_pdf):
    assert PdfSource(scan_pdf, dpi=5).dpi == 36
    assert PdfSource(scan_pdf, dpi=5000).dpi == 600


def test_huge_pages_are_capped():
    # 100 x 100 inch page at 300 DPI would be 900 MP
    dpi = cap_dpi_for_page(7200, 7200, 300)
    assert dpi < 300
    assert (7200 * dpi / 72) ** 2 <= 80_000_000
    assert cap_dpi_for_page(612, 792, 200) == 200


def test_image_source_rgb_and_gray(tmp_path):
    rgb = tmp_path / "page.png"
    Image.fromarray(make_scan_image(100, 80)).save(rgb, dpi=(300, 300))
    gray = tmp_path / "gray.png"
    Image.fromarray(np.full((80, 100), 200, np.uint8)).save(gray)

    source = ImageSource(rgb)
    with source.open():
        page = source.page(0)
    assert page.image.shape == (80, 100, 3)
    assert page.dpi == pytest.approx(300, rel=1e-3)
    assert page.width_pts == pytest.approx(100 * 72 / 300, rel=1e-3)

    source = ImageSource(gray)
    with source.open():
        page = source.page(0)
    assert page.image.shape == (80, 100)
    assert page.dpi == 200


def test_multi_frame_tiff(tmp_path):
    frames = [Image.fromarray(np.full((20, 30), v, np.uint8)) for v in (10, 120, 240)]
    path = tmp_path / "stack.tiff"
    frames[0].save(path, save_all=True, append_images=frames[1:])

    source = ImageSource(path)
    with source.open():
        assert source.page_count() == 3
        assert source.page(2).image[0, 0] == 240
        with pytest.raises(IndexError):
            source.page(3)


def test_not_an_image(tmp_path):
    path = tmp_path / "fake.jpg"
    path.write_bytes(b"definitely not a jpeg")
    with pytest.raises(InvalidInputError) as excinfo:
        with ImageSource(path).open():
            pass
    assert excinfo.value.reason == "unsupported"


def test_open_source_by_suffix(tmp_path, scan_pdf):
    assert isinstance(open_source(scan_pdf), PdfSource)
    assert isinstance(open_source(tmp_path / "a.TIF"), ImageSource)
    with pytest.raises(InvalidInputError):
        open_source(tmp_path / "a.docx")


def test_get_page_count(tmp_path):
    assert get_page_count(write_scan_pdf(tmp_path / "five.pdf", pages=5)) == 5


def test_thumbnails_respect_limit(tmp_path):
    pdf = write_scan_pdf(tmp_path / "five.pdf", pages=5)
    assert len(generate_thumbnails(pdf, limit=2, max_size=64)) == 2
    assert generate_thumbnails(pdf, limit=0) == []

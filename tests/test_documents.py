"""
Unit tests for upload validation and normalization.
"""
import io
import tempfile

import pytest
from pdf2image.exceptions import PDFSyntaxError
from PIL import Image

import core.documents as documents
from core.documents import DocumentNormalizer, sniff_kind
from core.exceptions import ConversionError, ValidationError

PDF_BYTES = b"%PDF-1.4\n1 0 obj\n<<>>\nendobj\ntrailer\n<<>>\n%%EOF\n"


@pytest.fixture
def normalizer(settings):
    return DocumentNormalizer(settings)


@pytest.fixture
def scratch_tempdir(tmp_path, monkeypatch):
    """Route tempfile allocations into a directory the test can inspect."""
    monkeypatch.setattr(tempfile, "tempdir", str(tmp_path))
    return tmp_path


def _leftover_workdirs(path):
    return [p for p in path.iterdir() if p.name.startswith("cheque-pdf-")]


def test_sniff_kind(png_bytes, jpeg_bytes):
    assert sniff_kind(png_bytes) == "png"
    assert sniff_kind(jpeg_bytes) == "jpeg"
    assert sniff_kind(PDF_BYTES) == "pdf"
    assert sniff_kind(b"GIF89a....") is None


def test_normalize_png(normalizer, png_bytes):
    image = normalizer.normalize(png_bytes, "image/png")
    assert image.mime_type == "image/png"
    assert (image.width, image.height) == (64, 32)
    assert image.source_mime_type == "image/png"
    with Image.open(io.BytesIO(image.content)) as decoded:
        assert decoded.format == "PNG"


def test_normalize_jpeg_to_png(normalizer, jpeg_bytes):
    image = normalizer.normalize(jpeg_bytes, "image/jpeg")
    assert image.source_mime_type == "image/jpeg"
    assert image.content.startswith(b"\x89PNG")
    assert len(image.digest) == 64


def test_rejects_empty_upload(normalizer):
    with pytest.raises(ValidationError):
        normalizer.validate(b"", "image/png")


def test_rejects_oversized_upload(settings, png_bytes):
    small = DocumentNormalizer(settings.model_copy(update={"max_upload_bytes": 10}))
    with pytest.raises(ValidationError) as exc_info:
        small.validate(png_bytes, "image/png")
    assert exc_info.value.details["max_bytes"] == 10


def test_rejects_unsupported_declared_type(normalizer, png_bytes):
    with pytest.raises(ValidationError):
        normalizer.validate(png_bytes, "image/gif")


def test_rejects_unknown_content(normalizer):
    with pytest.raises(ValidationError):
        normalizer.validate(b"GIF89a not really", "image/png")


def test_rejects_pdf_declared_as_image(normalizer):
    with pytest.raises(ValidationError):
        normalizer.validate(PDF_BYTES, "image/png")


def test_jpeg_declared_as_png_is_accepted(normalizer, jpeg_bytes):
    assert normalizer.validate(jpeg_bytes, "image/png") == "jpeg"


def test_corrupt_image_is_conversion_error(normalizer, png_bytes):
    with pytest.raises(ConversionError):
        normalizer.normalize(png_bytes[:8] + b"\x00" * 64, "image/png")


def test_pdf_first_page_rasterized(normalizer, monkeypatch, scratch_tempdir):
    calls = {}

    def fake_convert(data, dpi, first_page, last_page, fmt, output_folder):
        calls.update(dpi=dpi, first_page=first_page, last_page=last_page, folder=output_folder)
        (scratch_tempdir / output_folder / "page-1.png").write_bytes(b"intermediate")
        return [Image.new("RGB", (100, 150), color=(200, 200, 200))]

    monkeypatch.setattr(documents, "pdfinfo_from_bytes", lambda data: {"Pages": 3})
    monkeypatch.setattr(documents, "convert_from_bytes", fake_convert)

    image = normalizer.normalize(PDF_BYTES, "application/pdf")

    assert (image.width, image.height) == (100, 150)
    assert image.page_count == 3
    assert image.source_mime_type == "application/pdf"
    assert calls["first_page"] == 1 and calls["last_page"] == 1
    assert _leftover_workdirs(scratch_tempdir) == []


def test_pdf_without_pages_fails_and_cleans_up(normalizer, monkeypatch, scratch_tempdir):
    monkeypatch.setattr(documents, "pdfinfo_from_bytes", lambda data: {"Pages": 0})

    with pytest.raises(ConversionError):
        normalizer.normalize(PDF_BYTES, "application/pdf")
    assert _leftover_workdirs(scratch_tempdir) == []


def test_pdf_rasterization_error_fails_and_cleans_up(normalizer, monkeypatch, scratch_tempdir):
    def broken_convert(data, **kwargs):
        raise PDFSyntaxError("broken xref")

    monkeypatch.setattr(documents, "pdfinfo_from_bytes", lambda data: {"Pages": 1})
    monkeypatch.setattr(documents, "convert_from_bytes", broken_convert)

    with pytest.raises(ConversionError):
        normalizer.normalize(PDF_BYTES, "application/pdf")
    assert _leftover_workdirs(scratch_tempdir) == []


def test_pdf_rasterization_without_output(normalizer, monkeypatch, scratch_tempdir):
    monkeypatch.setattr(documents, "pdfinfo_from_bytes", lambda data: {"Pages": 1})
    monkeypatch.setattr(documents, "convert_from_bytes", lambda data, **kwargs: [])

    with pytest.raises(ConversionError):
        normalizer.normalize(PDF_BYTES, "application/pdf")
    assert _leftover_workdirs(scratch_tempdir) == []


@pytest.mark.parametrize("max_pixels", [1000, 1500])
def test_oversized_image_is_conversion_error(normalizer, png_bytes, monkeypatch, max_pixels):
    # 64x32 = 2048 pixels: above twice 1000 (error) and between 1500 and 3000 (warning)
    monkeypatch.setattr(Image, "MAX_IMAGE_PIXELS", max_pixels)
    with pytest.raises(ConversionError) as exc_info:
        normalizer.normalize(png_bytes, "image/png")
    assert exc_info.value.details["max_pixels"] == max_pixels

"""
Document normalization.
Validates an uploaded cheque artifact and converts it to a single PNG raster.
PDFs are rasterized from their first page with pdf2image (poppler).
"""
import hashlib
import io
import tempfile
import warnings
from typing import Optional

from pdf2image import convert_from_bytes, pdfinfo_from_bytes
from pdf2image.exceptions import PDFInfoNotInstalledError, PDFPageCountError, PDFSyntaxError
from PIL import Image, ImageOps, UnidentifiedImageError

from core.config import Settings, get_settings
from core.exceptions import ConversionError, ValidationError
from core.logger import setup_logger
from core.schema import NormalizedImage

logger = setup_logger(__name__)

PDF_MIME = "application/pdf"

# Declared MIME type -> canonical kind
ACCEPTED_MIME_TYPES = {
    "image/png": "png",
    "image/jpeg": "jpeg",
    "image/jpg": "jpeg",
    "image/pjpeg": "jpeg",
    PDF_MIME: "pdf",
}

_MAGIC = (
    (b"\x89PNG\r\n\x1a\n", "png"),
    (b"\xff\xd8\xff", "jpeg"),
    (b"%PDF-", "pdf"),
)


def sniff_kind(data: bytes) -> Optional[str]:
    """Identify the artifact kind from its leading magic bytes."""
    head = data[:1024]
    for magic, kind in _MAGIC:
        if head.startswith(magic):
            return kind
    # Some PDF writers emit a few junk bytes before the header
    if b"%PDF-" in head:
        return "pdf"
    return None


def _encode_png(image: Image.Image) -> bytes:
    with io.BytesIO() as buf:
        image.save(buf, format="PNG")
        return buf.getvalue()


class DocumentNormalizer:
    """Turns a raster image or PDF upload into one canonical PNG."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.max_bytes = self.settings.max_upload_bytes
        self.dpi = self.settings.pdf_render_dpi

    def validate(self, data: bytes, declared_mime_type: Optional[str]) -> str:
        """
        Check size and type of an artifact without decoding it.

        Args:
            data: Artifact bytes
            declared_mime_type: MIME type declared by the uploader

        Returns:
            Artifact kind ("png", "jpeg" or "pdf")

        Raises:
            ValidationError: If the artifact is empty, too large, or of an
                unsupported or inconsistent type
        """
        if not data:
            raise ValidationError("Uploaded file is empty")

        if len(data) > self.max_bytes:
            raise ValidationError(
                f"File size exceeds the {self.max_bytes // (1024 * 1024)}MB limit",
                details={"size": len(data), "max_bytes": self.max_bytes},
            )

        declared = (declared_mime_type or "").split(";")[0].strip().lower()
        declared_kind = ACCEPTED_MIME_TYPES.get(declared)
        if declared_kind is None:
            raise ValidationError(
                f"Unsupported file type: {declared_mime_type or 'unknown'}. "
                "Only JPEG, PNG and PDF files are accepted.",
                details={"declared_mime_type": declared_mime_type},
            )

        sniffed_kind = sniff_kind(data)
        if sniffed_kind is None:
            raise ValidationError(
                "File content is not a JPEG, PNG or PDF document",
                details={"declared_mime_type": declared_mime_type},
            )

        if (declared_kind == "pdf") != (sniffed_kind == "pdf"):
            raise ValidationError(
                "Declared file type does not match file content",
                details={"declared_mime_type": declared_mime_type, "detected": sniffed_kind},
            )

        return sniffed_kind

    def normalize(self, data: bytes, declared_mime_type: Optional[str]) -> NormalizedImage:
        """
        Validate and convert an artifact to a single PNG image.

        Raises:
            ValidationError: See validate()
            ConversionError: If the artifact cannot be decoded or rasterized
        """
        kind = self.validate(data, declared_mime_type)

        if kind == "pdf":
            image = self._rasterize_first_page(data)
            page_count = image.info.pop("page_count", 1)
            source_mime = PDF_MIME
        else:
            image = self._decode_image(data)
            page_count = 1
            source_mime = f"image/{kind}"

        try:
            content = _encode_png(image)
            width, height = image.size
        except (OSError, ValueError) as e:
            raise ConversionError("Failed to encode normalized image", details={"error": str(e)})
        finally:
            image.close()

        digest = hashlib.sha256(content).hexdigest()
        logger.info(
            f"Normalized {source_mime} upload ({len(data)} bytes) to PNG "
            f"{width}x{height}, digest={digest[:12]}"
        )
        return NormalizedImage(
            content=content,
            width=width,
            height=height,
            source_mime_type=source_mime,
            page_count=page_count,
            digest=digest,
        )

    def _decode_image(self, data: bytes) -> Image.Image:
        try:
            with warnings.catch_warnings():
                # Oversized rasters are refused outright, not decoded with a warning
                warnings.simplefilter("error", Image.DecompressionBombWarning)
                with Image.open(io.BytesIO(data)) as img:
                    img.load()
                    oriented = ImageOps.exif_transpose(img)
                    return oriented.convert("RGB")
        except (Image.DecompressionBombError, Image.DecompressionBombWarning) as e:
            logger.warning(f"Image rejected as too large to decode: {e}")
            raise ConversionError(
                "Uploaded image has too many pixels to process",
                details={"error": str(e), "max_pixels": Image.MAX_IMAGE_PIXELS},
            )
        except (UnidentifiedImageError, OSError, ValueError) as e:
            logger.warning(f"Image decode failed: {e}")
            raise ConversionError("Uploaded image could not be decoded", details={"error": str(e)})

    def _rasterize_first_page(self, data: bytes) -> Image.Image:
        # Intermediate page files live only inside this directory
        with tempfile.TemporaryDirectory(prefix="cheque-pdf-") as workdir:
            try:
                info = pdfinfo_from_bytes(data)
                page_count = int(info.get("Pages", 0))
            except (PDFInfoNotInstalledError, PDFPageCountError, PDFSyntaxError, ValueError) as e:
                logger.warning(f"PDF inspection failed: {e}")
                raise ConversionError("PDF document could not be read", details={"error": str(e)})

            if page_count < 1:
                raise ConversionError("PDF contains no pages")

            logger.info(f"PDF contains {page_count} pages, converting first page to image")

            try:
                pages = convert_from_bytes(
                    data,
                    dpi=self.dpi,
                    first_page=1,
                    last_page=1,
                    fmt="png",
                    output_folder=workdir,
                )
            except (PDFInfoNotInstalledError, PDFPageCountError, PDFSyntaxError, OSError, ValueError) as e:
                logger.warning(f"PDF rasterization failed: {e}")
                raise ConversionError("PDF page could not be rasterized", details={"error": str(e)})

            if not pages:
                raise ConversionError("PDF rasterization produced no image")

            try:
                first = pages[0]
                first.load()
                image = first.convert("RGB")
            except (OSError, ValueError) as e:
                raise ConversionError("PDF rasterization produced an unusable image", details={"error": str(e)})
            finally:
                for page in pages:
                    page.close()

        if image.width == 0 or image.height == 0:
            image.close()
            raise ConversionError("PDF rasterization produced an empty image")

        image.info["page_count"] = page_count
        return image

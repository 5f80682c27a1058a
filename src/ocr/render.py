"""
Page Rendering
==============

Turns a fetched document into the single image the classifier looks at.

Classification only needs a representative sample, so a paginated
document contributes exactly its first page, rasterised at a fixed
resolution and encoded as JPEG at a fixed quality. Image formats are
already acceptable to the OCR provider and pass through untouched.
"""

from __future__ import annotations

from io import BytesIO

import structlog
from pdf2image import convert_from_bytes
from pdf2image.exceptions import PDFInfoNotInstalledError, PDFPageCountError, PDFSyntaxError
from PIL import Image

from common.errors import RenderFailure, UnsupportedInput
from common.models import PAGINATED_EXTENSIONS, SUPPORTED_EXTENSIONS

log = structlog.get_logger(__name__)

RENDER_DPI = 300
RENDER_QUALITY = 0.95


def render_first_page(content: bytes) -> bytes:
    """
    Render page one of a PDF to JPEG bytes at ``RENDER_DPI``/``RENDER_QUALITY``.

    Raises ``RenderFailure`` when the document cannot be rasterised.
    """
    try:
        pages = convert_from_bytes(
            content,
            dpi=RENDER_DPI,
            first_page=1,
            last_page=1,
        )
    except (PDFInfoNotInstalledError, PDFPageCountError, PDFSyntaxError) as e:
        raise RenderFailure(f"Unable to render PDF: {e}") from e

    if not pages:
        raise RenderFailure("PDF rendered no pages")

    page = pages[0]
    try:
        buffer = BytesIO()
        page.convert("RGB").save(
            buffer,
            format="JPEG",
            quality=round(RENDER_QUALITY * 100),
            dpi=(RENDER_DPI, RENDER_DPI),
        )
    except (OSError, ValueError) as e:
        raise RenderFailure(f"Unable to encode rendered page: {e}") from e
    finally:
        for image in pages:
            image.close()
    return buffer.getvalue()


def prepare_sample(content: bytes, extension: str) -> bytes:
    """Return the image bytes to send to OCR for a document of ``extension``."""
    if extension not in SUPPORTED_EXTENSIONS:
        raise UnsupportedInput(f"Unsupported file type: {extension!r}")
    if extension in PAGINATED_EXTENSIONS:
        log.info("Rendering first page", extension=extension, dpi=RENDER_DPI)
        return render_first_page(content)
    return content


def open_image(content: bytes) -> Image.Image:
    """Decode image bytes fully into memory, raising ``RenderFailure`` if unreadable."""
    try:
        image = Image.open(BytesIO(content))
        image.load()
    except (OSError, ValueError) as e:
        raise RenderFailure(f"Unable to open image: {e}") from e
    return image

"""
stamp_detector.normalizer — Document bytes → normalised raster pages.

The container type is sniffed from magic bytes first and from the declared
media type second.  Every page handed back has already been bounded with
:func:`~stamp_detector.features.resize_normalize`.

PDF policy
----------
1. Embedded raster images of up to ``max_pages`` pages are extracted.
2. If ``pdf_render_always`` is set, or step 1 found nothing and
   ``pdf_render_fallback`` is on, the first ``pdf_render_top_pages`` pages
   are also rasterized at ``pdf_render_dpi`` and appended (skipped once the
   time budget is exhausted).
"""

from __future__ import annotations

import logging
from typing import List, Optional

from .budget import TimeBudget
from .config import StampConfig
from .documents import (
    RasterImage,
    extract_embedded_images,
    extract_package_images,
    is_docx_package,
    render_pages,
)
from .errors import DocumentExtractionError, UnsupportedDocumentType
from .features import resize_normalize
from .utils import decode_image

logger = logging.getLogger(__name__)

PDF = "pdf"
DOCX = "docx"
IMAGE = "image"

_IMAGE_MAGIC = (
    b"\x89PNG\r\n\x1a\n",
    b"\xff\xd8\xff",          # JPEG
    b"GIF87a",
    b"GIF89a",
    b"BM",                    # BMP
    b"II*\x00",               # TIFF little-endian
    b"MM\x00*",               # TIFF big-endian
)


def _looks_like_image(buf: bytes) -> bool:
    if buf.startswith(_IMAGE_MAGIC):
        return True
    return len(buf) >= 12 and buf[:4] == b"RIFF" and buf[8:12] == b"WEBP"


def sniff_container(buffer: bytes, declared_media_type: Optional[str]) -> str:
    """Return ``"pdf"``, ``"docx"`` or ``"image"`` for *buffer*.

    Raises
    ------
    UnsupportedDocumentType
        If neither the bytes nor the declared media type are recognised.
    """
    mime = (declared_media_type or "").lower()
    if buffer[:4] == b"%PDF":
        return PDF
    if is_docx_package(buffer):
        return DOCX
    if _looks_like_image(buffer):
        return IMAGE
    if "pdf" in mime:
        return PDF
    if "word" in mime or "officedocument" in mime:
        return DOCX
    if mime.startswith("image/"):
        return IMAGE
    raise UnsupportedDocumentType(f"Unsupported document type: {declared_media_type or 'unknown'}")


def _normalized(images: List[RasterImage], max_dim: int) -> List[RasterImage]:
    return [
        RasterImage(resize_normalize(img.pixels, max_dim), img.source, img.origin_page)
        for img in images
    ]


def render_document_pages(buffer: bytes, config: StampConfig) -> List[RasterImage]:
    """Normalised full-page rasters of the first ``pdf_render_top_pages`` pages."""
    count = min(config.max_pages, max(1, config.pdf_render_top_pages))
    return _normalized(render_pages(buffer, config.pdf_render_dpi, count), config.max_dim)


def normalize_to_images(
    buffer: bytes,
    declared_media_type: Optional[str],
    budget: TimeBudget,
    config: StampConfig,
) -> List[RasterImage]:
    """Convert a document into an ordered list of normalised raster pages.

    Parameters
    ----------
    buffer : bytes
        Raw document bytes.
    declared_media_type : str, optional
        Media type reported by the uploader (e.g. ``"application/pdf"``).
    budget : TimeBudget
        Deadline of the current detection; PDF rendering is skipped once
        it is exhausted.
    config : StampConfig
        Page caps, render policy and normalisation size.

    Returns
    -------
    list of RasterImage
        Possibly empty.

    Raises
    ------
    UnsupportedDocumentType
        For anything that is not a PDF, DOCX or raster image.
    DocumentExtractionError
        If the container cannot be parsed.
    """
    kind = sniff_container(buffer, declared_media_type)

    if kind == PDF:
        pages = _normalized(
            extract_embedded_images(buffer, config.max_pages)[: config.max_pages],
            config.max_dim,
        )
        if config.pdf_render_always or (config.pdf_render_fallback and not pages):
            if budget.over():
                logger.warning("Skipping PDF rendering: time budget exhausted")
            else:
                try:
                    pages.extend(render_document_pages(buffer, config))
                except DocumentExtractionError as exc:
                    if not pages:
                        raise
                    logger.warning("PDF rendering failed, keeping embedded images: %s", exc)
        return pages

    if kind == DOCX:
        return _normalized(extract_package_images(buffer, config.max_pages), config.max_dim)

    try:
        pixels = decode_image(buffer)
    except Exception as exc:
        raise DocumentExtractionError(f"Cannot decode image: {exc}") from exc
    return [RasterImage(resize_normalize(pixels, config.max_dim), "image")]


def is_pdf_kind(buffer: bytes, declared_media_type: Optional[str]) -> bool:
    try:
        return sniff_container(buffer, declared_media_type) == PDF
    except UnsupportedDocumentType:
        return False

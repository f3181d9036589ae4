"""
stamp_detector.documents — Container collaborators (PDF, DOCX, images).

These are the narrow adapters between raw document bytes and raster
pages.  The engine never looks inside PDF or DOCX structures itself; it
only consumes the ``RasterImage`` lists returned here.

* :func:`extract_embedded_images`: XObject and inline images of each PDF
  page, through PyMuPDF.
* :func:`render_pages`: full-page PDF rasterization at a fixed DPI.
* :func:`extract_package_images`: ``word/media/*`` entries of a DOCX
  package.
"""

from __future__ import annotations

import io
import logging
import re
import zipfile
from dataclasses import dataclass
from typing import List, Optional, Tuple

import fitz  # PyMuPDF
import numpy as np

from .errors import DocumentExtractionError
from .utils import decode_image, ensure_rgb

logger = logging.getLogger(__name__)

DOCX_MEDIA_RE = re.compile(r"^word/media/.+\.(png|jpe?g|webp|gif|bmp)$", re.IGNORECASE)


@dataclass
class RasterImage:
    """One raster page handed to the feature extractor.

    Attributes
    ----------
    pixels : np.ndarray
        ``(H, W, 3)`` RGB ``uint8`` buffer.
    source : str
        ``"image"`` | ``"embedded"`` | ``"rendered"`` | ``"package"``.
    origin_page : int, optional
        Zero-based PDF page the raster came from, when known.
    """

    pixels: np.ndarray
    source: str
    origin_page: Optional[int] = None

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])

    @property
    def channels(self) -> int:
        return 1 if self.pixels.ndim == 2 else int(self.pixels.shape[2])


# ---------------------------------------------------------------------------
# PDF
# ---------------------------------------------------------------------------

def _open_pdf(pdf_bytes: bytes) -> "fitz.Document":
    try:
        return fitz.open(stream=pdf_bytes, filetype="pdf")
    except Exception as exc:
        raise DocumentExtractionError(f"Cannot open PDF: {exc}") from exc


def _pixmap_to_rgb(pix: "fitz.Pixmap") -> np.ndarray:
    if pix.n - pix.alpha > 3:  # CMYK → RGB
        pix = fitz.Pixmap(fitz.csRGB, pix)
    arr = np.frombuffer(pix.samples, dtype=np.uint8).reshape(pix.height, pix.width, pix.n)
    return ensure_rgb(arr.copy())


def _inline_images(page: "fitz.Page", xobject_sizes: List[Tuple[int, int]]) -> List[np.ndarray]:
    """Images painted on *page* that are not among its XObjects.

    PyMuPDF reports every displayed image (XObject or inline) as an image
    block of the text dictionary.  Blocks whose pixel size matches an
    XObject already extracted are consumed against it, the rest are inline.
    """
    remaining = list(xobject_sizes)
    out: List[np.ndarray] = []
    for block in page.get_text("dict").get("blocks", []):
        if block.get("type") != 1:
            continue
        size = (int(block.get("width", 0)), int(block.get("height", 0)))
        if size in remaining:
            remaining.remove(size)
            continue
        data = block.get("image")
        if not data:
            continue
        try:
            out.append(decode_image(bytes(data)))
        except Exception as exc:
            logger.warning("Skipping undecodable inline image: %s", exc)
    return out


def extract_embedded_images(pdf_bytes: bytes, max_pages: int) -> List[RasterImage]:
    """Extract embedded raster images from the first *max_pages* pages.

    Raises
    ------
    DocumentExtractionError
        If the PDF cannot be opened.
    """
    doc = _open_pdf(pdf_bytes)
    images: List[RasterImage] = []
    try:
        for page_no in range(min(doc.page_count, max_pages)):
            page = doc[page_no]
            sizes: List[Tuple[int, int]] = []
            for (xref, *_rest) in page.get_images(full=True):
                try:
                    pix = fitz.Pixmap(doc, xref)
                    arr = _pixmap_to_rgb(pix)
                except Exception as exc:
                    logger.warning("Skipping image xref=%s on page %d: %s", xref, page_no, exc)
                    continue
                finally:
                    pix = None
                sizes.append((arr.shape[1], arr.shape[0]))
                images.append(RasterImage(arr, "embedded", page_no))
            try:
                for arr in _inline_images(page, sizes):
                    images.append(RasterImage(arr, "embedded", page_no))
            except Exception as exc:
                logger.warning("Inline image scan failed on page %d: %s", page_no, exc)
    finally:
        doc.close()
    return images


def render_pages(pdf_bytes: bytes, dpi: int, max_pages: int) -> List[RasterImage]:
    """Rasterize the first *max_pages* pages at *dpi* on a white background.

    Raises
    ------
    DocumentExtractionError
        If the PDF cannot be opened or a page fails to render.
    """
    doc = _open_pdf(pdf_bytes)
    zoom = dpi / 72.0
    out: List[RasterImage] = []
    try:
        for page_no in range(min(doc.page_count, max_pages)):
            try:
                pix = doc[page_no].get_pixmap(matrix=fitz.Matrix(zoom, zoom), alpha=False)
                arr = _pixmap_to_rgb(pix)
            except Exception as exc:
                raise DocumentExtractionError(f"Cannot render page {page_no}: {exc}") from exc
            finally:
                pix = None
            out.append(RasterImage(arr, "rendered", page_no))
    finally:
        doc.close()
    return out


# ---------------------------------------------------------------------------
# DOCX
# ---------------------------------------------------------------------------

def is_docx_package(data: bytes) -> bool:
    """``True`` if *data* is a ZIP container holding ``[Content_Types].xml``."""
    if not data.startswith(b"PK"):
        return False
    try:
        with zipfile.ZipFile(io.BytesIO(data)) as zf:
            return "[Content_Types].xml" in zf.namelist()
    except zipfile.BadZipFile:
        return False


def extract_package_images(docx_bytes: bytes, max_entries: int) -> List[RasterImage]:
    """Decode up to *max_entries* media images of a DOCX package, by entry name."""
    try:
        zf = zipfile.ZipFile(io.BytesIO(docx_bytes))
    except zipfile.BadZipFile as exc:
        raise DocumentExtractionError(f"Cannot open DOCX package: {exc}") from exc

    out: List[RasterImage] = []
    with zf:
        names = sorted(n for n in zf.namelist() if DOCX_MEDIA_RE.match(n))
        for name in names[:max_entries]:
            try:
                out.append(RasterImage(decode_image(zf.read(name)), "package"))
            except Exception as exc:
                logger.warning("Skipping undecodable package entry %s: %s", name, exc)
    return out

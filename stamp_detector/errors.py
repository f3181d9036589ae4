"""Exception types raised by the stamp detector.

Only hard failures are exceptions.  Soft outcomes (no stamps, no images,
exhausted time budget, no match) are reported through ``DetectionResult``.
"""


class StampDetectionError(Exception):
    """Base class for hard detection failures."""
    pass


class UnsupportedDocumentType(StampDetectionError):
    """The input is neither a PDF, a DOCX package nor a raster image."""
    pass


class DocumentExtractionError(StampDetectionError):
    """The input container could not be parsed or rasterized."""
    pass

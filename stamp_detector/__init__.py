from .config import StampConfig, load_config
from .errors import DocumentExtractionError, StampDetectionError, UnsupportedDocumentType
from .references import StampReference, StampStore, load_references
from .detector import (
    DetectionResult,
    StampDetector,
    current_store,
    detect_stamp_on_buffer,
    init_stamps,
    reset_stamps,
)

__all__ = [
    "StampConfig",
    "load_config",
    "StampDetectionError",
    "UnsupportedDocumentType",
    "DocumentExtractionError",
    "StampReference",
    "StampStore",
    "load_references",
    "DetectionResult",
    "StampDetector",
    "detect_stamp_on_buffer",
    "init_stamps",
    "current_store",
    "reset_stamps",
]

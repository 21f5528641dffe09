"""Exception types raised by facerec.

Per-entry failures (no face, unreadable image, incomplete transform) are
recoverable and get contained by the dataset conversion; the rest are fatal.
"""

from __future__ import annotations

from typing import Any, Optional


class FaceRecError(Exception):
    """Base class for all facerec errors."""


class ConfigError(FaceRecError, ValueError):
    """Invalid configuration value (unknown model name, empty priority list...)."""


class InitializationError(FaceRecError):
    """A model referenced by the configuration was never successfully initialized."""


class InvalidThreshold(FaceRecError, ValueError):
    def __init__(self, threshold: Any):
        self.threshold = threshold
        super().__init__(f"Distance threshold must be a finite non-negative number, got {threshold!r}")


class NoFaceFound(FaceRecError):
    def __init__(self, image_ref: Optional[Any] = None):
        self.image_ref = image_ref
        super().__init__(f"No Face Found: {image_ref}")


class NoFacesFound(FaceRecError):
    def __init__(self, image_ref: Optional[Any] = None):
        self.image_ref = image_ref
        super().__init__(f"No Faces Found: {image_ref}")


class ImageLoadError(FaceRecError):
    def __init__(self, reference: Any, cause: Optional[BaseException] = None):
        self.reference = reference
        self.cause = cause
        msg = f"Could not fetch image: {reference}"
        if cause is not None:
            msg += f". {cause}"
        super().__init__(msg)


class TransformIncomplete(FaceRecError):
    """A bulk-import transform produced a result without a label or image reference."""

    def __init__(self, entry: Any, result: Any):
        self.entry = entry
        self.result = result
        super().__init__(f"Transform did not produce label and image reference: {result!r}")


class RecordFormatError(FaceRecError, ValueError):
    """Serialized recognizer record is malformed or written by an incompatible version."""

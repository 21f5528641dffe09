from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

import numpy as np

from facerec.utils.math import as_descriptor

# Reserved label reported when the nearest gallery face is farther than the threshold.
UNKNOWN_LABEL = "unknown"


@dataclass(frozen=True)
class BoundingBox:
    x1: float
    y1: float
    x2: float
    y2: float

    @classmethod
    def from_xyxy(cls, xyxy) -> "BoundingBox":
        x1, y1, x2, y2 = [float(v) for v in np.asarray(xyxy, dtype=float).reshape(-1)[:4]]
        return cls(x1, y1, x2, y2)

    @property
    def width(self) -> float:
        return max(0.0, self.x2 - self.x1)

    @property
    def height(self) -> float:
        return max(0.0, self.y2 - self.y1)

    @property
    def area(self) -> float:
        return self.width * self.height

    def as_tuple(self) -> Tuple[float, float, float, float]:
        return (self.x1, self.y1, self.x2, self.y2)

    def as_int(self) -> Tuple[int, int, int, int]:
        return (int(self.x1), int(self.y1), int(self.x2), int(self.y2))

    def shifted(self, dx: float, dy: float, sx: float = 1.0, sy: float = 1.0) -> "BoundingBox":
        """Map a box from crop coordinates back to the full image."""
        return BoundingBox(self.x1 * sx + dx, self.y1 * sy + dy, self.x2 * sx + dx, self.y2 * sy + dy)


@dataclass(frozen=True, eq=False)
class Detection:
    """One detected face: descriptor plus pass-through detection metadata."""

    descriptor: np.ndarray
    box: Optional[BoundingBox] = None
    landmarks: Optional[np.ndarray] = None
    score: float = 1.0
    model: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, "descriptor", as_descriptor(self.descriptor))
        if self.landmarks is not None:
            object.__setattr__(self, "landmarks", np.asarray(self.landmarks, dtype=float).reshape(-1, 2))


@dataclass(frozen=True)
class DatasetEntry:
    label: str
    image_ref: Any


@dataclass(frozen=True, eq=False)
class MatchResult:
    label: str
    distance: float
    confidence: float
    percent_confidence: int
    detection: Optional[Detection] = field(default=None, repr=False)

    @property
    def known(self) -> bool:
        return self.label != UNKNOWN_LABEL

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "label": self.label,
            "distance": float(self.distance),
            "confidence": float(self.confidence),
            "percent_confidence": int(self.percent_confidence),
        }
        det = self.detection
        if det is not None:
            out["bbox"] = [int(x) for x in det.box.as_int()] if det.box is not None else None
            out["score"] = float(det.score)
            out["model"] = det.model
        return out

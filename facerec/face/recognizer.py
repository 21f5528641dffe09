from __future__ import annotations

import json
import math

from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np

from facerec.config import check_threshold
from facerec.errors import RecordFormatError
from facerec.face.fallback import ModelFallbackPolicy
from facerec.face.gallery import Gallery, LabeledDescriptorSet
from facerec.face.matcher import EuclideanMatcher
from facerec.face.types import UNKNOWN_LABEL, Detection, MatchResult
from facerec.utils.log import get_logger

logger = get_logger(__name__)

# Version of the serialized record layout. Records without the field are
# treated as the legacy (unversioned) layout, which is otherwise identical.
SCHEMA_VERSION = 1

Query = Union[Detection, np.ndarray, Sequence[float]]


def percent_confidence(confidence: float) -> int:
    """round(confidence * 100), halves rounded up, deliberately not clamped to [0, 100]."""
    return int(math.floor(float(confidence) * 100.0 + 0.5))


class Recognizer:
    """Immutable nearest-match recognizer over a labeled gallery.

    A query is labeled with the gallery set holding the closest descriptor
    (Euclidean distance) unless that distance exceeds the threshold, in which
    case it is reported as "unknown". Instances hold no mutable state and may be
    shared between threads.
    """

    __slots__ = ("_gallery", "_threshold", "_matcher")

    def __init__(self, gallery: Union[Gallery, Iterable[LabeledDescriptorSet]], threshold: float, device: str = "auto"):
        threshold = check_threshold(threshold)
        if not isinstance(gallery, Gallery):
            gallery = Gallery(tuple(gallery))
        if len(gallery) == 0:
            raise ValueError("Recognizer needs at least one labeled descriptor set")
        object.__setattr__(self, "_gallery", gallery)
        object.__setattr__(self, "_threshold", threshold)
        object.__setattr__(self, "_matcher", EuclideanMatcher(gallery, device=device))
        logger.debug(f"new recognizer: {len(gallery)} sets, threshold={threshold}")

    def __setattr__(self, name, value):
        raise AttributeError("Recognizer is immutable")

    @classmethod
    def from_report(cls, report, threshold: float, merge_labels: bool = False) -> "Recognizer":
        """Build from a GalleryBuildReport, optionally pooling sets that share a label."""
        gallery = report.merge_by_label() if merge_labels else report.gallery
        return cls(gallery, threshold)

    @property
    def gallery(self) -> Gallery:
        return self._gallery

    @property
    def threshold(self) -> float:
        return self._threshold

    @property
    def labels(self) -> List[str]:
        return self._gallery.labels

    def _result(self, set_idx: int, distance: float, detection: Optional[Detection]) -> MatchResult:
        distance = float(distance)
        # Inclusive boundary: exactly-at-threshold is still a known match.
        label = self._gallery[set_idx].label if distance <= self._threshold else UNKNOWN_LABEL
        confidence = 1.0 - distance
        return MatchResult(
            label=label,
            distance=distance,
            confidence=confidence,
            percent_confidence=percent_confidence(confidence),
            detection=detection,
        )

    @staticmethod
    def _split(query: Query) -> Tuple[np.ndarray, Optional[Detection]]:
        if isinstance(query, Detection):
            return query.descriptor, query
        return np.asarray(query, dtype=np.float64).reshape(-1), None

    def match_one(self, query: Query) -> MatchResult:
        """Best label for one detection (or bare descriptor)."""
        descriptor, detection = self._split(query)
        set_idx, distance = self._matcher.nearest(descriptor)
        result = self._result(set_idx, distance, detection)
        logger.debug(f"match: {result.label} distance={result.distance:.4f}")
        return result

    def match_all(self, queries: Sequence[Query]) -> List[MatchResult]:
        """match_one over every query, in input order."""
        queries = list(queries)
        if not queries:
            return []
        split = [self._split(q) for q in queries]
        set_ids, dists = self._matcher.nearest_batch(np.stack([d for d, _ in split], axis=0))
        return [self._result(int(i), float(d), det) for i, d, (_, det) in zip(set_ids, dists, split)]

    def recognize_image(self, image: np.ndarray, policy: ModelFallbackPolicy, image_ref: Optional[Any] = None) -> List[MatchResult]:
        """Detect every face in `image` and match each; raises NoFacesFound if there are none."""
        detections = policy.extract_all_descriptors(image, image_ref)
        results = self.match_all(detections)
        for i, r in enumerate(results):
            logger.info(f"检测到人脸 {i + 1}: {r.label} (距离: {r.distance:.4f}, {r.percent_confidence}%)")
        return results

    def top_k(self, query: Query, k: int = 5) -> List[Tuple[str, float]]:
        """Closest `k` gallery sets as (label, distance), nearest first."""
        descriptor, _ = self._split(query)
        best = self._matcher.set_distances(descriptor, len(self._gallery))
        order = np.argsort(best, kind="stable")[: max(1, int(k))]
        return [(self._gallery[int(i)].label, float(best[int(i)])) for i in order]

    # -- serialization -------------------------------------------------------

    def serialize(self) -> Dict[str, Any]:
        return {
            "schemaVersion": SCHEMA_VERSION,
            "descriptorDim": int(self._matcher.dim),
            "labeledDescriptors": [
                {"label": s.label, "descriptors": [d.tolist() for d in s.descriptors]} for s in self._gallery
            ],
            "distanceThreshold": float(self._threshold),
        }

    @classmethod
    def deserialize(cls, record: Mapping[str, Any]) -> "Recognizer":
        if not isinstance(record, Mapping):
            raise RecordFormatError(f"Recognizer record must be a mapping, got {type(record).__name__}")

        version = record.get("schemaVersion")
        if version is not None:
            if not isinstance(version, int) or isinstance(version, bool) or version < 1:
                raise RecordFormatError(f"Invalid schemaVersion: {version!r}")
            if version > SCHEMA_VERSION:
                raise RecordFormatError(
                    f"Record schemaVersion {version} is newer than supported version {SCHEMA_VERSION}"
                )

        if "distanceThreshold" not in record:
            raise RecordFormatError("Record is missing distanceThreshold")
        entries = record.get("labeledDescriptors")
        if not isinstance(entries, list) or not entries:
            raise RecordFormatError("Record labeledDescriptors must be a non-empty list")

        sets = []
        for i, entry in enumerate(entries):
            if not isinstance(entry, Mapping) or "label" not in entry or "descriptors" not in entry:
                raise RecordFormatError(f"labeledDescriptors[{i}] needs label and descriptors")
            try:
                descs = np.asarray(entry["descriptors"], dtype=np.float64)
                if descs.ndim != 2:
                    raise ValueError(f"descriptors must be a list of vectors, got ndim={descs.ndim}")
                sets.append(LabeledDescriptorSet(entry["label"], tuple(descs)))
            except (TypeError, ValueError) as e:
                raise RecordFormatError(f"labeledDescriptors[{i}]: {e}") from e

        dims = {s.dim for s in sets}
        if len(dims) != 1:
            raise RecordFormatError(f"Record mixes descriptor lengths {sorted(dims)}")
        declared = record.get("descriptorDim")
        if declared is not None and int(declared) != dims.pop():
            raise RecordFormatError(f"descriptorDim {declared} does not match stored descriptors")

        return cls(Gallery(tuple(sets)), record["distanceThreshold"])

    def to_json(self, indent: Optional[int] = None) -> str:
        return json.dumps(self.serialize(), ensure_ascii=False, indent=indent)

    @classmethod
    def from_json(cls, text: str) -> "Recognizer":
        try:
            record = json.loads(text)
        except json.JSONDecodeError as e:
            raise RecordFormatError(f"Recognizer record is not valid JSON: {e}") from e
        return cls.deserialize(record)

    def save(self, path: Union[str, Path]) -> Path:
        fp = Path(path)
        fp.parent.mkdir(parents=True, exist_ok=True)
        fp.write_text(self.to_json(), encoding="utf-8")
        logger.info(f"识别器已保存至: {fp}")
        return fp

    @classmethod
    def load(cls, path: Union[str, Path]) -> "Recognizer":
        return cls.from_json(Path(path).read_text(encoding="utf-8"))

    def __eq__(self, other) -> bool:
        if not isinstance(other, Recognizer):
            return NotImplemented
        return self.serialize() == other.serialize()

    __hash__ = None

    def __repr__(self) -> str:
        return f"Recognizer(sets={len(self._gallery)}, threshold={self._threshold})"

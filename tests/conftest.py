from __future__ import annotations

from pathlib import Path

import sys
from typing import Callable, Dict, List, Optional, Union

import numpy as np
import pytest

# Ensure repo root is on sys.path so tests can import `facerec` without installing it.
repo_root = Path(__file__).resolve().parents[1]
if str(repo_root) not in sys.path:
    sys.path.insert(0, str(repo_root))

from facerec.config import DetectorModel
from facerec.errors import ImageLoadError
from facerec.face.extractor import DescriptorExtractor
from facerec.face.image_source import ImageSource
from facerec.face.types import BoundingBox, Detection


def make_detection(descriptor, model: str = "insightface", box=(10, 10, 60, 70)) -> Detection:
    return Detection(
        descriptor=np.asarray(descriptor, dtype=np.float64),
        box=BoundingBox(*[float(v) for v in box]),
        landmarks=np.array([[20, 30], [50, 30], [35, 45], [25, 60], [45, 60]], dtype=float),
        score=0.9,
        model=model,
    )


Responder = Union[Optional[Detection], Callable[[object], Optional[Detection]]]


class FakeExtractor(DescriptorExtractor):
    """In-memory extractor: each model answers from a fixed response or a callable(image)."""

    def __init__(
        self,
        responses: Optional[Dict[DetectorModel, Responder]] = None,
        all_faces: Optional[Callable[[object], List[Detection]]] = None,
        initialized=(DetectorModel.INSIGHTFACE,),
        primary: DetectorModel = DetectorModel.INSIGHTFACE,
        fail_to_load=(),
    ):
        self.responses = dict(responses or {})
        self.all_faces = all_faces or (lambda image: [])
        self._initialized = set(initialized)
        self._primary = primary
        self.fail_to_load = set(fail_to_load)
        self.calls: List[DetectorModel] = []

    def initialize_model(self, model, source=None) -> bool:
        model = DetectorModel.parse(model)
        if model in self.fail_to_load:
            return False
        self._initialized.add(model)
        return True

    def is_initialized(self, model) -> bool:
        return DetectorModel.parse(model) in self._initialized

    @property
    def primary_model(self) -> DetectorModel:
        return self._primary

    def detect_single_face(self, image, model):
        model = DetectorModel.parse(model)
        self.calls.append(model)
        resp = self.responses.get(model)
        return resp(image) if callable(resp) else resp

    def detect_all_faces(self, image):
        return list(self.all_faces(image))


class FakeImageSource(ImageSource):
    """Returns the reference itself as the "image"; refs in `broken` raise ImageLoadError."""

    def __init__(self, broken=()):
        self.broken = set(broken)
        self.loaded: List[object] = []

    def fetch_or_load(self, ref):
        if ref in self.broken:
            raise ImageLoadError(ref, OSError("unreadable"))
        self.loaded.append(ref)
        return ref


@pytest.fixture
def fake_image_source() -> FakeImageSource:
    return FakeImageSource()

from __future__ import annotations

from typing import Any, List, Optional, Sequence, Tuple, Union

import numpy as np

from facerec.config import DetectorModel, FaceRecConfig, parse_models
from facerec.errors import InitializationError, NoFaceFound, NoFacesFound
from facerec.face.extractor import DescriptorExtractor
from facerec.face.types import Detection
from facerec.utils.log import get_logger

logger = get_logger(__name__)


class ModelFallbackPolicy:
    """Try detector models in priority order until one finds a face.

    The first model that detects a face wins, even if a later model would have
    produced a higher-scoring detection: cheap models go first in the list.
    """

    def __init__(self, extractor: DescriptorExtractor, model_priority: Sequence[Union[str, DetectorModel]]):
        self.extractor = extractor
        self.model_priority: Tuple[DetectorModel, ...] = parse_models(list(model_priority))
        if not self.model_priority:
            raise InitializationError("Model priority list is empty")

        # Configuration integrity is checked once, here, never per extraction call.
        for model in self.model_priority + (extractor.primary_model,):
            loaded = extractor.is_initialized(model)
            logger.debug(f"checking if {model.value} is loaded: {loaded}")
            if not loaded:
                raise InitializationError(
                    f"A model in the specified model priority list is not loaded: {model.value}"
                )

    @classmethod
    def from_config(cls, extractor: DescriptorExtractor, config: FaceRecConfig) -> "ModelFallbackPolicy":
        return cls(extractor, config.model_priority)

    def extract_single_descriptor(self, image: np.ndarray, image_ref: Optional[Any] = None) -> Detection:
        """Return the detection of the first model (in priority order) that finds a face."""
        for model in self.model_priority:
            logger.debug(f"trying model: {model.value}")
            detection = self.extractor.detect_single_face(image, model)
            if detection is None:
                logger.debug(f"{model.value} did not detect face, continuing down model priority")
                continue
            logger.debug(f"{model.value} result: score={detection.score:.3f}")
            return detection
        raise NoFaceFound(image_ref)

    def extract_all_descriptors(self, image: np.ndarray, image_ref: Optional[Any] = None) -> List[Detection]:
        """All faces found by the extractor's primary model; no per-model fallback."""
        detections = list(self.extractor.detect_all_faces(image) or [])
        logger.debug(f"{self.extractor.primary_model.value} detected {len(detections)} faces")
        if not detections:
            raise NoFacesFound(image_ref)
        return detections

"""
facerec
=======

Face recognition by nearest-descriptor matching against a labeled gallery,
with a priority-ordered fallback chain across detector models.

USAGE:
------
    from facerec import (
        Dataset, FaceRecConfig, FileImageSource, InsightFaceExtractor,
        ModelFallbackPolicy, Recognizer, initialize_models,
    )

    config = FaceRecConfig().validate()
    extractor = InsightFaceExtractor(config)
    initialize_models(extractor, config)
    policy = ModelFallbackPolicy.from_config(extractor, config)

    dataset = Dataset.from_directory("data/id_photo")
    report = dataset.to_gallery(policy, FileImageSource())
    recognizer = Recognizer(report.gallery, config.distance_threshold)
    results = recognizer.recognize_image(image, policy)
"""

from facerec.config import DetectorModel, FaceRecConfig
from facerec.errors import (
    ConfigError,
    FaceRecError,
    ImageLoadError,
    InitializationError,
    InvalidThreshold,
    NoFaceFound,
    NoFacesFound,
    RecordFormatError,
    TransformIncomplete,
)
from facerec.face.dataset import Dataset, GalleryBuildReport
from facerec.face.extractor import DescriptorExtractor, InsightFaceExtractor, initialize_models
from facerec.face.fallback import ModelFallbackPolicy
from facerec.face.gallery import Gallery, LabeledDescriptorSet
from facerec.face.image_source import AutoImageSource, FileImageSource, ImageSource, UrlImageSource
from facerec.face.recognizer import Recognizer
from facerec.face.types import UNKNOWN_LABEL, BoundingBox, DatasetEntry, Detection, MatchResult

__version__ = "1.0.0"
__all__ = [
    "AutoImageSource",
    "BoundingBox",
    "ConfigError",
    "Dataset",
    "DatasetEntry",
    "DescriptorExtractor",
    "Detection",
    "DetectorModel",
    "FaceRecConfig",
    "FaceRecError",
    "FileImageSource",
    "Gallery",
    "GalleryBuildReport",
    "ImageLoadError",
    "ImageSource",
    "InitializationError",
    "InsightFaceExtractor",
    "InvalidThreshold",
    "LabeledDescriptorSet",
    "MatchResult",
    "ModelFallbackPolicy",
    "NoFaceFound",
    "NoFacesFound",
    "Recognizer",
    "RecordFormatError",
    "TransformIncomplete",
    "UNKNOWN_LABEL",
    "UrlImageSource",
    "initialize_models",
]

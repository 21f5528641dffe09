from __future__ import annotations

import enum
import math
import os

from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Dict, Mapping, Optional, Sequence, Tuple, Union

from facerec.errors import ConfigError, InvalidThreshold

# 常见系统字体候选（macOS/Windows/Linux），按需扩展
FONT_LIST = [
    # macOS
    "/System/Library/Fonts/STHeiti Medium.ttc",
    "/System/Library/Fonts/AppleGothic.ttf",
    "/Library/Fonts/Arial Unicode.ttf",
    # Windows (注意字符串中的反斜杠已转义)
    "C:\\Windows\\Fonts\\msyh.ttc",
    "C:\\Windows\\Fonts\\arialuni.ttf",
    # 常见 Linux 字体：CJK 字体放在前面，否则会优先命中 DejaVuSans
    "/usr/share/fonts/opentype/noto/NotoSansCJK-Regular.ttc",
    "/usr/share/fonts/truetype/noto/NotoSansCJK-Regular.ttc",
    "/usr/share/fonts/truetype/wqy/wqy-zenhei.ttc",
    "/usr/share/fonts/truetype/dejavu/DejaVuSans.ttf",
    "/usr/share/fonts/truetype/freefont/FreeSans.ttf",
]

# Unit-norm ArcFace descriptors: distance 1.1 is roughly cosine similarity 0.4.
DEFAULT_DISTANCE_THRESHOLD = 1.1
DEFAULT_RECOGNITION_MODEL = "buffalo_l"


class DetectorModel(str, enum.Enum):
    """Supported face detector models, tried in the configured priority order.

    All of them feed the same InsightFace recognition model, so descriptors from
    different detectors live in one embedding space.
    """

    INSIGHTFACE = "insightface"
    INSIGHTFACE_TILED = "insightface_tiled"
    YOLO = "yolo"

    @classmethod
    def parse(cls, name: Union[str, "DetectorModel"]) -> "DetectorModel":
        if isinstance(name, cls):
            return name
        key = str(name).strip().lower()
        for model in cls:
            if model.value == key:
                return model
        known = ", ".join(m.value for m in cls)
        raise ConfigError(f"Unknown detector model {name!r} (known: {known})")


@dataclass(frozen=True)
class InsightFaceOptions:
    det_size: int = 640
    det_thresh: float = 0.5


@dataclass(frozen=True)
class TiledInsightFaceOptions:
    det_size: int = 640
    tile_size: int = 960
    tile_overlap: float = 0.25
    # Tiles overlap, so the same face is usually found twice.
    nms_iou: float = 0.30


@dataclass(frozen=True)
class YoloOptions:
    weights: str = "yolov8n-face.pt"
    conf: float = 0.12
    imgsz: int = 960
    # Proposals are padded before InsightFace re-detects inside them.
    box_padding: float = 0.15
    nms_iou: float = 0.30


ModelOptions = Union[InsightFaceOptions, TiledInsightFaceOptions, YoloOptions]

_DEFAULT_OPTIONS: Dict[DetectorModel, ModelOptions] = {
    DetectorModel.INSIGHTFACE: InsightFaceOptions(),
    DetectorModel.INSIGHTFACE_TILED: TiledInsightFaceOptions(),
    DetectorModel.YOLO: YoloOptions(),
}

_OPTIONS_TYPE = {model: type(opts) for model, opts in _DEFAULT_OPTIONS.items()}


def default_options(model: Union[str, DetectorModel]) -> ModelOptions:
    return _DEFAULT_OPTIONS[DetectorModel.parse(model)]


def parse_models(names: Union[str, Sequence[Union[str, DetectorModel]]]) -> Tuple[DetectorModel, ...]:
    """Parse a comma separated string or a sequence of model names."""
    if isinstance(names, str):
        names = [n for n in names.split(",") if n.strip()]
    return tuple(DetectorModel.parse(n) for n in names)


@dataclass(frozen=True)
class FaceRecConfig:
    """Immutable configuration handed to each component at construction."""

    recognition_model: str = DEFAULT_RECOGNITION_MODEL
    # Where InsightFace model packs live (None -> insightface default ~/.insightface).
    models_root: Optional[Path] = None
    device: str = "auto"
    enabled_models: Tuple[DetectorModel, ...] = (DetectorModel.INSIGHTFACE,)
    model_priority: Tuple[DetectorModel, ...] = (DetectorModel.INSIGHTFACE,)
    # Multi-face detection never falls back, it always uses this model.
    primary_model: DetectorModel = DetectorModel.INSIGHTFACE
    model_options: Mapping[DetectorModel, ModelOptions] = field(default_factory=dict)
    distance_threshold: float = DEFAULT_DISTANCE_THRESHOLD
    max_workers: int = 1

    def __post_init__(self):
        object.__setattr__(self, "enabled_models", parse_models(self.enabled_models))
        object.__setattr__(self, "model_priority", parse_models(self.model_priority))
        object.__setattr__(self, "primary_model", DetectorModel.parse(self.primary_model))
        opts = {DetectorModel.parse(k): v for k, v in dict(self.model_options).items()}
        object.__setattr__(self, "model_options", opts)
        if self.models_root is not None:
            object.__setattr__(self, "models_root", Path(self.models_root))

    def options_for(self, model: Union[str, DetectorModel]) -> ModelOptions:
        model = DetectorModel.parse(model)
        return self.model_options.get(model) or default_options(model)

    def validate(self) -> "FaceRecConfig":
        if not self.model_priority:
            raise ConfigError("model_priority must name at least one detector model")
        missing = [m.value for m in self.model_priority if m not in self.enabled_models]
        if missing:
            raise ConfigError(f"A model in the specified model priority list is not enabled: {missing}")
        if self.primary_model not in self.enabled_models:
            raise ConfigError(f"Primary model {self.primary_model.value} is not enabled")
        for model, opts in self.model_options.items():
            if not isinstance(opts, _OPTIONS_TYPE[model]):
                raise ConfigError(f"Options for {model.value} must be {_OPTIONS_TYPE[model].__name__}")
        if self.device not in ("auto", "cpu", "gpu"):
            raise ConfigError(f"Unknown device {self.device!r}")
        if int(self.max_workers) < 1:
            raise ConfigError("max_workers must be >= 1")
        check_threshold(self.distance_threshold)
        return self

    def with_overrides(self, **changes) -> "FaceRecConfig":
        return replace(self, **{k: v for k, v in changes.items() if v is not None})

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "FaceRecConfig":
        """Build a config from `FACEREC_*` environment variables over the defaults."""
        env = os.environ if environ is None else environ
        changes = {}
        if env.get("FACEREC_THRESHOLD"):
            changes["distance_threshold"] = float(env["FACEREC_THRESHOLD"])
        if env.get("FACEREC_DEVICE"):
            changes["device"] = env["FACEREC_DEVICE"]
        if env.get("FACEREC_MODELS"):
            priority = parse_models(env["FACEREC_MODELS"])
            changes["model_priority"] = priority
            changes["enabled_models"] = priority
            changes["primary_model"] = priority[0]
        if env.get("FACEREC_RECOGNITION_MODEL"):
            changes["recognition_model"] = env["FACEREC_RECOGNITION_MODEL"]
        if env.get("FACEREC_MODELS_ROOT"):
            changes["models_root"] = Path(env["FACEREC_MODELS_ROOT"])
        if env.get("FACEREC_WORKERS"):
            changes["max_workers"] = int(env["FACEREC_WORKERS"])
        return cls(**changes)


def check_threshold(threshold) -> float:
    """Return `threshold` as float, raising InvalidThreshold if negative or not finite."""
    try:
        value = float(threshold)
    except (TypeError, ValueError):
        raise InvalidThreshold(threshold) from None
    if math.isnan(value) or math.isinf(value) or value < 0:
        raise InvalidThreshold(threshold)
    return value

from __future__ import annotations

import io

from abc import ABC, abstractmethod
from contextlib import redirect_stderr, redirect_stdout
from typing import Any, Dict, List, Optional, Set, Tuple, Union

import cv2
import numpy as np
import torch

from facerec.config import (
    DetectorModel,
    FaceRecConfig,
    InsightFaceOptions,
    TiledInsightFaceOptions,
    YoloOptions,
)
from facerec.errors import InitializationError
from facerec.face.types import BoundingBox, Detection
from facerec.utils.log import get_logger, suppress_fds
from facerec.utils.math import bbox_iou_xyxy

logger = get_logger(__name__)

# 进程内模型缓存：减少重复初始化耗时（例如 pytest 多用例/多次构造 extractor）。
# 缓存 key 需要包含会影响输出的关键参数（model name/providers/ctx_id/det_size）。
_FACEAPP_CACHE: Dict[Tuple, Any] = {}
_YOLO_CACHE: Dict[str, Any] = {}


class DescriptorExtractor(ABC):
    """Abstract face detector / descriptor extractor.

    A model must be initialized before any detection call references it.
    """

    @abstractmethod
    def initialize_model(self, model: DetectorModel, source: Optional[str] = None) -> bool:
        """Load `model` (optionally from `source`); return False if it could not be loaded."""

    @abstractmethod
    def is_initialized(self, model: DetectorModel) -> bool:
        ...

    @abstractmethod
    def detect_single_face(self, image: np.ndarray, model: DetectorModel) -> Optional[Detection]:
        """Best single face found by `model`, or None."""

    @property
    @abstractmethod
    def primary_model(self) -> DetectorModel:
        """Model used for multi-face detection."""

    @abstractmethod
    def detect_all_faces(self, image: np.ndarray) -> List[Detection]:
        """All faces found by the designated primary model."""


def initialize_models(extractor: DescriptorExtractor, config: FaceRecConfig) -> Tuple[DetectorModel, ...]:
    """Initialize every enabled model, raising InitializationError on the first failure."""
    config.validate()
    loaded = []
    for model in config.enabled_models:
        source = str(config.models_root) if config.models_root is not None else None
        if not extractor.initialize_model(model, source):
            raise InitializationError(f"Failed to initialize detector model: {model.value}")
        logger.debug(f"loaded model: {model.value}")
        loaded.append(model)
    return tuple(loaded)


def _resolve_device(device: str) -> str:
    if device == "auto":
        try:
            return "gpu" if torch.cuda.is_available() else "cpu"
        except Exception:
            return "cpu"
    return device


def _dedupe_nms(detections: List[Detection], iou_thresh: float) -> List[Detection]:
    """IoU-NMS over detections, keeping the higher detection score."""
    if len(detections) <= 1:
        return list(detections)
    ordered = sorted(
        [d for d in detections if d.box is not None],
        key=lambda d: (d.score, d.box.area),
        reverse=True,
    )
    keep: List[Detection] = []
    for det in ordered:
        if all(bbox_iou_xyxy(det.box.as_tuple(), k.box.as_tuple()) < iou_thresh for k in keep):
            keep.append(det)
    return keep


def pick_best_face(detections: List[Detection]) -> Optional[Detection]:
    """Highest detection score; larger box wins ties."""
    if not detections:
        return None
    return max(detections, key=lambda d: (d.score, d.box.area if d.box is not None else 0.0))


class InsightFaceExtractor(DescriptorExtractor):
    """
    InsightFace 特征提取器：检测器可选 InsightFace 整图 / 平铺 / YOLO 候选框，
    特征统一由 InsightFace recognition 模型提取（同一 embedding 空间）。
    """

    def __init__(self, config: FaceRecConfig):
        self.config = config
        self.ctx_id = -1  # -1表示CPU，0表示第一个GPU
        self._app = None
        self._yolo = None
        self._initialized: Set[DetectorModel] = set()

    def _face_app(self):
        if self._app is None:
            raise InitializationError("InsightFace app is not initialized")
        return self._app

    def _load_face_app(self, source: Optional[str]) -> None:
        if self._app is not None:
            return
        from insightface.app import FaceAnalysis

        device = _resolve_device(self.config.device)
        if device == "gpu":
            providers = ["CUDAExecutionProvider"]
            self.ctx_id = 0
        else:
            providers = ["CPUExecutionProvider"]
            self.ctx_id = -1

        opts = self.config.options_for(DetectorModel.INSIGHTFACE)
        det_size = (int(opts.det_size), int(opts.det_size))
        key = (
            str(self.config.recognition_model),
            str(source or ""),
            tuple(providers),
            int(self.ctx_id),
            det_size,
        )
        cached = _FACEAPP_CACHE.get(key)
        if cached is not None:
            self._app = cached
            return

        kwargs = dict(
            name=self.config.recognition_model,
            providers=providers,
            allowed_modules=["detection", "recognition"],
        )
        if source:
            kwargs["root"] = source
        with suppress_fds():
            app = FaceAnalysis(**kwargs)
        buf = io.StringIO()
        with redirect_stdout(buf), redirect_stderr(buf):
            app.prepare(ctx_id=self.ctx_id, det_size=det_size, det_thresh=float(opts.det_thresh))
        logger.info(f"已加载 InsightFace 模型: {self.config.recognition_model} ({device})")
        _FACEAPP_CACHE[key] = app
        self._app = app

    def _load_yolo(self, weights: str) -> None:
        if self._yolo is not None:
            return
        cached = _YOLO_CACHE.get(weights)
        if cached is None:
            # 懒加载：避免在未启用 YOLO 时引入 ultralytics 的 import 开销
            from ultralytics import YOLO

            with suppress_fds():
                cached = YOLO(weights)
            _YOLO_CACHE[weights] = cached
            logger.info(f"已加载 YOLO 模型: {weights}")
        self._yolo = cached

    def initialize_model(self, model: Union[str, DetectorModel], source: Optional[str] = None) -> bool:
        model = DetectorModel.parse(model)
        try:
            self._load_face_app(source)
            if model is DetectorModel.YOLO:
                self._load_yolo(self.config.options_for(model).weights)
        except Exception as e:
            logger.error(f"模型初始化失败 {model.value}: {e}")
            return False
        self._initialized.add(model)
        return True

    def is_initialized(self, model: Union[str, DetectorModel]) -> bool:
        return DetectorModel.parse(model) in self._initialized

    def _require(self, model: DetectorModel) -> None:
        if model not in self._initialized:
            raise InitializationError(f"Detector model {model.value} is not initialized")

    def _to_detection(self, face, model: DetectorModel, dx: float = 0.0, dy: float = 0.0, sx: float = 1.0, sy: float = 1.0):
        emb = getattr(face, "normed_embedding", None)
        if emb is None:
            emb = getattr(face, "embedding", None)
        if emb is None:
            return None
        box = BoundingBox.from_xyxy(face.bbox).shifted(dx, dy, sx, sy)
        kps = getattr(face, "kps", None)
        if kps is not None:
            kps = np.asarray(kps, dtype=float).reshape(-1, 2).copy()
            kps[:, 0] = kps[:, 0] * sx + dx
            kps[:, 1] = kps[:, 1] * sy + dy
        return Detection(
            descriptor=np.asarray(emb, dtype=np.float64).reshape(-1),
            box=box,
            landmarks=kps,
            score=float(getattr(face, "det_score", 1.0)),
            model=model.value,
        )

    def _detect_full(self, image: np.ndarray, opts: InsightFaceOptions) -> List[Detection]:
        """使用 InsightFace 对整图检测。"""
        faces = self._face_app().get(image) or []
        out = [self._to_detection(f, DetectorModel.INSIGHTFACE) for f in faces]
        return [d for d in out if d is not None]

    def _detect_tiled(self, image: np.ndarray, opts: TiledInsightFaceOptions) -> List[Detection]:
        """InsightFace 平铺检测：对大图/密集小脸提升召回。"""
        app = self._face_app()
        h, w = image.shape[:2]
        tile = int(opts.tile_size)
        step = max(1, int(tile * (1.0 - float(opts.tile_overlap))))

        found: List[Detection] = []
        for y1 in range(0, h, step):
            for x1 in range(0, w, step):
                crop = image[y1 : min(h, y1 + tile), x1 : min(w, x1 + tile)]
                if crop.size == 0:
                    continue
                for face in app.get(crop) or []:
                    det = self._to_detection(face, DetectorModel.INSIGHTFACE_TILED, dx=x1, dy=y1)
                    if det is not None:
                        found.append(det)

        # 平铺必然带来跨 tile 的重复框：用 IoU-NMS 做最终去重
        return _dedupe_nms(found, float(opts.nms_iou))

    def _yolo_boxes(self, image: np.ndarray, opts: YoloOptions) -> List[Tuple[int, int, int, int]]:
        """使用 YOLO 检测人脸候选框，返回 xyxy 列表（整数）"""
        with suppress_fds():
            results = self._yolo(image, imgsz=int(opts.imgsz), verbose=False)
        if not results:
            return []
        r = results[0]
        if r is None or getattr(r, "boxes", None) is None:
            return []

        xyxy = r.boxes.xyxy
        conf = r.boxes.conf
        xyxy = xyxy.cpu().numpy() if hasattr(xyxy, "cpu") else np.asarray(xyxy)
        conf = conf.cpu().numpy() if hasattr(conf, "cpu") else np.asarray(conf)
        xyxy = np.asarray(xyxy).reshape(-1, 4)
        conf = np.asarray(conf, dtype=np.float32).reshape(-1)

        boxes = []
        for (x1, y1, x2, y2), score in zip(xyxy, conf):
            if float(score) >= float(opts.conf):
                boxes.append((int(x1), int(y1), int(x2), int(y2)))
        return boxes

    def _detect_yolo(self, image: np.ndarray, opts: YoloOptions) -> List[Detection]:
        """YOLO 候选框 -> 裁剪 + 缩放 -> InsightFace 二次确认。"""
        app = self._face_app()
        img_h, img_w = image.shape[:2]
        det_size = int(self.config.options_for(DetectorModel.INSIGHTFACE).det_size)

        found: List[Detection] = []
        for bx1, by1, bx2, by2 in self._yolo_boxes(image, opts):
            pad_x = int((bx2 - bx1) * float(opts.box_padding))
            pad_y = int((by2 - by1) * float(opts.box_padding))
            x1 = max(0, bx1 - pad_x)
            y1 = max(0, by1 - pad_y)
            x2 = min(img_w, bx2 + pad_x)
            y2 = min(img_h, by2 + pad_y)
            crop = image[y1:y2, x1:x2]
            if crop.size == 0:
                continue

            resized = cv2.resize(crop, (det_size, det_size), interpolation=cv2.INTER_LINEAR)
            # 缩放比例（用于将 face.bbox 映回原图）
            sx = float(crop.shape[1]) / float(det_size)
            sy = float(crop.shape[0]) / float(det_size)
            for face in app.get(resized) or []:
                det = self._to_detection(face, DetectorModel.YOLO, dx=x1, dy=y1, sx=sx, sy=sy)
                if det is not None:
                    found.append(det)

        return _dedupe_nms(found, float(opts.nms_iou))

    def _detect(self, image: np.ndarray, model: DetectorModel) -> List[Detection]:
        self._require(model)
        opts = self.config.options_for(model)
        if model is DetectorModel.INSIGHTFACE:
            return self._detect_full(image, opts)
        if model is DetectorModel.INSIGHTFACE_TILED:
            return self._detect_tiled(image, opts)
        return self._detect_yolo(image, opts)

    def detect_single_face(self, image: np.ndarray, model: Union[str, DetectorModel]) -> Optional[Detection]:
        return pick_best_face(self._detect(image, DetectorModel.parse(model)))

    @property
    def primary_model(self) -> DetectorModel:
        return self.config.primary_model

    def detect_all_faces(self, image: np.ndarray) -> List[Detection]:
        return self._detect(image, self.config.primary_model)

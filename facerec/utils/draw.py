from __future__ import annotations

from functools import lru_cache
from typing import Callable, Iterable, Optional, Sequence, Tuple

import warnings

import cv2
import numpy as np
from PIL import Image, ImageDraw, ImageFont

from facerec.config import FONT_LIST
from facerec.face.types import MatchResult


_WARNED_NO_UNICODE_FONT = False

UNKNOWN_COLOR = (0, 0, 255)  # 红色
KNOWN_COLOR = (255, 0, 0)  # 蓝色
LANDMARK_COLOR = (0, 255, 255)

OverlayText = Callable[[MatchResult], str]


def default_overlay_text(result: MatchResult) -> str:
    return f"{result.label} ({result.percent_confidence}%)"


@lru_cache(maxsize=128)
def _load_font(font_path: str, font_size: int) -> ImageFont.FreeTypeFont:
    return ImageFont.truetype(font_path, font_size)


@lru_cache(maxsize=64)
def _get_best_font(font_size: int) -> ImageFont.ImageFont:
    """Return a font instance (cached) that best supports CJK on current OS."""
    for p in FONT_LIST:
        try:
            return _load_font(p, int(font_size))
        except OSError:
            continue
    return ImageFont.load_default()


def _warn_once_no_unicode_font(texts: Iterable[str]) -> None:
    global _WARNED_NO_UNICODE_FONT
    if _WARNED_NO_UNICODE_FONT:
        return
    if not any(any(ord(ch) > 127 for ch in t) for t in texts):
        return
    for p in FONT_LIST:
        try:
            _load_font(p, 16)
            return
        except OSError:
            continue
    _WARNED_NO_UNICODE_FONT = True
    warnings.warn(
        "未找到可用的中文字体文件（FONT_LIST 全部加载失败），非 ASCII 标签可能显示为方块。"
        "建议在 Linux 安装 fonts-noto-cjk 或 fonts-wqy-zenhei。",
        RuntimeWarning,
    )


def draw_texts(
    img: np.ndarray,
    items: Sequence[Tuple[str, Tuple[int, int], int, Tuple[int, int, int]]],
) -> None:
    """Draw multiple unicode texts onto one BGR image with a single PIL conversion.

    Args:
        img: OpenCV BGR image, modified in-place.
        items: sequence of (text, (x, y), font_size_px, bgr_color)
    """
    if img is None or len(items) == 0:
        return

    _warn_once_no_unicode_font([t for (t, _, _, _) in items])

    pil_img = Image.fromarray(cv2.cvtColor(img, cv2.COLOR_BGR2RGB))
    draw = ImageDraw.Draw(pil_img)
    for text, org, font_size, bgr in items:
        font = _get_best_font(int(font_size))
        # PIL uses RGB
        rgb_color = (int(bgr[2]), int(bgr[1]), int(bgr[0]))
        draw.text(tuple(org), str(text), font=font, fill=rgb_color)

    img[:] = cv2.cvtColor(np.array(pil_img), cv2.COLOR_RGB2BGR)


@lru_cache(maxsize=4096)
def measure_text(text: str, font_size: int = 14) -> Tuple[int, int]:
    """Pixel size of `text` rendered with the best available font."""
    font = _get_best_font(int(font_size))
    dummy = Image.new("RGB", (10, 10))
    bbox = ImageDraw.Draw(dummy).textbbox((0, 0), str(text), font=font)
    return int(bbox[2] - bbox[0]), int(bbox[3] - bbox[1])


def _pick_text_color_for_bg(bg_bgr: Tuple[int, int, int]) -> Tuple[int, int, int]:
    # Perceived luminance decides black or white text.
    b, g, r = [float(x) for x in bg_bgr]
    y = 0.2126 * r + 0.7152 * g + 0.0722 * b
    return (0, 0, 0) if y >= 140.0 else (255, 255, 255)


def annotate_image(
    image: np.ndarray,
    results: Sequence[MatchResult],
    overlay_text: Optional[OverlayText] = None,
    draw_detections: bool = True,
    draw_landmarks: bool = True,
    line_color: Tuple[int, int, int] = KNOWN_COLOR,
    line_width: int = 2,
) -> np.ndarray:
    """Return a copy of `image` with a labeled box (and landmarks) for each match result.

    Results without a detection box are skipped.
    """
    overlay_text = overlay_text or default_overlay_text
    canvas = image.copy()
    texts = []

    for result in results:
        det = result.detection
        if det is None or det.box is None:
            continue
        x1, y1, x2, y2 = det.box.as_int()
        color = line_color if result.known else UNKNOWN_COLOR

        if draw_detections:
            cv2.rectangle(canvas, (x1, y1), (x2, y2), color, int(line_width))

        if draw_landmarks and det.landmarks is not None:
            for x, y in det.landmarks.astype(int):
                cv2.circle(canvas, (int(x), int(y)), 2, LANDMARK_COLOR, -1)

        # 字体大小取人脸高度的 12%，并限制最小值
        label = overlay_text(result)
        font_size = max(12, int(max(12, y2 - y1) * 0.12))
        text_w, text_h = measure_text(label, font_size)
        pad_x = max(6, int(font_size * 0.3))
        pad_y = max(4, int(font_size * 0.2))

        bg_y1 = max(0, y1 - text_h - pad_y * 2)
        cv2.rectangle(canvas, (x1, bg_y1), (x1 + text_w + pad_x * 2, y1), color, -1)
        texts.append((label, (x1 + pad_x, bg_y1 + pad_y), font_size, _pick_text_color_for_bg(color)))

    draw_texts(canvas, texts)
    return canvas

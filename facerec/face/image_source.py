"""Image sources: turn an image reference into a decoded BGR array.

Callers pick the source explicitly (local files, URLs, or both) instead of the
loader guessing from the runtime environment.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Optional, Union

import cv2
import numpy as np
import requests

from facerec.errors import ImageLoadError
from facerec.utils.log import get_logger

logger = get_logger(__name__)


class ImageSource(ABC):
    @abstractmethod
    def fetch_or_load(self, ref: Any) -> np.ndarray:
        """Return the image for `ref` as a BGR uint8 array; raise ImageLoadError on failure."""


def _decode(ref: Any, data: np.ndarray) -> np.ndarray:
    if data.size == 0:
        raise ImageLoadError(ref, ValueError("empty image data"))
    try:
        image = cv2.imdecode(data, cv2.IMREAD_COLOR)
    except cv2.error as e:
        raise ImageLoadError(ref, e) from e
    if image is None:
        raise ImageLoadError(ref, ValueError("cannot decode image data"))
    return image


class FileImageSource(ImageSource):
    """Read images from disk with OpenCV, optionally relative to `root`."""

    def __init__(self, root: Optional[Union[str, Path]] = None):
        self.root = Path(root) if root is not None else None

    def _resolve(self, ref: Union[str, Path]) -> Path:
        path = Path(ref)
        if self.root is not None and not path.is_absolute():
            path = self.root / path
        return path

    def fetch_or_load(self, ref: Any) -> np.ndarray:
        if isinstance(ref, np.ndarray):
            return ref
        try:
            path = self._resolve(ref)
            if not path.is_file():
                raise FileNotFoundError(str(path))
            # cv2.imread 不支持非 ASCII 路径（Windows），统一走 imdecode
            data = np.fromfile(str(path), dtype=np.uint8)
        except (OSError, TypeError, ValueError) as e:
            raise ImageLoadError(ref, e) from e
        return _decode(ref, data)


class UrlImageSource(ImageSource):
    """Fetch images over HTTP(S)."""

    def __init__(self, timeout: float = 10.0, session: Optional[requests.Session] = None):
        self.timeout = float(timeout)
        self.session = session or requests.Session()

    def fetch_or_load(self, ref: Any) -> np.ndarray:
        try:
            resp = self.session.get(str(ref), timeout=self.timeout)
            resp.raise_for_status()
        except requests.RequestException as e:
            raise ImageLoadError(ref, e) from e
        return _decode(ref, np.frombuffer(resp.content or b"", dtype=np.uint8))


class AutoImageSource(ImageSource):
    """http(s) references go to `urls`, everything else to `files`."""

    def __init__(self, files: Optional[ImageSource] = None, urls: Optional[ImageSource] = None):
        self.files = files or FileImageSource()
        self.urls = urls or UrlImageSource()

    def fetch_or_load(self, ref: Any) -> np.ndarray:
        if isinstance(ref, str) and ref.lower().startswith(("http://", "https://")):
            return self.urls.fetch_or_load(ref)
        return self.files.fetch_or_load(ref)

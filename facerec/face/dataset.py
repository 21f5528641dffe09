from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from facerec.errors import ImageLoadError, NoFaceFound, TransformIncomplete
from facerec.face.fallback import ModelFallbackPolicy
from facerec.face.image_source import ImageSource
from facerec.face.gallery import Gallery, LabeledDescriptorSet
from facerec.face.types import DatasetEntry
from facerec.utils.log import get_logger

logger = get_logger(__name__)

IMAGE_SUFFIXES = (".jpg", ".jpeg", ".png")

# Keys accepted for the image reference of a bulk-import entry.
_REF_KEYS = ("image_ref", "imageurl", "image_url", "image", "path")

Transform = Callable[[Any], Any]


def _coerce_entry(raw: Any) -> Tuple[Optional[str], Optional[Any]]:
    """Pull (label, image_ref) out of a DatasetEntry, mapping or 2-tuple."""
    if isinstance(raw, DatasetEntry):
        return raw.label, raw.image_ref
    if isinstance(raw, Mapping):
        ref = None
        for key in _REF_KEYS:
            if raw.get(key) is not None:
                ref = raw[key]
                break
        return raw.get("label"), ref
    if isinstance(raw, (tuple, list)) and len(raw) == 2:
        return raw[0], raw[1]
    return None, None


def _is_complete(label: Any, ref: Any) -> bool:
    if not isinstance(label, str) or not label:
        return False
    if ref is None or (isinstance(ref, str) and not ref):
        return False
    return True


@dataclass
class GalleryBuildReport:
    """Result of converting a dataset: the gallery plus every entry that was skipped."""

    gallery: Gallery
    skipped: List[Tuple[DatasetEntry, str]] = field(default_factory=list)

    @property
    def skipped_count(self) -> int:
        return len(self.skipped)

    def merge_by_label(self) -> Gallery:
        """Group one-descriptor sets that share a label into multi-descriptor sets (first-seen order)."""
        merged: Dict[str, list] = {}
        for s in self.gallery:
            merged.setdefault(s.label, []).extend(s.descriptors)
        return Gallery(tuple(LabeledDescriptorSet(label, tuple(descs)) for label, descs in merged.items()))


class Dataset:
    """Labeled image references waiting to be turned into a gallery.

    Not thread-safe: concurrent `append` / `bulk_import` calls need external locking.
    """

    def __init__(self, entries: Optional[Iterable[DatasetEntry]] = None):
        self.entries: List[DatasetEntry] = []
        for entry in entries or []:
            self.append(entry.label, entry.image_ref)

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self):
        return iter(self.entries)

    def append(self, label: str, image_ref: Any) -> None:
        if not isinstance(label, str) or not label:
            raise ValueError("label must be a non-empty string")
        self.entries.append(DatasetEntry(label=label, image_ref=image_ref))

    add_image = append

    def bulk_import(self, entries: Iterable[Any], transform: Optional[Transform] = None) -> int:
        """Append many entries, optionally remapping each through `transform`.

        An entry whose (transformed) form lacks a label or image reference is skipped
        with a warning. Returns the number of entries appended.
        """
        added = 0
        for raw in entries:
            try:
                if transform is not None:
                    result = transform(raw)
                    label, ref = _coerce_entry(result)
                    if not _is_complete(label, ref):
                        raise TransformIncomplete(raw, result)
                else:
                    label, ref = _coerce_entry(raw)
                    if not _is_complete(label, ref):
                        raise TransformIncomplete(raw, raw)
            except TransformIncomplete as e:
                logger.warning(f"跳过不完整的条目: {e}")
                continue
            self.append(str(label), ref)
            added += 1
        logger.debug(f"bulk import: {added} added, {len(self.entries)} total")
        return added

    @classmethod
    def from_directory(cls, root: Union[str, Path]) -> "Dataset":
        """One label per sub-directory of `root`, every image file inside it as an entry."""
        root = Path(root)
        if not root.is_dir():
            raise FileNotFoundError(f"Gallery directory not found: {root}")
        dataset = cls()
        for person_dir in sorted(p for p in root.iterdir() if p.is_dir()):
            # 采用不区分大小写的后缀匹配，避免漏掉像 0001.JPG 这种大写扩展名
            image_files = sorted(
                p for p in person_dir.iterdir() if p.is_file() and p.suffix.lower() in IMAGE_SUFFIXES
            )
            logger.info(f"处理 {person_dir.name}: {len(image_files)} 张图像")
            for img_file in image_files:
                dataset.append(person_dir.name, str(img_file))
        return dataset

    def _convert_entry(
        self, entry: DatasetEntry, policy: ModelFallbackPolicy, image_source: ImageSource
    ) -> Union[LabeledDescriptorSet, str]:
        try:
            image = image_source.fetch_or_load(entry.image_ref)
            detection = policy.extract_single_descriptor(image, entry.image_ref)
        except (NoFaceFound, ImageLoadError) as e:
            logger.warning(f"跳过 {entry.label} / {entry.image_ref}: {e}")
            return str(e)
        logger.debug(f"adding image {entry.image_ref} as {entry.label} ({detection.model})")
        return LabeledDescriptorSet(entry.label, (detection.descriptor,))

    def to_gallery(
        self, policy: ModelFallbackPolicy, image_source: ImageSource, max_workers: int = 1
    ) -> GalleryBuildReport:
        """Extract one descriptor per entry; entries without a usable face are skipped."""
        entries = list(self.entries)
        logger.info(f"开始构建图库: {len(entries)} 张图像")

        if int(max_workers) > 1 and len(entries) > 1:
            with ThreadPoolExecutor(max_workers=int(max_workers)) as executor:
                outcomes = list(executor.map(lambda e: self._convert_entry(e, policy, image_source), entries))
        else:
            outcomes = [self._convert_entry(e, policy, image_source) for e in entries]

        sets: List[LabeledDescriptorSet] = []
        skipped: List[Tuple[DatasetEntry, str]] = []
        for entry, outcome in zip(entries, outcomes):
            if isinstance(outcome, LabeledDescriptorSet):
                sets.append(outcome)
            else:
                skipped.append((entry, outcome))

        report = GalleryBuildReport(gallery=Gallery(tuple(sets)), skipped=skipped)
        logger.info(f"图库构建完成: {len(sets)}/{len(entries)} 张图像, 跳过 {report.skipped_count}")
        return report

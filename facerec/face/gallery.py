from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterator, List, Sequence, Tuple

import numpy as np

from facerec.utils.math import as_descriptor


@dataclass(frozen=True, eq=False)
class LabeledDescriptorSet:
    """A label plus one or more descriptors believed to belong to it."""

    label: str
    descriptors: Tuple[np.ndarray, ...]

    def __post_init__(self):
        if not isinstance(self.label, str) or not self.label:
            raise ValueError("label must be a non-empty string")
        descs = tuple(as_descriptor(d) for d in self.descriptors)
        if not descs:
            raise ValueError(f"{self.label}: at least one descriptor is required")
        dims = {int(d.shape[0]) for d in descs}
        if len(dims) != 1:
            raise ValueError(f"{self.label}: descriptors have different lengths {sorted(dims)}")
        object.__setattr__(self, "descriptors", descs)

    @property
    def dim(self) -> int:
        return int(self.descriptors[0].shape[0])

    def __len__(self) -> int:
        return len(self.descriptors)


@dataclass(frozen=True)
class Gallery:
    """Closed, ordered corpus of labeled descriptor sets.

    Labels may repeat; order matters because nearest-match ties resolve to the
    earliest set.
    """

    sets: Tuple[LabeledDescriptorSet, ...] = ()

    def __post_init__(self):
        sets = tuple(self.sets)
        for s in sets:
            if not isinstance(s, LabeledDescriptorSet):
                raise TypeError(f"Gallery entries must be LabeledDescriptorSet, got {type(s).__name__}")
        object.__setattr__(self, "sets", sets)

    @classmethod
    def from_mapping(cls, label_to_descriptors: Dict[str, Sequence]) -> "Gallery":
        """Build from {label: descriptor or (K, D) descriptors}, in mapping order."""
        return cls(
            tuple(
                LabeledDescriptorSet(label, tuple(np.atleast_2d(np.asarray(descs, dtype=np.float64))))
                for label, descs in label_to_descriptors.items()
            )
        )

    @property
    def labels(self) -> List[str]:
        return [s.label for s in self.sets]

    @property
    def stats(self) -> Dict[str, dict]:
        """Per-label descriptor count and mean descriptor norm (repeated labels are pooled)."""
        pooled: Dict[str, List[np.ndarray]] = {}
        for s in self.sets:
            pooled.setdefault(s.label, []).extend(s.descriptors)
        return {
            label: {
                "count": len(descs),
                "avg_norm": float(np.mean([np.linalg.norm(d) for d in descs])),
            }
            for label, descs in pooled.items()
        }

    def __len__(self) -> int:
        return len(self.sets)

    def __iter__(self) -> Iterator[LabeledDescriptorSet]:
        return iter(self.sets)

    def __getitem__(self, idx: int) -> LabeledDescriptorSet:
        return self.sets[idx]

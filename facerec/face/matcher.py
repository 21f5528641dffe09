from __future__ import annotations

from typing import List, Optional, Tuple

import numpy as np
import torch

from facerec.face.gallery import Gallery
from facerec.utils.math import as_matrix, euclidean_distances


class EuclideanMatcher:
    """Vectorized nearest-descriptor search over a gallery.

    The gallery is flattened once into:
    - matrix: (N, D) float64, rows in gallery order
    - set_ids: (N,) int32, mapping row -> index of its LabeledDescriptorSet
    """

    def __init__(self, gallery: Gallery, device: str = "auto"):
        mats: List[np.ndarray] = []
        ids: List[np.ndarray] = []
        for idx, s in enumerate(gallery):
            mats.append(as_matrix(s.descriptors))
            ids.append(np.full((len(s),), idx, dtype=np.int32))

        if not mats:
            raise ValueError("Cannot build a matcher over an empty gallery")
        dims = {int(m.shape[1]) for m in mats}
        if len(dims) != 1:
            raise ValueError(f"Gallery descriptors have different lengths {sorted(dims)}")

        self.dim = dims.pop()
        self._matrix = np.ascontiguousarray(np.concatenate(mats, axis=0))
        self._matrix.setflags(write=False)
        self._set_ids = np.concatenate(ids, axis=0)
        self._set_ids.setflags(write=False)

        # Optional torch/CUDA backend, built lazily on first use.
        self._device = device
        self._matrix_t = None

    def _use_cuda(self) -> bool:
        if self._device == "cpu":
            return False
        try:
            return bool(torch.cuda.is_available())
        except Exception:
            return False

    def _ensure_torch_index(self) -> bool:
        if not self._use_cuda():
            return False
        if self._matrix_t is None:
            self._matrix_t = torch.from_numpy(np.array(self._matrix)).to("cuda")
        return True

    def distances(self, queries: np.ndarray) -> np.ndarray:
        """(Q, D) queries -> (Q, N) Euclidean distances to every gallery row."""
        q = as_matrix(queries)
        if int(q.shape[1]) != self.dim:
            raise ValueError(f"Descriptor length {q.shape[1]} does not match gallery length {self.dim}")

        if self._ensure_torch_index():
            q_t = torch.from_numpy(np.ascontiguousarray(q)).to("cuda")
            # The mm-based path trades exactness for speed; keep the direct difference.
            d_t = torch.cdist(q_t, self._matrix_t, compute_mode="donot_use_mm_for_euclid_dist")
            return d_t.cpu().numpy()
        return euclidean_distances(q, self._matrix)

    def nearest_batch(self, queries: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """Return (set_index, distance) arrays, one entry per query row.

        argmin returns the first minimal row, so ties go to the earliest set in
        gallery order.
        """
        dists = self.distances(queries)
        rows = np.argmin(dists, axis=1)
        best = dists[np.arange(dists.shape[0]), rows]
        return self._set_ids[rows], best

    def nearest(self, descriptor: np.ndarray) -> Tuple[int, float]:
        set_ids, dists = self.nearest_batch(np.asarray(descriptor, dtype=np.float64).reshape(1, -1))
        return int(set_ids[0]), float(dists[0])

    def set_distances(self, descriptor: np.ndarray, n_sets: Optional[int] = None) -> np.ndarray:
        """Minimum distance from `descriptor` to each labeled set (for debugging top-k)."""
        row = self.distances(np.asarray(descriptor, dtype=np.float64).reshape(1, -1))[0]
        n = int(n_sets) if n_sets is not None else int(self._set_ids.max()) + 1
        best = np.full((n,), np.inf, dtype=np.float64)
        np.minimum.at(best, self._set_ids, row)
        return best

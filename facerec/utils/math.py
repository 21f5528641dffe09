from __future__ import annotations

from typing import Sequence

import numpy as np


def as_descriptor(vec, dtype=np.float64) -> np.ndarray:
    """Return `vec` as a flat, read-only float array."""
    arr = np.array(vec, dtype=dtype).reshape(-1)
    arr.setflags(write=False)
    return arr


def as_matrix(rows: Sequence, dtype=np.float64) -> np.ndarray:
    """Stack 1D vectors into a (N, D) matrix; raises on ragged input."""
    mat = np.asarray(rows, dtype=dtype)
    if mat.ndim == 1:
        mat = mat.reshape(1, -1)
    if mat.ndim != 2:
        raise ValueError(f"Unsupported ndim={mat.ndim}")
    return mat


# Upper bound on float64 elements of one (q, n, d) difference block (32 MB).
MAX_BLOCK_ELEMENTS = 1 << 22


def euclidean_distances(queries: np.ndarray, matrix: np.ndarray, max_block_elements: int = MAX_BLOCK_ELEMENTS) -> np.ndarray:
    """Pairwise distances between (Q, D) queries and (N, D) rows -> (Q, N).

    Uses the explicit difference rather than the ||a||^2 - 2ab + ||b||^2 expansion
    so that distances of exactly-representable offsets stay exact. The difference
    is built in blocks of at most `max_block_elements` values.
    """
    q = as_matrix(queries)
    m = as_matrix(matrix)
    n_q, dim = q.shape
    n_rows = m.shape[0]
    out = np.empty((n_q, n_rows), dtype=np.float64)

    row_step = max(1, min(n_rows, int(max_block_elements) // max(1, dim)))
    q_step = max(1, int(max_block_elements) // max(1, row_step * dim))
    for qs in range(0, n_q, q_step):
        qb = q[qs : qs + q_step]
        for rs in range(0, n_rows, row_step):
            diff = qb[:, None, :] - m[None, rs : rs + row_step, :]
            out[qs : qs + qb.shape[0], rs : rs + row_step] = np.sqrt(np.einsum("qnd,qnd->qn", diff, diff))
    return out


def bbox_iou_xyxy(a, b) -> float:
    """计算两个 xyxy bbox 的 IoU。"""
    ax1, ay1, ax2, ay2 = [float(x) for x in a]
    bx1, by1, bx2, by2 = [float(x) for x in b]
    xx1 = max(ax1, bx1)
    yy1 = max(ay1, by1)
    xx2 = min(ax2, bx2)
    yy2 = min(ay2, by2)
    w = max(0.0, xx2 - xx1)
    h = max(0.0, yy2 - yy1)
    inter = w * h
    area_a = max(0.0, ax2 - ax1) * max(0.0, ay2 - ay1)
    area_b = max(0.0, bx2 - bx1) * max(0.0, by2 - by1)
    denom = area_a + area_b - inter
    return float(inter / denom) if denom > 1e-12 else 0.0

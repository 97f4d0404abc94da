"""Lightweight vector math helpers used throughout the physics world."""

from __future__ import annotations

from math import sqrt
from typing import Iterable, Tuple

import numpy as np

Vec3 = Tuple[float, float, float]
Vec3i = Tuple[int, int, int]


def vec3(values: Iterable[float]) -> Vec3:
    x, y, z = values
    return float(x), float(y), float(z)


def vec3i(values: Iterable[int]) -> Vec3i:
    x, y, z = values
    return int(x), int(y), int(z)


def dot(a: Vec3, b: Vec3) -> float:
    return a[0] * b[0] + a[1] * b[1] + a[2] * b[2]


def length(a: Vec3) -> float:
    return sqrt(max(dot(a, a), 0.0))


def normalize(a: Vec3) -> Vec3:
    l = length(a)
    if l <= 1e-8:
        return 0.0, 0.0, 0.0
    inv = 1.0 / l
    return a[0] * inv, a[1] * inv, a[2] * inv


def as_points(points) -> np.ndarray:
    """View any (..., 3) array-like as a float64 (N, 3) array."""
    return np.asarray(points, dtype=np.float64).reshape(-1, 3)


def normalize_rows(vectors: np.ndarray, fallback: Vec3 = (0.0, 0.0, 0.0)) -> np.ndarray:
    """Normalize each row of an (N, 3) array; rows shorter than 1e-8 become ``fallback``."""
    norms = np.linalg.norm(vectors, axis=1, keepdims=True)
    out = np.empty_like(vectors, dtype=np.float64)
    small = norms[:, 0] <= 1e-8
    out[~small] = vectors[~small] / norms[~small]
    out[small] = fallback
    return out

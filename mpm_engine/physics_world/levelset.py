"""Signed-distance boundaries used by the MPM collision passes.

All level sets work in grid-index space and on batches of points. The sign
convention is positive in the free region (where material may move) and
negative inside the obstacle.
"""

from __future__ import annotations

from typing import Optional, Sequence

import numpy as np
from scipy import ndimage

from .math_utils import as_points, normalize, normalize_rows, vec3


class LevelSet3D:
    """Static signed-distance field."""

    def __init__(self, friction: float = 0.0):
        # negative friction marks a sticky surface
        self.friction = float(friction)

    def sample(self, points) -> np.ndarray:
        raise NotImplementedError

    def gradient(self, points) -> np.ndarray:
        """Unit normals via central differences; subclasses override when analytic."""
        pts = as_points(points)
        h = 0.5
        grad = np.zeros_like(pts)
        for axis in range(3):
            offset = np.zeros(3)
            offset[axis] = h
            grad[:, axis] = (self.sample(pts + offset) - self.sample(pts - offset)) / (2.0 * h)
        return normalize_rows(grad)


class PlaneLevelSet(LevelSet3D):
    """Half space above the plane through ``point`` with normal ``normal``."""

    def __init__(self, point: Sequence[float], normal: Sequence[float] = (0.0, 1.0, 0.0), friction: float = 0.0):
        super().__init__(friction)
        self.point = np.array(vec3(point))
        n = normalize(vec3(normal))
        if n == (0.0, 0.0, 0.0):
            raise ValueError("Plane normal must be non-zero")
        self.normal = np.array(n)

    def sample(self, points) -> np.ndarray:
        return (as_points(points) - self.point) @ self.normal

    def gradient(self, points) -> np.ndarray:
        return np.tile(self.normal, (len(as_points(points)), 1))


class SphereLevelSet(LevelSet3D):
    """Spherical obstacle; with ``inside=True`` the sphere is a container instead."""

    def __init__(self, center: Sequence[float], radius: float, friction: float = 0.0, inside: bool = False):
        super().__init__(friction)
        if radius <= 0.0:
            raise ValueError(f"Sphere radius must be positive, got {radius}")
        self.center = np.array(vec3(center))
        self.radius = float(radius)
        self.sign = -1.0 if inside else 1.0

    def sample(self, points) -> np.ndarray:
        dist = np.linalg.norm(as_points(points) - self.center, axis=1)
        return self.sign * (dist - self.radius)

    def gradient(self, points) -> np.ndarray:
        return self.sign * normalize_rows(as_points(points) - self.center, fallback=(0.0, self.sign, 0.0))


class BoxLevelSet(LevelSet3D):
    """Axis-aligned container: positive inside the box, negative beyond its walls."""

    def __init__(self, lower: Sequence[float], upper: Sequence[float], friction: float = 0.0):
        super().__init__(friction)
        self.lower = np.array(vec3(lower))
        self.upper = np.array(vec3(upper))
        if np.any(self.upper <= self.lower):
            raise ValueError(f"Box upper corner {tuple(self.upper)} must exceed lower corner {tuple(self.lower)}")

    def _wall_distances(self, points) -> np.ndarray:
        pts = as_points(points)
        # columns: -x, -y, -z walls then +x, +y, +z walls
        return np.concatenate([pts - self.lower, self.upper - pts], axis=1)

    def sample(self, points) -> np.ndarray:
        return self._wall_distances(points).min(axis=1)

    def gradient(self, points) -> np.ndarray:
        nearest = self._wall_distances(points).argmin(axis=1)
        normals = np.zeros((len(nearest), 3))
        rows = np.arange(len(nearest))
        normals[rows, nearest % 3] = np.where(nearest < 3, 1.0, -1.0)
        return normals


class GridLevelSet(LevelSet3D):
    """Signed distances sampled on the grid nodes, trilinearly interpolated."""

    def __init__(self, values: np.ndarray, friction: float = 0.0):
        super().__init__(friction)
        self.values = np.asarray(values, dtype=np.float64)
        if self.values.ndim != 3:
            raise ValueError(f"Grid level set needs a 3D volume, got shape {self.values.shape}")
        self._gradients = np.gradient(self.values)

    @classmethod
    def from_occupancy(cls, occupancy: np.ndarray, friction: float = 0.0) -> "GridLevelSet":
        """Build a signed distance volume from a boolean solid mask."""
        solid = np.asarray(occupancy, dtype=bool)
        outside = ndimage.distance_transform_edt(~solid)
        inside = ndimage.distance_transform_edt(solid)
        # surface sits half a cell from the solid node centres
        values = np.where(solid, 0.5 - inside, outside - 0.5)
        print(f"[GridLevelSet] Built SDF from {int(solid.sum())} solid cells, shape {solid.shape}")
        return cls(values, friction)

    def _interpolate(self, volume: np.ndarray, points) -> np.ndarray:
        return ndimage.map_coordinates(volume, as_points(points).T, order=1, mode="nearest")

    def sample(self, points) -> np.ndarray:
        return self._interpolate(self.values, points)

    def gradient(self, points) -> np.ndarray:
        grad = np.stack([self._interpolate(g, points) for g in self._gradients], axis=1)
        return normalize_rows(grad)


class DynamicLevelSet3D:
    """Linear blend of two level sets over the time interval [t0, t1].

    The temporal derivative is reported as the normal speed of the surface,
    so that ``speed * normal`` is the velocity of the boundary itself.
    """

    def __init__(self, levelset0: LevelSet3D, levelset1: Optional[LevelSet3D] = None, t0: float = 0.0, t1: float = 1.0):
        if t1 <= t0:
            raise ValueError(f"Dynamic level set needs t1 > t0, got [{t0}, {t1}]")
        self.levelset0 = levelset0
        self.levelset1 = levelset1 if levelset1 is not None else levelset0
        self.t0 = float(t0)
        self.t1 = float(t1)

    @property
    def friction(self) -> float:
        return self.levelset0.friction

    @property
    def is_static(self) -> bool:
        return self.levelset1 is self.levelset0

    def _blend(self, t: float) -> float:
        return float(np.clip((t - self.t0) / (self.t1 - self.t0), 0.0, 1.0))

    def sample(self, points, t: float) -> np.ndarray:
        k = self._blend(t)
        return (1.0 - k) * self.levelset0.sample(points) + k * self.levelset1.sample(points)

    def get_spatial_gradient(self, points, t: float) -> np.ndarray:
        k = self._blend(t)
        grad = (1.0 - k) * self.levelset0.gradient(points) + k * self.levelset1.gradient(points)
        return normalize_rows(grad)

    def get_temporal_derivative(self, points, t: float) -> np.ndarray:
        # the blend is frozen outside [t0, t1]
        if self.is_static or t < self.t0 or t > self.t1:
            return np.zeros(len(as_points(points)))
        return -(self.levelset1.sample(points) - self.levelset0.sample(points)) / (self.t1 - self.t0)


class MovingLevelSet:
    """A static level set translated at constant velocity (grid cells per second)."""

    def __init__(self, levelset: LevelSet3D, velocity: Sequence[float], origin_time: float = 0.0):
        self.levelset = levelset
        self.velocity = np.array(vec3(velocity))
        self.origin_time = float(origin_time)

    @property
    def friction(self) -> float:
        return self.levelset.friction

    @property
    def is_static(self) -> bool:
        return not np.any(self.velocity)

    def _local(self, points, t: float) -> np.ndarray:
        return as_points(points) - (t - self.origin_time) * self.velocity

    def sample(self, points, t: float) -> np.ndarray:
        return self.levelset.sample(self._local(points, t))

    def get_spatial_gradient(self, points, t: float) -> np.ndarray:
        return self.levelset.gradient(self._local(points, t))

    def get_temporal_derivative(self, points, t: float) -> np.ndarray:
        return self.get_spatial_gradient(points, t) @ self.velocity


def as_dynamic(levelset) -> Optional[object]:
    """Wrap a static level set so every boundary answers time-dependent queries."""
    if levelset is None or isinstance(levelset, (DynamicLevelSet3D, MovingLevelSet)):
        return levelset
    if isinstance(levelset, LevelSet3D):
        return DynamicLevelSet3D(levelset)
    raise TypeError(f"Unsupported level set type: {type(levelset).__name__}")


__all__ = [
    "LevelSet3D",
    "PlaneLevelSet",
    "SphereLevelSet",
    "BoxLevelSet",
    "GridLevelSet",
    "DynamicLevelSet3D",
    "MovingLevelSet",
    "as_dynamic",
]

"""Density fields and stochastic particle seeding on the MPM grid."""

from __future__ import annotations

from pathlib import Path
from typing import Sequence

import numpy as np
from scipy import ndimage

from .math_utils import as_points, vec3


class DensityField:
    """Particles per cell as a function of normalized coordinates in [0, 1]^3."""

    def sample(self, coords) -> np.ndarray:
        raise NotImplementedError


class ConstantDensity(DensityField):
    def __init__(self, value: float):
        self.value = float(value)

    def sample(self, coords) -> np.ndarray:
        return np.full(len(as_points(coords)), self.value)


class BoxDensity(DensityField):
    """``value`` inside the axis-aligned box [lower, upper], zero outside."""

    def __init__(self, lower: Sequence[float], upper: Sequence[float], value: float):
        self.lower = np.array(vec3(lower))
        self.upper = np.array(vec3(upper))
        self.value = float(value)

    def sample(self, coords) -> np.ndarray:
        pts = as_points(coords)
        inside = np.all((pts >= self.lower) & (pts <= self.upper), axis=1)
        return np.where(inside, self.value, 0.0)


class SphereDensity(DensityField):
    def __init__(self, center: Sequence[float], radius: float, value: float):
        self.center = np.array(vec3(center))
        self.radius = float(radius)
        self.value = float(value)

    def sample(self, coords) -> np.ndarray:
        dist = np.linalg.norm(as_points(coords) - self.center, axis=1)
        return np.where(dist <= self.radius, self.value, 0.0)


class GridDensity(DensityField):
    """Cell-centred density volume, trilinearly interpolated."""

    def __init__(self, volume: np.ndarray, scale: float = 1.0):
        self.volume = np.asarray(volume, dtype=np.float64) * float(scale)
        if self.volume.ndim != 3:
            raise ValueError(f"Density volume must be 3D, got shape {self.volume.shape}")

    @classmethod
    def from_file(cls, path: str | Path, scale: float = 1.0) -> "GridDensity":
        return cls(np.load(Path(path)), scale)

    def sample(self, coords) -> np.ndarray:
        index = as_points(coords) * np.array(self.volume.shape) - 0.5
        return ndimage.map_coordinates(self.volume, index.T, order=1, mode="nearest")


def density_from_config(config) -> DensityField:
    """Build a density field from a DensityConfig."""
    if config.kind == "constant":
        return ConstantDensity(config.value)
    if config.kind == "box":
        return BoxDensity(config.lower, config.upper, config.value)
    if config.kind == "sphere":
        return SphereDensity(config.center, config.radius, config.value)
    if config.kind == "grid":
        return GridDensity.from_file(config.path, config.value)
    raise ValueError(f"Unknown density kind '{config.kind}'")


def seed_particles(density: DensityField, resolution: Sequence[int], rng: np.random.Generator) -> np.ndarray:
    """
    Sample particle positions for every grid cell.

    Each cell (i, j, k) receives int(n) particles plus one more with
    probability frac(n), where n is the density at the cell centre, and every
    particle is placed uniformly at random inside its cell.

    Returns:
        (N, 3) positions in grid-index space
    """
    res = np.array([int(r) for r in resolution])
    cells = np.stack(np.meshgrid(*[np.arange(r) for r in res], indexing="ij"), axis=-1).reshape(-1, 3)
    num = np.clip(density.sample((cells + 0.5) / res), 0.0, None)
    whole = np.floor(num)
    counts = whole.astype(np.int64) + (rng.random(len(num)) < num - whole)
    owners = np.repeat(cells, counts, axis=0)
    return owners + rng.random(owners.shape)

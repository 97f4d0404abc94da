"""
MPM grid operations - background Eulerian grid for momentum transfer.
"""
from typing import Sequence

import numpy as np
import taichi as ti


@ti.data_oriented
class MPMGrid:
    """Background Eulerian grid for MPM simulation.

    Grid spacing is one cell, so node (i, j, k) sits at position (i, j, k).
    """

    def __init__(self, resolution: Sequence[int], gravity: Sequence[float] = (0.0, -9.8, 0.0)):
        """
        Initialize MPM grid.

        Args:
            resolution: Grid resolution (nx, ny, nz), at least 4 nodes per axis
            gravity: Acceleration added to every node that carries mass
        """
        self.res = tuple(int(r) for r in resolution)
        if len(self.res) != 3 or min(self.res) < 4:
            raise ValueError(f"Grid resolution must have three entries >= 4, got {resolution}")

        # Velocity doubles as momentum during rasterization
        self.velocity = ti.Vector.field(3, dtype=float, shape=self.res)
        self.velocity_backup = ti.Vector.field(3, dtype=float, shape=self.res)
        self.mass = ti.field(dtype=float, shape=self.res)

        # Store gravity as a Taichi field for kernel access
        self.gravity = ti.Vector.field(3, dtype=float, shape=())
        self.set_gravity(gravity)

        print(f"[MPMGrid] Using DENSE grid: {self.res[0]}x{self.res[1]}x{self.res[2]}")

    def set_gravity(self, gravity: Sequence[float]) -> None:
        self.gravity[None] = ti.Vector([float(g) for g in gravity])

    @ti.kernel
    def clear(self):
        """Clear grid momentum and mass."""
        for I in ti.grouped(self.mass):
            self.velocity[I] = ti.Vector.zero(float, 3)
            self.mass[I] = 0.0

    @ti.kernel
    def normalize_velocity(self):
        """Turn accumulated momentum into velocity on nodes that received mass."""
        for I in ti.grouped(self.mass):
            if self.mass[I] > 0.0:
                self.velocity[I] /= self.mass[I]

    @ti.kernel
    def backup_velocity(self):
        for I in ti.grouped(self.velocity):
            self.velocity_backup[I] = self.velocity[I]

    @ti.kernel
    def apply_external_force(self, delta_t: float):
        """Add gravity to every node that carries mass."""
        for I in ti.grouped(self.mass):
            if self.mass[I] > 0.0:
                self.velocity[I] += delta_t * self.gravity[None]

    @ti.func
    def contains(self, cell):
        """
        Check if a grid node index is within valid range.

        Returns:
            1 if valid, 0 otherwise
        """
        valid = 1
        for d in ti.static(range(3)):
            if cell[d] < 0 or cell[d] >= self.res[d]:
                valid = 0
        return valid

    def node_positions(self) -> np.ndarray:
        """Positions of all grid nodes, shape (nx, ny, nz, 3)."""
        axes = [np.arange(r, dtype=np.float64) for r in self.res]
        return np.stack(np.meshgrid(*axes, indexing="ij"), axis=-1)

    def total_mass(self) -> float:
        return float(self.mass.to_numpy().sum())

    def total_momentum(self) -> np.ndarray:
        """Momentum carried by the grid (valid after normalize_velocity)."""
        mass = self.mass.to_numpy()
        return (self.velocity.to_numpy() * mass[..., None]).reshape(-1, 3).sum(axis=0)

"""Physics world core that drives the MPM solver for a configured scene."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np

from .levelset import BoxLevelSet, GridLevelSet, LevelSet3D, MovingLevelSet, PlaneLevelSet, SphereLevelSet
from .seeding import density_from_config, seed_particles
from .solvers.mpm import MPMSolver
from .state import WorldSnapshot

if TYPE_CHECKING:
    from ..configuration import BoundaryConfig, SceneConfig


@dataclass
class PhysicsWorld:
    config: SceneConfig
    mpm_solver: MPMSolver
    current_time: float = 0.0
    current_step: int = 0

    @classmethod
    def from_config(cls, config: SceneConfig, serialize: bool = False, debug_interval: int = 0) -> "PhysicsWorld":
        sim = config.simulation
        mpm_solver = MPMSolver(
            resolution=sim.resolution,
            gravity=sim.gravity,
            delta_t=sim.delta_t,
            apic=sim.apic,
            max_particles=sim.max_particles,
            serialize=serialize,
            debug_interval=debug_interval,
        )

        # ==== STEP 1: Seed every particle batch ====
        rng = np.random.default_rng(config.seed)
        for index, batch in enumerate(config.particle_batches):
            positions = seed_particles(density_from_config(batch.density), sim.resolution, rng)
            print(f"[PhysicsWorld] Batch {index}: {len(positions)} particles ({batch.density.kind} density)")
            mpm_solver.add_particles(
                positions,
                batch.material,
                compression=batch.compression,
                initial_velocity=batch.initial_velocity,
                mass=batch.mass,
                volume=batch.volume,
            )

        # ==== STEP 2: Attach the boundary ====
        if config.boundary is not None:
            mpm_solver.set_levelset(build_levelset(config.boundary))
        else:
            print("[PhysicsWorld] No boundary configured, particles are only clamped to the domain")

        return cls(config=config, mpm_solver=mpm_solver)

    def step(self) -> WorldSnapshot:
        """Advance the simulation by one frame (``substeps_per_frame`` substeps)."""
        for _ in range(self.config.simulation.substeps_per_frame):
            self.mpm_solver.substep()
        self.current_time = self.mpm_solver.current_t

        snapshot = WorldSnapshot(
            step_index=self.current_step,
            time=self.current_time,
            particles=self.mpm_solver.get_render_particles(),
        )
        self.current_step += 1
        return snapshot


def build_levelset(boundary: BoundaryConfig):
    """Create the level set described by a boundary configuration."""
    levelset: LevelSet3D
    if boundary.kind == "plane":
        levelset = PlaneLevelSet(boundary.point, boundary.normal, boundary.friction)
    elif boundary.kind == "box":
        levelset = BoxLevelSet(boundary.lower, boundary.upper, boundary.friction)
    elif boundary.kind == "sphere":
        levelset = SphereLevelSet(boundary.center, boundary.radius, boundary.friction, inside=boundary.inside)
    elif boundary.kind == "grid":
        volume = np.load(boundary.path)
        if boundary.occupancy:
            levelset = GridLevelSet.from_occupancy(volume, boundary.friction)
        else:
            levelset = GridLevelSet(volume, boundary.friction)
    else:
        raise ValueError(f"Unknown boundary kind '{boundary.kind}'")

    if any(boundary.velocity):
        return MovingLevelSet(levelset, boundary.velocity)
    return levelset

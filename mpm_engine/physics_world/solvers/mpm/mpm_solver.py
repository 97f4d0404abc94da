"""
MPM solver - main Material Point Method simulation engine.
"""
from typing import Optional, Sequence

import numpy as np
import taichi as ti

from ...state import RenderParticles
from .mpm_boundary import MPMBoundary
from .mpm_errors import MPMError
from .mpm_grid import MPMGrid
from .mpm_kernels import FULL_REGION, REGION_WIDTH, region_base, weight3, weight_gradient3
from .mpm_materials import MaterialParameters
from .mpm_state import MPMState

# Colour and opacity of every render particle
RENDER_COLOR = (0.8, 0.9, 1.0, 0.5)


@ti.data_oriented
class MPMSolver:
    """Snow/sand MPM solver using Taichi for CPU/GPU parallelism.

    One substep runs the fixed pipeline
    rasterize -> backup -> gravity -> deformation force -> grid boundary
    -> resample -> advect + plasticity -> particle collision.
    Grid accumulation uses atomic adds; every kernel launch is a barrier.
    """

    def __init__(self,
                 resolution: Sequence[int] = (64, 64, 64),
                 gravity: Sequence[float] = (0.0, -9.8, 0.0),
                 delta_t: float = 1e-3,
                 apic: bool = True,
                 max_particles: int = 500000,
                 serialize: bool = False,
                 debug_interval: int = 0):
        """
        Initialize MPM solver.

        Args:
            resolution: Grid resolution (nx, ny, nz); grid spacing is one cell
            gravity: Gravity vector in cells/s^2
            delta_t: Default substep size
            apic: Use the APIC transfer (otherwise FLIP)
            max_particles: Maximum number of particles
            serialize: Run every particle pass on a single thread
            debug_interval: Print particle statistics every N substeps (0 disables)
        """
        if delta_t <= 0.0:
            raise ValueError(f"delta_t must be positive, got {delta_t}")
        self.res = tuple(int(r) for r in resolution)
        self.delta_t = float(delta_t)
        self.apic = bool(apic)
        self.serialize = bool(serialize)
        self.debug_interval = int(debug_interval)

        print(f"[MPMSolver] Initializing with max_particles={max_particles}, resolution={self.res}")
        print(f"[MPMSolver] delta_t={self.delta_t}s, gravity={tuple(gravity)}, transfer={'APIC' if self.apic else 'FLIP'}")
        if self.serialize:
            print("[MPMSolver] Particle passes serialized")

        self.grid = MPMGrid(self.res, gravity)
        self.state = MPMState(max_particles, self.res)
        self.boundary = MPMBoundary(self.state, self.grid, serialize=self.serialize)

        self.current_t = 0.0
        self.substep_count = 0
        self.failed = False

    @property
    def n_particles(self) -> int:
        return self.state.count

    def add_particles(self, positions: np.ndarray, material: MaterialParameters, **kwargs):
        """Append particles; see MPMState.add_particles for the keyword arguments."""
        start, end = self.state.add_particles(positions, material, **kwargs)
        print(f"[MPMSolver] Added {end - start} {type(material).__name__} particles (total {end})")
        return start, end

    def set_levelset(self, levelset) -> None:
        self.boundary.set_levelset(levelset)

    # ------------------------------------------------------------------
    # Transfer kernels
    # ------------------------------------------------------------------

    @ti.kernel
    def _rasterize(self):
        """P2G: scatter mass and APIC momentum to the bounded region of each particle."""
        ti.loop_config(serialize=self.serialize)
        for p in range(self.state.n_particles[None]):
            pos = self.state.x[p]
            base = region_base(pos)
            m = self.state.mass[p]
            v = self.state.v[p]
            b = self.state.apic_b[p]
            for i, j, k in ti.ndrange(REGION_WIDTH, REGION_WIDTH, REGION_WIDTH):
                cell = base + ti.Vector([i, j, k])
                if self.grid.contains(cell):
                    d_pos = cell.cast(float) - pos
                    weight = weight3(d_pos)
                    self.grid.mass[cell] += weight * m
                    self.grid.velocity[cell] += weight * m * (v + 3.0 * b @ d_pos)

    @ti.kernel
    def _compute_forces(self):
        ti.loop_config(serialize=self.serialize)
        for p in range(self.state.n_particles[None]):
            self.state.calculate_force(p)

    @ti.kernel
    def _scatter_forces(self, delta_t: float):
        ti.loop_config(serialize=self.serialize)
        for p in range(self.state.n_particles[None]):
            pos = self.state.x[p]
            base = region_base(pos)
            force = self.state.tmp_force[p]
            for i, j, k in ti.ndrange(REGION_WIDTH, REGION_WIDTH, REGION_WIDTH):
                cell = base + ti.Vector([i, j, k])
                if self.grid.contains(cell):
                    mass = self.grid.mass[cell]
                    if mass != 0.0:
                        gw = weight_gradient3(pos - cell.cast(float))
                        self.grid.velocity[cell] += delta_t / mass * (force @ gw)

    @ti.kernel
    def _resample(self, delta_t: float):
        """G2P: gather velocity, APIC matrix and velocity gradient back to particles."""
        ti.loop_config(serialize=self.serialize)
        for p in range(self.state.n_particles[None]):
            pos = self.state.x[p]
            base = region_base(pos)
            v = ti.Vector.zero(float, 3)
            bv = ti.Vector.zero(float, 3)
            b = ti.Matrix.zero(float, 3, 3)
            grad = ti.Matrix.zero(float, 3, 3)
            count = 0
            for i, j, k in ti.ndrange(REGION_WIDTH, REGION_WIDTH, REGION_WIDTH):
                cell = base + ti.Vector([i, j, k])
                if self.grid.contains(cell):
                    count += 1
                    d_pos = pos - cell.cast(float)
                    weight = weight3(d_pos)
                    grid_v = self.grid.velocity[cell]
                    v += weight * grid_v
                    b += weight * grid_v.outer_product(-d_pos)
                    bv += weight * self.grid.velocity_backup[cell]
                    grad += grid_v.outer_product(weight_gradient3(d_pos))
            if ti.static(self.apic):
                # clipped regions lose the affine part
                if count != FULL_REGION:
                    b = ti.Matrix.zero(float, 3, 3)
                self.state.v[p] = v
            else:
                b = ti.Matrix.zero(float, 3, 3)
                self.state.v[p] = v - bv + self.state.v[p]
            self.state.apic_b[p] = b
            cdg = ti.Matrix.identity(float, 3) + delta_t * grad
            dg_e = self.state.dg_e[p]
            self.state.dg_cache[p] = cdg @ dg_e @ self.state.dg_p[p]
            self.state.dg_e[p] = cdg @ dg_e

    @ti.kernel
    def _advect_and_plasticity(self, delta_t: float):
        ti.loop_config(serialize=self.serialize)
        for p in range(self.state.n_particles[None]):
            self.state.x[p] = self.state.clamp_to_domain(self.state.x[p] + delta_t * self.state.v[p])
            self.state.plasticity(p)

    # ------------------------------------------------------------------
    # Pipeline stages
    # ------------------------------------------------------------------

    def rasterize(self) -> None:
        self.grid.clear()
        self._rasterize()
        self.grid.normalize_velocity()

    def apply_deformation_force(self, delta_t: float) -> None:
        self._compute_forces()
        self.state.raise_on_error("calculate_force")
        self._scatter_forces(delta_t)

    def resample(self, delta_t: float) -> None:
        self._resample(delta_t)

    def advect_and_plasticity(self, delta_t: float) -> None:
        self._advect_and_plasticity(delta_t)
        self.state.raise_on_error("plasticity")

    def substep(self, delta_t: Optional[float] = None) -> None:
        """
        Advance the simulation by one substep.

        Args:
            delta_t: Substep size, defaults to the solver's delta_t

        Raises:
            MPMError: On a fatal numerical failure, or when called after one
        """
        if self.failed:
            raise MPMError("Solver is in a failed state after a fatal error; rebuild it to continue")
        dt = self.delta_t if delta_t is None else float(delta_t)
        if dt < 0.0:
            raise ValueError(f"delta_t must be non-negative, got {dt}")

        if self.state.count > 0:
            try:
                self.rasterize()
                self.grid.backup_velocity()
                self.grid.apply_external_force(dt)
                self.apply_deformation_force(dt)
                self.boundary.grid_apply_boundary_conditions(self.current_t)
                self.resample(dt)
                self.advect_and_plasticity(dt)
                self.boundary.particle_collision_resolution(self.current_t)
            except MPMError as exc:
                self.failed = True
                print(f"[MPMSolver] Fatal error at t={self.current_t:.6f}: {exc}")
                raise
        self.current_t += dt
        self.substep_count += 1

        if self.debug_interval > 0 and self.substep_count % self.debug_interval == 0:
            self._print_stats()

    def _print_stats(self) -> None:
        n = self.state.count
        print(f"[MPM Step {self.substep_count}] t={self.current_t:.4f}s, particles: {n}")
        if n == 0:
            return
        pos = self.state.get_positions()
        speed = np.linalg.norm(self.state.get_velocities(), axis=1)
        pmin, pmax = pos.min(axis=0), pos.max(axis=0)
        print(f"  Velocity: v_avg={speed.mean():.3f}, v_max={speed.max():.3f}")
        print(f"  Particles range: X[{pmin[0]:.3f}, {pmax[0]:.3f}], Y[{pmin[1]:.3f}, {pmax[1]:.3f}], Z[{pmin[2]:.3f}, {pmax[2]:.3f}]")

    def get_render_particles(self) -> RenderParticles:
        """Particle positions centred on the domain, with a fixed colour."""
        center = np.array(self.res, dtype=np.float64) / 2.0
        positions = self.state.get_positions() - center
        colors = np.tile(np.array(RENDER_COLOR), (len(positions), 1))
        return RenderParticles(positions=positions, colors=colors)

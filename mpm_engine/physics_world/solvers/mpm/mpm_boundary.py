"""
MPM boundary handling - level-set collisions on the grid and on particles.
"""
import numpy as np
import taichi as ti

from ...levelset import as_dynamic
from .mpm_grid import MPMGrid
from .mpm_state import MPMState

# Grid nodes farther than this from the surface are left untouched
BOUNDARY_BAND = 1.0


@ti.data_oriented
class MPMBoundary:
    """Handles boundary conditions and collisions against a time-varying level set."""

    def __init__(self, state: MPMState, grid: MPMGrid, serialize: bool = False):
        """
        Initialize MPM boundary handler.

        Args:
            state: Particle store the particle pass operates on
            grid: Grid whose velocities are constrained
            serialize: Run the particle pass on a single thread
        """
        self.state = state
        self.grid = grid
        self.serialize = serialize
        self.levelset = None
        self._nodes = grid.node_positions().reshape(-1, 3)
        self._grid_cache = None

    @property
    def active(self) -> bool:
        return self.levelset is not None

    def set_levelset(self, levelset) -> None:
        """
        Attach the boundary. Static level sets are wrapped so they answer
        time-dependent queries; ``None`` removes the boundary.
        """
        self.levelset = as_dynamic(levelset)
        self._grid_cache = None
        if self.levelset is not None:
            kind = "sticky" if self.levelset.friction < 0.0 else f"friction={self.levelset.friction}"
            print(f"[MPMBoundary] Level set attached: {type(self.levelset).__name__} ({kind})")

    def _query(self, points: np.ndarray, t: float):
        phi = self.levelset.sample(points, t)
        normal = self.levelset.get_spatial_gradient(points, t)
        speed = self.levelset.get_temporal_derivative(points, t)
        return (
            np.ascontiguousarray(phi, dtype=np.float64),
            np.ascontiguousarray(normal, dtype=np.float64),
            np.ascontiguousarray(speed, dtype=np.float64),
        )

    def _grid_queries(self, t: float):
        if self._grid_cache is not None:
            return self._grid_cache
        shape = self.grid.res
        phi, normal, speed = self._query(self._nodes, t)
        queries = (phi.reshape(shape), normal.reshape(shape + (3,)), speed.reshape(shape))
        if self.levelset.is_static:
            self._grid_cache = queries
        return queries

    def grid_apply_boundary_conditions(self, t: float) -> None:
        """Constrain grid velocities near and inside the boundary at time t."""
        if not self.active:
            return
        phi, normal, speed = self._grid_queries(t)
        self._apply_grid_boundary(phi, normal, speed, self.levelset.friction)

    def particle_collision_resolution(self, t: float) -> None:
        """Push penetrating particles back to the surface at time t."""
        n = self.state.count
        if not self.active or n == 0:
            return
        positions = self.state.get_positions()
        phi, normal, speed = self._query(positions, t)
        self._resolve_particles(phi, normal, speed, self.levelset.friction)

    @ti.kernel
    def _apply_grid_boundary(
        self,
        phi: ti.types.ndarray(),
        normal: ti.types.ndarray(),
        speed: ti.types.ndarray(),
        friction: float,
    ):
        for i, j, k in self.grid.mass:
            d = phi[i, j, k]
            if d <= BOUNDARY_BAND:
                n = ti.Vector([normal[i, j, k, 0], normal[i, j, k, 1], normal[i, j, k, 2]])
                boundary_v = speed[i, j, k] * n
                v = self.grid.velocity[i, j, k] - boundary_v
                if d > 0.0:
                    pressure = ti.max(-v.dot(n), 0.0)
                    if friction < 0.0:  # sticky
                        v = ti.Vector.zero(float, 3)
                    else:
                        tangent = v - n * v.dot(n)
                        if tangent.norm() > 1e-6:
                            tangent = tangent.normalized()
                        bound = friction * pressure
                        f = -ti.min(ti.max(tangent.dot(v), -bound), bound)
                        v = v + n * pressure + tangent * f
                else:
                    v = ti.Vector.zero(float, 3)
                self.grid.velocity[i, j, k] = v + boundary_v

    @ti.kernel
    def _resolve_particles(
        self,
        phi: ti.types.ndarray(),
        normal: ti.types.ndarray(),
        speed: ti.types.ndarray(),
        friction: float,
    ):
        ti.loop_config(serialize=self.serialize)
        for p in range(self.state.n_particles[None]):
            d = phi[p]
            if d < 0.0:
                n = ti.Vector([normal[p, 0], normal[p, 1], normal[p, 2]])
                boundary_v = speed[p] * n
                v = self.state.v[p] - boundary_v
                if friction < 0.0:
                    v = ti.Vector.zero(float, 3)
                else:
                    v_n = v.dot(n)
                    # only the part moving into the surface is removed
                    if v_n < 0.0:
                        v -= v_n * n
                self.state.v[p] = v + boundary_v
                self.state.x[p] = self.state.clamp_to_domain(self.state.x[p] - d * n)

"""
MPM state management - stores particle positions, velocities, deformation gradients, etc.
"""
from typing import Sequence, Tuple

import numpy as np
import taichi as ti

from .mpm_errors import NumericalConsistencyError, PreconditionViolation
from .mpm_materials import (
    MATERIAL_DP,
    MATERIAL_EP,
    SVD_RECONSTRUCTION_TOLERANCE,
    DruckerPragerParameters,
    ElastoplasticParameters,
    MaterialParameters,
    dp_energy_gradient,
    dp_plasticity,
    dp_stress_center,
    ep_energy_gradient,
    ep_plasticity,
)

# Particles are kept inside [0, res - POSITION_EPS]
POSITION_EPS = 1e-3

# Failure codes recorded by the particle kernels
ERROR_NONE = 0
ERROR_NON_POSITIVE_SINGULAR_VALUE = 1
ERROR_POLAR_NOT_FINITE = 2
ERROR_SVD_RECONSTRUCTION = 3
ERROR_PLASTICITY_NOT_FINITE = 4

# Names of the matrices stored for each failure code
_ERROR_MATRICES = {
    ERROR_NON_POSITIVE_SINGULAR_VALUE: ("dg_elastic", "u", "sigma", "v"),
    ERROR_POLAR_NOT_FINITE: ("dg_elastic", "r", "s"),
    ERROR_SVD_RECONSTRUCTION: ("dg_elastic", "reconstruction", "u", "sigma", "v"),
    ERROR_PLASTICITY_NOT_FINITE: ("dg_elastic", "dg_elastic_new", "dg_plastic_new"),
}


@ti.func
def _is_finite(m):
    # NaN fails every comparison
    return ti.abs(m).max() < 1e30


@ti.data_oriented
class MPMState:
    """Manages MPM particle state (positions, velocities, deformation gradients, etc.)

    Transient fields (dg_cache, tmp_force, apic_b) are only meaningful inside a
    single substep and are overwritten before they are read again.
    """

    def __init__(self, max_particles: int, resolution: Sequence[int]):
        """
        Initialize MPM state.

        Args:
            max_particles: Maximum number of MPM particles
            resolution: Grid resolution (nx, ny, nz), positions live in grid-index space
        """
        self.max_particles = max_particles
        self.res = tuple(int(r) for r in resolution)

        # Kinematics
        self.x = ti.Vector.field(3, dtype=float, shape=max_particles)       # positions
        self.v = ti.Vector.field(3, dtype=float, shape=max_particles)       # velocities
        self.mass = ti.field(dtype=float, shape=max_particles)
        self.volume = ti.field(dtype=float, shape=max_particles)

        # Deformation state
        self.dg_e = ti.Matrix.field(3, 3, dtype=float, shape=max_particles)      # elastic part
        self.dg_p = ti.Matrix.field(3, 3, dtype=float, shape=max_particles)      # plastic part
        self.dg_cache = ti.Matrix.field(3, 3, dtype=float, shape=max_particles)  # Fe * Fp before re-split
        self.apic_b = ti.Matrix.field(3, 3, dtype=float, shape=max_particles)    # APIC affine matrix
        self.tmp_force = ti.Matrix.field(3, 3, dtype=float, shape=max_particles)

        # Material tag and per-material parameters
        self.material = ti.field(dtype=ti.i32, shape=max_particles)
        self.mu_0 = ti.field(dtype=float, shape=max_particles)
        self.lambda_0 = ti.field(dtype=float, shape=max_particles)
        # EP
        self.hardening = ti.field(dtype=float, shape=max_particles)
        self.theta_c = ti.field(dtype=float, shape=max_particles)
        self.theta_s = ti.field(dtype=float, shape=max_particles)
        # DP
        self.h = ti.Vector.field(4, dtype=float, shape=max_particles)  # friction angle curve h_0..h_3
        self.alpha = ti.field(dtype=float, shape=max_particles)
        self.q = ti.field(dtype=float, shape=max_particles)            # accumulated plastic strain

        # Active particle count (also the creation counter)
        self.n_particles = ti.field(dtype=ti.i32, shape=())

        # First failure seen by a particle kernel
        self.error_count = ti.field(dtype=ti.i32, shape=())
        self.error_code = ti.field(dtype=ti.i32, shape=())
        self.error_particle = ti.field(dtype=ti.i32, shape=())
        self.error_value = ti.field(dtype=float, shape=())
        self.error_matrices = ti.Matrix.field(3, 3, dtype=float, shape=5)

    @property
    def count(self) -> int:
        return int(self.n_particles[None])

    def add_particles(
        self,
        positions: np.ndarray,
        material: MaterialParameters,
        compression: float = 1.0,
        initial_velocity: Sequence[float] = (0.0, 0.0, 0.0),
        mass: float = 1.0,
        volume: float = 1.0,
    ) -> Tuple[int, int]:
        """
        Append a batch of particles sharing one material.

        Args:
            positions: (N, 3) positions in grid-index space
            material: EP or DP parameters
            compression: Initial plastic gradient is compression * I
            initial_velocity: Velocity assigned to every particle
            mass: Per-particle mass
            volume: Per-particle rest volume

        Returns:
            Index range [start, end) of the new particles
        """
        positions = np.asarray(positions).reshape(-1, 3)
        start = self.count
        end = start + len(positions)
        if end > self.max_particles:
            raise ValueError(f"Too many particles: {end} > {self.max_particles}")
        if mass <= 0.0:
            raise ValueError(f"Particle mass must be positive, got {mass}")
        if len(positions) == 0:
            return start, end

        identity = np.eye(3)
        upper = np.array(self.res, dtype=np.float64) - POSITION_EPS
        self._write(self.x, start, np.clip(positions, 0.0, upper))
        self._write(self.v, start, np.tile(np.asarray(initial_velocity, dtype=np.float64), (len(positions), 1)))
        self._write(self.mass, start, np.full(len(positions), mass))
        self._write(self.volume, start, np.full(len(positions), volume))
        self._write(self.dg_e, start, np.tile(identity, (len(positions), 1, 1)))
        self._write(self.dg_p, start, np.tile(identity * compression, (len(positions), 1, 1)))
        self._write(self.dg_cache, start, np.tile(identity, (len(positions), 1, 1)))
        self._write(self.apic_b, start, np.zeros((len(positions), 3, 3)))
        self._write(self.tmp_force, start, np.zeros((len(positions), 3, 3)))
        self._write(self.material, start, np.full(len(positions), material.kind))
        self._write(self.mu_0, start, np.full(len(positions), material.mu_0))
        self._write(self.lambda_0, start, np.full(len(positions), material.lambda_0))

        if isinstance(material, ElastoplasticParameters):
            self._write(self.hardening, start, np.full(len(positions), material.hardening))
            self._write(self.theta_c, start, np.full(len(positions), material.theta_c))
            self._write(self.theta_s, start, np.full(len(positions), material.theta_s))
        elif isinstance(material, DruckerPragerParameters):
            curve = np.array([material.h_0, material.h_1, material.h_2, material.h_3])
            self._write(self.h, start, np.tile(curve, (len(positions), 1)))
            self._write(self.alpha, start, np.full(len(positions), material.alpha))
            self._write(self.q, start, np.zeros(len(positions)))
        else:
            raise TypeError(f"Unsupported material parameters: {type(material).__name__}")

        self.n_particles[None] = end
        return start, end

    def _write(self, field, start: int, values: np.ndarray) -> None:
        """Copy a batch into rows [start, start + len(values)) of a particle field."""
        values = np.ascontiguousarray(values)
        if values.ndim == 1:
            self._write_scalars(field, start, values)
        elif values.ndim == 2:
            self._write_vectors(field, start, values)
        else:
            self._write_matrices(field, start, values)

    @ti.kernel
    def _write_scalars(self, field: ti.template(), start: ti.i32, values: ti.types.ndarray()):
        for i in range(values.shape[0]):
            field[start + i] = values[i]

    @ti.kernel
    def _write_vectors(self, field: ti.template(), start: ti.i32, values: ti.types.ndarray()):
        for i, k in ti.ndrange(values.shape[0], values.shape[1]):
            field[start + i][k] = values[i, k]

    @ti.kernel
    def _write_matrices(self, field: ti.template(), start: ti.i32, values: ti.types.ndarray()):
        for i, k, l in ti.ndrange(values.shape[0], values.shape[1], values.shape[2]):
            field[start + i][k, l] = values[i, k, l]

    def get_positions(self) -> np.ndarray:
        """Get particle positions as numpy array."""
        return self.x.to_numpy()[:self.count]

    def get_velocities(self) -> np.ndarray:
        """Get particle velocities as numpy array."""
        return self.v.to_numpy()[:self.count]

    def get_masses(self) -> np.ndarray:
        return self.mass.to_numpy()[:self.count]

    def get_deformation_gradients(self) -> Tuple[np.ndarray, np.ndarray]:
        """Elastic and plastic deformation gradients, each (N, 3, 3)."""
        n = self.count
        return self.dg_e.to_numpy()[:n], self.dg_p.to_numpy()[:n]

    def get_plastic_strain(self) -> np.ndarray:
        """Accumulated DP plastic strain q (zero for EP particles)."""
        return self.q.to_numpy()[:self.count]

    def get_materials(self) -> np.ndarray:
        return self.material.to_numpy()[:self.count]

    @ti.func
    def clamp_to_domain(self, pos):
        upper = ti.Vector([self.res[0] - POSITION_EPS, self.res[1] - POSITION_EPS, self.res[2] - POSITION_EPS])
        return ti.max(ti.min(pos, upper), 0.0)

    @ti.func
    def record_error(self, code, p, value, m0, m1, m2, m3, m4):
        # keep only the first failure, later ones just bump the counter
        if ti.atomic_add(self.error_count[None], 1) == 0:
            self.error_code[None] = code
            self.error_particle[None] = p
            self.error_value[None] = value
            self.error_matrices[0] = m0
            self.error_matrices[1] = m1
            self.error_matrices[2] = m2
            self.error_matrices[3] = m3
            self.error_matrices[4] = m4

    @ti.func
    def energy_gradient(self, p):
        dg_e = self.dg_e[p]
        gradient = dp_energy_gradient(dg_e)
        if self.material[p] == MATERIAL_EP:
            ep_gradient, r, s = ep_energy_gradient(
                dg_e, self.dg_p[p], self.hardening[p], self.mu_0[p], self.lambda_0[p]
            )
            gradient = ep_gradient
        return gradient

    @ti.kernel
    def _energy_gradients(self, out: ti.types.ndarray()):
        for p in range(self.n_particles[None]):
            gradient = self.energy_gradient(p)
            for i in ti.static(range(3)):
                for j in ti.static(range(3)):
                    out[p, i, j] = gradient[i, j]

    def get_energy_gradients(self) -> np.ndarray:
        """Per-particle energy gradient, (N, 3, 3)."""
        out = np.zeros((self.count, 3, 3), dtype=np.float64)
        if self.count > 0:
            self._energy_gradients(out)
        return out

    @ti.func
    def calculate_force(self, p):
        """Store -vol * P(F) * F^T in tmp_force for particle p."""
        dg_e = self.dg_e[p]
        force = ti.Matrix.zero(float, 3, 3)
        if self.material[p] == MATERIAL_EP:
            gradient, r, s = ep_energy_gradient(
                dg_e, self.dg_p[p], self.hardening[p], self.mu_0[p], self.lambda_0[p]
            )
            if _is_finite(r) and _is_finite(s):
                force = -self.volume[p] * gradient @ dg_e.transpose()
            else:
                self.record_error(ERROR_POLAR_NOT_FINITE, p, 0.0, dg_e, r, s, s, s)
        elif self.material[p] == MATERIAL_DP:
            u, sig, v = ti.svd(dg_e)
            if sig[0, 0] > 0.0 and sig[1, 1] > 0.0 and sig[2, 2] > 0.0:
                center = dp_stress_center(sig, self.mu_0[p], self.lambda_0[p])
                force = -self.volume[p] * (u @ center @ v.transpose()) @ dg_e.transpose()
            else:
                smallest = ti.min(sig[0, 0], sig[1, 1], sig[2, 2])
                self.record_error(ERROR_NON_POSITIVE_SINGULAR_VALUE, p, smallest, dg_e, u, sig, v, v)
        self.tmp_force[p] = force

    @ti.func
    def plasticity(self, p):
        """Split the updated deformation into elastic and plastic parts."""
        if self.material[p] == MATERIAL_EP:
            new_e, new_p = ep_plasticity(self.dg_e[p], self.dg_cache[p], self.theta_c[p], self.theta_s[p])
            self.dg_e[p] = new_e
            self.dg_p[p] = new_p
        elif self.material[p] == MATERIAL_DP:
            dg_e = self.dg_e[p]
            new_e, new_p, new_q, new_alpha, residual, rec, u, sig, v = dp_plasticity(
                dg_e, self.dg_p[p], self.alpha[p], self.q[p], self.h[p], self.mu_0[p], self.lambda_0[p]
            )
            smallest = ti.min(sig[0, 0], sig[1, 1], sig[2, 2])
            # a NaN residual also fails this comparison
            if not residual < SVD_RECONSTRUCTION_TOLERANCE:
                self.record_error(ERROR_SVD_RECONSTRUCTION, p, residual, dg_e, rec, u, sig, v)
            elif smallest <= 0.0:
                self.record_error(ERROR_NON_POSITIVE_SINGULAR_VALUE, p, smallest, dg_e, u, sig, v, v)
            elif not (_is_finite(new_e) and _is_finite(new_p) and _is_finite(ti.Vector([new_q, new_alpha]))):
                self.record_error(ERROR_PLASTICITY_NOT_FINITE, p, new_q, dg_e, new_e, new_p, new_p, new_p)
            else:
                self.dg_e[p] = new_e
                self.dg_p[p] = new_p
                self.q[p] = new_q
                self.alpha[p] = new_alpha

    def raise_on_error(self, stage: str) -> None:
        """Raise the first failure recorded since the last check, if any."""
        failures = int(self.error_count[None])
        if failures == 0:
            return
        code = int(self.error_code[None])
        particle = int(self.error_particle[None])
        matrices = self.error_matrices.to_numpy()
        diagnostics = {
            "stage": stage,
            "particle": particle,
            "failures": failures,
            "value": float(self.error_value[None]),
        }
        for idx, name in enumerate(_ERROR_MATRICES[code]):
            diagnostics[name] = matrices[idx]
        self.error_count[None] = 0
        self.error_code[None] = ERROR_NONE

        print(f"[MPMState] {stage} failed on particle {particle} ({failures} particle(s) affected)")
        for name in _ERROR_MATRICES[code]:
            print(f"  {name} =\n{diagnostics[name]}")

        if code == ERROR_NON_POSITIVE_SINGULAR_VALUE:
            raise PreconditionViolation(
                f"Non-positive singular value {diagnostics['value']:.3e} in DP {stage} of particle {particle}",
                diagnostics,
            )
        if code == ERROR_POLAR_NOT_FINITE:
            raise NumericalConsistencyError(
                f"Polar decomposition of particle {particle} is not finite", diagnostics
            )
        if code == ERROR_PLASTICITY_NOT_FINITE:
            raise NumericalConsistencyError(
                f"DP return mapping of particle {particle} produced non-finite values", diagnostics
            )
        raise NumericalConsistencyError(
            f"SVD reconstruction residual {diagnostics['value']:.3e} of particle {particle} "
            f"exceeds {SVD_RECONSTRUCTION_TOLERANCE}",
            diagnostics,
        )


__all__ = ["MPMState", "POSITION_EPS"]

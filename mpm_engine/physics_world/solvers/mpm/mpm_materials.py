"""
MPM material models: elastoplastic snow (EP) and Drucker-Prager sand (DP).

Each model is a set of pure Taichi functions over the deformation gradients;
MPMState dispatches between them on the per-particle material tag.
"""
from __future__ import annotations

import math
from dataclasses import dataclass, fields
from typing import Any, Mapping, Union

import taichi as ti

# Material tags
MATERIAL_EP = 0
MATERIAL_DP = 1

MATERIAL_NAMES = {"ep": MATERIAL_EP, "dp": MATERIAL_DP}

# Singular values of the plastic gradient are kept in this range
PLASTIC_SIGMA_MIN = 0.1
PLASTIC_SIGMA_MAX = 10.0
# Frobenius norm above which an SVD reconstruction is rejected
SVD_RECONSTRUCTION_TOLERANCE = 1e-4
# Upper bound on the hardening exponent
HARDENING_EXPONENT_MAX = 10.0


@dataclass
class ElastoplasticParameters:
    """Snow-like material (Stomakhin et al. 2013)."""

    hardening: float = 10.0
    mu_0: float = 1e5
    lambda_0: float = 1e5
    theta_c: float = 2.5e-2  # critical compression
    theta_s: float = 7.5e-3  # critical stretch

    kind = MATERIAL_EP


@dataclass
class DruckerPragerParameters:
    """Sand-like material (Klar et al. 2016). Friction angles in degrees."""

    h_0: float = 35.0
    h_1: float = 9.0
    h_2: float = 0.2
    h_3: float = 10.0
    lambda_0: float = 204057.0
    mu_0: float = 136038.0
    alpha: float = 1.0

    kind = MATERIAL_DP


MaterialParameters = Union[ElastoplasticParameters, DruckerPragerParameters]


def material_from_config(entry: Mapping[str, Any]) -> MaterialParameters:
    """Build material parameters from a particle batch entry.

    Unknown keys are ignored so the same mapping can carry batch-level settings
    (density, compression, velocity, ...).
    """
    name = str(entry.get("type", "ep")).lower()
    if name not in MATERIAL_NAMES:
        raise ValueError(f"Unknown material type '{name}', expected one of {sorted(MATERIAL_NAMES)}")
    cls = ElastoplasticParameters if MATERIAL_NAMES[name] == MATERIAL_EP else DruckerPragerParameters
    overrides = {f.name: float(entry[f.name]) for f in fields(cls) if f.name in entry}
    return cls(**overrides)


@ti.func
def ep_energy_gradient(dg_e, dg_p, hardening, mu_0, lambda_0):
    """
    Fixed-corotated energy gradient with exponential hardening.

    Returns:
        Tuple of (energy gradient, polar rotation R, polar stretch S)
    """
    j_e = dg_e.determinant()
    j_p = dg_p.determinant()
    e = ti.exp(ti.min(hardening * (1.0 - j_p), HARDENING_EXPONENT_MAX))
    mu = mu_0 * e
    lam = lambda_0 * e
    r, s = ti.polar_decompose(dg_e)
    gradient = 2.0 * mu * (dg_e - r) + lam * (j_e - 1.0) * j_e * dg_e.transpose().inverse()
    return gradient, r, s


@ti.func
def ep_plasticity(dg_e, dg_cache, theta_c, theta_s):
    """
    Project the elastic gradient onto the snow yield surface.

    Args:
        dg_e: Elastic deformation gradient after the grid update
        dg_cache: Combined gradient Fe * Fp for this substep

    Returns:
        Tuple of (elastic gradient, plastic gradient)
    """
    u, sig, v = ti.svd(dg_e)
    for d in ti.static(range(3)):
        sig[d, d] = ti.min(ti.max(sig[d, d], 1.0 - theta_c), 1.0 + theta_s)
    new_e = u @ sig @ v.transpose()
    new_p = new_e.inverse() @ dg_cache
    u_p, sig_p, v_p = ti.svd(new_p)
    for d in ti.static(range(3)):
        sig_p[d, d] = ti.min(ti.max(sig_p[d, d], PLASTIC_SIGMA_MIN), PLASTIC_SIGMA_MAX)
    new_p = u_p @ sig_p @ v_p.transpose()
    return new_e, new_p


@ti.func
def dp_energy_gradient(dg_e):
    """Sand has no separate energy gradient; the force uses dp_stress_center."""
    return ti.Matrix.identity(float, 3)


@ti.func
def dp_stress_center(sig, mu_0, lambda_0):
    """Hencky stress in principal space: 2 mu Sig^-1 log Sig + lambda tr(log Sig) Sig^-1."""
    log_sig = ti.Vector([ti.log(sig[0, 0]), ti.log(sig[1, 1]), ti.log(sig[2, 2])])
    trace = log_sig.sum()
    center = ti.Matrix.zero(float, 3, 3)
    for d in ti.static(range(3)):
        center[d, d] = (2.0 * mu_0 * log_sig[d] + lambda_0 * trace) / sig[d, d]
    return center


@ti.func
def dp_project(sigma, alpha, mu_0, lambda_0):
    """
    Return mapping of principal stretches onto the Drucker-Prager cone.

    Args:
        sigma: Diagonal matrix of singular values
        alpha: Yield surface slope

    Returns:
        Tuple of (projected singular values, plastic multiplier)
    """
    epsilon = ti.Vector([ti.log(sigma[0, 0]), ti.log(sigma[1, 1]), ti.log(sigma[2, 2])])
    trace = epsilon.sum()
    epsilon_hat = epsilon - trace / 3.0
    epsilon_norm = epsilon.norm()
    epsilon_hat_norm = epsilon_hat.norm()
    sigma_out = ti.Matrix.identity(float, 3)
    delta_q = 0.0
    if epsilon_hat_norm <= 0.0 or trace > 0.0:
        # expansion: project to the cone tip
        delta_q = epsilon_norm
    else:
        delta_gamma = epsilon_hat_norm + (3.0 * lambda_0 + 2.0 * mu_0) / (2.0 * mu_0) * trace * alpha
        if delta_gamma <= 0.0:
            sigma_out = sigma
        else:
            h = epsilon - delta_gamma / epsilon_hat_norm * epsilon_hat
            sigma_out = ti.Matrix.zero(float, 3, 3)
            for d in ti.static(range(3)):
                sigma_out[d, d] = ti.exp(h[d])
            delta_q = delta_gamma
    return sigma_out, delta_q


@ti.func
def dp_friction_alpha(q, h):
    """Yield slope from the friction-angle hardening curve (degrees)."""
    phi = h[0] + (h[1] * q - h[3]) * ti.exp(-h[2] * q)
    sin_phi = ti.sin(phi * math.pi / 180.0)
    return ti.sqrt(2.0 / 3.0) * (2.0 * sin_phi) / (3.0 - sin_phi)


@ti.func
def dp_plasticity(dg_e, dg_p, alpha, q, h, mu_0, lambda_0):
    """
    Drucker-Prager plasticity with friction-angle hardening.

    Returns:
        Tuple of (elastic gradient, plastic gradient, q, alpha,
        reconstruction residual, reconstruction, U, Sigma, V)
    """
    u, sig, v = ti.svd(dg_e)
    t, delta_q = dp_project(sig, alpha, mu_0, lambda_0)
    rec = u @ sig @ v.transpose()
    residual = (rec - dg_e).norm()
    new_e = u @ t @ v.transpose()
    new_p = v @ t.inverse() @ sig @ v.transpose() @ dg_p
    new_q = q + delta_q
    new_alpha = dp_friction_alpha(new_q, h)
    return new_e, new_p, new_q, new_alpha, residual, rec, u, sig, v

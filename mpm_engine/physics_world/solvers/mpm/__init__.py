"""
MPM (Material Point Method) solver module.
Provides grid-based continuum simulation for snow (EP) and sand (DP).
"""

from .mpm_errors import MPMError, NumericalConsistencyError, PreconditionViolation
from .mpm_materials import DruckerPragerParameters, ElastoplasticParameters, material_from_config
from .mpm_solver import MPMSolver
from .mpm_state import MPMState

__all__ = [
    'MPMSolver',
    'MPMState',
    'MPMError',
    'PreconditionViolation',
    'NumericalConsistencyError',
    'ElastoplasticParameters',
    'DruckerPragerParameters',
    'material_from_config',
]

"""
MPM failure modes. Every error raised by the solver is fatal for the run.
"""
from typing import Any, Dict, Optional


class MPMError(RuntimeError):
    """Base class for unrecoverable solver failures."""

    def __init__(self, message: str, diagnostics: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.diagnostics = diagnostics or {}


class PreconditionViolation(MPMError):
    """A caller contract was broken (e.g. non-positive singular value in the DP force)."""


class NumericalConsistencyError(MPMError):
    """A decomposition produced non-finite values or failed to reconstruct its input."""

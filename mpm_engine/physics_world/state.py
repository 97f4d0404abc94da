"""Dataclasses describing the evolving physics state."""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np


@dataclass
class RenderParticles:
    positions: np.ndarray  # (N, 3) grid cells, centred on the domain
    colors: np.ndarray  # (N, 4) RGB + alpha in [0, 1]

    def particle_count(self) -> int:
        return len(self.positions)


@dataclass
class WorldSnapshot:
    step_index: int
    time: float  # seconds (s)
    particles: RenderParticles

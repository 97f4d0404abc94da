"""Exporter that writes MPM render particles (PLY) for each exported frame.

Output structure:
  outputs/
  └── particles/
      ├── particles_00000.ply
      ├── particles_00001.ply
      ...
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import numpy as np

from .configuration import ExportConfig
from .physics_world.state import RenderParticles, WorldSnapshot


@dataclass
class SimulationExporter:
    output_root: Path
    particle_dirname: str = "particles"
    export_every: int = 1

    @classmethod
    def from_config(cls, config: Optional[ExportConfig]) -> "SimulationExporter":
        if config is None:
            exporter = cls(output_root=Path("outputs"))
        else:
            exporter = cls(
                output_root=config.output_root,
                particle_dirname=config.particle_subdir,
                export_every=config.export_every,
            )
        exporter._ensure_directories()
        return exporter

    def _ensure_directories(self) -> None:
        (self.output_root / self.particle_dirname).mkdir(parents=True, exist_ok=True)

    def particle_path(self, step_index: int) -> Path:
        return self.output_root / self.particle_dirname / f"particles_{step_index:05d}.ply"

    def export_step(self, step_index: int, snapshot: WorldSnapshot) -> Optional[Path]:
        """Write the snapshot's particles if this step is due; returns the written path."""
        if step_index % self.export_every != 0:
            return None
        path = self.particle_path(step_index)
        self._write_particle_ply(path, snapshot.particles)
        return path

    def _write_particle_ply(self, path: Path, particles: RenderParticles) -> None:
        count = particles.particle_count()
        colors = np.clip(np.rint(np.asarray(particles.colors) * 255.0), 0, 255).astype(np.int64)
        with path.open("w", encoding="utf-8") as handle:
            handle.write("ply\n")
            handle.write("format ascii 1.0\n")
            handle.write(f"element vertex {count}\n")
            handle.write("property float x\nproperty float y\nproperty float z\n")
            handle.write("property uchar red\nproperty uchar green\nproperty uchar blue\n")
            handle.write("property uchar alpha\n")
            handle.write("end_header\n")
            for pos, rgba in zip(particles.positions, colors):
                handle.write(
                    f"{pos[0]:.6f} {pos[1]:.6f} {pos[2]:.6f} "
                    f"{rgba[0]} {rgba[1]} {rgba[2]} {rgba[3]}\n"
                )

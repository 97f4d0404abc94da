"""High-level orchestration layer around the physics world and exporter."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .configuration import SceneConfig, load_scene_config
from .exporter import SimulationExporter
from .physics_world.state import WorldSnapshot
from .physics_world.world import PhysicsWorld


@dataclass
class WorldContainer:
    """Bundles scene configuration, physics world, and exporter."""

    config: SceneConfig
    world: PhysicsWorld
    exporter: SimulationExporter
    current_step: int = 0

    @classmethod
    def from_config(cls, config: SceneConfig, **world_options) -> "WorldContainer":
        world = PhysicsWorld.from_config(config, **world_options)
        exporter = SimulationExporter.from_config(config.export)
        return cls(config=config, world=world, exporter=exporter)

    @classmethod
    def from_config_file(cls, config_path: str | Path, **world_options) -> "WorldContainer":
        return cls.from_config(load_scene_config(config_path), **world_options)

    def step(self, *, export: bool = True) -> WorldSnapshot:
        """Advance the world by a single frame and optionally export state."""
        snapshot = self.world.step()
        if export:
            self.exporter.export_step(self.current_step, snapshot)
        self.current_step += 1
        return snapshot

    def run(self, steps: Optional[int] = None) -> None:
        """Execute multiple simulation steps."""
        total_steps = steps if steps is not None else self.config.simulation.total_steps
        for _ in range(total_steps):
            self.step()

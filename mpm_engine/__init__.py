"""Core engine package for the MPM snow and sand simulator."""

from .world_container import WorldContainer
from .configuration import load_scene_config, SceneConfig

__all__ = [
    "WorldContainer",
    "SceneConfig",
    "load_scene_config",
]

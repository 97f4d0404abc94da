"""Physics world package aggregating the MPM solver and its boundaries."""

from .world import PhysicsWorld
from .state import WorldSnapshot

__all__ = ["PhysicsWorld", "WorldSnapshot"]

import numpy as np
import pytest

from mpm_engine.physics_world.levelset import DynamicLevelSet3D, PlaneLevelSet
from mpm_engine.physics_world.solvers.mpm import ElastoplasticParameters, MPMSolver

RES = 8
FLOOR = 2.5


def make_solver():
    return MPMSolver(resolution=(RES, RES, RES), gravity=(0.0, 0.0, 0.0), max_particles=8)


def apply_grid_boundary(friction, velocity, levelset=None, t=0.0):
    solver = make_solver()
    if levelset is None:
        levelset = PlaneLevelSet(point=(0.0, FLOOR, 0.0), friction=friction)
    solver.set_levelset(levelset)
    grid_v = np.zeros((RES, RES, RES, 3))
    grid_v[...] = velocity
    solver.grid.velocity.from_numpy(grid_v)
    solver.boundary.grid_apply_boundary_conditions(t)
    return solver.grid.velocity.to_numpy()


def test_nodes_inside_the_obstacle_are_stopped():
    result = apply_grid_boundary(0.0, (1.0, -2.0, 0.5))
    np.testing.assert_allclose(result[:, :3], 0.0)


def test_slip_surface_removes_normal_approach():
    result = apply_grid_boundary(0.0, (1.0, -2.0, 0.0))
    np.testing.assert_allclose(result[:, 3], np.tile([1.0, 0.0, 0.0], (RES, RES, 1)), atol=1e-12)


def test_friction_reduces_tangential_velocity():
    result = apply_grid_boundary(0.25, (1.0, -2.0, 0.0))
    np.testing.assert_allclose(result[:, 3], np.tile([0.5, 0.0, 0.0], (RES, RES, 1)), atol=1e-12)


def test_sticky_surface_stops_nearby_nodes():
    result = apply_grid_boundary(-1.0, (1.0, -2.0, 0.0))
    np.testing.assert_allclose(result[:, 3], 0.0)


def test_nodes_outside_the_band_and_separating_nodes_are_untouched():
    result = apply_grid_boundary(0.5, (1.0, 2.0, 0.0))
    np.testing.assert_allclose(result[:, 3:], np.tile([1.0, 2.0, 0.0], (RES, RES - 3, RES, 1)), atol=1e-12)


def test_moving_wall_drags_boundary_nodes():
    start = PlaneLevelSet(point=(0.0, FLOOR, 0.0))
    end = PlaneLevelSet(point=(0.0, FLOOR + 1.0, 0.0))
    # the floor rises at one cell per second
    result = apply_grid_boundary(0.0, (0.0, 0.0, 0.0), DynamicLevelSet3D(start, end, t0=0.0, t1=1.0))
    np.testing.assert_allclose(result[:, :4], np.tile([0.0, 1.0, 0.0], (RES, 4, RES, 1)), atol=1e-12)
    np.testing.assert_allclose(result[:, 5:], 0.0)


def test_grid_queries_are_cached_for_static_boundaries():
    solver = make_solver()
    solver.set_levelset(PlaneLevelSet(point=(0.0, FLOOR, 0.0)))
    solver.boundary.grid_apply_boundary_conditions(0.0)
    cached = solver.boundary._grid_cache
    assert cached is not None
    solver.boundary.grid_apply_boundary_conditions(1.0)
    assert solver.boundary._grid_cache is cached

    solver.set_levelset(None)
    assert not solver.boundary.active
    solver.boundary.grid_apply_boundary_conditions(0.0)


@pytest.mark.parametrize("friction, expected", [(0.0, [1.0, 0.0, 0.0]), (-1.0, [0.0, 0.0, 0.0])])
def test_particles_are_pushed_back_to_the_surface(friction, expected):
    solver = make_solver()
    solver.add_particles(
        [[4.0, 2.0, 4.0], [4.0, 5.0, 4.0]],
        ElastoplasticParameters(),
        initial_velocity=(1.0, -3.0, 0.0),
    )
    solver.set_levelset(PlaneLevelSet(point=(0.0, FLOOR, 0.0), friction=friction))
    solver.boundary.particle_collision_resolution(0.0)

    positions = solver.state.get_positions()
    velocities = solver.state.get_velocities()
    np.testing.assert_allclose(positions[0], [4.0, FLOOR, 4.0], atol=1e-12)
    np.testing.assert_allclose(velocities[0], expected, atol=1e-12)
    # particles in the free region keep moving
    np.testing.assert_allclose(positions[1], [4.0, 5.0, 4.0])
    np.testing.assert_allclose(velocities[1], [1.0, -3.0, 0.0])


def test_particles_leaving_the_surface_keep_their_velocity():
    solver = make_solver()
    solver.add_particles([[4.0, 2.0, 4.0]], ElastoplasticParameters(), initial_velocity=(0.5, 1.0, 0.0))
    solver.set_levelset(PlaneLevelSet(point=(0.0, FLOOR, 0.0), friction=0.3))
    solver.boundary.particle_collision_resolution(0.0)
    np.testing.assert_allclose(solver.state.get_velocities()[0], [0.5, 1.0, 0.0])
    assert solver.state.get_positions()[0, 1] == pytest.approx(FLOOR)

import numpy as np
import pytest

from mpm_engine.configuration import DensityConfig
from mpm_engine.physics_world.seeding import (
    BoxDensity,
    ConstantDensity,
    GridDensity,
    SphereDensity,
    density_from_config,
    seed_particles,
)


def cell_counts(positions, res):
    cells = np.floor(positions).astype(np.int64)
    counts = np.zeros((res, res, res), dtype=np.int64)
    np.add.at(counts, tuple(cells.T), 1)
    return counts


def test_integer_density_fills_every_cell_exactly(rng):
    positions = seed_particles(ConstantDensity(2.0), (4, 4, 4), rng)
    assert positions.shape == (128, 3)
    assert np.all(cell_counts(positions, 4) == 2)


def test_fractional_density_rounds_stochastically(rng):
    positions = seed_particles(ConstantDensity(0.5), (16, 16, 16), rng)
    counts = cell_counts(positions, 16)
    assert set(np.unique(counts)) <= {0, 1}
    assert len(positions) == pytest.approx(0.5 * 16 ** 3, rel=0.1)


def test_zero_density_seeds_nothing(rng):
    positions = seed_particles(ConstantDensity(0.0), (8, 8, 8), rng)
    assert positions.shape == (0, 3)


def test_box_density_only_seeds_inside(rng):
    density = BoxDensity(lower=(0.0, 0.0, 0.0), upper=(0.5, 0.5, 0.5), value=1.0)
    positions = seed_particles(density, (4, 4, 4), rng)
    assert len(positions) == 8
    assert np.all(positions < 2.0)
    assert np.all(positions >= 0.0)


def test_sphere_density_samples_by_distance():
    density = SphereDensity(center=(0.5, 0.5, 0.5), radius=0.25, value=3.0)
    np.testing.assert_allclose(density.sample([[0.5, 0.5, 0.5], [0.5, 0.7, 0.5], [0.9, 0.5, 0.5]]), [3.0, 3.0, 0.0])


def test_grid_density_reads_cell_centres(rng):
    volume = np.zeros((4, 4, 4))
    volume[1, 2, 3] = 3.0
    volume[0, 0, 0] = 1.0
    positions = seed_particles(GridDensity(volume), (4, 4, 4), rng)
    counts = cell_counts(positions, 4)
    assert counts[1, 2, 3] == 3
    assert counts[0, 0, 0] == 1
    assert counts.sum() == 4


def test_grid_density_from_file(tmp_path):
    path = tmp_path / "density.npy"
    np.save(path, np.ones((2, 2, 2)))
    density = density_from_config(DensityConfig(kind="grid", value=2.5, path=path))
    np.testing.assert_allclose(density.sample([[0.25, 0.25, 0.25], [0.9, 0.1, 0.6]]), [2.5, 2.5])
    with pytest.raises(ValueError):
        GridDensity(np.ones((4, 4)))


@pytest.mark.parametrize(
    "config, expected_type",
    [
        (DensityConfig(), ConstantDensity),
        (DensityConfig(kind="box"), BoxDensity),
        (DensityConfig(kind="sphere"), SphereDensity),
    ],
)
def test_density_from_config(config, expected_type):
    assert isinstance(density_from_config(config), expected_type)


def test_unknown_density_kind_is_rejected():
    with pytest.raises(ValueError, match="Unknown density kind"):
        density_from_config(DensityConfig(kind="noise"))


def test_seeding_is_reproducible():
    a = seed_particles(ConstantDensity(1.5), (6, 6, 6), np.random.default_rng(7))
    b = seed_particles(ConstantDensity(1.5), (6, 6, 6), np.random.default_rng(7))
    np.testing.assert_array_equal(a, b)

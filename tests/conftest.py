import numpy as np
import pytest
import taichi as ti


def pytest_configure(config):
    # double precision keeps the tolerance checks meaningful; fast math would fold away NaN checks
    ti.init(arch=ti.cpu, default_fp=ti.f64, fast_math=False, random_seed=0)


@pytest.fixture
def rng():
    return np.random.default_rng(1234)

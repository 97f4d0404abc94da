import numpy as np
import pytest
import taichi as ti

from mpm_engine.physics_world.solvers.mpm.mpm_kernels import (
    bspline_weight,
    bspline_weight_derivative,
    region_base,
    weight3,
    weight_gradient3,
)


@ti.kernel
def _eval_1d(xs: ti.types.ndarray(), w: ti.types.ndarray(), dw: ti.types.ndarray()):
    for i in range(xs.shape[0]):
        w[i] = bspline_weight(xs[i])
        dw[i] = bspline_weight_derivative(xs[i])


@ti.kernel
def _eval_3d(d: ti.types.ndarray(), w: ti.types.ndarray(), grad: ti.types.ndarray()):
    for i in range(d.shape[0]):
        d_pos = ti.Vector([d[i, 0], d[i, 1], d[i, 2]])
        w[i] = weight3(d_pos)
        g = weight_gradient3(d_pos)
        for k in ti.static(range(3)):
            grad[i, k] = g[k]


@ti.kernel
def _eval_base(pos: ti.types.ndarray(), base: ti.types.ndarray()):
    for i in range(pos.shape[0]):
        b = region_base(ti.Vector([pos[i, 0], pos[i, 1], pos[i, 2]]))
        for k in ti.static(range(3)):
            base[i, k] = b[k]


def eval_1d(xs):
    xs = np.ascontiguousarray(xs, dtype=np.float64)
    w = np.zeros_like(xs)
    dw = np.zeros_like(xs)
    _eval_1d(xs, w, dw)
    return w, dw


def eval_3d(d):
    d = np.ascontiguousarray(d, dtype=np.float64)
    w = np.zeros(len(d))
    grad = np.zeros_like(d)
    _eval_3d(d, w, grad)
    return w, grad


def test_weight_reference_values():
    w, dw = eval_1d([0.0, 1.0, -1.0, 2.0, -2.0])
    assert w[0] == pytest.approx(2.0 / 3.0)
    assert w[1] == pytest.approx(1.0 / 6.0)
    assert w[2] == pytest.approx(1.0 / 6.0)
    assert w[3] == pytest.approx(0.0, abs=1e-12)
    assert w[4] == pytest.approx(0.0, abs=1e-12)
    assert dw[0] == pytest.approx(0.0, abs=1e-15)
    assert dw[1] == pytest.approx(-0.5)
    assert dw[2] == pytest.approx(0.5)


def test_weight_is_symmetric_and_non_negative():
    xs = np.linspace(0.0, 2.0, 101)
    w_pos, dw_pos = eval_1d(xs)
    w_neg, dw_neg = eval_1d(-xs)
    np.testing.assert_allclose(w_pos, w_neg, rtol=0, atol=1e-15)
    np.testing.assert_allclose(dw_pos, -dw_neg, rtol=0, atol=1e-15)
    assert np.all(w_pos >= -1e-12)


def test_weight_is_continuous_at_knot():
    w, dw = eval_1d([1.0 - 1e-9, 1.0 + 1e-9])
    assert w[0] == pytest.approx(w[1], abs=1e-8)
    assert dw[0] == pytest.approx(dw[1], abs=1e-8)


def test_derivative_matches_finite_difference():
    xs = np.linspace(-1.99, 1.99, 57)
    h = 1e-6
    _, dw = eval_1d(xs)
    w_plus, _ = eval_1d(xs + h)
    w_minus, _ = eval_1d(xs - h)
    np.testing.assert_allclose(dw, (w_plus - w_minus) / (2.0 * h), atol=1e-6)


@pytest.mark.parametrize("x", [0.0, 0.25, 0.5, 0.999])
def test_partition_of_unity(x):
    nodes = np.arange(-1, 3, dtype=np.float64)
    w, dw = eval_1d(nodes - x)
    assert w.sum() == pytest.approx(1.0, abs=1e-12)
    assert dw.sum() == pytest.approx(0.0, abs=1e-12)


def test_3d_weight_and_gradient(rng):
    pos = rng.uniform(5.0, 6.0, size=3)
    base = np.floor(pos) - 1
    nodes = np.stack(np.meshgrid(*[base[d] + np.arange(4) for d in range(3)], indexing="ij"), -1).reshape(-1, 3)
    w, grad = eval_3d(pos - nodes)
    assert w.sum() == pytest.approx(1.0, abs=1e-12)
    np.testing.assert_allclose(grad.sum(axis=0), 0.0, atol=1e-12)

    # gradient of the separable weight matches finite differences
    h = 1e-6
    d = pos - nodes[:5]
    _, analytic = eval_3d(d)
    for axis in range(3):
        offset = np.zeros(3)
        offset[axis] = h
        w_plus, _ = eval_3d(d + offset)
        w_minus, _ = eval_3d(d - offset)
        np.testing.assert_allclose(analytic[:, axis], (w_plus - w_minus) / (2.0 * h), atol=1e-6)


def test_region_base_is_floor_minus_one():
    pos = np.array([[0.0, 0.5, 3.999], [7.25, 1.0, 2.5]])
    base = np.zeros((2, 3), dtype=np.int32)
    _eval_base(pos, base)
    np.testing.assert_array_equal(base, np.floor(pos).astype(np.int32) - 1)

"""
MPM Taichi kernels - cubic B-spline weights used for particle <-> grid transfer.

All positions are in grid-index space, so the kernel support is 2 cells in each
direction and every particle touches a 4x4x4 block of grid nodes.
"""
import taichi as ti

# Width of the bounded rasterization region along one axis
REGION_WIDTH = 4
# Number of nodes in an unclipped rasterization region
FULL_REGION = REGION_WIDTH ** 3


@ti.func
def bspline_weight(x):
    """
    Cubic B-spline kernel.

    Args:
        x: Signed distance in grid cells, |x| <= 2

    Returns:
        Kernel weight
    """
    abs_x = ti.abs(x)
    assert abs_x <= 2.0, "B-spline argument outside of [-2, 2]"
    w = 0.0
    if abs_x < 1.0:
        w = 0.5 * abs_x * abs_x * abs_x - abs_x * abs_x + 2.0 / 3.0
    else:
        w = -1.0 / 6.0 * abs_x * abs_x * abs_x + abs_x * abs_x - 2.0 * abs_x + 4.0 / 3.0
    return w


@ti.func
def bspline_weight_derivative(x):
    """
    Derivative of the cubic B-spline kernel.

    Args:
        x: Signed distance in grid cells, |x| <= 2

    Returns:
        dw/dx (odd in x)
    """
    s = 1.0
    if x < 0.0:
        s = -1.0
    abs_x = x * s
    assert abs_x <= 2.0, "B-spline argument outside of [-2, 2]"
    grad = 0.0
    if abs_x < 1.0:
        grad = 1.5 * abs_x * abs_x - 2.0 * abs_x
    else:
        grad = -0.5 * abs_x * abs_x + 2.0 * abs_x - 2.0
    return s * grad


@ti.func
def weight3(d_pos):
    """Separable 3D weight w(x) * w(y) * w(z)."""
    return bspline_weight(d_pos[0]) * bspline_weight(d_pos[1]) * bspline_weight(d_pos[2])


@ti.func
def weight_gradient3(d_pos):
    """
    Gradient of the separable 3D weight with respect to d_pos.

    Args:
        d_pos: Offset from grid node to particle (particle - node)

    Returns:
        3D gradient vector
    """
    wx = bspline_weight(d_pos[0])
    wy = bspline_weight(d_pos[1])
    wz = bspline_weight(d_pos[2])
    return ti.Vector([
        bspline_weight_derivative(d_pos[0]) * wy * wz,
        wx * bspline_weight_derivative(d_pos[1]) * wz,
        wx * wy * bspline_weight_derivative(d_pos[2]),
    ])


@ti.func
def region_base(pos):
    """Lower corner of the 4x4x4 rasterization region around a particle."""
    # positions are clamped to be non-negative, so truncation is floor
    return ti.cast(pos, ti.i32) - 1

from __future__ import annotations

import numpy as np
import pytest

from vbspview.coords import UNIT_SCALE, map_coords, map_coords_array, map_directions_array


def test_one_native_unit_along_x_is_one_centimeter_on_output_z() -> None:
    out = map_coords((1.905, 0.0, 0.0))
    assert out == pytest.approx((0.0, 0.0, 0.01))


def test_zero_maps_to_zero() -> None:
    assert map_coords((0.0, 0.0, 0.0)) == (0.0, 0.0, 0.0)


def test_conversion_is_linear() -> None:
    rng = np.random.default_rng(7)
    a = rng.normal(size=3) * 500.0
    b = rng.normal(size=3) * 500.0
    s = 3.25
    assert np.allclose(map_coords(a + b), np.add(map_coords(a), map_coords(b)))
    assert np.allclose(map_coords(s * a), s * np.asarray(map_coords(a)))


def test_axis_order_y_z_x() -> None:
    assert map_coords((1.0, 2.0, 3.0)) == pytest.approx((2.0 * UNIT_SCALE, 3.0 * UNIT_SCALE, 1.0 * UNIT_SCALE))


def test_array_form_matches_scalar_form() -> None:
    pts = np.array([[1.0, 2.0, 3.0], [-64.0, 128.0, 0.5]])
    out = map_coords_array(pts)
    assert out.dtype == np.float32
    assert out.shape == (2, 3)
    for row, p in zip(out, pts):
        assert row == pytest.approx(map_coords(p), rel=1e-6)


def test_directions_are_swapped_not_scaled() -> None:
    out = map_directions_array(np.array([[0.0, 0.0, 1.0]]))
    assert out[0] == pytest.approx((0.0, 1.0, 0.0))

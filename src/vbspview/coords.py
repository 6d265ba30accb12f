from __future__ import annotations

from typing import Iterable

import numpy as np

# 1 hammer unit is ~1.905cm; output units are meters.
UNIT_SCALE = 1.0 / (1.905 * 100.0)

# Source is X forward, Y left, Z up. Output is Y up: (x, y, z) -> (y, z, x).
_AXIS_ORDER = (1, 2, 0)

# Permutation matrix P with P @ v == (v.y, v.z, v.x). Orthonormal, det = +1, so it preserves handedness.
AXIS_PERMUTATION = np.array(
    [
        [0.0, 1.0, 0.0],
        [0.0, 0.0, 1.0],
        [1.0, 0.0, 0.0],
    ],
    dtype=np.float64,
)


def map_coords(v: Iterable[float]) -> tuple[float, float, float]:
    x, y, z = (float(c) for c in v)
    return (y * UNIT_SCALE, z * UNIT_SCALE, x * UNIT_SCALE)


def map_direction(v: Iterable[float]) -> tuple[float, float, float]:
    # Normals and other unit directions get the axis swap only.
    x, y, z = (float(c) for c in v)
    return (y, z, x)


def map_coords_array(points: np.ndarray) -> np.ndarray:
    """Convert an (N, 3) array of Source positions to output space (float32)."""
    arr = np.asarray(points, dtype=np.float64).reshape(-1, 3)
    return (arr[:, _AXIS_ORDER] * UNIT_SCALE).astype(np.float32)


def map_directions_array(vectors: np.ndarray) -> np.ndarray:
    arr = np.asarray(vectors, dtype=np.float64).reshape(-1, 3)
    return arr[:, _AXIS_ORDER].astype(np.float32)

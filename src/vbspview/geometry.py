"""
Renderer-ready triangle records and the transform math shared by world and prop extraction.

All matrices here act on converted (output) space column vectors: `p' = M @ [x, y, z, 1]`.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field, replace

import numpy as np

from vbspview.coords import AXIS_PERMUTATION, map_coords

_EPS = 1e-12


def _identity() -> np.ndarray:
    return np.eye(4, dtype=np.float64)


@dataclass
class TriMesh:
    positions: np.ndarray  # (n, 3) float32
    normals: np.ndarray | None = None  # (n, 3) float32
    uvs: np.ndarray | None = None  # (n, 2) float32
    tangents: np.ndarray | None = None  # (n, 4) float32, w = handedness
    # Flat triangle index list; None means every 3 consecutive vertices form a triangle.
    indices: np.ndarray | None = None  # (3k,) uint32

    @property
    def vertex_count(self) -> int:
        return int(self.positions.shape[0])

    @property
    def triangle_count(self) -> int:
        if self.indices is not None:
            return int(self.indices.shape[0]) // 3
        return self.vertex_count // 3

    def triangles(self) -> np.ndarray:
        """(k, 3) vertex indices for every triangle."""
        if self.indices is not None:
            return self.indices.reshape(-1, 3).astype(np.int64)
        return np.arange(self.vertex_count - self.vertex_count % 3, dtype=np.int64).reshape(-1, 3)

    def compute_normals(self) -> None:
        """Area-weighted vertex normals from triangle faces (flat for non-indexed meshes)."""
        pos = self.positions.astype(np.float64)
        tris = self.triangles()
        acc = np.zeros_like(pos)
        if tris.size:
            a, b, c = pos[tris[:, 0]], pos[tris[:, 1]], pos[tris[:, 2]]
            face_n = np.cross(b - a, c - a)
            for k in range(3):
                np.add.at(acc, tris[:, k], face_n)
        self.normals = _normalize_rows(acc).astype(np.float32)

    def compute_tangents(self) -> None:
        """Per-vertex tangent basis from positions, normals and UVs (requires both)."""
        if self.uvs is None:
            raise ValueError("compute_tangents needs uvs")
        if self.normals is None:
            self.compute_normals()
        pos = self.positions.astype(np.float64)
        uv = self.uvs.astype(np.float64)
        nrm = self.normals.astype(np.float64)
        tris = self.triangles()
        tan = np.zeros_like(pos)
        bit = np.zeros_like(pos)
        if tris.size:
            p0, p1, p2 = pos[tris[:, 0]], pos[tris[:, 1]], pos[tris[:, 2]]
            w0, w1, w2 = uv[tris[:, 0]], uv[tris[:, 1]], uv[tris[:, 2]]
            e1, e2 = p1 - p0, p2 - p0
            d1, d2 = w1 - w0, w2 - w0
            det = d1[:, 0] * d2[:, 1] - d2[:, 0] * d1[:, 1]
            r = np.where(np.abs(det) > _EPS, 1.0 / np.where(det == 0.0, 1.0, det), 0.0)
            sdir = (e1 * d2[:, 1:2] - e2 * d1[:, 1:2]) * r[:, None]
            tdir = (e2 * d1[:, 0:1] - e1 * d2[:, 0:1]) * r[:, None]
            for k in range(3):
                np.add.at(tan, tris[:, k], sdir)
                np.add.at(bit, tris[:, k], tdir)

        # Gram-Schmidt against the normal.
        t = tan - nrm * np.sum(nrm * tan, axis=1, keepdims=True)
        t = _normalize_rows(t)
        handed = np.where(np.sum(np.cross(nrm, t) * bit, axis=1) < 0.0, -1.0, 1.0)
        self.tangents = np.concatenate([t, handed[:, None]], axis=1).astype(np.float32)


@dataclass
class Primitive:
    name: str
    mesh: TriMesh
    transform: np.ndarray = field(default_factory=_identity)
    material_index: int | None = None


def _normalize_rows(v: np.ndarray) -> np.ndarray:
    n = np.linalg.norm(v, axis=1, keepdims=True)
    return np.where(n > _EPS, v / np.where(n > _EPS, n, 1.0), 0.0)


# ---------------------------------------------------------------------------
# Matrices
# ---------------------------------------------------------------------------


def translation_matrix(t) -> np.ndarray:
    m = _identity()
    m[:3, 3] = np.asarray(t, dtype=np.float64).reshape(3)
    return m


def scale_matrix(s) -> np.ndarray:
    m = _identity()
    m[0, 0], m[1, 1], m[2, 2] = (float(c) for c in s)
    return m


def source_rotation(angles) -> np.ndarray:
    """3x3 rotation for Source (pitch, yaw, roll) degrees, in Source axes: Rz(yaw) @ Ry(pitch) @ Rx(roll)."""
    pitch, yaw, roll = (math.radians(float(a)) for a in angles)
    cp, sp = math.cos(pitch), math.sin(pitch)
    cy, sy = math.cos(yaw), math.sin(yaw)
    cr, sr = math.cos(roll), math.sin(roll)
    rz = np.array([[cy, -sy, 0.0], [sy, cy, 0.0], [0.0, 0.0, 1.0]])
    ry = np.array([[cp, 0.0, sp], [0.0, 1.0, 0.0], [-sp, 0.0, cp]])
    rx = np.array([[1.0, 0.0, 0.0], [0.0, cr, -sr], [0.0, sr, cr]])
    return rz @ ry @ rx


def rotation_matrix(angles) -> np.ndarray:
    """4x4 converted-space rotation for Source angles (the Source rotation conjugated by the axis swap)."""
    m = _identity()
    m[:3, :3] = AXIS_PERMUTATION @ source_rotation(angles) @ AXIS_PERMUTATION.T
    return m


def placement_matrix(origin, angles, scale=(1.0, 1.0, 1.0)) -> np.ndarray:
    """T(convert(origin)) @ R(angles) @ S(scale); origin and scale are given in Source axes."""
    s_conv = AXIS_PERMUTATION @ np.asarray(scale, dtype=np.float64).reshape(3)
    return translation_matrix(map_coords(origin)) @ rotation_matrix(angles) @ scale_matrix(s_conv)


def normal_matrix(transform: np.ndarray) -> np.ndarray:
    """Inverse-transpose of the upper 3x3 of `transform`."""
    return np.linalg.inv(np.asarray(transform, dtype=np.float64)[:3, :3]).T


def transform_normals(transform: np.ndarray, normals: np.ndarray) -> np.ndarray:
    out = np.asarray(normals, dtype=np.float64).reshape(-1, 3) @ normal_matrix(transform).T
    return _normalize_rows(out).astype(np.float32)


def bake_primitive(prim: Primitive) -> Primitive:
    """
    Apply `prim.transform` to its vertices and return a copy with an identity transform.

    Normals go through the inverse-transpose so non-uniform scale keeps them perpendicular
    to the surface. A mirroring transform (negative determinant) flips triangle winding so
    front faces stay front faces.
    """
    m = np.asarray(prim.transform, dtype=np.float64)
    mesh = prim.mesh
    pos = mesh.positions.astype(np.float64) @ m[:3, :3].T + m[:3, 3]
    normals = None if mesh.normals is None else transform_normals(m, mesh.normals)
    tangents = None
    mirrored = np.linalg.det(m[:3, :3]) < 0.0
    if mesh.tangents is not None:
        t = _normalize_rows(mesh.tangents[:, :3].astype(np.float64) @ m[:3, :3].T)
        w = mesh.tangents[:, 3:4].astype(np.float64) * (-1.0 if mirrored else 1.0)
        tangents = np.concatenate([t, w], axis=1).astype(np.float32)
    indices = mesh.indices
    if mirrored:
        tris = mesh.triangles()[:, (0, 2, 1)]
        if indices is None:
            order = tris.reshape(-1)
            pos = pos[order]
            normals = None if normals is None else normals[order]
            tangents = None if tangents is None else tangents[order]
            uvs = None if mesh.uvs is None else mesh.uvs[order]
            baked = TriMesh(positions=pos.astype(np.float32), normals=normals, uvs=uvs, tangents=tangents)
            return replace(prim, mesh=baked, transform=_identity())
        indices = tris.reshape(-1).astype(np.uint32)
    baked = TriMesh(
        positions=pos.astype(np.float32),
        normals=normals,
        uvs=mesh.uvs,
        tangents=tangents,
        indices=indices,
    )
    return replace(prim, mesh=baked, transform=_identity())


def flip_winding(tris: np.ndarray) -> np.ndarray:
    """Clockwise-front (Source) triangles to counter-clockwise-front: (a, b, c) -> (a, c, b)."""
    return np.asarray(tris).reshape(-1, 3)[:, (0, 2, 1)]

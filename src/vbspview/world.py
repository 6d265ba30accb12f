from __future__ import annotations

import logging
from typing import Iterable

import numpy as np

from vbspview.config import LoadConfig
from vbspview.coords import map_coords_array
from vbspview.errors import MapLoadError
from vbspview.formats.bsp import Bsp, Face
from vbspview.geometry import Primitive, TriMesh, flip_winding
from vbspview.material_table import MaterialTable

logger = logging.getLogger(__name__)


def face_triangles(bsp: Bsp, face: Face) -> np.ndarray:
    """Triangle-list positions of one face in Source space and Source winding ((3k, 3))."""
    if face.dispinfo >= 0:
        return bsp.displacement_triangles(face)
    poly = bsp.face_polygon(face)
    n = poly.shape[0]
    if n < 3:
        return np.zeros((0, 3), dtype=np.float64)
    fan = np.array([(0, i, i + 1) for i in range(1, n - 1)], dtype=np.intp)
    return poly[fan.reshape(-1)]


def extract_world(
    bsp: Bsp,
    table: MaterialTable,
    *,
    submodels: Iterable[tuple[int, tuple[float, float, float]]] = (),
    config: LoadConfig | None = None,
) -> list[Primitive]:
    """
    Visible faces of the world model (plus offset brush sub-models), one merged primitive per texture.

    Faces are non-indexed triangle lists in output space and winding; normals and tangents are
    computed over the merged buffer.
    """
    cfg = config or LoadConfig()
    if not bsp.models:
        raise MapLoadError("map has no world model")

    groups: dict[str, list[tuple[np.ndarray, np.ndarray]]] = {}
    skipped = 0
    face_count = 0
    for model_index, offset in [(0, (0.0, 0.0, 0.0))] + list(submodels):
        off = np.asarray(offset, dtype=np.float64)
        for face in bsp.model_faces(model_index):
            if not bsp.face_is_visible(face):
                skipped += 1
                continue
            tris = face_triangles(bsp, face)
            if tris.shape[0] == 0:
                continue
            uvs = bsp.texture_uvs(face, tris)
            order = flip_winding(np.arange(tris.shape[0])).reshape(-1)
            groups.setdefault(bsp.face_texture_name(face), []).append((tris[order] + off, uvs[order]))
            face_count += 1

    prims: list[Primitive] = []
    for name, parts in groups.items():
        mesh = TriMesh(
            positions=map_coords_array(np.concatenate([p for p, _ in parts])),
            uvs=np.concatenate([u for _, u in parts]).astype(np.float32),
        )
        mesh.compute_normals()
        mesh.compute_tangents()
        prims.append(
            Primitive(name=name, mesh=mesh, material_index=table.get_index(name, cfg.default_search_paths))
        )
    logger.info(
        "world: %d faces in %d texture groups (%d invisible skipped)", face_count, len(prims), skipped
    )
    return prims

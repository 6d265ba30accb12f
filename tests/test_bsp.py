from __future__ import annotations

import io
import struct
import zipfile

import pytest

from source_fixtures import (
    LUMP_DISP_VERTS,
    LUMP_DISPINFO,
    LUMP_EDGES,
    LUMP_ENTITIES,
    LUMP_FACES,
    LUMP_MODELS,
    LUMP_PAKFILE,
    LUMP_SURFEDGES,
    SURF_NODRAW,
    SURF_SKY,
    build_bsp,
    dispinfo_record,
    entities_lump,
    face_record,
    model_record,
    quad_bsp_lumps,
    static_prop_lump,
)
from vbspview.errors import BspError
from vbspview.formats.bsp import Bsp


def _zip(files: dict[str, bytes]) -> bytes:
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        for name, data in files.items():
            zf.writestr(name, data)
    return buf.getvalue()


def test_reads_header_faces_and_texture_names() -> None:
    lumps = quad_bsp_lumps([("BRICK/WALL01", 0), ("tools/toolsnodraw", SURF_NODRAW), ("brick/wall01", 0)])
    bsp = Bsp.read(build_bsp(lumps, version=20))
    assert bsp.version == 20
    assert len(bsp.faces) == 3
    assert len(bsp.models) == 1
    assert bsp.models[0].num_faces == 3
    assert bsp.texture_names == ["BRICK/WALL01", "tools/toolsnodraw", "brick/wall01"]
    assert [bsp.face_texture_name(f) for f in bsp.faces] == ["BRICK/WALL01", "tools/toolsnodraw", "brick/wall01"]
    assert [bsp.face_is_visible(f) for f in bsp.faces] == [True, False, True]
    assert bsp.static_props == []
    assert bsp.pakfile is None


def test_sky_faces_are_invisible() -> None:
    bsp = Bsp.read(build_bsp(quad_bsp_lumps([("tools/toolsskybox", SURF_SKY)])))
    assert not bsp.face_is_visible(bsp.faces[0])


def test_face_polygon_follows_surfedges() -> None:
    bsp = Bsp.read(build_bsp(quad_bsp_lumps([("a", 0), ("b", 0)])))
    poly = bsp.face_polygon(bsp.faces[1])
    assert poly.tolist() == [[0.0, 0.0, 1.0], [0.0, 1.0, 1.0], [1.0, 1.0, 1.0], [1.0, 0.0, 1.0]]


def test_texture_uvs_divide_by_texture_size() -> None:
    bsp = Bsp.read(build_bsp(quad_bsp_lumps([("a", 0)])))
    face = bsp.faces[0]
    uvs = bsp.texture_uvs(face, bsp.face_polygon(face))
    assert uvs[2] == pytest.approx((1.0 / 64.0, 1.0 / 64.0))


def test_negative_surfedge_uses_edge_end() -> None:
    lumps = quad_bsp_lumps([("a", 0)])
    # Reverse the loop: edges walked backwards start at their second vertex.
    lumps[LUMP_SURFEDGES] = struct.pack("<4i", -4, -3, -2, -1)
    bsp = Bsp.read(build_bsp(lumps))
    poly = bsp.face_polygon(bsp.faces[0])
    assert poly[:, :2].tolist() == [[0.0, 0.0], [1.0, 0.0], [1.0, 1.0], [0.0, 1.0]]


def test_entities_and_pakfile() -> None:
    lumps = quad_bsp_lumps([("a", 0)])
    lumps[LUMP_ENTITIES] = entities_lump([{"classname": "worldspawn"}, {"classname": "func_brush", "model": "*1"}])
    lumps[LUMP_PAKFILE] = _zip({"materials/a.vmt": b"packed"})
    bsp = Bsp.read(build_bsp(lumps))
    assert [e["classname"] for e in bsp.entities] == ["worldspawn", "func_brush"]
    assert bsp.pakfile is not None
    with zipfile.ZipFile(io.BytesIO(bsp.pakfile)) as zf:
        assert zf.read("materials/a.vmt") == b"packed"


def test_static_props_v10() -> None:
    names = ["models/props/crate.mdl", "models/props/barrel.mdl"]
    props = [
        {"model": 1, "origin": (10.0, 20.0, 30.0), "angles": (0.0, 90.0, 0.0), "skin": 2},
        {"model": 0},
    ]
    sprp = static_prop_lump(10, names, props, size=76)
    bsp = Bsp.read(build_bsp(quad_bsp_lumps([("a", 0)]), static_props=(10, sprp)))
    assert len(bsp.static_props) == 2
    sp = bsp.static_props[0]
    assert sp.model == "models/props/barrel.mdl"
    assert sp.origin == pytest.approx((10.0, 20.0, 30.0))
    assert sp.angles == pytest.approx((0.0, 90.0, 0.0))
    assert sp.skin == 2
    assert sp.scale == (1.0, 1.0, 1.0)
    assert bsp.static_props[1].model == "models/props/crate.mdl"


def _displacement_bsp(center_height: float) -> Bsp:
    lumps = quad_bsp_lumps([("nature/blend", 0)])
    lumps[LUMP_FACES] = face_record(first_edge=0, num_edges=4, texinfo=0, dispinfo=0)
    lumps[LUMP_DISPINFO] = dispinfo_record(start=(0.0, 0.0, 0.0), vert_start=0, power=2)
    verts = bytearray()
    for k in range(25):
        dist = center_height if k == 12 else 0.0
        verts += struct.pack("<5f", 0.0, 0.0, 1.0, dist, 0.0)
    lumps[LUMP_DISP_VERTS] = bytes(verts)
    return Bsp.read(build_bsp(lumps))


def test_displacement_grid_is_offset_along_vectors() -> None:
    bsp = _displacement_bsp(8.0)
    grid, n = bsp.displacement_grid(bsp.faces[0])
    assert n == 5
    assert grid.shape == (25, 3)
    assert grid[0] == pytest.approx((0.0, 0.0, 0.0))
    assert grid[12] == pytest.approx((0.5, 0.5, 8.0))
    # Row 4 ends at corner c1 (0, 1); last vertex is c2 (1, 1).
    assert grid[20] == pytest.approx((0.0, 1.0, 0.0))
    assert grid[24] == pytest.approx((1.0, 1.0, 0.0))


def test_displacement_triangle_count() -> None:
    bsp = _displacement_bsp(0.0)
    tris = bsp.displacement_triangles(bsp.faces[0])
    assert tris.shape == (4 * 4 * 2 * 3, 3)


def test_displacement_without_dispinfo_raises() -> None:
    bsp = Bsp.read(build_bsp(quad_bsp_lumps([("a", 0)])))
    with pytest.raises(BspError):
        bsp.displacement_grid(bsp.faces[0])


def test_bad_magic() -> None:
    data = bytearray(build_bsp(quad_bsp_lumps([("a", 0)])))
    data[:4] = b"IBSP"
    with pytest.raises(BspError):
        Bsp.read(bytes(data))


def test_unsupported_version() -> None:
    with pytest.raises(BspError):
        Bsp.read(build_bsp(quad_bsp_lumps([("a", 0)]), version=29))


def test_truncated_file() -> None:
    data = build_bsp(quad_bsp_lumps([("a", 0)]))
    with pytest.raises(BspError):
        Bsp.read(data[:600])
    with pytest.raises(BspError):
        Bsp.read(data[:-8])


def test_surfedge_outside_edge_lump() -> None:
    lumps = quad_bsp_lumps([("a", 0)])
    lumps[LUMP_SURFEDGES] = struct.pack("<4i", 999, 999, 999, 999)
    with pytest.raises(BspError, match="surfedge"):
        Bsp.read(build_bsp(lumps))


def test_edge_outside_vertex_lump() -> None:
    lumps = quad_bsp_lumps([("a", 0)])
    lumps[LUMP_EDGES] = struct.pack("<10H", 0, 0, 0, 1, 1, 2, 2, 3, 3, 700)
    with pytest.raises(BspError, match="edge references a vertex"):
        Bsp.read(build_bsp(lumps))


def test_face_edges_past_surfedge_lump() -> None:
    lumps = quad_bsp_lumps([("a", 0)])
    lumps[LUMP_FACES] = face_record(first_edge=2, num_edges=4, texinfo=0)
    with pytest.raises(BspError, match="face 0"):
        Bsp.read(build_bsp(lumps))


def test_model_faces_past_face_lump() -> None:
    lumps = quad_bsp_lumps([("a", 0)])
    lumps[LUMP_MODELS] = model_record(first_face=0, num_faces=5)
    with pytest.raises(BspError, match="model 0"):
        Bsp.read(build_bsp(lumps))

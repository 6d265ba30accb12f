"""
Panda3D handoff: primitives and materials -> GeomNodes, Textures and a scene NodePath.

CPU-side only (no window or GSG needed). Primitive space is Y-up; the scene root
rotates it back to Panda's Z-up.
"""

from __future__ import annotations

import numpy as np
from panda3d.core import (
    AlphaTestAttrib,
    Geom,
    GeomNode,
    GeomTriangles,
    GeomVertexArrayFormat,
    GeomVertexData,
    GeomVertexFormat,
    GeomVertexWriter,
    InternalName,
    LMatrix4f,
    NodePath,
    RenderAttrib,
    Texture,
    TransparencyAttrib,
)

from vbspview.geometry import Primitive
from vbspview.material import MaterialData, TextureData
from vbspview.pipeline import MapGeometry

# Output (y, z, x)-ordered Y-up vectors back to Z-up: (a, b, c) -> (c, a, b).
Y_UP_TO_Z_UP = np.array(
    [
        [0.0, 0.0, 1.0, 0.0],
        [1.0, 0.0, 0.0, 0.0],
        [0.0, 1.0, 0.0, 0.0],
        [0.0, 0.0, 0.0, 1.0],
    ],
    dtype=np.float64,
)

_UNTEXTURED_COLOR = (0.6, 0.6, 0.6, 1.0)


def vformat_v3n3t2t4() -> GeomVertexFormat:
    arr = GeomVertexArrayFormat()
    arr.addColumn(InternalName.getVertex(), 3, Geom.NT_float32, Geom.C_point)
    arr.addColumn(InternalName.getNormal(), 3, Geom.NT_float32, Geom.C_normal)
    arr.addColumn(InternalName.getTexcoord(), 2, Geom.NT_float32, Geom.C_texcoord)
    arr.addColumn(InternalName.getTangent(), 4, Geom.NT_float32, Geom.C_vector)
    fmt = GeomVertexFormat()
    fmt.addArray(arr)
    return GeomVertexFormat.registerFormat(fmt)


def to_panda_matrix(m: np.ndarray) -> LMatrix4f:
    # Panda matrices are row-vector (translation in the last row).
    t = np.asarray(m, dtype=np.float64).T
    return LMatrix4f(*(float(v) for v in t.reshape(-1)))


def make_texture(tex: TextureData) -> Texture:
    img = tex.image
    if img.mode not in ("RGB", "RGBA"):
        img = img.convert("RGBA")
    w, h = img.size
    fmt = Texture.F_rgba if img.mode == "RGBA" else Texture.F_rgb
    out = Texture(tex.name)
    out.setup2dTexture(w, h, Texture.T_unsigned_byte, fmt)
    # Row 0 is sampled at v=0, which is where Source UVs expect the image top.
    out.setRamImageAs(img.tobytes(), img.mode)
    out.setWrapU(Texture.WM_repeat)
    out.setWrapV(Texture.WM_repeat)
    out.setMinfilter(Texture.FT_linear_mipmap_linear)
    out.setMagfilter(Texture.FT_linear)
    return out


def primitive_geom_node(prim: Primitive) -> GeomNode:
    mesh = prim.mesh
    if mesh.normals is None:
        mesh.compute_normals()
    n = mesh.vertex_count
    uvs = mesh.uvs if mesh.uvs is not None else np.zeros((n, 2), dtype=np.float32)
    tangents = mesh.tangents if mesh.tangents is not None else np.zeros((n, 4), dtype=np.float32)

    vdata = GeomVertexData(prim.name or "primitive", vformat_v3n3t2t4(), Geom.UHStatic)
    vdata.uncleanSetNumRows(n)
    vw = GeomVertexWriter(vdata, "vertex")
    nw = GeomVertexWriter(vdata, "normal")
    tw = GeomVertexWriter(vdata, "texcoord")
    gw = GeomVertexWriter(vdata, "tangent")
    for p, nn, uv, tg in zip(mesh.positions.tolist(), mesh.normals.tolist(), uvs.tolist(), tangents.tolist()):
        vw.setData3f(*p)
        nw.setData3f(*nn)
        tw.setData2f(*uv)
        gw.setData4f(*tg)

    tris = GeomTriangles(Geom.UHStatic)
    for a, b, c in mesh.triangles().tolist():
        tris.addVertices(a, b, c)
    tris.closePrimitive()

    geom = Geom(vdata)
    geom.addPrimitive(tris)
    node = GeomNode(prim.name or "primitive")
    node.addGeom(geom)
    return node


def apply_material(np_: NodePath, material: MaterialData | None, texture: Texture | None) -> None:
    if material is None:
        np_.setColor(*_UNTEXTURED_COLOR)
        return
    r, g, b, a = material.color
    np_.setColor(r / 255.0, g / 255.0, b / 255.0, a / 255.0)
    if texture is not None:
        np_.setTexture(texture, 1)
    if material.translucent:
        np_.setTransparency(TransparencyAttrib.M_alpha)
    elif material.alpha_test is not None:
        np_.setAttrib(AlphaTestAttrib.make(RenderAttrib.M_greater_equal, float(material.alpha_test)))


def build_scene(geometry: MapGeometry, *, name: str = "map") -> NodePath:
    """NodePath tree `name/{world,props}/<primitive>` with transforms, textures and render state set."""
    root = NodePath(name)
    root.setMat(to_panda_matrix(Y_UP_TO_Z_UP))
    textures: list[Texture | None] = [
        make_texture(m.texture) if m.texture is not None else None for m in geometry.materials
    ]

    for group_name, prims in (("world", geometry.world), ("props", geometry.props)):
        group = root.attachNewNode(group_name)
        for prim in prims:
            child = group.attachNewNode(primitive_geom_node(prim))
            child.setMat(to_panda_matrix(prim.transform))
            idx = prim.material_index
            if idx is not None and 0 <= idx < len(geometry.materials):
                apply_material(child, geometry.materials[idx], textures[idx])
            else:
                apply_material(child, None, None)
    return root

"""
Source rigid-model reader: `.mdl` (studiohdr), `.vvd` (vertex data) and `.dx90.vtx` (strips).

Only the bind pose of LOD 0 is read. Each body part contributes its default (first) model.
Triangles keep Source winding (clockwise front); callers flip when converting.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass

import numpy as np

from vbspview.errors import ModelError

MDL_MAGIC = b"IDST"
VVD_MAGIC = b"IDSV"
VTX_VERSION = 7

_MDL_TEXTURE_SIZE = 64
_MDL_BODYPART_SIZE = 16
_MDL_MODEL_SIZE = 148
_MDL_MESH_SIZE = 116
_VVD_VERTEX_SIZE = 48

_VTX_BODYPART_SIZE = 8
_VTX_MODEL_SIZE = 8
_VTX_LOD_SIZE = 12
_VTX_MESH_SIZE = 9
_VTX_STRIPGROUP_SIZE = 25
_VTX_VERTEX_SIZE = 9
_VTX_STRIP_SIZE = 27

STRIP_IS_TRILIST = 0x01
STRIP_IS_TRISTRIP = 0x02


def section_names(mdl_path: str) -> tuple[str, str]:
    """`(vvd, vtx)` names for a `.mdl` path."""
    low = mdl_path.lower()
    if not low.endswith(".mdl"):
        raise ModelError(f"not a .mdl path: {mdl_path}")
    stem = mdl_path[:-4]
    return stem + ".vvd", stem + ".dx90.vtx"


def _cstr(data: bytes, offset: int) -> str:
    if offset < 0 or offset >= len(data):
        return ""
    end = data.find(b"\x00", offset)
    if end < 0:
        end = len(data)
    return data[offset:end].decode("ascii", errors="replace")


# ---------------------------------------------------------------------------
# MDL
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class MdlMesh:
    material: int
    num_vertices: int
    vertex_offset: int


@dataclass(frozen=True)
class MdlModel:
    name: str
    vertex_start: int
    num_vertices: int
    meshes: tuple[MdlMesh, ...]


@dataclass(frozen=True)
class MdlBodyPart:
    name: str
    models: tuple[MdlModel, ...]


@dataclass(frozen=True)
class Mdl:
    version: int
    checksum: int
    name: str
    textures: tuple[str, ...]
    texture_dirs: tuple[str, ...]
    # skin family -> material slot -> texture index
    skins: tuple[tuple[int, ...], ...]
    body_parts: tuple[MdlBodyPart, ...]

    @classmethod
    def read(cls, data: bytes) -> "Mdl":
        try:
            return _read_mdl(data)
        except struct.error as exc:
            raise ModelError(f"truncated MDL: {exc}") from exc


def _read_mdl(data: bytes) -> Mdl:
    if data[:4] != MDL_MAGIC:
        raise ModelError(f"not an MDL file (magic={data[:4]!r})")
    version, checksum = struct.unpack_from("<ii", data, 4)
    if version < 44 or version > 49:
        raise ModelError(f"unsupported MDL version {version}")
    (raw_name,) = struct.unpack_from("<64s", data, 12)
    name = raw_name.split(b"\x00", 1)[0].decode("ascii", errors="replace")

    (
        num_textures,
        texture_index,
        num_cd,
        cd_index,
        num_skinref,
        num_families,
        skin_index,
        num_bodyparts,
        bodypart_index,
    ) = struct.unpack_from("<9i", data, 204)

    textures: list[str] = []
    for i in range(num_textures):
        base = texture_index + i * _MDL_TEXTURE_SIZE
        (name_ofs,) = struct.unpack_from("<i", data, base)
        textures.append(_cstr(data, base + name_ofs))

    dirs: list[str] = []
    for i in range(num_cd):
        (ofs,) = struct.unpack_from("<i", data, cd_index + i * 4)
        dirs.append(_cstr(data, ofs))

    skins: list[tuple[int, ...]] = []
    for fam in range(num_families):
        row = struct.unpack_from(f"<{num_skinref}h", data, skin_index + fam * num_skinref * 2)
        skins.append(tuple(int(v) for v in row))
    if not skins:
        # No skin families: slot i maps straight to texture i.
        skins.append(tuple(range(num_textures)))

    body_parts: list[MdlBodyPart] = []
    for b in range(num_bodyparts):
        bp_base = bodypart_index + b * _MDL_BODYPART_SIZE
        bp_name_ofs, num_models, _base, model_index = struct.unpack_from("<iiii", data, bp_base)
        models: list[MdlModel] = []
        for m in range(num_models):
            m_base = bp_base + model_index + m * _MDL_MODEL_SIZE
            (raw_mname,) = struct.unpack_from("<64s", data, m_base)
            num_meshes, mesh_index, num_vertices, vertex_index = struct.unpack_from("<iiii", data, m_base + 72)
            meshes: list[MdlMesh] = []
            for k in range(num_meshes):
                me_base = m_base + mesh_index + k * _MDL_MESH_SIZE
                material, _model_ofs, me_verts, me_vofs = struct.unpack_from("<iiii", data, me_base)
                meshes.append(MdlMesh(material=int(material), num_vertices=int(me_verts), vertex_offset=int(me_vofs)))
            models.append(
                MdlModel(
                    name=raw_mname.split(b"\x00", 1)[0].decode("ascii", errors="replace"),
                    vertex_start=int(vertex_index) // _VVD_VERTEX_SIZE,
                    num_vertices=int(num_vertices),
                    meshes=tuple(meshes),
                )
            )
        body_parts.append(MdlBodyPart(name=_cstr(data, bp_base + bp_name_ofs), models=tuple(models)))

    return Mdl(
        version=int(version),
        checksum=int(checksum),
        name=name,
        textures=tuple(textures),
        texture_dirs=tuple(dirs),
        skins=tuple(skins),
        body_parts=tuple(body_parts),
    )


# ---------------------------------------------------------------------------
# VVD
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Vvd:
    checksum: int
    positions: np.ndarray  # (n, 3) float32, Source space
    normals: np.ndarray  # (n, 3) float32
    uvs: np.ndarray  # (n, 2) float32
    tangents: np.ndarray | None  # (n, 4) float32

    @classmethod
    def read(cls, data: bytes) -> "Vvd":
        try:
            return _read_vvd(data)
        except (struct.error, ValueError) as exc:
            raise ModelError(f"truncated VVD: {exc}") from exc


def _read_vvd(data: bytes) -> Vvd:
    if data[:4] != VVD_MAGIC:
        raise ModelError(f"not a VVD file (magic={data[:4]!r})")
    version, checksum, num_lods = struct.unpack_from("<iii", data, 4)
    if version != 4:
        raise ModelError(f"unsupported VVD version {version}")
    lod_counts = struct.unpack_from("<8i", data, 16)
    num_fixups, fixup_start, vertex_start, tangent_start = struct.unpack_from("<4i", data, 48)
    if num_lods < 1:
        raise ModelError("VVD has no LODs")

    total = lod_counts[0]
    raw = np.frombuffer(data, dtype=np.uint8, count=total * _VVD_VERTEX_SIZE, offset=vertex_start)
    verts = raw.reshape(total, _VVD_VERTEX_SIZE)
    floats = verts[:, 16:48].copy().view("<f4").reshape(total, 8)

    tangents = None
    if tangent_start > 0:
        tangents = np.frombuffer(data, dtype="<f4", count=total * 4, offset=tangent_start).reshape(total, 4)

    if num_fixups > 0:
        # LOD 0 keeps every fixup range, in table order.
        order: list[np.ndarray] = []
        for i in range(num_fixups):
            lod, src, count = struct.unpack_from("<iii", data, fixup_start + i * 12)
            if lod >= 0:
                order.append(np.arange(src, src + count))
        idx = np.concatenate(order) if order else np.zeros(0, dtype=np.intp)
        floats = floats[idx]
        if tangents is not None:
            tangents = tangents[idx]

    return Vvd(
        checksum=int(checksum),
        positions=np.ascontiguousarray(floats[:, 0:3], dtype=np.float32),
        normals=np.ascontiguousarray(floats[:, 3:6], dtype=np.float32),
        uvs=np.ascontiguousarray(floats[:, 6:8], dtype=np.float32),
        tangents=None if tangents is None else np.ascontiguousarray(tangents, dtype=np.float32),
    )


# ---------------------------------------------------------------------------
# VTX
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class VtxMesh:
    # Triangles as mesh-local vertex ids (origMeshVertID), Source winding.
    triangles: np.ndarray  # (k, 3) int64


@dataclass(frozen=True)
class Vtx:
    checksum: int
    # body part -> model -> LOD 0 meshes
    body_parts: tuple[tuple[tuple[VtxMesh, ...], ...], ...]

    @classmethod
    def read(cls, data: bytes) -> "Vtx":
        try:
            return _read_vtx(data)
        except (struct.error, ValueError) as exc:
            raise ModelError(f"truncated VTX: {exc}") from exc


def _strip_triangles(kind: int, idx: np.ndarray) -> list[tuple[int, int, int]]:
    out: list[tuple[int, int, int]] = []
    if kind & STRIP_IS_TRISTRIP:
        for i in range(len(idx) - 2):
            a, b, c = int(idx[i]), int(idx[i + 1]), int(idx[i + 2])
            if a == b or b == c or a == c:
                continue
            out.append((a, b, c) if i % 2 == 0 else (a, c, b))
        return out
    for i in range(0, len(idx) - 2, 3):
        out.append((int(idx[i]), int(idx[i + 1]), int(idx[i + 2])))
    return out


def _read_strip_group(data: bytes, base: int) -> list[tuple[int, int, int]]:
    num_verts, vert_ofs, num_indices, index_ofs, num_strips, strip_ofs, _flags = struct.unpack_from(
        "<6iB", data, base
    )
    orig_ids = np.zeros(num_verts, dtype=np.int64)
    for v in range(num_verts):
        (orig_ids[v],) = struct.unpack_from("<H", data, base + vert_ofs + v * _VTX_VERTEX_SIZE + 4)
    indices = np.frombuffer(data, dtype="<u2", count=num_indices, offset=base + index_ofs).astype(np.int64)

    tris: list[tuple[int, int, int]] = []
    for s in range(num_strips):
        s_base = base + strip_ofs + s * _VTX_STRIP_SIZE
        s_num_idx, s_idx_ofs, _nv, _vo, _nb, s_flags = struct.unpack_from("<iiiihB", data, s_base)
        part = indices[s_idx_ofs : s_idx_ofs + s_num_idx]
        for a, b, c in _strip_triangles(int(s_flags), part):
            tris.append((int(orig_ids[a]), int(orig_ids[b]), int(orig_ids[c])))
    return tris


def _read_vtx(data: bytes) -> Vtx:
    if len(data) < 36:
        raise ModelError(f"VTX too small: {len(data)} bytes")
    (version,) = struct.unpack_from("<i", data, 0)
    if version != VTX_VERSION:
        raise ModelError(f"unsupported VTX version {version}")
    (checksum,) = struct.unpack_from("<i", data, 16)
    num_bodyparts, bodypart_ofs = struct.unpack_from("<ii", data, 28)

    body_parts: list[tuple[tuple[VtxMesh, ...], ...]] = []
    for b in range(num_bodyparts):
        bp_base = bodypart_ofs + b * _VTX_BODYPART_SIZE
        num_models, model_ofs = struct.unpack_from("<ii", data, bp_base)
        models: list[tuple[VtxMesh, ...]] = []
        for m in range(num_models):
            m_base = bp_base + model_ofs + m * _VTX_MODEL_SIZE
            num_lods, lod_ofs = struct.unpack_from("<ii", data, m_base)
            if num_lods < 1:
                models.append(())
                continue
            lod_base = m_base + lod_ofs
            num_meshes, mesh_ofs = struct.unpack_from("<ii", data, lod_base)
            meshes: list[VtxMesh] = []
            for k in range(num_meshes):
                me_base = lod_base + mesh_ofs + k * _VTX_MESH_SIZE
                num_groups, group_ofs = struct.unpack_from("<ii", data, me_base)
                tris: list[tuple[int, int, int]] = []
                for g in range(num_groups):
                    tris.extend(_read_strip_group(data, me_base + group_ofs + g * _VTX_STRIPGROUP_SIZE))
                arr = np.asarray(tris, dtype=np.int64).reshape(-1, 3)
                meshes.append(VtxMesh(triangles=arr))
            models.append(tuple(meshes))
        body_parts.append(tuple(models))
    return Vtx(checksum=int(checksum), body_parts=tuple(body_parts))


# ---------------------------------------------------------------------------
# Assembled model
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ModelMesh:
    material: int  # material slot, looked up through a skin table
    positions: np.ndarray  # (n, 3) float32, Source space
    normals: np.ndarray  # (n, 3) float32
    uvs: np.ndarray  # (n, 2) float32
    tangents: np.ndarray | None  # (n, 4) float32
    triangles: np.ndarray  # (k, 3) int64, mesh-local, Source winding


@dataclass(frozen=True)
class Model:
    name: str
    textures: tuple[str, ...]
    search_paths: tuple[str, ...]
    skins: tuple[tuple[int, ...], ...]
    meshes: tuple[ModelMesh, ...]

    @classmethod
    def from_parts(cls, mdl: Mdl, vvd: Vvd, vtx: Vtx) -> "Model":
        if not (mdl.checksum == vvd.checksum == vtx.checksum):
            raise ModelError(
                f"section checksum mismatch for {mdl.name}: mdl={mdl.checksum} vvd={vvd.checksum} vtx={vtx.checksum}"
            )
        if len(vtx.body_parts) != len(mdl.body_parts):
            raise ModelError(f"{mdl.name}: {len(mdl.body_parts)} MDL body parts vs {len(vtx.body_parts)} VTX")

        n_total = vvd.positions.shape[0]
        meshes: list[ModelMesh] = []
        for bp, vtx_bp in zip(mdl.body_parts, vtx.body_parts):
            if not bp.models or not vtx_bp:
                continue
            model, vtx_meshes = bp.models[0], vtx_bp[0]
            if len(vtx_meshes) != len(model.meshes):
                raise ModelError(f"{mdl.name}/{model.name}: mesh count mismatch")
            for mesh, vmesh in zip(model.meshes, vtx_meshes):
                lo = model.vertex_start + mesh.vertex_offset
                hi = lo + mesh.num_vertices
                if lo < 0 or hi > n_total:
                    raise ModelError(f"{mdl.name}/{model.name}: vertex range {lo}..{hi} outside {n_total}")
                tris = vmesh.triangles
                if tris.size and (int(tris.max()) >= mesh.num_vertices or int(tris.min()) < 0):
                    raise ModelError(f"{mdl.name}/{model.name}: strip index outside mesh vertices")
                meshes.append(
                    ModelMesh(
                        material=mesh.material,
                        positions=vvd.positions[lo:hi],
                        normals=vvd.normals[lo:hi],
                        uvs=vvd.uvs[lo:hi],
                        tangents=None if vvd.tangents is None else vvd.tangents[lo:hi],
                        triangles=tris,
                    )
                )
        return cls(
            name=mdl.name,
            textures=mdl.textures,
            search_paths=mdl.texture_dirs,
            skins=mdl.skins,
            meshes=tuple(meshes),
        )

    def skin_table(self, index: int) -> tuple[int, ...] | None:
        if 0 <= index < len(self.skins):
            return self.skins[index]
        return None

    def texture_for(self, skin: tuple[int, ...], slot: int) -> str | None:
        """Texture name for a material slot through a skin table (None when out of range)."""
        if slot < 0 or slot >= len(skin):
            return None
        tex = skin[slot]
        if tex < 0 or tex >= len(self.textures):
            return None
        return self.textures[tex]

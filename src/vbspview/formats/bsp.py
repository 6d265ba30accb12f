"""
Source engine map snapshot built on bsp_tool.

`bsp_tool.load_bsp` reads the container (lump directory, LZMA lumps, the `sprp` game
lump and the pakfile). `Bsp` copies the lumps geometry extraction needs into plain
records and numpy arrays, so the loaded file can be closed straight away.
Displacement grids, texture UVs and face visibility are derived here.
"""

from __future__ import annotations

import io
import logging
import tempfile
import zipfile
from dataclasses import dataclass, field
from pathlib import Path

import bsp_tool
import numpy as np

from vbspview.errors import BspError

logger = logging.getLogger(__name__)

VBSP_MAGIC = b"VBSP"
SUPPORTED_VERSIONS = (19, 20, 21)
# Magic, version, 64 lump headers of 16 bytes, map revision.
HEADER_SIZE = 8 + 64 * 16 + 4

# texinfo flags
SURF_SKY2D = 0x0002
SURF_SKY = 0x0004
SURF_TRIGGER = 0x0040
SURF_NODRAW = 0x0080
SURF_HINT = 0x0100
SURF_SKIP = 0x0200

SURF_INVISIBLE = SURF_SKY2D | SURF_SKY | SURF_TRIGGER | SURF_NODRAW | SURF_HINT | SURF_SKIP

# A bsp_tool loading error on any of these makes the map unreadable.
REQUIRED_LUMPS = (
    "ENTITIES",
    "TEXTURE_DATA",
    "VERTICES",
    "TEXTURE_INFO",
    "FACES",
    "EDGES",
    "SURFEDGES",
    "MODELS",
    "DISPLACEMENT_INFO",
    "DISPLACEMENT_VERTICES",
    "GAME_LUMP",
    "TEXTURE_DATA_STRING_DATA",
    "TEXTURE_DATA_STRING_TABLE",
)


@dataclass(frozen=True)
class TexInfo:
    s: tuple[float, float, float, float]
    t: tuple[float, float, float, float]
    flags: int
    texdata: int


@dataclass(frozen=True)
class TexData:
    name_id: int
    width: int
    height: int


@dataclass(frozen=True)
class Face:
    first_edge: int
    num_edges: int
    texinfo: int
    dispinfo: int


@dataclass(frozen=True)
class BspModel:
    origin: tuple[float, float, float]
    first_face: int
    num_faces: int


@dataclass(frozen=True)
class DispInfo:
    start_position: tuple[float, float, float]
    disp_vert_start: int
    power: int

    @property
    def size(self) -> int:
        return (1 << self.power) + 1


@dataclass(frozen=True)
class StaticProp:
    model: str
    origin: tuple[float, float, float]
    angles: tuple[float, float, float]
    skin: int
    solid: int
    flags: int
    scale: tuple[float, float, float] = (1.0, 1.0, 1.0)


@dataclass
class Bsp:
    version: int
    entities: list[dict[str, str]]
    texture_names: list[str]
    texdata: list[TexData]
    texinfo: list[TexInfo]
    faces: list[Face]
    models: list[BspModel]
    dispinfo: list[DispInfo]
    vertices: np.ndarray  # (n, 3) float64
    edges: np.ndarray  # (n, 2) int64
    surfedges: np.ndarray  # (n,) int64
    disp_vectors: np.ndarray  # (n, 3) float64
    disp_dists: np.ndarray  # (n,) float64
    static_props: list[StaticProp] = field(default_factory=list)
    pakfile: bytes | None = None

    @classmethod
    def read(cls, data: bytes) -> "Bsp":
        """Load map bytes with bsp_tool and snapshot them. Any unreadable map raises `BspError`."""
        version = check_header(data)
        with tempfile.TemporaryDirectory(prefix="vbspview-") as tmp:
            path = Path(tmp) / "map.bsp"
            path.write_bytes(data)
            try:
                vbsp = bsp_tool.load_bsp(str(path))
            except Exception as exc:
                raise BspError(f"corrupt BSP: {type(exc).__name__}: {exc}") from exc
            try:
                return cls.from_bsp_tool(vbsp, version=version, file_size=len(data))
            finally:
                _close(vbsp)

    @classmethod
    def from_bsp_tool(cls, vbsp, *, version: int, file_size: int | None = None) -> "Bsp":
        _check_loading_errors(vbsp, file_size)
        try:
            bsp = cls(
                version=version,
                entities=_entities(vbsp),
                texture_names=_texture_names(vbsp),
                texdata=[_texdata(td) for td in _lump(vbsp, "TEXTURE_DATA")],
                texinfo=[_texinfo(ti) for ti in _lump(vbsp, "TEXTURE_INFO")],
                faces=[_face(f) for f in _lump(vbsp, "FACES")],
                models=[_model(m) for m in _lump(vbsp, "MODELS")],
                dispinfo=[_dispinfo(d) for d in _lump(vbsp, "DISPLACEMENT_INFO")],
                vertices=_vec3_array(_lump(vbsp, "VERTICES")),
                edges=np.asarray([_values(e)[:2] for e in _lump(vbsp, "EDGES")], dtype=np.int64).reshape(-1, 2),
                surfedges=np.asarray([int(x) for x in _lump(vbsp, "SURFEDGES")], dtype=np.int64),
                disp_vectors=_vec3_array(getattr(v, "vector") for v in _lump(vbsp, "DISPLACEMENT_VERTICES")),
                disp_dists=np.asarray(
                    [float(getattr(v, "distance")) for v in _lump(vbsp, "DISPLACEMENT_VERTICES")], dtype=np.float64
                ),
                static_props=_static_props(vbsp),
                pakfile=_pakfile_bytes(getattr(vbsp, "PAKFILE", None)),
            )
        except (AttributeError, TypeError, ValueError, zipfile.BadZipFile) as exc:
            raise BspError(f"corrupt BSP: {type(exc).__name__}: {exc}") from exc
        bsp.check_ranges()
        return bsp

    def check_ranges(self) -> None:
        """Cross-lump index checks, so extraction never indexes past a lump."""
        nv, ne, ns, nf = self.vertices.shape[0], self.edges.shape[0], self.surfedges.shape[0], len(self.faces)
        if ne and (self.edges.min() < 0 or self.edges.max() >= nv):
            raise BspError(f"edge references a vertex outside 0..{nv - 1}")
        if ns and int(np.abs(self.surfedges).max()) >= ne:
            raise BspError(f"surfedge references an edge outside 0..{ne - 1}")
        for i, face in enumerate(self.faces):
            if face.first_edge < 0 or face.num_edges < 0 or face.first_edge + face.num_edges > ns:
                raise BspError(f"face {i} edges {face.first_edge}+{face.num_edges} outside {ns} surfedges")
            if face.dispinfo >= len(self.dispinfo):
                raise BspError(f"face {i} references displacement {face.dispinfo} of {len(self.dispinfo)}")
        for i, model in enumerate(self.models):
            if model.first_face < 0 or model.num_faces < 0 or model.first_face + model.num_faces > nf:
                raise BspError(f"model {i} faces {model.first_face}+{model.num_faces} outside {nf} faces")
        nd = self.disp_vectors.shape[0]
        for i, info in enumerate(self.dispinfo):
            if info.power < 1 or info.power > 4:
                raise BspError(f"displacement {i} has power {info.power}")
            if info.disp_vert_start < 0 or info.disp_vert_start + info.size * info.size > nd:
                raise BspError(f"displacement {i} vertices outside {nd} displacement vertices")

    # -- faces ---------------------------------------------------------------

    def face_texinfo(self, face: Face) -> TexInfo | None:
        if face.texinfo < 0 or face.texinfo >= len(self.texinfo):
            return None
        return self.texinfo[face.texinfo]

    def face_texdata(self, face: Face) -> TexData | None:
        ti = self.face_texinfo(face)
        if ti is None or ti.texdata < 0 or ti.texdata >= len(self.texdata):
            return None
        return self.texdata[ti.texdata]

    def face_texture_name(self, face: Face) -> str:
        td = self.face_texdata(face)
        if td is None or td.name_id < 0 or td.name_id >= len(self.texture_names):
            return ""
        return self.texture_names[td.name_id]

    def face_is_visible(self, face: Face) -> bool:
        ti = self.face_texinfo(face)
        if ti is None:
            return False
        return not (ti.flags & SURF_INVISIBLE)

    def face_polygon(self, face: Face) -> np.ndarray:
        """Face corner positions in edge-loop order (Source space, clockwise from the front)."""
        se = self.surfedges[face.first_edge : face.first_edge + face.num_edges]
        idx = np.abs(se)
        first = np.where(se >= 0, self.edges[idx, 0], self.edges[idx, 1])
        return self.vertices[first]

    def displacement_grid(self, face: Face) -> tuple[np.ndarray, int]:
        """Displaced vertex grid of a displacement face: ((size*size, 3) positions, size)."""
        if face.dispinfo < 0 or face.dispinfo >= len(self.dispinfo):
            raise BspError(f"face has no valid displacement (dispinfo={face.dispinfo})")
        info = self.dispinfo[face.dispinfo]
        corners = self.face_polygon(face)
        if corners.shape[0] != 4:
            raise BspError(f"displacement base face has {corners.shape[0]} corners, expected 4")

        # The grid starts at the corner closest to start_position.
        start = np.asarray(info.start_position, dtype=np.float64)
        first = int(np.argmin(np.sum((corners - start) ** 2, axis=1)))
        c = np.roll(corners, -first, axis=0)

        n = info.size
        count = n * n
        lo = info.disp_vert_start
        if lo < 0 or lo + count > self.disp_vectors.shape[0]:
            raise BspError(f"displacement vertices out of range ({lo}+{count})")

        steps = np.linspace(0.0, 1.0, n)
        # Row i runs from edge c0->c1 to edge c3->c2; column j interpolates across the row.
        left = c[0][None, :] + (c[1] - c[0])[None, :] * steps[:, None]
        right = c[3][None, :] + (c[2] - c[3])[None, :] * steps[:, None]
        base = left[:, None, :] + (right - left)[:, None, :] * steps[None, :, None]
        base = base.reshape(count, 3)

        offsets = self.disp_vectors[lo : lo + count] * self.disp_dists[lo : lo + count, None]
        return base + offsets, n

    def displacement_triangles(self, face: Face) -> np.ndarray:
        """Triangle-list positions ((3*k, 3)) of a displacement face, in Source winding."""
        grid, n = self.displacement_grid(face)
        tris: list[tuple[int, int, int]] = []
        for i in range(n - 1):
            for j in range(n - 1):
                v00 = i * n + j
                v01 = v00 + 1
                v10 = v00 + n
                v11 = v10 + 1
                # Alternate the split diagonal like the engine does.
                if (i + j) % 2 == 0:
                    tris.append((v00, v10, v11))
                    tris.append((v00, v11, v01))
                else:
                    tris.append((v00, v10, v01))
                    tris.append((v10, v11, v01))
        return grid[np.asarray(tris, dtype=np.intp).reshape(-1)]

    def texture_uvs(self, face: Face, positions: np.ndarray) -> np.ndarray:
        ti = self.face_texinfo(face)
        td = self.face_texdata(face)
        if ti is None or td is None:
            return np.zeros((positions.shape[0], 2), dtype=np.float32)
        s = np.asarray(ti.s, dtype=np.float64)
        t = np.asarray(ti.t, dtype=np.float64)
        w = float(td.width) if td.width else 1.0
        h = float(td.height) if td.height else 1.0
        u = (positions @ s[:3] + s[3]) / w
        v = (positions @ t[:3] + t[3]) / h
        return np.stack([u, v], axis=1).astype(np.float32)

    def model_faces(self, model_index: int) -> list[Face]:
        m = self.models[model_index]
        return self.faces[m.first_face : m.first_face + m.num_faces]


# ---------------------------------------------------------------------------
# bsp_tool -> snapshot
# ---------------------------------------------------------------------------


def check_header(data: bytes) -> int:
    """VBSP magic and version of `data`; raises `BspError` for anything else."""
    if len(data) < HEADER_SIZE:
        raise BspError(f"file too small to be a BSP: {len(data)} bytes")
    if data[:4] != VBSP_MAGIC:
        raise BspError(f"not a VBSP file (magic={data[:4]!r})")
    version = int.from_bytes(data[4:8], "little", signed=True)
    if version not in SUPPORTED_VERSIONS:
        raise BspError(f"unsupported BSP version {version}")
    return version


def _close(vbsp) -> None:
    fh = getattr(vbsp, "file", None)
    if fh is not None and hasattr(fh, "close"):
        fh.close()


def _check_loading_errors(vbsp, file_size: int | None) -> None:
    errors = getattr(vbsp, "loading_errors", None) or {}
    for name in REQUIRED_LUMPS:
        if name in errors:
            exc = errors[name]
            raise BspError(f"lump {name} unreadable: {type(exc).__name__}: {exc}")
    if file_size is None:
        return
    for name, header in (getattr(vbsp, "headers", None) or {}).items():
        offset = int(getattr(header, "offset", 0) or 0)
        length = int(getattr(header, "length", 0) or 0)
        if length > 0 and (offset < 0 or offset + length > file_size):
            raise BspError(f"lump {name} out of bounds (offset={offset}, length={length}, file={file_size})")


def _lump(vbsp, name: str) -> list:
    return list(getattr(vbsp, name, None) or [])


def _values(obj) -> tuple:
    as_tuple = getattr(obj, "as_tuple", None)
    if callable(as_tuple):
        return tuple(as_tuple())
    return tuple(obj)


def _first_attr(obj, names: tuple[str, ...], default=None):
    for name in names:
        if hasattr(obj, name):
            return getattr(obj, name)
    return default


def _vec3(v) -> tuple[float, float, float]:
    if hasattr(v, "x"):
        return float(v.x), float(v.y), float(v.z)
    a, b, c = _values(v)[:3]
    return float(a), float(b), float(c)


def _vec3_array(items) -> np.ndarray:
    return np.asarray([_vec3(v) for v in items], dtype=np.float64).reshape(-1, 3)


def _projection(axis) -> tuple[float, float, float, float]:
    # bsp_tool names the s/t projections either (axis, offset) or (vector, offset).
    vec = _first_attr(axis, ("axis", "vector"))
    if vec is not None:
        x, y, z = _vec3(vec)
        return x, y, z, float(getattr(axis, "offset"))
    x, y, z, w = _values(axis)[:4]
    return float(x), float(y), float(z), float(w)


def _texinfo(ti) -> TexInfo:
    tex = getattr(ti, "texture")
    return TexInfo(
        s=_projection(getattr(tex, "s")),
        t=_projection(getattr(tex, "t")),
        flags=int(getattr(ti, "flags")),
        texdata=int(_first_attr(ti, ("texture_data", "tex_data"))),
    )


def _texdata(td) -> TexData:
    size = getattr(td, "size")
    width = _first_attr(size, ("width", "x"))
    height = _first_attr(size, ("height", "y"))
    return TexData(
        name_id=int(_first_attr(td, ("name_index", "name_id"))),
        width=int(width),
        height=int(height),
    )


def _face(f) -> Face:
    return Face(
        first_edge=int(getattr(f, "first_edge")),
        num_edges=int(getattr(f, "num_edges")),
        texinfo=int(_first_attr(f, ("tex_info", "texture_info"))),
        dispinfo=int(_first_attr(f, ("disp_info", "displacement_info"))),
    )


def _model(m) -> BspModel:
    return BspModel(
        origin=_vec3(getattr(m, "origin")),
        first_face=int(getattr(m, "first_face")),
        num_faces=int(getattr(m, "num_faces")),
    )


def _dispinfo(d) -> DispInfo:
    return DispInfo(
        start_position=_vec3(getattr(d, "start_position")),
        disp_vert_start=int(_first_attr(d, ("displacement_vert_start", "disp_vert_start"))),
        power=int(getattr(d, "power")),
    )


def _texture_names(vbsp) -> list[str]:
    """Texture names by string-table slot; the table holds byte offsets into the string data."""
    data = getattr(vbsp, "TEXTURE_DATA_STRING_DATA", None) or []
    if isinstance(data, (bytes, bytearray)):
        blob = bytes(data)
    else:
        blob = b"".join(str(s).encode("ascii", errors="replace") + b"\x00" for s in data)
    out: list[str] = []
    for raw in _lump(vbsp, "TEXTURE_DATA_STRING_TABLE"):
        ofs = int(raw)
        if ofs < 0 or ofs >= len(blob):
            out.append("")
            continue
        end = blob.find(b"\x00", ofs)
        out.append(blob[ofs : end if end >= 0 else len(blob)].decode("ascii", errors="replace"))
    return out


def _entities(vbsp) -> list[dict[str, str]]:
    out: list[dict[str, str]] = []
    for ent in _lump(vbsp, "ENTITIES"):
        if not isinstance(ent, dict):
            continue
        row: dict[str, str] = {}
        for key, value in ent.items():
            # Repeated keys (entity outputs) come back as lists; the last one wins.
            if isinstance(value, (list, tuple)):
                value = value[-1] if value else ""
            row[str(key)] = str(value)
        out.append(row)
    return out


def _angles(a) -> tuple[float, float, float]:
    if hasattr(a, "pitch"):
        return float(a.pitch), float(a.yaw), float(a.roll)
    return _vec3(a)


def _scale(raw) -> tuple[float, float, float]:
    if raw is None:
        return (1.0, 1.0, 1.0)
    if isinstance(raw, (int, float)):
        s = float(raw)
        return (s, s, s)
    return _vec3(raw)


def _static_props(vbsp) -> list[StaticProp]:
    sprp = getattr(getattr(vbsp, "GAME_LUMP", None), "sprp", None)
    if sprp is None:
        return []
    names = [str(n) for n in (getattr(sprp, "model_names", None) or [])]
    out: list[StaticProp] = []
    for i, prop in enumerate(getattr(sprp, "props", None) or []):
        model_idx = int(_first_attr(prop, ("model_name", "model_index")))
        if model_idx < 0 or model_idx >= len(names):
            raise BspError(f"static prop {i} references model {model_idx} of {len(names)}")
        out.append(
            StaticProp(
                model=names[model_idx],
                origin=_vec3(getattr(prop, "origin")),
                angles=_angles(getattr(prop, "angles")),
                skin=int(getattr(prop, "skin", 0)),
                solid=int(_first_attr(prop, ("solid_type", "solid"), 0)),
                flags=int(getattr(prop, "flags", 0)),
                scale=_scale(getattr(prop, "scale", None)),
            )
        )
    logger.debug("bsp: %d static props over %d models", len(out), len(names))
    return out


def _pakfile_bytes(pak) -> bytes | None:
    """Pakfile as zip bytes, or None when the map packs nothing."""
    if pak is None:
        return None
    if isinstance(pak, (bytes, bytearray)):
        return bytes(pak) or None
    if not pak.namelist():
        return None
    as_bytes = getattr(pak, "as_bytes", None)
    if callable(as_bytes):
        return bytes(as_bytes())
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as out:
        for info in pak.infolist():
            out.writestr(info, pak.read(info))
    return buf.getvalue()

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Iterable

import numpy as np

from vbspview.assets import AssetProvider
from vbspview.config import LoadConfig
from vbspview.coords import map_coords_array, map_directions_array
from vbspview.diagnostics import ISSUE_PROP_SKIPPED, ISSUE_SKIN_FALLBACK, LoadIssueLog, resolve_or_fallback
from vbspview.entities import Placement
from vbspview.errors import ModelError
from vbspview.formats.mdl import Mdl, Model, Vtx, Vvd, section_names
from vbspview.geometry import Primitive, TriMesh, bake_primitive, flip_winding, placement_matrix
from vbspview.material_table import MaterialTable

logger = logging.getLogger(__name__)


def load_model(loader: AssetProvider, path: str) -> Model:
    """Read and assemble `<path>.mdl` with its `.vvd` and `.dx90.vtx` sections."""
    vvd_name, vtx_name = section_names(path)
    mdl = Mdl.read(loader.fetch(path))
    vtx = Vtx.read(loader.fetch(vtx_name))
    vvd = Vvd.read(loader.fetch(vvd_name))
    return Model.from_parts(mdl, vvd, vtx)


def select_skin(model: Model, placement: Placement, issues: LoadIssueLog | None = None) -> tuple[int, ...]:
    skin = model.skin_table(placement.skin)
    if skin is not None:
        return skin
    logger.warning("props: invalid skin index %d for %s, using skin 0", placement.skin, placement.model)
    if issues is not None:
        issues.record(kind=ISSUE_SKIN_FALLBACK, subject=placement.model, message=f"skin {placement.skin}")
    if not model.skins:
        raise ModelError(f"{placement.model} has no skin tables")
    return model.skins[0]


def model_primitives(
    model: Model,
    placement: Placement,
    table: MaterialTable,
    *,
    issues: LoadIssueLog | None = None,
) -> list[Primitive]:
    """One primitive per mesh: model-space vertices in output space, placement transform attached."""
    transform = placement_matrix(placement.origin, placement.angles, placement.scale)
    skin = select_skin(model, placement, issues)
    out: list[Primitive] = []
    for i, mesh in enumerate(model.meshes):
        if mesh.triangles.shape[0] == 0:
            continue
        texture = model.texture_for(skin, mesh.material)
        material_index = None
        if texture is not None:
            material_index = table.get_index(texture, model.search_paths)
        else:
            logger.debug("props: %s mesh %d: material slot %d has no texture", placement.model, i, mesh.material)

        # Normals and tangent xyz get the same axis permutation as positions (det +1) and are not
        # negated; flip_winding alone turns Source fronts into output fronts. Tangent w is kept as is.
        tangents = None
        if mesh.tangents is not None:
            tangents = np.concatenate(
                [map_directions_array(mesh.tangents[:, :3]), mesh.tangents[:, 3:4].astype(np.float32)], axis=1
            )
        normals = map_directions_array(mesh.normals)
        lengths = np.linalg.norm(normals, axis=1, keepdims=True)
        normals = np.where(lengths > 0.0, normals / np.where(lengths > 0.0, lengths, 1.0), 0.0).astype(np.float32)

        tri_mesh = TriMesh(
            positions=map_coords_array(mesh.positions),
            normals=normals,
            uvs=mesh.uvs.astype(np.float32),
            tangents=tangents,
            indices=flip_winding(mesh.triangles).reshape(-1).astype(np.uint32),
        )
        if tri_mesh.tangents is None:
            tri_mesh.compute_tangents()
        out.append(
            Primitive(
                name=f"{placement.model}#{i}",
                mesh=tri_mesh,
                transform=transform.copy(),
                material_index=material_index,
            )
        )
    return out


class PropResolver:
    """
    Turns placements into primitives. Each model is loaded at most once per resolver;
    a model that fails to load is remembered and every placement using it is skipped.
    """

    def __init__(
        self,
        loader: AssetProvider,
        table: MaterialTable,
        *,
        config: LoadConfig | None = None,
        issues: LoadIssueLog | None = None,
    ) -> None:
        self.loader = loader
        self.table = table
        self.config = config or LoadConfig()
        self.issues = issues
        self._models: dict[str, Model | Exception] = {}
        self._lock = threading.Lock()

    def model(self, path: str) -> Model:
        key = path.replace("\\", "/").casefold()
        with self._lock:
            cached = self._models.get(key)
        if cached is None:
            try:
                cached = load_model(self.loader, path)
            except Exception as exc:
                cached = exc
            with self._lock:
                self._models.setdefault(key, cached)
        if isinstance(cached, Exception):
            raise cached
        return cached

    def resolve(self, placement: Placement) -> list[Primitive]:
        def inner() -> list[Primitive]:
            prims = model_primitives(self.model(placement.model), placement, self.table, issues=self.issues)
            if self.config.bake_props:
                prims = [bake_primitive(p) for p in prims]
            return prims

        return resolve_or_fallback(
            inner,
            lambda _exc: [],
            kind=ISSUE_PROP_SKIPPED,
            subject=placement.model,
            issues=self.issues,
        )

    def resolve_all(self, placements: Iterable[Placement]) -> list[Primitive]:
        items = list(placements)
        if self.config.workers <= 1 or len(items) <= 1:
            groups = [self.resolve(p) for p in items]
        else:
            with ThreadPoolExecutor(max_workers=self.config.workers, thread_name_prefix="vbspview-prop") as pool:
                groups = list(pool.map(self.resolve, items))
        out = [prim for group in groups for prim in group]
        placed = sum(1 for g in groups if g)
        logger.info("props: %d/%d placements -> %d primitives", placed, len(items), len(out))
        return out

"""
Map load entry point: BSP bytes in, renderer-ready world and prop primitives out.

    geometry = load_map(data, loader)
    geometry.world[i].material_index -> geometry.materials[...]
"""

from __future__ import annotations

import logging
import zipfile
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass

from vbspview.assets import AssetProvider, PackfileSource
from vbspview.config import LoadConfig
from vbspview.diagnostics import LoadIssueLog
from vbspview.entities import Placement, brush_submodels, dynamic_placements, static_placements
from vbspview.errors import FormatError, MapLoadError
from vbspview.formats.bsp import Bsp
from vbspview.geometry import Primitive
from vbspview.loading_report import (
    LOAD_STAGE_BSP_PARSE,
    LOAD_STAGE_MATERIAL_RESOLVE,
    LOAD_STAGE_PROP_PLACE,
    LOAD_STAGE_WORLD_EXTRACT,
    LoadReporter,
)
from vbspview.material import MaterialData
from vbspview.material_table import MaterialTable
from vbspview.props import PropResolver
from vbspview.world import extract_world

logger = logging.getLogger(__name__)


@dataclass
class MapGeometry:
    world: list[Primitive]
    props: list[Primitive]
    # Shared by world and props; Primitive.material_index points into it.
    materials: list[MaterialData]
    issues: LoadIssueLog
    report: LoadReporter


def read_bsp(data: bytes) -> Bsp:
    try:
        return Bsp.read(data)
    except FormatError as exc:
        raise MapLoadError(f"unreadable map: {exc}") from exc


def collect_placements(bsp: Bsp, config: LoadConfig) -> list[Placement]:
    placements = static_placements(bsp.static_props)
    if config.include_dynamic_props:
        placements.extend(dynamic_placements(bsp.entities))
    return placements


def _attach_pakfile(bsp: Bsp, loader: AssetProvider) -> None:
    """Point the loader's pakfile slot at this map's pakfile, clearing whatever a previous map left."""
    set_pack = getattr(loader, "set_pack", None)
    if set_pack is None:
        return
    if not bsp.pakfile:
        set_pack(None)
        return
    try:
        pack = PackfileSource(bsp.pakfile)
    except zipfile.BadZipFile as exc:
        logger.warning("pipeline: ignoring unreadable pakfile: %s", exc)
        set_pack(None)
        return
    logger.info("pipeline: pakfile with %d entries", len(pack))
    set_pack(pack)


def load_map(
    data: bytes,
    loader: AssetProvider,
    config: LoadConfig | None = None,
    *,
    map_ref: str | None = None,
    reporter: LoadReporter | None = None,
    issues: LoadIssueLog | None = None,
) -> MapGeometry:
    """
    Build world and prop primitives plus their shared material list.

    Raises `MapLoadError` when the BSP cannot be read or has no world model. Every other
    failure (missing material, broken prop model, bad skin) is absorbed and logged.
    """
    cfg = config or LoadConfig()
    rep = reporter or LoadReporter()
    log = issues if issues is not None else LoadIssueLog()
    rep.begin(map_ref=map_ref, workers=cfg.workers)

    with rep.stage(LOAD_STAGE_BSP_PARSE):
        bsp = read_bsp(data)
    if not bsp.models:
        raise MapLoadError("map has no world model")
    _attach_pakfile(bsp, loader)

    table = MaterialTable()
    submodels = brush_submodels(bsp.entities, len(bsp.models)) if cfg.include_brush_entities else []
    placements = collect_placements(bsp, cfg)
    resolver = PropResolver(loader, table, config=cfg, issues=log)

    def build_world() -> list[Primitive]:
        with rep.stage(LOAD_STAGE_WORLD_EXTRACT):
            try:
                return extract_world(bsp, table, submodels=submodels, config=cfg)
            except FormatError as exc:
                raise MapLoadError(f"unreadable map geometry: {exc}") from exc

    def build_props() -> list[Primitive]:
        with rep.stage(LOAD_STAGE_PROP_PLACE):
            return resolver.resolve_all(placements)

    if cfg.workers > 1:
        with ThreadPoolExecutor(max_workers=1, thread_name_prefix="vbspview-world") as pool:
            world_future = pool.submit(build_world)
            props = build_props()
            world = world_future.result()
    else:
        world = build_world()
        props = build_props()

    with rep.stage(LOAD_STAGE_MATERIAL_RESOLVE):
        materials = table.resolve_all(loader, config=cfg, issues=log)

    rep.finish()
    rep.set_counts(
        world_primitives=len(world),
        prop_primitives=len(props),
        placements=len(placements),
        brush_submodels=len(submodels),
        materials=len(materials),
        issues=log.count(),
    )
    logger.info(
        "pipeline: %d world + %d prop primitives, %d materials, %d issues",
        len(world),
        len(props),
        len(materials),
        log.count(),
    )
    return MapGeometry(world=world, props=props, materials=materials, issues=log, report=rep)

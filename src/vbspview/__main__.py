from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

from vbspview.assets import ChainedLoader, detect_tf2_dir
from vbspview.config import LoadConfig
from vbspview.errors import AssetNotFound, MapLoadError
from vbspview.pipeline import load_map

logger = logging.getLogger("vbspview")


def _map_bytes(map_arg: str, loader: ChainedLoader) -> tuple[bytes, str]:
    p = Path(map_arg)
    if p.is_file():
        return p.read_bytes(), str(p)
    name = map_arg.replace("\\", "/")
    if not name.casefold().startswith("maps/"):
        name = f"maps/{name}"
    if not name.casefold().endswith(".bsp"):
        name += ".bsp"
    return loader.fetch(name), name


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="vbspview",
        description="Load a Source map into world and prop triangle batches and print a summary.",
    )
    parser.add_argument("map", help="Path to a .bsp file, or a map name looked up as maps/<name>.bsp.")
    parser.add_argument(
        "--game-dir",
        default=None,
        help="Team Fortress 2 install dir (contains tf/ and hl2/). Default: $TF_DIR or Steam library detection.",
    )
    parser.add_argument("--workers", type=int, default=None, help="Worker threads (default: $VBSPVIEW_WORKERS or 1).")
    parser.add_argument("--no-dynamic-props", action="store_true", help="Skip prop_dynamic/prop_physics entities.")
    parser.add_argument("--no-brush-entities", action="store_true", help="Skip func_* brush sub-models.")
    parser.add_argument("--bake-props", action="store_true", help="Bake placement transforms into prop vertices.")
    parser.add_argument("--report", default=None, help="Write the JSON load report here ('-' for stdout).")
    parser.add_argument("--bam", default=None, help="Write the Panda3D scene graph to this .bam file.")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging verbosity.",
    )
    args = parser.parse_args(argv)

    logging.basicConfig(level=getattr(logging, args.log_level), format="%(levelname)s %(name)s: %(message)s")

    cfg = LoadConfig.from_env().with_overrides(
        workers=max(1, args.workers) if args.workers is not None else None,
        include_dynamic_props=False if args.no_dynamic_props else None,
        include_brush_entities=False if args.no_brush_entities else None,
        bake_props=True if args.bake_props else None,
    )

    game_dir = Path(args.game_dir).expanduser() if args.game_dir else detect_tf2_dir()
    if game_dir is None:
        logger.warning("no game dir found (set TF_DIR or --game-dir); only the map pakfile will be searched")
        loader = ChainedLoader([])
    else:
        loader = ChainedLoader.for_game_dir(game_dir)

    try:
        data, map_ref = _map_bytes(args.map, loader)
    except AssetNotFound as exc:
        logger.error("%s", exc)
        return 2

    try:
        geometry = load_map(data, loader, cfg, map_ref=map_ref)
    except MapLoadError as exc:
        logger.error("%s", exc)
        return 1

    world_tris = sum(p.mesh.triangle_count for p in geometry.world)
    prop_tris = sum(p.mesh.triangle_count for p in geometry.props)
    print(
        f"{map_ref}: {len(geometry.world)} world primitives ({world_tris} tris), "
        f"{len(geometry.props)} prop primitives ({prop_tris} tris), "
        f"{len(geometry.materials)} materials ({sum(1 for m in geometry.materials if m.is_fallback)} missing)"
    )
    for issue in geometry.issues.items():
        print(f"  {issue.summary_line()}")

    if args.report:
        payload = geometry.report.as_payload(issues=geometry.issues.as_payload())
        text = json.dumps(payload, indent=2, sort_keys=True)
        if args.report == "-":
            sys.stdout.write(text + "\n")
        else:
            Path(args.report).write_text(text + "\n", encoding="utf-8")

    if args.bam:
        from vbspview.render.panda import build_scene

        scene = build_scene(geometry, name=Path(map_ref).stem)
        if not scene.writeBamFile(str(Path(args.bam))):
            logger.error("failed to write %s", args.bam)
            return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

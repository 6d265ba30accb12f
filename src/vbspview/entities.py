from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable

from vbspview.formats.bsp import StaticProp

logger = logging.getLogger(__name__)

DYNAMIC_PROP_CLASSES = frozenset(
    {
        "prop_dynamic",
        "prop_dynamic_override",
        "prop_physics",
        "prop_physics_override",
        "prop_physics_multiplayer",
        "prop_static",
        "prop_door_rotating",
    }
)

# Brush entities with a "*N" model that never render.
_HIDDEN_BRUSH_PREFIXES = ("trigger_", "func_areaportal")
_HIDDEN_BRUSH_CLASSES = frozenset(
    {
        "func_occluder",
        "func_clip_vphysics",
        "func_nobuild",
        "func_respawnroom",
        "func_regenerate",
        "func_capturezone",
        "func_viscluster",
    }
)


@dataclass(frozen=True)
class Placement:
    model: str
    origin: tuple[float, float, float]
    angles: tuple[float, float, float]  # pitch, yaw, roll (degrees)
    scale: tuple[float, float, float] = (1.0, 1.0, 1.0)
    skin: int = 0
    source: str = "static"


def parse_vector(value: str | None) -> tuple[float, float, float] | None:
    if not value:
        return None
    parts = value.split()
    if len(parts) != 3:
        return None
    try:
        return float(parts[0]), float(parts[1]), float(parts[2])
    except ValueError:
        return None


def _parse_int(value: str | None, default: int = 0) -> int:
    if value is None:
        return default
    try:
        return int(float(value.strip()))
    except ValueError:
        return default


def _parse_float(value: str | None, default: float) -> float:
    if value is None:
        return default
    try:
        return float(value.strip())
    except ValueError:
        return default


def static_placements(props: Iterable[StaticProp]) -> list[Placement]:
    return [
        Placement(model=p.model, origin=p.origin, angles=p.angles, scale=p.scale, skin=p.skin, source="static")
        for p in props
    ]


def dynamic_placements(entities: Iterable[dict[str, str]]) -> list[Placement]:
    """Prop entities (prop_dynamic and friends) that reference an `.mdl`."""
    out: list[Placement] = []
    for ent in entities:
        cls = ent.get("classname", "").strip().casefold()
        if cls not in DYNAMIC_PROP_CLASSES:
            continue
        model = ent.get("model", "").strip()
        if not model.casefold().endswith(".mdl"):
            continue
        origin = parse_vector(ent.get("origin")) or (0.0, 0.0, 0.0)
        angles = parse_vector(ent.get("angles")) or (0.0, 0.0, 0.0)
        s = _parse_float(ent.get("modelscale"), 1.0)
        out.append(
            Placement(
                model=model.replace("\\", "/"),
                origin=origin,
                angles=angles,
                scale=(s, s, s),
                skin=_parse_int(ent.get("skin")),
                source=cls,
            )
        )
    return out


def brush_submodels(entities: Iterable[dict[str, str]], model_count: int) -> list[tuple[int, tuple[float, float, float]]]:
    """(model index, origin offset) for every visible brush entity (`model "*N"`)."""
    out: list[tuple[int, tuple[float, float, float]]] = []
    for ent in entities:
        model = ent.get("model", "").strip()
        if not model.startswith("*"):
            continue
        cls = ent.get("classname", "").strip().casefold()
        if cls.startswith(_HIDDEN_BRUSH_PREFIXES) or cls in _HIDDEN_BRUSH_CLASSES:
            continue
        idx = _parse_int(model[1:], -1)
        if idx < 1 or idx >= model_count:
            logger.warning("entities: %s references missing brush model %s", cls or "?", model)
            continue
        out.append((idx, parse_vector(ent.get("origin")) or (0.0, 0.0, 0.0)))
    return out

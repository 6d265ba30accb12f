from __future__ import annotations

import os
from dataclasses import dataclass, replace

# Material patch includes deeper than this are treated as cycles.
DEFAULT_MAX_PATCH_DEPTH = 16


@dataclass(frozen=True)
class LoadConfig:
    # Thread pool size for prop placement and material decode. 1 = fully sequential.
    workers: int = 1
    max_patch_depth: int = DEFAULT_MAX_PATCH_DEPTH
    # Entity-authored props (prop_dynamic, prop_physics, ...) in addition to the static prop lump.
    include_dynamic_props: bool = True
    # Brush entities (func_brush, func_door, ...) merged into the world geometry.
    include_brush_entities: bool = True
    # Keep the alpha channel of every decoded texture, not only translucent/alpha-tested ones.
    keep_alpha_always: bool = False
    # Bake placement transforms into prop vertices instead of carrying them on the primitive.
    bake_props: bool = False
    # Search path used for world materials (relative to materials/).
    default_search_paths: tuple[str, ...] = ("",)

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> "LoadConfig":
        env = os.environ if environ is None else environ
        cfg = cls()
        raw = env.get("VBSPVIEW_WORKERS")
        if raw is not None and raw.strip():
            try:
                cfg = replace(cfg, workers=max(1, int(raw.strip())))
            except ValueError:
                pass
        return cfg

    def with_overrides(self, **kwargs: object) -> "LoadConfig":
        clean = {k: v for k, v in kwargs.items() if v is not None}
        return replace(self, **clean)  # type: ignore[arg-type]

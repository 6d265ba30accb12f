from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable

from PIL import Image

from vbspview.assets import AssetProvider
from vbspview.config import LoadConfig
from vbspview.diagnostics import (
    ISSUE_BUMP_MAP_MISSING,
    ISSUE_MATERIAL_FALLBACK,
    LoadIssueLog,
    resolve_or_fallback,
)
from vbspview.errors import MaterialError, PatchDepthError
from vbspview.formats.keyvalues import KeyValues, parse_keyvalues
from vbspview.formats.vtf import decode_vtf_image

logger = logging.getLogger(__name__)

WHITE = (255, 255, 255, 255)
FALLBACK_COLOR = (255, 0, 255, 255)
WATER_COLOR = (82, 180, 217, 128)

SHADER_PATCH = "patch"
SHADER_WATER = "water"


@dataclass(frozen=True)
class TextureData:
    name: str
    image: Image.Image  # "RGBA" when alpha is kept, else "RGB"


@dataclass(frozen=True)
class MaterialData:
    path: str
    color: tuple[int, int, int, int] = WHITE
    texture: TextureData | None = None
    bump_map: TextureData | None = None
    alpha_test: float | None = None
    translucent: bool = False
    shader: str = ""

    @property
    def is_fallback(self) -> bool:
        return self.color == FALLBACK_COLOR and self.texture is None


def fallback_material(name: str) -> MaterialData:
    return MaterialData(path=name, color=FALLBACK_COLOR)


def _clean(name: str) -> str:
    return name.replace("\\", "/").strip().lstrip("/")


def material_file_name(name: str) -> str:
    """`Brick/Wall01.vmt` and `brick/wall01` both -> `brick/wall01.vmt`."""
    low = _clean(name).lower()
    if low.endswith(".vmt"):
        low = low[: -len(".vmt")]
    return f"{low}.vmt"


def material_prefixes(search_paths: Iterable[str]) -> list[str]:
    """`materials/`-rooted probe prefixes for search-path directories, in the given order."""
    out: list[str] = []
    for p in search_paths:
        d = _clean(p).lower()
        if d and not d.endswith("/"):
            d += "/"
        out.append(f"materials/{d}")
    return out or ["materials/"]


def locate_material(name: str, search_paths: Iterable[str], loader: AssetProvider) -> str:
    """Asset path of the first `materials/<prefix><name>.vmt` the loader can provide."""
    file_name = material_file_name(name)
    if file_name.startswith("materials/"):
        return loader.find_first(file_name, [""])
    return loader.find_first(file_name, material_prefixes(search_paths))


def texture_path(name: str) -> str:
    n = _clean(name)
    if n.lower().endswith(".vtf"):
        n = n[: -len(".vtf")]
    if n.lower().startswith("materials/"):
        n = n[len("materials/") :]
    return f"materials/{n}.vtf"


def read_material(
    path: str,
    loader: AssetProvider,
    *,
    max_depth: int,
    chain: tuple[str, ...] = (),
) -> tuple[str, KeyValues]:
    """
    Load a VMT and resolve `patch` includes: returns (shader, parameters).

    A patch applies its `insert` (only missing keys) and `replace` tables on top of the
    included material's parameters, one level deep.
    """
    raw = loader.fetch(path)
    doc = parse_keyvalues(raw.decode("utf-8", errors="replace"))
    shader, body = doc.first()
    if not isinstance(body, KeyValues):
        raise MaterialError(f"{path}: shader {shader!r} has no parameter block")
    if shader.casefold() != SHADER_PATCH:
        return shader, body

    include = body.get_str("include")
    if include is None:
        raise MaterialError(f"{path}: patch material without include")
    inc_path = _clean(include).lower()
    if not inc_path.startswith("materials/"):
        inc_path = f"materials/{inc_path}"
    if not inc_path.endswith(".vmt"):
        inc_path += ".vmt"

    here = chain + (path,)
    if len(here) >= max_depth or inc_path in here:
        raise PatchDepthError(list(here) + [inc_path], max_depth)

    base_shader, base = read_material(inc_path, loader, max_depth=max_depth, chain=here)
    merged = base.copy()
    # TODO: nested blocks (e.g. Proxies) in insert/replace overwrite the included block whole; merge them key by key.
    insert = body.get_table("insert")
    if insert is not None:
        for k, v in insert.items():
            if k not in merged:
                merged[k] = v
    repl = body.get_table("replace")
    if repl is not None:
        for k, v in repl.items():
            merged[k] = v
    return base_shader, merged


def load_texture(name: str, loader: AssetProvider, *, keep_alpha: bool) -> TextureData:
    path = texture_path(name)
    image = decode_vtf_image(loader.fetch(path))
    if not keep_alpha:
        image = image.convert("RGB")
    return TextureData(name=name, image=image)


def load_material(
    name: str,
    loader: AssetProvider,
    search_paths: Iterable[str] = (),
    *,
    config: LoadConfig | None = None,
    issues: LoadIssueLog | None = None,
) -> MaterialData:
    """Resolve a material name into decoded textures and flags. Raises on any failure."""
    cfg = config or LoadConfig()
    path = locate_material(name, search_paths, loader)
    shader, params = read_material(path, loader, max_depth=cfg.max_patch_depth)
    base_texture = params.get_str("$basetexture")

    if shader.casefold() == SHADER_WATER and base_texture is None:
        return MaterialData(path=path, color=WATER_COLOR, translucent=True, shader=shader)
    if base_texture is None:
        raise MaterialError(f"{path} has no base texture")

    surface = params.get_str("$surfaceprop") or ""
    translucent = params.get_bool("$translucent") or surface.casefold() == "glass"
    alpha_test: float | None = None
    if params.get_bool("$alphatest"):
        ref = params.get_float("$alphatestreference")
        alpha_test = 1.0 if ref is None else ref

    keep_alpha = cfg.keep_alpha_always or translucent or alpha_test is not None
    texture = load_texture(base_texture, loader, keep_alpha=keep_alpha)

    bump_map = None
    bump_name = params.get_str("$bumpmap")
    if bump_name is not None:
        bump_map = resolve_or_fallback(
            lambda: load_texture(bump_name, loader, keep_alpha=True),
            lambda _exc: None,
            kind=ISSUE_BUMP_MAP_MISSING,
            subject=path,
            issues=issues,
            level=logging.DEBUG,
        )

    logger.debug("material: %s -> %s (%s)", name, path, shader)
    return MaterialData(
        path=path,
        color=WHITE,
        texture=texture,
        bump_map=bump_map,
        alpha_test=alpha_test,
        translucent=translucent,
        shader=shader,
    )


def load_material_fallback(
    name: str,
    loader: AssetProvider,
    search_paths: Iterable[str] = (),
    *,
    config: LoadConfig | None = None,
    issues: LoadIssueLog | None = None,
) -> MaterialData:
    """`load_material`, but any failure is logged and replaced by the magenta fallback."""
    paths = tuple(search_paths)
    return resolve_or_fallback(
        lambda: load_material(name, loader, paths, config=config, issues=issues),
        lambda _exc: fallback_material(name),
        kind=ISSUE_MATERIAL_FALLBACK,
        subject=name,
        issues=issues,
    )

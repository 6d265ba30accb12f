from __future__ import annotations

import logging

import pytest

from source_fixtures import dict_loader, solid_rgba_vtf, vmt
from vbspview.config import LoadConfig
from vbspview.diagnostics import ISSUE_BUMP_MAP_MISSING, ISSUE_MATERIAL_FALLBACK, LoadIssueLog
from vbspview.errors import AssetNotFound, MaterialError, PatchDepthError
from vbspview.material import (
    FALLBACK_COLOR,
    WATER_COLOR,
    WHITE,
    load_material,
    load_material_fallback,
    material_file_name,
    material_prefixes,
    texture_path,
)


def _brick_files() -> dict[str, bytes]:
    return {
        "materials/brick/wall01.vmt": vmt("LightmappedGeneric", {"$basetexture": "brick/wall01"}),
        "materials/brick/wall01.vtf": solid_rgba_vtf(2, 2, (200, 100, 50, 128)),
    }


def test_name_helpers() -> None:
    assert material_file_name("Brick\\Wall01.VMT") == "brick/wall01.vmt"
    assert material_prefixes([]) == ["materials/"]
    assert material_prefixes(["models/props", "tf/"]) == ["materials/models/props/", "materials/tf/"]
    assert texture_path("materials/brick/wall01.vtf") == "materials/brick/wall01.vtf"
    assert texture_path("brick/wall01") == "materials/brick/wall01.vtf"


def test_plain_material_loads_texture_without_alpha() -> None:
    mat = load_material("BRICK/Wall01", dict_loader(_brick_files()), [""])
    assert mat.path == "materials/brick/wall01.vmt"
    assert mat.color == WHITE
    assert mat.texture is not None
    assert mat.texture.image.mode == "RGB"
    assert mat.texture.image.getpixel((0, 0)) == (200, 100, 50)
    assert not mat.translucent
    assert mat.alpha_test is None
    assert not mat.is_fallback


def test_keep_alpha_always_keeps_rgba() -> None:
    mat = load_material("brick/wall01", dict_loader(_brick_files()), config=LoadConfig(keep_alpha_always=True))
    assert mat.texture is not None
    assert mat.texture.image.mode == "RGBA"


@pytest.mark.parametrize("search_paths", [(), ("models/props/",)])
def test_missing_material_falls_back_to_magenta(search_paths: tuple[str, ...]) -> None:
    issues = LoadIssueLog()
    mat = load_material_fallback("does/not/exist", dict_loader({}), search_paths, issues=issues)
    assert mat.color == FALLBACK_COLOR
    assert mat.texture is None
    assert mat.is_fallback
    assert issues.count(ISSUE_MATERIAL_FALLBACK) == 1


def test_missing_material_raises_from_strict_loader() -> None:
    with pytest.raises(AssetNotFound):
        load_material("does/not/exist", dict_loader({}))


def test_search_paths_are_tried_in_order() -> None:
    files = {
        "materials/b/crate.vmt": vmt("VertexLitGeneric", {"$basetexture": "b/crate"}),
        "materials/a/crate.vmt": vmt("VertexLitGeneric", {"$basetexture": "a/crate"}),
        "materials/a/crate.vtf": solid_rgba_vtf(1, 1, (1, 2, 3, 255)),
        "materials/b/crate.vtf": solid_rgba_vtf(1, 1, (4, 5, 6, 255)),
    }
    loader = dict_loader(files)
    assert load_material("crate", loader, ["a", "b"]).path == "materials/a/crate.vmt"
    assert load_material("crate", loader, ["b", "a"]).path == "materials/b/crate.vmt"


def test_self_including_patch_is_a_cycle(caplog: pytest.LogCaptureFixture) -> None:
    files = {"materials/loop.vmt": vmt("patch", {"include": "materials/loop.vmt"})}
    loader = dict_loader(files)
    with pytest.raises(PatchDepthError):
        load_material("loop", loader)

    issues = LoadIssueLog()
    with caplog.at_level(logging.ERROR):
        mat = load_material_fallback("loop", loader, issues=issues)
    assert mat.color == FALLBACK_COLOR
    assert issues.count(ISSUE_MATERIAL_FALLBACK) == 1
    assert any("PatchDepthError" in r.getMessage() for r in caplog.records)


def test_patch_chain_deeper_than_limit_fails() -> None:
    files = {}
    for i in range(5):
        files[f"materials/p{i}.vmt"] = vmt("patch", {"include": f"materials/p{i + 1}.vmt"})
    files["materials/p5.vmt"] = vmt("UnlitGeneric", {"$basetexture": "x"})
    files["materials/x.vtf"] = solid_rgba_vtf(1, 1, (0, 0, 0, 255))
    loader = dict_loader(files)

    assert load_material("p0", loader, config=LoadConfig(max_patch_depth=16)).shader == "UnlitGeneric"
    with pytest.raises(PatchDepthError):
        load_material("p0", loader, config=LoadConfig(max_patch_depth=3))


def test_patch_insert_and_replace() -> None:
    base = vmt(
        "VertexLitGeneric",
        {"$basetexture": "brick/wall01", "$surfaceprop": "brick", "$alphatest": "0"},
    )
    patch = (
        b'"patch"\n{\n'
        b'  "include" "materials/brick/wall01_base.vmt"\n'
        b'  "insert" { "$surfaceprop" "metal" "$translucent" "1" }\n'
        b'  "replace" { "$alphatest" "1" "$alphatestreference" "0.25" }\n'
        b"}\n"
    )
    files = _brick_files()
    files["materials/brick/wall01_base.vmt"] = base
    files["materials/brick/patched.vmt"] = patch
    mat = load_material("brick/patched", dict_loader(files))
    assert mat.shader == "VertexLitGeneric"
    # insert only adds missing keys; replace overwrites.
    assert mat.translucent
    assert mat.alpha_test == pytest.approx(0.25)
    assert mat.texture is not None
    assert mat.texture.image.mode == "RGBA"


def test_patch_without_include_fails() -> None:
    files = {"materials/bad.vmt": vmt("patch", {"$basetexture": "x"})}
    with pytest.raises(MaterialError):
        load_material("bad", dict_loader(files))


def test_water_without_base_texture_is_flat_blue() -> None:
    files = {"materials/nature/water.vmt": vmt("Water", {"$normalmap": "nature/water_normal"})}
    mat = load_material("nature/water", dict_loader(files))
    assert mat.color == WATER_COLOR
    assert mat.translucent
    assert mat.texture is None
    assert not mat.is_fallback


def test_glass_surface_is_translucent() -> None:
    files = _brick_files()
    files["materials/glass/window.vmt"] = vmt(
        "LightmappedGeneric", {"$basetexture": "brick/wall01", "$surfaceprop": "Glass"}
    )
    mat = load_material("glass/window", dict_loader(files))
    assert mat.translucent
    assert mat.texture is not None
    assert mat.texture.image.mode == "RGBA"


def test_alpha_test_reference_default_and_explicit() -> None:
    files = _brick_files()
    files["materials/fence/a.vmt"] = vmt("LightmappedGeneric", {"$basetexture": "brick/wall01", "$alphatest": "1"})
    files["materials/fence/b.vmt"] = vmt(
        "LightmappedGeneric",
        {"$basetexture": "brick/wall01", "$alphatest": "1", "$alphatestreference": "0.5"},
    )
    loader = dict_loader(files)
    assert load_material("fence/a", loader).alpha_test == pytest.approx(1.0)
    assert load_material("fence/b", loader).alpha_test == pytest.approx(0.5)


def test_missing_base_texture_is_an_error() -> None:
    files = {"materials/tools/blank.vmt": vmt("LightmappedGeneric", {"$surfaceprop": "concrete"})}
    loader = dict_loader(files)
    with pytest.raises(MaterialError):
        load_material("tools/blank", loader)
    assert load_material_fallback("tools/blank", loader).is_fallback


def test_missing_bump_map_is_tolerated() -> None:
    files = _brick_files()
    files["materials/brick/bumpy.vmt"] = vmt(
        "LightmappedGeneric", {"$basetexture": "brick/wall01", "$bumpmap": "brick/wall01_normal"}
    )
    issues = LoadIssueLog()
    mat = load_material("brick/bumpy", dict_loader(files), issues=issues)
    assert mat.texture is not None
    assert mat.bump_map is None
    assert issues.count(ISSUE_BUMP_MAP_MISSING) == 1


def test_bump_map_is_decoded_when_present() -> None:
    files = _brick_files()
    files["materials/brick/bumpy.vmt"] = vmt(
        "LightmappedGeneric", {"$basetexture": "brick/wall01", "$bumpmap": "brick/wall01_normal"}
    )
    files["materials/brick/wall01_normal.vtf"] = solid_rgba_vtf(1, 1, (128, 128, 255, 255))
    mat = load_material("brick/bumpy", dict_loader(files))
    assert mat.bump_map is not None
    assert mat.bump_map.image.getpixel((0, 0)) == (128, 128, 255, 255)


def test_missing_base_texture_file_falls_back() -> None:
    files = {"materials/brick/wall01.vmt": vmt("LightmappedGeneric", {"$basetexture": "brick/wall01"})}
    issues = LoadIssueLog()
    mat = load_material_fallback("brick/wall01", dict_loader(files), issues=issues)
    assert mat.is_fallback
    assert "AssetNotFound" in issues.items()[0].message

from __future__ import annotations

import logging

import pytest

from vbspview.entities import brush_submodels, dynamic_placements, parse_vector, static_placements
from vbspview.formats.bsp import StaticProp


def test_parse_vector() -> None:
    assert parse_vector("1 -2.5 3") == (1.0, -2.5, 3.0)
    assert parse_vector("1 2") is None
    assert parse_vector("a b c") is None
    assert parse_vector(None) is None


def test_static_placements_keep_lump_fields() -> None:
    sp = StaticProp(
        model="models/a.mdl", origin=(1.0, 2.0, 3.0), angles=(0.0, 45.0, 0.0), skin=2, solid=6, flags=0, scale=(2.0, 2.0, 2.0)
    )
    (p,) = static_placements([sp])
    assert (p.model, p.origin, p.angles, p.skin, p.scale, p.source) == (
        "models/a.mdl",
        (1.0, 2.0, 3.0),
        (0.0, 45.0, 0.0),
        2,
        (2.0, 2.0, 2.0),
        "static",
    )


def test_dynamic_placements_filter_and_parse() -> None:
    ents = [
        {"classname": "prop_dynamic", "model": "models\\Props\\Lamp.mdl", "origin": "1 2 3", "angles": "0 90 0", "skin": "1"},
        {"classname": "PROP_PHYSICS", "model": "models/barrel.mdl", "modelscale": "0.5"},
        {"classname": "prop_dynamic", "model": "*3"},
        {"classname": "info_target", "model": "models/ignored.mdl"},
        {"classname": "prop_dynamic", "model": "models/bad.mdl", "skin": "junk", "origin": "nope"},
    ]
    out = dynamic_placements(ents)
    assert [p.model for p in out] == ["models/Props/Lamp.mdl", "models/barrel.mdl", "models/bad.mdl"]
    lamp, barrel, bad = out
    assert lamp.origin == (1.0, 2.0, 3.0)
    assert lamp.angles == (0.0, 90.0, 0.0)
    assert lamp.skin == 1
    assert lamp.source == "prop_dynamic"
    assert barrel.scale == (0.5, 0.5, 0.5)
    assert barrel.source == "prop_physics"
    assert bad.skin == 0
    assert bad.origin == (0.0, 0.0, 0.0)


def test_brush_submodels_skip_hidden_and_invalid(caplog: pytest.LogCaptureFixture) -> None:
    ents = [
        {"classname": "worldspawn"},
        {"classname": "func_door", "model": "*1", "origin": "0 0 64"},
        {"classname": "func_brush", "model": "*2"},
        {"classname": "trigger_hurt", "model": "*1"},
        {"classname": "func_respawnroom", "model": "*2"},
        {"classname": "func_areaportalwindow", "model": "*2"},
        {"classname": "func_wall", "model": "*9"},
        {"classname": "func_illusionary", "model": "*0"},
    ]
    with caplog.at_level(logging.WARNING):
        out = brush_submodels(ents, model_count=3)
    assert out == [(1, (0.0, 0.0, 64.0)), (2, (0.0, 0.0, 0.0))]
    assert sum("missing brush model" in r.getMessage() for r in caplog.records) == 2

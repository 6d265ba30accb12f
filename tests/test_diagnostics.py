from __future__ import annotations

import logging

import pytest

from vbspview.config import LoadConfig
from vbspview.diagnostics import LoadIssueLog, resolve_or_fallback


def test_issue_log_folds_repeats() -> None:
    log = LoadIssueLog()
    for _ in range(3):
        log.record(kind="prop_skipped", subject="models/a.mdl", message="AssetNotFound: x")
    log.record(kind="prop_skipped", subject="models/b.mdl", message="AssetNotFound: y")
    assert log.count() == 4
    assert log.count("prop_skipped") == 4
    assert log.count("material_fallback") == 0
    items = log.items()
    assert len(items) == 2
    assert items[0].summary_line() == "prop_skipped: models/a.mdl: AssetNotFound: x (x3)"
    assert log.as_payload()[1] == {
        "kind": "prop_skipped",
        "subject": "models/b.mdl",
        "message": "AssetNotFound: y",
        "count": 1,
    }


def test_issue_log_caps_distinct_items() -> None:
    log = LoadIssueLog(max_items=2)
    for i in range(5):
        log.record(kind="k", subject=str(i), message="m")
    assert len(log.items()) == 2
    assert log.dropped == 3
    log.clear()
    assert log.items() == [] and log.dropped == 0


def test_resolve_or_fallback_returns_inner_value() -> None:
    log = LoadIssueLog()
    assert resolve_or_fallback(lambda: 5, lambda _e: 0, kind="k", subject="s", issues=log) == 5
    assert log.count() == 0


def test_resolve_or_fallback_logs_and_records(caplog: pytest.LogCaptureFixture) -> None:
    log = LoadIssueLog()

    def boom() -> int:
        raise KeyError("nope")

    with caplog.at_level(logging.ERROR, logger="vbspview.diagnostics"):
        out = resolve_or_fallback(boom, lambda exc: len(str(exc)), kind="material_fallback", subject="a/b", issues=log)
    assert out == len(str(KeyError("nope")))
    assert log.items()[0].message.startswith("KeyError")
    assert any("material_fallback: a/b: KeyError" in r.getMessage() for r in caplog.records)


def test_config_from_env_and_overrides() -> None:
    assert LoadConfig.from_env({}).workers == 1
    assert LoadConfig.from_env({"VBSPVIEW_WORKERS": "6"}).workers == 6
    assert LoadConfig.from_env({"VBSPVIEW_WORKERS": "0"}).workers == 1
    assert LoadConfig.from_env({"VBSPVIEW_WORKERS": "lots"}).workers == 1
    cfg = LoadConfig().with_overrides(workers=3, bake_props=None, include_dynamic_props=False)
    assert (cfg.workers, cfg.bake_props, cfg.include_dynamic_props) == (3, False, False)

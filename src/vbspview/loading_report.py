from __future__ import annotations

import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Iterator

LOAD_STAGE_BSP_PARSE = "bsp_parse"
LOAD_STAGE_WORLD_EXTRACT = "world_extract"
LOAD_STAGE_PROP_PLACE = "prop_place"
LOAD_STAGE_MATERIAL_RESOLVE = "material_resolve"

LOAD_STAGE_ORDER: tuple[str, ...] = (
    LOAD_STAGE_BSP_PARSE,
    LOAD_STAGE_WORLD_EXTRACT,
    LOAD_STAGE_PROP_PLACE,
    LOAD_STAGE_MATERIAL_RESOLVE,
)

# Soft budgets for a mid-size TF2 map with a warm disk cache.
LOAD_STAGE_BUDGET_MS: dict[str, float] = {
    LOAD_STAGE_BSP_PARSE: 500.0,
    LOAD_STAGE_WORLD_EXTRACT: 1500.0,
    LOAD_STAGE_PROP_PLACE: 2500.0,
    LOAD_STAGE_MATERIAL_RESOLVE: 4000.0,
}

LOAD_REPORT_SCHEMA = "vbspview.load_report.v1"


def _now_iso_utc() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass
class LoadReportState:
    run_started_s: float = 0.0
    run_finished_s: float | None = None
    map_ref: str = ""
    workers: int = 1
    stage_ms: dict[str, float] = field(default_factory=lambda: {name: 0.0 for name in LOAD_STAGE_ORDER})
    counts: dict[str, int] = field(default_factory=dict)


class LoadReporter:
    """
    Per-stage wall-clock timings of one map load.

    Stages may overlap when world and props are built concurrently; each stage then
    reports its own wall time and `total_ms` is measured from `begin` to `finish`.
    """

    def __init__(self, *, time_fn: Callable[[], float] | None = None) -> None:
        self._time_fn = time_fn if callable(time_fn) else time.perf_counter
        self._state = LoadReportState()
        self._lock = threading.Lock()

    def begin(self, *, map_ref: str | None, workers: int = 1) -> None:
        self._state = LoadReportState(
            run_started_s=float(self._time_fn()),
            map_ref=str(map_ref or ""),
            workers=max(1, int(workers)),
        )

    def finish(self) -> None:
        self._state.run_finished_s = float(self._time_fn())

    @contextmanager
    def stage(self, stage_name: str) -> Iterator[None]:
        t0 = float(self._time_fn())
        try:
            yield
        finally:
            elapsed_ms = max(0.0, (float(self._time_fn()) - t0) * 1000.0)
            with self._lock:
                self._state.stage_ms[stage_name] = float(self._state.stage_ms.get(stage_name, 0.0)) + elapsed_ms

    def stage_ms(self, stage_name: str) -> float:
        return float(self._state.stage_ms.get(stage_name, 0.0))

    def set_counts(self, **counts: int) -> None:
        with self._lock:
            for k, v in counts.items():
                if v is None:
                    continue
                self._state.counts[str(k)] = int(v)

    def as_payload(self, *, issues: list[dict[str, object]] | None = None) -> dict[str, object]:
        stage_ms = {name: float(self._state.stage_ms.get(name, 0.0)) for name in LOAD_STAGE_ORDER}
        end = self._state.run_finished_s
        if end is None:
            end = float(self._time_fn())
        total_ms = max(0.0, (end - float(self._state.run_started_s)) * 1000.0)
        budgets_ms = {name: float(LOAD_STAGE_BUDGET_MS[name]) for name in LOAD_STAGE_ORDER}
        budget_pass = all(float(stage_ms[name]) <= float(budgets_ms[name]) for name in LOAD_STAGE_ORDER)

        payload: dict[str, object] = {
            "event": "map_load_report",
            "schema": LOAD_REPORT_SCHEMA,
            "timestamp_utc": _now_iso_utc(),
            "map_ref": str(self._state.map_ref),
            "workers": int(self._state.workers),
            "stage_order": list(LOAD_STAGE_ORDER),
            "stages_ms": stage_ms,
            "total_ms": total_ms,
            "budgets_ms": budgets_ms,
            "budget_pass": bool(budget_pass),
            "counts": dict(self._state.counts),
        }
        if issues is not None:
            payload["issues"] = list(issues)
        return payload

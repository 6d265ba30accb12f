from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass

from vbspview.assets import AssetProvider
from vbspview.config import LoadConfig
from vbspview.diagnostics import LoadIssueLog
from vbspview.material import MaterialData, load_material_fallback

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MaterialKey:
    name: str
    # Probe order matters: ("a/", "b/") and ("b/", "a/") are distinct keys.
    search_paths: tuple[str, ...] = ()


class MaterialTable:
    """
    Insertion-ordered, deduplicated material keys shared by every geometry producer of one load.

    `get_index` may be called from several worker threads. Indices are stable: the n-th
    distinct key gets index n and keeps it. `drain` hands the keys over for resolution once.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._keys: list[MaterialKey] = []
        self._index: dict[MaterialKey, int] = {}
        self._drained = False

    def __len__(self) -> int:
        with self._lock:
            return len(self._keys)

    def get_index(self, name: str, search_paths=()) -> int:
        key = MaterialKey(name=name, search_paths=tuple(search_paths))
        with self._lock:
            if self._drained:
                raise RuntimeError("material table already drained")
            idx = self._index.get(key)
            if idx is None:
                idx = len(self._keys)
                self._keys.append(key)
                self._index[key] = idx
            return idx

    def keys(self) -> list[MaterialKey]:
        with self._lock:
            return list(self._keys)

    def drain(self) -> list[MaterialKey]:
        with self._lock:
            self._drained = True
            return list(self._keys)

    def resolve_all(
        self,
        loader: AssetProvider,
        *,
        config: LoadConfig | None = None,
        issues: LoadIssueLog | None = None,
    ) -> list[MaterialData]:
        """Drain and resolve every key (fallback on failure); result order matches the indices."""
        cfg = config or LoadConfig()
        keys = self.drain()

        def resolve(key: MaterialKey) -> MaterialData:
            return load_material_fallback(key.name, loader, key.search_paths, config=cfg, issues=issues)

        if cfg.workers <= 1 or len(keys) <= 1:
            out = [resolve(k) for k in keys]
        else:
            with ThreadPoolExecutor(max_workers=cfg.workers, thread_name_prefix="vbspview-material") as pool:
                out = list(pool.map(resolve, keys))
        logger.info(
            "material_table: resolved %d materials (%d fallback)", len(out), sum(1 for m in out if m.is_fallback)
        )
        return out

from __future__ import annotations

import threading

import pytest

from source_fixtures import dict_loader, solid_rgba_vtf, vmt
from vbspview.config import LoadConfig
from vbspview.diagnostics import LoadIssueLog
from vbspview.material_table import MaterialKey, MaterialTable


def test_indices_are_stable_and_deduplicated() -> None:
    table = MaterialTable()
    a = table.get_index("brick/wall01", [""])
    b = table.get_index("metal/floor", [""])
    again = table.get_index("brick/wall01", ("",))
    assert (a, b, again) == (0, 1, 0)
    assert len(table) == 2


def test_search_path_order_makes_distinct_keys() -> None:
    table = MaterialTable()
    first = table.get_index("crate", ["a/", "b/"])
    second = table.get_index("crate", ["b/", "a/"])
    assert first != second
    assert table.keys() == [MaterialKey("crate", ("a/", "b/")), MaterialKey("crate", ("b/", "a/"))]


def test_concurrent_get_index_assigns_each_key_once() -> None:
    table = MaterialTable()
    names = [f"mat/{i}" for i in range(50)]
    results: dict[int, list[int]] = {}
    barrier = threading.Barrier(8)

    def worker(tid: int) -> None:
        barrier.wait()
        results[tid] = [table.get_index(n) for n in names]

    threads = [threading.Thread(target=worker, args=(t,)) for t in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(table) == 50
    expected = results[0]
    assert all(r == expected for r in results.values())
    assert sorted(expected) == list(range(50))
    for n, idx in zip(names, expected):
        assert table.keys()[idx].name == n


def test_get_index_after_drain_is_rejected() -> None:
    table = MaterialTable()
    table.get_index("a")
    assert [k.name for k in table.drain()] == ["a"]
    with pytest.raises(RuntimeError):
        table.get_index("b")


@pytest.mark.parametrize("workers", [1, 4])
def test_resolve_all_matches_index_order(workers: int) -> None:
    files = {}
    names = []
    for i in range(6):
        files[f"materials/set/m{i}.vmt"] = vmt("LightmappedGeneric", {"$basetexture": f"set/m{i}"})
        files[f"materials/set/m{i}.vtf"] = solid_rgba_vtf(1, 1, (i, i, i, 255))
        names.append(f"set/m{i}")
    names.insert(3, "set/missing")

    table = MaterialTable()
    for n in names:
        table.get_index(n, [""])
    issues = LoadIssueLog()
    mats = table.resolve_all(dict_loader(files), config=LoadConfig(workers=workers), issues=issues)

    assert len(mats) == len(names)
    for name, mat in zip(names, mats):
        if name == "set/missing":
            assert mat.is_fallback
        else:
            assert mat.path == f"materials/{name}.vmt"
    assert issues.count() == 1

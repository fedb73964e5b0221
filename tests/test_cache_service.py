"""Seen-set persistence."""

from __future__ import annotations

import json

import pytest

from rss_digest.services.cache_service import CacheServiceError, SeenSet, SeenSetCache


def test_seen_set_keeps_insertion_order():
    seen = SeenSet(["b", "a"])
    assert seen.add("c") is True
    assert seen.add("a") is False
    assert seen.to_list() == ["b", "a", "c"]
    assert "c" in seen and len(seen) == 3


def test_missing_file_loads_empty(tmp_path):
    assert len(SeenSetCache(tmp_path / "seen.json").load()) == 0


def test_save_then_load(tmp_path):
    cache = SeenSetCache(tmp_path / "cache" / "seen.json")
    cache.save(SeenSet(["x", "y"]))

    assert json.loads((tmp_path / "cache" / "seen.json").read_text(encoding="utf-8")) == ["x", "y"]
    assert SeenSetCache(tmp_path / "cache" / "seen.json").load().to_list() == ["x", "y"]
    assert [p.name for p in (tmp_path / "cache").iterdir()] == ["seen.json"]


@pytest.mark.parametrize("content", ["{not json", '{"a": 1}', "[1, 2]"])
def test_corrupt_file_raises(tmp_path, content):
    path = tmp_path / "seen.json"
    path.write_text(content, encoding="utf-8")
    with pytest.raises(CacheServiceError):
        SeenSetCache(path).load()

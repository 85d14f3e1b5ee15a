# -*- coding: utf-8 -*-
"""
tests/test_sources.py
来源目录与配置加载。
"""

import pytest

from impacthub.config import DEFAULT_CFG, load_cfg, ops_dir
from impacthub.errors import ConfigError
from impacthub.sources import DEFAULT_TIER, SourceRegistry, reliability_for_tier


def write(tmp_path, name, text):
    p = tmp_path / name
    p.write_text(text, encoding="utf-8")
    return p


def test_from_yaml(tmp_path):
    p = write(tmp_path, "sources.yml", """
sources:
  - name: Fed
    type: rss
    url: https://www.federalreserve.gov/feeds/press_all.xml
    tier: 1
  - name: Some Aggregator
    tier: 4
    reliability_score: 2.0
    enabled: false
""")
    reg = SourceRegistry.from_yaml(p)
    assert len(reg) == 2
    fed = reg.get("Fed")
    assert (fed.tier, fed.reliability_score, fed.kind) == (1, 5.0, "rss")
    agg = reg.get("Some Aggregator")
    assert agg.reliability_score == 2.0
    assert [s.name for s in reg.enabled()] == ["Fed"]


@pytest.mark.parametrize("body", [
    "sources:\n  - {name: A, tier: 2}\n  - {name: A, tier: 3}\n",
    "sources:\n  - {name: A, tier: 7}\n",
    "sources:\n  - {name: A, tier: high}\n",
    "sources:\n  - {name: A, tier: 2, reliability_score: 9}\n",
    "sources:\n  - {tier: 2}\n",
    "- just a list\n",
])
def test_bad_catalogue_raises(tmp_path, body):
    with pytest.raises(ConfigError):
        SourceRegistry.from_yaml(write(tmp_path, "sources.yml", body))


def test_missing_file_gives_empty_registry(tmp_path):
    assert len(SourceRegistry.from_yaml(tmp_path / "nope.yml")) == 0


def test_resolve_unknown_source_then_register():
    reg = SourceRegistry()
    src = reg.resolve("Some Blog", 3)
    assert (src.tier, src.reliability_score, src.kind) == (3, reliability_for_tier(3), "manual")
    assert "Some Blog" not in reg
    assert len(reg) == 0

    reg.register(src)
    assert "Some Blog" in reg
    # 之后以目录为准
    assert reg.resolve("Some Blog", 1).tier == 3
    assert reg.resolve("Anonymous").tier == DEFAULT_TIER


def test_shipped_catalogue_loads():
    reg = SourceRegistry.from_yaml(ops_dir() / "sources.yml")
    assert reg.get("Fed").tier == 1
    assert reg.get("social_feed").tier == 5
    assert all(1 <= s.tier <= 5 for s in reg.enabled())


def test_load_cfg_merges_file_and_overrides(tmp_path, monkeypatch):
    write(tmp_path, "config.yml", "routing:\n  fastlane_threshold: 8.0\n")
    monkeypatch.setenv("IMPACTHUB_OPS_DIR", str(tmp_path))
    assert ops_dir() == tmp_path

    cfg = load_cfg(overrides={"routing": {"fade_ceiling": 5}})
    assert cfg["routing"]["fastlane_threshold"] == 8.0
    assert cfg["routing"]["fade_ceiling"] == 5
    assert cfg["routing"]["digest_2h_threshold"] == 5.0
    # 默认值不被修改
    assert DEFAULT_CFG["routing"]["fastlane_threshold"] == 7.0


def test_load_cfg_without_file_uses_defaults(tmp_path, monkeypatch):
    monkeypatch.setenv("IMPACTHUB_OPS_DIR", str(tmp_path))
    assert load_cfg() == DEFAULT_CFG


def test_load_cfg_invalid_yaml(tmp_path):
    with pytest.raises(ConfigError):
        load_cfg(write(tmp_path, "config.yml", "routing: [unclosed\n"))

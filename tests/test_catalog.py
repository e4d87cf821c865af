"""
Tests for readstorm.sources.RuleCatalog (rule directory priority / listing)

Run: pytest tests/test_catalog.py -v
"""

import pytest

from conftest import toc_rule, write_rule
from readstorm.core.errors import RuleError
from readstorm.sources import BUNDLED_RULES_DIR, RuleCatalog


@pytest.fixture
def user_dir(tmp_path):
    directory = tmp_path / "user-rules"
    directory.mkdir()
    return directory


# ─── Bundled rules ─────────────────────────────────────────────────────────

class TestBundled:
    def test_bundled_listing_hides_template(self):
        catalog = RuleCatalog()
        ids = [r.id for r in catalog.all()]
        assert 1 in ids and 2 in ids
        assert 9999 not in ids
        assert ids == sorted(ids)
        assert catalog.directories[-1] == BUNDLED_RULES_DIR

    def test_bundled_rules_parse(self):
        catalog = RuleCatalog()
        rule = catalog.load(2)
        assert rule.search.is_post
        assert rule.toc_supported and rule.chapter_supported
        assert [r.id for r in catalog.searchable()][:2] == [1, 2]


# ─── Priority / overrides ──────────────────────────────────────────────────

class TestPriority:
    def test_user_rule_overrides_bundled(self, user_dir):
        write_rule(user_dir, dict(toc_rule(1), name="我的书源"))
        catalog = RuleCatalog([str(user_dir)])
        assert catalog.load(1).name == "我的书源"
        assert [r.name for r in catalog.all() if r.id == 1] == ["我的书源"]
        assert catalog.find_rule_file(1).startswith(str(user_dir))

    def test_earlier_directory_wins(self, tmp_path):
        first, second = tmp_path / "a", tmp_path / "b"
        first.mkdir()
        second.mkdir()
        write_rule(first, dict(toc_rule(700), name="A"))
        write_rule(second, dict(toc_rule(700), name="B"))
        catalog = RuleCatalog([str(first), str(second)], include_bundled=False)
        assert catalog.load(700).name == "A"
        assert [r.name for r in catalog.all()] == ["A"]

    def test_missing_rule(self, catalog):
        assert catalog.load(12345) is None
        assert catalog.load(0) is None


# ─── Broken files / lookup ─────────────────────────────────────────────────

class TestLookup:
    def test_broken_file_skipped_in_listing(self, rules_dir, catalog):
        (rules_dir / "rule-800.json").write_text("{ not json", encoding="utf-8")
        assert 800 not in [r.id for r in catalog.all()]
        with pytest.raises(RuleError):
            catalog.load(800)

    def test_searchable_requires_search_section(self, catalog):
        # 501~503 都只有目录和正文规则
        assert catalog.searchable() == []

    def test_find_source_by_host(self, rules_dir):
        write_rule(rules_dir, dict(toc_rule(900), url="https://www.other.local/"))
        catalog = RuleCatalog([str(rules_dir)], include_bundled=False)
        assert catalog.find_source("https://www.other.local/book/1.html").id == 900
        assert catalog.find_source("https://m.www.other.local/book/1.html").id == 900
        assert catalog.find_source("https://nowhere.local/x") is None
        assert catalog.find_source("not a url") is None

    def test_reload_drops_cache(self, rules_dir, catalog):
        assert catalog.load(502).name == "集成测试书源"
        write_rule(rules_dir, dict(toc_rule(502), name="改名"))
        assert catalog.load(502).name == "集成测试书源"
        catalog.reload()
        assert catalog.load(502).name == "改名"

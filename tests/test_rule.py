"""
Tests for readstorm.sources.rule

Run: pytest tests/test_rule.py -v
"""

import json

import pytest

from readstorm.core.errors import RuleError
from readstorm.sources.rule import (
    RuleSchema,
    build_form_data,
    build_toc_url,
    load_rule_file,
    normalize_selector,
    parse_cookie_header,
    resolve_url,
    substitute_keyword,
)


# ─── Selectors ─────────────────────────────────────────────────────────────

class TestNormalizeSelector:
    @pytest.mark.parametrize("raw", [None, "", "   ", "\t\n"])
    def test_blank_becomes_empty(self, raw):
        assert normalize_selector(raw) == ""

    def test_strips_js_suffix(self):
        assert normalize_selector(".page > a@js:r=r.filter(x => x)") == ".page > a"

    def test_js_marker_case_insensitive(self):
        assert normalize_selector("#list a @JS:return 1") == "#list a"

    def test_plain_selector_trimmed(self):
        assert normalize_selector("  #content  ") == "#content"


# ─── RuleSchema ────────────────────────────────────────────────────────────

class TestRuleSchema:
    def test_camel_case_keys(self):
        rule = RuleSchema.from_dict({
            "id": 7,
            "name": "测试源",
            "search": {"url": "https://a.local/s?q=%s", "result": ".item",
                       "bookName": "a.name", "latestChapter": ".latest", "limitPage": 5},
            "chapter": {"content": "#content", "filterTxt": "广告||推广", "paragraphTag": "p"},
        })
        assert rule.search.book_name == "a.name"
        assert rule.search.latest_chapter == ".latest"
        assert rule.search.limit_page == 5
        assert rule.chapter.filter_txt == "广告||推广"
        assert rule.chapter.paragraph_tag == "p"

    def test_keys_case_insensitive_and_unknown_ignored(self):
        rule = RuleSchema.from_dict({
            "ID": 3,
            "Toc": {"ITEM": "#list a", "Desc": "true", "whatever": 1},
        })
        assert rule.id == 3
        assert rule.toc.item == "#list a"
        assert rule.toc.desc is True

    def test_defaults(self):
        rule = RuleSchema.from_dict({"id": 1})
        assert rule.type == "html"
        assert rule.language == "zh_CN"
        assert rule.search is None and rule.toc is None and rule.chapter is None
        assert rule.display_name == "书源 1"
        assert rule.file_name == "rule-1.json"

    def test_empty_required_selector_means_unsupported(self):
        rule = RuleSchema.from_dict({
            "id": 2,
            "search": {"url": "https://a.local/", "result": "  ", "bookName": "a"},
            "toc": {"item": "@js:whatever"},
            "chapter": {"content": ""},
        })
        assert not rule.search_supported
        assert not rule.toc_supported
        assert not rule.chapter_supported

    @pytest.mark.parametrize("data", [{"id": 0}, {"id": -4}, {"name": "no id"}, {"id": "abc"}])
    def test_invalid_id_rejected(self, data):
        with pytest.raises(RuleError):
            RuleSchema.from_dict(data)

    def test_non_object_rejected(self):
        with pytest.raises(RuleError):
            RuleSchema.from_dict([1, 2, 3])

    def test_frozen(self):
        rule = RuleSchema.from_dict({"id": 1})
        with pytest.raises(AttributeError):
            rule.id = 2


class TestLoadRuleFile:
    def test_load_with_bom(self, tmp_path):
        path = tmp_path / "rule-9.json"
        path.write_text(json.dumps({"id": 9, "name": "带 BOM"}, ensure_ascii=False),
                        encoding="utf-8-sig")
        assert load_rule_file(str(path)).name == "带 BOM"

    def test_invalid_json_raises_rule_error(self, tmp_path):
        path = tmp_path / "rule-9.json"
        path.write_text("{ id: ", encoding="utf-8")
        with pytest.raises(RuleError):
            load_rule_file(str(path))


# ─── Request construction ──────────────────────────────────────────────────

class TestKeywordAndForm:
    def test_substitute_encodes_every_placeholder(self):
        url = substitute_keyword("https://a.local/s?q=%s&k=%s", "诡秘 之主")
        assert url == "https://a.local/s?q=%E8%AF%A1%E7%A7%98%20%E4%B9%8B%E4%B8%BB" \
                      "&k=%E8%AF%A1%E7%A7%98%20%E4%B9%8B%E4%B8%BB"

    def test_space_encoded_for_path(self):
        assert substitute_keyword("https://a.local/search/%s/1.html", "a b/c") == \
            "https://a.local/search/a%20b%2Fc/1.html"

    def test_substitute_raw(self):
        assert substitute_keyword("key=%s", "诡秘", encode=False) == "key=诡秘"

    def test_form_data_loose_template(self):
        data = build_form_data("{searchkey: \"%s\", searchtype: 'articlename'}", "诡秘")
        assert data == {"searchkey": "诡秘", "searchtype": "articlename"}

    def test_form_data_keeps_order(self):
        data = build_form_data("{b: 1, a: 2}", "x")
        assert list(data) == ["b", "a"]

    @pytest.mark.parametrize("template", [None, "", "{}", "  "])
    def test_form_data_empty(self, template):
        assert build_form_data(template, "x") == {}

    def test_cookie_header(self):
        assert parse_cookie_header("a=1; b=2;; bad") == {"a": "1", "b": "2"}


class TestResolveUrl:
    def test_absolute_kept(self):
        assert resolve_url("https://a.local/x/", "https://b.local/y") == "https://b.local/y"

    def test_relative_to_page(self):
        assert resolve_url("https://a.local/book/1/", "2.html") == "https://a.local/book/1/2.html"

    def test_root_relative(self):
        assert resolve_url("https://a.local/book/1/", "/chapter-1.html") == "https://a.local/chapter-1.html"

    def test_protocol_relative(self):
        assert resolve_url("https://a.local/", "//cdn.local/a.html") == "https://cdn.local/a.html"

    @pytest.mark.parametrize("href", ["", "   ", None, "javascript:void(0)", "#top"])
    def test_unusable_href(self, href):
        assert resolve_url("https://a.local/", href) == ""


class TestBuildTocUrl:
    def _rule(self, toc_url):
        return RuleSchema.from_dict({"id": 1, "url": "https://a.local/", "toc": {"url": toc_url, "item": "a"}})

    def test_last_digit_run_substituted(self):
        rule = self._rule("https://a.local/book/%s/")
        assert build_toc_url(rule, "https://a.local/info/12/34567.html") == "https://a.local/book/34567/"

    def test_without_placeholder_uses_book_url(self):
        rule = self._rule("")
        assert build_toc_url(rule, "https://a.local/book/1.html") == "https://a.local/book/1.html"

    def test_no_digits_falls_back(self):
        rule = self._rule("/toc/%s")
        assert build_toc_url(rule, "https://a.local/book/abc/") == "https://a.local/book/abc/"

    def test_relative_template_resolved_against_site(self):
        rule = self._rule("/toc/%s.html")
        assert build_toc_url(rule, "https://a.local/book/88/") == "https://a.local/toc/88.html"

"""Tests for the script/style tag sanitizer."""

from __future__ import annotations

import pytest

from asset_shield import (
    AssetShield,
    sanitize_script_tag,
    sanitize_style_tag,
    strip_version_params,
)


class TestSanitizeScriptTag:
    @pytest.mark.parametrize(
        ("tag", "expected"),
        [
            (
                "<script type='text/javascript' src='https://example.test/a.js?ver=6.1' id='jquery-js'></script>",
                "<script src='https://example.test/a.js'></script>",
            ),
            (
                '<script type="text/javascript" src="/a.js"></script>',
                '<script src="/a.js"></script>',
            ),
            (
                '<script type="module" src="/a.js?ver=1&amp;lang=en"></script>',
                '<script type="module" src="/a.js?lang=en"></script>',
            ),
        ],
    )
    def test_cases(self, tag: str, expected: str) -> None:
        assert sanitize_script_tag(tag) == expected

    def test_data_id_is_kept(self) -> None:
        tag = '<script data-id="x" src="/a.js"></script>'
        assert sanitize_script_tag(tag) == tag


class TestSanitizeStyleTag:
    def test_strips_id_and_version(self) -> None:
        tag = "<link rel='stylesheet' id='theme-css' href='/s.css?ver=2' media='all' />"
        assert sanitize_style_tag(tag) == "<link rel='stylesheet' href='/s.css' media='all' />"

    def test_keeps_type_on_style(self) -> None:
        tag = '<link rel="stylesheet" type="text/css" href="/s.css">'
        assert sanitize_style_tag(tag) == tag

    def test_custom_params(self) -> None:
        tag = '<link rel="stylesheet" href="/s.css?v=3&amp;ver=2">'
        assert sanitize_style_tag(tag, ("v",)) == '<link rel="stylesheet" href="/s.css?ver=2">'


class TestStripVersionParams:
    def test_no_query(self) -> None:
        assert strip_version_params("/a.js", {"ver"}) == "/a.js"

    def test_unrelated_query_untouched(self) -> None:
        url = "/a.js?x=1&y=%20"
        assert strip_version_params(url, {"ver"}) is url

    def test_case_insensitive(self) -> None:
        assert strip_version_params("/a.js?VER=1", {"ver"}) == "/a.js"


def test_shield_uses_configured_params(shield: AssetShield) -> None:
    shield.s.version_params = {"rev"}
    tag = '<script type="text/javascript" src="/a.js?rev=9&amp;ver=1" id="a"></script>'
    assert shield.sanitize_script_tag(tag) == '<script src="/a.js?ver=1"></script>'
    assert shield.sanitize_style_tag('<link id="b" href="/s.css?rev=1">') == '<link href="/s.css">'

"""
tests/test_sanitize.py -- String sanitization passes.

Covers:
  - sanitize_xss(): escapes values dominated by script vectors, leaves plain text
  - sanitize_html(): escapes metacharacters
  - sanitize_sql(): strips comment markers, doubles quotes
  - sanitize_string(): pass selection per config, custom sanitizers, empty input
"""

from __future__ import annotations

import pytest

from core.sanitize import (
    DEFAULT_SANITIZE_CONFIG,
    TEXT_SANITIZE_CONFIG,
    SanitizeConfig,
    sanitize_html,
    sanitize_sql,
    sanitize_string,
    sanitize_xss,
)


class TestXss:
    @pytest.mark.parametrize("value", ["Ada Lovelace", "<b>bold</b>", "Loves online chess"])
    def test_plain_text_untouched(self, value: str) -> None:
        assert sanitize_xss(value) == value

    def test_script_tag_escaped(self) -> None:
        assert sanitize_xss("<script>alert(1)</script>") == "&lt;script&gt;alert(1)&lt;/script&gt;"

    def test_event_handler_escaped(self) -> None:
        result = sanitize_xss('<img onerror=x src=y>')
        assert "<img" not in result

    def test_case_insensitive(self) -> None:
        assert "<SCRIPT>" not in sanitize_xss("<SCRIPT>x</SCRIPT>")


def test_sanitize_html() -> None:
    assert sanitize_html('<a href="x">&</a>') == "&lt;a href=&quot;x&quot;&gt;&amp;&lt;/a&gt;"


class TestSql:
    def test_quotes_doubled(self) -> None:
        assert sanitize_sql("O'Brien") == "O''Brien"

    def test_comment_markers_stripped(self) -> None:
        assert sanitize_sql("name -- comment /* x */") == "name  comment  x "

    def test_dangerous_statement_keeps_text(self) -> None:
        assert sanitize_sql("1; DROP TABLE users; --") == "1; DROP TABLE users; --"


class TestSanitizeString:
    def test_empty_passes_through(self) -> None:
        assert sanitize_string("", DEFAULT_SANITIZE_CONFIG) == ""

    def test_default_runs_every_pass(self) -> None:
        assert sanitize_string("a < b -- c") == "a &lt; b  c"

    def test_text_config_is_xss_only(self) -> None:
        assert sanitize_string("Tom & Jerry's", TEXT_SANITIZE_CONFIG) == "Tom & Jerry's"
        assert "<script" not in sanitize_string("Hi <script>x</script>", TEXT_SANITIZE_CONFIG)

    def test_custom_sanitizers_run_last_in_order(self) -> None:
        config = SanitizeConfig(html=False, xss=False, sql=False, custom=(str.strip, str.upper))
        assert sanitize_string("  shout  ", config) == "SHOUT"

"""Tests for the cursor helper.

Tests cover:
- Keyword timestamps
- Setting the cursor from literals, paths and callbacks
- defaultValue fallback, custom key and format options
- read_cursor()
"""

from datetime import datetime, timezone

import pytest

from opflow.cursor import read_cursor, resolve_keyword
from opflow.adaptors.common import cursor
from opflow.lazy import S


NOW = datetime(2024, 4, 9, 15, 30, 12, 345000, tzinfo=timezone.utc)


class TestResolveKeyword:
    """Tests for cursor keywords."""

    @pytest.mark.parametrize("keyword,expected", [
        ("now", "2024-04-09T15:30:12.345Z"),
        ("today", "2024-04-09T00:00:00.000Z"),
        ("start", "2024-04-09T00:00:00.000Z"),
        ("yesterday", "2024-04-08T00:00:00.000Z"),
        ("end", "2024-04-09T23:59:59.000Z"),
    ])
    def test_keywords(self, keyword, expected):
        """Keywords become UTC ISO-8601 timestamps."""
        assert resolve_keyword(keyword, now=NOW) == expected

    def test_other_values_pass_through(self):
        """Anything else is returned unchanged."""
        assert resolve_keyword("2024-01-01", now=NOW) == "2024-01-01"
        assert resolve_keyword(42, now=NOW) == 42

    def test_uses_clock(self, frozen_clock):
        """Without now= the module clock is used."""
        assert resolve_keyword("yesterday") == "2024-04-08T00:00:00.000Z"


class TestCursorOperation:
    """Tests for cursor()."""

    def test_keyword_resolved_when_step_runs(self, engine, frozen_clock):
        """cursor("yesterday") stores a timestamp."""
        result = engine.execute([cursor("yesterday")], {})
        assert result.state == {"cursor": "2024-04-08T00:00:00.000Z"}

    def test_literal_value(self, engine):
        """Literals are stored as is."""
        assert engine.run([cursor("2024-04-08")], {}) == {"cursor": "2024-04-08"}

    def test_path_value(self, engine):
        """A "$..." string reads State."""
        state = engine.run([cursor("$.last_sync")], {"last_sync": "2024-03-01"})
        assert state["cursor"] == "2024-03-01"

    def test_lazy_value(self, engine):
        """A lazy expression reads State."""
        state = engine.run([cursor(S.data.last)], {"data": {"last": 5}})
        assert state["cursor"] == 5

    def test_callback_with_default(self, engine, frozen_clock):
        """A callback returning None falls back to defaultValue."""
        op = cursor(lambda state: state.get("last_sync"), {"defaultValue": "today"})
        assert engine.run([op], {})["cursor"] == "2024-04-09T00:00:00.000Z"

    def test_callback_value_wins_over_default(self, engine):
        """The default is only used when the value is missing."""
        op = cursor(lambda state: state.get("last_sync"), {"defaultValue": "today"})
        assert engine.run([op], {"last_sync": "2024-03-01"})["cursor"] == "2024-03-01"

    def test_keyword_default_value(self, engine):
        """default_value= works without an options mapping."""
        assert engine.run([cursor("$.missing", default_value=0)], {})["cursor"] == 0

    def test_custom_key(self, engine):
        """key stores the cursor under another name."""
        state = engine.run([cursor(1, {"key": "page"})], {})
        assert state == {"page": 1}

    def test_format_option(self, engine):
        """format is applied to the final value."""
        op = cursor("$.page", {"defaultValue": 0, "format": lambda value: value + 1})
        assert engine.run([op], {"page": 4})["cursor"] == 5

    def test_options_resolved_against_state(self, engine):
        """Lazy option values are resolved."""
        op = cursor("$.missing", {"defaultValue": S.fallback})
        assert engine.run([op], {"fallback": "x"})["cursor"] == "x"

    def test_options_must_be_mapping(self, engine):
        """Non-mapping options fail the step."""
        result = engine.execute([cursor(1, ["bad"])], {})
        assert isinstance(result.error.cause, TypeError)

    def test_change_logged(self, engine, caplog):
        """Setting the cursor is logged."""
        caplog.set_level("INFO", logger="opflow")
        engine.run([cursor("2024-04-08")], {})
        assert "Setting cursor 'cursor' to '2024-04-08'" in caplog.text


class TestReadCursor:
    """Tests for read_cursor()."""

    def test_reads_key(self):
        """The stored cursor is returned."""
        assert read_cursor({"cursor": "x"}) == "x"

    def test_default(self):
        """The default is returned when unset."""
        assert read_cursor({}, default="today") == "today"
        assert read_cursor({"page": 2}, key="page") == 2

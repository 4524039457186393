"""Tests for helper functions."""

from collections import namedtuple

import pytest

import utils
from utils import (parse_duration, render_template, path_to_filename,
                   canonicalize_path, format_duration, is_on_battery)


class TestParseDuration:
    @pytest.mark.parametrize("text,expected", [
        ("1h", 3600),
        ("2h", 7200),
        ("3", 10800),
        ("1d", 86400),
        ("4d", 86400 * 4),
        ("1w", 604800),
        ("4w", 604800 * 4),
        ("1M", 2630016),
        ("3M", 2630016 * 3),
    ])
    def test_valid_durations(self, text, expected):
        assert parse_duration(text) == expected

    @pytest.mark.parametrize("text", [
        "notvalid", "2u", "", None, "never", "0h", "0", "-1h", "+2h", "1.5h", "1h30m",
    ])
    def test_invalid_durations_are_zero(self, text):
        assert parse_duration(text) == 0

    def test_lowercase_m_is_not_a_month(self):
        assert parse_duration("1m") == 0


class TestFormatDuration:
    def test_zero_is_never(self):
        assert format_duration(0) == "never"

    def test_hour_is_humanized(self):
        assert "hour" in format_duration(3600)


class TestRenderTemplate:
    def test_replaces_all_placeholders(self):
        template = ("This is a {{key1}} template\n"
                    "All strings need to be {{action}} correctly for the {{test_name}} to pass.")
        result = render_template(template, {
            'key1': 'good',
            'action': 'rendered',
            'test_name': 'render_template test',
        })
        assert result == ("This is a good template\n"
                          "All strings need to be rendered correctly for the render_template test to pass.")

    def test_unknown_placeholders_are_kept(self):
        assert render_template("Hi {{name}}, {{unknown}}!", {'name': 'root'}) == "Hi root, {{unknown}}!"

    def test_none_value_renders_empty(self):
        assert render_template("[{{a}}]", {'a': None}) == "[]"

    def test_no_variables_returns_template(self):
        assert render_template("{{a}} {b}", {}) == "{{a}} {b}"

    def test_none_template(self):
        assert render_template(None, {'a': 'b'}) is None


class TestPathToFilename:
    def test_root_and_empty_map_to_sentinel(self):
        assert path_to_filename("/") == "-"
        assert path_to_filename("") == "-"

    def test_escaping(self):
        name = path_to_filename("/this/is/a path with/spaces/.txt")
        assert name.startswith("this-is-a path with-spaces-.txt_")

    def test_leading_dot_is_escaped(self):
        assert path_to_filename("/.snapshots").startswith("_.snapshots_")

    def test_hash_suffix_prevents_collisions(self):
        # Both escape to "a-b"
        first = path_to_filename("/a/b")
        second = path_to_filename("/a-b")
        assert first.split('_')[0] == second.split('_')[0] == "a-b"
        assert first != second

    def test_deterministic(self):
        assert path_to_filename("/srv/data") == path_to_filename("/srv/data")

    def test_idempotent_under_canonicalization(self):
        for path in ["/srv//data/", "/srv/./data", "//srv/data", "/srv/x/../data"]:
            assert canonicalize_path(canonicalize_path(path)) == canonicalize_path(path)
            assert path_to_filename(path) == path_to_filename("/srv/data")


Battery = namedtuple('Battery', 'percent secsleft power_plugged')


class TestIsOnBattery:
    def test_no_battery(self, monkeypatch):
        monkeypatch.setattr(utils.psutil, 'sensors_battery', lambda: None)
        assert is_on_battery() is False

    def test_unplugged(self, monkeypatch):
        monkeypatch.setattr(utils.psutil, 'sensors_battery', lambda: Battery(50, 3600, False))
        assert is_on_battery() is True

    def test_plugged(self, monkeypatch):
        monkeypatch.setattr(utils.psutil, 'sensors_battery', lambda: Battery(50, 3600, True))
        assert is_on_battery() is False

    def test_unknown_plug_state_counts_as_mains(self, monkeypatch):
        monkeypatch.setattr(utils.psutil, 'sensors_battery', lambda: Battery(50, 3600, None))
        assert is_on_battery() is False

"""Tests for input validation helpers."""

from __future__ import annotations

import pytest

from vola_room_core.errors import VolaValidationError
from vola_room_core.util import (
    minutes_to_seconds,
    parse_room_id,
    to_ban_spec,
    to_id_list,
    verify_nick,
)


class TestParseRoomId:
    """Tests for parse_room_id()."""

    @pytest.mark.parametrize(
        ("value", "expected"),
        [
            ("abc123", "abc123"),
            ("/r/abc123", "abc123"),
            ("https://volafile.org/r/abc123", "abc123"),
            ("", None),
            (None, None),
        ],
    )
    def test_valid(self, value, expected):
        """Test ids, paths and room URLs are accepted."""
        assert parse_room_id(value) == expected

    @pytest.mark.parametrize("value", ["not an id", "https://volafile.org/get/x"])
    def test_invalid(self, value):
        """Test garbage is rejected."""
        with pytest.raises(VolaValidationError):
            parse_room_id(value)


class TestVerifyNick:
    """Tests for verify_nick()."""

    def test_valid(self):
        """Test a plain alphanumeric nick passes."""
        assert verify_nick("tester1") == "tester1"

    @pytest.mark.parametrize("nick", [None, 12, "ab", "a" * 13, "bad nick", "bad-nick"])
    def test_invalid(self, nick):
        """Test invalid nicks are rejected."""
        with pytest.raises(VolaValidationError):
            verify_nick(nick)

    def test_server_max_length(self):
        """Test the server-supplied maximum clamps the length."""
        with pytest.raises(VolaValidationError, match="at most 5"):
            verify_nick("abcdef", max_length=5)


class TestToBanSpec:
    """Tests for to_ban_spec()."""

    def test_ip_string(self):
        """Test a string is an ip ban."""
        assert to_ban_spec("1.2.3.4") == [{"ip": "1.2.3.4"}]

    def test_mapping(self):
        """Test a mapping is wrapped and None values dropped."""
        assert to_ban_spec({"user": "bob", "ip": None}) == [{"user": "bob"}]

    def test_list(self):
        """Test lists pass through."""
        assert to_ban_spec([{"ip": "1"}, {"user": "u"}]) == [{"ip": "1"}, {"user": "u"}]

    @pytest.mark.parametrize("spec", [None, "", {}, [{"ip": None}], [{}]])
    def test_empty(self, spec):
        """Test empty specs are rejected."""
        with pytest.raises(VolaValidationError):
            to_ban_spec(spec)


class TestToIdList:
    """Tests for to_id_list()."""

    def test_single(self):
        assert to_id_list("a") == ["a"]

    def test_iterable(self):
        assert to_id_list(("a", "b")) == ["a", "b"]

    def test_empty(self):
        with pytest.raises(VolaValidationError):
            to_id_list([])


class TestMinutesToSeconds:
    """Tests for minutes_to_seconds()."""

    def test_conversion(self):
        """Test fractional minutes are floored to seconds."""
        assert minutes_to_seconds(1.5) == 90
        assert minutes_to_seconds(0.02) == 1

    @pytest.mark.parametrize("minutes", [0, -1, 0.001, "x", None, float("inf")])
    def test_invalid(self, minutes):
        """Test non-positive or non-numeric durations are rejected."""
        with pytest.raises(VolaValidationError):
            minutes_to_seconds(minutes)
